"""
estepage/models/plan.py

Plan tier, feature flag and plan limit models.

Tiers and features are closed enums; every lookup keyed by them is exhaustive,
so a typo cannot silently create a new tier or feature.
"""

from enum import Enum
from typing import FrozenSet
from pydantic import BaseModel, ConfigDict, Field


class PlanTier(str, Enum):
    """Entitlement level. Ordered FREE < PRO < ELITE."""
    FREE = "free"
    PRO = "pro"
    ELITE = "elite"

    @property
    def rank(self) -> int:
        return _TIER_RANK[self]


_TIER_RANK = {
    PlanTier.FREE: 0,
    PlanTier.PRO: 1,
    PlanTier.ELITE: 2,
}


class FeatureFlag(str, Enum):
    """Boolean capability gates tied to a plan tier."""
    LEAD_FORM = "lead_form"
    NEWSLETTER_FORM = "newsletter_form"
    WHATSAPP_BUTTON = "whatsapp_button"
    EMAIL_SUPPORT = "email_support"
    PRIORITY_SUPPORT = "priority_support"


class PlanLimits(BaseModel):
    """
    Quotas and features for one tier.

    One instance per PlanTier, built once by the plan catalog and never mutated.
    """
    model_config = ConfigDict(frozen=True)

    tier: PlanTier
    name: str
    max_listings: int = Field(ge=0)
    max_images_per_listing: int = Field(ge=0)
    allowed_features: FrozenSet[FeatureFlag] = frozenset()

    def allows(self, feature: FeatureFlag) -> bool:
        return feature in self.allowed_features
