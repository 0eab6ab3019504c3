"""
estepage/features/quota/service.py

Synchronous quota and feature gates, called inline before the guarded
operation (create listing, upload image, render a gated form).

Checks are read-then-act: the count is read fresh, compared, and the caller
then performs its write in a separate transaction. Two concurrent creates from
the same tenant can both pass and overshoot the limit by the number of writes
that land inside that window. Listing and image ceilings are soft UX limits,
so this is tolerated; a strict variant would run count-check-and-insert as one
conditional statement.
"""

import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, Dict, List, Optional

from sqlalchemy.exc import SQLAlchemyError

from estepage.features.entitlements.service import EntitlementResolver, EntitlementUnavailable
from estepage.features.listings.service import ListingStore
from estepage.models.plan import FeatureFlag, PlanTier


logger = logging.getLogger(__name__)


class DenialReason(str, Enum):
    LISTING_LIMIT = "listing_limit_reached"
    IMAGE_LIMIT = "image_limit_reached"
    FEATURE_NOT_IN_PLAN = "feature_not_in_plan"
    LISTING_NOT_FOUND = "listing_not_found"


@dataclass(frozen=True)
class QuotaDenial:
    """Why a check failed, in a form the caller can render as an upgrade prompt."""
    reason: DenialReason
    tier: PlanTier
    current_count: Optional[int] = None
    limit: Optional[int] = None
    feature: Optional[FeatureFlag] = None

    def as_dict(self) -> Dict[str, Any]:
        payload: Dict[str, Any] = {
            "reason": self.reason.value,
            "tier": self.tier.value,
            "current_count": self.current_count,
            "limit": self.limit,
        }
        if self.feature is not None:
            payload["feature"] = self.feature.value
        return payload


@dataclass(frozen=True)
class QuotaDecision:
    allowed: bool
    tier: Optional[PlanTier]
    current_count: Optional[int] = None
    limit: Optional[int] = None
    denial: Optional[QuotaDenial] = None
    degraded: bool = False  # allowed because entitlement state was unreadable

    def __bool__(self) -> bool:
        return self.allowed


@dataclass
class _Check:
    name: str
    tenant_id: str
    context: Dict[str, Any] = field(default_factory=dict)


class QuotaGate:
    """Per-request authorization checks against the tenant's current tier."""

    def __init__(self, resolver: EntitlementResolver, listings: ListingStore):
        self.resolver = resolver
        self.listings = listings

    def _guarded(self, check: _Check, fail_open: bool, evaluate: Callable[[], QuotaDecision]) -> QuotaDecision:
        try:
            return evaluate()
        except SQLAlchemyError as e:
            error: Exception = EntitlementUnavailable(
                f"Could not read quota state for tenant {check.tenant_id}"
            )
            error.__cause__ = e
        except EntitlementUnavailable as e:
            error = e

        if not fail_open:
            raise error
        logger.warning(
            "[quota] entitlement state unavailable, failing open",
            extra={"tenant_id": check.tenant_id, "check": check.name, **check.context},
        )
        return QuotaDecision(allowed=True, tier=None, degraded=True)

    def can_create_listing(self, tenant_id: str, *, fail_open: bool = False) -> QuotaDecision:
        def evaluate() -> QuotaDecision:
            tier = self.resolver.current_tier(tenant_id)
            limit = self.resolver.catalog.limits_for(tier).max_listings
            count = self.listings.count_listings_owned_by(tenant_id)
            if count < limit:
                return QuotaDecision(allowed=True, tier=tier, current_count=count, limit=limit)
            logger.info(
                "[quota] listing limit reached",
                extra={"tenant_id": tenant_id, "tier": tier.value, "current_count": count, "limit": limit},
            )
            return QuotaDecision(
                allowed=False,
                tier=tier,
                current_count=count,
                limit=limit,
                denial=QuotaDenial(DenialReason.LISTING_LIMIT, tier, current_count=count, limit=limit),
            )

        return self._guarded(_Check("can_create_listing", tenant_id), fail_open, evaluate)

    def can_add_image(self, tenant_id: str, listing_id: int, *, fail_open: bool = False) -> QuotaDecision:
        def evaluate() -> QuotaDecision:
            tier = self.resolver.current_tier(tenant_id)
            limit = self.resolver.catalog.limits_for(tier).max_images_per_listing
            if self.listings.get_owner(listing_id) != tenant_id:
                return QuotaDecision(
                    allowed=False,
                    tier=tier,
                    limit=limit,
                    denial=QuotaDenial(DenialReason.LISTING_NOT_FOUND, tier, limit=limit),
                )
            count = self.listings.count_images(listing_id)
            if count < limit:
                return QuotaDecision(allowed=True, tier=tier, current_count=count, limit=limit)
            logger.info(
                "[quota] image limit reached",
                extra={
                    "tenant_id": tenant_id,
                    "listing_id": listing_id,
                    "tier": tier.value,
                    "current_count": count,
                    "limit": limit,
                },
            )
            return QuotaDecision(
                allowed=False,
                tier=tier,
                current_count=count,
                limit=limit,
                denial=QuotaDenial(DenialReason.IMAGE_LIMIT, tier, current_count=count, limit=limit),
            )

        check = _Check("can_add_image", tenant_id, {"listing_id": listing_id})
        return self._guarded(check, fail_open, evaluate)

    def can_use_feature(self, tenant_id: str, feature: FeatureFlag, *, fail_open: bool = False) -> QuotaDecision:
        def evaluate() -> QuotaDecision:
            tier = self.resolver.current_tier(tenant_id)
            if self.resolver.catalog.limits_for(tier).allows(feature):
                return QuotaDecision(allowed=True, tier=tier)
            return QuotaDecision(
                allowed=False,
                tier=tier,
                denial=QuotaDenial(DenialReason.FEATURE_NOT_IN_PLAN, tier, feature=feature),
            )

        check = _Check("can_use_feature", tenant_id, {"feature": feature.value})
        return self._guarded(check, fail_open, evaluate)

    def usage_summary(self, tenant_id: str) -> Dict[str, Any]:
        """Tier, limits and current listing usage for display."""
        tier = self.resolver.current_tier(tenant_id)
        limits = self.resolver.catalog.limits_for(tier)
        try:
            count = self.listings.count_listings_owned_by(tenant_id)
        except SQLAlchemyError as e:
            raise EntitlementUnavailable(f"Could not read usage for tenant {tenant_id}") from e
        features: List[str] = sorted(f.value for f in limits.allowed_features)
        return {
            "tier": tier.value,
            "plan_name": limits.name,
            "listings": {
                "current_count": count,
                "limit": limits.max_listings,
                "remaining": max(0, limits.max_listings - count),
            },
            "max_images_per_listing": limits.max_images_per_listing,
            "features": features,
        }
