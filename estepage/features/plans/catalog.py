"""
estepage/features/plans/catalog.py

Plan catalog: the single source of truth for tier quotas, tier features and
the mapping from processor price ids to tiers.

Handles:
- Exhaustive PlanTier -> PlanLimits table
- Versioned processor reference table (JSON, overridable from settings)
- Fail-safe reference resolution (anything unknown is FREE)
"""

import json
import logging
from functools import lru_cache
from pathlib import Path
from typing import Dict, List, Mapping, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, ValidationError as PydanticValidationError

from estepage.core.config import settings
from estepage.models.plan import FeatureFlag, PlanLimits, PlanTier


logger = logging.getLogger(__name__)

DEFAULT_REFERENCES_PATH = Path(__file__).with_name("plan_references.json")

_PAID_FEATURES = frozenset({
    FeatureFlag.LEAD_FORM,
    FeatureFlag.NEWSLETTER_FORM,
    FeatureFlag.WHATSAPP_BUTTON,
    FeatureFlag.EMAIL_SUPPORT,
})

DEFAULT_PLAN_LIMITS: Dict[PlanTier, PlanLimits] = {
    PlanTier.FREE: PlanLimits(
        tier=PlanTier.FREE,
        name="Free",
        max_listings=1,
        max_images_per_listing=5,
        allowed_features=frozenset(),
    ),
    PlanTier.PRO: PlanLimits(
        tier=PlanTier.PRO,
        name="Pro",
        max_listings=25,
        max_images_per_listing=16,
        allowed_features=_PAID_FEATURES,
    ),
    PlanTier.ELITE: PlanLimits(
        tier=PlanTier.ELITE,
        name="Elite",
        max_listings=100,
        max_images_per_listing=16,
        allowed_features=_PAID_FEATURES | {FeatureFlag.PRIORITY_SUPPORT},
    ),
}


class PlanCatalogError(ValueError):
    """Raised at load time when the catalog configuration is inconsistent."""


class PlanReferenceTable(BaseModel):
    """Versioned processor reference table as stored on disk."""
    model_config = ConfigDict(frozen=True)

    version: int = Field(ge=1)
    references: Dict[str, PlanTier]
    checkout: Dict[PlanTier, str] = {}


def load_reference_table(
    path: Optional[Union[str, Path]] = None,
    inline_json: Optional[str] = None,
) -> PlanReferenceTable:
    """
    Load and validate the reference table.

    Precedence: inline JSON, then explicit path, then the packaged default.

    Raises:
        PlanCatalogError: If the table cannot be read or names an unknown tier
    """
    source = "inline"
    try:
        if inline_json:
            raw = json.loads(inline_json)
        else:
            file_path = Path(path) if path else DEFAULT_REFERENCES_PATH
            source = str(file_path)
            raw = json.loads(file_path.read_text(encoding="utf-8"))
        return PlanReferenceTable.model_validate(raw)
    except (OSError, json.JSONDecodeError, PydanticValidationError) as e:
        raise PlanCatalogError(f"Invalid plan reference table ({source}): {e}") from e


class PlanCatalog:
    """Read-only, process-wide plan registry."""

    def __init__(
        self,
        references: Optional[Union[PlanReferenceTable, Mapping[str, Union[PlanTier, str]]]] = None,
        limits: Optional[Mapping[PlanTier, PlanLimits]] = None,
    ):
        if references is None:
            references = load_reference_table()
        if not isinstance(references, PlanReferenceTable):
            references = PlanReferenceTable(version=1, references=dict(references))

        self._table = references
        self._limits: Dict[PlanTier, PlanLimits] = dict(limits or DEFAULT_PLAN_LIMITS)
        self._validate()

    def _validate(self) -> None:
        missing = set(PlanTier) - set(self._limits)
        if missing:
            raise PlanCatalogError(f"Plan limits missing for tiers: {sorted(t.value for t in missing)}")

        ordered = self.plans()
        for lower, higher in zip(ordered, ordered[1:]):
            if (
                higher.max_listings < lower.max_listings
                or higher.max_images_per_listing < lower.max_images_per_listing
                or not lower.allowed_features <= higher.allowed_features
            ):
                raise PlanCatalogError(
                    f"Plan {higher.tier.value} grants less than {lower.tier.value}"
                )

        for tier, ref in self._table.checkout.items():
            if self._table.references.get(ref) != tier:
                raise PlanCatalogError(f"Checkout reference {ref!r} does not map to {tier.value}")

    @property
    def version(self) -> int:
        return self._table.version

    def limits_for(self, tier: PlanTier) -> PlanLimits:
        return self._limits[tier]

    def tier_from_external_reference(self, ref: object) -> PlanTier:
        """Map a processor price id to a tier. Unknown or malformed input is FREE."""
        if not isinstance(ref, str) or not ref.strip():
            return PlanTier.FREE

        tier = self._table.references.get(ref.strip())
        if tier is None:
            logger.warning(
                "[plans] unrecognized plan reference, resolving to free",
                extra={"plan_reference": ref[:100], "catalog_version": self.version},
            )
            return PlanTier.FREE
        return tier

    def reference_for(self, tier: PlanTier) -> Optional[str]:
        """Processor price id used for new checkouts of `tier` (None for FREE)."""
        if tier in self._table.checkout:
            return self._table.checkout[tier]
        if tier == PlanTier.FREE:
            return None
        for ref, mapped in self._table.references.items():
            if mapped == tier:
                return ref
        return None

    def plans(self) -> List[PlanLimits]:
        return sorted(self._limits.values(), key=lambda limits: limits.tier.rank)


@lru_cache(maxsize=1)
def get_plan_catalog() -> PlanCatalog:
    """Catalog built from settings (cached for the process lifetime)."""
    table = load_reference_table(
        path=settings.PLAN_REFERENCES_PATH,
        inline_json=settings.PLAN_REFERENCES_JSON,
    )
    catalog = PlanCatalog(table)
    logger.info(
        "[plans] catalog loaded",
        extra={"catalog_version": catalog.version, "references": len(table.references)},
    )
    return catalog
