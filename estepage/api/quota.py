"""
Quota routes and guard dependencies.

The GET endpoints let clients check before creating a listing, uploading an
image or rendering a gated form. The `require_*` dependencies do the same
check inline for routes that perform the guarded write.
"""
from fastapi import APIRouter, Depends

from estepage.api.deps import get_quota_gate
from estepage.core.auth import get_current_tenant_id
from estepage.core.errors import FeatureNotAvailableError, NotFoundError, QuotaExceededError
from estepage.features.quota.service import DenialReason, QuotaDecision, QuotaGate
from estepage.models.plan import FeatureFlag


router = APIRouter(prefix="/api/quota", tags=["quota"])


def _raise_for_denial(decision: QuotaDecision) -> QuotaDecision:
    if decision:
        return decision
    denial = decision.denial
    if denial.reason == DenialReason.LISTING_NOT_FOUND:
        raise NotFoundError("Listing not found")
    if denial.reason == DenialReason.FEATURE_NOT_IN_PLAN:
        raise FeatureNotAvailableError(
            f"{denial.feature.value} is not included in the {denial.tier.value} plan",
            details=denial.as_dict(),
        )
    raise QuotaExceededError(
        f"Plan limit reached ({denial.current_count}/{denial.limit})",
        details=denial.as_dict(),
    )


def _decision_body(decision: QuotaDecision) -> dict:
    return {
        "allowed": decision.allowed,
        "tier": decision.tier.value if decision.tier else None,
        "current_count": decision.current_count,
        "limit": decision.limit,
    }


def require_listing_slot(
    tenant_id: str = Depends(get_current_tenant_id),
    gate: QuotaGate = Depends(get_quota_gate),
) -> QuotaDecision:
    return _raise_for_denial(gate.can_create_listing(tenant_id))


def require_feature(feature: FeatureFlag):
    def dependency(
        tenant_id: str = Depends(get_current_tenant_id),
        gate: QuotaGate = Depends(get_quota_gate),
    ) -> QuotaDecision:
        return _raise_for_denial(gate.can_use_feature(tenant_id, feature))

    return dependency


@router.get("/listings")
def check_listing_quota(decision: QuotaDecision = Depends(require_listing_slot)):
    return _decision_body(decision)


@router.get("/listings/{listing_id}/images")
def check_image_quota(
    listing_id: int,
    tenant_id: str = Depends(get_current_tenant_id),
    gate: QuotaGate = Depends(get_quota_gate),
):
    return _decision_body(_raise_for_denial(gate.can_add_image(tenant_id, listing_id)))


@router.get("/features/{feature}")
def check_feature(
    feature: FeatureFlag,
    tenant_id: str = Depends(get_current_tenant_id),
    gate: QuotaGate = Depends(get_quota_gate),
):
    decision = _raise_for_denial(gate.can_use_feature(tenant_id, feature))
    return {"allowed": True, "feature": feature.value, "tier": decision.tier.value}
