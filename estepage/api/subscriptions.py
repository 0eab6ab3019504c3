"""Subscription routes: plans, current subscription, cancellation."""
from typing import Any, Dict, Optional

from fastapi import APIRouter, Depends

from estepage.api.deps import get_catalog, get_quota_gate, get_reconciler
from estepage.core.auth import get_current_tenant_id
from estepage.core.logging import log_event
from estepage.features.billing.reconciler import BillingReconciler
from estepage.features.plans.catalog import PlanCatalog
from estepage.features.quota.service import QuotaGate


router = APIRouter(prefix="/api/subscriptions", tags=["subscriptions"])


@router.get("/plans")
def list_plans(catalog: PlanCatalog = Depends(get_catalog)):
    return {
        "plans": [
            {
                "tier": limits.tier.value,
                "name": limits.name,
                "max_listings": limits.max_listings,
                "max_images_per_listing": limits.max_images_per_listing,
                "features": sorted(f.value for f in limits.allowed_features),
                "checkout_available": catalog.reference_for(limits.tier) is not None,
            }
            for limits in catalog.plans()
        ]
    }


@router.get("/my")
def my_subscription(
    tenant_id: str = Depends(get_current_tenant_id),
    gate: QuotaGate = Depends(get_quota_gate),
):
    subscription = gate.resolver.current_subscription(tenant_id)
    current: Optional[Dict[str, Any]] = None
    if subscription is not None:
        current = {
            "status": subscription.status.value,
            "period_end": subscription.period_end.isoformat() if subscription.period_end else None,
            "cancellation_requested_at": (
                subscription.cancellation_requested_at.isoformat()
                if subscription.cancellation_requested_at
                else None
            ),
        }
    return {"subscription": current, "usage": gate.usage_summary(tenant_id)}


@router.post("/cancel")
def cancel_subscription(
    tenant_id: str = Depends(get_current_tenant_id),
    reconciler: BillingReconciler = Depends(get_reconciler),
):
    """
    Cancel at period end. Plan access continues until period_end.

    Errors:
        404: No active subscription
        502: Stripe rejected the cancellation (nothing changed)
    """
    result = reconciler.request_cancellation(tenant_id)
    log_event(
        "info",
        "subscription.cancel_requested",
        tenant_id=tenant_id,
        extra={"period_end": result.period_end, "days_remaining": result.days_remaining},
    )
    return result.as_dict()
