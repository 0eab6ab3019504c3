"""
Billing API routes.

- POST /api/billing/webhook: Stripe webhooks (signature verified, idempotent)
- POST /api/billing/checkout: Create checkout session for a paid tier
- POST /api/billing/portal: Create customer portal session
- GET  /api/billing/invoices: Invoice history
"""
from typing import Any, Dict, List, Optional

from fastapi import APIRouter, BackgroundTasks, Depends, Request
from pydantic import BaseModel
from starlette.concurrency import run_in_threadpool

from estepage.api.deps import get_billing_service, get_reconciler
from estepage.core.auth import get_current_tenant_id
from estepage.core.logging import log_event
from estepage.features.billing.reconciler import BillingReconciler
from estepage.features.billing.service import BillingService


router = APIRouter(prefix="/api/billing", tags=["billing"])


class CheckoutRequest(BaseModel):
    tier: str
    success_url: Optional[str] = None
    cancel_url: Optional[str] = None


class UrlResponse(BaseModel):
    url: str


class PortalRequest(BaseModel):
    return_url: Optional[str] = None


class InvoicesResponse(BaseModel):
    invoices: List[Dict[str, Any]]


@router.post("/webhook")
async def handle_webhook(
    request: Request,
    background_tasks: BackgroundTasks,
    reconciler: BillingReconciler = Depends(get_reconciler),
):
    """
    Handle Stripe webhook events.

    Errors:
        400: Invalid signature or payload
        404: Subscription not known yet (Stripe retries)
        503: Billing disabled
    """
    # Raw body is required for signature verification
    body = await request.body()
    headers = dict(request.headers)
    outcome = await run_in_threadpool(reconciler.handle_webhook, headers, body, defer_notifications=True)
    if outcome.notices:
        # Sent after the response is returned
        background_tasks.add_task(reconciler.deliver_notifications, outcome.notices)
    log_event(
        "info",
        "billing.webhook",
        tenant_id=outcome.tenant_id,
        event_type=outcome.event_type,
        extra={"event_id": outcome.event_id, "outcome": outcome.status.value},
    )
    return {"received": True, "event_id": outcome.event_id, "outcome": outcome.status.value}


@router.post("/checkout", response_model=UrlResponse)
def create_checkout(
    payload: CheckoutRequest,
    tenant_id: str = Depends(get_current_tenant_id),
    service: BillingService = Depends(get_billing_service),
):
    url = service.start_checkout(
        tenant_id,
        payload.tier,
        success_url=payload.success_url,
        cancel_url=payload.cancel_url,
    )
    return {"url": url}


@router.post("/portal", response_model=UrlResponse)
def create_portal(
    payload: Optional[PortalRequest] = None,
    tenant_id: str = Depends(get_current_tenant_id),
    service: BillingService = Depends(get_billing_service),
):
    return {"url": service.start_portal(tenant_id, payload.return_url if payload else None)}


@router.get("/invoices", response_model=InvoicesResponse)
def list_invoices(
    tenant_id: str = Depends(get_current_tenant_id),
    service: BillingService = Depends(get_billing_service),
):
    return {"invoices": service.list_invoices(tenant_id)}
