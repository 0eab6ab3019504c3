"""
Stripe billing provider implementation.

Implements the BillingProvider protocol on top of the Stripe SDK.
Webhook bodies are verified with the SDK's signature check and parsed as plain
JSON, so the normalized BillingEvent never depends on StripeObject internals.
"""
import hashlib
import json
import logging
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

import stripe

from estepage.core.config import settings
from estepage.features.billing.provider import (
    BillingEvent,
    BillingEventType,
    BillingProviderError,
    ExternalProcessorError,
    InvalidSignature,
    Invoice,
    ProviderSubscription,
)


logger = logging.getLogger(__name__)

_EVENT_TYPES = {
    "checkout.session.completed": BillingEventType.CHECKOUT_COMPLETED,
    "customer.subscription.updated": BillingEventType.SUBSCRIPTION_UPDATED,
    "customer.subscription.deleted": BillingEventType.SUBSCRIPTION_DELETED,
}


def _get(obj: Any, key: str, default: Any = None) -> Any:
    """Field access that works for dicts and StripeObjects alike."""
    if obj is None:
        return default
    try:
        value = obj[key]
    except (KeyError, IndexError, TypeError):
        return default
    return default if value is None else value


def _from_timestamp(value: Any) -> Optional[datetime]:
    if value in (None, ""):
        return None
    try:
        return datetime.fromtimestamp(int(value), tz=timezone.utc)
    except (TypeError, ValueError, OverflowError):
        return None


def _first_item(subscription: Any) -> Any:
    items = _get(_get(subscription, "items"), "data", [])
    return items[0] if items else None


def _period_end(subscription: Any) -> Optional[datetime]:
    # Newer API versions moved current_period_end onto subscription items
    period_end = _from_timestamp(_get(subscription, "current_period_end"))
    if period_end is None:
        period_end = _from_timestamp(_get(_first_item(subscription), "current_period_end"))
    return period_end


def _price_id(subscription: Any) -> Optional[str]:
    price = _get(_first_item(subscription), "price")
    if isinstance(price, str):
        return price
    return _get(price, "id")


def _customer_id(value: Any) -> Optional[str]:
    if isinstance(value, str):
        return value
    return _get(value, "id")


class StripeProvider:
    """Stripe implementation of BillingProvider protocol."""

    def __init__(
        self,
        secret_key: Optional[str] = None,
        webhook_secret: Optional[str] = None,
        tolerance_seconds: Optional[int] = None,
    ):
        self.secret_key = secret_key or settings.STRIPE_SECRET_KEY
        self.webhook_secret = webhook_secret or settings.STRIPE_WEBHOOK_SECRET
        self.tolerance_seconds = (
            tolerance_seconds if tolerance_seconds is not None else settings.STRIPE_WEBHOOK_TOLERANCE_SECONDS
        )

        if not self.secret_key:
            raise BillingProviderError("STRIPE_SECRET_KEY not configured")

        stripe.api_key = self.secret_key

    # ---- webhooks -------------------------------------------------------

    def parse_event(self, headers: Dict[str, str], body: bytes) -> BillingEvent:
        """Verify Stripe webhook signature and normalize the event."""
        if not self.webhook_secret:
            raise BillingProviderError("STRIPE_WEBHOOK_SECRET not configured")

        sig_header = headers.get("stripe-signature") or headers.get("Stripe-Signature")
        if not sig_header:
            raise InvalidSignature("Missing stripe-signature header")

        payload = body.decode("utf-8") if isinstance(body, bytes) else body
        try:
            stripe.WebhookSignature.verify_header(
                payload, sig_header, self.webhook_secret, self.tolerance_seconds
            )
        except stripe.SignatureVerificationError as e:
            raise InvalidSignature(f"Invalid signature: {e}") from e

        try:
            event = json.loads(payload)
        except ValueError as e:
            raise InvalidSignature(f"Invalid payload: {e}") from e
        if not isinstance(event, dict) or not event.get("id") or not event.get("type"):
            raise InvalidSignature("Invalid payload: missing event id or type")

        payload_hash = hashlib.sha256(payload.encode("utf-8")).hexdigest()
        return self._normalize(event, payload_hash)

    def _normalize(self, event: Dict[str, Any], payload_hash: str) -> BillingEvent:
        raw_type = event["type"]
        event_type = _EVENT_TYPES.get(raw_type, BillingEventType.UNSUPPORTED)
        data = _get(_get(event, "data"), "object", {})
        occurred_at = _from_timestamp(event.get("created")) or datetime.now(timezone.utc)
        metadata = dict(_get(data, "metadata", {}) or {})

        if event_type == BillingEventType.CHECKOUT_COMPLETED:
            subscription_id = _customer_id(_get(data, "subscription"))
            if _get(data, "mode") != "subscription" or not subscription_id:
                # One-off payments carry no entitlement
                event_type = BillingEventType.UNSUPPORTED
                return BillingEvent(
                    event_id=event["id"],
                    event_type=event_type,
                    raw_type=raw_type,
                    occurred_at=occurred_at,
                    payload_hash=payload_hash,
                    metadata=metadata,
                )

            subscription = self._retrieve_subscription(subscription_id)
            return BillingEvent(
                event_id=event["id"],
                event_type=event_type,
                raw_type=raw_type,
                occurred_at=occurred_at,
                payload_hash=payload_hash,
                external_subscription_id=subscription_id,
                external_customer_id=_customer_id(_get(data, "customer")),
                tenant_id=_get(data, "client_reference_id") or metadata.get("tenant_id"),
                external_plan_reference=metadata.get("price_id") or _price_id(subscription),
                processor_status=_get(subscription, "status"),
                cancel_at_period_end=bool(_get(subscription, "cancel_at_period_end", False)),
                period_end=_period_end(subscription),
                metadata=metadata,
            )

        if event_type in (BillingEventType.SUBSCRIPTION_UPDATED, BillingEventType.SUBSCRIPTION_DELETED):
            return BillingEvent(
                event_id=event["id"],
                event_type=event_type,
                raw_type=raw_type,
                occurred_at=occurred_at,
                payload_hash=payload_hash,
                external_subscription_id=_get(data, "id"),
                external_customer_id=_customer_id(_get(data, "customer")),
                tenant_id=metadata.get("tenant_id"),
                external_plan_reference=_price_id(data),
                processor_status=_get(data, "status"),
                cancel_at_period_end=bool(_get(data, "cancel_at_period_end", False)),
                period_end=_period_end(data),
                metadata=metadata,
            )

        return BillingEvent(
            event_id=event["id"],
            event_type=event_type,
            raw_type=raw_type,
            occurred_at=occurred_at,
            payload_hash=payload_hash,
            metadata=metadata,
        )

    def _retrieve_subscription(self, subscription_id: str) -> Any:
        try:
            return stripe.Subscription.retrieve(subscription_id)
        except stripe.StripeError as e:
            logger.warning(
                "[billing] subscription retrieve failed",
                extra={"subscription_id": subscription_id, "error": str(e)},
            )
            raise ExternalProcessorError(f"Stripe subscription retrieve failed: {e}") from e

    # ---- subscription mutations ----------------------------------------

    def cancel_at_period_end(self, external_subscription_id: str, idempotency_key: str) -> ProviderSubscription:
        """Set cancel_at_period_end on the Stripe subscription."""
        try:
            subscription = stripe.Subscription.modify(
                external_subscription_id,
                cancel_at_period_end=True,
                idempotency_key=idempotency_key,
            )
        except stripe.StripeError as e:
            raise ExternalProcessorError(f"Stripe cancellation failed: {e}") from e

        return ProviderSubscription(
            external_subscription_id=_get(subscription, "id", external_subscription_id),
            status=_get(subscription, "status"),
            cancel_at_period_end=bool(_get(subscription, "cancel_at_period_end", True)),
            period_end=_period_end(subscription),
        )

    # ---- sessions and invoices -----------------------------------------

    def create_checkout_session(
        self,
        price_id: str,
        tenant_id: str,
        success_url: str,
        cancel_url: str,
        customer_id: Optional[str] = None,
        customer_email: Optional[str] = None,
    ) -> str:
        """Create Stripe checkout session."""
        params: Dict[str, Any] = {
            "mode": "subscription",
            "payment_method_types": ["card"],
            "line_items": [{"price": price_id, "quantity": 1}],
            "success_url": success_url,
            "cancel_url": cancel_url,
            "client_reference_id": tenant_id,
            "metadata": {"tenant_id": tenant_id, "price_id": price_id},
            "subscription_data": {"metadata": {"tenant_id": tenant_id}},
        }
        if customer_id:
            params["customer"] = customer_id
        elif customer_email:
            params["customer_email"] = customer_email

        try:
            session = stripe.checkout.Session.create(**params)
        except stripe.StripeError as e:
            raise ExternalProcessorError(f"Stripe checkout session creation failed: {e}") from e
        return _get(session, "url")

    def create_portal_session(self, customer_id: str, return_url: str) -> str:
        """Create Stripe billing portal session."""
        try:
            session = stripe.billing_portal.Session.create(
                customer=customer_id,
                return_url=return_url,
            )
        except stripe.StripeError as e:
            raise ExternalProcessorError(f"Stripe portal session creation failed: {e}") from e
        return _get(session, "url")

    def list_invoices(self, customer_id: str, limit: int = 10) -> List[Invoice]:
        try:
            page = stripe.Invoice.list(customer=customer_id, limit=limit)
        except stripe.StripeError as e:
            raise ExternalProcessorError(f"Stripe invoice listing failed: {e}") from e

        return [
            Invoice(
                invoice_id=_get(inv, "id"),
                number=_get(inv, "number"),
                status=_get(inv, "status"),
                amount_due=int(_get(inv, "amount_due", 0)),
                amount_paid=int(_get(inv, "amount_paid", 0)),
                currency=str(_get(inv, "currency", "")).lower(),
                created_at=_from_timestamp(_get(inv, "created")),
                hosted_invoice_url=_get(inv, "hosted_invoice_url"),
                invoice_pdf=_get(inv, "invoice_pdf"),
            )
            for inv in _get(page, "data", [])
        ]
