"""Test doubles and seed helpers shared by the test suite."""
import hashlib
import hmac
import time
from contextlib import contextmanager
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List, Optional
from uuid import uuid4

from sqlalchemy import insert, select
from sqlalchemy.exc import OperationalError

from estepage.core.database import listing_images, listings, tenant_subscriptions, tenants
from estepage.features.billing.provider import (
    BillingEvent,
    BillingEventType,
    ExternalProcessorError,
    Invoice,
    ProviderSubscription,
)
from estepage.models.subscription import SubscriptionStatus, TenantSubscription


NOW = datetime(2026, 3, 1, 12, 0, tzinfo=timezone.utc)


class FakeProvider:
    """In-memory BillingProvider."""

    def __init__(self, period_end: Optional[datetime] = None, fail_cancel: bool = False):
        self.period_end = period_end
        self.fail_cancel = fail_cancel
        self.cancel_calls: List[Dict[str, str]] = []
        self.checkout_calls: List[Dict[str, Any]] = []
        self.portal_calls: List[Dict[str, str]] = []
        self.events: List[BillingEvent] = []
        self.invoices: List[Invoice] = []

    def parse_event(self, headers, body):
        return self.events.pop(0)

    def cancel_at_period_end(self, external_subscription_id, idempotency_key):
        self.cancel_calls.append({"id": external_subscription_id, "idempotency_key": idempotency_key})
        if self.fail_cancel:
            raise ExternalProcessorError("card_declined")
        return ProviderSubscription(
            external_subscription_id=external_subscription_id,
            status="active",
            cancel_at_period_end=True,
            period_end=self.period_end,
        )

    def create_checkout_session(self, price_id, tenant_id, success_url, cancel_url, customer_id=None, customer_email=None):
        self.checkout_calls.append({
            "price_id": price_id,
            "tenant_id": tenant_id,
            "customer_id": customer_id,
            "customer_email": customer_email,
        })
        return f"https://checkout.example/{price_id}"

    def create_portal_session(self, customer_id, return_url):
        self.portal_calls.append({"customer_id": customer_id, "return_url": return_url})
        return f"https://portal.example/{customer_id}"

    def list_invoices(self, customer_id, limit=10):
        return self.invoices[:limit]


class RecordingNotifier:
    def __init__(self, fail: bool = False):
        self.fail = fail
        self.sent: List[Dict[str, Any]] = []

    def _record(self, **kwargs):
        if self.fail:
            raise RuntimeError("smtp down")
        self.sent.append(kwargs)

    def send_subscription_started(self, tenant, plan_name, period_end, is_renewal):
        self._record(kind="started", tenant_id=tenant.tenant_id, plan=plan_name, is_renewal=is_renewal)

    def send_subscription_cancelled(self, tenant, plan_name, period_end):
        self._record(kind="cancelled", tenant_id=tenant.tenant_id, plan=plan_name)

    def send_expiry_warning(self, tenant, plan_name, period_end, days_left):
        self._record(kind="expiry_warning", tenant_id=tenant.tenant_id, plan=plan_name, days_left=days_left)

    def kinds(self) -> List[str]:
        return [item["kind"] for item in self.sent]


@contextmanager
def broken_session():
    raise OperationalError("SELECT 1", {}, Exception("database is down"))
    yield  # pragma: no cover


def make_event(
    event_type: BillingEventType,
    *,
    event_id: Optional[str] = None,
    subscription_id: str = "sub_1",
    tenant_id: Optional[str] = "tenant_a",
    plan_reference: Optional[str] = "pro-price-id",
    status: Optional[str] = "active",
    cancel_at_period_end: bool = False,
    period_end: Optional[datetime] = None,
    occurred_at: Optional[datetime] = None,
    customer_id: Optional[str] = "cus_1",
) -> BillingEvent:
    return BillingEvent(
        event_id=event_id or f"evt_{uuid4().hex[:12]}",
        event_type=event_type,
        raw_type=event_type.value,
        occurred_at=occurred_at or NOW,
        payload_hash=hashlib.sha256(b"{}").hexdigest(),
        external_subscription_id=subscription_id,
        external_customer_id=customer_id,
        tenant_id=tenant_id,
        external_plan_reference=plan_reference,
        processor_status=status,
        cancel_at_period_end=cancel_at_period_end,
        period_end=period_end if period_end is not None else NOW + timedelta(days=30),
    )


def sign_payload(payload: str, secret: str, timestamp: Optional[int] = None) -> str:
    """Stripe-Signature header value for `payload`."""
    ts = int(time.time()) if timestamp is None else timestamp
    signature = hmac.new(secret.encode("utf-8"), f"{ts}.{payload}".encode("utf-8"), hashlib.sha256).hexdigest()
    return f"t={ts},v1={signature}"


def seed_tenant(session_factory, tenant_id: str = "tenant_a", email: Optional[str] = None) -> None:
    with session_factory() as session:
        session.execute(
            insert(tenants).values(
                tenant_id=tenant_id,
                email=email or f"{tenant_id}@example.com",
                company_name=f"{tenant_id} Realty",
            )
        )


def seed_listings(session_factory, tenant_id: str, count: int) -> List[int]:
    ids = []
    with session_factory() as session:
        for i in range(count):
            result = session.execute(insert(listings).values(tenant_id=tenant_id, title=f"Listing {i}"))
            ids.append(result.inserted_primary_key[0])
    return ids


def seed_images(session_factory, listing_id: int, count: int) -> None:
    with session_factory() as session:
        for i in range(count):
            session.execute(
                insert(listing_images).values(listing_id=listing_id, url=f"https://img.example/{listing_id}/{i}", position=i)
            )


def seed_subscription(
    session_factory,
    tenant_id: str = "tenant_a",
    external_subscription_id: str = "sub_1",
    status: SubscriptionStatus = SubscriptionStatus.ACTIVE,
    plan_reference: Optional[str] = "pro-price-id",
    period_end: Optional[datetime] = None,
    last_event_at: Optional[datetime] = None,
    customer_id: Optional[str] = "cus_1",
) -> TenantSubscription:
    with session_factory() as session:
        session.execute(
            insert(tenant_subscriptions).values(
                tenant_id=tenant_id,
                external_subscription_id=external_subscription_id,
                external_customer_id=customer_id,
                status=status.value,
                external_plan_reference=plan_reference,
                period_end=period_end if period_end is not None else NOW + timedelta(days=30),
                last_event_at=last_event_at,
                created_at=NOW - timedelta(days=1),
                updated_at=NOW - timedelta(days=1),
            )
        )
    return load_subscription(session_factory, external_subscription_id)


def load_subscription(session_factory, external_subscription_id: str) -> Optional[TenantSubscription]:
    with session_factory() as session:
        row = session.execute(
            select(tenant_subscriptions).where(
                tenant_subscriptions.c.external_subscription_id == external_subscription_id
            )
        ).first()
    return TenantSubscription.from_row(row) if row else None
