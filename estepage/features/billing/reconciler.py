"""
estepage/features/billing/reconciler.py

Billing reconciliation: the only writer of tenant_subscriptions.

Turns the processor's at-least-once, possibly reordered webhook stream (plus
the tenant's own cancellation requests) into local subscription state.

Handles:
- Signature verification (delegated to the provider) before any mutation
- Idempotency via the billing_events ledger
- Stale and out-of-order events
- Two-phase cancellation (processor first, then local write)
- Post-commit notifications that never roll back state
"""

import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from enum import Enum
from typing import Any, Callable, Dict, Iterable, List, Optional, Tuple

from sqlalchemy import insert, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from estepage.core.config import settings
from estepage.core.database import (
    SessionFactory,
    as_utc,
    billing_events,
    get_db_session,
    tenant_subscriptions,
    utc_now,
)
from estepage.core.errors import AppError, BillingDisabledError
from estepage.features.billing.provider import BillingEvent, BillingEventType, BillingProvider
from estepage.features.notifications.email import Notifier, get_notifier
from estepage.features.plans.catalog import PlanCatalog, get_plan_catalog
from estepage.features.subscriptions.queries import (
    find_by_external_id,
    find_current_subscription,
    find_latest_subscription,
    list_by_status_and_period_end,
)
from estepage.features.tenants.service import TenantDirectory
from estepage.models.plan import PlanTier
from estepage.models.subscription import SubscriptionStatus, TenantSubscription


logger = logging.getLogger(__name__)


class UnknownSubscriptionReference(AppError):
    """Event references a subscription we have not recorded yet; the processor should retry."""
    code = "unknown_subscription"
    status_code = 404


class NoActiveSubscription(AppError):
    code = "no_active_subscription"
    status_code = 404


class ReconcileStatus(str, Enum):
    APPLIED = "applied"
    DUPLICATE = "duplicate"  # event id already processed
    STALE = "stale"  # older than the last event applied to the record
    IGNORED = "ignored"  # verified, but no state change follows from it


@dataclass(frozen=True)
class Notice:
    """Tenant email owed for a committed state change."""
    kind: str  # started, cancelled
    tenant_id: str
    plan_reference: Optional[str]
    period_end: Optional[datetime]
    is_renewal: bool = False


@dataclass(frozen=True)
class ReconcileOutcome:
    event_id: str
    status: ReconcileStatus
    event_type: str
    tenant_id: Optional[str] = None
    external_subscription_id: Optional[str] = None
    subscription_status: Optional[SubscriptionStatus] = None
    notices: Tuple[Notice, ...] = field(default=(), repr=False, compare=False)

    def as_dict(self) -> Dict[str, Any]:
        return {
            "event_id": self.event_id,
            "outcome": self.status.value,
            "event_type": self.event_type,
            "subscription_status": self.subscription_status.value if self.subscription_status else None,
        }


@dataclass(frozen=True)
class CancellationResult:
    status: SubscriptionStatus
    period_end: Optional[datetime]
    days_remaining: int
    cancellation_requested_at: datetime
    tier: PlanTier

    def as_dict(self) -> Dict[str, Any]:
        return {
            "status": self.status.value,
            "period_end": self.period_end.isoformat() if self.period_end else None,
            "days_remaining": self.days_remaining,
            "cancellation_requested_at": self.cancellation_requested_at.isoformat(),
            "tier": self.tier.value,
        }


@dataclass
class _Transition:
    status: ReconcileStatus
    subscription: Optional[TenantSubscription] = None
    subscription_status: Optional[SubscriptionStatus] = None
    notices: List[Notice] = field(default_factory=list)


def days_remaining(period_end: Optional[datetime], now: datetime) -> int:
    """Whole days left until period_end, never negative."""
    if period_end is None:
        return 0
    return max(0, int((period_end - now).total_seconds() // 86400))


def cancellation_idempotency_key(record: TenantSubscription) -> str:
    """Processor idempotency key: shared by retries of one attempt, new after any write to the record."""
    version = record.updated_at.strftime("%Y%m%dT%H%M%S%f") if record.updated_at else "0"
    return f"cancel-{record.external_subscription_id}-{version}"


class BillingReconciler:
    """Applies billing events and cancellation requests to tenant_subscriptions."""

    def __init__(
        self,
        provider: Optional[BillingProvider] = None,
        notifier: Optional[Notifier] = None,
        catalog: Optional[PlanCatalog] = None,
        tenants: Optional[TenantDirectory] = None,
        session_factory: SessionFactory = get_db_session,
        clock: Callable[[], datetime] = utc_now,
    ):
        self.provider = provider
        self.notifier = notifier or get_notifier()
        self.catalog = catalog or get_plan_catalog()
        self.tenants = tenants or TenantDirectory(session_factory)
        self._session_factory = session_factory
        self._clock = clock

    def _require_provider(self) -> BillingProvider:
        if self.provider is None:
            raise BillingDisabledError("Billing is not enabled")
        return self.provider

    # ---- webhooks -------------------------------------------------------

    def handle_webhook(
        self, headers: Dict[str, str], body: bytes, defer_notifications: bool = False
    ) -> ReconcileOutcome:
        """
        Verify, normalize and apply one webhook delivery.

        With defer_notifications the caller owns delivery of `outcome.notices`
        (the webhook route hands them to a background task so the processor
        is acknowledged without waiting on the email provider).

        Raises:
            InvalidSignature: Unsigned, wrongly signed or malformed body (nothing written)
            UnknownSubscriptionReference: Event arrived before its subscription exists
            BillingDisabledError: No provider configured
        """
        event = self._require_provider().parse_event(headers, body)
        return self.apply(event, defer_notifications=defer_notifications)

    def apply(self, event: BillingEvent, defer_notifications: bool = False) -> ReconcileOutcome:
        """Apply a verified event exactly once."""
        logger.info(
            "[billing] event received",
            extra={
                "event_id": event.event_id,
                "event_type": event.raw_type,
                "subscription_id": event.external_subscription_id,
            },
        )
        now = self._clock()

        try:
            with self._session_factory() as session:
                ledger = session.execute(
                    select(billing_events.c.processed, billing_events.c.attempts)
                    .where(billing_events.c.external_event_id == event.event_id)
                    .with_for_update()
                ).first()
                if ledger is not None and ledger.processed:
                    logger.info("[billing] duplicate event skipped", extra={"event_id": event.event_id})
                    return self._outcome(event, _Transition(ReconcileStatus.DUPLICATE))

                if ledger is None:
                    session.execute(
                        insert(billing_events).values(
                            external_event_id=event.event_id,
                            event_type=event.raw_type,
                            external_subscription_id=event.external_subscription_id,
                            payload_hash=event.payload_hash,
                            received_at=now,
                            attempts=1,
                        )
                    )
                else:
                    session.execute(
                        update(billing_events)
                        .where(billing_events.c.external_event_id == event.event_id)
                        .values(attempts=ledger.attempts + 1)
                    )

                transition = self._transition(session, event, now)

                session.execute(
                    update(billing_events)
                    .where(billing_events.c.external_event_id == event.event_id)
                    .values(processed=True, processed_at=now, error=None)
                )
        except UnknownSubscriptionReference as e:
            self._record_failure(event, e.message, now)
            raise
        except IntegrityError:
            if self._already_processed(event.event_id):
                logger.info("[billing] concurrent duplicate delivery", extra={"event_id": event.event_id})
                return self._outcome(event, _Transition(ReconcileStatus.DUPLICATE))
            raise

        outcome = self._outcome(event, transition)
        logger.info(
            "[billing] event reconciled",
            extra={
                "event_id": event.event_id,
                "outcome": outcome.status.value,
                "tenant_id": outcome.tenant_id,
                "subscription_status": outcome.subscription_status.value if outcome.subscription_status else None,
            },
        )
        if not defer_notifications:
            self.deliver_notifications(outcome.notices)
        return outcome

    def _outcome(self, event: BillingEvent, transition: _Transition) -> ReconcileOutcome:
        subscription = transition.subscription
        return ReconcileOutcome(
            event_id=event.event_id,
            status=transition.status,
            event_type=event.event_type.value,
            tenant_id=subscription.tenant_id if subscription else event.tenant_id,
            external_subscription_id=event.external_subscription_id,
            subscription_status=transition.subscription_status,
            notices=tuple(transition.notices),
        )

    def _already_processed(self, event_id: str) -> bool:
        with self._session_factory() as session:
            return bool(
                session.execute(
                    select(billing_events.c.processed).where(billing_events.c.external_event_id == event_id)
                ).scalar()
            )

    def _record_failure(self, event: BillingEvent, error: str, now: datetime) -> None:
        """Keep an unprocessed ledger row with the error so redelivery is visible."""
        with self._session_factory() as session:
            attempts = session.execute(
                select(billing_events.c.attempts).where(billing_events.c.external_event_id == event.event_id)
            ).scalar()
            if attempts is None:
                session.execute(
                    insert(billing_events).values(
                        external_event_id=event.event_id,
                        event_type=event.raw_type,
                        external_subscription_id=event.external_subscription_id,
                        payload_hash=event.payload_hash,
                        received_at=now,
                        attempts=1,
                        error=error,
                    )
                )
            else:
                session.execute(
                    update(billing_events)
                    .where(billing_events.c.external_event_id == event.event_id)
                    .values(attempts=attempts + 1, error=error)
                )
        logger.warning(
            "[billing] event deferred",
            extra={"event_id": event.event_id, "subscription_id": event.external_subscription_id, "error": error},
        )

    def _transition(self, session: Session, event: BillingEvent, now: datetime) -> _Transition:
        if event.event_type == BillingEventType.CHECKOUT_COMPLETED:
            return self._apply_checkout(session, event, now)
        if event.event_type == BillingEventType.SUBSCRIPTION_UPDATED:
            return self._apply_updated(session, event, now)
        if event.event_type == BillingEventType.SUBSCRIPTION_DELETED:
            return self._apply_deleted(session, event, now)
        return _Transition(ReconcileStatus.IGNORED)

    def _load_known(self, session: Session, event: BillingEvent) -> TenantSubscription:
        if not event.external_subscription_id:
            raise UnknownSubscriptionReference(f"Event {event.event_id} carries no subscription id")
        record = find_by_external_id(session, event.external_subscription_id, for_update=True)
        if record is None:
            raise UnknownSubscriptionReference(
                f"Subscription {event.external_subscription_id} is not known yet",
                details={"event_id": event.event_id},
            )
        return record

    @staticmethod
    def _is_stale(record: TenantSubscription, event: BillingEvent) -> bool:
        return record.last_event_at is not None and as_utc(event.occurred_at) < record.last_event_at

    def _write(self, session: Session, record_id: int, now: datetime, **values: Any) -> None:
        session.execute(
            update(tenant_subscriptions)
            .where(tenant_subscriptions.c.id == record_id)
            .values(updated_at=now, **values)
        )

    def _apply_checkout(self, session: Session, event: BillingEvent, now: datetime) -> _Transition:
        if not event.external_subscription_id or not event.tenant_id:
            logger.error(
                "[billing] checkout without subscription or tenant reference",
                extra={"event_id": event.event_id, "tenant_id": event.tenant_id},
            )
            return _Transition(ReconcileStatus.IGNORED)

        existing = find_by_external_id(session, event.external_subscription_id, for_update=True)
        if existing is not None:
            # Redelivered under a new event id, or arriving after the record ended
            return _Transition(ReconcileStatus.IGNORED, existing, existing.status)

        previous = find_latest_subscription(session, event.tenant_id)
        current = find_current_subscription(session, event.tenant_id, for_update=True)
        if current is not None:
            self._write(session, current.id, now, status=SubscriptionStatus.CANCELLED.value)
            logger.info(
                "[billing] superseded current subscription",
                extra={
                    "tenant_id": event.tenant_id,
                    "subscription_id": current.external_subscription_id,
                    "replaced_by": event.external_subscription_id,
                },
            )

        session.execute(
            insert(tenant_subscriptions).values(
                tenant_id=event.tenant_id,
                external_subscription_id=event.external_subscription_id,
                external_customer_id=event.external_customer_id,
                status=SubscriptionStatus.ACTIVE.value,
                external_plan_reference=event.external_plan_reference,
                period_end=as_utc(event.period_end),
                last_event_at=as_utc(event.occurred_at),
                created_at=now,
                updated_at=now,
            )
        )
        created = find_by_external_id(session, event.external_subscription_id)
        notice = Notice(
            kind="started",
            tenant_id=event.tenant_id,
            plan_reference=event.external_plan_reference,
            period_end=as_utc(event.period_end),
            is_renewal=previous is not None,
        )
        return _Transition(ReconcileStatus.APPLIED, created, SubscriptionStatus.ACTIVE, [notice])

    def _apply_updated(self, session: Session, event: BillingEvent, now: datetime) -> _Transition:
        record = self._load_known(session, event)
        if self._is_stale(record, event):
            logger.info(
                "[billing] stale event ignored",
                extra={"event_id": event.event_id, "subscription_id": record.external_subscription_id},
            )
            return _Transition(ReconcileStatus.STALE, record, record.status)
        if record.status.is_terminal:
            return _Transition(ReconcileStatus.IGNORED, record, record.status)

        if event.processor_status == "canceled":
            return self._cancel(session, record, event, now)
        if event.processor_status == "incomplete_expired":
            self._write(
                session,
                record.id,
                now,
                status=SubscriptionStatus.EXPIRED.value,
                last_event_at=as_utc(event.occurred_at),
            )
            return _Transition(ReconcileStatus.APPLIED, record, SubscriptionStatus.EXPIRED)

        period_end = as_utc(event.period_end) or record.period_end
        values: Dict[str, Any] = {
            "period_end": period_end,
            "external_plan_reference": event.external_plan_reference or record.external_plan_reference,
            "last_event_at": as_utc(event.occurred_at),
        }
        if event.external_customer_id and not record.external_customer_id:
            values["external_customer_id"] = event.external_customer_id

        new_status = record.status
        notices: List[Notice] = []
        if event.cancel_at_period_end:
            new_status = SubscriptionStatus.CANCELLING
            if record.status == SubscriptionStatus.ACTIVE:
                values["cancellation_requested_at"] = as_utc(event.occurred_at)
        elif event.processor_status in (None, "active", "trialing"):
            new_status = SubscriptionStatus.ACTIVE
            renewed = (
                record.status == SubscriptionStatus.ACTIVE
                and record.period_end is not None
                and period_end is not None
                and period_end > record.period_end
            )
            if record.status == SubscriptionStatus.CANCELLING:
                values["cancellation_requested_at"] = None
            if renewed or record.status == SubscriptionStatus.CANCELLING:
                notices.append(Notice(
                    kind="started",
                    tenant_id=record.tenant_id,
                    plan_reference=values["external_plan_reference"],
                    period_end=period_end,
                    is_renewal=True,
                ))
        # past_due, unpaid and incomplete keep the current status until deletion

        values["status"] = new_status.value
        self._write(session, record.id, now, **values)
        return _Transition(ReconcileStatus.APPLIED, record, new_status, notices)

    def _apply_deleted(self, session: Session, event: BillingEvent, now: datetime) -> _Transition:
        record = self._load_known(session, event)
        if record.status.is_terminal:
            return _Transition(ReconcileStatus.IGNORED, record, record.status)
        # Deletion is final for the subscription, so it applies even if out of order
        return self._cancel(session, record, event, now)

    def _cancel(self, session: Session, record: TenantSubscription, event: BillingEvent, now: datetime) -> _Transition:
        last_event_at = max(
            filter(None, [record.last_event_at, as_utc(event.occurred_at)]),
            default=None,
        )
        self._write(
            session,
            record.id,
            now,
            status=SubscriptionStatus.CANCELLED.value,
            last_event_at=last_event_at,
        )
        notice = Notice(
            kind="cancelled",
            tenant_id=record.tenant_id,
            plan_reference=record.external_plan_reference,
            period_end=record.period_end,
        )
        return _Transition(ReconcileStatus.APPLIED, record, SubscriptionStatus.CANCELLED, [notice])

    # ---- notifications --------------------------------------------------

    def deliver_notifications(self, notices: Iterable[Notice]) -> None:
        """Send emails for already-committed changes. Failures are logged, never raised."""
        for notice in notices:
            try:
                tenant = self.tenants.get_tenant(notice.tenant_id)
                if tenant is None:
                    logger.warning("[billing] notification skipped, tenant not found", extra={"tenant_id": notice.tenant_id})
                    continue
                tier = self.catalog.tier_from_external_reference(notice.plan_reference)
                plan_name = self.catalog.limits_for(tier).name
                if notice.kind == "cancelled":
                    self.notifier.send_subscription_cancelled(tenant, plan_name, notice.period_end)
                else:
                    self.notifier.send_subscription_started(tenant, plan_name, notice.period_end, notice.is_renewal)
            except Exception:
                # State is already committed
                logger.exception(
                    "[billing] notification failed",
                    extra={"tenant_id": notice.tenant_id, "kind": notice.kind},
                )

    # ---- tenant-initiated cancellation ----------------------------------

    def request_cancellation(self, tenant_id: str, now: Optional[datetime] = None) -> CancellationResult:
        """
        Cancel at period end.

        The processor is told first; only when it accepts is the local record
        moved to CANCELLING. Access continues until period_end.

        Raises:
            NoActiveSubscription: Tenant has no ACTIVE subscription
            ExternalProcessorError: Processor call failed (nothing written locally)
        """
        provider = self._require_provider()
        now = as_utc(now) if now is not None else self._clock()

        with self._session_factory() as session:
            record = find_current_subscription(session, tenant_id)
        if record is None or record.status != SubscriptionStatus.ACTIVE:
            raise NoActiveSubscription("No active subscription found")

        remote = provider.cancel_at_period_end(
            record.external_subscription_id,
            idempotency_key=cancellation_idempotency_key(record),
        )

        with self._session_factory() as session:
            fresh = find_by_external_id(session, record.external_subscription_id, for_update=True)
            if fresh is None or fresh.status.is_terminal:
                raise NoActiveSubscription("Subscription ended while cancelling")
            period_end = as_utc(remote.period_end) or fresh.period_end
            requested_at = fresh.cancellation_requested_at or now
            # Events the processor emitted before this request are now stale
            last_event_at = max(fresh.last_event_at, now) if fresh.last_event_at else now
            self._write(
                session,
                fresh.id,
                now,
                status=SubscriptionStatus.CANCELLING.value,
                cancellation_requested_at=requested_at,
                period_end=period_end,
                last_event_at=last_event_at,
            )

        tier = self.catalog.tier_from_external_reference(record.external_plan_reference)
        logger.info(
            "[billing] cancellation requested",
            extra={"tenant_id": tenant_id, "subscription_id": record.external_subscription_id, "tier": tier.value},
        )
        return CancellationResult(
            status=SubscriptionStatus.CANCELLING,
            period_end=period_end,
            days_remaining=days_remaining(period_end, now),
            cancellation_requested_at=requested_at,
            tier=tier,
        )

    # ---- lapsed cancellations -------------------------------------------

    def expire_lapsed(self, now: Optional[datetime] = None, grace_hours: Optional[int] = None) -> int:
        """Move CANCELLING records whose period ended more than the grace window ago to EXPIRED."""
        now = as_utc(now) if now is not None else self._clock()
        grace = settings.EXPIRY_GRACE_HOURS if grace_hours is None else grace_hours
        cutoff = now - timedelta(hours=grace)

        expired = 0
        with self._session_factory() as session:
            lapsed = list_by_status_and_period_end(
                session,
                [SubscriptionStatus.CANCELLING.value],
                period_end_before=cutoff,
            )
            for record in lapsed:
                result = session.execute(
                    update(tenant_subscriptions)
                    .where(tenant_subscriptions.c.id == record.id)
                    .where(tenant_subscriptions.c.status == SubscriptionStatus.CANCELLING.value)
                    .values(status=SubscriptionStatus.EXPIRED.value, updated_at=now)
                )
                expired += result.rowcount or 0

        if expired:
            logger.info("[billing] lapsed subscriptions expired", extra={"count": expired})
        return expired
