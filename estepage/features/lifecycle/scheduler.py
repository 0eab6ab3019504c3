"""
Daily subscription lifecycle sweep.

- Expiry warnings: ACTIVE records whose period ends exactly N days from the
  run date (UTC) get one email per threshold. Missed days are not caught up.
- Lapsed cancellations: delegated to BillingReconciler.expire_lapsed, which
  owns all subscription writes.

At-most-once delivery per (record, threshold, period-end day) is enforced by
the subscription_notices unique key, so overlapping instances cannot both send.
"""
import json
import logging
import threading
from dataclasses import asdict, dataclass
from datetime import datetime, time, timedelta, timezone
from typing import Any, Callable, Dict, List, Optional

from sqlalchemy import delete, insert
from sqlalchemy.exc import IntegrityError, SQLAlchemyError

from estepage.core.config import settings
from estepage.core.database import (
    SessionFactory,
    as_utc,
    get_db_session,
    lifecycle_runs,
    subscription_notices,
    utc_now,
)
from estepage.features.billing.reconciler import BillingReconciler
from estepage.features.entitlements.service import EntitlementResolver
from estepage.features.notifications.email import Notifier, get_notifier
from estepage.features.subscriptions.queries import list_by_status_and_period_end
from estepage.features.tenants.service import TenantDirectory
from estepage.models.subscription import SubscriptionStatus, TenantSubscription


logger = logging.getLogger(__name__)

JOB_NAME = "subscription.lifecycle"
EXPIRY_WARNING = "expiry_warning"


@dataclass
class SweepReport:
    started_at: Optional[datetime] = None
    finished_at: Optional[datetime] = None
    skipped: bool = False
    candidates: int = 0
    warnings_sent: int = 0
    warnings_already_sent: int = 0
    warnings_failed: int = 0
    expired: int = 0
    status: str = "success"

    def as_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        for key in ("started_at", "finished_at"):
            if data[key] is not None:
                data[key] = data[key].isoformat()
        return data


def _day_window(day) -> tuple:
    start = datetime.combine(day, time.min, tzinfo=timezone.utc)
    return start, start + timedelta(days=1)


class LifecycleScheduler:
    def __init__(
        self,
        reconciler: BillingReconciler,
        resolver: Optional[EntitlementResolver] = None,
        notifier: Optional[Notifier] = None,
        tenants: Optional[TenantDirectory] = None,
        session_factory: SessionFactory = get_db_session,
        warning_days: Optional[List[int]] = None,
        run_hour_utc: Optional[int] = None,
        clock: Callable[[], datetime] = utc_now,
    ):
        self.reconciler = reconciler
        self.resolver = resolver or EntitlementResolver(reconciler.catalog, session_factory, clock=clock)
        self.notifier = notifier or get_notifier()
        self.tenants = tenants or TenantDirectory(session_factory)
        self._session_factory = session_factory
        self.warning_days = warning_days if warning_days is not None else settings.expiry_warning_days()
        self.run_hour_utc = settings.LIFECYCLE_RUN_HOUR_UTC if run_hour_utc is None else run_hour_utc
        self._clock = clock
        self._lock = threading.Lock()

    def run_once(self, now: Optional[datetime] = None) -> SweepReport:
        """Run one sweep; returns immediately with skipped=True if one is in flight."""
        if not self._lock.acquire(blocking=False):
            logger.info("[lifecycle] sweep already running, skipping")
            return SweepReport(skipped=True, status="skipped")
        try:
            return self._sweep(as_utc(now) if now is not None else self._clock())
        finally:
            self._lock.release()

    def _sweep(self, now: datetime) -> SweepReport:
        report = SweepReport(started_at=now)
        logger.info("[lifecycle] sweep started", extra={"thresholds": self.warning_days})

        for threshold in self.warning_days:
            target_day = (now + timedelta(days=threshold)).date()
            day_start, day_end = _day_window(target_day)
            try:
                with self._session_factory() as session:
                    records = list_by_status_and_period_end(
                        session,
                        [SubscriptionStatus.ACTIVE.value],
                        period_end_from=day_start,
                        period_end_before=day_end,
                    )
            except SQLAlchemyError:
                logger.exception("[lifecycle] candidate query failed", extra={"threshold_days": threshold})
                report.status = "partial"
                continue

            logger.info(
                "[lifecycle] expiring subscriptions found",
                extra={"threshold_days": threshold, "count": len(records)},
            )
            for record in records:
                report.candidates += 1
                self._warn(record, threshold, target_day, report)

        try:
            report.expired = self.reconciler.expire_lapsed(now)
        except SQLAlchemyError:
            logger.exception("[lifecycle] lapsed expiry failed")
            report.status = "partial"

        if report.warnings_failed and report.status == "success":
            report.status = "partial"
        report.finished_at = self._clock()
        self._record_run(report)
        logger.info("[lifecycle] sweep finished", extra=report.as_dict())
        return report

    def _claim(self, record: TenantSubscription, threshold: int, day) -> bool:
        try:
            with self._session_factory() as session:
                session.execute(
                    insert(subscription_notices).values(
                        subscription_id=record.id,
                        kind=EXPIRY_WARNING,
                        threshold_days=threshold,
                        period_end_date=day,
                        sent_at=utc_now(),
                    )
                )
            return True
        except IntegrityError:
            return False

    def _release(self, record: TenantSubscription, threshold: int, day) -> None:
        with self._session_factory() as session:
            session.execute(
                delete(subscription_notices)
                .where(subscription_notices.c.subscription_id == record.id)
                .where(subscription_notices.c.kind == EXPIRY_WARNING)
                .where(subscription_notices.c.threshold_days == threshold)
                .where(subscription_notices.c.period_end_date == day)
            )

    def _warn(self, record: TenantSubscription, threshold: int, day, report: SweepReport) -> None:
        log_extra = {"tenant_id": record.tenant_id, "subscription_id": record.id, "threshold_days": threshold}
        try:
            claimed = self._claim(record, threshold, day)
        except SQLAlchemyError:
            logger.exception("[lifecycle] notice claim failed", extra=log_extra)
            report.warnings_failed += 1
            return
        if not claimed:
            report.warnings_already_sent += 1
            return

        try:
            tenant = self.tenants.get_tenant(record.tenant_id)
            if tenant is None:
                raise LookupError(f"tenant {record.tenant_id} not found")
            catalog = self.resolver.catalog
            plan_name = catalog.limits_for(catalog.tier_from_external_reference(record.external_plan_reference)).name
            self.notifier.send_expiry_warning(tenant, plan_name, record.period_end, threshold)
        except Exception:
            logger.exception("[lifecycle] expiry warning failed", extra=log_extra)
            report.warnings_failed += 1
            try:
                self._release(record, threshold, day)
            except SQLAlchemyError:
                logger.exception("[lifecycle] could not release notice claim", extra=log_extra)
            return

        report.warnings_sent += 1
        logger.info("[lifecycle] expiry warning sent", extra=log_extra)

    def _record_run(self, report: SweepReport) -> None:
        stats = {
            "candidates": report.candidates,
            "warnings_sent": report.warnings_sent,
            "warnings_already_sent": report.warnings_already_sent,
            "warnings_failed": report.warnings_failed,
            "expired": report.expired,
        }
        try:
            with self._session_factory() as session:
                session.execute(
                    insert(lifecycle_runs).values(
                        job_name=JOB_NAME,
                        started_at=report.started_at,
                        finished_at=report.finished_at,
                        status=report.status,
                        stats_json=json.dumps(stats),
                    )
                )
        except SQLAlchemyError:
            logger.exception("[lifecycle] could not record run")

    # ---- cadence --------------------------------------------------------

    def seconds_until_next_run(self, now: Optional[datetime] = None) -> float:
        now = as_utc(now) if now is not None else self._clock()
        next_run = now.replace(hour=self.run_hour_utc, minute=0, second=0, microsecond=0)
        if next_run <= now:
            next_run += timedelta(days=1)
        return (next_run - now).total_seconds()

    def run_forever(self, stop_event: Optional[threading.Event] = None) -> None:
        """Run one sweep per day at run_hour_utc until stop_event is set."""
        stop = stop_event or threading.Event()
        logger.info("[lifecycle] scheduler started", extra={"run_hour_utc": self.run_hour_utc})
        while not stop.is_set():
            wait = self.seconds_until_next_run()
            if stop.wait(wait):
                break
            try:
                self.run_once()
            except Exception:
                # Next day gets a fresh attempt
                logger.exception("[lifecycle] sweep crashed")
        logger.info("[lifecycle] scheduler stopped")
