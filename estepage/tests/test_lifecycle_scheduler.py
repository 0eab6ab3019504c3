"""
Daily lifecycle sweep: expiry warnings, lapsed expiry, single-flight and cadence.
"""
import json
import threading
from datetime import datetime, timedelta, timezone

import pytest
from sqlalchemy import select
from sqlalchemy.exc import OperationalError

from estepage.core.database import lifecycle_runs, subscription_notices
from estepage.features.lifecycle.scheduler import LifecycleScheduler
from estepage.models.subscription import SubscriptionStatus
from estepage.tests.fakes import NOW, RecordingNotifier, load_subscription, seed_subscription, seed_tenant


@pytest.fixture
def scheduler(reconciler, resolver, notifier, session_factory):
    return LifecycleScheduler(
        reconciler,
        resolver=resolver,
        notifier=notifier,
        session_factory=session_factory,
        warning_days=[7, 3],
        run_hour_utc=9,
        clock=lambda: NOW,
    )


def test_warns_at_each_threshold(scheduler, session_factory, notifier):
    for tenant_id, days in [("t7", 7), ("t3", 3), ("t5", 5)]:
        seed_tenant(session_factory, tenant_id)
        seed_subscription(session_factory, tenant_id, f"sub_{tenant_id}", period_end=NOW + timedelta(days=days, hours=3))

    report = scheduler.run_once(NOW)

    assert report.warnings_sent == 2
    assert sorted((s["tenant_id"], s["days_left"]) for s in notifier.sent) == [("t3", 3), ("t7", 7)]
    assert report.status == "success"


def test_exact_date_match_uses_utc_day(scheduler, session_factory, notifier):
    seed_tenant(session_factory, "early")
    seed_tenant(session_factory, "late")
    target = (NOW + timedelta(days=7)).date()
    start = datetime(target.year, target.month, target.day, tzinfo=timezone.utc)
    seed_subscription(session_factory, "early", "sub_early", period_end=start)
    seed_subscription(session_factory, "late", "sub_late", period_end=start + timedelta(hours=23, minutes=59))
    seed_tenant(session_factory, "next_day")
    seed_subscription(session_factory, "next_day", "sub_next", period_end=start + timedelta(days=1))

    scheduler.run_once(NOW)

    assert sorted(s["tenant_id"] for s in notifier.sent) == ["early", "late"]


def test_only_active_records_are_warned(scheduler, session_factory, notifier):
    seed_tenant(session_factory, "cancelling")
    seed_subscription(
        session_factory, "cancelling", "sub_c",
        status=SubscriptionStatus.CANCELLING,
        period_end=NOW + timedelta(days=3),
    )
    scheduler.run_once(NOW)
    assert notifier.sent == []


def test_second_run_same_day_sends_nothing(scheduler, session_factory, notifier, tenant):
    seed_subscription(session_factory, tenant, period_end=NOW + timedelta(days=7))

    first = scheduler.run_once(NOW)
    second = scheduler.run_once(NOW + timedelta(hours=2))

    assert first.warnings_sent == 1
    assert second.warnings_sent == 0
    assert second.warnings_already_sent == 1
    assert len(notifier.sent) == 1


def test_other_instance_shares_notice_ledger(scheduler, reconciler, resolver, session_factory, tenant):
    seed_subscription(session_factory, tenant, period_end=NOW + timedelta(days=3))
    other_notifier = RecordingNotifier()
    other = LifecycleScheduler(
        reconciler,
        resolver=resolver,
        notifier=other_notifier,
        session_factory=session_factory,
        warning_days=[7, 3],
        clock=lambda: NOW,
    )

    scheduler.run_once(NOW)
    other.run_once(NOW)

    assert other_notifier.sent == []


def test_failed_send_does_not_abort_and_can_retry(reconciler, resolver, session_factory):
    for tenant_id in ("a", "b"):
        seed_tenant(session_factory, tenant_id)
        seed_subscription(session_factory, tenant_id, f"sub_{tenant_id}", period_end=NOW + timedelta(days=7))

    failing = LifecycleScheduler(
        reconciler, resolver=resolver, notifier=RecordingNotifier(fail=True),
        session_factory=session_factory, warning_days=[7], clock=lambda: NOW,
    )
    report = failing.run_once(NOW)
    assert report.candidates == 2
    assert report.warnings_failed == 2
    assert report.status == "partial"

    working_notifier = RecordingNotifier()
    retry = LifecycleScheduler(
        reconciler, resolver=resolver, notifier=working_notifier,
        session_factory=session_factory, warning_days=[7], clock=lambda: NOW,
    )
    assert retry.run_once(NOW).warnings_sent == 2


def test_notice_ledger_outage_does_not_abort_sweep(scheduler, engine, session_factory, notifier):
    seed_tenant(session_factory, "warned")
    seed_subscription(session_factory, "warned", "sub_warned", period_end=NOW + timedelta(days=7))
    seed_tenant(session_factory, "lapsed")
    seed_subscription(
        session_factory, "lapsed", "sub_lapsed",
        status=SubscriptionStatus.CANCELLING,
        period_end=NOW - timedelta(days=3),
    )
    subscription_notices.drop(engine)

    report = scheduler.run_once(NOW)

    assert report.warnings_failed == 1
    assert report.expired == 1
    assert report.status == "partial"
    assert notifier.sent == []
    with session_factory() as session:
        row = session.execute(select(lifecycle_runs)).first()
    assert row.status == "partial"


def test_sweep_expires_lapsed_cancellations(scheduler, session_factory, tenant):
    seed_subscription(
        session_factory, tenant,
        status=SubscriptionStatus.CANCELLING,
        period_end=NOW - timedelta(days=3),
    )
    report = scheduler.run_once(NOW)
    assert report.expired == 1
    assert load_subscription(session_factory, "sub_1").status == SubscriptionStatus.EXPIRED


def test_run_is_recorded(scheduler, session_factory, tenant):
    seed_subscription(session_factory, tenant, period_end=NOW + timedelta(days=7))
    scheduler.run_once(NOW)

    with session_factory() as session:
        row = session.execute(select(lifecycle_runs)).first()
    assert row.job_name == "subscription.lifecycle"
    assert row.status == "success"
    assert json.loads(row.stats_json)["warnings_sent"] == 1


def test_overlapping_run_is_skipped(reconciler, resolver, session_factory, tenant):
    seed_subscription(session_factory, tenant, period_end=NOW + timedelta(days=7))
    entered = threading.Event()
    release = threading.Event()

    class BlockingNotifier(RecordingNotifier):
        def send_expiry_warning(self, tenant, plan_name, period_end, days_left):
            entered.set()
            release.wait(5)
            super().send_expiry_warning(tenant, plan_name, period_end, days_left)

    blocking = BlockingNotifier()
    scheduler = LifecycleScheduler(
        reconciler, resolver=resolver, notifier=blocking,
        session_factory=session_factory, warning_days=[7], clock=lambda: NOW,
    )
    worker = threading.Thread(target=scheduler.run_once, args=(NOW,))
    worker.start()
    try:
        assert entered.wait(5)
        overlapping = scheduler.run_once(NOW)
        assert overlapping.skipped
        assert overlapping.warnings_sent == 0
    finally:
        release.set()
        worker.join(5)

    assert len(blocking.sent) == 1


@pytest.mark.parametrize(
    "now,expected_hours",
    [
        (datetime(2026, 3, 1, 8, 0, tzinfo=timezone.utc), 1),
        (datetime(2026, 3, 1, 9, 0, tzinfo=timezone.utc), 24),
        (datetime(2026, 3, 1, 12, 0, tzinfo=timezone.utc), 21),
    ],
)
def test_seconds_until_next_run(scheduler, now, expected_hours):
    assert scheduler.seconds_until_next_run(now) == expected_hours * 3600


def test_run_forever_stops_on_event(scheduler):
    stop = threading.Event()
    stop.set()
    scheduler.run_forever(stop)


def test_run_forever_survives_a_crashed_sweep(scheduler, monkeypatch):
    stop = threading.Event()
    calls = []

    def run_once():
        calls.append(len(calls))
        if len(calls) == 1:
            raise OperationalError("INSERT", {}, Exception("database is down"))
        stop.set()

    monkeypatch.setattr(scheduler, "seconds_until_next_run", lambda: 0)
    monkeypatch.setattr(scheduler, "run_once", run_once)

    scheduler.run_forever(stop)

    assert calls == [0, 1]
