"""Subscription lifecycle worker.

Usage:
    python -m estepage.workers.subscription_expiry --once
    python -m estepage.workers.subscription_expiry --loop

Settings:
- EXPIRY_WARNING_DAYS (csv, default 7,3)
- EXPIRY_GRACE_HOURS (default 24)
- LIFECYCLE_RUN_HOUR_UTC (default 9)
"""
from __future__ import annotations

import argparse
import json
from typing import Optional, Sequence

from estepage.core.config import settings, validate_config
from estepage.core.logging import configure_logging
from estepage.features.billing.reconciler import BillingReconciler
from estepage.features.billing.service import get_provider
from estepage.features.lifecycle.scheduler import LifecycleScheduler


def build_scheduler() -> LifecycleScheduler:
    reconciler = BillingReconciler(provider=get_provider())
    return LifecycleScheduler(reconciler)


def main(argv: Optional[Sequence[str]] = None) -> None:
    parser = argparse.ArgumentParser(description="Subscription lifecycle worker")
    parser.add_argument("--once", action="store_true", help="Run one sweep now and exit")
    parser.add_argument("--loop", action="store_true", help="Run daily at LIFECYCLE_RUN_HOUR_UTC")
    args = parser.parse_args(argv)

    configure_logging(settings.ENV)
    validate_config()
    scheduler = build_scheduler()

    if args.once:
        report = scheduler.run_once()
        print(f"[lifecycle-worker] {json.dumps(report.as_dict())}")
        return

    # Default to loop mode when not explicitly once
    print(f"[lifecycle-worker] Starting daily loop at {scheduler.run_hour_utc:02d}:00 UTC. CTRL+C to stop.")
    try:
        scheduler.run_forever()
    except KeyboardInterrupt:
        print("[lifecycle-worker] Stopped")


if __name__ == "__main__":
    main()
