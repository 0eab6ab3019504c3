"""
Read helpers over tenant_subscriptions, shared by the resolver, reconciler and
lifecycle sweep. All take an open Session so callers control the transaction.
"""

from datetime import datetime
from typing import List, Optional

from sqlalchemy import select
from sqlalchemy.orm import Session

from estepage.core.database import tenant_subscriptions
from estepage.models.subscription import SubscriptionStatus, TenantSubscription


CURRENT_STATUSES = (SubscriptionStatus.ACTIVE.value, SubscriptionStatus.CANCELLING.value)


def find_current_subscription(
    session: Session, tenant_id: str, *, for_update: bool = False
) -> Optional[TenantSubscription]:
    """The tenant's ACTIVE or CANCELLING row, if any."""
    stmt = (
        select(tenant_subscriptions)
        .where(tenant_subscriptions.c.tenant_id == tenant_id)
        .where(tenant_subscriptions.c.status.in_(CURRENT_STATUSES))
        .order_by(tenant_subscriptions.c.created_at.desc(), tenant_subscriptions.c.id.desc())
        .limit(1)
    )
    if for_update:
        stmt = stmt.with_for_update()
    row = session.execute(stmt).first()
    return TenantSubscription.from_row(row) if row else None


def find_by_external_id(
    session: Session, external_subscription_id: str, *, for_update: bool = False
) -> Optional[TenantSubscription]:
    stmt = select(tenant_subscriptions).where(
        tenant_subscriptions.c.external_subscription_id == external_subscription_id
    )
    if for_update:
        stmt = stmt.with_for_update()
    row = session.execute(stmt).first()
    return TenantSubscription.from_row(row) if row else None


def find_latest_subscription(session: Session, tenant_id: str) -> Optional[TenantSubscription]:
    """Most recent row for the tenant regardless of status (history included)."""
    row = session.execute(
        select(tenant_subscriptions)
        .where(tenant_subscriptions.c.tenant_id == tenant_id)
        .order_by(tenant_subscriptions.c.created_at.desc(), tenant_subscriptions.c.id.desc())
        .limit(1)
    ).first()
    return TenantSubscription.from_row(row) if row else None


def list_by_status_and_period_end(
    session: Session,
    statuses: List[str],
    *,
    period_end_from: Optional[datetime] = None,
    period_end_before: Optional[datetime] = None,
) -> List[TenantSubscription]:
    """Rows in `statuses` with period_end in [period_end_from, period_end_before)."""
    stmt = select(tenant_subscriptions).where(tenant_subscriptions.c.status.in_(statuses))
    if period_end_from is not None:
        stmt = stmt.where(tenant_subscriptions.c.period_end >= period_end_from)
    if period_end_before is not None:
        stmt = stmt.where(tenant_subscriptions.c.period_end < period_end_before)
    stmt = stmt.order_by(tenant_subscriptions.c.period_end.asc(), tenant_subscriptions.c.id.asc())
    return [TenantSubscription.from_row(row) for row in session.execute(stmt).fetchall()]
