"""
estepage/features/entitlements/service.py

Entitlement resolution.

Maps a tenant to its current PlanTier from the locally stored subscription
record only. The payment processor is never called on this path, so an
entitlement decision is at most as stale as webhook reconciliation lag.
"""

import logging
from datetime import datetime
from typing import Callable, Optional

from sqlalchemy.exc import SQLAlchemyError

from estepage.core.database import SessionFactory, as_utc, get_db_session, utc_now
from estepage.core.errors import AppError
from estepage.features.plans.catalog import PlanCatalog, get_plan_catalog
from estepage.features.subscriptions.queries import find_current_subscription
from estepage.models.plan import PlanLimits, PlanTier
from estepage.models.subscription import SubscriptionStatus, TenantSubscription


logger = logging.getLogger(__name__)


class EntitlementUnavailable(AppError):
    """Subscription state could not be read; distinct from 'tenant is on Free'."""
    code = "entitlement_unavailable"
    status_code = 503


def tier_for_subscription(
    catalog: PlanCatalog,
    subscription: Optional[TenantSubscription],
    now: datetime,
) -> PlanTier:
    """
    Tier granted by a subscription row at `now`.

    ACTIVE grants the mapped tier. CANCELLING keeps granting it until
    period_end. Anything else (or no row) is FREE.
    """
    if subscription is None:
        return PlanTier.FREE
    if subscription.status == SubscriptionStatus.ACTIVE:
        return catalog.tier_from_external_reference(subscription.external_plan_reference)
    if subscription.status == SubscriptionStatus.CANCELLING:
        if subscription.period_end is not None and now < subscription.period_end:
            return catalog.tier_from_external_reference(subscription.external_plan_reference)
        return PlanTier.FREE
    return PlanTier.FREE


class EntitlementResolver:
    """Read-only tenant -> tier resolution."""

    def __init__(
        self,
        catalog: Optional[PlanCatalog] = None,
        session_factory: SessionFactory = get_db_session,
        clock: Callable[[], datetime] = utc_now,
    ):
        self.catalog = catalog or get_plan_catalog()
        self._session_factory = session_factory
        self._clock = clock

    def current_subscription(self, tenant_id: str) -> Optional[TenantSubscription]:
        """
        The tenant's ACTIVE/CANCELLING subscription row.

        Raises:
            EntitlementUnavailable: If the subscription store cannot be read
        """
        try:
            with self._session_factory() as session:
                return find_current_subscription(session, tenant_id)
        except SQLAlchemyError as e:
            logger.error(
                "[entitlements] subscription read failed",
                extra={"tenant_id": tenant_id, "error": str(e)},
            )
            raise EntitlementUnavailable(
                f"Could not resolve entitlements for tenant {tenant_id}"
            ) from e

    def current_tier(self, tenant_id: str, now: Optional[datetime] = None) -> PlanTier:
        """
        Resolve the tenant's current tier.

        Raises:
            EntitlementUnavailable: If the subscription store cannot be read
        """
        subscription = self.current_subscription(tenant_id)
        moment = as_utc(now) if now is not None else self._clock()
        return tier_for_subscription(self.catalog, subscription, moment)

    def current_limits(self, tenant_id: str, now: Optional[datetime] = None) -> PlanLimits:
        return self.catalog.limits_for(self.current_tier(tenant_id, now))
