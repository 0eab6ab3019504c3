"""
Billing service: checkout, customer portal and invoice history.

Entitlements never depend on anything here; these are convenience flows that
hand the tenant over to the processor's hosted pages.
"""
import logging
from typing import Any, Dict, List, Optional

from estepage.core.config import settings
from estepage.core.database import SessionFactory, get_db_session
from estepage.core.errors import BillingDisabledError, NotFoundError, ValidationError
from estepage.features.billing.provider import BillingProvider, BillingProviderError
from estepage.features.billing.stripe_provider import StripeProvider
from estepage.features.plans.catalog import PlanCatalog, get_plan_catalog
from estepage.features.subscriptions.queries import find_latest_subscription
from estepage.features.tenants.service import TenantDirectory
from estepage.models.plan import PlanTier


logger = logging.getLogger(__name__)


def billing_enabled() -> bool:
    """Check if billing is enabled (Stripe configured)."""
    return bool(settings.STRIPE_SECRET_KEY)


def get_provider() -> Optional[BillingProvider]:
    """Get billing provider if billing is enabled."""
    if not billing_enabled():
        return None
    try:
        return StripeProvider()
    except BillingProviderError:
        logger.warning("[billing] provider unavailable")
        return None


class BillingService:
    def __init__(
        self,
        provider: Optional[BillingProvider],
        catalog: Optional[PlanCatalog] = None,
        tenants: Optional[TenantDirectory] = None,
        session_factory: SessionFactory = get_db_session,
    ):
        self.provider = provider
        self.catalog = catalog or get_plan_catalog()
        self.tenants = tenants or TenantDirectory(session_factory)
        self._session_factory = session_factory

    def _require_provider(self) -> BillingProvider:
        if self.provider is None:
            raise BillingDisabledError("Billing is not enabled")
        return self.provider

    def _customer_id(self, tenant_id: str) -> Optional[str]:
        with self._session_factory() as session:
            latest = find_latest_subscription(session, tenant_id)
        return latest.external_customer_id if latest else None

    def start_checkout(
        self,
        tenant_id: str,
        tier: str,
        success_url: Optional[str] = None,
        cancel_url: Optional[str] = None,
    ) -> str:
        """
        Start a subscription checkout for a paid tier.

        Raises:
            ValidationError: Tier is unknown, free, or has no processor price
            BillingDisabledError: Billing not configured
            ExternalProcessorError: Session creation failed
        """
        provider = self._require_provider()
        try:
            plan_tier = PlanTier(tier)
        except ValueError:
            raise ValidationError(f"Unknown plan tier: {tier}")
        price_id = self.catalog.reference_for(plan_tier)
        if plan_tier == PlanTier.FREE or not price_id:
            raise ValidationError(f"No checkout available for plan: {plan_tier.value}")

        tenant = self.tenants.get_tenant(tenant_id)
        url = provider.create_checkout_session(
            price_id=price_id,
            tenant_id=tenant_id,
            success_url=success_url or settings.CHECKOUT_SUCCESS_URL,
            cancel_url=cancel_url or settings.CHECKOUT_CANCEL_URL,
            customer_id=self._customer_id(tenant_id),
            customer_email=tenant.email if tenant else None,
        )
        logger.info("[billing] checkout started", extra={"tenant_id": tenant_id, "tier": plan_tier.value})
        return url

    def start_portal(self, tenant_id: str, return_url: Optional[str] = None) -> str:
        provider = self._require_provider()
        customer_id = self._customer_id(tenant_id)
        if not customer_id:
            raise NotFoundError("No billing customer for this account")
        return provider.create_portal_session(customer_id, return_url or settings.PORTAL_RETURN_URL)

    def list_invoices(self, tenant_id: str, limit: int = 10) -> List[Dict[str, Any]]:
        """Invoice history; empty when the tenant never paid."""
        provider = self._require_provider()
        customer_id = self._customer_id(tenant_id)
        if not customer_id:
            return []
        return [invoice.as_dict() for invoice in provider.list_invoices(customer_id, limit=limit)]
