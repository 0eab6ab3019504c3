"""
FastAPI dependency providers.

Routes receive fully wired components from here; tests swap any provider
through `app.dependency_overrides`.
"""
from typing import Optional

from fastapi import Depends

from estepage.core.database import SessionFactory, get_db_session
from estepage.features.billing.provider import BillingProvider
from estepage.features.billing.reconciler import BillingReconciler
from estepage.features.billing.service import BillingService, get_provider
from estepage.features.entitlements.service import EntitlementResolver
from estepage.features.listings.service import ListingStore
from estepage.features.notifications.email import Notifier, get_notifier
from estepage.features.plans.catalog import PlanCatalog, get_plan_catalog
from estepage.features.quota.service import QuotaGate
from estepage.features.tenants.service import TenantDirectory


def get_session_factory() -> SessionFactory:
    return get_db_session


def get_catalog() -> PlanCatalog:
    return get_plan_catalog()


def get_billing_provider() -> Optional[BillingProvider]:
    return get_provider()


def get_email_notifier() -> Notifier:
    return get_notifier()


def get_resolver(
    catalog: PlanCatalog = Depends(get_catalog),
    session_factory: SessionFactory = Depends(get_session_factory),
) -> EntitlementResolver:
    return EntitlementResolver(catalog, session_factory)


def get_quota_gate(
    resolver: EntitlementResolver = Depends(get_resolver),
    session_factory: SessionFactory = Depends(get_session_factory),
) -> QuotaGate:
    return QuotaGate(resolver, ListingStore(session_factory))


def get_reconciler(
    provider: Optional[BillingProvider] = Depends(get_billing_provider),
    notifier: Notifier = Depends(get_email_notifier),
    catalog: PlanCatalog = Depends(get_catalog),
    session_factory: SessionFactory = Depends(get_session_factory),
) -> BillingReconciler:
    return BillingReconciler(
        provider=provider,
        notifier=notifier,
        catalog=catalog,
        tenants=TenantDirectory(session_factory),
        session_factory=session_factory,
    )


def get_billing_service(
    provider: Optional[BillingProvider] = Depends(get_billing_provider),
    catalog: PlanCatalog = Depends(get_catalog),
    session_factory: SessionFactory = Depends(get_session_factory),
) -> BillingService:
    return BillingService(provider, catalog, TenantDirectory(session_factory), session_factory)
