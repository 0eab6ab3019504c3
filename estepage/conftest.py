# estepage/conftest.py
import pytest

from estepage.core.database import build_engine, create_all_tables, make_session_factory
from estepage.features.billing.reconciler import BillingReconciler
from estepage.features.entitlements.service import EntitlementResolver
from estepage.features.listings.service import ListingStore
from estepage.features.plans.catalog import PlanCatalog, PlanReferenceTable
from estepage.features.quota.service import QuotaGate
from estepage.features.tenants.service import TenantDirectory
from estepage.models.plan import PlanTier
from estepage.tests.fakes import NOW, FakeProvider, RecordingNotifier, seed_tenant


@pytest.fixture
def engine():
    """Fresh in-memory SQLite database per test."""
    eng = build_engine("sqlite://")
    create_all_tables(eng)
    yield eng
    eng.dispose()


@pytest.fixture
def session_factory(engine):
    return make_session_factory(engine)


@pytest.fixture
def catalog():
    return PlanCatalog(
        PlanReferenceTable(
            version=1,
            references={"pro-price-id": PlanTier.PRO, "elite-price-id": PlanTier.ELITE},
            checkout={PlanTier.PRO: "pro-price-id", PlanTier.ELITE: "elite-price-id"},
        )
    )


@pytest.fixture
def tenant(session_factory):
    seed_tenant(session_factory, "tenant_a")
    return "tenant_a"


@pytest.fixture
def provider():
    return FakeProvider()


@pytest.fixture
def notifier():
    return RecordingNotifier()


@pytest.fixture
def resolver(catalog, session_factory):
    return EntitlementResolver(catalog, session_factory, clock=lambda: NOW)


@pytest.fixture
def gate(resolver, session_factory):
    return QuotaGate(resolver, ListingStore(session_factory))


@pytest.fixture
def reconciler(provider, notifier, catalog, session_factory):
    return BillingReconciler(
        provider=provider,
        notifier=notifier,
        catalog=catalog,
        tenants=TenantDirectory(session_factory),
        session_factory=session_factory,
        clock=lambda: NOW,
    )
