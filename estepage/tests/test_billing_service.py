"""Checkout, portal and invoice flows."""
from datetime import timedelta

import pytest

from estepage.core.errors import BillingDisabledError, NotFoundError, ValidationError
from estepage.features.billing.provider import Invoice
from estepage.features.billing.service import BillingService
from estepage.features.tenants.service import TenantDirectory
from estepage.models.subscription import SubscriptionStatus
from estepage.tests.fakes import NOW, seed_subscription


@pytest.fixture
def service(provider, catalog, session_factory):
    return BillingService(provider, catalog, TenantDirectory(session_factory), session_factory)


class TestCheckout:
    def test_new_customer_uses_tenant_email(self, service, provider, tenant):
        url = service.start_checkout(tenant, "pro", success_url="https://ok", cancel_url="https://no")

        assert url == "https://checkout.example/pro-price-id"
        assert provider.checkout_calls == [{
            "price_id": "pro-price-id",
            "tenant_id": tenant,
            "customer_id": None,
            "customer_email": "tenant_a@example.com",
        }]

    def test_returning_customer_reuses_customer_id(self, service, provider, session_factory, tenant):
        seed_subscription(
            session_factory, tenant,
            status=SubscriptionStatus.CANCELLED,
            period_end=NOW - timedelta(days=5),
            customer_id="cus_old",
        )
        service.start_checkout(tenant, "elite")
        assert provider.checkout_calls[0]["customer_id"] == "cus_old"
        assert provider.checkout_calls[0]["price_id"] == "elite-price-id"

    @pytest.mark.parametrize("tier", ["free", "platinum"])
    def test_rejects_tiers_without_checkout(self, service, tenant, tier):
        with pytest.raises(ValidationError):
            service.start_checkout(tenant, tier)

    def test_disabled_without_provider(self, catalog, session_factory, tenant):
        service = BillingService(None, catalog, TenantDirectory(session_factory), session_factory)
        with pytest.raises(BillingDisabledError):
            service.start_checkout(tenant, "pro")


class TestPortal:
    def test_requires_customer(self, service, tenant):
        with pytest.raises(NotFoundError):
            service.start_portal(tenant)

    def test_portal_url(self, service, provider, session_factory, tenant):
        seed_subscription(session_factory, tenant, customer_id="cus_9")
        assert service.start_portal(tenant, "https://back") == "https://portal.example/cus_9"
        assert provider.portal_calls == [{"customer_id": "cus_9", "return_url": "https://back"}]


class TestInvoices:
    def test_empty_without_customer(self, service, tenant):
        assert service.list_invoices(tenant) == []

    def test_lists_invoices(self, service, provider, session_factory, tenant):
        seed_subscription(session_factory, tenant)
        provider.invoices = [
            Invoice("in_1", "0001", "paid", 4900, 4900, "eur", NOW),
            Invoice("in_2", "0002", "open", 4900, 0, "eur", None),
        ]

        invoices = service.list_invoices(tenant)

        assert [i["id"] for i in invoices] == ["in_1", "in_2"]
        assert invoices[0]["amount"] == 49.0
        assert invoices[1]["created_at"] is None
