"""
Billing provider protocol.

Defines the interface the reconciler and billing routes use to talk to the
payment processor, plus the normalized event shape every provider produces.
Swapping processors means writing a new provider, not touching business logic.
"""
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional, Protocol

from estepage.core.errors import AppError


class BillingEventType(str, Enum):
    CHECKOUT_COMPLETED = "checkout_completed"
    SUBSCRIPTION_UPDATED = "subscription_updated"
    SUBSCRIPTION_DELETED = "subscription_deleted"
    UNSUPPORTED = "unsupported"  # verified but irrelevant to entitlements


@dataclass(frozen=True)
class BillingEvent:
    """A verified processor event, normalized."""
    event_id: str
    event_type: BillingEventType
    raw_type: str
    occurred_at: datetime
    payload_hash: str
    external_subscription_id: Optional[str] = None
    external_customer_id: Optional[str] = None
    tenant_id: Optional[str] = None
    external_plan_reference: Optional[str] = None
    processor_status: Optional[str] = None  # active, canceled, past_due, ...
    cancel_at_period_end: bool = False
    period_end: Optional[datetime] = None
    metadata: Dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class ProviderSubscription:
    """Processor's view of a subscription after a mutating call."""
    external_subscription_id: str
    status: Optional[str]
    cancel_at_period_end: bool
    period_end: Optional[datetime]


@dataclass(frozen=True)
class Invoice:
    invoice_id: str
    number: Optional[str]
    status: Optional[str]
    amount_due: int
    amount_paid: int
    currency: str
    created_at: Optional[datetime]
    hosted_invoice_url: Optional[str] = None
    invoice_pdf: Optional[str] = None

    def as_dict(self) -> Dict[str, Any]:
        return {
            "id": self.invoice_id,
            "number": self.number,
            "status": self.status,
            "amount_due": self.amount_due,
            "amount_paid": self.amount_paid,
            "amount": self.amount_paid / 100,  # major units, for display
            "currency": self.currency,
            "created_at": self.created_at.isoformat() if self.created_at else None,
            "hosted_invoice_url": self.hosted_invoice_url,
            "invoice_pdf": self.invoice_pdf,
        }


class BillingProvider(Protocol):
    """
    Protocol for billing providers.

    Implementations must handle:
    - Webhook signature verification and normalization
    - Cancel-at-period-end
    - Checkout and portal session creation
    - Invoice listing
    """

    def parse_event(self, headers: Dict[str, str], body: bytes) -> BillingEvent:
        """
        Verify the webhook signature and normalize the event.

        Raises:
            InvalidSignature: If the signature is missing or wrong, or the body is malformed
        """
        ...

    def cancel_at_period_end(self, external_subscription_id: str, idempotency_key: str) -> ProviderSubscription:
        """
        Schedule cancellation at the end of the current period.

        Raises:
            ExternalProcessorError: If the processor rejects or cannot be reached
        """
        ...

    def create_checkout_session(
        self,
        price_id: str,
        tenant_id: str,
        success_url: str,
        cancel_url: str,
        customer_id: Optional[str] = None,
        customer_email: Optional[str] = None,
    ) -> str:
        """Create a subscription checkout session and return its URL."""
        ...

    def create_portal_session(self, customer_id: str, return_url: str) -> str:
        """Create a customer self-service portal session and return its URL."""
        ...

    def list_invoices(self, customer_id: str, limit: int = 10) -> List[Invoice]:
        ...


class BillingProviderError(AppError):
    """Base exception for billing provider errors."""
    code = "billing_provider_error"
    status_code = 502


class InvalidSignature(BillingProviderError):
    """Webhook is unsigned, signed with the wrong secret, or malformed."""
    code = "invalid_signature"
    status_code = 400


class ExternalProcessorError(BillingProviderError):
    """The processor call failed; no local state was changed."""
    code = "external_processor_error"
    status_code = 502
