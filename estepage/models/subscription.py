"""
estepage/models/subscription.py

Tenant subscription model: the locally cached view of the processor's
subscription state.
"""

from datetime import datetime
from enum import Enum
from typing import Any, Mapping, Optional
from pydantic import BaseModel, ConfigDict

from estepage.core.database import as_utc


class SubscriptionStatus(str, Enum):
    ACTIVE = "active"
    CANCELLING = "cancelling"  # cancels at period end, access continues
    CANCELLED = "cancelled"
    EXPIRED = "expired"

    @property
    def is_current(self) -> bool:
        return self in (SubscriptionStatus.ACTIVE, SubscriptionStatus.CANCELLING)

    @property
    def is_terminal(self) -> bool:
        return not self.is_current


class TenantSubscription(BaseModel):
    """
    One row of tenant_subscriptions.

    Constraint: at most one row per tenant is ACTIVE or CANCELLING.
    """
    model_config = ConfigDict(frozen=True)

    id: int
    tenant_id: str
    external_subscription_id: str
    external_customer_id: Optional[str] = None
    status: SubscriptionStatus
    external_plan_reference: Optional[str] = None
    period_end: Optional[datetime] = None
    cancellation_requested_at: Optional[datetime] = None
    last_event_at: Optional[datetime] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    @classmethod
    def from_row(cls, row: Any) -> "TenantSubscription":
        data: Mapping[str, Any] = row._mapping
        return cls(
            id=data["id"],
            tenant_id=data["tenant_id"],
            external_subscription_id=data["external_subscription_id"],
            external_customer_id=data["external_customer_id"],
            status=SubscriptionStatus(data["status"]),
            external_plan_reference=data["external_plan_reference"],
            period_end=as_utc(data["period_end"]),
            cancellation_requested_at=as_utc(data["cancellation_requested_at"]),
            last_event_at=as_utc(data["last_event_at"]),
            created_at=as_utc(data["created_at"]),
            updated_at=as_utc(data["updated_at"]),
        )
