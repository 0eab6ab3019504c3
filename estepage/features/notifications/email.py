"""
Subscription lifecycle emails.

Delivered through the Resend HTTP API. Callers treat every send as best
effort: a failure raises NotificationError and the caller logs it.
"""

import html
import logging
from datetime import datetime
from typing import Optional, Protocol

import httpx

from estepage.core.config import settings
from estepage.models.tenant import Tenant


logger = logging.getLogger(__name__)


class NotificationError(Exception):
    """Email could not be delivered."""


class Notifier(Protocol):
    def send_subscription_started(
        self, tenant: Tenant, plan_name: str, period_end: Optional[datetime], is_renewal: bool
    ) -> None:
        ...

    def send_subscription_cancelled(self, tenant: Tenant, plan_name: str, period_end: Optional[datetime]) -> None:
        ...

    def send_expiry_warning(self, tenant: Tenant, plan_name: str, period_end: datetime, days_left: int) -> None:
        ...


def _date(value: Optional[datetime]) -> str:
    return value.strftime("%B %d, %Y") if value else "the end of your billing period"


def _wrap(greeting_name: str, body: str) -> str:
    return (
        "<div style=\"font-family:Arial,sans-serif;max-width:600px;margin:0 auto\">"
        f"<p>Hello {html.escape(greeting_name)},</p>{body}"
        "<p>The EstePage Team</p></div>"
    )


class ResendEmailNotifier:
    """Notifier backed by the Resend email API."""

    def __init__(
        self,
        api_key: Optional[str] = None,
        sender: Optional[str] = None,
        api_url: Optional[str] = None,
        timeout: Optional[float] = None,
        client: Optional[httpx.Client] = None,
    ):
        self.api_key = api_key or settings.RESEND_API_KEY
        self.sender = sender or settings.EMAIL_FROM
        self.api_url = api_url or settings.EMAIL_API_URL
        self.timeout = timeout if timeout is not None else settings.EMAIL_TIMEOUT_SECONDS
        self._client = client

        if not self.api_key:
            raise ValueError("RESEND_API_KEY not configured")

    def _send(self, to: str, subject: str, body_html: str, kind: str) -> None:
        payload = {"from": self.sender, "to": to, "subject": subject, "html": body_html}
        headers = {
            "Authorization": f"Bearer {self.api_key}",
            "Content-Type": "application/json",
        }
        try:
            if self._client is not None:
                response = self._client.post(self.api_url, headers=headers, json=payload, timeout=self.timeout)
            else:
                with httpx.Client(timeout=self.timeout) as client:
                    response = client.post(self.api_url, headers=headers, json=payload)
        except httpx.HTTPError as e:
            raise NotificationError(f"Email transport failed: {e}") from e

        if response.status_code not in (200, 201, 202):
            raise NotificationError(f"Resend API error: {response.status_code} {response.text[:200]}")

        logger.info("[email] sent", extra={"kind": kind, "status": response.status_code})

    def send_subscription_started(
        self, tenant: Tenant, plan_name: str, period_end: Optional[datetime], is_renewal: bool
    ) -> None:
        if is_renewal:
            subject = "Your EstePage Subscription Has Been Renewed"
            lead = f"Your {html.escape(plan_name)} plan has been renewed."
        else:
            subject = "Welcome to EstePage Premium!"
            lead = f"Your {html.escape(plan_name)} plan is now active."
        body = f"<p>{lead}</p><p>Your current billing period ends on {_date(period_end)}.</p>"
        self._send(tenant.email, subject, _wrap(tenant.display_name, body), "subscription_started")

    def send_subscription_cancelled(self, tenant: Tenant, plan_name: str, period_end: Optional[datetime]) -> None:
        body = (
            f"<p>Your {html.escape(plan_name)} subscription has been cancelled.</p>"
            "<p>Your account is now on the Free plan. You can subscribe again at any time.</p>"
        )
        self._send(
            tenant.email,
            "Your Subscription Has Been Cancelled",
            _wrap(tenant.display_name, body),
            "subscription_cancelled",
        )

    def send_expiry_warning(self, tenant: Tenant, plan_name: str, period_end: datetime, days_left: int) -> None:
        body = (
            f"<p>Your {html.escape(plan_name)} subscription expires in {days_left} days, "
            f"on {_date(period_end)}.</p>"
            f"<p>Manage your subscription at {html.escape(settings.PORTAL_RETURN_URL)}.</p>"
        )
        self._send(
            tenant.email,
            f"Your Subscription Expires in {days_left} Days",
            _wrap(tenant.display_name, body),
            "expiry_warning",
        )


class LogOnlyNotifier:
    """Used when no email API key is configured; records what would be sent."""

    def send_subscription_started(
        self, tenant: Tenant, plan_name: str, period_end: Optional[datetime], is_renewal: bool
    ) -> None:
        logger.info(
            "[email] disabled, skipping subscription_started",
            extra={"tenant_id": tenant.tenant_id, "plan": plan_name, "is_renewal": is_renewal},
        )

    def send_subscription_cancelled(self, tenant: Tenant, plan_name: str, period_end: Optional[datetime]) -> None:
        logger.info(
            "[email] disabled, skipping subscription_cancelled",
            extra={"tenant_id": tenant.tenant_id, "plan": plan_name},
        )

    def send_expiry_warning(self, tenant: Tenant, plan_name: str, period_end: datetime, days_left: int) -> None:
        logger.info(
            "[email] disabled, skipping expiry_warning",
            extra={"tenant_id": tenant.tenant_id, "plan": plan_name, "days_left": days_left},
        )


def get_notifier() -> Notifier:
    if settings.RESEND_API_KEY:
        return ResendEmailNotifier()
    return LogOnlyNotifier()
