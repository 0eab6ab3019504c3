import logging

from pydantic_settings import BaseSettings
from pydantic import ConfigDict
from typing import List, Optional

class Settings(BaseSettings):
    # Environment
    ENV: str = "development"
    CONFIG_STRICT: bool = False

    # Database
    DATABASE_URL: Optional[str] = None
    TEST_DATABASE_URL: Optional[str] = None

    # Auth (tenant identity is issued elsewhere; we only verify)
    AUTH_JWT_SECRET: Optional[str] = None
    AUTH_JWT_ALGORITHMS: str = "HS256"
    AUTH_ALLOW_TENANT_HEADER: bool = False  # X-Tenant-Id fallback; ignored in production

    # Stripe
    STRIPE_SECRET_KEY: Optional[str] = None
    STRIPE_WEBHOOK_SECRET: Optional[str] = None
    STRIPE_WEBHOOK_TOLERANCE_SECONDS: int = 300

    # Plan reference table (processor price id -> tier)
    PLAN_REFERENCES_PATH: Optional[str] = None
    PLAN_REFERENCES_JSON: Optional[str] = None

    # Email (Resend)
    RESEND_API_KEY: Optional[str] = None
    EMAIL_FROM: str = "EstePage <noreply@estepage.com>"
    EMAIL_API_URL: str = "https://api.resend.com/emails"
    EMAIL_TIMEOUT_SECONDS: float = 10.0

    # Subscription lifecycle
    EXPIRY_WARNING_DAYS: str = "7,3"  # comma-separated
    EXPIRY_GRACE_HOURS: int = 24
    LIFECYCLE_RUN_HOUR_UTC: int = 9

    # App URLs
    CHECKOUT_SUCCESS_URL: str = "https://estepage.com/settings/subscription?checkout=success"
    CHECKOUT_CANCEL_URL: str = "https://estepage.com/settings/subscription?checkout=cancelled"
    PORTAL_RETURN_URL: str = "https://estepage.com/settings/subscription"

    model_config = ConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    def expiry_warning_days(self) -> List[int]:
        """Parse EXPIRY_WARNING_DAYS into a descending list of unique day counts."""
        days = set()
        for part in (self.EXPIRY_WARNING_DAYS or "").split(","):
            part = part.strip()
            if not part:
                continue
            value = int(part)
            if value < 0:
                raise ValueError(f"EXPIRY_WARNING_DAYS entries must be >= 0, got {value}")
            days.add(value)
        return sorted(days, reverse=True)


settings = Settings()


def validate_config(strict: Optional[bool] = None, settings_obj: Optional[Settings] = None, logger: Optional[logging.Logger] = None) -> bool:
    """Validate required configuration.

    In strict mode raise RuntimeError; otherwise emit warnings only.
    Secrets are not logged, only missing keys.
    """
    cfg = settings_obj or settings
    log = logger or logging.getLogger("estepage")
    strict_mode = strict if strict is not None else getattr(cfg, "CONFIG_STRICT", False)

    required_keys = [
        "DATABASE_URL",
        "STRIPE_SECRET_KEY",
        "STRIPE_WEBHOOK_SECRET",
    ]

    missing = [key for key in required_keys if not getattr(cfg, key, None)]
    if missing:
        message = f"Missing required configuration: {', '.join(missing)}"
        if strict_mode:
            raise RuntimeError(message)
        log.warning(message)

    if not getattr(cfg, "RESEND_API_KEY", None):
        log.warning("RESEND_API_KEY not set; subscription emails will be logged, not sent")

    return True
