import logging

from pydantic_settings import BaseSettings
from pydantic import ConfigDict
from typing import Optional


class Settings(BaseSettings):
    # Environment
    ENV: str = "development"
    CONFIG_STRICT: bool = False

    # Database & Cache
    DATABASE_URL: Optional[str] = None
    TEST_DATABASE_URL: Optional[str] = None
    REDIS_URL: str = "redis://localhost:6379/0"

    # Stripe
    STRIPE_SECRET_KEY: Optional[str] = None
    STRIPE_CURRENCY: str = "usd"

    # Billing provider call discipline
    BILLING_PROVIDER_TIMEOUT_SECONDS: float = 10.0
    BILLING_PROVIDER_MAX_WORKERS: int = 8
    BILLING_SYNC_MAX_ATTEMPTS: int = 3
    BILLING_SYNC_BACKOFF_SECONDS: float = 0.5
    BILLING_SYNC_BACKOFF_MAX_SECONDS: float = 8.0
    PLAN_SYNC_LEASE_SECONDS: int = 300

    # Plans & provisioning
    DEFAULT_PLAN_NAME: str = "Free Plan"
    SWIPE_LIMIT_FEATURE: str = "swipeLimit"
    PASSWORD_HASH_ROUNDS: int = 10
    PROVISION_CLAIM_TTL_SECONDS: int = 600

    # Notifications (rq)
    NOTIFICATIONS_QUEUE: str = "notifications"
    NOTIFICATIONS_JOB_TIMEOUT: str = "2m"
    SMTP_HOST: Optional[str] = None
    SMTP_PORT: int = 465
    SMTP_USER: Optional[str] = None
    SMTP_PASSWORD: Optional[str] = None
    MAIL_FROM: Optional[str] = None
    WELCOME_SUBJECT: str = "Welcome to LoveBirdz"

    model_config = ConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )
settings = Settings()


def validate_config(strict: Optional[bool] = None, settings_obj: Optional[Settings] = None, logger: Optional[logging.Logger] = None) -> bool:
    """Validate required configuration.

    In strict mode raise RuntimeError; otherwise emit warnings only.
    Secrets are not logged, only missing keys.
    """
    cfg = settings_obj or settings
    log = logger or logging.getLogger("matchadmin")
    strict_mode = strict if strict is not None else getattr(cfg, "CONFIG_STRICT", False)

    required_keys = [
        "DATABASE_URL",
        "STRIPE_SECRET_KEY",
        "REDIS_URL",
    ]

    missing = [key for key in required_keys if not getattr(cfg, key, None)]
    if missing:
        message = f"Missing required configuration: {', '.join(missing)}"
        if strict_mode:
            raise RuntimeError(message)
        log.warning(message)

    if cfg.BILLING_SYNC_MAX_ATTEMPTS < 1:
        message = "BILLING_SYNC_MAX_ATTEMPTS must be at least 1"
        if strict_mode:
            raise RuntimeError(message)
        log.warning(message)

    return True
