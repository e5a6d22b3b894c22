import logging

from pydantic_settings import BaseSettings
from pydantic import ConfigDict
from typing import Optional

class Settings(BaseSettings):
    # Environment
    ENV: str = "development"
    CONFIG_STRICT: bool = False

    # Database
    DATABASE_URL: Optional[str] = None
    TEST_DATABASE_URL: Optional[str] = None

    # Stripe
    STRIPE_SECRET_KEY: Optional[str] = None
    STRIPE_WEBHOOK_SECRET: Optional[str] = None
    STRIPE_WEBHOOK_TOLERANCE_SECONDS: int = 300

    # Price id -> plan tier mapping
    STRIPE_PRICE_CURATOR_MONTHLY: Optional[str] = None
    STRIPE_PRICE_CURATOR_ANNUAL: Optional[str] = None
    STRIPE_PRICE_ENTHUSIAST_MONTHLY: Optional[str] = None
    STRIPE_PRICE_ENTHUSIAST_ANNUAL: Optional[str] = None
    STRICT_PRICE_MAPPING: bool = False  # reject unknown prices instead of falling back to collector

    # Plan lifecycle
    TRIAL_DAYS: int = 7
    ADMIN_OVERRIDE_PERIOD_MONTHS: int = 12

    # Webhook handling
    WEBHOOK_PROCESSING_BUDGET_SECONDS: float = 8.0

    # Read-path write-back pool
    WRITE_BACK_WORKERS: int = 4

    # Admin access
    ADMIN_KEY: Optional[str] = None

    model_config = ConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )
settings = Settings()


def billing_enabled() -> bool:
    """Webhooks can only be verified once a signing secret is configured."""
    return bool(settings.STRIPE_WEBHOOK_SECRET)


def validate_config(strict: Optional[bool] = None, settings_obj: Optional[Settings] = None, logger: Optional[logging.Logger] = None) -> bool:
    """Validate required configuration.

    In strict mode raise RuntimeError; otherwise emit warnings only.
    Secrets are not logged, only missing keys.
    """
    cfg = settings_obj or settings
    log = logger or logging.getLogger("billing_engine")
    strict_mode = strict if strict is not None else getattr(cfg, "CONFIG_STRICT", False)

    required_keys = [
        "DATABASE_URL",
        "STRIPE_WEBHOOK_SECRET",
    ]

    missing = [key for key in required_keys if not getattr(cfg, key, None)]
    if missing:
        message = f"Missing required configuration: {', '.join(missing)}"
        if strict_mode:
            raise RuntimeError(message)
        log.warning(message)

    return True
