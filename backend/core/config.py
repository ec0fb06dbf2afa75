import logging
import os

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

    # Admin
    ADMIN_KEY: Optional[str] = None

    # App URLs
    BASE_URL: str = "http://localhost:8000"

    # Billing policy
    BILLING_PAST_DUE_GRACE_DAYS: int = 7
    BILLING_CONFIRMATION_WINDOW_MINUTES: int = 30

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
    log = logger or logging.getLogger("suite")
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

    return True


def module_price_env_key(module_id: str, billing_cycle: str) -> str:
    """Environment variable holding the provider price for a module/cycle."""
    return f"STRIPE_{module_id.upper()}_{billing_cycle.upper()}_PRICE_ID"


def get_module_price_id(module_id: str, billing_cycle: str) -> Optional[str]:
    return os.getenv(module_price_env_key(module_id, billing_cycle))
