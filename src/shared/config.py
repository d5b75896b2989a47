"""Application settings loaded from the environment.

Settings are read once and cached. Tests call ``reset_settings()`` after
changing environment variables so the next ``get_settings()`` picks them up.
"""

import os
from dataclasses import dataclass
from typing import Mapping

_TRUTHY = {"1", "true", "yes", "on"}


@dataclass(frozen=True)
class Settings:
    env: str = "development"
    database_url: str = "sqlite:///data/storefront.db"
    payment_gateway: str = "fake"
    razorpay_key_id: str = ""
    razorpay_key_secret: str = ""
    razorpay_webhook_secret: str = ""
    razorpay_base_url: str = "https://api.razorpay.com/v1"
    gateway_timeout_seconds: float = 10.0
    webhook_max_bytes: int = 64 * 1024
    webhook_max_retries: int = 5
    allow_composite_event_keys: bool = True
    default_currency: str = "INR"
    reconciliation_window_hours: int = 24

    @property
    def is_production(self) -> bool:
        return self.env in ("production", "staging")


def _flag(value: str | None, default: bool) -> bool:
    if value is None:
        return default
    return value.strip().lower() in _TRUTHY


def load_settings(environ: Mapping[str, str] | None = None) -> Settings:
    """Build settings from ``environ`` (defaults to ``os.environ``)."""
    env = os.environ if environ is None else environ
    defaults = Settings()

    return Settings(
        env=(env.get("STOREFRONT_ENV") or env.get("ENVIRONMENT") or defaults.env).lower(),
        database_url=env.get("DATABASE_URL", defaults.database_url),
        payment_gateway=env.get("PAYMENT_GATEWAY", defaults.payment_gateway).lower(),
        razorpay_key_id=env.get("RAZORPAY_KEY_ID", ""),
        razorpay_key_secret=env.get("RAZORPAY_KEY_SECRET", ""),
        razorpay_webhook_secret=env.get("RAZORPAY_WEBHOOK_SECRET", ""),
        razorpay_base_url=env.get("RAZORPAY_BASE_URL", defaults.razorpay_base_url),
        gateway_timeout_seconds=float(env.get("GATEWAY_TIMEOUT_SECONDS", defaults.gateway_timeout_seconds)),
        webhook_max_bytes=int(env.get("WEBHOOK_MAX_BYTES", defaults.webhook_max_bytes)),
        webhook_max_retries=int(env.get("WEBHOOK_MAX_RETRIES", defaults.webhook_max_retries)),
        allow_composite_event_keys=_flag(env.get("ALLOW_COMPOSITE_EVENT_KEYS"), defaults.allow_composite_event_keys),
        default_currency=env.get("DEFAULT_CURRENCY", defaults.default_currency).upper(),
        reconciliation_window_hours=int(env.get("RECONCILIATION_WINDOW_HOURS", defaults.reconciliation_window_hours)),
    )


_settings: Settings | None = None


def get_settings() -> Settings:
    global _settings
    if _settings is None:
        _settings = load_settings()
    return _settings


def reset_settings() -> None:
    """Drop the cached settings so they are re-read on next access."""
    global _settings
    _settings = None
