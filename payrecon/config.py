"""Runtime settings for the Stripe connector and reconciliation pipeline."""

from __future__ import annotations

import os
from dataclasses import dataclass
from functools import lru_cache
from typing import Optional

from payrecon import key_manager

DEFAULT_STRIPE_API_BASE = "https://api.stripe.com/v1"
DEFAULT_PHI_SCAN_LIMIT = 5000


def _get_int_env(name: str, default: Optional[int] = None) -> Optional[int]:
    raw = os.getenv(name)
    if raw in (None, ""):
        return default
    try:
        return int(raw)
    except ValueError as exc:  # pragma: no cover - clearly surface misconfiguration
        raise ValueError(f"Environment variable {name} must be an integer; got {raw!r}") from exc


def _get_float_env(name: str, default: float) -> float:
    raw = os.getenv(name)
    if raw in (None, ""):
        return default
    try:
        return float(raw)
    except ValueError as exc:  # pragma: no cover - clearly surface misconfiguration
        raise ValueError(f"Environment variable {name} must be a number; got {raw!r}") from exc


@dataclass(frozen=True)
class StripeSettings:
    """Credentials and transport limits for the Stripe REST API."""

    secret_key: Optional[str]
    webhook_secret: Optional[str]
    api_base: str = DEFAULT_STRIPE_API_BASE
    timeout_seconds: float = 10.0
    max_retries: int = 3
    backoff_seconds: float = 0.5

    @property
    def is_configured(self) -> bool:
        return bool(self.secret_key)


@dataclass(frozen=True)
class ReconciliationSettings:
    """Tenant defaults and scan limits for payment matching."""

    default_clinic_id: Optional[int]
    phi_scan_limit: int = DEFAULT_PHI_SCAN_LIMIT


def _stripe_secret(name: str):
    # Stripe credentials must come from the deployment, never the local store.
    return key_manager.load_secret(name, key_manager.SECRET_ENV_MAPPING[name], allow_fallback=False)


@lru_cache(maxsize=1)
def get_stripe_settings() -> StripeSettings:
    secret_key, _ = _stripe_secret("stripe-secret-key")
    webhook_secret, _ = _stripe_secret("stripe-webhook-secret")
    return StripeSettings(
        secret_key=secret_key,
        webhook_secret=webhook_secret,
        api_base=os.getenv("STRIPE_API_BASE", DEFAULT_STRIPE_API_BASE).rstrip("/"),
        timeout_seconds=_get_float_env("STRIPE_TIMEOUT_SECONDS", 10.0),
        max_retries=_get_int_env("STRIPE_MAX_RETRIES", 3) or 0,
        backoff_seconds=_get_float_env("STRIPE_BACKOFF_SECONDS", 0.5),
    )


@lru_cache(maxsize=1)
def get_reconciliation_settings() -> ReconciliationSettings:
    return ReconciliationSettings(
        default_clinic_id=_get_int_env("PAYRECON_DEFAULT_CLINIC_ID") or None,
        phi_scan_limit=_get_int_env("PHI_SCAN_LIMIT", DEFAULT_PHI_SCAN_LIMIT) or DEFAULT_PHI_SCAN_LIMIT,
    )


def reset_settings_cache() -> None:
    """Drop cached settings so environment changes take effect."""

    get_stripe_settings.cache_clear()
    get_reconciliation_settings.cache_clear()


__all__ = [
    "ReconciliationSettings",
    "StripeSettings",
    "get_reconciliation_settings",
    "get_stripe_settings",
    "reset_settings_cache",
]
