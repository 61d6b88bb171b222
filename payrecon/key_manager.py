"""Secret resolution for PHI encryption keys and Stripe credentials.

Secrets come from the environment first.  Outside production a local store
under the platform data directory acts as a fallback; it is a single
Fernet-encrypted JSON document whose key sits beside it, so generated
development keys survive restarts without being written in plaintext.
"""

from __future__ import annotations

import json
import os
import uuid
from pathlib import Path
from typing import Any, Callable, Dict, Optional, Tuple

import structlog
from cryptography.fernet import Fernet, InvalidToken
from platformdirs import user_data_dir

from payrecon.time_utils import isoformat_z, utc_now

APP_NAME = "PayRecon"

SECRET_ENV_MAPPING: Dict[str, str] = {
    "phi-encryption-key": "PHI_ENCRYPTION_KEY",
    "stripe-secret-key": "STRIPE_SECRET_KEY",
    "stripe-webhook-secret": "STRIPE_WEBHOOK_SECRET",
}

_PRODUCTION_ENVIRONMENTS = {"production", "prod"}
_TRUTHY = {"1", "true", "yes", "on"}

logger = structlog.get_logger(__name__)


class SecretError(Exception):
    """Base error for secret management failures."""


class SecretNotFoundError(SecretError):
    """A required secret is missing from every allowed source."""


class SecretReadOnlyError(SecretError):
    """The local store is disabled for this deployment."""


def local_store_enabled() -> bool:
    explicit = os.getenv("PAYRECON_ALLOW_LOCAL_SECRETS")
    if explicit is not None:
        return explicit.strip().lower() in _TRUTHY
    environment = os.getenv("ENVIRONMENT", "development").strip().lower()
    return environment not in _PRODUCTION_ENVIRONMENTS


class LocalSecretStore:
    """Encrypted JSON document mapping secret names to value + metadata."""

    def __init__(self, directory: Optional[Path] = None) -> None:
        override = os.getenv("PAYRECON_DATA_DIR")
        if directory is None:
            directory = Path(override) if override else Path(user_data_dir(APP_NAME, APP_NAME))
        directory.mkdir(parents=True, exist_ok=True)
        self.path = directory / "secrets.json.enc"
        self.key_path = directory / "secrets.key"

    def _cipher(self) -> Fernet:
        if not self.key_path.exists():
            self.key_path.write_bytes(Fernet.generate_key())
        return Fernet(self.key_path.read_bytes())

    def read(self) -> Dict[str, Dict[str, Any]]:
        if not self.path.exists():
            return {}
        try:
            document = json.loads(self._cipher().decrypt(self.path.read_bytes()))
        except (InvalidToken, ValueError, OSError) as exc:
            logger.warning("local_secret_store_unreadable", path=str(self.path), error=type(exc).__name__)
            return {}
        if not isinstance(document, dict):
            return {}
        return {str(key): dict(entry) for key, entry in document.items() if isinstance(entry, dict)}

    def write(self, entries: Dict[str, Dict[str, Any]]) -> None:
        payload = json.dumps(entries, sort_keys=True).encode("utf-8")
        self.path.write_bytes(self._cipher().encrypt(payload))


def load_secret(
    name: str,
    env_var: str,
    *,
    required: bool = False,
    allow_fallback: Optional[bool] = None,
) -> Tuple[Optional[str], Dict[str, Any]]:
    """Return ``(value, metadata)`` for secret *name*.

    A value found in the local store is exported to *env_var* so later
    lookups in the same process hit the environment.
    """

    from_env = os.getenv(env_var)
    if from_env:
        return from_env, {"source": "environment"}

    if local_store_enabled() if allow_fallback is None else allow_fallback:
        entry = LocalSecretStore().read().get(name) or {}
        value = entry.get("value")
        if isinstance(value, str) and value:
            os.environ[env_var] = value
            return value, {key: entry.get(key) for key in ("source", "rotatedAt", "version")}

    if required:
        raise SecretNotFoundError(f"Secret '{name}' is not configured; set {env_var}.")
    return None, {}


def store_secret(name: str, env_var: str, value: str, *, source: str = "local-file") -> Dict[str, Any]:
    """Persist *value* locally, export it to *env_var* and return its metadata."""

    if not local_store_enabled():
        raise SecretReadOnlyError(f"Refusing to persist '{name}' locally; supply {env_var} instead.")
    store = LocalSecretStore()
    entries = store.read()
    metadata = {"source": source, "rotatedAt": isoformat_z(utc_now()), "version": uuid.uuid4().hex}
    entries[name] = {"value": value, **metadata}
    store.write(entries)
    os.environ[env_var] = value
    logger.info("local_secret_stored", secret=name, source=source)
    return metadata


def ensure_local_secret(name: str, env_var: str, generator: Callable[[], str]) -> str:
    """Return secret *name*, generating and storing it on first use."""

    existing, _ = load_secret(name, env_var)
    if existing:
        return existing
    generated = generator()
    store_secret(name, env_var, generated, source="generated")
    return generated


__all__ = [
    "APP_NAME",
    "SECRET_ENV_MAPPING",
    "LocalSecretStore",
    "SecretError",
    "SecretNotFoundError",
    "SecretReadOnlyError",
    "ensure_local_secret",
    "load_secret",
    "local_store_enabled",
    "store_secret",
]
