"""Field-level encryption for patient identity columns.

Patient PHI (names, email, phone, address, date of birth) is stored as
Fernet tokens.  Fernet prepends a random IV to every token, so encrypting
the same plaintext twice yields different ciphertext.  Equality and
pattern searches can therefore never be pushed down to the database for
encrypted rows; :mod:`payrecon.phi_search` decrypts candidates in memory
instead.

Rows written before encryption was enabled still hold plaintext.  Readers
use :func:`safe_decrypt`, which returns the stored value unchanged when it
is not a token this installation can decrypt.
"""

from __future__ import annotations

from functools import lru_cache
from typing import Optional

from cryptography.fernet import Fernet, InvalidToken

from payrecon import key_manager

_PHI_SECRET_NAME = "phi-encryption-key"
_PHI_ENV_VAR = key_manager.SECRET_ENV_MAPPING[_PHI_SECRET_NAME]

# Fernet tokens are urlsafe base64 of a payload starting with version byte 0x80.
_TOKEN_PREFIX = "gAAAAA"


@lru_cache(maxsize=1)
def _phi_cipher() -> Fernet:
    key = key_manager.ensure_local_secret(
        _PHI_SECRET_NAME,
        _PHI_ENV_VAR,
        lambda: Fernet.generate_key().decode("utf-8"),
    )
    return Fernet(key.encode("utf-8"))


def looks_encrypted(value: Optional[str]) -> bool:
    """Return ``True`` when *value* has the shape of a Fernet token."""

    return isinstance(value, str) and value.startswith(_TOKEN_PREFIX) and len(value) >= 100


def encrypt_phi(value: Optional[str]) -> Optional[str]:
    """Encrypt a single PHI field value. Empty values are stored as-is."""

    if value is None or value == "":
        return value
    return _phi_cipher().encrypt(value.encode("utf-8")).decode("ascii")


def decrypt_phi(token: str) -> str:
    """Decrypt *token*, raising :class:`ValueError` if it is not valid."""

    try:
        return _phi_cipher().decrypt(token.encode("ascii")).decode("utf-8")
    except (InvalidToken, UnicodeError) as exc:
        raise ValueError("PHI ciphertext could not be decrypted") from exc


def safe_decrypt(value: Optional[str]) -> str:
    """Return the plaintext for *value*, or *value* itself when not decryptable."""

    if not value:
        return ""
    if not looks_encrypted(value):
        return value
    try:
        return decrypt_phi(value)
    except ValueError:
        return value


__all__ = [
    "decrypt_phi",
    "encrypt_phi",
    "looks_encrypted",
    "safe_decrypt",
]
