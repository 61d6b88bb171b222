"""Exception hierarchy for the reconciliation pipeline."""

from __future__ import annotations

from typing import Optional

from sqlalchemy.exc import SQLAlchemyError, StatementError

MAX_ERROR_MESSAGE_LENGTH = 300


class PaymentReconError(Exception):
    """Base class for reconciliation failures."""


class StripeConfigurationError(PaymentReconError):
    """Raised when Stripe credentials are missing."""


class StripeAPIError(PaymentReconError):
    """Raised when a Stripe API request fails."""

    def __init__(self, message: str, *, status_code: Optional[int] = None) -> None:
        super().__init__(message)
        self.status_code = status_code

    @property
    def retryable(self) -> bool:
        """Rate limits, server errors and transport failures are worth retrying."""

        if self.status_code is None:
            return True
        return self.status_code == 429 or self.status_code >= 500

    @property
    def not_found(self) -> bool:
        return self.status_code == 404


class NoTenantAvailableError(PaymentReconError):
    """Raised when no clinic can be determined for a new patient."""


class SignatureVerificationError(PaymentReconError):
    """Raised when a webhook payload fails Stripe signature verification."""


class PatientNotFoundError(PaymentReconError):
    """Raised when an explicit patient lookup finds nothing."""


def describe_error(exc: BaseException) -> str:
    """Return a short message for *exc* that is safe to log and persist.

    SQLAlchemy renders the failing statement and its bound parameters into
    ``str(exc)``; those parameters carry ciphertext and patient notes, and
    Postgres adds a ``DETAIL`` line with key values.  Only the exception
    type and the first line of the driver message are kept.
    """

    if isinstance(exc, StatementError) and exc.orig is not None:
        driver_message = str(exc.orig).strip().splitlines()
        detail = driver_message[0] if driver_message else type(exc.orig).__name__
        return f"{type(exc).__name__}: {detail}"[:MAX_ERROR_MESSAGE_LENGTH]
    if isinstance(exc, SQLAlchemyError):
        return type(exc).__name__
    lines = str(exc).strip().splitlines()
    return (lines[0] if lines else type(exc).__name__)[:MAX_ERROR_MESSAGE_LENGTH]


__all__ = [
    "MAX_ERROR_MESSAGE_LENGTH",
    "NoTenantAvailableError",
    "PatientNotFoundError",
    "PaymentReconError",
    "SignatureVerificationError",
    "StripeAPIError",
    "StripeConfigurationError",
    "describe_error",
]
