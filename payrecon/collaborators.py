"""Services the payment pipeline calls after an invoice is recorded.

Each collaborator is a small contract with a default implementation.
Callers that need different behaviour (a real SOAP-note generator, an
email-backed portal invite) pass their own objects through
:class:`ProcessingServices`.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Dict, Mapping, Optional, Protocol

import structlog
from sqlalchemy.orm import Session

from payrecon.db.models import Clinic
from payrecon.events import optional_str
from payrecon.stripe_client import StripeClient, get_stripe_client

logger = structlog.get_logger(__name__)


class DocumentationEnsurer(Protocol):
    """Contract for making sure a paid invoice has clinical documentation."""

    def ensure(self, session: Session, patient_id: int, invoice_id: int) -> Dict[str, Any]:
        """Return ``{"action": ..., "documentId": ...}``."""


class SubscriptionCreator(Protocol):
    """Contract for starting a recurring subscription upstream."""

    def create(
        self,
        customer_id: str,
        price_id: str,
        *,
        trial_days: Optional[int] = None,
        metadata: Optional[Mapping[str, Any]] = None,
    ) -> str:
        """Return the new subscription reference."""


class PortalInviteSender(Protocol):
    """Contract for inviting a patient to the patient portal."""

    def send(self, patient_id: int, reason: str) -> None:
        """Queue an invite for *patient_id*."""


class TenantSettingsStore(Protocol):
    """Contract for reading per-clinic feature settings."""

    def get(self, session: Session, clinic_id: int) -> Dict[str, Any]:
        """Return the settings mapping for *clinic_id*."""


class NullDocumentationEnsurer:
    """Record that documentation was requested without generating any."""

    def ensure(self, session: Session, patient_id: int, invoice_id: int) -> Dict[str, Any]:
        logger.info("documentation_ensure_skipped", patient_id=patient_id, invoice_id=invoice_id)
        return {"action": "skipped", "documentId": None}


class StripeSubscriptionCreator:
    """Create subscriptions through the shared Stripe connector."""

    def __init__(self, client: Optional[StripeClient] = None) -> None:
        self._client = client

    def create(
        self,
        customer_id: str,
        price_id: str,
        *,
        trial_days: Optional[int] = None,
        metadata: Optional[Mapping[str, Any]] = None,
    ) -> str:
        client = self._client or get_stripe_client()
        subscription = client.create_subscription(
            customer_id, price_id, trial_days=trial_days, metadata=metadata
        )
        subscription_id = optional_str(subscription.get("id"))
        if subscription_id is None:
            raise ValueError("Stripe returned a subscription without an id")
        return subscription_id


class LoggingPortalInviteSender:
    """Log portal invites; delivery is owned by the messaging service."""

    def send(self, patient_id: int, reason: str) -> None:
        logger.info("portal_invite_requested", patient_id=patient_id, reason=reason)


class ClinicSettingsStore:
    """Read tenant settings from the ``clinics.settings`` JSON column."""

    def get(self, session: Session, clinic_id: int) -> Dict[str, Any]:
        clinic = session.get(Clinic, clinic_id)
        if clinic is None:
            return {}
        return clinic.settings_dict()


@dataclass
class ProcessingServices:
    documentation: DocumentationEnsurer = field(default_factory=NullDocumentationEnsurer)
    subscriptions: SubscriptionCreator = field(default_factory=StripeSubscriptionCreator)
    portal_invites: PortalInviteSender = field(default_factory=LoggingPortalInviteSender)
    tenant_settings: TenantSettingsStore = field(default_factory=ClinicSettingsStore)


__all__ = [
    "ClinicSettingsStore",
    "DocumentationEnsurer",
    "LoggingPortalInviteSender",
    "NullDocumentationEnsurer",
    "PortalInviteSender",
    "ProcessingServices",
    "StripeSubscriptionCreator",
    "SubscriptionCreator",
    "TenantSettingsStore",
]
