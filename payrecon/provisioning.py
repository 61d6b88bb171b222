"""Create patient records for payments that match nobody."""

from __future__ import annotations

from typing import Any, Dict, List, Optional

import structlog
from sqlalchemy import update
from sqlalchemy.orm import Session

from payrecon import metrics
from payrecon.db.models import Clinic, Patient, ProfileStatus
from payrecon.encryption import encrypt_phi
from payrecon.enrichment import is_placeholder_name
from payrecon.errors import NoTenantAvailableError
from payrecon.events import PaymentEvent
from payrecon.matching import claimable_stripe_customer_id, split_name
from payrecon.time_utils import isoformat_z, utc_now

logger = structlog.get_logger(__name__)

PLACEHOLDER_FIRST_NAME = "Unknown"
PLACEHOLDER_LAST_NAME = "Customer"
PLACEHOLDER_DOB = "1900-01-01"
PLACEHOLDER_EMAIL_DOMAIN = "placeholder.local"

PENDING_COMPLETION_FLAG = "PENDING COMPLETION:"
PATIENT_SOURCE = "stripe"


def next_patient_identifier(session: Session, clinic_id: int) -> str:
    """Allocate the next human-readable patient id for *clinic_id*.

    The counter is bumped with a single ``UPDATE ... RETURNING`` so two
    concurrent provisioners in the same clinic never receive the same value.
    """

    row = session.execute(
        update(Clinic)
        .where(Clinic.id == clinic_id)
        .values(patient_counter=Clinic.patient_counter + 1)
        .returning(Clinic.patient_counter, Clinic.patient_id_prefix)
    ).one_or_none()
    if row is None:
        raise NoTenantAvailableError(f"Clinic {clinic_id} does not exist")
    counter, prefix = row
    return f"{prefix or ''}{counter:06d}"


def placeholder_email(event: PaymentEvent) -> str:
    token = event.customer_id or str(int(utc_now().timestamp() * 1000))
    return f"stripe-{token}@{PLACEHOLDER_EMAIL_DOMAIN}"


def is_placeholder_email(email: Optional[str]) -> bool:
    return bool(email) and email.strip().lower().endswith(f"@{PLACEHOLDER_EMAIL_DOMAIN}")


def _missing_fields(event: PaymentEvent, has_name: bool) -> List[str]:
    missing = []
    if not has_name:
        missing.append("name")
    if not event.email:
        missing.append("email")
    if not event.phone:
        missing.append("phone")
    if event.address is None:
        missing.append("address")
    missing.append("dob")
    return missing


def _worklist_note(missing: List[str], reference: Optional[str]) -> str:
    lines = [
        "Auto-created from Stripe payment.",
        f"{PENDING_COMPLETION_FLAG} missing {', '.join(missing)}.",
    ]
    if reference:
        lines.append(f"First payment: {reference}")
    return "\n".join(lines)


def create_patient_from_payment(
    session: Session,
    event: PaymentEvent,
    clinic_id: int,
) -> Patient:
    """Insert a ``PENDING_COMPLETION`` patient built from *event*.

    Callers are responsible for not provisioning twice for the same event.
    """

    first, last = ("", "")
    if event.name and not is_placeholder_name(event.name):
        first, last = split_name(event.name)
    has_name = bool(first and last)
    if not has_name:
        first, last = PLACEHOLDER_FIRST_NAME, PLACEHOLDER_LAST_NAME

    missing = _missing_fields(event, has_name)
    reference = event.payment_reference
    address = event.address
    customer_id = claimable_stripe_customer_id(session, event.customer_id)
    source_metadata: Dict[str, Any] = {
        "stripeCustomerId": event.customer_id,
        "firstPaymentId": reference,
        "createdFrom": "payment_webhook",
        "missingFields": missing,
        "placeholderName": not has_name,
        "timestamp": isoformat_z(utc_now()),
    }
    if event.customer_id and customer_id is None:
        source_metadata["stripeCustomerIdWithheld"] = True

    patient = Patient(
        patient_id=next_patient_identifier(session, clinic_id),
        clinic_id=clinic_id,
        first_name=encrypt_phi(first),
        last_name=encrypt_phi(last),
        email=encrypt_phi(event.email or placeholder_email(event)),
        phone=encrypt_phi(event.phone or ""),
        dob=encrypt_phi(PLACEHOLDER_DOB),
        gender="unknown",
        address1=encrypt_phi(address.line1 if address else None),
        address2=encrypt_phi(address.line2 if address else None),
        city=encrypt_phi(address.city if address else None),
        state=encrypt_phi(address.state if address else None),
        zip=encrypt_phi(address.postal_code if address else None),
        stripe_customer_id=customer_id,
        source=PATIENT_SOURCE,
        source_metadata=source_metadata,
        profile_status=ProfileStatus.PENDING_COMPLETION.value,
        notes=_worklist_note(missing, reference),
    )
    session.add(patient)
    session.flush()

    metrics.PATIENTS_CREATED.inc()
    logger.info(
        "patient_created_from_payment",
        patient_id=patient.id,
        clinic_id=clinic_id,
        customer_id=event.customer_id,
        payment_reference=reference,
        missing_fields=missing,
    )
    return patient


__all__ = [
    "PENDING_COMPLETION_FLAG",
    "PLACEHOLDER_FIRST_NAME",
    "PLACEHOLDER_LAST_NAME",
    "create_patient_from_payment",
    "is_placeholder_email",
    "next_patient_identifier",
    "placeholder_email",
]
