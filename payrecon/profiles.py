"""Completion of patient profiles auto-created from payments."""

from __future__ import annotations

from typing import Any, Dict, List, Mapping, Optional

import structlog
from sqlalchemy import select
from sqlalchemy.orm import Session

from payrecon.collaborators import DocumentationEnsurer, NullDocumentationEnsurer
from payrecon.db.models import PATIENT_PHI_FIELDS, Invoice, InvoiceStatus, Patient, ProfileStatus
from payrecon.encryption import encrypt_phi
from payrecon.errors import PatientNotFoundError, describe_error
from payrecon.events import optional_str
from payrecon.provisioning import PENDING_COMPLETION_FLAG
from payrecon.time_utils import isoformat_z, utc_now

logger = structlog.get_logger(__name__)

COMPLETED_FLAG = "COMPLETED:"

# Request keys accepted by ``complete_profile`` and the columns they update.
PROFILE_FIELDS = {
    "firstName": "first_name",
    "lastName": "last_name",
    "email": "email",
    "phone": "phone",
    "dob": "dob",
    "gender": "gender",
    "address1": "address1",
    "address2": "address2",
    "city": "city",
    "state": "state",
    "zip": "zip",
}

RX_BLOCKING_STATUSES = frozenset({ProfileStatus.PENDING_COMPLETION.value, ProfileStatus.ARCHIVED.value})


def is_rx_queue_eligible(invoice: Invoice, patient: Patient) -> bool:
    """Return ``True`` when a paid invoice may enter the prescription queue."""

    return invoice.status == InvoiceStatus.PAID.value and patient.profile_status not in RX_BLOCKING_STATUSES


def _completed_notes(notes: Optional[str]) -> str:
    if not notes:
        return "Profile completed."
    return notes.replace(PENDING_COMPLETION_FLAG, COMPLETED_FLAG)


def complete_profile(
    session: Session,
    patient_id: int,
    updates: Mapping[str, Any],
    ensurer: Optional[DocumentationEnsurer] = None,
    *,
    clinic_id: Optional[int] = None,
) -> Dict[str, Any]:
    """Apply *updates* to a patient and mark the profile ``ACTIVE``.

    Paid invoices that were waiting on the profile get documentation
    ensured; failures there are logged and reported but do not undo the
    completion.
    """

    patient = session.get(Patient, patient_id)
    if patient is None or (clinic_id is not None and patient.clinic_id != clinic_id):
        raise PatientNotFoundError(f"Patient {patient_id} not found")

    values = {key: optional_str(updates.get(key)) for key in PROFILE_FIELDS}
    if not values["email"] and not values["firstName"]:
        raise ValueError("Must provide email or name to complete profile")

    for key, column in PROFILE_FIELDS.items():
        value = values[key]
        if value is None:
            continue
        setattr(patient, column, encrypt_phi(value) if column in PATIENT_PHI_FIELDS else value)

    previous_status = patient.profile_status
    patient.profile_status = ProfileStatus.ACTIVE.value
    patient.notes = _completed_notes(patient.notes)
    source_metadata = patient.source_metadata_dict()
    source_metadata["profileCompletedAt"] = isoformat_z(utc_now())
    patient.source_metadata = source_metadata
    session.commit()
    logger.info("patient_profile_completed", patient_id=patient.id, previous_status=previous_status)

    ensurer = ensurer or NullDocumentationEnsurer()
    invoices = session.execute(
        select(Invoice)
        .where(Invoice.patient_id == patient.id, Invoice.status == InvoiceStatus.PAID.value)
        .order_by(Invoice.id)
    ).scalars().all()
    documentation: List[Dict[str, Any]] = []
    for invoice in invoices:
        try:
            outcome = ensurer.ensure(session, patient.id, invoice.id) or {}
            session.commit()
        except Exception as exc:
            session.rollback()
            logger.warning(
                "profile_documentation_failed",
                patient_id=patient.id,
                invoice_id=invoice.id,
                error=describe_error(exc),
            )
            documentation.append({"invoiceId": invoice.id, "error": describe_error(exc)})
            continue
        documentation.append(
            {"invoiceId": invoice.id, "action": outcome.get("action"), "documentId": outcome.get("documentId")}
        )

    return {"success": True, "patient": patient.to_dict(), "documentation": documentation}


__all__ = ["COMPLETED_FLAG", "complete_profile", "is_rx_queue_eligible"]
