"""Resolve the patient a Stripe payment belongs to.

Strategies run in strict precedence order and stop at the first hit:

==================  ==========  =======================================
Strategy            Confidence  Notes
==================  ==========  =======================================
Stripe customer id  exact       globally unique, re-checked for tenant
Email               high        case-insensitive, tenant-scoped
Phone               medium      normalised to 10 digits, tenant-scoped
Full name           low         first *and* last name required
==================  ==========  =======================================
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Optional, Tuple

import structlog
from sqlalchemy import select
from sqlalchemy.orm import Session

from payrecon import metrics
from payrecon.db.models import MatchConfidence, MatchMethod, Patient
from payrecon.enrichment import is_placeholder_name
from payrecon.events import PaymentEvent
from payrecon.phi_search import (
    find_patient_by_email,
    find_patient_by_name,
    find_patient_by_phone,
)

logger = structlog.get_logger(__name__)


@dataclass(frozen=True)
class PatientMatchResult:
    patient: Optional[Patient] = None
    matched_by: Optional[MatchMethod] = None
    confidence: Optional[MatchConfidence] = None

    @property
    def matched(self) -> bool:
        return self.patient is not None


NO_MATCH = PatientMatchResult()


def split_name(full_name: Optional[str]) -> Tuple[str, str]:
    """Split *full_name* into ``(first, last)``; the final token is the last name."""

    parts = (full_name or "").split()
    if not parts:
        return "", ""
    if len(parts) == 1:
        return parts[0], ""
    return " ".join(parts[:-1]), parts[-1]


def find_patient_by_stripe_customer_id(
    session: Session,
    customer_id: str,
    clinic_id: Optional[int] = None,
) -> Optional[Patient]:
    """Look up a patient by Stripe customer id, rejecting cross-tenant hits."""

    patient = session.execute(
        select(Patient).where(Patient.stripe_customer_id == customer_id)
    ).scalar_one_or_none()
    if patient is None:
        return None
    if clinic_id is not None and patient.clinic_id != clinic_id:
        logger.warning(
            "tenant_isolation_violation_blocked",
            customer_id=customer_id,
            requested_clinic_id=clinic_id,
            patient_clinic_id=patient.clinic_id,
            patient_id=patient.id,
        )
        metrics.TENANT_ISOLATION_REJECTIONS.inc()
        return None
    return patient



def claimable_stripe_customer_id(
    session: Session,
    customer_id: Optional[str],
    patient: Optional[Patient] = None,
) -> Optional[str]:
    """Return *customer_id* when it may be stored on *patient*.

    ``patients.stripe_customer_id`` is unique across clinics, so an id that
    already belongs to another patient is withheld and ``None`` returned.
    """

    if not customer_id:
        return None
    owner = find_patient_by_stripe_customer_id(session, customer_id)
    if owner is None or (patient is not None and owner.id == patient.id):
        return customer_id
    logger.warning(
        "stripe_customer_id_withheld",
        customer_id=customer_id,
        owner_patient_id=owner.id,
        owner_clinic_id=owner.clinic_id,
        patient_id=patient.id if patient is not None else None,
    )
    return None


def _result(patient: Patient, method: MatchMethod, confidence: MatchConfidence) -> PatientMatchResult:
    logger.debug("patient_matched", method=method.value, patient_id=patient.id)
    metrics.PATIENT_MATCHES.labels(method=method.value).inc()
    return PatientMatchResult(patient=patient, matched_by=method, confidence=confidence)


def match_patient_from_payment(
    session: Session,
    event: PaymentEvent,
    clinic_id: int,
    *,
    scan_limit: Optional[int] = None,
) -> PatientMatchResult:
    """Return the best patient match for *event* inside *clinic_id*."""

    if event.customer_id:
        patient = find_patient_by_stripe_customer_id(session, event.customer_id, clinic_id)
        if patient is not None:
            return _result(patient, MatchMethod.STRIPE_CUSTOMER_ID, MatchConfidence.EXACT)

    if event.email:
        patient = find_patient_by_email(session, event.email, clinic_id, scan_limit=scan_limit)
        if patient is not None:
            return _result(patient, MatchMethod.EMAIL, MatchConfidence.HIGH)

    if event.phone:
        patient = find_patient_by_phone(session, event.phone, clinic_id, scan_limit=scan_limit)
        if patient is not None:
            return _result(patient, MatchMethod.PHONE, MatchConfidence.MEDIUM)

    if event.name and not is_placeholder_name(event.name):
        first, last = split_name(event.name)
        if first and last:
            patient = find_patient_by_name(session, first, last, clinic_id, scan_limit=scan_limit)
            if patient is not None:
                return _result(patient, MatchMethod.NAME, MatchConfidence.LOW)

    logger.debug(
        "patient_match_not_found",
        customer_id=event.customer_id,
        payment_intent_id=event.payment_intent_id,
        charge_id=event.charge_id,
    )
    return NO_MATCH


__all__ = [
    "NO_MATCH",
    "PatientMatchResult",
    "claimable_stripe_customer_id",
    "find_patient_by_stripe_customer_id",
    "match_patient_from_payment",
    "split_name",
]
