"""Search helpers for encrypted patient identity fields.

Patient PHI columns hold Fernet tokens whose ciphertext changes on every
write, so ``WHERE email = ?`` can only ever match rows that were stored
before encryption was enabled.  Every lookup here therefore runs in two
passes:

1. a SQL comparison against the raw column, which finds legacy plaintext
   rows cheaply;
2. when pass 1 finds nothing, a bounded, tenant-scoped scan of the newest
   ``PHI_SCAN_LIMIT`` patients whose fields are decrypted and compared in
   memory.

Tenants larger than the scan limit can miss matches in pass 2.  The limit
is never raised implicitly; see ``PHI_SCAN_LIMIT``.

All lookups are read-only and return the most recently created match.
"""

from __future__ import annotations

import re
from typing import Callable, List, Optional

import structlog
from sqlalchemy import and_, func, or_, select
from sqlalchemy.orm import Session
from sqlalchemy.sql.elements import ColumnElement

from payrecon.config import get_reconciliation_settings
from payrecon.db.models import Patient
from payrecon.encryption import safe_decrypt

logger = structlog.get_logger(__name__)

_NON_DIGITS = re.compile(r"\D")

PatientPredicate = Callable[[Patient], bool]


def normalize_email(value: Optional[str]) -> str:
    return (value or "").strip().lower()


def normalize_phone(value: Optional[str]) -> str:
    """Return the bare 10-digit form of a North American phone number.

    Numbers of other lengths are returned as their digits only.
    """

    digits = _NON_DIGITS.sub("", value or "")
    if len(digits) == 11 and digits.startswith("1"):
        return digits[1:]
    return digits


def phone_variants(value: Optional[str]) -> List[str]:
    """Return the unpadded and ``1``-padded forms used for plaintext lookups."""

    digits = normalize_phone(value)
    if not digits:
        return []
    variants = [digits]
    if len(digits) == 10:
        variants.append(f"1{digits}")
    return variants


def _normalize_name(value: Optional[str]) -> str:
    return (value or "").strip().lower()


def _scan_limit(limit: Optional[int]) -> int:
    return limit if limit is not None else get_reconciliation_settings().phi_scan_limit


def _newest_first(stmt):
    return stmt.order_by(Patient.created_at.desc(), Patient.id.desc())


def _two_pass_lookup(
    session: Session,
    *,
    clinic_id: int,
    field: str,
    plaintext_filter: ColumnElement,
    predicate: PatientPredicate,
    scan_limit: Optional[int],
) -> Optional[Patient]:
    tenant = Patient.clinic_id == clinic_id

    stmt = _newest_first(select(Patient).where(and_(tenant, plaintext_filter)))
    for patient in session.execute(stmt).scalars():
        if predicate(patient):
            logger.debug("phi_match_plaintext", field=field, patient_id=patient.id)
            return patient

    limit = _scan_limit(scan_limit)
    candidates = session.execute(
        _newest_first(select(Patient).where(tenant)).limit(limit)
    ).scalars().all()
    for patient in candidates:
        if predicate(patient):
            logger.debug("phi_match_decrypted", field=field, patient_id=patient.id)
            return patient
    if len(candidates) >= limit:
        logger.warning(
            "phi_scan_limit_reached",
            field=field,
            clinic_id=clinic_id,
            limit=limit,
        )
    return None


def find_patient_by_email(
    session: Session,
    email: str,
    clinic_id: int,
    *,
    scan_limit: Optional[int] = None,
) -> Optional[Patient]:
    target = normalize_email(email)
    if not target:
        return None
    return _two_pass_lookup(
        session,
        clinic_id=clinic_id,
        field="email",
        plaintext_filter=func.lower(func.trim(Patient.email)) == target,
        predicate=lambda patient: normalize_email(safe_decrypt(patient.email)) == target,
        scan_limit=scan_limit,
    )


def find_patient_by_phone(
    session: Session,
    phone: str,
    clinic_id: int,
    *,
    scan_limit: Optional[int] = None,
) -> Optional[Patient]:
    target = normalize_phone(phone)
    if not target:
        return None
    # Stored plaintext may carry formatting, so the SQL side is a loose
    # containment filter and the predicate does the exact comparison.
    plaintext_filter = or_(*(Patient.phone.contains(v) for v in phone_variants(phone)))
    return _two_pass_lookup(
        session,
        clinic_id=clinic_id,
        field="phone",
        plaintext_filter=plaintext_filter,
        predicate=lambda patient: normalize_phone(safe_decrypt(patient.phone)) == target,
        scan_limit=scan_limit,
    )


def find_patient_by_name(
    session: Session,
    first_name: str,
    last_name: str,
    clinic_id: int,
    *,
    scan_limit: Optional[int] = None,
) -> Optional[Patient]:
    first = _normalize_name(first_name)
    last = _normalize_name(last_name)
    if not first or not last:
        return None

    def predicate(patient: Patient) -> bool:
        return (
            _normalize_name(safe_decrypt(patient.first_name)) == first
            and _normalize_name(safe_decrypt(patient.last_name)) == last
        )

    return _two_pass_lookup(
        session,
        clinic_id=clinic_id,
        field="name",
        plaintext_filter=and_(
            func.lower(func.trim(Patient.first_name)) == first,
            func.lower(func.trim(Patient.last_name)) == last,
        ),
        predicate=predicate,
        scan_limit=scan_limit,
    )


__all__ = [
    "find_patient_by_email",
    "find_patient_by_name",
    "find_patient_by_phone",
    "normalize_email",
    "normalize_phone",
    "phone_variants",
]
