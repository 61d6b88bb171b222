"""End-to-end processing of one settled Stripe payment.

:func:`process_payment_event` is the single entry point webhook handlers
and manual reconciliation call.  It never raises: every outcome, including
failures, is written to the ``payment_reconciliations`` ledger, which also
serves as the idempotency store keyed by Stripe event id.
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass
from typing import Any, Dict, Optional

import structlog
from sqlalchemy import func, select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from payrecon import metrics
from payrecon.collaborators import ProcessingServices
from payrecon.config import get_reconciliation_settings
from payrecon.db.models import (
    Invoice,
    InvoiceStatus,
    Patient,
    PaymentReconciliation,
    ReconciliationStatus,
    Subscription,
)
from payrecon.encryption import encrypt_phi
from payrecon.enrichment import enrich_payment_event
from payrecon.errors import NoTenantAvailableError, describe_error
from payrecon.events import PaymentEvent
from payrecon.invoicing import create_paid_invoice, find_existing_invoice
from payrecon.matching import (
    PatientMatchResult,
    claimable_stripe_customer_id,
    match_patient_from_payment,
)
from payrecon.provisioning import create_patient_from_payment
from payrecon.stripe_client import StripeClient
from payrecon.time_utils import utc_now

logger = structlog.get_logger(__name__)

CLINIC_METADATA_KEYS = ("clinicId", "clinic_id")
NO_TENANT_MESSAGE = "No clinic ID available for patient creation"
MANUAL_EVENT_TYPE = "manual_processing"


@dataclass
class PaymentProcessingResult:
    """Structured outcome of :func:`process_payment_event`."""

    success: bool
    status: ReconciliationStatus
    patient_id: Optional[int] = None
    invoice_id: Optional[int] = None
    patient_created: bool = False
    matched_by: Optional[str] = None
    confidence: Optional[str] = None
    clinic_id: Optional[int] = None
    error: Optional[str] = None
    duplicate: bool = False

    @classmethod
    def from_reconciliation(cls, row: PaymentReconciliation, *, duplicate: bool = True) -> "PaymentProcessingResult":
        status = ReconciliationStatus(row.status)
        return cls(
            success=status is not ReconciliationStatus.FAILED,
            status=status,
            patient_id=row.patient_id,
            invoice_id=row.invoice_id,
            patient_created=bool(row.patient_created),
            matched_by=row.matched_by,
            confidence=row.match_confidence,
            clinic_id=row.clinic_id,
            error=row.error_message,
            duplicate=duplicate,
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "success": self.success,
            "status": self.status.value,
            "patientId": self.patient_id,
            "invoiceId": self.invoice_id,
            "patientCreated": self.patient_created,
            "matchedBy": self.matched_by,
            "matchConfidence": self.confidence,
            "clinicId": self.clinic_id,
            "error": self.error,
            "duplicate": self.duplicate,
        }


def resolve_clinic_id(event: PaymentEvent) -> Optional[int]:
    """Return the tenant for *event* from its metadata or the configured default."""

    for key in CLINIC_METADATA_KEYS:
        raw = event.metadata.get(key)
        if raw is None:
            continue
        try:
            clinic_id = int(str(raw).strip())
        except ValueError:
            logger.warning("payment_clinic_metadata_invalid", key=key, payment_intent_id=event.payment_intent_id)
            continue
        if clinic_id > 0:
            return clinic_id
    return get_reconciliation_settings().default_clinic_id


def find_reconciliation(session: Session, stripe_event_id: str) -> Optional[PaymentReconciliation]:
    return session.execute(
        select(PaymentReconciliation).where(PaymentReconciliation.stripe_event_id == stripe_event_id)
    ).scalar_one_or_none()


def record_reconciliation(
    session: Session,
    event: PaymentEvent,
    *,
    stripe_event_id: str,
    stripe_event_type: str,
    status: ReconciliationStatus,
    match: Optional[PatientMatchResult] = None,
    patient_id: Optional[int] = None,
    invoice_id: Optional[int] = None,
    patient_created: bool = False,
    clinic_id: Optional[int] = None,
    error_message: Optional[str] = None,
) -> Optional[PaymentReconciliation]:
    """Write one ledger row and commit it.

    A failed write is logged and returns ``None``; the payment outcome it
    describes is already committed.
    """

    row = PaymentReconciliation(
        stripe_event_id=stripe_event_id,
        stripe_event_type=stripe_event_type,
        stripe_payment_intent_id=event.payment_intent_id,
        stripe_charge_id=event.charge_id,
        stripe_invoice_id=event.stripe_invoice_id,
        stripe_customer_id=event.customer_id,
        amount=event.amount,
        currency=event.currency,
        description=event.description,
        customer_email=encrypt_phi(event.email),
        customer_name=encrypt_phi(event.name),
        customer_phone=encrypt_phi(event.phone),
        status=status.value,
        matched_by=match.matched_by.value if match and match.matched_by else None,
        match_confidence=match.confidence.value if match and match.confidence else None,
        patient_id=patient_id,
        invoice_id=invoice_id,
        patient_created=patient_created,
        clinic_id=clinic_id,
        error_message=error_message,
        metadata_json=dict(event.metadata),
        processed_at=utc_now(),
    )
    try:
        session.add(row)
        session.commit()
    except SQLAlchemyError as exc:
        session.rollback()
        logger.error(
            "reconciliation_record_failed",
            stripe_event_id=stripe_event_id,
            payment_intent_id=event.payment_intent_id,
            error=describe_error(exc),
        )
        return None
    return row


def _link_stripe_customer(session: Session, patient: Patient, customer_id: str) -> None:
    if claimable_stripe_customer_id(session, customer_id, patient) is not None:
        patient.stripe_customer_id = customer_id
        return
    # Owned by another patient: keep the reference without claiming the column.
    source_metadata = patient.source_metadata_dict()
    source_metadata["stripeCustomerId"] = customer_id
    source_metadata["stripeCustomerIdWithheld"] = True
    patient.source_metadata = source_metadata


def _side_effect_failed(session: Session, action: str, exc: Exception, **context: Any) -> None:
    session.rollback()
    metrics.SIDE_EFFECT_FAILURES.labels(action=action).inc()
    logger.warning(
        "payment_side_effect_failed",
        action=action,
        error=describe_error(exc),
        error_type=type(exc).__name__,
        **context,
    )


async def _create_subscriptions(
    session: Session,
    services: ProcessingServices,
    event: PaymentEvent,
    patient: Patient,
    invoice: Invoice,
) -> None:
    recurring = [item for item in event.line_items if item.recurring and item.price_id]
    if not recurring or invoice.subscription_created or not event.customer_id:
        return

    clinic_id, patient_id, invoice_id = patient.clinic_id, patient.id, invoice.id
    metadata = {"clinicId": str(clinic_id), "patientId": str(patient_id), "invoiceId": str(invoice_id)}
    created = 0
    # Committed per price: a failure leaves the subscriptions already created recorded.
    for item in recurring:
        context = {"patient_id": patient_id, "invoice_id": invoice_id, "price_id": item.price_id}
        try:
            subscription_id = await asyncio.to_thread(
                services.subscriptions.create,
                event.customer_id,
                item.price_id,
                trial_days=item.trial_days,
                metadata=metadata,
            )
            session.add(
                Subscription(
                    clinic_id=clinic_id,
                    patient_id=patient_id,
                    invoice_id=invoice_id,
                    stripe_subscription_id=subscription_id,
                    price_id=item.price_id,
                )
            )
            session.commit()
        except Exception as exc:
            _side_effect_failed(session, "subscription", exc, **context)
            continue
        created += 1
        logger.info("subscription_created_from_payment", subscription_id=subscription_id, **context)

    if created:
        invoice.subscription_created = True
        session.commit()


def _is_first_payment(session: Session, patient: Patient) -> bool:
    paid = session.execute(
        select(func.count(Invoice.id)).where(
            Invoice.patient_id == patient.id,
            Invoice.status == InvoiceStatus.PAID.value,
        )
    ).scalar_one()
    return paid == 1


async def _run_side_effects(
    session: Session,
    services: ProcessingServices,
    event: PaymentEvent,
    patient: Patient,
    invoice: Invoice,
) -> None:
    ids = {"patient_id": patient.id, "invoice_id": invoice.id, "payment_intent_id": event.payment_intent_id}

    try:
        outcome = services.documentation.ensure(session, patient.id, invoice.id)
        session.commit()
        logger.debug("documentation_ensured", action=(outcome or {}).get("action"), **ids)
    except Exception as exc:
        _side_effect_failed(session, "documentation", exc, **ids)

    try:
        await _create_subscriptions(session, services, event, patient, invoice)
    except Exception as exc:
        _side_effect_failed(session, "subscription", exc, **ids)

    try:
        settings = services.tenant_settings.get(session, patient.clinic_id)
        if settings.get("autoInviteOnFirstPayment") and _is_first_payment(session, patient):
            services.portal_invites.send(patient.id, "first_payment")
    except Exception as exc:
        _side_effect_failed(session, "portal_invite", exc, **ids)


async def process_payment_event(
    session: Session,
    event: PaymentEvent,
    *,
    stripe_event_id: Optional[str] = None,
    stripe_event_type: Optional[str] = None,
    services: Optional[ProcessingServices] = None,
    client: Optional[StripeClient] = None,
) -> PaymentProcessingResult:
    """Match or create the patient for *event* and record its paid invoice."""

    services = services or ProcessingServices()
    event_id = stripe_event_id or f"manual_{int(utc_now().timestamp() * 1000)}"
    event_type = stripe_event_type or MANUAL_EVENT_TYPE
    log = logger.bind(
        stripe_event_id=event_id,
        stripe_event_type=event_type,
        payment_intent_id=event.payment_intent_id,
        charge_id=event.charge_id,
    )

    existing = find_reconciliation(session, event_id)
    if existing is not None:
        metrics.DUPLICATE_EVENTS.inc()
        log.info("payment_event_already_processed", status=existing.status)
        return PaymentProcessingResult.from_reconciliation(existing)

    clinic_id: Optional[int] = None
    match: Optional[PatientMatchResult] = None
    try:
        event = await enrich_payment_event(event, client=client)

        clinic_id = resolve_clinic_id(event)
        if clinic_id is None:
            raise NoTenantAvailableError(NO_TENANT_MESSAGE)

        match = match_patient_from_payment(session, event, clinic_id)
        patient_created = False
        if match.patient is not None:
            patient = match.patient
            if not patient.stripe_customer_id and event.customer_id:
                _link_stripe_customer(session, patient, event.customer_id)
                log.info(
                    "patient_stripe_customer_linked",
                    patient_id=patient.id,
                    customer_id=event.customer_id,
                    linked=patient.stripe_customer_id == event.customer_id,
                )
        else:
            patient = create_patient_from_payment(session, event, clinic_id)
            patient_created = True

        invoice = find_existing_invoice(session, event)
        invoice_created = invoice is None
        if invoice is None:
            invoice = create_paid_invoice(session, patient, event)
        session.commit()
    except Exception as exc:
        session.rollback()
        message = describe_error(exc)
        log.error("payment_processing_failed", error=message, error_type=type(exc).__name__, clinic_id=clinic_id)
        metrics.EVENTS_PROCESSED.labels(event_type=event_type, status=ReconciliationStatus.FAILED.value).inc()
        record_reconciliation(
            session,
            event,
            stripe_event_id=event_id,
            stripe_event_type=event_type,
            status=ReconciliationStatus.FAILED,
            match=match,
            clinic_id=clinic_id,
            error_message=message,
        )
        return PaymentProcessingResult(
            success=False,
            status=ReconciliationStatus.FAILED,
            clinic_id=clinic_id,
            error=message,
        )

    if invoice_created:
        await _run_side_effects(session, services, event, patient, invoice)

    status = ReconciliationStatus.CREATED if patient_created else ReconciliationStatus.MATCHED
    record_reconciliation(
        session,
        event,
        stripe_event_id=event_id,
        stripe_event_type=event_type,
        status=status,
        match=match,
        patient_id=patient.id,
        invoice_id=invoice.id,
        patient_created=patient_created,
        clinic_id=patient.clinic_id,
    )
    metrics.EVENTS_PROCESSED.labels(event_type=event_type, status=status.value).inc()
    log.info(
        "payment_event_processed",
        status=status.value,
        patient_id=patient.id,
        invoice_id=invoice.id,
        matched_by=match.matched_by.value if match.matched_by else None,
        patient_created=patient_created,
    )
    return PaymentProcessingResult(
        success=True,
        status=status,
        patient_id=patient.id,
        invoice_id=invoice.id,
        patient_created=patient_created,
        matched_by=match.matched_by.value if match.matched_by else None,
        confidence=match.confidence.value if match.confidence else None,
        clinic_id=patient.clinic_id,
    )


__all__ = [
    "PaymentProcessingResult",
    "find_reconciliation",
    "process_payment_event",
    "record_reconciliation",
    "resolve_clinic_id",
]
