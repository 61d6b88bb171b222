"""Record settled Stripe payments as paid invoices."""

from __future__ import annotations

from typing import Any, Dict, List, Optional

import structlog
from sqlalchemy import select
from sqlalchemy.orm import Session

from payrecon.db.models import Invoice, InvoiceStatus, Patient, Payment, PaymentStatus
from payrecon.events import PaymentEvent
from payrecon.time_utils import utc_now

logger = structlog.get_logger(__name__)

DEFAULT_DESCRIPTION = "Stripe payment"


def find_existing_invoice(session: Session, event: PaymentEvent) -> Optional[Invoice]:
    """Return the invoice already recorded for *event*, if any."""

    if event.stripe_invoice_id:
        invoice = session.execute(
            select(Invoice).where(Invoice.stripe_invoice_id == event.stripe_invoice_id)
        ).scalar_one_or_none()
        if invoice is not None:
            return invoice

    if event.payment_intent_id:
        payment_filter = Payment.stripe_payment_intent_id == event.payment_intent_id
    elif event.charge_id:
        payment_filter = Payment.stripe_charge_id == event.charge_id
    else:
        return None
    payment = session.execute(
        select(Payment).where(payment_filter).order_by(Payment.id)
    ).scalars().first()
    if payment is not None:
        return payment.invoice
    return None


def _line_items(event: PaymentEvent, description: str) -> List[Dict[str, Any]]:
    if event.line_items:
        return [item.to_dict() for item in event.line_items]
    return [{"description": description, "amount": event.amount, "quantity": 1}]


def _invoice_metadata(event: PaymentEvent) -> Dict[str, Any]:
    data: Dict[str, Any] = {
        "source": "stripe",
        "stripePaymentIntentId": event.payment_intent_id,
        "stripeChargeId": event.charge_id,
        "stripeCustomerId": event.customer_id,
    }
    if event.metadata:
        data["stripeMetadata"] = dict(event.metadata)
    return data


def _payment_for(invoice: Invoice, patient: Patient, event: PaymentEvent) -> Payment:
    return Payment(
        clinic_id=invoice.clinic_id,
        patient_id=patient.id,
        invoice_id=invoice.id,
        stripe_payment_intent_id=event.payment_intent_id,
        stripe_charge_id=event.charge_id,
        amount=event.amount,
        currency=event.currency,
        status=PaymentStatus.SUCCEEDED.value,
        paid_at=invoice.paid_at,
    )


def create_paid_invoice(session: Session, patient: Patient, event: PaymentEvent) -> Invoice:
    """Create a ``PAID`` invoice and its payment for *event*.

    Returns the existing invoice untouched when the event was already
    recorded.  The invoice and payment rows are written inside one
    savepoint; if either insert fails neither is kept.
    """

    existing = find_existing_invoice(session, event)
    if existing is not None:
        logger.debug(
            "invoice_already_recorded",
            invoice_id=existing.id,
            stripe_invoice_id=event.stripe_invoice_id,
            payment_intent_id=event.payment_intent_id,
        )
        return existing

    description = event.description or DEFAULT_DESCRIPTION
    with session.begin_nested():
        invoice = Invoice(
            clinic_id=patient.clinic_id,
            patient_id=patient.id,
            stripe_invoice_id=event.stripe_invoice_id,
            description=description,
            amount=event.amount,
            amount_due=0,
            amount_paid=event.amount,
            currency=event.currency,
            status=InvoiceStatus.PAID.value,
            line_items=_line_items(event, description),
            paid_at=event.paid_at or utc_now(),
            metadata_json=_invoice_metadata(event),
        )
        session.add(invoice)
        session.flush()
        session.add(_payment_for(invoice, patient, event))
        session.flush()

    logger.info(
        "paid_invoice_created",
        invoice_id=invoice.id,
        patient_id=patient.id,
        clinic_id=patient.clinic_id,
        amount=event.amount,
        currency=event.currency,
        stripe_invoice_id=event.stripe_invoice_id,
        payment_intent_id=event.payment_intent_id,
        charge_id=event.charge_id,
    )
    return invoice


__all__ = ["create_paid_invoice", "find_existing_invoice"]
