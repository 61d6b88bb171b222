"""Refund application and on-demand drift sync against Stripe.

Refund amounts are normally the *cumulative* amount refunded on a charge,
matching Stripe's ``charge.amount_refunded``.  Only the increase over what
is already recorded locally is subtracted from the invoice, so replaying a
refund notification is harmless.  A single refund whose charge could not be
fetched is added to the recorded total instead, and its Stripe refund id is
remembered on the payment so a replay is recognised.
"""

from __future__ import annotations

import asyncio
from datetime import datetime
from typing import Any, Dict, Optional

import structlog
from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from payrecon import metrics
from payrecon.db.models import (
    Invoice,
    InvoiceStatus,
    Patient,
    Payment,
    PaymentStatus,
    ProfileStatus,
)
from payrecon.encryption import encrypt_phi, safe_decrypt
from payrecon.enrichment import is_placeholder_name
from payrecon.errors import describe_error
from payrecon.events import RefundEvent, extract_refund_event, optional_str, stripe_id
from payrecon.matching import split_name
from payrecon.provisioning import PLACEHOLDER_FIRST_NAME, is_placeholder_email
from payrecon.stripe_client import StripeClient, get_stripe_client
from payrecon.time_utils import utc_now

logger = structlog.get_logger(__name__)


def _failure(error: str, **extra: Any) -> Dict[str, Any]:
    return {"success": False, "error": error, **extra}


def find_payment_for_refund(session: Session, refund: RefundEvent) -> Optional[Payment]:
    """Locate the local payment by charge id, then by payment intent id."""

    if refund.charge_id:
        payment = session.execute(
            select(Payment).where(Payment.stripe_charge_id == refund.charge_id).order_by(Payment.id)
        ).scalars().first()
        if payment is not None:
            return payment
    if refund.payment_intent_id:
        return session.execute(
            select(Payment).where(Payment.stripe_payment_intent_id == refund.payment_intent_id)
        ).scalar_one_or_none()
    return None


def _apply_refund_amounts(
    payment: Payment,
    invoice: Optional[Invoice],
    total_refunded: int,
    refunded_at: Optional[datetime],
) -> Dict[str, Any]:
    increase = total_refunded - (payment.refunded_amount or 0)
    full = total_refunded >= payment.amount

    payment.refunded_amount = total_refunded
    payment.refunded_at = refunded_at or utc_now()
    payment.status = (PaymentStatus.REFUNDED if full else PaymentStatus.PARTIALLY_REFUNDED).value

    if invoice is not None:
        invoice.amount_paid = max(0, (invoice.amount_paid or 0) - increase)
        if full:
            invoice.status = InvoiceStatus.VOID.value
            invoice.amount_due = invoice.amount
        else:
            invoice.amount_due = 0

    kind = "full" if full else "partial"
    metrics.REFUNDS_APPLIED.labels(kind=kind).inc()
    return {
        "refundType": kind,
        "refundedAmount": total_refunded,
        "paymentStatus": payment.status,
        "invoiceStatus": invoice.status if invoice is not None else None,
        "amountPaid": invoice.amount_paid if invoice is not None else None,
        "amountDue": invoice.amount_due if invoice is not None else None,
    }


def _remember_refund_ids(payment: Payment, refund: RefundEvent) -> bool:
    known = payment.applied_refund_ids()
    new_ids = [
        refund_id
        for refund_id in dict.fromkeys((*refund.refund_ids, refund.refund_id))
        if refund_id and refund_id not in known
    ]
    if not new_ids:
        return False
    payment.refund_ids = known + new_ids
    return True


def _target_refund_total(payment: Payment, refund: RefundEvent) -> Optional[int]:
    """Return the cumulative refunded amount *refund* implies, or ``None`` on replay."""

    recorded = payment.refunded_amount or 0
    if refund.cumulative:
        return refund.amount_refunded if refund.amount_refunded > recorded else None
    if refund.refund_id and refund.refund_id in payment.applied_refund_ids():
        return None
    if refund.amount_refunded <= 0:
        return None
    return min(payment.amount, recorded + refund.amount_refunded)


def apply_refund(session: Session, refund: RefundEvent) -> Dict[str, Any]:
    """Apply *refund* to its local payment and invoice and commit.

    Returns ``{"success": False, "error": ...}`` when the payment cannot be
    found, the currency differs from the payment's, or the write fails.
    """

    payment = find_payment_for_refund(session, refund)
    if payment is None:
        logger.warning(
            "refund_payment_not_found",
            charge_id=refund.charge_id,
            payment_intent_id=refund.payment_intent_id,
            refund_id=refund.refund_id,
        )
        return _failure("Payment not found for refund")

    if refund.currency and payment.currency and refund.currency.lower() != payment.currency.lower():
        logger.warning(
            "refund_currency_mismatch",
            payment_id=payment.id,
            refund_id=refund.refund_id,
            refund_currency=refund.currency,
            payment_currency=payment.currency,
        )
        return _failure(
            f"Refund currency {refund.currency} does not match payment currency {payment.currency}",
            paymentId=payment.id,
        )

    total_refunded = _target_refund_total(payment, refund)
    if total_refunded is None:
        logger.debug("refund_already_applied", payment_id=payment.id, refund_id=refund.refund_id)
        if _remember_refund_ids(payment, refund):
            try:
                session.commit()
            except SQLAlchemyError as exc:
                session.rollback()
                logger.warning("refund_ids_record_failed", payment_id=payment.id, error=describe_error(exc))
        return {
            "success": True,
            "paymentId": payment.id,
            "invoiceId": payment.invoice_id,
            "alreadyApplied": True,
            "refundedAmount": payment.refunded_amount,
            "paymentStatus": payment.status,
        }

    try:
        summary = _apply_refund_amounts(payment, payment.invoice, total_refunded, refund.refunded_at)
        _remember_refund_ids(payment, refund)
        session.commit()
    except SQLAlchemyError as exc:
        session.rollback()
        logger.error("refund_apply_failed", payment_id=payment.id, refund_id=refund.refund_id, error=describe_error(exc))
        return _failure(describe_error(exc), paymentId=payment.id)

    logger.info(
        "refund_applied",
        payment_id=payment.id,
        invoice_id=payment.invoice_id,
        refund_id=refund.refund_id,
        refund_type=summary["refundType"],
        refunded_amount=total_refunded,
        cumulative=refund.cumulative,
    )
    return {"success": True, "paymentId": payment.id, "invoiceId": payment.invoice_id, **summary}


def _backfill_placeholder_patient(patient: Patient, charge: Dict[str, Any]) -> Dict[str, Any]:
    billing = charge.get("billing_details") or {}
    name = optional_str(billing.get("name"))
    email = optional_str(billing.get("email")) or optional_str(charge.get("receipt_email"))
    phone = optional_str(billing.get("phone"))

    updated = []
    if name and not is_placeholder_name(name):
        first, last = split_name(name)
        if first and last:
            patient.first_name = encrypt_phi(first)
            patient.last_name = encrypt_phi(last)
            updated.append("name")
    current_email = safe_decrypt(patient.email)
    if email and (not current_email or is_placeholder_email(current_email)):
        patient.email = encrypt_phi(email)
        updated.append("email")
    if phone and not safe_decrypt(patient.phone):
        patient.phone = encrypt_phi(phone)
        updated.append("phone")

    if "name" in updated:
        patient.profile_status = ProfileStatus.ACTIVE.value
    return {"fields": updated, "profileStatus": patient.profile_status}


async def sync_invoice_from_stripe(
    session: Session,
    invoice_id: int,
    client: Optional[StripeClient] = None,
) -> Dict[str, Any]:
    """Bring a local invoice in line with its Stripe charge.

    Detects refunds not yet recorded locally and backfills a placeholder
    patient ("Unknown Customer") with the billing details Stripe holds.
    Never raises.
    """

    invoice = session.get(Invoice, invoice_id)
    if invoice is None:
        return _failure("Invoice not found")

    payment = session.execute(
        select(Payment).where(Payment.invoice_id == invoice.id).order_by(Payment.id)
    ).scalars().first()
    if payment is None:
        return _failure("No payment recorded for invoice", invoiceId=invoice.id)

    log = logger.bind(invoice_id=invoice.id, payment_id=payment.id, charge_id=payment.stripe_charge_id)
    try:
        stripe = client or get_stripe_client()
        charge_id = payment.stripe_charge_id
        if not charge_id and payment.stripe_payment_intent_id:
            intent = await asyncio.to_thread(stripe.retrieve_payment_intent, payment.stripe_payment_intent_id)
            charge_id = stripe_id(intent.get("latest_charge"))
        if not charge_id:
            return _failure("No Stripe charge linked to invoice", invoiceId=invoice.id)
        charge = await asyncio.to_thread(stripe.retrieve_charge, charge_id)
    except Exception as exc:
        log.warning("invoice_sync_fetch_failed", error=describe_error(exc), error_type=type(exc).__name__)
        return _failure(describe_error(exc), invoiceId=invoice.id)

    result: Dict[str, Any] = {"success": True, "invoiceId": invoice.id, "refund": None, "patient": None}
    try:
        if not payment.stripe_charge_id:
            payment.stripe_charge_id = charge_id

        refund = extract_refund_event(charge)
        if refund.amount_refunded > (payment.refunded_amount or 0):
            result["refund"] = _apply_refund_amounts(payment, invoice, refund.amount_refunded, refund.refunded_at)
            log.info("invoice_sync_refund_applied", refund_type=result["refund"]["refundType"])
        _remember_refund_ids(payment, refund)

        patient = invoice.patient
        if patient is not None and safe_decrypt(patient.first_name) == PLACEHOLDER_FIRST_NAME:
            result["patient"] = _backfill_placeholder_patient(patient, charge)
            log.info("invoice_sync_patient_backfilled", patient_id=patient.id, fields=result["patient"]["fields"])

        session.commit()
    except Exception as exc:
        session.rollback()
        log.error("invoice_sync_failed", error=describe_error(exc))
        return _failure(describe_error(exc), invoiceId=invoice.id)

    result["invoiceStatus"] = invoice.status
    result["paymentStatus"] = payment.status
    return result


__all__ = ["apply_refund", "find_payment_for_refund", "sync_invoice_from_stripe"]
