"""Invoice and payment status changes that are not settlements.

Stripe reports failed, voided and uncollectible invoices and failed or
canceled payment intents.  Records created from settled payments only move
forward: a ``PAID`` invoice or a succeeded payment is never reopened here,
so the amounts reconciled for it stay as recorded.
"""

from __future__ import annotations

from typing import Any, Dict, FrozenSet, Mapping, Optional

import structlog
from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from payrecon import metrics
from payrecon.db.models import Invoice, InvoiceStatus, Payment, PaymentStatus
from payrecon.errors import describe_error
from payrecon.events import optional_str

logger = structlog.get_logger(__name__)

INVOICE_STATUS_EVENTS: Dict[str, InvoiceStatus] = {
    "invoice.payment_failed": InvoiceStatus.OPEN,
    "invoice.marked_uncollectible": InvoiceStatus.UNCOLLECTIBLE,
    "invoice.voided": InvoiceStatus.VOID,
}

PAYMENT_STATUS_EVENTS: Dict[str, PaymentStatus] = {
    "payment_intent.payment_failed": PaymentStatus.FAILED,
    "payment_intent.canceled": PaymentStatus.CANCELED,
}

INVOICE_TRANSITIONS: Dict[InvoiceStatus, FrozenSet[InvoiceStatus]] = {
    InvoiceStatus.DRAFT: frozenset({InvoiceStatus.OPEN, InvoiceStatus.UNCOLLECTIBLE, InvoiceStatus.VOID}),
    InvoiceStatus.OPEN: frozenset({InvoiceStatus.UNCOLLECTIBLE, InvoiceStatus.VOID}),
    InvoiceStatus.UNCOLLECTIBLE: frozenset({InvoiceStatus.VOID}),
    InvoiceStatus.PAID: frozenset(),
    InvoiceStatus.VOID: frozenset(),
}

PAYMENT_TRANSITIONS: Dict[PaymentStatus, FrozenSet[PaymentStatus]] = {
    PaymentStatus.PENDING: frozenset({PaymentStatus.FAILED, PaymentStatus.CANCELED}),
    PaymentStatus.FAILED: frozenset({PaymentStatus.CANCELED}),
    PaymentStatus.CANCELED: frozenset(),
    PaymentStatus.SUCCEEDED: frozenset(),
    PaymentStatus.PARTIALLY_REFUNDED: frozenset(),
    PaymentStatus.REFUNDED: frozenset(),
}


def _outcome(record: str, key: str, record_id: int, previous: str, current: str, changed: bool) -> Dict[str, Any]:
    metrics.STATUS_UPDATES.labels(record=record, result="changed" if changed else "unchanged").inc()
    return {
        "success": True,
        key: record_id,
        "previousStatus": previous,
        "status": current,
        "changed": changed,
    }


def _commit(session: Session, record: str, **context: Any) -> Optional[Dict[str, Any]]:
    try:
        session.commit()
    except SQLAlchemyError as exc:
        session.rollback()
        metrics.STATUS_UPDATES.labels(record=record, result="error").inc()
        logger.error("status_update_failed", record=record, error=describe_error(exc), **context)
        return {"success": False, "error": describe_error(exc)}
    return None


def apply_invoice_status_event(
    session: Session,
    stripe_invoice: Mapping[str, Any],
    target: InvoiceStatus,
) -> Dict[str, Any]:
    """Move the local copy of *stripe_invoice* to *target* when allowed."""

    stripe_invoice_id = optional_str(stripe_invoice.get("id"))
    invoice = None
    if stripe_invoice_id:
        invoice = session.execute(
            select(Invoice).where(Invoice.stripe_invoice_id == stripe_invoice_id)
        ).scalar_one_or_none()
    if invoice is None:
        logger.warning("invoice_status_target_missing", stripe_invoice_id=stripe_invoice_id, target=target.value)
        metrics.STATUS_UPDATES.labels(record="invoice", result="not_found").inc()
        return {"success": False, "error": "Invoice not found"}

    previous = invoice.status
    allowed = INVOICE_TRANSITIONS.get(InvoiceStatus(previous), frozenset())
    if target not in allowed:
        logger.info(
            "invoice_status_transition_ignored",
            invoice_id=invoice.id,
            previous_status=previous,
            target=target.value,
        )
        return _outcome("invoice", "invoiceId", invoice.id, previous, previous, False)

    invoice.status = target.value
    amount_due = stripe_invoice.get("amount_due")
    if target is not InvoiceStatus.VOID and isinstance(amount_due, int):
        invoice.amount_due = amount_due
    failure = _commit(session, "invoice", invoice_id=invoice.id)
    if failure is not None:
        return failure

    logger.info("invoice_status_updated", invoice_id=invoice.id, previous_status=previous, status=target.value)
    return _outcome("invoice", "invoiceId", invoice.id, previous, target.value, True)


def apply_payment_status_event(
    session: Session,
    intent: Mapping[str, Any],
    target: PaymentStatus,
) -> Dict[str, Any]:
    """Move the local payment for payment intent *intent* to *target* when allowed."""

    intent_id = optional_str(intent.get("id"))
    payment = None
    if intent_id:
        payment = session.execute(
            select(Payment).where(Payment.stripe_payment_intent_id == intent_id)
        ).scalar_one_or_none()
    if payment is None:
        logger.info("payment_status_target_missing", payment_intent_id=intent_id, target=target.value)
        metrics.STATUS_UPDATES.labels(record="payment", result="not_found").inc()
        return {"success": False, "error": "Payment not found"}

    previous = payment.status
    allowed = PAYMENT_TRANSITIONS.get(PaymentStatus(previous), frozenset())
    if target not in allowed:
        logger.info(
            "payment_status_transition_ignored",
            payment_id=payment.id,
            previous_status=previous,
            target=target.value,
        )
        return _outcome("payment", "paymentId", payment.id, previous, previous, False)

    payment.status = target.value
    failure = _commit(session, "payment", payment_id=payment.id)
    if failure is not None:
        return failure

    logger.info("payment_status_updated", payment_id=payment.id, previous_status=previous, status=target.value)
    return _outcome("payment", "paymentId", payment.id, previous, target.value, True)


__all__ = [
    "INVOICE_STATUS_EVENTS",
    "PAYMENT_STATUS_EVENTS",
    "apply_invoice_status_event",
    "apply_payment_status_event",
]
