"""Stripe webhook verification and event dispatch.

Several Stripe notifications describe the same money movement.  To record
each payment once, the dispatcher prefers the most specific source:

* invoice payments are handled from ``invoice.payment_succeeded`` /
  ``invoice.paid`` only;
* ``payment_intent.succeeded`` handles everything else;
* ``charge.succeeded`` is only used for legacy charges with neither a
  payment intent nor an invoice;
* ``checkout.session.completed`` is used for paid sessions without an
  invoice.

Failed, voided and uncollectible invoices and failed or canceled payment
intents only update the status of records already reconciled.
"""

from __future__ import annotations

import asyncio
import hashlib
import hmac
import json
import time
from dataclasses import replace
from typing import Any, Dict, Mapping, Optional

import structlog
from sqlalchemy.orm import Session

from payrecon import metrics
from payrecon.collaborators import ProcessingServices
from payrecon.errors import PaymentReconError, SignatureVerificationError, describe_error
from payrecon.events import (
    extract_from_charge,
    extract_from_checkout_session,
    extract_from_invoice,
    extract_from_payment_intent,
    extract_refund_event,
    stripe_id,
)
from payrecon.lifecycle import (
    INVOICE_STATUS_EVENTS,
    PAYMENT_STATUS_EVENTS,
    apply_invoice_status_event,
    apply_payment_status_event,
)
from payrecon.processing import process_payment_event
from payrecon.refunds import apply_refund
from payrecon.stripe_client import StripeClient, get_stripe_client

logger = structlog.get_logger(__name__)

DEFAULT_TOLERANCE_SECONDS = 300
SIGNATURE_SCHEME = "v1"

INVOICE_EVENTS = frozenset({"invoice.payment_succeeded", "invoice.paid"})
REFUND_EVENTS = frozenset({"charge.refunded", "refund.created"})


def _parse_signature_header(header: str) -> Dict[str, list]:
    parts: Dict[str, list] = {}
    for item in (header or "").split(","):
        key, sep, value = item.strip().partition("=")
        if sep:
            parts.setdefault(key, []).append(value)
    return parts


def compute_signature(payload: bytes, secret: str, timestamp: int) -> str:
    signed = f"{timestamp}.".encode("utf-8") + payload
    return hmac.new(secret.encode("utf-8"), signed, hashlib.sha256).hexdigest()


def verify_signature(
    payload: bytes,
    header: Optional[str],
    secret: Optional[str],
    *,
    tolerance: int = DEFAULT_TOLERANCE_SECONDS,
    now: Optional[float] = None,
) -> Dict[str, Any]:
    """Verify a ``Stripe-Signature`` header and return the decoded event.

    Raises :class:`SignatureVerificationError` when the secret is missing,
    the header is malformed, no ``v1`` signature matches or the timestamp
    is outside *tolerance* seconds.
    """

    if not secret:
        raise SignatureVerificationError("Webhook secret is not configured")
    if not header:
        raise SignatureVerificationError("Missing Stripe-Signature header")

    parts = _parse_signature_header(header)
    try:
        timestamp = int(parts.get("t", [""])[0])
    except ValueError:
        raise SignatureVerificationError("Unable to extract timestamp from signature header") from None
    signatures = parts.get(SIGNATURE_SCHEME) or []
    if not signatures:
        raise SignatureVerificationError("No v1 signature found in header")

    expected = compute_signature(payload, secret, timestamp)
    if not any(hmac.compare_digest(expected, candidate) for candidate in signatures):
        raise SignatureVerificationError("No signature matches the expected signature for payload")

    current = time.time() if now is None else now
    if tolerance and abs(current - timestamp) > tolerance:
        raise SignatureVerificationError("Timestamp outside the tolerance zone")

    try:
        event = json.loads(payload.decode("utf-8"))
    except (UnicodeDecodeError, json.JSONDecodeError) as exc:
        raise SignatureVerificationError(f"Invalid payload: {exc}") from exc
    if not isinstance(event, dict):
        raise SignatureVerificationError("Invalid payload: expected a JSON object")
    return event


def _skipped(event_type: str, reason: str) -> Dict[str, Any]:
    metrics.WEBHOOKS_RECEIVED.labels(event_type=event_type, result="skipped").inc()
    return {"handled": False, "skipped": True, "reason": reason}


def _handled(event_type: str, result: Dict[str, Any]) -> Dict[str, Any]:
    metrics.WEBHOOKS_RECEIVED.labels(event_type=event_type, result="ok" if result.get("success") else "failed").inc()
    return {"handled": True, "result": result}


async def _fetch_latest_charge(
    intent: Mapping[str, Any],
    client: Optional[StripeClient],
) -> Optional[Mapping[str, Any]]:
    latest = intent.get("latest_charge")
    if not isinstance(latest, str) or not latest:
        return None
    try:
        stripe = client or get_stripe_client()
        return await asyncio.to_thread(stripe.retrieve_charge, latest)
    except PaymentReconError as exc:
        logger.warning(
            "latest_charge_fetch_failed",
            payment_intent_id=intent.get("id"),
            charge_id=latest,
            error=describe_error(exc),
        )
        return None


async def _refund_from(obj: Mapping[str, Any], client: Optional[StripeClient]):
    """Return a refund event carrying the charge's cumulative refunded amount.

    When the charge cannot be fetched the refund object's own amount is
    returned as a single, non-cumulative refund.
    """

    refund = extract_refund_event(obj)
    if obj.get("object") != "refund" or not refund.charge_id:
        return refund
    try:
        stripe = client or get_stripe_client()
        charge = await asyncio.to_thread(stripe.retrieve_charge, refund.charge_id)
    except PaymentReconError as exc:
        logger.warning(
            "refund_charge_fetch_failed",
            charge_id=refund.charge_id,
            refund_id=refund.refund_id,
            error=describe_error(exc),
        )
        return refund
    cumulative = extract_refund_event(charge)
    return replace(
        cumulative,
        refund_id=refund.refund_id or cumulative.refund_id,
        refund_ids=tuple(dict.fromkeys((*cumulative.refund_ids, *refund.refund_ids))),
    )


async def handle_stripe_event(
    session: Session,
    event: Mapping[str, Any],
    *,
    services: Optional[ProcessingServices] = None,
    client: Optional[StripeClient] = None,
) -> Dict[str, Any]:
    """Dispatch a verified Stripe event.  Never raises."""

    event_type = str(event.get("type") or "")
    event_id = event.get("id")
    obj = (event.get("data") or {}).get("object") or {}
    log = logger.bind(stripe_event_id=event_id, stripe_event_type=event_type)

    try:
        if event_type == "payment_intent.succeeded":
            if stripe_id(obj.get("invoice")):
                return _skipped(event_type, "Has associated invoice")
            charge = await _fetch_latest_charge(obj, client)
            payment = extract_from_payment_intent(obj, charge=charge)
        elif event_type == "charge.succeeded":
            if stripe_id(obj.get("payment_intent")) or stripe_id(obj.get("invoice")):
                return _skipped(event_type, "Has payment_intent or invoice")
            payment = extract_from_charge(obj)
        elif event_type == "checkout.session.completed":
            if obj.get("payment_status") != "paid":
                return _skipped(event_type, "Not paid")
            if stripe_id(obj.get("invoice")):
                return _skipped(event_type, "Has invoice")
            payment = extract_from_checkout_session(obj)
        elif event_type in INVOICE_EVENTS:
            payment = extract_from_invoice(obj)
        elif event_type in INVOICE_STATUS_EVENTS:
            return _handled(event_type, apply_invoice_status_event(session, obj, INVOICE_STATUS_EVENTS[event_type]))
        elif event_type in PAYMENT_STATUS_EVENTS:
            return _handled(event_type, apply_payment_status_event(session, obj, PAYMENT_STATUS_EVENTS[event_type]))
        elif event_type in REFUND_EVENTS:
            refund = await _refund_from(obj, client)
            return _handled(event_type, apply_refund(session, refund))
        else:
            return _skipped(event_type, "Unhandled event type")

        outcome = await process_payment_event(
            session,
            payment,
            stripe_event_id=event_id,
            stripe_event_type=event_type,
            services=services,
            client=client,
        )
    except Exception as exc:
        session.rollback()
        log.error("stripe_webhook_handler_failed", error=describe_error(exc), error_type=type(exc).__name__)
        metrics.WEBHOOKS_RECEIVED.labels(event_type=event_type, result="error").inc()
        return {"handled": False, "error": describe_error(exc)}

    metrics.WEBHOOKS_RECEIVED.labels(
        event_type=event_type, result="ok" if outcome.success else "failed"
    ).inc()
    return {"handled": True, "result": outcome.to_dict()}


__all__ = [
    "compute_signature",
    "handle_stripe_event",
    "verify_signature",
]
