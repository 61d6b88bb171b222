"""Fill identity gaps in payment events from the Stripe customer record.

Checkout and charge payloads frequently lack a name or phone that the
customer object does carry.  Whenever an event references a customer the
full record is fetched and merged in; values already present on the event
always win, except names that are only placeholders ("Unknown Customer").

Enrichment is best-effort.  A missing Stripe configuration, a failed fetch
or a deleted customer leaves the event unchanged.
"""

from __future__ import annotations

import asyncio
import re
from typing import Any, Mapping, Optional

import structlog

from payrecon.errors import PaymentReconError, describe_error
from payrecon.events import PaymentEvent, PostalAddress, optional_str
from payrecon.stripe_client import StripeClient, get_stripe_client

logger = structlog.get_logger(__name__)

PLACEHOLDER_NAMES = frozenset({"unknown", "unknown customer", "customer"})

NAME_METADATA_KEYS = ("name", "customer_name", "full_name", "fullName")
PHONE_METADATA_KEYS = ("phone", "phone_number")

_PERSON_NAME_RE = re.compile(r"^[A-Za-z][A-Za-z\s'\-]*$")
_TRAILING_PARENS_RE = re.compile(r"\(([^()]+)\)\s*$")
_FOR_NAME_RE = re.compile(
    r"\b(?:payment|invoice|order)\s+for\s+([A-Za-z][A-Za-z'\-]*(?:\s+[A-Za-z][A-Za-z'\-]*)*)",
    re.IGNORECASE,
)
_LEADING_NAME_RE = re.compile(r"^\s*([A-Za-z][A-Za-z\s'\-]*?)\s+-\s+\S")


def is_placeholder_name(name: Optional[str]) -> bool:
    """Return ``True`` for blank names and known placeholders."""

    normalized = " ".join((name or "").split()).lower()
    return not normalized or normalized in PLACEHOLDER_NAMES


def looks_like_person_name(value: Optional[str]) -> bool:
    text = (value or "").strip()
    return 3 <= len(text) <= 99 and bool(_PERSON_NAME_RE.match(text))


def _accept_candidate(candidate: Optional[str]) -> Optional[str]:
    text = " ".join((candidate or "").split())
    if len(text) > 2 and any(ch.isalpha() for ch in text) and not is_placeholder_name(text):
        return text
    return None


def extract_name_from_description(description: Optional[str]) -> Optional[str]:
    """Pull a payer name out of free-text payment descriptions.

    Recognised shapes: ``"Invoice 1042 (Jane Doe)"``, ``"Payment for Jane
    Doe"`` and ``"Jane Doe - Semaglutide 1 month"``.
    """

    if not description:
        return None
    for pattern in (_TRAILING_PARENS_RE, _FOR_NAME_RE, _LEADING_NAME_RE):
        match = pattern.search(description)
        if match:
            accepted = _accept_candidate(match.group(1))
            if accepted:
                return accepted
    return None


def _name_from_customer(customer: Mapping[str, Any]) -> Optional[str]:
    name = optional_str(customer.get("name"))
    if name and not is_placeholder_name(name):
        return name
    description = optional_str(customer.get("description"))
    if description and looks_like_person_name(description) and not is_placeholder_name(description):
        return description
    metadata = customer.get("metadata") or {}
    for key in NAME_METADATA_KEYS:
        value = optional_str(metadata.get(key))
        if value and not is_placeholder_name(value):
            return value
    return None


def _phone_from_customer(customer: Mapping[str, Any]) -> Optional[str]:
    phone = optional_str(customer.get("phone"))
    if phone:
        return phone
    metadata = customer.get("metadata") or {}
    for key in PHONE_METADATA_KEYS:
        value = optional_str(metadata.get(key))
        if value:
            return value
    return None


def _address_from_customer(customer: Mapping[str, Any]) -> Optional[PostalAddress]:
    address = PostalAddress.from_stripe(customer.get("address"))
    if address:
        return address
    shipping = customer.get("shipping") or {}
    return PostalAddress.from_stripe(shipping.get("address"))


def merge_customer(event: PaymentEvent, customer: Optional[Mapping[str, Any]]) -> PaymentEvent:
    """Return *event* with missing identity fields taken from *customer*."""

    customer = customer or {}
    name = event.name if not is_placeholder_name(event.name) else None
    if name is None:
        name = _name_from_customer(customer) or extract_name_from_description(event.description)

    return event.with_updates(
        name=name if name is not None else event.name,
        email=event.email or optional_str(customer.get("email")),
        phone=event.phone or _phone_from_customer(customer),
        address=event.address or _address_from_customer(customer),
    )


async def enrich_payment_event(
    event: PaymentEvent,
    *,
    client: Optional[StripeClient] = None,
) -> PaymentEvent:
    """Return *event* enriched from its Stripe customer record."""

    if not event.customer_id:
        return merge_customer(event, None)

    try:
        stripe = client or get_stripe_client()
        customer = await asyncio.to_thread(stripe.retrieve_customer, event.customer_id)
    except PaymentReconError as exc:
        logger.warning(
            "payment_enrichment_skipped",
            customer_id=event.customer_id,
            reason=type(exc).__name__,
            error=describe_error(exc),
        )
        return event

    if customer is None:
        logger.info("payment_enrichment_customer_missing", customer_id=event.customer_id)
        return event

    enriched = merge_customer(event, customer)
    logger.debug(
        "payment_enriched",
        customer_id=event.customer_id,
        name_filled=bool(enriched.name) and enriched.name != event.name,
        email_filled=bool(enriched.email) and not event.email,
        phone_filled=bool(enriched.phone) and not event.phone,
    )
    return enriched


__all__ = [
    "PLACEHOLDER_NAMES",
    "enrich_payment_event",
    "extract_name_from_description",
    "is_placeholder_name",
    "looks_like_person_name",
    "merge_customer",
]
