"""Normalised payment and refund events extracted from Stripe objects.

Each Stripe object shape gets its own extractor returning a
:class:`PaymentEvent`.  Nothing downstream of this module looks at raw
webhook payloads; fields that may arrive either as an id string or as an
expanded object are flattened here.
"""

from __future__ import annotations

from dataclasses import dataclass, field, replace
from datetime import datetime
from typing import Any, Dict, List, Mapping, Optional, Tuple

from payrecon.time_utils import epoch_or_now, from_epoch_seconds


@dataclass(frozen=True)
class PostalAddress:
    line1: Optional[str] = None
    line2: Optional[str] = None
    city: Optional[str] = None
    state: Optional[str] = None
    postal_code: Optional[str] = None
    country: Optional[str] = None

    @classmethod
    def from_stripe(cls, value: Any) -> Optional["PostalAddress"]:
        if not isinstance(value, Mapping):
            return None
        address = cls(
            line1=optional_str(value.get("line1")),
            line2=optional_str(value.get("line2")),
            city=optional_str(value.get("city")),
            state=optional_str(value.get("state")),
            postal_code=optional_str(value.get("postal_code")),
            country=optional_str(value.get("country")),
        )
        if not any((address.line1, address.city, address.state, address.postal_code)):
            return None
        return address


@dataclass(frozen=True)
class LineItem:
    description: str
    amount: int
    quantity: int = 1
    price_id: Optional[str] = None
    recurring: bool = False
    trial_days: Optional[int] = None

    def to_dict(self) -> Dict[str, Any]:
        data: Dict[str, Any] = {
            "description": self.description,
            "amount": self.amount,
            "quantity": self.quantity,
        }
        if self.price_id:
            data["priceId"] = self.price_id
        if self.recurring:
            data["recurring"] = True
        if self.trial_days:
            data["trialDays"] = self.trial_days
        return data


@dataclass(frozen=True)
class PaymentEvent:
    """A settled payment normalised from any Stripe source object."""

    amount: int
    currency: str = "usd"
    customer_id: Optional[str] = None
    email: Optional[str] = None
    name: Optional[str] = None
    phone: Optional[str] = None
    description: Optional[str] = None
    payment_intent_id: Optional[str] = None
    charge_id: Optional[str] = None
    stripe_invoice_id: Optional[str] = None
    metadata: Dict[str, str] = field(default_factory=dict)
    paid_at: Optional[datetime] = None
    address: Optional[PostalAddress] = None
    line_items: List[LineItem] = field(default_factory=list)

    def with_updates(self, **changes: Any) -> "PaymentEvent":
        return replace(self, **changes)

    @property
    def payment_reference(self) -> Optional[str]:
        return self.payment_intent_id or self.charge_id


@dataclass(frozen=True)
class RefundEvent:
    """A refund applied to a previously recorded payment.

    ``amount_refunded`` is the running total for the charge when
    ``cumulative`` is true, and the amount of the single refund named by
    ``refund_id`` otherwise.
    """

    amount_refunded: int
    charge_id: Optional[str] = None
    payment_intent_id: Optional[str] = None
    refund_id: Optional[str] = None
    reason: Optional[str] = None
    currency: Optional[str] = None
    refunded_at: Optional[datetime] = None
    cumulative: bool = True
    refund_ids: Tuple[str, ...] = ()


def optional_str(value: Any) -> Optional[str]:
    """Return ``value`` as a stripped string or ``None`` when blank."""

    if value is None:
        return None
    text = str(value).strip()
    return text or None


def stripe_id(value: Any) -> Optional[str]:
    """Return the id of a Stripe reference that may be a string or expanded object."""

    if isinstance(value, str):
        return value or None
    if isinstance(value, Mapping):
        return optional_str(value.get("id"))
    return None


def _metadata(value: Any) -> Dict[str, str]:
    if not isinstance(value, Mapping):
        return {}
    return {str(key): str(val) for key, val in value.items() if val is not None}


def _amount(value: Any) -> int:
    try:
        return int(value or 0)
    except (TypeError, ValueError):
        return 0


def extract_from_charge(charge: Mapping[str, Any]) -> PaymentEvent:
    billing = charge.get("billing_details") or {}
    return PaymentEvent(
        customer_id=stripe_id(charge.get("customer")),
        email=optional_str(billing.get("email")) or optional_str(charge.get("receipt_email")),
        name=optional_str(billing.get("name")),
        phone=optional_str(billing.get("phone")),
        amount=_amount(charge.get("amount")),
        currency=optional_str(charge.get("currency")) or "usd",
        description=optional_str(charge.get("description")),
        payment_intent_id=stripe_id(charge.get("payment_intent")),
        charge_id=optional_str(charge.get("id")),
        stripe_invoice_id=stripe_id(charge.get("invoice")),
        metadata=_metadata(charge.get("metadata")),
        paid_at=epoch_or_now(charge.get("created")),
        address=PostalAddress.from_stripe(billing.get("address")),
    )


def extract_from_payment_intent(
    intent: Mapping[str, Any],
    *,
    charge: Optional[Mapping[str, Any]] = None,
) -> PaymentEvent:
    """Normalise a payment intent.

    Billing details live on the intent's latest charge.  When Stripe sent
    ``latest_charge`` as a bare id the caller may pass the fetched charge in
    *charge*.
    """

    latest = intent.get("latest_charge")
    charge_obj = latest if isinstance(latest, Mapping) else charge
    billing = (charge_obj or {}).get("billing_details") or {}
    amount = intent.get("amount_received") or intent.get("amount")
    return PaymentEvent(
        customer_id=stripe_id(intent.get("customer")),
        email=optional_str(billing.get("email")) or optional_str(intent.get("receipt_email")),
        name=optional_str(billing.get("name")),
        phone=optional_str(billing.get("phone")),
        amount=_amount(amount),
        currency=optional_str(intent.get("currency")) or "usd",
        description=optional_str(intent.get("description")),
        payment_intent_id=optional_str(intent.get("id")),
        charge_id=stripe_id(latest) or stripe_id(charge_obj),
        stripe_invoice_id=stripe_id(intent.get("invoice")),
        metadata=_metadata(intent.get("metadata")),
        paid_at=epoch_or_now(intent.get("created")),
        address=PostalAddress.from_stripe(billing.get("address")),
    )


def extract_from_checkout_session(session: Mapping[str, Any]) -> PaymentEvent:
    details = session.get("customer_details") or {}
    metadata = _metadata(session.get("metadata"))
    return PaymentEvent(
        customer_id=stripe_id(session.get("customer")),
        email=optional_str(details.get("email")) or optional_str(session.get("customer_email")),
        name=optional_str(details.get("name")),
        phone=optional_str(details.get("phone")),
        amount=_amount(session.get("amount_total")),
        currency=optional_str(session.get("currency")) or "usd",
        description=metadata.get("description") or "Checkout payment",
        payment_intent_id=stripe_id(session.get("payment_intent")),
        charge_id=None,
        stripe_invoice_id=stripe_id(session.get("invoice")),
        metadata=metadata,
        paid_at=epoch_or_now(session.get("created")),
        address=PostalAddress.from_stripe(details.get("address")),
    )


def is_subscription_invoice(invoice: Mapping[str, Any]) -> bool:
    """True when Stripe billed *invoice* for a subscription that already exists."""

    if stripe_id(invoice.get("subscription")):
        return True
    parent = invoice.get("parent")
    if isinstance(parent, Mapping):
        details = parent.get("subscription_details")
        if isinstance(details, Mapping) and stripe_id(details.get("subscription")):
            return True
    return str(invoice.get("billing_reason") or "").startswith("subscription")


def _invoice_line_items(invoice: Mapping[str, Any]) -> List[LineItem]:
    billed_by_subscription = is_subscription_invoice(invoice)
    lines = invoice.get("lines") or {}
    data = lines.get("data") if isinstance(lines, Mapping) else lines
    items: List[LineItem] = []
    for line in data or []:
        if not isinstance(line, Mapping):
            continue
        price = line.get("price") if isinstance(line.get("price"), Mapping) else {}
        # Only one-off invoice items priced as recurring still need a subscription.
        recurring = (
            not billed_by_subscription
            and line.get("type") in (None, "invoiceitem")
            and not stripe_id(line.get("subscription"))
            and bool(price.get("recurring"))
        )
        line_metadata = _metadata(line.get("metadata"))
        trial_days = line_metadata.get("trialDays") or line_metadata.get("trial_days")
        items.append(
            LineItem(
                description=optional_str(line.get("description")) or "Invoice item",
                amount=_amount(line.get("amount")),
                quantity=_amount(line.get("quantity")) or 1,
                price_id=stripe_id(line.get("price")),
                recurring=recurring,
                trial_days=int(trial_days) if trial_days and trial_days.isdigit() else None,
            )
        )
    return items


def extract_from_invoice(invoice: Mapping[str, Any]) -> PaymentEvent:
    items = _invoice_line_items(invoice)
    description = optional_str(invoice.get("description"))
    if not description and items:
        description = items[0].description
    amount = invoice.get("amount_paid")
    if amount in (None, 0):
        amount = invoice.get("total")
    transitions = invoice.get("status_transitions") or {}
    paid_at = from_epoch_seconds(transitions.get("paid_at")) or epoch_or_now(invoice.get("created"))
    return PaymentEvent(
        customer_id=stripe_id(invoice.get("customer")),
        email=optional_str(invoice.get("customer_email")),
        name=optional_str(invoice.get("customer_name")),
        phone=optional_str(invoice.get("customer_phone")),
        amount=_amount(amount),
        currency=optional_str(invoice.get("currency")) or "usd",
        description=description,
        payment_intent_id=stripe_id(invoice.get("payment_intent")),
        charge_id=stripe_id(invoice.get("charge")),
        stripe_invoice_id=optional_str(invoice.get("id")),
        metadata=_metadata(invoice.get("metadata")),
        paid_at=paid_at,
        address=PostalAddress.from_stripe(invoice.get("customer_address")),
        line_items=items,
    )


def extract_refund_event(obj: Mapping[str, Any]) -> RefundEvent:
    """Normalise a ``charge.refunded`` charge or a ``refund.*`` refund object."""

    if obj.get("object") == "refund":
        refund_id = optional_str(obj.get("id"))
        return RefundEvent(
            amount_refunded=_amount(obj.get("amount")),
            charge_id=stripe_id(obj.get("charge")),
            payment_intent_id=stripe_id(obj.get("payment_intent")),
            refund_id=refund_id,
            reason=optional_str(obj.get("reason")),
            currency=optional_str(obj.get("currency")),
            refunded_at=epoch_or_now(obj.get("created")),
            cumulative=False,
            refund_ids=(refund_id,) if refund_id else (),
        )

    refunds = obj.get("refunds") or {}
    latest: Mapping[str, Any] = {}
    data = refunds.get("data") if isinstance(refunds, Mapping) else None
    refund_ids = tuple(
        item_id for item_id in (stripe_id(item) for item in data or []) if item_id
    )
    if data:
        latest = max(
            (item for item in data if isinstance(item, Mapping)),
            key=lambda item: item.get("created") or 0,
            default={},
        )
    return RefundEvent(
        amount_refunded=_amount(obj.get("amount_refunded")),
        charge_id=optional_str(obj.get("id")),
        payment_intent_id=stripe_id(obj.get("payment_intent")),
        refund_id=optional_str(latest.get("id")),
        reason=optional_str(latest.get("reason")),
        currency=optional_str(obj.get("currency")),
        refunded_at=epoch_or_now(latest.get("created")),
        refund_ids=refund_ids,
    )


__all__ = [
    "LineItem",
    "PaymentEvent",
    "PostalAddress",
    "RefundEvent",
    "extract_from_charge",
    "extract_from_checkout_session",
    "extract_from_invoice",
    "extract_from_payment_intent",
    "extract_refund_event",
    "is_subscription_invoice",
    "optional_str",
    "stripe_id",
]
