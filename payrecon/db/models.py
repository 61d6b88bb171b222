"""SQLAlchemy models for clinics, patients, billing and the reconciliation ledger."""

from __future__ import annotations

import enum
import json
from datetime import datetime, timezone
from typing import Any, Dict, List, Mapping

import sqlalchemy as sa
from sqlalchemy import Boolean, DateTime, ForeignKey, Integer, String, Text
from sqlalchemy.orm import declarative_base, relationship

from payrecon.encryption import safe_decrypt


Base = declarative_base()


def _utcnow() -> datetime:
    """Return a timezone aware UTC timestamp."""

    return datetime.now(timezone.utc)


def _json_dict(value: Any) -> Dict[str, Any]:
    if not value:
        return {}
    if isinstance(value, Mapping):
        return dict(value)
    if isinstance(value, str):
        try:
            decoded = json.loads(value)
        except json.JSONDecodeError:
            return {}
        return dict(decoded) if isinstance(decoded, Mapping) else {}
    return {}


class ProfileStatus(str, enum.Enum):
    """Lifecycle of a patient profile."""

    ACTIVE = "ACTIVE"
    PENDING_COMPLETION = "PENDING_COMPLETION"
    MERGED = "MERGED"
    ARCHIVED = "ARCHIVED"


class InvoiceStatus(str, enum.Enum):
    DRAFT = "DRAFT"
    OPEN = "OPEN"
    PAID = "PAID"
    VOID = "VOID"
    UNCOLLECTIBLE = "UNCOLLECTIBLE"


class PaymentStatus(str, enum.Enum):
    PENDING = "PENDING"
    SUCCEEDED = "SUCCEEDED"
    FAILED = "FAILED"
    CANCELED = "CANCELED"
    REFUNDED = "REFUNDED"
    PARTIALLY_REFUNDED = "PARTIALLY_REFUNDED"


class ReconciliationStatus(str, enum.Enum):
    """Outcome recorded in the reconciliation ledger for one Stripe event."""

    PENDING = "PENDING"
    MATCHED = "MATCHED"
    CREATED = "CREATED"
    FAILED = "FAILED"
    SKIPPED = "SKIPPED"


class MatchMethod(str, enum.Enum):
    STRIPE_CUSTOMER_ID = "stripeCustomerId"
    EMAIL = "email"
    PHONE = "phone"
    NAME = "name"


class MatchConfidence(str, enum.Enum):
    EXACT = "exact"
    HIGH = "high"
    MEDIUM = "medium"
    LOW = "low"


# Identity columns stored as Fernet tokens.
PATIENT_PHI_FIELDS = (
    "first_name",
    "last_name",
    "email",
    "phone",
    "dob",
    "address1",
    "address2",
    "city",
    "state",
    "zip",
)


class Clinic(Base):
    __tablename__ = "clinics"

    id = sa.Column(Integer, primary_key=True, autoincrement=True)
    subdomain = sa.Column(String, nullable=True, unique=True)
    name = sa.Column(String, nullable=False)
    settings = sa.Column(sa.JSON, nullable=True)
    patient_id_prefix = sa.Column(String, nullable=True)
    patient_counter = sa.Column(Integer, nullable=False, default=0, server_default=sa.text("0"))
    active = sa.Column(Boolean, nullable=False, default=True, server_default=sa.true())
    created_at = sa.Column(
        DateTime(timezone=True),
        nullable=False,
        server_default=sa.func.now(),
        default=_utcnow,
    )

    def settings_dict(self) -> Dict[str, Any]:
        return _json_dict(self.settings)


class Patient(Base):
    __tablename__ = "patients"

    id = sa.Column(Integer, primary_key=True, autoincrement=True)
    patient_id = sa.Column(String, nullable=False)
    clinic_id = sa.Column(Integer, ForeignKey("clinics.id"), nullable=False)
    first_name = sa.Column(Text, nullable=False)
    last_name = sa.Column(Text, nullable=False)
    email = sa.Column(Text, nullable=True)
    phone = sa.Column(Text, nullable=True)
    dob = sa.Column(Text, nullable=True)
    gender = sa.Column(String, nullable=True)
    address1 = sa.Column(Text, nullable=True)
    address2 = sa.Column(Text, nullable=True)
    city = sa.Column(Text, nullable=True)
    state = sa.Column(Text, nullable=True)
    zip = sa.Column(Text, nullable=True)
    stripe_customer_id = sa.Column(String, nullable=True, unique=True)
    source = sa.Column(String, nullable=True)
    source_metadata = sa.Column(sa.JSON, nullable=True)
    profile_status = sa.Column(
        String,
        nullable=False,
        default=ProfileStatus.ACTIVE.value,
        server_default=sa.text("'ACTIVE'"),
    )
    notes = sa.Column(Text, nullable=True)
    created_at = sa.Column(
        DateTime(timezone=True),
        nullable=False,
        server_default=sa.func.now(),
        default=_utcnow,
    )
    updated_at = sa.Column(
        DateTime(timezone=True),
        nullable=False,
        server_default=sa.func.now(),
        default=_utcnow,
        onupdate=_utcnow,
    )

    invoices = relationship("Invoice", back_populates="patient")

    __table_args__ = (
        sa.UniqueConstraint("clinic_id", "patient_id", name="uq_patients_clinic_patient_id"),
        sa.Index("idx_patients_clinic_created", "clinic_id", "created_at"),
    )

    def decrypted(self, field: str) -> str:
        """Return the plaintext value of PHI column *field*."""

        return safe_decrypt(getattr(self, field))

    def source_metadata_dict(self) -> Dict[str, Any]:
        return _json_dict(self.source_metadata)

    def to_dict(self) -> Dict[str, Any]:
        data: Dict[str, Any] = {
            "id": self.id,
            "patientId": self.patient_id,
            "clinicId": self.clinic_id,
            "stripeCustomerId": self.stripe_customer_id,
            "source": self.source,
            "profileStatus": self.profile_status,
            "notes": self.notes,
            "createdAt": self.created_at.isoformat() if self.created_at else None,
        }
        data["firstName"] = self.decrypted("first_name")
        data["lastName"] = self.decrypted("last_name")
        data["email"] = self.decrypted("email") or None
        data["phone"] = self.decrypted("phone") or None
        return data


class Invoice(Base):
    __tablename__ = "invoices"

    id = sa.Column(Integer, primary_key=True, autoincrement=True)
    clinic_id = sa.Column(Integer, ForeignKey("clinics.id"), nullable=False)
    patient_id = sa.Column(Integer, ForeignKey("patients.id"), nullable=False)
    stripe_invoice_id = sa.Column(String, nullable=True, unique=True)
    description = sa.Column(Text, nullable=True)
    amount = sa.Column(Integer, nullable=False, default=0)
    amount_due = sa.Column(Integer, nullable=False, default=0)
    amount_paid = sa.Column(Integer, nullable=False, default=0)
    currency = sa.Column(String, nullable=False, default="usd", server_default=sa.text("'usd'"))
    status = sa.Column(String, nullable=False, default=InvoiceStatus.DRAFT.value)
    line_items = sa.Column(sa.JSON, nullable=True)
    paid_at = sa.Column(DateTime(timezone=True), nullable=True)
    metadata_json = sa.Column("metadata", sa.JSON, nullable=True)
    commission_generated = sa.Column(Boolean, nullable=False, default=False, server_default=sa.false())
    subscription_created = sa.Column(Boolean, nullable=False, default=False, server_default=sa.false())
    created_at = sa.Column(
        DateTime(timezone=True),
        nullable=False,
        server_default=sa.func.now(),
        default=_utcnow,
    )
    updated_at = sa.Column(
        DateTime(timezone=True),
        nullable=False,
        server_default=sa.func.now(),
        default=_utcnow,
        onupdate=_utcnow,
    )

    patient = relationship("Patient", back_populates="invoices")
    payments = relationship("Payment", back_populates="invoice")

    __table_args__ = (
        sa.Index("idx_invoices_patient", "patient_id"),
        sa.Index("idx_invoices_clinic_status", "clinic_id", "status"),
    )

    def metadata_dict(self) -> Dict[str, Any]:
        return _json_dict(self.metadata_json)

    def line_items_list(self) -> List[Dict[str, Any]]:
        if isinstance(self.line_items, list):
            return [dict(item) for item in self.line_items if isinstance(item, Mapping)]
        return []

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "clinicId": self.clinic_id,
            "patientId": self.patient_id,
            "stripeInvoiceId": self.stripe_invoice_id,
            "description": self.description,
            "amount": self.amount,
            "amountDue": self.amount_due,
            "amountPaid": self.amount_paid,
            "currency": self.currency,
            "status": self.status,
            "lineItems": self.line_items_list(),
            "paidAt": self.paid_at.isoformat() if self.paid_at else None,
            "subscriptionCreated": bool(self.subscription_created),
        }


class Payment(Base):
    __tablename__ = "payments"

    id = sa.Column(Integer, primary_key=True, autoincrement=True)
    clinic_id = sa.Column(Integer, ForeignKey("clinics.id"), nullable=False)
    patient_id = sa.Column(Integer, ForeignKey("patients.id"), nullable=False)
    invoice_id = sa.Column(Integer, ForeignKey("invoices.id"), nullable=True)
    stripe_payment_intent_id = sa.Column(String, nullable=True, unique=True)
    stripe_charge_id = sa.Column(String, nullable=True, index=True)
    amount = sa.Column(Integer, nullable=False)
    currency = sa.Column(String, nullable=False, default="usd")
    status = sa.Column(String, nullable=False, default=PaymentStatus.PENDING.value)
    refunded_amount = sa.Column(Integer, nullable=False, default=0, server_default=sa.text("0"))
    refunded_at = sa.Column(DateTime(timezone=True), nullable=True)
    refund_ids = sa.Column(sa.JSON, nullable=True)
    paid_at = sa.Column(DateTime(timezone=True), nullable=True)
    created_at = sa.Column(
        DateTime(timezone=True),
        nullable=False,
        server_default=sa.func.now(),
        default=_utcnow,
    )

    invoice = relationship("Invoice", back_populates="payments")

    def applied_refund_ids(self) -> List[str]:
        """Stripe refund ids already reflected in ``refunded_amount``."""

        if not isinstance(self.refund_ids, list):
            return []
        return [str(value) for value in self.refund_ids if value]

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "invoiceId": self.invoice_id,
            "stripePaymentIntentId": self.stripe_payment_intent_id,
            "stripeChargeId": self.stripe_charge_id,
            "amount": self.amount,
            "currency": self.currency,
            "status": self.status,
            "refundedAmount": self.refunded_amount,
        }


class Subscription(Base):
    __tablename__ = "subscriptions"

    id = sa.Column(Integer, primary_key=True, autoincrement=True)
    clinic_id = sa.Column(Integer, ForeignKey("clinics.id"), nullable=False)
    patient_id = sa.Column(Integer, ForeignKey("patients.id"), nullable=False)
    invoice_id = sa.Column(Integer, ForeignKey("invoices.id"), nullable=True)
    stripe_subscription_id = sa.Column(String, nullable=False, unique=True)
    price_id = sa.Column(String, nullable=False)
    status = sa.Column(String, nullable=False, default="ACTIVE")
    created_at = sa.Column(
        DateTime(timezone=True),
        nullable=False,
        server_default=sa.func.now(),
        default=_utcnow,
    )


class PaymentReconciliation(Base):
    __tablename__ = "payment_reconciliations"

    id = sa.Column(Integer, primary_key=True, autoincrement=True)
    stripe_event_id = sa.Column(String, nullable=False, unique=True)
    stripe_event_type = sa.Column(String, nullable=False)
    stripe_payment_intent_id = sa.Column(String, nullable=True)
    stripe_charge_id = sa.Column(String, nullable=True)
    stripe_invoice_id = sa.Column(String, nullable=True)
    stripe_customer_id = sa.Column(String, nullable=True)
    amount = sa.Column(Integer, nullable=True)
    currency = sa.Column(String, nullable=True)
    description = sa.Column(Text, nullable=True)
    customer_email = sa.Column(Text, nullable=True)
    customer_name = sa.Column(Text, nullable=True)
    customer_phone = sa.Column(Text, nullable=True)
    status = sa.Column(String, nullable=False, default=ReconciliationStatus.PENDING.value)
    matched_by = sa.Column(String, nullable=True)
    match_confidence = sa.Column(String, nullable=True)
    patient_id = sa.Column(Integer, ForeignKey("patients.id"), nullable=True)
    invoice_id = sa.Column(Integer, ForeignKey("invoices.id"), nullable=True)
    patient_created = sa.Column(Boolean, nullable=False, default=False, server_default=sa.false())
    clinic_id = sa.Column(Integer, ForeignKey("clinics.id"), nullable=True)
    error_message = sa.Column(Text, nullable=True)
    metadata_json = sa.Column("metadata", sa.JSON, nullable=True)
    processed_at = sa.Column(DateTime(timezone=True), nullable=True)
    created_at = sa.Column(
        DateTime(timezone=True),
        nullable=False,
        server_default=sa.func.now(),
        default=_utcnow,
    )

    __table_args__ = (
        sa.Index("idx_reconciliations_status", "status", "created_at"),
        sa.Index("idx_reconciliations_clinic", "clinic_id"),
    )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "stripeEventId": self.stripe_event_id,
            "stripeEventType": self.stripe_event_type,
            "status": self.status,
            "matchedBy": self.matched_by,
            "matchConfidence": self.match_confidence,
            "patientId": self.patient_id,
            "invoiceId": self.invoice_id,
            "patientCreated": bool(self.patient_created),
            "clinicId": self.clinic_id,
            "amount": self.amount,
            "currency": self.currency,
            "errorMessage": self.error_message,
            "processedAt": self.processed_at.isoformat() if self.processed_at else None,
        }


__all__ = [
    "Base",
    "Clinic",
    "Invoice",
    "InvoiceStatus",
    "MatchConfidence",
    "MatchMethod",
    "PATIENT_PHI_FIELDS",
    "Patient",
    "Payment",
    "PaymentReconciliation",
    "PaymentStatus",
    "ProfileStatus",
    "ReconciliationStatus",
    "Subscription",
]
