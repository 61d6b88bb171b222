"""Prometheus counters for the reconciliation pipeline."""

from __future__ import annotations

from prometheus_client import Counter

EVENTS_PROCESSED = Counter(
    "payrecon_events_processed_total",
    "Stripe payment events processed by outcome",
    ("event_type", "status"),
)

DUPLICATE_EVENTS = Counter(
    "payrecon_duplicate_events_total",
    "Stripe events short-circuited by the reconciliation ledger",
)

PATIENT_MATCHES = Counter(
    "payrecon_patient_matches_total",
    "Patients matched from payments by strategy",
    ("method",),
)

PATIENTS_CREATED = Counter(
    "payrecon_patients_created_total",
    "Patients provisioned from unmatched payments",
)

TENANT_ISOLATION_REJECTIONS = Counter(
    "payrecon_tenant_isolation_rejections_total",
    "Stripe customer id matches rejected because the patient belongs to another clinic",
)

REFUNDS_APPLIED = Counter(
    "payrecon_refunds_applied_total",
    "Refunds applied to local payments",
    ("kind",),
)

SIDE_EFFECT_FAILURES = Counter(
    "payrecon_side_effect_failures_total",
    "Best-effort post-payment actions that raised",
    ("action",),
)

WEBHOOKS_RECEIVED = Counter(
    "payrecon_webhooks_received_total",
    "Stripe webhooks received by type and handling result",
    ("event_type", "result"),
)

STATUS_UPDATES = Counter(
    "payrecon_status_updates_total",
    "Invoice and payment status notifications by outcome",
    ("record", "result"),
)
