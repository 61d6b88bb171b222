import pytest

from payrecon.db.models import InvoiceStatus, PaymentStatus, ProfileStatus
from payrecon.errors import StripeAPIError
from payrecon.events import PaymentEvent, RefundEvent
from payrecon.invoicing import create_paid_invoice
from payrecon.provisioning import create_patient_from_payment
from payrecon.refunds import apply_refund, sync_invoice_from_stripe


@pytest.fixture
def paid_invoice(session, clinic, make_patient):
    patient = make_patient(clinic.id, email="jane@example.com")
    invoice = create_paid_invoice(
        session,
        patient,
        PaymentEvent(amount=10000, currency="usd", payment_intent_id="pi_r", charge_id="ch_r"),
    )
    session.commit()
    return invoice


def test_partial_refund(session, paid_invoice):
    result = apply_refund(session, RefundEvent(amount_refunded=4000, charge_id="ch_r", currency="usd"))

    assert result["success"]
    assert result["refundType"] == "partial"
    payment = paid_invoice.payments[0]
    assert payment.status == PaymentStatus.PARTIALLY_REFUNDED.value
    assert payment.refunded_amount == 4000
    assert payment.refunded_at is not None
    assert paid_invoice.status == InvoiceStatus.PAID.value
    assert paid_invoice.amount_paid == 6000
    assert paid_invoice.amount_due == 0


def test_full_refund(session, paid_invoice):
    result = apply_refund(session, RefundEvent(amount_refunded=10000, charge_id="ch_r"))

    assert result["refundType"] == "full"
    assert paid_invoice.payments[0].status == PaymentStatus.REFUNDED.value
    assert paid_invoice.status == InvoiceStatus.VOID.value
    assert paid_invoice.amount_due == 10000
    assert paid_invoice.amount_paid == 0


def test_refund_located_by_payment_intent(session, paid_invoice):
    result = apply_refund(session, RefundEvent(amount_refunded=2500, charge_id="ch_unknown", payment_intent_id="pi_r"))

    assert result["success"]
    assert result["paymentId"] == paid_invoice.payments[0].id
    assert paid_invoice.amount_paid == 7500


def test_replayed_refund_is_not_double_counted(session, paid_invoice):
    apply_refund(session, RefundEvent(amount_refunded=4000, charge_id="ch_r"))
    replay = apply_refund(session, RefundEvent(amount_refunded=4000, charge_id="ch_r"))

    assert replay["alreadyApplied"]
    assert paid_invoice.amount_paid == 6000


def test_single_refund_is_added_to_recorded_total(session, paid_invoice):
    apply_refund(session, RefundEvent(amount_refunded=4000, charge_id="ch_r", refund_id="re_1", refund_ids=("re_1",)))
    second = RefundEvent(amount_refunded=3000, charge_id="ch_r", refund_id="re_2", cumulative=False, refund_ids=("re_2",))

    result = apply_refund(session, second)
    replay = apply_refund(session, second)

    assert result["refundedAmount"] == 7000
    assert replay["alreadyApplied"]
    payment = paid_invoice.payments[0]
    assert payment.refunded_amount == 7000
    assert payment.applied_refund_ids() == ["re_1", "re_2"]
    assert paid_invoice.amount_paid == 3000


def test_cumulative_total_after_single_refund_is_not_double_counted(session, paid_invoice):
    apply_refund(session, RefundEvent(amount_refunded=3000, charge_id="ch_r", refund_id="re_1", cumulative=False))

    result = apply_refund(session, RefundEvent(amount_refunded=3000, charge_id="ch_r", refund_ids=("re_1",)))

    assert result["alreadyApplied"]
    assert paid_invoice.amount_paid == 7000


def test_follow_up_refund_completes_refund(session, paid_invoice):
    apply_refund(session, RefundEvent(amount_refunded=4000, charge_id="ch_r"))
    result = apply_refund(session, RefundEvent(amount_refunded=10000, charge_id="ch_r"))

    assert result["refundType"] == "full"
    assert paid_invoice.amount_paid == 0
    assert paid_invoice.status == InvoiceStatus.VOID.value


def test_unknown_payment_reports_failure(session, paid_invoice):
    result = apply_refund(session, RefundEvent(amount_refunded=100, charge_id="ch_missing"))

    assert result == {"success": False, "error": "Payment not found for refund"}


def test_currency_mismatch_is_flagged_not_converted(session, paid_invoice):
    result = apply_refund(session, RefundEvent(amount_refunded=100, charge_id="ch_r", currency="eur"))

    assert not result["success"]
    assert "currency" in result["error"]
    assert paid_invoice.amount_paid == 10000


@pytest.mark.asyncio
async def test_sync_applies_upstream_refund_and_backfills_placeholder(session, clinic, fake_stripe):
    patient = create_patient_from_payment(session, PaymentEvent(amount=10000), clinic.id)
    invoice = create_paid_invoice(session, patient, PaymentEvent(amount=10000, charge_id="ch_sync"))
    session.commit()
    fake_stripe.charges["ch_sync"] = {
        "id": "ch_sync",
        "object": "charge",
        "amount": 10000,
        "amount_refunded": 4000,
        "currency": "usd",
        "billing_details": {"name": "Jane Doe", "email": "jane@example.com", "phone": "5551234567"},
        "refunds": {"data": [{"id": "re_1", "amount": 4000, "created": 1700000000}]},
    }

    result = await sync_invoice_from_stripe(session, invoice.id)

    assert result["success"]
    assert result["refund"]["refundType"] == "partial"
    assert sorted(result["patient"]["fields"]) == ["email", "name", "phone"]
    assert invoice.amount_paid == 6000
    assert patient.decrypted("first_name") == "Jane"
    assert patient.decrypted("email") == "jane@example.com"
    assert patient.profile_status == ProfileStatus.ACTIVE.value


@pytest.mark.asyncio
async def test_sync_resolves_charge_through_payment_intent(session, paid_invoice, fake_stripe):
    payment = paid_invoice.payments[0]
    payment.stripe_charge_id = None
    session.commit()
    fake_stripe.payment_intents["pi_r"] = {"id": "pi_r", "latest_charge": "ch_r"}
    fake_stripe.charges["ch_r"] = {"id": "ch_r", "amount": 10000, "amount_refunded": 0, "billing_details": {}}

    result = await sync_invoice_from_stripe(session, paid_invoice.id)

    assert result["success"]
    assert result["refund"] is None
    assert payment.stripe_charge_id == "ch_r"


@pytest.mark.asyncio
async def test_sync_reports_missing_invoice(session):
    assert await sync_invoice_from_stripe(session, 12345) == {"success": False, "error": "Invoice not found"}


@pytest.mark.asyncio
async def test_sync_reports_upstream_errors(session, paid_invoice, fake_stripe):
    fake_stripe.fail_with = StripeAPIError("Stripe is down", status_code=503)

    result = await sync_invoice_from_stripe(session, paid_invoice.id)

    assert result["success"] is False
    assert result["error"] == "Stripe is down"


@pytest.mark.asyncio
async def test_sync_without_stripe_configuration_fails_softly(session, paid_invoice):
    result = await sync_invoice_from_stripe(session, paid_invoice.id)

    assert result["success"] is False
    assert "STRIPE_SECRET_KEY" in result["error"]
