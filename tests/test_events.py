from datetime import datetime, timezone

from payrecon.events import (
    extract_from_charge,
    extract_from_checkout_session,
    extract_from_invoice,
    extract_from_payment_intent,
    extract_refund_event,
)


def test_charge_extraction_flattens_references():
    charge = {
        "id": "ch_1",
        "amount": 1500,
        "currency": "usd",
        "customer": {"id": "cus_1", "object": "customer"},
        "payment_intent": "pi_1",
        "invoice": None,
        "receipt_email": "receipt@example.com",
        "billing_details": {
            "name": " Jane Doe ",
            "email": None,
            "phone": "555-123-4567",
            "address": {"line1": "1 Main St", "city": "Austin", "state": "TX", "postal_code": "78701"},
        },
        "metadata": {"clinicId": 7},
        "created": 1700000000,
    }

    event = extract_from_charge(charge)

    assert event.customer_id == "cus_1"
    assert event.email == "receipt@example.com"
    assert event.name == "Jane Doe"
    assert event.payment_intent_id == "pi_1"
    assert event.charge_id == "ch_1"
    assert event.metadata == {"clinicId": "7"}
    assert event.address.postal_code == "78701"
    assert event.paid_at == datetime.fromtimestamp(1700000000, tz=timezone.utc)


def test_payment_intent_uses_expanded_latest_charge():
    intent = {
        "id": "pi_1",
        "amount": 2000,
        "amount_received": 1800,
        "currency": "usd",
        "latest_charge": {"id": "ch_9", "billing_details": {"email": "pi@example.com"}},
    }

    event = extract_from_payment_intent(intent)

    assert event.amount == 1800
    assert event.charge_id == "ch_9"
    assert event.email == "pi@example.com"


def test_payment_intent_with_bare_charge_reference_accepts_fetched_charge():
    intent = {"id": "pi_2", "amount": 2000, "latest_charge": "ch_2"}
    charge = {"id": "ch_2", "billing_details": {"name": "Fetched Name"}}

    assert extract_from_payment_intent(intent).name is None
    event = extract_from_payment_intent(intent, charge=charge)
    assert event.name == "Fetched Name"
    assert event.charge_id == "ch_2"


def test_checkout_session_defaults_description():
    event = extract_from_checkout_session(
        {"id": "cs_1", "amount_total": 500, "customer_details": {"email": "a@x.com"}, "payment_intent": "pi_c"}
    )

    assert event.description == "Checkout payment"
    assert event.email == "a@x.com"
    assert event.charge_id is None


def test_invoice_extraction_marks_recurring_lines():
    invoice = {
        "id": "in_1",
        "amount_paid": 0,
        "total": 30000,
        "customer": "cus_1",
        "customer_email": "inv@example.com",
        "customer_name": "Ivy Nova",
        "charge": "ch_in",
        "lines": {
            "data": [
                {
                    "description": "Monthly program",
                    "amount": 25000,
                    "quantity": 1,
                    "price": {"id": "price_m", "recurring": {"interval": "month"}},
                    "metadata": {"trialDays": "14"},
                },
                {"description": "Lab kit", "amount": 5000, "price": "price_lab"},
            ]
        },
    }

    event = extract_from_invoice(invoice)

    assert event.amount == 30000
    assert event.stripe_invoice_id == "in_1"
    assert event.description == "Monthly program"
    program, kit = event.line_items
    assert program.recurring and program.price_id == "price_m" and program.trial_days == 14
    assert not kit.recurring and kit.price_id == "price_lab"


def test_refund_object_extraction():
    refund = extract_refund_event(
        {"id": "re_1", "object": "refund", "amount": 700, "charge": "ch_1", "reason": "requested_by_customer"}
    )

    assert refund.amount_refunded == 700
    assert refund.charge_id == "ch_1"
    assert refund.reason == "requested_by_customer"


def test_charge_refund_extraction_uses_latest_refund():
    refund = extract_refund_event(
        {
            "id": "ch_1",
            "object": "charge",
            "amount_refunded": 900,
            "payment_intent": "pi_1",
            "refunds": {
                "data": [
                    {"id": "re_old", "created": 100, "reason": "duplicate"},
                    {"id": "re_new", "created": 200, "reason": "fraudulent"},
                ]
            },
        }
    )

    assert refund.amount_refunded == 900
    assert refund.refund_id == "re_new"
    assert refund.reason == "fraudulent"
    assert refund.payment_intent_id == "pi_1"


MONTHLY_LINE = {"description": "Monthly program", "amount": 25000, "price": {"id": "price_m", "recurring": {"interval": "month"}}}


def test_subscription_invoice_lines_are_not_recurring_purchases():
    renewal = {
        "id": "in_cycle",
        "amount_paid": 25000,
        "subscription": "sub_1",
        "billing_reason": "subscription_cycle",
        "lines": {
            "data": [
                {
                    "type": "subscription",
                    "description": "Monthly program",
                    "amount": 25000,
                    "price": {"id": "price_m", "recurring": {"interval": "month"}},
                }
            ]
        },
    }
    first_period = {
        "id": "in_create",
        "amount_paid": 25000,
        "billing_reason": "subscription_create",
        "lines": {"data": [MONTHLY_LINE]},
    }
    parent_only = {
        "id": "in_parent",
        "amount_paid": 25000,
        "parent": {"subscription_details": {"subscription": "sub_2"}},
        "lines": {"data": [MONTHLY_LINE]},
    }

    for invoice in (renewal, first_period, parent_only):
        assert [item.recurring for item in extract_from_invoice(invoice).line_items] == [False]


def test_invoice_item_with_recurring_price_is_recurring():
    invoice = {
        "id": "in_manual",
        "amount_paid": 25000,
        "billing_reason": "manual",
        "lines": {
            "data": [
                {
                    "type": "invoiceitem",
                    "description": "Monthly program",
                    "amount": 25000,
                    "price": {"id": "price_m", "recurring": {"interval": "month"}},
                }
            ]
        },
    }

    assert extract_from_invoice(invoice).line_items[0].recurring is True


def test_refund_identifiers_are_collected():
    single = extract_refund_event({"id": "re_9", "object": "refund", "amount": 300, "charge": "ch_9"})
    charge = extract_refund_event(
        {"id": "ch_9", "object": "charge", "amount_refunded": 800, "refunds": {"data": [{"id": "re_8"}, {"id": "re_9"}]}}
    )

    assert single.cumulative is False and single.refund_ids == ("re_9",)
    assert charge.cumulative is True and charge.refund_ids == ("re_8", "re_9")
