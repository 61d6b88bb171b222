import pytest

from payrecon.db.models import MatchConfidence, MatchMethod
from payrecon.events import PaymentEvent
from payrecon.matching import (
    NO_MATCH,
    find_patient_by_stripe_customer_id,
    match_patient_from_payment,
    split_name,
)


@pytest.mark.parametrize(
    "full_name, expected",
    [
        ("Jane Doe", ("Jane", "Doe")),
        ("Mary Ann  Smith", ("Mary Ann", "Smith")),
        ("Cher", ("Cher", "")),
        ("", ("", "")),
        (None, ("", "")),
    ],
)
def test_split_name(full_name, expected):
    assert split_name(full_name) == expected


def test_customer_id_match_is_exact(session, clinic, make_patient):
    patient = make_patient(clinic.id, stripe_customer_id="cus_123", email="jane@example.com")
    event = PaymentEvent(amount=100, customer_id="cus_123")

    result = match_patient_from_payment(session, event, clinic.id)

    assert result.patient.id == patient.id
    assert result.matched_by is MatchMethod.STRIPE_CUSTOMER_ID
    assert result.confidence is MatchConfidence.EXACT


def test_customer_id_in_other_clinic_is_rejected(session, clinic, other_clinic, make_patient):
    make_patient(other_clinic.id, stripe_customer_id="cus_123")
    event = PaymentEvent(amount=100, customer_id="cus_123")

    assert find_patient_by_stripe_customer_id(session, "cus_123", clinic.id) is None
    assert match_patient_from_payment(session, event, clinic.id) == NO_MATCH


def test_rejected_customer_id_falls_through_to_email(session, clinic, other_clinic, make_patient):
    make_patient(other_clinic.id, stripe_customer_id="cus_123", email="jane@example.com")
    local = make_patient(clinic.id, email="jane@example.com")
    event = PaymentEvent(amount=100, customer_id="cus_123", email="jane@example.com")

    result = match_patient_from_payment(session, event, clinic.id)

    assert result.patient.id == local.id
    assert result.matched_by is MatchMethod.EMAIL


def test_email_match_beats_phone_match(session, clinic, make_patient):
    by_email = make_patient(clinic.id, "Email", "Owner", email="owner@example.com")
    make_patient(clinic.id, "Phone", "Owner", phone="5551234567")
    event = PaymentEvent(amount=100, email="owner@example.com", phone="+1 555 123 4567")

    result = match_patient_from_payment(session, event, clinic.id)

    assert result.patient.id == by_email.id
    assert result.confidence is MatchConfidence.HIGH


def test_phone_match_is_medium_confidence(session, clinic, make_patient):
    patient = make_patient(clinic.id, phone="555-123-4567")
    event = PaymentEvent(amount=100, email="nobody@example.com", phone="15551234567")

    result = match_patient_from_payment(session, event, clinic.id)

    assert result.patient.id == patient.id
    assert result.matched_by is MatchMethod.PHONE
    assert result.confidence is MatchConfidence.MEDIUM


def test_name_match_is_last_resort(session, clinic, make_patient):
    patient = make_patient(clinic.id, "Jane", "Doe")
    event = PaymentEvent(amount=100, name="jane doe")

    result = match_patient_from_payment(session, event, clinic.id)

    assert result.patient.id == patient.id
    assert result.matched_by is MatchMethod.NAME
    assert result.confidence is MatchConfidence.LOW


def test_single_token_and_placeholder_names_never_match(session, clinic, make_patient):
    make_patient(clinic.id, "Unknown", "Customer")
    make_patient(clinic.id, "Cher", "")

    assert match_patient_from_payment(session, PaymentEvent(amount=1, name="Cher"), clinic.id) == NO_MATCH
    assert (
        match_patient_from_payment(session, PaymentEvent(amount=1, name="Unknown Customer"), clinic.id)
        == NO_MATCH
    )


def test_no_identity_yields_no_match(session, clinic):
    result = match_patient_from_payment(session, PaymentEvent(amount=100), clinic.id)

    assert not result.matched
    assert result.matched_by is None
    assert result.confidence is None
