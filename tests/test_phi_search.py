import pytest

from payrecon.phi_search import (
    find_patient_by_email,
    find_patient_by_name,
    find_patient_by_phone,
    normalize_phone,
    phone_variants,
)


@pytest.mark.parametrize(
    "raw, expected",
    [
        ("+1 (555) 123-4567", "5551234567"),
        ("5551234567", "5551234567"),
        ("15551234567", "5551234567"),
        ("555.123.4567", "5551234567"),
        ("44 20 7946 0958", "442079460958"),
        ("", ""),
        (None, ""),
    ],
)
def test_normalize_phone(raw, expected):
    assert normalize_phone(raw) == expected


def test_phone_variants_include_country_code_padding():
    assert phone_variants("(555) 123-4567") == ["5551234567", "15551234567"]
    assert phone_variants("") == []


def test_email_lookup_decrypts_encrypted_rows(session, clinic, make_patient):
    patient = make_patient(clinic.id, email="Jane.Doe@Example.com")

    found = find_patient_by_email(session, "  jane.doe@example.COM ", clinic.id)

    assert found is not None
    assert found.id == patient.id


def test_email_lookup_matches_legacy_plaintext_rows(session, clinic, make_patient):
    patient = make_patient(clinic.id, email="legacy@example.com", encrypted=False)

    assert find_patient_by_email(session, "LEGACY@example.com", clinic.id).id == patient.id


def test_lookups_are_tenant_scoped(session, clinic, other_clinic, make_patient):
    make_patient(other_clinic.id, email="shared@example.com", phone="5551234567")

    assert find_patient_by_email(session, "shared@example.com", clinic.id) is None
    assert find_patient_by_phone(session, "5551234567", clinic.id) is None
    assert find_patient_by_name(session, "Jane", "Doe", clinic.id) is None


@pytest.mark.parametrize("query", ["+1 (555) 123-4567", "5551234567", "15551234567"])
@pytest.mark.parametrize("encrypted", [True, False])
def test_phone_formats_match_same_patient(session, clinic, make_patient, query, encrypted):
    patient = make_patient(clinic.id, phone="(555) 123-4567", encrypted=encrypted)

    found = find_patient_by_phone(session, query, clinic.id)

    assert found is not None
    assert found.id == patient.id


def test_most_recent_patient_wins(session, clinic, make_patient):
    make_patient(clinic.id, "Old", "Record", email="dup@example.com", created_offset_minutes=1)
    newer = make_patient(clinic.id, "New", "Record", email="dup@example.com", created_offset_minutes=60)

    assert find_patient_by_email(session, "dup@example.com", clinic.id).id == newer.id


def test_scan_limit_bounds_decrypting_pass(session, clinic, make_patient):
    target = make_patient(clinic.id, email="old@example.com", created_offset_minutes=1)
    make_patient(clinic.id, "Other", "Person", email="new@example.com", created_offset_minutes=60)

    assert find_patient_by_email(session, "old@example.com", clinic.id, scan_limit=1) is None
    assert find_patient_by_email(session, "old@example.com", clinic.id, scan_limit=2).id == target.id


def test_scan_limit_read_from_environment(monkeypatch, session, clinic, make_patient):
    from payrecon.config import reset_settings_cache

    make_patient(clinic.id, email="old@example.com", created_offset_minutes=1)
    make_patient(clinic.id, "Other", "Person", email="new@example.com", created_offset_minutes=60)
    monkeypatch.setenv("PHI_SCAN_LIMIT", "1")
    reset_settings_cache()

    assert find_patient_by_email(session, "old@example.com", clinic.id) is None


def test_name_lookup_is_case_insensitive_and_needs_both_parts(session, clinic, make_patient):
    patient = make_patient(clinic.id, "Mary Ann", "Smith")

    assert find_patient_by_name(session, "mary ann", "SMITH", clinic.id).id == patient.id
    assert find_patient_by_name(session, "Mary Ann", "", clinic.id) is None
    assert find_patient_by_name(session, "Mary", "Smith", clinic.id) is None
