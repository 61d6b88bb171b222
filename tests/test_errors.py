import sqlite3

from sqlalchemy.exc import IntegrityError, OperationalError, SQLAlchemyError

from payrecon.errors import MAX_ERROR_MESSAGE_LENGTH, StripeAPIError, describe_error


def test_statement_errors_keep_only_the_driver_message():
    exc = IntegrityError(
        "INSERT INTO patients (email, phone) VALUES (?, ?)",
        ("jane@example.com", "555-123-4567"),
        sqlite3.IntegrityError("UNIQUE constraint failed: patients.stripe_customer_id"),
    )

    message = describe_error(exc)

    assert message == "IntegrityError: UNIQUE constraint failed: patients.stripe_customer_id"
    assert "jane@example.com" not in message
    assert "INSERT" not in message


def test_multiline_driver_messages_are_reduced_to_first_line():
    exc = OperationalError("SELECT 1", {}, sqlite3.OperationalError("database is locked\nDETAIL: key (email)=(a@x.com)"))

    assert describe_error(exc) == "OperationalError: database is locked"


def test_other_sqlalchemy_errors_report_the_type_only():
    assert describe_error(SQLAlchemyError("SELECT * FROM patients WHERE email = 'a@x.com'")) == "SQLAlchemyError"


def test_plain_errors_are_truncated():
    assert describe_error(StripeAPIError("Stripe is down", status_code=503)) == "Stripe is down"
    assert describe_error(RuntimeError()) == "RuntimeError"
    assert len(describe_error(ValueError("x" * 1000))) == MAX_ERROR_MESSAGE_LENGTH
