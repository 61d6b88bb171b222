import os
import sys
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, Iterator, List, Optional

import pytest
import sqlalchemy as sa
from cryptography.fernet import Fernet
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

# Ensure the repository root is on sys.path so tests can import the payrecon package
ROOT = os.path.abspath(os.path.join(os.path.dirname(__file__), ".."))
if ROOT not in sys.path:
    sys.path.insert(0, ROOT)

# The PHI cipher is cached for the process, so the key must exist before first use.
os.environ.setdefault("PHI_ENCRYPTION_KEY", Fernet.generate_key().decode("utf-8"))

from payrecon import config as payrecon_config  # noqa: E402
from payrecon.db import configure_engine  # noqa: E402
from payrecon.db.models import Base, Clinic, Patient, ProfileStatus  # noqa: E402
from payrecon.encryption import encrypt_phi  # noqa: E402
from payrecon.errors import StripeAPIError  # noqa: E402
from payrecon.stripe_client import set_stripe_client  # noqa: E402


class FakeStripeClient:
    """In-memory stand-in for :class:`payrecon.stripe_client.StripeClient`."""

    def __init__(self) -> None:
        self.customers: Dict[str, Dict[str, Any]] = {}
        self.charges: Dict[str, Dict[str, Any]] = {}
        self.payment_intents: Dict[str, Dict[str, Any]] = {}
        self.subscriptions: List[Dict[str, Any]] = []
        self.calls: List[tuple] = []
        self.fail_with: Optional[Exception] = None

    def _maybe_fail(self) -> None:
        if self.fail_with is not None:
            raise self.fail_with

    def retrieve_customer(self, customer_id: str) -> Optional[Dict[str, Any]]:
        self.calls.append(("customer", customer_id))
        self._maybe_fail()
        customer = self.customers.get(customer_id)
        if customer is None or customer.get("deleted"):
            return None
        return customer

    def retrieve_charge(self, charge_id: str) -> Dict[str, Any]:
        self.calls.append(("charge", charge_id))
        self._maybe_fail()
        if charge_id not in self.charges:
            raise StripeAPIError(f"No such charge: {charge_id}", status_code=404)
        return self.charges[charge_id]

    def retrieve_payment_intent(self, payment_intent_id: str) -> Dict[str, Any]:
        self.calls.append(("payment_intent", payment_intent_id))
        self._maybe_fail()
        if payment_intent_id not in self.payment_intents:
            raise StripeAPIError(f"No such payment_intent: {payment_intent_id}", status_code=404)
        return self.payment_intents[payment_intent_id]

    def create_subscription(self, customer_id, price_id, *, trial_days=None, metadata=None):
        self.calls.append(("subscription", customer_id, price_id))
        self._maybe_fail()
        subscription = {
            "id": f"sub_{len(self.subscriptions) + 1}",
            "customer": customer_id,
            "price": price_id,
            "trial_days": trial_days,
            "metadata": dict(metadata or {}),
        }
        self.subscriptions.append(subscription)
        return subscription


@pytest.fixture(autouse=True)
def _isolated_environment(monkeypatch, tmp_path):
    monkeypatch.setenv("PAYRECON_DATA_DIR", str(tmp_path / "data"))
    for name in (
        "STRIPE_SECRET_KEY",
        "STRIPE_WEBHOOK_SECRET",
        "PAYRECON_DEFAULT_CLINIC_ID",
        "PHI_SCAN_LIMIT",
        "ENVIRONMENT",
        "PAYRECON_ALLOW_LOCAL_SECRETS",
    ):
        monkeypatch.delenv(name, raising=False)
    payrecon_config.reset_settings_cache()
    set_stripe_client(None)
    yield
    payrecon_config.reset_settings_cache()
    set_stripe_client(None)


@pytest.fixture
def engine():
    engine = sa.create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
        future=True,
    )

    # pysqlite defers BEGIN; take over transaction control so SAVEPOINTs nest correctly.
    @sa.event.listens_for(engine, "connect")
    def _disable_pysqlite_transactions(dbapi_connection, connection_record):
        dbapi_connection.isolation_level = None

    @sa.event.listens_for(engine, "begin")
    def _emit_begin(conn):
        conn.exec_driver_sql("BEGIN")

    Base.metadata.create_all(engine)
    configure_engine(engine)
    yield engine
    engine.dispose()


@pytest.fixture
def session(engine) -> Iterator[Session]:
    factory = sessionmaker(bind=engine, autoflush=False, autocommit=False, future=True)
    db = factory()
    try:
        yield db
    finally:
        db.close()


@pytest.fixture
def clinic(session) -> Clinic:
    clinic = Clinic(id=7, name="Clinic Seven", subdomain="seven", settings={})
    session.add(clinic)
    session.commit()
    return clinic


@pytest.fixture
def other_clinic(session) -> Clinic:
    clinic = Clinic(id=8, name="Clinic Eight", subdomain="eight", settings={})
    session.add(clinic)
    session.commit()
    return clinic


@pytest.fixture
def default_clinic(monkeypatch, clinic) -> Clinic:
    monkeypatch.setenv("PAYRECON_DEFAULT_CLINIC_ID", str(clinic.id))
    payrecon_config.reset_settings_cache()
    return clinic


@pytest.fixture
def fake_stripe() -> FakeStripeClient:
    client = FakeStripeClient()
    set_stripe_client(client)
    return client


@pytest.fixture
def make_patient(session):
    counter = {"value": 0}
    base_time = datetime(2024, 1, 1, tzinfo=timezone.utc)

    def _make(
        clinic_id: int,
        first_name: str = "Jane",
        last_name: str = "Doe",
        *,
        email: Optional[str] = None,
        phone: Optional[str] = None,
        stripe_customer_id: Optional[str] = None,
        encrypted: bool = True,
        profile_status: str = ProfileStatus.ACTIVE.value,
        created_offset_minutes: Optional[int] = None,
    ) -> Patient:
        counter["value"] += 1
        protect = encrypt_phi if encrypted else (lambda value: value)
        offset = counter["value"] if created_offset_minutes is None else created_offset_minutes
        patient = Patient(
            patient_id=f"T{counter['value']:05d}",
            clinic_id=clinic_id,
            first_name=protect(first_name),
            last_name=protect(last_name),
            email=protect(email),
            phone=protect(phone),
            stripe_customer_id=stripe_customer_id,
            profile_status=profile_status,
            created_at=base_time + timedelta(minutes=offset),
        )
        session.add(patient)
        session.commit()
        return patient

    return _make
