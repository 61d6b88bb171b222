import json
import time

import pytest
from fastapi.testclient import TestClient

from payrecon.db import get_session
from payrecon.events import PaymentEvent
from payrecon.invoicing import create_paid_invoice
from payrecon.main import app
from payrecon.webhooks import compute_signature

SECRET = "whsec_api_secret"


@pytest.fixture
def client(session, monkeypatch):
    from payrecon.config import reset_settings_cache

    monkeypatch.setenv("STRIPE_WEBHOOK_SECRET", SECRET)
    reset_settings_cache()

    def _override_session():
        yield session

    app.dependency_overrides[get_session] = _override_session
    try:
        yield TestClient(app)
    finally:
        app.dependency_overrides.clear()


def _post_webhook(client, payload, secret=SECRET):
    body = json.dumps(payload).encode("utf-8")
    timestamp = int(time.time())
    header = f"t={timestamp},v1={compute_signature(body, secret, timestamp)}"
    return client.post(
        "/api/stripe/webhook",
        content=body,
        headers={"stripe-signature": header, "content-type": "application/json"},
    )


CHECKOUT_EVENT = {
    "id": "evt_api_checkout",
    "type": "checkout.session.completed",
    "data": {
        "object": {
            "id": "cs_api",
            "amount_total": 15000,
            "currency": "usd",
            "customer_details": {"email": "api@example.com", "name": "Api Person"},
            "payment_intent": "pi_api",
            "payment_status": "paid",
            "metadata": {},
        }
    },
}


def test_webhook_rejects_bad_signature(client):
    response = _post_webhook(client, CHECKOUT_EVENT, secret="whsec_wrong")

    assert response.status_code == 400


def test_webhook_processes_checkout_and_lists_ledger(client, default_clinic):
    response = _post_webhook(client, CHECKOUT_EVENT)

    assert response.status_code == 200
    body = response.json()
    assert body["received"] is True
    assert body["result"]["status"] == "CREATED"

    ledger = client.get("/api/finance/reconciliation", params={"clinicId": default_clinic.id}).json()["items"]
    assert [row["stripeEventId"] for row in ledger] == ["evt_api_checkout"]
    assert ledger[0]["patientCreated"] is True

    assert client.get("/api/finance/reconciliation", params={"status": "FAILED"}).json()["items"] == []


def test_webhook_acknowledges_failures(client, clinic):
    response = _post_webhook(client, CHECKOUT_EVENT)

    assert response.status_code == 200
    assert response.json()["result"]["status"] == "FAILED"


def test_refund_endpoint(client, session, clinic, make_patient):
    patient = make_patient(clinic.id)
    create_paid_invoice(session, patient, PaymentEvent(amount=10000, charge_id="ch_api"))
    session.commit()

    response = client.post("/api/finance/refunds", json={"chargeId": "ch_api", "amountRefunded": 4000})

    assert response.status_code == 200
    assert response.json()["amountPaid"] == 6000
    assert client.post("/api/finance/refunds", json={"chargeId": "ch_none", "amountRefunded": 1}).status_code == 404
    assert client.post("/api/finance/refunds", json={"amountRefunded": 1}).status_code == 400


def test_sync_endpoint_missing_invoice(client):
    assert client.post("/api/finance/invoices/999/sync").status_code == 404


def test_complete_profile_endpoint(client, session, clinic, make_patient):
    patient = make_patient(clinic.id, profile_status="PENDING_COMPLETION")

    response = client.post(f"/api/patients/{patient.id}/complete-profile", json={"email": "done@example.com"})

    assert response.status_code == 200
    assert response.json()["patient"]["profileStatus"] == "ACTIVE"
    assert client.post("/api/patients/999/complete-profile", json={"email": "x@example.com"}).status_code == 404
    assert client.post(f"/api/patients/{patient.id}/complete-profile", json={}).status_code == 400


def test_metrics_endpoint(client, default_clinic):
    _post_webhook(client, CHECKOUT_EVENT)

    response = client.get("/metrics")

    assert response.status_code == 200
    assert "payrecon_events_processed_total" in response.text
    assert "payrecon_webhooks_received_total" in response.text
