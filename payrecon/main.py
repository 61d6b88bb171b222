"""HTTP surface for Stripe webhooks and manual reconciliation.

Run with ``uvicorn payrecon.main:app``.
"""

from __future__ import annotations

import logging
import os
from contextlib import asynccontextmanager
from typing import Any, Dict, List, Optional

import structlog
from fastapi import Depends, FastAPI, HTTPException, Request, Response
from prometheus_client import CONTENT_TYPE_LATEST, generate_latest
from pydantic import BaseModel, ConfigDict, Field
from sqlalchemy import select
from sqlalchemy.orm import Session

from payrecon import __version__
from payrecon.collaborators import ProcessingServices
from payrecon.config import get_stripe_settings
from payrecon.db import get_session, initialise_schema
from payrecon.db.models import PaymentReconciliation, ReconciliationStatus
from payrecon.errors import PatientNotFoundError, SignatureVerificationError
from payrecon.events import RefundEvent
from payrecon.profiles import complete_profile
from payrecon.refunds import apply_refund, sync_invoice_from_stripe
from payrecon.time_utils import utc_now
from payrecon.webhooks import handle_stripe_event, verify_signature

LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO").upper()
logging.basicConfig(level=getattr(logging, LOG_LEVEL, logging.INFO), format="%(message)s")

structlog.configure(
    processors=[
        structlog.contextvars.merge_contextvars,
        structlog.processors.TimeStamper(fmt="iso", utc=True),
        structlog.stdlib.add_log_level,
        structlog.stdlib.add_logger_name,
        structlog.stdlib.PositionalArgumentsFormatter(),
        structlog.processors.StackInfoRenderer(),
        structlog.processors.format_exc_info,
        structlog.processors.JSONRenderer(),
    ],
    context_class=dict,
    logger_factory=structlog.stdlib.LoggerFactory(),
    wrapper_class=structlog.stdlib.BoundLogger,
    cache_logger_on_first_use=True,
)

logger = structlog.get_logger(__name__)

_services = ProcessingServices()


def get_processing_services() -> ProcessingServices:
    """Dependency returning the collaborators used after a payment is recorded."""

    return _services


@asynccontextmanager
async def lifespan(app: FastAPI):  # pragma: no cover - exercised indirectly in integration
    initialise_schema()
    logger.info("lifespan_startup", version=__version__)
    yield
    logger.info("lifespan_shutdown")


app = FastAPI(title="PayRecon API", version=__version__, lifespan=lifespan)


class RefundRequest(BaseModel):
    charge_id: Optional[str] = Field(default=None, alias="chargeId")
    payment_intent_id: Optional[str] = Field(default=None, alias="paymentIntentId")
    amount_refunded: int = Field(alias="amountRefunded", ge=0)
    refund_id: Optional[str] = Field(default=None, alias="refundId")
    reason: Optional[str] = None
    currency: Optional[str] = None

    model_config = ConfigDict(populate_by_name=True)


class ProfileCompletionRequest(BaseModel):
    firstName: Optional[str] = None
    lastName: Optional[str] = None
    email: Optional[str] = None
    phone: Optional[str] = None
    dob: Optional[str] = None
    gender: Optional[str] = None
    address1: Optional[str] = None
    address2: Optional[str] = None
    city: Optional[str] = None
    state: Optional[str] = None
    zip: Optional[str] = None
    clinicId: Optional[int] = None

    model_config = ConfigDict(extra="ignore")


@app.post("/api/stripe/webhook")
async def stripe_webhook(
    request: Request,
    session: Session = Depends(get_session),
    services: ProcessingServices = Depends(get_processing_services),
) -> Dict[str, Any]:
    payload = await request.body()
    try:
        event = verify_signature(
            payload,
            request.headers.get("stripe-signature"),
            get_stripe_settings().webhook_secret,
        )
    except SignatureVerificationError as exc:
        logger.warning("stripe_webhook_signature_invalid", error=str(exc))
        raise HTTPException(status_code=400, detail=str(exc))

    outcome = await handle_stripe_event(session, event, services=services)
    return {"received": True, "eventId": event.get("id"), "type": event.get("type"), **outcome}


@app.post("/api/finance/invoices/{invoice_id}/sync")
async def sync_invoice(invoice_id: int, session: Session = Depends(get_session)) -> Dict[str, Any]:
    result = await sync_invoice_from_stripe(session, invoice_id)
    if not result["success"] and result.get("error") == "Invoice not found":
        raise HTTPException(status_code=404, detail="Invoice not found")
    return result


@app.post("/api/finance/refunds")
async def record_refund(body: RefundRequest, session: Session = Depends(get_session)) -> Dict[str, Any]:
    if not body.charge_id and not body.payment_intent_id:
        raise HTTPException(status_code=400, detail="chargeId or paymentIntentId is required")
    refund = RefundEvent(
        amount_refunded=body.amount_refunded,
        charge_id=body.charge_id,
        payment_intent_id=body.payment_intent_id,
        refund_id=body.refund_id,
        reason=body.reason,
        currency=body.currency,
        refunded_at=utc_now(),
    )
    result = apply_refund(session, refund)
    if not result["success"] and "paymentId" not in result:
        raise HTTPException(status_code=404, detail=result["error"])
    return result


@app.post("/api/patients/{patient_id}/complete-profile")
async def complete_patient_profile(
    patient_id: int,
    body: ProfileCompletionRequest,
    session: Session = Depends(get_session),
    services: ProcessingServices = Depends(get_processing_services),
) -> Dict[str, Any]:
    updates = body.model_dump(exclude_none=True, exclude={"clinicId"})
    try:
        return complete_profile(
            session,
            patient_id,
            updates,
            services.documentation,
            clinic_id=body.clinicId,
        )
    except PatientNotFoundError:
        raise HTTPException(status_code=404, detail="Patient not found")
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc))


@app.get("/api/finance/reconciliation")
async def list_reconciliations(
    status: Optional[ReconciliationStatus] = None,
    clinicId: Optional[int] = None,
    limit: int = 50,
    session: Session = Depends(get_session),
) -> Dict[str, List[Dict[str, Any]]]:
    stmt = select(PaymentReconciliation)
    if status is not None:
        stmt = stmt.where(PaymentReconciliation.status == status.value)
    if clinicId is not None:
        stmt = stmt.where(PaymentReconciliation.clinic_id == clinicId)
    stmt = stmt.order_by(PaymentReconciliation.created_at.desc(), PaymentReconciliation.id.desc())
    rows = session.execute(stmt.limit(max(1, min(limit, 500)))).scalars().all()
    return {"items": [row.to_dict() for row in rows]}


@app.get("/metrics", response_model=None)
async def metrics_endpoint() -> Response:
    return Response(content=generate_latest(), media_type=CONTENT_TYPE_LATEST)


__all__ = ["app", "get_processing_services"]
