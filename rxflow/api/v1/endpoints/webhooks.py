# rxflow/api/v1/endpoints/webhooks.py
from fastapi import APIRouter, Depends, Header
from fastapi.responses import JSONResponse
from sqlalchemy.orm import Session

from rxflow.core.database import get_db
from rxflow.schemas.webhook import PaymentEvent
from rxflow.services import payment_webhook_service

router = APIRouter()


@router.post("/payments")
def payment_webhook(
    event: PaymentEvent,
    webhook_secret: str | None = Header(None, alias="X-Webhook-Secret"),
    db: Session = Depends(get_db),
) -> JSONResponse:
    """
    Billing provider callback. Redelivered events (same id) are answered from
    the idempotency ledger; events that fail to apply are queued for retry.
    """
    payment_webhook_service.verify_webhook_secret(webhook_secret)
    status_code, body = payment_webhook_service.handle_payment_webhook(db, event.model_dump())
    return JSONResponse(status_code=status_code, content=body)
