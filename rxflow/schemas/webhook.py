# rxflow/schemas/webhook.py
from typing import Any

from pydantic import BaseModel, ConfigDict


class PaymentEvent(BaseModel):
    """
    Billing provider event. `data` carries subscription_id and, for
    invoice.paid, payment_reference / payment_method / paid_at.
    """

    model_config = ConfigDict(extra="allow")

    id: str
    type: str
    data: dict[str, Any] = {}
