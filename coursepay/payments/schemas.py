from pydantic import BaseModel, ConfigDict
from datetime import datetime

from .base import PaymentGateway, NotificationSource, ReconciliationOutcome


class PaymentTransactionResponse(BaseModel):
    """A recorded gateway notification; the raw payload is never exposed"""
    model_config = ConfigDict(from_attributes=True)

    id: int
    order_id: int
    gateway: PaymentGateway
    gateway_transaction_id: str
    amount: int
    result_code: str
    source: NotificationSource
    outcome: ReconciliationOutcome
    received_at: datetime
