# coursepay/payments/models.py
from sqlalchemy import (
    Column, String, Integer, BigInteger, DateTime, ForeignKey, UniqueConstraint,
    Enum as SQLEnum,
)

from ..database import Base, utcnow
from .base import PaymentGateway, NotificationSource, ReconciliationOutcome


class PaymentTransaction(Base):
    """
    One row per distinct authentic gateway notification. Append-only.

    The unique key on (gateway, gateway_transaction_id) is the idempotency
    key: a replayed callback or webhook cannot insert a second row.
    """
    __tablename__ = "payment_transactions"
    __table_args__ = (
        UniqueConstraint("gateway", "gateway_transaction_id", name="uq_payment_transactions_gateway_txn"),
    )

    id = Column(Integer, primary_key=True, autoincrement=True)
    order_id = Column(Integer, ForeignKey("orders.id"), nullable=False, index=True)
    gateway = Column(SQLEnum(PaymentGateway), nullable=False)
    gateway_transaction_id = Column(String, nullable=False)
    amount = Column(BigInteger, nullable=False)
    result_code = Column(String(16), nullable=False)
    raw_payload_hash = Column(String(64), nullable=False)
    source = Column(SQLEnum(NotificationSource), nullable=False)
    outcome = Column(SQLEnum(ReconciliationOutcome), nullable=False)
    received_at = Column(DateTime(timezone=True), nullable=False, default=utcnow)

    def __repr__(self):
        return f"<PaymentTransaction {self.gateway}:{self.gateway_transaction_id} - {self.outcome}>"
