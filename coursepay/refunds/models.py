# coursepay/refunds/models.py
import enum

from sqlalchemy import (
    Column, String, Integer, BigInteger, Boolean, DateTime, JSON, Numeric, Text,
    ForeignKey, Index, Enum as SQLEnum, text,
)

from ..database import Base, utcnow
from ..payments.base import PaymentGateway


class RefundRequestStatus(str, enum.Enum):
    PENDING = "PENDING"
    APPROVED = "APPROVED"
    REJECTED = "REJECTED"


class RefundDecision(str, enum.Enum):
    APPROVE = "APPROVE"
    REJECT = "REJECT"


class RefundType(str, enum.Enum):
    FULL = "FULL"
    PARTIAL = "PARTIAL"


class RefundRequest(Base):
    __tablename__ = "refund_requests"
    __table_args__ = (
        # At most one open request per order
        Index(
            "uq_refund_requests_open_per_order",
            "order_id",
            unique=True,
            postgresql_where=text("status = 'PENDING'"),
            sqlite_where=text("status = 'PENDING'"),
        ),
    )

    id = Column(Integer, primary_key=True, autoincrement=True)
    order_id = Column(Integer, ForeignKey("orders.id"), nullable=False, index=True)
    student_id = Column(String, nullable=False, index=True)
    reason = Column(Text, nullable=False)
    status = Column(SQLEnum(RefundRequestStatus), nullable=False, default=RefundRequestStatus.PENDING, index=True)

    progress_percentage_at_request = Column(Numeric(5, 2), nullable=False, default=0)
    suggested_amount = Column(BigInteger, nullable=False)
    approved_amount = Column(BigInteger, nullable=True)

    processed_by = Column(String, nullable=True)
    processed_at = Column(DateTime(timezone=True), nullable=True)
    admin_notes = Column(Text, nullable=True)

    # Gateway retry bookkeeping
    needs_retry = Column(Boolean, nullable=False, default=False)
    retry_count = Column(Integer, nullable=False, default=0)
    last_error = Column(Text, nullable=True)
    # Fixed at the first gateway attempt and resent unchanged on every retry
    gateway_request_id = Column(String(64), nullable=True, unique=True)
    # A timed-out call may have refunded already; only an admin resends it
    needs_manual_retry = Column(Boolean, nullable=False, default=False)

    created_at = Column(DateTime(timezone=True), nullable=False, default=utcnow)

    def __repr__(self):
        return f"<RefundRequest {self.id} order={self.order_id} - {self.status}>"


class RefundTransaction(Base):
    """Audit row for each refund the gateway accepted"""
    __tablename__ = "refund_transactions"

    id = Column(Integer, primary_key=True, autoincrement=True)
    refund_request_id = Column(Integer, ForeignKey("refund_requests.id"), nullable=False, index=True)
    order_id = Column(Integer, ForeignKey("orders.id"), nullable=False, index=True)
    gateway = Column(SQLEnum(PaymentGateway), nullable=False)
    provider_refund_id = Column(String, nullable=True, index=True)
    amount = Column(BigInteger, nullable=False)
    status = Column(String, nullable=False)
    created_at = Column(DateTime(timezone=True), nullable=False, default=utcnow)
    refund_metadata = Column(JSON)

    def __repr__(self):
        return f"<RefundTransaction {self.id} - {self.amount}>"
