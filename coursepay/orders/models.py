# coursepay/orders/models.py
import enum

from sqlalchemy import (
    Column, String, Integer, BigInteger, Boolean, DateTime, JSON, ForeignKey,
    CheckConstraint, Enum as SQLEnum, Index,
)

from ..database import Base, utcnow
from ..payments.base import PaymentGateway


class PaymentStatus(str, enum.Enum):
    PENDING = "PENDING"
    PAID = "PAID"
    FAILED = "FAILED"
    CANCELLED = "CANCELLED"
    REFUNDED = "REFUNDED"
    PARTIALLY_REFUNDED = "PARTIALLY_REFUNDED"


# Allowed payment_status transitions; nothing ever returns to PENDING
ORDER_TRANSITIONS = {
    PaymentStatus.PENDING: {PaymentStatus.PAID, PaymentStatus.FAILED, PaymentStatus.CANCELLED},
    PaymentStatus.PAID: {PaymentStatus.REFUNDED, PaymentStatus.PARTIALLY_REFUNDED},
    PaymentStatus.PARTIALLY_REFUNDED: {PaymentStatus.REFUNDED, PaymentStatus.PARTIALLY_REFUNDED},
    PaymentStatus.FAILED: set(),
    PaymentStatus.CANCELLED: set(),
    PaymentStatus.REFUNDED: set(),
}


class FailureReason:
    GATEWAY_DECLINED = "GATEWAY_DECLINED"
    AMOUNT_MISMATCH = "AMOUNT_MISMATCH"
    COUPON_EXHAUSTED = "COUPON_EXHAUSTED"
    EXPIRED = "EXPIRED"


class Order(Base):
    """Course purchase orders - one row per checkout attempt, never deleted"""
    __tablename__ = "orders"
    __table_args__ = (
        CheckConstraint("final_price >= 0", name="ck_orders_final_price_non_negative"),
        CheckConstraint("discount_amount >= 0", name="ck_orders_discount_non_negative"),
        Index("ix_orders_user_course_status", "user_id", "course_id", "payment_status"),
    )

    id = Column(Integer, primary_key=True, autoincrement=True)
    order_code = Column(String(32), unique=True, nullable=False, index=True)
    user_id = Column(String, nullable=False, index=True)
    course_id = Column(Integer, ForeignKey("courses.id"), nullable=False, index=True)

    # Amounts in VND
    base_price = Column(BigInteger, nullable=False)
    discount_amount = Column(BigInteger, nullable=False, default=0)
    final_price = Column(BigInteger, nullable=False)
    refunded_amount = Column(BigInteger, nullable=False, default=0)

    payment_gateway = Column(SQLEnum(PaymentGateway), nullable=False)
    payment_status = Column(SQLEnum(PaymentStatus), nullable=False, default=PaymentStatus.PENDING, index=True)
    coupon_id = Column(Integer, ForeignKey("coupons.id"), nullable=True)

    payment_url = Column(String, nullable=True)
    billing_address = Column(JSON, nullable=True)
    failure_reason = Column(String(64), nullable=True)
    # Money may have moved but the order could not be marked PAID
    needs_manual_review = Column(Boolean, nullable=False, default=False)

    created_at = Column(DateTime(timezone=True), nullable=False, default=utcnow, index=True)
    updated_at = Column(DateTime(timezone=True), nullable=False, default=utcnow, onupdate=utcnow)
    paid_at = Column(DateTime(timezone=True), nullable=True)

    def can_transition_to(self, target: PaymentStatus) -> bool:
        return target in ORDER_TRANSITIONS[PaymentStatus(self.payment_status)]

    def __repr__(self):
        return f"<Order {self.order_code} - {self.payment_status}>"
