# coursepay/coupons/models.py
import enum

from sqlalchemy import (
    Column, String, Integer, BigInteger, Boolean, DateTime, JSON, Numeric,
    ForeignKey, CheckConstraint, Enum as SQLEnum,
)

from ..database import Base, utcnow


class CouponType(str, enum.Enum):
    PERCENTAGE = "PERCENTAGE"
    FIXED_AMOUNT = "FIXED_AMOUNT"


class Coupon(Base):
    __tablename__ = "coupons"
    __table_args__ = (
        CheckConstraint("end_date > start_date", name="ck_coupons_date_range"),
        CheckConstraint("max_uses IS NULL OR used_count <= max_uses", name="ck_coupons_usage_cap"),
    )

    id = Column(Integer, primary_key=True, autoincrement=True)
    code = Column(String(50), unique=True, nullable=False, index=True)
    type = Column(SQLEnum(CouponType), nullable=False)
    value = Column(Numeric(12, 2), nullable=False)  # percent or VND
    max_discount = Column(BigInteger, nullable=True)
    min_order_value = Column(BigInteger, nullable=False, default=0)

    # None means unrestricted
    applicable_course_ids = Column(JSON, nullable=True)
    applicable_category_ids = Column(JSON, nullable=True)

    start_date = Column(DateTime(timezone=True), nullable=False)
    end_date = Column(DateTime(timezone=True), nullable=False)

    max_uses = Column(Integer, nullable=True)
    max_uses_per_user = Column(Integer, nullable=True)
    used_count = Column(Integer, nullable=False, default=0)
    active = Column(Boolean, nullable=False, default=True)

    created_at = Column(DateTime(timezone=True), nullable=False, default=utcnow)

    def __repr__(self):
        return f"<Coupon {self.code} - {self.used_count}/{self.max_uses}>"


class CouponUsage(Base):
    """One row per consumed coupon; an order consumes at most once"""
    __tablename__ = "coupon_usages"

    id = Column(Integer, primary_key=True, autoincrement=True)
    coupon_id = Column(Integer, ForeignKey("coupons.id"), nullable=False, index=True)
    user_id = Column(String, nullable=False, index=True)
    # Null for free-course enrollments
    order_id = Column(Integer, ForeignKey("orders.id"), nullable=True, unique=True)
    discount_applied = Column(BigInteger, nullable=False, default=0)
    used_at = Column(DateTime(timezone=True), nullable=False, default=utcnow)

    def __repr__(self):
        return f"<CouponUsage coupon={self.coupon_id} order={self.order_id}>"
