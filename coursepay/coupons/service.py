# coursepay/coupons/service.py
"""
Coupon engine.

quote() is read-only and runs at checkout; commit() consumes the coupon
and only runs inside the reconciliation transaction that marks an order
PAID. The usage cap is enforced by a conditional UPDATE, so the database
decides which of two concurrent commits gets the last use.
"""

from dataclasses import dataclass, field
from decimal import Decimal, ROUND_FLOOR
from typing import List, Optional, Sequence

from sqlalchemy import select, update, func, or_
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from .models import Coupon, CouponType, CouponUsage
from .schemas import CouponCreate, CouponUpdate
from ..database import utcnow, as_utc
from ..error_handlers import (
    CouponCodeTaken,
    CouponExhausted,
    InvalidCoupon,
    NotFoundException,
    ValidationException,
)
from ..logging_config import get_logger, log_business_event

logger = get_logger(__name__)


@dataclass
class OrderContext:
    order_total: int
    course_ids: Sequence[int] = field(default_factory=list)
    category_ids: Sequence[Optional[int]] = field(default_factory=list)

    @classmethod
    def for_course(cls, course, order_total: int) -> "OrderContext":
        return cls(
            order_total=order_total,
            course_ids=[course.id],
            category_ids=[course.category_id],
        )


@dataclass
class CouponQuote:
    coupon_id: int
    code: str
    discount: int


def normalize_code(code: str) -> str:
    return code.strip().upper()


def compute_discount(coupon: Coupon, order_total: int) -> int:
    """Discount in VND, never more than the order total"""
    if coupon.type == CouponType.PERCENTAGE:
        raw = Decimal(order_total) * Decimal(coupon.value) / Decimal(100)
        discount = int(raw.to_integral_value(rounding=ROUND_FLOOR))
        if coupon.max_discount is not None:
            discount = min(discount, int(coupon.max_discount))
    else:
        discount = int(Decimal(coupon.value).to_integral_value(rounding=ROUND_FLOOR))
    return max(0, min(discount, order_total))


class CouponService:
    """Coupon validation, consumption and admin management"""

    def __init__(self, db: AsyncSession):
        self.db = db

    async def _get_by_code(self, code: str) -> Optional[Coupon]:
        result = await self.db.execute(
            select(Coupon).where(Coupon.code == normalize_code(code))
        )
        return result.scalar_one_or_none()

    async def _user_usage_count(self, coupon_id: int, user_id: str) -> int:
        result = await self.db.execute(
            select(func.count(CouponUsage.id)).where(
                CouponUsage.coupon_id == coupon_id,
                CouponUsage.user_id == user_id,
            )
        )
        return result.scalar_one()

    async def quote(self, code: str, user_id: str, context: OrderContext) -> CouponQuote:
        """
        Validate a coupon against an order and compute its discount.

        Writes nothing. Cap checks here are advisory; commit() is the
        authoritative one.

        Raises:
            InvalidCoupon: With a message suitable for the buyer
        """
        coupon = await self._get_by_code(code)
        if not coupon:
            raise InvalidCoupon("Coupon code does not exist", code)

        if not coupon.active:
            raise InvalidCoupon("Coupon is no longer active", coupon.code)

        now = utcnow()
        if now < as_utc(coupon.start_date):
            raise InvalidCoupon("Coupon is not yet valid", coupon.code)
        if now > as_utc(coupon.end_date):
            raise InvalidCoupon("Coupon has expired", coupon.code)

        if coupon.max_uses is not None and coupon.used_count >= coupon.max_uses:
            raise InvalidCoupon("Coupon has reached its usage limit", coupon.code)

        if coupon.max_uses_per_user is not None:
            used = await self._user_usage_count(coupon.id, user_id)
            if used >= coupon.max_uses_per_user:
                raise InvalidCoupon("You have already used this coupon the maximum number of times", coupon.code)

        if context.order_total < (coupon.min_order_value or 0):
            raise InvalidCoupon(
                f"Minimum order value for this coupon is {int(coupon.min_order_value):,} VND",
                coupon.code,
            )

        if coupon.applicable_course_ids:
            if not any(cid in coupon.applicable_course_ids for cid in context.course_ids):
                raise InvalidCoupon("Coupon does not apply to this course", coupon.code)

        if coupon.applicable_category_ids:
            if not any(cid in coupon.applicable_category_ids for cid in context.category_ids):
                raise InvalidCoupon("Coupon does not apply to this course category", coupon.code)

        return CouponQuote(
            coupon_id=coupon.id,
            code=coupon.code,
            discount=compute_discount(coupon, context.order_total),
        )

    async def commit(
        self,
        coupon_id: int,
        user_id: str,
        order_id: Optional[int],
        discount_applied: int,
    ) -> CouponUsage:
        """
        Consume one use of a coupon within the caller's transaction.

        Does not commit; the caller rolls back on CouponExhausted so the
        increment never outlives a failed order.

        Raises:
            CouponExhausted: Global or per-user cap reached
        """
        result = await self.db.execute(
            update(Coupon)
            .where(
                Coupon.id == coupon_id,
                or_(Coupon.max_uses.is_(None), Coupon.used_count < Coupon.max_uses),
            )
            .values(used_count=Coupon.used_count + 1)
            .execution_options(synchronize_session=False)
        )

        coupon = await self.db.get(Coupon, coupon_id, populate_existing=True)
        code = coupon.code if coupon else str(coupon_id)

        if result.rowcount != 1:
            logger.warning(
                "Coupon usage cap reached at commit",
                extra={"user_id": user_id, "extra_data": {"coupon_id": coupon_id, "order_id": order_id}}
            )
            raise CouponExhausted(code)

        # The UPDATE above holds the coupon row lock until the caller commits
        if coupon.max_uses_per_user is not None:
            used = await self._user_usage_count(coupon_id, user_id)
            if used >= coupon.max_uses_per_user:
                raise CouponExhausted(code, "Coupon per-user limit reached")

        usage = CouponUsage(
            coupon_id=coupon_id,
            user_id=user_id,
            order_id=order_id,
            discount_applied=discount_applied,
        )
        self.db.add(usage)
        await self.db.flush()

        log_business_event(
            "coupon_consumed",
            user_id=user_id,
            coupon_code=code,
            order_id=order_id,
            discount=discount_applied,
        )
        return usage

    # ------------------------------------------------------------------
    # Admin management
    # ------------------------------------------------------------------

    async def get_coupon(self, coupon_id: int) -> Coupon:
        coupon = await self.db.get(Coupon, coupon_id)
        if not coupon:
            raise NotFoundException("Coupon", coupon_id)
        return coupon

    async def list_coupons(
        self,
        active: Optional[bool] = None,
        limit: int = 50,
        offset: int = 0,
    ) -> List[Coupon]:
        query = select(Coupon).order_by(Coupon.created_at.desc(), Coupon.id.desc())
        if active is not None:
            query = query.where(Coupon.active == active)
        result = await self.db.execute(query.limit(limit).offset(offset))
        return list(result.scalars().all())

    async def create_coupon(self, data: CouponCreate, created_by: str) -> Coupon:
        code = normalize_code(data.code)
        if await self._get_by_code(code):
            raise CouponCodeTaken(code)

        coupon = Coupon(**data.model_dump(exclude={"code"}), code=code, used_count=0)
        self.db.add(coupon)
        try:
            await self.db.commit()
        except IntegrityError as e:
            await self.db.rollback()
            raise CouponCodeTaken(code) from e
        await self.db.refresh(coupon)

        log_business_event("coupon_created", user_id=created_by, coupon_code=code, type=coupon.type.value)
        return coupon

    async def update_coupon(self, coupon_id: int, data: CouponUpdate, updated_by: str) -> Coupon:
        coupon = await self.get_coupon(coupon_id)
        changes = data.model_dump(exclude_unset=True)

        start = as_utc(changes.get("start_date", coupon.start_date))
        end = as_utc(changes.get("end_date", coupon.end_date))
        if end <= start:
            raise ValidationException("end_date must be after start_date")

        value = changes.get("value", coupon.value)
        if coupon.type == CouponType.PERCENTAGE and Decimal(value) > 100:
            raise ValidationException("Percentage value must be between 0 and 100")

        if "max_uses" in changes and changes["max_uses"] is not None:
            if changes["max_uses"] < coupon.used_count:
                raise ValidationException(
                    "max_uses cannot be lower than the number of uses so far",
                    details={"used_count": coupon.used_count},
                )

        for key, val in changes.items():
            setattr(coupon, key, val)

        await self.db.commit()
        await self.db.refresh(coupon)

        log_business_event("coupon_updated", user_id=updated_by, coupon_code=coupon.code, fields=list(changes))
        return coupon

    async def set_active(self, coupon_id: int, active: bool, updated_by: str) -> Coupon:
        """Soft enable/disable; coupons with usage history are never deleted"""
        coupon = await self.get_coupon(coupon_id)
        coupon.active = active
        await self.db.commit()
        await self.db.refresh(coupon)

        log_business_event(
            "coupon_activated" if active else "coupon_deactivated",
            user_id=updated_by,
            coupon_code=coupon.code,
        )
        return coupon

    async def usage_history(self, coupon_id: int, limit: int = 100, offset: int = 0) -> List[CouponUsage]:
        await self.get_coupon(coupon_id)
        result = await self.db.execute(
            select(CouponUsage)
            .where(CouponUsage.coupon_id == coupon_id)
            .order_by(CouponUsage.used_at.desc())
            .limit(limit)
            .offset(offset)
        )
        return list(result.scalars().all())
