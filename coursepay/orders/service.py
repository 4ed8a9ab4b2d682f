# coursepay/orders/service.py
"""
Order ledger: pricing, checkout, cancellation and expiry of course orders.
"""

import secrets
from datetime import timedelta
from typing import List, Optional, Tuple

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from .models import Order, PaymentStatus, FailureReason
from ..auth.policy import authorize
from ..auth.principal import Principal
from ..config import settings
from ..coupons.service import CouponService, CouponQuote, OrderContext
from ..courses.models import Course
from ..database import utcnow, as_utc
from ..enrollments.service import EnrollmentService
from ..error_handlers import (
    CourseUnavailable,
    AlreadyEnrolled,
    GatewayUnavailable,
    InvalidStateTransition,
    OrderNotFound,
)
from ..logging_config import get_logger, log_business_event
from ..payments.base import PaymentGateway
from ..payments.factory import ProviderRegistry

logger = get_logger(__name__)


def generate_order_code(now=None) -> str:
    """ORD-YYYYMMDD-HHMMSS-NNNN"""
    now = now or utcnow()
    return f"ORD-{now:%Y%m%d-%H%M%S}-{secrets.randbelow(10000):04d}"


def compute_final_price(base_price: int, discount: int) -> int:
    return max(0, min(base_price, base_price - discount))


class OrderService:
    """Service for the order lifecycle"""

    def __init__(
        self,
        db: AsyncSession,
        providers: Optional[ProviderRegistry] = None,
        pending_timeout_minutes: Optional[int] = None,
    ):
        self.db = db
        self.providers = providers or ProviderRegistry()
        self.pending_timeout = timedelta(
            minutes=pending_timeout_minutes
            if pending_timeout_minutes is not None
            else settings.ORDER_PENDING_TIMEOUT_MINUTES
        )

    async def get_by_id(self, order_id: int, for_update: bool = False) -> Order:
        query = select(Order).where(Order.id == order_id)
        if for_update:
            query = query.with_for_update()
        result = await self.db.execute(query.execution_options(populate_existing=True))
        order = result.scalar_one_or_none()
        if not order:
            raise OrderNotFound(order_id)
        return order

    async def get_by_code(self, order_code: str, for_update: bool = False) -> Order:
        query = select(Order).where(Order.order_code == order_code)
        if for_update:
            query = query.with_for_update()
        result = await self.db.execute(query.execution_options(populate_existing=True))
        order = result.scalar_one_or_none()
        if not order:
            raise OrderNotFound(order_code)
        return order

    async def get_for_principal(
        self,
        principal: Principal,
        order_id: Optional[int] = None,
        order_code: Optional[str] = None,
    ) -> Order:
        if order_code is not None:
            order = await self.get_by_code(order_code)
        else:
            order = await self.get_by_id(order_id)
        course = await self.db.get(Course, order.course_id)
        authorize(principal, "order", "read", obj=order, course=course)
        return order

    async def _unique_order_code(self) -> str:
        while True:
            code = generate_order_code()
            exists = await self.db.execute(select(Order.id).where(Order.order_code == code))
            if exists.scalar_one_or_none() is None:
                return code

    async def _latest_pending(self, user_id: str, course_id: int) -> Optional[Order]:
        result = await self.db.execute(
            select(Order)
            .where(
                Order.user_id == user_id,
                Order.course_id == course_id,
                Order.payment_status == PaymentStatus.PENDING,
            )
            .order_by(Order.created_at.desc(), Order.id.desc())
            .limit(1)
        )
        return result.scalar_one_or_none()

    async def create_order(
        self,
        principal: Principal,
        course_id: int,
        gateway: PaymentGateway,
        coupon_code: Optional[str] = None,
        billing_address: Optional[dict] = None,
        client_ip: Optional[str] = None,
    ) -> Tuple[Order, str]:
        """
        Price a course for the caller, persist a PENDING order and return
        it with the gateway payment URL.

        A recent PENDING order for the same course, gateway and coupon is
        reused instead of creating a second one.

        Raises:
            CourseUnavailable: Course missing, unpublished, free, or total is zero
            AlreadyEnrolled: Caller already has access
            InvalidCoupon: Coupon rejected
            GatewayUnavailable: Payment URL could not be created (order kept)
        """
        authorize(principal, "order", "create")
        user_id = principal.user_id
        gateway = PaymentGateway(gateway)

        course = await self.db.get(Course, course_id)
        if not course or not course.is_published:
            raise CourseUnavailable(course_id)
        if course.is_free or int(course.price or 0) <= 0:
            raise CourseUnavailable(course_id, "Course is free, enroll directly instead")

        if await EnrollmentService(self.db).is_enrolled(user_id, course_id):
            raise AlreadyEnrolled(course_id)

        base_price = int(course.price)
        quote: Optional[CouponQuote] = None
        if coupon_code:
            quote = await CouponService(self.db).quote(
                coupon_code, user_id, OrderContext.for_course(course, base_price)
            )
        discount = quote.discount if quote else 0
        final_price = compute_final_price(base_price, discount)
        if final_price == 0:
            raise CourseUnavailable(course_id, "Order total is zero, enroll directly instead")

        pending = await self._latest_pending(user_id, course_id)
        if pending is not None:
            reusable = (
                utcnow() - as_utc(pending.created_at) < self.pending_timeout
                and pending.payment_gateway == gateway
                and pending.coupon_id == (quote.coupon_id if quote else None)
                and pending.final_price == final_price
            )
            if reusable:
                logger.info(
                    "Returning existing pending order",
                    extra={"user_id": user_id, "extra_data": {"order_code": pending.order_code}}
                )
                if pending.payment_url:
                    return pending, pending.payment_url
                return pending, await self._issue_payment_url(pending, client_ip)

            # Superseded or stale: close it so only one checkout is open
            expired = utcnow() - as_utc(pending.created_at) >= self.pending_timeout
            pending.payment_status = PaymentStatus.FAILED if expired else PaymentStatus.CANCELLED
            if expired:
                pending.failure_reason = FailureReason.EXPIRED

        order = Order(
            order_code=await self._unique_order_code(),
            user_id=user_id,
            course_id=course_id,
            base_price=base_price,
            discount_amount=discount,
            final_price=final_price,
            payment_gateway=gateway,
            payment_status=PaymentStatus.PENDING,
            coupon_id=quote.coupon_id if quote else None,
            billing_address=billing_address,
        )
        self.db.add(order)
        await self.db.commit()
        await self.db.refresh(order)

        log_business_event(
            "order_created",
            user_id=user_id,
            order_code=order.order_code,
            course_id=course_id,
            base_price=base_price,
            discount=discount,
            final_price=final_price,
            gateway=gateway.value,
            coupon_code=quote.code if quote else None,
        )

        payment_url = await self._issue_payment_url(order, client_ip)
        return order, payment_url

    async def _issue_payment_url(self, order: Order, client_ip: Optional[str]) -> str:
        provider = self.providers.get(order.payment_gateway)
        try:
            response = await provider.build_payment_url(order, client_ip or "127.0.0.1")
        except GatewayUnavailable:
            logger.error(
                "Payment URL creation failed, order left pending",
                extra={
                    "user_id": order.user_id,
                    "extra_data": {"order_code": order.order_code, "gateway": order.payment_gateway.value}
                },
                exc_info=True
            )
            raise

        order.payment_url = response.payment_url
        await self.db.commit()
        return response.payment_url

    async def cancel_order(self, order_id: int, principal: Principal) -> Order:
        order = await self.get_by_id(order_id, for_update=True)
        authorize(principal, "order", "cancel", obj=order)

        if order.payment_status != PaymentStatus.PENDING:
            raise InvalidStateTransition("order", order.payment_status.value, PaymentStatus.CANCELLED.value)

        order.payment_status = PaymentStatus.CANCELLED
        await self.db.commit()
        await self.db.refresh(order)

        log_business_event("order_cancelled", user_id=principal.user_id, order_code=order.order_code)
        return order

    async def list_orders(
        self,
        principal: Principal,
        status: Optional[PaymentStatus] = None,
        limit: int = 20,
        offset: int = 0,
    ) -> List[Order]:
        query = select(Order)
        if not principal.is_admin:
            query = query.where(Order.user_id == principal.user_id)
        if status is not None:
            query = query.where(Order.payment_status == status)
        result = await self.db.execute(
            query.order_by(Order.created_at.desc(), Order.id.desc()).limit(limit).offset(offset)
        )
        return list(result.scalars().all())

    async def expire_stale_orders(self, older_than_minutes: Optional[int] = None) -> int:
        """
        Fail PENDING orders past the payment window. Gateways never notify
        on link expiry, so nothing else would close them.
        """
        window = (
            timedelta(minutes=older_than_minutes)
            if older_than_minutes is not None
            else self.pending_timeout
        )
        cutoff = utcnow() - window

        result = await self.db.execute(
            select(Order)
            .where(
                Order.payment_status == PaymentStatus.PENDING,
                Order.created_at < cutoff,
            )
            .with_for_update(skip_locked=True)
        )
        stale = list(result.scalars().all())

        for order in stale:
            order.payment_status = PaymentStatus.FAILED
            order.failure_reason = FailureReason.EXPIRED

        await self.db.commit()

        if stale:
            log_business_event(
                "orders_expired",
                count=len(stale),
                order_codes=[o.order_code for o in stale],
            )
        return len(stale)
