"""Tests for the order ledger: checkout, reuse, cancellation and expiry."""

import re
from datetime import timedelta

import pytest
from sqlalchemy import func, select

from coursepay.database import utcnow
from coursepay.enrollments.service import EnrollmentService
from coursepay.error_handlers import (
    AlreadyEnrolled,
    CourseUnavailable,
    ForbiddenException,
    GatewayUnavailable,
    InvalidCoupon,
    InvalidStateTransition,
    OrderNotFound,
)
from coursepay.orders.models import FailureReason, Order, PaymentStatus
from coursepay.orders.service import OrderService, compute_final_price, generate_order_code
from coursepay.payments.base import PaymentGateway

from tests.helpers import MOMO_CONFIG


class TestPricing:
    def test_order_code_format(self):
        assert re.fullmatch(r"ORD-\d{8}-\d{6}-\d{4}", generate_order_code())

    def test_final_price_never_negative(self):
        assert compute_final_price(500_000, 40_000) == 460_000
        assert compute_final_price(500_000, 900_000) == 0


class TestCreateOrder:
    """OrderService.create_order"""

    async def test_creates_pending_order_with_vnpay_url(self, db, providers, course, student):
        order, payment_url = await OrderService(db, providers).create_order(
            student, course.id, PaymentGateway.VNPAY, client_ip="203.0.113.7"
        )

        assert order.payment_status == PaymentStatus.PENDING
        assert order.base_price == 500_000
        assert order.discount_amount == 0
        assert order.final_price == 500_000
        assert order.user_id == student.user_id
        assert payment_url.startswith("https://sandbox.vnpayment.vn/")
        assert order.payment_url == payment_url

    async def test_applies_coupon_without_consuming_it(self, db, providers, course, make_coupon, student):
        coupon = await make_coupon("SALE10", value=10, max_discount=40_000, max_uses=5)

        order, _ = await OrderService(db, providers).create_order(
            student, course.id, PaymentGateway.VNPAY, coupon_code="SALE10"
        )

        assert order.discount_amount == 40_000
        assert order.final_price == 460_000
        assert order.coupon_id == coupon.id
        await db.refresh(coupon)
        assert coupon.used_count == 0

    async def test_invalid_coupon_blocks_checkout(self, db, providers, course, student):
        with pytest.raises(InvalidCoupon):
            await OrderService(db, providers).create_order(
                student, course.id, PaymentGateway.VNPAY, coupon_code="GHOST"
            )

    async def test_unpublished_course(self, db, providers, course, student):
        course.is_published = False
        await db.commit()

        with pytest.raises(CourseUnavailable):
            await OrderService(db, providers).create_order(student, course.id, PaymentGateway.VNPAY)

    async def test_free_course_cannot_be_ordered(self, db, providers, free_course, student):
        with pytest.raises(CourseUnavailable):
            await OrderService(db, providers).create_order(student, free_course.id, PaymentGateway.VNPAY)

    async def test_full_discount_is_rejected(self, db, providers, course, make_coupon, student):
        await make_coupon("FREEALL", value=100)

        with pytest.raises(CourseUnavailable, match="zero"):
            await OrderService(db, providers).create_order(
                student, course.id, PaymentGateway.VNPAY, coupon_code="FREEALL"
            )

    async def test_already_enrolled(self, db, providers, course, student):
        await EnrollmentService(db).provision(student.user_id, course.id)
        await db.commit()

        with pytest.raises(AlreadyEnrolled):
            await OrderService(db, providers).create_order(student, course.id, PaymentGateway.VNPAY)

    async def test_recent_pending_order_is_reused(self, db, providers, course, student):
        service = OrderService(db, providers)
        first, first_url = await service.create_order(student, course.id, PaymentGateway.VNPAY)
        second, second_url = await service.create_order(student, course.id, PaymentGateway.VNPAY)

        assert second.id == first.id
        assert second_url == first_url
        count = await db.execute(select(func.count(Order.id)))
        assert count.scalar_one() == 1

    async def test_switching_gateway_cancels_previous_pending(self, db, providers, course, student):
        service = OrderService(db, providers)
        first, _ = await service.create_order(student, course.id, PaymentGateway.VNPAY)
        second, payment_url = await service.create_order(student, course.id, PaymentGateway.MOMO)

        await db.refresh(first)
        assert second.id != first.id
        assert first.payment_status == PaymentStatus.CANCELLED
        assert payment_url.startswith("https://test-payment.momo.vn/pay/")

    async def test_stale_pending_order_is_expired_not_reused(self, db, providers, course, student):
        service = OrderService(db, providers)
        first, _ = await service.create_order(student, course.id, PaymentGateway.VNPAY)
        first.created_at = utcnow() - timedelta(hours=1)
        await db.commit()

        second, _ = await service.create_order(student, course.id, PaymentGateway.VNPAY)

        await db.refresh(first)
        assert second.id != first.id
        assert first.payment_status == PaymentStatus.FAILED
        assert first.failure_reason == FailureReason.EXPIRED

    async def test_gateway_outage_keeps_order_pending(self, db, providers, gateway, course, student):
        gateway.queue_json(MOMO_CONFIG["endpoint"], {}, status_code=503)

        with pytest.raises(GatewayUnavailable):
            await OrderService(db, providers).create_order(student, course.id, PaymentGateway.MOMO)

        result = await db.execute(select(Order))
        order = result.scalar_one()
        assert order.payment_status == PaymentStatus.PENDING
        assert order.payment_url is None


class TestOrderAccess:
    """Reading and cancelling orders."""

    async def test_owner_and_course_instructor_can_read(self, db, providers, course, student, instructor):
        service = OrderService(db, providers)
        order, _ = await service.create_order(student, course.id, PaymentGateway.VNPAY)

        assert (await service.get_for_principal(student, order_id=order.id)).id == order.id
        assert (await service.get_for_principal(instructor, order_code=order.order_code)).id == order.id

    async def test_other_student_cannot_read(self, db, providers, course, student, other_student):
        service = OrderService(db, providers)
        order, _ = await service.create_order(student, course.id, PaymentGateway.VNPAY)

        with pytest.raises(ForbiddenException):
            await service.get_for_principal(other_student, order_id=order.id)

    async def test_unknown_order(self, db, providers, student):
        with pytest.raises(OrderNotFound):
            await OrderService(db, providers).get_for_principal(student, order_code="ORD-NOPE")

    async def test_cancel_pending(self, db, providers, course, student):
        service = OrderService(db, providers)
        order, _ = await service.create_order(student, course.id, PaymentGateway.VNPAY)

        cancelled = await service.cancel_order(order.id, student)

        assert cancelled.payment_status == PaymentStatus.CANCELLED

    async def test_cancel_twice_is_invalid(self, db, providers, course, student):
        service = OrderService(db, providers)
        order, _ = await service.create_order(student, course.id, PaymentGateway.VNPAY)
        await service.cancel_order(order.id, student)

        with pytest.raises(InvalidStateTransition):
            await service.cancel_order(order.id, student)

    async def test_cannot_cancel_someone_elses_order(self, db, providers, course, student, other_student):
        service = OrderService(db, providers)
        order, _ = await service.create_order(student, course.id, PaymentGateway.VNPAY)

        with pytest.raises(ForbiddenException):
            await service.cancel_order(order.id, other_student)

    async def test_list_is_scoped_to_caller(self, db, providers, course, student, other_student, admin):
        service = OrderService(db, providers)
        await service.create_order(student, course.id, PaymentGateway.VNPAY)
        await service.create_order(other_student, course.id, PaymentGateway.VNPAY)

        assert len(await service.list_orders(student)) == 1
        assert len(await service.list_orders(admin)) == 2


class TestExpireStaleOrders:
    async def test_only_old_pending_orders_expire(self, db, providers, course, student, other_student):
        service = OrderService(db, providers)
        old, _ = await service.create_order(student, course.id, PaymentGateway.VNPAY)
        fresh, _ = await service.create_order(other_student, course.id, PaymentGateway.VNPAY)
        old.created_at = utcnow() - timedelta(minutes=30)
        await db.commit()

        expired = await service.expire_stale_orders()

        await db.refresh(old)
        await db.refresh(fresh)
        assert expired == 1
        assert old.payment_status == PaymentStatus.FAILED
        assert old.failure_reason == FailureReason.EXPIRED
        assert fresh.payment_status == PaymentStatus.PENDING
