"""Tests for coupon validation, discount computation and consumption."""

from datetime import timedelta
from decimal import Decimal
from types import SimpleNamespace

import pytest
from sqlalchemy import func, select

from coursepay.coupons.models import Coupon, CouponType, CouponUsage
from coursepay.coupons.schemas import CouponCreate, CouponUpdate
from coursepay.coupons.service import CouponService, OrderContext, compute_discount, normalize_code
from coursepay.database import utcnow
from coursepay.error_handlers import CouponCodeTaken, CouponExhausted, InvalidCoupon, ValidationException


def _coupon(coupon_type, value, max_discount=None):
    return SimpleNamespace(type=coupon_type, value=Decimal(str(value)), max_discount=max_discount)


class TestComputeDiscount:
    """Pure discount arithmetic."""

    def test_percentage_capped_by_max_discount(self):
        assert compute_discount(_coupon(CouponType.PERCENTAGE, 10, 40_000), 500_000) == 40_000

    def test_percentage_without_cap(self):
        assert compute_discount(_coupon(CouponType.PERCENTAGE, 10), 500_000) == 50_000

    def test_percentage_rounds_down(self):
        assert compute_discount(_coupon(CouponType.PERCENTAGE, 15), 99_999) == 14_999

    def test_fixed_amount(self):
        assert compute_discount(_coupon(CouponType.FIXED_AMOUNT, 100_000), 500_000) == 100_000

    def test_never_exceeds_order_total(self):
        assert compute_discount(_coupon(CouponType.FIXED_AMOUNT, 800_000), 500_000) == 500_000

    def test_codes_are_case_insensitive(self):
        assert normalize_code("  sale10 ") == "SALE10"


class TestQuote:
    """CouponService.quote validation rules."""

    async def test_sale10_scenario(self, db, course, make_coupon, student):
        await make_coupon("SALE10", value=10, max_discount=40_000)

        quote = await CouponService(db).quote("sale10", student.user_id, OrderContext.for_course(course, 500_000))

        assert quote.code == "SALE10"
        assert quote.discount == 40_000

    async def test_unknown_code(self, db, course, student):
        with pytest.raises(InvalidCoupon, match="does not exist"):
            await CouponService(db).quote("NOPE", student.user_id, OrderContext.for_course(course, 500_000))

    async def test_inactive(self, db, course, make_coupon, student):
        await make_coupon(active=False)

        with pytest.raises(InvalidCoupon, match="no longer active"):
            await CouponService(db).quote("SALE10", student.user_id, OrderContext.for_course(course, 500_000))

    async def test_not_yet_valid(self, db, course, make_coupon, student):
        now = utcnow()
        await make_coupon(start_date=now + timedelta(days=1), end_date=now + timedelta(days=10))

        with pytest.raises(InvalidCoupon, match="not yet valid"):
            await CouponService(db).quote("SALE10", student.user_id, OrderContext.for_course(course, 500_000))

    async def test_expired(self, db, course, make_coupon, student):
        now = utcnow()
        await make_coupon(start_date=now - timedelta(days=10), end_date=now - timedelta(days=1))

        with pytest.raises(InvalidCoupon, match="expired"):
            await CouponService(db).quote("SALE10", student.user_id, OrderContext.for_course(course, 500_000))

    async def test_usage_limit_reached(self, db, course, make_coupon, student):
        await make_coupon(max_uses=5, used_count=5)

        with pytest.raises(InvalidCoupon, match="usage limit"):
            await CouponService(db).quote("SALE10", student.user_id, OrderContext.for_course(course, 500_000))

    async def test_per_user_limit_reached(self, db, course, make_coupon, student):
        coupon = await make_coupon(max_uses_per_user=1)
        db.add(CouponUsage(coupon_id=coupon.id, user_id=student.user_id, order_id=None, discount_applied=0))
        await db.commit()

        with pytest.raises(InvalidCoupon, match="maximum number of times"):
            await CouponService(db).quote("SALE10", student.user_id, OrderContext.for_course(course, 500_000))

    async def test_minimum_order_value(self, db, course, make_coupon, student):
        await make_coupon(min_order_value=1_000_000)

        with pytest.raises(InvalidCoupon, match="Minimum order value"):
            await CouponService(db).quote("SALE10", student.user_id, OrderContext.for_course(course, 500_000))

    async def test_course_scope(self, db, course, make_coupon, student):
        await make_coupon(applicable_course_ids=[course.id + 100])

        with pytest.raises(InvalidCoupon, match="does not apply to this course"):
            await CouponService(db).quote("SALE10", student.user_id, OrderContext.for_course(course, 500_000))

    async def test_category_scope(self, db, course, make_coupon, student):
        await make_coupon(applicable_category_ids=[course.category_id])

        quote = await CouponService(db).quote("SALE10", student.user_id, OrderContext.for_course(course, 500_000))
        assert quote.discount == 50_000

    async def test_quote_writes_nothing(self, db, course, make_coupon, student):
        coupon = await make_coupon(max_uses=5)

        await CouponService(db).quote("SALE10", student.user_id, OrderContext.for_course(course, 500_000))

        await db.refresh(coupon)
        assert coupon.used_count == 0


class TestCommit:
    """CouponService.commit consumes uses atomically."""

    async def test_commit_increments_and_records_usage(self, db, make_coupon, student):
        coupon = await make_coupon(max_uses=2)

        usage = await CouponService(db).commit(coupon.id, student.user_id, None, 40_000)
        await db.commit()

        await db.refresh(coupon)
        assert coupon.used_count == 1
        assert usage.discount_applied == 40_000

    async def test_commit_past_cap_raises(self, db, make_coupon, student, other_student):
        coupon = await make_coupon(max_uses=1)
        service = CouponService(db)

        await service.commit(coupon.id, student.user_id, None, 0)
        await db.commit()

        with pytest.raises(CouponExhausted):
            await service.commit(coupon.id, other_student.user_id, None, 0)
        await db.rollback()

        await db.refresh(coupon)
        assert coupon.used_count == 1
        count = await db.execute(select(func.count(CouponUsage.id)).where(CouponUsage.coupon_id == coupon.id))
        assert count.scalar_one() == 1

    async def test_commit_past_per_user_cap_raises(self, db, make_coupon, student):
        coupon = await make_coupon(max_uses_per_user=1)
        service = CouponService(db)

        await service.commit(coupon.id, student.user_id, None, 0)
        await db.commit()

        with pytest.raises(CouponExhausted, match="per-user"):
            await service.commit(coupon.id, student.user_id, None, 0)
        await db.rollback()


class TestAdminManagement:
    """Admin create/update/deactivate."""

    def _create_payload(self, **overrides):
        now = utcnow()
        fields = dict(
            code="welcome50",
            type=CouponType.FIXED_AMOUNT,
            value=Decimal("50000"),
            start_date=now,
            end_date=now + timedelta(days=7),
            max_uses=100,
        )
        fields.update(overrides)
        return CouponCreate(**fields)

    async def test_create_normalizes_code(self, db, admin):
        coupon = await CouponService(db).create_coupon(self._create_payload(), admin.user_id)

        assert coupon.code == "WELCOME50"
        assert coupon.used_count == 0

    async def test_duplicate_code_rejected(self, db, admin):
        service = CouponService(db)
        await service.create_coupon(self._create_payload(), admin.user_id)

        with pytest.raises(CouponCodeTaken):
            await service.create_coupon(self._create_payload(code="WELCOME50"), admin.user_id)

    def test_percentage_over_100_rejected_by_schema(self):
        with pytest.raises(ValueError):
            self._create_payload(type=CouponType.PERCENTAGE, value=Decimal("120"))

    async def test_max_uses_cannot_drop_below_used(self, db, make_coupon, admin):
        coupon = await make_coupon(max_uses=10, used_count=4)

        with pytest.raises(ValidationException):
            await CouponService(db).update_coupon(coupon.id, CouponUpdate(max_uses=3), admin.user_id)

    async def test_deactivate(self, db, make_coupon, admin):
        coupon = await make_coupon()

        updated = await CouponService(db).set_active(coupon.id, False, admin.user_id)

        assert updated.active is False
        assert await db.get(Coupon, coupon.id) is not None
