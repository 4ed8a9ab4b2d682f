"""Tests for enrollment provisioning, free enrollment and revocation."""

import pytest
from sqlalchemy import func, select

from coursepay.coupons.models import Coupon
from coursepay.enrollments.models import Enrollment, EnrollmentStatus
from coursepay.enrollments.service import EnrollmentService
from coursepay.error_handlers import AlreadyEnrolled, CourseUnavailable, NotFoundException


class TestProvision:
    async def test_provision_twice_keeps_one_row(self, db, course, student):
        service = EnrollmentService(db)

        first, granted_first = await service.provision(student.user_id, course.id)
        second, granted_second = await service.provision(student.user_id, course.id)
        await db.commit()

        assert granted_first is True
        assert granted_second is False
        assert first.id == second.id
        count = await db.execute(select(func.count(Enrollment.id)))
        assert count.scalar_one() == 1

    async def test_revoke_then_provision_reactivates(self, db, course, student):
        service = EnrollmentService(db)
        await service.provision(student.user_id, course.id)
        await service.revoke(student.user_id, course.id)
        await db.commit()
        assert await service.is_enrolled(student.user_id, course.id) is False

        enrollment, granted = await service.provision(student.user_id, course.id, order_id=None)
        await db.commit()

        assert granted is True
        assert enrollment.status == EnrollmentStatus.ACTIVE
        assert await service.is_enrolled(student.user_id, course.id) is True

    async def test_revoke_missing_enrollment_is_noop(self, db, course, student):
        assert await EnrollmentService(db).revoke(student.user_id, course.id) is None


class TestFreeEnrollment:
    async def test_enroll_in_free_course(self, db, free_course, student):
        enrollment = await EnrollmentService(db).enroll_free(student.user_id, free_course.id)

        assert enrollment.status == EnrollmentStatus.ACTIVE
        assert enrollment.order_id is None

    async def test_paid_course_requires_purchase(self, db, course, student):
        with pytest.raises(CourseUnavailable, match="requires purchase"):
            await EnrollmentService(db).enroll_free(student.user_id, course.id)

    async def test_already_enrolled(self, db, free_course, student):
        service = EnrollmentService(db)
        await service.enroll_free(student.user_id, free_course.id)

        with pytest.raises(AlreadyEnrolled):
            await service.enroll_free(student.user_id, free_course.id)

    async def test_coupon_ignored_by_default(self, db, free_course, make_coupon, student):
        coupon = await make_coupon("FREEBIE", max_uses=1)

        await EnrollmentService(db, free_enrollment_consumes_coupon=False).enroll_free(
            student.user_id, free_course.id, coupon_code="FREEBIE"
        )

        await db.refresh(coupon)
        assert coupon.used_count == 0

    async def test_coupon_consumed_when_configured(self, db, free_course, make_coupon, student):
        coupon = await make_coupon("FREEBIE", max_uses=1)

        await EnrollmentService(db, free_enrollment_consumes_coupon=True).enroll_free(
            student.user_id, free_course.id, coupon_code="FREEBIE"
        )

        refreshed = await db.get(Coupon, coupon.id, populate_existing=True)
        assert refreshed.used_count == 1


class TestProgress:
    async def test_progress_of_missing_enrollment(self, db, course, student):
        with pytest.raises(NotFoundException):
            await EnrollmentService(db).get_progress(student.user_id, course.id)

    async def test_list_filters_by_status(self, db, course, free_course, student):
        service = EnrollmentService(db)
        await service.provision(student.user_id, course.id)
        await service.provision(student.user_id, free_course.id)
        await service.revoke(student.user_id, course.id)
        await db.commit()

        active = await service.list_enrollments(student.user_id, EnrollmentStatus.ACTIVE)

        assert [e.course_id for e in active] == [free_course.id]
