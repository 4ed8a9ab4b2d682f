# coursepay/enrollments/service.py
from typing import List, Optional, Tuple

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from .models import Enrollment, EnrollmentStatus
from ..courses.models import Course
from ..coupons.service import CouponService, OrderContext
from ..config import settings
from ..database import insert_ignore, utcnow
from ..error_handlers import AlreadyEnrolled, CourseUnavailable, NotFoundException
from ..logging_config import get_logger, log_business_event

logger = get_logger(__name__)


class EnrollmentService:
    """Grants and revokes course access, at most one row per (user, course)"""

    def __init__(
        self,
        db: AsyncSession,
        free_enrollment_consumes_coupon: Optional[bool] = None,
    ):
        self.db = db
        if free_enrollment_consumes_coupon is None:
            free_enrollment_consumes_coupon = settings.FREE_ENROLLMENT_CONSUMES_COUPON
        self.free_enrollment_consumes_coupon = free_enrollment_consumes_coupon

    async def get_enrollment(self, user_id: str, course_id: int) -> Optional[Enrollment]:
        result = await self.db.execute(
            select(Enrollment).where(
                Enrollment.user_id == user_id,
                Enrollment.course_id == course_id,
            )
        )
        return result.scalar_one_or_none()

    async def is_enrolled(self, user_id: str, course_id: int) -> bool:
        enrollment = await self.get_enrollment(user_id, course_id)
        return enrollment is not None and enrollment.status == EnrollmentStatus.ACTIVE

    async def provision(
        self,
        user_id: str,
        course_id: int,
        order_id: Optional[int] = None,
    ) -> Tuple[Enrollment, bool]:
        """
        Grant access exactly once. Runs inside the caller's transaction.

        A REVOKED enrollment (refunded purchase) is re-activated rather
        than duplicated. Returns (enrollment, newly_granted).
        """
        inserted = await insert_ignore(
            self.db,
            Enrollment,
            {
                "user_id": user_id,
                "course_id": course_id,
                "order_id": order_id,
                "status": EnrollmentStatus.ACTIVE,
                "progress_percentage": 0,
            },
            index_elements=["user_id", "course_id"],
        )

        result = await self.db.execute(
            select(Enrollment)
            .where(Enrollment.user_id == user_id, Enrollment.course_id == course_id)
            .with_for_update()
            .execution_options(populate_existing=True)
        )
        enrollment = result.scalar_one()

        granted = inserted
        if not inserted and enrollment.status == EnrollmentStatus.REVOKED:
            enrollment.status = EnrollmentStatus.ACTIVE
            enrollment.revoked_at = None
            enrollment.order_id = order_id
            enrollment.enrolled_at = utcnow()
            # Progress from the refunded purchase does not carry over
            enrollment.progress_percentage = 0
            await self.db.flush()
            granted = True

        if granted:
            log_business_event(
                "enrollment_granted",
                user_id=user_id,
                course_id=course_id,
                order_id=order_id,
            )
        else:
            logger.info(
                "Enrollment already active (idempotent)",
                extra={"user_id": user_id, "extra_data": {"course_id": course_id, "order_id": order_id}}
            )

        return enrollment, granted

    async def enroll_free(
        self,
        user_id: str,
        course_id: int,
        coupon_code: Optional[str] = None,
    ) -> Enrollment:
        """Direct enrollment for free courses, no order involved"""
        course = await self.db.get(Course, course_id)
        if not course or not course.is_published:
            raise CourseUnavailable(course_id)
        if not (course.is_free or int(course.price or 0) == 0):
            raise CourseUnavailable(course_id, "Course requires purchase")

        if await self.is_enrolled(user_id, course_id):
            raise AlreadyEnrolled(course_id)

        if coupon_code and self.free_enrollment_consumes_coupon:
            coupons = CouponService(self.db)
            quote = await coupons.quote(coupon_code, user_id, OrderContext.for_course(course, 0))
            await coupons.commit(quote.coupon_id, user_id, None, 0)

        enrollment, _ = await self.provision(user_id, course_id)
        await self.db.commit()
        await self.db.refresh(enrollment)
        return enrollment

    async def revoke(self, user_id: str, course_id: int) -> Optional[Enrollment]:
        """Flip an enrollment to REVOKED within the caller's transaction"""
        enrollment = await self.get_enrollment(user_id, course_id)
        if not enrollment or enrollment.status == EnrollmentStatus.REVOKED:
            return enrollment

        enrollment.status = EnrollmentStatus.REVOKED
        enrollment.revoked_at = utcnow()
        await self.db.flush()

        log_business_event("enrollment_revoked", user_id=user_id, course_id=course_id)
        return enrollment

    async def list_enrollments(
        self,
        user_id: str,
        status: Optional[EnrollmentStatus] = None,
    ) -> List[Enrollment]:
        query = select(Enrollment).where(Enrollment.user_id == user_id)
        if status is not None:
            query = query.where(Enrollment.status == status)
        result = await self.db.execute(query.order_by(Enrollment.enrolled_at.desc()))
        return list(result.scalars().all())

    async def get_progress(self, user_id: str, course_id: int) -> float:
        enrollment = await self.get_enrollment(user_id, course_id)
        if not enrollment:
            raise NotFoundException("Enrollment", f"{user_id}:{course_id}")
        return float(enrollment.progress_percentage or 0)
