# coursepay/enrollments/models.py
import enum

from sqlalchemy import (
    Column, String, Integer, DateTime, Numeric, ForeignKey, UniqueConstraint,
    Enum as SQLEnum,
)

from ..database import Base, utcnow


class EnrollmentStatus(str, enum.Enum):
    ACTIVE = "ACTIVE"
    REVOKED = "REVOKED"


class Enrollment(Base):
    __tablename__ = "enrollments"
    __table_args__ = (
        UniqueConstraint("user_id", "course_id", name="uq_enrollments_user_course"),
    )

    id = Column(Integer, primary_key=True, autoincrement=True)
    user_id = Column(String, nullable=False, index=True)
    course_id = Column(Integer, ForeignKey("courses.id"), nullable=False, index=True)
    order_id = Column(Integer, ForeignKey("orders.id"), nullable=True)
    status = Column(SQLEnum(EnrollmentStatus), nullable=False, default=EnrollmentStatus.ACTIVE)
    progress_percentage = Column(Numeric(5, 2), nullable=False, default=0)

    enrolled_at = Column(DateTime(timezone=True), nullable=False, default=utcnow)
    revoked_at = Column(DateTime(timezone=True), nullable=True)

    def __repr__(self):
        return f"<Enrollment {self.user_id}:{self.course_id} - {self.status}>"
