# coursepay/enrollments/schemas.py
from pydantic import BaseModel, Field, ConfigDict
from typing import Optional
from datetime import datetime
from decimal import Decimal

from .models import EnrollmentStatus


class FreeEnrollmentRequest(BaseModel):
    course_id: int
    coupon_code: Optional[str] = Field(None, max_length=50)


class EnrollmentResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    course_id: int
    order_id: Optional[int] = None
    status: EnrollmentStatus
    progress_percentage: Decimal
    enrolled_at: datetime
    revoked_at: Optional[datetime] = None
