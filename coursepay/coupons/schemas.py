# coursepay/coupons/schemas.py
from pydantic import BaseModel, Field, ConfigDict, model_validator
from typing import List, Optional
from datetime import datetime
from decimal import Decimal

from .models import CouponType


class ApplyCouponRequest(BaseModel):
    code: str = Field(..., min_length=1, max_length=50)
    order_total: int = Field(..., ge=0, description="Order total in VND")
    course_ids: Optional[List[int]] = None


class CouponQuoteResponse(BaseModel):
    coupon_id: int
    code: str
    discount: int
    final_total: int


class CouponBase(BaseModel):
    type: CouponType
    value: Decimal = Field(..., gt=0)
    max_discount: Optional[int] = Field(None, ge=0)
    min_order_value: int = Field(0, ge=0)
    applicable_course_ids: Optional[List[int]] = None
    applicable_category_ids: Optional[List[int]] = None
    start_date: datetime
    end_date: datetime
    max_uses: Optional[int] = Field(None, ge=1)
    max_uses_per_user: Optional[int] = Field(None, ge=1)


class CouponCreate(CouponBase):
    code: str = Field(..., min_length=3, max_length=50)
    active: bool = True

    @model_validator(mode="after")
    def check_values(self):
        if self.end_date <= self.start_date:
            raise ValueError("end_date must be after start_date")
        if self.type == CouponType.PERCENTAGE and self.value > 100:
            raise ValueError("Percentage value must be between 0 and 100")
        return self


class CouponUpdate(BaseModel):
    """Partial update; code and type are immutable once created"""
    value: Optional[Decimal] = Field(None, gt=0)
    max_discount: Optional[int] = Field(None, ge=0)
    min_order_value: Optional[int] = Field(None, ge=0)
    applicable_course_ids: Optional[List[int]] = None
    applicable_category_ids: Optional[List[int]] = None
    start_date: Optional[datetime] = None
    end_date: Optional[datetime] = None
    max_uses: Optional[int] = Field(None, ge=1)
    max_uses_per_user: Optional[int] = Field(None, ge=1)


class CouponActiveUpdate(BaseModel):
    active: bool


class CouponResponse(CouponBase):
    model_config = ConfigDict(from_attributes=True)

    id: int
    code: str
    used_count: int
    active: bool
    created_at: datetime


class CouponUsageResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    coupon_id: int
    user_id: str
    order_id: Optional[int]
    discount_applied: int
    used_at: datetime
