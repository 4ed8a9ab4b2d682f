# coursepay/refunds/schemas.py
from pydantic import BaseModel, Field, ConfigDict
from typing import Optional
from datetime import datetime
from decimal import Decimal

from .models import RefundRequestStatus, RefundDecision, RefundType


class RefundRequestCreate(BaseModel):
    order_id: int
    reason: str = Field(..., min_length=10, max_length=2000)


class RefundProcessRequest(BaseModel):
    decision: RefundDecision
    amount: Optional[int] = Field(None, gt=0, description="Refund amount in VND, defaults to the suggested amount")
    notes: Optional[str] = Field(None, max_length=2000)


class RefundRequestResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    order_id: int
    student_id: str
    reason: str
    status: RefundRequestStatus
    progress_percentage_at_request: Decimal
    suggested_amount: int
    approved_amount: Optional[int] = None
    processed_by: Optional[str] = None
    processed_at: Optional[datetime] = None
    admin_notes: Optional[str] = None
    needs_retry: bool
    needs_manual_retry: bool
    gateway_request_id: Optional[str] = None
    retry_count: int
    last_error: Optional[str] = None
    created_at: datetime


class RefundEligibilityResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    order_id: int
    eligible: bool
    refund_type: Optional[RefundType] = None
    suggested_amount: int
    progress_percentage: Decimal
    days_since_payment: Optional[int] = None
    message: str
    open_request_id: Optional[int] = None
