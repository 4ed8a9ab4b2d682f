# coursepay/orders/schemas.py
from pydantic import BaseModel, Field, ConfigDict
from typing import Optional
from datetime import datetime

from .models import PaymentStatus
from ..payments.base import PaymentGateway


class BillingAddress(BaseModel):
    full_name: str = Field(..., max_length=200)
    phone: Optional[str] = Field(None, max_length=20)
    email: Optional[str] = Field(None, max_length=200)
    address: Optional[str] = Field(None, max_length=500)


class CreateOrderRequest(BaseModel):
    """Checkout request for a single course"""
    course_id: int = Field(..., description="Course to purchase")
    payment_gateway: PaymentGateway = Field(..., description="VNPAY or MOMO")
    coupon_code: Optional[str] = Field(None, max_length=50)
    billing_address: Optional[BillingAddress] = None


class OrderResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    order_code: str
    course_id: int
    base_price: int
    discount_amount: int
    final_price: int
    refunded_amount: int
    payment_gateway: PaymentGateway
    payment_status: PaymentStatus
    coupon_id: Optional[int] = None
    failure_reason: Optional[str] = None
    created_at: datetime
    paid_at: Optional[datetime] = None


class CreateOrderResponse(BaseModel):
    order: OrderResponse
    payment_url: str
