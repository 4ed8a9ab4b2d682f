# coursepay/orders/router.py
"""
Orders API
Endpoints:
- POST /orders
- GET /orders
- GET /orders/{order_id}
- GET /orders/code/{order_code}
- PATCH /orders/{order_id}/cancel
"""

from typing import List, Optional

from fastapi import APIRouter, Depends, Query, Request, status
from sqlalchemy.ext.asyncio import AsyncSession

from ..auth.dependencies import get_current_principal
from ..auth.principal import Principal
from ..database import get_async_db
from ..payments.factory import ProviderRegistry, get_provider_registry
from ..rate_limit import (
    ConcurrencyLimiter,
    get_checkout_limiter,
    limiter,
    ORDER_CREATE_LIMIT,
    READ_LIMIT,
)
from . import schemas
from .models import PaymentStatus
from .service import OrderService

router = APIRouter(prefix="/orders", tags=["orders"])


def get_order_service(
    db: AsyncSession = Depends(get_async_db),
    providers: ProviderRegistry = Depends(get_provider_registry),
) -> OrderService:
    return OrderService(db, providers)


def client_ip(request: Request) -> str:
    # Behind a proxy the first X-Forwarded-For hop is the browser
    forwarded = request.headers.get("x-forwarded-for")
    if forwarded:
        return forwarded.split(",")[0].strip()
    return request.client.host if request.client else "127.0.0.1"


@router.post("", response_model=schemas.CreateOrderResponse, status_code=status.HTTP_201_CREATED)
@limiter.limit(ORDER_CREATE_LIMIT)
async def create_order(
    request: Request,
    payload: schemas.CreateOrderRequest,
    principal: Principal = Depends(get_current_principal),
    service: OrderService = Depends(get_order_service),
    checkout_limiter: ConcurrencyLimiter = Depends(get_checkout_limiter),
):
    """
    Create a PENDING order and return the gateway payment URL.

    Course access is granted later, when the gateway notifies us.
    """
    async with checkout_limiter.acquire(f"user:{principal.user_id}"):
        order, payment_url = await service.create_order(
            principal,
            course_id=payload.course_id,
            gateway=payload.payment_gateway,
            coupon_code=payload.coupon_code,
            billing_address=payload.billing_address.model_dump() if payload.billing_address else None,
            client_ip=client_ip(request),
        )

    return schemas.CreateOrderResponse(
        order=schemas.OrderResponse.model_validate(order),
        payment_url=payment_url,
    )


@router.get("", response_model=List[schemas.OrderResponse])
@limiter.limit(READ_LIMIT)
async def list_orders(
    request: Request,
    payment_status: Optional[PaymentStatus] = Query(None, alias="status"),
    limit: int = Query(20, ge=1, le=100),
    offset: int = Query(0, ge=0),
    principal: Principal = Depends(get_current_principal),
    service: OrderService = Depends(get_order_service),
):
    """Caller's orders, newest first (admins see all)"""
    return await service.list_orders(principal, payment_status, limit, offset)


@router.get("/code/{order_code}", response_model=schemas.OrderResponse)
@limiter.limit(READ_LIMIT)
async def get_order_by_code(
    request: Request,
    order_code: str,
    principal: Principal = Depends(get_current_principal),
    service: OrderService = Depends(get_order_service),
):
    return await service.get_for_principal(principal, order_code=order_code)


@router.get("/{order_id}", response_model=schemas.OrderResponse)
@limiter.limit(READ_LIMIT)
async def get_order(
    request: Request,
    order_id: int,
    principal: Principal = Depends(get_current_principal),
    service: OrderService = Depends(get_order_service),
):
    return await service.get_for_principal(principal, order_id=order_id)


@router.patch("/{order_id}/cancel", response_model=schemas.OrderResponse)
async def cancel_order(
    order_id: int,
    principal: Principal = Depends(get_current_principal),
    service: OrderService = Depends(get_order_service),
):
    """Cancel a PENDING order"""
    return await service.cancel_order(order_id, principal)
