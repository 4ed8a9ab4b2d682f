# coursepay/refunds/router.py
"""
Refund requests API
Endpoints:
- POST /refund-requests
- GET /refund-requests
- GET /refund-requests/eligibility/{order_id}
- GET /refund-requests/order/{order_id}
- GET /refund-requests/{request_id}
- POST /refund-requests/{request_id}/process (admin)
"""

from typing import List, Optional

from fastapi import APIRouter, Depends, Query, Request, status
from sqlalchemy.ext.asyncio import AsyncSession

from ..auth.dependencies import get_current_principal, require_admin
from ..auth.principal import Principal
from ..database import get_async_db
from ..payments.factory import ProviderRegistry, get_provider_registry
from ..rate_limit import limiter, REFUND_REQUEST_LIMIT, READ_LIMIT, ADMIN_LIMIT
from . import schemas
from .models import RefundRequestStatus
from .service import RefundService
from .tasks import schedule_refund_retry

router = APIRouter(prefix="/refund-requests", tags=["refunds"])


def get_refund_service(
    db: AsyncSession = Depends(get_async_db),
    providers: ProviderRegistry = Depends(get_provider_registry),
) -> RefundService:
    return RefundService(db, providers, retry_scheduler=schedule_refund_retry)


@router.post("", response_model=schemas.RefundRequestResponse, status_code=status.HTTP_201_CREATED)
@limiter.limit(REFUND_REQUEST_LIMIT)
async def create_refund_request(
    request: Request,
    payload: schemas.RefundRequestCreate,
    principal: Principal = Depends(get_current_principal),
    service: RefundService = Depends(get_refund_service),
):
    return await service.request_refund(principal, payload.order_id, payload.reason)


@router.get("", response_model=List[schemas.RefundRequestResponse])
@limiter.limit(READ_LIMIT)
async def list_refund_requests(
    request: Request,
    request_status: Optional[RefundRequestStatus] = Query(None, alias="status"),
    needs_retry: Optional[bool] = Query(None),
    limit: int = Query(50, ge=1, le=200),
    offset: int = Query(0, ge=0),
    principal: Principal = Depends(get_current_principal),
    service: RefundService = Depends(get_refund_service),
):
    """Students see their own requests; admins see every request"""
    return await service.list_refund_requests(principal, request_status, needs_retry, limit, offset)


@router.get("/eligibility/{order_id}", response_model=schemas.RefundEligibilityResponse)
@limiter.limit(READ_LIMIT)
async def check_refund_eligibility(
    request: Request,
    order_id: int,
    principal: Principal = Depends(get_current_principal),
    service: RefundService = Depends(get_refund_service),
):
    """Preview of a refund for the order; ineligible orders still answer 200 with the reason"""
    return await service.check_eligibility(principal, order_id)


@router.get("/order/{order_id}", response_model=Optional[schemas.RefundRequestResponse])
@limiter.limit(READ_LIMIT)
async def get_latest_refund_request_for_order(
    request: Request,
    order_id: int,
    principal: Principal = Depends(get_current_principal),
    service: RefundService = Depends(get_refund_service),
):
    return await service.get_latest_request_for_order(principal, order_id)


@router.get("/{request_id}", response_model=schemas.RefundRequestResponse)
@limiter.limit(READ_LIMIT)
async def get_refund_request(
    request: Request,
    request_id: int,
    principal: Principal = Depends(get_current_principal),
    service: RefundService = Depends(get_refund_service),
):
    return await service.get_refund_request(principal, request_id)


@router.post("/{request_id}/process", response_model=schemas.RefundRequestResponse)
@limiter.limit(ADMIN_LIMIT)
async def process_refund_request(
    request: Request,
    request_id: int,
    payload: schemas.RefundProcessRequest,
    admin: Principal = Depends(require_admin),
    service: RefundService = Depends(get_refund_service),
):
    """
    Approve or reject a request.

    Approval issues the gateway refund immediately. A 503 means the
    gateway was unreachable and a retry is queued; a 504 means the call
    timed out and approving again resends the same gateway request; a
    502 means the gateway refused and the request is still PENDING.
    """
    return await service.process_refund(
        admin, request_id, payload.decision, payload.amount, payload.notes
    )
