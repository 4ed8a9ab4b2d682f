# coursepay/enrollments/router.py
from typing import List, Optional

from fastapi import APIRouter, Depends, Query, Request, status
from sqlalchemy.ext.asyncio import AsyncSession

from ..auth.dependencies import get_current_principal
from ..auth.policy import authorize
from ..auth.principal import Principal
from ..database import get_async_db
from ..rate_limit import limiter, ORDER_CREATE_LIMIT, READ_LIMIT
from . import schemas
from .models import EnrollmentStatus
from .service import EnrollmentService

router = APIRouter(prefix="/enrollments", tags=["enrollments"])


@router.post("/free", response_model=schemas.EnrollmentResponse, status_code=status.HTTP_201_CREATED)
@limiter.limit(ORDER_CREATE_LIMIT)
async def enroll_free(
    request: Request,
    payload: schemas.FreeEnrollmentRequest,
    principal: Principal = Depends(get_current_principal),
    db: AsyncSession = Depends(get_async_db),
):
    """Enroll in a free course without going through a gateway"""
    authorize(principal, "enrollment", "create")
    return await EnrollmentService(db).enroll_free(
        principal.user_id, payload.course_id, payload.coupon_code
    )


@router.get("", response_model=List[schemas.EnrollmentResponse])
@limiter.limit(READ_LIMIT)
async def list_enrollments(
    request: Request,
    enrollment_status: Optional[EnrollmentStatus] = Query(None, alias="status"),
    principal: Principal = Depends(get_current_principal),
    db: AsyncSession = Depends(get_async_db),
):
    return await EnrollmentService(db).list_enrollments(principal.user_id, enrollment_status)
