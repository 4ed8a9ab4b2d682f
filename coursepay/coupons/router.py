# coursepay/coupons/router.py
"""
Coupons API
Endpoints:
- POST /coupons/apply
- GET|POST /admin/coupons
- PATCH /admin/coupons/{coupon_id}
- PATCH /admin/coupons/{coupon_id}/active
- GET /admin/coupons/{coupon_id}/usages
"""

from typing import List, Optional

from fastapi import APIRouter, Depends, Query, Request, status
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from ..auth.dependencies import get_current_principal, require_admin
from ..auth.policy import authorize
from ..auth.principal import Principal
from ..courses.models import Course
from ..database import get_async_db
from ..rate_limit import limiter, COUPON_APPLY_LIMIT, ADMIN_LIMIT
from . import schemas
from .service import CouponService, OrderContext

router = APIRouter(tags=["coupons"])


@router.post("/coupons/apply", response_model=schemas.CouponQuoteResponse)
@limiter.limit(COUPON_APPLY_LIMIT)
async def apply_coupon(
    request: Request,
    payload: schemas.ApplyCouponRequest,
    principal: Principal = Depends(get_current_principal),
    db: AsyncSession = Depends(get_async_db),
):
    """Preview a coupon's discount. Nothing is consumed until payment."""
    authorize(principal, "coupon", "apply")

    course_ids = payload.course_ids or []
    category_ids = []
    if course_ids:
        result = await db.execute(select(Course.category_id).where(Course.id.in_(course_ids)))
        category_ids = list(result.scalars().all())

    quote = await CouponService(db).quote(
        payload.code,
        principal.user_id,
        OrderContext(order_total=payload.order_total, course_ids=course_ids, category_ids=category_ids),
    )
    return schemas.CouponQuoteResponse(
        coupon_id=quote.coupon_id,
        code=quote.code,
        discount=quote.discount,
        final_total=payload.order_total - quote.discount,
    )


@router.get("/admin/coupons", response_model=List[schemas.CouponResponse])
@limiter.limit(ADMIN_LIMIT)
async def list_coupons(
    request: Request,
    active: Optional[bool] = Query(None),
    limit: int = Query(50, ge=1, le=200),
    offset: int = Query(0, ge=0),
    admin: Principal = Depends(require_admin),
    db: AsyncSession = Depends(get_async_db),
):
    return await CouponService(db).list_coupons(active, limit, offset)


@router.post("/admin/coupons", response_model=schemas.CouponResponse, status_code=status.HTTP_201_CREATED)
@limiter.limit(ADMIN_LIMIT)
async def create_coupon(
    request: Request,
    payload: schemas.CouponCreate,
    admin: Principal = Depends(require_admin),
    db: AsyncSession = Depends(get_async_db),
):
    authorize(admin, "coupon", "manage")
    return await CouponService(db).create_coupon(payload, admin.user_id)


@router.patch("/admin/coupons/{coupon_id}", response_model=schemas.CouponResponse)
@limiter.limit(ADMIN_LIMIT)
async def update_coupon(
    request: Request,
    coupon_id: int,
    payload: schemas.CouponUpdate,
    admin: Principal = Depends(require_admin),
    db: AsyncSession = Depends(get_async_db),
):
    authorize(admin, "coupon", "manage")
    return await CouponService(db).update_coupon(coupon_id, payload, admin.user_id)


@router.patch("/admin/coupons/{coupon_id}/active", response_model=schemas.CouponResponse)
@limiter.limit(ADMIN_LIMIT)
async def set_coupon_active(
    request: Request,
    coupon_id: int,
    payload: schemas.CouponActiveUpdate,
    admin: Principal = Depends(require_admin),
    db: AsyncSession = Depends(get_async_db),
):
    """Enable or disable a coupon; coupons are never deleted"""
    authorize(admin, "coupon", "manage")
    return await CouponService(db).set_active(coupon_id, payload.active, admin.user_id)


@router.get("/admin/coupons/{coupon_id}/usages", response_model=List[schemas.CouponUsageResponse])
@limiter.limit(ADMIN_LIMIT)
async def coupon_usages(
    request: Request,
    coupon_id: int,
    limit: int = Query(100, ge=1, le=500),
    offset: int = Query(0, ge=0),
    admin: Principal = Depends(require_admin),
    db: AsyncSession = Depends(get_async_db),
):
    return await CouponService(db).usage_history(coupon_id, limit, offset)
