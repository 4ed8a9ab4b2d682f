# coursepay/payments/router.py
"""
Gateway notification transports and the transaction ledger.

The callback and webhook only parse the request into a flat dict and
hand it to ReconciliationEngine; neither makes payment decisions of its
own. The ledger routes are read-only.
"""

from datetime import datetime
from typing import Dict, List, Optional
from urllib.parse import urlencode

from fastapi import APIRouter, Depends, Query, Request, status
from fastapi.responses import JSONResponse, RedirectResponse, Response
from sqlalchemy.ext.asyncio import AsyncSession

from ..auth.dependencies import get_current_principal
from ..auth.principal import Principal
from ..config import settings
from ..database import get_async_db
from ..error_handlers import InvalidSignature, NotFoundException, OrderNotFound
from ..logging_config import get_logger
from ..rate_limit import limiter, PAYMENT_NOTIFICATION_LIMIT, READ_LIMIT
from . import schemas
from .base import NotificationSource, PaymentGateway, ReconciliationOutcome
from .factory import ProviderRegistry, get_provider_registry
from .reconciliation import ReconciliationEngine
from .service import PaymentTransactionService

logger = get_logger(__name__)

router = APIRouter(prefix="/payments", tags=["payments"])


def parse_gateway(gateway: str) -> PaymentGateway:
    try:
        return PaymentGateway(gateway.upper())
    except ValueError as e:
        raise NotFoundException("Payment gateway", gateway) from e


def _flatten(data) -> Dict[str, str]:
    # Signatures are computed over string values; JSON numbers become strings
    return {str(key): "" if value is None else str(value) for key, value in data.items()}


async def extract_params(request: Request) -> Dict[str, str]:
    """Query string, form body or JSON body, as a flat string dict"""
    params = _flatten(request.query_params)
    if request.method != "POST":
        return params

    content_type = request.headers.get("content-type", "")
    if content_type.startswith("application/json"):
        body = await request.json()
        if isinstance(body, dict):
            params.update(_flatten(body))
    elif content_type.startswith(("application/x-www-form-urlencoded", "multipart/form-data")):
        form = await request.form()
        params.update(_flatten(form))
    return params


def _frontend_redirect(path: str, **query) -> RedirectResponse:
    url = f"{settings.FRONTEND_URL.rstrip('/')}{path}"
    if query:
        url = f"{url}?{urlencode(query)}"
    return RedirectResponse(url, status_code=status.HTTP_303_SEE_OTHER)


def get_transaction_service(db: AsyncSession = Depends(get_async_db)) -> PaymentTransactionService:
    return PaymentTransactionService(db)


@router.get("/transactions", response_model=List[schemas.PaymentTransactionResponse])
@limiter.limit(READ_LIMIT)
async def list_transactions(
    request: Request,
    gateway: Optional[PaymentGateway] = Query(None),
    outcome: Optional[ReconciliationOutcome] = Query(None),
    order_id: Optional[int] = Query(None),
    received_from: Optional[datetime] = Query(None),
    received_to: Optional[datetime] = Query(None),
    limit: int = Query(20, ge=1, le=100),
    offset: int = Query(0, ge=0),
    principal: Principal = Depends(get_current_principal),
    service: PaymentTransactionService = Depends(get_transaction_service),
):
    """Caller's transactions, newest first (admins see all)"""
    return await service.list_transactions(
        principal, gateway, outcome, order_id, received_from, received_to, limit, offset
    )


@router.get("/transactions/{transaction_id}", response_model=schemas.PaymentTransactionResponse)
@limiter.limit(READ_LIMIT)
async def get_transaction(
    request: Request,
    transaction_id: int,
    principal: Principal = Depends(get_current_principal),
    service: PaymentTransactionService = Depends(get_transaction_service),
):
    return await service.get_transaction(principal, transaction_id)


@router.api_route("/{gateway}/callback", methods=["GET", "POST"])
@limiter.limit(PAYMENT_NOTIFICATION_LIMIT)
async def payment_callback(
    request: Request,
    gateway: str,
    db: AsyncSession = Depends(get_async_db),
    providers: ProviderRegistry = Depends(get_provider_registry),
):
    """Browser redirect back from the gateway; lands on the order status page"""
    gateway = parse_gateway(gateway)
    params = await extract_params(request)

    try:
        result = await ReconciliationEngine(db, providers).reconcile(
            params, gateway, NotificationSource.CALLBACK
        )
    except InvalidSignature:
        return _frontend_redirect("/payment/error", reason="invalid_signature")
    except OrderNotFound:
        return _frontend_redirect("/payment/error", reason="order_not_found")

    return _frontend_redirect(
        f"/orders/{result.order_code}",
        status=result.status.value,
        outcome=result.outcome.value,
    )


@router.api_route("/{gateway}/webhook", methods=["GET", "POST"])
@limiter.limit(PAYMENT_NOTIFICATION_LIMIT)
async def payment_webhook(
    request: Request,
    gateway: str,
    db: AsyncSession = Depends(get_async_db),
    providers: ProviderRegistry = Depends(get_provider_registry),
):
    """Server-to-server notification (VNPay IPN, MoMo ipnUrl)"""
    gateway = parse_gateway(gateway)
    provider = providers.get(gateway)
    params = await extract_params(request)

    try:
        result = await ReconciliationEngine(db, providers).reconcile(
            params, gateway, NotificationSource.WEBHOOK
        )
    except (InvalidSignature, OrderNotFound) as e:
        ack = provider.acknowledge_error(e)
        if ack is None:
            raise
        return JSONResponse(status_code=ack.status_code, content=ack.body)

    ack = provider.acknowledge(result.outcome)
    if ack.body is None:
        return Response(status_code=ack.status_code)
    return JSONResponse(status_code=ack.status_code, content=ack.body)
