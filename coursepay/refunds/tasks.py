# coursepay/refunds/tasks.py
"""
Refund retries after transient gateway failures.

retry_refund is queued with exponential backoff when a gateway call
fails; retry_pending_refunds sweeps up anything whose queued retry was
lost (worker restart, broker outage).
"""

import asyncio

from ..auth.principal import Principal, Role
from ..celery_app import celery_app
from ..database import async_session, dispose_engine
from ..error_handlers import GatewayTimeout, GatewayUnavailable, NotFoundException, RefundRejected
from ..logging_config import get_logger, log_business_event
from .models import RefundRequestStatus
from .service import RefundService

logger = get_logger(__name__)

BASE_RETRY_DELAY_SECONDS = 60
MAX_RETRY_DELAY_SECONDS = 3600

SYSTEM_PRINCIPAL = Principal(user_id="system", role=Role.ADMIN)


def backoff_seconds(attempt: int) -> int:
    """60s, 120s, 240s, ... capped at one hour"""
    return min(BASE_RETRY_DELAY_SECONDS * 2 ** max(attempt - 1, 0), MAX_RETRY_DELAY_SECONDS)


def schedule_refund_retry(request_id: int, attempt: int) -> None:
    """Queue retry_refund; matches RefundService's RetryScheduler signature"""
    try:
        retry_refund.apply_async(args=[request_id], countdown=backoff_seconds(attempt))
    except Exception as e:
        # Broker down: the request keeps needs_retry and the sweep picks it up
        logger.error(
            "Could not queue refund retry",
            extra={"extra_data": {"refund_request_id": request_id, "error": str(e)}},
            exc_info=True
        )


async def _retry(request_id: int):
    try:
        async with async_session() as db:
            service = RefundService(db, retry_scheduler=schedule_refund_retry)
            refund_request = await service.retry_refund(request_id)
            return refund_request.status, refund_request.needs_retry, refund_request.retry_count
    finally:
        # Pooled connections are bound to this event loop
        await dispose_engine()


async def _pending_ids():
    try:
        async with async_session() as db:
            requests = await RefundService(db).list_refund_requests(
                SYSTEM_PRINCIPAL, status=RefundRequestStatus.PENDING, needs_retry=True, limit=500
            )
            return [r.id for r in requests]
    finally:
        await dispose_engine()


@celery_app.task(name="coursepay.refunds.tasks.retry_refund")
def retry_refund(request_id: int):
    """
    Re-attempt one refund. RefundService counts attempts and queues the
    next one itself, so a GatewayUnavailable here is logged, not retried.
    """
    logger.info("Retrying refund", extra={"extra_data": {"refund_request_id": request_id}})

    try:
        status, needs_retry, retry_count = asyncio.run(_retry(request_id))
    except GatewayTimeout as e:
        logger.error(
            "Refund retry timed out, left for a manual retry",
            extra={"extra_data": {"refund_request_id": request_id, "error": e.message}}
        )
        return {"status": "manual_retry_required"}
    except GatewayUnavailable as e:
        logger.warning(
            "Refund retry failed, gateway still unavailable",
            extra={"extra_data": {"refund_request_id": request_id, "error": e.message}}
        )
        return {"status": "retry_scheduled"}
    except RefundRejected as e:
        # Terminal; the request is left PENDING for the admin
        logger.error(
            "Refund rejected on retry",
            extra={"extra_data": {"refund_request_id": request_id, "details": e.details}}
        )
        return {"status": "rejected"}
    except NotFoundException:
        logger.error("Refund request vanished before retry", extra={"extra_data": {"refund_request_id": request_id}})
        return {"status": "not_found"}

    if status == RefundRequestStatus.PENDING and not needs_retry:
        logger.critical(
            "Refund permanently failed after retries",
            extra={"extra_data": {"refund_request_id": request_id, "retry_count": retry_count}}
        )
        log_business_event("refund_retry_exhausted", refund_request_id=request_id, retry_count=retry_count)

    return {"status": status.value, "needs_retry": needs_retry}


@celery_app.task(name="coursepay.refunds.tasks.retry_pending_refunds")
def retry_pending_refunds():
    """Queue a retry for every request still flagged needs_retry"""
    request_ids = asyncio.run(_pending_ids())
    for request_id in request_ids:
        retry_refund.delay(request_id)

    if request_ids:
        logger.info("Queued pending refund retries", extra={"extra_data": {"count": len(request_ids)}})
    return {"queued": len(request_ids)}
