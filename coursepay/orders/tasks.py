# coursepay/orders/tasks.py
"""
Periodic order housekeeping, run by Celery Beat.
"""

import asyncio

from ..celery_app import celery_app
from ..database import async_session, dispose_engine
from ..logging_config import get_logger
from .service import OrderService

logger = get_logger(__name__)


async def _expire(older_than_minutes=None) -> int:
    try:
        async with async_session() as db:
            return await OrderService(db).expire_stale_orders(older_than_minutes)
    finally:
        # Pooled connections are bound to this event loop
        await dispose_engine()


@celery_app.task(name="coursepay.orders.tasks.expire_stale_orders")
def expire_stale_orders(older_than_minutes: int = None):
    """
    Fail PENDING orders whose payment window has passed.
    Runs every 5 minutes via Celery Beat.
    """
    expired = asyncio.run(_expire(older_than_minutes))

    if expired:
        logger.info("Stale orders expired", extra={"extra_data": {"count": expired}})
    else:
        logger.debug("No stale orders found")
    return {"expired": expired}
