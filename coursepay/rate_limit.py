"""
Rate limiting for the course payment API.

Two layers:
- SlowAPI with a Redis backend for per-endpoint request rates
- ConcurrencyLimiter, an in-process cap on simultaneous checkouts per key
"""

import asyncio
from contextlib import asynccontextmanager
from typing import Dict

from slowapi import Limiter
from slowapi.util import get_remote_address
from fastapi import Request

from .config import settings
from .error_handlers import ConcurrencyLimitExceeded
from .logging_config import get_logger

logger = get_logger(__name__)


def get_user_id_or_ip(request: Request) -> str:
    """
    Rate limit key function - uses user_id if authenticated, otherwise IP address.

    Gateway callbacks and webhooks are unauthenticated and fall back to IP.
    """
    if getattr(request.state, "user_id", None):
        return f"user:{request.state.user_id}"

    return f"ip:{get_remote_address(request)}"


limiter = Limiter(
    key_func=get_user_id_or_ip,
    storage_uri=settings.REDIS_URL,
    default_limits=[],  # Per-endpoint limits only
    enabled=settings.RATE_LIMIT_ENABLED,
    headers_enabled=False,
)


# ============================================================================
# RATE LIMIT DEFINITIONS
# ============================================================================

ORDER_CREATE_LIMIT = "10/minute"
COUPON_APPLY_LIMIT = "30/minute"  # Stops brute-forcing coupon codes
READ_LIMIT = "100/minute"
# Gateways retry webhooks in bursts; a low limit would drop real payments
PAYMENT_NOTIFICATION_LIMIT = "300/minute"
REFUND_REQUEST_LIMIT = "5/minute"
ADMIN_LIMIT = "120/minute"

if settings.ENVIRONMENT == "development":
    ORDER_CREATE_LIMIT = "100/minute"
    COUPON_APPLY_LIMIT = "100/minute"
    logger.info("Rate limiting: DEVELOPMENT mode (relaxed limits)")


# ============================================================================
# CONCURRENCY LIMITER
# ============================================================================

class ConcurrencyLimiter:
    """
    Caps in-flight operations per key with one asyncio.Semaphore per key.

    Requests over the cap are refused immediately rather than queued.
    Lives on app.state so its lifetime matches the application.
    """

    def __init__(self, max_concurrent: int):
        self.max_concurrent = max_concurrent
        self._semaphores: Dict[str, asyncio.Semaphore] = {}
        self._in_flight: Dict[str, int] = {}

    def in_flight(self, key: str) -> int:
        return self._in_flight.get(key, 0)

    @asynccontextmanager
    async def acquire(self, key: str):
        semaphore = self._semaphores.setdefault(key, asyncio.Semaphore(self.max_concurrent))
        if semaphore.locked():
            logger.warning(
                "Concurrency limit exceeded",
                extra={"extra_data": {"key": key, "limit": self.max_concurrent}}
            )
            raise ConcurrencyLimitExceeded(key, self.max_concurrent)

        await semaphore.acquire()
        self._in_flight[key] = self._in_flight.get(key, 0) + 1
        try:
            yield
        finally:
            semaphore.release()
            self._in_flight[key] -= 1
            if self._in_flight[key] == 0:
                # Idle keys are dropped so the map does not grow unbounded
                del self._in_flight[key]
                self._semaphores.pop(key, None)


def get_checkout_limiter(request: Request) -> ConcurrencyLimiter:
    return request.app.state.checkout_limiter
