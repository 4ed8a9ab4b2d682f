# coursepay/main.py

from contextlib import asynccontextmanager

import httpx
import redis.asyncio as aioredis
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from sqlalchemy import text

from . import __version__
from .config import settings
from .database import async_engine, dispose_engine
from .error_handlers import register_exception_handlers
from .logging_config import setup_logging, get_logger
from .middleware import register_middleware
from .payments.factory import ProviderRegistry
from .rate_limit import ConcurrencyLimiter, limiter

from .orders.router import router as orders_router
from .coupons.router import router as coupons_router
from .payments.router import router as payments_router
from .enrollments.router import router as enrollments_router
from .refunds.router import router as refunds_router

logger = get_logger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    # ========================================================================
    # STARTUP
    # ========================================================================
    logger.info("=" * 80)
    logger.info("Starting CoursePay API")
    logger.info("=" * 80)

    logger.info(
        "Application configuration",
        extra={
            "extra_data": {
                "environment": settings.ENVIRONMENT,
                "log_level": settings.LOG_LEVEL,
                "database": settings.DATABASE_URL.split("@")[-1],
                "redis": settings.REDIS_URL.split("@")[-1],
            }
        }
    )

    try:
        async with async_engine.connect() as conn:
            await conn.execute(text("SELECT 1"))
        logger.info("Database connection successful")
    except Exception as e:
        logger.error(f"Database connection failed: {e}", exc_info=True)
        raise

    # Redis backs rate limits and Celery; the API still serves without it
    redis_client = aioredis.from_url(settings.REDIS_URL)
    try:
        await redis_client.ping()
        logger.info("Redis connection successful")
    except Exception as e:
        logger.warning(f"Redis connection failed: {e}")
    finally:
        await redis_client.aclose()

    http_client = httpx.AsyncClient(timeout=settings.GATEWAY_TIMEOUT_SECONDS)
    app.state.providers = ProviderRegistry(http_client=http_client)
    app.state.checkout_limiter = ConcurrencyLimiter(settings.MAX_CONCURRENT_CHECKOUTS_PER_KEY)

    logger.info("CoursePay API is ready to accept requests")

    yield

    # ========================================================================
    # SHUTDOWN
    # ========================================================================
    logger.info("Shutting down CoursePay API")
    await http_client.aclose()
    await dispose_engine()


# Setup logging BEFORE creating the app
setup_logging()

app = FastAPI(
    title="CoursePay API",
    description="Course purchases, coupons, VNPay/MoMo reconciliation and refunds",
    version=__version__,
    lifespan=lifespan,
)
app.state.limiter = limiter

# ============================================================================
# MIDDLEWARE (last registered = outermost)
# ============================================================================
register_middleware(app)

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.CORS_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

register_exception_handlers(app)

# ============================================================================
# ROUTERS
# ============================================================================
app.include_router(orders_router, prefix='/api')
app.include_router(coupons_router, prefix='/api')
app.include_router(payments_router, prefix='/api')
app.include_router(enrollments_router, prefix='/api')
app.include_router(refunds_router, prefix='/api')

logger.info("All routers registered")


@app.get("/health")
async def health_check():
    """Health check endpoint for load balancers"""
    return {
        "status": "healthy",
        "environment": settings.ENVIRONMENT,
        "version": __version__,
    }
