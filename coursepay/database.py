# coursepay/database.py
from datetime import datetime, timezone
from typing import AsyncGenerator, Iterable, Optional

from sqlalchemy.orm import declarative_base

from sqlalchemy.ext.asyncio import (
    create_async_engine,
    AsyncSession,
    async_sessionmaker,
)

from .config import settings
from .logging_config import get_logger

logger = get_logger(__name__)


# ============================================================================
# ASYNC ENGINE CONFIGURATION
# ============================================================================

def _make_async_url(sync_url: str) -> str:
    """Convert sync PostgreSQL URL to async (asyncpg driver)"""
    if sync_url.startswith("postgresql://"):
        return sync_url.replace("postgresql://", "postgresql+asyncpg://", 1)
    if sync_url.startswith("sqlite://"):
        return sync_url.replace("sqlite://", "sqlite+aiosqlite://", 1)
    return sync_url


ASYNC_DATABASE_URL = _make_async_url(settings.DATABASE_URL)


def _engine_options(url: str) -> dict:
    if not url.startswith("postgresql"):
        return {"echo": False}
    return {
        "pool_pre_ping": True,
        "pool_size": 10,
        "max_overflow": 5,
        "pool_timeout": 10,
        "pool_recycle": 3600,
        "echo": False,
        "connect_args": {
            "command_timeout": 60,
            "server_settings": {
                "jit": "off",
                # Row locks and unique constraints carry the payment guarantees
                "default_transaction_isolation": "read committed",
            },
        },
    }


async_engine = create_async_engine(ASYNC_DATABASE_URL, **_engine_options(ASYNC_DATABASE_URL))

async_session = async_sessionmaker(
    bind=async_engine,
    expire_on_commit=False,
    class_=AsyncSession,
)

logger.info(
    "Async database engine configured",
    extra={"extra_data": {
        "driver": ASYNC_DATABASE_URL.split("://", 1)[0],
        "environment": settings.ENVIRONMENT,
    }}
)

# ============================================================================
# BASE MODEL
# ============================================================================

Base = declarative_base()


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def as_utc(value: Optional[datetime]) -> Optional[datetime]:
    """SQLite hands back naive datetimes; treat them as UTC."""
    if value is None or value.tzinfo is not None:
        return value
    return value.replace(tzinfo=timezone.utc)


# ============================================================================
# DEPENDENCIES
# ============================================================================

async def get_async_db() -> AsyncGenerator[AsyncSession, None]:
    """
    Async DB session dependency for async FastAPI endpoints.

    Automatically handles:
    - Transaction rollback on exceptions
    - Session cleanup

    Usage:
        @router.get("/endpoint")
        async def endpoint(db: AsyncSession = Depends(get_async_db)):
            ...
    """
    async with async_session() as session:
        try:
            yield session
        except Exception as e:
            logger.error(
                "Error in async database session",
                extra={"extra_data": {"error": str(e)}},
                exc_info=True
            )
            await session.rollback()
            raise
        finally:
            await session.close()


# ============================================================================
# UTILITY FUNCTIONS
# ============================================================================

async def insert_ignore(
    db: AsyncSession,
    model,
    values: dict,
    index_elements: Iterable[str],
) -> bool:
    """
    INSERT ... ON CONFLICT DO NOTHING against a unique key.

    Returns True when a row was written, False when the key already existed.
    The conflict check happens inside the database, so two concurrent
    callers can never both see True.
    """
    dialect = db.get_bind().dialect.name
    if dialect == "postgresql":
        from sqlalchemy.dialects.postgresql import insert
    elif dialect == "sqlite":
        from sqlalchemy.dialects.sqlite import insert
    else:
        raise RuntimeError(f"insert_ignore is not supported on {dialect}")

    stmt = (
        insert(model)
        .values(**values)
        .on_conflict_do_nothing(index_elements=list(index_elements))
    )
    result = await db.execute(stmt)
    return result.rowcount == 1


async def dispose_engine():
    """Close pooled connections during application shutdown"""
    await async_engine.dispose()
    logger.info("All database connections closed successfully")


# Import all models to ensure they're registered with Base
from .courses import models as course_models  # noqa: E402,F401
from .orders import models as order_models  # noqa: E402,F401
from .coupons import models as coupon_models  # noqa: E402,F401
from .payments import models as payment_models  # noqa: E402,F401
from .enrollments import models as enrollment_models  # noqa: E402,F401
from .refunds import models as refund_models  # noqa: E402,F401
