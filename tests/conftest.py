"""Pytest configuration for tests."""

import os

# Settings are read at import time; point them away from real services first
os.environ["DATABASE_URL"] = "sqlite:///:memory:"
os.environ["RATE_LIMIT_ENABLED"] = "false"
os.environ["ENVIRONMENT"] = "test"
os.environ["LOG_LEVEL"] = "WARNING"
os.environ.setdefault("CLERK_SECRET_KEY", "sk_test_placeholder")

from datetime import timedelta  # noqa: E402
from decimal import Decimal  # noqa: E402

import httpx  # noqa: E402
import pytest  # noqa: E402
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine  # noqa: E402
from sqlalchemy.pool import NullPool  # noqa: E402

from coursepay.auth.principal import Principal, Role  # noqa: E402
from coursepay.coupons.models import Coupon, CouponType  # noqa: E402
from coursepay.courses.models import Course  # noqa: E402
from coursepay.database import Base, utcnow  # noqa: E402
from coursepay.payments.factory import ProviderRegistry  # noqa: E402
from coursepay.refunds.service import RefundPolicy  # noqa: E402

from tests.helpers import GatewayStub, PROVIDER_CONFIGS  # noqa: E402


# ============================================================================
# DATABASE
# ============================================================================

@pytest.fixture
async def engine(tmp_path):
    """Fresh SQLite file per test; each session gets its own connection"""
    engine = create_async_engine(
        f"sqlite+aiosqlite:///{tmp_path / 'coursepay.db'}",
        poolclass=NullPool,
    )
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_factory(engine):
    return async_sessionmaker(bind=engine, expire_on_commit=False, class_=AsyncSession)


@pytest.fixture
async def db(session_factory):
    async with session_factory() as session:
        yield session


# ============================================================================
# GATEWAYS
# ============================================================================

@pytest.fixture
def gateway():
    """Scriptable stand-in for the VNPay/MoMo HTTP APIs"""
    return GatewayStub()


@pytest.fixture
async def providers(gateway):
    client = httpx.AsyncClient(transport=httpx.MockTransport(gateway.handle))
    yield ProviderRegistry(PROVIDER_CONFIGS, http_client=client)
    await client.aclose()


@pytest.fixture
def refund_policy():
    return RefundPolicy(
        max_progress_percent=30.0,
        full_max_progress_percent=20.0,
        window_days=30,
        partial_fee_rate=0.1,
        max_retries=3,
    )


# ============================================================================
# PRINCIPALS
# ============================================================================

@pytest.fixture
def student():
    return Principal(user_id="user_student_1", role=Role.STUDENT)


@pytest.fixture
def other_student():
    return Principal(user_id="user_student_2", role=Role.STUDENT)


@pytest.fixture
def instructor():
    return Principal(user_id="user_instructor_1", role=Role.INSTRUCTOR)


@pytest.fixture
def admin():
    return Principal(user_id="user_admin_1", role=Role.ADMIN)


# ============================================================================
# CATALOGUE AND COUPONS
# ============================================================================

@pytest.fixture
async def course(db, instructor):
    course = Course(
        title="Python for Data Engineering",
        price=500_000,
        is_free=False,
        instructor_id=instructor.user_id,
        category_id=3,
        is_published=True,
    )
    db.add(course)
    await db.commit()
    await db.refresh(course)
    return course


@pytest.fixture
async def free_course(db, instructor):
    course = Course(
        title="Intro to Git",
        price=0,
        is_free=True,
        instructor_id=instructor.user_id,
        category_id=3,
        is_published=True,
    )
    db.add(course)
    await db.commit()
    await db.refresh(course)
    return course


@pytest.fixture
def make_coupon(db):
    """Factory: await make_coupon(code="SALE10", value=10, ...)"""

    async def _make(
        code: str = "SALE10",
        coupon_type: CouponType = CouponType.PERCENTAGE,
        value=10,
        **overrides,
    ) -> Coupon:
        now = utcnow()
        fields = {
            "code": code,
            "type": coupon_type,
            "value": Decimal(str(value)),
            "min_order_value": 0,
            "start_date": now - timedelta(days=1),
            "end_date": now + timedelta(days=30),
            "used_count": 0,
            "active": True,
        }
        fields.update(overrides)
        coupon = Coupon(**fields)
        db.add(coupon)
        await db.commit()
        await db.refresh(coupon)
        return coupon

    return _make
