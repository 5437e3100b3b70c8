"""
Global pytest fixtures for the Dompet billing test suite.

Provides:
- Async database session backed by a temporary SQLite file
- Real FastAPI app behind httpx ASGITransport with get_db overridden
- Household / plan / subscription / voucher factories
"""
import os
from typing import AsyncGenerator
from uuid import uuid4

import pytest
import pytest_asyncio

# Set test environment BEFORE any app imports
os.environ["TESTING"] = "true"
os.environ["ENVIRONMENT"] = "development"
os.environ["DATABASE_URL"] = "sqlite+aiosqlite:///:memory:"
os.environ["JWT_SECRET"] = "test-jwt-secret-for-testing-at-least-32-bytes"
os.environ["XENDIT_SECRET_KEY"] = "xnd_development_test_secret"
os.environ["XENDIT_WEBHOOK_TOKEN"] = "test-callback-token"
os.environ["XENDIT_BASE_URL"] = "https://api.xendit.co"


# ============================================================================
# Async Database Fixtures
# ============================================================================

@pytest_asyncio.fixture
async def async_engine(tmp_path):
    """Create async SQLite engine for testing using a temporary file."""
    from sqlalchemy.ext.asyncio import create_async_engine

    db_url = f"sqlite+aiosqlite:///{tmp_path / f'test_{uuid4().hex}.sqlite'}"
    engine = create_async_engine(db_url, echo=False)
    yield engine
    await engine.dispose()


@pytest_asyncio.fixture
async def db_session(async_engine) -> AsyncGenerator:
    """Create database tables and provide async session."""
    from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker
    from app.shared.db.base import Base
    import app.models  # noqa: F401

    async with async_engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    session_maker = async_sessionmaker(
        async_engine,
        class_=AsyncSession,
        expire_on_commit=False,
    )

    async with session_maker() as session:
        try:
            yield session
        finally:
            await session.rollback()
            await session.close()


@pytest_asyncio.fixture
async def db(db_session):
    """Alias for db_session to match integration tests."""
    return db_session


@pytest_asyncio.fixture(autouse=True)
async def _reset_http_client():
    """The shared httpx client must not leak across event loops."""
    yield
    from app.shared.core.http import close_http_client

    await close_http_client()


# ============================================================================
# FastAPI Test Client Fixtures
# ============================================================================

@pytest.fixture
def app():
    """Use the real Dompet app for integration tests."""
    from app.main import app as dompet_app

    return dompet_app


@pytest_asyncio.fixture
async def async_client(app, db) -> AsyncGenerator:
    """Async test client for FastAPI. Overrides get_db to share the test session."""
    from httpx import ASGITransport, AsyncClient
    from app.shared.db.session import get_db

    old_override = app.dependency_overrides.get(get_db)
    app.dependency_overrides[get_db] = lambda: db

    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as client:
        yield client

    if old_override:
        app.dependency_overrides[get_db] = old_override
    else:
        app.dependency_overrides.pop(get_db, None)


@pytest_asyncio.fixture
async def ac(async_client):
    """Alias for async_client."""
    return async_client


# ============================================================================
# Test Data Factories
# ============================================================================

@pytest.fixture
def plan_factory(db):
    from app.models.plan import Plan, PlanType

    async def _create(**overrides):
        slug = overrides.pop("slug", f"plan-{uuid4().hex[:8]}")
        plan = Plan(
            name=overrides.pop("name", "Family"),
            slug=slug,
            type=overrides.pop("type", PlanType.MONTHLY.value),
            price=overrides.pop("price", 100000),
            features=overrides.pop(
                "features", {"max_users": 5, "invite_members": True}
            ),
            **overrides,
        )
        db.add(plan)
        await db.commit()
        return plan

    return _create


@pytest.fixture
def household_factory(db):
    """Creates a household with its owner (billing-capable) user."""
    from app.models.household import Household, User, UserRole

    async def _create(role: str = UserRole.OWNER.value, is_billing_owner: bool = False):
        household = Household(name=f"Household {uuid4().hex[:6]}")
        db.add(household)
        await db.flush()
        user = User(
            household_id=household.id,
            name="Budi",
            email=f"user-{uuid4().hex[:8]}@example.com",
            role=role,
            is_billing_owner=is_billing_owner,
        )
        db.add(user)
        await db.commit()
        return household, user

    return _create


@pytest.fixture
def subscription_factory(db):
    from app.models.subscription import BillingCycle, Subscription, SubscriptionStatus

    async def _create(household, plan, billing_cycle: str = BillingCycle.MONTHLY.value):
        subscription = Subscription(
            household_id=household.id,
            plan_id=plan.id,
            status=SubscriptionStatus.PENDING.value,
            billing_cycle=billing_cycle,
        )
        db.add(subscription)
        await db.commit()
        return subscription

    return _create


@pytest.fixture
def voucher_factory(db):
    from app.models.voucher import Voucher, VoucherType

    async def _create(code: str = "TEST10", **overrides):
        voucher = Voucher(
            code=code,
            name=overrides.pop("name", f"Voucher {code}"),
            type=overrides.pop("type", VoucherType.PERCENTAGE.value),
            value=overrides.pop("value", 10),
            **overrides,
        )
        db.add(voucher)
        await db.commit()
        return voucher

    return _create


@pytest_asyncio.fixture
async def billing_setup(plan_factory, household_factory, subscription_factory):
    """One household with an owner and a pending monthly subscription at Rp 100.000."""
    plan = await plan_factory()
    household, user = await household_factory()
    subscription = await subscription_factory(household, plan)
    return {"plan": plan, "household": household, "user": user, "subscription": subscription}
