from typing import Any, AsyncGenerator

import pytest
import pytest_asyncio
from httpx import AsyncClient, ASGITransport
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import StaticPool

from referral_engine.api.routes.admin import get_reset_scheduler
from referral_engine.config import settings
from referral_engine.db.database import Base, get_session
from referral_engine.main import app
from referral_engine.services.period_service import PeriodService
from referral_engine.services.reset_scheduler import ResetScheduler


TEST_DATABASE_URL = "sqlite+aiosqlite:///:memory:"
ADMIN_KEY = "test-admin-key"

ALICE = "0x" + "a" * 40
BOB = "0x" + "b" * 40
CAROL = "0x" + "c" * 40
DAVE = "0x" + "d" * 40


@pytest_asyncio.fixture
async def test_engine():
    """Create a test database engine."""
    engine = create_async_engine(
        TEST_DATABASE_URL,
        echo=False,
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield engine
    await engine.dispose()


@pytest_asyncio.fixture
async def session_factory(test_engine) -> async_sessionmaker[AsyncSession]:
    return async_sessionmaker(test_engine, class_=AsyncSession, expire_on_commit=False)


@pytest_asyncio.fixture
async def test_session(session_factory) -> AsyncGenerator[AsyncSession, None]:
    """Create a test database session."""
    async with session_factory() as session:
        yield session


@pytest_asyncio.fixture
async def file_engine(tmp_path):
    """File-backed engine, for tests that need independent connections."""
    engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'referrals.db'}", echo=False)
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield engine
    await engine.dispose()


@pytest_asyncio.fixture
async def file_session_factory(file_engine) -> async_sessionmaker[AsyncSession]:
    return async_sessionmaker(file_engine, class_=AsyncSession, expire_on_commit=False)


@pytest.fixture
def admin_key(monkeypatch) -> str:
    monkeypatch.setattr(settings, "admin_secret_key", ADMIN_KEY)
    return ADMIN_KEY


@pytest.fixture
def admin_headers(admin_key) -> dict[str, str]:
    return {"Authorization": f"Bearer {admin_key}"}


@pytest_asyncio.fixture
async def scheduler(session_factory) -> AsyncGenerator[ResetScheduler, None]:
    """Scheduler bound to the test database that never ticks during a test."""
    scheduler = ResetScheduler(session_factory=session_factory, interval=3600)
    yield scheduler
    await scheduler.stop()


@pytest_asyncio.fixture
async def client(test_session, scheduler) -> AsyncGenerator[AsyncClient, None]:
    """Create a test HTTP client."""

    async def override_get_session():
        yield test_session

    app.dependency_overrides[get_session] = override_get_session
    app.dependency_overrides[get_reset_scheduler] = lambda: scheduler

    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as ac:
        yield ac

    app.dependency_overrides.clear()


MILESTONE_CONFIG: dict[str, Any] = {
    "referrerMilestones": [],
    "refereeMilestones": [{"volume": 0, "reward": 100, "label": "signup"}],
}


@pytest_asyncio.fixture
async def active_milestone_period(test_session):
    """An active milestone_quest period with a 100-point signup milestone."""
    service = PeriodService(test_session)
    period = await service.create_period(
        name="Launch quest",
        strategy="milestone_quest",
        strategy_config=MILESTONE_CONFIG,
    )
    await service.activate_period(period.id)
    await test_session.commit()
    return period
