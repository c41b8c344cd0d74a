import pytest
import pytest_asyncio
from httpx import AsyncClient, ASGITransport
from sqlalchemy import select
from sqlalchemy.ext.asyncio import create_async_engine, AsyncSession, async_sessionmaker
from sqlalchemy.pool import NullPool

from app import models  # noqa: F401  register every table
from app.main import app
from app.database import Base, get_db
from app.models.notification import NotificationType, seed_notification_types
from app.models.user import User
from app.services.delivery_channels import PushChannel
from app.services.notification_dispatcher import NotificationDispatcher
from app.services.notification_service import NotificationService
from app.services.push_service import MockPushProvider
from tests.factories import UserFactory, UserWithPushTokenFactory

# Test database URL (SQLite for testing)
TEST_DATABASE_URL = "sqlite+aiosqlite:///./test.db"


@pytest_asyncio.fixture
async def test_engine():
    """Create test database and tables."""
    engine = create_async_engine(
        TEST_DATABASE_URL,
        poolclass=NullPool,
    )

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)
        await conn.run_sync(Base.metadata.create_all)

    yield engine

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)

    await engine.dispose()


@pytest.fixture
def session_factory(test_engine):
    return async_sessionmaker(test_engine, class_=AsyncSession, expire_on_commit=False)


@pytest_asyncio.fixture
async def test_db(session_factory):
    """Session on a freshly created database with the notification types seeded."""
    async with session_factory() as session:
        await seed_notification_types(session)
        yield session


@pytest_asyncio.fixture
async def notification_types(test_db: AsyncSession) -> dict[str, NotificationType]:
    result = await test_db.execute(select(NotificationType))
    return {t.type_code: t for t in result.scalars().all()}


@pytest_asyncio.fixture
async def test_user(test_db: AsyncSession) -> User:
    """User without a push token."""
    user = User(**UserFactory())
    test_db.add(user)
    await test_db.commit()
    await test_db.refresh(user)
    return user


@pytest_asyncio.fixture
async def push_user(test_db: AsyncSession) -> User:
    """User with a registered push token."""
    user = User(**UserWithPushTokenFactory())
    test_db.add(user)
    await test_db.commit()
    await test_db.refresh(user)
    return user


@pytest.fixture
def push_provider() -> MockPushProvider:
    return MockPushProvider()


@pytest.fixture
def push_channel(push_provider) -> PushChannel:
    return PushChannel(push_provider)


@pytest.fixture
def dispatcher(session_factory, push_channel) -> NotificationDispatcher:
    return NotificationDispatcher(session_factory, [push_channel])


@pytest.fixture
def notification_service(session_factory, push_channel) -> NotificationService:
    return NotificationService(session_factory, [push_channel])


@pytest_asyncio.fixture
async def client(test_db: AsyncSession, session_factory, notification_service, dispatcher):
    """Create test client with overridden database and notification components."""

    async def override_get_db():
        async with session_factory() as session:
            yield session

    app.dependency_overrides[get_db] = override_get_db
    app.state.notification_service = notification_service
    app.state.dispatcher = dispatcher
    app.state.realtime = None

    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as ac:
        yield ac

    app.dependency_overrides.clear()
    del app.state.notification_service
    del app.state.dispatcher
    del app.state.realtime
