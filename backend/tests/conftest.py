"""
Pytest configuration and fixtures for the VPN access portal tests.

Provides:
- Async SQLite in-memory database and session factory
- InMemoryGateway as the stand-in for the access server
- Factories for users, LAN networks and devices
- FastAPI app wired to the above, with an AsyncClient
"""

from datetime import datetime, timezone

import pytest
import pytest_asyncio
from httpx import AsyncClient, ASGITransport
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import StaticPool

from database import Base, get_db
from gateway import InMemoryGateway
from main import app, build_services
from models import Device, LanNetwork, User


@pytest_asyncio.fixture
async def engine():
    """Fresh in-memory database per test."""
    engine = create_async_engine(
        "sqlite+aiosqlite:///:memory:",
        echo=False,
        poolclass=StaticPool,
    )
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield engine
    await engine.dispose()


@pytest_asyncio.fixture
async def session_factory(engine):
    return async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)


@pytest.fixture
def gateway():
    return InMemoryGateway()


@pytest_asyncio.fixture
async def make_user(session_factory):
    """Insert a user; verified and active unless told otherwise."""

    async def _make_user(
        username="alice",
        email=None,
        name=None,
        role="user",
        email_verified=True,
        deleted=False,
    ) -> User:
        user = User(
            username=username,
            email=email or f"{username or 'anon'}@example.com",
            name=name,
            role=role,
            email_verified=email_verified,
            deleted_at=datetime.now(timezone.utc) if deleted else None,
        )
        async with session_factory() as session:
            session.add(user)
            await session.commit()
            await session.refresh(user)
        return user

    return _make_user


@pytest_asyncio.fixture
async def make_network(session_factory):
    async def _make_network(user_id, cidr, description=None, enabled=True) -> LanNetwork:
        network = LanNetwork(
            user_id=user_id,
            network_cidr=cidr,
            description=description,
            enabled=enabled,
        )
        async with session_factory() as session:
            session.add(network)
            await session.commit()
            await session.refresh(network)
        return network

    return _make_network


@pytest_asyncio.fixture
async def make_device(session_factory):
    async def _make_device(user_id, device_id, name=None, device_type="desktop", is_active=True) -> Device:
        device = Device(
            user_id=user_id,
            device_id=device_id,
            name=name or f"device ({device_id})",
            device_type=device_type,
            is_active=is_active,
            last_connected=datetime.now(timezone.utc),
        )
        async with session_factory() as session:
            session.add(device)
            await session.commit()
            await session.refresh(device)
        return device

    return _make_device


@pytest_asyncio.fixture
async def async_client(session_factory, gateway):
    """
    AsyncClient pointing to the FastAPI app, with the database and the
    gateway replaced by the test fixtures.

    The lifespan does not run under ASGITransport, so the services are
    attached to ``app.state`` here and none of the tickers are started.
    """

    async def override_get_db():
        async with session_factory() as session:
            yield session

    app.dependency_overrides[get_db] = override_get_db
    build_services(app, gateway, session_factory)

    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as client:
        yield client

    for name in ("scheduler", "monitor", "routing"):
        await getattr(app.state, name).shutdown(1.0)
    for name in ("gateway", "session_factory", "reconciler", "scheduler", "monitor", "routing"):
        delattr(app.state, name)
    app.dependency_overrides.clear()
