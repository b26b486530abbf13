"""Shared fixtures: a file-backed SQLite database per test and an in-process event bus.

NullPool gives every session its own connection, so concurrent accept()
calls really race on the store instead of sharing one connection.
"""
import os

os.environ["DATABASE_URL"] = "sqlite+aiosqlite:///./.opsflow-test.db"
os.environ["DATABASE_SCHEMA"] = ""
os.environ["CHANGE_FEED_BACKEND"] = "memory"
os.environ["WORKFLOW_LISTENER_ENABLED"] = "false"
os.environ["SLA_WORKER_ENABLED"] = "false"

import uuid

import pytest
import pytest_asyncio
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import NullPool

from opsflow.core.database import init_database
from opsflow.core.observability import metrics_registry
from opsflow.models.base_models import MaintenanceRequest, Profile
from opsflow.services.event_log import EventLogStore
from opsflow.shared.event_bus.bus import EventBus
from opsflow.shared.event_bus.change_feed import InMemoryChangeFeed


@pytest.fixture(autouse=True)
def reset_metrics():
    metrics_registry.reset()
    yield
    metrics_registry.reset()


@pytest_asyncio.fixture
async def engine(tmp_path):
    engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'opsflow.db'}", poolclass=NullPool)
    await init_database(bind=engine)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_factory(engine):
    return async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)


@pytest.fixture
def feed():
    return InMemoryChangeFeed()


@pytest_asyncio.fixture
async def bus(feed, session_factory):
    bus = EventBus(
        feed,
        EventLogStore(session_factory),
        queue_size=64,
        dedup_window=256,
        catch_up_overlap=10,
        max_retries=2,
        retry_base_delay=0.01,
    )
    yield bus
    await bus.close()


@pytest.fixture
def seed_request(session_factory):
    async def _seed(**overrides) -> str:
        values = {
            "id": str(uuid.uuid4()),
            "title": "Leaking pipe in boiler room",
            "priority": "medium",
            "status": "pending",
            "tenant_id": "default",
        }
        values.update(overrides)
        async with session_factory() as session:
            session.add(MaintenanceRequest(**values))
            await session.commit()
        return values["id"]

    return _seed


@pytest.fixture
def seed_profiles(session_factory):
    async def _seed(*user_ids: str, role: str = "technician", tenant_id: str = "default", is_active: bool = True):
        async with session_factory() as session:
            session.add_all(
                Profile(id=user_id, full_name=user_id, role=role, is_active=is_active, tenant_id=tenant_id)
                for user_id in user_ids
            )
            await session.commit()
        return list(user_ids)

    return _seed
