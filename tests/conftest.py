"""
Shared test fixtures.

Uses a file-backed SQLite database (via aiosqlite) so tests run without
Docker / PostgreSQL / Redis.  The production models and the
``BEGIN IMMEDIATE`` engine are used as-is; Redis is an ``AsyncMock``
whose ``publish`` calls are inspected to check emitted events.
"""

from typing import AsyncGenerator, Optional
from unittest.mock import AsyncMock

import pytest
import pytest_asyncio
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker

from ride_dispatch.config import Settings
from ride_dispatch.domain.entities import Coordinates
from ride_dispatch.domain.events import parse_event
from ride_dispatch.domain.exceptions import LocationUnavailable
from ride_dispatch.infrastructure import models  # noqa: F401  (registers tables)
from ride_dispatch.infrastructure.broadcaster import NotificationBroadcaster
from ride_dispatch.infrastructure.database import (
    Base,
    create_engine_for,
    create_session_factory,
)
from ride_dispatch.services.dispatch import DispatchService

# Bulawayo city centre
PICKUP = Coordinates(-20.15, 28.58)
DROPOFF = Coordinates(-20.17, 28.61)

KM_PER_DEGREE_LAT = 111.19493


def north_of(point: Coordinates, km: float) -> Coordinates:
    """A point ``km`` due north of ``point`` (exact under Haversine)."""
    return Coordinates(point.lat + km / KM_PER_DEGREE_LAT, point.lng)


class FakeLocationSource:
    """In-memory stand-in for ``RedisLocationSource``."""

    def __init__(self):
        self.points: dict[int, Coordinates] = {}
        self.samples = 0

    async def record(self, driver_id: int, point: Coordinates) -> None:
        self.points[driver_id] = point

    async def sample(self, driver_id: int) -> Coordinates:
        self.samples += 1
        point: Optional[Coordinates] = self.points.get(driver_id)
        if point is None:
            raise LocationUnavailable(f"No recent location for driver {driver_id}")
        return point


def published_events(redis: AsyncMock) -> list:
    """Events seen by the mocked Redis, once each, in publish order."""
    events, seen = [], set()
    for call in redis.publish.await_args_list:
        event = parse_event(call.args[1])
        if event.dedupe_key in seen:
            continue
        seen.add(event.dedupe_key)
        events.append(event)
    return events


def published_topics(redis: AsyncMock) -> list[str]:
    return [call.args[0] for call in redis.publish.await_args_list]


# ── Fixtures ──────────────────────────────────────────────────────────


@pytest.fixture
def test_settings(tmp_path) -> Settings:
    return Settings(
        _env_file=None,
        database_url=f"sqlite+aiosqlite:///{tmp_path / 'dispatch.db'}",
        presence_refresh_interval_seconds=0.05,
        presence_min_write_interval_seconds=0.0,
        presence_min_move_meters=0.0,
    )


@pytest_asyncio.fixture
async def engine(test_settings) -> AsyncGenerator[AsyncEngine, None]:
    """Create tables, yield the engine, then dispose of it."""
    engine = create_engine_for(test_settings.database_url, busy_timeout=15.0)
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_factory(engine) -> async_sessionmaker[AsyncSession]:
    return create_session_factory(engine)


@pytest.fixture
def mock_redis() -> AsyncMock:
    redis = AsyncMock()
    redis.publish = AsyncMock(return_value=1)
    return redis


@pytest.fixture
def location_source() -> FakeLocationSource:
    return FakeLocationSource()


@pytest_asyncio.fixture
async def dispatch(
    session_factory, mock_redis, test_settings, location_source
) -> AsyncGenerator[DispatchService, None]:
    service = DispatchService(
        session_factory,
        NotificationBroadcaster(mock_redis),
        test_settings,
        location_source,
    )
    yield service
    await service.shutdown()
