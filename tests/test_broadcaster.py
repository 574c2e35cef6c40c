"""Tests for event payloads and Redis pub/sub fan-out."""

from unittest.mock import AsyncMock, MagicMock

import pytest
from redis.exceptions import ConnectionError as RedisConnectionError

from ride_dispatch.domain.entities import Coordinates
from ride_dispatch.domain.enums import QueueStatus, RideStatus
from ride_dispatch.domain.events import (
    PresenceChanged,
    QueueEntryChanged,
    RideStatusChanged,
    parse_event,
)
from ride_dispatch.domain.exceptions import LocationUnavailable
from ride_dispatch.infrastructure.broadcaster import NotificationBroadcaster
from ride_dispatch.infrastructure.location_source import RedisLocationSource


class TestEvents:
    def test_round_trip_keeps_type(self):
        event = RideStatusChanged(
            ride_id=4,
            rider_id=9,
            status=RideStatus.ACCEPTED,
            previous_status=RideStatus.PENDING,
            driver_id=2,
            version=2,
        )
        parsed = parse_event(event.model_dump_json())
        assert isinstance(parsed, RideStatusChanged)
        assert parsed.dedupe_key == ("ride", 4, 2)

    def test_topics(self):
        presence = PresenceChanged(driver_id=3, online=True, available=True, version=1)
        offer = QueueEntryChanged(
            kind="queue.offered", ride_id=5, driver_id=3, status=QueueStatus.VIEWING, version=1
        )
        pending = RideStatusChanged(
            ride_id=5, rider_id=1, status=RideStatus.PENDING, version=1
        )
        assert presence.topics() == ["presence", "presence:3"]
        assert offer.topics() == ["driver:3", "ride:5"]
        assert pending.topics() == ["ride:5"]


class TestNotificationBroadcaster:
    @pytest.mark.asyncio
    async def test_publish_to_every_topic(self):
        redis = AsyncMock()
        event = QueueEntryChanged(
            ride_id=5, driver_id=3, status=QueueStatus.EXPIRED, version=3
        )

        await NotificationBroadcaster(redis).publish(event)

        assert [c.args[0] for c in redis.publish.await_args_list] == ["driver:3", "ride:5"]
        assert parse_event(redis.publish.await_args_list[0].args[1]) == event

    @pytest.mark.asyncio
    async def test_redis_failure_is_logged_not_raised(self, caplog):
        redis = AsyncMock()
        redis.publish = AsyncMock(side_effect=RedisConnectionError("down"))
        event = PresenceChanged(driver_id=1, online=False, available=False, version=2)

        await NotificationBroadcaster(redis).publish(event)

        assert redis.publish.await_count == 2
        assert "Failed to publish presence.changed" in caplog.text

    @pytest.mark.asyncio
    async def test_subscribe_yields_parsed_messages(self):
        event = RideStatusChanged(
            ride_id=8, rider_id=1, status=RideStatus.CANCELLED, version=2
        )

        async def listen():
            yield {"type": "subscribe", "data": 1}
            yield {"type": "message", "data": event.model_dump_json()}

        pubsub = MagicMock()
        pubsub.subscribe = AsyncMock()
        pubsub.unsubscribe = AsyncMock()
        pubsub.aclose = AsyncMock()
        pubsub.listen = listen
        redis = MagicMock()
        redis.pubsub.return_value = pubsub

        received = [e async for e in NotificationBroadcaster(redis).subscribe("ride:8")]

        assert received == [event]
        pubsub.subscribe.assert_awaited_once_with("ride:8")
        pubsub.aclose.assert_awaited_once()


class TestRedisLocationSource:
    @pytest.mark.asyncio
    async def test_record_sets_ttl(self):
        redis = AsyncMock()
        await RedisLocationSource(redis, ttl_seconds=90).record(4, Coordinates(-20.1, 28.5))

        redis.set.assert_awaited_once()
        assert redis.set.await_args.args[0] == "location:4"
        assert redis.set.await_args.kwargs == {"ex": 90}

    @pytest.mark.asyncio
    async def test_sample_reads_latest_fix(self):
        redis = AsyncMock()
        redis.get = AsyncMock(return_value='{"lat": -20.1, "lng": 28.5}')

        point = await RedisLocationSource(redis).sample(4)

        assert point == Coordinates(-20.1, 28.5)

    @pytest.mark.asyncio
    async def test_missing_fix_is_unavailable(self):
        redis = AsyncMock()
        redis.get = AsyncMock(return_value=None)

        with pytest.raises(LocationUnavailable):
            await RedisLocationSource(redis).sample(4)
