"""Tests for the per-driver presence refresh loop."""

import asyncio
import time
from datetime import timedelta

import pytest
from sqlalchemy import update

from ride_dispatch.config import Settings
from ride_dispatch.domain.clock import utcnow
from ride_dispatch.domain.exceptions import NotOnline
from ride_dispatch.infrastructure.models import DriverPresenceModel
from ride_dispatch.workers.presence_refresh import PresenceRefreshScheduler, _Refresher
from ride_dispatch.workers.sweeper import run_sweep_cycle
from tests.conftest import PICKUP, north_of

# A few refresh intervals of the test settings (0.05 s)
SETTLE = 0.3


class TestRefreshLoop:
    @pytest.mark.asyncio
    async def test_refresh_writes_sampled_position(self, dispatch, location_source):
        await dispatch.driver_go_online(1, PICKUP)
        location_source.points[1] = north_of(PICKUP, 0.4)

        await asyncio.sleep(SETTLE)

        presence = await dispatch.get_presence(1)
        assert presence.coordinates == north_of(PICKUP, 0.4)
        assert dispatch.scheduler.is_running(1)

    @pytest.mark.asyncio
    async def test_offline_stops_updates_within_one_interval(
        self, dispatch, location_source
    ):
        location_source.points[1] = PICKUP
        await dispatch.driver_go_online(1, PICKUP)
        await asyncio.sleep(SETTLE)

        offline = await dispatch.driver_go_offline(1)
        samples = location_source.samples
        location_source.points[1] = north_of(PICKUP, 2.0)
        await asyncio.sleep(SETTLE)

        assert not dispatch.scheduler.is_running(1)
        assert location_source.samples == samples
        presence = await dispatch.get_presence(1)
        assert presence.version == offline.version
        assert not presence.online

    @pytest.mark.asyncio
    async def test_missing_sample_keeps_driver_online(self, dispatch, location_source):
        await dispatch.driver_go_online(1, PICKUP)

        await asyncio.sleep(SETTLE)

        presence = await dispatch.get_presence(1)
        assert location_source.samples > 0
        assert presence.online
        assert presence.coordinates == PICKUP
        assert presence.version == 1

    @pytest.mark.asyncio
    async def test_loop_ends_when_driver_went_offline_elsewhere(
        self, dispatch, location_source
    ):
        location_source.points[1] = PICKUP
        await dispatch.driver_go_online(1, PICKUP)
        await dispatch.presence.set_offline(1)

        await asyncio.sleep(SETTLE)

        assert not dispatch.scheduler.is_running(1)

    @pytest.mark.asyncio
    async def test_start_twice_keeps_one_task(self, dispatch):
        await dispatch.driver_go_online(1, PICKUP)
        task = dispatch.scheduler._refreshers[1].task

        dispatch.scheduler.start(1)

        assert dispatch.scheduler._refreshers[1].task is task

    @pytest.mark.asyncio
    async def test_report_location_sample_feeds_source(self, dispatch, location_source):
        await dispatch.report_location_sample(3, north_of(PICKUP, 1.0))
        assert location_source.points[3] == north_of(PICKUP, 1.0)


class TestWriteThrottle:
    @pytest.fixture
    def throttled(self, dispatch, location_source):
        settings = Settings(
            _env_file=None,
            presence_min_write_interval_seconds=20.0,
            presence_min_move_meters=20.0,
        )
        return PresenceRefreshScheduler(dispatch.presence, location_source, settings)

    def _recent(self) -> _Refresher:
        refresher = _Refresher(1)
        refresher.last_point = PICKUP
        refresher.last_write = time.monotonic()
        return refresher

    @pytest.mark.asyncio
    async def test_small_recent_move_is_skipped(self, dispatch, location_source, throttled):
        await dispatch.presence.set_online(1, PICKUP)
        location_source.points[1] = north_of(PICKUP, 0.005)

        assert await throttled.refresh_once(self._recent()) is False
        assert (await dispatch.get_presence(1)).version == 1

    @pytest.mark.asyncio
    async def test_real_move_is_written(self, dispatch, location_source, throttled):
        await dispatch.presence.set_online(1, PICKUP)
        location_source.points[1] = north_of(PICKUP, 0.1)

        assert await throttled.refresh_once(self._recent()) is True
        assert (await dispatch.get_presence(1)).coordinates == north_of(PICKUP, 0.1)

    @pytest.mark.asyncio
    async def test_old_write_is_refreshed_even_without_move(
        self, dispatch, location_source, throttled
    ):
        await dispatch.presence.set_online(1, PICKUP)
        location_source.points[1] = PICKUP
        refresher = self._recent()
        refresher.last_write -= 60

        assert await throttled.refresh_once(refresher) is True
        assert (await dispatch.get_presence(1)).version == 2

    @pytest.mark.asyncio
    async def test_default_settings_write_every_tick(self, dispatch, location_source):
        scheduler = PresenceRefreshScheduler(
            dispatch.presence, location_source, Settings(_env_file=None)
        )
        await dispatch.presence.set_online(1, PICKUP)
        location_source.points[1] = PICKUP
        refresher = self._recent()
        refresher.last_write -= scheduler.settings.presence_refresh_interval_seconds

        assert await scheduler.refresh_once(refresher) is True


class TestHeartbeat:
    @pytest.mark.asyncio
    async def test_failed_samples_survive_the_sweep(
        self, dispatch, mock_redis, session_factory
    ):
        mock_redis.set.return_value = True
        await dispatch.presence.set_online(1, PICKUP)
        async with session_factory() as session:
            async with session.begin():
                await session.execute(
                    update(DriverPresenceModel).values(
                        last_updated=utcnow() - timedelta(seconds=150)
                    )
                )

        for _ in range(3):
            assert await dispatch.scheduler.refresh_once(_Refresher(1)) is False
        report = await run_sweep_cycle(dispatch, mock_redis)

        assert report.stale_drivers == []
        presence = await dispatch.get_presence(1)
        assert presence.online and presence.available
        assert presence.coordinates == PICKUP
        assert presence.version == 1

    @pytest.mark.asyncio
    async def test_heartbeat_does_not_publish(self, dispatch, mock_redis):
        await dispatch.presence.set_online(1, PICKUP)
        mock_redis.publish.reset_mock()

        await dispatch.presence.heartbeat(1)

        mock_redis.publish.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_failed_sample_for_offline_driver_ends_refresh(self, dispatch):
        await dispatch.presence.set_online(1, PICKUP)
        await dispatch.presence.set_offline(1)

        with pytest.raises(NotOnline):
            await dispatch.scheduler.refresh_once(_Refresher(1))
