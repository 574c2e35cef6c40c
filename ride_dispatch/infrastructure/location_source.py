"""
Where the refresh scheduler gets a driver's current position.

Driver clients post raw device fixes as they get them; the latest fix is
kept in Redis with a short TTL.  A missing or expired fix means the
device stopped reporting (permission revoked, no signal) and surfaces as
``LocationUnavailable``.
"""

from __future__ import annotations

import json
from typing import Protocol

import redis.asyncio as aioredis

from ride_dispatch.domain.entities import Coordinates
from ride_dispatch.domain.exceptions import LocationUnavailable


class LocationSource(Protocol):
    async def record(self, driver_id: int, point: Coordinates) -> None: ...

    async def sample(self, driver_id: int) -> Coordinates: ...


class RedisLocationSource:
    def __init__(self, client: aioredis.Redis, ttl_seconds: int = 90):
        self.redis = client
        self.ttl = ttl_seconds

    @staticmethod
    def _key(driver_id: int) -> str:
        return f"location:{driver_id}"

    async def record(self, driver_id: int, point: Coordinates) -> None:
        await self.redis.set(
            self._key(driver_id),
            json.dumps({"lat": point.lat, "lng": point.lng}),
            ex=self.ttl,
        )

    async def sample(self, driver_id: int) -> Coordinates:
        raw = await self.redis.get(self._key(driver_id))
        if raw is None:
            raise LocationUnavailable(f"No recent location for driver {driver_id}")
        data = json.loads(raw)
        return Coordinates(float(data["lat"]), float(data["lng"]))
