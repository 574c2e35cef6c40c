"""
Notification fan-out over Redis pub/sub.

Services call ``publish`` only after their transaction has committed, so
a subscriber never hears "ride accepted" while sibling entries still
look open.  Each event goes to every topic it names (see
``ride_dispatch.domain.events``).  One operation's events go out in
commit order; across concurrent operations subscribers order each
entity by ``version``.

A Redis failure after commit cannot undo the committed change, so it is
logged and the operation still succeeds.  Clients re-read state on
reconnect.
"""

from __future__ import annotations

import logging
from typing import AsyncIterator

import redis.asyncio as aioredis
from redis.exceptions import RedisError

from ride_dispatch.domain.events import DispatchEvent, parse_event

logger = logging.getLogger(__name__)


class NotificationBroadcaster:
    def __init__(self, client: aioredis.Redis):
        self.redis = client

    async def publish(self, *events: DispatchEvent) -> None:
        for event in events:
            payload = event.model_dump_json()
            for topic in event.topics():
                try:
                    await self.redis.publish(topic, payload)
                except RedisError:
                    logger.exception(
                        "Failed to publish %s on %s", event.kind, topic
                    )

    async def subscribe(self, *topics: str) -> AsyncIterator[DispatchEvent]:
        """Yield events published on ``topics`` until the consumer stops."""
        pubsub = self.redis.pubsub()
        await pubsub.subscribe(*topics)
        try:
            async for message in pubsub.listen():
                if message.get("type") != "message":
                    continue
                yield parse_event(message["data"])
        finally:
            await pubsub.unsubscribe(*topics)
            await pubsub.aclose()
