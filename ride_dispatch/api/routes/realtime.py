"""
Realtime streams
================

WS /api/v1/ws/rides/{ride_id}     -- status and queue changes for one ride
WS /api/v1/ws/drivers/{driver_id} -- offers and outcomes for one driver

Each frame is one event serialised as JSON, tagged by ``kind``.  The
Redis subscription lives exactly as long as the client connection: a
quiet topic is dropped as soon as the client disconnects.
"""

import asyncio
import logging

from fastapi import APIRouter, WebSocket, WebSocketDisconnect

from ride_dispatch.domain.events import driver_topic, ride_topic

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/ws", tags=["realtime"])


async def _forward(websocket: WebSocket, *topics: str) -> None:
    broadcaster = websocket.app.state.dispatch.broadcaster
    async for event in broadcaster.subscribe(*topics):
        await websocket.send_text(event.model_dump_json())


async def _wait_for_disconnect(websocket: WebSocket) -> None:
    while True:
        message = await websocket.receive()
        if message["type"] == "websocket.disconnect":
            return


async def _relay(websocket: WebSocket, *topics: str) -> None:
    await websocket.accept()
    tasks = {
        asyncio.create_task(_forward(websocket, *topics)),
        asyncio.create_task(_wait_for_disconnect(websocket)),
    }
    try:
        done, _ = await asyncio.wait(tasks, return_when=asyncio.FIRST_COMPLETED)
    finally:
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)

    for task in done:
        if task.cancelled():
            continue
        try:
            task.result()
        except WebSocketDisconnect:
            pass
    logger.debug("Subscriber left %s", ", ".join(topics))


@router.websocket("/rides/{ride_id}")
async def ride_stream(websocket: WebSocket, ride_id: int):
    await _relay(websocket, ride_topic(ride_id))


@router.websocket("/drivers/{driver_id}")
async def driver_stream(websocket: WebSocket, driver_id: int):
    await _relay(websocket, driver_topic(driver_id))
