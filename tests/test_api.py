"""
Integration tests for the REST API endpoints.

The app is built around the test ``DispatchService`` (SQLite + mocked
Redis); ASGITransport skips the lifespan, so no sweep worker runs.
"""

from __future__ import annotations

from datetime import timedelta

import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient

from ride_dispatch.api.app import create_app
from ride_dispatch.api.middleware import limiter
from ride_dispatch.domain.clock import utcnow
from tests.conftest import DROPOFF, PICKUP, north_of


# ── Fixture ───────────────────────────────────────────────────────────


@pytest_asyncio.fixture
async def client(dispatch):
    """AsyncClient backed by the test dispatch service."""
    limiter.reset()
    app = create_app(dispatch=dispatch)
    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as ac:
        yield ac


def _ride_body(**overrides) -> dict:
    body = {
        "rider_id": 1,
        "pickup_lat": PICKUP.lat,
        "pickup_lng": PICKUP.lng,
        "dropoff_lat": DROPOFF.lat,
        "dropoff_lng": DROPOFF.lng,
    }
    body.update(overrides)
    return body


async def _online(client: AsyncClient, driver_id: int, km: float) -> None:
    point = north_of(PICKUP, km)
    resp = await client.put(
        f"/api/v1/drivers/{driver_id}/presence",
        json={"online": True, "lat": point.lat, "lng": point.lng},
    )
    assert resp.status_code == 200


async def _create_ride(client: AsyncClient, **overrides) -> dict:
    resp = await client.post("/api/v1/rides", json=_ride_body(**overrides))
    assert resp.status_code == 202
    return resp.json()


# ── Tests ─────────────────────────────────────────────────────────────


@pytest.mark.asyncio
async def test_health(client: AsyncClient):
    resp = await client.get("/api/v1/admin/health")
    assert resp.status_code == 200
    assert resp.json()["status"] == "ok"


@pytest.mark.asyncio
async def test_create_ride_returns_202(client: AsyncClient):
    await _online(client, 1, 2.0)
    await _online(client, 2, 8.0)

    data = await _create_ride(client)

    assert data["status"] == "pending"
    assert data["timing"] == "instant"
    assert data["drivers_notified"] == 1
    assert data["radius_km"] == 5.0
    assert data["id"] is not None


@pytest.mark.asyncio
async def test_scheduled_ride_requires_time(client: AsyncClient):
    resp = await client.post(
        "/api/v1/rides", json=_ride_body(timing="scheduled_single")
    )
    assert resp.status_code == 422


@pytest.mark.asyncio
async def test_scheduled_ride_reaches_far_drivers(client: AsyncClient):
    await _online(client, 1, 60.0)
    departure = (utcnow() + timedelta(days=1)).isoformat()

    data = await _create_ride(
        client, timing="scheduled_recurring", scheduled_at=departure
    )

    assert data["drivers_notified"] == 1
    assert data["radius_km"] is None


@pytest.mark.asyncio
async def test_idempotent_create(client: AsyncClient):
    first = await _create_ride(client, idempotency_key="retry-1")
    second = await _create_ride(client, idempotency_key="retry-1")
    assert first["id"] == second["id"]


@pytest.mark.asyncio
async def test_get_ride(client: AsyncClient):
    created = await _create_ride(client)

    resp = await client.get(f"/api/v1/rides/{created['id']}")

    assert resp.status_code == 200
    assert resp.json()["id"] == created["id"]


@pytest.mark.asyncio
async def test_get_nonexistent_ride_returns_404(client: AsyncClient):
    resp = await client.get("/api/v1/rides/99999")
    assert resp.status_code == 404


@pytest.mark.asyncio
async def test_accept_race_reports_taken_as_200(client: AsyncClient):
    await _online(client, 1, 1.0)
    await _online(client, 2, 2.0)
    ride_id = (await _create_ride(client))["id"]

    queue = await client.get(f"/api/v1/rides/{ride_id}/queue")
    assert [e["driver_id"] for e in queue.json()] == [1, 2]

    first = await client.post(f"/api/v1/rides/{ride_id}/queue/1/accept")
    second = await client.post(f"/api/v1/rides/{ride_id}/queue/2/accept")

    assert first.status_code == 200
    assert first.json()["outcome"] == "accepted"
    assert second.status_code == 200
    assert second.json()["outcome"] == "ride_already_taken"

    ride = (await client.get(f"/api/v1/rides/{ride_id}")).json()
    assert ride["status"] == "accepted"
    assert ride["driver_id"] == 1

    presence = (await client.get("/api/v1/drivers/1/presence")).json()
    assert presence["available"] is False
    assert presence["active_ride_id"] == ride_id


@pytest.mark.asyncio
async def test_interest_decline_and_illegal_move(client: AsyncClient):
    await _online(client, 1, 1.0)
    ride_id = (await _create_ride(client))["id"]

    interested = await client.post(f"/api/v1/rides/{ride_id}/queue/1/interest")
    declined = await client.post(f"/api/v1/rides/{ride_id}/queue/1/decline")
    again = await client.post(f"/api/v1/rides/{ride_id}/queue/1/interest")

    assert interested.json()["status"] == "interested"
    assert declined.json()["status"] == "declined"
    assert again.status_code == 409


@pytest.mark.asyncio
async def test_action_without_entry_returns_404(client: AsyncClient):
    ride_id = (await _create_ride(client))["id"]
    resp = await client.post(f"/api/v1/rides/{ride_id}/queue/7/decline")
    assert resp.status_code == 404


@pytest.mark.asyncio
async def test_driver_offers(client: AsyncClient):
    await _online(client, 1, 1.0)
    ride_id = (await _create_ride(client))["id"]

    resp = await client.get("/api/v1/drivers/1/offers")

    assert resp.status_code == 200
    assert [o["ride_id"] for o in resp.json()] == [ride_id]


@pytest.mark.asyncio
async def test_cancel_ride(client: AsyncClient):
    ride_id = (await _create_ride(client))["id"]

    resp = await client.patch(f"/api/v1/rides/{ride_id}/cancel")

    assert resp.status_code == 200
    assert resp.json()["status"] == "cancelled"
    assert resp.json()["cancellation_reason"] == "rider_cancelled"


@pytest.mark.asyncio
async def test_cancel_with_stale_expectation_returns_409(client: AsyncClient):
    await _online(client, 1, 1.0)
    ride_id = (await _create_ride(client))["id"]
    await client.post(f"/api/v1/rides/{ride_id}/queue/1/accept")

    resp = await client.patch(
        f"/api/v1/rides/{ride_id}/cancel", json={"expected_status": "pending"}
    )

    assert resp.status_code == 409


@pytest.mark.asyncio
async def test_trip_start_and_complete(client: AsyncClient):
    await _online(client, 1, 1.0)
    ride_id = (await _create_ride(client))["id"]
    await client.post(f"/api/v1/rides/{ride_id}/queue/1/accept")

    early = await client.post(
        f"/api/v1/rides/{ride_id}/complete", json={"driver_id": 1}
    )
    started = await client.post(f"/api/v1/rides/{ride_id}/start", json={"driver_id": 1})
    done = await client.post(f"/api/v1/rides/{ride_id}/complete", json={"driver_id": 1})

    assert early.status_code == 409
    assert started.json()["status"] == "in_progress"
    assert done.json()["status"] == "completed"


@pytest.mark.asyncio
async def test_presence_round_trip(client: AsyncClient, location_source):
    await _online(client, 5, 0.0)

    sample = await client.post(
        "/api/v1/drivers/5/location", json={"lat": -20.16, "lng": 28.59}
    )
    offline = await client.put("/api/v1/drivers/5/presence", json={"online": False})

    assert sample.status_code == 204
    assert location_source.points[5].lat == -20.16
    assert offline.status_code == 200
    assert offline.json()["online"] is False
    assert offline.json()["lat"] is not None


@pytest.mark.asyncio
async def test_online_without_position_returns_422(client: AsyncClient):
    resp = await client.put("/api/v1/drivers/1/presence", json={"online": True})
    assert resp.status_code == 422


@pytest.mark.asyncio
async def test_offline_unknown_driver_returns_404(client: AsyncClient):
    resp = await client.put("/api/v1/drivers/404/presence", json={"online": False})
    assert resp.status_code == 404


@pytest.mark.asyncio
async def test_pending_rides(client: AsyncClient):
    first = await _create_ride(client, rider_id=1)
    second = await _create_ride(client, rider_id=2)
    await client.patch(f"/api/v1/rides/{first['id']}/cancel")

    resp = await client.get("/api/v1/admin/pending-rides")

    assert resp.status_code == 200
    assert resp.json() == {"count": 1, "ride_ids": [second["id"]]}
