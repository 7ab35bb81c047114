"""
HTTP surface tests: auth, validation, error mapping, idempotent creation and
the bidding round trip, through FastAPI's ASGI app with HTTPX.
"""
import json
from datetime import timedelta
from decimal import Decimal

import pytest
import pytest_asyncio
from httpx import AsyncClient, ASGITransport
from jose import jwt

from dispatch_engine.config import get_settings
from dispatch_engine.database import get_db, utcnow
from dispatch_engine.main import app
from dispatch_engine.middleware.auth import DRIVER_ROLE, REQUESTER_ROLE, create_access_token
from dispatch_engine.models.driver import DriverLocation
from dispatch_engine.models.requester import Requester

settings = get_settings()

RIDE = {
    "pickup_lat": -4.380, "pickup_lng": 15.300,
    "dest_lat": -4.400, "dest_lng": 15.320,
}


def headers_for(subject: str, role: str, **extra) -> dict:
    return {"Authorization": f"Bearer {create_access_token(subject, role)}", **extra}


@pytest.fixture
def rider_headers():
    return headers_for("rider-1", REQUESTER_ROLE)


@pytest_asyncio.fixture
async def client(engine, session_factory):
    async def _db():
        async with session_factory() as session:
            yield session

    app.state.engine = engine
    app.dependency_overrides[get_db] = _db
    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as c:
        yield c
    app.dependency_overrides.clear()


@pytest.mark.asyncio
class TestRequestAPI:
    async def test_health_check(self, client):
        resp = await client.get("/health")
        assert resp.status_code == 200
        assert resp.json()["status"] == "ok"

    async def test_create_request_missing_auth(self, client):
        resp = await client.post("/v1/requests", json=RIDE)
        assert resp.status_code == 401

    async def test_driver_token_cannot_create_requests(self, client):
        resp = await client.post("/v1/requests", json=RIDE, headers=headers_for("d-1", DRIVER_ROLE))
        assert resp.status_code == 403

    async def test_token_without_role_is_forbidden(self, client):
        token = jwt.encode({"sub": "rider-1"}, settings.secret_key, algorithm=settings.jwt_algorithm)
        resp = await client.post("/v1/requests", json=RIDE, headers={"Authorization": f"Bearer {token}"})
        assert resp.status_code == 403

    async def test_create_request_invalid_lat(self, client, rider_headers):
        resp = await client.post("/v1/requests", json={**RIDE, "pickup_lat": 999}, headers=rider_headers)
        assert resp.status_code == 422

    async def test_unsupported_class_maps_to_error_code(self, client, rider_headers):
        resp = await client.post(
            "/v1/requests",
            json={**RIDE, "service_type": "delivery", "vehicle_class": "eco"},
            headers=rider_headers,
        )
        assert resp.status_code == 422
        assert resp.json()["code"] == "unsupported_vehicle_class"

    async def test_create_request_is_priced_and_remembered(self, client, rider_headers, redis):
        resp = await client.post(
            "/v1/requests", json=RIDE, headers={**rider_headers, "Idempotency-Key": "k-1"},
        )

        assert resp.status_code == 201
        body = resp.json()
        assert body["requester_id"] == "rider-1"
        assert body["pickup_zone_id"] == "kinshasa-centre"
        assert Decimal(body["surge_price"]) == Decimal(body["estimated_price"])
        stored_keys = [call.args[0] for call in redis.setex.await_args_list]
        assert "idempotency:rider-1:k-1" in stored_keys

    async def test_repeated_idempotency_key_replays(self, client, rider_headers, redis):
        redis.get.return_value = json.dumps({"status_code": 201, "body": {"id": "earlier"}})

        resp = await client.post(
            "/v1/requests", json=RIDE, headers={**rider_headers, "Idempotency-Key": "k-1"},
        )

        assert resp.status_code == 201
        assert resp.json() == {"id": "earlier"}
        assert resp.headers["X-Idempotency-Replay"] == "true"

    async def test_banned_requester_refused(self, client, session_factory, rider_headers):
        async with session_factory() as db:
            db.add(Requester(id="rider-1", is_banned=True, ban_reason="test"))
            await db.commit()

        resp = await client.post("/v1/requests", json=RIDE, headers=rider_headers)

        assert resp.status_code == 403
        assert resp.json()["code"] == "requester_banned"

    async def test_get_request_owner_only(self, client, rider_headers, make_request):
        request = await make_request()

        own = await client.get(f"/v1/requests/{request.id}", headers=rider_headers)
        other = await client.get(
            f"/v1/requests/{request.id}", headers=headers_for("rider-2", REQUESTER_ROLE),
        )

        assert own.status_code == 200
        assert own.json()["id"] == request.id
        assert other.status_code == 404
        assert other.json()["code"] == "request_not_found"

    async def test_get_nonexistent_request(self, client, rider_headers):
        resp = await client.get("/v1/requests/nonexistent-uuid", headers=rider_headers)
        assert resp.status_code == 404

    async def test_cancel_pending_request(self, client, rider_headers, make_request):
        request = await make_request()

        resp = await client.post(
            f"/v1/requests/{request.id}/cancel", json={"reason": "typo"}, headers=rider_headers,
        )

        assert resp.status_code == 200
        assert resp.json()["request"]["status"] == "cancelled"
        assert resp.json()["cancellation"] is None

    async def test_zone_lookup(self, client):
        resp = await client.get("/v1/zones/locate", params={"lat": -4.310, "lng": 15.300})
        assert resp.status_code == 200
        assert resp.json()["zone_id"] == "gombe"
        assert resp.json()["surge_multiplier"] == 1.2


@pytest.mark.asyncio
class TestDriverAPI:
    async def test_register_report_location_and_go_online(self, client):
        resp = await client.post("/v1/drivers", json={
            "name": "Test Driver", "phone": "+243810000001", "vehicle_class": "standard",
        })
        assert resp.status_code == 201
        assert resp.json()["verified"] is False
        driver_id = resp.json()["id"]
        headers = headers_for(driver_id, DRIVER_ROLE)

        early = await client.patch(f"/v1/drivers/{driver_id}/status", params={"online": True}, headers=headers)
        assert early.status_code == 409

        located = await client.post(
            f"/v1/drivers/{driver_id}/location", json={"lat": -4.381, "lng": 15.300}, headers=headers,
        )
        assert located.status_code == 204

        online = await client.patch(f"/v1/drivers/{driver_id}/status", params={"online": True}, headers=headers)
        assert online.status_code == 200
        assert online.json() == {"id": driver_id, "online": True}

    async def test_duplicate_phone_conflicts(self, client):
        payload = {"name": "Test Driver", "phone": "+243810000002"}
        assert (await client.post("/v1/drivers", json=payload)).status_code == 201
        assert (await client.post("/v1/drivers", json=payload)).status_code == 409

    async def test_registration_ignores_server_controlled_fields(self, client):
        resp = await client.post("/v1/drivers", json={
            "name": "Test Driver", "phone": "+243810000003",
            "verified": True, "rating": 5, "completed_trips": 999,
        })
        assert resp.status_code == 201
        body = resp.json()
        assert body["verified"] is False
        assert body["completed_trips"] == 0
        assert body["rating"] == 5.0

    async def test_future_location_timestamp_is_clamped(self, client, add_driver, load):
        await add_driver("d-1", -4.381, 15.300)
        ahead = (utcnow() + timedelta(hours=6)).isoformat()

        resp = await client.post(
            "/v1/drivers/d-1/location",
            json={"lat": -4.382, "lng": 15.300, "timestamp": ahead},
            headers=headers_for("d-1", DRIVER_ROLE),
        )

        assert resp.status_code == 204
        location = await load(DriverLocation, "d-1")
        assert location.lat == pytest.approx(-4.382)
        assert location.last_seen_at <= utcnow()

    async def test_driver_cannot_act_for_another(self, client):
        resp = await client.post(
            "/v1/drivers/d-2/location",
            json={"lat": -4.381, "lng": 15.300},
            headers=headers_for("d-1", DRIVER_ROLE),
        )
        assert resp.status_code == 403

    async def test_bidding_round_trip(self, client, add_driver, rider_headers):
        await add_driver("d-1", -4.381, 15.300)
        created = await client.post(
            "/v1/requests", json={**RIDE, "bidding": True, "budget_ceiling": "12000"}, headers=rider_headers,
        )
        assert created.status_code == 201
        request_id = created.json()["id"]
        assert created.json()["status"] == "bidding"

        driver_headers = headers_for("d-1", DRIVER_ROLE)
        too_high = await client.post(
            "/v1/drivers/d-1/offers", json={"request_id": request_id, "price": "15000"}, headers=driver_headers,
        )
        assert too_high.status_code == 422
        assert too_high.json()["code"] == "invalid_offer"
        offer = await client.post(
            "/v1/drivers/d-1/offers",
            json={"request_id": request_id, "price": "9000", "eta_minutes": 3},
            headers=driver_headers,
        )
        assert offer.status_code == 201

        board = await client.get(f"/v1/requests/{request_id}/offers", headers=rider_headers)
        assert board.json()["count"] == 1
        assert Decimal(board.json()["best_price"]) == Decimal("9000")

        accepted = await client.post(
            f"/v1/requests/{request_id}/offers/{offer.json()['id']}/accept", headers=rider_headers,
        )
        assert accepted.status_code == 200
        assert accepted.json()["status"] == "accepted"
        assert accepted.json()["assigned_driver_id"] == "d-1"
        assert Decimal(accepted.json()["final_price"]) == Decimal("9000")

        again = await client.post(
            f"/v1/requests/{request_id}/offers/{offer.json()['id']}/accept", headers=rider_headers,
        )
        assert again.status_code == 409
