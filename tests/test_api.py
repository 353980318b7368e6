"""HTTP surface: routing errors mapped onto status codes and the error envelope."""

import httpx
import pytest
import pytest_asyncio

from pallet_routing.api.main import app, status_for
from pallet_routing.core.deps import get_db_session
from pallet_routing.core.errors import (
    CellFull,
    LockContention,
    MachineInactive,
    NotFound,
    OverAllocation,
    PartMismatch,
    RoutingError,
)


@pytest_asyncio.fixture
async def client(session, catalog):
    async def _session_override():
        yield session

    app.dependency_overrides[get_db_session] = _session_override
    transport = httpx.ASGITransport(app=app)
    async with httpx.AsyncClient(transport=transport, base_url="http://test") as ac:
        yield ac
    app.dependency_overrides.clear()


async def _create_pallet(client, catalog, quantity=10):
    resp = await client.post("/api/v1/pallets", json={"part_id": catalog.part_id, "quantity": quantity})
    assert resp.status_code == 201
    return resp.json()["id"]


@pytest.mark.parametrize(
    "exc, code",
    [
        (NotFound("Pallet", 1), 404),
        (MachineInactive("down"), 409),
        (LockContention("busy"), 409),
        (CellFull("full"), 422),
        (OverAllocation("too much"), 422),
        (PartMismatch("other part"), 400),
        (RoutingError("generic"), 400),
    ],
)
def test_status_for(exc, code):
    assert status_for(exc) == code


class TestApi:
    async def test_health(self, client):
        resp = await client.get("/api/v1/health")

        assert resp.status_code == 200
        assert resp.json()["message"] == "Healthy"

    async def test_create_pallet(self, client, catalog):
        resp = await client.post(
            "/api/v1/pallets", json={"part_id": catalog.part_id, "quantity": 12.5, "name": "P-1"}
        )

        assert resp.status_code == 201
        body = resp.json()
        assert body["name"] == "P-1"
        assert body["quantity"] == 12.5
        assert body["created"] is True

    async def test_not_found_envelope(self, client, catalog):
        resp = await client.post(
            "/api/v1/shift/start",
            json={"pallet_id": 9999, "machine_id": catalog.machines["Saw-01"]},
            headers={"X-Correlation-ID": "cid-123"},
        )

        assert resp.status_code == 404
        body = resp.json()
        assert body["error"]["type"] == "not_found"
        assert body["correlation_id"] == "cid-123"
        assert body["path"] == "/api/v1/shift/start"
        assert body["method"] == "POST"
        assert resp.headers["X-Correlation-ID"] == "cid-123"

    async def test_conflict(self, client, catalog):
        pallet_id = await _create_pallet(client, catalog)
        await client.post("/api/v1/shift/start", json={"pallet_id": pallet_id, "machine_id": catalog.machines["Saw-01"]})

        resp = await client.post(
            "/api/v1/shift/assign", json={"pallet_id": pallet_id, "machine_id": catalog.machines["Laser-01"]}
        )

        assert resp.status_code == 409
        assert resp.json()["error"]["type"] == "pallet_busy_elsewhere"

    async def test_invariant_violation(self, client, catalog):
        pallet_id = await _create_pallet(client, catalog)

        resp = await client.post(
            "/api/v1/shift/start", json={"pallet_id": pallet_id, "machine_id": catalog.machines["Press-01"]}
        )

        assert resp.status_code == 422
        body = resp.json()
        assert body["error"]["type"] == "machine_not_capable"
        assert body["error"]["details"]["route_stage_id"] == catalog.route_stages["Cutting"]

    async def test_station_mode_violation(self, client, catalog):
        pallet_id = await _create_pallet(client, catalog)

        resp = await client.post(
            "/api/v1/self-service/start", json={"pallet_id": pallet_id, "machine_id": catalog.machines["Saw-01"]}
        )

        assert resp.status_code == 400
        assert resp.json()["error"]["type"] == "station_mode_violation"

    async def test_self_service_has_no_supervisor_endpoints(self, client, catalog):
        pallet_id = await _create_pallet(client, catalog)

        resp = await client.post(
            "/api/v1/self-service/assign", json={"pallet_id": pallet_id, "machine_id": catalog.machines["Laser-01"]}
        )

        assert resp.status_code == 404

    async def test_request_validation(self, client, catalog):
        resp = await client.post("/api/v1/pallets", json={"part_id": catalog.part_id, "quantity": 0})

        assert resp.status_code == 422
        assert resp.json()["error"]["type"] == "request_validation_error"

    async def test_station_flow(self, client, catalog):
        pallet_id = await _create_pallet(client, catalog)
        saw = catalog.machines["Saw-01"]

        resp = await client.post("/api/v1/shift/move-to-buffer", json={"pallet_id": pallet_id, "cell_id": catalog.cells["A-01"]})
        assert resp.status_code == 200
        assert resp.json()["cell_id"] == catalog.cells["A-01"]

        resp = await client.post("/api/v1/shift/assign", json={"pallet_id": pallet_id, "machine_id": saw})
        assert resp.status_code == 200

        resp = await client.get(f"/api/v1/machines/{saw}/assignments")
        assert [a["stage_status"] for a in resp.json()["assignments"]] == ["PENDING"]

        await client.post("/api/v1/shift/start", json={"pallet_id": pallet_id, "machine_id": saw})
        resp = await client.post("/api/v1/shift/complete", json={"pallet_id": pallet_id, "machine_id": saw})
        assert resp.status_code == 200
        assert resp.json()["progress"]["status"] == "COMPLETED"

        resp = await client.post("/api/v1/shift/complete", json={"pallet_id": pallet_id, "machine_id": saw})
        assert resp.status_code == 409
        assert resp.json()["error"]["type"] == "no_active_assignment"

        resp = await client.get(f"/api/v1/parts/{catalog.part_id}/progress")
        assert resp.json()["completion_percent"] == 25.0

        cells = {c["code"]: c for c in (await client.get("/api/v1/buffers/cells")).json()}
        assert cells["A-01"]["current_load"] == 0

    async def test_redistribute_and_defect(self, client, catalog):
        pallet_id = await _create_pallet(client, catalog, quantity=10)

        resp = await client.post(
            "/api/v1/shift/redistribute",
            json={"source_pallet_id": pallet_id, "distributions": [{"quantity": 4}]},
        )
        assert resp.status_code == 200
        assert resp.json()["source_quantity"] == 6

        resp = await client.post("/api/v1/shift/defects", json={"pallet_id": pallet_id, "quantity": 6})
        assert resp.status_code == 200
        assert resp.json()["pallet_deleted"] is True

        resp = await client.post(
            "/api/v1/returns",
            json={
                "part_id": catalog.part_id,
                "pallet_id": pallet_id,
                "quantity": 1,
                "route_stage_id": catalog.route_stages["Cutting"],
            },
        )
        assert resp.status_code == 404

        resp = await client.get(f"/api/v1/parts/{catalog.part_id}/pallets")
        body = resp.json()
        assert body["total"] == 1
        assert body["undistributed_quantity"] == 990
