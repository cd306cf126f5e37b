"""Integration tests for the reconciliation API endpoints.

Uses a ReconciliationEngine wired to in-memory doubles (see conftest) and
httpx AsyncClient against a minimal app with the v1 reconciliation router.
API key auth is overridden except in the auth tests.
"""

from __future__ import annotations

import uuid
from unittest.mock import MagicMock

import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient

from src.syncbridge.reconciliation.schemas import PhotoRecord, PmRecord, SourceSystem


def _make_app():
    """Create a minimal FastAPI app with the reconciliation router."""
    from fastapi import FastAPI

    from src.syncbridge.api.v1.reconciliation import router

    app = FastAPI()
    app.include_router(router, prefix="/v1")
    return app


def _mock_require_api_key():
    return "test-key"


def _records() -> dict[str, list]:
    return {
        "photo": [
            PhotoRecord(external_id="p-1", name="Smith Residence", street_address="123 Main St", city="Boise"),
            PhotoRecord(external_id="p-2", name="Lake Cabin"),
        ],
        "pm": [
            PmRecord(external_id="pm-1", name="Smith Residence Remodel", street_address="123 Main Street",
                     city="Boise"),
            PmRecord(external_id="pm-2", name="Barn", street_address="9 Elm Rd"),
            PmRecord(external_id="pm-3", name="Barn", street_address="9 Elm Road"),
        ],
    }


@pytest_asyncio.fixture
async def client_and_store(make_engine, mapping_store):
    """Test client with an engine on app.state and auth bypassed."""
    from src.syncbridge.api.deps import require_api_key

    app = _make_app()
    app.dependency_overrides[require_api_key] = _mock_require_api_key
    app.state.reconciliation_engine = make_engine(**_records())

    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as client:
        yield client, mapping_store


# ── Bulk Match ───────────────────────────────────────────────────────────────


@pytest.mark.asyncio
async def test_bulk_match(client_and_store):
    """POST /v1/reconciliation/bulk-match -> 200 with run summary."""
    client, store = client_and_store

    response = await client.post("/v1/reconciliation/bulk-match", json={})

    assert response.status_code == 200
    data = response.json()
    assert data["success"] is True
    assert data["source_system"] == "photo"
    assert data["matched"] == 1
    assert data["no_match"] == 1
    assert response.headers["X-Run-ID"] == data["run_id"]
    assert len(store.rows) == 1


@pytest.mark.asyncio
async def test_bulk_match_dry_run(client_and_store):
    """dry_run=true -> decisions reported, nothing written."""
    client, store = client_and_store

    response = await client.post(
        "/v1/reconciliation/bulk-match",
        json={"source_system": "photo", "target_systems": ["pm"], "dry_run": True},
    )

    assert response.status_code == 200
    assert response.json()["dry_run"] is True
    assert response.json()["matched"] == 1
    assert store.rows == {}


@pytest.mark.asyncio
async def test_bulk_match_rejects_unknown_system(client_and_store):
    """Unknown system name -> 422."""
    client, _ = client_and_store
    response = await client.post("/v1/reconciliation/bulk-match", json={"source_system": "dropbox"})
    assert response.status_code == 422


@pytest.mark.asyncio
async def test_get_run(client_and_store):
    """GET /v1/reconciliation/runs/{id} -> 200 after a run, 404 for unknown ids."""
    client, _ = client_and_store
    run_id = (await client.post("/v1/reconciliation/bulk-match", json={})).json()["run_id"]

    response = await client.get(f"/v1/reconciliation/runs/{run_id}")
    assert response.status_code == 200
    assert response.json()["status"] == "completed"

    missing = await client.get(f"/v1/reconciliation/runs/{uuid.uuid4()}")
    assert missing.status_code == 404


# ── Mappings ─────────────────────────────────────────────────────────────────


@pytest.mark.asyncio
async def test_manual_link(client_and_store):
    """POST /v1/reconciliation/mappings/manual -> 201 with a manual mapping."""
    client, store = client_and_store

    response = await client.post(
        "/v1/reconciliation/mappings/manual",
        json={"source_system": "photo", "source_id": "p-2", "target_system": "pm", "target_id": "pm-2"},
    )

    assert response.status_code == 201
    data = response.json()
    assert data["match_type"] == "manual"
    assert data["photo_project_id"] == "p-2"
    assert data["pm_project_id"] == "pm-2"
    assert data["id"] in store.rows


@pytest.mark.asyncio
async def test_manual_link_conflict(client_and_store):
    """Linking an already-linked record to a different target -> 409."""
    client, _ = client_and_store
    body = {"source_system": "photo", "source_id": "p-2", "target_system": "pm", "target_id": "pm-2"}
    await client.post("/v1/reconciliation/mappings/manual", json=body)

    response = await client.post(
        "/v1/reconciliation/mappings/manual", json={**body, "target_id": "pm-3"}
    )

    assert response.status_code == 409


@pytest.mark.asyncio
async def test_manual_link_unknown_record(client_and_store):
    """Unknown target record -> 404."""
    client, _ = client_and_store
    response = await client.post(
        "/v1/reconciliation/mappings/manual",
        json={"source_system": "photo", "source_id": "p-2", "target_system": "pm", "target_id": "pm-404"},
    )
    assert response.status_code == 404


@pytest.mark.asyncio
async def test_list_and_get_mappings(client_and_store):
    """GET /v1/reconciliation/mappings lists with filters; GET by id returns one."""
    client, _ = client_and_store
    await client.post("/v1/reconciliation/bulk-match", json={})

    response = await client.get("/v1/reconciliation/mappings")
    assert response.status_code == 200
    page = response.json()
    assert page["total"] == 1
    assert page["items"][0]["conflicts"] == []

    crm_only = await client.get("/v1/reconciliation/mappings", params={"system": "crm"})
    assert crm_only.json()["total"] == 0

    mapping_id = page["items"][0]["id"]
    single = await client.get(f"/v1/reconciliation/mappings/{mapping_id}")
    assert single.status_code == 200
    assert single.json()["pm_project_id"] == "pm-1"


@pytest.mark.asyncio
async def test_get_mapping_not_found(client_and_store):
    """GET /v1/reconciliation/mappings/{bad_id} -> 404."""
    client, _ = client_and_store
    response = await client.get(f"/v1/reconciliation/mappings/{uuid.uuid4()}")
    assert response.status_code == 404


@pytest.mark.asyncio
async def test_unlink(client_and_store):
    """DELETE /v1/reconciliation/mappings/{id} -> photo side cleared, row kept."""
    client, store = client_and_store
    await client.post("/v1/reconciliation/bulk-match", json={})
    [mapping_id] = store.rows

    response = await client.delete(f"/v1/reconciliation/mappings/{mapping_id}")

    assert response.status_code == 200
    data = response.json()
    assert data["success"] is True
    assert data["mapping"]["photo_project_id"] is None
    assert data["mapping"]["pm_project_id"] == "pm-1"
    assert data["mapping"]["last_sync_status"] == "unlinked"
    assert mapping_id in store.rows


@pytest.mark.asyncio
async def test_unlink_not_found(client_and_store):
    client, _ = client_and_store
    response = await client.delete(f"/v1/reconciliation/mappings/{uuid.uuid4()}")
    assert response.status_code == 404


# ── Reports ──────────────────────────────────────────────────────────────────


@pytest.mark.asyncio
async def test_overview(client_and_store):
    """GET /v1/reconciliation/overview -> coverage per system."""
    client, _ = client_and_store
    await client.post("/v1/reconciliation/bulk-match", json={})

    response = await client.get("/v1/reconciliation/overview")

    assert response.status_code == 200
    data = response.json()
    assert data["total_mappings"] == 1
    assert data["mapped"]["photo"] == 1
    assert data["totals"]["pm"] == 3


@pytest.mark.asyncio
async def test_unmatched(client_and_store):
    """GET /v1/reconciliation/unmatched/pm -> PM records without a mapping."""
    client, _ = client_and_store
    await client.post("/v1/reconciliation/bulk-match", json={})

    response = await client.get("/v1/reconciliation/unmatched/pm")

    assert response.status_code == 200
    assert [r["external_id"] for r in response.json()["records"]] == ["pm-2", "pm-3"]


@pytest.mark.asyncio
async def test_duplicates(client_and_store):
    """GET /v1/reconciliation/duplicates/pm -> groups of likely duplicates."""
    client, _ = client_and_store

    response = await client.get("/v1/reconciliation/duplicates/pm")

    assert response.status_code == 200
    [group] = response.json()
    assert group["primary_id"] == "pm-2"
    assert group["scores"] == {"pm-3": 160}


@pytest.mark.asyncio
async def test_preview(client_and_store):
    """GET /v1/reconciliation/preview/photo/p-1?target=pm -> decision, no write."""
    client, store = client_and_store

    response = await client.get("/v1/reconciliation/preview/photo/p-1", params={"target": "pm"})

    assert response.status_code == 200
    data = response.json()
    assert data["status"] == "matched"
    assert data["target_id"] == "pm-1"
    assert data["match_type"] == "fuzzy"
    assert store.rows == {}


@pytest.mark.asyncio
async def test_preview_within_one_system(client_and_store):
    """GET /v1/reconciliation/preview/photo/p-1?target=photo -> 409."""
    client, _ = client_and_store
    response = await client.get("/v1/reconciliation/preview/photo/p-1", params={"target": "photo"})
    assert response.status_code == 409


@pytest.mark.asyncio
async def test_unconfigured_system_returns_503(make_engine):
    """Reports against a system with no access token -> 503."""
    from src.syncbridge.api.deps import require_api_key

    app = _make_app()
    app.dependency_overrides[require_api_key] = _mock_require_api_key
    app.state.reconciliation_engine = make_engine(unconfigured={SourceSystem.CRM})

    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as client:
        response = await client.get("/v1/reconciliation/unmatched/crm")
        assert response.status_code == 503
        assert "crm" in response.json()["detail"]


# ── Service Availability and Auth ────────────────────────────────────────────


@pytest.mark.asyncio
async def test_reconciliation_api_503_when_not_initialized():
    """app.state.reconciliation_engine = None -> 503."""
    from src.syncbridge.api.deps import require_api_key

    app = _make_app()
    app.dependency_overrides[require_api_key] = _mock_require_api_key
    app.state.reconciliation_engine = None

    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as client:
        response = await client.get("/v1/reconciliation/overview")
        assert response.status_code == 503
        assert "not initialized" in response.json()["detail"]


@pytest.mark.asyncio
async def test_api_key_required_when_configured(make_engine, monkeypatch):
    """Configured API keys -> 401 without a valid X-API-Key header."""
    settings = MagicMock()
    settings.get_api_keys.return_value = ["secret"]
    monkeypatch.setattr("src.syncbridge.api.deps.get_settings", lambda: settings)

    app = _make_app()
    app.state.reconciliation_engine = make_engine()

    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as client:
        missing = await client.get("/v1/reconciliation/overview")
        wrong = await client.get("/v1/reconciliation/overview", headers={"X-API-Key": "nope"})
        right = await client.get("/v1/reconciliation/overview", headers={"X-API-Key": "secret"})

    assert missing.status_code == 401
    assert wrong.status_code == 401
    assert right.status_code == 200
