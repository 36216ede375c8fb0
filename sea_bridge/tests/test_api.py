"""Service endpoints and the session event broker."""

from __future__ import annotations

import httpx
import pytest

from sea_bridge.main import _EventBroker, app, install_controller
from sea_bridge.pipeline import SessionController
from sea_bridge.tests.fixtures.mock_sea import make_archive


@pytest.fixture
async def api(controller: SessionController):
    install_controller(controller)
    async with httpx.AsyncClient(transport=httpx.ASGITransport(app=app), base_url="http://api") as client:
        yield client


@pytest.mark.asyncio
async def test_event_broker_publishes_to_all_subscribers():
    broker = _EventBroker()
    q1 = await broker.subscribe()
    q2 = await broker.subscribe()

    await broker.publish({"type": "phase"})

    assert q1.get_nowait()["type"] == "phase"
    assert q2.get_nowait()["type"] == "phase"


@pytest.mark.asyncio
async def test_event_broker_unsubscribe_stops_delivery():
    broker = _EventBroker()
    q = await broker.subscribe()
    await broker.unsubscribe(q)
    await broker.publish({"type": "phase"})
    assert q.empty()


@pytest.mark.asyncio
async def test_end_to_end_over_http(api, controller):
    resp = await api.post("/api/analysis/login", json={"username": "alice", "password": "pw"})
    assert resp.status_code == 200

    resp = await api.post("/api/session/file", files={"file": ("rec.gz", make_archive(), "application/gzip")})
    assert resp.status_code == 200
    assert resp.json()["phase"] == "ready"

    resp = await api.post("/api/session/start")
    assert resp.status_code == 200
    await app.state.pipeline_task

    snap = (await api.get("/api/session")).json()
    assert snap["phase"] == "succeeded"
    assert snap["score"] == 0.73
    assert snap["logged_in"] is True

    resp = await api.get("/api/session/record")
    assert resp.status_code == 200
    assert resp.headers["content-type"].startswith("application/fhir+json")
    assert resp.json()["valueQuantity"]["value"] == 0.73


@pytest.mark.asyncio
async def test_rejected_file_is_reported_in_snapshot(api):
    resp = await api.post("/api/session/file", files={"file": ("rec.csv", b"a,b\n", "text/csv")})
    assert resp.status_code == 200
    body = resp.json()
    assert body["phase"] == "rejected"
    assert body["validation_error"]["user_message"].startswith("Wrong file format")


@pytest.mark.asyncio
async def test_start_without_login_is_401(api):
    await api.post("/api/session/file", files={"file": ("rec.gz", make_archive(), "application/gzip")})
    resp = await api.post("/api/session/start")
    assert resp.status_code == 401
    assert resp.json()["detail"]["reason"] == "missing_token"


@pytest.mark.asyncio
async def test_bad_credentials_is_401(api, sea_service):
    sea_service.login_statuses = [401]
    resp = await api.post("/api/analysis/login", json={"username": "alice", "password": "bad"})
    assert resp.status_code == 401
    assert resp.json()["detail"]["reason"] == "bad_credentials"


@pytest.mark.asyncio
async def test_record_download_404_before_any_record(api):
    resp = await api.get("/api/session/record")
    assert resp.status_code == 404


@pytest.mark.asyncio
async def test_reset_returns_idle_session(api):
    await api.post("/api/session/file", files={"file": ("rec.gz", make_archive(), "application/gzip")})
    body = (await api.post("/api/session/reset")).json()
    assert body["phase"] == "idle"
    assert body["file_name"] is None


@pytest.mark.asyncio
async def test_patient_summary(api):
    resp = await api.get("/api/patient")
    assert resp.status_code == 200
    assert resp.json()["name"] == "Mei Ling Chen"


@pytest.mark.asyncio
@pytest.mark.parametrize("status", [401, 403])
async def test_patient_auth_failure_passes_status_through(api, fhir_server, status):
    fhir_server.patient_status = status
    resp = await api.get("/api/patient")
    assert resp.status_code == status
    assert resp.json()["detail"]["type"] == "RecordStoreError"


@pytest.mark.asyncio
async def test_patient_server_error_is_502(api, fhir_server):
    fhir_server.patient_status = 500
    resp = await api.get("/api/patient")
    assert resp.status_code == 502
