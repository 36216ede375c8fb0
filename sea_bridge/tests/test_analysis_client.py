import json

import httpx
import pytest

from sea_bridge.analysis_client import AnalysisClient, ScoreQuery, extract_score
from sea_bridge.errors import AuthError, ServiceError, ValidationError
from sea_bridge.tests.fixtures.mock_sea import SEA_BASE, make_archive


@pytest.mark.asyncio
async def test_login_sends_json_and_returns_token(analysis_client, sea_service):
    token = await analysis_client.login("alice", "pw")
    assert token == "sea-token"
    (req,) = sea_service.calls("/login/")
    assert req.headers["content-type"] == "application/json"
    assert json.loads(req.content) == {"username": "alice", "password": "pw", "renew_token": True}


@pytest.mark.asyncio
@pytest.mark.parametrize("status", [400, 415])
async def test_login_retries_once_with_form_body(analysis_client, sea_service, status):
    sea_service.login_statuses = [status, 200]
    assert await analysis_client.login("alice", "pw") == "sea-token"
    first, second = sea_service.calls("/login/")
    assert first.headers["content-type"] == "application/json"
    assert second.headers["content-type"] == "application/x-www-form-urlencoded"
    assert second.content == b"username=alice&password=pw&renew_token=true"


@pytest.mark.asyncio
async def test_login_form_fallback_is_not_repeated(analysis_client, sea_service):
    sea_service.login_statuses = [415, 415]
    with pytest.raises(AuthError) as exc:
        await analysis_client.login("alice", "pw")
    assert exc.value.reason == "service"
    assert len(sea_service.calls("/login/")) == 2


@pytest.mark.asyncio
async def test_login_classifies_bad_credentials_after_fallback(analysis_client, sea_service):
    sea_service.login_statuses = [400, 401]
    with pytest.raises(AuthError) as exc:
        await analysis_client.login("alice", "wrong")
    assert exc.value.reason == "bad_credentials"
    assert exc.value.status_code == 401


@pytest.mark.asyncio
async def test_login_does_not_fall_back_for_auth_or_server_errors(analysis_client, sea_service):
    sea_service.login_statuses = [403]
    with pytest.raises(AuthError) as exc:
        await analysis_client.login("alice", "wrong")
    assert exc.value.reason == "bad_credentials"

    sea_service.requests.clear()
    sea_service.login_statuses = [500]
    with pytest.raises(AuthError) as exc:
        await analysis_client.login("alice", "pw")
    assert exc.value.reason == "service"
    assert len(sea_service.calls("/login/")) == 1


@pytest.mark.asyncio
async def test_login_accepts_access_token_key():
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(200, json={"access_token": "abc"})

    client = AnalysisClient(login_url=f"{SEA_BASE}/login/", transport=httpx.MockTransport(handler))
    try:
        assert await client.login("u", "p") == "abc"
    finally:
        await client.aclose()


@pytest.mark.asyncio
async def test_login_requires_credentials_without_network(analysis_client, sea_service):
    with pytest.raises(ValidationError):
        await analysis_client.login("", "pw")
    assert sea_service.requests == []


@pytest.mark.asyncio
async def test_upload_sends_multipart_with_raw_token_and_reports_progress(analysis_client, sea_service):
    fractions: list[float] = []

    async def on_progress(fraction: float) -> None:
        fractions.append(fraction)

    job_id = await analysis_client.upload(
        file_name="rec.gz",
        data=make_archive(),
        fields={"medicalNumber": "S001", "age": "34"},
        token="sea-token",
        on_progress=on_progress,
    )
    assert job_id == "42"
    (req,) = sea_service.calls("/eegdata/")
    assert req.headers["authorization"] == "sea-token"
    assert req.headers["content-type"].startswith("multipart/form-data")
    body = req.content
    assert b'name="medicalNumber"\r\n\r\nS001' in body
    assert b'name="document"; filename="rec.gz"' in body
    assert fractions and fractions[-1] == 1.0
    assert fractions == sorted(fractions)


@pytest.mark.asyncio
@pytest.mark.parametrize(
    "status, error_type",
    [(400, ValidationError), (422, ValidationError), (401, AuthError), (403, AuthError), (500, ServiceError)],
)
async def test_upload_classifies_failures_by_status(analysis_client, sea_service, status, error_type):
    sea_service.upload_status = status
    with pytest.raises(error_type) as exc:
        await analysis_client.upload(file_name="rec.gz", data=b"x", fields={"medicalNumber": "S1"}, token="t")
    assert exc.value.status_code == status


@pytest.mark.asyncio
async def test_upload_without_data_no_is_a_service_error(analysis_client, sea_service):
    sea_service.upload_payload = {"message": "ok"}
    with pytest.raises(ServiceError):
        await analysis_client.upload(file_name="rec.gz", data=b"x", fields={"medicalNumber": "S1"}, token="t")


@pytest.mark.asyncio
async def test_upload_transport_error_is_a_service_error():
    def handler(request: httpx.Request) -> httpx.Response:
        raise httpx.ConnectError("connection refused", request=request)

    client = AnalysisClient(eegdata_url=f"{SEA_BASE}/eegdata/", transport=httpx.MockTransport(handler))
    try:
        with pytest.raises(ServiceError):
            await client.upload(file_name="rec.gz", data=b"x", fields={"medicalNumber": "S1"}, token="t")
    finally:
        await client.aclose()


@pytest.mark.asyncio
async def test_poll_score_quotes_subject_and_reads_readiness(analysis_client, sea_service):
    sea_service.poll_codes = [1, 0]
    pending = await analysis_client.poll_score(ScoreQuery("S 001/x", "42"), token="t")
    assert not pending.ready
    assert pending.score is None
    ready = await analysis_client.poll_score(ScoreQuery("S 001/x", "42"), token="t")
    assert ready.ready
    assert ready.score == 0.73
    first = sea_service.calls("/seascore/")[0]
    assert first.url.raw_path.decode().endswith("/seascore/S%20001%2Fx/42")
    assert first.headers["authorization"] == "t"


@pytest.mark.asyncio
async def test_poll_score_expired_token_is_auth_error(analysis_client, sea_service):
    sea_service.poll_status = 401
    with pytest.raises(AuthError):
        await analysis_client.poll_score(ScoreQuery("S1", "42"), token="t")


def test_extract_score_precedence():
    assert extract_score({"seaScore": 1.5, "seaIndex": 2}) == 1.5
    assert extract_score({"seaIndex": 2}) == 2
    assert extract_score({"result": {"seaIndex": 0.4}}) == 0.4
    assert extract_score({"seaScore": None, "result": {"seaIndex": 3}}) == 3
    assert extract_score({"seaScore": "1.5"}) is None
    assert extract_score({"seaScore": float("nan")}) is None
    assert extract_score({"seaScore": True}) is None
    assert extract_score({"seaScore": 10**400}) is None
    assert extract_score({}) is None
