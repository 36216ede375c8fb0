"""Pytest configuration and shared fixtures.

Key fixtures:
- temp_data_dir: exports go to a temporary directory
- sea_service / fhir_server: mock upstreams (see fixtures/mock_sea.py)
- analysis_client / record_writer: real clients wired to the mocks
- controller: SessionController with a no-op sleep that records intervals
"""

from __future__ import annotations

from pathlib import Path

import pytest

from sea_bridge import config
from sea_bridge.analysis_client import AnalysisClient
from sea_bridge.identity import StaticIdentity
from sea_bridge.pipeline import SessionController
from sea_bridge.records import RecordWriter
from sea_bridge.tests.fixtures.mock_sea import FHIR_BASE, SEA_BASE, MockFhirServer, MockSeaService


@pytest.fixture
def temp_data_dir(tmp_path: Path, monkeypatch):
    monkeypatch.setattr(config, "DATA_DIR", tmp_path)
    monkeypatch.setattr(config, "EXPORTS_DIR", tmp_path / "exports")
    config.ensure_data_dirs()
    return tmp_path


@pytest.fixture
def sea_service() -> MockSeaService:
    return MockSeaService()


@pytest.fixture
def fhir_server() -> MockFhirServer:
    return MockFhirServer()


@pytest.fixture
def identity() -> StaticIdentity:
    return StaticIdentity(server_url=FHIR_BASE, access_token="fhir-token", patient_id="p1")


@pytest.fixture
async def analysis_client(sea_service: MockSeaService):
    client = AnalysisClient(
        login_url=f"{SEA_BASE}/login/",
        eegdata_url=f"{SEA_BASE}/eegdata/",
        seascore_url=f"{SEA_BASE}/seascore/",
        timeout_s=5.0,
        transport=sea_service.transport(),
    )
    yield client
    await client.aclose()


@pytest.fixture
async def record_writer(identity: StaticIdentity, fhir_server: MockFhirServer, temp_data_dir):
    writer = RecordWriter(identity, timeout_s=5.0, transport=fhir_server.transport())
    yield writer
    await writer.aclose()


@pytest.fixture
def sleeps() -> list[float]:
    return []


@pytest.fixture
def controller(analysis_client: AnalysisClient, record_writer: RecordWriter, sleeps: list[float]):
    async def fake_sleep(seconds: float) -> None:
        sleeps.append(seconds)

    return SessionController(
        analysis=analysis_client,
        records=record_writer,
        poll_interval_s=5.0,
        poll_attempts=8,
        sleep=fake_sleep,
    )
