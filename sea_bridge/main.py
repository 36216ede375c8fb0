from __future__ import annotations

import asyncio
import contextlib
import json
from typing import Any

from fastapi import FastAPI, File, HTTPException, UploadFile
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import FileResponse, StreamingResponse
from loguru import logger
from pydantic import BaseModel, Field

from . import config
from .analysis_client import AnalysisClient
from .errors import AuthError, RecordStoreError, SeaBridgeError, ValidationError
from .identity import StaticIdentity
from .pipeline import SessionController
from .records import FHIR_JSON, RecordWriter

app = FastAPI(title="SEA Bridge API")

app.add_middleware(
    CORSMiddleware,
    allow_origins=["http://localhost:5173", "http://127.0.0.1:5173"],
    allow_origin_regex=r"^http://(localhost|127\.0\.0\.1):517\d$",
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


class LoginRequest(BaseModel):
    username: str = Field(min_length=1)
    password: str = Field(min_length=1)


class _EventBroker:
    def __init__(self) -> None:
        self._lock = asyncio.Lock()
        self._subs: set[asyncio.Queue[dict[str, Any]]] = set()

    async def publish(self, payload: dict[str, Any]) -> None:
        async with self._lock:
            queues = list(self._subs)
        for q in queues:
            q.put_nowait(payload)

    async def subscribe(self) -> asyncio.Queue[dict[str, Any]]:
        q: asyncio.Queue[dict[str, Any]] = asyncio.Queue()
        async with self._lock:
            self._subs.add(q)
        return q

    async def unsubscribe(self, q: asyncio.Queue[dict[str, Any]]) -> None:
        async with self._lock:
            self._subs.discard(q)


def _sse(payload: dict[str, Any]) -> str:
    return f"data: {json.dumps(payload, ensure_ascii=False)}\n\n"


def _http_error(err: SeaBridgeError) -> HTTPException:
    if isinstance(err, ValidationError):
        status = 400
    elif isinstance(err, AuthError):
        status = 401
    elif isinstance(err, RecordStoreError) and err.status_code in (401, 403):
        status = err.status_code
    else:
        status = 502
    return HTTPException(status_code=status, detail=err.to_dict())


def install_controller(controller: SessionController) -> None:
    broker = _EventBroker()
    controller.on_event = broker.publish
    app.state.controller = controller
    app.state.broker = broker
    app.state.pipeline_task = None


@app.on_event("startup")
async def _startup() -> None:
    config.ensure_data_dirs()
    if getattr(app.state, "controller", None) is not None:
        return
    identity = StaticIdentity.from_env()
    install_controller(
        SessionController(
            analysis=AnalysisClient(),
            records=RecordWriter(identity),
        )
    )
    logger.info(f"SEA bridge started (identity context: {'yes' if identity.has_identity() else 'no'})")


@app.on_event("shutdown")
async def _shutdown() -> None:
    task: asyncio.Task | None = getattr(app.state, "pipeline_task", None)
    if task is not None and not task.done():
        task.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await task
    controller: SessionController | None = getattr(app.state, "controller", None)
    if controller is not None:
        await controller.aclose()


@app.get("/api/health")
async def health() -> dict[str, Any]:
    controller: SessionController = app.state.controller
    records = controller.records
    return {
        "ok": True,
        "sea_base_url": config.SEA_BASE_URL,
        "logged_in": controller.is_logged_in,
        "identity": bool(records is not None and records.identity.has_identity()),
    }


@app.post("/api/analysis/login")
async def login(req: LoginRequest) -> dict[str, Any]:
    controller: SessionController = app.state.controller
    try:
        await controller.login(req.username, req.password)
    except SeaBridgeError as e:
        raise _http_error(e) from e
    return {"ok": True, "status": "Login succeeded"}


@app.post("/api/analysis/logout")
async def logout() -> dict[str, Any]:
    controller: SessionController = app.state.controller
    await controller.logout()
    return {"ok": True}


@app.get("/api/patient")
async def patient() -> dict[str, Any]:
    controller: SessionController = app.state.controller
    records = controller.records
    if records is None or not records.identity.has_identity():
        raise HTTPException(status_code=404, detail="SMART on FHIR is not launched")
    try:
        summary = await records.read_patient()
    except RecordStoreError as e:
        raise _http_error(e) from e
    return {
        "id": summary.id,
        "name": summary.name,
        "gender": summary.gender,
        "birth_date": summary.birth_date,
    }


@app.get("/api/session")
async def get_session() -> dict[str, Any]:
    controller: SessionController = app.state.controller
    return controller.snapshot()


@app.post("/api/session/file")
async def select_file(file: UploadFile = File(...)) -> dict[str, Any]:
    controller: SessionController = app.state.controller
    data = await file.read()
    return await controller.select_file(file.filename or "", data)


@app.post("/api/session/start")
async def start_session() -> dict[str, Any]:
    controller: SessionController = app.state.controller
    try:
        app.state.pipeline_task = controller.launch()
    except SeaBridgeError as e:
        raise _http_error(e) from e
    return {"ok": True, "session_id": controller.session.id}


@app.post("/api/session/reset")
async def reset_session() -> dict[str, Any]:
    controller: SessionController = app.state.controller
    return await controller.reset()


@app.get("/api/session/stream")
async def stream():
    controller: SessionController = app.state.controller
    broker: _EventBroker = app.state.broker
    q = await broker.subscribe()

    async def gen():
        try:
            yield _sse({"type": "snapshot", "session": controller.snapshot()})
            while True:
                try:
                    payload = await asyncio.wait_for(q.get(), timeout=15.0)
                    yield _sse(payload)
                except asyncio.TimeoutError:
                    yield ":\n\n"  # heartbeat
        finally:
            await broker.unsubscribe(q)

    return StreamingResponse(
        gen(),
        media_type="text/event-stream",
        headers={"Cache-Control": "no-cache", "Connection": "keep-alive"},
    )


@app.get("/api/session/record")
async def download_record():
    controller: SessionController = app.state.controller
    records = controller.records
    if records is None or records.last_record is None:
        raise HTTPException(status_code=404, detail="No Observation to export")
    path = records.export()
    return FileResponse(path, media_type=FHIR_JSON, filename=config.OBSERVATION_EXPORT_FILENAME)
