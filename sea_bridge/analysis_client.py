from __future__ import annotations

import math
from dataclasses import dataclass
from typing import Any, AsyncIterator, Awaitable, Callable, Mapping
from urllib.parse import quote

import httpx
from loguru import logger

from . import config
from .errors import AuthError, SeaBridgeError, ServiceError, ValidationError

OnUploadProgress = Callable[[float], Awaitable[None]] | None

# Statuses the login endpoint uses to reject a JSON body it cannot parse.
_FORMAT_REJECTION_STATUSES = {400, 415}
_AUTH_STATUSES = {401, 403}
_BAD_INPUT_STATUSES = {400, 413, 415, 422}


@dataclass(frozen=True)
class ScoreQuery:
    subject_id: str
    job_id: str


@dataclass(frozen=True)
class ScoreResult:
    code: Any
    score: float | None
    payload: dict[str, Any]

    @property
    def ready(self) -> bool:
        return self.code == 0 and not isinstance(self.code, bool)


def _body_preview(response: httpx.Response) -> str:
    try:
        text = response.text
    except Exception:
        return ""
    if len(text) > 500:
        text = text[:500] + "…"
    return text


def _json_or_none(response: httpx.Response) -> Any:
    try:
        return response.json()
    except Exception:
        return None


def _classify_http_error(response: httpx.Response, *, prefix: str) -> SeaBridgeError:
    status = response.status_code
    msg = f"{prefix}: HTTP {status}"
    preview = _body_preview(response)
    if preview:
        msg = f"{msg}\n\nUpstream response body:\n{preview}"
    if status in _AUTH_STATUSES:
        return AuthError(msg, reason="expired", status_code=status)
    if status in _BAD_INPUT_STATUSES:
        return ValidationError(msg, status_code=status)
    return ServiceError(msg, status_code=status)


def extract_score(payload: Any) -> float | None:
    """``seaScore``, else ``seaIndex``, else ``result.seaIndex``; finite numbers only."""
    if not isinstance(payload, dict):
        return None
    result = payload.get("result")
    candidates = [payload.get("seaScore"), payload.get("seaIndex")]
    if isinstance(result, dict):
        candidates.append(result.get("seaIndex"))
    for value in candidates:
        if value is None:
            continue
        if isinstance(value, bool) or not isinstance(value, (int, float)):
            return None
        try:
            finite = math.isfinite(value)
        except OverflowError:
            return None
        return value if finite else None
    return None


class _ProgressStream(httpx.AsyncByteStream):
    def __init__(
        self,
        stream: httpx.AsyncByteStream,
        *,
        total: int,
        on_progress: Callable[[float], Awaitable[None]],
    ):
        self._stream = stream
        self._total = total
        self._on_progress = on_progress

    async def __aiter__(self) -> AsyncIterator[bytes]:
        sent = 0
        async for chunk in self._stream:
            sent += len(chunk)
            if self._total > 0:
                await self._on_progress(min(1.0, sent / self._total))
            yield chunk

    async def aclose(self) -> None:
        await self._stream.aclose()


class AnalysisClient:
    """Async client for the SEA analysis service.

    The service expects the raw token in ``Authorization`` (no ``Bearer``
    prefix) on upload and score calls.
    """

    def __init__(
        self,
        *,
        login_url: str = config.SEA_LOGIN_URL,
        eegdata_url: str = config.SEA_EEGDATA_URL,
        seascore_url: str = config.SEA_SEASCORE_URL,
        timeout_s: float = config.SEA_HTTP_TIMEOUT_S,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        self._login_url = login_url
        self._eegdata_url = eegdata_url
        self._seascore_url = seascore_url if seascore_url.endswith("/") else f"{seascore_url}/"
        self._timeout_s = timeout_s
        self._transport = transport
        self._client: httpx.AsyncClient | None = None

    async def aclose(self) -> None:
        if self._client is not None:
            await self._client.aclose()
            self._client = None

    def _get_client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(
                timeout=httpx.Timeout(self._timeout_s),
                transport=self._transport,
            )
        return self._client

    async def login(self, username: str, password: str) -> str:
        if not username or not password:
            raise ValidationError(
                "Username and password are required",
                user_message="Please enter username and password",
            )
        client = self._get_client()
        try:
            resp = await client.post(
                self._login_url,
                json={"username": username, "password": password, "renew_token": True},
            )
            if resp.status_code in _FORMAT_REJECTION_STATUSES:
                logger.warning(
                    f"SEA login rejected JSON body (HTTP {resp.status_code}); retrying form-encoded"
                )
                resp = await client.post(
                    self._login_url,
                    data={"username": username, "password": password, "renew_token": "true"},
                )
        except httpx.HTTPError as e:
            raise AuthError(f"SEA login request failed: {e}", reason="service") from e

        if resp.status_code in _AUTH_STATUSES:
            raise AuthError(
                f"SEA login rejected: HTTP {resp.status_code}",
                reason="bad_credentials",
                status_code=resp.status_code,
            )
        if resp.status_code >= 400:
            raise AuthError(
                f"SEA login failed: HTTP {resp.status_code}",
                reason="service",
                status_code=resp.status_code,
            )

        payload = _json_or_none(resp)
        token = ""
        if isinstance(payload, dict):
            token = payload.get("token") or payload.get("access_token") or ""
        if not isinstance(token, str) or not token:
            raise AuthError("SEA login response is missing a token", reason="service")
        return token

    async def upload(
        self,
        *,
        file_name: str,
        data: bytes,
        fields: Mapping[str, str],
        token: str,
        on_progress: OnUploadProgress = None,
    ) -> str:
        client = self._get_client()
        request = client.build_request(
            "POST",
            self._eegdata_url,
            data=dict(fields),
            files={"document": (file_name, data, "application/gzip")},
            headers={"Authorization": token},
        )
        if on_progress is not None:
            total = int(request.headers.get("Content-Length") or 0)
            request.stream = _ProgressStream(request.stream, total=total, on_progress=on_progress)

        try:
            resp = await client.send(request)
        except httpx.HTTPError as e:
            raise ServiceError(f"SEA upload request failed: {e}") from e

        if resp.status_code >= 400:
            raise _classify_http_error(resp, prefix="SEA /eegdata failed")

        payload = _json_or_none(resp)
        data_no = payload.get("data_no") if isinstance(payload, dict) else None
        if data_no is None or data_no == "":
            raise ServiceError(
                "SEA upload succeeded but the response has no data_no",
                status_code=resp.status_code,
            )
        return str(data_no)

    async def poll_score(self, query: ScoreQuery, *, token: str) -> ScoreResult:
        client = self._get_client()
        url = f"{self._seascore_url}{quote(query.subject_id, safe='')}/{query.job_id}"
        try:
            resp = await client.get(url, headers={"Authorization": token})
        except httpx.HTTPError as e:
            raise ServiceError(f"SEA score request failed: {e}") from e

        if resp.status_code >= 400:
            raise _classify_http_error(resp, prefix="SEA /seascore failed")

        payload = _json_or_none(resp)
        if not isinstance(payload, dict):
            raise ServiceError("SEA /seascore returned unexpected shape", status_code=resp.status_code)
        return ScoreResult(code=payload.get("code"), score=extract_score(payload), payload=payload)
