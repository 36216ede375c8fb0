from __future__ import annotations

import asyncio
from typing import Any, Awaitable, Callable

from loguru import logger

from .. import config
from .. import metadata as md
from ..analysis_client import AnalysisClient, ScoreQuery, ScoreResult
from ..archive import decode_async
from ..errors import (
    AuthError,
    DecodeError,
    MissingFieldError,
    PollTimeoutError,
    RecordStoreError,
    SeaBridgeError,
    ServiceError,
    ValidationError,
)
from ..records import RecordWriter
from .progress import COMPUTE_WINDOW_S, MAX_ELAPSED_S, aggregate_progress
from .types import IN_PROGRESS_PHASES, OnEvent, Phase, SelectedFile, UploadSession, WriteOutcome

Sleep = Callable[[float], Awaitable[Any]]


def _number_text(value: float) -> str:
    return str(int(value)) if value.is_integer() else repr(value)


def build_upload_fields(metadata: md.SessionMetadata | None) -> dict[str, str]:
    """Multipart form fields for ``/eegdata``; absent or unparsable values are omitted."""
    meta = metadata or {}
    subject = md.subject_id(meta)
    if not subject:
        raise MissingFieldError(md.SUBJECT_ID)

    fields: dict[str, str] = {"medicalNumber": subject}
    age = md.parse_int(meta.get(md.AGE))
    if age is not None:
        fields["age"] = str(age)
    if meta.get(md.GENDER):
        fields["gender"] = meta[md.GENDER]
    phq9 = md.parse_int(meta.get(md.PHQ9))
    if phq9 is not None:
        fields["phq9_score"] = str(phq9)
    if meta.get(md.DRUG):
        fields["drug"] = meta[md.DRUG]
    fields["techRemarks"] = ""
    fields["comprehensiveResult"] = ""
    signal_quality = md.parse_float(meta.get(md.SIGNAL_QUALITY))
    if signal_quality is not None:
        fields["signal_quality_score"] = _number_text(signal_quality)
    fields["is_fine_signal_quality"] = "false"
    return fields


class SessionController:
    """Owns the single writable ``UploadSession`` and moves it through the pipeline.

    Every await is followed by a check that the session it started with is still
    current; results belonging to a replaced session are dropped.
    """

    def __init__(
        self,
        *,
        analysis: AnalysisClient,
        records: RecordWriter | None = None,
        poll_interval_s: float = config.POLL_INTERVAL_S,
        poll_attempts: int = config.POLL_ATTEMPTS,
        on_event: OnEvent = None,
        sleep: Sleep = asyncio.sleep,
    ):
        self._analysis = analysis
        self._records = records
        self._poll_interval_s = poll_interval_s
        self._poll_attempts = poll_attempts
        self._sleep = sleep
        self.on_event = on_event
        self._token = ""
        self._session = UploadSession()

    @property
    def session(self) -> UploadSession:
        return self._session

    @property
    def is_logged_in(self) -> bool:
        return bool(self._token)

    @property
    def records(self) -> RecordWriter | None:
        return self._records

    async def aclose(self) -> None:
        await self._analysis.aclose()
        if self._records is not None:
            await self._records.aclose()

    def snapshot(self) -> dict[str, Any]:
        out = self._session.snapshot()
        out["logged_in"] = self.is_logged_in
        out["signal_quality_display"] = md.format_signal_quality(self._session.metadata)
        return out

    def _is_current(self, session_id: str) -> bool:
        return self._session.id == session_id

    async def _emit(self, session: UploadSession, event_type: str, **extra: Any) -> None:
        if self.on_event is None or not self._is_current(session.id):
            return
        payload = {"session_id": session.id, "type": event_type, "session": self.snapshot()}
        payload.update(extra)
        await self.on_event(payload)

    async def _transition(self, session: UploadSession, phase: Phase, status_text: str | None = None) -> None:
        session.phase = phase
        if status_text is not None:
            session.status_text = status_text
        logger.info(f"Session {session.id[:8]}: {phase.value}")
        await self._emit(session, "phase", phase=phase.value)

    def _update_progress(self, session: UploadSession) -> None:
        session.progress = aggregate_progress(session.upload_fraction, session.poll_elapsed)

    # Credential

    async def login(self, username: str, password: str) -> None:
        self._token = await self._analysis.login(username, password)
        logger.info("SEA login succeeded")
        await self._emit(self._session, "login")

    async def logout(self) -> None:
        self._token = ""
        await self._emit(self._session, "logout")

    # File selection

    async def reset(self) -> dict[str, Any]:
        self._session = UploadSession()
        await self._emit(self._session, "reset")
        return self.snapshot()

    async def select_file(self, name: str, data: bytes) -> dict[str, Any]:
        session = UploadSession()
        self._session = session
        await self._transition(session, Phase.VALIDATING)

        if not (name or "").lower().endswith(config.ARCHIVE_EXTENSION):
            session.validation_error = ValidationError(
                f"Rejected file {name!r}: expected a {config.ARCHIVE_EXTENSION} archive",
                user_message="Wrong file format, please upload a .gz archive",
            )
            await self._transition(session, Phase.REJECTED, session.validation_error.user_message)
            return self.snapshot()

        session.file = SelectedFile(name=name, data=data)
        await self._transition(session, Phase.DECODING, "Decompressing and parsing...")
        try:
            text = await decode_async(data)
        except DecodeError as e:
            if not self._is_current(session.id):
                return self.snapshot()
            session.metadata_error = e
            logger.warning(f"Session {session.id[:8]}: decode failed: {e}")
            await self._transition(session, Phase.METADATA_FAILED, "Parsing failed")
            return self.snapshot()
        if not self._is_current(session.id):
            return self.snapshot()

        await self._transition(session, Phase.EXTRACTING_METADATA)
        session.csv_name = name[: -len(config.ARCHIVE_EXTENSION)] + ".csv"
        session.metadata = md.extract(text)
        if not session.metadata:
            session.metadata_error = DecodeError(
                "No recognized metadata fields in the first lines of the archive",
                user_message="No session metadata found in the file",
            )
            await self._transition(session, Phase.METADATA_FAILED, "Parsing failed")
            return self.snapshot()

        await self._transition(session, Phase.READY, "File selected, ready to upload")
        return self.snapshot()

    # Pipeline

    def _check_can_start(self) -> tuple[UploadSession, str]:
        session = self._session
        if not self._token:
            raise AuthError("No SEA session token", reason="missing_token")
        if session.file is None:
            raise ValidationError("No file selected", user_message="Please select a .gz file first")
        if session.phase in IN_PROGRESS_PHASES:
            raise ValidationError("Analysis already in progress", user_message="Analysis already in progress")
        return session, self._token

    def launch(self) -> asyncio.Task:
        """Check the start gates now and run the pipeline as a background task."""
        session, token = self._check_can_start()
        session.phase = Phase.UPLOADING
        return asyncio.create_task(self._run(session, token))

    async def start(self) -> dict[str, Any]:
        session, token = self._check_can_start()
        session.phase = Phase.UPLOADING
        await self._run(session, token)
        return self.snapshot()

    async def _run(self, session: UploadSession, token: str) -> None:
        # token is captured at start; a later logout does not affect this run
        session.upload_fraction = 0.0
        session.poll_elapsed = 0.0
        session.job_id = None
        session.score = None
        session.write_outcome = None
        session.error = None
        self._update_progress(session)
        await self._transition(session, Phase.UPLOADING, "Uploading...")

        try:
            result = await self._upload_and_poll(session, token)
        except SeaBridgeError as e:
            await self._fail(session, e)
            return
        except Exception as e:
            await self._fail(session, ServiceError(f"Unexpected pipeline error: {e}"))
            return
        if result is None or not self._is_current(session.id):
            return

        session.score = result.score
        session.poll_elapsed = MAX_ELAPSED_S
        self._update_progress(session)

        outcome = await self._write_record(session)
        if not self._is_current(session.id):
            return
        session.write_outcome = outcome
        await self._transition(session, Phase.SUCCEEDED, "Done")

    async def _fail(self, session: UploadSession, err: SeaBridgeError) -> None:
        if not self._is_current(session.id):
            return
        session.error = err
        logger.error(f"Session {session.id[:8]} failed: {err}")
        await self._transition(session, Phase.FAILED, "Aborted")

    async def _upload_and_poll(self, session: UploadSession, token: str) -> ScoreResult | None:
        assert session.file is not None
        fields = build_upload_fields(session.metadata)

        async def on_progress(fraction: float) -> None:
            if not self._is_current(session.id):
                return
            session.upload_fraction = fraction
            self._update_progress(session)
            await self._emit(session, "progress", progress=session.progress)

        job_id = await self._analysis.upload(
            file_name=session.file.name,
            data=session.file.data,
            fields=fields,
            token=token,
            on_progress=on_progress,
        )
        if not self._is_current(session.id):
            return None
        session.job_id = job_id
        session.upload_fraction = 1.0
        self._update_progress(session)
        await self._transition(session, Phase.POLLING, "Computing SEA Index...")
        return await self._poll(session, ScoreQuery(subject_id=fields["medicalNumber"], job_id=job_id), token)

    async def _poll(self, session: UploadSession, query: ScoreQuery, token: str) -> ScoreResult | None:
        for attempt in range(self._poll_attempts):
            await self._sleep(self._poll_interval_s)
            if not self._is_current(session.id):
                return None
            result = await self._analysis.poll_score(query, token=token)
            if not self._is_current(session.id):
                return None

            session.poll_elapsed = min(MAX_ELAPSED_S, (attempt + 1) * self._poll_interval_s)
            session.status_text = (
                "Fetching SEA Index..." if session.poll_elapsed >= COMPUTE_WINDOW_S else "Computing SEA Index..."
            )
            self._update_progress(session)
            await self._emit(session, "progress", progress=session.progress, attempt=attempt + 1)
            if result.ready:
                return result

        raise PollTimeoutError(
            f"SEA score for job {query.job_id} not ready after {self._poll_attempts} attempts"
        )

    def _can_write(self) -> bool:
        return self._records is not None and self._records.identity.has_identity()

    async def _write_record(self, session: UploadSession) -> WriteOutcome:
        if session.score is None:
            return WriteOutcome(status="skipped", reason="No SEA Index in the score response")
        if not self._can_write():
            return WriteOutcome(status="skipped", reason="No FHIR identity context")

        assert self._records is not None
        await self._transition(session, Phase.WRITING, "Analysis done, writing to FHIR...")
        try:
            await self._records.write(session.score)
        except RecordStoreError as e:
            logger.warning(f"Session {session.id[:8]}: record write failed: {e}")
            return WriteOutcome(
                status="failed",
                reason=e.user_message,
                status_code=e.status_code,
                payload=e.payload,
            )
        except Exception as e:
            logger.exception(f"Session {session.id[:8]}: record write crashed")
            return WriteOutcome(status="failed", reason=str(e))
        return WriteOutcome(status="written", reason="FHIR Observation written")
