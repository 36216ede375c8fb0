from __future__ import annotations

import enum
import uuid
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Literal

from ..errors import SeaBridgeError
from ..metadata import SessionMetadata

OnEvent = Callable[[dict[str, Any]], Awaitable[None]] | None

WriteStatus = Literal["written", "skipped", "failed"]


class Phase(str, enum.Enum):
    IDLE = "idle"
    VALIDATING = "validating"
    REJECTED = "rejected"
    DECODING = "decoding"
    EXTRACTING_METADATA = "extracting_metadata"
    READY = "ready"
    METADATA_FAILED = "metadata_failed"
    UPLOADING = "uploading"
    POLLING = "polling"
    WRITING = "writing"
    SUCCEEDED = "succeeded"
    FAILED = "failed"


TERMINAL_PHASES = frozenset({Phase.REJECTED, Phase.METADATA_FAILED, Phase.SUCCEEDED, Phase.FAILED})
IN_PROGRESS_PHASES = frozenset(
    {
        Phase.VALIDATING,
        Phase.DECODING,
        Phase.EXTRACTING_METADATA,
        Phase.UPLOADING,
        Phase.POLLING,
        Phase.WRITING,
    }
)


@dataclass(frozen=True)
class SelectedFile:
    name: str
    data: bytes

    @property
    def size(self) -> int:
        return len(self.data)


@dataclass(frozen=True)
class WriteOutcome:
    status: WriteStatus
    reason: str = ""
    status_code: int | None = None
    payload: Any = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "status": self.status,
            "reason": self.reason,
            "status_code": self.status_code,
            "payload": self.payload,
        }


def _new_id() -> str:
    return str(uuid.uuid4())


@dataclass
class UploadSession:
    id: str = field(default_factory=_new_id)
    file: SelectedFile | None = None
    csv_name: str = ""
    validation_error: SeaBridgeError | None = None
    metadata: SessionMetadata | None = None
    metadata_error: SeaBridgeError | None = None
    phase: Phase = Phase.IDLE
    status_text: str = "Waiting for a .gz file"
    upload_fraction: float = 0.0
    poll_elapsed: float = 0.0
    progress: int = 0
    job_id: str | None = None
    score: float | None = None
    write_outcome: WriteOutcome | None = None
    error: SeaBridgeError | None = None

    def snapshot(self) -> dict[str, Any]:
        return {
            "session_id": self.id,
            "file_name": self.file.name if self.file else None,
            "file_size": self.file.size if self.file else None,
            "csv_name": self.csv_name,
            "validation_error": self.validation_error.to_dict() if self.validation_error else None,
            "metadata": dict(self.metadata) if self.metadata is not None else None,
            "metadata_error": self.metadata_error.to_dict() if self.metadata_error else None,
            "phase": self.phase.value,
            "status_text": self.status_text,
            "progress": self.progress,
            "job_id": self.job_id,
            "score": self.score,
            "write_outcome": self.write_outcome.to_dict() if self.write_outcome else None,
            "error": self.error.to_dict() if self.error else None,
        }
