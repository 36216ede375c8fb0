from __future__ import annotations

from .controller import SessionController, build_upload_fields
from .progress import aggregate_progress
from .types import (
    IN_PROGRESS_PHASES,
    TERMINAL_PHASES,
    OnEvent,
    Phase,
    SelectedFile,
    UploadSession,
    WriteOutcome,
)

__all__ = [
    "IN_PROGRESS_PHASES",
    "TERMINAL_PHASES",
    "OnEvent",
    "Phase",
    "SelectedFile",
    "SessionController",
    "UploadSession",
    "WriteOutcome",
    "aggregate_progress",
    "build_upload_fields",
]
