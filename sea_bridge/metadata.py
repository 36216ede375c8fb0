"""Best-effort metadata extraction from the decoded EEG table.

The recordings carry a handful of session fields near the top of the file,
either as a header row plus one value row or as one ``key<delim>value`` pair
per line with whatever delimiter the exporting device used.
"""

from __future__ import annotations

import math
import re
from typing import Mapping

SUBJECT_ID = "SubjectID"
AGE = "Age"
GENDER = "Gender"
DRUG = "Drug"
PHQ9 = "PHQ-9"
TIME = "Time"
SIGNAL_QUALITY = "signal_quality_score"

RECOGNIZED_KEYS: tuple[str, ...] = (SUBJECT_ID, AGE, GENDER, DRUG, PHQ9, TIME, SIGNAL_QUALITY)

SCAN_LINES = 13

_LINE_SPLIT_RE = re.compile(r"\r?\n")

SessionMetadata = dict[str, str]


def _non_empty_lines(text: str) -> list[str]:
    return [line for line in _LINE_SPLIT_RE.split(text or "") if line.strip()]


def _pick_delimiter(line: str) -> str:
    # First delimiter present wins, even if a later one would split more sensibly.
    if "," in line:
        return ","
    if ":" in line:
        return ":"
    return "\t"


def _extract_header_row(lines: list[str]) -> SessionMetadata | None:
    header = [part.strip() for part in lines[0].split(",")] if lines else []
    if not all(key in header for key in RECOGNIZED_KEYS) or len(lines) < 2:
        return None
    values = [part.strip() for part in lines[1].split(",")]
    out: SessionMetadata = {}
    for idx, key in enumerate(header):
        if key in RECOGNIZED_KEYS:
            out[key] = values[idx] if idx < len(values) else ""
    return out


def _extract_key_value_lines(lines: list[str]) -> SessionMetadata:
    out: SessionMetadata = {}
    for line in lines:
        trimmed = line.strip()
        if not trimmed:
            continue
        parts = [part.strip() for part in trimmed.split(_pick_delimiter(trimmed))]
        if len(parts) < 2:
            continue
        key = parts[0]
        if key in RECOGNIZED_KEYS:
            out[key] = " ".join(parts[1:]).strip()
    return out


def extract(text: str) -> SessionMetadata:
    lines = _non_empty_lines(text)[:SCAN_LINES]
    from_header = _extract_header_row(lines)
    if from_header is not None:
        return from_header
    return _extract_key_value_lines(lines)


def subject_id(metadata: Mapping[str, str] | None) -> str:
    return ((metadata or {}).get(SUBJECT_ID) or "").strip()


def parse_int(raw: str | None) -> int | None:
    """Leading-integer parse: ``"34 years"`` -> 34, ``"abc"`` -> None."""
    m = re.match(r"\s*([+-]?\d+)", raw or "")
    if not m:
        return None
    return int(m.group(1))


def parse_float(raw: str | None) -> float | None:
    m = re.match(r"\s*([+-]?(?:\d+\.?\d*|\.\d+)(?:[eE][+-]?\d+)?)", raw or "")
    if not m:
        return None
    value = float(m.group(1))
    if not math.isfinite(value):
        return None
    return value


def format_signal_quality(metadata: Mapping[str, str] | None) -> str:
    raw = (metadata or {}).get(SIGNAL_QUALITY)
    if raw is None or raw == "":
        return "-"
    value = parse_float(raw)
    if value is None:
        return str(raw)
    return f"{value:.2f}"
