from __future__ import annotations

UPLOAD_SHARE = 30.0
COMPUTE_SHARE = 40.0
FETCH_SHARE = 30.0

COMPUTE_WINDOW_S = 20.0
FETCH_WINDOW_S = 30.0
MAX_ELAPSED_S = COMPUTE_WINDOW_S + FETCH_WINDOW_S


def aggregate_progress(upload_fraction: float, elapsed_s: float) -> int:
    """Overall percentage from upload completion (0..1) and seconds spent polling.

    Upload fills the first 30%, the first 20 s of polling the next 40%, and
    20..50 s the last 30%.
    """
    fraction = max(0.0, upload_fraction)
    elapsed = min(max(0.0, elapsed_s), MAX_ELAPSED_S)
    total = (
        min(UPLOAD_SHARE, fraction * UPLOAD_SHARE)
        + min(COMPUTE_SHARE, min(elapsed, COMPUTE_WINDOW_S) / COMPUTE_WINDOW_S * COMPUTE_SHARE)
        + min(FETCH_SHARE, max(0.0, elapsed - COMPUTE_WINDOW_S) / FETCH_WINDOW_S * FETCH_SHARE)
    )
    return min(100, int(total + 0.5))
