from __future__ import annotations

from typing import Optional


def format_millis(millis: Optional[int]) -> str:
    """Format a millisecond offset as ``m:ss`` (``h:mm:ss`` past an hour).

    Negative and missing values render as ``0:00``.
    """
    if not millis or millis < 0:
        return "0:00"

    total_seconds = int(millis // 1000)
    hours, remainder = divmod(total_seconds, 3600)
    minutes, seconds = divmod(remainder, 60)

    if hours:
        return f"{hours}:{minutes:02d}:{seconds:02d}"
    return f"{minutes}:{seconds:02d}"


def clamp_position(position_ms: int, duration_ms: Optional[int]) -> int:
    """Clamp a seek target to ``[0, duration_ms]``.

    Only the lower bound applies while the duration is still unknown.
    """
    position_ms = max(0, int(position_ms))
    if duration_ms is not None and duration_ms >= 0:
        position_ms = min(position_ms, int(duration_ms))
    return position_ms


def seconds_to_millis(seconds: float) -> int:
    return int(round(float(seconds) * 1000))


def millis_to_seconds(millis: int) -> float:
    return millis / 1000.0
