"""Utilities for reporting deterministic progress percentages."""

from __future__ import annotations

import math
from typing import Callable, Dict, Optional


ProgressCallback = Callable[[int, Optional[str]], None]

_STAGE_MESSAGES: Dict[str, str] = {
    "analyzing": "Analyzing file...",
    "preparing": "Preparing file...",
    "uploading": "Uploading file...",
    "processing": "Processing file...",
    "creating_project": "Creating project...",
    "chunking": "Processing video segments...",
    "preparing_chunks": "Preparing video segments...",
    "transcribing": "Transcribing audio...",
    "generating_slides": "Generating slides...",
    "complete": "Upload complete!",
}


def format_progress_message(
    message: str,
    completed_steps: Optional[float],
    total_steps: Optional[float],
) -> str:
    """Append a percentage indicator to ``message`` when possible.

    When the totals are unavailable (``None`` or zero) the message is returned
    unchanged. Percentages are clamped to the inclusive range ``[0, 100]``.
    """

    if completed_steps is None or total_steps in {None, 0}:
        return message

    try:
        ratio = float(completed_steps) / float(total_steps)
    except (TypeError, ValueError):
        return message

    clamped = max(0.0, min(ratio, 1.0))
    percent = int(round(clamped * 100))
    return f"{message} ({percent}%)"


def map_progress_range(
    value: float,
    source_start: float = 0,
    source_end: float = 100,
    target_start: float = 0,
    target_end: float = 100,
) -> int:
    """Map *value* from the source range onto the target range."""

    if source_end == source_start:
        return int(math.floor(target_end + 0.5))
    clamped = max(source_start, min(source_end, value))
    fraction = (clamped - source_start) / (source_end - source_start)
    return int(math.floor(target_start + fraction * (target_end - target_start) + 0.5))


def create_progress_handler(
    on_progress: ProgressCallback,
    start_percent: float,
    end_percent: float,
) -> ProgressCallback:
    """Wrap *on_progress* so a 0-100 sub task fills ``[start, end]`` overall."""

    def _handler(progress: float, message: Optional[str] = None) -> None:
        on_progress(map_progress_range(progress, 0, 100, start_percent, end_percent), message)

    return _handler


def upload_stage_message(stage: str, progress: Optional[float] = None) -> str:
    if stage.startswith("uploading") and progress:
        return f"Uploading: {int(progress)}%"
    known = _STAGE_MESSAGES.get(stage)
    if known is not None:
        return known
    words = [word[:1].upper() + word[1:] for word in stage.split("_")]
    return " ".join(words) + "..."


__all__ = [
    "ProgressCallback",
    "create_progress_handler",
    "format_progress_message",
    "map_progress_range",
    "upload_stage_message",
]
