"""Structured event helpers shared across the application."""

from __future__ import annotations

import logging
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, Optional


DEFAULT_EVENT_LOGGER = logging.getLogger("distill.events")

DB_EVENT = "DB_QUERY"
FILE_EVENT = "FILE_OP"
TASK_EVENT = "TASK_STATE"

_MAX_VALUE_LENGTH = 200


def sanitize_context_value(value: Any) -> Any:
    """Return a JSON-serialisable representation for *value*."""

    if value is None:
        return None
    if isinstance(value, (bool, int, float)):
        return value
    if isinstance(value, datetime):
        return value.isoformat()
    if isinstance(value, Path):
        return str(value)
    if isinstance(value, dict):
        sanitized: Dict[str, Any] = {}
        for key, item in value.items():
            if key is None:
                continue
            cleaned = sanitize_context_value(item)
            if cleaned is None or cleaned == "":
                continue
            sanitized[str(key)] = cleaned
        return sanitized
    if isinstance(value, (list, tuple, set)):
        joined = ", ".join(str(item) for item in value)
    else:
        joined = str(value)
    trimmed = joined.strip()
    if not trimmed:
        return None
    if len(trimmed) > _MAX_VALUE_LENGTH:
        return trimmed[:_MAX_VALUE_LENGTH] + "…"
    return trimmed


def normalize_context(values: Optional[Dict[str, Any]]) -> Dict[str, Any]:
    """Drop empty entries and sanitise the rest."""

    if not values:
        return {}
    normalised: Dict[str, Any] = {}
    for key, raw_value in values.items():
        if not key:
            continue
        value = sanitize_context_value(raw_value)
        if value is None or value == "":
            continue
        normalised[str(key)] = value
    return normalised


def emit_structured_event(
    event_type: str,
    message: str,
    *,
    payload: Optional[Dict[str, Any]] = None,
    context: Optional[Dict[str, Any]] = None,
    correlation: Optional[Dict[str, Any]] = None,
    duration_ms: Optional[float] = None,
    level: int = logging.INFO,
    logger: logging.Logger | logging.LoggerAdapter = DEFAULT_EVENT_LOGGER,
) -> None:
    """Emit a structured event with consistent logging metadata.

    The rendered log line looks like ``[TYPE] message (key=value, ...)`` while
    the raw pieces travel in ``extra`` so handlers such as the web debug
    console can group repeated events.
    """

    base_message = str(message).strip()
    normalised_context = normalize_context(context)
    normalised_payload = normalize_context(payload)
    normalised_correlation = normalize_context(correlation)
    combined_details = {
        **normalised_correlation,
        **normalised_context,
        **normalised_payload,
    }
    details_text = ", ".join(f"{key}={value}" for key, value in combined_details.items())
    display_message = f"[{event_type}] {base_message}" if event_type else base_message
    log_message = f"{display_message} ({details_text})" if details_text else display_message
    extra: Dict[str, Any] = {
        "debug_event": base_message,
        "debug_event_type": event_type or "",
    }
    if normalised_context:
        extra["debug_context"] = normalised_context
    if normalised_payload:
        extra["debug_payload"] = normalised_payload
    if normalised_correlation:
        extra["debug_correlation"] = normalised_correlation
    if duration_ms is not None:
        extra["debug_duration_ms"] = float(duration_ms)
    logger.log(level, log_message, extra=extra)


def emit_db_event(action: str, **kwargs: Any) -> None:
    """Emit a structured database event."""

    emit_structured_event(DB_EVENT, action, **kwargs)


def emit_file_event(operation: str, **kwargs: Any) -> None:
    """Emit a structured file-system event."""

    emit_structured_event(FILE_EVENT, operation, **kwargs)


def emit_task_event(phase: str, message: str, **kwargs: Any) -> None:
    """Emit a structured task lifecycle event."""

    emit_structured_event(TASK_EVENT, message or phase, **kwargs)


__all__ = [
    "DB_EVENT",
    "DEFAULT_EVENT_LOGGER",
    "FILE_EVENT",
    "TASK_EVENT",
    "emit_db_event",
    "emit_file_event",
    "emit_structured_event",
    "emit_task_event",
    "normalize_context",
    "sanitize_context_value",
]
