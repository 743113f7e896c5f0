from __future__ import annotations

import logging
from collections import UserDict, deque
from types import MappingProxyType

import pytest

pytest.importorskip("fastapi")

from distill.web.server import DebugLogHandler


@pytest.fixture
def handler() -> DebugLogHandler:
    return DebugLogHandler(capacity=3)


def _record(message: str, level: int = logging.INFO, **extra) -> logging.LogRecord:
    record = logging.LogRecord("distill.test", level, __file__, 1, message, None, None)
    for key, value in extra.items():
        setattr(record, key, value)
    return record


def test_build_key_handles_nested_unhashable_structures(handler: DebugLogHandler) -> None:
    context = {
        "attrs": MappingProxyType({
            "numbers": [1, 2, 3],
            "details": {"enabled": True, "thresholds": {"low", "high"}},
        }),
        "extra": UserDict({"history": deque(({"event": "start"}, {"event": "stop"}))}),
    }
    payload = {"meta": {"ids": [1, {"sub": ("a", "b")}]}}
    correlation = {"request_id": "abc123"}

    key = handler._build_key("TEST", "message", context, payload, correlation)

    # Keys are dictionary keys, so nested containers must be frozen.
    hash(key)


def test_build_key_is_order_insensitive(handler: DebugLogHandler) -> None:
    context_a = {"values": {"b": 2, "a": 1}}
    context_b = {"values": {"a": 1, "b": 2}}

    key_a = handler._build_key("TEST", "message", context_a, {}, {})
    key_b = handler._build_key("TEST", "message", context_b, {}, {})

    assert key_a == key_b


def test_repeated_records_are_folded(handler: DebugLogHandler) -> None:
    handler.emit(_record("Project saved"))
    handler.emit(_record("Another event"))
    handler.emit(_record("Project saved"))

    entries = handler.collect()
    assert [entry["message"] for entry in entries] == ["Another event", "Project saved"]
    folded = entries[-1]
    assert folded["count"] == 2
    assert folded["id"] == handler.last_id == 3

    assert [entry["message"] for entry in handler.collect(after=2)] == ["Project saved"]


def test_capacity_drops_oldest_entries(handler: DebugLogHandler) -> None:
    for index in range(5):
        handler.emit(_record(f"event {index}"))

    messages = [entry["message"] for entry in handler.collect()]
    assert messages == ["event 2", "event 3", "event 4"]


def test_slow_database_events_are_flagged(handler: DebugLogHandler) -> None:
    handler.emit(
        _record(
            "projects.list",
            debug_event_type="DB_QUERY",
            debug_duration_ms=900.0,
        )
    )
    handler.emit(_record("boom", level=logging.ERROR))

    slow, failed = handler.collect()
    assert slow["severity"] == "warning"
    assert slow["last_duration_ms"] == pytest.approx(900.0)
    assert failed["severity"] == "error"


def test_export_text(handler: DebugLogHandler) -> None:
    assert handler.export_text() == "# Debug log is currently empty.\n"

    handler.emit(_record("Slides generated", debug_context={"project": 4}))
    handler.emit(_record("Slides generated", debug_context={"project": 4}))

    text = handler.export_text()
    assert "Slides generated" in text
    assert "count=2" in text
    assert '"project": 4' in text
