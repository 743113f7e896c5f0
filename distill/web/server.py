"""FastAPI application powering the Distill web UI."""

from __future__ import annotations

import asyncio
import contextlib
import contextvars
import functools
import json
import logging
import os
import shutil
import sys
import threading
import time
import uuid
from collections import deque
from collections.abc import Mapping, Sequence
from dataclasses import asdict
from datetime import datetime, timezone
from pathlib import Path
from tempfile import TemporaryDirectory
from typing import Any, Callable, Deque, Dict, List, Literal, Optional, Set, Tuple, TypeVar

from fastapi import FastAPI, File, Form, HTTPException, Query, Request, Response, UploadFile
from fastapi import status
from fastapi.exception_handlers import (
    http_exception_handler,
    request_validation_exception_handler,
)
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import FileResponse
from openai import OpenAIError
from pydantic import BaseModel, Field
from starlette.exceptions import HTTPException as StarletteHTTPException
from starlette.types import ASGIApp, Receive, Scope, Send

from ..config import AppConfig
from ..logging_utils import DEFAULT_LOG_FORMAT
from ..processing.chunking import CHUNK_STATUSES, update_chunk_status
from ..processing.export import (
    EXPORT_FORMATS,
    ExportError,
    export_anki,
    export_csv,
    export_file_name,
    export_pdf,
)
from ..processing.frames import FrameExtractor, validate_selection
from ..processing.media import MediaError
from ..processing.slides import (
    OpenAISlideGenerator,
    SlideGenerationError,
    SlideGenerator,
    image_counts,
)
from ..processing.transcription import (
    FasterWhisperTranscription,
    OpenAIWhisperTranscription,
    TranscriptionEngine,
)
from ..processing.transcripts import (
    TranscriptFormatOptions,
    extract_sections,
    has_multiple_sections,
    render_transcript,
    word_count,
)
from ..services.events import (
    emit_db_event,
    emit_file_event,
    emit_structured_event,
    emit_task_event,
    normalize_context as _normalize_event_context,
    sanitize_context_value as _sanitize_context_value,
)
from ..services.formatting import expiration_badge, hours_until
from ..services.frames import FrameLibraryService
from ..services.ingestion import IngestionError, ProjectIngestor
from ..services.notifications import NotificationCenter
from ..services.settings import (
    THEME_OPTIONS,
    TRANSCRIPTION_PROVIDERS,
    WHISPER_MODEL_OPTIONS,
    SettingsStore,
    UISettings,
)
from ..services.slides import ProjectNotFoundError, SlideService
from ..services.storage import FolderRecord, ProjectRecord, ProjectRepository
from ..services.usage import UsageService

_DB_SLOW_WARNING_MS = 450.0
_FILE_SLOW_WARNING_MS = 300.0

_DEFAULT_MAX_UPLOAD_BYTES = 1024 * 1024 * 1024
try:
    _MAX_UPLOAD_BYTES = int(
        (os.environ.get("DISTILL_MAX_UPLOAD_BYTES") or "").strip() or _DEFAULT_MAX_UPLOAD_BYTES
    )
except ValueError:
    _MAX_UPLOAD_BYTES = _DEFAULT_MAX_UPLOAD_BYTES

_DEFAULT_UPLOAD_CHUNK_SIZE = 1024 * 1024
_SERVER_LOGGER_PREFIXES: Tuple[str, ...] = ("uvicorn", "gunicorn", "hypercorn")

T = TypeVar("T")


def get_max_upload_bytes() -> int:
    """Return the configured maximum upload size in bytes."""

    return int(_MAX_UPLOAD_BYTES)


_REQUEST_ID_VAR: contextvars.ContextVar[Optional[str]] = contextvars.ContextVar(
    "distill_request_id",
    default=None,
)
_JOB_ID_VAR: contextvars.ContextVar[Optional[str]] = contextvars.ContextVar(
    "distill_job_id",
    default=None,
)
_ACTOR_VAR: contextvars.ContextVar[Optional[str]] = contextvars.ContextVar(
    "distill_actor",
    default=None,
)


def _new_correlation_id() -> str:
    return uuid.uuid4().hex


def _format_actor_label(role: str, detail: Optional[str] = None) -> str:
    base = role.strip() if role else "actor"
    if detail is None:
        return base
    suffix = str(detail).strip()
    return f"{base}:{suffix}" if suffix else base


def _collect_correlation_context() -> Dict[str, str]:
    context: Dict[str, str] = {}
    request_id = _REQUEST_ID_VAR.get()
    if request_id:
        context["request_id"] = str(request_id)
    job_id = _JOB_ID_VAR.get()
    if job_id:
        context["job_id"] = str(job_id)
    actor = _ACTOR_VAR.get()
    if actor:
        context["actor"] = str(actor)
    return context


class LargeUploadRequest(Request):
    """Request subclass that applies the configured multipart upload limit."""

    async def _get_form(
        self,
        *,
        max_files: int | float = 1000,
        max_fields: int | float = 1000,
        max_part_size: int = 1024 * 1024,
    ) -> Any:
        configured_limit = get_max_upload_bytes()
        effective_limit = int(max_part_size)
        if configured_limit > 0:
            effective_limit = max(int(configured_limit), effective_limit)
        else:
            effective_limit = sys.maxsize
        return await super()._get_form(
            max_files=max_files,
            max_fields=max_fields,
            max_part_size=effective_limit,
        )


class RequestContextMiddleware:
    """Assign a correlation identifier to each request and expose it via contextvars."""

    def __init__(self, app: ASGIApp) -> None:
        self.app = app

    async def __call__(self, scope: Scope, receive: Receive, send: Send) -> None:
        if scope.get("type") != "http":
            await self.app(scope, receive, send)
            return

        request_id = _new_correlation_id()
        scope_state = scope.get("state")
        if scope_state is None:
            scope_state = {}
            scope["state"] = scope_state
        if isinstance(scope_state, dict):
            scope_state["request_id"] = request_id
        else:
            setattr(scope_state, "request_id", request_id)

        method = scope.get("method")
        actor_hint = _format_actor_label("request", method.upper() if isinstance(method, str) else None)
        request_token = _REQUEST_ID_VAR.set(request_id)
        actor_token = _ACTOR_VAR.set(actor_hint)
        job_token = _JOB_ID_VAR.set(None)

        try:
            await self.app(scope, receive, send)
        finally:
            _JOB_ID_VAR.reset(job_token)
            _ACTOR_VAR.reset(actor_token)
            _REQUEST_ID_VAR.reset(request_token)


def _copy_upload_stream(
    upload: UploadFile,
    target: Path,
    *,
    chunk_size: int = _DEFAULT_UPLOAD_CHUNK_SIZE,
) -> int:
    """Synchronously copy ``upload`` to ``target`` and return the bytes written."""

    source = upload.file
    if hasattr(source, "seek"):
        with contextlib.suppress(OSError, ValueError):
            source.seek(0)
    with target.open("wb") as buffer:
        shutil.copyfileobj(source, buffer, length=chunk_size)
    return target.stat().st_size


async def _persist_upload_file(
    upload: UploadFile,
    target: Path,
    *,
    chunk_size: int = _DEFAULT_UPLOAD_CHUNK_SIZE,
) -> int:
    """Persist an uploaded file to disk without blocking the event loop."""

    loop = asyncio.get_running_loop()
    copy_operation = functools.partial(_copy_upload_stream, upload, target, chunk_size=chunk_size)
    return await loop.run_in_executor(None, copy_operation)


class ContextualLoggerAdapter(logging.LoggerAdapter):
    """Logger adapter that injects correlation context into records."""

    def process(self, msg: Any, kwargs: Dict[str, Any]) -> tuple[Any, Dict[str, Any]]:  # type: ignore[override]
        extra: Dict[str, Any] = dict(self.extra or {})
        provided = kwargs.get("extra")
        if isinstance(provided, dict):
            extra.update(provided)
        correlation = _collect_correlation_context()
        for key, value in correlation.items():
            extra.setdefault(key, value)
        kwargs["extra"] = extra
        return msg, kwargs


LOGGER = ContextualLoggerAdapter(logging.getLogger(__name__), {})
EVENT_LOGGER = ContextualLoggerAdapter(logging.getLogger("distill.ui.events"), {})


def _emit_debug_event(
    event_type: str,
    message: str,
    *,
    payload: Optional[Dict[str, Any]] = None,
    context: Optional[Dict[str, Any]] = None,
    duration_ms: Optional[float] = None,
    level: int = logging.INFO,
) -> None:
    emit_structured_event(
        event_type,
        message,
        payload=payload,
        context=context,
        correlation=_collect_correlation_context(),
        duration_ms=duration_ms,
        level=level,
        logger=EVENT_LOGGER,
    )


def _emit_db_event(action: str, **kwargs: Any) -> None:
    emit_db_event(action, correlation=_collect_correlation_context(), logger=EVENT_LOGGER, **kwargs)


def _emit_file_event(operation: str, **kwargs: Any) -> None:
    emit_file_event(operation, correlation=_collect_correlation_context(), logger=EVENT_LOGGER, **kwargs)


def _emit_task_state(
    phase: str,
    *,
    project_id: Optional[int],
    message: str,
    payload: Optional[Dict[str, Any]] = None,
    duration_ms: Optional[float] = None,
) -> None:
    event_payload: Dict[str, Any] = {"phase": phase}
    if project_id is not None:
        event_payload["project_id"] = project_id
    if payload:
        event_payload.update(payload)
    emit_task_event(
        phase,
        message or phase,
        payload=event_payload,
        correlation=_collect_correlation_context(),
        duration_ms=duration_ms,
        logger=EVENT_LOGGER,
    )


def _log_event(message: str, **context: Any) -> None:
    _emit_debug_event("APP_EVENT", message, context=context)


class DebugLogHandler(logging.Handler):
    """In-memory log handler used to power the live debug console.

    Repeated events (same type, message and context) are folded into one entry
    whose ``count`` grows; the entry moves to the end of the feed and receives
    a fresh id so pollers using ``after`` see it again.
    """

    _IGNORED_FIELDS: Set[str] = {
        "name",
        "msg",
        "args",
        "levelname",
        "levelno",
        "pathname",
        "filename",
        "module",
        "exc_info",
        "exc_text",
        "stack_info",
        "lineno",
        "funcName",
        "created",
        "msecs",
        "relativeCreated",
        "thread",
        "threadName",
        "process",
        "processName",
        "taskName",
        "message",
        "asctime",
    }
    _RESERVED_FIELDS: Set[str] = {
        "debug_context",
        "debug_event",
        "debug_event_type",
        "debug_payload",
        "debug_duration_ms",
        "debug_correlation",
        "request_id",
        "job_id",
        "actor",
    }
    _SEVERITY_PRIORITY: Dict[str, int] = {"error": 3, "warning": 2, "info": 1}

    def __init__(self, capacity: int = 500) -> None:
        super().__init__(level=logging.DEBUG)
        self._capacity = max(1, capacity)
        self._entries: Deque[Dict[str, Any]] = deque()
        self._entry_index: Dict[Tuple[Any, ...], Dict[str, Any]] = {}
        self._lock = threading.Lock()
        self._last_id = 0
        self.setFormatter(logging.Formatter(DEFAULT_LOG_FORMAT))
        self._started_at = datetime.now(timezone.utc)

    def _extract_duration(self, record: logging.LogRecord) -> Optional[float]:
        candidate = getattr(record, "debug_duration_ms", None)
        if candidate is None:
            candidate = getattr(record, "duration_ms", None)
        if candidate is None:
            return None
        try:
            return float(candidate)
        except (TypeError, ValueError):
            return None

    def _extract_context(self, record: logging.LogRecord) -> Dict[str, Any]:
        context = getattr(record, "debug_context", None)
        if isinstance(context, dict):
            return _normalize_event_context(context)
        return {}

    def _extract_payload(self, record: logging.LogRecord) -> Dict[str, Any]:
        payload: Dict[str, Any] = {}
        raw_payload = getattr(record, "debug_payload", None)
        if isinstance(raw_payload, dict):
            payload.update(_normalize_event_context(raw_payload))
        for key, value in record.__dict__.items():
            if key in self._IGNORED_FIELDS or key in self._RESERVED_FIELDS or key.startswith("_"):
                continue
            sanitized = _sanitize_context_value(value)
            if sanitized is None:
                continue
            payload[str(key)] = sanitized
        payload.pop("duration_ms", None)
        return payload

    def _extract_correlation(self, record: logging.LogRecord) -> Dict[str, str]:
        correlation: Dict[str, str] = {}
        stored = getattr(record, "debug_correlation", None)
        if isinstance(stored, dict):
            for key, value in stored.items():
                sanitized = _sanitize_context_value(value)
                if sanitized is not None:
                    correlation[str(key)] = str(sanitized)
        for field_name in ("request_id", "job_id", "actor"):
            value = getattr(record, field_name, None)
            if value is not None:
                correlation.setdefault(field_name, str(value))
        return correlation

    def _compute_severity(
        self,
        record: logging.LogRecord,
        payload: Dict[str, Any],
        duration_ms: Optional[float],
    ) -> Optional[str]:
        event_type = str(getattr(record, "debug_event_type", "") or "")
        error_flag = bool(
            payload.get("error") or payload.get("status") in {"error", "failed", "exception"}
        )
        if record.levelno >= logging.ERROR or error_flag:
            return "error"
        slow_threshold: Optional[float] = None
        if event_type == "DB_QUERY":
            slow_threshold = _DB_SLOW_WARNING_MS
        elif event_type == "FILE_OP":
            slow_threshold = _FILE_SLOW_WARNING_MS
        if slow_threshold is not None and duration_ms is not None and duration_ms >= slow_threshold:
            return "warning"
        if record.levelno >= logging.WARNING:
            return "warning"
        return None

    def _freeze_value(self, value: Any) -> Any:
        """Return a hashable representation of *value* for key construction."""

        if isinstance(value, Mapping):
            return tuple(
                (str(key), self._freeze_value(item))
                for key, item in sorted(value.items(), key=lambda pair: str(pair[0]))
            )
        if isinstance(value, Sequence) and not isinstance(value, (str, bytes, bytearray)):
            return tuple(self._freeze_value(item) for item in value)
        try:
            hash(value)
        except TypeError:
            return str(value)
        return value

    def _build_key(self, event_type: str, message: str, *parts: Dict[str, Any]) -> Tuple[Any, ...]:
        return (event_type, message) + tuple(self._freeze_value(part) for part in parts)

    def _serialize_entry(self, entry: Dict[str, Any]) -> Dict[str, Any]:
        exported = {key: value for key, value in entry.items() if key != "_key"}
        exported.setdefault("timestamp", exported.get("last_seen"))
        return exported

    def emit(self, record: logging.LogRecord) -> None:  # noqa: D401 - inherited documentation
        rendered_message = str(record.getMessage())
        if record.exc_info:
            formatter = self.formatter or logging.Formatter()
            exception_text = formatter.formatException(record.exc_info)
            if exception_text:
                rendered_message = f"{rendered_message}\n{exception_text}"

        base_message = getattr(record, "debug_event", None)
        base_message = rendered_message if base_message is None else str(base_message)

        context = self._extract_context(record)
        payload = self._extract_payload(record)
        duration_ms = self._extract_duration(record)
        correlation = self._extract_correlation(record)
        severity = self._compute_severity(record, payload, duration_ms)

        timestamp = datetime.fromtimestamp(record.created, tz=timezone.utc).isoformat()
        event_type = str(getattr(record, "debug_event_type", record.name))
        category = (
            "server"
            if any(record.name.startswith(prefix) for prefix in _SERVER_LOGGER_PREFIXES)
            else "application"
        )
        if event_type == "TASK_STATE":
            category = "task"
        key = self._build_key(event_type, base_message, context, payload, correlation)

        with self._lock:
            self._last_id += 1
            entry = self._entry_index.get(key)
            if entry is not None:
                self._entries.remove(entry)
                entry["count"] = entry.get("count", 1) + 1
                entry["last_seen"] = timestamp
            else:
                entry = {
                    "message": base_message,
                    "event_type": event_type,
                    "logger": record.name,
                    "category": category,
                    "count": 1,
                    "first_seen": timestamp,
                    "last_seen": timestamp,
                    "_key": key,
                }
                if context:
                    entry["context"] = context
                if payload:
                    entry["payload"] = payload
                if correlation:
                    entry.update(correlation)
                self._entry_index[key] = entry
            entry["id"] = self._last_id
            entry["level"] = record.levelname
            if rendered_message != base_message:
                entry["rendered"] = rendered_message
            if duration_ms is not None:
                total = entry.get("total_duration_ms", 0.0) + duration_ms
                entry["total_duration_ms"] = total
                entry["last_duration_ms"] = duration_ms
                entry["average_duration_ms"] = total / entry["count"]
            if severity:
                previous = str(entry.get("severity") or "")
                if self._SEVERITY_PRIORITY.get(severity, 0) >= self._SEVERITY_PRIORITY.get(previous, 0):
                    entry["severity"] = severity
            self._entries.append(entry)
            while len(self._entries) > self._capacity:
                oldest = self._entries.popleft()
                self._entry_index.pop(oldest.get("_key"), None)

    def collect(self, after: Optional[int] = None, limit: int = 200) -> List[Dict[str, Any]]:
        with self._lock:
            if after is None or after <= 0:
                data = list(self._entries)
            else:
                data = [entry for entry in self._entries if entry.get("id", 0) > after]
            return [self._serialize_entry(entry) for entry in data[-limit:]]

    def export_text(self) -> str:
        with self._lock:
            entries = [self._serialize_entry(entry) for entry in self._entries]
        if not entries:
            return "# Debug log is currently empty.\n"

        lines: List[str] = []
        for entry in entries:
            level = str(entry.get("level", "")).upper()
            base = f"[{entry.get('timestamp') or ''}] {level:<7} {entry.get('event_type', '')}: {entry.get('message', '')}"
            detail_parts: List[str] = []
            if entry.get("count", 1) > 1:
                detail_parts.append(f"count={entry['count']}")
            if entry.get("severity"):
                detail_parts.append(f"severity={entry['severity']}")
            if entry.get("last_duration_ms") is not None:
                detail_parts.append(f"duration_ms={float(entry['last_duration_ms']):.3f}")
            for label in ("context", "payload"):
                value = entry.get(label)
                if isinstance(value, Mapping) and value:
                    detail_parts.append(
                        f"{label}=" + json.dumps(value, ensure_ascii=False, sort_keys=True)
                    )
            correlation = {key: entry[key] for key in ("request_id", "job_id", "actor") if entry.get(key)}
            if correlation:
                detail_parts.append(
                    "correlation=" + json.dumps(correlation, ensure_ascii=False, sort_keys=True)
                )
            lines.append(f"{base} | " + " | ".join(detail_parts) if detail_parts else base)

        return "\n".join(lines) + "\n"

    @property
    def started_at(self) -> datetime:
        return self._started_at

    @property
    def last_id(self) -> int:
        with self._lock:
            return self._last_id


class ProjectProgressTracker:
    """Track long running project tasks (upload, transcription) for UI polling."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._states: Dict[int, Dict[str, Any]] = {}

    def _baseline(self, project_id: int) -> Dict[str, Any]:
        return {
            "project_id": project_id,
            "operation": None,
            "status": "idle",
            "progress": 0,
            "message": "",
            "error": None,
            "active": False,
            "started_at": None,
            "updated_at": None,
        }

    def start(self, project_id: int, operation: str, message: str = "") -> None:
        now = time.time()
        with self._lock:
            state = self._baseline(project_id)
            state.update(
                operation=operation,
                status="running",
                message=message,
                active=True,
                started_at=now,
                updated_at=now,
            )
            self._states[project_id] = state
        _emit_task_state("start", project_id=project_id, message=message or operation)

    def update(self, project_id: int, progress: int, message: Optional[str] = None) -> None:
        with self._lock:
            state = self._states.setdefault(project_id, self._baseline(project_id))
            state["progress"] = max(0, min(100, int(progress)))
            if message:
                state["message"] = message
            state["updated_at"] = time.time()

    def callback(self, project_id: int) -> Callable[[int, Optional[str]], None]:
        return functools.partial(self.update, project_id)

    def finish(self, project_id: int, message: str = "Completed") -> None:
        with self._lock:
            state = self._states.setdefault(project_id, self._baseline(project_id))
            state.update(status="completed", progress=100, message=message, active=False)
            state["updated_at"] = time.time()
            started = state.get("started_at")
        duration_ms = (time.time() - started) * 1000.0 if started else None
        _emit_task_state("finish", project_id=project_id, message=message, duration_ms=duration_ms)

    def fail(self, project_id: int, error: str) -> None:
        with self._lock:
            state = self._states.setdefault(project_id, self._baseline(project_id))
            state.update(status="error", error=error, message=error, active=False)
            state["updated_at"] = time.time()
        _emit_task_state("error", project_id=project_id, message=error, payload={"status": "error"})

    def get(self, project_id: int) -> Dict[str, Any]:
        with self._lock:
            return dict(self._states.get(project_id) or self._baseline(project_id))

    def clear(self, project_id: int) -> None:
        with self._lock:
            self._states.pop(project_id, None)


def _resolve_storage_path(storage_root: Path, relative_path: str) -> Path:
    root_path = storage_root.resolve()
    candidate = Path(relative_path)
    if not candidate.is_absolute():
        candidate = (root_path / candidate).resolve()
    else:
        candidate = candidate.resolve()
    candidate.relative_to(root_path)
    return candidate


def _serialize_project(record: ProjectRecord, *, include_transcript: bool = True) -> Dict[str, Any]:
    hours = hours_until(record.expires_at)
    badge = expiration_badge(hours)
    payload: Dict[str, Any] = {
        "id": record.id,
        "title": record.title,
        "description": record.description,
        "sourceType": record.source_type,
        "sourceUrl": record.source_url,
        "sourceFilePath": record.source_file_path,
        "videoUrl": f"/storage/{record.source_file_path}" if record.source_file_path else None,
        "contextPrompt": record.context_prompt,
        "slides": record.slides,
        "slideCount": len(record.slides),
        "imageCounts": image_counts(record.slides),
        "videoMetadata": record.video_metadata,
        "extractedFrames": record.extracted_frames,
        "folderId": record.folder_id,
        "modelId": record.model_id,
        "slidesPerMinute": record.slides_per_minute,
        "targetSlideCount": record.target_slide_count,
        "hasTranscript": bool(record.transcript),
        "expiresAt": record.expires_at,
        "hoursRemaining": hours,
        "expiration": {"color": badge.color, "text": badge.text},
        "createdAt": record.created_at,
        "updatedAt": record.updated_at,
    }
    if include_transcript:
        payload["transcript"] = record.transcript
    return payload


def _serialize_folder(record: FolderRecord, project_count: int = 0) -> Dict[str, Any]:
    return {
        "id": record.id,
        "name": record.name,
        "description": record.description,
        "projectCount": project_count,
        "createdAt": record.created_at,
        "updatedAt": record.updated_at,
    }


class TranscriptProjectPayload(BaseModel):
    transcript: str
    title: Optional[str] = None
    description: str = ""
    context_prompt: str = ""
    folder_id: Optional[int] = None
    slides_per_minute: float = Field(6.0, gt=0, le=30)


class UrlProjectPayload(BaseModel):
    url: str = Field(..., min_length=1)
    title: Optional[str] = None
    description: str = ""
    context_prompt: str = ""
    folder_id: Optional[int] = None
    slides_per_minute: float = Field(6.0, gt=0, le=30)


class ProjectUpdatePayload(BaseModel):
    title: Optional[str] = None
    description: Optional[str] = None
    context_prompt: Optional[str] = None
    transcript: Optional[str] = None
    folder_id: Optional[int] = None
    model_id: Optional[str] = None
    slides_per_minute: Optional[float] = Field(None, gt=0, le=30)


class GenerateSlidesPayload(BaseModel):
    context_prompt: Optional[str] = None
    slides_per_minute: Optional[float] = Field(None, gt=0, le=30)
    title: Optional[str] = None


class SlidesPayload(BaseModel):
    slides: List[Dict[str, Any]] = Field(default_factory=list)


class SlideUpdatePayload(BaseModel):
    title: Optional[str] = None
    content: Optional[str] = None
    timestamp: Optional[str] = None
    imageUrls: Optional[List[str]] = None


class SlideAddPayload(BaseModel):
    after_index: int = Field(-1, ge=-1)


class SlideImagePayload(BaseModel):
    image_url: str = Field(..., min_length=1)


class FrameExtractPayload(BaseModel):
    timestamps: Optional[List[str]] = None


class FrameListPayload(BaseModel):
    frames: List[Dict[str, Any]] = Field(default_factory=list)


class FrameDeletePayload(BaseModel):
    frame_ids: List[str] = Field(default_factory=list)


class ChunkPlanPayload(BaseModel):
    force: bool = False


class ChunkStatusPayload(BaseModel):
    status: Literal[CHUNK_STATUSES]  # type: ignore[valid-type]
    error: Optional[str] = None


class FolderCreatePayload(BaseModel):
    name: str = Field(..., min_length=1)
    description: str = ""


class FolderUpdatePayload(BaseModel):
    name: Optional[str] = None
    description: Optional[str] = None


class FolderMovePayload(BaseModel):
    project_ids: List[int] = Field(default_factory=list)
    folder_id: Optional[int] = None


class SettingsPayload(BaseModel):
    theme: Literal[THEME_OPTIONS] = "system"  # type: ignore[valid-type]
    model_id: str = Field("gpt-4o-mini", min_length=1)
    slides_per_minute: float = Field(6.0, gt=0, le=30)
    target_slide_count: int = Field(10, ge=1, le=30)
    transcription_provider: Literal[TRANSCRIPTION_PROVIDERS] = "openai"  # type: ignore[valid-type]
    whisper_model: Literal[WHISPER_MODEL_OPTIONS] = "base"  # type: ignore[valid-type]


class ForwardedRootPathMiddleware:
    """Apply proxy-provided root path information to incoming requests."""

    def __init__(self, app: ASGIApp) -> None:
        self._app = app

    async def __call__(self, scope: Scope, receive: Receive, send: Send) -> None:
        if scope.get("type") not in {"http", "websocket"}:
            await self._app(scope, receive, send)
            return

        prefix = _extract_forwarded_prefix(scope)
        if prefix is None:
            await self._app(scope, receive, send)
            return

        adjusted_scope = dict(scope)
        adjusted_scope["root_path"] = prefix
        adjusted_scope["path"] = _trim_path(scope.get("path", "/"), prefix)

        raw_path = scope.get("raw_path")
        if isinstance(raw_path, (bytes, bytearray)):
            adjusted_scope["raw_path"] = _trim_path(raw_path.decode("latin-1"), prefix).encode("latin-1")

        await self._app(adjusted_scope, receive, send)


def _normalize_root_path(value: Optional[str]) -> str:
    if value is None:
        return ""
    normalized = value.strip()
    if not normalized:
        return ""
    if not normalized.startswith("/"):
        normalized = f"/{normalized}"
    return normalized.rstrip("/")


def _headers_to_dict(scope: Scope) -> Dict[str, str]:
    headers: Dict[str, str] = {}
    for key, value in scope.get("headers", []):
        lower_key = key.decode("latin-1").lower()
        headers.setdefault(lower_key, value.decode("latin-1"))
    return headers


def _normalize_forwarded_prefix(value: Optional[str]) -> Optional[str]:
    if value is None:
        return None
    candidate = value.split(",", 1)[0].strip()
    if not candidate:
        return None
    return _normalize_root_path(candidate) or None


def _extract_forwarded_prefix(scope: Scope) -> Optional[str]:
    headers = _headers_to_dict(scope)

    prefix = _normalize_forwarded_prefix(headers.get("x-forwarded-prefix"))
    if prefix is not None:
        return prefix

    forwarded_path = headers.get("x-forwarded-path")
    if forwarded_path:
        candidate = forwarded_path.split(",", 1)[0].strip()
        current_path = scope.get("path") or "/"
        if candidate.endswith(current_path):
            return _normalize_forwarded_prefix(candidate[: len(candidate) - len(current_path)])
    return None


def _trim_path(path: Any, prefix: str) -> str:
    working = str(path) or "/"
    if not working.startswith("/"):
        working = f"/{working}"
    if prefix and working.startswith(prefix):
        working = working[len(prefix) :] or "/"
    if not working.startswith("/"):
        working = f"/{working}"
    return working


def _status_title(status_code: int) -> str:
    if status_code == 404:
        return "Not found"
    if status_code >= 500:
        return "Server error"
    return "Request failed"


def create_app(
    repository: ProjectRepository,
    *,
    config: AppConfig,
    root_path: str | None = None,
    slide_generator: Optional[SlideGenerator] = None,
    transcription_engine: Optional[TranscriptionEngine] = None,
    frame_extractor: Optional[FrameExtractor] = None,
) -> FastAPI:
    """Return a configured FastAPI application.

    The optional collaborators replace the OpenAI/FFmpeg backed defaults,
    which keeps the HTTP surface testable without network access.
    """

    normalized_root = _normalize_root_path(
        root_path if root_path is not None else os.environ.get("DISTILL_ROOT_PATH")
    )
    usage_service = UsageService(repository, config)

    @contextlib.asynccontextmanager
    async def _lifespan(_app: FastAPI):
        removed = await asyncio.get_running_loop().run_in_executor(
            None, usage_service.purge_expired_projects
        )
        if removed:
            LOGGER.info("Removed %s expired project(s) on startup", len(removed))
        yield

    app = FastAPI(
        title="Distill",
        description="Turn lecture videos and transcripts into slide decks",
        root_path=normalized_root,
        request_class=LargeUploadRequest,
        lifespan=_lifespan,
    )
    app.state.server = None

    def _repository_event_emitter(event_type: str, message: str, **kwargs: Any) -> None:
        if event_type == "DB_QUERY":
            _emit_db_event(message, **kwargs)
        elif event_type == "FILE_OP":
            _emit_file_event(message, **kwargs)
        else:
            _emit_debug_event(event_type, message, **kwargs)

    repository.configure_event_emitter(_repository_event_emitter)
    root_logger = logging.getLogger()
    debug_handler = next(
        (handler for handler in root_logger.handlers if isinstance(handler, DebugLogHandler)),
        None,
    )
    if debug_handler is None:
        debug_handler = DebugLogHandler()
        root_logger.addHandler(debug_handler)
    app.state.debug_log_handler = debug_handler
    app.add_middleware(RequestContextMiddleware)
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_methods=["*"],
        allow_headers=["*"],
    )
    app.add_middleware(ForwardedRootPathMiddleware)

    settings_store = SettingsStore(config)
    notifications = NotificationCenter()
    progress_tracker = ProjectProgressTracker()
    frame_service = FrameLibraryService(repository, config, extractor=frame_extractor)
    app.state.notifications = notifications
    app.state.progress_tracker = progress_tracker
    app.state.settings_store = settings_store

    def _resolve_slide_generator() -> SlideGenerator:
        if slide_generator is not None:
            return slide_generator
        return OpenAISlideGenerator(model=settings_store.load().model_id or config.openai_model)

    def _resolve_transcription_engine() -> TranscriptionEngine:
        if transcription_engine is not None:
            return transcription_engine
        settings = settings_store.load()
        if settings.transcription_provider == "local":
            try:
                return FasterWhisperTranscription(
                    settings.whisper_model, download_root=config.assets_root
                )
            except RuntimeError as error:
                raise HTTPException(status_code=503, detail=str(error)) from error
        return OpenAIWhisperTranscription()

    def _build_ingestor(engine: Optional[TranscriptionEngine] = None) -> ProjectIngestor:
        return ProjectIngestor(
            config,
            repository,
            transcription_engine=engine,
            transcription_provider=settings_store.load().transcription_provider,
        )

    def _slide_service() -> SlideService:
        return SlideService(repository, _resolve_slide_generator())

    def _require_project(project_id: int) -> ProjectRecord:
        project = repository.get_project(project_id)
        if project is None:
            raise HTTPException(status_code=404, detail="Project not found")
        return project

    def _require_folder(folder_id: int) -> FolderRecord:
        folder = repository.get_folder(folder_id)
        if folder is None:
            raise HTTPException(status_code=404, detail="Folder not found")
        return folder

    async def _run_blocking(operation: Callable[[], T], *, context_label: str) -> T:
        """Run ``operation`` in a worker thread, keeping the correlation context."""

        loop = asyncio.get_running_loop()
        parent_context = contextvars.copy_context()
        job_id = _new_correlation_id()

        def _invoke() -> T:
            job_token = _JOB_ID_VAR.set(job_id)
            actor_token = _ACTOR_VAR.set(_format_actor_label("job", context_label))
            try:
                return operation()
            finally:
                _ACTOR_VAR.reset(actor_token)
                _JOB_ID_VAR.reset(job_token)

        return await loop.run_in_executor(None, lambda: parent_context.run(_invoke))

    def _slide_call(operation: Callable[[], T]) -> T:
        try:
            return operation()
        except ProjectNotFoundError as error:
            raise HTTPException(status_code=404, detail="Project not found") from error
        except (IndexError, ValueError) as error:
            raise HTTPException(status_code=400, detail=str(error)) from error

    @app.exception_handler(StarletteHTTPException)
    async def _handle_http_exception(request: Request, exc: StarletteHTTPException) -> Response:
        if exc.status_code >= 400:
            notifications.error(_status_title(exc.status_code), str(exc.detail or ""))
        return await http_exception_handler(request, exc)

    @app.exception_handler(RequestValidationError)
    async def _handle_validation_error(request: Request, exc: RequestValidationError) -> Response:
        notifications.error("Invalid request", "The submitted data could not be validated.")
        return await request_validation_exception_handler(request, exc)

    @app.get("/storage/{path:path}")
    async def serve_storage_file(path: str) -> FileResponse:
        try:
            target = _resolve_storage_path(config.storage_root, path)
        except ValueError as error:
            raise HTTPException(status_code=404, detail="File not found") from error
        if not target.exists() or target.is_dir():
            raise HTTPException(status_code=404, detail="File not found")
        return FileResponse(target)

    # ------------------------------------------------------------------
    # Projects
    # ------------------------------------------------------------------
    @app.get("/api/projects")
    async def list_projects(limit: Optional[int] = Query(None, ge=1)) -> Dict[str, Any]:
        projects = [
            _serialize_project(record, include_transcript=False)
            for record in repository.list_projects(limit=limit)
        ]
        _log_event("Listed projects", count=len(projects))
        return {"projects": projects, "total": repository.count_projects()}

    @app.get("/api/projects/recent")
    async def list_recent_projects(limit: int = Query(3, ge=1, le=50)) -> Dict[str, Any]:
        return {
            "projects": [
                _serialize_project(record, include_transcript=False)
                for record in repository.list_recent_projects(limit)
            ]
        }

    @app.get("/api/projects/{project_id}")
    async def get_project(project_id: int) -> Dict[str, Any]:
        return {"project": _serialize_project(_require_project(project_id))}

    @app.put("/api/projects/{project_id}")
    async def update_project(project_id: int, payload: ProjectUpdatePayload) -> Dict[str, Any]:
        _require_project(project_id)
        updates = payload.model_dump(exclude_unset=True)
        if "title" in updates:
            title = (updates["title"] or "").strip()
            if not title:
                raise HTTPException(status_code=400, detail="Project title is required")
            updates["title"] = title
        if updates.get("folder_id") is not None:
            _require_folder(int(updates["folder_id"]))
        if updates:
            _log_event("Updating project", project_id=project_id, fields=sorted(updates))
            repository.update_project(project_id, **updates)
        return {"project": _serialize_project(_require_project(project_id))}

    @app.delete(
        "/api/projects/{project_id}",
        status_code=status.HTTP_204_NO_CONTENT,
        response_class=Response,
    )
    async def delete_project(project_id: int) -> Response:
        project = _require_project(project_id)
        _log_event("Deleting project", project_id=project_id)
        repository.remove_project(project_id)
        await _run_blocking(
            lambda: usage_service.remove_project_files(project_id), context_label="delete_project"
        )
        await _run_blocking(usage_service.sync_storage_usage, context_label="storage_sync")
        progress_tracker.clear(project_id)
        notifications.success("Project deleted", project.title)
        return Response(status_code=status.HTTP_204_NO_CONTENT)

    @app.get("/api/projects/{project_id}/progress")
    async def get_project_progress(project_id: int) -> Dict[str, Any]:
        _require_project(project_id)
        return {"progress": progress_tracker.get(project_id)}

    # ------------------------------------------------------------------
    # Project creation
    # ------------------------------------------------------------------
    @app.post("/api/projects/video", status_code=status.HTTP_201_CREATED)
    async def upload_video(
        file: UploadFile = File(...),
        title: Optional[str] = Form(None),
        description: str = Form(""),
        context_prompt: str = Form(""),
        folder_id: Optional[int] = Form(None),
        slides_per_minute: float = Form(6.0),
    ) -> Dict[str, Any]:
        file_name = Path(file.filename or "").name
        if not file_name:
            raise HTTPException(status_code=400, detail="No file was uploaded")
        if folder_id is not None:
            _require_folder(folder_id)
        settings = settings_store.load()

        with TemporaryDirectory(prefix="distill-upload-") as scratch:
            staged = Path(scratch) / file_name
            size = await _persist_upload_file(file, staged)
            limit = get_max_upload_bytes()
            if limit > 0 and size > limit:
                raise HTTPException(
                    status_code=413,
                    detail=f"File is too large ({size} bytes, limit {limit} bytes)",
                )
            _log_event("Received video upload", file_name=file_name, size=size)
            ingestor = _build_ingestor()
            try:
                record = await _run_blocking(
                    lambda: ingestor.create_from_video(
                        staged,
                        title=(title or "").strip() or None,
                        description=description,
                        context_prompt=context_prompt,
                        folder_id=folder_id,
                        model_id=settings.model_id,
                        slides_per_minute=slides_per_minute,
                        original_file_name=file_name,
                    ),
                    context_label="upload",
                )
            except IngestionError as error:
                raise HTTPException(status_code=400, detail=str(error)) from error

        await _run_blocking(usage_service.sync_storage_usage, context_label="storage_sync")
        notifications.success("Video uploaded", record.title)
        return {"project": _serialize_project(record)}

    @app.post("/api/projects/transcript", status_code=status.HTTP_201_CREATED)
    async def create_transcript_project(payload: TranscriptProjectPayload) -> Dict[str, Any]:
        if payload.folder_id is not None:
            _require_folder(payload.folder_id)
        try:
            record = _build_ingestor().create_from_transcript(
                payload.transcript,
                title=(payload.title or "").strip() or None,
                description=payload.description,
                context_prompt=payload.context_prompt,
                folder_id=payload.folder_id,
                model_id=settings_store.load().model_id,
                slides_per_minute=payload.slides_per_minute,
            )
        except IngestionError as error:
            raise HTTPException(status_code=400, detail=str(error)) from error
        notifications.success("Project created", record.title)
        return {"project": _serialize_project(record)}

    @app.post("/api/projects/url", status_code=status.HTTP_201_CREATED)
    async def create_url_project(payload: UrlProjectPayload) -> Dict[str, Any]:
        if payload.folder_id is not None:
            _require_folder(payload.folder_id)
        ingestor = _build_ingestor()
        try:
            record = await _run_blocking(
                lambda: ingestor.create_from_url(
                    payload.url.strip(),
                    title=(payload.title or "").strip() or None,
                    description=payload.description,
                    context_prompt=payload.context_prompt,
                    folder_id=payload.folder_id,
                    model_id=settings_store.load().model_id,
                    slides_per_minute=payload.slides_per_minute,
                ),
                context_label="url_import",
            )
        except IngestionError as error:
            raise HTTPException(status_code=400, detail=str(error)) from error
        notifications.success("Project created", record.title)
        return {"project": _serialize_project(record)}

    # ------------------------------------------------------------------
    # Transcription and chunks
    # ------------------------------------------------------------------
    @app.post("/api/projects/{project_id}/transcribe")
    async def transcribe_project(project_id: int) -> Dict[str, Any]:
        project = _require_project(project_id)
        if not project.source_file_path:
            raise HTTPException(status_code=400, detail="Project has no uploaded video to transcribe")
        ingestor = _build_ingestor(_resolve_transcription_engine())
        progress_tracker.start(project_id, "transcription", "Transcribing audio...")
        try:
            record = await _run_blocking(
                lambda: ingestor.transcribe_project(
                    project_id, progress_callback=progress_tracker.callback(project_id)
                ),
                context_label="transcription",
            )
        except IngestionError as error:
            progress_tracker.fail(project_id, str(error))
            raise HTTPException(status_code=502, detail=str(error)) from error
        except OpenAIError as error:
            progress_tracker.fail(project_id, str(error))
            raise HTTPException(
                status_code=503, detail=f"Transcription service unavailable: {error}"
            ) from error
        progress_tracker.finish(project_id, "Transcription complete")
        notifications.success("Transcription complete", record.title)
        return {"project": _serialize_project(record)}

    @app.get("/api/projects/{project_id}/transcript")
    async def get_transcript(
        project_id: int,
        speakers: bool = True,
        paragraphs: bool = True,
        timestamps: bool = False,
    ) -> Dict[str, Any]:
        project = _require_project(project_id)
        options = TranscriptFormatOptions(
            include_timestamps=timestamps,
            format_speakers=speakers,
            add_paragraphs=paragraphs,
        )
        segments = _build_ingestor().transcript_segments(project_id) if timestamps else []
        raw = project.transcript or ""
        return {
            "transcript": render_transcript(raw, options, segments),
            "sections": extract_sections(raw),
            "hasSections": has_multiple_sections(raw),
            "wordCount": word_count(raw),
            "hasSegments": bool(segments),
        }

    @app.post("/api/projects/{project_id}/chunks/plan")
    async def plan_project_chunks(project_id: int, payload: ChunkPlanPayload) -> Dict[str, Any]:
        _require_project(project_id)
        try:
            chunking = _build_ingestor().plan_chunks(project_id, force=payload.force)
        except IngestionError as error:
            raise HTTPException(status_code=400, detail=str(error)) from error
        return {"chunking": chunking, "isChunked": bool(chunking)}

    @app.get("/api/projects/{project_id}/chunks")
    async def get_chunk_status(project_id: int) -> Dict[str, Any]:
        chunking = _require_project(project_id).chunking
        return {"chunking": chunking, "isChunked": bool(chunking.get("chunks"))}

    @app.put("/api/projects/{project_id}/chunks/{chunk_index}")
    async def set_chunk_status(
        project_id: int, chunk_index: int, payload: ChunkStatusPayload
    ) -> Dict[str, Any]:
        chunking = _require_project(project_id).chunking
        if not chunking.get("chunks"):
            raise HTTPException(status_code=400, detail="Project is not chunked")
        try:
            updated = update_chunk_status(chunking, chunk_index, payload.status, error=payload.error)
        except (IndexError, ValueError) as error:
            raise HTTPException(status_code=400, detail=str(error)) from error
        repository.merge_video_metadata(project_id, {"chunking": updated})
        return {"chunking": updated}

    # ------------------------------------------------------------------
    # Slides
    # ------------------------------------------------------------------
    @app.get("/api/projects/{project_id}/slides")
    async def get_slides(project_id: int) -> Dict[str, Any]:
        slides = _slide_call(lambda: _slide_service().load_slides(project_id))
        return {"slides": slides, "imageCounts": image_counts(slides)}

    @app.post("/api/projects/{project_id}/slides/generate")
    async def generate_slides(project_id: int, payload: GenerateSlidesPayload) -> Dict[str, Any]:
        project = _require_project(project_id)
        service = _slide_service()
        progress_tracker.start(project_id, "slides", "Generating slides...")
        try:
            outcome = await _run_blocking(
                lambda: service.generate_for_project(
                    project_id,
                    context_prompt=payload.context_prompt,
                    slides_per_minute=payload.slides_per_minute,
                    title=payload.title,
                ),
                context_label="slides",
            )
        except SlideGenerationError as error:
            progress_tracker.fail(project_id, str(error))
            status_code = 400 if not project.transcript else 502
            raise HTTPException(status_code=status_code, detail=str(error)) from error
        except OpenAIError as error:
            progress_tracker.fail(project_id, str(error))
            raise HTTPException(
                status_code=503, detail=f"Slide generation service unavailable: {error}"
            ) from error
        progress_tracker.finish(project_id, "Slides generated")
        for warning in outcome.warnings:
            notifications.warning("Long transcript", warning)
        notifications.success("Slides generated", f"{len(outcome.slides)} slides created")
        return {
            "slides": outcome.slides,
            "targetSlides": outcome.target_slides,
            "warnings": outcome.warnings,
            "usage": {
                "modelId": outcome.usage.model_id,
                "inputTokens": outcome.usage.input_tokens,
                "outputTokens": outcome.usage.output_tokens,
                "totalTokens": outcome.usage.total_tokens,
                "estimatedCost": outcome.usage.estimated_cost,
            },
        }

    @app.put("/api/projects/{project_id}/slides")
    async def replace_slides(project_id: int, payload: SlidesPayload) -> Dict[str, Any]:
        slides = _slide_call(lambda: _slide_service().replace_slides(project_id, payload.slides))
        return {"slides": slides}

    @app.post("/api/projects/{project_id}/slides", status_code=status.HTTP_201_CREATED)
    async def add_slide(project_id: int, payload: SlideAddPayload) -> Dict[str, Any]:
        return _slide_call(lambda: _slide_service().add_slide(project_id, payload.after_index))

    @app.put("/api/projects/{project_id}/slides/{slide_index}")
    async def update_slide(
        project_id: int, slide_index: int, payload: SlideUpdatePayload
    ) -> Dict[str, Any]:
        changes = payload.model_dump(exclude_unset=True)
        slides = _slide_call(lambda: _slide_service().update_slide(project_id, slide_index, changes))
        return {"slides": slides}

    @app.delete("/api/projects/{project_id}/slides/{slide_index}")
    async def delete_slide(project_id: int, slide_index: int) -> Dict[str, Any]:
        return _slide_call(lambda: _slide_service().delete_slide(project_id, slide_index))

    @app.post("/api/projects/{project_id}/slides/{slide_index}/images")
    async def add_slide_image(
        project_id: int, slide_index: int, payload: SlideImagePayload
    ) -> Dict[str, Any]:
        slides = _slide_call(
            lambda: _slide_service().add_image(project_id, slide_index, payload.image_url)
        )
        return {"slides": slides}

    @app.delete("/api/projects/{project_id}/slides/{slide_index}/images")
    async def remove_slide_image(
        project_id: int, slide_index: int, url: str = Query(..., min_length=1)
    ) -> Dict[str, Any]:
        slides = _slide_call(lambda: _slide_service().remove_image(project_id, slide_index, url))
        return {"slides": slides}

    @app.post("/api/projects/{project_id}/slides/{slide_index}/frames")
    async def select_frames_for_slide(
        project_id: int, slide_index: int, payload: FrameListPayload
    ) -> Dict[str, Any]:
        _require_project(project_id)
        try:
            validate_selection(payload.frames)
        except ValueError as error:
            raise HTTPException(status_code=400, detail=str(error)) from error
        result = _slide_call(
            lambda: frame_service.select_for_slide(project_id, slide_index, payload.frames)
        )
        notifications.success("Frames applied", f"{len(payload.frames)} frame(s) added to slide")
        return result

    # ------------------------------------------------------------------
    # Frames
    # ------------------------------------------------------------------
    @app.get("/api/projects/{project_id}/frames")
    async def list_frames(project_id: int) -> Dict[str, Any]:
        return {"frames": _slide_call(lambda: frame_service.list_frames(project_id))}

    @app.get("/api/projects/{project_id}/frames/statistics")
    async def frame_statistics(project_id: int) -> Dict[str, Any]:
        return {"statistics": _slide_call(lambda: frame_service.statistics(project_id))}

    @app.post("/api/projects/{project_id}/frames/extract")
    async def extract_frames(project_id: int, payload: FrameExtractPayload) -> Dict[str, Any]:
        _require_project(project_id)
        try:
            result = await _run_blocking(
                lambda: frame_service.extract_for_slides(project_id, payload.timestamps),
                context_label="frames",
            )
        except ValueError as error:
            raise HTTPException(status_code=400, detail=str(error)) from error
        except MediaError as error:
            raise HTTPException(status_code=502, detail=str(error)) from error
        await _run_blocking(usage_service.sync_storage_usage, context_label="storage_sync")
        return result

    @app.post("/api/projects/{project_id}/frames/merge")
    async def merge_frames(project_id: int, payload: FrameListPayload) -> Dict[str, Any]:
        return {"frames": _slide_call(lambda: frame_service.merge_and_save(project_id, payload.frames))}

    @app.post("/api/projects/{project_id}/frames/delete")
    async def delete_frames(project_id: int, payload: FrameDeletePayload) -> Dict[str, Any]:
        frames = _slide_call(lambda: frame_service.delete_frames(project_id, payload.frame_ids))
        return {"frames": frames}

    @app.post("/api/projects/{project_id}/frames/purge-unused")
    async def purge_unused_frames(project_id: int) -> Dict[str, Any]:
        result = _slide_call(lambda: frame_service.purge_unused(project_id))
        if result["removed"]:
            notifications.info("Frames removed", f"Deleted {result['removed']} unused frame(s)")
        return result

    @app.post("/api/projects/{project_id}/frames/apply")
    async def apply_frames_to_slides(project_id: int) -> Dict[str, Any]:
        return _slide_call(lambda: frame_service.apply_to_slides(project_id))

    # ------------------------------------------------------------------
    # Export
    # ------------------------------------------------------------------
    @app.get("/api/projects/{project_id}/export/{export_format}")
    async def export_project(project_id: int, export_format: str) -> Response:
        project = _require_project(project_id)
        if export_format not in EXPORT_FORMATS:
            raise HTTPException(status_code=400, detail=f"Unsupported export format: {export_format}")
        if not project.slides:
            raise HTTPException(status_code=400, detail="Project has no slides to export")
        file_name = export_file_name(project.title, export_format)
        _log_event("Exporting project", project_id=project_id, format=export_format)

        if export_format == "pdf":
            target = config.projects_root / str(project_id) / "exports" / file_name
            try:
                await _run_blocking(
                    lambda: export_pdf(
                        project.title, project.slides, target, storage_root=config.storage_root
                    ),
                    context_label="export",
                )
            except ExportError as error:
                raise HTTPException(status_code=503, detail=str(error)) from error
            return FileResponse(target, media_type="application/pdf", filename=file_name)

        body = export_anki(project.slides) if export_format == "anki" else export_csv(project.slides)
        return Response(
            content=body,
            media_type="text/csv; charset=utf-8",
            headers={"Content-Disposition": f'attachment; filename="{file_name}"'},
        )

    # ------------------------------------------------------------------
    # Folders
    # ------------------------------------------------------------------
    @app.get("/api/folders")
    async def list_folders() -> Dict[str, Any]:
        folders = [
            _serialize_folder(record, len(repository.list_projects(folder_id=record.id)))
            for record in repository.list_folders()
        ]
        return {"folders": folders}

    @app.post("/api/folders", status_code=status.HTTP_201_CREATED)
    async def create_folder(payload: FolderCreatePayload) -> Dict[str, Any]:
        name = payload.name.strip()
        if not name:
            raise HTTPException(status_code=400, detail="Folder name is required")
        folder_id = repository.add_folder(name, payload.description.strip())
        notifications.success("Folder created", name)
        return {"folder": _serialize_folder(_require_folder(folder_id))}

    @app.put("/api/folders/{folder_id}")
    async def update_folder(folder_id: int, payload: FolderUpdatePayload) -> Dict[str, Any]:
        _require_folder(folder_id)
        name = payload.name.strip() if payload.name is not None else None
        if name is not None and not name:
            raise HTTPException(status_code=400, detail="Folder name is required")
        description = payload.description.strip() if payload.description is not None else None
        repository.update_folder(folder_id, name=name, description=description)
        record = _require_folder(folder_id)
        return {"folder": _serialize_folder(record, len(repository.list_projects(folder_id=folder_id)))}

    @app.delete(
        "/api/folders/{folder_id}",
        status_code=status.HTTP_204_NO_CONTENT,
        response_class=Response,
    )
    async def delete_folder(folder_id: int) -> Response:
        _require_folder(folder_id)
        repository.remove_folder(folder_id)
        return Response(status_code=status.HTTP_204_NO_CONTENT)

    @app.get("/api/folders/unfiled/projects")
    async def list_unfiled_projects() -> Dict[str, Any]:
        return {
            "projects": [
                _serialize_project(record, include_transcript=False)
                for record in repository.list_projects(folder_id=None)
            ]
        }

    @app.get("/api/folders/{folder_id}/projects")
    async def list_folder_projects(folder_id: int) -> Dict[str, Any]:
        _require_folder(folder_id)
        return {
            "projects": [
                _serialize_project(record, include_transcript=False)
                for record in repository.list_projects(folder_id=folder_id)
            ]
        }

    @app.post("/api/folders/move")
    async def move_projects(payload: FolderMovePayload) -> Dict[str, Any]:
        if payload.folder_id is not None:
            _require_folder(payload.folder_id)
        moved = repository.move_projects_to_folder(payload.project_ids, payload.folder_id)
        return {"moved": moved}

    # ------------------------------------------------------------------
    # Usage and storage
    # ------------------------------------------------------------------
    @app.get("/api/usage")
    async def usage_stats() -> Dict[str, Any]:
        return {"usage": usage_service.usage_stats()}

    @app.get("/api/usage/daily")
    async def daily_usage(days: int = Query(7, ge=1, le=90)) -> Dict[str, Any]:
        return {"days": usage_service.daily_usage(days)}

    @app.post("/api/usage/reset")
    async def reset_usage() -> Dict[str, Any]:
        removed = usage_service.reset_usage()
        notifications.success("Usage reset", f"Removed {removed} usage record(s)")
        return {"removed": removed}

    @app.get("/api/storage/info")
    async def storage_info() -> Dict[str, Any]:
        return usage_service.storage_info()

    @app.get("/api/storage/breakdown")
    async def storage_breakdown() -> Dict[str, Any]:
        return {"breakdown": await _run_blocking(usage_service.storage_breakdown, context_label="storage")}

    @app.post("/api/storage/sync")
    async def sync_storage() -> Dict[str, Any]:
        return await _run_blocking(usage_service.sync_storage_usage, context_label="storage_sync")

    @app.post("/api/storage/cleanup")
    async def cleanup_storage() -> Dict[str, Any]:
        result = await _run_blocking(usage_service.cleanup_orphaned_files, context_label="cleanup")
        notifications.success("Cleanup complete", result["message"])
        return result

    @app.post("/api/storage/purge-expired")
    async def purge_expired() -> Dict[str, Any]:
        removed = await _run_blocking(usage_service.purge_expired_projects, context_label="retention")
        return {"removed": removed}

    @app.get("/api/storage/disk")
    async def disk_usage() -> Dict[str, Any]:
        return usage_service.disk_usage()

    # ------------------------------------------------------------------
    # Settings, notifications and diagnostics
    # ------------------------------------------------------------------
    @app.get("/api/settings")
    async def get_settings() -> Dict[str, Any]:
        settings = settings_store.load()
        _log_event("Loaded settings", theme=settings.theme, model_id=settings.model_id)
        return {"settings": asdict(settings)}

    @app.put("/api/settings")
    async def update_settings(payload: SettingsPayload) -> Dict[str, Any]:
        settings = UISettings(**payload.model_dump())
        settings_store.save(settings)
        _log_event(
            "Persisted settings",
            theme=settings.theme,
            model_id=settings.model_id,
            transcription_provider=settings.transcription_provider,
        )
        return {"settings": asdict(settings)}

    @app.get("/api/notifications")
    async def get_notifications(after: Optional[int] = None) -> Dict[str, Any]:
        entries = notifications.collect(after)
        return {"notifications": entries, "next": notifications.last_id}

    @app.delete(
        "/api/notifications",
        status_code=status.HTTP_204_NO_CONTENT,
        response_class=Response,
    )
    async def clear_notifications() -> Response:
        notifications.clear()
        return Response(status_code=status.HTTP_204_NO_CONTENT)

    @app.get("/api/debug/logs")
    async def get_debug_logs(after: Optional[int] = None) -> Dict[str, Any]:
        handler: DebugLogHandler = app.state.debug_log_handler
        entries = handler.collect(after)
        next_marker = handler.last_id if entries else (after or handler.last_id)
        return {"logs": entries, "next": next_marker}

    @app.get("/api/debug/logs/download")
    async def download_debug_logs() -> Response:
        handler: DebugLogHandler = app.state.debug_log_handler
        start_label = handler.started_at.strftime("%Y%m%d-%H%M%S")
        end_label = datetime.now(timezone.utc).strftime("%Y%m%d-%H%M%S")
        filename = f"{start_label}_to_{end_label}.log"
        return Response(
            content=handler.export_text(),
            media_type="text/plain; charset=utf-8",
            headers={"Content-Disposition": f'attachment; filename="{filename}"'},
        )

    return app


__all__ = [
    "DebugLogHandler",
    "ForwardedRootPathMiddleware",
    "ProjectProgressTracker",
    "RequestContextMiddleware",
    "create_app",
    "get_max_upload_bytes",
]
