"""Persistence helpers backed by SQLite."""

from __future__ import annotations

import contextlib
import json
import logging
import sqlite3
import time
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Dict, Iterable, List, Optional, Sequence, Tuple

from ..config import AppConfig
from .formatting import parse_datetime, utc_now


@dataclass
class FolderRecord:
    id: int
    name: str
    description: str
    created_at: str
    updated_at: str


@dataclass
class ProjectRecord:
    id: int
    title: str
    description: str
    source_type: str
    source_url: Optional[str]
    source_file_path: Optional[str]
    transcript: Optional[str]
    context_prompt: str
    slides: List[Dict[str, Any]]
    video_metadata: Dict[str, Any]
    extracted_frames: List[Dict[str, Any]]
    folder_id: Optional[int]
    model_id: Optional[str]
    slides_per_minute: float
    target_slide_count: int
    expires_at: Optional[str]
    created_at: str
    updated_at: str

    @property
    def duration(self) -> Optional[float]:
        value = self.video_metadata.get("duration")
        try:
            return float(value) if value else None
        except (TypeError, ValueError):
            return None

    @property
    def chunking(self) -> Dict[str, Any]:
        chunking = self.video_metadata.get("chunking")
        return chunking if isinstance(chunking, dict) else {}


@dataclass
class UsageRecord:
    id: int
    project_id: Optional[int]
    model_id: str
    input_tokens: int
    output_tokens: int
    total_tokens: int
    estimated_cost: float
    created_at: str


@dataclass
class StorageTierRecord:
    id: int
    name: str
    storage_limit: int
    price: float
    is_default: bool


@dataclass
class StorageUsageRecord:
    tier_id: Optional[int]
    storage_used: int
    breakdown: Dict[str, int] = field(default_factory=dict)
    updated_at: Optional[str] = None


_MISSING = object()

_PROJECT_COLUMNS = (
    "id, title, description, source_type, source_url, source_file_path, transcript, "
    "context_prompt, slides, video_metadata, extracted_frames, folder_id, model_id, "
    "slides_per_minute, target_slide_count, expires_at, created_at, updated_at"
)

# Fields stored as JSON text.
_JSON_FIELDS = {"slides": list, "video_metadata": dict, "extracted_frames": list}

_UPDATABLE_PROJECT_FIELDS = (
    "title",
    "description",
    "source_type",
    "source_url",
    "source_file_path",
    "transcript",
    "context_prompt",
    "slides",
    "video_metadata",
    "extracted_frames",
    "folder_id",
    "model_id",
    "slides_per_minute",
    "target_slide_count",
    "expires_at",
)


LOGGER = logging.getLogger(__name__)


def _now_iso() -> str:
    return utc_now().isoformat()


def _dump_json(value: Any) -> str:
    return json.dumps(value, ensure_ascii=False)


def _load_json(raw: Optional[str], default_factory: Callable[[], Any]) -> Any:
    if raw in (None, ""):
        return default_factory()
    try:
        value = json.loads(raw)
    except (TypeError, ValueError):
        LOGGER.warning("Discarding malformed JSON column value: %.80s", raw)
        return default_factory()
    if not isinstance(value, default_factory):
        return default_factory()
    return value


class ProjectRepository:
    """CRUD helpers for projects, folders, usage and storage accounting."""

    def __init__(
        self,
        config: AppConfig,
        *,
        event_emitter: Optional[Callable[..., None]] = None,
    ) -> None:
        self._db_path = config.database_file
        self._retention_hours = config.retention_hours
        self._event_emitter: Optional[Callable[..., None]] = event_emitter

    def configure_event_emitter(self, emitter: Optional[Callable[..., None]]) -> None:
        """Register the callable responsible for emitting debug events."""

        self._event_emitter = emitter

    @contextlib.contextmanager
    def _track_db_event(self, action: str, **payload: Any):
        """Emit a structured debug event capturing execution time for a DB action."""

        if self._event_emitter is None:
            yield payload
            return

        start = time.perf_counter()
        event_payload: Dict[str, Any] = dict(payload)
        error: BaseException | None = None
        try:
            yield event_payload
        except Exception as exc:  # pragma: no cover - instrumentation only
            error = exc
            event_payload.setdefault("status", "error")
            event_payload.setdefault("error", f"{exc.__class__.__name__}: {exc}")
            raise
        finally:
            duration_ms = (time.perf_counter() - start) * 1000.0
            if error is None:
                event_payload.setdefault("status", "ok")
            filtered = {
                key: value for key, value in event_payload.items() if value is not None
            }
            self._event_emitter(
                "DB_QUERY",
                action,
                payload=filtered,
                duration_ms=duration_ms,
            )

    @staticmethod
    def _summarize_sql(statement: str) -> str:
        collapsed = " ".join(statement.strip().split())
        return collapsed[:180] + ("…" if len(collapsed) > 180 else "")

    def _execute(
        self,
        connection: sqlite3.Connection,
        statement: str,
        parameters: Sequence[Any] | Tuple[Any, ...] | None = None,
        *,
        action: str,
        table: Optional[str] = None,
    ) -> sqlite3.Cursor:
        params: Tuple[Any, ...] = tuple(parameters) if parameters is not None else ()
        with self._track_db_event(
            action,
            table=table,
            sql=self._summarize_sql(statement),
            parameter_count=len(params),
        ) as event:
            try:
                cursor = connection.execute(statement, params)
            except Exception as exc:
                event.setdefault("status", "error")
                event.setdefault("error", f"{exc.__class__.__name__}: {exc}")
                raise
            if cursor.rowcount is not None and cursor.rowcount >= 0:
                event.setdefault("rowcount", int(cursor.rowcount))
            return cursor

    @contextlib.contextmanager
    def _connect(self):
        LOGGER.debug("Opening SQLite connection to %s", self._db_path)
        with self._track_db_event("connect", database=str(self._db_path)) as event:
            connection = sqlite3.connect(self._db_path)
            event.setdefault("sqlite_version", sqlite3.sqlite_version)
        connection.row_factory = sqlite3.Row
        try:
            self._execute(connection, "PRAGMA foreign_keys = ON", action="pragma_foreign_keys")
            with connection:
                yield connection
        finally:
            connection.close()

    # ------------------------------------------------------------------
    # Row mapping
    # ------------------------------------------------------------------
    @staticmethod
    def _row_to_project(row: sqlite3.Row) -> ProjectRecord:
        values = dict(row)
        for column, factory in _JSON_FIELDS.items():
            values[column] = _load_json(values.get(column), factory)
        values["description"] = values.get("description") or ""
        values["context_prompt"] = values.get("context_prompt") or ""
        values["slides_per_minute"] = float(values.get("slides_per_minute") or 6)
        values["target_slide_count"] = int(values.get("target_slide_count") or 10)
        return ProjectRecord(**values)

    @staticmethod
    def _row_to_folder(row: sqlite3.Row) -> FolderRecord:
        values = dict(row)
        values["description"] = values.get("description") or ""
        return FolderRecord(**values)

    # ------------------------------------------------------------------
    # Folders
    # ------------------------------------------------------------------
    def add_folder(self, name: str, description: str = "") -> int:
        LOGGER.debug("Adding folder '%s'", name)
        timestamp = _now_iso()
        with self._track_db_event("add_folder", table="folders", name=name) as event:
            with self._connect() as connection:
                cursor = self._execute(
                    connection,
                    "INSERT INTO folders(name, description, created_at, updated_at) VALUES (?, ?, ?, ?)",
                    (name, description or "", timestamp, timestamp),
                    action="folders.insert",
                    table="folders",
                )
                folder_id = int(cursor.lastrowid)
                event["folder_id"] = folder_id
                LOGGER.debug("Folder '%s' inserted with id=%s", name, folder_id)
                return folder_id

    def get_folder(self, folder_id: int) -> Optional[FolderRecord]:
        with self._track_db_event("get_folder", table="folders", folder_id=folder_id) as event:
            with self._connect() as connection:
                row = self._execute(
                    connection,
                    "SELECT id, name, description, created_at, updated_at FROM folders WHERE id = ?",
                    (folder_id,),
                    action="folders.lookup",
                    table="folders",
                ).fetchone()
                event["found"] = bool(row)
                return self._row_to_folder(row) if row else None

    def list_folders(self) -> List[FolderRecord]:
        with self._track_db_event("list_folders", table="folders") as event:
            with self._connect() as connection:
                rows = self._execute(
                    connection,
                    "SELECT id, name, description, created_at, updated_at FROM folders "
                    "ORDER BY name COLLATE NOCASE, id",
                    action="folders.list",
                    table="folders",
                ).fetchall()
                event["count"] = len(rows)
                return [self._row_to_folder(row) for row in rows]

    def update_folder(
        self,
        folder_id: int,
        *,
        name: Optional[str] = None,
        description: Optional[str] = None,
    ) -> bool:
        assignments: List[str] = []
        params: List[object] = []
        if name is not None:
            assignments.append("name = ?")
            params.append(name)
        if description is not None:
            assignments.append("description = ?")
            params.append(description)
        with self._track_db_event("update_folder", table="folders", folder_id=folder_id) as event:
            if not assignments:
                event["result"] = "no_changes"
                return self.get_folder(folder_id) is not None
            assignments.append("updated_at = ?")
            params.extend([_now_iso(), folder_id])
            with self._connect() as connection:
                cursor = self._execute(
                    connection,
                    "UPDATE folders SET " + ", ".join(assignments) + " WHERE id = ?",
                    params,
                    action="folders.update",
                    table="folders",
                )
                updated = cursor.rowcount > 0
                event["result"] = "updated" if updated else "missing"
                return updated

    def remove_folder(self, folder_id: int) -> bool:
        """Delete a folder after detaching the projects it contains."""

        LOGGER.debug("Removing folder id=%s", folder_id)
        with self._track_db_event("remove_folder", table="folders", folder_id=folder_id) as event:
            with self._connect() as connection:
                detached = self._execute(
                    connection,
                    "UPDATE projects SET folder_id = NULL, updated_at = ? WHERE folder_id = ?",
                    (_now_iso(), folder_id),
                    action="projects.detach_folder",
                    table="projects",
                ).rowcount
                cursor = self._execute(
                    connection,
                    "DELETE FROM folders WHERE id = ?",
                    (folder_id,),
                    action="folders.delete",
                    table="folders",
                )
                removed = cursor.rowcount > 0
                event.update({"detached_projects": int(detached), "result": "deleted" if removed else "missing"})
                return removed

    def move_projects_to_folder(self, project_ids: Iterable[int], folder_id: Optional[int]) -> int:
        """Assign *project_ids* to *folder_id* (``None`` moves them to the root)."""

        identifiers = [int(value) for value in project_ids]
        if not identifiers:
            return 0
        placeholders = ", ".join("?" for _ in identifiers)
        with self._track_db_event(
            "move_projects_to_folder",
            table="projects",
            folder_id=folder_id,
            project_count=len(identifiers),
        ) as event:
            with self._connect() as connection:
                cursor = self._execute(
                    connection,
                    f"UPDATE projects SET folder_id = ?, updated_at = ? WHERE id IN ({placeholders})",
                    (folder_id, _now_iso(), *identifiers),
                    action="projects.move",
                    table="projects",
                )
                moved = max(cursor.rowcount, 0)
                event["rowcount"] = moved
                LOGGER.debug("Moved %s project(s) to folder %s", moved, folder_id)
                return moved

    # ------------------------------------------------------------------
    # Projects
    # ------------------------------------------------------------------
    def add_project(
        self,
        title: str,
        *,
        source_type: str = "video",
        description: str = "",
        source_url: Optional[str] = None,
        source_file_path: Optional[str] = None,
        transcript: Optional[str] = None,
        context_prompt: str = "",
        video_metadata: Optional[Dict[str, Any]] = None,
        folder_id: Optional[int] = None,
        model_id: Optional[str] = None,
        slides_per_minute: float = 6.0,
        target_slide_count: int = 10,
        now: Optional[datetime] = None,
    ) -> int:
        created = now or utc_now()
        expires_at = created + timedelta(hours=self._retention_hours)
        LOGGER.debug(
            "Adding project '%s' (source_type=%s, transcript_length=%s)",
            title,
            source_type,
            len(transcript or ""),
        )
        with self._track_db_event(
            "add_project",
            table="projects",
            source_type=source_type,
            folder_id=folder_id,
        ) as event:
            with self._connect() as connection:
                cursor = self._execute(
                    connection,
                    """
                    INSERT INTO projects(
                        title, description, source_type, source_url, source_file_path,
                        transcript, context_prompt, slides, video_metadata, extracted_frames,
                        folder_id, model_id, slides_per_minute, target_slide_count,
                        expires_at, created_at, updated_at
                    ) VALUES (?, ?, ?, ?, ?, ?, ?, '[]', ?, '[]', ?, ?, ?, ?, ?, ?, ?)
                    """,
                    (
                        title,
                        description or "",
                        source_type,
                        source_url,
                        source_file_path,
                        transcript,
                        context_prompt or "",
                        _dump_json(video_metadata or {}),
                        folder_id,
                        model_id,
                        float(slides_per_minute),
                        int(target_slide_count),
                        expires_at.isoformat(),
                        created.isoformat(),
                        created.isoformat(),
                    ),
                    action="projects.insert",
                    table="projects",
                )
                project_id = int(cursor.lastrowid)
                event["project_id"] = project_id
                LOGGER.debug("Project '%s' inserted with id=%s", title, project_id)
                return project_id

    def get_project(self, project_id: int) -> Optional[ProjectRecord]:
        with self._track_db_event("get_project", table="projects", project_id=project_id) as event:
            with self._connect() as connection:
                row = self._execute(
                    connection,
                    f"SELECT {_PROJECT_COLUMNS} FROM projects WHERE id = ?",
                    (project_id,),
                    action="projects.lookup",
                    table="projects",
                ).fetchone()
                event["found"] = bool(row)
                return self._row_to_project(row) if row else None

    def list_projects(
        self,
        *,
        folder_id: Optional[int] | object = _MISSING,
        limit: Optional[int] = None,
    ) -> List[ProjectRecord]:
        """Return projects newest first, optionally scoped to a folder.

        ``folder_id=None`` selects projects that are not in any folder; leaving
        it out returns everything.
        """

        query = f"SELECT {_PROJECT_COLUMNS} FROM projects"
        params: List[object] = []
        if folder_id is None:
            query += " WHERE folder_id IS NULL"
        elif folder_id is not _MISSING:
            query += " WHERE folder_id = ?"
            params.append(folder_id)
        query += " ORDER BY created_at DESC, id DESC"
        if limit is not None:
            query += " LIMIT ?"
            params.append(int(limit))
        with self._track_db_event("list_projects", table="projects", limit=limit) as event:
            with self._connect() as connection:
                rows = self._execute(
                    connection, query, params, action="projects.list", table="projects"
                ).fetchall()
                event["count"] = len(rows)
                return [self._row_to_project(row) for row in rows]

    def list_recent_projects(self, limit: int = 3) -> List[ProjectRecord]:
        return self.list_projects(limit=limit)

    def list_expired_projects(self, now: Optional[datetime] = None) -> List[ProjectRecord]:
        reference = now or utc_now()
        expired: List[ProjectRecord] = []
        for project in self.list_projects():
            if not project.expires_at:
                continue
            if parse_datetime(project.expires_at) <= reference:
                expired.append(project)
        return expired

    def count_projects(self) -> int:
        with self._connect() as connection:
            row = self._execute(
                connection,
                "SELECT COUNT(*) FROM projects",
                action="projects.count",
                table="projects",
            ).fetchone()
            return int(row[0]) if row else 0

    def update_project(
        self,
        project_id: int,
        **changes: Any,
    ) -> bool:
        """Update the provided columns of a project.

        Only keyword arguments that are present are written, so ``None`` can be
        used to clear a nullable column. JSON columns accept Python values.
        """

        unknown = set(changes) - set(_UPDATABLE_PROJECT_FIELDS)
        if unknown:
            raise ValueError(f"Unknown project field(s): {', '.join(sorted(unknown))}")

        assignments: List[str] = []
        params: List[object] = []
        for column in _UPDATABLE_PROJECT_FIELDS:
            value = changes.get(column, _MISSING)
            if value is _MISSING:
                continue
            if column in _JSON_FIELDS:
                value = _dump_json(value if value is not None else _JSON_FIELDS[column]())
            assignments.append(f"{column} = ?")
            params.append(value)

        with self._track_db_event(
            "update_project",
            table="projects",
            project_id=project_id,
            changes=len(assignments),
        ) as event:
            if not assignments:
                LOGGER.debug("No changes requested for project id=%s", project_id)
                event["result"] = "no_changes"
                return self.get_project(project_id) is not None
            assignments.append("updated_at = ?")
            params.extend([_now_iso(), project_id])
            with self._connect() as connection:
                cursor = self._execute(
                    connection,
                    "UPDATE projects SET " + ", ".join(assignments) + " WHERE id = ?",
                    params,
                    action="projects.update",
                    table="projects",
                )
                updated = cursor.rowcount > 0
                event["result"] = "updated" if updated else "missing"
                LOGGER.debug("Project id=%s updated (%s)", project_id, ", ".join(assignments))
                return updated

    def update_slides(self, project_id: int, slides: List[Dict[str, Any]]) -> bool:
        return self.update_project(project_id, slides=slides)

    def update_frames(self, project_id: int, frames: List[Dict[str, Any]]) -> bool:
        return self.update_project(project_id, extracted_frames=frames)

    def merge_video_metadata(self, project_id: int, patch: Dict[str, Any]) -> Optional[Dict[str, Any]]:
        """Shallow-merge *patch* into the stored video metadata."""

        project = self.get_project(project_id)
        if project is None:
            return None
        merged = {**project.video_metadata, **patch}
        self.update_project(project_id, video_metadata=merged)
        return merged

    def remove_project(self, project_id: int) -> bool:
        LOGGER.debug("Removing project id=%s", project_id)
        with self._track_db_event("remove_project", table="projects", project_id=project_id) as event:
            with self._connect() as connection:
                cursor = self._execute(
                    connection,
                    "DELETE FROM projects WHERE id = ?",
                    (project_id,),
                    action="projects.delete",
                    table="projects",
                )
                removed = cursor.rowcount > 0
                event["result"] = "deleted" if removed else "missing"
                return removed

    # ------------------------------------------------------------------
    # Usage accounting
    # ------------------------------------------------------------------
    def add_usage_record(
        self,
        *,
        model_id: str,
        input_tokens: int,
        output_tokens: int,
        estimated_cost: float,
        project_id: Optional[int] = None,
        total_tokens: Optional[int] = None,
        created_at: Optional[datetime] = None,
    ) -> int:
        total = int(total_tokens if total_tokens is not None else input_tokens + output_tokens)
        stamp = (created_at or utc_now()).isoformat()
        with self._track_db_event(
            "add_usage_record",
            table="usage_records",
            project_id=project_id,
            total_tokens=total,
        ) as event:
            with self._connect() as connection:
                cursor = self._execute(
                    connection,
                    "INSERT INTO usage_records(project_id, model_id, input_tokens, output_tokens, "
                    "total_tokens, estimated_cost, created_at) VALUES (?, ?, ?, ?, ?, ?, ?)",
                    (
                        project_id,
                        model_id,
                        int(input_tokens),
                        int(output_tokens),
                        total,
                        float(estimated_cost),
                        stamp,
                    ),
                    action="usage_records.insert",
                    table="usage_records",
                )
                record_id = int(cursor.lastrowid)
                event["usage_id"] = record_id
                return record_id

    def usage_totals(self) -> Dict[str, Any]:
        with self._connect() as connection:
            row = self._execute(
                connection,
                "SELECT COALESCE(SUM(total_tokens), 0) AS total_tokens, COUNT(*) AS api_requests, "
                "COALESCE(SUM(estimated_cost), 0) AS estimated_cost, MAX(created_at) AS last_used "
                "FROM usage_records",
                action="usage_records.totals",
                table="usage_records",
            ).fetchone()
        return {
            "totalTokens": int(row["total_tokens"]),
            "apiRequests": int(row["api_requests"]),
            "estimatedCost": float(row["estimated_cost"]),
            "lastUsed": row["last_used"],
        }

    def list_usage_since(self, since: datetime) -> List[UsageRecord]:
        with self._connect() as connection:
            rows = self._execute(
                connection,
                "SELECT id, project_id, model_id, input_tokens, output_tokens, total_tokens, "
                "estimated_cost, created_at FROM usage_records WHERE created_at >= ? "
                "ORDER BY created_at",
                (since.isoformat(),),
                action="usage_records.since",
                table="usage_records",
            ).fetchall()
        return [UsageRecord(**dict(row)) for row in rows]

    def daily_usage(self, days: int = 7, *, now: Optional[datetime] = None) -> List[Dict[str, Any]]:
        """Return token and cost totals per UTC day, oldest first, zero filled."""

        reference = (now or utc_now()).date()
        first_day = reference - timedelta(days=max(days, 1) - 1)
        since = datetime.combine(first_day, datetime.min.time(), tzinfo=timezone.utc)
        totals: Dict[str, Dict[str, Any]] = {}
        for record in self.list_usage_since(since):
            day = parse_datetime(record.created_at).date().isoformat()
            bucket = totals.setdefault(day, {"tokens": 0, "cost": 0.0})
            bucket["tokens"] += record.total_tokens
            bucket["cost"] += record.estimated_cost

        series: List[Dict[str, Any]] = []
        for offset in range(max(days, 1)):
            day = first_day + timedelta(days=offset)
            bucket = totals.get(day.isoformat(), {"tokens": 0, "cost": 0.0})
            series.append(
                {
                    "date": day.isoformat(),
                    "day": day.strftime("%a"),
                    "tokens": int(bucket["tokens"]),
                    "cost": float(bucket["cost"]),
                }
            )
        return series

    def reset_usage(self) -> int:
        with self._track_db_event("reset_usage", table="usage_records") as event:
            with self._connect() as connection:
                cursor = self._execute(
                    connection,
                    "DELETE FROM usage_records",
                    action="usage_records.delete_all",
                    table="usage_records",
                )
                removed = max(cursor.rowcount, 0)
                event["rowcount"] = removed
                return removed

    # ------------------------------------------------------------------
    # Storage tiers and tracked usage
    # ------------------------------------------------------------------
    def get_default_tier(self) -> Optional[StorageTierRecord]:
        with self._connect() as connection:
            row = self._execute(
                connection,
                "SELECT id, name, storage_limit, price, is_default FROM storage_tiers "
                "WHERE is_default = 1 ORDER BY id LIMIT 1",
                action="storage_tiers.default",
                table="storage_tiers",
            ).fetchone()
        if row is None:
            return None
        return StorageTierRecord(
            id=int(row["id"]),
            name=row["name"],
            storage_limit=int(row["storage_limit"]),
            price=float(row["price"]),
            is_default=bool(row["is_default"]),
        )

    def get_tier(self, tier_id: int) -> Optional[StorageTierRecord]:
        with self._connect() as connection:
            row = self._execute(
                connection,
                "SELECT id, name, storage_limit, price, is_default FROM storage_tiers WHERE id = ?",
                (tier_id,),
                action="storage_tiers.lookup",
                table="storage_tiers",
            ).fetchone()
        if row is None:
            return None
        return StorageTierRecord(
            id=int(row["id"]),
            name=row["name"],
            storage_limit=int(row["storage_limit"]),
            price=float(row["price"]),
            is_default=bool(row["is_default"]),
        )

    def get_storage_usage(self) -> Optional[StorageUsageRecord]:
        with self._connect() as connection:
            row = self._execute(
                connection,
                "SELECT tier_id, storage_used, storage_breakdown, updated_at FROM storage_usage WHERE id = 1",
                action="storage_usage.lookup",
                table="storage_usage",
            ).fetchone()
        if row is None:
            return None
        return StorageUsageRecord(
            tier_id=row["tier_id"],
            storage_used=int(row["storage_used"]),
            breakdown=_load_json(row["storage_breakdown"], dict),
            updated_at=row["updated_at"],
        )

    def set_storage_usage(self, storage_used: int, breakdown: Dict[str, int]) -> int:
        """Store the measured usage and return the previously tracked size."""

        previous = self.get_storage_usage()
        previous_size = previous.storage_used if previous is not None else 0
        tier_id = previous.tier_id if previous is not None else None
        if tier_id is None:
            tier = self.get_default_tier()
            tier_id = tier.id if tier is not None else None
        with self._track_db_event(
            "set_storage_usage",
            table="storage_usage",
            storage_used=storage_used,
            previous=previous_size,
        ):
            with self._connect() as connection:
                self._execute(
                    connection,
                    """
                    INSERT INTO storage_usage(id, tier_id, storage_used, storage_breakdown, updated_at)
                    VALUES (1, ?, ?, ?, ?)
                    ON CONFLICT(id) DO UPDATE SET
                        tier_id = excluded.tier_id,
                        storage_used = excluded.storage_used,
                        storage_breakdown = excluded.storage_breakdown,
                        updated_at = excluded.updated_at
                    """,
                    (tier_id, int(storage_used), _dump_json(breakdown), _now_iso()),
                    action="storage_usage.upsert",
                    table="storage_usage",
                )
        return previous_size


__all__ = [
    "FolderRecord",
    "ProjectRecord",
    "ProjectRepository",
    "StorageTierRecord",
    "StorageUsageRecord",
    "UsageRecord",
]
