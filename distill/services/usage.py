"""Usage and storage dashboards backed by the repository and the file tree."""

from __future__ import annotations

import logging
import shutil
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, Iterable, List, Optional, Set

from ..config import AppConfig
from .events import emit_file_event, emit_task_event
from .formatting import format_file_size, utc_now
from .storage import ProjectRecord, ProjectRepository


LOGGER = logging.getLogger(__name__)

DEFAULT_TIER_NAME = "Free"
BREAKDOWN_KEYS = ("videos", "slides", "frames", "other")

_VIDEO_SUFFIXES = (".mp4", ".webm", ".mov")
_SLIDE_SUFFIXES = (".pdf", ".pptx")
_FRAME_SUFFIXES = (".jpg", ".png")
_MB = 1024 * 1024


def classify_storage_file(name: str) -> str:
    """Return the breakdown bucket (videos, slides, frames, other) for a path."""

    lowered = "/" + name.lower().replace("\\", "/")
    if "/video_uploads/" in lowered or "/videos/" in lowered or lowered.endswith(_VIDEO_SUFFIXES):
        return "videos"
    if "/slides/" in lowered or lowered.endswith(_SLIDE_SUFFIXES):
        return "slides"
    if (
        "/slide_stills/" in lowered
        or "/frames/" in lowered
        or "_frame_" in lowered
        or lowered.endswith(_FRAME_SUFFIXES)
    ):
        return "frames"
    return "other"


def _iter_files(root: Path) -> Iterable[Path]:
    if not root.exists():
        return []
    return (path for path in sorted(root.rglob("*")) if path.is_file())


def directory_size(root: Path) -> int:
    return sum(path.stat().st_size for path in _iter_files(root))


class UsageService:
    """Aggregate token usage and on-disk storage for the dashboard."""

    def __init__(self, repository: ProjectRepository, config: AppConfig) -> None:
        self._repository = repository
        self._config = config

    # ------------------------------------------------------------------
    # Token usage
    # ------------------------------------------------------------------
    def usage_stats(self) -> Dict[str, Any]:
        return self._repository.usage_totals()

    def daily_usage(self, days: int = 7, *, now: Optional[datetime] = None) -> List[Dict[str, Any]]:
        return self._repository.daily_usage(days, now=now)

    def reset_usage(self) -> int:
        removed = self._repository.reset_usage()
        emit_task_event("usage_reset", "Usage statistics reset", payload={"removed": removed})
        return removed

    # ------------------------------------------------------------------
    # Storage accounting
    # ------------------------------------------------------------------
    def storage_breakdown(self) -> Dict[str, int]:
        breakdown = {key: 0 for key in BREAKDOWN_KEYS}
        total = 0
        root = self._config.projects_root
        for path in _iter_files(root):
            size = path.stat().st_size
            if not size:
                continue
            total += size
            breakdown[classify_storage_file(path.relative_to(root).as_posix())] += size
        breakdown["total"] = total
        return breakdown

    def sync_storage_usage(self) -> Dict[str, Any]:
        breakdown = self.storage_breakdown()
        actual = breakdown["total"]
        previous = self._repository.set_storage_usage(actual, breakdown)
        if actual == previous:
            message = "Storage usage is already up to date"
        else:
            difference = abs(actual - previous) / _MB
            direction = "added" if actual > previous else "removed"
            message = f"Storage usage updated ({difference:.2f} MB {direction})"
        LOGGER.info(message)
        return {
            "success": True,
            "message": message,
            "storageUsed": actual,
            "previousStorageSize": previous,
            "newStorageSize": actual,
            "breakdown": breakdown,
        }

    def storage_info(self) -> Dict[str, Any]:
        usage = self._repository.get_storage_usage()
        tier = None
        if usage is not None and usage.tier_id is not None:
            tier = self._repository.get_tier(usage.tier_id)
        if tier is None:
            tier = self._repository.get_default_tier()

        used = usage.storage_used if usage is not None else 0
        limit = tier.storage_limit if tier is not None else 0
        percentage = (used * 100.0 / limit) if limit > 0 else 0.0
        breakdown = dict(usage.breakdown) if usage is not None else {}
        return {
            "storageUsed": used,
            "storageLimit": limit,
            "tierName": tier.name if tier is not None else DEFAULT_TIER_NAME,
            "tierPrice": tier.price if tier is not None else 0.0,
            "percentageUsed": percentage,
            "breakdown": breakdown,
            "updatedAt": usage.updated_at if usage is not None else None,
        }

    def project_size(self, project: ProjectRecord) -> int:
        """Larger of the recorded upload size and what the project occupies on disk."""

        recorded = 0
        try:
            recorded = int(project.video_metadata.get("file_size") or 0)
        except (TypeError, ValueError):
            recorded = 0
        on_disk = directory_size(self._config.projects_root / str(project.id))
        return max(recorded, on_disk)

    def disk_usage(self) -> Dict[str, Any]:
        usage = shutil.disk_usage(self._config.storage_root)
        return {
            "total": usage.total,
            "used": usage.used,
            "free": usage.free,
            "storageRoot": str(self._config.storage_root),
        }

    # ------------------------------------------------------------------
    # Clean-up
    # ------------------------------------------------------------------
    def cleanup_orphaned_files(self) -> Dict[str, Any]:
        """Delete uploads and stills that no project references any more.

        Stills are kept while their project exists; uploads are kept only when
        they are the project's recorded source file.
        """

        projects = self._repository.list_projects()
        project_ids: Set[str] = {str(project.id) for project in projects}
        source_paths: Set[str] = {
            project.source_file_path for project in projects if project.source_file_path
        }
        root = self._config.projects_root
        storage_root = self._config.storage_root

        deleted = 0
        size_deleted = 0
        for area in ("video_uploads", "slide_stills"):
            for path in sorted(root.glob(f"*/{area}/**/*")):
                if not path.is_file():
                    continue
                owner = path.relative_to(root).parts[0]
                relative = path.relative_to(storage_root).as_posix()
                if area == "video_uploads":
                    orphaned = relative not in source_paths
                else:
                    orphaned = owner not in project_ids
                if not orphaned:
                    continue
                size = path.stat().st_size
                path.unlink()
                deleted += 1
                size_deleted += size
                emit_file_event("orphan_removed", payload={"path": relative, "size": size})

        for project_dir in sorted(root.glob("*")):
            if project_dir.is_dir() and project_dir.name not in project_ids:
                if not any(path.is_file() for path in project_dir.rglob("*")):
                    shutil.rmtree(project_dir, ignore_errors=True)

        self.sync_storage_usage()
        formatted = format_file_size(size_deleted)
        return {
            "success": True,
            "message": f"Cleanup completed. Deleted {deleted} orphaned files ({formatted})",
            "deletedCount": deleted,
            "sizeDeleted": size_deleted,
            "sizeDeletedFormatted": formatted,
        }

    def remove_project_files(self, project_id: int) -> None:
        target = self._config.projects_root / str(project_id)
        if target.exists():
            shutil.rmtree(target)
            emit_file_event("project_files_removed", payload={"path": str(target)})

    def purge_expired_projects(self, *, now: Optional[datetime] = None) -> List[int]:
        """Delete projects whose retention window has passed, files included."""

        reference = now or utc_now()
        removed: List[int] = []
        for project in self._repository.list_expired_projects(reference):
            if self._repository.remove_project(project.id):
                self.remove_project_files(project.id)
                removed.append(project.id)
        if removed:
            LOGGER.info("Purged %d expired project(s): %s", len(removed), removed)
            self.sync_storage_usage()
        return removed


__all__ = [
    "BREAKDOWN_KEYS",
    "DEFAULT_TIER_NAME",
    "UsageService",
    "classify_storage_file",
    "directory_size",
]
