"""Shared helpers for building overview snapshots of stored projects."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from typing import Any, Dict, List, Optional

from ..services.formatting import ExpirationBadge, expiration_badge, hours_until
from ..services.storage import FolderRecord, ProjectRecord, ProjectRepository


ASSET_LABELS: Dict[str, str] = {
    "video": "🎬 Video",
    "transcript": "📝 Transcript",
    "slides": "📑 Slides",
    "frames": "🖼️ Frames",
}


@dataclass
class ProjectOverview:
    record: ProjectRecord
    assets: List[str]
    badge: ExpirationBadge


@dataclass
class FolderOverview:
    record: Optional[FolderRecord]
    projects: List[ProjectOverview]

    @property
    def name(self) -> str:
        return self.record.name if self.record is not None else "Unfiled"


@dataclass
class OverviewSnapshot:
    folders: List[FolderOverview]
    folder_count: int
    project_count: int
    asset_totals: Dict[str, int]
    usage: Dict[str, Any]


def collect_overview(
    repository: ProjectRepository, *, now: Optional[datetime] = None
) -> OverviewSnapshot:
    """Aggregate repository data into a convenient snapshot for UIs."""

    asset_totals = {key: 0 for key in ASSET_LABELS.keys()}
    folders: List[FolderOverview] = []
    project_count = 0

    groups: List[Optional[FolderRecord]] = [*repository.list_folders(), None]
    for folder in groups:
        scope = folder.id if folder is not None else None
        projects: List[ProjectOverview] = []
        for record in repository.list_projects(folder_id=scope):
            project_count += 1
            projects.append(
                ProjectOverview(
                    record=record,
                    assets=_extract_assets(record, asset_totals),
                    badge=expiration_badge(hours_until(record.expires_at, now=now)),
                )
            )
        if folder is None and not projects:
            continue
        folders.append(FolderOverview(record=folder, projects=projects))

    return OverviewSnapshot(
        folders=folders,
        folder_count=sum(1 for folder in folders if folder.record is not None),
        project_count=project_count,
        asset_totals=asset_totals,
        usage=repository.usage_totals(),
    )


def _extract_assets(record: ProjectRecord, asset_totals: Dict[str, int]) -> List[str]:
    assets: List[str] = []

    if record.source_file_path:
        assets.append(ASSET_LABELS["video"])
        asset_totals["video"] += 1
    if record.transcript:
        assets.append(ASSET_LABELS["transcript"])
        asset_totals["transcript"] += 1
    if record.slides:
        assets.append(ASSET_LABELS["slides"])
        asset_totals["slides"] += 1
    if record.extracted_frames:
        assets.append(ASSET_LABELS["frames"])
        asset_totals["frames"] += 1

    return assets


__all__ = [
    "ASSET_LABELS",
    "FolderOverview",
    "OverviewSnapshot",
    "ProjectOverview",
    "collect_overview",
]
