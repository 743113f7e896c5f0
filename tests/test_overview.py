from __future__ import annotations

from datetime import datetime, timedelta, timezone

import pytest
from rich.console import Console

from distill.config import AppConfig
from distill.services.storage import ProjectRepository
from distill.ui.console import ConsoleUI
from distill.ui.modern import ModernUI
from distill.ui.overview import ASSET_LABELS, collect_overview


def _populate(repository: ProjectRepository, now: datetime) -> None:
    folder_id = repository.add_folder("Biology")
    repository.add_folder("Empty")
    with_assets = repository.add_project(
        "Cells",
        folder_id=folder_id,
        source_file_path="projects/1/video_uploads/cells.mp4",
        transcript="Cells divide.",
        now=now - timedelta(hours=70),
    )
    repository.update_slides(with_assets, [{"id": "s1", "title": "Mitosis"}])
    repository.add_project("Loose notes", source_type="transcript-only", transcript="Notes", now=now)


def test_collect_overview_groups_projects(temp_config: AppConfig) -> None:
    repository = ProjectRepository(temp_config)
    now = datetime(2025, 6, 1, 12, tzinfo=timezone.utc)
    _populate(repository, now)

    snapshot = collect_overview(repository, now=now)

    assert [folder.name for folder in snapshot.folders] == ["Biology", "Empty", "Unfiled"]
    assert snapshot.folder_count == 2
    assert snapshot.project_count == 2
    assert snapshot.asset_totals == {"video": 1, "transcript": 2, "slides": 1, "frames": 0}

    cells = snapshot.folders[0].projects[0]
    assert cells.assets == [ASSET_LABELS["video"], ASSET_LABELS["transcript"], ASSET_LABELS["slides"]]
    assert cells.badge.color == "red"
    loose = snapshot.folders[2].projects[0]
    assert loose.badge.color == "green"
    assert snapshot.folders[1].projects == []


def test_unfiled_group_is_skipped_when_empty(temp_config: AppConfig) -> None:
    repository = ProjectRepository(temp_config)
    repository.add_folder("Only folder")

    snapshot = collect_overview(repository)

    assert [folder.name for folder in snapshot.folders] == ["Only folder"]
    assert snapshot.project_count == 0


def test_console_ui_prints_sections(temp_config: AppConfig, capsys: pytest.CaptureFixture[str]) -> None:
    repository = ProjectRepository(temp_config)
    _populate(repository, datetime.now(timezone.utc))

    ConsoleUI(repository).run()

    output = capsys.readouterr().out
    assert "Folder: Biology" in output
    assert "Project #1: Cells (video, transcript, 1 slides" in output
    assert "Folder: Empty" in output
    assert "(empty)" in output
    assert "Folder: Unfiled" in output


def test_modern_ui_renders_dashboard(temp_config: AppConfig) -> None:
    repository = ProjectRepository(temp_config)
    _populate(repository, datetime.now(timezone.utc))
    console = Console(record=True, width=160)

    ModernUI(repository, console=console).run()

    output = console.export_text()
    assert "Distill Overview" in output
    assert "#1 Cells" in output
    assert "No projects yet" in output
    assert "At a glance" in output


def test_modern_ui_handles_empty_repository(temp_config: AppConfig) -> None:
    repository = ProjectRepository(temp_config)
    console = Console(record=True, width=120)

    ModernUI(repository, console=console).run()

    assert "No projects have been created yet" in console.export_text()
