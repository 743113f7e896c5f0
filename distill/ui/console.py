"""Plain text overview for terminals without Rich styling."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Iterable

from ..services.storage import ProjectRepository
from .overview import FolderOverview, ProjectOverview, collect_overview


@dataclass
class ConsoleSection:
    title: str
    entries: Iterable[str]


class ConsoleUI:
    """Minimal console UI that surfaces stored metadata."""

    def __init__(self, repository: ProjectRepository) -> None:
        self._repository = repository

    def run(self) -> None:
        """Render folders and their projects to stdout."""

        print("Distill - Console Overview")
        print("=" * 40)
        for section in self._build_sections():
            print(section.title)
            print("-" * len(section.title))
            has_entries = False
            for entry in section.entries:
                has_entries = True
                print(entry)
            if not has_entries:
                print("(empty)")
            print()

    def _build_sections(self) -> Iterable[ConsoleSection]:
        for folder in collect_overview(self._repository).folders:
            yield ConsoleSection(title=f"Folder: {folder.name}", entries=self._format_projects(folder))

    def _format_projects(self, folder: FolderOverview) -> Iterable[str]:
        for project in folder.projects:
            yield f"  Project #{project.record.id}: {project.record.title}" + self._format_meta(project)

    @staticmethod
    def _format_meta(project: ProjectOverview) -> str:
        parts = [project.record.source_type]
        if project.record.transcript:
            parts.append("transcript")
        if project.record.slides:
            parts.append(f"{len(project.record.slides)} slides")
        parts.append(project.badge.text)
        return " (" + ", ".join(parts) + ")"


__all__ = ["ConsoleUI"]
