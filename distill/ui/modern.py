"""A Rich-powered console front-end for browsing stored projects."""

from __future__ import annotations

from typing import Iterable, Optional

from rich import box
from rich.columns import Columns
from rich.console import Console, Group
from rich.panel import Panel
from rich.rule import Rule
from rich.table import Table
from rich.text import Text
from rich.tree import Tree

from ..services.formatting import format_duration
from ..services.storage import ProjectRepository
from .overview import ASSET_LABELS, FolderOverview, OverviewSnapshot, ProjectOverview, collect_overview


_BADGE_STYLES = {"red": "bold red", "amber": "yellow", "green": "green"}


class ModernUI:
    """Render a project dashboard using Rich widgets."""

    def __init__(self, repository: ProjectRepository, *, console: Optional[Console] = None) -> None:
        self._repository = repository
        self._console = console or Console()

    def run(self) -> None:
        snapshot = collect_overview(self._repository)
        console = self._console

        console.rule("[bold magenta]Distill Overview")

        if snapshot.project_count == 0:
            console.print(
                Panel(
                    "No projects have been created yet.\n"
                    "Use [bold]python run.py ingest-video[/bold] or "
                    "[bold]ingest-transcript[/bold] to add your first one.",
                    border_style="yellow",
                    box=box.ROUNDED,
                )
            )
            return

        tree_panel = Panel(
            self._build_tree(snapshot.folders),
            title="Projects",
            border_style="cyan",
            box=box.ROUNDED,
        )
        console.print(Columns([tree_panel, self._build_stats_panel(snapshot)], expand=True, equal=True))

    def _build_tree(self, folders: Iterable[FolderOverview]) -> Tree:
        tree = Tree("[bold cyan]Folders", guide_style="cyan")

        for folder in folders:
            node = tree.add(Text(folder.name, style="bold" if folder.record else "dim bold"))
            if not folder.projects:
                node.add("[dim]No projects yet")
                continue
            for project in folder.projects:
                node.add(self._build_project_label(project))

        return tree

    @staticmethod
    def _build_project_label(overview: ProjectOverview) -> Text:
        record = overview.record
        label = Text(f"#{record.id} {record.title}", style="white")
        label.append("  ")
        label.append(overview.badge.text, style=_BADGE_STYLES.get(overview.badge.color, "dim"))

        label.append("\n")
        if overview.assets:
            label.append(" · ".join(overview.assets), style="green")
        else:
            label.append("No assets yet", style="dim")
        if record.duration:
            label.append(f"  {format_duration(record.duration)}", style="dim")
        if record.slides:
            label.append(f"  {len(record.slides)} slides", style="dim")

        return label

    def _build_stats_panel(self, snapshot: OverviewSnapshot) -> Panel:
        metrics = Table.grid(expand=True, padding=(0, 1))
        metrics.add_column(style="dim")
        metrics.add_column(justify="right", style="bold")
        metrics.add_row("Folders", str(snapshot.folder_count))
        metrics.add_row("Projects", str(snapshot.project_count))

        asset_table = Table.grid(expand=True, padding=(0, 1))
        asset_table.add_column(style="dim")
        asset_table.add_column(justify="right", style="bold")
        for key, label in ASSET_LABELS.items():
            asset_table.add_row(label, str(snapshot.asset_totals.get(key, 0)))

        usage_table = Table.grid(expand=True, padding=(0, 1))
        usage_table.add_column(style="dim")
        usage_table.add_column(justify="right", style="bold")
        usage_table.add_row("Tokens", f"{snapshot.usage.get('totalTokens', 0):,}")
        usage_table.add_row("API requests", str(snapshot.usage.get("apiRequests", 0)))
        usage_table.add_row("Estimated cost", f"${snapshot.usage.get('estimatedCost', 0.0):.4f}")

        body = Group(metrics, Rule(style="magenta"), asset_table, Rule(style="magenta"), usage_table)
        return Panel(body, title="At a glance", border_style="magenta", box=box.ROUNDED)


__all__ = ["ModernUI"]
