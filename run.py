"""Entry-point for the Distill application."""

from __future__ import annotations

import inspect
import logging
import threading
import time
import webbrowser
from enum import Enum
from pathlib import Path
from typing import Optional

import typer
import uvicorn
from openai import OpenAIError

from distill.bootstrap import BootstrapError, initialize_app
from distill.config import AppConfig
from distill.logging_utils import DEFAULT_LOG_FORMAT, configure_logging, get_log_file_path
from distill.processing.export import (
    EXPORT_FORMATS,
    ExportError,
    export_anki,
    export_csv,
    export_file_name,
    export_pdf,
)
from distill.processing.media import MediaError
from distill.processing.slides import OpenAISlideGenerator, SlideGenerationError
from distill.processing.transcription import (
    FasterWhisperTranscription,
    OpenAIWhisperTranscription,
    TranscriptionEngine,
)
from distill.services.formatting import format_duration
from distill.services.ingestion import IngestionError, ProjectIngestor
from distill.services.settings import SettingsStore
from distill.services.slides import ProjectNotFoundError, SlideService
from distill.services.storage import ProjectRepository
from distill.services.usage import UsageService
from distill.ui.console import ConsoleUI
from distill.ui.modern import ModernUI
from distill.web.server import create_app, get_max_upload_bytes


LOGGER = logging.getLogger("distill.cli")


cli = typer.Typer(add_completion=False, help="Distill management commands")


def _prepare_logging(storage_root: Path) -> None:
    log_file = get_log_file_path(storage_root)
    formatter = logging.Formatter(DEFAULT_LOG_FORMAT)
    file_handler = logging.FileHandler(log_file, encoding="utf-8")
    file_handler.setFormatter(formatter)
    stream_handler = logging.StreamHandler()
    stream_handler.setFormatter(formatter)
    configure_logging(handlers=[file_handler, stream_handler])


def _startup() -> AppConfig:
    try:
        config = initialize_app()
    except BootstrapError as error:
        typer.echo(f"Startup failed: {error}")
        raise typer.Exit(code=1) from error
    _prepare_logging(config.storage_root)
    return config


def _fail(message: str, error: BaseException) -> None:
    typer.echo(f"{message}: {error}")
    raise typer.Exit(code=1) from error


class UIStyle(str, Enum):
    MODERN = "modern"
    CONSOLE = "console"


class Provider(str, Enum):
    OPENAI = "openai"
    LOCAL = "local"


style_option = typer.Option(
    UIStyle.MODERN,
    "--style",
    "-s",
    help="Select the overview presentation style.",
    show_default=True,
)


DEFAULT_HOST = "127.0.0.1"
DEFAULT_PORT = 8000


@cli.callback(invoke_without_command=True)
def main(ctx: typer.Context) -> None:
    """Launch the web server when no explicit command is provided."""

    if ctx.invoked_subcommand is None:
        ctx.invoke(serve, host=DEFAULT_HOST, port=DEFAULT_PORT, root_path=None)


def _normalize_root_path(root_path: Optional[str]) -> str:
    if root_path is None:
        return ""
    normalized = root_path.strip()
    if not normalized:
        return ""
    if not normalized.startswith("/"):
        normalized = f"/{normalized}"
    return normalized.rstrip("/")


def _build_transcription_engine(
    config: AppConfig, provider: Provider, whisper_model: str
) -> TranscriptionEngine:
    if provider is Provider.LOCAL:
        return FasterWhisperTranscription(whisper_model, download_root=config.assets_root)
    return OpenAIWhisperTranscription()


@cli.command()
def serve(
    host: str = typer.Option(DEFAULT_HOST, help="Host interface for the web server"),
    port: int = typer.Option(DEFAULT_PORT, help="Port for the web server"),
    root_path: Optional[str] = typer.Option(
        None,
        help="Prefix the application expects when mounted behind a proxy",
        envvar="DISTILL_ROOT_PATH",
    ),
) -> None:
    """Run the FastAPI-powered web experience."""

    app_config = initialize_app()
    _prepare_logging(app_config.storage_root)

    repository = ProjectRepository(app_config)
    normalized_root = _normalize_root_path(root_path)
    app = create_app(repository, config=app_config, root_path=normalized_root)

    config_kwargs = {}
    max_upload_bytes = get_max_upload_bytes()
    if max_upload_bytes > 0:
        config_signature = inspect.signature(uvicorn.Config.__init__)
        if "limit_max_request_size" in config_signature.parameters:
            config_kwargs["limit_max_request_size"] = max_upload_bytes
        else:
            LOGGER.warning(
                "Ignoring max upload size limit; uvicorn.Config does not support "
                "'limit_max_request_size'.",
            )

    server_config = uvicorn.Config(
        app,
        host=host,
        port=port,
        log_config=None,
        root_path=normalized_root,
        **config_kwargs,
    )
    server = uvicorn.Server(server_config)
    app.state.server = server

    browser_host = host
    if not browser_host or browser_host in {"0.0.0.0", "::"}:
        browser_host = "127.0.0.1"
    url = f"http://{browser_host}:{port}{normalized_root}/docs"

    def _open_browser_later() -> None:
        time.sleep(1.0)
        try:
            webbrowser.open(url, new=2, autoraise=True)
        except webbrowser.Error:
            LOGGER.debug("Could not open a browser for %s", url)

    threading.Thread(target=_open_browser_later, daemon=True).start()

    server.run()


@cli.command()
def overview(style: UIStyle = style_option) -> None:
    """Render an overview of stored projects using the chosen UI style."""

    config = _startup()
    repository = ProjectRepository(config)
    if style is UIStyle.MODERN:
        ui = ModernUI(repository)
    else:
        ui = ConsoleUI(repository)
    ui.run()


@cli.command("ingest-video")
def ingest_video(
    video: Path = typer.Argument(
        ...,
        exists=True,
        file_okay=True,
        dir_okay=False,
        resolve_path=True,
        help="Path to the lecture video (or audio) file",
    ),
    title: Optional[str] = typer.Option(None, help="Project title (defaults to the file name)"),
    description: str = typer.Option("", help="Project description"),
    context_prompt: str = typer.Option("", "--context", help="Extra instructions for slide generation"),
    folder_id: Optional[int] = typer.Option(None, help="Folder to file the project under"),
    transcribe: bool = typer.Option(False, "--transcribe", help="Transcribe right after the upload"),
    provider: Provider = typer.Option(Provider.OPENAI, help="Transcription provider"),
    whisper_model: str = typer.Option("base", help="Whisper model size for local transcription"),
) -> None:
    """Create a project from a video file, optionally transcribing it."""

    config = _startup()
    repository = ProjectRepository(config)
    engine: Optional[TranscriptionEngine] = None
    if transcribe:
        try:
            engine = _build_transcription_engine(config, provider, whisper_model)
        except RuntimeError as error:
            _fail("Transcription is unavailable", error)
    ingestor = ProjectIngestor(
        config,
        repository,
        transcription_engine=engine,
        transcription_provider=provider.value,
    )

    def _echo_progress(percent: int, message: Optional[str]) -> None:
        typer.echo(f"====> [{percent:3d}%] {message or ''}")

    try:
        project = ingestor.create_from_video(
            video,
            title=title,
            description=description,
            context_prompt=context_prompt,
            folder_id=folder_id,
            model_id=config.openai_model,
            progress_callback=_echo_progress,
        )
        typer.echo(f"Created project #{project.id}: {project.title}")
        typer.echo(f"  Duration: {format_duration(project.duration)}")
        chunks = project.chunking.get("chunks") or []
        if chunks:
            typer.echo(f"  Chunked into {len(chunks)} segment(s)")
        if transcribe:
            project = ingestor.transcribe_project(project.id, progress_callback=_echo_progress)
            typer.echo(f"  Transcript: {len(project.transcript or '')} characters")
    except (IngestionError, MediaError, OpenAIError) as error:
        _fail("Ingestion failed", error)


@cli.command("ingest-transcript")
def ingest_transcript(
    transcript: Path = typer.Argument(
        ...,
        exists=True,
        file_okay=True,
        dir_okay=False,
        resolve_path=True,
        help="Text file holding the transcript",
    ),
    title: Optional[str] = typer.Option(None, help="Project title (defaults to the file name)"),
    context_prompt: str = typer.Option("", "--context", help="Extra instructions for slide generation"),
    folder_id: Optional[int] = typer.Option(None, help="Folder to file the project under"),
) -> None:
    """Create a transcript-only project from a text file."""

    config = _startup()
    ingestor = ProjectIngestor(config, ProjectRepository(config))
    try:
        project = ingestor.create_from_transcript(
            transcript.read_text(encoding="utf-8"),
            title=title or transcript.stem,
            context_prompt=context_prompt,
            folder_id=folder_id,
            model_id=config.openai_model,
        )
    except IngestionError as error:
        _fail("Ingestion failed", error)
        return
    typer.echo(f"Created project #{project.id}: {project.title}")


@cli.command("plan-chunks")
def plan_chunks(
    project_id: int = typer.Argument(..., help="Project identifier"),
    force: bool = typer.Option(False, "--force", help="Plan chunks even for small uploads"),
) -> None:
    """Compute the virtual chunk plan of a video project."""

    config = _startup()
    ingestor = ProjectIngestor(config, ProjectRepository(config))
    try:
        chunking = ingestor.plan_chunks(project_id, force=force)
    except IngestionError as error:
        _fail("Chunk planning failed", error)
        return
    chunks = chunking.get("chunks") or []
    if not chunks:
        typer.echo("Upload is small enough to transcribe in one request; no chunks planned.")
        return
    typer.echo(f"Planned {len(chunks)} chunk(s) of ~{chunking.get('idealChunkDuration')}s:")
    for chunk in chunks:
        typer.echo(
            f"  {chunk['index'] + 1:>3}. {format_duration(chunk['startTime'])} - "
            f"{format_duration(chunk['endTime'])}  {chunk['status']}"
        )


@cli.command("generate-slides")
def generate_slides(
    project_id: int = typer.Argument(..., help="Project identifier"),
    context_prompt: Optional[str] = typer.Option(None, "--context", help="Override the stored context"),
    slides_per_minute: Optional[float] = typer.Option(None, "--spm", help="Slides per minute of video"),
    model: Optional[str] = typer.Option(None, help="Chat model used for generation"),
) -> None:
    """Generate the slide deck of a project from its transcript."""

    config = _startup()
    repository = ProjectRepository(config)
    settings = SettingsStore(config).load()
    generator = OpenAISlideGenerator(model=model or settings.model_id or config.openai_model)
    service = SlideService(repository, generator)
    try:
        outcome = service.generate_for_project(
            project_id,
            context_prompt=context_prompt,
            slides_per_minute=slides_per_minute,
        )
    except (ProjectNotFoundError, SlideGenerationError) as error:
        _fail("Slide generation failed", error)
        return

    for warning in outcome.warnings:
        typer.echo(f"Warning: {warning}")
    typer.echo(
        f"Generated {len(outcome.slides)} slide(s) (target {outcome.target_slides}); "
        f"{outcome.usage.total_tokens} tokens, ~${outcome.usage.estimated_cost:.4f}"
    )
    for index, slide in enumerate(outcome.slides, start=1):
        typer.echo(f"  {index:>2}. {slide.get('title', '')}")


@cli.command()
def export(
    project_id: int = typer.Argument(..., help="Project identifier"),
    export_format: str = typer.Option("pdf", "--format", "-f", help="One of: pdf, csv, anki"),
    output: Optional[Path] = typer.Option(None, "--output", "-o", help="Target file or directory"),
) -> None:
    """Export the slides of a project as PDF, CSV or Anki CSV."""

    if export_format not in EXPORT_FORMATS:
        raise typer.BadParameter(
            f"Unsupported format '{export_format}'. Choose from: {', '.join(EXPORT_FORMATS)}",
            param_hint="--format",
        )
    config = _startup()
    project = ProjectRepository(config).get_project(project_id)
    if project is None:
        typer.echo(f"Project {project_id} not found")
        raise typer.Exit(code=1)
    if not project.slides:
        typer.echo("Project has no slides to export. Generate them first.")
        raise typer.Exit(code=1)

    file_name = export_file_name(project.title, export_format)
    target = output or Path.cwd() / file_name
    if target.is_dir():
        target = target / file_name

    try:
        if export_format == "pdf":
            export_pdf(project.title, project.slides, target, storage_root=config.storage_root)
        else:
            body = export_anki(project.slides) if export_format == "anki" else export_csv(project.slides)
            target.parent.mkdir(parents=True, exist_ok=True)
            target.write_text(body, encoding="utf-8")
    except (ExportError, OSError) as error:
        _fail("Export failed", error)
    typer.echo(f"Exported {len(project.slides)} slide(s) to: {target}")


@cli.command()
def cleanup(
    expired: bool = typer.Option(True, "--expired/--no-expired", help="Also purge expired projects"),
) -> None:
    """Delete orphaned files and, by default, projects past their retention window."""

    config = _startup()
    service = UsageService(ProjectRepository(config), config)
    if expired:
        removed = service.purge_expired_projects()
        typer.echo(f"Purged {len(removed)} expired project(s).")
    result = service.cleanup_orphaned_files()
    typer.echo(result["message"])


if __name__ == "__main__":
    cli()
