"""Project creation pipeline: uploads, transcripts, URLs and transcription."""

from __future__ import annotations

import logging
import mimetypes
import shutil
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional
from urllib.parse import urlparse

from .. import config as config_module
from ..config import AppConfig
from ..processing.chunking import (
    WHISPER_API_SIZE_LIMIT_MB,
    build_chunking_metadata,
    needs_chunking,
    plan_video_chunks,
    split_wav_into_chunks,
    update_chunk_status,
)
from ..processing.media import MediaError, extract_audio, probe_media_duration
from ..processing.transcription import TranscriptionEngine, TranscriptResult, TranscriptSegment
from ..processing.transcripts import combine_chunk_transcripts, format_chunk_section
from ..processing.youtube import (
    TranscriptUnavailableError,
    extract_video_id,
    fetch_youtube_transcript,
    is_youtube_url,
)
from .events import emit_file_event, emit_task_event
from .naming import build_asset_stem, build_audio_chunk_name, build_timestamped_name, slugify
from .progress import ProgressCallback, upload_stage_message
from .storage import ProjectRecord, ProjectRepository


LOGGER = logging.getLogger(__name__)

DEFAULT_PROJECT_TITLE = "Untitled Project"
_MB = 1024 * 1024


class IngestionError(RuntimeError):
    """Raised when a project cannot be created or transcribed."""


@dataclass
class ProjectPaths:
    """Utility describing the storage areas of a project."""

    project_root: Path
    video_dir: Path
    chunk_dir: Path
    audio_dir: Path
    stills_dir: Path

    @classmethod
    def build(cls, projects_root: Path, project_id: int) -> "ProjectPaths":
        project_root = projects_root / str(project_id)
        return cls(
            project_root=project_root,
            video_dir=project_root / "video_uploads",
            chunk_dir=project_root / "chunks",
            audio_dir=project_root / "audio_extracts",
            stills_dir=project_root / "slide_stills",
        )

    def ensure(self) -> None:
        directories = (
            ("project", self.project_root),
            ("video upload", self.video_dir),
            ("chunk", self.chunk_dir),
            ("audio extract", self.audio_dir),
            ("slide still", self.stills_dir),
        )
        for label, path in directories:
            start = time.perf_counter()
            existed_before = path.exists()
            writable = config_module._ensure_writable_directory(path)
            duration_ms = (time.perf_counter() - start) * 1000.0
            event_payload = {
                "label": label,
                "path": str(path),
                "created": path.exists() and not existed_before,
                "writable": bool(writable),
            }
            if not writable:
                emit_file_event(
                    "ensure_directory_failed",
                    payload={**event_payload, "status": "error"},
                    duration_ms=duration_ms,
                    level=logging.ERROR,
                )
                raise IngestionError(
                    f"Unable to prepare {label} directory '{path}'. It is not writable. "
                    "Update config/default.json or adjust permissions."
                )
            emit_file_event(
                "ensure_directory",
                payload={**event_payload, "status": "ok"},
                duration_ms=duration_ms,
            )


def _report(callback: Optional[ProgressCallback], percent: int, stage: str) -> None:
    if callback is not None:
        callback(percent, upload_stage_message(stage))


class ProjectIngestor:
    """Coordinates the creation and transcription of projects."""

    def __init__(
        self,
        config: AppConfig,
        repository: ProjectRepository,
        *,
        transcription_engine: Optional[TranscriptionEngine] = None,
        transcript_fetcher: Callable[[str], str] = fetch_youtube_transcript,
        transcription_provider: str = "openai",
    ) -> None:
        self._config = config
        self._repository = repository
        self._transcription_engine = transcription_engine
        self._transcript_fetcher = transcript_fetcher
        self._provider = transcription_provider

    def paths_for(self, project_id: int) -> ProjectPaths:
        return ProjectPaths.build(self._config.projects_root, project_id)

    def _relative(self, path: Path) -> str:
        return path.relative_to(self._config.storage_root).as_posix()

    def _require(self, project_id: int) -> ProjectRecord:
        record = self._repository.get_project(project_id)
        if record is None:
            raise IngestionError(f"Project {project_id} not found")
        return record

    # ------------------------------------------------------------------
    # Project creation
    # ------------------------------------------------------------------
    def create_from_video(
        self,
        source: Path,
        *,
        title: Optional[str] = None,
        description: str = "",
        context_prompt: str = "",
        folder_id: Optional[int] = None,
        model_id: Optional[str] = None,
        slides_per_minute: float = 6.0,
        original_file_name: Optional[str] = None,
        progress_callback: Optional[ProgressCallback] = None,
    ) -> ProjectRecord:
        """Copy *source* into a new project and record its video metadata.

        Uploads above the per-chunk size limit get a virtual chunk plan stored
        under ``video_metadata["chunking"]``.
        """

        if not source.exists():
            raise IngestionError(f"Asset not found: {source}")
        file_name = original_file_name or source.name
        project_title = title or Path(file_name).stem or DEFAULT_PROJECT_TITLE
        _report(progress_callback, 5, "analyzing")

        project_id = self._repository.add_project(
            project_title,
            source_type="video",
            description=description,
            context_prompt=context_prompt,
            folder_id=folder_id,
            model_id=model_id,
            slides_per_minute=slides_per_minute,
        )
        paths = self.paths_for(project_id)
        try:
            paths.ensure()
            _report(progress_callback, 20, "uploading")
            stem = build_asset_stem(project_title)
            destination = paths.video_dir / build_timestamped_name(
                stem, extension=Path(file_name).suffix or source.suffix
            )
            shutil.copy2(source, destination)
            emit_file_event(
                "upload_stored",
                payload={"project_id": project_id, "path": str(destination)},
            )

            _report(progress_callback, 70, "processing")
            file_size = destination.stat().st_size
            duration = probe_media_duration(destination)
            metadata: Dict[str, Any] = {
                "duration": duration,
                "original_file_name": file_name,
                "file_type": mimetypes.guess_type(file_name)[0] or "application/octet-stream",
                "file_size": file_size,
            }
            relative_source = self._relative(destination)
            if needs_chunking(file_size):
                _report(progress_callback, 85, "chunking")
                plan = plan_video_chunks(file_name, file_size, duration, stem=slugify(project_title))
                for chunk in plan.chunks:
                    chunk.video_path = relative_source
                metadata["chunking"] = build_chunking_metadata(plan, provider=self._provider)
                if duration is None:
                    metadata["duration"] = plan.total_duration
                LOGGER.info(
                    "Project %s split into %d virtual chunk(s) of ~%ss",
                    project_id,
                    plan.count,
                    plan.ideal_duration,
                )

            self._repository.update_project(
                project_id,
                source_file_path=relative_source,
                video_metadata=metadata,
            )
        except (OSError, IngestionError) as error:
            self._repository.remove_project(project_id)
            shutil.rmtree(paths.project_root, ignore_errors=True)
            if isinstance(error, IngestionError):
                raise
            raise IngestionError(f"Failed to store upload: {error}") from error

        _report(progress_callback, 100, "complete")
        return self._require(project_id)

    def create_from_transcript(
        self,
        text: str,
        *,
        title: Optional[str] = None,
        description: str = "",
        context_prompt: str = "",
        folder_id: Optional[int] = None,
        model_id: Optional[str] = None,
        slides_per_minute: float = 6.0,
    ) -> ProjectRecord:
        if not text or not text.strip():
            raise IngestionError("Transcript text is empty")
        project_id = self._repository.add_project(
            title or DEFAULT_PROJECT_TITLE,
            source_type="transcript-only",
            description=description,
            transcript=text.strip(),
            context_prompt=context_prompt,
            folder_id=folder_id,
            model_id=model_id,
            slides_per_minute=slides_per_minute,
        )
        return self._require(project_id)

    def create_from_url(
        self,
        url: str,
        *,
        title: Optional[str] = None,
        description: str = "",
        context_prompt: str = "",
        folder_id: Optional[int] = None,
        model_id: Optional[str] = None,
        slides_per_minute: float = 6.0,
    ) -> ProjectRecord:
        """YouTube links become ``youtube`` projects with their captions.

        Other URLs are stored as ``url`` projects without a transcript.
        """

        parsed = urlparse(url or "")
        if parsed.scheme not in ("http", "https") or not parsed.netloc:
            raise IngestionError(f"Invalid URL: {url}")

        transcript: Optional[str] = None
        if is_youtube_url(url):
            source_type = "youtube"
            try:
                transcript = self._transcript_fetcher(url)
            except TranscriptUnavailableError as error:
                raise IngestionError(str(error)) from error
            default_title = f"YouTube video {extract_video_id(url) or ''}".strip()
        else:
            source_type = "url"
            default_title = parsed.netloc + (parsed.path if parsed.path not in ("", "/") else "")

        project_id = self._repository.add_project(
            title or default_title,
            source_type=source_type,
            description=description,
            source_url=url,
            transcript=transcript,
            context_prompt=context_prompt,
            folder_id=folder_id,
            model_id=model_id,
            slides_per_minute=slides_per_minute,
        )
        return self._require(project_id)

    def plan_chunks(self, project_id: int, *, force: bool = False) -> Dict[str, Any]:
        """(Re)compute the virtual chunk plan of a video project.

        Small uploads are left unchunked unless *force* is set. Returns the
        stored ``chunking`` metadata, empty when no plan was needed.
        """

        project = self._require(project_id)
        if not project.source_file_path:
            raise IngestionError("Project has no uploaded video to plan chunks for")
        source = self._config.storage_root / project.source_file_path
        if not source.exists():
            raise IngestionError(f"Video file is missing: {project.source_file_path}")

        file_size = source.stat().st_size
        if not force and not needs_chunking(file_size):
            LOGGER.debug("Project %s (%d bytes) does not need chunking", project_id, file_size)
            return {}

        file_name = project.video_metadata.get("original_file_name") or source.name
        plan = plan_video_chunks(file_name, file_size, project.duration, stem=slugify(project.title))
        for chunk in plan.chunks:
            chunk.video_path = project.source_file_path
        chunking = build_chunking_metadata(plan, provider=self._provider)
        patch: Dict[str, Any] = {"chunking": chunking}
        if project.duration is None:
            patch["duration"] = plan.total_duration
        self._repository.merge_video_metadata(project_id, patch)
        emit_task_event(
            "chunks_planned",
            "Chunk plan stored",
            payload={"project_id": project_id, "chunks": plan.count},
        )
        return chunking

    # ------------------------------------------------------------------
    # Transcription
    # ------------------------------------------------------------------
    def transcribe_project(
        self,
        project_id: int,
        *,
        progress_callback: Optional[ProgressCallback] = None,
    ) -> ProjectRecord:
        """Transcribe the project's video and store the transcript.

        Chunked projects are transcribed chunk by chunk and every chunk gets a
        section header. Unchunked audio that still exceeds the API upload
        limit is split into one minute WAV pieces.
        """

        if self._transcription_engine is None:
            raise IngestionError("No transcription engine configured")
        project = self._require(project_id)
        if not project.source_file_path:
            raise IngestionError("Project has no uploaded video to transcribe")
        source = self._config.storage_root / project.source_file_path
        if not source.exists():
            raise IngestionError(f"Video file is missing: {project.source_file_path}")

        paths = self.paths_for(project_id)
        paths.ensure()
        emit_task_event("transcription_start", "Transcription started", payload={"project_id": project_id})
        started = time.perf_counter()
        _report(progress_callback, 0, "transcribing")

        try:
            chunking = project.chunking
            if chunking.get("chunks"):
                transcript = self._transcribe_chunks(project, source, paths, progress_callback)
            else:
                transcript = self._transcribe_whole(source, paths, progress_callback)
        except MediaError as error:
            raise IngestionError(str(error)) from error

        if not transcript.strip():
            raise IngestionError("Transcription produced no text")
        self._repository.update_project(project_id, transcript=transcript)
        emit_task_event(
            "transcription_complete",
            "Transcription finished",
            payload={"project_id": project_id, "characters": len(transcript)},
            duration_ms=(time.perf_counter() - started) * 1000.0,
        )
        _report(progress_callback, 100, "complete")
        return self._require(project_id)

    def transcript_segments(self, project_id: int) -> List[TranscriptSegment]:
        """Segments of the last whole-file transcription, while they match the stored text."""

        project = self._require(project_id)
        if not project.transcript or project.chunking.get("chunks"):
            return []
        output_dir = self.paths_for(project_id).audio_dir / "transcript"
        result = TranscriptResult(
            text_path=output_dir / "transcript.txt", segments_path=output_dir / "segments.json"
        )
        if not result.text_path.exists() or result.read_text().strip() != project.transcript:
            return []
        return result.read_segments()

    def _transcribe_file(self, audio_path: Path, output_dir: Path) -> str:
        assert self._transcription_engine is not None
        result = self._transcription_engine.transcribe(audio_path, output_dir)
        return result.read_text().strip()

    def _transcribe_whole(
        self,
        source: Path,
        paths: ProjectPaths,
        progress_callback: Optional[ProgressCallback],
    ) -> str:
        audio_path = extract_audio(source, paths.audio_dir / "full_audio.wav")
        size_mb = audio_path.stat().st_size / _MB
        if size_mb <= WHISPER_API_SIZE_LIMIT_MB:
            _report(progress_callback, 50, "transcribing")
            return self._transcribe_file(audio_path, paths.audio_dir / "transcript")

        LOGGER.info("Audio is %.1f MB; splitting into one minute chunks", size_mb)
        pieces = split_wav_into_chunks(audio_path, paths.audio_dir / "pieces")
        texts: List[str] = []
        for position, piece in enumerate(pieces, start=1):
            assert piece.path is not None
            texts.append(
                self._transcribe_file(piece.path, paths.audio_dir / "pieces" / f"part-{piece.index:03d}")
            )
            _report(progress_callback, int(position * 90 / len(pieces)), "transcribing")
        return combine_chunk_transcripts(texts)

    def _transcribe_chunks(
        self,
        project: ProjectRecord,
        source: Path,
        paths: ProjectPaths,
        progress_callback: Optional[ProgressCallback],
    ) -> str:
        chunking = dict(project.chunking)
        chunks = list(chunking.get("chunks", []))
        sections: List[str] = []
        for position, chunk in enumerate(chunks, start=1):
            index = int(chunk.get("index", position - 1))
            start = float(chunk.get("startTime", 0.0))
            end = float(chunk.get("endTime", start))
            chunking = update_chunk_status(chunking, index, "processing")
            self._repository.merge_video_metadata(project.id, {"chunking": chunking})
            try:
                audio_path = extract_audio(
                    source,
                    paths.audio_dir / build_audio_chunk_name(index),
                    start=start,
                    duration=max(0.0, end - start),
                )
                text = self._transcribe_file(audio_path, paths.audio_dir / f"chunk_{index:03d}")
            except (MediaError, OSError, RuntimeError) as error:
                self._mark_chunk_failed(project.id, chunking, index, error)
                raise IngestionError(f"Chunk {index + 1} failed: {error}") from error
            except Exception as error:
                # Service errors (OpenAI) propagate unchanged for the caller to map.
                self._mark_chunk_failed(project.id, chunking, index, error)
                raise

            sections.append(format_chunk_section(text, project.title, index + 1, start, end))
            chunking = update_chunk_status(chunking, index, "completed")
            self._repository.merge_video_metadata(project.id, {"chunking": chunking})
            _report(progress_callback, int(position * 90 / len(chunks)), "transcribing")
        return combine_chunk_transcripts(sections)

    def _mark_chunk_failed(
        self, project_id: int, chunking: Dict[str, Any], index: int, error: BaseException
    ) -> None:
        failed = update_chunk_status(chunking, index, "error", error=str(error))
        self._repository.merge_video_metadata(project_id, {"chunking": failed})


__all__ = [
    "DEFAULT_PROJECT_TITLE",
    "IngestionError",
    "ProjectIngestor",
    "ProjectPaths",
]
