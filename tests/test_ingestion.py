from __future__ import annotations

from pathlib import Path
from typing import List, Optional

import pytest
from openai import OpenAIError

from distill.config import AppConfig
from distill.processing import chunking as chunking_module
from distill.processing.transcription import TranscriptResult
from distill.processing.youtube import TranscriptUnavailableError
from distill.services import ingestion as ingestion_module
from distill.services.ingestion import IngestionError, ProjectIngestor
from distill.services.storage import ProjectRepository


class DummyTranscriptionEngine:
    def __init__(self) -> None:
        self.calls: List[Path] = []

    def transcribe(self, audio_path: Path, output_dir: Path, *, progress_callback=None) -> TranscriptResult:
        self.calls.append(audio_path)
        output_dir.mkdir(parents=True, exist_ok=True)
        transcript_file = output_dir / "transcript.txt"
        transcript_file.write_text(f"Transcript for {audio_path.name}.", encoding="utf-8")
        segments_file = output_dir / "segments.json"
        segments_file.write_text("[]", encoding="utf-8")
        return TranscriptResult(text_path=transcript_file, segments_path=segments_file)


def _ingestor(config: AppConfig, engine: Optional[DummyTranscriptionEngine] = None, **kwargs) -> ProjectIngestor:
    return ProjectIngestor(config, ProjectRepository(config), transcription_engine=engine, **kwargs)


def test_video_ingestion_pipeline(temp_config: AppConfig, wav_file: Path) -> None:
    progress = []
    ingestor = _ingestor(temp_config)

    project = ingestor.create_from_video(
        wav_file,
        title="Heart Sounds",
        description="Auscultation",
        progress_callback=lambda percent, message: progress.append(percent),
    )

    assert project.source_type == "video"
    assert project.title == "Heart Sounds"
    assert project.source_file_path.startswith(f"projects/{project.id}/video_uploads/heart-sounds-")
    stored = temp_config.storage_root / project.source_file_path
    assert stored.read_bytes() == wav_file.read_bytes()
    assert project.duration == pytest.approx(2.0)
    assert project.video_metadata["original_file_name"] == "lecture.wav"
    assert project.video_metadata["file_size"] == wav_file.stat().st_size
    assert project.chunking == {}
    assert progress[0] == 5 and progress[-1] == 100
    for area in ("chunks", "audio_extracts", "slide_stills"):
        assert (temp_config.projects_root / str(project.id) / area).is_dir()


def test_missing_video_is_rejected(temp_config: AppConfig, tmp_path: Path) -> None:
    with pytest.raises(IngestionError):
        _ingestor(temp_config).create_from_video(tmp_path / "missing.mp4")


def test_large_uploads_get_a_virtual_chunk_plan(
    temp_config: AppConfig, wav_file: Path, monkeypatch
) -> None:
    monkeypatch.setattr(ingestion_module, "needs_chunking", lambda size: True)
    ingestor = _ingestor(temp_config)

    project = ingestor.create_from_video(wav_file, title="Long Lecture")

    chunking = project.chunking
    assert chunking["isChunked"] is True
    assert chunking["status"] == "pending"
    assert len(chunking["chunks"]) == 1
    assert chunking["chunks"][0]["videoPath"] == project.source_file_path
    assert chunking["chunks"][0]["fileName"] == "long-lecture_chunk_1.wav"


def test_plan_chunks_respects_force(temp_config: AppConfig, wav_file: Path) -> None:
    ingestor = _ingestor(temp_config)
    project = ingestor.create_from_video(wav_file, title="Planned")

    assert ingestor.plan_chunks(project.id) == {}

    chunking = ingestor.plan_chunks(project.id, force=True)
    assert chunking["chunks"][0]["endTime"] == pytest.approx(2.0)
    stored = ProjectRepository(temp_config).get_project(project.id)
    assert stored is not None and stored.chunking == chunking

    transcript_only = ingestor.create_from_transcript("Some text.")
    with pytest.raises(IngestionError):
        ingestor.plan_chunks(transcript_only.id)


def test_transcript_projects(temp_config: AppConfig) -> None:
    ingestor = _ingestor(temp_config)

    project = ingestor.create_from_transcript("  Lecture text.  ", title="Notes", context_prompt="exam")

    assert project.source_type == "transcript-only"
    assert project.transcript == "Lecture text."
    assert project.context_prompt == "exam"
    with pytest.raises(IngestionError):
        ingestor.create_from_transcript("   ")


def test_url_projects(temp_config: AppConfig) -> None:
    fetched = []

    def fetcher(url: str) -> str:
        fetched.append(url)
        return "Caption text."

    ingestor = _ingestor(temp_config, transcript_fetcher=fetcher)

    youtube = ingestor.create_from_url("https://youtu.be/dQw4w9WgXcQ")
    assert youtube.source_type == "youtube"
    assert youtube.transcript == "Caption text."
    assert youtube.title == "YouTube video dQw4w9WgXcQ"
    assert fetched == ["https://youtu.be/dQw4w9WgXcQ"]

    other = ingestor.create_from_url("https://example.com/lectures/1", title="External")
    assert other.source_type == "url"
    assert other.transcript is None
    assert other.source_url == "https://example.com/lectures/1"

    with pytest.raises(IngestionError):
        ingestor.create_from_url("ftp://example.com/file")


def test_youtube_without_captions_creates_nothing(temp_config: AppConfig) -> None:
    def fetcher(url: str) -> str:
        raise TranscriptUnavailableError("No transcript available")

    repository = ProjectRepository(temp_config)
    ingestor = ProjectIngestor(temp_config, repository, transcript_fetcher=fetcher)

    with pytest.raises(IngestionError, match="No transcript"):
        ingestor.create_from_url("https://www.youtube.com/watch?v=dQw4w9WgXcQ")
    assert repository.count_projects() == 0


def test_transcribe_whole_file(temp_config: AppConfig, wav_file: Path) -> None:
    engine = DummyTranscriptionEngine()
    ingestor = _ingestor(temp_config, engine)
    project = ingestor.create_from_video(wav_file, title="Whole")

    transcribed = ingestor.transcribe_project(project.id)

    assert transcribed.transcript == "Transcript for full_audio.wav."
    assert [path.name for path in engine.calls] == ["full_audio.wav"]


def test_transcribe_chunked_project(temp_config: AppConfig, wav_file: Path, monkeypatch) -> None:
    monkeypatch.setattr(
        ingestion_module,
        "plan_video_chunks",
        lambda name, size, duration, stem=None: chunking_module.ChunkPlan(
            ideal_duration=1,
            total_duration=2.0,
            chunks=[
                chunking_module.VideoChunk(0, 0.0, 1.0, 1.0, "Chunk 1", f"{stem}_chunk_1.wav"),
                chunking_module.VideoChunk(1, 1.0, 2.0, 1.0, "Chunk 2", f"{stem}_chunk_2.wav"),
            ],
        ),
    )
    engine = DummyTranscriptionEngine()
    ingestor = _ingestor(temp_config, engine)
    project = ingestor.create_from_video(wav_file, title="Chunked")
    ingestor.plan_chunks(project.id, force=True)

    transcribed = ingestor.transcribe_project(project.id)

    assert [path.name for path in engine.calls] == ["chunk_000.wav", "chunk_001.wav"]
    transcript = transcribed.transcript or ""
    assert transcript.startswith("## Chunked - Part 1 (0:00 to 0:01)")
    assert "## Chunked - Part 2 (0:01 to 0:02)" in transcript
    assert transcribed.chunking["status"] == "completed"
    assert {chunk["status"] for chunk in transcribed.chunking["chunks"]} == {"completed"}


def test_transcription_requires_engine_and_video(temp_config: AppConfig) -> None:
    ingestor = _ingestor(temp_config)
    project = ingestor.create_from_transcript("Text.")

    with pytest.raises(IngestionError, match="engine"):
        ingestor.transcribe_project(project.id)
    with pytest.raises(IngestionError, match="no uploaded video"):
        _ingestor(temp_config, DummyTranscriptionEngine()).transcribe_project(project.id)
    with pytest.raises(IngestionError, match="not found"):
        _ingestor(temp_config, DummyTranscriptionEngine()).transcribe_project(999)


class FailingTranscriptionEngine:
    def __init__(self, error: Exception) -> None:
        self._error = error

    def transcribe(self, audio_path: Path, output_dir: Path, *, progress_callback=None) -> TranscriptResult:
        raise self._error


def test_service_errors_mark_chunk_as_failed(temp_config: AppConfig, wav_file: Path) -> None:
    ingestor = _ingestor(temp_config)
    project = ingestor.create_from_video(wav_file, title="Outage")
    ingestor.plan_chunks(project.id, force=True)

    failing = _ingestor(temp_config, FailingTranscriptionEngine(OpenAIError("service down")))
    with pytest.raises(OpenAIError):
        failing.transcribe_project(project.id)

    chunking = ProjectRepository(temp_config).get_project(project.id).chunking
    assert chunking["status"] == "error"
    assert chunking["chunks"][0]["status"] == "error"
    assert chunking["chunks"][0]["error"] == "service down"


def test_engine_runtime_errors_become_ingestion_errors(temp_config: AppConfig, wav_file: Path) -> None:
    ingestor = _ingestor(temp_config)
    project = ingestor.create_from_video(wav_file, title="Broken")
    ingestor.plan_chunks(project.id, force=True)

    failing = _ingestor(temp_config, FailingTranscriptionEngine(RuntimeError("model crashed")))
    with pytest.raises(IngestionError, match="Chunk 1 failed"):
        failing.transcribe_project(project.id)

    chunks = ProjectRepository(temp_config).get_project(project.id).chunking["chunks"]
    assert chunks[0]["status"] == "error"
