"""Speech-to-text engines producing ``transcript.txt`` and ``segments.json``."""

from __future__ import annotations

import json
import logging
from dataclasses import asdict, dataclass
from pathlib import Path
from typing import Any, Callable, Iterable, List, Optional, Protocol

from openai import OpenAI

from .chunking import WHISPER_API_SIZE_LIMIT_MB
from .media import MediaError, probe_media_duration


LOGGER = logging.getLogger(__name__)

ProgressCallback = Callable[[float, Optional[float], str], None]

OPENAI_TRANSCRIPTION_MODEL = "whisper-1"


@dataclass
class TranscriptSegment:
    """Represents a single transcript segment."""

    start: float
    end: float
    text: str


@dataclass
class TranscriptResult:
    """Represents the output of the transcription stage."""

    text_path: Path
    segments_path: Optional[Path]

    def read_text(self) -> str:
        return self.text_path.read_text(encoding="utf-8")

    def read_segments(self) -> List[TranscriptSegment]:
        if self.segments_path is None or not self.segments_path.exists():
            return []
        payload = json.loads(self.segments_path.read_text(encoding="utf-8"))
        return [TranscriptSegment(**entry) for entry in payload]


class TranscriptionEngine(Protocol):
    """Protocol describing a transcription backend."""

    def transcribe(
        self,
        audio_path: Path,
        output_dir: Path,
        *,
        progress_callback: Optional[ProgressCallback] = None,
    ) -> TranscriptResult:
        """Generate a transcript for *audio_path* into *output_dir*."""


def _write_outputs(output_dir: Path, segments: List[TranscriptSegment], text: str) -> TranscriptResult:
    output_dir.mkdir(parents=True, exist_ok=True)
    transcript_file = output_dir / "transcript.txt"
    transcript_file.write_text(text, encoding="utf-8")
    segments_file = output_dir / "segments.json"
    segments_file.write_text(
        json.dumps([asdict(segment) for segment in segments], indent=2), encoding="utf-8"
    )
    LOGGER.debug("Transcript saved to %s (%d segments)", transcript_file, len(segments))
    return TranscriptResult(text_path=transcript_file, segments_path=segments_file)


def _progress_message(current: float, total: Optional[float]) -> str:
    if total and total > 0:
        ratio = max(0.0, min(current / total, 1.0))
        return f"Transcribing {ratio * 100:5.1f}% ({current:.1f}/{total:.1f}s)"
    return f"Transcribed {current:.1f}s"


class FasterWhisperTranscription:
    """Local transcription engine backed by :mod:`faster_whisper`."""

    def __init__(
        self,
        model_size: str = "base",
        *,
        download_root: Optional[Path] = None,
        compute_type: str = "int8",
        beam_size: int = 5,
    ) -> None:
        self._beam_size = beam_size
        try:
            from faster_whisper import WhisperModel
        except ImportError as exc:  # pragma: no cover - exercised in runtime, not tests
            raise RuntimeError("faster-whisper is not installed") from exc

        download_directory = str(download_root) if download_root is not None else None
        self._model = WhisperModel(
            model_size,
            device="cpu",
            compute_type=compute_type,
            download_root=download_directory,
        )
        LOGGER.debug(
            "Loaded faster_whisper model '%s' (download_root=%s)", model_size, download_directory
        )

    def transcribe(
        self,
        audio_path: Path,
        output_dir: Path,
        *,
        progress_callback: Optional[ProgressCallback] = None,
    ) -> TranscriptResult:
        LOGGER.debug("Invoking faster_whisper model for %s", audio_path)
        segments, info = self._model.transcribe(str(audio_path), beam_size=self._beam_size)
        total_duration = float(getattr(info, "duration", 0.0) or 0.0) or None

        collected: List[TranscriptSegment] = []
        lines: List[str] = []
        for segment in self._collect_segments(segments):
            collected.append(segment)
            cleaned = segment.text.strip()
            if cleaned:
                lines.append(cleaned)
            if progress_callback is not None:
                progress_callback(
                    segment.end, total_duration, _progress_message(segment.end, total_duration)
                )
        return _write_outputs(output_dir, collected, "\n".join(lines))

    def _collect_segments(self, segments: Iterable[object]) -> Iterable[TranscriptSegment]:
        for segment in segments:
            yield TranscriptSegment(
                start=float(getattr(segment, "start")),
                end=float(getattr(segment, "end")),
                text=str(getattr(segment, "text", "")),
            )


class OpenAIWhisperTranscription:
    """Transcription through the hosted Whisper API.

    Files above the API upload limit are rejected; callers split long audio
    into chunks first.
    """

    def __init__(
        self,
        client: Optional[Any] = None,
        *,
        model: str = OPENAI_TRANSCRIPTION_MODEL,
        language: Optional[str] = None,
    ) -> None:
        self._client = client
        self._model = model
        self._language = language

    @property
    def client(self) -> Any:
        if self._client is None:
            self._client = OpenAI()
        return self._client

    def transcribe(
        self,
        audio_path: Path,
        output_dir: Path,
        *,
        progress_callback: Optional[ProgressCallback] = None,
    ) -> TranscriptResult:
        size_mb = audio_path.stat().st_size / (1024 * 1024)
        if size_mb > WHISPER_API_SIZE_LIMIT_MB:
            raise MediaError(
                f"Audio file is {size_mb:.1f} MB; the transcription API accepts at most "
                f"{WHISPER_API_SIZE_LIMIT_MB} MB. Split it into chunks first."
            )

        total = probe_media_duration(audio_path)
        if progress_callback is not None:
            progress_callback(0.0, total, _progress_message(0.0, total))

        options = {"model": self._model, "response_format": "verbose_json"}
        if self._language:
            options["language"] = self._language
        LOGGER.debug("Uploading %s (%.2f MB) to %s", audio_path, size_mb, self._model)
        with audio_path.open("rb") as handle:
            response = self.client.audio.transcriptions.create(file=handle, **options)

        text = str(getattr(response, "text", "") or "").strip()
        segments = [
            TranscriptSegment(
                start=float(_field(segment, "start", 0.0)),
                end=float(_field(segment, "end", 0.0)),
                text=str(_field(segment, "text", "")),
            )
            for segment in (getattr(response, "segments", None) or [])
        ]
        if progress_callback is not None:
            done = total or (segments[-1].end if segments else 0.0)
            progress_callback(done, total, _progress_message(done, total))
        return _write_outputs(output_dir, segments, text)


def _field(item: Any, name: str, default: Any) -> Any:
    if isinstance(item, dict):
        return item.get(name, default)
    return getattr(item, name, default)


__all__ = [
    "FasterWhisperTranscription",
    "OPENAI_TRANSCRIPTION_MODEL",
    "OpenAIWhisperTranscription",
    "ProgressCallback",
    "TranscriptResult",
    "TranscriptSegment",
    "TranscriptionEngine",
]
