"""Virtual video chunk planning and WAV chunk splitting.

Large uploads are never transcoded into separate video files. Instead the
upload is described by time ranges sized so that each range's audio stays
below the transcription API's upload limit. Audio chunks, on the other hand,
are real WAV files written next to the project.
"""

from __future__ import annotations

import logging
import math
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, List, Literal, Optional

from ..services.naming import build_audio_chunk_name, build_chunk_file_name
from .media import load_wav_file, save_wav_file


LOGGER = logging.getLogger(__name__)

MAX_CHUNK_SIZE_MB = 20
MIN_CHUNK_DURATION = 30
MAX_CHUNK_DURATION = 300
WHISPER_API_SIZE_LIMIT_MB = 24
AUDIO_CHUNK_SECONDS = 60
FALLBACK_BYTES_PER_SECOND = 500 * 1024

_MB = 1024 * 1024

ChunkStatus = Literal["pending", "processing", "completed", "error"]
CHUNK_STATUSES = ("pending", "processing", "completed", "error")
TranscriptionProviderName = Literal["openai", "google"]


@dataclass
class VideoChunk:
    index: int
    start_time: float
    end_time: float
    duration: float
    title: str
    file_name: str
    status: ChunkStatus = "pending"
    video_path: str = ""

    def to_dict(self) -> Dict[str, Any]:
        return {
            "index": self.index,
            "startTime": self.start_time,
            "endTime": self.end_time,
            "duration": self.duration,
            "title": self.title,
            "fileName": self.file_name,
            "status": self.status,
            "videoPath": self.video_path,
        }


@dataclass
class AudioChunk:
    index: int
    start_time: float
    end_time: float
    path: Optional[Path] = None
    status: ChunkStatus = "pending"
    transcript: str = ""
    error: Optional[str] = None

    @property
    def duration(self) -> float:
        return self.end_time - self.start_time


@dataclass
class ChunkPlan:
    ideal_duration: int
    total_duration: float
    chunks: List[VideoChunk] = field(default_factory=list)

    @property
    def count(self) -> int:
        return len(self.chunks)


def needs_chunking(file_size: int) -> bool:
    """Return ``True`` when *file_size* exceeds the per-chunk size limit."""

    return file_size / _MB > MAX_CHUNK_SIZE_MB


def estimate_duration(file_size: int) -> float:
    """Rough duration guess for uploads whose container could not be probed."""

    return max(300.0, file_size / FALLBACK_BYTES_PER_SECOND)


def calculate_ideal_chunk_duration(file_size: int, duration: float) -> int:
    if file_size > 0 and duration > 0:
        bytes_per_second = file_size / duration
    else:
        bytes_per_second = float(FALLBACK_BYTES_PER_SECOND)
    max_bytes = min(MAX_CHUNK_SIZE_MB, WHISPER_API_SIZE_LIMIT_MB) * _MB
    ideal = int(math.floor(max_bytes / bytes_per_second))
    return min(MAX_CHUNK_DURATION, max(MIN_CHUNK_DURATION, ideal))


def plan_video_chunks(
    file_name: str,
    file_size: int,
    duration: Optional[float],
    *,
    stem: Optional[str] = None,
) -> ChunkPlan:
    """Split ``[0, duration)`` into consecutive chunks of the ideal length.

    The last chunk absorbs the remainder, so the number of chunks is always
    ``ceil(duration / ideal)``.
    """

    total = float(duration) if duration and duration > 0 else estimate_duration(file_size)
    ideal = calculate_ideal_chunk_duration(file_size, total)
    source = Path(file_name)
    extension = source.suffix or ".mp4"
    base = stem or source.stem or "video"

    chunks: List[VideoChunk] = []
    start = 0.0
    index = 0
    while start < total:
        length = min(float(ideal), total - start)
        if length <= 0:
            break
        end = start + length
        chunks.append(
            VideoChunk(
                index=index,
                start_time=start,
                end_time=end,
                duration=length,
                title=f"Chunk {index + 1}",
                file_name=build_chunk_file_name(base, index, extension),
            )
        )
        start = end
        index += 1

    LOGGER.debug(
        "Planned %d chunk(s) of ~%ss for %s (%.1fs, %d bytes)",
        len(chunks),
        ideal,
        file_name,
        total,
        file_size,
    )
    return ChunkPlan(ideal_duration=ideal, total_duration=total, chunks=chunks)


def build_chunking_metadata(
    plan: ChunkPlan,
    *,
    provider: TranscriptionProviderName = "openai",
    created_at: Optional[datetime] = None,
) -> Dict[str, Any]:
    """Return the ``chunking`` entry stored inside a project's video metadata."""

    stamp = (created_at or datetime.now(timezone.utc)).isoformat()
    return {
        "isChunked": True,
        "isVirtualChunking": True,
        "status": "pending",
        "chunks": [chunk.to_dict() for chunk in plan.chunks],
        "totalDuration": plan.total_duration,
        "idealChunkDuration": plan.ideal_duration,
        "createdAt": stamp,
        "transcriptionProvider": provider,
    }


def update_chunk_status(
    chunking: Dict[str, Any],
    index: int,
    status: ChunkStatus,
    *,
    error: Optional[str] = None,
) -> Dict[str, Any]:
    """Return a copy of *chunking* with chunk *index* set to *status*.

    The overall status follows the chunks: ``error`` if any chunk failed,
    ``completed`` once all are done, ``processing`` otherwise.
    """

    if status not in CHUNK_STATUSES:
        raise ValueError(f"Unknown chunk status: {status}")
    chunks = [dict(chunk) for chunk in chunking.get("chunks", [])]
    matched = False
    for chunk in chunks:
        if int(chunk.get("index", -1)) == index:
            chunk["status"] = status
            if error:
                chunk["error"] = error
            else:
                chunk.pop("error", None)
            matched = True
    if not matched:
        raise IndexError(f"Chunk {index} does not exist")

    statuses = {chunk.get("status") for chunk in chunks}
    if "error" in statuses:
        overall = "error"
    elif statuses == {"completed"}:
        overall = "completed"
    else:
        overall = "processing"
    return {**chunking, "chunks": chunks, "status": overall}


def plan_audio_chunks(duration: float, max_seconds: int = AUDIO_CHUNK_SECONDS) -> List[AudioChunk]:
    if duration <= 0:
        return []
    total_chunks = int(math.ceil(duration / max_seconds))
    return [
        AudioChunk(
            index=index,
            start_time=float(index * max_seconds),
            end_time=float(min((index + 1) * max_seconds, duration)),
        )
        for index in range(total_chunks)
    ]


def split_wav_into_chunks(
    wav_path: Path,
    output_dir: Path,
    *,
    max_seconds: int = AUDIO_CHUNK_SECONDS,
) -> List[AudioChunk]:
    """Write ``chunk_000.wav``, ``chunk_001.wav``... covering *wav_path*."""

    samples, sample_rate = load_wav_file(wav_path)
    duration = len(samples) / float(sample_rate) if sample_rate else 0.0
    chunks = plan_audio_chunks(duration, max_seconds)
    output_dir.mkdir(parents=True, exist_ok=True)
    for chunk in chunks:
        first = int(round(chunk.start_time * sample_rate))
        last = int(round(chunk.end_time * sample_rate))
        target = output_dir / build_audio_chunk_name(chunk.index)
        save_wav_file(target, samples[first:last], sample_rate)
        chunk.path = target
    LOGGER.debug("Split %s (%.1fs) into %d WAV chunk(s)", wav_path, duration, len(chunks))
    return chunks


__all__ = [
    "AUDIO_CHUNK_SECONDS",
    "AudioChunk",
    "CHUNK_STATUSES",
    "ChunkPlan",
    "MAX_CHUNK_DURATION",
    "MAX_CHUNK_SIZE_MB",
    "MIN_CHUNK_DURATION",
    "VideoChunk",
    "WHISPER_API_SIZE_LIMIT_MB",
    "build_chunking_metadata",
    "calculate_ideal_chunk_duration",
    "estimate_duration",
    "needs_chunking",
    "plan_audio_chunks",
    "plan_video_chunks",
    "split_wav_into_chunks",
    "update_chunk_status",
]
