"""Processing backends for video, transcript and slide handling."""

from .chunking import (
    ChunkPlan,
    VideoChunk,
    build_chunking_metadata,
    needs_chunking,
    plan_video_chunks,
    split_wav_into_chunks,
)
from .export import ExportError, export_anki, export_csv, export_pdf
from .frames import FrameExtractor
from .media import MediaError, capture_frame, extract_audio, probe_media_duration
from .slides import OpenAISlideGenerator, SlideGenerationError, SlideGenerator
from .transcription import (
    FasterWhisperTranscription,
    OpenAIWhisperTranscription,
    TranscriptResult,
    TranscriptionEngine,
)
from .youtube import TranscriptUnavailableError, fetch_youtube_transcript

__all__ = [
    "ChunkPlan",
    "ExportError",
    "FasterWhisperTranscription",
    "FrameExtractor",
    "MediaError",
    "OpenAISlideGenerator",
    "OpenAIWhisperTranscription",
    "SlideGenerationError",
    "SlideGenerator",
    "TranscriptResult",
    "TranscriptUnavailableError",
    "TranscriptionEngine",
    "VideoChunk",
    "build_chunking_metadata",
    "capture_frame",
    "export_anki",
    "export_csv",
    "export_pdf",
    "extract_audio",
    "fetch_youtube_transcript",
    "needs_chunking",
    "plan_video_chunks",
    "probe_media_duration",
    "split_wav_into_chunks",
]
