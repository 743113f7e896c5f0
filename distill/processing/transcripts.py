"""Transcript clean-up, paragraphing and section helpers."""

from __future__ import annotations

import re
from dataclasses import dataclass
from typing import Any, Dict, Iterable, List, Mapping, Optional, Sequence, Union

from ..services.formatting import format_duration


WORDS_PER_MINUTE = 130
TIMESTAMP_INTERVAL_SECONDS = 60

_TOPIC_MARKERS = ("However,", "Moreover,", "In addition,", "Furthermore,")
_SENTENCE_PATTERN = re.compile(r"[^.!?]+[.!?]+(?:\s|$)")
_SPEAKER_PATTERN = re.compile(r"(?:^|\n)([A-Za-z ]+):[ \t]*")
_SECTION_PATTERN = re.compile(r"^\s*(#{1,3}\s+.+)$", re.MULTILINE)

SegmentLike = Union[Mapping[str, Any], Any]


@dataclass
class TranscriptFormatOptions:
    include_timestamps: bool = True
    format_speakers: bool = True
    add_paragraphs: bool = True


def cleanup_transcript(text: Optional[str]) -> str:
    """Collapse repeated whitespace and trim every line."""

    if not text:
        return ""
    cleaned = re.sub(r"[ \t\f\v]+", " ", text)
    cleaned = re.sub(r"^ +| +$", "", cleaned, flags=re.MULTILINE)
    cleaned = re.sub(r"\n{3,}", "\n\n", cleaned)
    return cleaned.strip()


def split_into_paragraphs(text: Optional[str], min_sentences: int = 2) -> str:
    """Insert blank lines at topic shifts or after four sentences."""

    if not text:
        return ""
    sentences = _SENTENCE_PATTERN.findall(text)
    if len(sentences) <= min_sentences:
        return text

    result: List[str] = []
    count = 0
    for sentence in sentences:
        result.append(sentence)
        count += 1
        if count < min_sentences:
            continue
        if any(marker in sentence for marker in _TOPIC_MARKERS) or count >= 4:
            result.append("\n\n")
            count = 0
    return "".join(result)


def format_with_speakers(text: Optional[str]) -> str:
    """Normalise speaker labels to ``Speaker N:`` on their own paragraph."""

    if not text:
        return ""
    labels: Dict[str, str] = {}
    for match in _SPEAKER_PATTERN.finditer(text):
        name = match.group(1).strip()
        key = name.lower()
        if not key or key in labels:
            continue
        labels[key] = name if key.startswith("speaker") else f"Speaker {len(labels) + 1}"

    formatted = text
    for key, label in labels.items():
        pattern = re.compile(rf"(?:^|\n)[ \t]*{re.escape(key)}:[ \t]*", re.IGNORECASE)
        formatted = pattern.sub(lambda _match, label=label: f"\n\n{label}: ", formatted)
    return re.sub(r"\n{3,}", "\n\n", formatted).strip()


def _segment_value(segment: SegmentLike, name: str, default: Any = None) -> Any:
    if isinstance(segment, Mapping):
        return segment.get(name, default)
    return getattr(segment, name, default)


def add_timestamps(text: Optional[str], segments: Optional[Sequence[SegmentLike]] = None) -> str:
    """Prefix transcript text with ``[M:SS]`` markers.

    With *segments* each segment becomes one line. Without them a marker is
    estimated every minute assuming 130 spoken words per minute.
    """

    if not text:
        return ""
    if segments:
        return "\n".join(
            f"[{format_duration(float(_segment_value(segment, 'start', 0.0) or 0.0))}] "
            f"{str(_segment_value(segment, 'text', '')).strip()}"
            for segment in segments
        )

    words = text.split()
    step = WORDS_PER_MINUTE * TIMESTAMP_INTERVAL_SECONDS // 60
    pieces: List[str] = []
    for index in range(0, len(words), step):
        if index > 0:
            seconds = index * 60 // WORDS_PER_MINUTE
            pieces.append(f"\n[{format_duration(seconds)}]")
        pieces.append(" ".join(words[index:index + step]))
    return " ".join(pieces).replace(" \n", "\n").strip()


def format_transcript(
    data: Union[str, Mapping[str, Any], None],
    options: Optional[TranscriptFormatOptions] = None,
) -> str:
    """Render raw transcription output (plain text or a segment payload)."""

    options = options or TranscriptFormatOptions()
    if not data:
        return ""
    if isinstance(data, str):
        return data

    transcript = ""
    segments = data.get("segments")
    if isinstance(segments, list):
        with_speakers = options.format_speakers and any(
            _segment_value(segment, "speaker") is not None for segment in segments
        )
        parts: List[str] = []
        current_speaker: Any = object()
        for segment in segments:
            segment_text = str(_segment_value(segment, "text", "")).strip()
            if with_speakers:
                speaker = _segment_value(segment, "speaker")
                if speaker != current_speaker:
                    parts.append(f"\n\nSpeaker {speaker}: {segment_text}")
                    current_speaker = speaker
                else:
                    parts.append(f" {segment_text}")
            else:
                start = _segment_value(segment, "start")
                prefix = (
                    f"[{format_duration(float(start))}] "
                    if options.include_timestamps and start is not None
                    else ""
                )
                parts.append(f"{prefix}{segment_text} ")
        transcript = "".join(parts)
    elif data.get("text"):
        transcript = str(data["text"])

    transcript = cleanup_transcript(transcript)
    if options.add_paragraphs:
        transcript = split_into_paragraphs(transcript)
    return transcript.strip()


def has_multiple_sections(text: Optional[str]) -> bool:
    return bool(text) and _SECTION_PATTERN.search(text) is not None


def extract_sections(text: Optional[str]) -> List[str]:
    if not text:
        return []
    return [match.group(1).strip() for match in _SECTION_PATTERN.finditer(text)]


def format_chunk_section(
    text: Optional[str],
    title: str,
    part_number: int,
    start_time: float,
    end_time: float,
) -> str:
    """Return ``text`` under a ``## {title} - Part N (start to end)`` header."""

    if not text:
        return ""
    header = (
        f"## {title} - Part {part_number} "
        f"({format_duration(start_time)} to {format_duration(end_time)})"
    )
    body = split_into_paragraphs(cleanup_transcript(text))
    return f"{header}\n\n{body}"


def render_transcript(
    text: Optional[str],
    options: Optional[TranscriptFormatOptions] = None,
    segments: Optional[Sequence[SegmentLike]] = None,
) -> str:
    """Prepare a stored transcript for reading.

    Recorded segments take precedence over the plain text. Transcripts that
    are already split into chunk sections keep their layout; estimated
    timestamps replace paragraph breaks because they re-flow the words.
    """

    options = options or TranscriptFormatOptions()
    if segments:
        return format_transcript({"segments": list(segments)}, options)

    rendered = cleanup_transcript(text)
    if options.format_speakers:
        rendered = format_with_speakers(rendered)
    if has_multiple_sections(rendered):
        return rendered
    if options.include_timestamps:
        return add_timestamps(rendered)
    if options.add_paragraphs:
        rendered = split_into_paragraphs(rendered).strip()
    return rendered


def combine_chunk_transcripts(transcripts: Iterable[Optional[str]]) -> str:
    valid = [text for text in transcripts if text]
    return "\n\n".join(valid)


def word_count(text: Optional[str]) -> int:
    return len(text.split()) if text else 0


__all__ = [
    "TranscriptFormatOptions",
    "add_timestamps",
    "cleanup_transcript",
    "combine_chunk_transcripts",
    "extract_sections",
    "format_chunk_section",
    "format_transcript",
    "format_with_speakers",
    "has_multiple_sections",
    "render_transcript",
    "split_into_paragraphs",
    "word_count",
]
