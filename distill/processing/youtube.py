"""YouTube URL parsing and caption retrieval."""

from __future__ import annotations

import logging
import re
from typing import Any, Callable, Iterable, Optional
from urllib.parse import parse_qs, urlparse

from youtube_transcript_api import YouTubeTranscriptApi


LOGGER = logging.getLogger(__name__)

_VIDEO_ID = re.compile(r"^[A-Za-z0-9_-]{11}$")


class TranscriptUnavailableError(RuntimeError):
    """Raised when captions cannot be fetched for a video."""


def is_youtube_url(url: str) -> bool:
    host = (urlparse(url).hostname or "").lower()
    return host.endswith("youtube.com") or host.endswith("youtu.be")


def extract_video_id(url: Optional[str]) -> Optional[str]:
    """Return the 11 character video id from the usual YouTube URL shapes."""

    if not url:
        return None
    candidate = url.strip()
    if _VIDEO_ID.match(candidate):
        return candidate

    parsed = urlparse(candidate)
    host = (parsed.hostname or "").lower()
    segments = [segment for segment in parsed.path.split("/") if segment]
    video_id: Optional[str] = None
    if host.endswith("youtu.be"):
        video_id = segments[0] if segments else None
    elif host.endswith("youtube.com"):
        if parsed.path == "/watch":
            video_id = (parse_qs(parsed.query).get("v") or [None])[0]
        elif len(segments) >= 2 and segments[0] in ("embed", "shorts", "v", "live"):
            video_id = segments[1]
    if video_id and _VIDEO_ID.match(video_id):
        return video_id
    return None


def _entry_text(entry: Any) -> str:
    if isinstance(entry, dict):
        return str(entry.get("text", ""))
    return str(getattr(entry, "text", ""))


def fetch_youtube_transcript(
    url: str,
    *,
    languages: Iterable[str] = ("en",),
    fetcher: Optional[Callable[..., Iterable[Any]]] = None,
) -> str:
    """Return the caption text of the video at *url* joined by spaces."""

    video_id = extract_video_id(url)
    if video_id is None:
        raise TranscriptUnavailableError(f"Not a YouTube video URL: {url}")

    fetch = fetcher or YouTubeTranscriptApi().fetch
    try:
        entries = list(fetch(video_id, languages=list(languages)))
    except Exception as error:  # noqa: BLE001 - the API raises many caption specific errors
        LOGGER.warning("Caption lookup failed for %s: %s", video_id, error)
        raise TranscriptUnavailableError(
            f"No transcript available for YouTube video {video_id}"
        ) from error

    text = " ".join(piece.strip() for piece in map(_entry_text, entries) if piece.strip())
    if not text:
        raise TranscriptUnavailableError(f"No transcript available for YouTube video {video_id}")
    LOGGER.debug("Fetched %d caption entries for %s", len(entries), video_id)
    return text


__all__ = [
    "TranscriptUnavailableError",
    "extract_video_id",
    "fetch_youtube_transcript",
    "is_youtube_url",
]
