"""Frame library bookkeeping and ffmpeg-backed frame capture.

Frames are plain dictionaries (``id``, ``timestamp``, ``imageUrl`` and an
optional ``isPlaceholder`` flag) so they can be stored verbatim inside a
project's ``extracted_frames`` JSON column.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, Iterable, List, Optional, Sequence, Tuple
from urllib.parse import unquote, urlparse

from ..services.formatting import timestamp_to_seconds
from ..services.naming import build_frame_name
from .media import MediaError, capture_frame


LOGGER = logging.getLogger(__name__)

Frame = Dict[str, Any]
Slide = Dict[str, Any]

STORAGE_URL_PREFIX = "/storage/"


def time_to_seconds(timestamp: Optional[str]) -> int:
    """Convert ``MM:SS`` or ``HH:MM:SS`` to seconds; anything else is ``0``."""

    if not timestamp or not isinstance(timestamp, str):
        return 0
    parts = timestamp.split(":")
    try:
        numbers = [int(float(part)) for part in parts]
    except ValueError:
        return 0
    if len(numbers) == 2:
        return numbers[0] * 60 + numbers[1]
    if len(numbers) == 3:
        return numbers[0] * 3600 + numbers[1] * 60 + numbers[2]
    return 0


def sort_frames_by_timestamp(frames: Iterable[Frame]) -> List[Frame]:
    # Frames without a timestamp sort first; the sort is stable otherwise.
    return sorted(frames, key=lambda frame: time_to_seconds(frame.get("timestamp")))


def _frame_key(frame: Frame) -> Optional[str]:
    key = frame.get("id") or frame.get("timestamp")
    return str(key) if key else None


def merge_frames(existing: Iterable[Frame], new: Iterable[Frame]) -> List[Frame]:
    """Merge two frame libraries keyed by id (or timestamp when id is missing).

    Entries from *new* replace existing entries with the same key.
    """

    merged: Dict[str, Frame] = {}
    for frame in existing:
        key = _frame_key(frame)
        if key:
            merged[key] = frame
    for frame in new:
        key = _frame_key(frame)
        if key:
            merged[key] = frame
    return sort_frames_by_timestamp(merged.values())


def used_image_urls(slides: Optional[Sequence[Slide]]) -> set:
    used = set()
    for slide in slides or []:
        if not isinstance(slide, dict):
            continue
        if slide.get("imageUrl"):
            used.add(slide["imageUrl"])
        urls = slide.get("imageUrls")
        if isinstance(urls, list):
            used.update(url for url in urls if url)
    return used


def frame_statistics(frames: Sequence[Frame], slides: Optional[Sequence[Slide]]) -> Dict[str, Any]:
    used = used_image_urls(slides)
    unused = [frame for frame in frames if frame.get("imageUrl") not in used]
    return {
        "totalExtracted": len(frames),
        "usedCount": len(frames) - len(unused),
        "unusedCount": len(unused),
        "unusedFrames": unused,
    }


def is_persistent_url(url: Optional[str]) -> bool:
    return bool(url) and not str(url).startswith("blob:")


def load_valid_frames(frames: Optional[Iterable[Any]]) -> List[Frame]:
    """Drop frames without a usable ``imageUrl`` and sort the rest."""

    if not frames:
        return []
    valid = [
        frame
        for frame in frames
        if isinstance(frame, dict) and is_persistent_url(frame.get("imageUrl"))
    ]
    return sort_frames_by_timestamp(valid)


def remove_frames(frames: Iterable[Frame], frame_ids: Iterable[str]) -> List[Frame]:
    targets = {str(identifier) for identifier in frame_ids}
    return [frame for frame in frames if str(frame.get("id")) not in targets]


def extract_timestamps_from_slides(slides: Optional[Iterable[Any]]) -> List[str]:
    """Return each slide timestamp once, in first-seen order."""

    if not slides:
        return []
    timestamps: List[str] = []
    seen = set()

    def _add(value: Any) -> None:
        if isinstance(value, str) and value and value not in seen:
            seen.add(value)
            timestamps.append(value)

    for slide in slides:
        if not isinstance(slide, dict):
            continue
        _add(slide.get("timestamp"))
        extra = slide.get("transcriptTimestamps")
        if isinstance(extra, list):
            for value in extra:
                _add(value)
    return timestamps


def missing_timestamps(requested: Iterable[str], frames: Iterable[Frame]) -> List[str]:
    have = {frame.get("timestamp") for frame in frames if frame.get("timestamp")}
    return [timestamp for timestamp in requested if timestamp not in have]


def slides_need_frame_extraction(slides: Optional[Sequence[Slide]]) -> bool:
    """Return ``True`` when a timestamped slide still has no image."""

    for slide in slides or []:
        if not slide.get("timestamp") and not slide.get("transcriptTimestamps"):
            continue
        if not slide.get("imageUrl") and not slide.get("imageUrls"):
            return True
    return False


def update_slides_with_frames(
    slides: Sequence[Slide], frames: Iterable[Frame]
) -> Tuple[List[Slide], int]:
    """Attach frames to the slides whose ``timestamp`` they were captured at.

    Returns the new slide list and the number of slides that matched a frame.
    A legacy single ``imageUrl`` is folded into ``imageUrls``.
    """

    by_timestamp: Dict[str, Frame] = {}
    for frame in frames:
        if frame.get("timestamp"):
            by_timestamp[frame["timestamp"]] = frame

    updated: List[Slide] = []
    matched = 0
    for slide in slides:
        frame = by_timestamp.get(slide.get("timestamp")) if slide.get("timestamp") else None
        if frame is None:
            updated.append(slide)
            continue
        matched += 1
        image_url = frame.get("imageUrl")
        current = slide.get("imageUrls")
        if isinstance(current, list):
            new_slide = dict(slide)
            if image_url not in current:
                new_slide["imageUrls"] = [*current, image_url]
        elif slide.get("imageUrl"):
            new_slide = {**slide, "imageUrls": [slide["imageUrl"], image_url]}
            new_slide.pop("imageUrl", None)
        else:
            new_slide = {**slide, "imageUrls": [image_url]}
        updated.append(new_slide)
    return updated, matched


def validate_selection(frames: Sequence[Frame]) -> None:
    """Raise ``ValueError`` when a selected frame cannot be persisted."""

    if not frames:
        raise ValueError("No frames were selected")
    for frame in frames:
        if not is_persistent_url(frame.get("imageUrl")) or not frame.get("timestamp"):
            raise ValueError(
                "Cannot save frames with temporary URLs. Please try capturing frames again."
            )


def apply_frame_selection(
    slides: Sequence[Slide], slide_index: int, frames: Sequence[Frame]
) -> List[Slide]:
    """Replace the images of slide *slide_index* with the selected frames."""

    if slide_index < 0 or slide_index >= len(slides):
        raise IndexError(f"Slide {slide_index} does not exist")
    validate_selection(frames)
    urls: List[str] = []
    for frame in frames:
        if frame["imageUrl"] not in urls:
            urls.append(frame["imageUrl"])
    updated = [dict(slide) for slide in slides]
    target = updated[slide_index]
    target.pop("imageUrl", None)
    target["imageUrls"] = urls
    return updated


def storage_path_from_url(url: Optional[str]) -> Optional[str]:
    """Return the path below the storage root that *url* points to."""

    if not url:
        return None
    path = unquote(urlparse(url).path)
    marker = path.find(STORAGE_URL_PREFIX)
    if marker == -1:
        return None
    relative = path[marker + len(STORAGE_URL_PREFIX):].lstrip("/")
    return relative or None


@dataclass
class FrameExtractor:
    """Capture stills from a project's video with FFmpeg."""

    storage_root: Path

    def extract(
        self,
        video_path: Path,
        timestamps: Sequence[str],
        output_dir: Path,
        *,
        stem: Optional[str] = None,
    ) -> List[Frame]:
        if not video_path.exists():
            raise MediaError(f"Video not found: {video_path}")
        output_dir.mkdir(parents=True, exist_ok=True)
        base = stem or video_path.stem
        frames: List[Frame] = []
        for timestamp in timestamps:
            seconds = time_to_seconds(timestamp) or timestamp_to_seconds(timestamp)
            target = output_dir / build_frame_name(base, seconds)
            capture_frame(video_path, float(seconds), target)
            relative = target.relative_to(self.storage_root).as_posix()
            frames.append(
                {
                    "id": f"frame-{target.stem}",
                    "timestamp": timestamp,
                    "imageUrl": f"{STORAGE_URL_PREFIX}{relative}",
                }
            )
            LOGGER.debug("Captured frame at %s (%ss) -> %s", timestamp, seconds, target)
        return frames


__all__ = [
    "FrameExtractor",
    "apply_frame_selection",
    "extract_timestamps_from_slides",
    "frame_statistics",
    "is_persistent_url",
    "load_valid_frames",
    "merge_frames",
    "missing_timestamps",
    "remove_frames",
    "slides_need_frame_extraction",
    "sort_frames_by_timestamp",
    "storage_path_from_url",
    "time_to_seconds",
    "update_slides_with_frames",
    "used_image_urls",
    "validate_selection",
]
