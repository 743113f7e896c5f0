"""Utility helpers for consistent asset naming."""

from __future__ import annotations

from datetime import datetime
import re
from typing import Optional

__all__ = [
    "slugify",
    "build_asset_stem",
    "build_timestamped_name",
    "build_chunk_file_name",
    "build_audio_chunk_name",
    "build_frame_name",
]


def slugify(value: str) -> str:
    """Return a filesystem-friendly representation of *value*."""

    value = value.strip().lower()
    value = re.sub(r"[^a-z0-9]+", "-", value)
    value = re.sub(r"-+", "-", value).strip("-")
    return value or "item"


def build_asset_stem(*parts: str) -> str:
    """Return a slugified stem joined from the provided *parts*."""

    cleaned = [slugify(part) for part in parts if part]
    return "-".join(cleaned) if cleaned else "item"


def build_timestamped_name(
    stem: str,
    *,
    timestamp: Optional[str] = None,
    sequence: Optional[int] = None,
    extension: str = "",
) -> str:
    """Return a timestamped name for *stem* with an optional *extension*."""

    stamp = timestamp or datetime.now().strftime("%Y%m%d-%H%M%S")
    components = [stem or "item", stamp]
    if sequence is not None:
        components.append(f"{sequence:03d}")
    return "-".join(components) + _normalize_extension(extension)


def build_chunk_file_name(stem: str, index: int, extension: str) -> str:
    """Return the name of the ``index``-th (zero based) virtual video chunk."""

    suffix = _normalize_extension(extension) or ".mp4"
    return f"{stem or 'video'}_chunk_{index + 1}{suffix}"


def build_audio_chunk_name(index: int) -> str:
    return f"chunk_{index:03d}.wav"


def build_frame_name(stem: str, seconds: float) -> str:
    """Return the file name used for a frame captured at *seconds*."""

    millis = int(round(max(0.0, seconds) * 1000))
    return f"{stem or 'video'}_frame_{millis:09d}.jpg"


def _normalize_extension(extension: str) -> str:
    if not extension:
        return ""
    suffix = extension if extension.startswith(".") else f".{extension}"
    return suffix.lower()
