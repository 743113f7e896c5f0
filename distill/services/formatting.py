"""Human readable formatting for sizes, durations, dates and expiry badges."""

from __future__ import annotations

import math
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Optional, Union


_SIZE_UNITS = ("Bytes", "KB", "MB", "GB", "TB")

DateLike = Union[str, datetime]


@dataclass(frozen=True)
class ExpirationBadge:
    hours: int
    color: str
    text: str


def format_file_size(size: Optional[float]) -> str:
    """Return ``size`` (bytes) as ``"2.5 MB"`` using 1024 as the base."""

    if not size or size <= 0:
        return "0 Bytes"
    exponent = min(int(math.floor(math.log(size, 1024))), len(_SIZE_UNITS) - 1)
    value = round(size / math.pow(1024, exponent), 2)
    rendered = f"{value:.2f}".rstrip("0").rstrip(".")
    return f"{rendered} {_SIZE_UNITS[exponent]}"


def format_duration(seconds: Optional[float]) -> str:
    """Return ``H:MM:SS`` for durations of an hour or more, ``M:SS`` otherwise."""

    if not seconds:
        return "0:00"
    total = int(math.floor(seconds))
    hours, remainder = divmod(total, 3600)
    minutes, secs = divmod(remainder, 60)
    if hours > 0:
        return f"{hours}:{minutes:02d}:{secs:02d}"
    return f"{minutes}:{secs:02d}"


def timestamp_to_seconds(timestamp: Optional[str]) -> int:
    """Convert ``SS``, ``MM:SS`` or ``HH:MM:SS`` into seconds (0 when invalid)."""

    if not timestamp:
        return 0
    parts = str(timestamp).strip().split(":")
    if not 1 <= len(parts) <= 3:
        return 0
    try:
        numbers = [int(float(part)) for part in parts]
    except ValueError:
        return 0
    total = 0
    for number in numbers:
        total = total * 60 + number
    return total


def parse_datetime(value: DateLike) -> datetime:
    """Parse an ISO timestamp into an aware UTC datetime."""

    if isinstance(value, datetime):
        parsed = value
    else:
        text = str(value).strip()
        if text.endswith("Z"):
            text = text[:-1] + "+00:00"
        parsed = datetime.fromisoformat(text)
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed.astimezone(timezone.utc)


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def format_date(value: DateLike) -> str:
    """Return a short human date such as ``Mar 4, 2025``."""

    parsed = parse_datetime(value)
    return f"{parsed.strftime('%b')} {parsed.day}, {parsed.year}"


def hours_until(expires_at: Optional[DateLike], *, now: Optional[datetime] = None) -> int:
    """Whole hours (rounded up) left before *expires_at*, never negative."""

    if not expires_at:
        return 0
    reference = now or utc_now()
    if reference.tzinfo is None:
        reference = reference.replace(tzinfo=timezone.utc)
    remaining = (parse_datetime(expires_at) - reference).total_seconds()
    return max(0, math.ceil(remaining / 3600))


def expiration_badge(hours: int) -> ExpirationBadge:
    if hours <= 6:
        color = "red"
    elif hours <= 24:
        color = "amber"
    else:
        color = "green"
    return ExpirationBadge(hours=hours, color=color, text=f"{hours}h remaining")


__all__ = [
    "ExpirationBadge",
    "expiration_badge",
    "format_date",
    "format_duration",
    "format_file_size",
    "hours_until",
    "parse_datetime",
    "timestamp_to_seconds",
    "utc_now",
]
