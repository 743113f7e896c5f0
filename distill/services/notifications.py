"""In-memory toast feed used to surface errors and confirmations."""

from __future__ import annotations

import logging
import threading
from collections import deque
from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from typing import Any, Deque, Dict, List, Literal, Optional


LOGGER = logging.getLogger(__name__)

ToastKind = Literal["success", "error", "info", "warning"]

_LEVELS: Dict[str, int] = {
    "success": logging.INFO,
    "info": logging.INFO,
    "warning": logging.WARNING,
    "error": logging.ERROR,
}


@dataclass
class Toast:
    id: int
    kind: ToastKind
    title: str
    description: str = ""
    created_at: str = field(
        default_factory=lambda: datetime.now(timezone.utc).isoformat()
    )


class NotificationCenter:
    """Bounded, thread-safe queue of toasts.

    Clients poll :meth:`collect` with the last id they saw, mirroring the way
    the debug log console streams entries.
    """

    def __init__(self, capacity: int = 100) -> None:
        self._capacity = max(1, capacity)
        self._entries: Deque[Toast] = deque(maxlen=self._capacity)
        self._lock = threading.Lock()
        self._last_id = 0

    def push(self, kind: ToastKind, title: str, description: str = "") -> Toast:
        with self._lock:
            self._last_id += 1
            toast = Toast(id=self._last_id, kind=kind, title=title, description=description)
            self._entries.append(toast)
        LOGGER.log(_LEVELS.get(kind, logging.INFO), "Toast [%s] %s: %s", kind, title, description)
        return toast

    def success(self, title: str, description: str = "") -> Toast:
        return self.push("success", title, description)

    def info(self, title: str, description: str = "") -> Toast:
        return self.push("info", title, description)

    def warning(self, title: str, description: str = "") -> Toast:
        return self.push("warning", title, description)

    def error(self, title: str, description: str = "") -> Toast:
        return self.push("error", title, description)

    def collect(self, after: Optional[int] = None) -> List[Dict[str, Any]]:
        with self._lock:
            entries = list(self._entries)
        if after:
            entries = [toast for toast in entries if toast.id > after]
        return [asdict(toast) for toast in entries]

    def clear(self) -> None:
        with self._lock:
            self._entries.clear()

    @property
    def last_id(self) -> int:
        with self._lock:
            return self._last_id


__all__ = ["NotificationCenter", "Toast", "ToastKind"]
