"""Persistence helpers for user facing settings."""

from __future__ import annotations

import json
import logging
from dataclasses import asdict, dataclass
from pathlib import Path
from typing import Literal

from ..config import AppConfig


LOGGER = logging.getLogger(__name__)

ThemeName = Literal["dark", "light", "system"]
TranscriptionProvider = Literal["openai", "local"]

THEME_OPTIONS = ("dark", "light", "system")
TRANSCRIPTION_PROVIDERS = ("openai", "local")
WHISPER_MODEL_OPTIONS = ("tiny", "base", "small", "medium", "large")


@dataclass
class UISettings:
    """Container for customisable options."""

    theme: ThemeName = "system"
    model_id: str = "gpt-4o-mini"
    slides_per_minute: float = 6.0
    target_slide_count: int = 10
    transcription_provider: TranscriptionProvider = "openai"
    whisper_model: str = "base"


class SettingsStore:
    """Load and store :class:`UISettings` next to the other persisted assets."""

    def __init__(self, config: AppConfig) -> None:
        self._config = config
        self._path = config.storage_root / "settings.json"

    @property
    def path(self) -> Path:
        return self._path

    def load(self) -> UISettings:
        if not self._path.exists():
            return UISettings(model_id=self._config.openai_model)

        try:
            payload = json.loads(self._path.read_text(encoding="utf-8"))
        except json.JSONDecodeError:
            LOGGER.warning("Ignoring unreadable settings file %s", self._path)
            return UISettings(model_id=self._config.openai_model)

        settings = UISettings(model_id=self._config.openai_model)
        for field, value in payload.items():
            if hasattr(settings, field):
                setattr(settings, field, value)
        return settings

    def save(self, settings: UISettings) -> None:
        self._path.parent.mkdir(parents=True, exist_ok=True)
        data = asdict(settings)
        self._path.write_text(json.dumps(data, indent=2), encoding="utf-8")
        LOGGER.debug("Settings saved to %s", self._path)


__all__ = [
    "SettingsStore",
    "THEME_OPTIONS",
    "TRANSCRIPTION_PROVIDERS",
    "ThemeName",
    "TranscriptionProvider",
    "UISettings",
    "WHISPER_MODEL_OPTIONS",
]
