"""Configuration loading utilities for the Distill application."""

from __future__ import annotations

import contextlib
import json
import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, Iterable, Tuple


LOGGER = logging.getLogger(__name__)


_PERMISSION_SENTINEL = ".distill_write_check"

DEFAULT_RETENTION_HOURS = 72
DEFAULT_OPENAI_MODEL = "gpt-4o-mini"


def _ensure_writable_directory(path: Path) -> bool:
    """Return ``True`` if *path* can be created and written to."""

    try:
        path.mkdir(parents=True, exist_ok=True)
    except OSError:
        return False

    probe = path / _PERMISSION_SENTINEL
    try:
        with probe.open("w", encoding="utf-8") as handle:
            handle.write("ok")
    except OSError:
        return False
    finally:
        with contextlib.suppress(OSError):
            probe.unlink()

    return True


def _select_writable_directory(
    preferred: Path,
    *,
    label: str,
    fallbacks: Iterable[Path] = (),
) -> Tuple[Path, bool]:
    """Return a usable directory based on ``preferred`` and ``fallbacks``.

    ``preferred`` is returned when it can be prepared. Otherwise each fallback
    is tried in order and the first writable one is returned together with a
    flag telling the caller that a fallback was chosen. When nothing works the
    original ``preferred`` path comes back so later steps can report it.
    """

    preferred = preferred.resolve()
    if _ensure_writable_directory(preferred):
        return preferred, False

    for fallback in fallbacks:
        candidate = fallback.resolve()
        if candidate == preferred:
            continue
        if _ensure_writable_directory(candidate):
            LOGGER.warning(
                "Preferred %s directory '%s' is not writable; using fallback '%s'.",
                label,
                preferred,
                candidate,
            )
            return candidate, True

    LOGGER.warning(
        "%s directory '%s' is not writable and no fallback is available.",
        label.capitalize(),
        preferred,
    )
    return preferred, False


@dataclass(frozen=True)
class AppConfig:
    """Runtime paths and tunables for the application."""

    storage_root: Path
    database_file: Path
    assets_root: Path
    retention_hours: int = DEFAULT_RETENTION_HOURS
    openai_model: str = DEFAULT_OPENAI_MODEL

    @property
    def projects_root(self) -> Path:
        """Directory holding the per-project storage areas."""

        return (self.storage_root / "projects").resolve()

    @property
    def archive_root(self) -> Path:
        """Location used for temporary export files."""

        return (self.storage_root / "_archives").resolve()

    @classmethod
    def from_mapping(cls, mapping: Dict[str, Any], *, base_path: Path) -> "AppConfig":
        preferred_storage = (base_path / mapping["storage_root"]).resolve()
        storage_fallback = Path.home() / ".distill" / "storage"
        storage_root, storage_fallback_used = _select_writable_directory(
            preferred_storage,
            label="storage",
            fallbacks=(storage_fallback,),
        )

        database_file = (base_path / mapping["database_file"]).resolve()

        preferred_assets = (base_path / mapping["assets_root"]).resolve()
        assets_root, _ = _select_writable_directory(
            preferred_assets,
            label="assets",
            fallbacks=(storage_root / "_assets",),
        )

        if storage_fallback_used:
            try:
                relative_database = database_file.relative_to(preferred_storage)
            except ValueError:
                relative_database = None
            if relative_database is not None:
                fallback_database = (storage_root / relative_database).resolve()
                if _ensure_writable_directory(fallback_database.parent):
                    LOGGER.warning(
                        "Preferred database location '%s' is not writable; using fallback '%s'.",
                        database_file,
                        fallback_database,
                    )
                    database_file = fallback_database

        if not _ensure_writable_directory(database_file.parent):
            fallback_database = (storage_root / database_file.name).resolve()
            if fallback_database != database_file and _ensure_writable_directory(
                fallback_database.parent
            ):
                LOGGER.warning(
                    "Preferred database location '%s' is not writable; using fallback '%s'.",
                    database_file,
                    fallback_database,
                )
                database_file = fallback_database
            else:
                LOGGER.warning(
                    "Database location '%s' is not writable and no fallback is available.",
                    database_file,
                )

        try:
            retention_hours = int(mapping.get("retention_hours", DEFAULT_RETENTION_HOURS))
        except (TypeError, ValueError):
            LOGGER.warning(
                "Invalid retention_hours %r; using %s",
                mapping.get("retention_hours"),
                DEFAULT_RETENTION_HOURS,
            )
            retention_hours = DEFAULT_RETENTION_HOURS
        openai_model = str(mapping.get("openai_model") or DEFAULT_OPENAI_MODEL)

        return cls(
            storage_root=storage_root,
            database_file=database_file,
            assets_root=assets_root,
            retention_hours=max(1, retention_hours),
            openai_model=openai_model,
        )


def load_config(config_path: Path | None = None) -> AppConfig:
    """Load the application configuration from ``config/default.json`` by default."""

    base_path = Path(__file__).resolve().parent.parent
    if config_path is None:
        config_path = base_path / "config" / "default.json"

    with config_path.open("r", encoding="utf-8") as config_file:
        raw_config = json.load(config_file)

    return AppConfig.from_mapping(raw_config, base_path=base_path)


__all__ = ["AppConfig", "DEFAULT_OPENAI_MODEL", "DEFAULT_RETENTION_HOURS", "load_config"]
