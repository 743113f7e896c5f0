"""Bootstrap logic that prepares runtime directories and the SQLite database."""

from __future__ import annotations

import logging
import shutil
import sqlite3
from pathlib import Path

from . import config as config_module
from .config import AppConfig, load_config

LOGGER = logging.getLogger(__name__)


DEFAULT_TIER_NAME = "Free"
DEFAULT_TIER_LIMIT = 1024 * 1024 * 1024


class BootstrapError(RuntimeError):
    """Raised when initialization cannot be completed."""


class Bootstrapper:
    """High level object orchestrating initialization steps."""

    def __init__(self, config: AppConfig) -> None:
        self._config = config

    @property
    def config(self) -> AppConfig:
        return self._config

    def initialize(self) -> None:
        """Run all bootstrap tasks."""

        LOGGER.debug("Starting bootstrap sequence")
        self._ensure_directories()
        self._ensure_database()
        LOGGER.info("Bootstrap completed successfully")

    def _ensure_directories(self) -> None:
        labelled = (
            ("storage", self._config.storage_root),
            ("assets", self._config.assets_root),
            ("projects", self._config.projects_root),
        )
        for label, path in labelled:
            if not config_module._ensure_writable_directory(path):
                raise BootstrapError(
                    f"Unable to prepare {label} directory '{path}'. It is not writable. "
                    "Update config/default.json or adjust permissions."
                )
            LOGGER.debug("Ensured directory exists: %s", path)

        archive_root = self._config.archive_root
        archive_root.mkdir(parents=True, exist_ok=True)
        for child in archive_root.iterdir():
            try:
                if child.is_dir():
                    shutil.rmtree(child)
                else:
                    child.unlink()
            except OSError as error:  # pragma: no cover - best effort cleanup
                LOGGER.warning("Could not remove archive %s: %s", child, error)
        LOGGER.debug("Cleared archive directory: %s", archive_root)

    def _ensure_database(self) -> None:
        LOGGER.debug("Ensuring database schema at %s", self._config.database_file)
        try:
            connection = sqlite3.connect(self._config.database_file)
        except sqlite3.Error as error:
            raise BootstrapError(
                f"Unable to open database '{self._config.database_file}': {error}"
            ) from error
        try:
            cursor = connection.cursor()
            cursor.executescript(
                """
                PRAGMA foreign_keys = ON;
                CREATE TABLE IF NOT EXISTS folders (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    name TEXT NOT NULL,
                    description TEXT DEFAULT '',
                    created_at TEXT NOT NULL,
                    updated_at TEXT NOT NULL
                );

                CREATE TABLE IF NOT EXISTS projects (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    title TEXT NOT NULL,
                    description TEXT DEFAULT '',
                    source_type TEXT NOT NULL DEFAULT 'video',
                    source_url TEXT,
                    source_file_path TEXT,
                    transcript TEXT,
                    context_prompt TEXT DEFAULT '',
                    slides TEXT NOT NULL DEFAULT '[]',
                    video_metadata TEXT NOT NULL DEFAULT '{}',
                    folder_id INTEGER,
                    model_id TEXT,
                    slides_per_minute REAL DEFAULT 6,
                    expires_at TEXT,
                    created_at TEXT NOT NULL,
                    updated_at TEXT NOT NULL,
                    FOREIGN KEY(folder_id) REFERENCES folders(id) ON DELETE SET NULL
                );

                CREATE TABLE IF NOT EXISTS usage_records (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    project_id INTEGER,
                    model_id TEXT NOT NULL,
                    input_tokens INTEGER NOT NULL DEFAULT 0,
                    output_tokens INTEGER NOT NULL DEFAULT 0,
                    total_tokens INTEGER NOT NULL DEFAULT 0,
                    estimated_cost REAL NOT NULL DEFAULT 0,
                    created_at TEXT NOT NULL,
                    FOREIGN KEY(project_id) REFERENCES projects(id) ON DELETE SET NULL
                );

                CREATE TABLE IF NOT EXISTS storage_tiers (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    name TEXT NOT NULL UNIQUE,
                    storage_limit INTEGER NOT NULL,
                    price REAL NOT NULL DEFAULT 0,
                    is_default INTEGER NOT NULL DEFAULT 0
                );

                CREATE TABLE IF NOT EXISTS storage_usage (
                    id INTEGER PRIMARY KEY CHECK (id = 1),
                    tier_id INTEGER,
                    storage_used INTEGER NOT NULL DEFAULT 0,
                    storage_breakdown TEXT NOT NULL DEFAULT '{}',
                    updated_at TEXT,
                    FOREIGN KEY(tier_id) REFERENCES storage_tiers(id) ON DELETE SET NULL
                );

                CREATE INDEX IF NOT EXISTS idx_projects_created_at ON projects(created_at);
                CREATE INDEX IF NOT EXISTS idx_usage_created_at ON usage_records(created_at);
                """
            )
            connection.commit()

            # Columns added after the first schema revision.
            for column, definition in (
                ("extracted_frames", "TEXT NOT NULL DEFAULT '[]'"),
                ("target_slide_count", "INTEGER DEFAULT 10"),
            ):
                try:
                    cursor.execute(f"ALTER TABLE projects ADD COLUMN {column} {definition}")
                except sqlite3.OperationalError as error:
                    message = str(error).lower()
                    if "duplicate column name" not in message:
                        raise
            connection.commit()

            cursor.execute("SELECT COUNT(*) FROM storage_tiers WHERE is_default = 1")
            (default_count,) = cursor.fetchone()
            if not default_count:
                cursor.execute(
                    "INSERT OR IGNORE INTO storage_tiers(name, storage_limit, price, is_default) "
                    "VALUES (?, ?, ?, 1)",
                    (DEFAULT_TIER_NAME, DEFAULT_TIER_LIMIT, 0.0),
                )
                LOGGER.debug("Seeded default storage tier '%s'", DEFAULT_TIER_NAME)
            connection.commit()
        finally:
            connection.close()


def initialize_app(config_path: Path | None = None) -> AppConfig:
    """Convenience helper that loads configuration and runs initialization."""

    config = load_config(config_path=config_path)
    bootstrapper = Bootstrapper(config)
    bootstrapper.initialize()
    return config


__all__ = ["BootstrapError", "Bootstrapper", "DEFAULT_TIER_LIMIT", "DEFAULT_TIER_NAME", "initialize_app"]
