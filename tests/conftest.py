from __future__ import annotations

import io
import sys
import wave
from pathlib import Path

import numpy as np
import pytest

ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from distill.bootstrap import Bootstrapper
from distill.config import AppConfig


@pytest.fixture()
def temp_config(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> AppConfig:
    config_dir = tmp_path / "config"
    config_dir.mkdir()
    config_file = config_dir / "default.json"
    config_file.write_text(
        """
        {
            \"storage_root\": \"storage\",\n
            \"database_file\": \"storage/distill.db\",\n
            \"assets_root\": \"assets\",\n
            \"retention_hours\": 72\n
        }
        """,
        encoding="utf-8",
    )
    monkeypatch.chdir(tmp_path)

    config = AppConfig.from_mapping(
        {
            "storage_root": "storage",
            "database_file": "storage/distill.db",
            "assets_root": "assets",
            "retention_hours": 72,
        },
        base_path=tmp_path,
    )

    Bootstrapper(config).initialize()
    return config


def build_wav_bytes(duration_seconds: float = 0.5, sample_rate: int = 16_000) -> bytes:
    frame_count = int(sample_rate * duration_seconds)
    timeline = np.arange(frame_count, dtype=np.float32) / sample_rate
    tone = (0.25 * np.sin(2 * np.pi * 440.0 * timeline) * 32_767).astype(np.int16)
    buffer = io.BytesIO()
    with wave.open(buffer, "wb") as handle:
        handle.setnchannels(1)
        handle.setsampwidth(2)
        handle.setframerate(sample_rate)
        handle.writeframes(tone.tobytes())
    return buffer.getvalue()


@pytest.fixture()
def wav_file(tmp_path: Path) -> Path:
    target = tmp_path / "lecture.wav"
    target.write_bytes(build_wav_bytes(2.0))
    return target


@pytest.fixture()
def wav_bytes() -> bytes:
    return build_wav_bytes(1.0)
