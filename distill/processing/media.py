"""Media probing, audio extraction and frame capture helpers."""

from __future__ import annotations

import contextlib
import logging
import shutil
import subprocess
import wave
from pathlib import Path
from typing import List, Optional, Tuple

import numpy as np
from mutagen import File as MutagenFile


LOGGER = logging.getLogger(__name__)

TARGET_SAMPLE_RATE = 16_000


class MediaError(RuntimeError):
    """Raised when media cannot be probed, converted or sampled."""


def load_wav_file(path: Path) -> Tuple[np.ndarray, int]:
    """Return the PCM samples and sample rate stored in *path*.

    Samples come back as ``float32`` in ``[-1, 1]``; multi-channel files are
    shaped ``(frames, channels)``. 8, 16 and 32 bit PCM are supported.
    """

    try:
        with wave.open(str(path), "rb") as handle:
            channels = handle.getnchannels()
            sample_rate = handle.getframerate()
            sample_width = handle.getsampwidth()
            payload = handle.readframes(handle.getnframes())
    except (wave.Error, EOFError) as error:
        raise MediaError(f"Unsupported WAV file: {error}") from error

    if channels <= 0:
        raise MediaError("WAV file reports zero channels")

    if sample_width == 1:
        data = (np.frombuffer(payload, dtype=np.uint8).astype(np.float32) - 128.0) / 128.0
    elif sample_width == 2:
        data = np.frombuffer(payload, dtype=np.int16).astype(np.float32) / 32_768.0
    elif sample_width == 4:
        data = np.frombuffer(payload, dtype=np.int32).astype(np.float32) / float(1 << 31)
    else:
        raise MediaError(f"Unsupported WAV sample width: {sample_width} bytes")

    if channels > 1:
        data = data.reshape(-1, channels)
    return np.asarray(data, dtype=np.float32), sample_rate


def save_wav_file(path: Path, audio: np.ndarray, sample_rate: int) -> None:
    """Persist ``audio`` to *path* as a mono 16-bit PCM WAV file."""

    path.parent.mkdir(parents=True, exist_ok=True)
    samples = np.asarray(audio, dtype=np.float32)
    if samples.ndim > 1:
        samples = samples.mean(axis=1)
    pcm = np.round(np.clip(samples, -1.0, 1.0) * 32_767).astype(np.int16)

    with wave.open(str(path), "wb") as handle:
        handle.setnchannels(1)
        handle.setsampwidth(2)
        handle.setframerate(sample_rate)
        handle.writeframes(pcm.tobytes())


def probe_media_duration(path: Path) -> Optional[float]:
    """Return the duration of *path* in seconds when it can be determined."""

    LOGGER.debug("Probing media duration for %s", path)
    if path.suffix.lower() == ".wav":
        try:
            with contextlib.closing(wave.open(str(path), "rb")) as handle:
                rate = handle.getframerate()
                if rate:
                    return handle.getnframes() / float(rate)
        except (wave.Error, EOFError):
            LOGGER.debug("WAV header unreadable for %s", path)
        return None

    try:
        metadata = MutagenFile(str(path))
    except Exception as error:  # noqa: BLE001 - mutagen raises many format specific errors
        LOGGER.debug("mutagen failed to read %s: %s", path, error)
        return None
    if metadata is None:
        LOGGER.debug("mutagen could not read metadata for %s", path)
        return None
    length = getattr(getattr(metadata, "info", None), "length", None)
    LOGGER.debug("mutagen reported duration %.2fs for %s", float(length or 0.0), path)
    return float(length) if length else None


def ffmpeg_available() -> bool:
    return shutil.which("ffmpeg") is not None


def _run_ffmpeg(arguments: List[str], *, target: Path, purpose: str) -> None:
    ffmpeg_path = shutil.which("ffmpeg")
    if ffmpeg_path is None:
        raise MediaError(f"{purpose} requires FFmpeg to be installed on the server.")

    command = [ffmpeg_path, "-hide_banner", "-loglevel", "error", "-y", *arguments, str(target)]
    LOGGER.debug("Executing FFmpeg command: %s", " ".join(command))
    try:
        completed = subprocess.run(
            command, stdout=subprocess.PIPE, stderr=subprocess.PIPE, check=False
        )
    except FileNotFoundError as error:
        raise MediaError(f"{purpose} requires FFmpeg to be installed on the server.") from error

    if completed.returncode != 0:
        target.unlink(missing_ok=True)
        stderr = completed.stderr.decode("utf-8", errors="ignore").strip()
        stdout = completed.stdout.decode("utf-8", errors="ignore").strip()
        details = (stderr or stdout or "FFmpeg exited with a non-zero status.").splitlines()
        LOGGER.debug(
            "FFmpeg failed (code=%s). stderr=%s stdout=%s",
            completed.returncode,
            stderr,
            stdout,
        )
        raise MediaError(f"{purpose} failed: {details[0] if details else 'Unknown error.'}")


def extract_audio(
    source: Path,
    target: Path,
    *,
    start: float = 0.0,
    duration: Optional[float] = None,
) -> Path:
    """Write a mono 16 kHz WAV for ``[start, start + duration)`` of *source*.

    WAV sources are sliced in-process; everything else goes through FFmpeg.
    """

    target.parent.mkdir(parents=True, exist_ok=True)
    if source.suffix.lower() == ".wav":
        samples, sample_rate = load_wav_file(source)
        first = max(0, int(round(start * sample_rate)))
        last = len(samples) if duration is None else first + int(round(duration * sample_rate))
        save_wav_file(target, samples[first:last], sample_rate)
        LOGGER.debug("Sliced WAV %s [%.2fs, +%s] into %s", source, start, duration, target)
        return target

    arguments: List[str] = []
    if start > 0:
        arguments.extend(["-ss", f"{start:.3f}"])
    arguments.extend(["-i", str(source)])
    if duration is not None:
        arguments.extend(["-t", f"{duration:.3f}"])
    arguments.extend(["-vn", "-ac", "1", "-ar", str(TARGET_SAMPLE_RATE), "-c:a", "pcm_s16le"])
    _run_ffmpeg(arguments, target=target, purpose="Audio extraction")
    LOGGER.debug("FFmpeg audio extraction stored at %s", target)
    return target


def capture_frame(source: Path, seconds: float, target: Path) -> Path:
    """Save the video frame at *seconds* into *target* as a JPEG."""

    target.parent.mkdir(parents=True, exist_ok=True)
    _run_ffmpeg(
        ["-ss", f"{max(0.0, seconds):.3f}", "-i", str(source), "-frames:v", "1", "-q:v", "2"],
        target=target,
        purpose="Frame capture",
    )
    if not target.exists():
        raise MediaError(f"Frame capture produced no image at {seconds:.2f}s")
    return target


__all__ = [
    "MediaError",
    "TARGET_SAMPLE_RATE",
    "capture_frame",
    "extract_audio",
    "ffmpeg_available",
    "load_wav_file",
    "probe_media_duration",
    "save_wav_file",
]
