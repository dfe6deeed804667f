"""Checks that a produced audio artifact is fit for playback."""

import os
import wave
from dataclasses import dataclass
from typing import Optional


@dataclass(frozen=True)
class AudioCheck:
    ok: bool
    reason: Optional[str] = None
    size_bytes: int = 0
    duration_sec: Optional[float] = None

    def __bool__(self) -> bool:
        return self.ok


def wav_duration(path: str) -> float:
    """Duration in seconds from the WAV header (frames / rate)."""
    with wave.open(path, "rb") as wf:
        rate = wf.getframerate()
        if rate <= 0:
            return 0.0
        return wf.getnframes() / float(rate)


def validate_audio(path: str, *, min_bytes: int, min_duration_sec: Optional[float] = None) -> AudioCheck:
    """Validate an artifact on disk. Never raises for a bad artifact."""
    if not os.path.isfile(path):
        return AudioCheck(False, "missing")

    size = os.path.getsize(path)
    if size < min_bytes:
        return AudioCheck(False, f"too small ({size} < {min_bytes} bytes)", size_bytes=size)

    if not os.access(path, os.R_OK):
        return AudioCheck(False, "not readable", size_bytes=size)

    if min_duration_sec is None:
        return AudioCheck(True, size_bytes=size)

    try:
        duration = wav_duration(path)
    except (wave.Error, EOFError, OSError) as e:
        return AudioCheck(False, f"unreadable wav: {e}", size_bytes=size)

    if duration < min_duration_sec:
        return AudioCheck(
            False,
            f"too short ({duration:.3f}s < {min_duration_sec}s)",
            size_bytes=size,
            duration_sec=duration,
        )
    return AudioCheck(True, size_bytes=size, duration_sec=duration)
