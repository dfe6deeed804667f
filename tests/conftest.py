import wave

import pytest


def write_wav(path, seconds=1.0, rate=8000):
    """Write a silent 16-bit mono WAV of the given length."""
    frames = int(seconds * rate)
    with wave.open(str(path), "wb") as wf:
        wf.setnchannels(1)
        wf.setsampwidth(2)
        wf.setframerate(rate)
        wf.writeframes(b"\x00\x00" * frames)
    return str(path)


@pytest.fixture
def make_wav():
    return write_wav
