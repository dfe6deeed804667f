"""
Text-to-speech synthesis pipeline.

Turns text into a telephony-ready WAV (8 kHz mono PCM16) that Asterisk can
play as ``sound:<name>``:

    payload file -> provider POST (streamed to <stem>_raw.mp3) -> ffmpeg
    -> chmod 644 -> fsync -> validate

Each call either leaves exactly one valid artifact at the destination or
nothing at all; the payload and raw intermediates never survive.
"""

import asyncio
import json
import os
import time
from typing import Callable, Optional

import aiohttp
from prometheus_client import Counter, Histogram

from ..config import SynthesisConfig
from ..core.models import SynthesisRequest
from ..errors import SynthesisError, SynthesisFailure
from ..logging_config import get_logger
from .validator import validate_audio

logger = get_logger(__name__)

_SYNTHESIS_TOTAL = Counter(
    "call_orchestrator_synthesis_total",
    "Speech synthesis jobs by outcome",
    labelnames=("outcome",),
)
_SYNTHESIS_SECONDS = Histogram(
    "call_orchestrator_synthesis_seconds",
    "Wall time of a successful synthesis job (provider + transcode)",
    buckets=(0.25, 0.5, 1.0, 1.5, 2.0, 3.0, 5.0, 8.0, 13.0),
)

_CHUNK_SIZE = 8192


class SpeechSynthesizer:
    """Produces validated WAV prompts from text via the TTS provider and ffmpeg."""

    def __init__(
        self,
        config: SynthesisConfig,
        sounds_dir: str,
        *,
        session_factory: Optional[Callable[[], aiohttp.ClientSession]] = None,
    ):
        self.config = config
        self.sounds_dir = sounds_dir
        self._session_factory = session_factory
        self._session: Optional[aiohttp.ClientSession] = None
        self._last_payload_ts = 0
        self._payload_seq = 0

    async def stop(self) -> None:
        if self._session and not self._session.closed:
            await self._session.close()
        self._session = None

    async def _ensure_session(self) -> None:
        if self._session and not self._session.closed:
            return
        factory = self._session_factory or aiohttp.ClientSession
        self._session = factory()

    def path_for(self, name: str) -> str:
        """Destination path for a media name as Asterisk resolves ``sound:<name>``."""
        return os.path.join(self.sounds_dir, f"{name}.wav")

    def _payload_path(self) -> str:
        ts = time.time_ns()
        if ts == self._last_payload_ts:
            self._payload_seq += 1
        else:
            self._last_payload_ts = ts
            self._payload_seq = 0
        suffix = f"_{self._payload_seq}" if self._payload_seq else ""
        return os.path.join(self.sounds_dir, f"payload_{ts}{suffix}.json")

    async def synthesize(self, text: str, destination_path: str) -> None:
        """Synthesize ``text`` into ``destination_path``.

        Raises:
            SynthesisError: kind identifies the failing stage. The destination
                is removed on failure.
        """
        request = SynthesisRequest(text=text, file_path=destination_path, payload_path=self._payload_path())
        started = time.monotonic()
        succeeded = False
        logger.info("🗣️ Synthesizing prompt", path=destination_path, text_preview=text[:64])
        try:
            self._write_payload(request)
            await self._fetch_raw_audio(request)
            await self._transcode(request.raw_path, request.file_path)
            self._finalize_file(request.file_path)

            check = validate_audio(
                request.file_path,
                min_bytes=self.config.min_file_bytes,
                min_duration_sec=self.config.min_duration_sec,
            )
            if not check.ok:
                raise SynthesisError(
                    SynthesisFailure.VALIDATION_FAILURE,
                    f"artifact rejected: {check.reason}",
                    path=request.file_path,
                )
            succeeded = True
            _SYNTHESIS_TOTAL.labels("success").inc()
            _SYNTHESIS_SECONDS.observe(time.monotonic() - started)
            logger.info(
                "✅ Prompt synthesized",
                path=request.file_path,
                size_bytes=check.size_bytes,
                duration_sec=check.duration_sec,
            )
        except SynthesisError as e:
            _SYNTHESIS_TOTAL.labels(e.kind.value).inc()
            logger.error("Synthesis failed", path=destination_path, kind=e.kind.value, error=e.message)
            raise
        finally:
            _remove_quietly(request.payload_path)
            _remove_quietly(request.raw_path)
            if not succeeded:
                _remove_quietly(request.file_path)

    def _write_payload(self, request: SynthesisRequest) -> None:
        payload = {
            "text": request.text,
            "model_id": self.config.model_id,
            "voice_settings": {
                "stability": self.config.voice_settings.stability,
                "similarity_boost": self.config.voice_settings.similarity_boost,
            },
        }
        try:
            os.makedirs(os.path.dirname(request.payload_path) or ".", exist_ok=True)
            with open(request.payload_path, "w", encoding="utf-8") as f:
                json.dump(payload, f)
        except OSError as e:
            raise SynthesisError(SynthesisFailure.PROVIDER_FAILURE, f"cannot write payload: {e}")

    async def _fetch_raw_audio(self, request: SynthesisRequest) -> None:
        """POST the payload file to the provider and stream the body to the raw artifact."""
        await self._ensure_session()
        assert self._session

        url = f"{self.config.base_url.rstrip('/')}/v1/text-to-speech/{self.config.voice_id}/stream"
        headers = {
            "xi-api-key": self.config.api_key or "",
            "Content-Type": "application/json",
            "Accept": "audio/mpeg",
        }
        try:
            with open(request.payload_path, "rb") as f:
                body = f.read()
        except OSError as e:
            raise SynthesisError(SynthesisFailure.PROVIDER_FAILURE, f"cannot read payload: {e}")

        try:
            async with self._session.post(url, data=body, headers=headers) as resp:
                if resp.status >= 400:
                    detail = (await resp.text(errors="ignore"))[:200]
                    raise SynthesisError(
                        SynthesisFailure.PROVIDER_FAILURE,
                        f"provider returned HTTP {resp.status}: {detail}",
                    )
                with open(request.raw_path, "wb") as out:
                    async for chunk in resp.content.iter_chunked(_CHUNK_SIZE):
                        out.write(chunk)
        except (aiohttp.ClientError, asyncio.TimeoutError) as e:
            raise SynthesisError(SynthesisFailure.PROVIDER_FAILURE, f"provider request failed: {e}")
        except OSError as e:
            raise SynthesisError(SynthesisFailure.PROVIDER_FAILURE, f"cannot write raw audio: {e}")

        try:
            size = os.path.getsize(request.raw_path)
            detail = ""
            if size < self.config.min_raw_bytes:
                # undersized bodies are usually a JSON error document
                with open(request.raw_path, "rb") as f:
                    detail = f.read(200).decode("utf-8", errors="ignore")
        except OSError as e:
            raise SynthesisError(SynthesisFailure.PROVIDER_FAILURE, f"cannot read raw audio: {e}")
        if size < self.config.min_raw_bytes:
            raise SynthesisError(
                SynthesisFailure.PROVIDER_FAILURE,
                f"raw audio too small ({size} bytes): {detail}",
            )
        logger.debug("Raw audio received", raw_path=request.raw_path, size_bytes=size)

    async def _transcode(self, source: str, destination: str) -> None:
        """Convert provider audio to 8 kHz mono PCM16 WAV."""
        args = [
            self.config.transcoder,
            "-y",
            "-i", source,
            "-ar", str(self.config.sample_rate_hz),
            "-ac", "1",
            "-f", "wav",
            "-acodec", "pcm_s16le",
            destination,
        ]
        try:
            proc = await asyncio.create_subprocess_exec(
                *args,
                stdout=asyncio.subprocess.DEVNULL,
                stderr=asyncio.subprocess.PIPE,
            )
        except OSError as e:
            raise SynthesisError(SynthesisFailure.TRANSCODE_FAILURE, f"cannot run {self.config.transcoder}: {e}")

        try:
            _, stderr = await proc.communicate()
        except BaseException:
            # ffmpeg never outlives this call
            await _kill_transcoder(proc)
            raise
        if proc.returncode != 0:
            tail = (stderr or b"").decode("utf-8", errors="ignore")[-300:]
            raise SynthesisError(
                SynthesisFailure.TRANSCODE_FAILURE,
                f"{self.config.transcoder} exited with {proc.returncode}: {tail}",
            )
        if not os.path.exists(destination):
            raise SynthesisError(SynthesisFailure.TRANSCODE_FAILURE, "transcoder produced no output")

    def _finalize_file(self, path: str) -> None:
        try:
            os.chmod(path, 0o644)
        except OSError as e:
            raise SynthesisError(SynthesisFailure.PERMISSION_FAILURE, f"chmod failed: {e}", path=path)
        try:
            fd = os.open(path, os.O_RDONLY)
            try:
                os.fsync(fd)
            finally:
                os.close(fd)
        except OSError as e:
            raise SynthesisError(SynthesisFailure.VALIDATION_FAILURE, f"fsync failed: {e}", path=path)


def _remove_quietly(path: str) -> None:
    try:
        os.remove(path)
    except FileNotFoundError:
        pass
    except OSError as e:
        logger.warning("Failed to remove synthesis artifact", path=path, error=str(e))


async def _kill_transcoder(proc: asyncio.subprocess.Process) -> None:
    if proc.returncode is not None:
        return
    try:
        proc.kill()
    except ProcessLookupError:
        return
    await proc.wait()
    logger.warning("Transcoder killed before completion", pid=proc.pid)
