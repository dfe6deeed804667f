"""
Write-once cache for shared prompts such as the greeting.

Sessions asking for the same prompt concurrently queue on a per-name lock; the
first one synthesizes, the rest find a valid artifact and reuse it.
"""

import asyncio
from typing import Dict, Optional

from ..logging_config import get_logger
from .synthesis import SpeechSynthesizer
from .validator import validate_audio

logger = get_logger(__name__)


class PromptCache:
    def __init__(self, synthesizer: SpeechSynthesizer, *, min_bytes: int, min_duration_sec: Optional[float] = None):
        self.synthesizer = synthesizer
        self.min_bytes = min_bytes
        self.min_duration_sec = min_duration_sec
        self._locks: Dict[str, asyncio.Lock] = {}

    def _lock_for(self, name: str) -> asyncio.Lock:
        lock = self._locks.get(name)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[name] = lock
        return lock

    async def ensure(self, name: str, text: str) -> str:
        """Return the path of a valid artifact for ``name``, synthesizing it if needed.

        A failed synthesis propagates SynthesisError and leaves no artifact, so
        the next caller tries again.
        """
        path = self.synthesizer.path_for(name)
        async with self._lock_for(name):
            check = validate_audio(path, min_bytes=self.min_bytes, min_duration_sec=self.min_duration_sec)
            if check.ok:
                logger.debug("Prompt cache hit", prompt=name, path=path)
                return path
            logger.info("Prompt cache miss, synthesizing", prompt=name, path=path, reason=check.reason)
            await self.synthesizer.synthesize(text, path)
            return path
