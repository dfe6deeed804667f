"""
REST client for the NLU service (Rasa REST channel).
"""

import asyncio
from typing import Any, Callable, List, Optional

import aiohttp
from tenacity import AsyncRetrying, RetryError, retry_if_exception_type, stop_after_attempt, wait_fixed

from .config import NLUConfig
from .errors import NLUError
from .logging_config import get_logger

logger = get_logger(__name__)


class _NotReady(Exception):
    pass


class NLUClient:
    def __init__(
        self,
        config: NLUConfig,
        *,
        session_factory: Optional[Callable[[], aiohttp.ClientSession]] = None,
    ):
        self.config = config
        self._session_factory = session_factory
        self._session: Optional[aiohttp.ClientSession] = None

    @property
    def webhook_url(self) -> str:
        return f"{self.config.base_url.rstrip('/')}{self.config.webhook_path}"

    @property
    def status_url(self) -> str:
        return f"{self.config.base_url.rstrip('/')}{self.config.status_path}"

    async def _ensure_session(self) -> None:
        if self._session and not self._session.closed:
            return
        factory = self._session_factory or aiohttp.ClientSession
        self._session = factory()

    async def stop(self) -> None:
        if self._session and not self._session.closed:
            await self._session.close()
        self._session = None

    async def reply(self, sender: str, message: str) -> Optional[str]:
        """Send one user message; return the first bot text or None.

        Raises:
            NLUError: transport failure, HTTP error status or timeout.
        """
        await self._ensure_session()
        assert self._session
        payload = {"sender": sender, "message": message}
        timeout = aiohttp.ClientTimeout(total=self.config.timeout_sec)
        try:
            async with self._session.post(self.webhook_url, json=payload, timeout=timeout) as resp:
                if resp.status >= 400:
                    body = await resp.text()
                    raise NLUError(f"NLU returned HTTP {resp.status}: {body[:200]}")
                data = await resp.json(content_type=None)
        except asyncio.TimeoutError:
            raise NLUError(f"NLU request timed out after {self.config.timeout_sec}s")
        except aiohttp.ClientError as e:
            raise NLUError(f"NLU request failed: {e}")
        except ValueError as e:
            raise NLUError(f"NLU returned invalid JSON: {e}")

        return _first_text(data)

    async def is_ready(self) -> bool:
        await self._ensure_session()
        assert self._session
        try:
            timeout = aiohttp.ClientTimeout(total=self.config.timeout_sec)
            async with self._session.get(self.status_url, timeout=timeout) as resp:
                return resp.status == 200
        except (aiohttp.ClientError, asyncio.TimeoutError):
            return False

    async def wait_until_ready(self) -> None:
        """Poll the status endpoint until it answers 200.

        Raises:
            NLUError: the service never became ready within ready_attempts.
        """
        attempts = max(1, self.config.ready_attempts)
        try:
            async for attempt in AsyncRetrying(
                stop=stop_after_attempt(attempts),
                wait=wait_fixed(self.config.ready_interval_sec),
                retry=retry_if_exception_type(_NotReady),
            ):
                with attempt:
                    if not await self.is_ready():
                        logger.info(
                            "⏳ Waiting for NLU service...",
                            url=self.status_url,
                            attempt=attempt.retry_state.attempt_number,
                            max_attempts=attempts,
                        )
                        raise _NotReady()
        except RetryError:
            raise NLUError(f"NLU service at {self.status_url} not ready after {attempts} attempts")
        logger.info("✅ NLU service is ready", url=self.status_url)


def _first_text(data: Any) -> Optional[str]:
    messages: List[Any] = data if isinstance(data, list) else []
    for message in messages[:1]:
        if isinstance(message, dict):
            text = message.get("text")
            if isinstance(text, str) and text:
                return text
    return None
