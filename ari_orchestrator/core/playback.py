"""
Playback with acknowledgement and retry.

PlaybackRunner starts a file on a channel under a fresh playback id and waits
for ARI to report the outcome. PlaybackTracker receives the ARI playback events
and resolves the future registered for that id. Failed attempts are retried
after a fixed backoff; a timed-out playback is stopped and unregistered before
the next attempt starts.
"""

import asyncio
import os
import time
import uuid
from typing import Any, Dict, Optional, Tuple

from prometheus_client import Counter

from ..audio.validator import validate_audio
from ..config import PlaybackConfig
from ..errors import PlaybackError, PlaybackFailure
from ..logging_config import get_logger
from .models import PlaybackAttempt, PlaybackState

logger = get_logger(__name__)

_PLAYBACK_ATTEMPTS = Counter(
    "call_orchestrator_playback_attempts_total",
    "Playback attempts issued (including retries)",
)
_PLAYBACK_FAILURES = Counter(
    "call_orchestrator_playback_failures_total",
    "Failed playback attempts by failure kind",
    labelnames=("kind",),
)


class PlaybackTracker:
    """Routes ARI playback events to the attempt waiting on that playback id."""

    def __init__(self):
        self._pending: Dict[str, Tuple[PlaybackAttempt, asyncio.Future]] = {}

    def register(self, attempt: PlaybackAttempt) -> asyncio.Future:
        future = asyncio.get_running_loop().create_future()
        self._pending[attempt.playback_id] = (attempt, future)
        return future

    def unregister(self, playback_id: str) -> None:
        entry = self._pending.pop(playback_id, None)
        if entry is not None:
            _, future = entry
            if not future.done():
                future.cancel()

    def is_tracking(self, playback_id: str) -> bool:
        return playback_id in self._pending

    def _resolve(self, playback_id: Optional[str], new_state: PlaybackState, error: Optional[str] = None) -> bool:
        entry = self._pending.get(playback_id) if playback_id else None
        if entry is None:
            logger.debug("Playback event for untracked id", playback_id=playback_id, state=new_state.value)
            return False
        attempt, future = entry
        if not attempt.advance(new_state, error):
            return False
        if attempt.settled and not future.done():
            future.set_result(attempt.state)
        return True

    async def on_playback_started(self, event: Dict[str, Any]) -> None:
        playback = event.get("playback") or {}
        self._resolve(playback.get("id"), PlaybackState.STARTED)

    async def on_playback_finished(self, event: Dict[str, Any]) -> None:
        # ARI reports a failed playback as PlaybackFinished with state "failed"
        playback = event.get("playback") or {}
        if playback.get("state") == "failed":
            self._resolve(
                playback.get("id"),
                PlaybackState.FAILED,
                f"Asterisk reported playback failure for {playback.get('media_uri', 'media')}",
            )
        else:
            self._resolve(playback.get("id"), PlaybackState.FINISHED)

    async def on_playback_error(self, event: Dict[str, Any]) -> None:
        playback = event.get("playback") or {}
        message = event.get("message") or event.get("error") or "playback error"
        self._resolve(playback.get("id"), PlaybackState.FAILED, str(message))


class PlaybackRunner:
    """Plays ``sound:<name>`` on a channel and waits for completion, with retries."""

    def __init__(self, ari_client, tracker: PlaybackTracker, config: PlaybackConfig, sounds_dir: str):
        self.ari_client = ari_client
        self.tracker = tracker
        self.config = config
        self.sounds_dir = sounds_dir

    async def play_and_wait(self, channel_id: str, media_name: str) -> None:
        """Play until one attempt finishes.

        Raises:
            PlaybackError: the last attempt's error once max_attempts is used up.
        """
        max_attempts = max(1, self.config.max_attempts)
        last_error: Optional[PlaybackError] = None
        for attempt_number in range(1, max_attempts + 1):
            try:
                await self._attempt(channel_id, media_name, attempt_number)
                logger.info(
                    "🔊 Playback finished",
                    channel_id=channel_id,
                    media=media_name,
                    attempt=attempt_number,
                )
                return
            except PlaybackError as e:
                last_error = e
                _PLAYBACK_FAILURES.labels(e.kind.value).inc()
                logger.warning(
                    "Playback attempt failed",
                    channel_id=channel_id,
                    media=media_name,
                    attempt=attempt_number,
                    max_attempts=max_attempts,
                    kind=e.kind.value,
                    error=e.message,
                )
                if attempt_number < max_attempts:
                    await asyncio.sleep(self.config.backoff_sec)

        assert last_error is not None
        logger.error(
            "Playback failed after all attempts",
            channel_id=channel_id,
            media=media_name,
            attempts=max_attempts,
            error=last_error.message,
        )
        raise last_error

    async def _attempt(self, channel_id: str, media_name: str, attempt_number: int) -> None:
        path = os.path.join(self.sounds_dir, f"{media_name}.wav")
        check = validate_audio(path, min_bytes=self.config.min_file_bytes)
        if not check.ok:
            raise PlaybackError(
                PlaybackFailure.FILE_NOT_READY,
                f"{path} not ready: {check.reason}",
                attempt=attempt_number,
            )

        attempt = PlaybackAttempt(
            playback_id=str(uuid.uuid4()),
            channel_id=channel_id,
            media_reference=f"sound:{media_name}",
            attempt_number=attempt_number,
            deadline=time.monotonic() + self.config.timeout_sec,
        )
        # registered before the request so an early PlaybackFinished is not lost
        future = self.tracker.register(attempt)
        _PLAYBACK_ATTEMPTS.inc()
        try:
            started = await self.ari_client.play_media_with_id(
                channel_id, attempt.media_reference, attempt.playback_id
            )
            if not started:
                attempt.advance(PlaybackState.FAILED, "play request rejected by ARI")
                raise PlaybackError(
                    PlaybackFailure.PLAYBACK_FAILED,
                    f"play request for {attempt.media_reference} rejected",
                    attempt=attempt_number,
                )

            remaining = max(0.0, attempt.deadline - time.monotonic())
            try:
                await asyncio.wait_for(future, timeout=remaining)
            except asyncio.TimeoutError:
                attempt.advance(PlaybackState.TIMED_OUT)
                await self.ari_client.stop_playback(attempt.playback_id)
                raise PlaybackError(
                    PlaybackFailure.PLAYBACK_TIMEOUT,
                    f"no completion for {attempt.media_reference} within {self.config.timeout_sec}s",
                    attempt=attempt_number,
                )

            if attempt.state == PlaybackState.FAILED:
                raise PlaybackError(
                    PlaybackFailure.PLAYBACK_FAILED,
                    attempt.error or "playback failed",
                    attempt=attempt_number,
                )
        except asyncio.CancelledError:
            attempt.advance(PlaybackState.CANCELLED)
            raise
        finally:
            self.tracker.unregister(attempt.playback_id)
