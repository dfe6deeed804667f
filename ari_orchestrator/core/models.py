"""
Core data models for the call orchestrator.

CallSession is owned by the task that processes its channel; SynthesisRequest
and PlaybackAttempt are ephemeral and never persisted.
"""

import os
import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Optional

from ..errors import InvalidTransition


class CallState(str, Enum):
    CREATED = "created"
    ANSWERED = "answered"
    GREETING = "greeting"
    RECORDING = "recording"
    DIALOGUING = "dialoguing"
    HANGING_UP = "hanging_up"
    ENDED = "ended"


_STATE_ORDER = {state: idx for idx, state in enumerate(CallState)}


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class CallSession:
    """Session state for one channel."""
    session_id: str           # ARI channel id
    caller: str = "unknown"
    callee: str = "unknown"
    state: CallState = CallState.CREATED
    start_time: datetime = field(default_factory=utcnow)
    end_time: Optional[datetime] = None
    script_index: int = 0
    recording_path: Optional[str] = None
    record_id: Optional[str] = None
    last_error: Optional[str] = None

    def transition(self, new_state: CallState) -> None:
        """Move forward through the state machine.

        DIALOGUING may be re-entered while turns loop and ENDED is reachable
        from anywhere, since the channel can go away at any point. Everything
        else must move strictly forward.
        """
        if new_state == CallState.ENDED:
            self.state = new_state
            return
        if self.state == CallState.ENDED:
            raise InvalidTransition(f"session {self.session_id} already ended")
        if new_state == self.state == CallState.DIALOGUING:
            return
        if _STATE_ORDER[new_state] <= _STATE_ORDER[self.state]:
            raise InvalidTransition(
                f"session {self.session_id}: {self.state.value} -> {new_state.value}"
            )
        self.state = new_state

    def set_recording_path(self, path: str) -> None:
        if self.recording_path and self.recording_path != path:
            raise InvalidTransition(f"recording path for {self.session_id} already set")
        self.recording_path = path

    @property
    def ended(self) -> bool:
        return self.state == CallState.ENDED

    def duration_seconds(self) -> int:
        end = self.end_time or utcnow()
        return int((end - self.start_time).total_seconds())


@dataclass(frozen=True)
class SynthesisRequest:
    """One text-to-audio job targeting ``file_path``."""
    text: str
    file_path: str
    payload_path: str

    @property
    def raw_path(self) -> str:
        stem, _ = os.path.splitext(self.file_path)
        return f"{stem}_raw.mp3"


class PlaybackState(str, Enum):
    PENDING = "pending"
    STARTED = "started"
    FINISHED = "finished"
    FAILED = "failed"
    TIMED_OUT = "timed_out"
    CANCELLED = "cancelled"


_PLAYBACK_TERMINAL = {
    PlaybackState.FINISHED,
    PlaybackState.FAILED,
    PlaybackState.TIMED_OUT,
    PlaybackState.CANCELLED,
}


@dataclass
class PlaybackAttempt:
    """A single play operation tracked by its playback handle."""
    playback_id: str
    channel_id: str
    media_reference: str
    attempt_number: int
    deadline: float           # time.monotonic() based
    state: PlaybackState = PlaybackState.PENDING
    error: Optional[str] = None
    created_at: float = field(default_factory=time.monotonic)

    @property
    def settled(self) -> bool:
        return self.state in _PLAYBACK_TERMINAL

    def advance(self, new_state: PlaybackState, error: Optional[str] = None) -> bool:
        """Apply a lifecycle notification. Returns False if already settled."""
        if self.settled:
            return False
        if new_state == PlaybackState.STARTED and self.state != PlaybackState.PENDING:
            return False
        self.state = new_state
        if error:
            self.error = error
        return True
