"""
Error taxonomy for the call orchestrator.

Synthesis and playback errors carry a ``kind`` so callers can branch on the
failing stage without parsing messages.
"""

from enum import Enum
from typing import Optional


class OrchestratorError(Exception):
    """Base class for all orchestrator errors."""


class ConnectError(OrchestratorError):
    """ARI control plane unreachable after the bounded number of attempts."""


class SynthesisFailure(str, Enum):
    PROVIDER_FAILURE = "provider_failure"
    TRANSCODE_FAILURE = "transcode_failure"
    PERMISSION_FAILURE = "permission_failure"
    VALIDATION_FAILURE = "validation_failure"


class SynthesisError(OrchestratorError):
    def __init__(self, kind: SynthesisFailure, message: str, *, path: Optional[str] = None):
        super().__init__(f"{kind.value}: {message}")
        self.kind = kind
        self.message = message
        self.path = path


class PlaybackFailure(str, Enum):
    FILE_NOT_READY = "file_not_ready"
    PLAYBACK_TIMEOUT = "playback_timeout"
    PLAYBACK_FAILED = "playback_failed"


class PlaybackError(OrchestratorError):
    def __init__(self, kind: PlaybackFailure, message: str, *, attempt: int = 0):
        super().__init__(f"{kind.value}: {message}")
        self.kind = kind
        self.message = message
        self.attempt = attempt


class NLUError(OrchestratorError):
    """NLU request failed, timed out, or the service never became ready."""


class RecordingError(OrchestratorError):
    """Start-recording request rejected by ARI."""


class InvalidTransition(OrchestratorError):
    """A call session was asked to move backwards or skip a state."""
