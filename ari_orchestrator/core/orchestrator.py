"""
Per-channel call session orchestration.

StasisStart creates a CallSession and a task that drives it through
answer -> greeting -> recording -> dialogue -> hangup. StasisEnd may arrive at
any point; it finalizes the call log exactly once and cancels the task.
"""

import asyncio
import os
import sqlite3
from typing import Any, Dict, Optional, Set

from prometheus_client import Counter, Gauge, Histogram

from ..config import DialogueConfig, PolicyConfig, RecordingConfig
from ..errors import InvalidTransition, PlaybackError, RecordingError, SynthesisError
from ..logging_config import bind_call_id, get_logger
from .call_log import CallLogStore
from .models import CallSession, CallState, utcnow

logger = get_logger(__name__)

_CALLS_TOTAL = Counter(
    "call_orchestrator_calls_total",
    "Calls that entered the Stasis application",
)
_ACTIVE_SESSIONS = Gauge(
    "call_orchestrator_active_sessions",
    "Call sessions currently in progress",
)
_CALL_DURATION = Histogram(
    "call_orchestrator_call_duration_seconds",
    "Total call duration from StasisStart to StasisEnd",
    buckets=(10, 30, 60, 120, 180, 300, 600, 900, 1800, 3600),
)
_SETUP_FAILURES = Counter(
    "call_orchestrator_setup_failures_total",
    "Sessions whose setup was aborted, by stage",
    labelnames=("stage",),
)


def _caller_of(channel: Dict[str, Any]) -> str:
    return ((channel.get("caller") or {}).get("number")) or "unknown"


def _callee_of(event: Dict[str, Any], channel: Dict[str, Any]) -> str:
    args = event.get("args") or []
    if args and args[0]:
        return str(args[0])
    return ((channel.get("dialplan") or {}).get("exten")) or "unknown"


class CallSessionOrchestrator:
    """Owns every live CallSession and the task driving it."""

    def __init__(
        self,
        ari_client,
        prompt_cache,
        playback_runner,
        dialogue,
        *,
        sounds_dir: str,
        dialogue_config: DialogueConfig,
        recording_config: RecordingConfig,
        policies: PolicyConfig,
        call_log: Optional[CallLogStore] = None,
    ):
        self.ari_client = ari_client
        self.prompt_cache = prompt_cache
        self.playback_runner = playback_runner
        self.dialogue = dialogue
        self.sounds_dir = sounds_dir
        self.dialogue_config = dialogue_config
        self.recording_config = recording_config
        self.policies = policies
        self.call_log = call_log

        self._sessions: Dict[str, CallSession] = {}
        self._session_tasks: Dict[str, asyncio.Task] = {}
        self._record_tasks: Dict[str, asyncio.Task] = {}
        self._background: Set[asyncio.Task] = set()

    @property
    def active_sessions(self) -> int:
        return len(self._sessions)

    def get_session(self, channel_id: str) -> Optional[CallSession]:
        return self._sessions.get(channel_id)

    async def on_stasis_start(self, event: Dict[str, Any]) -> None:
        channel = event.get("channel") or {}
        channel_id = channel.get("id")
        if not channel_id:
            logger.warning("StasisStart without channel id", event_type=event.get("type"))
            return
        if channel_id in self._sessions:
            logger.debug("Duplicate StasisStart ignored", channel_id=channel_id)
            return

        # inherited by the tasks created below
        bind_call_id(channel_id)
        session = CallSession(
            session_id=channel_id,
            caller=_caller_of(channel),
            callee=_callee_of(event, channel),
        )
        self._sessions[channel_id] = session
        _CALLS_TOTAL.inc()
        _ACTIVE_SESSIONS.inc()
        logger.info("📞 Call entered application", caller=session.caller, callee=session.callee)

        self._record_tasks[channel_id] = asyncio.create_task(self._create_record(session))
        self._session_tasks[channel_id] = asyncio.create_task(self._run_session(session))

    async def on_stasis_end(self, event: Dict[str, Any]) -> None:
        channel_id = (event.get("channel") or {}).get("id")
        session = self._sessions.pop(channel_id, None) if channel_id else None
        if session is None:
            return

        bind_call_id(channel_id)
        session.end_time = utcnow()
        session.transition(CallState.ENDED)
        duration = session.duration_seconds()
        logger.info("📴 Call ended", duration_sec=duration, turns=session.script_index)

        try:
            await self._finalize_record(session, duration)
        finally:
            task = self._session_tasks.pop(channel_id, None)
            if task and not task.done():
                task.cancel()
            _ACTIVE_SESSIONS.dec()
            _CALL_DURATION.observe(duration)

    async def shutdown(self) -> None:
        """Cancel all session work; used when the engine stops."""
        tasks = list(self._session_tasks.values()) + list(self._background)
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
        self._session_tasks.clear()

    async def _create_record(self, session: CallSession) -> None:
        if self.call_log is None:
            return
        try:
            record = await self.call_log.create(
                call_id=session.session_id,
                caller=session.caller,
                callee=session.callee,
                start_time=session.start_time,
            )
            session.record_id = record.id
        except (sqlite3.Error, OSError) as e:
            logger.error("Failed to create call log record", error=str(e))

    async def _finalize_record(self, session: CallSession, duration: int) -> None:
        creation = self._record_tasks.pop(session.session_id, None)
        if creation is not None:
            await creation
        if self.call_log is None or session.record_id is None:
            return
        try:
            await self.call_log.finalize(
                session.record_id,
                end_time=session.end_time,
                duration=duration,
                recording_file=f"{session.session_id}.{self.recording_config.format}",
            )
        except (sqlite3.Error, OSError) as e:
            logger.error("Failed to finalize call log record", record_id=session.record_id, error=str(e))

    async def _run_session(self, session: CallSession) -> None:
        try:
            await self._drive(session)
        except asyncio.CancelledError:
            logger.debug("Session task cancelled", state=session.state.value)
            raise
        except InvalidTransition as e:
            # the channel ended while a step was in flight
            logger.debug("Session step after end", error=str(e))
        except Exception as e:
            logger.error("Unhandled error in call session", error=str(e), exc_info=True)

    async def _drive(self, session: CallSession) -> None:
        channel_id = session.session_id

        if not await self.ari_client.answer_channel(channel_id):
            _SETUP_FAILURES.labels("answer").inc()
            logger.error("Failed to answer channel", policy=self.policies.on_answer_failure)
            if self.policies.on_answer_failure == "hangup":
                await self.ari_client.hangup_channel(channel_id)
            return
        session.transition(CallState.ANSWERED)

        greeting = self.dialogue_config.greeting_name
        try:
            await self.prompt_cache.ensure(greeting, self.dialogue_config.greeting_text)
            await self.playback_runner.play_and_wait(channel_id, greeting)
        except (SynthesisError, PlaybackError) as e:
            session.last_error = str(e)
            _SETUP_FAILURES.labels("greeting").inc()
            logger.error("Greeting failed, aborting session setup", error=str(e))
            return
        session.transition(CallState.GREETING)

        session.set_recording_path(os.path.join(self.sounds_dir, f"{channel_id}.{self.recording_config.format}"))
        session.transition(CallState.RECORDING)
        self._spawn(self._start_recording(session))

        await self.dialogue.run(session)

    def _spawn(self, coro) -> asyncio.Task:
        task = asyncio.create_task(coro)
        self._background.add(task)
        task.add_done_callback(self._background.discard)
        return task

    async def _start_recording(self, session: CallSession) -> None:
        cfg = self.recording_config
        started = await self.ari_client.record_channel(
            session.session_id,
            name=session.session_id,
            format=cfg.format,
            if_exists=cfg.if_exists,
            max_duration_seconds=cfg.max_duration_seconds,
            beep=cfg.beep,
        )
        if started:
            logger.info("🎙️ Recording started", path=session.recording_path)
            return

        err = RecordingError(f"could not start recording on {session.session_id}")
        session.last_error = str(err)
        _SETUP_FAILURES.labels("recording").inc()
        logger.error("Recording failed", error=str(err), policy=self.policies.on_recording_failure)
        if self.policies.on_recording_failure == "hangup" and not session.ended:
            await self.ari_client.hangup_channel(session.session_id)
