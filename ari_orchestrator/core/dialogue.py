"""
Scripted dialogue loop.

Each turn sends the next scripted utterance to the NLU service, speaks the
reply back to the caller and advances the session cursor. A turn that fails to
synthesize or play is logged and skipped; the call hangs up once the script is
exhausted.
"""

import asyncio
from typing import Sequence

from prometheus_client import Counter

from ..errors import NLUError, PlaybackError, SynthesisError
from ..logging_config import get_logger
from .models import CallSession, CallState

logger = get_logger(__name__)

_DIALOGUE_TURNS = Counter(
    "call_orchestrator_dialogue_turns_total",
    "Dialogue turns by outcome",
    labelnames=("outcome",),
)
_NLU_FALLBACKS = Counter(
    "call_orchestrator_nlu_fallbacks_total",
    "Turns that used the fallback reply",
    labelnames=("reason",),
)


class DialogueCoordinator:
    def __init__(
        self,
        ari_client,
        nlu_client,
        synthesizer,
        playback_runner,
        script: Sequence[str],
        *,
        fallback_reply: str,
        inter_turn_delay_sec: float = 0.25,
    ):
        self.ari_client = ari_client
        self.nlu_client = nlu_client
        self.synthesizer = synthesizer
        self.playback_runner = playback_runner
        self.script = tuple(script)
        self.fallback_reply = fallback_reply
        self.inter_turn_delay_sec = inter_turn_delay_sec

    async def run(self, session: CallSession) -> None:
        """Drive turns until the script is exhausted and the call is hung up."""
        while await self.step(session):
            pass

    async def step(self, session: CallSession) -> bool:
        """Run one turn. Returns False once the call has been hung up."""
        if session.script_index >= len(self.script):
            await self.hang_up(session)
            return False

        session.transition(CallState.DIALOGUING)
        utterance = self.script[session.script_index]
        session.script_index += 1
        turn = session.script_index

        reply = await self._ask(session, utterance)
        media_name = f"reply_{session.session_id}_{turn}"
        logger.info("💬 Dialogue turn", turn=turn, utterance=utterance, reply=reply)

        try:
            await self.synthesizer.synthesize(reply, self.synthesizer.path_for(media_name))
            await self.playback_runner.play_and_wait(session.session_id, media_name)
            _DIALOGUE_TURNS.labels("spoken").inc()
        except (SynthesisError, PlaybackError) as e:
            session.last_error = str(e)
            _DIALOGUE_TURNS.labels("skipped").inc()
            logger.warning("Dialogue turn skipped", turn=turn, error=str(e))

        await asyncio.sleep(self.inter_turn_delay_sec)
        return True

    async def _ask(self, session: CallSession, utterance: str) -> str:
        try:
            text = await self.nlu_client.reply(f"call_{session.session_id}", utterance)
        except NLUError as e:
            _NLU_FALLBACKS.labels("error").inc()
            logger.warning("NLU request failed, using fallback reply", error=str(e))
            return self.fallback_reply
        if not text:
            _NLU_FALLBACKS.labels("empty").inc()
            logger.info("NLU returned no text, using fallback reply")
            return self.fallback_reply
        return text

    async def hang_up(self, session: CallSession) -> None:
        session.transition(CallState.HANGING_UP)
        logger.info("📴 Script complete, hanging up", turns=session.script_index)
        if not await self.ari_client.hangup_channel(session.session_id):
            logger.error("Hangup request failed", channel_id=session.session_id)
