"""
Process wiring for the call orchestrator.

Builds the ARI client, synthesis, playback, dialogue and call-log components
from configuration, routes ARI events to them and runs until signalled.
"""

import asyncio
import logging
import signal
from typing import Optional

from .ari_client import ARIClient
from .audio.prompt_cache import PromptCache
from .audio.synthesis import SpeechSynthesizer
from .autodial import EndpointAutoDialer
from .config import AppConfig, load_config, validate_production_config
from .core.call_log import CallLogStore
from .core.dialogue import DialogueCoordinator
from .core.orchestrator import CallSessionOrchestrator
from .core.playback import PlaybackRunner, PlaybackTracker
from .dashboard import DashboardServer
from .logging_config import configure_logging, get_logger
from .nlu_client import NLUClient

logger = get_logger(__name__)


class Engine:
    """The main application engine."""

    def __init__(
        self,
        config: AppConfig,
        *,
        ari_client: Optional[ARIClient] = None,
        nlu_client: Optional[NLUClient] = None,
        synthesizer: Optional[SpeechSynthesizer] = None,
        call_log: Optional[CallLogStore] = None,
    ):
        self.config = config
        sounds_dir = config.media.sounds_dir

        self.ari_client = ari_client or ARIClient(
            username=config.asterisk.username,
            password=config.asterisk.password,
            base_url=config.asterisk.base_url,
            app_name=config.asterisk.app_name,
        )
        self.nlu_client = nlu_client or NLUClient(config.nlu)
        self.synthesizer = synthesizer or SpeechSynthesizer(config.synthesis, sounds_dir)
        if call_log is None and config.call_log.enabled:
            call_log = CallLogStore(config.call_log.db_path)
        self.call_log = call_log

        self.prompt_cache = PromptCache(
            self.synthesizer,
            min_bytes=config.synthesis.min_file_bytes,
            min_duration_sec=config.synthesis.min_duration_sec,
        )
        self.playback_tracker = PlaybackTracker()
        self.playback_runner = PlaybackRunner(self.ari_client, self.playback_tracker, config.playback, sounds_dir)
        self.dialogue = DialogueCoordinator(
            self.ari_client,
            self.nlu_client,
            self.synthesizer,
            self.playback_runner,
            config.dialogue.script,
            fallback_reply=config.nlu.fallback_reply,
            inter_turn_delay_sec=config.dialogue.inter_turn_delay_sec,
        )
        self.orchestrator = CallSessionOrchestrator(
            self.ari_client,
            self.prompt_cache,
            self.playback_runner,
            self.dialogue,
            sounds_dir=sounds_dir,
            dialogue_config=config.dialogue,
            recording_config=config.recording,
            policies=config.policies,
            call_log=self.call_log,
        )
        self.dashboard: Optional[DashboardServer] = None
        if config.dashboard.enabled:
            self.dashboard = DashboardServer(
                config.dashboard,
                self.ari_client,
                self.call_log,
                sounds_dir,
                app_name=config.asterisk.app_name,
                active_sessions=lambda: self.orchestrator.active_sessions,
            )
        self.autodialer: Optional[EndpointAutoDialer] = None
        if config.autodial.enabled:
            self.autodialer = EndpointAutoDialer(self.ari_client, config.autodial, config.asterisk.app_name)
        self._autodial_task: Optional[asyncio.Task] = None

        self.ari_client.add_event_handler("StasisStart", self.orchestrator.on_stasis_start)
        self.ari_client.add_event_handler("StasisEnd", self.orchestrator.on_stasis_end)
        self.ari_client.add_event_handler("PlaybackStarted", self.playback_tracker.on_playback_started)
        self.ari_client.add_event_handler("PlaybackFinished", self.playback_tracker.on_playback_finished)
        self.ari_client.add_event_handler("PlaybackError", self.playback_tracker.on_playback_error)

    async def start(self):
        """Connect to dependencies and process ARI events until the socket closes."""
        if self.config.nlu.wait_for_ready:
            await self.nlu_client.wait_until_ready()
        await self.ari_client.connect(
            attempts=self.config.asterisk.connect_attempts,
            interval_sec=self.config.asterisk.connect_interval_sec,
        )
        if self.dashboard is not None:
            await self.dashboard.start()
        if self.autodialer is not None:
            self._autodial_task = asyncio.create_task(self.autodialer.run())
        logger.info("🚀 Call orchestrator started", app=self.config.asterisk.app_name)
        await self.ari_client.start_listening()

    async def stop(self):
        logger.info("Stopping call orchestrator...")
        if self._autodial_task and not self._autodial_task.done():
            self._autodial_task.cancel()
        await self.orchestrator.shutdown()
        if self.dashboard is not None:
            await self.dashboard.stop()
        await self.ari_client.disconnect()
        await self.nlu_client.stop()
        await self.synthesizer.stop()
        logger.info("Call orchestrator stopped")


async def main():
    config = load_config()
    level_name = str(config.logging.level).upper()
    configure_logging(log_level=getattr(logging, level_name, logging.INFO))

    errors, warnings = validate_production_config(config)
    if errors:
        logger.error("❌ Configuration validation FAILED", errors=errors, warnings=warnings)
        raise RuntimeError(f"Configuration errors: {errors}")
    if warnings:
        logger.warning("⚠️  Configuration warnings", warnings=warnings)
    logger.info("✅ Configuration validation passed")

    engine = Engine(config)

    shutdown_event = asyncio.Event()
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(sig, shutdown_event.set)

    service_task = loop.create_task(engine.start())
    stop_waiter = loop.create_task(shutdown_event.wait())
    await asyncio.wait({service_task, stop_waiter}, return_when=asyncio.FIRST_COMPLETED)

    await engine.stop()
    stop_waiter.cancel()
    if not service_task.done():
        service_task.cancel()
    try:
        await service_task
    except asyncio.CancelledError:
        pass


def run():
    try:
        asyncio.run(main())
    except (KeyboardInterrupt, SystemExit):
        pass
    finally:
        logger.info("Call orchestrator has shut down.")


if __name__ == "__main__":
    run()
