"""
Endpoint auto-dialer.

Waits for a SIP endpoint to register, then originates one call from it into
the Stasis application.
"""

import asyncio
from typing import Optional

from .config import AutoDialConfig
from .logging_config import get_logger

logger = get_logger(__name__)


class EndpointAutoDialer:
    def __init__(self, ari_client, config: AutoDialConfig, app_name: str):
        self.ari_client = ari_client
        self.config = config
        self.app_name = app_name
        self.channel_id: Optional[str] = None

    @property
    def endpoint(self) -> str:
        return f"{self.config.tech}/{self.config.resource}"

    async def run(self) -> Optional[str]:
        """Poll until the endpoint is online and originate once.

        Returns the originated channel id, or None if the attempt bound was
        reached or the originate request failed.
        """
        await asyncio.sleep(self.config.initial_delay_sec)
        attempts = 0
        while self.config.max_attempts is None or attempts < self.config.max_attempts:
            attempts += 1
            state = await self.ari_client.get_endpoint_state(self.config.tech, self.config.resource)
            if state == "online":
                logger.info("📶 Endpoint online, placing call", endpoint=self.endpoint)
                self.channel_id = await self.ari_client.originate(
                    self.endpoint,
                    app=self.app_name,
                    app_args=self.config.app_args,
                    caller_id=self.config.caller_id,
                )
                if not self.channel_id:
                    logger.error("Auto-dial originate failed", endpoint=self.endpoint)
                return self.channel_id
            logger.debug("Endpoint not online yet", endpoint=self.endpoint, state=state, attempt=attempts)
            await asyncio.sleep(self.config.poll_interval_sec)

        logger.warning("Endpoint never came online, auto-dial abandoned", endpoint=self.endpoint, attempts=attempts)
        return None
