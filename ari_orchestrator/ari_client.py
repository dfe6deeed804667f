"""
Asterisk ARI client.

HTTP commands go through a shared aiohttp session; events arrive on the ARI
WebSocket and are fanned out to registered handlers as independent tasks so
one slow channel never blocks another.
"""

import asyncio
import json
from typing import Any, Callable, Dict, List, Optional, Set
from urllib.parse import quote, urlsplit

import aiohttp
import websockets
from tenacity import AsyncRetrying, RetryError, retry_if_exception_type, stop_after_attempt, wait_fixed
from websockets.exceptions import ConnectionClosed

from .errors import ConnectError
from .logging_config import get_logger

logger = get_logger(__name__)


def _is_success(response: Any) -> bool:
    """send_command returns {"status": N, ...} for non-JSON or error responses."""
    if not isinstance(response, dict):
        return False
    status = response.get("status")
    if isinstance(status, int):
        return 200 <= status < 300
    # JSON resource body (channel, playback, endpoint...) means 2xx
    return True


class ARIClient:
    """A client for interacting with the Asterisk REST Interface (ARI)."""

    def __init__(
        self,
        username: str,
        password: str,
        base_url: str,
        app_name: str,
        *,
        session_factory: Optional[Callable[[], aiohttp.ClientSession]] = None,
    ):
        self.username = username or ""
        self.password = password or ""
        self.app_name = app_name
        self.http_url = base_url.rstrip("/")
        parsed = urlsplit(self.http_url)
        ws_scheme = "wss" if parsed.scheme == "https" else "ws"
        self.ws_url = (
            f"{ws_scheme}://{parsed.netloc}/ari/events?api_key={quote(self.username)}:{quote(self.password)}"
            f"&app={quote(app_name)}"
        )
        self.websocket = None
        self.http_session: Optional[aiohttp.ClientSession] = None
        self._session_factory = session_factory
        self.running = False
        self.event_handlers: Dict[str, List[Callable]] = {}
        self._handler_tasks: Set[asyncio.Task] = set()

    def on_event(self, event_type: str, handler: Callable):
        """Alias for add_event_handler."""
        self.add_event_handler(event_type, handler)

    def add_event_handler(self, event_type: str, handler: Callable):
        """Register a coroutine handler for a specific ARI event type."""
        self.event_handlers.setdefault(event_type, []).append(handler)
        logger.debug("Added event handler", event_type=event_type, handler=getattr(handler, "__name__", repr(handler)))

    async def connect(self, attempts: int = 30, interval_sec: float = 3.0) -> None:
        """Connect with fixed backoff; ConnectError once attempts are exhausted."""
        try:
            async for attempt in AsyncRetrying(
                stop=stop_after_attempt(max(1, attempts)),
                wait=wait_fixed(interval_sec),
                retry=retry_if_exception_type((aiohttp.ClientError, OSError, ConnectionError, websockets.WebSocketException)),
            ):
                with attempt:
                    n = attempt.retry_state.attempt_number
                    logger.info("Connecting to ARI...", attempt=n, max_attempts=attempts)
                    await self._connect_once()
        except RetryError as e:
            cause = e.last_attempt.exception()
            logger.error("ARI connect failed, giving up", attempts=attempts, error=str(cause))
            raise ConnectError(f"ARI unreachable after {attempts} attempts: {cause}") from cause

    async def _connect_once(self) -> None:
        """Probe the HTTP API, then open the event WebSocket."""
        if self.http_session is None or self.http_session.closed:
            factory = self._session_factory or (
                lambda: aiohttp.ClientSession(auth=aiohttp.BasicAuth(self.username, self.password))
            )
            self.http_session = factory()
        try:
            async with self.http_session.get(f"{self.http_url}/asterisk/info") as response:
                if response.status != 200:
                    raise ConnectionError(f"Failed to connect to ARI HTTP endpoint. Status: {response.status}")
            logger.info("Successfully connected to ARI HTTP endpoint.")

            self.websocket = await websockets.connect(self.ws_url)
            self.running = True
            logger.info("✅ Connected to Asterisk ARI", app=self.app_name)
        except Exception as e:
            logger.warning("Failed to connect to ARI, will retry...", error=str(e))
            if self.http_session and not self.http_session.closed:
                await self.http_session.close()
            self.http_session = None
            raise

    async def start_listening(self):
        """Read events from the ARI WebSocket until it closes."""
        if not self.running or not self.websocket:
            logger.error("Cannot start listening, client is not connected.")
            return

        logger.info("Starting ARI event listener.", app=self.app_name)
        try:
            async for message in self.websocket:
                try:
                    event_data = json.loads(message)
                except json.JSONDecodeError:
                    logger.warning("Failed to decode ARI event JSON", message=message)
                    continue
                self.dispatch_event(event_data)
        except ConnectionClosed:
            logger.warning("ARI WebSocket connection closed.")
        finally:
            self.running = False

    def dispatch_event(self, event_data: Dict[str, Any]) -> None:
        """Schedule every handler registered for the event's type."""
        event_type = event_data.get("type")
        for handler in self.event_handlers.get(event_type, ()):
            task = asyncio.create_task(handler(event_data))
            self._handler_tasks.add(task)
            task.add_done_callback(self._handler_done)

    def _handler_done(self, task: asyncio.Task) -> None:
        self._handler_tasks.discard(task)
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            logger.error("ARI event handler raised", error=str(exc), exc_info=exc)

    async def disconnect(self):
        """Disconnect from the ARI WebSocket and close the HTTP session."""
        self.running = False
        if self.websocket:
            await self.websocket.close()
            self.websocket = None
        if self.http_session and not self.http_session.closed:
            await self.http_session.close()
        self.http_session = None
        logger.info("Disconnected from ARI.")

    async def send_command(
        self,
        method: str,
        resource: str,
        data: Optional[Dict[str, Any]] = None,
        params: Optional[Dict[str, Any]] = None,
        tolerate_statuses: Optional[List[int]] = None,
    ) -> Dict[str, Any]:
        """Send a command to the ARI HTTP endpoint.

        Non-2xx responses come back as {"status": N, "reason": body} so callers
        can branch on them; tolerate_statuses only changes how they are logged.
        """
        url = f"{self.http_url}/{resource}"
        if self.http_session is None or self.http_session.closed:
            return {"status": 503, "reason": "ARI session not connected"}
        try:
            async with self.http_session.request(method, url, json=data, params=params) as response:
                if response.status >= 400:
                    reason = await response.text()
                    if tolerate_statuses and response.status in tolerate_statuses:
                        logger.debug("ARI command tolerated non-2xx", method=method, url=url, status=response.status, reason=reason)
                    else:
                        logger.error("ARI command failed", method=method, url=url, status=response.status, reason=reason)
                    return {"status": response.status, "reason": reason}
                if response.status == 204:
                    return {"status": response.status}
                body = await response.text()
                if not body:
                    return {"status": response.status}
                return json.loads(body)
        except (aiohttp.ClientError, asyncio.TimeoutError) as e:
            logger.error("ARI HTTP request failed", method=method, url=url, error=str(e))
            return {"status": 500, "reason": str(e)}

    async def answer_channel(self, channel_id: str) -> bool:
        """Answer a channel."""
        logger.info("Answering channel", channel_id=channel_id)
        response = await self.send_command("POST", f"channels/{channel_id}/answer")
        return _is_success(response)

    async def hangup_channel(self, channel_id: str) -> bool:
        """Hang up a channel. A 404 means the channel is already gone."""
        logger.info("Hanging up channel", channel_id=channel_id)
        response = await self.send_command("DELETE", f"channels/{channel_id}", tolerate_statuses=[404])
        if response.get("status") == 404:
            logger.debug("Channel hangup failed (404), likely already hung up.", channel_id=channel_id)
            return True
        return _is_success(response)

    async def play_media_with_id(self, channel_id: str, media_uri: str, playback_id: str) -> bool:
        """Start playback on a channel under a caller-chosen playback id."""
        logger.debug("Playing media on channel", channel_id=channel_id, media_uri=media_uri, playback_id=playback_id)
        response = await self.send_command(
            "POST",
            f"channels/{channel_id}/play/{playback_id}",
            params={"media": media_uri},
        )
        return _is_success(response)

    async def stop_playback(self, playback_id: str) -> bool:
        """Stop an active playback by its playbackId."""
        response = await self.send_command("DELETE", f"playbacks/{playback_id}", tolerate_statuses=[404])
        status = response.get("status")
        if status == 404:
            logger.debug("Playback already gone", playback_id=playback_id)
            return True
        return _is_success(response)

    async def record_channel(
        self,
        channel_id: str,
        name: str,
        format: str = "wav",
        if_exists: str = "overwrite",
        max_duration_seconds: int = 3600,
        beep: bool = False,
        terminate_on: str = "none",
    ) -> bool:
        """Start recording a channel (POST /channels/{id}/record)."""
        logger.info("Starting ARI channel recording", channel_id=channel_id, name=name, format=format, ifExists=if_exists)
        # ARI expects query params; all values must be strings for yarl
        params = {
            "name": str(name),
            "format": str(format),
            "ifExists": str(if_exists),
            "maxDurationSeconds": str(int(max_duration_seconds)),
            "beep": "true" if beep else "false",
            "terminateOn": str(terminate_on),
        }
        response = await self.send_command("POST", f"channels/{channel_id}/record", params=params)
        if not _is_success(response):
            logger.error("Failed to start ARI channel recording", channel_id=channel_id, response=response)
            return False
        return True

    async def originate(
        self,
        endpoint: str,
        *,
        app: Optional[str] = None,
        app_args: Optional[str] = None,
        caller_id: Optional[str] = None,
    ) -> Optional[str]:
        """Originate a call into the Stasis app. Returns the new channel id."""
        params = {"endpoint": endpoint, "app": app or self.app_name}
        if app_args is not None:
            params["appArgs"] = str(app_args)
        if caller_id is not None:
            params["callerId"] = str(caller_id)
        response = await self.send_command("POST", "channels", params=params)
        channel_id = response.get("id") if isinstance(response, dict) else None
        if not channel_id:
            logger.error("Originate failed", endpoint=endpoint, response=response)
            return None
        logger.info("📤 Call originated", endpoint=endpoint, channel_id=channel_id)
        return channel_id

    async def get_endpoint_state(self, tech: str, resource: str) -> Optional[str]:
        """Return the endpoint's state ("online", "offline", ...) or None if unknown."""
        response = await self.send_command("GET", f"endpoints/{tech}/{resource}", tolerate_statuses=[404])
        if not _is_success(response):
            return None
        return response.get("state")
