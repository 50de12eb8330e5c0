"""
Fallback socket client.

A websocket feed that runs alongside the pub/sub channels. Its events go
through the same dedup/batch/version pipeline, so it is a redundant delivery
path rather than a separate source of truth.

Reconnect policy: on close or connect failure, wait min(1000 * 2^attempt, 16000) ms
and retry. After 5 reconnects without a successful open the client stops until
it is started again. A successful open resets the counter.
"""

import asyncio
import json
import logging
from typing import Any, Awaitable, Callable, Dict, Optional

import aiohttp

from config import Config
from services.retry_service import ReconnectBackoff
from utils.order_errors import TransportUnavailable
from utils.order_events import SyncEvent, parse_socket_envelope

logger = logging.getLogger(__name__)

ConnectFactory = Callable[[], Awaitable[Any]]


class FallbackSocketClient:
    """aiohttp websocket client with bounded exponential reconnect"""

    def __init__(
        self,
        actor_type: str,
        actor_id: str,
        on_event: Callable[[SyncEvent], None],
        url: str = None,
        session: Optional[aiohttp.ClientSession] = None,
        backoff: Optional[ReconnectBackoff] = None,
        on_exhausted: Optional[Callable[[TransportUnavailable], None]] = None,
        connect: Optional[ConnectFactory] = None,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ):
        self.actor_type = actor_type
        self.actor_id = actor_id
        self.url = url or Config.FALLBACK_SOCKET_URL
        self.backoff = backoff or ReconnectBackoff()
        self._on_event = on_event
        self._on_exhausted = on_exhausted
        self._session = session
        self._owns_session = session is None and connect is None
        self._connect_override = connect
        self._sleep = sleep
        self._ws = None
        self._task: Optional[asyncio.Task] = None
        self._stopped = False
        self.connected = False
        self.connect_attempts = 0

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def start(self) -> asyncio.Task:
        """Begin the connect/read/reconnect loop (idempotent while running)"""
        if self.running:
            return self._task
        self._stopped = False
        self.backoff.reset()
        self._task = asyncio.ensure_future(self._run())
        return self._task

    async def _connect(self):
        if self._connect_override is not None:
            return await self._connect_override()
        if self._session is None:
            self._session = aiohttp.ClientSession()
        return await self._session.ws_connect(self.url, heartbeat=Config.FALLBACK_SOCKET_HEARTBEAT_SECONDS)

    async def _run(self) -> None:
        while not self._stopped:
            self.connect_attempts += 1
            try:
                self._ws = await self._connect()
            except (aiohttp.ClientError, OSError, asyncio.TimeoutError) as e:
                logger.warning(f"⚠️ SOCKET_CONNECT_FAILED: {self.actor_type}:{self.actor_id}: {e}")
            else:
                self.connected = True
                self.backoff.reset()
                logger.info(f"✅ SOCKET_OPEN: {self.actor_type}:{self.actor_id}")
                try:
                    await self._send({"type": "subscribe", "actorType": self.actor_type, "actorId": self.actor_id})
                    await self._read_loop()
                except (aiohttp.ClientError, OSError, asyncio.TimeoutError) as e:
                    logger.warning(f"⚠️ SOCKET_ERROR: {self.actor_type}:{self.actor_id}: {e}")
                finally:
                    self.connected = False
                    await self._close_ws()

            if self._stopped:
                break

            delay = self.backoff.next_delay()
            if delay is None:
                error = TransportUnavailable(
                    f"Fallback socket gave up after {self.backoff.max_attempts} reconnect attempts",
                    attempts=self.backoff.attempt,
                    exhausted=True,
                )
                logger.error(f"❌ SOCKET_EXHAUSTED: {self.actor_type}:{self.actor_id}: {error}")
                if self._on_exhausted is not None:
                    self._on_exhausted(error)
                break

            logger.info(
                f"🔄 SOCKET_RECONNECT: attempt {self.backoff.attempt}/{self.backoff.max_attempts} in {delay:.1f}s"
            )
            await self._sleep(delay)

    async def _read_loop(self) -> None:
        async for message in self._ws:
            if message.type == aiohttp.WSMsgType.TEXT:
                await self._handle_text(message.data)
            elif message.type in (aiohttp.WSMsgType.ERROR, aiohttp.WSMsgType.CLOSED, aiohttp.WSMsgType.CLOSE):
                break

    async def _handle_text(self, raw: str) -> None:
        try:
            envelope: Dict[str, Any] = json.loads(raw)
        except ValueError:
            logger.warning(f"⚠️ SOCKET_BAD_FRAME: {raw[:120]!r}")
            return

        kind = envelope.get("type")
        if kind == "ping":
            await self._send({"type": "pong"})
            return
        if kind in ("pong", "subscribed"):
            logger.debug(f"📡 SOCKET_{kind.upper()}: {self.actor_type}:{self.actor_id}")
            return

        try:
            event = parse_socket_envelope(envelope)
        except ValueError as e:
            logger.warning(f"⚠️ SOCKET_BAD_EVENT: {e}")
            return
        if event is not None and not self._stopped:
            self._on_event(event)

    async def _send(self, message: Dict[str, Any]) -> None:
        if self._ws is not None and not self._ws.closed:
            await self._ws.send_str(json.dumps(message))

    async def _close_ws(self) -> None:
        ws, self._ws = self._ws, None
        if ws is not None and not ws.closed:
            await ws.close()

    async def stop(self) -> None:
        """Close the socket and stop reconnecting; no events are delivered afterwards"""
        self._stopped = True
        if self._task is not None and not self._task.done():
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
        self._task = None
        await self._close_ws()
        if self._owns_session and self._session is not None:
            await self._session.close()
            self._session = None
        logger.info(f"🛑 SOCKET_STOPPED: {self.actor_type}:{self.actor_id}")
