"""
Fallback socket server (aiohttp.web)

Protocol:
    client -> server  {"type": "subscribe", "actorType": "...", "actorId": "..."}
    server -> client  {"type": "subscribed", "actorType": "...", "actorId": "..."}
    client -> server  {"type": "ping"}            server -> client  {"type": "pong"}
    server -> client  {"type": "order_event", "event_type", "order_id", "status",
                       "minimal_status", "order_version", "previousStatus"}
"""

import json
import logging
from typing import Dict, Iterable, Optional, Set, Tuple

from aiohttp import WSMsgType, web

from config import Config
from models import ActorType
from utils.order_events import OrderSnapshot

logger = logging.getLogger(__name__)

ActorRef = Tuple[str, str]


class OrderSocketServer:
    """Tracks websocket clients by actor and fans order events out to them"""

    def __init__(self, path: str = "/ws/orders"):
        self.path = path
        self._clients: Dict[ActorRef, Set[web.WebSocketResponse]] = {}
        self.stats = {"connections": 0, "sent": 0, "send_errors": 0}

    def create_app(self) -> web.Application:
        app = web.Application()
        app.router.add_get(self.path, self.handle_socket)
        app.router.add_get("/health", self.handle_health)
        app.on_shutdown.append(self._on_shutdown)
        return app

    async def handle_health(self, request: web.Request) -> web.Response:
        return web.json_response({"status": "ok", "clients": self.client_count()})

    async def handle_socket(self, request: web.Request) -> web.WebSocketResponse:
        ws = web.WebSocketResponse(heartbeat=Config.FALLBACK_SOCKET_HEARTBEAT_SECONDS)
        await ws.prepare(request)
        self.stats["connections"] += 1
        actor: Optional[ActorRef] = None

        try:
            async for message in ws:
                if message.type != WSMsgType.TEXT:
                    if message.type == WSMsgType.ERROR:
                        logger.warning(f"⚠️ SOCKET_SERVER_ERROR: {ws.exception()}")
                    continue
                try:
                    data = json.loads(message.data)
                except ValueError:
                    logger.warning("⚠️ SOCKET_SERVER_BAD_FRAME")
                    continue

                kind = data.get("type")
                if kind == "subscribe":
                    actor_type, actor_id = data.get("actorType"), data.get("actorId")
                    if actor_type not in (ActorType.USER.value, ActorType.MERCHANT.value) or not actor_id:
                        await ws.send_json({"type": "error", "error": "actorType and actorId required"})
                        continue
                    if actor is not None:
                        self._remove(actor, ws)
                    actor = (actor_type, str(actor_id))
                    self._clients.setdefault(actor, set()).add(ws)
                    await ws.send_json({"type": "subscribed", "actorType": actor_type, "actorId": str(actor_id)})
                    logger.info(f"📡 SOCKET_SUBSCRIBED: {actor_type}:{actor_id}")
                elif kind == "ping":
                    await ws.send_json({"type": "pong"})
        finally:
            if actor is not None:
                self._remove(actor, ws)
        return ws

    def _remove(self, actor: ActorRef, ws: web.WebSocketResponse) -> None:
        sockets = self._clients.get(actor)
        if sockets is None:
            return
        sockets.discard(ws)
        if not sockets:
            self._clients.pop(actor, None)

    def client_count(self) -> int:
        return sum(len(sockets) for sockets in self._clients.values())

    def is_subscribed(self, actor_type: str, actor_id: str) -> bool:
        return bool(self._clients.get((actor_type, actor_id)))

    async def broadcast(
        self,
        event_name: str,
        snapshot: OrderSnapshot,
        previous_status: Optional[str],
        targets: Iterable[ActorRef],
        all_merchants: bool = False,
    ) -> int:
        """Send an order_event envelope to the targeted actors (and every merchant when asked)"""
        envelope = {
            "type": "order_event",
            "event_type": event_name,
            "order_id": snapshot.id,
            "status": snapshot.status,
            "minimal_status": snapshot.minimal_status,
            "order_version": snapshot.order_version,
            "previousStatus": previous_status,
        }
        recipients: Set[web.WebSocketResponse] = set()
        for target in targets:
            recipients.update(self._clients.get(target, set()))
        if all_merchants:
            for (actor_type, _), sockets in self._clients.items():
                if actor_type == ActorType.MERCHANT.value:
                    recipients.update(sockets)

        sent = 0
        for ws in recipients:
            if ws.closed:
                continue
            try:
                await ws.send_json(envelope)
                sent += 1
            except ConnectionError as e:
                self.stats["send_errors"] += 1
                logger.warning(f"⚠️ SOCKET_SEND_FAILED: order={snapshot.id}: {e}")
        self.stats["sent"] += sent
        return sent

    async def _on_shutdown(self, app: web.Application) -> None:
        for sockets in list(self._clients.values()):
            for ws in list(sockets):
                await ws.close(code=1001, message=b"Server shutdown")
        self._clients.clear()
