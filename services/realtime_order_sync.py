"""
Realtime Order Sync - client-side reconciliation for one actor

Wires the pieces together:

    channels / fallback socket -> DedupCache -> EventBatcher -> VersionGate -> OrderProjection -> callbacks

## Lifecycle
- `start()` loads the actor's orders, subscribes channels, opens chat for active orders
- `stop()` releases channels and sockets, clears batch timers and the dedup memo;
  results of requests still in flight are discarded

## Mutations
Accept / lock escrow / mark paid / confirm and release / cancel / dispute go
through the REST collaborator. The server's response is applied to the
projection through the version gate. Failures are raised to the caller and
reported to `on_mutation_error` listeners; nothing already shown is rolled back.
"""

import logging
from typing import Any, Awaitable, Callable, Dict, List, Optional

from caching.dedup_cache import DedupCache
from models import OrderEventName
from services.channel_multiplexer import ChannelMultiplexer
from services.chat_channel import ChatChannel
from services.event_batcher import EventBatcher, EventCallback
from services.order_projection import OrderProjection
from services.orders_api_client import OrdersAPIClient
from utils.order_errors import MutationFailed, SyncIncomplete, TransportUnavailable
from utils.order_events import ChatEvent, OrderSnapshot, SyncEvent

logger = logging.getLogger(__name__)


class RealtimeOrderSync:
    """Live, version-gated mirror of the orders one actor can see"""

    def __init__(
        self,
        actor_type: str,
        actor_id: str,
        api_client: OrdersAPIClient,
        multiplexer: ChannelMultiplexer,
        dedup: Optional[DedupCache] = None,
        projection: Optional[OrderProjection] = None,
        window_ms: int = None,
        enable_fallback_socket: bool = False,
        enable_chat: bool = True,
    ):
        self.actor_type = actor_type
        self.actor_id = actor_id
        self.api = api_client
        self.multiplexer = multiplexer
        self.dedup = dedup or DedupCache()
        self.projection = projection or OrderProjection()
        self.batcher = EventBatcher(self.projection, refetch=self.refetch, window_ms=window_ms)
        self.enable_fallback_socket = enable_fallback_socket
        self.enable_chat = enable_chat
        self.chats: Dict[str, ChatChannel] = {}
        self.last_sync_error: Optional[SyncIncomplete] = None
        self.transport_error: Optional[TransportUnavailable] = None
        self._mutation_error_listeners: List[Callable[[MutationFailed], Any]] = []
        self._mounted = False

        self.batcher.on_sync_error(self._remember_sync_error)
        if enable_chat:
            for name in (OrderEventName.ORDER_CREATED, OrderEventName.ORDER_STATUS_UPDATED,
                         OrderEventName.ORDER_CANCELLED):
                self.batcher.on(name, self._track_chat)

    # ------------------------------------------------------------------
    # Consumer registration
    # ------------------------------------------------------------------

    def on_order_created(self, callback: EventCallback) -> Callable[[], None]:
        return self.batcher.on_order_created(callback)

    def on_order_status_updated(self, callback: EventCallback) -> Callable[[], None]:
        return self.batcher.on_order_status_updated(callback)

    def on_order_cancelled(self, callback: EventCallback) -> Callable[[], None]:
        return self.batcher.on_order_cancelled(callback)

    def on_extension_requested(self, callback: EventCallback) -> Callable[[], None]:
        return self.batcher.on(OrderEventName.ORDER_EXTENSION_REQUESTED, callback)

    def on_extension_response(self, callback: EventCallback) -> Callable[[], None]:
        return self.batcher.on(OrderEventName.ORDER_EXTENSION_RESPONSE, callback)

    def on_sync_error(self, callback: Callable[[SyncIncomplete], Any]) -> None:
        self.batcher.on_sync_error(callback)

    def on_mutation_error(self, callback: Callable[[MutationFailed], Any]) -> None:
        self._mutation_error_listeners.append(callback)

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    @property
    def mounted(self) -> bool:
        return self._mounted

    async def start(self) -> None:
        """Initial fetch, then subscribe; a failed fetch leaves an empty view and a sync notice"""
        self._mounted = True
        try:
            snapshots = await self.api.list_orders(self.actor_type, self.actor_id)
        except MutationFailed as e:
            logger.warning(f"⚠️ INITIAL_FETCH_FAILED: {self.actor_type}:{self.actor_id}: {e}")
            self._remember_sync_error(SyncIncomplete(f"Initial fetch failed: {e}"))
            snapshots = []
        self.projection.reset(snapshots)

        await self.multiplexer.connect(
            self.actor_type,
            self.actor_id,
            sink=self.ingest,
            enable_fallback_socket=self.enable_fallback_socket,
            on_transport_exhausted=self._remember_transport_error,
        )
        if self.enable_chat:
            await self._sync_chats(self.projection.all())
        logger.info(f"✅ SYNC_STARTED: {self.actor_type}:{self.actor_id} with {len(self.projection)} order(s)")

    async def stop(self) -> None:
        self._mounted = False
        self.batcher.close()
        self.dedup.clear()
        await self.multiplexer.disconnect(self.actor_type, self.actor_id)
        self.chats.clear()
        logger.info(f"🛑 SYNC_STOPPED: {self.actor_type}:{self.actor_id}")

    # ------------------------------------------------------------------
    # Event intake
    # ------------------------------------------------------------------

    def ingest(self, event: SyncEvent) -> bool:
        """Entry point for every transport; returns True when the event was queued"""
        if not self._mounted:
            return False
        if self.dedup.is_duplicate(event.dedup_key):
            return False
        self.batcher.enqueue(event)
        return True

    async def refetch(self) -> None:
        """Reload the actor's orders and merge them through the version gate"""
        snapshots = await self.api.list_orders(self.actor_type, self.actor_id)
        if not self._mounted:
            return
        self.projection.merge_snapshots(snapshots)
        self.last_sync_error = None
        if self.enable_chat:
            await self._sync_chats(snapshots)

    # ------------------------------------------------------------------
    # Mutations
    # ------------------------------------------------------------------

    async def _mutate(self, action: str, order_id: Optional[str],
                      request: Callable[[], Awaitable[OrderSnapshot]]) -> OrderSnapshot:
        try:
            snapshot = await request()
        except MutationFailed as e:
            logger.error(f"❌ MUTATION_FAILED: {action} order={order_id}: {e}")
            for listener in list(self._mutation_error_listeners):
                try:
                    listener(e)
                except Exception as listener_error:
                    logger.error(f"❌ MUTATION_LISTENER_FAILED: {listener_error}")
            raise
        if self._mounted:
            self.projection.apply_snapshot(snapshot)
            if self.enable_chat:
                await self._sync_chats([snapshot])
        logger.info(f"✅ MUTATION_OK: {action} order={snapshot.id} -> {snapshot.status} v{snapshot.order_version}")
        return snapshot

    async def accept(self, order_id: str) -> OrderSnapshot:
        return await self._mutate("accept", order_id, lambda: self.api.update_status(
            order_id, "accepted", self.actor_type, self.actor_id))

    async def lock_escrow(self, order_id: str, tx_hash: str, **escrow_refs) -> OrderSnapshot:
        return await self._mutate("lock_escrow", order_id, lambda: self.api.lock_escrow(
            order_id, self.actor_type, self.actor_id, tx_hash, **escrow_refs))

    async def mark_paid(self, order_id: str) -> OrderSnapshot:
        return await self._mutate("mark_paid", order_id, lambda: self.api.update_status(
            order_id, "payment_sent", self.actor_type, self.actor_id))

    async def confirm_and_release(self, order_id: str, tx_hash: str) -> OrderSnapshot:
        return await self._mutate("confirm_and_release", order_id, lambda: self.api.release_escrow(
            order_id, self.actor_type, self.actor_id, tx_hash))

    async def cancel(self, order_id: str, reason: Optional[str] = None) -> OrderSnapshot:
        return await self._mutate("cancel", order_id, lambda: self.api.cancel_order(
            order_id, self.actor_type, self.actor_id, reason))

    async def dispute(self, order_id: str, reason: str, description: Optional[str] = None) -> OrderSnapshot:
        return await self._mutate("dispute", order_id, lambda: self.api.open_dispute(
            order_id, self.actor_type, self.actor_id, reason, description))

    async def request_extension(self, order_id: str) -> OrderSnapshot:
        return await self._mutate("request_extension", order_id, lambda: self.api.request_extension(
            order_id, self.actor_type, self.actor_id))

    async def respond_to_extension(self, order_id: str, accept: bool) -> OrderSnapshot:
        return await self._mutate("respond_extension", order_id, lambda: self.api.respond_to_extension(
            order_id, self.actor_type, self.actor_id, accept))

    async def send_message(self, order_id: str, content: str):
        chat = self.chats.get(order_id) or self.chats.setdefault(order_id, ChatChannel(order_id))
        return await chat.send(self.api, self.actor_type, self.actor_id, content)

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _remember_sync_error(self, error: SyncIncomplete) -> None:
        self.last_sync_error = error

    def _remember_transport_error(self, error: TransportUnavailable) -> None:
        self.transport_error = error

    def _chat_sink(self, order_id: str) -> Callable[[ChatEvent], None]:
        chat = self.chats.setdefault(order_id, ChatChannel(order_id))
        return chat.handle_event

    async def _sync_chats(self, snapshots: List[OrderSnapshot]) -> None:
        await self.multiplexer.sync_chat_channels(self.actor_type, self.actor_id, snapshots, self._chat_sink)
        for snapshot in snapshots:
            if snapshot.id in self.chats and not self.multiplexer.has_chat(self.actor_type, self.actor_id, snapshot.id):
                self.chats.pop(snapshot.id, None)

    async def _track_chat(self, event: SyncEvent, snapshot: Optional[OrderSnapshot]) -> None:
        if snapshot is not None and self._mounted:
            await self._sync_chats([snapshot])
