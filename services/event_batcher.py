"""
Event Batcher - coalesces bursts of order events

Events are queued and flushed after a fixed window (100ms by default). A flush:

1. keeps one event per order, the highest order_version queued (first-seen order is preserved)
2. runs each survivor through the version gate and applies all accepted
   survivors to the projection in one atomic replacement
3. fires consumer callbacks after the replacement, in enqueue order
4. performs at most one consolidated refetch for the whole window when any
   event could not be applied without fresh data

Rejections from the gate are routine traffic shaping and only logged at debug.
"""

import asyncio
import inspect
import logging
from dataclasses import replace
from typing import Any, Awaitable, Callable, Dict, List, Optional, Tuple

from config import Config
from models import OrderEventName
from services.order_projection import OrderProjection
from utils.order_errors import StaleUpdate, SyncIncomplete
from utils.order_events import (
    ExtensionRequested, ExtensionResponse, OrderCreated, OrderSnapshot, OrderStatusUpdated, SyncEvent
)
from utils.version_gate import should_accept_update

logger = logging.getLogger(__name__)

EventCallback = Callable[[SyncEvent, Optional[OrderSnapshot]], Any]
RefetchHandler = Callable[[], Awaitable[None]]
SyncErrorCallback = Callable[[SyncIncomplete], Any]


async def _invoke(callback: Callable, *args) -> None:
    try:
        result = callback(*args)
        if inspect.isawaitable(result):
            await result
    except Exception as e:
        logger.error(f"❌ CALLBACK_FAILED: {getattr(callback, '__name__', callback)}: {e}", exc_info=True)


class EventBatcher:
    """Window-based coalescing of order events into one atomic projection update"""

    def __init__(
        self,
        projection: OrderProjection,
        refetch: Optional[RefetchHandler] = None,
        window_ms: int = None,
    ):
        self.projection = projection
        self._refetch = refetch
        self.window_seconds = (Config.BATCH_WINDOW_MS if window_ms is None else window_ms) / 1000.0
        self._queue: List[SyncEvent] = []
        self._timer: Optional[asyncio.TimerHandle] = None
        self._flush_task: Optional[asyncio.Task] = None
        self._callbacks: Dict[OrderEventName, List[EventCallback]] = {}
        self._sync_error_callbacks: List[SyncErrorCallback] = []
        self._closed = False
        self.stats = {"enqueued": 0, "flushes": 0, "applied": 0, "stale": 0, "refetches": 0}

    # ------------------------------------------------------------------
    # Registration
    # ------------------------------------------------------------------

    def on(self, event_name: OrderEventName, callback: EventCallback) -> Callable[[], None]:
        """Register a callback for an event name; returns an unregister function"""
        self._callbacks.setdefault(event_name, []).append(callback)

        def unregister():
            callbacks = self._callbacks.get(event_name, [])
            if callback in callbacks:
                callbacks.remove(callback)

        return unregister

    def on_order_created(self, callback: EventCallback) -> Callable[[], None]:
        return self.on(OrderEventName.ORDER_CREATED, callback)

    def on_order_status_updated(self, callback: EventCallback) -> Callable[[], None]:
        return self.on(OrderEventName.ORDER_STATUS_UPDATED, callback)

    def on_order_cancelled(self, callback: EventCallback) -> Callable[[], None]:
        return self.on(OrderEventName.ORDER_CANCELLED, callback)

    def on_sync_error(self, callback: SyncErrorCallback) -> None:
        self._sync_error_callbacks.append(callback)

    # ------------------------------------------------------------------
    # Queueing
    # ------------------------------------------------------------------

    @property
    def pending(self) -> int:
        return len(self._queue)

    def enqueue(self, event: SyncEvent) -> None:
        """Queue an event and arm the flush timer if it is not armed"""
        if self._closed:
            logger.debug(f"⏭️ BATCH_CLOSED: dropping {event.name.value} for order={event.order_id}")
            return
        self._queue.append(event)
        self.stats["enqueued"] += 1
        if self._timer is None:
            loop = asyncio.get_running_loop()
            self._timer = loop.call_later(self.window_seconds, self._on_timer)

    def _on_timer(self) -> None:
        self._timer = None
        if self._closed:
            return
        self._flush_task = asyncio.ensure_future(self.flush())

    # ------------------------------------------------------------------
    # Flush
    # ------------------------------------------------------------------

    def _coalesce(self, events: List[SyncEvent]) -> List[SyncEvent]:
        """One event per order: the newest version wins, a full record beats a partial at a tie"""
        latest: Dict[str, SyncEvent] = {}
        for event in events:
            kept = latest.get(event.order_id)
            if kept is not None and kept.order_version is not None and event.order_version is not None:
                if event.order_version < kept.order_version:
                    continue
                if (
                    event.order_version == kept.order_version
                    and kept.has_full_snapshot
                    and not event.has_full_snapshot
                ):
                    continue
            latest[event.order_id] = event
        return list(latest.values())

    def _next_snapshot(self, event: SyncEvent, current: Optional[OrderSnapshot]) -> Tuple[Optional[OrderSnapshot], bool]:
        """Snapshot to store for an accepted event plus whether it is partial; (None, _) means refetch"""
        if event.snapshot is not None:
            return event.snapshot, False
        if current is None or event.order_version is None:
            return None, False
        if isinstance(event, OrderStatusUpdated):
            return current.with_status(event.status, event.order_version, event.minimal_status), True
        if isinstance(event, ExtensionRequested):
            return replace(
                current,
                order_version=event.order_version,
                extension_requested_by=event.requested_by,
                extension_minutes=event.extension_minutes,
            ), True
        if isinstance(event, ExtensionResponse) and not event.accepted and event.new_status:
            return current.with_status(event.new_status, event.order_version), True
        return None, False

    async def flush(self) -> int:
        """Apply everything queued so far; returns the number of applied orders"""
        if self._timer is not None:
            self._timer.cancel()
            self._timer = None
        events, self._queue = self._queue, []
        if not events:
            return 0

        self.stats["flushes"] += 1
        survivors = self._coalesce(events)
        updates: List[Tuple[OrderSnapshot, bool]] = []
        applied: List[Tuple[SyncEvent, OrderSnapshot]] = []
        awaiting_refetch: List[SyncEvent] = []

        for event in survivors:
            if event.needs_refetch:
                awaiting_refetch.append(event)
                continue

            decision = should_accept_update(
                event.order_version,
                self.projection.current_version(event.order_id),
                has_full_snapshot=event.has_full_snapshot,
                current_is_partial=self.projection.is_partial(event.order_id),
            )
            if decision.refetch:
                awaiting_refetch.append(event)
                continue
            if not decision.accept:
                self.stats["stale"] += 1
                stale = StaleUpdate(event.order_id, decision.reason)
                logger.debug(f"⏭️ STALE_UPDATE: {stale} (incoming v{event.order_version})")
                continue

            snapshot, is_partial = self._next_snapshot(event, self.projection.get(event.order_id))
            if snapshot is None:
                awaiting_refetch.append(event)
                continue
            updates.append((snapshot, is_partial))
            applied.append((event, snapshot))

        self.projection.apply_batch(updates)
        self.stats["applied"] += len(updates)
        if updates:
            logger.debug(f"✅ BATCH_APPLIED: {len(updates)} order(s) from {len(events)} event(s)")

        for event, snapshot in applied:
            if self._closed:
                break
            await self._fire(event, snapshot)

        if awaiting_refetch and not self._closed:
            await self._consolidated_refetch(awaiting_refetch)

        return len(updates)

    async def _consolidated_refetch(self, events: List[SyncEvent]) -> None:
        order_ids = [event.order_id for event in events]
        if self._refetch is None:
            await self._report_sync_error(SyncIncomplete("Event needs a refetch but none is configured", order_ids))
            return

        self.stats["refetches"] += 1
        logger.info(f"🔄 BATCH_REFETCH: {len(order_ids)} event(s) need fresh data")
        try:
            await self._refetch()
        except Exception as e:
            logger.warning(f"⚠️ SYNC_INCOMPLETE: refetch failed, keeping stale view: {e}")
            await self._report_sync_error(SyncIncomplete(f"Refetch failed: {e}", order_ids))
            return

        if self._closed:
            return
        for event in events:
            snapshot = self.projection.get(event.order_id)
            if snapshot is not None:
                await self._fire(event, snapshot)

    async def _fire(self, event: SyncEvent, snapshot: Optional[OrderSnapshot]) -> None:
        for callback in list(self._callbacks.get(event.name, [])):
            await _invoke(callback, event, snapshot)

    async def _report_sync_error(self, error: SyncIncomplete) -> None:
        for callback in list(self._sync_error_callbacks):
            await _invoke(callback, error)

    def close(self) -> None:
        """Clear timers and queued events; nothing fires after this"""
        self._closed = True
        if self._timer is not None:
            self._timer.cancel()
            self._timer = None
        self._queue.clear()
        self._callbacks.clear()
        self._sync_error_callbacks.clear()
