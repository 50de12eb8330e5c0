"""
Order Event Publisher - fans store mutations out to realtime channels

Routing:
- every event: `user-<id>`, `merchant-<id>`, the buyer merchant's channel if any, and `order-<id>`
- new orders, plus accepted/cancelled/expired status changes: also `merchants-global`
  so every merchant's pool view adds or drops the order
- the same event is mirrored to fallback socket subscribers by actor

The channel transport is injected: ChannelHub in-process, or an adapter for the
hosted pub/sub provider exposing the same publish(channel, event, payload).
Without one, only the fallback socket carries events.

Publishing happens after the store commits. A failed publish is logged and
never undoes the mutation; clients converge on the next event or refetch.
"""

import logging
from typing import Any, Dict, List, Optional, Tuple

from models import ActorType, OrderEventName, OrderStatus
from services.channel_hub import ChannelHub
from services.order_socket_server import OrderSocketServer
from utils.order_events import (
    GLOBAL_MERCHANTS_CHANNEL, OrderSnapshot, build_status_payload,
    merchant_channel, order_channel, user_channel,
)
from utils.datetime_helpers import to_iso

logger = logging.getLogger(__name__)

_POOL_VISIBLE_STATUSES = {
    OrderStatus.ACCEPTED.value,
    OrderStatus.CANCELLED.value,
    OrderStatus.EXPIRED.value,
}


def channels_for_order(snapshot: OrderSnapshot, event_name: str) -> List[str]:
    channels = []
    if snapshot.user_id:
        channels.append(user_channel(snapshot.user_id))
    if snapshot.merchant_id:
        channels.append(merchant_channel(snapshot.merchant_id))
    if snapshot.buyer_merchant_id and snapshot.buyer_merchant_id != snapshot.merchant_id:
        channels.append(merchant_channel(snapshot.buyer_merchant_id))
    channels.append(order_channel(snapshot.id))
    if _goes_to_all_merchants(snapshot, event_name):
        channels.append(GLOBAL_MERCHANTS_CHANNEL)
    return channels


def _goes_to_all_merchants(snapshot: OrderSnapshot, event_name: str) -> bool:
    if event_name == OrderEventName.ORDER_CREATED.value:
        return True
    return event_name in (OrderEventName.ORDER_STATUS_UPDATED.value, OrderEventName.ORDER_CANCELLED.value) \
        and snapshot.status in _POOL_VISIBLE_STATUSES


def _socket_targets(snapshot: OrderSnapshot) -> List[Tuple[str, str]]:
    targets = []
    if snapshot.user_id:
        targets.append((ActorType.USER.value, snapshot.user_id))
    if snapshot.merchant_id:
        targets.append((ActorType.MERCHANT.value, snapshot.merchant_id))
    if snapshot.buyer_merchant_id:
        targets.append((ActorType.MERCHANT.value, snapshot.buyer_merchant_id))
    return targets


class OrderEventPublisher:
    """Publishes typed order events to the channel transport and the fallback socket server"""

    def __init__(self, hub: Optional[ChannelHub] = None, socket_server: Optional[OrderSocketServer] = None):
        self.hub = hub
        self.socket_server = socket_server

    async def _publish(self, event_name: str, snapshot: OrderSnapshot, payload: Dict[str, Any],
                       previous_status: Optional[str] = None) -> None:
        channels = channels_for_order(snapshot, event_name) if self.hub is not None else []
        for channel in channels:
            try:
                await self.hub.publish(channel, event_name, payload)
            except Exception as e:
                logger.error(f"❌ PUBLISH_FAILED: {event_name} order={snapshot.id} channel={channel}: {e}")

        if self.socket_server is not None:
            try:
                await self.socket_server.broadcast(
                    event_name, snapshot, previous_status, _socket_targets(snapshot),
                    all_merchants=_goes_to_all_merchants(snapshot, event_name),
                )
            except Exception as e:
                logger.error(f"❌ SOCKET_PUBLISH_FAILED: {event_name} order={snapshot.id}: {e}")

        logger.info(
            f"📣 ORDER_EVENT: {event_name} order={snapshot.id} status={snapshot.status} "
            f"v{snapshot.order_version} -> {len(channels)} channel(s)"
        )

    async def order_created(self, snapshot: OrderSnapshot) -> None:
        payload = {"orderId": snapshot.id, "order_version": snapshot.order_version, "data": snapshot.to_dict()}
        await self._publish(OrderEventName.ORDER_CREATED.value, snapshot, payload)

    async def status_changed(self, snapshot: OrderSnapshot, previous_status: Optional[str]) -> None:
        event_name = (
            OrderEventName.ORDER_CANCELLED.value
            if snapshot.status == OrderStatus.CANCELLED.value
            else OrderEventName.ORDER_STATUS_UPDATED.value
        )
        await self._publish(event_name, snapshot, build_status_payload(snapshot, previous_status), previous_status)

    async def extension_requested(self, snapshot: OrderSnapshot) -> None:
        payload = {
            "orderId": snapshot.id,
            "order_version": snapshot.order_version,
            "requestedBy": snapshot.extension_requested_by,
            "extensionMinutes": snapshot.extension_minutes,
            "extensionCount": snapshot.extension_count,
            "maxExtensions": snapshot.max_extensions,
            "data": snapshot.to_dict(),
        }
        await self._publish(OrderEventName.ORDER_EXTENSION_REQUESTED.value, snapshot, payload)

    async def extension_responded(self, snapshot: OrderSnapshot, accepted: bool) -> None:
        payload = {
            "orderId": snapshot.id,
            "order_version": snapshot.order_version,
            "accepted": accepted,
            "extensionCount": snapshot.extension_count,
            "newExpiresAt": to_iso(snapshot.expires_at),
            "newStatus": snapshot.status,
            "data": snapshot.to_dict(),
        }
        await self._publish(OrderEventName.ORDER_EXTENSION_RESPONSE.value, snapshot, payload)
