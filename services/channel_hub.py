"""
In-process pub/sub channel hub.

Implements the same subscribe/publish surface the hosted pub/sub provider
exposes, so the order publisher, the multiplexer and tests can run inside a
single process without a broker.
"""

import asyncio
import inspect
import logging
from typing import Any, Callable, Dict, List

logger = logging.getLogger(__name__)

ChannelHandler = Callable[[str, Dict[str, Any]], Any]


class HubSubscription:
    """Handle returned by subscribe(); unsubscribe() is idempotent"""

    def __init__(self, hub: "ChannelHub", channel_name: str, handler: ChannelHandler):
        self.hub = hub
        self.channel_name = channel_name
        self.handler = handler
        self.active = True

    def unsubscribe(self) -> None:
        if self.active:
            self.active = False
            self.hub._remove(self)


class ChannelHub:
    """Channel name -> handlers; publish delivers to every active handler"""

    def __init__(self):
        self._channels: Dict[str, List[HubSubscription]] = {}
        self.stats = {"published": 0, "delivered": 0, "handler_errors": 0}

    def subscribe(self, channel_name: str, handler: ChannelHandler) -> HubSubscription:
        subscription = HubSubscription(self, channel_name, handler)
        self._channels.setdefault(channel_name, []).append(subscription)
        logger.debug(f"📡 HUB_SUBSCRIBE: {channel_name}")
        return subscription

    def _remove(self, subscription: HubSubscription) -> None:
        subscribers = self._channels.get(subscription.channel_name, [])
        if subscription in subscribers:
            subscribers.remove(subscription)
        if not subscribers:
            self._channels.pop(subscription.channel_name, None)

    def subscriber_count(self, channel_name: str) -> int:
        return len(self._channels.get(channel_name, []))

    def channel_names(self) -> List[str]:
        return sorted(self._channels)

    async def publish(self, channel_name: str, event_name: str, payload: Dict[str, Any]) -> int:
        """Deliver to current subscribers; returns the number of handlers invoked"""
        self.stats["published"] += 1
        delivered = 0
        for subscription in list(self._channels.get(channel_name, [])):
            if not subscription.active:
                continue
            try:
                result = subscription.handler(event_name, payload)
                if inspect.isawaitable(result):
                    await result
                delivered += 1
            except Exception as e:
                self.stats["handler_errors"] += 1
                logger.error(f"❌ HUB_HANDLER_ERROR: channel={channel_name} event={event_name}: {e}")
        self.stats["delivered"] += delivered
        # Let handlers that scheduled work observe the delivery before returning
        await asyncio.sleep(0)
        return delivered
