"""
Channel Multiplexer - subscription management per actor

Channel layout:
- merchants: `merchants-global` (broadcast, new-order visibility) plus `merchant-<id>` (personal)
- users: `user-<id>` (personal) only
- optional fallback socket feeding the same sink as the pub/sub channels
- chat sub-channels `order-<id>`, opened lazily per active order and closed at terminal status

All subscription state lives in a SubscriptionRegistry owned by the multiplexer
instance and keyed by actor, so logout/unmount can release everything an actor holds.
"""

import logging
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, Iterable, List, Optional, Protocol

from models import ActorType, SourceKind
from services.fallback_socket import FallbackSocketClient
from services.retry_service import RetryService
from utils.order_errors import TransportUnavailable
from utils.order_events import (
    ChatEvent, ChatMessageEvent, MessagesReadEvent, OrderSnapshot, SyncEvent, TypingEvent,
    GLOBAL_MERCHANTS_CHANNEL, merchant_channel, order_channel, parse_event, user_channel,
)
from utils.order_state_machine import is_terminal_status

logger = logging.getLogger(__name__)

ChannelHandler = Callable[[str, Dict[str, Any]], Any]


class ChannelSubscriptionHandle(Protocol):
    def unsubscribe(self) -> None: ...


class ChannelTransport(Protocol):
    """Pub/sub provider surface; subscribe raises TransportUnavailable on connect failure"""

    def subscribe(self, channel_name: str, handler: ChannelHandler) -> ChannelSubscriptionHandle: ...


@dataclass
class Subscription:
    channel_name: str
    source_kind: str
    handle: Optional[ChannelSubscriptionHandle] = None
    active: bool = True

    def release(self) -> None:
        if not self.active:
            return
        self.active = False
        if self.handle is not None:
            self.handle.unsubscribe()


@dataclass
class ActorSession:
    """Everything one logged-in actor holds open"""
    actor_type: str
    actor_id: str
    subscriptions: Dict[str, Subscription] = field(default_factory=dict)
    chat_subscriptions: Dict[str, Subscription] = field(default_factory=dict)
    socket: Optional[FallbackSocketClient] = None

    @property
    def key(self) -> str:
        return actor_key(self.actor_type, self.actor_id)

    def is_party_to(self, order: OrderSnapshot) -> bool:
        if self.actor_type == ActorType.USER.value:
            return order.user_id == self.actor_id
        return self.actor_id in (order.merchant_id, order.buyer_merchant_id)


def actor_key(actor_type: str, actor_id: str) -> str:
    return f"{actor_type}:{actor_id}"


class SubscriptionRegistry:
    """Actor key -> ActorSession"""

    def __init__(self):
        self._sessions: Dict[str, ActorSession] = {}

    def get(self, key: str) -> Optional[ActorSession]:
        return self._sessions.get(key)

    def add(self, session: ActorSession) -> None:
        self._sessions[session.key] = session

    def pop(self, key: str) -> Optional[ActorSession]:
        return self._sessions.pop(key, None)

    def keys(self) -> List[str]:
        return list(self._sessions)

    def __len__(self) -> int:
        return len(self._sessions)


def channels_for_actor(actor_type: str, actor_id: str) -> List[tuple]:
    """(channel_name, source_kind) pairs an actor subscribes to"""
    if actor_type == ActorType.MERCHANT.value:
        return [
            (GLOBAL_MERCHANTS_CHANNEL, SourceKind.BROADCAST.value),
            (merchant_channel(actor_id), SourceKind.PERSONAL.value),
        ]
    if actor_type == ActorType.USER.value:
        return [(user_channel(actor_id), SourceKind.PERSONAL.value)]
    raise ValueError(f"Actor type '{actor_type}' has no realtime channels")


class ChannelMultiplexer:
    """Fans channel, socket and chat traffic for each actor into typed event sinks"""

    def __init__(
        self,
        transport: ChannelTransport,
        registry: Optional[SubscriptionRegistry] = None,
        socket_factory: Optional[Callable[..., FallbackSocketClient]] = None,
        subscribe_attempts: int = 3,
        retry_initial_delay: float = 1.0,
    ):
        self.transport = transport
        self.registry = registry or SubscriptionRegistry()
        self._socket_factory = socket_factory or FallbackSocketClient
        self._subscribe_attempts = subscribe_attempts
        self._retry_initial_delay = retry_initial_delay

    # ------------------------------------------------------------------
    # Actor lifecycle
    # ------------------------------------------------------------------

    async def connect(
        self,
        actor_type: str,
        actor_id: str,
        sink: Callable[[SyncEvent], None],
        enable_fallback_socket: bool = False,
        on_transport_exhausted: Optional[Callable[[TransportUnavailable], None]] = None,
    ) -> ActorSession:
        """Subscribe an actor's channels (and optionally the fallback socket)"""
        key = actor_key(actor_type, actor_id)
        existing = self.registry.get(key)
        if existing is not None:
            return existing

        channels = channels_for_actor(actor_type, actor_id)
        session = ActorSession(actor_type=actor_type, actor_id=actor_id)
        self.registry.add(session)
        try:
            for channel_name, source_kind in channels:
                subscription = Subscription(channel_name=channel_name, source_kind=source_kind)
                subscription.handle = await self._subscribe_with_retry(
                    channel_name, self._order_handler(subscription, sink)
                )
                session.subscriptions[channel_name] = subscription
        except TransportUnavailable:
            await self.disconnect(actor_type, actor_id)
            raise

        if enable_fallback_socket:
            session.socket = self._socket_factory(
                actor_type, actor_id, on_event=sink, on_exhausted=on_transport_exhausted
            )
            session.socket.start()

        logger.info(
            f"📡 CHANNELS_CONNECTED: {key} -> {sorted(session.subscriptions)}"
            f"{' + fallback socket' if session.socket else ''}"
        )
        return session

    async def disconnect(self, actor_type: str, actor_id: str) -> None:
        """Release every channel, chat channel and socket the actor holds"""
        session = self.registry.pop(actor_key(actor_type, actor_id))
        if session is None:
            return
        for subscription in list(session.subscriptions.values()) + list(session.chat_subscriptions.values()):
            subscription.release()
        session.subscriptions.clear()
        session.chat_subscriptions.clear()
        if session.socket is not None:
            await session.socket.stop()
            session.socket = None
        logger.info(f"🛑 CHANNELS_RELEASED: {session.key}")

    async def close(self) -> None:
        for key in self.registry.keys():
            actor_type, actor_id = key.split(":", 1)
            await self.disconnect(actor_type, actor_id)

    # ------------------------------------------------------------------
    # Chat sub-channels
    # ------------------------------------------------------------------

    async def open_chat(self, actor_type: str, actor_id: str, order_id: str,
                        sink: Callable[[ChatEvent], None]) -> bool:
        """Subscribe `order-<id>` for an actor; returns False when already open"""
        session = self._require_session(actor_type, actor_id)
        if order_id in session.chat_subscriptions:
            return False
        channel_name = order_channel(order_id)
        subscription = Subscription(channel_name=channel_name, source_kind=SourceKind.CHAT.value)
        subscription.handle = await self._subscribe_with_retry(channel_name, self._chat_handler(subscription, sink))
        session.chat_subscriptions[order_id] = subscription
        logger.debug(f"💬 CHAT_OPEN: {session.key} order={order_id}")
        return True

    def close_chat(self, actor_type: str, actor_id: str, order_id: str) -> bool:
        session = self.registry.get(actor_key(actor_type, actor_id))
        if session is None:
            return False
        subscription = session.chat_subscriptions.pop(order_id, None)
        if subscription is None:
            return False
        subscription.release()
        logger.debug(f"💬 CHAT_CLOSED: {session.key} order={order_id}")
        return True

    async def sync_chat_channels(self, actor_type: str, actor_id: str, orders: Iterable[OrderSnapshot],
                                 sink_factory: Callable[[str], Callable[[ChatEvent], None]]) -> None:
        """Open chat for active orders the actor is party to; close it for terminal ones"""
        session = self.registry.get(actor_key(actor_type, actor_id))
        if session is None:
            return
        for order in orders:
            if not session.is_party_to(order):
                continue
            if is_terminal_status(order.status):
                self.close_chat(actor_type, actor_id, order.id)
            elif order.id not in session.chat_subscriptions:
                await self.open_chat(actor_type, actor_id, order.id, sink_factory(order.id))

    def open_chat_count(self, actor_type: str, actor_id: str) -> int:
        session = self.registry.get(actor_key(actor_type, actor_id))
        return len(session.chat_subscriptions) if session else 0

    def has_chat(self, actor_type: str, actor_id: str, order_id: str) -> bool:
        session = self.registry.get(actor_key(actor_type, actor_id))
        return session is not None and order_id in session.chat_subscriptions

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _require_session(self, actor_type: str, actor_id: str) -> ActorSession:
        session = self.registry.get(actor_key(actor_type, actor_id))
        if session is None:
            raise KeyError(f"Actor {actor_key(actor_type, actor_id)} is not connected")
        return session

    async def _subscribe_with_retry(self, channel_name: str, handler: ChannelHandler) -> ChannelSubscriptionHandle:
        async def attempt():
            return self.transport.subscribe(channel_name, handler)

        try:
            return await RetryService.retry_async(
                attempt,
                max_attempts=self._subscribe_attempts,
                initial_delay=self._retry_initial_delay,
                exceptions=(TransportUnavailable, ConnectionError),
            )
        except ConnectionError as e:
            raise TransportUnavailable(f"Could not subscribe to {channel_name}: {e}",
                                       attempts=self._subscribe_attempts, exhausted=True)
        except TransportUnavailable as e:
            e.exhausted = True
            raise

    def _order_handler(self, subscription: Subscription, sink: Callable[[SyncEvent], None]) -> ChannelHandler:
        def handle(event_name: str, payload: Dict[str, Any]) -> None:
            if not subscription.active:
                return
            try:
                event = parse_event(event_name, payload, source=subscription.source_kind)
            except (ValueError, TypeError) as e:
                logger.warning(f"⚠️ CHANNEL_BAD_EVENT: {subscription.channel_name} {event_name}: {e}")
                return
            if isinstance(event, (ChatMessageEvent, TypingEvent, MessagesReadEvent)):
                return
            sink(event)

        return handle

    def _chat_handler(self, subscription: Subscription, sink: Callable[[ChatEvent], None]) -> ChannelHandler:
        def handle(event_name: str, payload: Dict[str, Any]) -> None:
            if not subscription.active:
                return
            try:
                event = parse_event(event_name, payload, source=SourceKind.CHAT.value)
            except (ValueError, TypeError) as e:
                logger.warning(f"⚠️ CHAT_BAD_EVENT: {subscription.channel_name} {event_name}: {e}")
                return
            if isinstance(event, (ChatMessageEvent, TypingEvent, MessagesReadEvent)):
                sink(event)

        return handle
