"""
Typed order events and channel naming.

Raw payloads arrive from pub/sub channels and the fallback socket as plain
dicts; parse_event() turns them into one dataclass per event name, each
carrying only the fields that event guarantees.
"""

import logging
from dataclasses import dataclass, field, asdict, replace
from datetime import datetime
from typing import Any, Dict, Optional, Union

from models import OrderEventName, SourceKind
from utils.datetime_helpers import parse_timestamp, to_iso
from utils.order_status_normalizer import normalize_status

logger = logging.getLogger(__name__)

GLOBAL_MERCHANTS_CHANNEL = "merchants-global"


def user_channel(user_id: str) -> str:
    return f"user-{user_id}"


def merchant_channel(merchant_id: str) -> str:
    return f"merchant-{merchant_id}"


def order_channel(order_id: str) -> str:
    return f"order-{order_id}"


def _optional_int(value: Any) -> Optional[int]:
    if value is None or value == "":
        return None
    return int(value)


def _optional_float(value: Any) -> Optional[float]:
    if value is None or value == "":
        return None
    return float(value)


@dataclass(frozen=True)
class OrderSnapshot:
    """Full order record as served by the authoritative store"""
    id: str
    status: str
    order_version: int
    order_number: Optional[str] = None
    type: Optional[str] = None
    minimal_status: Optional[str] = None
    user_id: Optional[str] = None
    merchant_id: Optional[str] = None
    buyer_merchant_id: Optional[str] = None
    crypto_amount: Optional[float] = None
    fiat_amount: Optional[float] = None
    rate: Optional[float] = None
    payment_method: Optional[str] = None
    created_at: Optional[datetime] = None
    accepted_at: Optional[datetime] = None
    escrowed_at: Optional[datetime] = None
    payment_sent_at: Optional[datetime] = None
    payment_confirmed_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    cancelled_at: Optional[datetime] = None
    expires_at: Optional[datetime] = None
    extension_count: int = 0
    max_extensions: int = 3
    extension_requested_by: Optional[str] = None
    extension_minutes: Optional[int] = None
    cancelled_by: Optional[str] = None
    cancellation_reason: Optional[str] = None
    escrow_tx_hash: Optional[str] = None
    premium_bps_current: Optional[int] = None
    merchant_rating: Optional[float] = None

    _TIMESTAMPS = (
        "created_at", "accepted_at", "escrowed_at", "payment_sent_at",
        "payment_confirmed_at", "completed_at", "cancelled_at", "expires_at",
    )

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "OrderSnapshot":
        if "id" not in data or "status" not in data:
            raise ValueError("Order snapshot requires 'id' and 'status'")
        version = data.get("order_version")
        return cls(
            id=str(data["id"]),
            status=data["status"],
            order_version=int(version) if version is not None else 1,
            order_number=data.get("order_number"),
            type=data.get("type"),
            minimal_status=data.get("minimal_status") or normalize_status(data["status"]),
            user_id=data.get("user_id"),
            merchant_id=data.get("merchant_id"),
            buyer_merchant_id=data.get("buyer_merchant_id"),
            crypto_amount=_optional_float(data.get("crypto_amount")),
            fiat_amount=_optional_float(data.get("fiat_amount")),
            rate=_optional_float(data.get("rate")),
            payment_method=data.get("payment_method"),
            extension_count=int(data.get("extension_count") or 0),
            max_extensions=int(data.get("max_extensions") or 3),
            extension_requested_by=data.get("extension_requested_by"),
            extension_minutes=_optional_int(data.get("extension_minutes")),
            cancelled_by=data.get("cancelled_by"),
            cancellation_reason=data.get("cancellation_reason"),
            escrow_tx_hash=data.get("escrow_tx_hash"),
            premium_bps_current=_optional_int(data.get("premium_bps_current")),
            merchant_rating=_optional_float(data.get("merchant_rating")),
            **{name: parse_timestamp(data.get(name)) for name in cls._TIMESTAMPS},
        )

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        for name in self._TIMESTAMPS:
            data[name] = to_iso(data[name])
        return data

    def with_status(self, status: str, order_version: int, minimal_status: Optional[str] = None) -> "OrderSnapshot":
        """Apply a partial status update on top of this snapshot"""
        return replace(
            self,
            status=status,
            order_version=order_version,
            minimal_status=minimal_status or normalize_status(status),
        )


@dataclass(frozen=True)
class OrderEvent:
    """Common shape of every order-scoped event"""
    order_id: str
    order_version: Optional[int] = None
    snapshot: Optional[OrderSnapshot] = None
    source: str = SourceKind.BROADCAST.value

    name = None

    @property
    def has_full_snapshot(self) -> bool:
        return self.snapshot is not None

    @property
    def dedup_base(self) -> str:
        return f"{self.name.value.lower()}:{self.order_id}:{self.order_version}"

    @property
    def dedup_key(self) -> str:
        """A copy carrying the full record is keyed apart from its partial twin"""
        return f"{self.dedup_base}:full" if self.snapshot is not None else self.dedup_base

    @property
    def needs_refetch(self) -> bool:
        """Events that can only be applied after a refetch"""
        return False


@dataclass(frozen=True)
class OrderCreated(OrderEvent):
    name = OrderEventName.ORDER_CREATED

    @property
    def dedup_base(self) -> str:
        return f"created:{self.order_id}"

    @property
    def needs_refetch(self) -> bool:
        return self.snapshot is None


@dataclass(frozen=True)
class OrderStatusUpdated(OrderEvent):
    status: str = ""
    minimal_status: Optional[str] = None
    previous_status: Optional[str] = None

    name = OrderEventName.ORDER_STATUS_UPDATED

    @property
    def dedup_base(self) -> str:
        return f"status:{self.order_id}:{self.status}"

    @property
    def needs_refetch(self) -> bool:
        # Without version metadata only a full snapshot is trustworthy
        return self.order_version is None and self.snapshot is None


@dataclass(frozen=True)
class OrderCancelled(OrderStatusUpdated):
    name = OrderEventName.ORDER_CANCELLED


@dataclass(frozen=True)
class ExtensionRequested(OrderEvent):
    requested_by: Optional[str] = None
    extension_minutes: Optional[int] = None
    extension_count: int = 0
    max_extensions: int = 3

    name = OrderEventName.ORDER_EXTENSION_REQUESTED


@dataclass(frozen=True)
class ExtensionResponse(OrderEvent):
    accepted: bool = False
    extension_count: int = 0
    new_expires_at: Optional[datetime] = None
    new_status: Optional[str] = None

    name = OrderEventName.ORDER_EXTENSION_RESPONSE

    @property
    def needs_refetch(self) -> bool:
        # An accepted extension moves expires_at, which partial payloads may not carry
        return self.accepted and self.snapshot is None


@dataclass(frozen=True)
class ChatMessageEvent:
    order_id: str
    message: Dict[str, Any] = field(default_factory=dict)
    name = OrderEventName.MESSAGE_NEW


@dataclass(frozen=True)
class TypingEvent:
    order_id: str
    actor_type: str
    is_typing: bool

    @property
    def name(self) -> OrderEventName:
        return OrderEventName.TYPING_START if self.is_typing else OrderEventName.TYPING_STOP


@dataclass(frozen=True)
class MessagesReadEvent:
    order_id: str
    reader_type: str
    read_at: Optional[datetime] = None
    name = OrderEventName.MESSAGES_READ


SyncEvent = Union[OrderCreated, OrderStatusUpdated, OrderCancelled, ExtensionRequested, ExtensionResponse]
ChatEvent = Union[ChatMessageEvent, TypingEvent, MessagesReadEvent]


def _order_id(payload: Dict[str, Any]) -> str:
    order_id = payload.get("orderId") or payload.get("order_id")
    if order_id is None and isinstance(payload.get("data"), dict):
        order_id = payload["data"].get("id")
    if order_id is None:
        raise ValueError("Event payload has no order id")
    return str(order_id)


def _snapshot(payload: Dict[str, Any]) -> Optional[OrderSnapshot]:
    data = payload.get("data")
    if isinstance(data, dict) and "id" in data and "status" in data:
        return OrderSnapshot.from_dict(data)
    return None


def parse_event(event_name: str, payload: Dict[str, Any], source: str = SourceKind.BROADCAST.value):
    """Build a typed event from a channel payload; raises ValueError on malformed input"""
    try:
        name = OrderEventName(event_name)
    except ValueError:
        raise ValueError(f"Unknown event name: {event_name}")

    order_id = _order_id(payload)
    snapshot = _snapshot(payload)
    version = _optional_int(payload.get("order_version"))
    if version is None and snapshot is not None and "order_version" in (payload.get("data") or {}):
        version = snapshot.order_version

    if name is OrderEventName.ORDER_CREATED:
        return OrderCreated(order_id=order_id, order_version=version, snapshot=snapshot, source=source)

    if name in (OrderEventName.ORDER_STATUS_UPDATED, OrderEventName.ORDER_CANCELLED):
        status = payload.get("status") or (snapshot.status if snapshot else None)
        if not status:
            raise ValueError(f"{event_name} payload has no status")
        cls = OrderCancelled if name is OrderEventName.ORDER_CANCELLED else OrderStatusUpdated
        return cls(
            order_id=order_id,
            order_version=version,
            snapshot=snapshot,
            source=source,
            status=status,
            minimal_status=payload.get("minimal_status") or normalize_status(status),
            previous_status=payload.get("previousStatus") or payload.get("previous_status"),
        )

    if name is OrderEventName.ORDER_EXTENSION_REQUESTED:
        return ExtensionRequested(
            order_id=order_id,
            order_version=version,
            snapshot=snapshot,
            source=source,
            requested_by=payload.get("requestedBy") or payload.get("requested_by"),
            extension_minutes=_optional_int(payload.get("extensionMinutes") or payload.get("extension_minutes")),
            extension_count=int(payload.get("extensionCount") or payload.get("extension_count") or 0),
            max_extensions=int(payload.get("maxExtensions") or payload.get("max_extensions") or 3),
        )

    if name is OrderEventName.ORDER_EXTENSION_RESPONSE:
        return ExtensionResponse(
            order_id=order_id,
            order_version=version,
            snapshot=snapshot,
            source=source,
            accepted=bool(payload.get("accepted")),
            extension_count=int(payload.get("extensionCount") or payload.get("extension_count") or 0),
            new_expires_at=parse_timestamp(payload.get("newExpiresAt") or payload.get("new_expires_at")),
            new_status=payload.get("newStatus") or payload.get("new_status"),
        )

    if name is OrderEventName.MESSAGE_NEW:
        message = payload.get("message") or {k: v for k, v in payload.items() if k not in ("orderId", "order_id")}
        return ChatMessageEvent(order_id=order_id, message=message)

    if name in (OrderEventName.TYPING_START, OrderEventName.TYPING_STOP):
        return TypingEvent(
            order_id=order_id,
            actor_type=payload.get("actorType") or payload.get("actor_type") or "unknown",
            is_typing=name is OrderEventName.TYPING_START,
        )

    return MessagesReadEvent(
        order_id=order_id,
        reader_type=payload.get("readerType") or payload.get("reader_type") or "unknown",
        read_at=parse_timestamp(payload.get("readAt") or payload.get("read_at")),
    )


def parse_socket_envelope(envelope: Dict[str, Any]) -> Optional[SyncEvent]:
    """Translate a fallback-socket order_event envelope; other envelope types yield None"""
    if envelope.get("type") != "order_event":
        return None
    payload = {
        "orderId": envelope.get("order_id"),
        "status": envelope.get("status"),
        "minimal_status": envelope.get("minimal_status"),
        "order_version": envelope.get("order_version"),
        "previousStatus": envelope.get("previousStatus"),
    }
    if isinstance(envelope.get("data"), dict):
        payload["data"] = envelope["data"]
    return parse_event(envelope.get("event_type", ""), payload, source=SourceKind.FALLBACK_SOCKET.value)


def build_status_payload(snapshot: OrderSnapshot, previous_status: Optional[str],
                         include_snapshot: bool = True) -> Dict[str, Any]:
    """Wire payload for ORDER_STATUS_UPDATED / ORDER_CANCELLED"""
    payload = {
        "orderId": snapshot.id,
        "status": snapshot.status,
        "minimal_status": snapshot.minimal_status or normalize_status(snapshot.status),
        "order_version": snapshot.order_version,
        "previousStatus": previous_status,
    }
    if include_snapshot:
        payload["data"] = snapshot.to_dict()
    return payload
