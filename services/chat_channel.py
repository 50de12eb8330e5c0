"""
Per-order chat state with explicit delivery status.

Sends are optimistic: the message is shown immediately as Pending, becomes
Confirmed when the REST collaborator returns the stored message, or Failed
(keeping the error) when the send fails. A failed send is never shown as
delivered and is never silently dropped.
"""

import logging
import uuid
from dataclasses import dataclass, field, replace
from datetime import datetime
from enum import Enum
from typing import Any, Callable, Dict, List, Optional

from utils.datetime_helpers import parse_timestamp, utc_now
from utils.order_errors import MutationFailed
from utils.order_events import ChatEvent, ChatMessageEvent, MessagesReadEvent, TypingEvent

logger = logging.getLogger(__name__)


class DeliveryState(Enum):
    PENDING = "pending"
    CONFIRMED = "confirmed"
    FAILED = "failed"


@dataclass(frozen=True)
class ChatMessage:
    id: str
    order_id: str
    sender_type: str
    content: str
    message_type: str = "text"
    created_at: Optional[datetime] = None
    is_read: bool = False
    delivery: DeliveryState = DeliveryState.CONFIRMED
    error: Optional[str] = None

    @classmethod
    def from_dict(cls, order_id: str, data: Dict[str, Any]) -> "ChatMessage":
        return cls(
            id=str(data["id"]),
            order_id=order_id,
            sender_type=data.get("sender_type", "system"),
            content=data.get("content", ""),
            message_type=data.get("message_type", "text"),
            created_at=parse_timestamp(data.get("created_at")),
            is_read=bool(data.get("is_read", False)),
        )


@dataclass
class ChatChannel:
    """Message list and typing indicators for one order"""
    order_id: str
    messages: List[ChatMessage] = field(default_factory=list)
    typing: Dict[str, bool] = field(default_factory=dict)
    listeners: List[Callable[["ChatChannel"], Any]] = field(default_factory=list)

    def _notify(self) -> None:
        for listener in list(self.listeners):
            try:
                listener(self)
            except Exception as e:
                logger.error(f"❌ CHAT_LISTENER_FAILED: order={self.order_id}: {e}")

    def _index(self, message_id: str) -> Optional[int]:
        for index, message in enumerate(self.messages):
            if message.id == message_id:
                return index
        return None

    def handle_event(self, event: ChatEvent) -> None:
        """Apply a MESSAGE_NEW / TYPING_* / MESSAGES_READ event"""
        if isinstance(event, ChatMessageEvent):
            if "id" not in event.message:
                logger.warning(f"⚠️ CHAT_MESSAGE_WITHOUT_ID: order={self.order_id}")
                return
            incoming = ChatMessage.from_dict(self.order_id, event.message)
            client_id = event.message.get("client_id")
            if self._index(incoming.id) is not None:
                return
            if client_id is not None and self._index(client_id) is not None:
                # Our own optimistic message echoed back by the channel
                self.messages[self._index(client_id)] = incoming
            else:
                self.messages.append(incoming)
        elif isinstance(event, TypingEvent):
            self.typing[event.actor_type] = event.is_typing
        elif isinstance(event, MessagesReadEvent):
            self.messages = [
                message if message.sender_type == event.reader_type else replace(message, is_read=True)
                for message in self.messages
            ]
        self._notify()

    async def send(self, api_client, sender_type: str, sender_id: str, content: str) -> ChatMessage:
        """Optimistically append, then confirm or mark failed"""
        client_id = f"local-{uuid.uuid4().hex}"
        pending = ChatMessage(
            id=client_id,
            order_id=self.order_id,
            sender_type=sender_type,
            content=content,
            created_at=utc_now(),
            delivery=DeliveryState.PENDING,
        )
        self.messages.append(pending)
        self._notify()

        try:
            stored = await api_client.send_message(self.order_id, sender_type, sender_id, content, client_id=client_id)
        except MutationFailed as e:
            logger.warning(f"⚠️ CHAT_SEND_FAILED: order={self.order_id}: {e}")
            result = replace(pending, delivery=DeliveryState.FAILED, error=str(e))
        else:
            result = ChatMessage.from_dict(self.order_id, stored) if stored and "id" in stored else \
                replace(pending, delivery=DeliveryState.CONFIRMED)

        index = self._index(client_id)
        if index is not None:
            if result.delivery is DeliveryState.CONFIRMED and self._index(result.id) not in (None, index):
                # The channel echo arrived first; drop the placeholder
                del self.messages[index]
            else:
                self.messages[index] = result
        self._notify()
        return result

    @property
    def pending_count(self) -> int:
        return sum(1 for message in self.messages if message.delivery is DeliveryState.PENDING)

    @property
    def failed(self) -> List[ChatMessage]:
        return [message for message in self.messages if message.delivery is DeliveryState.FAILED]
