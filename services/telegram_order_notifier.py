"""
Telegram Order Notifier

Consumer callback for RealtimeOrderSync that mirrors order status changes and
extension requests into a Telegram chat. Delivery failures are logged and
never raised back into the sync pipeline.
"""

import logging
from typing import Callable, List, Optional

from telegram import Bot
from telegram.error import TelegramError

from config import Config
from models import OrderStatus
from utils.order_events import ExtensionRequested, ExtensionResponse, OrderSnapshot, SyncEvent

logger = logging.getLogger(__name__)

STATUS_MESSAGES = {
    OrderStatus.ACCEPTED.value: "✅ Order {number} accepted",
    OrderStatus.ESCROW_PENDING.value: "⏳ Order {number}: escrow lock in progress",
    OrderStatus.ESCROWED.value: "🔒 Order {number}: funds locked in escrow",
    OrderStatus.PAYMENT_PENDING.value: "💳 Order {number}: waiting for fiat payment",
    OrderStatus.PAYMENT_SENT.value: "💸 Order {number}: payment marked as sent",
    OrderStatus.PAYMENT_CONFIRMED.value: "💰 Order {number}: payment confirmed",
    OrderStatus.RELEASING.value: "🔓 Order {number}: releasing escrow",
    OrderStatus.COMPLETED.value: "🎉 Order {number} completed",
    OrderStatus.CANCELLED.value: "❌ Order {number} cancelled",
    OrderStatus.DISPUTED.value: "⚖️ Order {number} is under dispute",
    OrderStatus.EXPIRED.value: "⏰ Order {number} expired",
}


def format_status_message(snapshot: OrderSnapshot) -> str:
    number = snapshot.order_number or snapshot.id[:8]
    template = STATUS_MESSAGES.get(snapshot.status, "ℹ️ Order {number} is now " + snapshot.status)
    text = template.format(number=number)
    if snapshot.status == OrderStatus.CANCELLED.value and snapshot.cancellation_reason:
        text += f"\nReason: {snapshot.cancellation_reason}"
    return text


class TelegramOrderNotifier:
    """Sends one Telegram message per applied status change for a single actor's chat"""

    def __init__(self, chat_id: int, bot: Optional[Bot] = None, token: Optional[str] = None):
        self.chat_id = chat_id
        self._bot = bot
        self._token = token or Config.BOT_TOKEN
        self._initialized = bot is not None
        self.sent = 0
        self.failed = 0

    async def _ensure_bot(self) -> Bot:
        if self._bot is None:
            if not self._token:
                raise TelegramError("BOT_TOKEN is not configured")
            self._bot = Bot(token=self._token)
        if not self._initialized:
            await self._bot.initialize()
            self._initialized = True
        return self._bot

    async def send(self, text: str) -> bool:
        try:
            bot = await self._ensure_bot()
            await bot.send_message(chat_id=self.chat_id, text=text)
        except TelegramError as e:
            self.failed += 1
            logger.error(f"❌ TELEGRAM_ERROR: chat={self.chat_id}, error={e}")
            return False
        except Exception as e:
            self.failed += 1
            logger.error(f"❌ TELEGRAM_UNEXPECTED: chat={self.chat_id}, error={e}")
            return False
        self.sent += 1
        logger.info(f"✅ TELEGRAM_SENT: chat={self.chat_id}")
        return True

    async def on_status_event(self, event: SyncEvent, snapshot: Optional[OrderSnapshot]) -> None:
        if snapshot is None:
            return
        await self.send(format_status_message(snapshot))

    async def on_extension_event(self, event: SyncEvent, snapshot: Optional[OrderSnapshot]) -> None:
        number = (snapshot.order_number if snapshot else None) or event.order_id[:8]
        if isinstance(event, ExtensionRequested):
            text = f"⏳ Order {number}: {event.requested_by} asked for {event.extension_minutes or '?'} more minutes"
        elif isinstance(event, ExtensionResponse):
            text = f"⏳ Order {number}: extension {'accepted' if event.accepted else 'declined'}"
        else:
            return
        await self.send(text)

    def attach(self, sync) -> Callable[[], None]:
        """Register on a RealtimeOrderSync; returns a function that detaches again"""
        unregisters: List[Callable[[], None]] = [
            sync.on_order_status_updated(self.on_status_event),
            sync.on_order_cancelled(self.on_status_event),
            sync.on_extension_requested(self.on_extension_event),
            sync.on_extension_response(self.on_extension_event),
        ]

        def detach() -> None:
            for unregister in unregisters:
                unregister()

        return detach

    async def close(self) -> None:
        if self._bot is not None and self._initialized:
            try:
                await self._bot.shutdown()
            except TelegramError as e:
                logger.warning(f"⚠️ TELEGRAM_SHUTDOWN: {e}")
        self._initialized = False
