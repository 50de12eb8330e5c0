"""
P2P Settlement - Order Lifecycle Schema
=======================================

Schema for the escrow-backed P2P order lifecycle:
- Orders moving through the settlement state machine (versioned for optimistic concurrency)
- Optional dispute and escrow records per order
- Mempool entries advertising pending orders for priority matching

The authoritative store is the only writer of `status` and `order_version`.
"""

from enum import Enum
from sqlalchemy import (
    Column, Integer, String, Numeric, DateTime, Boolean, Text,
    ForeignKey, Index, CheckConstraint, func
)
from sqlalchemy.orm import DeclarativeBase, relationship


class Base(DeclarativeBase):
    """Base class for all database models"""
    pass


# ============================================================================
# ENUMS - Business Logic Constants
# ============================================================================

class OrderStatus(Enum):
    """Order lifecycle states"""
    PENDING = "pending"
    ACCEPTED = "accepted"
    ESCROW_PENDING = "escrow_pending"
    ESCROWED = "escrowed"
    PAYMENT_PENDING = "payment_pending"
    PAYMENT_SENT = "payment_sent"
    PAYMENT_CONFIRMED = "payment_confirmed"
    RELEASING = "releasing"
    COMPLETED = "completed"
    CANCELLED = "cancelled"
    DISPUTED = "disputed"
    EXPIRED = "expired"


class MinimalOrderStatus(Enum):
    """Coarse status for low-bandwidth consumers"""
    OPEN = "open"
    ACCEPTED = "accepted"
    ESCROWED = "escrowed"
    PAYMENT_SENT = "payment_sent"
    COMPLETED = "completed"
    CANCELLED = "cancelled"
    DISPUTED = "disputed"
    EXPIRED = "expired"


class ActorType(Enum):
    """Who is requesting a transition"""
    USER = "user"
    MERCHANT = "merchant"
    COMPLIANCE = "compliance"
    SYSTEM = "system"


class OrderType(Enum):
    """Trade direction from the user's point of view"""
    BUY = "buy"
    SELL = "sell"


class PaymentMethod(Enum):
    """Fiat settlement rails"""
    BANK = "bank"
    CASH = "cash"


class DisputeStatus(Enum):
    """Dispute adjudication states"""
    OPEN = "open"
    INVESTIGATING = "investigating"
    RESOLVED = "resolved"


class DisputeResolution(Enum):
    """How a compliance actor closed a dispute"""
    RESTORE = "restore"
    FORCE_COMPLETE = "force_complete"
    FORCE_CANCEL = "force_cancel"


class SourceKind(Enum):
    """Delivery path a subscription belongs to"""
    BROADCAST = "broadcast"
    PERSONAL = "personal"
    FALLBACK_SOCKET = "fallback_socket"
    CHAT = "chat"


class OrderEventName(Enum):
    """Broadcast event names"""
    ORDER_CREATED = "ORDER_CREATED"
    ORDER_STATUS_UPDATED = "ORDER_STATUS_UPDATED"
    ORDER_CANCELLED = "ORDER_CANCELLED"
    ORDER_EXTENSION_REQUESTED = "ORDER_EXTENSION_REQUESTED"
    ORDER_EXTENSION_RESPONSE = "ORDER_EXTENSION_RESPONSE"
    MESSAGE_NEW = "MESSAGE_NEW"
    TYPING_START = "TYPING_START"
    TYPING_STOP = "TYPING_STOP"
    MESSAGES_READ = "MESSAGES_READ"


# ============================================================================
# MODELS
# ============================================================================

class Order(Base):
    """A single buy/sell trade moving through the settlement lifecycle"""
    __tablename__ = 'orders'

    id = Column(String(36), primary_key=True)
    order_number = Column(String(32), unique=True, nullable=False, index=True)
    type = Column(String(8), nullable=False)

    # Commercial terms
    crypto_amount = Column(Numeric(38, 8), nullable=False)
    fiat_amount = Column(Numeric(38, 2), nullable=False)
    rate = Column(Numeric(20, 8), nullable=False)
    payment_method = Column(String(8), nullable=False, default=PaymentMethod.BANK.value)

    # Parties
    user_id = Column(String(36), nullable=False, index=True)
    merchant_id = Column(String(36), nullable=False, index=True)
    buyer_merchant_id = Column(String(36), nullable=True, index=True)

    # Lifecycle
    status = Column(String(20), nullable=False, default=OrderStatus.PENDING.value)
    order_version = Column(Integer, nullable=False, default=1)

    # Stage timestamps (naive UTC)
    created_at = Column(DateTime, nullable=False, server_default=func.now())
    accepted_at = Column(DateTime, nullable=True)
    escrowed_at = Column(DateTime, nullable=True)
    payment_sent_at = Column(DateTime, nullable=True)
    payment_confirmed_at = Column(DateTime, nullable=True)
    completed_at = Column(DateTime, nullable=True)
    cancelled_at = Column(DateTime, nullable=True)
    expires_at = Column(DateTime, nullable=True, index=True)

    # Extension negotiation
    extension_count = Column(Integer, nullable=False, default=0)
    max_extensions = Column(Integer, nullable=False, default=3)
    extension_requested_by = Column(String(16), nullable=True)
    extension_minutes = Column(Integer, nullable=True)

    # Terminal metadata
    cancelled_by = Column(String(16), nullable=True)
    cancellation_reason = Column(Text, nullable=True)

    dispute = relationship("Dispute", back_populates="order", uselist=False, lazy="selectin")
    escrow = relationship("EscrowRecord", back_populates="order", uselist=False, lazy="selectin")
    mempool_entry = relationship("MempoolEntry", back_populates="order", uselist=False, lazy="selectin")

    __table_args__ = (
        CheckConstraint('order_version >= 1', name='ck_orders_version_positive'),
        CheckConstraint('extension_count >= 0', name='ck_orders_extension_count'),
        Index('ix_orders_status_expires', 'status', 'expires_at'),
    )

    def __repr__(self):
        return f"<Order {self.order_number} status={self.status} v{self.order_version}>"


class Dispute(Base):
    """Out-of-band adjudication attached to an order"""
    __tablename__ = 'disputes'

    id = Column(Integer, primary_key=True, autoincrement=True)
    order_id = Column(String(36), ForeignKey('orders.id'), unique=True, nullable=False)
    raised_by = Column(String(16), nullable=False)
    reason = Column(String(64), nullable=False)
    description = Column(Text, nullable=True)
    status = Column(String(16), nullable=False, default=DisputeStatus.OPEN.value)
    resolution = Column(String(32), nullable=True)
    resolution_notes = Column(Text, nullable=True)
    # Status to return to when compliance restores the order
    previous_status = Column(String(20), nullable=False)
    created_at = Column(DateTime, nullable=False, server_default=func.now())
    resolved_at = Column(DateTime, nullable=True)

    order = relationship("Order", back_populates="dispute")


class EscrowRecord(Base):
    """Opaque identifiers reported by the external escrow service"""
    __tablename__ = 'escrow_records'

    id = Column(Integer, primary_key=True, autoincrement=True)
    order_id = Column(String(36), ForeignKey('orders.id'), unique=True, nullable=False)
    lock_tx_hash = Column(String(128), nullable=True)
    release_tx_hash = Column(String(128), nullable=True)
    refund_tx_hash = Column(String(128), nullable=True)
    escrow_address = Column(String(128), nullable=True)
    trade_pda = Column(String(128), nullable=True)
    created_at = Column(DateTime, nullable=False, server_default=func.now())

    order = relationship("Order", back_populates="escrow")

    @property
    def is_locked(self) -> bool:
        return bool(self.lock_tx_hash) and not self.release_tx_hash and not self.refund_tx_hash


class MempoolEntry(Base):
    """A pending order advertised for priority-ranked matching"""
    __tablename__ = 'mempool_entries'

    id = Column(Integer, primary_key=True, autoincrement=True)
    order_id = Column(String(36), ForeignKey('orders.id'), unique=True, nullable=False)
    corridor = Column(String(16), nullable=False, default="USDT_AED")
    premium_bps_base = Column(Integer, nullable=False, default=0)
    premium_bps_current = Column(Integer, nullable=False, default=0)
    max_premium_bps = Column(Integer, nullable=False, default=500)
    bump_step_bps = Column(Integer, nullable=False, default=10)
    bump_interval_sec = Column(Integer, nullable=False, default=30)
    auto_bump_enabled = Column(Boolean, nullable=False, default=False)
    next_bump_at = Column(DateTime, nullable=True)
    last_bumped_at = Column(DateTime, nullable=True)
    created_at = Column(DateTime, nullable=False, server_default=func.now())

    order = relationship("Order", back_populates="mempool_entry")

    __table_args__ = (
        CheckConstraint('premium_bps_current <= max_premium_bps', name='ck_mempool_premium_cap'),
        Index('ix_mempool_auto_bump', 'auto_bump_enabled', 'next_bump_at'),
    )
