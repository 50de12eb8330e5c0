"""
Order repository - SQLAlchemy access to the authoritative order store
"""

import logging
from datetime import datetime
from typing import List, Optional

from sqlalchemy import and_, or_, select
from sqlalchemy.ext.asyncio import AsyncSession

from models import ActorType, MempoolEntry, Order, OrderStatus
from utils.datetime_helpers import utc_now
from utils.order_events import OrderSnapshot
from utils.order_state_machine import EXPIRABLE_STATUSES, EscrowFlags
from utils.order_status_normalizer import normalize_status

logger = logging.getLogger(__name__)

# Disputed, terminal and mid-release orders have no expiry edge
EXPIRY_CANDIDATE_STATUSES = tuple(sorted(EXPIRABLE_STATUSES))


async def load_order(session: AsyncSession, order_id: str) -> Optional[Order]:
    """Fresh read of an order with its dispute, escrow and mempool rows"""
    result = await session.execute(
        select(Order).where(Order.id == order_id).execution_options(populate_existing=True)
    )
    return result.scalar_one_or_none()


async def list_orders_for_actor(session: AsyncSession, actor_type: str, actor_id: str,
                                include_open_pool: bool = False) -> List[Order]:
    if actor_type == ActorType.USER.value:
        condition = Order.user_id == actor_id
    else:
        condition = or_(Order.merchant_id == actor_id, Order.buyer_merchant_id == actor_id)
        if include_open_pool:
            condition = or_(condition, Order.status == OrderStatus.PENDING.value)
    result = await session.execute(select(Order).where(condition).order_by(Order.created_at.desc()))
    return list(result.scalars().all())


async def find_expired_orders(session: AsyncSession, now: Optional[datetime] = None,
                              limit: int = 20) -> List[Order]:
    """Expirable orders past expires_at, oldest deadline first"""
    now = now or utc_now()
    result = await session.execute(
        select(Order)
        .where(
            and_(
                Order.status.in_(EXPIRY_CANDIDATE_STATUSES),
                Order.expires_at.isnot(None),
                Order.expires_at < now,
            )
        )
        .order_by(Order.expires_at.asc())
        .limit(limit)
    )
    return list(result.scalars().all())


async def find_orders_ready_for_bump(session: AsyncSession, now: Optional[datetime] = None,
                                     limit: int = 100) -> List[MempoolEntry]:
    """Auto-bump enabled, still pending, due, and below the premium cap"""
    now = now or utc_now()
    result = await session.execute(
        select(MempoolEntry)
        .join(Order, Order.id == MempoolEntry.order_id)
        .where(
            and_(
                MempoolEntry.auto_bump_enabled.is_(True),
                Order.status == OrderStatus.PENDING.value,
                or_(MempoolEntry.next_bump_at.is_(None), MempoolEntry.next_bump_at <= now),
                MempoolEntry.premium_bps_current < MempoolEntry.max_premium_bps,
            )
        )
        .order_by(MempoolEntry.next_bump_at.asc())
        .limit(limit)
    )
    return list(result.scalars().all())


def escrow_flags(order: Order) -> EscrowFlags:
    escrow = order.escrow
    if escrow is None:
        return EscrowFlags()
    return EscrowFlags(
        locked=bool(escrow.lock_tx_hash),
        released=bool(escrow.release_tx_hash),
        refunded=bool(escrow.refund_tx_hash),
    )


def order_to_snapshot(order: Order) -> OrderSnapshot:
    """Serialize an ORM order into the wire/projection snapshot"""
    entry = order.mempool_entry
    return OrderSnapshot(
        id=order.id,
        order_number=order.order_number,
        type=order.type,
        status=order.status,
        minimal_status=normalize_status(order.status),
        order_version=order.order_version,
        user_id=order.user_id,
        merchant_id=order.merchant_id,
        buyer_merchant_id=order.buyer_merchant_id,
        crypto_amount=float(order.crypto_amount) if order.crypto_amount is not None else None,
        fiat_amount=float(order.fiat_amount) if order.fiat_amount is not None else None,
        rate=float(order.rate) if order.rate is not None else None,
        payment_method=order.payment_method,
        created_at=order.created_at,
        accepted_at=order.accepted_at,
        escrowed_at=order.escrowed_at,
        payment_sent_at=order.payment_sent_at,
        payment_confirmed_at=order.payment_confirmed_at,
        completed_at=order.completed_at,
        cancelled_at=order.cancelled_at,
        expires_at=order.expires_at,
        extension_count=order.extension_count or 0,
        max_extensions=order.max_extensions or 3,
        extension_requested_by=order.extension_requested_by,
        extension_minutes=order.extension_minutes,
        cancelled_by=order.cancelled_by,
        cancellation_reason=order.cancellation_reason,
        escrow_tx_hash=order.escrow.lock_tx_hash if order.escrow is not None else None,
        premium_bps_current=entry.premium_bps_current if entry is not None else None,
    )
