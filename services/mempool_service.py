"""
Mempool Service - priority premium auction for pending orders

Pending orders sit in the mempool at a premium over the corridor reference
price. Each bump raises the premium by the entry's step, never past its cap;
the auto-bump cycle runs the same bump for every due entry.
"""

import logging
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional

from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from config import Config
from database import async_managed_session
from models import MempoolEntry, Order, OrderStatus
from services.order_repository import find_orders_ready_for_bump
from utils.datetime_helpers import seconds_until, to_iso, utc_now
from utils.order_errors import AuctionStepFailure
from utils.priority_fee import offer_price_for_corridor

logger = logging.getLogger(__name__)


async def bump_order_priority(session: AsyncSession, order_id: str, is_auto: bool = False,
                              now: Optional[datetime] = None) -> Dict[str, Any]:
    """
    Raise one entry's premium by its step, capped at max_premium_bps.

    Returns:
        {"success": True, "new_premium_bps": int, "max_reached": bool}

    Raises:
        AuctionStepFailure: no mempool entry, or the order is no longer pending
    """
    now = now or utc_now()
    result = await session.execute(
        select(MempoolEntry, Order.status)
        .join(Order, Order.id == MempoolEntry.order_id)
        .where(MempoolEntry.order_id == order_id)
        .execution_options(populate_existing=True)
    )
    row = result.first()
    if row is None:
        raise AuctionStepFailure(order_id, "Order not found in mempool")
    entry, status = row
    if status != OrderStatus.PENDING.value:
        raise AuctionStepFailure(order_id, "Order is not pending")

    old_premium = entry.premium_bps_current
    new_premium = min(old_premium + entry.bump_step_bps, entry.max_premium_bps)
    max_reached = new_premium >= entry.max_premium_bps

    entry.premium_bps_current = new_premium
    entry.last_bumped_at = now
    entry.next_bump_at = None if max_reached else now + timedelta(seconds=entry.bump_interval_sec)
    await session.flush()

    logger.info(
        f"📈 {'AUTO' if is_auto else 'MANUAL'}_BUMP: order={order_id} "
        f"{old_premium} -> {new_premium}bps{' (max reached)' if max_reached else ''}"
    )
    return {"success": True, "new_premium_bps": new_premium, "max_reached": max_reached}


def entry_to_dict(entry: MempoolEntry, order: Order, now: Optional[datetime] = None) -> Dict[str, Any]:
    reference = Config.reference_rate(entry.corridor)
    return {
        "id": order.id,
        "order_number": order.order_number,
        "corridor": entry.corridor,
        "amount": float(order.crypto_amount),
        "ref_price": reference,
        "premium_bps_current": entry.premium_bps_current,
        "max_premium_bps": entry.max_premium_bps,
        "bump_step_bps": entry.bump_step_bps,
        "auto_bump_enabled": entry.auto_bump_enabled,
        "next_bump_at": to_iso(entry.next_bump_at),
        "current_offer_price": float(offer_price_for_corridor(entry.premium_bps_current, entry.corridor)),
        "max_offer_price": float(offer_price_for_corridor(entry.max_premium_bps, entry.corridor)),
        "expires_at": to_iso(order.expires_at),
        "seconds_until_expiry": seconds_until(order.expires_at, now),
        "user_id": order.user_id,
        "merchant_id": order.merchant_id,
        "status": order.status,
    }


class MempoolService:
    """Manual bumps, mempool listing and the periodic auto-bump cycle"""

    def __init__(self, session_factory: Optional[async_sessionmaker] = None):
        self.session_factory = session_factory

    async def bump(self, order_id: str, is_auto: bool = False, now: Optional[datetime] = None) -> Dict[str, Any]:
        async with async_managed_session(self.session_factory) as session:
            return await bump_order_priority(session, order_id, is_auto=is_auto, now=now)

    async def get_orders_ready_for_auto_bump(self, now: Optional[datetime] = None, limit: int = 100) -> List[str]:
        async with async_managed_session(self.session_factory) as session:
            entries = await find_orders_ready_for_bump(session, now, limit)
            return [entry.order_id for entry in entries]

    async def get_mempool_orders(
        self,
        corridor: Optional[str] = None,
        min_premium_bps: Optional[int] = None,
        max_premium_bps: Optional[int] = None,
        min_amount: Optional[float] = None,
        max_amount: Optional[float] = None,
        limit: int = 50,
        offset: int = 0,
    ) -> List[Dict[str, Any]]:
        """Pending mempool orders, highest premium first"""
        stmt = (
            select(MempoolEntry, Order)
            .join(Order, Order.id == MempoolEntry.order_id)
            .where(Order.status == OrderStatus.PENDING.value)
        )
        if corridor:
            stmt = stmt.where(MempoolEntry.corridor == corridor)
        if min_premium_bps is not None:
            stmt = stmt.where(MempoolEntry.premium_bps_current >= min_premium_bps)
        if max_premium_bps is not None:
            stmt = stmt.where(MempoolEntry.premium_bps_current <= max_premium_bps)
        if min_amount is not None:
            stmt = stmt.where(Order.crypto_amount >= min_amount)
        if max_amount is not None:
            stmt = stmt.where(Order.crypto_amount <= max_amount)
        stmt = stmt.order_by(MempoolEntry.premium_bps_current.desc(), Order.created_at.asc()) \
            .limit(limit).offset(offset)

        now = utc_now()
        async with async_managed_session(self.session_factory) as session:
            result = await session.execute(stmt)
            return [entry_to_dict(entry, order, now) for entry, order in result.all()]

    async def run_auto_bump_cycle(self, now: Optional[datetime] = None) -> Dict[str, Any]:
        """
        Bump every due entry once.

        Each entry is bumped in its own transaction; a failure is recorded and
        the rest of the batch continues. Errors selecting the batch propagate.
        """
        now = now or utc_now()
        results = {"processed": 0, "bumped": 0, "max_reached": 0, "failures": []}

        order_ids = await self.get_orders_ready_for_auto_bump(now)
        if not order_ids:
            logger.debug("📈 AUTO_BUMP: no orders ready")
            return results

        for order_id in order_ids:
            results["processed"] += 1
            try:
                outcome = await self.bump(order_id, is_auto=True, now=now)
            except AuctionStepFailure as e:
                results["failures"].append({"order_id": order_id, "error": str(e)})
                logger.warning(f"⚠️ AUTO_BUMP_FAILED: {e}")
                continue
            except SQLAlchemyError as e:
                failure = AuctionStepFailure(order_id, str(e))
                results["failures"].append({"order_id": order_id, "error": str(failure)})
                logger.error(f"❌ AUTO_BUMP_DB_ERROR: {failure}")
                continue
            results["bumped"] += 1
            if outcome["max_reached"]:
                results["max_reached"] += 1

        logger.info(
            f"📈 AUTO_BUMP_CYCLE: {results['bumped']}/{results['processed']} bumped, "
            f"{results['max_reached']} at cap, {len(results['failures'])} failed"
        )
        return results
