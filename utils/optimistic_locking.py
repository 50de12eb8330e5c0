"""
Optimistic Locking Infrastructure
Compare-and-increment on orders.order_version for the authoritative store
"""

import logging
from typing import Any, Dict

from sqlalchemy import select, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from models import Order
from utils.order_errors import OptimisticLockingError, OrderNotFound

logger = logging.getLogger(__name__)


class OptimisticLockManager:
    """
    Version-controlled writes for orders.

    Every accepted mutation goes through versioned_update(), which only
    succeeds when the row still carries the version the caller read, and
    bumps order_version by exactly one in the same statement.
    """

    def __init__(self, session: AsyncSession):
        self.session = session

    async def versioned_update(self, order_id: str, expected_version: int, updates: Dict[str, Any]) -> int:
        """
        Apply updates if the order is still at expected_version.

        Returns:
            int: the new order_version

        Raises:
            OptimisticLockingError: version moved underneath us
            OrderNotFound: the order does not exist
        """
        if "order_version" in updates:
            raise ValueError("order_version is managed by versioned_update")

        stmt = (
            update(Order)
            .where(Order.id == order_id, Order.order_version == expected_version)
            .values(**updates, order_version=Order.order_version + 1)
            .execution_options(synchronize_session=False)
        )
        try:
            result = await self.session.execute(stmt)
        except SQLAlchemyError as e:
            logger.error(f"❌ Database error during versioned update of order {order_id}: {e}")
            raise

        if result.rowcount == 0:
            actual = await self.get_version(order_id)
            if actual is None:
                raise OrderNotFound(order_id)
            logger.warning(
                f"🔒 Optimistic lock conflict: order={order_id} expected_version={expected_version} actual={actual}"
            )
            raise OptimisticLockingError(order_id, expected_version, actual)

        logger.debug(f"✅ Versioned update: order={order_id} v{expected_version} → v{expected_version + 1}")
        return expected_version + 1

    async def get_version(self, order_id: str):
        result = await self.session.execute(select(Order.order_version).where(Order.id == order_id))
        return result.scalar_one_or_none()
