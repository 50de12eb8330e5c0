"""
Client-side mirror of the orders an actor can see.

Only two code paths write here: EventBatcher's flush (apply_batch) and the
success handler of a self-initiated mutation (apply_snapshot). Every write
replaces the whole mapping in one assignment, so readers never see a half
applied batch.
"""

import logging
from typing import Dict, Iterable, List, Optional, Set, Tuple

from utils.order_events import OrderSnapshot
from utils.order_state_machine import is_terminal_status
from utils.version_gate import should_accept_update

logger = logging.getLogger(__name__)


class OrderProjection:
    """Version-gated local order state keyed by order id"""

    def __init__(self):
        self._orders: Dict[str, OrderSnapshot] = {}
        # Orders whose current record came from a partial status update
        self._partial: Set[str] = set()

    def get(self, order_id: str) -> Optional[OrderSnapshot]:
        return self._orders.get(order_id)

    def current_version(self, order_id: str) -> Optional[int]:
        snapshot = self._orders.get(order_id)
        return snapshot.order_version if snapshot else None

    def is_partial(self, order_id: str) -> bool:
        return order_id in self._partial

    def all(self) -> List[OrderSnapshot]:
        return list(self._orders.values())

    def active(self) -> List[OrderSnapshot]:
        return [o for o in self._orders.values() if not is_terminal_status(o.status)]

    def __contains__(self, order_id: str) -> bool:
        return order_id in self._orders

    def __len__(self) -> int:
        return len(self._orders)

    def apply_batch(self, updates: Iterable[Tuple[OrderSnapshot, bool]]) -> int:
        """Replace records in one step; each update is (snapshot, is_partial)"""
        updates = list(updates)
        if not updates:
            return 0
        orders = dict(self._orders)
        partial = set(self._partial)
        for snapshot, is_partial in updates:
            orders[snapshot.id] = snapshot
            if is_partial:
                partial.add(snapshot.id)
            else:
                partial.discard(snapshot.id)
        self._orders = orders
        self._partial = partial
        return len(updates)

    def merge_snapshots(self, snapshots: Iterable[OrderSnapshot]) -> List[OrderSnapshot]:
        """Merge a fetched list through the version gate; returns the snapshots that were applied"""
        accepted = []
        for snapshot in snapshots:
            decision = should_accept_update(
                snapshot.order_version,
                self.current_version(snapshot.id),
                has_full_snapshot=True,
                current_is_partial=self.is_partial(snapshot.id),
            )
            if decision.accept:
                accepted.append(snapshot)
            else:
                logger.debug(f"⏭️ PROJECTION_SKIP: order={snapshot.id} v{snapshot.order_version} ({decision.reason})")
        self.apply_batch((snapshot, False) for snapshot in accepted)
        return accepted

    def apply_snapshot(self, snapshot: OrderSnapshot) -> bool:
        """Apply the server's response to a self-initiated mutation"""
        return bool(self.merge_snapshots([snapshot]))

    def reset(self, snapshots: Iterable[OrderSnapshot] = ()) -> None:
        """Initial load: replace everything"""
        self._orders = {snapshot.id: snapshot for snapshot in snapshots}
        self._partial = set()
