"""
Order sync error taxonomy.

InvalidTransition and OptimisticLockingError are raised by the authoritative
store. StaleUpdate is produced by the version gate and only ever logged.
TransportUnavailable drives reconnect backoff. SyncIncomplete is surfaced to
consumers as a non-fatal notice. AuctionStepFailure is recorded per pool entry
and never aborts a worker batch.
"""

from typing import Iterable, Optional


class OrderSyncError(Exception):
    """Base class for order lifecycle and sync errors"""
    pass


class InvalidTransition(OrderSyncError):
    """Requested status change violates the allowed-edge table"""

    def __init__(self, message: str, from_status: Optional[str] = None,
                 to_status: Optional[str] = None, actor: Optional[str] = None,
                 allowed: Optional[Iterable[str]] = None):
        super().__init__(message)
        self.from_status = from_status
        self.to_status = to_status
        self.actor = actor
        self.allowed = sorted(allowed) if allowed else []


class OptimisticLockingError(OrderSyncError):
    """Order changed underneath a versioned update"""

    def __init__(self, order_id: str, expected_version: int, actual_version: Optional[int] = None):
        detail = f"expected v{expected_version}"
        if actual_version is not None:
            detail += f", found v{actual_version}"
        super().__init__(f"Order {order_id} was modified concurrently ({detail})")
        self.order_id = order_id
        self.expected_version = expected_version
        self.actual_version = actual_version


class OrderNotFound(OrderSyncError):
    def __init__(self, order_id: str):
        super().__init__(f"Order {order_id} not found")
        self.order_id = order_id


class StaleUpdate(OrderSyncError):
    """Update rejected by the version gate (replay, duplicate or out of order)"""

    def __init__(self, order_id: str, reason: str):
        super().__init__(f"Stale update for order {order_id}: {reason}")
        self.order_id = order_id
        self.reason = reason


class TransportUnavailable(OrderSyncError):
    """Channel or socket connection failure"""

    def __init__(self, message: str, attempts: int = 0, exhausted: bool = False):
        super().__init__(message)
        self.attempts = attempts
        self.exhausted = exhausted


class SyncIncomplete(OrderSyncError):
    """An event lacked data and the refetch that should have filled it failed"""

    def __init__(self, message: str, order_ids: Optional[Iterable[str]] = None):
        super().__init__(message)
        self.order_ids = list(order_ids or [])


class AuctionStepFailure(OrderSyncError):
    """One pool entry failed to bump"""

    def __init__(self, order_id: str, message: str):
        super().__init__(f"Auto-bump failed for order {order_id}: {message}")
        self.order_id = order_id


class MutationFailed(OrderSyncError):
    """A self-initiated mutation against the REST collaborator failed"""

    def __init__(self, action: str, order_id: Optional[str], message: str, status_code: Optional[int] = None):
        super().__init__(f"{action} failed for order {order_id}: {message}")
        self.action = action
        self.order_id = order_id
        self.status_code = status_code


class ExtensionNotAllowed(OrderSyncError):
    """Extension request or response rejected by the extension rules"""

    def __init__(self, order_id: str, reason: str):
        super().__init__(reason)
        self.order_id = order_id
        self.reason = reason


class EscrowServiceError(OrderSyncError):
    """External escrow service failed or returned no transaction hash"""
    pass
