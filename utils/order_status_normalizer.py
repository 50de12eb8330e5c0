"""
Order status normalization between the full 12-status lifecycle and the
8-status minimal view served to low-bandwidth consumers.
"""

import logging
from typing import Dict, List, Optional

from models import OrderStatus, MinimalOrderStatus

logger = logging.getLogger(__name__)

_S = OrderStatus
_M = MinimalOrderStatus

MINIMAL_STATUS_MAP: Dict[str, str] = {
    _S.PENDING.value: _M.OPEN.value,
    _S.ACCEPTED.value: _M.ACCEPTED.value,
    _S.ESCROW_PENDING.value: _M.ACCEPTED.value,
    _S.ESCROWED.value: _M.ESCROWED.value,
    _S.PAYMENT_PENDING.value: _M.ESCROWED.value,
    _S.PAYMENT_SENT.value: _M.PAYMENT_SENT.value,
    _S.PAYMENT_CONFIRMED.value: _M.PAYMENT_SENT.value,
    _S.RELEASING.value: _M.COMPLETED.value,
    _S.COMPLETED.value: _M.COMPLETED.value,
    _S.CANCELLED.value: _M.CANCELLED.value,
    _S.DISPUTED.value: _M.DISPUTED.value,
    _S.EXPIRED.value: _M.EXPIRED.value,
}

TRANSIENT_STATUSES = frozenset({
    _S.ESCROW_PENDING.value,
    _S.PAYMENT_PENDING.value,
    _S.PAYMENT_CONFIRMED.value,
    _S.RELEASING.value,
})

# User-facing action -> target status
ACTION_TARGETS: Dict[str, str] = {
    "accept": _S.ACCEPTED.value,
    "lock_escrow": _S.ESCROWED.value,
    "mark_paid": _S.PAYMENT_SENT.value,
    "confirm_and_release": _S.COMPLETED.value,
    "cancel": _S.CANCELLED.value,
    "dispute": _S.DISPUTED.value,
}


def normalize_status(status: Optional[str]) -> Optional[str]:
    """Minimal status for a full status; unknown values pass through unchanged"""
    if status is None:
        return None
    minimal = MINIMAL_STATUS_MAP.get(status)
    if minimal is None:
        logger.warning(f"⚠️ Unknown order status for normalization: {status}")
        return status
    return minimal


def expand_minimal_status(minimal_status: str) -> List[str]:
    """All full statuses that collapse into a minimal status"""
    return [full for full, minimal in MINIMAL_STATUS_MAP.items() if minimal == minimal_status]


def normalize_action(action: str) -> str:
    """Map a user-facing action name to its target status"""
    key = action.strip().lower()
    if key not in ACTION_TARGETS:
        raise ValueError(f"Unknown order action: {action}")
    return ACTION_TARGETS[key]


def is_transient_status(status: str) -> bool:
    """Intermediate statuses a client should not normally render on their own"""
    return status in TRANSIENT_STATUSES
