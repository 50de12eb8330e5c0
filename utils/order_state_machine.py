#!/usr/bin/env python3
"""
Order State Machine
Canonical order states, legal transitions, actor permissions and timeout/extension rules.

The authoritative store validates every mutation here before writing; clients use the
same tables to decide which actions to offer and to mirror state.
"""

import logging
from dataclasses import dataclass
from datetime import timedelta
from typing import Dict, List, Optional, Set, Tuple

from models import OrderStatus, ActorType
from utils.order_errors import InvalidTransition

logger = logging.getLogger(__name__)

_S = OrderStatus
_USER = ActorType.USER.value
_MERCHANT = ActorType.MERCHANT.value
_SYSTEM = ActorType.SYSTEM.value
_COMPLIANCE = ActorType.COMPLIANCE.value

_PARTIES = {_USER, _MERCHANT}
_PARTIES_AND_SYSTEM = {_USER, _MERCHANT, _SYSTEM}
_DISPUTE_RAISERS = {_USER, _MERCHANT, _COMPLIANCE}

TERMINAL_STATUSES: Set[str] = {
    _S.COMPLETED.value,
    _S.CANCELLED.value,
    _S.EXPIRED.value,
}

# Timeouts in minutes
GLOBAL_ORDER_TIMEOUT_MINUTES = 15
STATUS_TIMEOUTS: Dict[str, int] = {
    _S.PENDING.value: 15,
    _S.ACCEPTED.value: 15,
    _S.ESCROWED.value: 15,
    _S.PAYMENT_SENT.value: 15,
    _S.DISPUTED.value: 72 * 60,
}

DEFAULT_MAX_EXTENSIONS = 3
DEFAULT_EXTENSION_MINUTES = 30
EXTENSION_DURATIONS: Dict[str, int] = {
    _S.PENDING.value: 15,
    _S.ACCEPTED.value: 30,
    _S.ESCROWED.value: 60,
    _S.PAYMENT_SENT.value: 120,
}
EXTENDABLE_STATUSES: Set[str] = set(EXTENSION_DURATIONS)

# Once escrow is funded, running out of extensions escalates to a dispute instead of cancelling
_ESCALATE_ON_EXPIRY: Set[str] = {
    _S.ESCROWED.value,
    _S.PAYMENT_SENT.value,
    _S.PAYMENT_CONFIRMED.value,
}

TIMESTAMP_FIELDS: Dict[str, str] = {
    _S.ACCEPTED.value: "accepted_at",
    _S.ESCROWED.value: "escrowed_at",
    _S.PAYMENT_SENT.value: "payment_sent_at",
    _S.PAYMENT_CONFIRMED.value: "payment_confirmed_at",
    _S.COMPLETED.value: "completed_at",
    _S.CANCELLED.value: "cancelled_at",
}


@dataclass(frozen=True)
class EscrowFlags:
    """What the external escrow service has reported for an order"""
    locked: bool = False
    released: bool = False
    refunded: bool = False


@dataclass(frozen=True)
class TransitionCheck:
    valid: bool
    error: Optional[str] = None


class OrderStateValidator:
    """Validates order state transitions and actor permissions"""

    # from -> {to -> actors allowed to request it}
    ALLOWED_TRANSITIONS: Dict[str, Dict[str, Set[str]]] = {
        _S.PENDING.value: {
            _S.ACCEPTED.value: set(_PARTIES),
            _S.ESCROWED.value: set(_PARTIES_AND_SYSTEM),
            _S.CANCELLED.value: set(_PARTIES_AND_SYSTEM),
            _S.DISPUTED.value: set(_DISPUTE_RAISERS),
            _S.EXPIRED.value: {_SYSTEM},
        },
        _S.ACCEPTED.value: {
            _S.ESCROW_PENDING.value: {_MERCHANT, _SYSTEM},
            _S.ESCROWED.value: set(_PARTIES_AND_SYSTEM),
            _S.PAYMENT_PENDING.value: {_MERCHANT},
            _S.PAYMENT_SENT.value: {_MERCHANT},
            _S.CANCELLED.value: set(_PARTIES_AND_SYSTEM),
            _S.DISPUTED.value: set(_DISPUTE_RAISERS),
            _S.EXPIRED.value: {_SYSTEM},
        },
        _S.ESCROW_PENDING.value: {
            _S.ESCROWED.value: {_SYSTEM},
            _S.CANCELLED.value: {_SYSTEM},
            _S.DISPUTED.value: set(_DISPUTE_RAISERS),
            _S.EXPIRED.value: {_SYSTEM},
        },
        _S.ESCROWED.value: {
            _S.ACCEPTED.value: {_MERCHANT},
            _S.PAYMENT_PENDING.value: set(_PARTIES_AND_SYSTEM),
            _S.PAYMENT_SENT.value: set(_PARTIES),
            _S.COMPLETED.value: set(_PARTIES_AND_SYSTEM),
            _S.CANCELLED.value: set(_PARTIES_AND_SYSTEM),
            _S.DISPUTED.value: set(_DISPUTE_RAISERS),
            _S.EXPIRED.value: {_SYSTEM},
        },
        _S.PAYMENT_PENDING.value: {
            _S.PAYMENT_SENT.value: set(_PARTIES),
            _S.CANCELLED.value: set(_PARTIES_AND_SYSTEM),
            _S.DISPUTED.value: set(_DISPUTE_RAISERS),
            _S.EXPIRED.value: {_SYSTEM},
        },
        _S.PAYMENT_SENT.value: {
            _S.PAYMENT_CONFIRMED.value: set(_PARTIES),
            _S.COMPLETED.value: set(_PARTIES_AND_SYSTEM),
            _S.DISPUTED.value: set(_DISPUTE_RAISERS),
            _S.EXPIRED.value: {_SYSTEM},
        },
        _S.PAYMENT_CONFIRMED.value: {
            _S.RELEASING.value: {_SYSTEM},
            _S.COMPLETED.value: set(_PARTIES_AND_SYSTEM),
            _S.DISPUTED.value: set(_DISPUTE_RAISERS),
        },
        _S.RELEASING.value: {
            _S.COMPLETED.value: {_SYSTEM},
            _S.DISPUTED.value: set(_DISPUTE_RAISERS),
        },
        # Restoring the pre-dispute status is checked separately
        _S.DISPUTED.value: {
            _S.COMPLETED.value: {_SYSTEM, _COMPLIANCE},
            _S.CANCELLED.value: {_SYSTEM, _COMPLIANCE},
        },
        # Terminal states (no transitions allowed)
        _S.COMPLETED.value: {},
        _S.CANCELLED.value: {},
        _S.EXPIRED.value: {},
    }

    @classmethod
    def is_valid_transition(cls, current_status: str, new_status: str) -> bool:
        """Check the edge table only (no actor or escrow checks)"""
        return new_status in cls.ALLOWED_TRANSITIONS.get(current_status, {})

    @classmethod
    def get_valid_transitions(cls, current_status: str) -> Set[str]:
        """Get all valid next states for current status"""
        return set(cls.ALLOWED_TRANSITIONS.get(current_status, {}))

    @classmethod
    def get_allowed_actors(cls, current_status: str, new_status: str) -> Set[str]:
        return set(cls.ALLOWED_TRANSITIONS.get(current_status, {}).get(new_status, set()))

    @classmethod
    def get_transitions_for_actor(cls, current_status: str, actor: str) -> List[str]:
        """Targets this actor may request from current status (sorted for stable display)"""
        edges = cls.ALLOWED_TRANSITIONS.get(current_status, {})
        return sorted(target for target, actors in edges.items() if actor in actors)

    @classmethod
    def is_terminal_state(cls, status: str) -> bool:
        """Check if status is terminal (no further transitions)"""
        return status in TERMINAL_STATUSES

    @classmethod
    def check_transition(
        cls,
        current_status: str,
        new_status: str,
        actor: str,
        escrow: Optional[EscrowFlags] = None,
    ) -> TransitionCheck:
        """Full validation: edge table, actor permission and escrow preconditions"""
        escrow = escrow or EscrowFlags()

        if current_status == new_status:
            return TransitionCheck(False, f"Order is already in '{current_status}' status")

        if cls.is_terminal_state(current_status):
            return TransitionCheck(False, f"Cannot transition from terminal status '{current_status}'")

        edges = cls.ALLOWED_TRANSITIONS.get(current_status)
        if edges is None:
            return TransitionCheck(False, f"Unknown status '{current_status}'")

        if new_status not in edges:
            allowed = ", ".join(sorted(edges)) or "none"
            return TransitionCheck(
                False,
                f"Transition from '{current_status}' to '{new_status}' is not allowed. "
                f"Allowed targets: {allowed}"
            )

        if actor not in edges[new_status]:
            return TransitionCheck(
                False,
                f"Actor type '{actor}' is not allowed to transition from "
                f"'{current_status}' to '{new_status}'"
            )

        if new_status == _S.CANCELLED.value and escrow.locked and not escrow.refunded:
            return TransitionCheck(
                False,
                f"Cannot cancel from '{current_status}' while escrow is locked; refund required first"
            )

        if new_status == _S.COMPLETED.value and escrow.locked and not escrow.released:
            return TransitionCheck(
                False,
                f"Cannot complete from '{current_status}' before the escrow release is confirmed"
            )

        return TransitionCheck(True)

    @classmethod
    def validate_transition(
        cls,
        current_status: str,
        new_status: str,
        actor: str,
        escrow: Optional[EscrowFlags] = None,
    ) -> None:
        """Raise InvalidTransition unless the transition is legal"""
        result = cls.check_transition(current_status, new_status, actor, escrow)
        if not result.valid:
            logger.warning(f"🚫 INVALID_TRANSITION: {current_status} -> {new_status} by {actor}: {result.error}")
            raise InvalidTransition(
                result.error,
                from_status=current_status,
                to_status=new_status,
                actor=actor,
                allowed=cls.get_valid_transitions(current_status),
            )

    @classmethod
    def validate_dispute_restore(cls, previous_status: str, actor: str) -> None:
        """Compliance may return a disputed order to the status it was in before the dispute"""
        if actor != _COMPLIANCE:
            raise InvalidTransition(
                f"Actor type '{actor}' is not allowed to restore a disputed order",
                from_status=_S.DISPUTED.value, to_status=previous_status, actor=actor,
            )
        if previous_status in TERMINAL_STATUSES or previous_status == _S.DISPUTED.value:
            raise InvalidTransition(
                f"Cannot restore disputed order to '{previous_status}'",
                from_status=_S.DISPUTED.value, to_status=previous_status, actor=actor,
            )


# ============================================================================
# Timing and extension rules
# ============================================================================

EXPIRABLE_STATUSES: Set[str] = {
    status for status, edges in OrderStateValidator.ALLOWED_TRANSITIONS.items()
    if _S.EXPIRED.value in edges
}


def get_status_timeout(status: str) -> timedelta:
    return timedelta(minutes=STATUS_TIMEOUTS.get(status, GLOBAL_ORDER_TIMEOUT_MINUTES))


def get_timestamp_field(status: str) -> Optional[str]:
    """Order column stamped when entering this status"""
    return TIMESTAMP_FIELDS.get(status)


def should_restore_liquidity(from_status: str, to_status: str) -> bool:
    """Merchant liquidity reserved for an unfunded order returns to the pool on cancel/expiry"""
    return (
        from_status in (_S.PENDING.value, _S.ACCEPTED.value, _S.ESCROW_PENDING.value)
        and to_status in (_S.CANCELLED.value, _S.EXPIRED.value)
    )


def can_extend_order(
    status: str, extension_count: int, max_extensions: int = DEFAULT_MAX_EXTENSIONS
) -> Tuple[bool, Optional[str]]:
    """Whether an extension may be requested, with the refusal reason"""
    if status not in EXTENDABLE_STATUSES:
        return False, f"Extensions not allowed in '{status}' status"
    if extension_count >= max_extensions:
        return False, f"Maximum extensions ({max_extensions}) reached"
    return True, None


def get_extension_duration(status: str) -> int:
    """Extension length in minutes for the given status"""
    return EXTENSION_DURATIONS.get(status, DEFAULT_EXTENSION_MINUTES)


def get_expiry_outcome(
    status: str, extension_count: int, max_extensions: int = DEFAULT_MAX_EXTENSIONS
) -> str:
    """Status an order lands in when its timer runs out or an extension is declined"""
    if extension_count >= max_extensions and status in _ESCALATE_ON_EXPIRY:
        return _S.DISPUTED.value
    return _S.CANCELLED.value


# Convenience functions for external use
def validate_transition(current_status: str, new_status: str, actor: str,
                        escrow: Optional[EscrowFlags] = None) -> None:
    OrderStateValidator.validate_transition(current_status, new_status, actor, escrow)


def is_terminal_status(status: str) -> bool:
    return OrderStateValidator.is_terminal_state(status)


__all__ = [
    "OrderStateValidator",
    "EscrowFlags",
    "TransitionCheck",
    "TERMINAL_STATUSES",
    "STATUS_TIMEOUTS",
    "EXTENSION_DURATIONS",
    "EXTENDABLE_STATUSES",
    "EXPIRABLE_STATUSES",
    "get_status_timeout",
    "get_timestamp_field",
    "should_restore_liquidity",
    "can_extend_order",
    "get_extension_duration",
    "get_expiry_outcome",
    "validate_transition",
    "is_terminal_status",
]
