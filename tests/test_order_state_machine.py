"""
Order State Machine tests

Coverage Focus Areas:
- Edge table (valid and invalid targets, terminal states)
- Actor permissions per edge
- Escrow preconditions on cancel/complete
- Dispute restore rules
- Extension and expiry rules
"""

import pytest

from models import ActorType, OrderStatus
from utils.order_errors import InvalidTransition
from utils.order_state_machine import (
    EXPIRABLE_STATUSES, TERMINAL_STATUSES, EscrowFlags, OrderStateValidator,
    can_extend_order, get_expiry_outcome, get_extension_duration, get_status_timeout,
    get_timestamp_field, is_terminal_status, should_restore_liquidity, validate_transition,
)
from utils.order_status_normalizer import (
    expand_minimal_status, is_transient_status, normalize_action, normalize_status,
)

S = OrderStatus
USER = ActorType.USER.value
MERCHANT = ActorType.MERCHANT.value
SYSTEM = ActorType.SYSTEM.value
COMPLIANCE = ActorType.COMPLIANCE.value


class TestOrderStateValidator:
    """Edge table and actor checks"""

    def test_happy_path_edges(self):
        """pending -> accepted -> escrowed -> payment_sent -> completed are all edges"""
        assert OrderStateValidator.is_valid_transition(S.PENDING.value, S.ACCEPTED.value) is True
        assert OrderStateValidator.is_valid_transition(S.ACCEPTED.value, S.ESCROWED.value) is True
        assert OrderStateValidator.is_valid_transition(S.ESCROWED.value, S.PAYMENT_SENT.value) is True
        assert OrderStateValidator.is_valid_transition(S.PAYMENT_SENT.value, S.COMPLETED.value) is True

    def test_pending_cannot_jump_to_completed(self):
        """Skipping escrow and payment is rejected with the allowed targets listed"""
        check = OrderStateValidator.check_transition(S.PENDING.value, S.COMPLETED.value, USER)

        assert check.valid is False
        assert "is not allowed" in check.error
        assert "accepted" in check.error

        with pytest.raises(InvalidTransition) as exc_info:
            validate_transition(S.PENDING.value, S.COMPLETED.value, USER)
        assert exc_info.value.from_status == S.PENDING.value
        assert exc_info.value.to_status == S.COMPLETED.value
        assert S.ACCEPTED.value in exc_info.value.allowed

    def test_same_status_is_rejected(self):
        check = OrderStateValidator.check_transition(S.ACCEPTED.value, S.ACCEPTED.value, MERCHANT)
        assert check.valid is False
        assert check.error == "Order is already in 'accepted' status"

    def test_terminal_states_have_no_exits(self):
        """completed, cancelled and expired are final"""
        for status in TERMINAL_STATUSES:
            assert is_terminal_status(status) is True
            assert OrderStateValidator.get_valid_transitions(status) == set()
            check = OrderStateValidator.check_transition(status, S.DISPUTED.value, COMPLIANCE)
            assert check.valid is False
            assert "terminal" in check.error

    def test_unknown_status(self):
        check = OrderStateValidator.check_transition("teleported", S.ACCEPTED.value, USER)
        assert check.valid is False
        assert "Unknown status" in check.error

    def test_actor_permissions(self):
        """Only the system may expire; only merchants mark payment sent from accepted"""
        assert OrderStateValidator.check_transition(S.PENDING.value, S.EXPIRED.value, SYSTEM).valid is True
        assert OrderStateValidator.check_transition(S.PENDING.value, S.EXPIRED.value, USER).valid is False
        assert OrderStateValidator.check_transition(
            S.ACCEPTED.value, S.PAYMENT_SENT.value, MERCHANT
        ).valid is True

        check = OrderStateValidator.check_transition(S.ACCEPTED.value, S.PAYMENT_SENT.value, USER)
        assert check.valid is False
        assert check.error.startswith("Actor type 'user' is not allowed")

    def test_compliance_closes_disputes(self):
        assert OrderStateValidator.check_transition(S.DISPUTED.value, S.COMPLETED.value, COMPLIANCE).valid is True
        assert OrderStateValidator.check_transition(S.DISPUTED.value, S.CANCELLED.value, COMPLIANCE).valid is True
        assert OrderStateValidator.check_transition(S.DISPUTED.value, S.COMPLETED.value, USER).valid is False

    def test_transitions_for_actor_are_sorted(self):
        targets = OrderStateValidator.get_transitions_for_actor(S.PENDING.value, USER)
        assert targets == sorted(targets)
        assert S.EXPIRED.value not in targets
        assert S.ACCEPTED.value in targets


class TestEscrowPreconditions:
    """Locked funds block cancel until refunded and complete until released"""

    def test_cancel_blocked_while_locked(self):
        check = OrderStateValidator.check_transition(
            S.ESCROWED.value, S.CANCELLED.value, USER, EscrowFlags(locked=True)
        )
        assert check.valid is False
        assert check.error == "Cannot cancel from 'escrowed' while escrow is locked; refund required first"

    def test_cancel_allowed_after_refund(self):
        check = OrderStateValidator.check_transition(
            S.ESCROWED.value, S.CANCELLED.value, USER, EscrowFlags(locked=True, refunded=True)
        )
        assert check.valid is True

    def test_complete_requires_release(self):
        blocked = OrderStateValidator.check_transition(
            S.PAYMENT_SENT.value, S.COMPLETED.value, MERCHANT, EscrowFlags(locked=True)
        )
        released = OrderStateValidator.check_transition(
            S.PAYMENT_SENT.value, S.COMPLETED.value, MERCHANT, EscrowFlags(locked=True, released=True)
        )
        assert blocked.valid is False
        assert "release" in blocked.error
        assert released.valid is True

    def test_unfunded_cancel_is_fine(self):
        assert OrderStateValidator.check_transition(S.PENDING.value, S.CANCELLED.value, USER).valid is True


class TestDisputeRestore:
    """Compliance returns a disputed order to its pre-dispute status"""

    def test_compliance_restores_active_status(self):
        OrderStateValidator.validate_dispute_restore(S.ESCROWED.value, COMPLIANCE)

    def test_parties_cannot_restore(self):
        with pytest.raises(InvalidTransition):
            OrderStateValidator.validate_dispute_restore(S.ESCROWED.value, USER)

    def test_cannot_restore_to_terminal(self):
        with pytest.raises(InvalidTransition) as exc_info:
            OrderStateValidator.validate_dispute_restore(S.COMPLETED.value, COMPLIANCE)
        assert "Cannot restore" in str(exc_info.value)


class TestTimingRules:
    """Timeouts, timestamps, extensions, expiry outcomes"""

    def test_status_timeouts(self):
        assert get_status_timeout(S.PENDING.value).total_seconds() == 15 * 60
        assert get_status_timeout(S.DISPUTED.value).total_seconds() == 72 * 3600
        # Statuses without an explicit timeout fall back to the global 15 minutes
        assert get_status_timeout(S.RELEASING.value).total_seconds() == 15 * 60

    def test_timestamp_fields(self):
        assert get_timestamp_field(S.ACCEPTED.value) == "accepted_at"
        assert get_timestamp_field(S.COMPLETED.value) == "completed_at"
        assert get_timestamp_field(S.EXPIRED.value) is None

    def test_expirable_statuses(self):
        """Disputed, terminal and releasing orders never expire"""
        assert S.PENDING.value in EXPIRABLE_STATUSES
        assert S.PAYMENT_SENT.value in EXPIRABLE_STATUSES
        assert S.DISPUTED.value not in EXPIRABLE_STATUSES
        assert S.RELEASING.value not in EXPIRABLE_STATUSES
        assert S.COMPLETED.value not in EXPIRABLE_STATUSES

    def test_liquidity_restored_for_unfunded_orders(self):
        assert should_restore_liquidity(S.PENDING.value, S.EXPIRED.value) is True
        assert should_restore_liquidity(S.ACCEPTED.value, S.CANCELLED.value) is True
        assert should_restore_liquidity(S.ESCROWED.value, S.CANCELLED.value) is False

    def test_can_extend(self):
        assert can_extend_order(S.ACCEPTED.value, 0) == (True, None)

        allowed, reason = can_extend_order(S.ACCEPTED.value, 3, 3)
        assert allowed is False
        assert reason == "Maximum extensions (3) reached"

        allowed, reason = can_extend_order(S.DISPUTED.value, 0)
        assert allowed is False
        assert "not allowed" in reason

    def test_extension_durations(self):
        assert get_extension_duration(S.PENDING.value) == 15
        assert get_extension_duration(S.PAYMENT_SENT.value) == 120
        assert get_extension_duration(S.RELEASING.value) == 30

    def test_expiry_outcome(self):
        """Funded orders out of extensions escalate to a dispute"""
        assert get_expiry_outcome(S.ACCEPTED.value, 3, 3) == S.CANCELLED.value
        assert get_expiry_outcome(S.ESCROWED.value, 1, 3) == S.CANCELLED.value
        assert get_expiry_outcome(S.ESCROWED.value, 3, 3) == S.DISPUTED.value
        assert get_expiry_outcome(S.PAYMENT_SENT.value, 3, 3) == S.DISPUTED.value


class TestStatusNormalization:
    """12 full statuses collapse into the 8-status minimal view"""

    @pytest.mark.parametrize("status,minimal", [
        ("pending", "open"),
        ("escrow_pending", "accepted"),
        ("payment_pending", "escrowed"),
        ("payment_confirmed", "payment_sent"),
        ("releasing", "completed"),
        ("disputed", "disputed"),
    ])
    def test_normalize_status(self, status, minimal):
        assert normalize_status(status) == minimal

    def test_unknown_and_missing_pass_through(self):
        assert normalize_status("archived") == "archived"
        assert normalize_status(None) is None

    def test_expand_minimal_status(self):
        assert expand_minimal_status("payment_sent") == ["payment_sent", "payment_confirmed"]
        assert expand_minimal_status("open") == ["pending"]

    def test_normalize_action(self):
        assert normalize_action(" Mark_Paid ") == "payment_sent"
        assert normalize_action("confirm_and_release") == "completed"
        with pytest.raises(ValueError):
            normalize_action("teleport")

    def test_transient_statuses(self):
        assert is_transient_status("releasing") is True
        assert is_transient_status("escrowed") is False
