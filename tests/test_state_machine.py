"""Tests for the order state machine."""

from types import SimpleNamespace

import pytest

from marketplace_engine.services.state_machine import (
    InvalidTransitionError,
    OrderStateMachine,
    OrderStatus,
    OrderTrigger,
)


def make_order(status, payment_status="pending", is_debt=False):
    return SimpleNamespace(status=status, payment_status=payment_status, is_debt=is_debt)


class TestOrderStateMachine:
    """Test transition table lookups."""

    def test_listed_transitions(self):
        """Listed (state, trigger) pairs resolve to their targets."""
        assert OrderStateMachine.next_status("PENDING", "payment_completed") == "PROCESSING"
        assert OrderStateMachine.next_status("PROCESSING", "route_to_delivery") == "DELIVERY_PENDING"
        assert OrderStateMachine.next_status("DELIVERY_PENDING", "seller_marks_delivered") == "DELIVERY_COMPLETE"
        assert OrderStateMachine.next_status("COLLECTION_PENDING", "seller_marks_ready") == "READY_FOR_PICKUP"
        assert OrderStateMachine.next_status("SERVICE_PENDING", "seller_confirms_service") == "CONFIRMED"
        assert OrderStateMachine.next_status("DEBT_PENDING", "debt_settled") == "COMPLETED"

    def test_enum_members_accepted(self):
        """Enum members and their values look up the same entry."""
        assert OrderStateMachine.next_status(
            OrderStatus.CONFIRMED, OrderTrigger.BUYER_CONFIRMS_RECEIPT
        ) == "COMPLETED"

    def test_unlisted_transitions(self):
        """Unlisted pairs are not valid."""
        assert OrderStateMachine.can_fire("PENDING", "buyer_confirms_receipt") is False
        assert OrderStateMachine.can_fire("DELIVERY_PENDING", "seller_marks_ready") is False
        assert OrderStateMachine.can_fire("PROCESSING", "debt_settled") is False

    def test_terminal_states_have_no_triggers(self):
        """COMPLETED, CANCELLED and FAILED accept nothing."""
        for status in ("COMPLETED", "CANCELLED", "FAILED"):
            assert OrderStateMachine.is_terminal(status) is True
            assert OrderStateMachine.get_triggers(status) == []

    def test_every_non_terminal_state_can_cancel(self):
        """Cancellation is listed from every non-terminal state."""
        for status in OrderStatus:
            if OrderStateMachine.is_terminal(status):
                continue
            assert OrderStateMachine.next_status(status, "cancellation_requested") == "CANCELLED"


class TestResolve:
    """Test validation against an order, including the completion guard."""

    def test_resolve_raises_for_unlisted_pair(self):
        """Unlisted pairs raise InvalidTransitionError."""
        with pytest.raises(InvalidTransitionError) as exc_info:
            OrderStateMachine.resolve(make_order("PENDING"), "seller_marks_delivered")

        assert exc_info.value.from_status == "PENDING"
        assert exc_info.value.trigger == "seller_marks_delivered"

    def test_unknown_trigger_is_invalid(self):
        """A trigger outside the vocabulary is an invalid transition."""
        with pytest.raises(InvalidTransitionError):
            OrderStateMachine.resolve(make_order("PENDING"), "teleport")

    def test_completion_requires_completed_payment(self):
        """Entering COMPLETED needs payment_status completed."""
        order = make_order("DELIVERY_COMPLETE", payment_status="processing")
        with pytest.raises(InvalidTransitionError) as exc_info:
            OrderStateMachine.resolve(order, "buyer_confirms_receipt")
        assert "payment_status" in exc_info.value.reason

    def test_admin_force_complete_is_guarded(self):
        """Admin force-complete still needs a completed payment."""
        with pytest.raises(InvalidTransitionError):
            OrderStateMachine.resolve(make_order("PENDING"), "admin_force_complete")

        paid = make_order("DELIVERY_PENDING", payment_status="completed")
        assert OrderStateMachine.resolve(paid, "admin_force_complete") == "COMPLETED"

    def test_debt_order_completes_without_payment(self):
        """Debt orders complete through settlement with no payment event."""
        order = make_order("DEBT_PENDING", is_debt=True)
        assert OrderStateMachine.resolve(order, "debt_settled") == "COMPLETED"
