"""Order state machine with transition validation."""

from __future__ import annotations

from enum import Enum
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from marketplace_engine.models import Order


class OrderStatus(str, Enum):
    """Order status values."""

    PENDING = "PENDING"
    PROCESSING = "PROCESSING"
    DELIVERY_PENDING = "DELIVERY_PENDING"
    DELIVERY_COMPLETE = "DELIVERY_COMPLETE"
    SERVICE_PENDING = "SERVICE_PENDING"
    COLLECTION_PENDING = "COLLECTION_PENDING"
    READY_FOR_PICKUP = "READY_FOR_PICKUP"
    CONFIRMED = "CONFIRMED"
    CLIENT_PAYMENT_PENDING = "CLIENT_PAYMENT_PENDING"
    DEBT_PENDING = "DEBT_PENDING"
    COMPLETED = "COMPLETED"
    CANCELLED = "CANCELLED"
    FAILED = "FAILED"


class OrderTrigger(str, Enum):
    """Events that move an order."""

    PAYMENT_COMPLETED = "payment_completed"
    PAYMENT_FAILED = "payment_failed"
    ROUTE_TO_DELIVERY = "route_to_delivery"
    ROUTE_TO_COLLECTION = "route_to_collection"
    ROUTE_TO_SERVICE = "route_to_service"
    DIGITAL_FULFILLED = "digital_fulfilled"
    SELLER_MARKS_READY = "seller_marks_ready"
    SELLER_MARKS_DELIVERED = "seller_marks_delivered"
    SELLER_CONFIRMS_SERVICE = "seller_confirms_service"
    BUYER_CONFIRMS_RECEIPT = "buyer_confirms_receipt"
    ADMIN_FORCE_COMPLETE = "admin_force_complete"
    CANCELLATION_REQUESTED = "cancellation_requested"
    DEBT_SETTLED = "debt_settled"
    # Fired by the deadline sweeps
    SELLER_DROPOFF_EXPIRED = "seller_dropoff_expired"
    BUYER_PICKUP_EXPIRED = "buyer_pickup_expired"
    SERVICE_RELEASE_DUE = "service_release_due"


class InvalidTransitionError(Exception):
    """Raised when a trigger is not valid for the order's current state."""

    def __init__(self, from_status: str, trigger: str, reason: str | None = None):
        self.from_status = from_status
        self.trigger = trigger
        self.reason = reason
        msg = f"Invalid trigger '{trigger}' for order in '{from_status}'"
        if reason:
            msg += f": {reason}"
        super().__init__(msg)


S = OrderStatus
T = OrderTrigger


def _value(member: str) -> str:
    return member.value if isinstance(member, Enum) else member

TERMINAL_STATUSES = frozenset({S.COMPLETED.value, S.CANCELLED.value, S.FAILED.value})

NON_TERMINAL_STATUSES = tuple(s for s in S if s.value not in TERMINAL_STATUSES)

# Fulfilment type -> trigger that routes a freshly paid order
ROUTING_TRIGGERS: dict[str, OrderTrigger] = {
    "delivery": T.ROUTE_TO_DELIVERY,
    "collection": T.ROUTE_TO_COLLECTION,
    "service": T.ROUTE_TO_SERVICE,
    "digital": T.DIGITAL_FULFILLED,
}


def _build_transitions() -> dict[tuple[str, str], str]:
    table: dict[tuple[OrderStatus, OrderTrigger], OrderStatus] = {
        (S.PENDING, T.PAYMENT_COMPLETED): S.PROCESSING,
        (S.PENDING, T.PAYMENT_FAILED): S.FAILED,
        (S.CLIENT_PAYMENT_PENDING, T.PAYMENT_COMPLETED): S.PROCESSING,
        (S.CLIENT_PAYMENT_PENDING, T.PAYMENT_FAILED): S.FAILED,
        (S.PROCESSING, T.ROUTE_TO_DELIVERY): S.DELIVERY_PENDING,
        (S.PROCESSING, T.ROUTE_TO_COLLECTION): S.COLLECTION_PENDING,
        (S.PROCESSING, T.ROUTE_TO_SERVICE): S.SERVICE_PENDING,
        (S.PROCESSING, T.DIGITAL_FULFILLED): S.COMPLETED,
        (S.DELIVERY_PENDING, T.SELLER_MARKS_DELIVERED): S.DELIVERY_COMPLETE,
        (S.DELIVERY_COMPLETE, T.BUYER_CONFIRMS_RECEIPT): S.COMPLETED,
        (S.COLLECTION_PENDING, T.SELLER_MARKS_READY): S.READY_FOR_PICKUP,
        (S.COLLECTION_PENDING, T.BUYER_CONFIRMS_RECEIPT): S.COMPLETED,
        (S.READY_FOR_PICKUP, T.BUYER_CONFIRMS_RECEIPT): S.COMPLETED,
        (S.SERVICE_PENDING, T.SELLER_CONFIRMS_SERVICE): S.CONFIRMED,
        (S.CONFIRMED, T.BUYER_CONFIRMS_RECEIPT): S.COMPLETED,
        (S.DEBT_PENDING, T.DEBT_SETTLED): S.COMPLETED,
        (S.DELIVERY_PENDING, T.SELLER_DROPOFF_EXPIRED): S.CANCELLED,
        (S.DELIVERY_COMPLETE, T.BUYER_PICKUP_EXPIRED): S.CANCELLED,
        (S.SERVICE_PENDING, T.SERVICE_RELEASE_DUE): S.COMPLETED,
        (S.CONFIRMED, T.SERVICE_RELEASE_DUE): S.COMPLETED,
    }
    # Any non-terminal order can be cancelled or force-completed by an admin;
    # the payment guard still applies to the latter
    for status in NON_TERMINAL_STATUSES:
        table[(status, T.CANCELLATION_REQUESTED)] = S.CANCELLED
        table[(status, T.ADMIN_FORCE_COMPLETE)] = S.COMPLETED
    return {(k[0].value, k[1].value): v.value for k, v in table.items()}


class OrderStateMachine:
    """State machine for order status transitions.

    Every move is a lookup of (current status, trigger) in TRANSITIONS;
    a missing pair is an invalid transition. Entering COMPLETED is further
    guarded: the order's payment must be completed unless it is a debt
    order, which completes through settlement instead.
    """

    TRANSITIONS: dict[tuple[str, str], str] = _build_transitions()

    @classmethod
    def next_status(cls, from_status: str, trigger: str) -> str | None:
        """Look up the target status, or None if the pair is not listed."""
        return cls.TRANSITIONS.get((_value(from_status), _value(trigger)))

    @classmethod
    def can_fire(cls, from_status: str, trigger: str) -> bool:
        """Check if a trigger is listed for a status."""
        return cls.next_status(from_status, trigger) is not None

    @classmethod
    def is_terminal(cls, status: str) -> bool:
        """Check whether a status is terminal."""
        return _value(status) in TERMINAL_STATUSES

    @classmethod
    def get_triggers(cls, status: str) -> list[str]:
        """Triggers listed for a status."""
        return sorted(t for (s, t) in cls.TRANSITIONS if s == _value(status))

    @classmethod
    def resolve(cls, order: Order, trigger: str) -> str:
        """Validate a trigger against an order and return the target status.

        Raises:
            InvalidTransitionError: Pair not listed, or the completion guard fails
        """
        try:
            trigger = OrderTrigger(_value(trigger)).value
        except ValueError:
            raise InvalidTransitionError(order.status, str(trigger), "unknown trigger")
        target = cls.next_status(order.status, trigger)
        if target is None:
            raise InvalidTransitionError(order.status, trigger)

        if target == S.COMPLETED.value:
            if order.is_debt:
                if trigger not in (T.DEBT_SETTLED.value, T.ADMIN_FORCE_COMPLETE.value):
                    raise InvalidTransitionError(
                        order.status, trigger, "debt orders complete through settlement"
                    )
            elif order.payment_status != "completed":
                raise InvalidTransitionError(
                    order.status,
                    trigger,
                    f"payment_status is '{order.payment_status}', not 'completed'",
                )
        return target
