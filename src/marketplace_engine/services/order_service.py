"""Order service - creation and state-machine driven transitions.

Every status change goes through `fire`, which writes the history row,
hands completed orders to the dispatcher and compensates cancelled ones,
all inside the caller's transaction.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from decimal import Decimal
from typing import Iterable
from uuid import UUID, uuid4

from sqlalchemy import select
from sqlalchemy.orm import Session

from marketplace_engine.config import EngineConfig
from marketplace_engine.errors import NotFoundError, ValidationError
from marketplace_engine.models import (
    AuditLog,
    Buyer,
    Order,
    OrderItem,
    OrderStatusHistory,
    Seller,
    utc_now,
)
from marketplace_engine.services.balance_ledger import BalanceLedger
from marketplace_engine.services.dispatcher import DispatchResult, SideEffectDispatcher
from marketplace_engine.services.fees import calculate_order_fees, round_money
from marketplace_engine.services.state_machine import (
    ROUTING_TRIGGERS,
    InvalidTransitionError,
    OrderStateMachine,
    OrderStatus,
    OrderTrigger,
)

logger = logging.getLogger(__name__)

AWAITING_PAYMENT = (
    OrderStatus.PENDING.value,
    OrderStatus.CLIENT_PAYMENT_PENDING.value,
)


@dataclass(frozen=True)
class OrderItemInput:
    """Line item as submitted at checkout."""

    name: str
    price: Decimal
    quantity: int
    product_id: UUID | None = None
    product_type: str = "physical"


@dataclass(frozen=True)
class TransitionResult:
    """Result of firing a trigger on an order."""

    order_id: UUID
    from_status: str
    to_status: str
    trigger: str
    dispatch: DispatchResult | None = None


def generate_order_number() -> str:
    """Order numbers look like ORD-YYYYMMDD-XXXXXX."""
    return f"ORD-{utc_now():%Y%m%d}-{uuid4().hex[:6].upper()}"


def determine_fulfilment(product_types: Iterable[str], seller_has_shop: bool) -> str:
    """Decide how a paid order is fulfilled from what it contains."""
    types = set(product_types)
    if "physical" in types:
        return "collection" if seller_has_shop else "delivery"
    if "service" in types:
        return "service"
    return "digital"


class OrderService:
    """Service for creating orders and moving them through their lifecycle."""

    def __init__(
        self,
        db: Session,
        ledger: BalanceLedger | None = None,
        dispatcher: SideEffectDispatcher | None = None,
        config: EngineConfig | None = None,
    ):
        self.db = db
        self.config = config or EngineConfig()
        self.ledger = ledger or BalanceLedger(db)
        self.dispatcher = dispatcher or SideEffectDispatcher(db, self.ledger, self.config)

    def create_order(
        self,
        *,
        seller_id: UUID,
        items: list[OrderItemInput],
        buyer_id: UUID | None = None,
        client_contact: str | None = None,
        is_debt: bool = False,
        is_seller_initiated: bool = False,
        currency: str = "KES",
        booking_date: datetime | None = None,
        actor_id: str | None = None,
        actor_type: str = "buyer",
    ) -> Order:
        """Create an order with its item snapshots and first history row.

        Raises:
            ValidationError: No items, bad prices or quantities, or a
                seller-initiated order without a client contact
            NotFoundError: Seller does not exist
        """
        if not items:
            raise ValidationError("Order must contain at least one item", field="items")
        for item in items:
            if Decimal(item.price) <= 0:
                raise ValidationError(f"Item '{item.name}' has a non-positive price", field="price")
            if int(item.quantity) <= 0:
                raise ValidationError(
                    f"Item '{item.name}' has a non-positive quantity", field="quantity"
                )
            if item.product_type not in ("physical", "digital", "service"):
                raise ValidationError(
                    f"Unknown product type '{item.product_type}'", field="product_type"
                )
        if is_seller_initiated and not client_contact:
            raise ValidationError(
                "Seller-initiated orders need a client contact", field="client_contact"
            )

        seller = self.db.get(Seller, seller_id)
        if seller is None:
            raise NotFoundError("seller", seller_id)

        subtotals = [round_money(Decimal(i.price) * i.quantity) for i in items]
        fees = calculate_order_fees(subtotals, self.config.platform_commission_rate)

        if is_debt:
            initial = OrderStatus.DEBT_PENDING.value
        elif is_seller_initiated:
            initial = OrderStatus.CLIENT_PAYMENT_PENDING.value
        else:
            initial = OrderStatus.PENDING.value

        order = Order(
            order_number=generate_order_number(),
            buyer_id=buyer_id,
            seller_id=seller_id,
            client_contact=client_contact,
            total_amount=fees.total,
            platform_fee_amount=fees.platform_fee,
            seller_payout_amount=fees.seller_payout,
            currency=currency,
            status=initial,
            payment_status="pending",
            fulfilment_type=determine_fulfilment(
                (i.product_type for i in items), seller.has_shop
            ),
            is_debt=is_debt,
            is_seller_initiated=is_seller_initiated,
            booking_date=booking_date,
        )
        order.items = [
            OrderItem(
                product_id=item.product_id,
                name=item.name,
                product_type=item.product_type,
                price=Decimal(item.price),
                quantity=item.quantity,
                subtotal=subtotal,
            )
            for item, subtotal in zip(items, subtotals)
        ]
        self.db.add(order)
        self.db.flush()

        self._append_history(
            order,
            previous_status=None,
            trigger=None,
            note="Order created",
            actor_id=actor_id,
            actor_type=actor_type,
        )
        self.db.flush()
        return order

    def lock_order(self, order_id: UUID) -> Order:
        """Lock and return an order row."""
        order = self.db.scalars(
            select(Order)
            .where(Order.order_id == order_id)
            .with_for_update()
            .execution_options(populate_existing=True)
        ).first()
        if order is None:
            raise NotFoundError("order", order_id)
        return order

    def fire(
        self,
        order: Order | UUID,
        trigger: OrderTrigger | str,
        *,
        actor_id: str | None = None,
        actor_type: str = "system",
        note: str | None = None,
    ) -> TransitionResult:
        """Apply a trigger to an order.

        A rejected trigger leaves the order untouched, adds a
        `transition_rejected` audit row to the session and re-raises.
        Commit the session to keep that row.

        Raises:
            InvalidTransitionError: Trigger not valid for the current state
            ArtifactCreationFailure: Completion could not create the payout;
                the caller must roll back
        """
        if not isinstance(order, Order):
            order = self.lock_order(order)
        trigger_value = trigger.value if isinstance(trigger, OrderTrigger) else str(trigger)

        try:
            target = OrderStateMachine.resolve(order, trigger_value)
        except InvalidTransitionError as e:
            self._record_rejection(order, e, actor_id)
            raise

        from_status = order.status
        now = utc_now()
        order.status = target
        if target == OrderStatus.COMPLETED.value:
            order.completed_at = now
        elif target == OrderStatus.CANCELLED.value:
            order.cancelled_at = now
        elif target == OrderStatus.DELIVERY_PENDING.value:
            order.seller_dropoff_deadline = now + timedelta(hours=self.config.seller_dropoff_hours)
        elif target == OrderStatus.DELIVERY_COMPLETE.value:
            order.buyer_pickup_deadline = now + timedelta(hours=self.config.buyer_pickup_hours)

        self._append_history(
            order,
            previous_status=from_status,
            trigger=trigger_value,
            note=note,
            actor_id=actor_id,
            actor_type=actor_type,
        )

        dispatch = None
        if target == OrderStatus.COMPLETED.value:
            dispatch = self.dispatcher.handle_order_completed(order, from_status)
        elif target == OrderStatus.CANCELLED.value:
            self._compensate_cancellation(order, actor_id)

        self.db.flush()
        return TransitionResult(
            order_id=order.order_id,
            from_status=from_status,
            to_status=target,
            trigger=trigger_value,
            dispatch=dispatch,
        )

    def apply_payment_status(self, order: Order, payment_status: str) -> list[TransitionResult]:
        """Mirror a reconciled payment status onto a locked order.

        A completed payment on an order awaiting payment fires
        payment_completed and then the routing trigger for its fulfilment
        type; a failed or cancelled one fires payment_failed.
        """
        if OrderStateMachine.is_terminal(order.status):
            if payment_status != order.payment_status:
                logger.warning(
                    "Payment for %s order %s reported %s; order left unchanged",
                    order.status,
                    order.order_number,
                    payment_status,
                )
                self.db.add(AuditLog(
                    subject_type="order",
                    subject_id=str(order.order_id),
                    action="payment_after_terminal",
                    details={"order_status": order.status, "payment_status": payment_status},
                ))
            return []

        if order.payment_status == "completed" and payment_status != "completed":
            # Another payment on this order already completed it.
            logger.warning(
                "Stale %s payment status for paid order %s ignored",
                payment_status,
                order.order_number,
            )
            self.db.add(AuditLog(
                subject_type="order",
                subject_id=str(order.order_id),
                action="stale_payment_status",
                details={"order_status": order.status, "payment_status": payment_status},
            ))
            self.db.flush()
            return []

        order.payment_status = payment_status
        results: list[TransitionResult] = []

        if payment_status == "completed":
            order.paid_at = order.paid_at or utc_now()
            if order.status in AWAITING_PAYMENT:
                results.append(self.fire(order, OrderTrigger.PAYMENT_COMPLETED, note="Payment received"))
                routing = ROUTING_TRIGGERS[order.fulfilment_type]
                results.append(self.fire(order, routing, note=f"Routed for {order.fulfilment_type}"))
        elif payment_status in ("failed", "cancelled"):
            if order.status in AWAITING_PAYMENT:
                results.append(
                    self.fire(order, OrderTrigger.PAYMENT_FAILED, note=f"Payment {payment_status}")
                )
        self.db.flush()
        return results

    def settle_debt(
        self, order_id: UUID, *, actor_id: str | None = None, note: str | None = None
    ) -> TransitionResult:
        """Complete a debt order whose balance was settled out of band."""
        return self.fire(
            order_id,
            OrderTrigger.DEBT_SETTLED,
            actor_id=actor_id,
            actor_type="seller",
            note=note or "Debt settled",
        )

    def cancel_order(
        self,
        order_id: UUID,
        *,
        actor_id: str | None = None,
        actor_type: str = "buyer",
        reason: str | None = None,
    ) -> TransitionResult:
        """Cancel a non-terminal order."""
        return self.fire(
            order_id,
            OrderTrigger.CANCELLATION_REQUESTED,
            actor_id=actor_id,
            actor_type=actor_type,
            note=reason,
        )

    def fire_deadline(
        self, order_id: UUID, trigger: OrderTrigger, reason: str
    ) -> TransitionResult | None:
        """Fire a deadline trigger on an order that still accepts it.

        Returns None when the order moved on after the sweep selected it.
        A cancellation keeps `reason` on the order.
        """
        order = self.lock_order(order_id)
        target = OrderStateMachine.next_status(order.status, trigger)
        if target is None:
            return None
        if target == OrderStatus.CANCELLED.value:
            order.auto_cancelled_reason = reason
        result = self.fire(order, trigger, actor_type="system", note=reason)
        logger.info(
            "Order %s moved %s -> %s: %s",
            order.order_number,
            result.from_status,
            result.to_status,
            reason,
        )
        return result

    def _compensate_cancellation(self, order: Order, actor_id: str | None) -> None:
        self.ledger.reverse_contributions(
            subject_type="order",
            subject_id=order.order_id,
            to_status=OrderStatus.CANCELLED.value,
            reason=f"order {order.order_number} cancelled",
        )
        if order.payment_status == "completed":
            order.payment_status = "refunded"
            if order.buyer_id is not None:
                buyer = self.db.get(Buyer, order.buyer_id, with_for_update=True)
                if buyer is not None:
                    buyer.refunds += 1
            self.db.add(AuditLog(
                subject_type="order",
                subject_id=str(order.order_id),
                action="refund_recorded",
                details={"amount": str(order.total_amount)},
                performed_by=actor_id,
            ))

    def _append_history(
        self,
        order: Order,
        *,
        previous_status: str | None,
        trigger: str | None,
        note: str | None,
        actor_id: str | None,
        actor_type: str,
    ) -> None:
        self.db.add(OrderStatusHistory(
            order_id=order.order_id,
            status=order.status,
            previous_status=previous_status,
            trigger=trigger,
            note=note,
            actor_id=actor_id,
            actor_type=actor_type,
        ))

    def _record_rejection(
        self, order: Order, error: InvalidTransitionError, actor_id: str | None
    ) -> None:
        logger.warning("Rejected order transition for %s: %s", order.order_number, error)
        self.db.add(AuditLog(
            subject_type="order",
            subject_id=str(order.order_id),
            action="transition_rejected",
            details={
                "from_status": error.from_status,
                "trigger": error.trigger,
                "reason": error.reason,
            },
            performed_by=actor_id,
        ))
        self.db.flush()
