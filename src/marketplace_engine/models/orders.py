"""Marketplace order models."""

from __future__ import annotations

from datetime import datetime
from decimal import Decimal
from typing import TYPE_CHECKING
from uuid import UUID, uuid4

from sqlalchemy import Boolean, CheckConstraint, ForeignKey, Integer, Numeric, String
from sqlalchemy.orm import Mapped, mapped_column, relationship

from marketplace_engine.models.base import Base, TimestampMixin, UpdatedAtMixin

if TYPE_CHECKING:
    from marketplace_engine.models.payments import Payment
    from marketplace_engine.models.payouts import Payout

FULFILMENT_TYPES = ("digital", "service", "collection", "delivery")
PRODUCT_TYPES = ("physical", "digital", "service")


class Order(Base, UpdatedAtMixin):
    """Marketplace order.

    Status moves only through the order state machine; payment_status
    mirrors the reconciled status of the funding payment.
    """

    __tablename__ = "marketplace_order"

    order_id: Mapped[UUID] = mapped_column(primary_key=True, default=uuid4)
    order_number: Mapped[str] = mapped_column(String, nullable=False, unique=True)
    buyer_id: Mapped[UUID | None] = mapped_column(
        ForeignKey("buyer.buyer_id", ondelete="RESTRICT"), nullable=True
    )
    seller_id: Mapped[UUID] = mapped_column(
        ForeignKey("seller.seller_id", ondelete="RESTRICT"), nullable=False
    )
    client_contact: Mapped[str | None] = mapped_column(String, nullable=True)

    total_amount: Mapped[Decimal] = mapped_column(Numeric(14, 4), nullable=False)
    platform_fee_amount: Mapped[Decimal] = mapped_column(Numeric(14, 4), nullable=False)
    seller_payout_amount: Mapped[Decimal] = mapped_column(Numeric(14, 4), nullable=False)
    currency: Mapped[str] = mapped_column(String(3), nullable=False, default="KES")

    status: Mapped[str] = mapped_column(String, nullable=False, default="PENDING")
    payment_status: Mapped[str] = mapped_column(String, nullable=False, default="pending")
    fulfilment_type: Mapped[str] = mapped_column(String, nullable=False)
    is_debt: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    is_seller_initiated: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)

    paid_at: Mapped[datetime | None] = mapped_column(nullable=True)
    completed_at: Mapped[datetime | None] = mapped_column(nullable=True)
    cancelled_at: Mapped[datetime | None] = mapped_column(nullable=True)

    # Fulfilment deadlines, set when the order enters the status they guard
    seller_dropoff_deadline: Mapped[datetime | None] = mapped_column(nullable=True)
    buyer_pickup_deadline: Mapped[datetime | None] = mapped_column(nullable=True)
    # Service orders only
    booking_date: Mapped[datetime | None] = mapped_column(nullable=True)
    auto_cancelled_reason: Mapped[str | None] = mapped_column(String, nullable=True)

    __table_args__ = (
        CheckConstraint(
            "status IN ('PENDING', 'PROCESSING', 'DELIVERY_PENDING', "
            "'DELIVERY_COMPLETE', 'SERVICE_PENDING', 'COLLECTION_PENDING', "
            "'READY_FOR_PICKUP', 'CONFIRMED', 'CLIENT_PAYMENT_PENDING', "
            "'DEBT_PENDING', 'COMPLETED', 'CANCELLED', 'FAILED')",
            name="order_status_check",
        ),
        CheckConstraint(
            "fulfilment_type IN ('digital', 'service', 'collection', 'delivery')",
            name="order_fulfilment_type_check",
        ),
    )

    # Relationships
    items: Mapped[list[OrderItem]] = relationship(
        back_populates="order", cascade="all, delete-orphan"
    )
    history: Mapped[list[OrderStatusHistory]] = relationship(
        back_populates="order", order_by="OrderStatusHistory.created_at"
    )
    payments: Mapped[list[Payment]] = relationship(back_populates="order")
    payout: Mapped[Payout | None] = relationship(back_populates="order", uselist=False)


class OrderItem(Base, TimestampMixin):
    """Line-item snapshot taken when the order is placed.

    Decoupled from the live product record; never updated.
    """

    __tablename__ = "order_item"

    order_item_id: Mapped[UUID] = mapped_column(primary_key=True, default=uuid4)
    order_id: Mapped[UUID] = mapped_column(
        ForeignKey("marketplace_order.order_id", ondelete="CASCADE"), nullable=False
    )
    product_id: Mapped[UUID | None] = mapped_column(nullable=True)
    name: Mapped[str] = mapped_column(String, nullable=False)
    product_type: Mapped[str] = mapped_column(String, nullable=False, default="physical")
    price: Mapped[Decimal] = mapped_column(Numeric(14, 4), nullable=False)
    quantity: Mapped[int] = mapped_column(Integer, nullable=False)
    subtotal: Mapped[Decimal] = mapped_column(Numeric(14, 4), nullable=False)

    __table_args__ = (
        CheckConstraint("price > 0", name="order_item_price_positive"),
        CheckConstraint("quantity > 0", name="order_item_quantity_positive"),
        CheckConstraint(
            "product_type IN ('physical', 'digital', 'service')",
            name="order_item_product_type_check",
        ),
    )

    order: Mapped[Order] = relationship(back_populates="items")


class OrderStatusHistory(Base, TimestampMixin):
    """Append-only record of every order transition."""

    __tablename__ = "order_status_history"

    order_status_history_id: Mapped[UUID] = mapped_column(primary_key=True, default=uuid4)
    order_id: Mapped[UUID] = mapped_column(
        ForeignKey("marketplace_order.order_id", ondelete="CASCADE"), nullable=False
    )
    status: Mapped[str] = mapped_column(String, nullable=False)
    previous_status: Mapped[str | None] = mapped_column(String, nullable=True)
    trigger: Mapped[str | None] = mapped_column(String, nullable=True)
    note: Mapped[str | None] = mapped_column(String, nullable=True)
    actor_id: Mapped[str | None] = mapped_column(String, nullable=True)
    actor_type: Mapped[str] = mapped_column(String, nullable=False, default="system")

    order: Mapped[Order] = relationship(back_populates="history")
