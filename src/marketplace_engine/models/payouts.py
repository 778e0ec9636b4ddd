"""Payout and withdrawal models."""

from __future__ import annotations

from datetime import datetime
from decimal import Decimal
from typing import TYPE_CHECKING
from uuid import UUID, uuid4

from sqlalchemy import CheckConstraint, ForeignKey, Numeric, String, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column, relationship

from marketplace_engine.models.base import Base, UpdatedAtMixin

if TYPE_CHECKING:
    from marketplace_engine.models.orders import Order

PAYOUT_STATUSES = ("pending", "processing", "completed", "failed")
WITHDRAWAL_STATUSES = ("pending", "processing", "completed", "failed")
HOLDER_TYPES = ("seller", "event", "organizer")


class Payout(Base, UpdatedAtMixin):
    """Seller payout scheduled for a completed order.

    Created pending; becomes processing once `eligible_at` has passed and
    completed when it settles to the seller's wallet balance.
    """

    __tablename__ = "payout"

    payout_id: Mapped[UUID] = mapped_column(primary_key=True, default=uuid4)
    order_id: Mapped[UUID] = mapped_column(
        ForeignKey("marketplace_order.order_id", ondelete="RESTRICT"), nullable=False
    )
    seller_id: Mapped[UUID] = mapped_column(
        ForeignKey("seller.seller_id", ondelete="RESTRICT"), nullable=False
    )
    amount: Mapped[Decimal] = mapped_column(Numeric(14, 4), nullable=False)
    fee: Mapped[Decimal] = mapped_column(Numeric(14, 4), nullable=False, default=Decimal("0"))
    net_amount: Mapped[Decimal] = mapped_column(Numeric(14, 4), nullable=False)
    status: Mapped[str] = mapped_column(String, nullable=False, default="pending")
    provider_reference: Mapped[str | None] = mapped_column(String, nullable=True)
    eligible_at: Mapped[datetime] = mapped_column(nullable=False)
    processing_started_at: Mapped[datetime | None] = mapped_column(nullable=True)
    settled_at: Mapped[datetime | None] = mapped_column(nullable=True)

    __table_args__ = (
        # Secondary defence; the dispatcher checks existence under lock first
        UniqueConstraint("order_id", name="payout_order_unique"),
        CheckConstraint(
            "status IN ('pending', 'processing', 'completed', 'failed')",
            name="payout_status_check",
        ),
        CheckConstraint("amount >= 0", name="payout_amount_check"),
    )

    order: Mapped[Order] = relationship(back_populates="payout")


class WithdrawalRequest(Base, UpdatedAtMixin):
    """Holder-initiated withdrawal of accumulated balance."""

    __tablename__ = "withdrawal_request"

    withdrawal_request_id: Mapped[UUID] = mapped_column(primary_key=True, default=uuid4)
    holder_type: Mapped[str] = mapped_column(String, nullable=False)
    holder_id: Mapped[UUID] = mapped_column(nullable=False)
    amount: Mapped[Decimal] = mapped_column(Numeric(14, 4), nullable=False)
    fee: Mapped[Decimal] = mapped_column(Numeric(14, 4), nullable=False)
    net_amount: Mapped[Decimal] = mapped_column(Numeric(14, 4), nullable=False)
    destination: Mapped[str] = mapped_column(String, nullable=False)
    status: Mapped[str] = mapped_column(String, nullable=False, default="pending")
    provider_reference: Mapped[str | None] = mapped_column(
        String, nullable=True, unique=True
    )
    failure_reason: Mapped[str | None] = mapped_column(String, nullable=True)
    reconciliation_flag: Mapped[str | None] = mapped_column(String, nullable=True)
    processed_at: Mapped[datetime | None] = mapped_column(nullable=True)

    __table_args__ = (
        CheckConstraint(
            "holder_type IN ('seller', 'event', 'organizer')",
            name="withdrawal_holder_type_check",
        ),
        CheckConstraint(
            "status IN ('pending', 'processing', 'completed', 'failed')",
            name="withdrawal_status_check",
        ),
        CheckConstraint("amount > 0", name="withdrawal_amount_positive"),
    )
