"""Ticket models."""

from __future__ import annotations

from datetime import datetime
from decimal import Decimal
from typing import TYPE_CHECKING
from uuid import UUID, uuid4

from sqlalchemy import (
    Boolean,
    CheckConstraint,
    ForeignKey,
    Integer,
    Numeric,
    String,
    UniqueConstraint,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship

from marketplace_engine.models.base import Base, UpdatedAtMixin, TimestampMixin

if TYPE_CHECKING:
    from marketplace_engine.models.parties import Event
    from marketplace_engine.models.payments import Payment

TICKET_STATUSES = ("pending", "paid", "cancelled", "refunded")


class TicketType(Base, TimestampMixin):
    """Priced ticket category for an event."""

    __tablename__ = "ticket_type"

    ticket_type_id: Mapped[UUID] = mapped_column(primary_key=True, default=uuid4)
    event_id: Mapped[UUID] = mapped_column(
        ForeignKey("event.event_id", ondelete="CASCADE"), nullable=False
    )
    name: Mapped[str] = mapped_column(String, nullable=False)
    price: Mapped[Decimal] = mapped_column(Numeric(14, 4), nullable=False)

    event: Mapped[Event] = relationship(back_populates="ticket_types")


class Ticket(Base, UpdatedAtMixin):
    """Issued ticket.

    `price` is the amount the funding payment collected, so the event
    balance credit equals money received. Rows are never deleted;
    cancellation and refund are status changes.
    """

    __tablename__ = "ticket"

    ticket_id: Mapped[UUID] = mapped_column(primary_key=True, default=uuid4)
    ticket_number: Mapped[str] = mapped_column(String, nullable=False, unique=True)
    event_id: Mapped[UUID] = mapped_column(
        ForeignKey("event.event_id", ondelete="RESTRICT"), nullable=False
    )
    ticket_type_id: Mapped[UUID] = mapped_column(
        ForeignKey("ticket_type.ticket_type_id", ondelete="RESTRICT"), nullable=False
    )
    payment_id: Mapped[UUID | None] = mapped_column(
        ForeignKey("payment.payment_id", ondelete="RESTRICT"), nullable=True
    )
    customer_name: Mapped[str] = mapped_column(String, nullable=False, default="Guest")
    customer_email: Mapped[str] = mapped_column(String, nullable=False)
    quantity: Mapped[int] = mapped_column(Integer, nullable=False, default=1)
    price: Mapped[Decimal] = mapped_column(Numeric(14, 4), nullable=False)
    status: Mapped[str] = mapped_column(String, nullable=False, default="pending")
    scanned: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    scanned_at: Mapped[datetime | None] = mapped_column(nullable=True)

    __table_args__ = (
        # Secondary defence; the dispatcher checks existence under lock first
        UniqueConstraint("payment_id", name="ticket_payment_unique"),
        CheckConstraint(
            "status IN ('pending', 'paid', 'cancelled', 'refunded')",
            name="ticket_status_check",
        ),
        CheckConstraint("price >= 0", name="ticket_price_check"),
    )

    payment: Mapped[Payment | None] = relationship(back_populates="ticket")

    @property
    def unit_price(self) -> Decimal:
        """Price per admission."""
        return self.price / self.quantity
