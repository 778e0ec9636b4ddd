"""Payment model."""

from __future__ import annotations

from decimal import Decimal
from typing import TYPE_CHECKING, Any
from uuid import UUID, uuid4

from sqlalchemy import CheckConstraint, ForeignKey, Integer, Numeric, String
from sqlalchemy.orm import Mapped, mapped_column, relationship

from marketplace_engine.models.base import Base, JsonType, UpdatedAtMixin

if TYPE_CHECKING:
    from marketplace_engine.models.orders import Order
    from marketplace_engine.models.tickets import Ticket

PAYMENT_STATUSES = ("pending", "processing", "completed", "failed", "cancelled", "refunded")


class Payment(Base, UpdatedAtMixin):
    """Inbound payment collected through the provider.

    Located by any of three correlation keys: the local invoice id, the
    provider api reference, or the provider transaction reference. The
    status column holds the canonical vocabulary only and is written by
    the reconciler alone.
    """

    __tablename__ = "payment"

    payment_id: Mapped[UUID] = mapped_column(primary_key=True, default=uuid4)
    invoice_id: Mapped[str] = mapped_column(String, nullable=False, unique=True)
    api_ref: Mapped[str | None] = mapped_column(String, nullable=True, unique=True)
    provider_reference: Mapped[str | None] = mapped_column(
        String, nullable=True, index=True
    )
    amount: Mapped[Decimal] = mapped_column(Numeric(14, 4), nullable=False)
    currency: Mapped[str] = mapped_column(String(3), nullable=False, default="KES")
    status: Mapped[str] = mapped_column(String, nullable=False, default="pending")
    method: Mapped[str] = mapped_column(String, nullable=False, default="mobile_money")
    payer_contact: Mapped[str | None] = mapped_column(String, nullable=True)
    payer_email: Mapped[str | None] = mapped_column(String, nullable=True)
    narrative: Mapped[str | None] = mapped_column(String, nullable=True)

    # Owner: a ticket purchase (event) or a marketplace order, never both
    event_id: Mapped[UUID | None] = mapped_column(
        ForeignKey("event.event_id", ondelete="RESTRICT"), nullable=True
    )
    organizer_id: Mapped[UUID | None] = mapped_column(
        ForeignKey("organizer.organizer_id", ondelete="RESTRICT"), nullable=True
    )
    ticket_type_id: Mapped[UUID | None] = mapped_column(
        ForeignKey("ticket_type.ticket_type_id", ondelete="RESTRICT"), nullable=True
    )
    ticket_quantity: Mapped[int] = mapped_column(Integer, nullable=False, default=1)
    order_id: Mapped[UUID | None] = mapped_column(
        ForeignKey("marketplace_order.order_id", ondelete="RESTRICT"), nullable=True
    )

    metadata_json: Mapped[dict[str, Any]] = mapped_column(
        JsonType, nullable=False, default=dict
    )

    __table_args__ = (
        CheckConstraint(
            "status IN ('pending', 'processing', 'completed', 'failed', "
            "'cancelled', 'refunded')",
            name="payment_status_check",
        ),
        CheckConstraint("amount > 0", name="payment_amount_positive"),
        CheckConstraint("ticket_quantity >= 1", name="payment_ticket_quantity_check"),
        CheckConstraint(
            "event_id IS NULL OR order_id IS NULL",
            name="payment_single_owner_check",
        ),
    )

    # Relationships
    order: Mapped[Order | None] = relationship(back_populates="payments")
    ticket: Mapped[Ticket | None] = relationship(
        back_populates="payment", uselist=False
    )

    @property
    def funds_tickets(self) -> bool:
        """Whether completing this payment issues a ticket."""
        return self.event_id is not None

    @property
    def funds_order(self) -> bool:
        """Whether completing this payment settles an order."""
        return self.order_id is not None
