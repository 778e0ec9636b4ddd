"""Balance holders and buyers."""

from __future__ import annotations

from decimal import Decimal
from typing import TYPE_CHECKING
from uuid import UUID, uuid4

from sqlalchemy import Boolean, ForeignKey, Integer, Numeric, String
from sqlalchemy.orm import Mapped, mapped_column, relationship

from marketplace_engine.models.base import Base, TimestampMixin

if TYPE_CHECKING:
    from marketplace_engine.models.tickets import TicketType


class Seller(Base, TimestampMixin):
    """Marketplace seller.

    `balance` is mutated only by the balance ledger.
    """

    __tablename__ = "seller"

    seller_id: Mapped[UUID] = mapped_column(primary_key=True, default=uuid4)
    name: Mapped[str] = mapped_column(String, nullable=False)
    contact: Mapped[str | None] = mapped_column(String, nullable=True)
    has_shop: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    balance: Mapped[Decimal] = mapped_column(
        Numeric(14, 4), nullable=False, default=Decimal("0")
    )


class Organizer(Base, TimestampMixin):
    """Event organizer."""

    __tablename__ = "organizer"

    organizer_id: Mapped[UUID] = mapped_column(primary_key=True, default=uuid4)
    name: Mapped[str] = mapped_column(String, nullable=False)
    contact: Mapped[str | None] = mapped_column(String, nullable=True)
    balance: Mapped[Decimal] = mapped_column(
        Numeric(14, 4), nullable=False, default=Decimal("0")
    )

    events: Mapped[list[Event]] = relationship(back_populates="organizer")


class Event(Base, TimestampMixin):
    """Ticketed event; ticket revenue accrues to its balance."""

    __tablename__ = "event"

    event_id: Mapped[UUID] = mapped_column(primary_key=True, default=uuid4)
    organizer_id: Mapped[UUID] = mapped_column(
        ForeignKey("organizer.organizer_id", ondelete="RESTRICT"),
        nullable=False,
    )
    title: Mapped[str] = mapped_column(String, nullable=False)
    balance: Mapped[Decimal] = mapped_column(
        Numeric(14, 4), nullable=False, default=Decimal("0")
    )

    organizer: Mapped[Organizer] = relationship(back_populates="events")
    ticket_types: Mapped[list[TicketType]] = relationship(back_populates="event")


class Buyer(Base, TimestampMixin):
    """Buyer placing orders."""

    __tablename__ = "buyer"

    buyer_id: Mapped[UUID] = mapped_column(primary_key=True, default=uuid4)
    name: Mapped[str] = mapped_column(String, nullable=False)
    email: Mapped[str | None] = mapped_column(String, nullable=True)
    refunds: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
