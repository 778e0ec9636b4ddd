"""Side-Effect Dispatcher - exactly-once ticket and payout creation.

Callers must already hold the row lock on the originating Payment or
Order; the existence check below is only race-free under that lock. The
unique constraints on ticket.payment_id and payout.order_id are a
second line of defence.
"""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass
from datetime import datetime, timedelta
from decimal import Decimal
from uuid import UUID, uuid4

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from marketplace_engine.config import EngineConfig
from marketplace_engine.errors import ArtifactCreationFailure, NotFoundError
from marketplace_engine.models import Order, Payment, Payout, Ticket, TicketType, utc_now
from marketplace_engine.services.balance_ledger import BalanceLedger
from marketplace_engine.services.state_machine import OrderStatus

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class DispatchResult:
    """Result of an artifact creation request.

    IMPORTANT: `is_new=False` means the artifact already existed and no
    balance was touched.
    """

    artifact_type: str
    artifact_id: UUID
    is_new: bool


def generate_ticket_number() -> str:
    """Ticket numbers look like TKT-<epoch ms>-<8 hex>."""
    return f"TKT-{int(time.time() * 1000)}-{uuid4().hex[:8]}"


class SideEffectDispatcher:
    """Creates the financial artifacts owed for completed records."""

    def __init__(
        self,
        db: Session,
        ledger: BalanceLedger | None = None,
        config: EngineConfig | None = None,
    ):
        self.db = db
        self.ledger = ledger or BalanceLedger(db)
        self.config = config or EngineConfig()

    # ------------------------------------------------------------------
    # Tickets
    # ------------------------------------------------------------------

    def issue_ticket(self, payment: Payment) -> DispatchResult:
        """Issue the ticket funded by a completed payment.

        Credits the event balance with the ticket price in the same
        transaction.

        Raises:
            ArtifactCreationFailure: The payment lacks what a ticket needs
        """
        existing = self.db.scalars(
            select(Ticket).where(Ticket.payment_id == payment.payment_id)
        ).first()
        if existing is not None:
            return DispatchResult("ticket", existing.ticket_id, is_new=False)

        if payment.event_id is None:
            raise ArtifactCreationFailure("ticket", payment.invoice_id, "payment has no event")
        if not payment.payer_email:
            raise ArtifactCreationFailure(
                "ticket", payment.invoice_id, "payment has no customer email"
            )
        ticket_type = (
            self.db.get(TicketType, payment.ticket_type_id)
            if payment.ticket_type_id
            else None
        )
        if ticket_type is None or ticket_type.event_id != payment.event_id:
            raise ArtifactCreationFailure(
                "ticket", payment.invoice_id, "ticket type missing or not on this event"
            )

        ticket = Ticket(
            ticket_number=generate_ticket_number(),
            event_id=payment.event_id,
            ticket_type_id=ticket_type.ticket_type_id,
            payment_id=payment.payment_id,
            customer_name=(payment.metadata_json or {}).get("customer_name") or "Guest",
            customer_email=payment.payer_email,
            quantity=payment.ticket_quantity,
            price=Decimal(payment.amount),
            status="paid",
        )
        self.db.add(ticket)
        try:
            self.db.flush()
        except IntegrityError as e:
            raise ArtifactCreationFailure("ticket", payment.invoice_id, str(e.orig)) from e

        self.ledger.apply_transition(
            holder_type="event",
            holder_id=ticket.event_id,
            subject_type="ticket",
            subject_id=ticket.ticket_id,
            from_status="pending",
            to_status="paid",
            amount=ticket.price,
            reason=f"ticket {ticket.ticket_number} paid by {payment.invoice_id}",
        )
        logger.info(
            "Issued ticket %s for payment %s", ticket.ticket_number, payment.invoice_id
        )
        return DispatchResult("ticket", ticket.ticket_id, is_new=True)

    # ------------------------------------------------------------------
    # Payouts
    # ------------------------------------------------------------------

    def handle_order_completed(self, order: Order, from_status: str) -> DispatchResult:
        """Credit the seller and schedule the payout for a completed order.

        Args:
            order: Order just moved to COMPLETED, row lock held
            from_status: Status the order completed from

        Raises:
            ArtifactCreationFailure: The payout could not be created
        """
        existing = self.db.scalars(
            select(Payout).where(Payout.order_id == order.order_id)
        ).first()
        if existing is not None:
            return DispatchResult("payout", existing.payout_id, is_new=False)

        if order.status != OrderStatus.COMPLETED.value or order.completed_at is None:
            raise ArtifactCreationFailure(
                "payout", order.order_number, f"order is {order.status}, not completed"
            )

        amount = Decimal(order.seller_payout_amount)
        payout = Payout(
            order_id=order.order_id,
            seller_id=order.seller_id,
            amount=amount,
            fee=Decimal("0"),
            net_amount=amount,
            status="pending",
            eligible_at=order.completed_at
            + timedelta(hours=self.config.payout_maturation_hours),
        )
        self.db.add(payout)
        try:
            self.db.flush()
        except IntegrityError as e:
            raise ArtifactCreationFailure("payout", order.order_number, str(e.orig)) from e

        self.ledger.apply_transition(
            holder_type="seller",
            holder_id=order.seller_id,
            subject_type="order",
            subject_id=order.order_id,
            from_status=from_status,
            to_status=OrderStatus.COMPLETED.value,
            amount=amount,
            reason=f"order {order.order_number} completed",
        )
        logger.info(
            "Scheduled payout %s of %s for order %s, eligible at %s",
            payout.payout_id,
            amount,
            order.order_number,
            payout.eligible_at,
        )
        return DispatchResult("payout", payout.payout_id, is_new=True)

    def mature_payout(self, payout_id: UUID, as_of: datetime | None = None) -> bool:
        """Move one pending payout whose maturation window has passed to processing.

        Returns False when the payout is not yet eligible, has already
        moved, or is locked by another sweep; locked rows are skipped
        rather than waited on.
        """
        as_of = as_of or utc_now()
        payout = self.db.scalars(
            select(Payout)
            .where(Payout.payout_id == payout_id)
            .where(Payout.status == "pending")
            .where(Payout.eligible_at <= as_of)
            .with_for_update(skip_locked=True)
            .execution_options(populate_existing=True)
        ).first()
        if payout is None:
            return False
        self.transition_payout(payout, "processing")
        payout.processing_started_at = as_of
        self.db.flush()
        return True

    def transition_payout(self, payout: Payout, to_status: str) -> None:
        """Move a payout along pending -> processing -> completed|failed."""
        allowed = {
            "pending": {"processing"},
            "processing": {"completed", "failed"},
        }
        if to_status not in allowed.get(payout.status, set()):
            raise ValueError(f"Payout cannot move from {payout.status} to {to_status}")

        self.ledger.apply_transition(
            holder_type="seller",
            holder_id=payout.seller_id,
            subject_type="payout",
            subject_id=payout.payout_id,
            from_status=payout.status,
            to_status=to_status,
            amount=Decimal(payout.amount),
        )
        payout.status = to_status

    def record_payout_result(
        self,
        payout_id: UUID,
        status: str,
        provider_reference: str | None = None,
    ) -> Payout:
        """Settle a processing payout as completed or failed.

        Matured payouts settle to the seller's wallet balance, which was
        credited when the order completed; money leaves the platform only
        through withdrawals. Terminal payouts are left as is.
        """
        payout = self.db.scalars(
            select(Payout)
            .where(Payout.payout_id == payout_id)
            .with_for_update()
            .execution_options(populate_existing=True)
        ).first()
        if payout is None:
            raise NotFoundError("payout", payout_id)
        if payout.status in ("completed", "failed"):
            return payout
        if provider_reference:
            payout.provider_reference = provider_reference
        self.transition_payout(payout, status)
        payout.settled_at = utc_now()
        logger.info("Payout %s settled as %s", payout.payout_id, status)
        self.db.flush()
        return payout
