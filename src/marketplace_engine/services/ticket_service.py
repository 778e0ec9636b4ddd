"""Ticket lifecycle after issuance: cancel, refund, scan."""

from __future__ import annotations

from decimal import Decimal
from uuid import UUID

from sqlalchemy import select
from sqlalchemy.orm import Session

from marketplace_engine.errors import NotFoundError, ValidationError
from marketplace_engine.models import AuditLog, Ticket, utc_now
from marketplace_engine.services.balance_ledger import BalanceLedger


class TicketService:
    """Ticket status changes with their balance effects.

    Tickets are never deleted; leaving `paid` takes the price back out of
    the event balance in the same transaction.
    """

    def __init__(self, db: Session, ledger: BalanceLedger | None = None):
        self.db = db
        self.ledger = ledger or BalanceLedger(db)

    def _lock(self, ticket_id: UUID) -> Ticket:
        ticket = self.db.scalars(
            select(Ticket)
            .where(Ticket.ticket_id == ticket_id)
            .with_for_update()
            .execution_options(populate_existing=True)
        ).first()
        if ticket is None:
            raise NotFoundError("ticket", ticket_id)
        return ticket

    def cancel_ticket(
        self, ticket_id: UUID, *, reason: str | None = None, performed_by: str | None = None
    ) -> Ticket:
        """Cancel a ticket."""
        return self._leave_paid(ticket_id, "cancelled", reason, performed_by)

    def refund_ticket(
        self, ticket_id: UUID, *, reason: str | None = None, performed_by: str | None = None
    ) -> Ticket:
        """Mark a ticket refunded."""
        return self._leave_paid(ticket_id, "refunded", reason, performed_by)

    def _leave_paid(
        self,
        ticket_id: UUID,
        to_status: str,
        reason: str | None,
        performed_by: str | None,
    ) -> Ticket:
        ticket = self._lock(ticket_id)
        if ticket.status == to_status:
            return ticket
        if ticket.status not in ("pending", "paid"):
            raise ValidationError(
                f"Ticket {ticket.ticket_number} is already {ticket.status}", field="status"
            )

        from_status = ticket.status
        self.ledger.apply_transition(
            holder_type="event",
            holder_id=ticket.event_id,
            subject_type="ticket",
            subject_id=ticket.ticket_id,
            from_status=from_status,
            to_status=to_status,
            amount=Decimal(ticket.price),
            reason=reason,
        )
        ticket.status = to_status
        self.db.add(AuditLog(
            subject_type="ticket",
            subject_id=str(ticket.ticket_id),
            action=f"ticket_{to_status}",
            details={"from_status": from_status, "reason": reason},
            performed_by=performed_by,
        ))
        self.db.flush()
        return ticket

    def scan_ticket(self, ticket_number: str) -> Ticket:
        """Admit a ticket holder. A ticket scans once, and only while paid."""
        ticket = self.db.scalars(
            select(Ticket)
            .where(Ticket.ticket_number == ticket_number)
            .with_for_update()
            .execution_options(populate_existing=True)
        ).first()
        if ticket is None:
            raise NotFoundError("ticket", ticket_number)
        if ticket.status != "paid":
            raise ValidationError(f"Ticket is {ticket.status}", field="status")
        if ticket.scanned:
            raise ValidationError("Ticket already scanned", field="scanned")
        ticket.scanned = True
        ticket.scanned_at = utc_now()
        self.db.flush()
        return ticket
