"""Tests for ticket cancellation, refunds and scanning."""

from decimal import Decimal

import pytest
from sqlalchemy import select

from marketplace_engine.errors import ValidationError
from marketplace_engine.models import AuditLog, Ticket
from marketplace_engine.services.dispatcher import SideEffectDispatcher
from marketplace_engine.services.ticket_service import TicketService


@pytest.fixture
def paid_ticket(session, config, test_data):
    event, ticket_type = test_data.create_event(session, ticket_price=Decimal("750.00"))
    payment = test_data.create_ticket_payment(session, event, ticket_type, status="completed")
    dispatch = SideEffectDispatcher(session, config=config).issue_ticket(payment)
    return event, dispatch.artifact_id


class TestTicketService:
    """Test post-issue ticket operations."""

    def test_refund_debits_event(self, session, paid_ticket):
        """Refunding a paid ticket removes its price from the event balance."""
        event, ticket_id = paid_ticket

        ticket = TicketService(session).refund_ticket(ticket_id, reason="event postponed", performed_by="ops")

        assert ticket.status == "refunded"
        assert Decimal(event.balance) == Decimal("0")
        audit = session.scalars(select(AuditLog).where(AuditLog.action == "ticket_refunded")).one()
        assert audit.performed_by == "ops"

    def test_repeat_cancel_is_noop(self, session, paid_ticket):
        """Cancelling twice debits once."""
        event, ticket_id = paid_ticket
        service = TicketService(session)

        service.cancel_ticket(ticket_id)
        service.cancel_ticket(ticket_id)

        assert Decimal(event.balance) == Decimal("0")

    def test_refund_after_cancel_rejected(self, session, paid_ticket):
        """A cancelled ticket cannot be refunded."""
        _, ticket_id = paid_ticket
        service = TicketService(session)
        service.cancel_ticket(ticket_id)

        with pytest.raises(ValidationError):
            service.refund_ticket(ticket_id)

    def test_scan_once(self, session, paid_ticket):
        """A paid ticket scans exactly once."""
        _, ticket_id = paid_ticket
        service = TicketService(session)
        number = session.get(Ticket, ticket_id).ticket_number

        ticket = service.scan_ticket(number)
        assert ticket.scanned is True
        assert ticket.scanned_at is not None

        with pytest.raises(ValidationError):
            service.scan_ticket(number)

    def test_cancelled_ticket_does_not_scan(self, session, paid_ticket):
        """Only paid tickets admit their holder."""
        _, ticket_id = paid_ticket
        service = TicketService(session)
        ticket = service.cancel_ticket(ticket_id)

        with pytest.raises(ValidationError):
            service.scan_ticket(ticket.ticket_number)
