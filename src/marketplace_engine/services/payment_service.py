"""Payment initiation through the provider adapter."""

from __future__ import annotations

import re
from dataclasses import dataclass
from decimal import Decimal
from typing import Any
from uuid import UUID, uuid4

from sqlalchemy.orm import Session

from marketplace_engine.errors import NotFoundError, ValidationError
from marketplace_engine.models import Event, Order, TicketType
from marketplace_engine.providers.base import InitiationRequest, PaymentProvider
from marketplace_engine.services.payment_store import NewPayment, PaymentStore
from marketplace_engine.services.state_machine import OrderStateMachine

CONTACT_PATTERN = re.compile(r"^\+?\d{9,15}$")
CURRENCY_PATTERN = re.compile(r"^[A-Z]{3}$")


@dataclass(frozen=True)
class InitiationOutcome:
    """Result of starting a charge."""

    payment_id: UUID
    invoice_id: str
    provider_reference: str
    provider_correlation_id: str


def normalize_contact(contact: str | None) -> str:
    """Strip spaces and dashes from a payer phone number.

    Raises:
        ValidationError: Not 9-15 digits with an optional leading '+'
    """
    cleaned = re.sub(r"[\s\-()]", "", contact or "")
    if not CONTACT_PATTERN.match(cleaned):
        raise ValidationError("Payer contact must be a 9-15 digit phone number", field="payer_contact")
    return cleaned


class PaymentService:
    """Creates payments and asks the provider to collect them."""

    def __init__(self, db: Session, provider: PaymentProvider, store: PaymentStore | None = None):
        self.db = db
        self.provider = provider
        self.store = store or PaymentStore(db)

    def initiate_ticket_payment(
        self,
        *,
        ticket_type_id: UUID,
        quantity: int,
        payer_contact: str,
        payer_email: str,
        customer_name: str | None = None,
        currency: str = "KES",
    ) -> InitiationOutcome:
        """Start a charge for tickets; the amount comes from the ticket type."""
        ticket_type = self.db.get(TicketType, ticket_type_id)
        if ticket_type is None:
            raise NotFoundError("ticket_type", ticket_type_id)
        if quantity < 1:
            raise ValidationError("Quantity must be at least 1", field="quantity")
        event = self.db.get(Event, ticket_type.event_id)

        return self._initiate(
            amount=Decimal(ticket_type.price) * quantity,
            currency=currency,
            payer_contact=payer_contact,
            payer_email=payer_email,
            narrative=f"{quantity} x {ticket_type.name} - {event.title}",
            event_id=event.event_id,
            organizer_id=event.organizer_id,
            ticket_type_id=ticket_type.ticket_type_id,
            ticket_quantity=quantity,
            metadata={"customer_name": customer_name} if customer_name else None,
        )

    def initiate_order_payment(
        self,
        *,
        order_id: UUID,
        payer_contact: str,
        payer_email: str | None = None,
    ) -> InitiationOutcome:
        """Start a charge for the full total of an order awaiting payment."""
        order = self.db.get(Order, order_id)
        if order is None:
            raise NotFoundError("order", order_id)
        if OrderStateMachine.is_terminal(order.status) or order.payment_status == "completed":
            raise ValidationError(f"Order {order.order_number} is not awaiting payment")

        return self._initiate(
            amount=Decimal(order.total_amount),
            currency=order.currency,
            payer_contact=payer_contact,
            payer_email=payer_email,
            narrative=f"Order {order.order_number}",
            order_id=order.order_id,
        )

    def _initiate(
        self,
        *,
        amount: Decimal,
        currency: str,
        payer_contact: str,
        payer_email: str | None,
        narrative: str,
        metadata: dict[str, Any] | None = None,
        **owner: Any,
    ) -> InitiationOutcome:
        contact = normalize_contact(payer_contact)
        if amount <= 0:
            raise ValidationError("Amount must be positive", field="amount")
        if not CURRENCY_PATTERN.match(currency or ""):
            raise ValidationError("Currency must be a 3-letter code", field="currency")
        if payer_email is not None and "@" not in payer_email:
            raise ValidationError("Payer email is malformed", field="payer_email")

        invoice_id = f"INV-{uuid4().hex[:12].upper()}"
        payment = self.store.create(NewPayment(
            invoice_id=invoice_id,
            amount=amount,
            currency=currency,
            payer_contact=contact,
            payer_email=payer_email,
            narrative=narrative,
            metadata=metadata,
            **owner,
        ))

        result = self.provider.initiate(InitiationRequest(
            payer_contact=contact,
            payer_email=payer_email,
            amount=amount,
            currency=currency,
            narrative=narrative,
            local_correlation_id=invoice_id,
        ))
        self.store.attach_provider_refs(
            payment,
            api_ref=result.provider_correlation_id,
            provider_reference=result.provider_reference,
        )
        self.db.flush()

        return InitiationOutcome(
            payment_id=payment.payment_id,
            invoice_id=invoice_id,
            provider_reference=result.provider_reference,
            provider_correlation_id=result.provider_correlation_id,
        )
