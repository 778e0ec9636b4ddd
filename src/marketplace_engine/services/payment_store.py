"""Payment record store.

All payment reads and writes go through this class. A correlation key
may be the local invoice id, the provider api reference or the provider
transaction reference; lookups try them in that order.
"""

from __future__ import annotations

from dataclasses import dataclass
from decimal import Decimal
from typing import Any
from uuid import UUID

from sqlalchemy import or_, select
from sqlalchemy.orm import Session

from marketplace_engine.errors import ValidationError
from marketplace_engine.models import Payment


@dataclass(frozen=True)
class NewPayment:
    """Fields for a payment about to be created."""

    invoice_id: str
    amount: Decimal
    currency: str = "KES"
    method: str = "mobile_money"
    payer_contact: str | None = None
    payer_email: str | None = None
    narrative: str | None = None
    event_id: UUID | None = None
    organizer_id: UUID | None = None
    ticket_type_id: UUID | None = None
    ticket_quantity: int = 1
    order_id: UUID | None = None
    metadata: dict[str, Any] | None = None


class PaymentStore:
    """Persistence for Payment rows."""

    def __init__(self, db: Session):
        self.db = db

    @staticmethod
    def _key_filter(correlation_key: str):
        return or_(
            Payment.invoice_id == correlation_key,
            Payment.api_ref == correlation_key,
            Payment.provider_reference == correlation_key,
        )

    def find(self, correlation_key: str) -> Payment | None:
        """Find a payment by any correlation key without locking."""
        if not correlation_key:
            raise ValidationError("Correlation key is required", field="correlation_id")
        return self.db.scalars(
            select(Payment).where(self._key_filter(correlation_key)).limit(1)
        ).first()

    def find_for_update(self, correlation_key: str) -> Payment | None:
        """Find a payment by correlation key and lock its row.

        The lock is held until the caller's transaction ends. Existing
        identity-map state is refreshed so the caller sees the committed
        value rather than a stale in-session copy.
        """
        if not correlation_key:
            raise ValidationError("Correlation key is required", field="correlation_id")
        return self.db.scalars(
            select(Payment)
            .where(self._key_filter(correlation_key))
            .limit(1)
            .with_for_update()
            .execution_options(populate_existing=True)
        ).first()

    def get_for_update(self, payment_id: UUID) -> Payment | None:
        """Lock a payment row by primary key."""
        return self.db.scalars(
            select(Payment)
            .where(Payment.payment_id == payment_id)
            .with_for_update()
            .execution_options(populate_existing=True)
        ).first()

    def create(self, new: NewPayment) -> Payment:
        """Create a pending payment."""
        if self.db.scalars(
            select(Payment.payment_id).where(Payment.invoice_id == new.invoice_id)
        ).first():
            raise ValidationError(
                f"Invoice id '{new.invoice_id}' already in use", field="invoice_id"
            )
        payment = Payment(
            invoice_id=new.invoice_id,
            amount=new.amount,
            currency=new.currency,
            status="pending",
            method=new.method,
            payer_contact=new.payer_contact,
            payer_email=new.payer_email,
            narrative=new.narrative,
            event_id=new.event_id,
            organizer_id=new.organizer_id,
            ticket_type_id=new.ticket_type_id,
            ticket_quantity=new.ticket_quantity,
            order_id=new.order_id,
            metadata_json=dict(new.metadata or {}),
        )
        self.db.add(payment)
        self.db.flush()
        return payment

    def attach_provider_refs(
        self,
        payment: Payment,
        *,
        api_ref: str | None = None,
        provider_reference: str | None = None,
    ) -> None:
        """Record provider-issued correlation keys, keeping existing ones."""
        if api_ref and not payment.api_ref:
            payment.api_ref = api_ref
        if provider_reference and not payment.provider_reference:
            payment.provider_reference = provider_reference

    def list_non_terminal(self, created_after) -> list[Payment]:
        """Payments still pending or processing, created after a cutoff."""
        return list(
            self.db.scalars(
                select(Payment)
                .where(Payment.status.in_(("pending", "processing")))
                .where(Payment.created_at >= created_after)
                .order_by(Payment.created_at)
            )
        )
