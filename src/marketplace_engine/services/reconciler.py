"""Payment Status Reconciler.

Both ingress paths end here: webhook deliveries call `reconcile`
directly; client status checks go through `poll_and_reconcile`. Each
call locks the Payment row before deciding, so racing calls for the
same payment serialize and the later one decides against what the
earlier one committed.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal
from uuid import UUID

from sqlalchemy.orm import Session

from marketplace_engine.config import EngineConfig
from marketplace_engine.errors import NotFoundError, ProviderCommunicationError, ValidationError
from marketplace_engine.models import Payment
from marketplace_engine.providers.base import PaymentProvider
from marketplace_engine.services.balance_ledger import BalanceLedger
from marketplace_engine.services.dispatcher import DispatchResult, SideEffectDispatcher
from marketplace_engine.services.order_service import OrderService, TransitionResult
from marketplace_engine.services.payment_store import PaymentStore
from marketplace_engine.services.status_mapping import (
    PaymentStatus,
    is_terminal,
    map_provider_status,
)

logger = logging.getLogger(__name__)

COMPLETED = PaymentStatus.COMPLETED.value


def should_write(stored: str, mapped: str) -> bool:
    """Decide whether an observed canonical status replaces the stored one.

    - stored completed: never replaced
    - mapped completed: always wins (force-to-terminal)
    - stored failed/cancelled/refunded: only completed replaces it
    - otherwise: write when different
    """
    if stored == COMPLETED:
        return False
    if mapped == COMPLETED:
        return True
    if is_terminal(stored):
        return False
    return mapped != stored


@dataclass(frozen=True)
class ReconcileOutcome:
    """Result of one reconciliation pass.

    `written=False` with no `provider_error` means the observation was a
    no-op against what was already stored.
    """

    payment_id: UUID
    correlation_id: str
    source: str
    previous_status: str
    observed_status: str | None
    mapped_status: str | None
    status: str
    written: bool
    dispatch: DispatchResult | None = None
    order_transitions: tuple[TransitionResult, ...] = ()
    provider_error: str | None = None


@dataclass(frozen=True)
class PaymentStatusView:
    """Public view of a payment's reconciled state."""

    correlation_id: str
    canonical_status: str
    amount: Decimal
    currency: str
    updated_at: datetime
    linked_ticket_id: UUID | None = None
    linked_order_id: UUID | None = None


class PaymentReconciler:
    """Reconciles provider observations against stored payments."""

    def __init__(
        self,
        db: Session,
        provider: PaymentProvider | None = None,
        *,
        config: EngineConfig | None = None,
        store: PaymentStore | None = None,
        ledger: BalanceLedger | None = None,
        dispatcher: SideEffectDispatcher | None = None,
        orders: OrderService | None = None,
    ):
        self.db = db
        self.provider = provider
        self.config = config or EngineConfig()
        self.store = store or PaymentStore(db)
        self.ledger = ledger or BalanceLedger(db)
        self.dispatcher = dispatcher or SideEffectDispatcher(db, self.ledger, self.config)
        self.orders = orders or OrderService(
            db, ledger=self.ledger, dispatcher=self.dispatcher, config=self.config
        )

    def reconcile(
        self,
        correlation_id: str,
        observed_status: str | None,
        *,
        source: str = "webhook",
        provider_reference: str | None = None,
    ) -> ReconcileOutcome:
        """Apply one observed provider status to the matching payment.

        Runs in the caller's transaction. When the write lands on
        completed, the ticket or order side effects are created before
        returning, so they commit or roll back with the status.

        Raises:
            ValidationError: Missing correlation id
            NotFoundError: No payment for the correlation id
            ArtifactCreationFailure: Side effect failed; roll back
        """
        if not correlation_id:
            raise ValidationError("Correlation key is required", field="correlation_id")

        payment = self.store.find_for_update(correlation_id)
        if payment is None:
            raise NotFoundError("payment", correlation_id)

        mapped = map_provider_status(observed_status).value
        previous = payment.status
        written = should_write(previous, mapped)

        self.store.attach_provider_refs(payment, provider_reference=provider_reference)

        dispatch = None
        transitions: list[TransitionResult] = []
        if written:
            payment.status = mapped
            self.db.flush()
            if mapped == COMPLETED and payment.funds_tickets:
                dispatch = self.dispatcher.issue_ticket(payment)
            if payment.funds_order:
                order = self.orders.lock_order(payment.order_id)
                transitions = self.orders.apply_payment_status(order, mapped)
                if transitions and transitions[-1].dispatch is not None:
                    dispatch = transitions[-1].dispatch
            logger.info(
                "Payment %s %s -> %s via %s (observed %r)",
                payment.invoice_id,
                previous,
                mapped,
                source,
                observed_status,
            )

        self.db.flush()
        return ReconcileOutcome(
            payment_id=payment.payment_id,
            correlation_id=correlation_id,
            source=source,
            previous_status=previous,
            observed_status=observed_status,
            mapped_status=mapped,
            status=payment.status,
            written=written,
            dispatch=dispatch,
            order_transitions=tuple(transitions),
        )

    def poll_and_reconcile(self, correlation_id: str) -> ReconcileOutcome:
        """Ask the provider for a fresh status and reconcile it.

        Terminal payments are not polled. A provider error leaves the
        payment untouched and is reported on the outcome.
        """
        payment = self._find(correlation_id)
        if is_terminal(payment.status) or self.provider is None:
            return self._unchanged(payment, correlation_id)

        poll_key = payment.api_ref or payment.invoice_id
        try:
            poll = self.provider.fetch_status(poll_key)
        except ProviderCommunicationError as e:
            logger.warning("Status poll for %s failed: %s", payment.invoice_id, e)
            return self._unchanged(payment, correlation_id, provider_error=str(e))

        return self.reconcile(
            correlation_id,
            poll.status,
            source="poll",
            provider_reference=poll.provider_reference,
        )

    def get_payment_status(self, correlation_id: str) -> PaymentStatusView:
        """Current canonical status, refreshed by a poll while non-terminal."""
        payment = self._find(correlation_id)
        if not is_terminal(payment.status):
            self.poll_and_reconcile(correlation_id)
            self.db.refresh(payment)

        ticket = payment.ticket
        return PaymentStatusView(
            correlation_id=correlation_id,
            canonical_status=payment.status,
            amount=Decimal(payment.amount),
            currency=payment.currency,
            updated_at=payment.updated_at,
            linked_ticket_id=ticket.ticket_id if ticket is not None else None,
            linked_order_id=payment.order_id,
        )

    def _find(self, correlation_id: str) -> Payment:
        payment = self.store.find(correlation_id)
        if payment is None:
            raise NotFoundError("payment", correlation_id)
        return payment

    @staticmethod
    def _unchanged(
        payment: Payment, correlation_id: str, provider_error: str | None = None
    ) -> ReconcileOutcome:
        return ReconcileOutcome(
            payment_id=payment.payment_id,
            correlation_id=correlation_id,
            source="poll",
            previous_status=payment.status,
            observed_status=None,
            mapped_status=None,
            status=payment.status,
            written=False,
            provider_error=provider_error,
        )
