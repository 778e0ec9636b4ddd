"""Balance Ledger - signed balance deltas tied to status transitions.

Provides:
- A total transition -> delta function per subject type
- Atomic balance mutation under a holder row lock, in the caller's transaction
- Append-only ledger events, idempotent per (holder, transition)
- Balance reconstruction by replay
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from decimal import Decimal
from uuid import UUID

from sqlalchemy import select
from sqlalchemy.orm import Session

from marketplace_engine.errors import NotFoundError
from marketplace_engine.models import Event, LedgerEvent, Organizer, Seller
from marketplace_engine.models.payouts import PAYOUT_STATUSES, WITHDRAWAL_STATUSES
from marketplace_engine.models.tickets import TICKET_STATUSES
from marketplace_engine.services.state_machine import OrderStatus

logger = logging.getLogger(__name__)

HOLDER_MODELS = {
    "seller": Seller,
    "event": Event,
    "organizer": Organizer,
}

ZERO = Decimal("0")


@dataclass(frozen=True)
class LedgerRule:
    """How a subject's status affects its holder's balance.

    While the subject sits in a `counted` status, `sign * amount` is part
    of the holder's balance. Moving into the counted set adds it, moving
    out removes it, anything else changes nothing.
    """

    statuses: frozenset[str]
    counted: frozenset[str]
    sign: int


LEDGER_RULES: dict[str, LedgerRule] = {
    # Ticket revenue accrues to the event while the ticket stands paid
    "ticket": LedgerRule(
        statuses=frozenset(TICKET_STATUSES),
        counted=frozenset({"paid"}),
        sign=1,
    ),
    # Seller earns the order payout once the order completes
    "order": LedgerRule(
        statuses=frozenset(s.value for s in OrderStatus),
        counted=frozenset({OrderStatus.COMPLETED.value}),
        sign=1,
    ),
    # Revenue was counted at order completion; payout processing moves no balance
    "payout": LedgerRule(
        statuses=frozenset(PAYOUT_STATUSES),
        counted=frozenset(),
        sign=1,
    ),
    # Withdrawn money leaves the balance on request and returns if it fails
    "withdrawal": LedgerRule(
        statuses=frozenset(WITHDRAWAL_STATUSES),
        counted=frozenset({"pending", "processing", "completed"}),
        sign=-1,
    ),
}


def compute_delta(
    subject_type: str,
    from_status: str | None,
    to_status: str,
    amount: Decimal,
) -> Decimal:
    """Signed balance change for one subject transition.

    Defined for every (from, to) pair in the subject's vocabulary;
    `from_status=None` means the subject is being created.

    Raises:
        ValueError: Unknown subject type, unknown status, or negative amount
    """
    rule = LEDGER_RULES.get(subject_type)
    if rule is None:
        raise ValueError(f"No ledger rule for subject type '{subject_type}'")
    for status in (from_status, to_status):
        if status is not None and status not in rule.statuses:
            raise ValueError(f"Unknown {subject_type} status '{status}'")
    if amount < 0:
        raise ValueError("Amount must not be negative")

    was_counted = from_status in rule.counted
    is_counted = to_status in rule.counted
    if was_counted == is_counted:
        return ZERO
    if is_counted:
        return rule.sign * amount
    return -rule.sign * amount


@dataclass(frozen=True)
class LedgerPostResult:
    """Result of applying a transition to a holder balance.

    `is_new=False` means this exact transition was already applied and
    nothing changed.
    """

    ledger_event_id: UUID
    delta: Decimal
    balance_after: Decimal
    is_new: bool


@dataclass(frozen=True)
class ReplayResult:
    """Stored balance versus the balance rebuilt from ledger events."""

    holder_type: str
    holder_id: UUID
    stored: Decimal
    replayed: Decimal
    event_count: int

    @property
    def matches(self) -> bool:
        return self.stored == self.replayed


class BalanceLedger:
    """Applies balance deltas inside the caller's transaction.

    Notes:
    - ledger_event is append-only; corrections are new events.
    - The holder row is locked for the rest of the transaction.
    - Never commits; the caller's unit of work owns the boundary.
    """

    def __init__(self, db: Session):
        self.db = db

    def lock_holder(self, holder_type: str, holder_id: UUID) -> Seller | Event | Organizer:
        """Lock and return a balance holder row."""
        model = HOLDER_MODELS.get(holder_type)
        if model is None:
            raise ValueError(f"Unknown holder type '{holder_type}'")
        pk = model.__mapper__.primary_key[0]
        holder = self.db.scalars(
            select(model)
            .where(pk == holder_id)
            .with_for_update()
            .execution_options(populate_existing=True)
        ).first()
        if holder is None:
            raise NotFoundError(holder_type, holder_id)
        return holder

    def apply_transition(
        self,
        *,
        holder_type: str,
        holder_id: UUID,
        subject_type: str,
        subject_id: UUID,
        from_status: str | None,
        to_status: str,
        amount: Decimal,
        reason: str | None = None,
    ) -> LedgerPostResult:
        """Apply the balance effect of one subject transition.

        Args:
            holder_type: seller, event or organizer
            holder_id: Balance holder
            subject_type: ticket, order, payout or withdrawal
            subject_id: Subject whose status changed
            from_status: Previous status (None on creation)
            to_status: New status
            amount: Unsigned subject amount
            reason: Free text kept on the ledger event

        Returns:
            LedgerPostResult; check `is_new` before acting on it.
        """
        delta = compute_delta(subject_type, from_status, to_status, amount)
        key = f"{subject_type}:{subject_id}:{from_status or 'new'}->{to_status}"
        return self._post(
            holder_type=holder_type,
            holder_id=holder_id,
            subject_type=subject_type,
            subject_id=subject_id,
            from_status=from_status,
            to_status=to_status,
            delta=delta,
            idempotency_key=key,
            reason=reason,
        )

    def reverse_contributions(
        self,
        *,
        subject_type: str,
        subject_id: UUID,
        to_status: str,
        reason: str,
    ) -> list[LedgerPostResult]:
        """Reverse whatever a subject has contributed to any holder so far.

        Used by cancellation: nets the subject's recorded deltas per holder
        and posts the negation. Holders with a zero net get no event.
        """
        events = self.db.scalars(
            select(LedgerEvent)
            .where(LedgerEvent.subject_type == subject_type)
            .where(LedgerEvent.subject_id == subject_id)
            .order_by(LedgerEvent.created_at)
        ).all()

        net: dict[tuple[str, UUID], Decimal] = {}
        for event in events:
            holder = (event.holder_type, event.holder_id)
            net[holder] = net.get(holder, ZERO) + Decimal(event.delta)

        results = []
        for (holder_type, holder_id), contribution in net.items():
            if contribution == 0:
                continue
            results.append(
                self._post(
                    holder_type=holder_type,
                    holder_id=holder_id,
                    subject_type=subject_type,
                    subject_id=subject_id,
                    from_status=None,
                    to_status=to_status,
                    delta=-contribution,
                    idempotency_key=f"{subject_type}:{subject_id}:reversal",
                    reason=reason,
                )
            )
        return results

    def _post(
        self,
        *,
        holder_type: str,
        holder_id: UUID,
        subject_type: str,
        subject_id: UUID,
        from_status: str | None,
        to_status: str,
        delta: Decimal,
        idempotency_key: str,
        reason: str | None,
    ) -> LedgerPostResult:
        holder = self.lock_holder(holder_type, holder_id)

        existing = self.db.scalars(
            select(LedgerEvent)
            .where(LedgerEvent.holder_type == holder_type)
            .where(LedgerEvent.holder_id == holder_id)
            .where(LedgerEvent.idempotency_key == idempotency_key)
        ).first()
        if existing is not None:
            return LedgerPostResult(
                ledger_event_id=existing.ledger_event_id,
                delta=Decimal(existing.delta),
                balance_after=Decimal(existing.balance_after),
                is_new=False,
            )

        holder.balance = Decimal(holder.balance) + delta
        event = LedgerEvent(
            holder_type=holder_type,
            holder_id=holder_id,
            subject_type=subject_type,
            subject_id=subject_id,
            from_status=from_status,
            to_status=to_status,
            delta=delta,
            balance_after=holder.balance,
            idempotency_key=idempotency_key,
            reason=reason,
        )
        self.db.add(event)
        self.db.flush()

        logger.info(
            "Applied %s to %s %s for %s %s (%s -> %s), balance now %s",
            delta,
            holder_type,
            holder_id,
            subject_type,
            subject_id,
            from_status or "new",
            to_status,
            holder.balance,
        )
        return LedgerPostResult(
            ledger_event_id=event.ledger_event_id,
            delta=delta,
            balance_after=Decimal(holder.balance),
            is_new=True,
        )

    def replay_balance(self, holder_type: str, holder_id: UUID) -> ReplayResult:
        """Rebuild a holder balance from its ledger events."""
        holder = self.db.get(HOLDER_MODELS[holder_type], holder_id)
        if holder is None:
            raise NotFoundError(holder_type, holder_id)

        deltas = self.db.scalars(
            select(LedgerEvent.delta)
            .where(LedgerEvent.holder_type == holder_type)
            .where(LedgerEvent.holder_id == holder_id)
            .order_by(LedgerEvent.created_at)
        ).all()

        replayed = sum((Decimal(d) for d in deltas), ZERO)
        return ReplayResult(
            holder_type=holder_type,
            holder_id=holder_id,
            stored=Decimal(holder.balance),
            replayed=replayed,
            event_count=len(deltas),
        )
