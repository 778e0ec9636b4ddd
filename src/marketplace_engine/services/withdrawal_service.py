"""Holder withdrawals and payout callback reconciliation."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from decimal import Decimal
from uuid import UUID

from sqlalchemy import select
from sqlalchemy.orm import Session

from marketplace_engine.config import EngineConfig
from marketplace_engine.errors import NotFoundError, ValidationError
from marketplace_engine.models import AuditLog, WithdrawalRequest, utc_now
from marketplace_engine.providers.base import PaymentProvider, PayoutRequest
from marketplace_engine.services.balance_ledger import BalanceLedger
from marketplace_engine.services.fees import calculate_withdrawal_fee, round_money
from marketplace_engine.services.payment_service import normalize_contact
from marketplace_engine.services.status_mapping import PaymentStatus, map_provider_status

logger = logging.getLogger(__name__)

TERMINAL_WITHDRAWAL_STATUSES = ("completed", "failed")

# Canonical payment status -> withdrawal status; others leave it in flight
CALLBACK_OUTCOMES = {
    PaymentStatus.COMPLETED.value: "completed",
    PaymentStatus.FAILED.value: "failed",
    PaymentStatus.CANCELLED.value: "failed",
}


@dataclass(frozen=True)
class WithdrawalOutcome:
    """Result of applying a payout callback."""

    withdrawal_request_id: UUID
    previous_status: str
    status: str
    written: bool


class WithdrawalService:
    """Withdrawals debit the balance up front and refund it on failure."""

    def __init__(
        self,
        db: Session,
        provider: PaymentProvider,
        ledger: BalanceLedger | None = None,
        config: EngineConfig | None = None,
    ):
        self.db = db
        self.provider = provider
        self.ledger = ledger or BalanceLedger(db)
        self.config = config or EngineConfig()

    def request_withdrawal(
        self,
        *,
        holder_type: str,
        holder_id: UUID,
        amount: Decimal,
        destination: str,
        currency: str = "KES",
    ) -> WithdrawalRequest:
        """Debit a holder balance and hand the disbursement to the provider.

        Raises:
            ValidationError: Non-positive amount, bad destination or
                insufficient balance
        """
        amount = round_money(Decimal(amount))
        if amount <= 0:
            raise ValidationError("Withdrawal amount must be positive", field="amount")
        destination = normalize_contact(destination)

        holder = self.ledger.lock_holder(holder_type, holder_id)
        if Decimal(holder.balance) < amount:
            raise ValidationError(
                f"Insufficient balance: {holder.balance} available, {amount} requested",
                field="amount",
            )

        fee, net = calculate_withdrawal_fee(amount, self.config.withdrawal_fee_rate)
        withdrawal = WithdrawalRequest(
            holder_type=holder_type,
            holder_id=holder_id,
            amount=amount,
            fee=fee,
            net_amount=net,
            destination=destination,
            status="pending",
        )
        self.db.add(withdrawal)
        self.db.flush()
        self._move(withdrawal, None, "pending")

        result = self.provider.initiate_payout(PayoutRequest(
            destination=destination,
            amount=net,
            currency=currency,
            narrative=f"Withdrawal {withdrawal.withdrawal_request_id}",
            local_correlation_id=str(withdrawal.withdrawal_request_id),
        ))
        withdrawal.provider_reference = result.provider_reference
        if result.accepted:
            self._move(withdrawal, withdrawal.status, "processing")
        else:
            withdrawal.failure_reason = result.message or "rejected by provider"
            self._move(withdrawal, withdrawal.status, "failed")
        self.db.flush()
        return withdrawal

    def handle_payout_callback(
        self,
        provider_reference: str,
        observed_status: str | None,
        *,
        reason: str | None = None,
    ) -> WithdrawalOutcome:
        """Apply a provider payout result. Repeat deliveries are no-ops."""
        if not provider_reference:
            raise ValidationError("Provider reference is required", field="provider_reference")

        withdrawal = self.db.scalars(
            select(WithdrawalRequest)
            .where(WithdrawalRequest.provider_reference == provider_reference)
            .with_for_update()
            .execution_options(populate_existing=True)
        ).first()
        if withdrawal is None:
            raise NotFoundError("withdrawal", provider_reference)

        previous = withdrawal.status
        if previous in TERMINAL_WITHDRAWAL_STATUSES:
            return WithdrawalOutcome(withdrawal.withdrawal_request_id, previous, previous, False)

        target = CALLBACK_OUTCOMES.get(map_provider_status(observed_status).value)
        if target is None:
            return WithdrawalOutcome(withdrawal.withdrawal_request_id, previous, previous, False)

        if target == "failed":
            withdrawal.failure_reason = reason or f"provider reported {observed_status}"
        self._move(withdrawal, previous, target)
        withdrawal.processed_at = utc_now()
        self.db.add(AuditLog(
            subject_type="withdrawal",
            subject_id=str(withdrawal.withdrawal_request_id),
            action=f"withdrawal_{target}",
            details={"observed_status": observed_status, "reason": reason},
        ))
        self.db.flush()
        return WithdrawalOutcome(withdrawal.withdrawal_request_id, previous, target, True)

    def _move(
        self,
        withdrawal: WithdrawalRequest,
        from_status: str | None,
        to_status: str,
    ) -> None:
        self.ledger.apply_transition(
            holder_type=withdrawal.holder_type,
            holder_id=withdrawal.holder_id,
            subject_type="withdrawal",
            subject_id=withdrawal.withdrawal_request_id,
            from_status=from_status,
            to_status=to_status,
            amount=Decimal(withdrawal.amount),
        )
        withdrawal.status = to_status
