"""Tests for holder withdrawals."""

from decimal import Decimal
from uuid import uuid4

import pytest

from marketplace_engine.config import EngineConfig
from marketplace_engine.errors import NotFoundError, ValidationError
from marketplace_engine.providers.base import PayoutResult
from marketplace_engine.services.balance_ledger import BalanceLedger
from marketplace_engine.services.withdrawal_service import WithdrawalService


@pytest.fixture
def funded_seller(session, test_data):
    """Seller holding 1000.00 earned from a completed order."""
    seller = test_data.create_seller(session)
    BalanceLedger(session).apply_transition(
        holder_type="seller",
        holder_id=seller.seller_id,
        subject_type="order",
        subject_id=uuid4(),
        from_status="PROCESSING",
        to_status="COMPLETED",
        amount=Decimal("1000.00"),
    )
    return seller


class RejectingProvider:
    """Provider that refuses every disbursement."""

    def initiate_payout(self, request):
        return PayoutResult(provider_reference="REJ-1", accepted=False, message="daily limit")


class TestRequestWithdrawal:
    """Test withdrawal requests."""

    def test_request_debits_balance(self, session, provider, config, funded_seller):
        """The amount leaves the balance as soon as the request is made."""
        service = WithdrawalService(session, provider, config=config)

        withdrawal = service.request_withdrawal(
            holder_type="seller",
            holder_id=funded_seller.seller_id,
            amount=Decimal("400.00"),
            destination="0712 345 678",
        )

        assert withdrawal.status == "processing"
        assert withdrawal.provider_reference.startswith("STUBPO-")
        assert withdrawal.destination == "0712345678"
        assert Decimal(funded_seller.balance) == Decimal("600.00")

    def test_withdrawal_fee(self, session, provider, funded_seller):
        """The fee is taken from the withdrawn amount."""
        config = EngineConfig(withdrawal_fee_rate=Decimal("0.01"))

        withdrawal = WithdrawalService(session, provider, config=config).request_withdrawal(
            holder_type="seller",
            holder_id=funded_seller.seller_id,
            amount=Decimal("500.00"),
            destination="254712345678",
        )

        assert withdrawal.fee == Decimal("5.00")
        assert withdrawal.net_amount == Decimal("495.00")

    def test_insufficient_balance(self, session, provider, config, funded_seller):
        """Requests above the balance are rejected without a debit."""
        with pytest.raises(ValidationError):
            WithdrawalService(session, provider, config=config).request_withdrawal(
                holder_type="seller",
                holder_id=funded_seller.seller_id,
                amount=Decimal("1000.01"),
                destination="254712345678",
            )
        assert Decimal(funded_seller.balance) == Decimal("1000.00")

    def test_rejected_by_provider_refunds(self, session, config, funded_seller):
        """A refused disbursement fails immediately and returns the money."""
        withdrawal = WithdrawalService(session, RejectingProvider(), config=config).request_withdrawal(
            holder_type="seller",
            holder_id=funded_seller.seller_id,
            amount=Decimal("300.00"),
            destination="254712345678",
        )

        assert withdrawal.status == "failed"
        assert withdrawal.failure_reason == "daily limit"
        assert Decimal(funded_seller.balance) == Decimal("1000.00")


class TestPayoutCallback:
    """Test provider disbursement callbacks."""

    @pytest.fixture
    def withdrawal(self, session, provider, config, funded_seller):
        return WithdrawalService(session, provider, config=config).request_withdrawal(
            holder_type="seller",
            holder_id=funded_seller.seller_id,
            amount=Decimal("400.00"),
            destination="254712345678",
        )

    def test_failure_refunds_once(self, session, provider, config, funded_seller, withdrawal):
        """A failure callback restores the balance, repeats change nothing."""
        service = WithdrawalService(session, provider, config=config)

        first = service.handle_payout_callback(withdrawal.provider_reference, "FAILED", reason="bad MSISDN")
        second = service.handle_payout_callback(withdrawal.provider_reference, "FAILED")

        assert first.written is True
        assert first.status == "failed"
        assert second.written is False
        assert withdrawal.failure_reason == "bad MSISDN"
        assert Decimal(funded_seller.balance) == Decimal("1000.00")

    def test_completion_keeps_debit(self, session, provider, config, funded_seller, withdrawal):
        """A completion callback leaves the debit in place."""
        service = WithdrawalService(session, provider, config=config)

        outcome = service.handle_payout_callback(withdrawal.provider_reference, "SUCCESS")
        late_failure = service.handle_payout_callback(withdrawal.provider_reference, "FAILED")

        assert outcome.status == "completed"
        assert late_failure.written is False
        assert withdrawal.processed_at is not None
        assert Decimal(funded_seller.balance) == Decimal("600.00")

        replay = BalanceLedger(session).replay_balance("seller", funded_seller.seller_id)
        assert replay.matches

    def test_in_flight_status_ignored(self, session, provider, config, withdrawal):
        """Non-terminal callbacks leave the withdrawal processing."""
        outcome = WithdrawalService(session, provider, config=config).handle_payout_callback(
            withdrawal.provider_reference, "IN_PROGRESS"
        )
        assert outcome.written is False
        assert withdrawal.status == "processing"

    def test_unknown_reference(self, session, provider, config):
        """Callbacks for unknown references raise NotFoundError."""
        with pytest.raises(NotFoundError):
            WithdrawalService(session, provider, config=config).handle_payout_callback("NOPE", "SUCCESS")
