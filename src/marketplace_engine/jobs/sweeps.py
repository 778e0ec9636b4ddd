"""Periodic sweeps over persisted state.

Each sweep is driven entirely by what is in the database, so it is safe
to run from cron, after a restart, or twice in a row. Candidates are
selected up front and each one runs in its own transaction; one failing
item is recorded and the sweep moves on.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, Callable
from uuid import UUID

from sqlalchemy import Select, select
from sqlalchemy.orm import Session

from marketplace_engine.config import EngineConfig
from marketplace_engine.database import run_in_transaction
from marketplace_engine.models import (
    AuditLog,
    Order,
    Payment,
    Payout,
    Ticket,
    WithdrawalRequest,
    utc_now,
)
from marketplace_engine.providers.base import PaymentProvider
from marketplace_engine.services.dispatcher import SideEffectDispatcher
from marketplace_engine.services.order_service import OrderService
from marketplace_engine.services.payment_store import PaymentStore
from marketplace_engine.services.reconciler import PaymentReconciler
from marketplace_engine.services.state_machine import OrderStatus, OrderTrigger
from marketplace_engine.services.webhook_gate import WebhookIngestionGate

logger = logging.getLogger(__name__)


@dataclass
class SweepResult:
    """Result of one sweep run."""

    name: str
    examined: int = 0
    changed: int = 0
    errors: list[dict[str, Any]] = field(default_factory=list)

    @property
    def success(self) -> bool:
        return not self.errors


def _select_ids(session_factory: Callable[[], Session], query: Select) -> list[UUID]:
    with session_factory() as session:
        return list(session.scalars(query))


def _run_each(
    result: SweepResult,
    session_factory: Callable[[], Session],
    ids: list[UUID],
    work: Callable[[Session, UUID], Any],
    error_code: str,
) -> None:
    """Run `work` for each id in its own transaction, counting truthy results."""
    result.examined = len(ids)
    for item_id in ids:
        try:
            outcome = run_in_transaction(
                lambda session, item_id=item_id: work(session, item_id),
                session_factory=session_factory,
            )
        except Exception as e:
            logger.exception("%s failed for %s", result.name, item_id)
            result.errors.append({"code": error_code, "id": str(item_id), "message": str(e)})
            continue
        if outcome:
            result.changed += 1


def mature_payouts(
    session_factory: Callable[[], Session],
    config: EngineConfig,
    as_of: datetime | None = None,
) -> SweepResult:
    """Move payouts past their maturation window to processing."""
    as_of = as_of or utc_now()
    result = SweepResult(name="mature-payouts")
    ids = _select_ids(
        session_factory,
        select(Payout.payout_id)
        .where(Payout.status == "pending")
        .where(Payout.eligible_at <= as_of)
        .order_by(Payout.eligible_at),
    )
    _run_each(
        result,
        session_factory,
        ids,
        lambda session, payout_id: SideEffectDispatcher(session, config=config).mature_payout(
            payout_id, as_of
        ),
        "MATURATION_ERROR",
    )
    logger.info("Payout maturation: %d of %d matured", result.changed, result.examined)
    return result


def settle_payouts(
    session_factory: Callable[[], Session],
    config: EngineConfig,
) -> SweepResult:
    """Settle processing payouts to their sellers' wallet balances."""
    result = SweepResult(name="settle-payouts")
    ids = _select_ids(
        session_factory,
        select(Payout.payout_id)
        .where(Payout.status == "processing")
        .order_by(Payout.processing_started_at),
    )

    def work(session: Session, payout_id: UUID) -> bool:
        payout = SideEffectDispatcher(session, config=config).record_payout_result(
            payout_id, "completed"
        )
        return payout.status == "completed"

    _run_each(result, session_factory, ids, work, "SETTLEMENT_ERROR")
    logger.info("Payout settlement: %d of %d settled", result.changed, result.examined)
    return result


def repoll_pending_payments(
    session_factory: Callable[[], Session],
    provider: PaymentProvider,
    config: EngineConfig,
    now: datetime | None = None,
) -> SweepResult:
    """Poll the provider for every recent payment still pending or processing."""
    result = SweepResult(name="repoll-pending")
    cutoff = (now or utc_now()) - timedelta(hours=config.pending_payment_lookback_hours)

    with session_factory() as session:
        invoice_ids = [p.invoice_id for p in PaymentStore(session).list_non_terminal(cutoff)]
    result.examined = len(invoice_ids)

    for invoice_id in invoice_ids:
        def work(session: Session, invoice_id: str = invoice_id):
            return PaymentReconciler(session, provider, config=config).poll_and_reconcile(invoice_id)

        try:
            outcome = run_in_transaction(work, session_factory=session_factory)
        except Exception as e:
            logger.exception("Re-poll of %s failed", invoice_id)
            result.errors.append({"code": "REPOLL_ERROR", "invoice_id": invoice_id, "message": str(e)})
            continue
        if outcome.provider_error:
            result.errors.append({
                "code": "PROVIDER_ERROR",
                "invoice_id": invoice_id,
                "message": outcome.provider_error,
            })
        elif outcome.written:
            result.changed += 1

    logger.info(
        "Pending payment re-poll: %d updated of %d, %d errors",
        result.changed,
        result.examined,
        len(result.errors),
    )
    return result


def repair_missing_tickets(
    session_factory: Callable[[], Session],
    config: EngineConfig,
) -> SweepResult:
    """Issue tickets for completed ticket payments that have none."""
    result = SweepResult(name="repair-artifacts")

    with session_factory() as session:
        payment_ids = list(session.scalars(
            select(Payment.payment_id)
            .outerjoin(Ticket, Ticket.payment_id == Payment.payment_id)
            .where(Payment.status == "completed")
            .where(Payment.event_id.is_not(None))
            .where(Ticket.ticket_id.is_(None))
        ))
    result.examined = len(payment_ids)

    for payment_id in payment_ids:
        def work(session: Session, payment_id=payment_id):
            payment = PaymentStore(session).get_for_update(payment_id)
            return SideEffectDispatcher(session, config=config).issue_ticket(payment)

        try:
            dispatch = run_in_transaction(work, session_factory=session_factory)
        except Exception as e:
            logger.exception("Ticket repair for payment %s failed", payment_id)
            result.errors.append({"code": "REPAIR_ERROR", "payment_id": str(payment_id), "message": str(e)})
            continue
        if dispatch.is_new:
            result.changed += 1

    logger.info("Artifact repair: %d tickets issued of %d candidates", result.changed, result.examined)
    return result


def purge_webhook_logs(
    session_factory: Callable[[], Session],
    config: EngineConfig,
    now: datetime | None = None,
) -> SweepResult:
    """Delete webhook logs past the retention window."""
    deleted = run_in_transaction(
        lambda session: WebhookIngestionGate(session, config=config).purge_logs(now),
        session_factory=session_factory,
    )
    logger.info("Purged %d webhook log(s)", deleted)
    return SweepResult(name="purge-webhook-logs", examined=deleted, changed=deleted)


def _fire_deadlines(
    name: str,
    session_factory: Callable[[], Session],
    config: EngineConfig,
    query: Select,
    trigger: OrderTrigger,
    reason: str,
) -> SweepResult:
    result = SweepResult(name=name)
    ids = _select_ids(session_factory, query)
    _run_each(
        result,
        session_factory,
        ids,
        lambda session, order_id: OrderService(session, config=config).fire_deadline(
            order_id, trigger, reason
        ),
        "DEADLINE_ERROR",
    )
    logger.info("%s: %d of %d orders moved", name, result.changed, result.examined)
    return result


def expire_seller_dropoffs(
    session_factory: Callable[[], Session],
    config: EngineConfig,
    now: datetime | None = None,
) -> SweepResult:
    """Cancel and refund delivery orders the seller never dropped off."""
    now = now or utc_now()
    return _fire_deadlines(
        "seller-dropoff-deadlines",
        session_factory,
        config,
        select(Order.order_id)
        .where(Order.status == OrderStatus.DELIVERY_PENDING.value)
        .where(Order.seller_dropoff_deadline < now)
        .where(Order.auto_cancelled_reason.is_(None)),
        OrderTrigger.SELLER_DROPOFF_EXPIRED,
        f"Seller did not drop off items within {config.seller_dropoff_hours} hours",
    )


def expire_buyer_pickups(
    session_factory: Callable[[], Session],
    config: EngineConfig,
    now: datetime | None = None,
) -> SweepResult:
    """Cancel and refund dropped-off orders the buyer never collected."""
    now = now or utc_now()
    return _fire_deadlines(
        "buyer-pickup-deadlines",
        session_factory,
        config,
        select(Order.order_id)
        .where(Order.status == OrderStatus.DELIVERY_COMPLETE.value)
        .where(Order.buyer_pickup_deadline < now)
        .where(Order.auto_cancelled_reason.is_(None)),
        OrderTrigger.BUYER_PICKUP_EXPIRED,
        f"Buyer did not pick up the order within {config.buyer_pickup_hours} hours",
    )


def release_service_orders(
    session_factory: Callable[[], Session],
    config: EngineConfig,
    now: datetime | None = None,
) -> SweepResult:
    """Complete paid service orders once their booking date is well past."""
    cutoff = (now or utc_now()) - timedelta(hours=config.service_release_hours)
    return _fire_deadlines(
        "service-release",
        session_factory,
        config,
        select(Order.order_id)
        .where(Order.status.in_([
            OrderStatus.SERVICE_PENDING.value,
            OrderStatus.CONFIRMED.value,
        ]))
        .where(Order.booking_date < cutoff),
        OrderTrigger.SERVICE_RELEASE_DUE,
        f"Service payment released {config.service_release_hours} hours after booking",
    )


def run_order_deadlines(
    session_factory: Callable[[], Session],
    config: EngineConfig,
    now: datetime | None = None,
) -> list[SweepResult]:
    """Run every order deadline sweep."""
    return [
        expire_seller_dropoffs(session_factory, config, now),
        expire_buyer_pickups(session_factory, config, now),
        release_service_orders(session_factory, config, now),
    ]


def flag_stuck_withdrawals(
    session_factory: Callable[[], Session],
    config: EngineConfig,
    now: datetime | None = None,
) -> SweepResult:
    """Flag processing withdrawals the provider never reported back on.

    Requests without a provider reference are marked
    `no_provider_reference`, the rest `needs_manual_review`. Flagged
    requests stay processing; a later callback still settles them.
    """
    now = now or utc_now()
    result = SweepResult(name="flag-stuck-withdrawals")
    ids = _select_ids(
        session_factory,
        select(WithdrawalRequest.withdrawal_request_id)
        .where(WithdrawalRequest.status == "processing")
        .where(WithdrawalRequest.reconciliation_flag.is_(None))
        .where(WithdrawalRequest.created_at < now - timedelta(hours=config.withdrawal_stuck_hours))
        .where(
            WithdrawalRequest.created_at
            > now - timedelta(hours=config.withdrawal_stuck_max_age_hours)
        )
        .order_by(WithdrawalRequest.created_at),
    )

    def work(session: Session, withdrawal_id: UUID) -> bool:
        withdrawal = session.scalars(
            select(WithdrawalRequest)
            .where(WithdrawalRequest.withdrawal_request_id == withdrawal_id)
            .with_for_update()
            .execution_options(populate_existing=True)
        ).first()
        if withdrawal is None or withdrawal.status != "processing" or withdrawal.reconciliation_flag:
            return False
        flag = "needs_manual_review" if withdrawal.provider_reference else "no_provider_reference"
        withdrawal.reconciliation_flag = flag
        session.add(AuditLog(
            subject_type="withdrawal",
            subject_id=str(withdrawal_id),
            action="withdrawal_flagged",
            details={"flag": flag, "provider_reference": withdrawal.provider_reference},
        ))
        logger.warning("Withdrawal %s stuck in processing, flagged %s", withdrawal_id, flag)
        return True

    _run_each(result, session_factory, ids, work, "WITHDRAWAL_FLAG_ERROR")
    return result
