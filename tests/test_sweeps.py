"""Tests for the periodic sweeps and the operational CLI."""

from datetime import timedelta
from decimal import Decimal

import pytest
from sqlalchemy import func, select

from marketplace_engine.cli import MarketplaceCli
from marketplace_engine.config import Settings
from marketplace_engine.jobs import sweeps
from marketplace_engine.models import (
    AuditLog,
    Buyer,
    Event,
    Order,
    Payment,
    Payout,
    Seller,
    Ticket,
    WebhookLog,
    WithdrawalRequest,
    utc_now,
)
from marketplace_engine.services.dispatcher import SideEffectDispatcher
from marketplace_engine.services.order_service import OrderItemInput, OrderService
from marketplace_engine.services.reconciler import PaymentReconciler
from marketplace_engine.services.state_machine import OrderTrigger


def count(session, model, *conditions) -> int:
    return session.scalar(select(func.count()).select_from(model).where(*conditions))


def settled_debt_orders(session_factory, config, test_data, n=1):
    """Commit n settled debt orders for one seller; returns their payouts."""
    with session_factory() as session:
        seller = test_data.create_seller(session)
        orders = OrderService(session, config=config)
        order_ids = []
        for _ in range(n):
            order = orders.create_order(
                seller_id=seller.seller_id,
                items=[OrderItemInput(name="Lesson", price=Decimal("300"), quantity=1, product_type="service")],
                is_debt=True,
            )
            orders.settle_debt(order.order_id)
            order_ids.append(order.order_id)
        session.commit()
        return [
            session.scalars(select(Payout).where(Payout.order_id == order_id)).one()
            for order_id in order_ids
        ]


def paid_order(session, provider, config, test_data, *, product_type="physical", booking_date=None):
    """Create an order for a new buyer and complete its payment."""
    seller = test_data.create_seller(session)
    buyer = test_data.create_buyer(session)
    orders = OrderService(session, config=config)
    order = orders.create_order(
        seller_id=seller.seller_id,
        buyer_id=buyer.buyer_id,
        items=[OrderItemInput(name="Item", price=Decimal("800"), quantity=1, product_type=product_type)],
        booking_date=booking_date,
    )
    payment = test_data.create_order_payment(session, order)
    PaymentReconciler(session, provider, config=config, orders=orders).reconcile(
        payment.invoice_id, "COMPLETE"
    )
    return order


class TestRepollPending:
    """Test the pending payment re-poll sweep."""

    def test_repoll_updates_changed_payments(self, session_factory, provider, config, test_data):
        """Payments the provider now reports differently are reconciled."""
        with session_factory() as session:
            event, ticket_type = test_data.create_event(session)
            done = test_data.create_ticket_payment(session, event, ticket_type)
            waiting = test_data.create_ticket_payment(session, event, ticket_type)
            session.commit()
        provider.set_status(done.invoice_id, "COMPLETE")

        result = sweeps.repoll_pending_payments(session_factory, provider, config)

        assert result.examined == 2
        assert result.changed == 1
        assert result.success
        with session_factory() as session:
            assert session.get(Payment, done.payment_id).status == "completed"
            assert session.get(Payment, waiting.payment_id).status == "pending"
            assert count(session, Ticket) == 1

    def test_repoll_reports_provider_errors(self, session_factory, provider, config, test_data):
        """Provider failures are collected and the sweep carries on."""
        with session_factory() as session:
            event, ticket_type = test_data.create_event(session)
            test_data.create_ticket_payment(session, event, ticket_type)
            session.commit()
        provider.fail_next_poll()

        result = sweeps.repoll_pending_payments(session_factory, provider, config)

        assert result.success is False
        assert result.errors[0]["code"] == "PROVIDER_ERROR"

    def test_repoll_skips_old_payments(self, session_factory, provider, config, test_data):
        """Payments outside the lookback window are left alone."""
        with session_factory() as session:
            event, ticket_type = test_data.create_event(session)
            test_data.create_ticket_payment(session, event, ticket_type)
            session.commit()

        result = sweeps.repoll_pending_payments(
            session_factory, provider, config, now=utc_now() + timedelta(days=3)
        )

        assert result.examined == 0
        assert provider.poll_count == 0


class TestRepairMissingTickets:
    """Test the missing-ticket repair sweep."""

    def test_issues_missing_ticket_once(self, session_factory, config, test_data):
        """Completed ticket payments without a ticket get one, once."""
        with session_factory() as session:
            event, ticket_type = test_data.create_event(session)
            test_data.create_ticket_payment(session, event, ticket_type, status="completed")
            session.commit()

        first = sweeps.repair_missing_tickets(session_factory, config)
        second = sweeps.repair_missing_tickets(session_factory, config)

        assert (first.examined, first.changed) == (1, 1)
        assert (second.examined, second.changed) == (0, 0)
        with session_factory() as session:
            assert Decimal(session.get(Event, event.event_id).balance) == Decimal(ticket_type.price)

    def test_unrepairable_payment_is_reported(self, session_factory, config, test_data):
        """Payments that still cannot produce a ticket show up as errors."""
        with session_factory() as session:
            event, ticket_type = test_data.create_event(session)
            test_data.create_ticket_payment(
                session, event, ticket_type, status="completed", payer_email=None
            )
            session.commit()

        result = sweeps.repair_missing_tickets(session_factory, config)

        assert result.changed == 0
        assert result.errors[0]["code"] == "REPAIR_ERROR"


class TestMaturePayouts:
    """Test the payout maturation and settlement sweeps."""

    def test_matures_eligible_payouts(self, session_factory, config, test_data):
        """Only payouts past their window move to processing."""
        [payout] = settled_debt_orders(session_factory, config, test_data)

        early = sweeps.mature_payouts(session_factory, config, as_of=utc_now())
        late = sweeps.mature_payouts(session_factory, config, as_of=utc_now() + timedelta(hours=25))

        assert early.changed == 0
        assert late.changed == 1
        with session_factory() as session:
            assert session.get(Payout, payout.payout_id).status == "processing"

    def test_one_failing_payout_does_not_block_others(
        self, session_factory, config, test_data, monkeypatch
    ):
        """A payout whose write fails is reported; the others still commit."""
        broken, healthy = settled_debt_orders(session_factory, config, test_data, n=2)
        transition = SideEffectDispatcher.transition_payout

        def failing_transition(self, payout, to_status):
            if payout.payout_id == broken.payout_id:
                payout.amount = Decimal("-1")
                self.db.flush()
            transition(self, payout, to_status)

        monkeypatch.setattr(SideEffectDispatcher, "transition_payout", failing_transition)

        result = sweeps.mature_payouts(
            session_factory, config, as_of=utc_now() + timedelta(hours=25)
        )

        assert result.examined == 2
        assert result.changed == 1
        assert [e["id"] for e in result.errors] == [str(broken.payout_id)]
        assert result.errors[0]["code"] == "MATURATION_ERROR"
        with session_factory() as session:
            assert session.get(Payout, healthy.payout_id).status == "processing"
            assert session.get(Payout, broken.payout_id).status == "pending"

    def test_settles_processing_payouts(self, session_factory, config, test_data):
        """Matured payouts settle to the wallet without moving the balance."""
        [payout] = settled_debt_orders(session_factory, config, test_data)
        sweeps.mature_payouts(session_factory, config, as_of=utc_now() + timedelta(hours=25))

        first = sweeps.settle_payouts(session_factory, config)
        second = sweeps.settle_payouts(session_factory, config)

        assert (first.examined, first.changed) == (1, 1)
        assert second.examined == 0
        with session_factory() as session:
            stored = session.get(Payout, payout.payout_id)
            assert stored.status == "completed"
            assert stored.settled_at is not None
            assert Decimal(session.get(Seller, payout.seller_id).balance) == Decimal("273")

    def test_pending_payouts_are_not_settled(self, session_factory, config, test_data):
        """Settlement only picks up payouts that have matured."""
        [payout] = settled_debt_orders(session_factory, config, test_data)

        result = sweeps.settle_payouts(session_factory, config)

        assert result.examined == 0
        with session_factory() as session:
            assert session.get(Payout, payout.payout_id).status == "pending"


class TestOrderDeadlines:
    """Test the drop-off, pickup and service release sweeps."""

    def test_missed_dropoff_cancels_and_refunds(self, session_factory, provider, config, test_data):
        """A delivery order past its drop-off deadline is cancelled with a refund."""
        with session_factory() as session:
            order = paid_order(session, provider, config, test_data)
            assert order.status == "DELIVERY_PENDING"
            session.commit()

        early = sweeps.expire_seller_dropoffs(session_factory, config, now=utc_now() + timedelta(hours=1))
        late = sweeps.expire_seller_dropoffs(session_factory, config, now=utc_now() + timedelta(hours=49))
        again = sweeps.expire_seller_dropoffs(session_factory, config, now=utc_now() + timedelta(hours=49))

        assert early.examined == 0
        assert (late.examined, late.changed) == (1, 1)
        assert again.examined == 0
        with session_factory() as session:
            stored = session.get(Order, order.order_id)
            assert stored.status == "CANCELLED"
            assert stored.payment_status == "refunded"
            assert "drop off" in stored.auto_cancelled_reason
            assert session.get(Buyer, order.buyer_id).refunds == 1
            assert stored.history[-1].trigger == OrderTrigger.SELLER_DROPOFF_EXPIRED.value

    def test_missed_pickup_cancels(self, session_factory, provider, config, test_data):
        """A dropped-off order the buyer never collects is cancelled."""
        with session_factory() as session:
            order = paid_order(session, provider, config, test_data)
            OrderService(session, config=config).fire(
                order.order_id, OrderTrigger.SELLER_MARKS_DELIVERED, actor_type="seller"
            )
            session.commit()

        dropoff = sweeps.expire_seller_dropoffs(session_factory, config, now=utc_now() + timedelta(hours=49))
        pickup = sweeps.expire_buyer_pickups(session_factory, config, now=utc_now() + timedelta(hours=25))

        assert dropoff.examined == 0
        assert pickup.changed == 1
        with session_factory() as session:
            stored = session.get(Order, order.order_id)
            assert stored.status == "CANCELLED"
            assert "pick up" in stored.auto_cancelled_reason
            assert count(session, Payout, Payout.order_id == order.order_id) == 0

    def test_service_release_completes_order(self, session_factory, provider, config, test_data):
        """A paid service order completes a day after its booking date."""
        with session_factory() as session:
            order = paid_order(
                session, provider, config, test_data,
                product_type="service", booking_date=utc_now(),
            )
            assert order.status == "SERVICE_PENDING"
            session.commit()

        early = sweeps.release_service_orders(session_factory, config, now=utc_now() + timedelta(hours=2))
        late = sweeps.release_service_orders(session_factory, config, now=utc_now() + timedelta(hours=25))

        assert early.examined == 0
        assert late.changed == 1
        with session_factory() as session:
            stored = session.get(Order, order.order_id)
            assert stored.status == "COMPLETED"
            assert stored.auto_cancelled_reason is None
            assert count(session, Payout, Payout.order_id == order.order_id) == 1
            assert Decimal(session.get(Seller, order.seller_id).balance) == Decimal("728")

    def test_orders_without_booking_date_wait(self, session_factory, provider, config, test_data):
        """Service orders with no booking date are left for the seller to confirm."""
        with session_factory() as session:
            paid_order(session, provider, config, test_data, product_type="service")
            session.commit()

        result = sweeps.release_service_orders(
            session_factory, config, now=utc_now() + timedelta(days=30)
        )

        assert result.examined == 0

    def test_run_order_deadlines(self, session_factory, config):
        """All three deadline sweeps run together."""
        results = sweeps.run_order_deadlines(session_factory, config)

        assert [r.name for r in results] == [
            "seller-dropoff-deadlines",
            "buyer-pickup-deadlines",
            "service-release",
        ]
        assert all(r.success for r in results)


class TestFlagStuckWithdrawals:
    """Test the stuck withdrawal sweep."""

    @pytest.fixture
    def withdrawals(self, session_factory, test_data):
        """Two processing withdrawals, one without a provider reference, and a completed one."""
        with session_factory() as session:
            seller = test_data.create_seller(session)
            rows = {
                name: WithdrawalRequest(
                    holder_type="seller",
                    holder_id=seller.seller_id,
                    amount=Decimal("100"),
                    fee=Decimal("0"),
                    net_amount=Decimal("100"),
                    destination="254712345678",
                    status=status,
                    provider_reference=reference,
                )
                for name, status, reference in [
                    ("referenced", "processing", "STUBPO-REF1"),
                    ("unreferenced", "processing", None),
                    ("done", "completed", "STUBPO-REF2"),
                ]
            }
            session.add_all(rows.values())
            session.commit()
        return rows

    def test_flags_stuck_withdrawals(self, session_factory, config, withdrawals):
        """Processing withdrawals past the threshold get a reconciliation flag once."""
        first = sweeps.flag_stuck_withdrawals(session_factory, config, now=utc_now() + timedelta(hours=3))
        second = sweeps.flag_stuck_withdrawals(session_factory, config, now=utc_now() + timedelta(hours=3))

        assert (first.examined, first.changed) == (2, 2)
        assert second.examined == 0
        with session_factory() as session:
            def flag(name):
                return session.get(
                    WithdrawalRequest, withdrawals[name].withdrawal_request_id
                ).reconciliation_flag

            assert flag("referenced") == "needs_manual_review"
            assert flag("unreferenced") == "no_provider_reference"
            assert flag("done") is None
            assert count(session, AuditLog, AuditLog.action == "withdrawal_flagged") == 2

    def test_recent_and_old_withdrawals_are_skipped(self, session_factory, config, withdrawals):
        """Only requests inside the stuck window are flagged."""
        recent = sweeps.flag_stuck_withdrawals(session_factory, config, now=utc_now())
        old = sweeps.flag_stuck_withdrawals(session_factory, config, now=utc_now() + timedelta(hours=49))

        assert recent.examined == 0
        assert old.examined == 0


class TestPurgeWebhookLogs:
    """Test the webhook log retention sweep."""

    def test_purges_expired_logs(self, session_factory, config):
        """Expired logs are deleted and counted."""
        with session_factory() as session:
            session.add(WebhookLog(
                correlation_id="INV-OLD",
                source_address="10.0.0.1",
                payload={"state": "COMPLETE"},
                created_at=utc_now() - timedelta(days=45),
            ))
            session.commit()

        result = sweeps.purge_webhook_logs(session_factory, config)

        assert result.changed == 1
        with session_factory() as session:
            assert count(session, WebhookLog) == 0


class TestMarketplaceCli:
    """Test the operational CLI."""

    @pytest.fixture
    def cli(self, session_factory):
        return MarketplaceCli(Settings.from_env(), session_factory)

    def test_no_command_prints_help(self, cli):
        """Running without a command is an error."""
        assert cli.run([]) == 1

    def test_replay_balance_match(self, cli, session_factory, provider, config, test_data, capsys):
        """A balance built through the ledger replays to a match."""
        with session_factory() as session:
            event, ticket_type = test_data.create_event(session)
            payment = test_data.create_ticket_payment(session, event, ticket_type)
            session.commit()
        provider.set_status(payment.invoice_id, "COMPLETE")
        sweeps.repoll_pending_payments(session_factory, provider, config)

        code = cli.run(["replay-balance", "--holder-type", "event", "--holder-id", str(event.event_id)])

        assert code == 0
        assert "Replay: MATCH" in capsys.readouterr().out

    def test_replay_balance_mismatch(self, cli, session_factory, test_data, capsys):
        """A balance edited outside the ledger is reported."""
        with session_factory() as session:
            event, _ = test_data.create_event(session)
            event.balance = Decimal("10.00")
            session.commit()

        code = cli.run(["replay-balance", "--holder-type", "event", "--holder-id", str(event.event_id)])

        assert code == 1
        assert "MISMATCH" in capsys.readouterr().out

    def test_sweep_command(self, cli):
        """Sweep commands exit zero when nothing fails."""
        assert cli.run(["purge-webhook-logs"]) == 0
        assert cli.run(["repair-artifacts"]) == 0
        assert cli.run(["settle-payouts"]) == 0
        assert cli.run(["order-deadlines"]) == 0
        assert cli.run(["flag-stuck-withdrawals"]) == 0
