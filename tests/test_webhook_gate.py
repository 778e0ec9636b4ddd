"""Tests for webhook ingestion and fraud signals."""

from datetime import timedelta

import pytest
from sqlalchemy import func, select

from marketplace_engine.config import EngineConfig
from marketplace_engine.errors import NotFoundError, ValidationError
from marketplace_engine.models import SecurityAlert, WebhookLog, utc_now
from marketplace_engine.services.reconciler import PaymentReconciler
from marketplace_engine.services.webhook_gate import WebhookIngestionGate, parse_webhook


def count(session, model, *conditions) -> int:
    return session.scalar(select(func.count()).select_from(model).where(*conditions))


def make_gate(session, provider, config):
    return WebhookIngestionGate(session, PaymentReconciler(session, provider, config=config), config)


class TestParseWebhook:
    """Test payload parsing."""

    def test_flat_payload(self):
        """Top-level correlation and status fields are read."""
        envelope = parse_webhook(
            {"invoice_id": "INV-9", "state": "COMPLETE", "provider_reference": "MP123"},
            "10.0.0.1",
        )
        assert envelope.correlation_id == "INV-9"
        assert envelope.status == "COMPLETE"
        assert envelope.provider_reference == "MP123"

    def test_nested_payload(self):
        """Fields inside a data object are found too."""
        envelope = parse_webhook({"data": {"correlationId": "INV-8", "status": "FAILED"}}, "10.0.0.1")
        assert envelope.correlation_id == "INV-8"
        assert envelope.status == "FAILED"

    @pytest.mark.parametrize("payload", [{}, {"state": "COMPLETE"}, [], "INV-1"])
    def test_invalid_payloads(self, payload):
        """Payloads without a correlation id are rejected."""
        with pytest.raises(ValidationError):
            parse_webhook(payload, "10.0.0.1")


class TestIngestion:
    """Test recording and forwarding deliveries."""

    def test_delivery_is_logged_before_reconciling(self, session, provider, config):
        """The raw copy is stored even when reconciliation fails."""
        gate = make_gate(session, provider, config)

        with pytest.raises(NotFoundError):
            gate.ingest({"invoiceId": "INV-UNKNOWN", "state": "COMPLETE"}, "10.0.0.1")

        log = session.scalars(select(WebhookLog)).one()
        assert log.correlation_id == "INV-UNKNOWN"
        assert log.payload["state"] == "COMPLETE"

    def test_invalid_delivery_writes_nothing(self, session, provider, config):
        """A rejected delivery leaves no log row."""
        gate = make_gate(session, provider, config)

        with pytest.raises(ValidationError):
            gate.ingest({"state": "COMPLETE"}, "10.0.0.1")

        assert count(session, WebhookLog) == 0

    def test_ingest_completes_payment(self, session, provider, config, test_data):
        """A valid delivery reaches the reconciler."""
        event, ticket_type = test_data.create_event(session)
        payment = test_data.create_ticket_payment(session, event, ticket_type)

        outcome = make_gate(session, provider, config).ingest(
            {"apiRef": payment.invoice_id, "state": "COMPLETE", "provider_reference": "MPX1"},
            "10.0.0.1",
        )

        assert outcome.status == "completed"
        assert outcome.source == "webhook"
        assert payment.provider_reference == "MPX1"


class TestFraudSignals:
    """Test advisory security alerts."""

    def test_volume_alert_raised_once(self, session, provider):
        """Crossing the per-source threshold raises one alert per window."""
        config = EngineConfig(webhook_volume_threshold=3)
        gate = make_gate(session, provider, config)

        for n in range(6):
            gate.record({"invoiceId": f"INV-V{n}", "state": "PENDING"}, "203.0.113.9")

        alerts = session.scalars(
            select(SecurityAlert).where(SecurityAlert.alert_type == "high_webhook_volume")
        ).all()
        assert len(alerts) == 1
        assert alerts[0].source_address == "203.0.113.9"
        assert alerts[0].reviewed is False

    def test_replay_alert(self, session, provider):
        """Repeated deliveries for one correlation id raise a replay alert."""
        config = EngineConfig(webhook_replay_threshold=2)
        gate = make_gate(session, provider, config)

        for _ in range(4):
            gate.record({"invoiceId": "INV-R1", "state": "COMPLETE"}, "10.0.0.1")

        assert count(session, SecurityAlert, SecurityAlert.alert_type == "webhook_replay") == 1

    def test_unrecognized_source_is_flagged_not_blocked(self, session, provider, test_data):
        """Unknown sources raise an alert and are still processed."""
        config = EngineConfig(allowed_webhook_sources=("196.201.214.200",))
        event, ticket_type = test_data.create_event(session)
        payment = test_data.create_ticket_payment(session, event, ticket_type)
        gate = make_gate(session, provider, config)

        outcome = gate.ingest({"invoiceId": payment.invoice_id, "state": "COMPLETE"}, "198.51.100.7")
        gate.ingest({"invoiceId": payment.invoice_id, "state": "COMPLETE"}, "198.51.100.7")

        assert outcome.status == "completed"
        assert count(
            session, SecurityAlert, SecurityAlert.alert_type == "unrecognized_webhook_source"
        ) == 1

    def test_allowed_source_is_quiet(self, session, provider):
        """Listed sources under the thresholds raise nothing."""
        config = EngineConfig(allowed_webhook_sources=("196.201.214.200",))
        make_gate(session, provider, config).record(
            {"invoiceId": "INV-Q", "state": "PENDING"}, "196.201.214.200"
        )

        assert count(session, SecurityAlert) == 0


class TestRetention:
    """Test webhook log purging."""

    def test_purge_old_logs(self, session, provider, config):
        """Logs past the retention window are deleted."""
        now = utc_now()
        session.add_all([
            WebhookLog(
                correlation_id="INV-OLD",
                source_address="10.0.0.1",
                payload={},
                created_at=now - timedelta(days=31),
            ),
            WebhookLog(
                correlation_id="INV-NEW",
                source_address="10.0.0.1",
                payload={},
                created_at=now - timedelta(days=1),
            ),
        ])
        session.flush()

        deleted = make_gate(session, provider, config).purge_logs(now)

        assert deleted == 1
        remaining = session.scalars(select(WebhookLog.correlation_id)).all()
        assert remaining == ["INV-NEW"]
