"""Webhook Ingestion Gate.

Inbound provider calls are validated, copied verbatim into webhook_log,
scored for fraud signals, and only then forwarded to the reconciler.
Fraud signals raise advisory alerts and never block a valid call.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any

from sqlalchemy import delete, func, select
from sqlalchemy.orm import Session

from marketplace_engine.config import EngineConfig
from marketplace_engine.errors import ValidationError
from marketplace_engine.models import SecurityAlert, WebhookLog, utc_now
from marketplace_engine.services.reconciler import PaymentReconciler, ReconcileOutcome

logger = logging.getLogger(__name__)

CORRELATION_FIELDS = ("correlationId", "correlation_id", "apiRef", "api_ref", "invoiceId", "invoice_id")
STATUS_FIELDS = ("state", "status")
REFERENCE_FIELDS = ("providerReference", "provider_reference", "transactionReference")


@dataclass(frozen=True)
class WebhookEnvelope:
    """The parts of a webhook body the engine acts on."""

    correlation_id: str
    status: str | None
    provider_reference: str | None
    source_address: str


def _first(body: dict[str, Any], fields: tuple[str, ...]) -> str | None:
    for name in fields:
        value = body.get(name)
        if value not in (None, ""):
            return str(value)
    return None


def parse_webhook(payload: Any, source_address: str) -> WebhookEnvelope:
    """Pull correlation id, status and provider reference from a body.

    Fields may sit at the top level or under a `data` object.

    Raises:
        ValidationError: Body is not an object or has no correlation id
    """
    if not isinstance(payload, dict):
        raise ValidationError("Webhook body must be a JSON object")
    bodies = [payload]
    if isinstance(payload.get("data"), dict):
        bodies.append(payload["data"])

    def pick(fields: tuple[str, ...]) -> str | None:
        for body in bodies:
            value = _first(body, fields)
            if value is not None:
                return value
        return None

    correlation_id = pick(CORRELATION_FIELDS)
    if correlation_id is None or not correlation_id.strip():
        raise ValidationError("Webhook is missing its correlation id", field="correlationId")

    return WebhookEnvelope(
        correlation_id=correlation_id.strip(),
        status=pick(STATUS_FIELDS),
        provider_reference=pick(REFERENCE_FIELDS),
        source_address=source_address or "unknown",
    )


class WebhookIngestionGate:
    """Front door for provider webhook deliveries."""

    def __init__(
        self,
        db: Session,
        reconciler: PaymentReconciler | None = None,
        config: EngineConfig | None = None,
    ):
        self.db = db
        self.config = config or EngineConfig()
        self.reconciler = reconciler or PaymentReconciler(db, config=self.config)

    def ingest(self, payload: Any, source_address: str) -> ReconcileOutcome:
        """Record a delivery and reconcile it in the caller's transaction.

        Use `record` and `forward` separately when the audit copy must
        survive a failed reconciliation.
        """
        envelope = self.record(payload, source_address)
        return self.forward(envelope)

    def record(self, payload: Any, source_address: str) -> WebhookEnvelope:
        """Validate a delivery, persist its raw copy and check fraud signals.

        Nothing is written when validation fails.
        """
        envelope = parse_webhook(payload, source_address)
        self.db.add(WebhookLog(
            correlation_id=envelope.correlation_id,
            source_address=envelope.source_address,
            payload=payload,
        ))
        self.db.flush()
        self.check_signals(envelope)
        return envelope

    def forward(self, envelope: WebhookEnvelope) -> ReconcileOutcome:
        """Hand a recorded delivery to the reconciler."""
        return self.reconciler.reconcile(
            envelope.correlation_id,
            envelope.status,
            source="webhook",
            provider_reference=envelope.provider_reference,
        )

    def check_signals(
        self, envelope: WebhookEnvelope, now: datetime | None = None
    ) -> list[SecurityAlert]:
        """Raise advisory alerts for volume, replay and unknown sources."""
        now = now or utc_now()
        window_start = now - timedelta(minutes=self.config.webhook_volume_window_minutes)
        source = envelope.source_address
        alerts: list[SecurityAlert] = []

        source_calls = self._count_since(WebhookLog.source_address == source, window_start)
        # Alert once, when the threshold is first crossed in the window
        if source_calls == self.config.webhook_volume_threshold + 1:
            alerts.append(self._alert(
                "high_webhook_volume",
                source,
                f"High webhook volume from single source: {source_calls} calls",
                {"count": source_calls, "window_minutes": self.config.webhook_volume_window_minutes},
            ))

        deliveries = self._count_since(
            WebhookLog.correlation_id == envelope.correlation_id, window_start
        )
        if deliveries == self.config.webhook_replay_threshold + 1:
            alerts.append(self._alert(
                "webhook_replay",
                source,
                f"Repeated webhook deliveries for {envelope.correlation_id}",
                {"correlation_id": envelope.correlation_id, "count": deliveries},
            ))

        allowed = self.config.allowed_webhook_sources
        if allowed and source not in allowed and not self._alerted_since(
            "unrecognized_webhook_source", source, window_start
        ):
            alerts.append(self._alert(
                "unrecognized_webhook_source",
                source,
                f"Webhook from unrecognized source {source}",
                {"correlation_id": envelope.correlation_id},
            ))

        if alerts:
            self.db.flush()
        return alerts

    def purge_logs(self, now: datetime | None = None) -> int:
        """Delete webhook logs older than the retention window."""
        cutoff = (now or utc_now()) - timedelta(days=self.config.webhook_log_retention_days)
        result = self.db.execute(
            delete(WebhookLog)
            .where(WebhookLog.created_at < cutoff)
            .execution_options(synchronize_session=False)
        )
        return result.rowcount or 0

    def _count_since(self, condition, since: datetime) -> int:
        return self.db.scalar(
            select(func.count())
            .select_from(WebhookLog)
            .where(condition)
            .where(WebhookLog.created_at >= since)
        ) or 0

    def _alerted_since(self, alert_type: str, source: str, since: datetime) -> bool:
        return self.db.scalar(
            select(func.count())
            .select_from(SecurityAlert)
            .where(SecurityAlert.alert_type == alert_type)
            .where(SecurityAlert.source_address == source)
            .where(SecurityAlert.created_at >= since)
        ) > 0

    def _alert(
        self, alert_type: str, source: str, message: str, details: dict[str, Any]
    ) -> SecurityAlert:
        logger.warning("Security alert %s from %s: %s", alert_type, source, message)
        alert = SecurityAlert(
            alert_type=alert_type,
            source_address=source,
            message=message,
            details=details,
        )
        self.db.add(alert)
        return alert
