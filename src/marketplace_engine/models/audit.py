"""Append-only audit, ledger and webhook records."""

from __future__ import annotations

from decimal import Decimal
from typing import Any
from uuid import UUID, uuid4

from sqlalchemy import Index, Numeric, String, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column

from marketplace_engine.models.base import Base, JsonType, TimestampMixin


class LedgerEvent(Base, TimestampMixin):
    """One applied balance delta.

    Replaying a holder's events in order reconstructs its balance.
    """

    __tablename__ = "ledger_event"

    ledger_event_id: Mapped[UUID] = mapped_column(primary_key=True, default=uuid4)
    holder_type: Mapped[str] = mapped_column(String, nullable=False)
    holder_id: Mapped[UUID] = mapped_column(nullable=False)
    subject_type: Mapped[str] = mapped_column(String, nullable=False)
    subject_id: Mapped[UUID] = mapped_column(nullable=False)
    from_status: Mapped[str | None] = mapped_column(String, nullable=True)
    to_status: Mapped[str] = mapped_column(String, nullable=False)
    delta: Mapped[Decimal] = mapped_column(Numeric(14, 4), nullable=False)
    balance_after: Mapped[Decimal] = mapped_column(Numeric(14, 4), nullable=False)
    idempotency_key: Mapped[str] = mapped_column(String, nullable=False)
    reason: Mapped[str | None] = mapped_column(String, nullable=True)

    __table_args__ = (
        UniqueConstraint(
            "holder_type", "holder_id", "idempotency_key",
            name="ledger_event_idempotency_unique",
        ),
        Index("ix_ledger_event_holder", "holder_type", "holder_id"),
        Index("ix_ledger_event_subject", "subject_type", "subject_id"),
    )


class AuditLog(Base, TimestampMixin):
    """Audit trail entry, including rejected attempts."""

    __tablename__ = "audit_log"

    audit_log_id: Mapped[UUID] = mapped_column(primary_key=True, default=uuid4)
    subject_type: Mapped[str] = mapped_column(String, nullable=False)
    subject_id: Mapped[str] = mapped_column(String, nullable=False)
    action: Mapped[str] = mapped_column(String, nullable=False)
    details: Mapped[dict[str, Any]] = mapped_column(JsonType, nullable=False, default=dict)
    performed_by: Mapped[str | None] = mapped_column(String, nullable=True)


class WebhookLog(Base, TimestampMixin):
    """Raw copy of an inbound provider call, kept for a bounded window."""

    __tablename__ = "webhook_log"

    webhook_log_id: Mapped[UUID] = mapped_column(primary_key=True, default=uuid4)
    correlation_id: Mapped[str] = mapped_column(String, nullable=False)
    source_address: Mapped[str] = mapped_column(String, nullable=False)
    payload: Mapped[dict[str, Any]] = mapped_column(JsonType, nullable=False)

    __table_args__ = (
        Index("ix_webhook_log_source_created", "source_address", "created_at"),
        Index("ix_webhook_log_correlation_created", "correlation_id", "created_at"),
    )


class SecurityAlert(Base, TimestampMixin):
    """Advisory alert for manual review; never blocks processing."""

    __tablename__ = "security_alert"

    security_alert_id: Mapped[UUID] = mapped_column(primary_key=True, default=uuid4)
    alert_type: Mapped[str] = mapped_column(String, nullable=False)
    source_address: Mapped[str] = mapped_column(String, nullable=False)
    message: Mapped[str] = mapped_column(String, nullable=False)
    details: Mapped[dict[str, Any]] = mapped_column(JsonType, nullable=False, default=dict)
    reviewed: Mapped[bool] = mapped_column(nullable=False, default=False)
