"""Provider status vocabulary mapping.

Every provider string is reduced to one canonical PaymentStatus here and
nowhere else. Strings not in the table map to pending: an incomplete
table must never turn a real payment into a false failure.
"""

from __future__ import annotations

import logging
from enum import Enum

logger = logging.getLogger(__name__)


class PaymentStatus(str, Enum):
    """Canonical payment status values."""

    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"
    REFUNDED = "refunded"


TERMINAL_PAYMENT_STATUSES = frozenset({
    PaymentStatus.COMPLETED.value,
    PaymentStatus.FAILED.value,
    PaymentStatus.CANCELLED.value,
    PaymentStatus.REFUNDED.value,
})

# Normalized provider string -> canonical status
PROVIDER_STATUS_MAP: dict[str, PaymentStatus] = {
    "pending": PaymentStatus.PENDING,
    "new": PaymentStatus.PENDING,
    "created": PaymentStatus.PENDING,
    "processing": PaymentStatus.PROCESSING,
    "in_progress": PaymentStatus.PROCESSING,
    "initiated": PaymentStatus.PROCESSING,
    "submitted": PaymentStatus.PROCESSING,
    "complete": PaymentStatus.COMPLETED,
    "completed": PaymentStatus.COMPLETED,
    "success": PaymentStatus.COMPLETED,
    "successful": PaymentStatus.COMPLETED,
    "succeeded": PaymentStatus.COMPLETED,
    "paid": PaymentStatus.COMPLETED,
    "failed": PaymentStatus.FAILED,
    "failure": PaymentStatus.FAILED,
    "rejected": PaymentStatus.FAILED,
    "declined": PaymentStatus.FAILED,
    "cancelled": PaymentStatus.CANCELLED,
    "canceled": PaymentStatus.CANCELLED,
    "refunded": PaymentStatus.REFUNDED,
    "reversed": PaymentStatus.REFUNDED,
}


def normalize_provider_status(raw: str | None) -> str:
    """Lower-case a provider string and fold separators to underscores."""
    if raw is None:
        return ""
    return raw.strip().lower().replace("-", "_").replace(" ", "_")


def is_known_provider_status(raw: str | None) -> bool:
    """Check whether a provider string is in the vocabulary table."""
    return normalize_provider_status(raw) in PROVIDER_STATUS_MAP


def map_provider_status(raw: str | None) -> PaymentStatus:
    """Map a provider status string to the canonical vocabulary.

    Unknown or empty strings map to pending and are logged so the table
    can be extended.
    """
    key = normalize_provider_status(raw)
    status = PROVIDER_STATUS_MAP.get(key)
    if status is None:
        logger.warning("Unmapped provider status %r; treating as pending", raw)
        return PaymentStatus.PENDING
    return status


def is_terminal(status: str) -> bool:
    """Check whether a canonical payment status is terminal."""
    return status in TERMINAL_PAYMENT_STATUSES
