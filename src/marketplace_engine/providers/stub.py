"""In-memory provider for local development and testing.

Replace with a real adapter for production.
"""

from __future__ import annotations

import uuid
from typing import Any

from marketplace_engine.errors import ProviderCommunicationError
from marketplace_engine.providers.base import (
    InitiationRequest,
    InitiationResult,
    PayoutRequest,
    PayoutResult,
    PollResult,
)


class StubProvider:
    """Scriptable stub provider.

    Status answers come from `set_status`; `fail_next_poll` makes the
    next poll raise as a timed-out network call would.
    """

    provider_name = "stub"

    def __init__(self, default_status: str = "PENDING"):
        """Initialize stub provider.

        Args:
            default_status: Raw status reported for charges with no
                scripted answer.
        """
        self.default_status = default_status
        # In-memory tracking for stub
        self._charges: dict[str, dict[str, Any]] = {}
        self._statuses: dict[str, str] = {}
        self._payouts: dict[str, PayoutRequest] = {}
        self._fail_polls = 0
        self.poll_count = 0

    def initiate(self, request: InitiationRequest) -> InitiationResult:
        """Accept a charge request (stub implementation)."""
        provider_reference = f"STUBTX-{uuid.uuid4().hex[:12].upper()}"
        correlation_id = f"STUBREF-{request.local_correlation_id}"
        self._charges[correlation_id] = {
            "request": request,
            "provider_reference": provider_reference,
        }
        self._charges[request.local_correlation_id] = self._charges[correlation_id]
        return InitiationResult(
            provider_reference=provider_reference,
            provider_correlation_id=correlation_id,
        )

    def fetch_status(self, correlation_id: str) -> PollResult:
        """Report the scripted status for a charge."""
        self.poll_count += 1
        if self._fail_polls > 0:
            self._fail_polls -= 1
            raise ProviderCommunicationError(
                f"Timed out polling status for {correlation_id}"
            )
        charge = self._charges.get(correlation_id, {})
        status = self._statuses.get(correlation_id, self.default_status)
        return PollResult(
            status=status,
            provider_reference=charge.get("provider_reference"),
            raw={"state": status, "correlation_id": correlation_id},
        )

    def initiate_payout(self, request: PayoutRequest) -> PayoutResult:
        """Accept a disbursement (stub implementation)."""
        provider_reference = f"STUBPO-{uuid.uuid4().hex[:12].upper()}"
        self._payouts[provider_reference] = request
        return PayoutResult(provider_reference=provider_reference, accepted=True)

    # Test helpers

    def set_status(self, correlation_id: str, status: str) -> None:
        """Script the raw status reported for a charge."""
        self._statuses[correlation_id] = status

    def fail_next_poll(self, times: int = 1) -> None:
        """Make the next `times` polls raise ProviderCommunicationError."""
        self._fail_polls += times
