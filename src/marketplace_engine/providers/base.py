"""Base protocol and types for payment provider adapters.

The engine never speaks a provider's wire protocol; adapters translate
between it and these request/response types.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from decimal import Decimal
from typing import Any, Protocol


@dataclass(frozen=True)
class InitiationRequest:
    """Charge request handed to the provider."""

    payer_contact: str
    amount: Decimal
    currency: str
    narrative: str
    local_correlation_id: str
    payer_email: str | None = None


@dataclass(frozen=True)
class InitiationResult:
    """Provider acknowledgement of a charge request."""

    provider_reference: str
    provider_correlation_id: str


@dataclass(frozen=True)
class PollResult:
    """Provider answer to a status poll."""

    status: str
    provider_reference: str | None = None
    raw: dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class PayoutRequest:
    """Disbursement request handed to the provider."""

    destination: str
    amount: Decimal
    currency: str
    narrative: str
    local_correlation_id: str


@dataclass(frozen=True)
class PayoutResult:
    """Provider acknowledgement of a disbursement."""

    provider_reference: str
    accepted: bool
    message: str = ""


class PaymentProvider(Protocol):
    """Protocol for payment provider adapters.

    Implementations raise ProviderCommunicationError for network failures
    and timeouts; any status string they return is passed through the
    vocabulary mapper untouched.
    """

    provider_name: str

    def initiate(self, request: InitiationRequest) -> InitiationResult:
        """Request a charge from the payer.

        Args:
            request: Charge details including the local correlation id

        Returns:
            InitiationResult with the provider's references.
        """
        ...

    def fetch_status(self, correlation_id: str) -> PollResult:
        """Poll the provider for the current status of a charge.

        Args:
            correlation_id: Provider correlation id or local invoice id

        Returns:
            PollResult with the provider's raw status string.
        """
        ...

    def initiate_payout(self, request: PayoutRequest) -> PayoutResult:
        """Send money to a holder's destination account."""
        ...
