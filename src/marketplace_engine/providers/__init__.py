"""Payment provider adapters."""

from marketplace_engine.providers.base import (
    InitiationRequest,
    InitiationResult,
    PaymentProvider,
    PayoutRequest,
    PayoutResult,
    PollResult,
)
from marketplace_engine.providers.stub import StubProvider

__all__ = [
    "InitiationRequest",
    "InitiationResult",
    "PaymentProvider",
    "PayoutRequest",
    "PayoutResult",
    "PollResult",
    "StubProvider",
]
