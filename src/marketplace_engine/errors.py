"""Engine error types.

Each error marks a distinct recovery policy:

- ValidationError: rejected before any mutation, never retried.
- ProviderCommunicationError: stored state untouched, caller may retry.
- ConcurrencyConflict: lock wait exhausted after bounded retries.
- ArtifactCreationFailure: the whole transition is rolled back.
"""

from __future__ import annotations


class MarketplaceEngineError(Exception):
    """Base class for engine errors."""


class ValidationError(MarketplaceEngineError):
    """Input is missing or malformed."""

    def __init__(self, message: str, field: str | None = None):
        self.field = field
        super().__init__(message)


class NotFoundError(MarketplaceEngineError):
    """Referenced record does not exist."""

    def __init__(self, entity: str, key: object):
        self.entity = entity
        self.key = key
        super().__init__(f"{entity} '{key}' not found")


class ProviderCommunicationError(MarketplaceEngineError):
    """The payment provider could not be reached or timed out."""


class ConcurrencyConflict(MarketplaceEngineError):
    """A row lock could not be acquired within the retry budget."""

    def __init__(self, attempts: int):
        self.attempts = attempts
        super().__init__(f"Lock wait timed out after {attempts} attempt(s)")


class ArtifactCreationFailure(MarketplaceEngineError):
    """A ticket or payout could not be created for a completed record."""

    def __init__(self, artifact: str, source_id: object, reason: str):
        self.artifact = artifact
        self.source_id = source_id
        self.reason = reason
        super().__init__(f"Could not create {artifact} for {source_id}: {reason}")
