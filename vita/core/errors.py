"""Failures of a single coach exchange.

Every failure is terminal for the exchange it interrupted but never for the
session: the controller moves to ``failed`` and accepts the next submission.
"""

from typing import Optional


class CoachError(RuntimeError):
    kind = "coach"

    def __init__(self, message: str, *, user_id: Optional[int] = None):
        super().__init__(message)
        self.user_id = user_id


class AggregationFailure(CoachError):
    """One of the health context reads failed; no partial snapshot is produced."""

    kind = "aggregation"


class GenerationFailure(CoachError):
    """The text-generation call failed, timed out, or returned nothing usable."""

    kind = "generation"


class PersistenceFailure(CoachError):
    """The exchange could not be written; the generated reply is dropped."""

    kind = "persistence"
