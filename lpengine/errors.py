"""Error taxonomy for the engine.

Venue errors are split into transient (retried by the coordinator) and
rejections (never retried; the plan is aborted and compensated).
"""

from __future__ import annotations

from typing import Any, Optional


class EngineError(Exception):
    """Base class for engine errors."""


class StalePrice(EngineError):
    """Too few fresh quotes to form a consensus."""

    def __init__(self, pair: str, available: int, required: int, message: Optional[str] = None) -> None:
        self.pair = pair
        self.available = available
        self.required = required
        super().__init__(message or f"{pair}: {available} fresh sources, quorum is {required}")


class InsufficientQuorum(StalePrice):
    """Too few sources remain after outlier rejection."""

    def __init__(self, pair: str, available: int, required: int) -> None:
        super().__init__(
            pair,
            available,
            required,
            f"{pair}: {available} sources after outlier rejection, quorum is {required}",
        )


class CapitalError(EngineError):
    """A plan's commitments cannot be approved."""

    def __init__(self, venue: str, asset: str, requested: Any, limit: Any, message: str) -> None:
        self.venue = venue
        self.asset = asset
        self.requested = requested
        self.limit = limit
        super().__init__(message)


class InsufficientCapital(CapitalError):
    pass


class RiskBudgetExceeded(CapitalError):
    pass


class ConcurrentModification(EngineError):
    def __init__(self, position_id: str, expected_version: int, actual_version: int) -> None:
        self.position_id = position_id
        self.expected_version = expected_version
        self.actual_version = actual_version
        super().__init__(f"position {position_id}: expected version {expected_version}, found {actual_version}")


class StalePlan(ConcurrentModification):
    """The plan was built against a ledger version that is no longer current."""


class PositionNotFound(EngineError, KeyError):
    def __init__(self, position_id: str) -> None:
        self.position_id = position_id
        super().__init__(position_id)

    def __str__(self) -> str:
        return f"unknown position {self.position_id}"


class InvalidTransition(EngineError):
    pass


class SourceError(EngineError):
    def __init__(self, source: str, message: str) -> None:
        self.source = source
        super().__init__(f"{source}: {message}")


class SourceUnavailable(SourceError):
    pass


class SourceTimeout(SourceError):
    pass


class VenueError(EngineError):
    """Base for errors raised by venue execution clients."""

    def __init__(self, message: str, *, venue: str = "", idempotency_key: str = "") -> None:
        self.venue = venue
        self.idempotency_key = idempotency_key
        super().__init__(message)


class TransientVenueError(VenueError):
    """Temporary venue failure; the step did not execute and may be retried."""


class Rejected(VenueError):
    """The venue refused the step; retrying will not help."""


class SlippageExceeded(Rejected):
    pass


class InvalidRange(Rejected):
    """Range bounds are not acceptable (lower >= upper or refused by the pool)."""


class ExecutionTimeout(VenueError):
    """The call did not return in time; the step outcome is unknown."""


class AmbiguousFailure(VenueError):
    """The call failed in a way that leaves the step outcome unknown."""


class ManualInterventionRequired(EngineError):
    """Automatic action stopped; the position needs an operator."""

    def __init__(self, position_id: str, message: str, context: Optional[dict[str, Any]] = None) -> None:
        self.position_id = position_id
        self.context = dict(context or {})
        super().__init__(f"position {position_id}: {message}")
