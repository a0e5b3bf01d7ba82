from __future__ import annotations

from typing import Protocol

from lpengine.types import ExecutionStep, Receipt, StepStatus


class VenueExecutionClient(Protocol):
    """Execution capability of one venue (DEX pool manager or centralized exchange)."""

    async def submit_step(self, step: ExecutionStep) -> Receipt:
        """Execute ``step`` and return its receipt.

        Must be idempotent on ``step.idempotency_key``: resubmitting a settled
        key returns the original receipt without executing again.

        Raises:
            Rejected (SlippageExceeded, InvalidRange, ...): the venue refused the step
            TransientVenueError: the step did not execute; safe to retry
            ExecutionTimeout / AmbiguousFailure: outcome unknown
        """

    async def query_status(self, idempotency_key: str) -> StepStatus:
        """Report whether the step with ``idempotency_key`` settled, failed or is unknown."""
