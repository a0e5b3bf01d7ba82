"""Paper venue: an in-memory `VenueExecutionClient`.

Steps settle instantly and are recorded by idempotency key, so resubmitting
a settled key returns the original receipt. Faults can be scripted to
exercise retries, timeouts and rollbacks without a real venue.
"""

from __future__ import annotations

import asyncio
import itertools
import logging
from collections import deque
from datetime import datetime
from decimal import Decimal
from typing import Callable, Optional, Union

from lpengine.errors import AmbiguousFailure, InvalidRange, SlippageExceeded
from lpengine.types import QUANT, ExecutionStep, Receipt, StepStatus, utc_now

logger = logging.getLogger(__name__)

BPS = Decimal(10_000)

# Execute the step, then fail as if the acknowledgement was lost.
LOST_ACK = "lost_ack"
# Never answer; the caller's timeout fires.
HANG = "hang"

Fault = Union[BaseException, str]


class PaperVenue:
    def __init__(
        self,
        name: str,
        *,
        fee_per_step: Decimal = Decimal("0"),
        swap_fee_rate: Decimal = Decimal("0"),
        fill_slippage_bps: Decimal = Decimal("0"),
        clock: Optional[Callable[[], datetime]] = None,
    ) -> None:
        """Initialize the paper venue.

        Args:
            name: Venue name used on receipts
            fee_per_step: Flat fee (quote asset) charged on every settled step
            swap_fee_rate: Additional fee on swap notional (quote asset)
            fill_slippage_bps: Slippage applied to swap fills
        """
        self.name = name
        self._fee_per_step = fee_per_step
        self._swap_fee_rate = swap_fee_rate
        self._fill_slippage_bps = fill_slippage_bps
        self._clock = clock or utc_now
        self._receipts: dict[str, Receipt] = {}
        self._faults: dict[str, deque[Fault]] = {}
        self._unknown_status: dict[str, int] = {}
        self._tx_ids = itertools.count(1)
        self.executions: list[ExecutionStep] = []

    def fail_next(self, action: str, *faults: Fault) -> None:
        """Script faults for the next submissions of ``action`` (consumed in order)."""
        self._faults.setdefault(action, deque()).extend(faults)

    def hide_status(self, idempotency_key: str, times: int) -> None:
        """Make the next ``times`` status queries for a key report ``unknown``."""
        self._unknown_status[idempotency_key] = times

    def receipt(self, idempotency_key: str) -> Optional[Receipt]:
        return self._receipts.get(idempotency_key)

    def executed(self, action: Optional[str] = None) -> list[ExecutionStep]:
        return [s for s in self.executions if action is None or s.action == action]

    async def submit_step(self, step: ExecutionStep) -> Receipt:
        existing = self._receipts.get(step.idempotency_key)
        if existing is not None:
            logger.debug("Paper venue %s: %s already settled", self.name, step.idempotency_key)
            return existing

        pending = self._faults.get(step.action)
        fault = pending.popleft() if pending else None
        if fault == HANG:
            await asyncio.sleep(3600)
        elif isinstance(fault, BaseException):
            raise fault

        receipt = self._execute(step)
        if fault == LOST_ACK:
            raise AmbiguousFailure(
                "acknowledgement lost", venue=self.name, idempotency_key=step.idempotency_key
            )
        return receipt

    async def query_status(self, idempotency_key: str) -> StepStatus:
        hidden = self._unknown_status.get(idempotency_key, 0)
        if hidden > 0:
            self._unknown_status[idempotency_key] = hidden - 1
            return StepStatus(state="unknown")
        receipt = self._receipts.get(idempotency_key)
        if receipt is not None:
            return StepStatus(state="settled", receipt=receipt)
        return StepStatus(state="failed")

    def _execute(self, step: ExecutionStep) -> Receipt:
        if step.amount is None or step.amount < 0:
            raise ValueError(f"step {step.idempotency_key} has no executable amount")

        amount_in = step.amount
        amount_out = amount_in
        fee = self._fee_per_step

        if step.action == "deposit":
            if step.range_lower is None or step.range_upper is None or step.range_lower >= step.range_upper:
                raise InvalidRange(
                    f"bad range {step.range_lower}..{step.range_upper}",
                    venue=self.name,
                    idempotency_key=step.idempotency_key,
                )
        elif step.action == "swap":
            bound = step.bounds.max_slippage_bps
            if bound is not None and self._fill_slippage_bps > bound:
                raise SlippageExceeded(
                    f"fill slippage {self._fill_slippage_bps}bps exceeds {bound}bps",
                    venue=self.name,
                    idempotency_key=step.idempotency_key,
                )
            keep = 1 - self._fill_slippage_bps / BPS
            if step.price is not None and step.side == "buy":
                amount_out = amount_in / step.price * keep
                fee += amount_in * self._swap_fee_rate
            elif step.price is not None and step.side == "sell":
                amount_out = amount_in * step.price * keep
                fee += amount_out * self._swap_fee_rate
            else:
                amount_out = amount_in * keep
                fee += amount_in * self._swap_fee_rate

        if step.bounds.min_amount_out is not None and amount_out < step.bounds.min_amount_out:
            raise SlippageExceeded(
                f"amount out {amount_out} below minimum {step.bounds.min_amount_out}",
                venue=self.name,
                idempotency_key=step.idempotency_key,
            )

        receipt = Receipt(
            idempotency_key=step.idempotency_key,
            venue=self.name,
            action=step.action,
            amount_in=amount_in,
            amount_out=amount_out.quantize(QUANT),
            fee=fee.quantize(QUANT),
            tx_ref=f"{self.name}-paper-{next(self._tx_ids)}",
            settled_at=self._clock(),
        )
        self._receipts[step.idempotency_key] = receipt
        self.executions.append(step)
        return receipt
