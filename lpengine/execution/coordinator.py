"""Plan execution against venues.

One sequence runs per position at a time. Each step is submitted under an
idempotency key; the coordinator asks the venue for the key's status before
every submission and after every ambiguous outcome, so a step that already
settled is never executed twice. Transient failures are retried with
exponential backoff. Rejections and unexpected venue errors abort the plan,
and capital withdrawn from a range is redeposited into the prior range.
Cancellation runs the same compensation, shielded, before it propagates.
When an outcome cannot be resolved, or compensation itself fails, the
position is halted until an operator reconciles it.
"""

from __future__ import annotations

import asyncio
import functools
import logging
from collections import defaultdict
from dataclasses import dataclass, field, replace
from decimal import Decimal
from typing import Any, Awaitable, Callable, Literal, Mapping, Optional, TypeVar

from lpengine.capital.allocator import ApprovalToken, CapitalAllocator, SettlementOutcome
from lpengine.config import ExecutionConfig
from lpengine.errors import (
    AmbiguousFailure,
    ExecutionTimeout,
    InvalidTransition,
    ManualInterventionRequired,
    Rejected,
    StalePlan,
    TransientVenueError,
)
from lpengine.execution.interfaces import VenueExecutionClient
from lpengine.execution.keys import make_idempotency_key
from lpengine.execution.retry import backoff_delay
from lpengine.ledger.events import (
    CapitalRotated,
    Closed,
    Created,
    Failed,
    FeesHarvested,
    RangeAdjusted,
    RebalanceStarted,
)
from lpengine.ledger.ledger import PositionLedger
from lpengine.types import (
    AccountKey,
    ExecutionStep,
    Plan,
    PlanKind,
    Position,
    PositionState,
    Receipt,
    StepStatus,
    split_pair,
)

logger = logging.getLogger(__name__)

ZERO = Decimal("0")

Outcome = Literal["completed", "aborted", "rolled_back"]

# Failures that end a plan and trigger compensation.
ABORTING = (Rejected, TransientVenueError)

CANCELLED = "execution cancelled"

T = TypeVar("T")


@dataclass(frozen=True)
class ExecutionReport:
    plan_id: str
    kind: PlanKind
    position_id: str
    outcome: Outcome
    receipts: tuple[Receipt, ...]
    position: Optional[Position]
    reason: str = ""
    overdrawn: Mapping[AccountKey, Decimal] = field(default_factory=dict)


@dataclass
class _PlanRun:
    """Mutable bookkeeping for one plan execution.

    ``pending`` is the step submitted last whose receipt has not been
    recorded yet; after an interruption its outcome must be looked up.
    ``start`` is None for a plan that opens a new position.
    """

    plan: Plan
    token: ApprovalToken
    start: Optional[Position]
    quote: str
    receipts: list[Receipt] = field(default_factory=list)
    consumed: dict[AccountKey, Decimal] = field(default_factory=lambda: defaultdict(lambda: ZERO))
    credits: dict[AccountKey, Decimal] = field(default_factory=lambda: defaultdict(lambda: ZERO))
    overdrawn: dict[AccountKey, Decimal] = field(default_factory=dict)
    current_step: Optional[int] = None
    pending: Optional[ExecutionStep] = None

    def record(self, receipt: Receipt) -> None:
        self.receipts.append(receipt)
        self.pending = None
        if receipt.fee:
            self.consumed[(receipt.venue, self.quote)] += receipt.fee

    def context(self, **extra: Any) -> dict[str, Any]:
        data: dict[str, Any] = {
            "plan_id": self.plan.id,
            "kind": self.plan.kind,
            "position_id": self.plan.position_id,
            "approval": self.token.token_id,
            "failed_step": self.current_step,
            "steps": [
                {"index": s.index, "action": s.action, "venue": s.venue, "key": s.idempotency_key}
                for s in self.plan.steps
            ],
            "receipts": [
                {"key": r.idempotency_key, "action": r.action, "amount_out": str(r.amount_out), "tx": r.tx_ref}
                for r in self.receipts
            ],
        }
        data.update(extra)
        return data


def _swap_value_loss(step: ExecutionStep, receipt: Receipt) -> Decimal:
    """Quote-denominated value lost in a swap fill."""
    if step.price is None:
        return receipt.amount_in - receipt.amount_out
    if step.side == "buy":
        return receipt.amount_in - receipt.amount_out * step.price
    return receipt.amount_in * step.price - receipt.amount_out


def _describe(exc: BaseException) -> str:
    return f"{type(exc).__name__}: {exc}"


class ExecutionCoordinator:
    def __init__(
        self,
        *,
        ledger: PositionLedger,
        allocator: CapitalAllocator,
        venues: Mapping[str, VenueExecutionClient],
        config: Optional[ExecutionConfig] = None,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ) -> None:
        self._ledger = ledger
        self._allocator = allocator
        self._venues = dict(venues)
        self._config = config or ExecutionConfig()
        self._sleep = sleep
        self._locks: dict[str, asyncio.Lock] = {}
        self._halted: dict[str, str] = {}
        # Approvals of halted plans, held until the position is reconciled.
        self._stranded: dict[str, ApprovalToken] = {}

    def is_halted(self, position_id: str) -> bool:
        return position_id in self._halted

    def halted(self) -> dict[str, str]:
        return dict(self._halted)

    def busy(self, position_id: str) -> bool:
        lock = self._locks.get(position_id)
        return lock is not None and lock.locked()

    def _lock_for(self, position_id: str) -> asyncio.Lock:
        lock = self._locks.get(position_id)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[position_id] = lock
        return lock

    async def execute(self, plan: Plan, token: ApprovalToken) -> ExecutionReport:
        """Run ``plan`` to completion, abort or rollback.

        Raises:
            StalePlan: the position changed since the plan was built, or an
                open plan names a position that already exists (nothing submitted)
            ManualInterventionRequired: outcome unknown or compensation failed; position halted
            asyncio.CancelledError: after compensation for the interrupted plan has run
        """
        pid = plan.position_id
        async with self._lock_for(pid):
            if pid in self._halted:
                self._allocator.release(token)
                raise ManualInterventionRequired(pid, f"position is halted: {self._halted[pid]}")

            if plan.kind == "open":
                snapshot = None
                if self._ledger.exists(pid):
                    self._allocator.release(token)
                    raise StalePlan(pid, plan.based_on_ledger_version, self._ledger.snapshot(pid).version)
            else:
                snapshot = self._ledger.snapshot(pid)
                if snapshot.version != plan.based_on_ledger_version:
                    self._allocator.release(token)
                    logger.info(
                        "Plan %s is stale for %s (built on v%d, ledger at v%d)",
                        plan.id,
                        pid,
                        plan.based_on_ledger_version,
                        snapshot.version,
                    )
                    raise StalePlan(pid, plan.based_on_ledger_version, snapshot.version)

            _, quote = split_pair(plan.pair)
            run = _PlanRun(plan=plan, token=token, start=snapshot, quote=quote)
            logger.info("Executing %s plan %s for %s (%d steps)", plan.kind, plan.id, pid, len(plan.steps))

            if plan.kind == "rebalance":
                return await self._run_rebalance(run)
            if plan.kind == "rotate":
                return await self._run_rotate(run)
            if plan.kind == "open":
                return await self._run_single(run, functools.partial(self._complete_open, run))
            if plan.kind == "harvest":
                return await self._run_single(run, functools.partial(self._complete_harvest, run))
            if plan.kind == "close":
                return await self._run_single(run, functools.partial(self._complete_close, run))
            self._allocator.release(token)
            raise ValueError(f"unsupported plan kind {plan.kind!r}")

    async def reconcile(
        self,
        position_id: str,
        *,
        range_lower: Optional[Decimal] = None,
        range_upper: Optional[Decimal] = None,
        deposited: Optional[Decimal] = None,
    ) -> Optional[Position]:
        """Return a halted position to automatic control after an operator checked the venues.

        A position left mid-rebalance still has capital in transit; ``deposited``
        is what the operator actually put back into ``[range_lower, range_upper]``
        (default: the position's current range). The approval held by the halted
        plan is released.

        Returns:
            The reconciled position, or None when the halted plan never created one

        Raises:
            InvalidTransition: nothing to reconcile, or ``deposited`` does not fit the position's state
        """
        async with self._lock_for(position_id):
            position = self._ledger.snapshot(position_id) if self._ledger.exists(position_id) else None
            rebalancing = position is not None and position.state is PositionState.REBALANCING
            if position_id not in self._halted and not rebalancing:
                raise InvalidTransition(f"position {position_id} is not halted")

            if rebalancing:
                if deposited is None:
                    raise InvalidTransition(f"position {position_id} has capital in transit; deposited is required")
                position = self._ledger.append_latest(
                    position_id,
                    RangeAdjusted(
                        range_lower=position.range_lower if range_lower is None else range_lower,
                        range_upper=position.range_upper if range_upper is None else range_upper,
                        deposited=deposited,
                        plan_id="reconcile",
                    ),
                )
            elif deposited is not None:
                raise InvalidTransition(f"position {position_id} has no capital in transit")

            token = self._stranded.pop(position_id, None)
            if token is not None:
                self._allocator.release(token)
            reason = self._halted.pop(position_id, None)
            logger.warning("Reconciled position %s (halt: %s)", position_id, reason)
            return position

    # -- steps ---------------------------------------------------------------

    def _venue(self, step: ExecutionStep) -> VenueExecutionClient:
        client = self._venues.get(step.venue)
        if client is None:
            raise Rejected(f"no execution client for venue {step.venue}", venue=step.venue)
        return client

    async def _status(self, client: VenueExecutionClient, key: str) -> StepStatus:
        try:
            return await asyncio.wait_for(client.query_status(key), timeout=self._config.status_timeout)
        except Exception as exc:
            logger.warning("Status query for %s failed: %s", key, _describe(exc))
            return StepStatus(state="unknown")

    async def _run_step(self, run: _PlanRun, step: ExecutionStep) -> Receipt:
        cfg = self._config
        run.current_step = step.index
        run.pending = step
        client = self._venue(step)
        key = step.idempotency_key
        unresolved = False
        last_error: Optional[BaseException] = None

        for attempt in range(cfg.max_attempts):
            status = await self._status(client, key)
            if status.state == "settled" and status.receipt is not None:
                logger.info("Step %s (%s) already settled; not resubmitting", key, step.action)
                return status.receipt

            try:
                return await asyncio.wait_for(client.submit_step(step), timeout=cfg.step_timeout)
            except Rejected:
                raise
            except (asyncio.TimeoutError, ExecutionTimeout, AmbiguousFailure) as exc:
                last_error = exc
                status = await self._status(client, key)
                if status.state == "settled" and status.receipt is not None:
                    logger.info("Step %s settled despite %s", key, type(exc).__name__)
                    return status.receipt
                unresolved = status.state == "unknown"
                logger.warning(
                    "Ambiguous outcome for step %s (attempt %d/%d, status %s)",
                    key,
                    attempt + 1,
                    cfg.max_attempts,
                    status.state,
                )
            except TransientVenueError as exc:
                last_error = exc
                unresolved = False
                logger.warning(
                    "Transient error on step %s (attempt %d/%d): %s", key, attempt + 1, cfg.max_attempts, exc
                )

            if attempt < cfg.max_attempts - 1:
                await self._sleep(
                    backoff_delay(attempt, base_delay=cfg.base_delay, max_delay=cfg.max_delay, jitter=cfg.jitter)
                )

        if unresolved:
            raise ManualInterventionRequired(
                run.plan.position_id,
                f"outcome of step {step.index} ({step.action}) unknown after {cfg.max_attempts} attempts",
                run.context(last_error=repr(last_error)),
            )
        raise TransientVenueError(
            f"step {step.index} ({step.action}) failed after {cfg.max_attempts} attempts: {last_error}",
            venue=step.venue,
            idempotency_key=key,
        )

    async def _resolve_pending(self, run: _PlanRun) -> Optional[Receipt]:
        """Find out whether the interrupted step executed.

        Returns the step's receipt when it settled and None when it did not.
        An unknown outcome halts the position.
        """
        step = run.pending
        client = self._venues.get(step.venue) if step is not None else None
        if step is None or client is None:
            return None

        status = await self._status(client, step.idempotency_key)
        if status.state == "settled" and status.receipt is not None:
            logger.info("Interrupted step %s settled", step.idempotency_key)
            return status.receipt
        if status.state == "failed":
            return None

        exc = ManualInterventionRequired(
            run.plan.position_id,
            f"outcome of interrupted step {step.index} ({step.action}) unknown",
            run.context(),
        )
        self._halt(run, exc)
        raise exc

    # -- interruption --------------------------------------------------------

    @staticmethod
    async def _shielded(cleanup: Awaitable[T]) -> T:
        """Run ``cleanup`` to the end even if the caller is cancelled meanwhile."""
        task = asyncio.ensure_future(cleanup)
        try:
            return await asyncio.shield(task)
        except asyncio.CancelledError:
            await asyncio.wait([task])
            if not task.cancelled() and task.exception() is not None:
                logger.error("Compensation failed during cancellation", exc_info=task.exception())
            raise

    async def _finish_cancelled(self, cleanup: Awaitable[ExecutionReport]) -> None:
        try:
            report = await self._shielded(cleanup)
        except ManualInterventionRequired:
            # Already halted and logged; the cancellation still propagates.
            return
        logger.warning(
            "Plan %s cancelled; compensation finished as %s", report.plan_id, report.outcome
        )

    # -- outcomes ------------------------------------------------------------

    def _settle(self, run: _PlanRun, *, completed: bool) -> None:
        run.overdrawn = self._allocator.settle(
            run.token,
            SettlementOutcome(consumed=dict(run.consumed), credits=dict(run.credits), completed=completed),
        )

    def _fail(self, run: _PlanRun, reason: str) -> Optional[Position]:
        pid = run.plan.position_id
        if run.plan.kind == "open" and not self._ledger.exists(pid):
            return None
        return self._ledger.append_latest(pid, Failed(reason=reason, plan_id=run.plan.id, step=run.current_step))

    def _report(
        self, run: _PlanRun, outcome: Outcome, position: Optional[Position], reason: str = ""
    ) -> ExecutionReport:
        return ExecutionReport(
            plan_id=run.plan.id,
            kind=run.plan.kind,
            position_id=run.plan.position_id,
            outcome=outcome,
            receipts=tuple(run.receipts),
            position=position,
            reason=reason,
            overdrawn=dict(run.overdrawn),
        )

    def _abort(self, run: _PlanRun, reason: str) -> ExecutionReport:
        logger.warning("Plan %s aborted at step %s: %s", run.plan.id, run.current_step, reason)
        position = self._fail(run, reason)
        self._settle(run, completed=False)
        return self._report(run, "aborted", position, reason)

    def _halt(self, run: _PlanRun, exc: ManualInterventionRequired) -> None:
        """Record the failure and stop automatic action on the position.

        The approval stays outstanding: the step's effect on capital is unknown
        until an operator reconciles it.
        """
        pid = run.plan.position_id
        self._fail(run, str(exc))
        self._halted[pid] = str(exc)
        self._stranded[pid] = run.token
        logger.error("Manual intervention required for %s: %s", pid, exc, extra={"context": exc.context})

    def _unexpected(self, run: _PlanRun, exc: Exception) -> str:
        logger.error("Unexpected error in plan %s at step %s", run.plan.id, run.current_step, exc_info=exc)
        return _describe(exc)

    # -- plan kinds ----------------------------------------------------------

    async def _run_rebalance(self, run: _PlanRun) -> ExecutionReport:
        plan = run.plan
        withdraw_step, *swaps, deposit_step = plan.steps
        carried: Optional[Decimal] = None

        try:
            receipt = await self._run_step(run, withdraw_step)
            carried = self._withdrawn(run, receipt)

            for step in swaps:
                receipt = await self._run_step(run, step)
                run.record(receipt)
                carried -= _swap_value_loss(step, receipt)

            receipt = await self._run_step(run, replace(deposit_step, amount=max(carried, ZERO)))
            run.record(receipt)
        except ABORTING as exc:
            if carried is None:
                return self._abort(run, _describe(exc))
            return await self._shielded(self._roll_back(run, _describe(exc), carried))
        except ManualInterventionRequired as exc:
            self._halt(run, exc)
            raise
        except asyncio.CancelledError:
            await self._finish_cancelled(self._recover_rebalance(run, carried, CANCELLED))
            raise
        except Exception as exc:
            reason = self._unexpected(run, exc)
            return await self._shielded(self._recover_rebalance(run, carried, reason))

        return self._complete_rebalance(run, receipt)

    def _withdrawn(self, run: _PlanRun, receipt: Receipt) -> Decimal:
        run.record(receipt)
        self._ledger.append_latest(
            run.plan.position_id, RebalanceStarted(withdrawn=receipt.amount_out, plan_id=run.plan.id)
        )
        return receipt.amount_out

    def _complete_rebalance(self, run: _PlanRun, receipt: Receipt) -> ExecutionReport:
        pid = run.plan.position_id
        deposit_step = run.plan.steps[-1]
        position = self._ledger.append_latest(
            pid,
            RangeAdjusted(
                range_lower=deposit_step.range_lower,
                range_upper=deposit_step.range_upper,
                deposited=receipt.amount_out,
                plan_id=run.plan.id,
            ),
        )
        self._settle(run, completed=True)
        logger.info("Rebalanced %s to [%s, %s]", pid, position.range_lower, position.range_upper)
        return self._report(run, "completed", position)

    async def _recover_rebalance(self, run: _PlanRun, carried: Optional[Decimal], reason: str) -> ExecutionReport:
        """Account for the interrupted step, then finish the plan or roll it back."""
        step = run.pending
        receipt = await self._resolve_pending(run)
        if step is not None and receipt is not None:
            if step.action == "withdraw":
                carried = self._withdrawn(run, receipt)
            elif step.action == "swap" and carried is not None:
                run.record(receipt)
                carried -= _swap_value_loss(step, receipt)
            elif step.action == "deposit":
                run.record(receipt)
                return self._complete_rebalance(run, receipt)

        if carried is None:
            return self._abort(run, reason)
        return await self._roll_back(run, reason, carried)

    async def _roll_back(self, run: _PlanRun, reason: str, carried: Decimal) -> ExecutionReport:
        """Redeposit withdrawn capital into the range the position held before the plan."""
        plan = run.plan
        pid = plan.position_id
        failed_step = run.current_step
        logger.warning("Plan %s failed at step %s (%s); rolling back", plan.id, failed_step, reason)

        rollback = ExecutionStep(
            idempotency_key=make_idempotency_key(plan.id, "rollback"),
            index=len(plan.steps),
            action="deposit",
            venue=run.start.venue,
            asset=run.quote,
            amount=max(carried, ZERO),
            position_id=pid,
            range_lower=run.start.range_lower,
            range_upper=run.start.range_upper,
        )
        try:
            receipt = await self._run_step(run, rollback)
        except Exception as rollback_exc:
            self._fail(run, f"{reason}; rollback failed: {rollback_exc}")
            self._settle(run, completed=False)
            context = run.context(
                cause=reason,
                rollback_error=_describe(rollback_exc),
                in_transit=str(carried),
                prior_range=[str(run.start.range_lower), str(run.start.range_upper)],
                overdrawn={f"{venue}/{asset}": str(amount) for (venue, asset), amount in run.overdrawn.items()},
            )
            halt = ManualInterventionRequired(pid, f"rollback of plan {plan.id} failed", context)
            self._halted[pid] = str(halt)
            logger.error("Manual intervention required for %s: %s", pid, halt, extra={"context": context})
            raise halt from rollback_exc

        run.record(receipt)
        self._ledger.append_latest(pid, Failed(reason=reason, plan_id=plan.id, step=failed_step))
        position = self._ledger.append_latest(
            pid,
            RangeAdjusted(
                range_lower=run.start.range_lower,
                range_upper=run.start.range_upper,
                deposited=receipt.amount_out,
                plan_id=plan.id,
            ),
        )
        self._settle(run, completed=False)
        return self._report(run, "rolled_back", position, reason)

    async def _run_rotate(self, run: _PlanRun) -> ExecutionReport:
        transfer, swap = run.plan.steps
        arrived: Optional[Decimal] = None

        try:
            receipt = await self._run_step(run, transfer)
            arrived = self._transferred(run, receipt)
            receipt = await self._run_step(run, replace(swap, amount=arrived))
            run.record(receipt)
        except ABORTING as exc:
            return self._abort_rotate(run, arrived, _describe(exc))
        except ManualInterventionRequired as exc:
            self._halt(run, exc)
            raise
        except asyncio.CancelledError:
            await self._finish_cancelled(self._recover_rotate(run, arrived, CANCELLED))
            raise
        except Exception as exc:
            reason = self._unexpected(run, exc)
            return await self._shielded(self._recover_rotate(run, arrived, reason))

        return self._complete_rotate(run, arrived, receipt)

    def _transferred(self, run: _PlanRun, receipt: Receipt) -> Decimal:
        run.record(receipt)
        run.consumed[(run.plan.steps[0].venue, run.quote)] += receipt.amount_in
        return receipt.amount_out

    def _abort_rotate(self, run: _PlanRun, arrived: Optional[Decimal], reason: str) -> ExecutionReport:
        if arrived is not None:
            # The transfer stands; the capital now sits at the destination unconverted.
            run.credits[(run.plan.steps[1].venue, run.quote)] += arrived
        return self._abort(run, reason)

    async def _recover_rotate(self, run: _PlanRun, arrived: Optional[Decimal], reason: str) -> ExecutionReport:
        step = run.pending
        receipt = await self._resolve_pending(run)
        if step is not None and receipt is not None:
            if step.action == "transfer":
                arrived = self._transferred(run, receipt)
            else:
                run.record(receipt)
                return self._complete_rotate(run, arrived, receipt)
        return self._abort_rotate(run, arrived, reason)

    def _complete_rotate(self, run: _PlanRun, arrived: Decimal, receipt: Receipt) -> ExecutionReport:
        plan = run.plan
        transfer, swap = plan.steps
        origin, destination = transfer.venue, swap.venue
        base_asset = swap.asset_out or swap.asset
        run.credits[(destination, base_asset)] += receipt.amount_out
        position = self._ledger.append_latest(
            plan.position_id,
            CapitalRotated(
                from_venue=origin,
                to_venue=destination,
                asset=base_asset,
                amount=receipt.amount_out,
                plan_id=plan.id,
            ),
        )
        self._settle(run, completed=True)
        logger.info("Rotated %s %s from %s to %s", arrived, run.quote, origin, destination)
        return self._report(run, "completed", position)

    async def _run_single(self, run: _PlanRun, complete: Callable[[Receipt], ExecutionReport]) -> ExecutionReport:
        """Run a one-step plan; ``complete`` records a settled step in the ledger."""
        (step,) = run.plan.steps
        try:
            receipt = await self._run_step(run, step)
        except ABORTING as exc:
            return self._abort(run, _describe(exc))
        except ManualInterventionRequired as exc:
            self._halt(run, exc)
            raise
        except asyncio.CancelledError:
            await self._finish_cancelled(self._recover_single(run, complete, CANCELLED))
            raise
        except Exception as exc:
            reason = self._unexpected(run, exc)
            return await self._shielded(self._recover_single(run, complete, reason))

        run.record(receipt)
        return complete(receipt)

    async def _recover_single(
        self, run: _PlanRun, complete: Callable[[Receipt], ExecutionReport], reason: str
    ) -> ExecutionReport:
        receipt = await self._resolve_pending(run)
        if receipt is None:
            return self._abort(run, reason)
        run.record(receipt)
        return complete(receipt)

    def _complete_open(self, run: _PlanRun, receipt: Receipt) -> ExecutionReport:
        plan = run.plan
        (step,) = plan.steps
        run.consumed[(step.venue, run.quote)] += receipt.amount_in
        position = self._ledger.append(
            plan.position_id,
            Created(
                pool=step.pool or "",
                pair=plan.pair,
                venue=step.venue,
                range_lower=step.range_lower,
                range_upper=step.range_upper,
                liquidity=receipt.amount_out,
            ),
            expected_version=0,
        )
        self._settle(run, completed=True)
        logger.info(
            "Opened %s on %s with %s %s in [%s, %s]",
            plan.position_id,
            step.venue,
            receipt.amount_out,
            run.quote,
            step.range_lower,
            step.range_upper,
        )
        return self._report(run, "completed", position)

    def _complete_harvest(self, run: _PlanRun, receipt: Receipt) -> ExecutionReport:
        plan = run.plan
        (step,) = plan.steps
        run.credits[(step.venue, run.quote)] += receipt.amount_out
        position = self._ledger.append_latest(
            plan.position_id, FeesHarvested(amount=receipt.amount_out, plan_id=plan.id)
        )
        self._settle(run, completed=True)
        logger.info("Harvested %s %s from %s", receipt.amount_out, run.quote, plan.position_id)
        return self._report(run, "completed", position)

    def _complete_close(self, run: _PlanRun, receipt: Receipt) -> ExecutionReport:
        plan = run.plan
        (step,) = plan.steps
        run.credits[(step.venue, run.quote)] += receipt.amount_out
        position = self._ledger.append_latest(plan.position_id, Closed(withdrawn=receipt.amount_out, plan_id=plan.id))
        self._settle(run, completed=True)
        logger.info("Closed %s; %s %s returned to %s", plan.position_id, receipt.amount_out, run.quote, step.venue)
        return self._report(run, "completed", position)
