"""Liquidity engine - the per-cycle decision pipeline.

Each cycle reads consensus prices, asks the planner and the scanner for
plans, gets them approved by the capital allocator and hands them to the
execution coordinator. Executions run as tasks so decision cycles never wait
on venues; a position with an execution in flight is not planned again until
it finishes.

Operators can pause automatic action globally or per position. Pausing never
interrupts an execution that already started. A position halted for manual
intervention stays halted until an operator reconciles it; resuming only
lifts a pause. Operators also open new positions, sized by the risk budget
when no amount is given, and close existing ones.
"""

from __future__ import annotations

import asyncio
import logging
from decimal import Decimal
from typing import Any, Awaitable, Callable, Mapping, Optional, Sequence

from lpengine.arbitrage.scanner import ArbitrageScanner
from lpengine.automation.audit import AuditLogger
from lpengine.capital.allocator import CapitalAllocator
from lpengine.config import EngineConfig
from lpengine.errors import (
    InsufficientCapital,
    InvalidTransition,
    ManualInterventionRequired,
    RiskBudgetExceeded,
    StalePlan,
    StalePrice,
)
from lpengine.execution.coordinator import ExecutionCoordinator, ExecutionReport
from lpengine.execution.interfaces import VenueExecutionClient
from lpengine.execution.paper import PaperVenue
from lpengine.ledger.events import Created, EventRecord, FeesAccrued
from lpengine.ledger.ledger import PositionLedger
from lpengine.persistence.interfaces import PersistenceStore
from lpengine.planning.planner import RebalancePlanner
from lpengine.planning.ranges import RangeWidthPolicy
from lpengine.pricing.aggregator import Clock, PriceAggregator
from lpengine.pricing.feeds import PriceFeedPoller
from lpengine.pricing.interfaces import PriceSourceClient
from lpengine.storage.memory import InMemoryEventStore
from lpengine.storage.sql import SqlEventStore
from lpengine.types import ConsensusPrice, Plan, Position, PositionState, PriceQuote, split_pair

logger = logging.getLogger(__name__)


class LiquidityEngine:
    def __init__(
        self,
        config: Optional[EngineConfig] = None,
        *,
        venues: Mapping[str, VenueExecutionClient],
        sources: Sequence[PriceSourceClient] = (),
        store: Optional[PersistenceStore] = None,
        allocator: Optional[CapitalAllocator] = None,
        width_policy: Optional[RangeWidthPolicy] = None,
        audit: Optional[AuditLogger] = None,
        clock: Optional[Clock] = None,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ) -> None:
        self.config = config or EngineConfig()
        self.audit = audit or AuditLogger()
        self.aggregator = PriceAggregator(self.config.aggregator, clock=clock)
        self.ledger = PositionLedger(store, clock=clock)
        self.allocator = allocator or CapitalAllocator(self.config.risk)
        self.planner = RebalancePlanner(self.config.planner, width_policy=width_policy, clock=clock)
        self.scanner = ArbitrageScanner(self.config.scanner, allocator=self.allocator, clock=clock)
        self.coordinator = ExecutionCoordinator(
            ledger=self.ledger,
            allocator=self.allocator,
            venues=venues,
            config=self.config.execution,
            sleep=sleep,
        )
        self.poller = (
            PriceFeedPoller(self.aggregator, sources, self.config.pairs, timeout=self.config.poll_timeout)
            if sources
            else None
        )

        self._paused_global = False
        self._paused: set[str] = set()
        self._suppressed: dict[str, str] = {}
        self._tasks: dict[str, asyncio.Task] = {}
        self._running = False

    # -- operator surface ----------------------------------------------------

    def submit_quote(self, quote: PriceQuote) -> bool:
        return self.aggregator.submit_quote(quote)

    def get_position_snapshot(self, position_id: str) -> Position:
        return self.ledger.snapshot(position_id)

    def get_audit_log(self, position_id: str) -> list[EventRecord]:
        return self.ledger.events(position_id)

    def pause(self, position_id: Optional[str] = None) -> None:
        """Stop planning globally, or for one position."""
        if position_id is None:
            self._paused_global = True
        else:
            self.ledger.snapshot(position_id)
            self._paused.add(position_id)
        self.audit.log_control("pause", position_id)
        logger.warning("Automatic action paused (%s)", position_id or "global")

    def resume(self, position_id: Optional[str] = None) -> None:
        """Resume planning. A halted position stays halted until reconciled."""
        if position_id is None:
            self._paused_global = False
        else:
            self.ledger.snapshot(position_id)
            self._paused.discard(position_id)
        self.audit.log_control("resume", position_id)
        logger.info("Automatic action resumed (%s)", position_id or "global")

    def is_paused(self, position_id: Optional[str] = None) -> bool:
        if self._paused_global:
            return True
        return position_id is not None and position_id in self._paused

    def status(self) -> dict[str, Any]:
        return {
            "paused": self._paused_global,
            "paused_positions": sorted(self._paused),
            "halted": self.coordinator.halted(),
            "suppressed_pairs": dict(self._suppressed),
            "in_flight": sorted(self._tasks),
        }

    def register_position(
        self,
        *,
        position_id: str,
        pool: str,
        pair: str,
        venue: str,
        range_lower: Decimal,
        range_upper: Decimal,
        liquidity: Decimal,
    ) -> Position:
        """Record an existing deposit as a managed position."""
        split_pair(pair)
        event = Created(
            pool=pool,
            pair=pair,
            venue=venue,
            range_lower=range_lower,
            range_upper=range_upper,
            liquidity=liquidity,
        )
        position = self.ledger.append(position_id, event, expected_version=0)
        logger.info("Registered position %s on %s [%s, %s]", position_id, venue, range_lower, range_upper)
        return position

    def record_fees(self, position_id: str, amount: Decimal) -> Position:
        """Record fees the venue reports as accrued on a position."""
        return self.ledger.append_latest(position_id, FeesAccrued(amount=amount))

    async def close_position(self, position_id: str) -> ExecutionReport:
        """Withdraw everything and close the position.

        Raises InsufficientCapital / RiskBudgetExceeded when gas cannot be
        reserved, and ManualInterventionRequired when the withdrawal is unresolved.
        """
        for attempt in range(2):
            plan = self.planner.plan_close(self.ledger.snapshot(position_id))
            self.audit.log_plan_emitted(plan)
            token = self.allocator.approve(plan)
            try:
                report = await self.coordinator.execute(plan, token)
            except StalePlan as exc:
                self.audit.log_plan_stale(plan, exc.actual_version)
                if attempt == 1:
                    raise
                continue
            except ManualInterventionRequired as exc:
                self.audit.log_manual_intervention(exc.position_id, str(exc), exc.context)
                raise
            self._record(plan, report)
            return report
        raise AssertionError("unreachable")

    async def open_position(
        self,
        *,
        position_id: str,
        pool: str,
        pair: str,
        venue: str,
        amount: Optional[Decimal] = None,
    ) -> ExecutionReport:
        """Deposit into a new range around the current consensus.

        Without ``amount`` the deposit is the most the risk budget allows on
        the venue's quote account, less gas.

        Raises:
            StalePrice: no usable consensus for ``pair``
            InvalidTransition: ``position_id`` is already taken
            InsufficientCapital / RiskBudgetExceeded: the deposit cannot be reserved
            ManualInterventionRequired: the deposit is unresolved
        """
        _, quote = split_pair(pair)
        if self.ledger.exists(position_id):
            raise InvalidTransition(f"position {position_id} already exists")
        consensus = self.aggregator.get_consensus(pair)

        if amount is None:
            gas = self.config.planner.gas_cost_per_step
            headroom = self.allocator.headroom(venue, quote)
            amount = headroom - gas
            if amount <= 0:
                raise InsufficientCapital(
                    venue,
                    quote,
                    gas,
                    headroom,
                    f"risk budget on {venue}/{quote} leaves {headroom}, not enough to cover gas {gas}",
                )

        plan = self.planner.plan_open(
            position_id=position_id, pool=pool, pair=pair, venue=venue, consensus=consensus, liquidity=amount
        )
        self.audit.log_plan_emitted(plan)
        try:
            token = self.allocator.approve(plan)
        except (InsufficientCapital, RiskBudgetExceeded) as exc:
            self.audit.log_plan_rejected(plan, str(exc))
            raise
        try:
            report = await self.coordinator.execute(plan, token)
        except StalePlan as exc:
            self.audit.log_plan_stale(plan, exc.actual_version)
            raise InvalidTransition(f"position {position_id} already exists") from exc
        except ManualInterventionRequired as exc:
            self.audit.log_manual_intervention(exc.position_id, str(exc), exc.context)
            raise
        self._record(plan, report)
        return report

    async def reconcile_position(
        self,
        position_id: str,
        *,
        range_lower: Optional[Decimal] = None,
        range_upper: Optional[Decimal] = None,
        deposited: Optional[Decimal] = None,
    ) -> Optional[Position]:
        """Clear a halt once an operator has settled the position by hand."""
        position = await self.coordinator.reconcile(
            position_id, range_lower=range_lower, range_upper=range_upper, deposited=deposited
        )
        self.audit.log_control("reconcile", position_id)
        return position

    # -- pipeline ------------------------------------------------------------

    def consensus(self, pair: str) -> Optional[ConsensusPrice]:
        """Consensus for ``pair``, or None while the pair is suppressed."""
        try:
            consensus = self.aggregator.get_consensus(pair)
        except StalePrice as exc:
            if pair not in self._suppressed:
                logger.warning("Suppressing plans for %s: %s", pair, exc)
                self.audit.log_price_suppressed(pair, str(exc))
            self._suppressed[pair] = str(exc)
            return None

        if self._suppressed.pop(pair, None) is not None:
            logger.info("Consensus restored for %s", pair)
            self.audit.log_price_restored(pair)
        return consensus

    def _eligible(self, position: Position) -> bool:
        if position.state is not PositionState.ACTIVE:
            return False
        if self.is_paused(position.id) or self.coordinator.is_halted(position.id):
            return False
        return position.id not in self._tasks and not self.coordinator.busy(position.id)

    async def run_rebalance_cycle(self) -> list[Plan]:
        """Plan rebalances and harvests for every eligible position; launch executions."""
        if self._paused_global:
            logger.debug("Rebalance cycle skipped: paused")
            return []

        emitted: list[Plan] = []
        prices: dict[str, Optional[ConsensusPrice]] = {}
        for position in self.ledger.positions():
            if not self._eligible(position):
                continue
            if position.pair not in prices:
                prices[position.pair] = self.consensus(position.pair)
            consensus = prices[position.pair]
            if consensus is None:
                continue

            plans = self.planner.evaluate(position, consensus)
            if plans:
                self._launch(position.id, plans)
                emitted.extend(plans)
        return emitted

    async def run_arbitrage_cycle(self) -> list[Plan]:
        """Scan each pair (against its first managed position) for a rotation."""
        if self._paused_global:
            logger.debug("Arbitrage cycle skipped: paused")
            return []

        emitted: list[Plan] = []
        seen: set[str] = set()
        for position in self.ledger.positions():
            if position.pair in seen or not self._eligible(position):
                continue
            seen.add(position.pair)
            consensus = self.consensus(position.pair)
            if consensus is None:
                continue

            plan = self.scanner.scan(position, consensus, self.aggregator.venue_quotes(position.pair))
            if plan is not None:
                self._launch(position.id, [plan])
                emitted.append(plan)
        return emitted

    def _launch(self, position_id: str, plans: list[Plan]) -> None:
        for plan in plans:
            self.audit.log_plan_emitted(plan)
        task = asyncio.create_task(self._execute_all(plans), name=f"execute-{position_id}")
        self._tasks[position_id] = task
        task.add_done_callback(lambda t, pid=position_id: self._on_done(pid, t))

    def _on_done(self, position_id: str, task: asyncio.Task) -> None:
        if self._tasks.get(position_id) is task:
            del self._tasks[position_id]
        if task.cancelled():
            logger.warning("Execution task for %s was cancelled", position_id)
            return
        exc = task.exception()
        if exc is not None:
            logger.error("Execution task for %s failed", position_id, exc_info=exc)

    async def _execute_all(self, plans: list[Plan]) -> list[ExecutionReport]:
        reports: list[ExecutionReport] = []
        for plan in plans:
            if self.coordinator.is_halted(plan.position_id):
                break
            report = await self._execute(plan)
            if report is not None:
                reports.append(report)
        return reports

    async def _execute(self, plan: Plan, *, regenerate: bool = True) -> Optional[ExecutionReport]:
        try:
            token = self.allocator.approve(plan)
        except (InsufficientCapital, RiskBudgetExceeded) as exc:
            logger.warning("Plan %s rejected: %s", plan.id, exc)
            self.audit.log_plan_rejected(plan, str(exc))
            return None

        try:
            report = await self.coordinator.execute(plan, token)
        except StalePlan as exc:
            self.audit.log_plan_stale(plan, exc.actual_version)
            if not regenerate:
                return None
            fresh = self._regenerate(plan)
            if fresh is None:
                return None
            self.audit.log_plan_emitted(fresh)
            return await self._execute(fresh, regenerate=False)
        except ManualInterventionRequired as exc:
            self.audit.log_manual_intervention(exc.position_id, str(exc), exc.context)
            return None
        except asyncio.CancelledError:
            if self.coordinator.is_halted(plan.position_id):
                self.audit.log_manual_intervention(
                    plan.position_id, f"{plan.kind} plan {plan.id} cancelled with an unresolved step"
                )
            else:
                self.audit.log_execution(plan, "cancelled", "execution cancelled")
            raise

        self._record(plan, report)
        return report

    def _record(self, plan: Plan, report: ExecutionReport) -> None:
        self.audit.log_execution(plan, report.outcome, report.reason)
        if report.overdrawn:
            self.audit.log_overdraft(plan, report.overdrawn)

    def _regenerate(self, plan: Plan) -> Optional[Plan]:
        position = self.ledger.snapshot(plan.position_id)
        if position.state is not PositionState.ACTIVE:
            return None
        if plan.kind == "close":
            return self.planner.plan_close(position)
        if plan.kind == "rotate":
            # Rotations wait for the next scan window.
            return None
        consensus = self.consensus(plan.pair)
        if consensus is None:
            return None
        return self.planner.regenerate(plan.kind, position, consensus)

    async def drain(self) -> None:
        """Wait for in-flight executions to finish."""
        while self._tasks:
            await asyncio.wait(list(self._tasks.values()))

    # -- schedules -----------------------------------------------------------

    async def poll_prices(self) -> int:
        if self.poller is None:
            return 0
        return await self.poller.poll_once()

    async def _schedule(self, name: str, interval: float, cycle: Callable[[], Awaitable[Any]]) -> None:
        while self._running:
            try:
                await cycle()
            except Exception:
                logger.exception("%s cycle failed", name)
            await asyncio.sleep(interval)

    async def run(self) -> None:
        """Run price polling, rebalance and arbitrage schedules until stopped."""
        logger.info(
            "Starting liquidity engine: %d position(s), pairs=%s",
            len(self.ledger.positions()),
            ",".join(self.config.pairs) or "-",
        )
        self._running = True
        schedules = [
            asyncio.create_task(self._schedule("rebalance", self.config.rebalance_interval, self.run_rebalance_cycle)),
            asyncio.create_task(self._schedule("arbitrage", self.config.scan_interval, self.run_arbitrage_cycle)),
        ]
        if self.poller is not None:
            schedules.append(asyncio.create_task(self._schedule("price", self.config.poll_interval, self.poll_prices)))

        try:
            await asyncio.gather(*schedules)
        except asyncio.CancelledError:
            logger.info("Liquidity engine cancelled")
        finally:
            self._running = False
            for task in schedules:
                task.cancel()
            await self.drain()
            logger.info("Liquidity engine stopped")

    def stop(self) -> None:
        """Signal the schedules to stop after their current cycle."""
        self._running = False


def build_engine(
    config: EngineConfig,
    *,
    venues: Optional[Mapping[str, VenueExecutionClient]] = None,
    sources: Sequence[PriceSourceClient] = (),
) -> LiquidityEngine:
    """Build an engine from configuration and recover its ledger.

    Without explicit venue clients every configured venue is served by a
    `PaperVenue`, so nothing touches a real exchange.
    """
    store: PersistenceStore
    if config.database_url:
        store = SqlEventStore(database_url=config.database_url)
    else:
        store = InMemoryEventStore()

    if venues is None:
        venues = {name: PaperVenue(name) for name in config.venues}
        logger.info("Using paper venues: %s", ",".join(venues) or "-")

    engine = LiquidityEngine(config, venues=venues, sources=sources, store=store)
    engine.ledger.recover()
    return engine
