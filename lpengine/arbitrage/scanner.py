from __future__ import annotations

import logging
import threading
from datetime import datetime
from decimal import Decimal
from typing import Callable, Iterable, Mapping, Optional

from lpengine.arbitrage.calculator import ArbitrageComputation, calculate_rotation_edge
from lpengine.capital.allocator import CapitalAllocator
from lpengine.config import ScannerConfig
from lpengine.execution.keys import make_idempotency_key, make_plan_id
from lpengine.types import (
    Commitment,
    ConsensusPrice,
    ExecutionStep,
    FeeBreakdown,
    Plan,
    Position,
    PositionState,
    PriceQuote,
    StepBounds,
    split_pair,
    utc_now,
)

logger = logging.getLogger(__name__)


class ArbitrageScanner:
    """Proposes capital rotations between a position's DEX and centralized venues.

    Capital moves from the more expensive venue toward the cheaper one, where
    the base asset is bought. At most one rotation per pair is emitted per
    cooldown window.
    """

    def __init__(
        self,
        config: Optional[ScannerConfig] = None,
        *,
        allocator: CapitalAllocator,
        venue_fees: Optional[Mapping[str, FeeBreakdown]] = None,
        clock: Optional[Callable[[], datetime]] = None,
    ) -> None:
        self._config = config or ScannerConfig()
        self._allocator = allocator
        self._venue_fees = dict(venue_fees or {})
        self._clock = clock or utc_now
        self._last_emitted: dict[str, datetime] = {}
        self._lock = threading.Lock()

    def _fees_for(self, venue: str, dex_venue: str) -> FeeBreakdown:
        fees = self._venue_fees.get(venue)
        if fees is not None:
            return fees
        return self._config.dex_fees if venue == dex_venue else self._config.cex_fees

    def in_cooldown(self, pair: str, now: Optional[datetime] = None) -> bool:
        last = self._last_emitted.get(pair)
        if last is None:
            return False
        return (now or self._clock()) - last < self._config.cooldown

    def best_edge(
        self, position: Position, consensus: ConsensusPrice, venue_quotes: Iterable[PriceQuote]
    ) -> Optional[ArbitrageComputation]:
        """Best rotation between the DEX consensus and the best centralized quotes."""
        quotes = [q for q in venue_quotes if q.pair == position.pair and q.source != position.venue]
        if not quotes:
            return None

        cfg = self._config
        dex_venue = position.venue
        dex_price = consensus.value
        candidates: list[ArbitrageComputation] = []

        cheapest = min(quotes, key=lambda q: q.price)
        if cheapest.price < dex_price:
            candidates.append(
                calculate_rotation_edge(
                    pair=position.pair,
                    buy_venue=cheapest.source,
                    sell_venue=dex_venue,
                    buy_price=cheapest.price,
                    sell_price=dex_price,
                    notional=cfg.rotation_notional,
                    buy_fees=self._fees_for(cheapest.source, dex_venue),
                    sell_fees=self._fees_for(dex_venue, dex_venue),
                    transfer_cost=cfg.transfer_cost,
                )
            )

        richest = max(quotes, key=lambda q: q.price)
        if richest.price > dex_price:
            candidates.append(
                calculate_rotation_edge(
                    pair=position.pair,
                    buy_venue=dex_venue,
                    sell_venue=richest.source,
                    buy_price=dex_price,
                    sell_price=richest.price,
                    notional=cfg.rotation_notional,
                    buy_fees=self._fees_for(dex_venue, dex_venue),
                    sell_fees=self._fees_for(richest.source, dex_venue),
                    transfer_cost=cfg.transfer_cost,
                )
            )

        if not candidates:
            return None
        return max(candidates, key=lambda c: c.net_edge_rate)

    def scan(
        self, position: Position, consensus: ConsensusPrice, venue_quotes: Iterable[PriceQuote]
    ) -> Optional[Plan]:
        if position.state is not PositionState.ACTIVE:
            return None

        cfg = self._config
        now = self._clock()
        with self._lock:
            if self.in_cooldown(position.pair, now):
                return None

            edge = self.best_edge(position, consensus, venue_quotes)
            if edge is None:
                return None
            if edge.net_edge_rate <= cfg.min_edge:
                logger.debug(
                    "No rotation for %s: net edge %s below %s", position.pair, edge.net_edge_rate, cfg.min_edge
                )
                return None

            base, quote = split_pair(position.pair)
            # Capital leaves the expensive venue (where the asset is sold) for the cheap one.
            origin, destination = edge.sell_venue, edge.buy_venue
            required = cfg.rotation_notional + cfg.transfer_cost
            available = self._allocator.account(origin, quote).available
            if available < required:
                logger.info(
                    "Skipping rotation %s -> %s for %s: %s %s available, %s needed",
                    origin,
                    destination,
                    position.pair,
                    available,
                    quote,
                    required,
                )
                return None

            plan = self._build_plan(position, consensus, edge, origin, destination, base, quote)
            self._last_emitted[position.pair] = now

        logger.info(
            "Rotation %s -> %s for %s: net edge %s (spread %s%%)",
            origin,
            destination,
            position.pair,
            edge.net_edge_rate,
            edge.spread_pct,
        )
        return plan

    def _build_plan(
        self,
        position: Position,
        consensus: ConsensusPrice,
        edge: ArbitrageComputation,
        origin: str,
        destination: str,
        base: str,
        quote: str,
    ) -> Plan:
        cfg = self._config
        plan_id = make_plan_id(
            kind="rotate",
            position_id=position.id,
            ledger_version=position.version,
            discriminator=f"{origin}>{destination}:{consensus.quote_version}",
        )
        steps = (
            ExecutionStep(
                idempotency_key=make_idempotency_key(plan_id, 0),
                index=0,
                action="transfer",
                venue=origin,
                asset=quote,
                amount=cfg.rotation_notional,
                destination=destination,
            ),
            ExecutionStep(
                idempotency_key=make_idempotency_key(plan_id, 1),
                index=1,
                action="swap",
                venue=destination,
                asset=quote,
                asset_out=base,
                side="buy",
                amount=None,
                price=edge.buy_price,
                bounds=StepBounds(max_slippage_bps=cfg.max_slippage_bps),
            ),
        )
        return Plan(
            id=plan_id,
            kind="rotate",
            position_id=position.id,
            pair=position.pair,
            steps=steps,
            expected_cost=edge.total_fees,
            expected_benefit=edge.gross_profit,
            based_on_ledger_version=position.version,
            commitments=(Commitment(venue=origin, asset=quote, amount=cfg.rotation_notional + cfg.transfer_cost),),
            reason=f"net edge {edge.net_edge_rate} between {edge.buy_venue} and {edge.sell_venue}",
            created_at=self._clock(),
        )
