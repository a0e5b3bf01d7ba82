"""Trust-weighted price consensus.

Quotes are kept per pair as one slot per source. Writers replace the pair's
quote map (copy-on-write) under a lock, so readers always see a complete,
versioned snapshot.
"""

from __future__ import annotations

import logging
import statistics
import threading
from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal
from typing import Callable, Mapping, Optional, Sequence

from lpengine.config import AggregatorConfig
from lpengine.errors import InsufficientQuorum, StalePrice
from lpengine.types import ConsensusPrice, PriceQuote, utc_now

logger = logging.getLogger(__name__)

Clock = Callable[[], datetime]


@dataclass(frozen=True)
class QuoteSnapshot:
    """Immutable view of the latest quote per source for one pair."""

    pair: str
    version: int
    quotes: tuple[PriceQuote, ...]


def validate_quote(quote: PriceQuote) -> None:
    """Reject quotes that can never contribute to a consensus."""
    if quote.price <= 0:
        raise ValueError(f"{quote.source}/{quote.pair}: price must be positive")
    if not Decimal("0") < quote.confidence <= Decimal("1"):
        raise ValueError(f"{quote.source}/{quote.pair}: confidence must be in (0, 1]")
    if quote.timestamp.tzinfo is None:
        raise ValueError(f"{quote.source}/{quote.pair}: timestamp must be timezone-aware")


def weighted_median(values: Sequence[tuple[Decimal, Decimal]]) -> Decimal:
    """Lower weighted median of (value, weight) pairs."""
    if not values:
        raise ValueError("weighted_median of empty sequence")
    ordered = sorted(values, key=lambda item: item[0])
    total = sum((weight for _, weight in ordered), Decimal("0"))
    if total <= 0:
        raise ValueError("weights must sum to a positive value")
    half = total / 2
    cumulative = Decimal("0")
    for value, weight in ordered:
        cumulative += weight
        if cumulative >= half:
            return value
    return ordered[-1][0]


class PriceAggregator:
    def __init__(self, config: Optional[AggregatorConfig] = None, *, clock: Optional[Clock] = None) -> None:
        self._config = config or AggregatorConfig()
        self._clock = clock or utc_now
        self._lock = threading.Lock()
        self._quotes: dict[str, Mapping[str, PriceQuote]] = {}
        self._versions: dict[str, int] = {}

    @property
    def config(self) -> AggregatorConfig:
        return self._config

    def submit_quote(self, quote: PriceQuote) -> bool:
        """Record ``quote`` as the latest for its (source, pair).

        Returns False when the quote is older than the one already stored.
        """
        validate_quote(quote)
        with self._lock:
            current = self._quotes.get(quote.pair, {})
            previous = current.get(quote.source)
            if previous is not None and quote.timestamp < previous.timestamp:
                logger.debug("Ignoring out-of-order quote from %s for %s", quote.source, quote.pair)
                return False
            updated = dict(current)
            updated[quote.source] = quote
            self._quotes[quote.pair] = updated
            self._versions[quote.pair] = self._versions.get(quote.pair, 0) + 1
        return True

    def snapshot(self, pair: str) -> QuoteSnapshot:
        with self._lock:
            quotes = self._quotes.get(pair, {})
            version = self._versions.get(pair, 0)
        ordered = tuple(sorted(quotes.values(), key=lambda q: q.source))
        return QuoteSnapshot(pair=pair, version=version, quotes=ordered)

    def pairs(self) -> list[str]:
        with self._lock:
            return sorted(self._quotes)

    def _fresh(self, quotes: Sequence[PriceQuote], now: datetime) -> list[PriceQuote]:
        max_age = self._config.max_quote_age
        return [q for q in quotes if now - q.timestamp <= max_age]

    def venue_quotes(self, pair: str) -> list[PriceQuote]:
        """Fresh quotes from centralized venue sources (excluded from consensus)."""
        snap = self.snapshot(pair)
        venues = self._config.venue_sources
        return self._fresh([q for q in snap.quotes if q.source in venues], self._clock())

    def get_consensus(self, pair: str) -> ConsensusPrice:
        """Compute the consensus price for ``pair``.

        Raises:
            StalePrice: fewer than ``quorum`` fresh quotes
            InsufficientQuorum: fewer than ``quorum`` quotes left after outlier rejection
        """
        snap = self.snapshot(pair)
        now = self._clock()
        quorum = self._config.quorum
        candidates = [q for q in snap.quotes if q.source not in self._config.venue_sources]

        fresh = self._fresh(candidates, now)
        if len(fresh) < quorum:
            raise StalePrice(pair, len(fresh), quorum)

        kept = self._reject_outliers(fresh)
        if len(kept) < quorum:
            raise InsufficientQuorum(pair, len(kept), quorum)

        value = weighted_median([(q.price, q.confidence * self._config.weight_for(q.source)) for q in kept])
        spread = statistics.pstdev([q.price for q in kept]) if len(kept) > 1 else Decimal("0")

        return ConsensusPrice(
            pair=pair,
            value=value,
            confidence_interval=(value - spread, value + spread),
            contributing_sources=tuple(q.source for q in kept),
            computed_at=now,
            quote_version=snap.version,
        )

    def _reject_outliers(self, quotes: list[PriceQuote]) -> list[PriceQuote]:
        if len(quotes) < 2:
            return quotes
        prices = [q.price for q in quotes]
        median = statistics.median(prices)
        # Population deviation: with few quotes the sample estimate is wide enough
        # to keep a lone outlier (e.g. 1000 among 100, 101, 102 at 2x).
        deviation = statistics.pstdev(prices)
        if deviation == 0:
            return quotes
        limit = self._config.outlier_multiplier * deviation
        kept = [q for q in quotes if abs(q.price - median) <= limit]
        dropped = len(quotes) - len(kept)
        if dropped:
            logger.info(
                "Dropped %d outlier quote(s) for %s (median=%s, limit=%s)", dropped, quotes[0].pair, median, limit
            )
        return kept
