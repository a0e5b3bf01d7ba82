from __future__ import annotations

import asyncio
import logging
from typing import Sequence

from lpengine.errors import SourceError
from lpengine.pricing.aggregator import PriceAggregator
from lpengine.pricing.interfaces import PriceSourceClient

logger = logging.getLogger(__name__)


class PriceFeedPoller:
    """Polls every source for every pair and feeds the aggregator.

    One failing source never blocks the others; its failure is logged and the
    aggregator simply keeps that source's last quote until it ages out.
    """

    def __init__(
        self,
        aggregator: PriceAggregator,
        sources: Sequence[PriceSourceClient],
        pairs: Sequence[str],
        *,
        timeout: float = 5.0,
    ) -> None:
        self._aggregator = aggregator
        self._sources = list(sources)
        self._pairs = list(pairs)
        self._timeout = timeout

    async def _poll(self, source: PriceSourceClient, pair: str) -> bool:
        try:
            quote = await asyncio.wait_for(source.query_quote(pair), timeout=self._timeout)
        except asyncio.TimeoutError:
            logger.warning("Price source %s timed out for %s", source.name, pair)
            return False
        except SourceError as exc:
            logger.warning("Price source %s failed for %s: %s", source.name, pair, exc)
            return False

        try:
            return self._aggregator.submit_quote(quote)
        except ValueError as exc:
            logger.warning("Rejected quote from %s for %s: %s", source.name, pair, exc)
            return False

    async def poll_once(self) -> int:
        """Query all (source, pair) combinations once; return the number of accepted quotes."""
        jobs = [self._poll(source, pair) for source in self._sources for pair in self._pairs]
        if not jobs:
            return 0
        results = await asyncio.gather(*jobs)
        return sum(1 for accepted in results if accepted)
