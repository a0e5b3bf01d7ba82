"""Tests for polling price sources."""

from __future__ import annotations

import asyncio

import pytest

from conftest import FakeClock, make_quote
from lpengine.config import AggregatorConfig
from lpengine.errors import SourceUnavailable
from lpengine.pricing.aggregator import PriceAggregator
from lpengine.pricing.feeds import PriceFeedPoller
from lpengine.types import PriceQuote


class StaticSource:
    def __init__(self, name: str, clock: FakeClock, price: str) -> None:
        self.name = name
        self._clock = clock
        self._price = price

    async def query_quote(self, pair: str) -> PriceQuote:
        return make_quote(self._clock, self.name, self._price, pair=pair)


class DownSource:
    name = "down"

    async def query_quote(self, pair: str) -> PriceQuote:
        raise SourceUnavailable(self.name, "HTTP 503")


class SlowSource:
    name = "slow"

    async def query_quote(self, pair: str) -> PriceQuote:
        await asyncio.sleep(10)
        raise AssertionError("unreachable")


@pytest.mark.asyncio
async def test_failing_sources_do_not_block_others(clock: FakeClock) -> None:
    aggregator = PriceAggregator(AggregatorConfig(quorum=2), clock=clock)
    poller = PriceFeedPoller(
        aggregator,
        [StaticSource("a", clock, "100"), StaticSource("b", clock, "101"), DownSource(), SlowSource()],
        ["ETH/USDC"],
        timeout=0.05,
    )

    accepted = await poller.poll_once()

    assert accepted == 2
    assert set(aggregator.get_consensus("ETH/USDC").contributing_sources) == {"a", "b"}


@pytest.mark.asyncio
async def test_invalid_quote_is_dropped(clock: FakeClock) -> None:
    aggregator = PriceAggregator(AggregatorConfig(quorum=1), clock=clock)
    poller = PriceFeedPoller(aggregator, [StaticSource("bad", clock, "-5")], ["ETH/USDC"])

    assert await poller.poll_once() == 0
    assert aggregator.snapshot("ETH/USDC").quotes == ()


@pytest.mark.asyncio
async def test_no_sources(clock: FakeClock) -> None:
    poller = PriceFeedPoller(PriceAggregator(clock=clock), [], ["ETH/USDC"])
    assert await poller.poll_once() == 0
