from __future__ import annotations

from typing import Protocol

from lpengine.types import PriceQuote


class PriceSourceClient(Protocol):
    """A source of price quotes (oracle, DEX pool, centralized exchange ticker)."""

    name: str

    async def query_quote(self, pair: str) -> PriceQuote:
        """Return the source's current quote for ``pair``.

        Raises SourceUnavailable or SourceTimeout when no quote can be produced.
        """
