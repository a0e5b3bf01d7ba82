"""Price ingestion and consensus."""

from .aggregator import PriceAggregator, QuoteSnapshot, validate_quote, weighted_median
from .feeds import PriceFeedPoller
from .interfaces import PriceSourceClient

__all__ = [
    "PriceAggregator",
    "PriceFeedPoller",
    "PriceSourceClient",
    "QuoteSnapshot",
    "validate_quote",
    "weighted_median",
]
