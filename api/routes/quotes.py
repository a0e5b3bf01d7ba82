"""API endpoint for pushing price quotes into the aggregator."""

from __future__ import annotations

from datetime import datetime, timezone
from decimal import Decimal
from typing import Any, Optional

from fastapi import APIRouter, HTTPException
from pydantic import BaseModel, Field

from api import state
from lpengine.types import PriceQuote

router = APIRouter(prefix="/quotes", tags=["quotes"])


class QuoteRequest(BaseModel):
    source: str = Field(..., min_length=1)
    pair: str = Field(..., description="BASE/QUOTE, e.g. ETH/USDC")
    price: Decimal = Field(..., gt=0)
    confidence: Decimal = Field(Decimal("1"), gt=0, le=1)
    timestamp: Optional[datetime] = Field(None, description="Defaults to now (UTC)")


@router.post("")
async def submit_quote(request: QuoteRequest) -> dict[str, Any]:
    engine = state.get_engine()
    timestamp = request.timestamp or datetime.now(timezone.utc)
    if timestamp.tzinfo is None:
        raise HTTPException(status_code=422, detail="timestamp must include a timezone")

    quote = PriceQuote(
        source=request.source,
        pair=request.pair,
        price=request.price,
        confidence=request.confidence,
        timestamp=timestamp,
    )
    accepted = engine.submit_quote(quote)
    return {"accepted": accepted, "pair": quote.pair, "source": quote.source}


@router.get("/{base}/{quote}/consensus")
async def get_consensus(base: str, quote: str) -> dict[str, Any]:
    engine = state.get_engine()
    pair = f"{base}/{quote}"
    consensus = engine.aggregator.get_consensus(pair)
    low, high = consensus.confidence_interval
    return {
        "pair": pair,
        "value": str(consensus.value),
        "confidence_interval": [str(low), str(high)],
        "contributing_sources": list(consensus.contributing_sources),
        "computed_at": consensus.computed_at.isoformat(),
    }
