"""FastAPI application for operating the liquidity engine.

Endpoints:
- POST /quotes - Submit a price quote
- GET /quotes/{base}/{quote}/consensus - Current consensus price
- GET /positions - List managed positions
- POST /positions - Register a position
- POST /positions/open - Deposit into a new position around the consensus
- GET /positions/{id} - Position snapshot
- GET /positions/{id}/audit - Ordered ledger events of a position
- POST /positions/{id}/fees - Record venue-reported accrued fees
- POST /positions/{id}/close - Withdraw everything and close
- POST /positions/{id}/reconcile - Clear a halt after settling the position by hand
- POST /control/pause, POST /control/resume - Global or per-position
- GET /control/status, GET /control/decisions - Engine state and decision trail
- GET /system/health - Health summary

Configuration comes from LPENGINE_* environment variables (see lpengine.config).
Set LPENGINE_AUTORUN=1 to run the engine schedules inside the API process.
No authentication (local network only).
"""

from __future__ import annotations

import asyncio
import logging
import os
from contextlib import asynccontextmanager, suppress
from typing import AsyncIterator

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from api import state
from api.routes import control, health, positions, quotes
from lpengine.errors import (
    CapitalError,
    ConcurrentModification,
    InvalidRange,
    InvalidTransition,
    ManualInterventionRequired,
    PositionNotFound,
    StalePrice,
)

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(_app: FastAPI) -> AsyncIterator[None]:
    task: asyncio.Task | None = None
    if os.getenv("LPENGINE_AUTORUN", "").lower() in {"1", "true", "yes"}:
        engine = state.get_engine()
        task = asyncio.create_task(engine.run())
        logger.info("Engine schedules started")
    try:
        yield
    finally:
        if task is not None:
            state.get_engine().stop()
            task.cancel()
            with suppress(asyncio.CancelledError):
                await task
            logger.info("Engine schedules stopped")


app = FastAPI(
    title="LP Rebalancer API",
    description="Operator API for the liquidity rebalancing and arbitrage engine",
    version="0.1.0",
    lifespan=lifespan,
)

app.include_router(quotes.router)
app.include_router(positions.router)
app.include_router(control.router)
app.include_router(health.router)


def _error(status_code: int, error: str, message: str) -> JSONResponse:
    return JSONResponse(status_code=status_code, content={"error": error, "message": message})


@app.exception_handler(PositionNotFound)
async def position_not_found_handler(_request: Request, exc: PositionNotFound) -> JSONResponse:
    return _error(404, "position_not_found", str(exc))


@app.exception_handler(StalePrice)
async def stale_price_handler(_request: Request, exc: StalePrice) -> JSONResponse:
    return _error(503, "stale_price", str(exc))


@app.exception_handler(CapitalError)
async def capital_error_handler(_request: Request, exc: CapitalError) -> JSONResponse:
    return _error(409, "capital_rejected", str(exc))


@app.exception_handler(ConcurrentModification)
@app.exception_handler(InvalidTransition)
async def conflict_handler(_request: Request, exc: Exception) -> JSONResponse:
    return _error(409, "conflict", str(exc))


@app.exception_handler(ManualInterventionRequired)
async def manual_intervention_handler(_request: Request, exc: ManualInterventionRequired) -> JSONResponse:
    return _error(409, "manual_intervention_required", str(exc))


@app.exception_handler(InvalidRange)
@app.exception_handler(ValueError)
async def value_error_handler(_request: Request, exc: Exception) -> JSONResponse:
    return _error(422, "invalid_request", str(exc))


@app.exception_handler(Exception)
async def global_exception_handler(_request: Request, exc: Exception) -> JSONResponse:
    """Global exception handler to ensure consistent error responses."""
    logger.error("Unhandled API error", exc_info=exc)
    return _error(500, "internal_server_error", "An unexpected error occurred")
