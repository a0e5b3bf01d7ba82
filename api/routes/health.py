"""Health check API endpoint."""

from __future__ import annotations

import time
from typing import Any

from fastapi import APIRouter

from api import state

router = APIRouter(prefix="/system/health", tags=["health"])

# Track API start time
_api_start_time = time.time()


@router.get("")
async def health_check() -> dict[str, Any]:
    """Get engine health.

    Reports ``degraded`` while any pair is suppressed for lack of a fresh
    consensus, and ``error`` while any position awaits manual intervention.
    """
    engine = state.get_engine()
    status = engine.status()

    overall = "ok"
    if status["suppressed_pairs"]:
        overall = "degraded"
    if status["halted"]:
        overall = "error"

    return {
        "overall": {"status": overall},
        "api": {
            "status": "ok",
            "uptime_seconds": int(time.time() - _api_start_time),
            "message": "API running",
        },
        "engine": {
            "positions": len(engine.ledger.positions()),
            "paused": status["paused"],
            "halted": sorted(status["halted"]),
            "suppressed_pairs": sorted(status["suppressed_pairs"]),
        },
    }
