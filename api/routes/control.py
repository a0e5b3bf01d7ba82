"""Operator controls: pause / resume automatic action and inspect engine state."""

from __future__ import annotations

from typing import Any, Optional

from fastapi import APIRouter, Query
from pydantic import BaseModel

from api import state

router = APIRouter(prefix="/control", tags=["control"])


class ScopeRequest(BaseModel):
    """Omit ``position_id`` to act globally."""

    position_id: Optional[str] = None


@router.post("/pause")
async def pause(request: ScopeRequest) -> dict[str, Any]:
    engine = state.get_engine()
    engine.pause(request.position_id)
    return {"paused": True, "scope": request.position_id or "global"}


@router.post("/resume")
async def resume(request: ScopeRequest) -> dict[str, Any]:
    engine = state.get_engine()
    engine.resume(request.position_id)
    return {"paused": engine.is_paused(request.position_id), "scope": request.position_id or "global"}


@router.get("/status")
async def status() -> dict[str, Any]:
    return state.get_engine().status()


@router.get("/decisions")
async def decisions(
    position_id: Optional[str] = Query(None, description="Filter by position"),
    limit: int = Query(100, ge=1, le=1000),
) -> dict[str, Any]:
    """Recent plan decisions from the audit trail, newest last."""
    engine = state.get_engine()
    events = engine.audit.get_events(position_id=position_id)[-limit:]
    return {"events": [e.to_dict() for e in events], "count": len(events)}
