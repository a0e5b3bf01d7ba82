"""API endpoints for managed liquidity positions."""

from __future__ import annotations

from decimal import Decimal
from typing import Any, Optional

from fastapi import APIRouter
from pydantic import BaseModel, Field

from api import state
from lpengine.execution.coordinator import ExecutionReport
from lpengine.types import Position

router = APIRouter(prefix="/positions", tags=["positions"])


class RegisterPositionRequest(BaseModel):
    position_id: str = Field(..., min_length=1, max_length=128)
    pool: str
    pair: str = Field(..., description="BASE/QUOTE, e.g. ETH/USDC")
    venue: str
    range_lower: Decimal = Field(..., gt=0)
    range_upper: Decimal = Field(..., gt=0)
    liquidity: Decimal = Field(..., ge=0)


class OpenPositionRequest(BaseModel):
    position_id: str = Field(..., min_length=1, max_length=128)
    pool: str
    pair: str = Field(..., description="BASE/QUOTE, e.g. ETH/USDC")
    venue: str
    amount: Optional[Decimal] = Field(
        None, gt=0, description="Quote asset to deposit; sized by the risk budget when omitted"
    )


class AccruedFeesRequest(BaseModel):
    amount: Decimal = Field(..., gt=0)


class ReconcileRequest(BaseModel):
    range_lower: Optional[Decimal] = Field(None, gt=0)
    range_upper: Optional[Decimal] = Field(None, gt=0)
    deposited: Optional[Decimal] = Field(None, ge=0, description="Capital put back into the range by hand")


def position_to_dict(position: Position) -> dict[str, Any]:
    return {
        "id": position.id,
        "pool": position.pool,
        "pair": position.pair,
        "venue": position.venue,
        "range_lower": str(position.range_lower),
        "range_upper": str(position.range_upper),
        "liquidity": str(position.liquidity),
        "accrued_fees": str(position.accrued_fees),
        "in_transit": str(position.in_transit),
        "state": position.state.value,
        "version": position.version,
        "opened_at": position.opened_at.isoformat() if position.opened_at else None,
        "last_harvested_at": position.last_harvested_at.isoformat() if position.last_harvested_at else None,
    }


def report_to_dict(report: ExecutionReport) -> dict[str, Any]:
    return {
        "plan_id": report.plan_id,
        "kind": report.kind,
        "outcome": report.outcome,
        "reason": report.reason,
        "position": position_to_dict(report.position) if report.position else None,
        "overdrawn": {f"{venue}/{asset}": str(amount) for (venue, asset), amount in report.overdrawn.items()},
    }


@router.get("")
async def list_positions() -> dict[str, Any]:
    engine = state.get_engine()
    positions = engine.ledger.positions()
    return {"positions": [position_to_dict(p) for p in positions], "count": len(positions)}


@router.post("", status_code=201)
async def register_position(request: RegisterPositionRequest) -> dict[str, Any]:
    engine = state.get_engine()
    position = engine.register_position(
        position_id=request.position_id,
        pool=request.pool,
        pair=request.pair,
        venue=request.venue,
        range_lower=request.range_lower,
        range_upper=request.range_upper,
        liquidity=request.liquidity,
    )
    return position_to_dict(position)


@router.post("/open", status_code=201)
async def open_position(request: OpenPositionRequest) -> dict[str, Any]:
    engine = state.get_engine()
    report = await engine.open_position(
        position_id=request.position_id,
        pool=request.pool,
        pair=request.pair,
        venue=request.venue,
        amount=request.amount,
    )
    return report_to_dict(report)


@router.get("/{position_id}")
async def get_position(position_id: str) -> dict[str, Any]:
    engine = state.get_engine()
    return position_to_dict(engine.get_position_snapshot(position_id))


@router.get("/{position_id}/audit")
async def get_position_audit(position_id: str) -> dict[str, Any]:
    engine = state.get_engine()
    records = engine.get_audit_log(position_id)
    return {"position_id": position_id, "events": [r.to_dict() for r in records], "count": len(records)}


@router.post("/{position_id}/fees")
async def record_accrued_fees(position_id: str, request: AccruedFeesRequest) -> dict[str, Any]:
    engine = state.get_engine()
    return position_to_dict(engine.record_fees(position_id, request.amount))


@router.post("/{position_id}/close")
async def close_position(position_id: str) -> dict[str, Any]:
    engine = state.get_engine()
    report = await engine.close_position(position_id)
    return report_to_dict(report)


@router.post("/{position_id}/reconcile")
async def reconcile_position(position_id: str, request: ReconcileRequest) -> dict[str, Any]:
    engine = state.get_engine()
    position = await engine.reconcile_position(
        position_id,
        range_lower=request.range_lower,
        range_upper=request.range_upper,
        deposited=request.deposited,
    )
    return {"position_id": position_id, "position": position_to_dict(position) if position else None}
