"""Decision audit trail.

Records every plan the engine emitted, rejected, executed or aborted, plus
operator controls and price suppression, with full context for debugging.
Plans themselves are transient; this trail is the only place they survive.

All timestamps use timezone-aware UTC datetimes.
"""

from __future__ import annotations

from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from decimal import Decimal
from typing import Any, Literal, Mapping, Optional

from lpengine.types import AccountKey, Plan

EventType = Literal[
    "plan_emitted",
    "plan_rejected",
    "plan_executed",
    "plan_aborted",
    "plan_stale",
    "manual_intervention",
    "capital_overdrawn",
    "price_suppressed",
    "price_restored",
    "control",
]

Severity = Literal["debug", "info", "warning", "error"]


@dataclass
class AuditEvent:
    """Structured audit event for engine decisions and actions."""

    event_type: EventType
    message: str
    timestamp: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    severity: Severity = "info"
    context: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        """Convert to JSON-serializable dictionary."""
        result = asdict(self)
        result["timestamp"] = self.timestamp.isoformat()
        return result

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> AuditEvent:
        data = dict(data)
        timestamp_value = data.get("timestamp")
        if isinstance(timestamp_value, str):
            ts = timestamp_value
            # Normalize common ISO 8601 variant with trailing 'Z' (UTC)
            if ts.endswith("Z"):
                ts = ts[:-1] + "+00:00"
            data["timestamp"] = datetime.fromisoformat(ts)
        return cls(**data)


def _plan_context(plan: Plan) -> dict[str, Any]:
    return {
        "plan_id": plan.id,
        "kind": plan.kind,
        "position_id": plan.position_id,
        "pair": plan.pair,
        "expected_cost": str(plan.expected_cost),
        "expected_benefit": str(plan.expected_benefit),
        "based_on_ledger_version": plan.based_on_ledger_version,
        "steps": [step.action for step in plan.steps],
        "reason": plan.reason,
    }


class AuditLogger:
    """In-memory audit logger for engine decisions."""

    def __init__(self, max_events: Optional[int] = 10_000) -> None:
        self.events: list[AuditEvent] = []
        self._max_events = max_events

    def log(self, event: AuditEvent) -> None:
        self.events.append(event)
        if self._max_events is not None and len(self.events) > self._max_events:
            del self.events[: len(self.events) - self._max_events]

    def log_plan_emitted(self, plan: Plan) -> None:
        self.log(
            AuditEvent(
                event_type="plan_emitted",
                message=f"{plan.kind} plan {plan.id} for {plan.position_id}: {plan.reason}",
                context=_plan_context(plan),
            )
        )

    def log_plan_rejected(self, plan: Plan, reason: str) -> None:
        self.log(
            AuditEvent(
                event_type="plan_rejected",
                message=f"{plan.kind} plan {plan.id} rejected: {reason}",
                severity="warning",
                context={**_plan_context(plan), "rejection": reason},
            )
        )

    def log_plan_stale(self, plan: Plan, ledger_version: int) -> None:
        self.log(
            AuditEvent(
                event_type="plan_stale",
                message=f"{plan.kind} plan {plan.id} stale (ledger at v{ledger_version})",
                context={**_plan_context(plan), "ledger_version": ledger_version},
            )
        )

    def log_execution(self, plan: Plan, outcome: str, reason: str = "") -> None:
        completed = outcome == "completed"
        self.log(
            AuditEvent(
                event_type="plan_executed" if completed else "plan_aborted",
                message=f"{plan.kind} plan {plan.id}: {outcome}" + (f" ({reason})" if reason else ""),
                severity="info" if completed else "warning",
                context={**_plan_context(plan), "outcome": outcome, "failure": reason},
            )
        )

    def log_manual_intervention(self, position_id: str, message: str, context: Optional[dict[str, Any]] = None) -> None:
        self.log(
            AuditEvent(
                event_type="manual_intervention",
                message=message,
                severity="error",
                context={"position_id": position_id, **(context or {})},
            )
        )

    def log_overdraft(self, plan: Plan, overdrawn: Mapping[AccountKey, Decimal]) -> None:
        accounts = {f"{venue}/{asset}": str(amount) for (venue, asset), amount in overdrawn.items()}
        self.log(
            AuditEvent(
                event_type="capital_overdrawn",
                message=f"{plan.kind} plan {plan.id} left " + ", ".join(f"{k} short by {v}" for k, v in accounts.items()),
                severity="warning",
                context={**_plan_context(plan), "overdrawn": accounts},
            )
        )

    def log_price_suppressed(self, pair: str, reason: str) -> None:
        self.log(
            AuditEvent(
                event_type="price_suppressed",
                message=f"Planning suppressed for {pair}: {reason}",
                severity="warning",
                context={"pair": pair, "reason": reason},
            )
        )

    def log_price_restored(self, pair: str) -> None:
        self.log(
            AuditEvent(event_type="price_restored", message=f"Consensus restored for {pair}", context={"pair": pair})
        )

    def log_control(self, action: str, position_id: Optional[str] = None) -> None:
        scope = position_id or "global"
        self.log(
            AuditEvent(
                event_type="control",
                message=f"Operator {action} ({scope})",
                context={"action": action, "position_id": position_id},
            )
        )

    def get_events(
        self,
        event_type: Optional[EventType] = None,
        severity: Optional[Severity] = None,
        position_id: Optional[str] = None,
    ) -> list[AuditEvent]:
        """Get filtered audit events."""
        return [
            e
            for e in self.events
            if (event_type is None or e.event_type == event_type)
            and (severity is None or e.severity == severity)
            and (position_id is None or e.context.get("position_id") == position_id)
        ]

    def clear(self) -> None:
        """Clear all events (for testing)."""
        self.events.clear()

    def to_json_list(self) -> list[dict[str, Any]]:
        return [e.to_dict() for e in self.events]
