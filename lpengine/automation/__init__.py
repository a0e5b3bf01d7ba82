"""Engine orchestration.

This package wires aggregation, planning, approval and execution into the
per-cycle pipeline and keeps the decision audit trail.

Default venues are paper venues; nothing reaches a real exchange unless live
clients are passed in.
"""

from .audit import AuditEvent, AuditLogger
from .engine import LiquidityEngine, build_engine

__all__ = ["AuditEvent", "AuditLogger", "LiquidityEngine", "build_engine"]
