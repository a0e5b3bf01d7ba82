"""Deterministic plan ids and step idempotency keys.

The same plan intent rebuilt after a restart yields the same ids, so a step
that already settled at the venue is recognized instead of resubmitted.
Hashing keeps keys within venue client-id length limits.
"""

from __future__ import annotations

import hashlib


def _digest(parts: list[str], length: int) -> str:
    raw = "|".join(parts)
    return hashlib.sha256(raw.encode("utf-8")).hexdigest()[:length]


def make_plan_id(*, kind: str, position_id: str, ledger_version: int, discriminator: str = "") -> str:
    return f"{kind}-{_digest([kind, position_id, str(int(ledger_version)), discriminator], 16)}"


def make_idempotency_key(plan_id: str, step: int | str) -> str:
    """Key for step ``step`` of ``plan_id``; pass a label such as ``"rollback"`` for compensation steps."""
    return f"lp_{_digest([plan_id, str(step)], 24)}"
