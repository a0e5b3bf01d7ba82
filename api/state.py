"""Process-wide engine instance shared by the route modules."""

from __future__ import annotations

import logging
from typing import Optional

from lpengine.automation.engine import LiquidityEngine, build_engine
from lpengine.config import EnvConfigProvider

logger = logging.getLogger(__name__)

# Global engine instance (built lazily from the environment)
_engine: Optional[LiquidityEngine] = None


def get_engine() -> LiquidityEngine:
    global _engine
    if _engine is None:
        config = EnvConfigProvider().load()
        _engine = build_engine(config)
        logger.info("Engine initialized (%d position(s) recovered)", len(_engine.ledger.positions()))
    return _engine


def set_engine(engine: Optional[LiquidityEngine]) -> None:
    """Replace the shared engine (None resets to lazy initialization)."""
    global _engine
    _engine = engine
