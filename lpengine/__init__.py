"""lpengine package.

Decision and execution engine for concentrated-liquidity positions.

Modules:
- pricing: quote aggregation into a trust-weighted consensus price
- ledger: event-sourced position ledger
- capital: capital accounts, approvals and settlement
- planning: rebalance / harvest / close planning
- arbitrage: DEX vs CEX rotation scanning
- execution: step sequencing, retries and compensation against venues
- storage: event store implementations (in-memory, SQL)
- automation: per-cycle pipeline and decision audit trail
"""

__all__ = [
    "arbitrage",
    "automation",
    "capital",
    "config",
    "errors",
    "execution",
    "fees",
    "ledger",
    "persistence",
    "planning",
    "pricing",
    "storage",
    "types",
]
