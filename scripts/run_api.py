#!/usr/bin/env python3
"""Run the operator API server.

This script starts the uvicorn server for the liquidity engine API.

Usage:
    python scripts/run_api.py [--host HOST] [--port PORT] [--autorun]

Environment:
    DATABASE_URL - Optional. Event ledger database; in-memory when unset.
    LPENGINE_*   - Engine configuration (see lpengine/config.py).

Examples:
    python scripts/run_api.py
    python scripts/run_api.py --host 0.0.0.0 --port 8000 --autorun
"""

from __future__ import annotations

import argparse
import logging
import os
import sys
from pathlib import Path

import uvicorn

# Ensure imports work when invoked as a script
_REPO_ROOT = Path(__file__).resolve().parents[1]
if str(_REPO_ROOT) not in sys.path:
    sys.path.insert(0, str(_REPO_ROOT))


def main() -> int:
    """Run the API server."""
    parser = argparse.ArgumentParser(description="Run the liquidity engine operator API.")
    parser.add_argument(
        "--host",
        default="127.0.0.1",
        help="Host to bind to (default: 127.0.0.1)",
    )
    parser.add_argument(
        "--port",
        type=int,
        default=8000,
        help="Port to bind to (default: 8000)",
    )
    parser.add_argument(
        "--reload",
        action="store_true",
        help="Enable auto-reload for development",
    )
    parser.add_argument(
        "--autorun",
        action="store_true",
        help="Run the rebalance / arbitrage schedules inside the API process",
    )
    parser.add_argument("--log-level", default="INFO")
    args = parser.parse_args()

    logging.basicConfig(
        level=getattr(logging, args.log_level.upper(), logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    if args.autorun:
        os.environ["LPENGINE_AUTORUN"] = "1"
    if not os.environ.get("DATABASE_URL"):
        print("DATABASE_URL not set: ledger events are kept in memory only", file=sys.stderr)

    print(f"Starting operator API on {args.host}:{args.port}")
    print("Endpoints:")
    print(f"  - GET  http://{args.host}:{args.port}/system/health")
    print(f"  - GET  http://{args.host}:{args.port}/positions")
    print(f"  - POST http://{args.host}:{args.port}/quotes")
    print(f"  - POST http://{args.host}:{args.port}/control/pause")
    print()

    uvicorn.run(
        "api.main:app",
        host=args.host,
        port=args.port,
        reload=args.reload,
        log_level=args.log_level.lower(),
    )

    return 0


if __name__ == "__main__":
    sys.exit(main())
