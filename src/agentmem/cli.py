#!/usr/bin/env python3
"""agentmem Command Line Interface.

Operational commands for a memory store database:

    - init: open the pool and bootstrap the schema (idempotent)
    - health: print pool health and circuit breaker status as JSON

Environment Variables:
    - DATABASE_URL: PostgreSQL connection string (required)
    - EMBEDDING_PROVIDER / EMBEDDING_DIMENSIONS: vector column sizing
    - See agentmem.config for pool, retry and circuit settings

Example Usage:
    $ agentmem init
    $ agentmem health
    $ agentmem --log-level DEBUG init

Author: agentmem Team
"""
import argparse
import asyncio
import json
import logging
import sys
from typing import Optional, Sequence

from .adapter import MemoryAdapter
from .config import StoreConfig
from .exceptions import MemoryStoreError

logger = logging.getLogger(__name__)


async def run_init(config: StoreConfig) -> int:
    adapter = MemoryAdapter(config)
    await adapter.pool.open()
    adapter.pool.install_signal_handlers()
    try:
        applied = await adapter.schema.ensure_schema()
    finally:
        await adapter.close()

    print("Schema applied" if applied else "Schema already present")
    return 0


async def run_health(config: StoreConfig) -> int:
    adapter = MemoryAdapter(config)
    await adapter.pool.open()
    adapter.pool.install_signal_handlers()
    try:
        health = await adapter.check_health()
    finally:
        await adapter.close()

    print(json.dumps(health, indent=2, default=str))
    return 0 if health.get("healthy") else 1


COMMANDS = {
    "init": run_init,
    "health": run_health,
}


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="agentmem",
        description="Manage an agentmem PostgreSQL memory store",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  agentmem init                 # Create extensions, tables and indexes
  agentmem health               # Pool and circuit breaker status
        """,
    )
    parser.add_argument(
        "command",
        choices=sorted(COMMANDS),
        help="Operation to run",
    )
    parser.add_argument(
        "--log-level",
        default="INFO",
        choices=["DEBUG", "INFO", "WARNING", "ERROR"],
        help="Logging verbosity (default: INFO)",
    )
    return parser


def main(argv: Optional[Sequence[str]] = None) -> int:
    args = build_parser().parse_args(argv)

    logging.basicConfig(
        level=getattr(logging, args.log_level),
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
    )

    try:
        config = StoreConfig.from_env()
        return asyncio.run(COMMANDS[args.command](config))
    except MemoryStoreError as e:
        logger.error(f"{args.command} failed: {e}")
        return 1


if __name__ == "__main__":
    sys.exit(main())
