"""Allow running as: python -m netflow

Usage:
  python -m netflow run        # Indexer (WebSocket feed) + HTTP API
  python -m netflow api        # HTTP API only (indexer runs elsewhere)
  python -m netflow netflow    # Print current netflow once
"""

import argparse
import asyncio
import os
import sys

from netflow.utils.logger import get_logger, setup_logging

logger = get_logger("cli")


async def _print_netflow() -> None:
    """Print the current totals for the configured exchange and token."""
    from netflow.config.settings import get_config
    from netflow.core.store import AggregateStore
    from netflow.utils.db import dispose_engine, get_session_factory, init_db

    cfg = get_config()
    try:
        await init_db()
        store = AggregateStore(get_session_factory())
        aggregate = await store.fetch(cfg.exchange_id, cfg.token_address)
    finally:
        await dispose_engine()

    if aggregate is None:
        print("No netflow yet.")
        return
    print(f"Exchange : {cfg.exchange_name}")
    print(f"Token    : {aggregate.token} ({aggregate.token_symbol})")
    print(f"In       : {aggregate.cumulative_in}")
    print(f"Out      : {aggregate.cumulative_out}")
    print(f"Net      : {aggregate.cumulative_net}")
    print(f"Updated@ : block {aggregate.last_updated_block}")


def main() -> None:
    """CLI entry point with command routing."""
    parser = argparse.ArgumentParser(description="Exchange netflow indexer")
    parser.add_argument(
        "command",
        nargs="?",
        default="run",
        choices=["run", "api", "netflow"],
        help="run (indexer + API), api (API only), netflow (print totals once)",
    )
    parser.add_argument("--log-level", default=os.getenv("LOG_LEVEL", "INFO"))
    args = parser.parse_args()

    setup_logging(log_level=args.log_level)

    try:
        if args.command == "netflow":
            asyncio.run(_print_netflow())
            return

        from netflow.main import NetflowOrchestrator

        orchestrator = NetflowOrchestrator(ingest=args.command == "run", serve_api=True)
        asyncio.run(orchestrator.start())
    except KeyboardInterrupt:
        pass
    except Exception as e:
        logger.error(
            "netflow_failed", command=args.command, error_type=type(e).__name__, error=str(e)
        )
        sys.exit(1)


main()
