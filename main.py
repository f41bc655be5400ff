#!/usr/bin/env python3
"""Entry point for the ethflow aggregator.

Runs the background service by default, or answers a single query
(snapshot, sandwich scan, transaction tracking, health, consensus headers) and exits.
"""

import argparse
import asyncio
import json
import logging
import os
import sys
from typing import Any

from dotenv import load_dotenv


# Configure logging before any other imports create loggers
def setup_logging(level: str = "INFO") -> None:
    """Configure logging for the application.

    Args:
        level: Logging level as string (DEBUG, INFO, WARNING, ERROR, CRITICAL)
    """
    log_level: int = getattr(logging, level.upper(), logging.INFO)
    logging.basicConfig(
        level=log_level,
        format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
    )


# Get logger for this module
logger = logging.getLogger(__name__)

from ethflow.errors import EthFlowError
from ethflow.service import EthFlowService


def print_json(payload: Any) -> None:
    if isinstance(payload, (bytes, bytearray)):
        payload = json.loads(payload)
    print(json.dumps(payload, indent=2))


async def run_once(service: EthFlowService, args: argparse.Namespace) -> None:
    """Answer a single query and release the service's clients."""
    try:
        if args.snapshot:
            print_json(await service.build_snapshot(
                limit=args.limit,
                include_sandwich=args.with_sandwich,
                block_tag=args.block,
            ))
        elif args.sandwich is not None:
            print_json(await service.detect_sandwiches(args.sandwich))
        elif args.track is not None:
            result = await service.track_tx(args.track)
            if result is None:
                logger.error(f"Transaction {args.track} is not visible on this execution node")
                sys.exit(1)
            print_json(result)
        elif args.health:
            report = await service.health_report()
            print_json(report)
            if report["status"] == "unhealthy":
                sys.exit(2)
        elif args.headers:
            headers = await service.beacon_headers(args.limit)
            if headers is None:
                logger.error("Consensus API returned no headers")
                sys.exit(1)
            print_json(headers)
    finally:
        await service.aclose()


async def main() -> None:
    """Main entry point for ethflow.

    Parses arguments, loads configuration from the environment (and
    ``.env.local`` when present) and runs the requested mode.

    Raises:
        SystemExit: On configuration or runtime errors
    """
    parser: argparse.ArgumentParser = argparse.ArgumentParser(
        description="ethflow - Ethereum transaction-flow aggregator",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""Environment Variables:
  RPC_HTTP_URL             - Execution node JSON-RPC endpoint
  RPC_WS_URL               - Execution node WebSocket endpoint (push mempool mode)
  BEACON_API_URL           - Consensus node REST API
  RELAY_URLS               - Comma separated MEV relay bases
  CACHE_TTL_SECONDS        - Upstream response cache TTL (default: 20)
  ERROR_CACHE_TTL_SECONDS  - Error/backoff TTL (default: 10)
  SNAPSHOT_TTL_SECONDS     - Snapshot cache TTL (default: CACHE_TTL_SECONDS if set, else 30)
  RELAY_BUDGET_MS          - Relay failover budget (default: 2500)
  SANDWICH_MAX_TX          - Transactions scanned per block (default: 120)
  MEMPOOL_DISABLE          - Serve placeholder mempool data (1/true/yes/on)
  LOG_LEVEL                - Logging level (can be overridden with --log-level)
        """
    )
    mode = parser.add_mutually_exclusive_group()
    mode.add_argument("--snapshot", action="store_true", help="Print one snapshot and exit")
    mode.add_argument("--sandwich", metavar="BLOCK", help="Scan a block (number or tag) for sandwiches")
    mode.add_argument("--track", metavar="TX_HASH", help="Track a single transaction")
    mode.add_argument("--health", action="store_true", help="Probe upstreams and print the health report")
    mode.add_argument("--headers", action="store_true", help="Print recent consensus headers with relay bid data")
    parser.add_argument("--limit", type=int, default=10, help="Entries per list in a snapshot or header listing (default: 10)")
    parser.add_argument("--with-sandwich", action="store_true", help="Include sandwich analysis in the snapshot")
    parser.add_argument("--block", default="latest", help="Block for snapshot sandwich analysis (default: latest)")
    parser.add_argument(
        "--log-level",
        default=os.environ.get("LOG_LEVEL", "INFO"),
        choices=["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"],
        help="Set the logging level (default: INFO)"
    )
    args: argparse.Namespace = parser.parse_args()

    setup_logging(args.log_level)

    try:
        service = EthFlowService.from_env()
    except ValueError as e:
        logger.error(f"Configuration error: {e}")
        sys.exit(1)

    if args.snapshot or args.sandwich is not None or args.track is not None or args.health or args.headers:
        try:
            await run_once(service, args)
        except EthFlowError as e:
            logger.error(f"Query failed: {e}")
            sys.exit(1)
        return

    logger.info("=== ethflow Starting ===")
    try:
        await service.run()
    except Exception as e:
        logger.error(f"Unexpected error: {e}", exc_info=True)
        sys.exit(1)


if __name__ == "__main__":
    load_dotenv(".env.local")
    try:
        asyncio.run(main())
    except KeyboardInterrupt:
        logger.info("Received interrupt signal, shutting down...")
