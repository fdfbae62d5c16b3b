#!/usr/bin/env python3
"""Entry point for the Router Watcher service.

Runs the provider-side Watcher against a Router reached over JSON-RPC, or
with ``--local`` against a Router deployed on an in-process chain with a
demo consumer.
"""

import argparse
import asyncio
import logging
import os
import sys


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

from dotenv import load_dotenv
from eth_account import Account

from oracle_router.config import MonitoringConfig, SubmissionConfig
from oracle_router.router import Chain, ConsumerBase, Router, Token
from oracle_router.watcher import JobStore, LocalRouterClient, RouterWatcher
from oracle_router.watcher.data_source import StaticDataSource
from oracle_router.watcher.reconciler import OPEN_STATUSES

DEMO_SPECS = {"BTC.GBP": 3_512_345_000_000, "ETH.USD": 250_012_000_000}


async def run_local(requests: int) -> None:
    """Deploy a Router and a consumer in-process and let the Watcher serve them."""
    chain = Chain()
    admin = Account.create()
    provider = Account.create()
    owner = Account.create()

    token = Token(chain, "Oracle Token", "OOO", 10**18, owner=owner.address)
    router = Router(chain, token, admin=admin.address)
    consumer = ConsumerBase(chain, router.address, owner.address, gas_price_limit=chain.gas_price)

    chain.transact(provider.address, router.register_as_provider, 1)
    chain.transact(owner.address, token.transfer, consumer.address, 10**12)
    chain.transact(owner.address, consumer.set_router_allowance, 10**12, True)
    chain.transact(owner.address, consumer.add_remove_data_provider, provider.address, 100, False)

    specs = list(DEMO_SPECS)
    for n in range(requests):
        receipt = chain.transact(owner.address, consumer.request_data, provider.address, specs[n % len(specs)])
        if not receipt.succeeded:
            raise RuntimeError(f"Demo request failed: {receipt.revert_reason}")

    store = JobStore()
    watcher = RouterWatcher(
        LocalRouterClient(chain, router, provider.address),
        store,
        StaticDataSource(DEMO_SPECS),
        provider,
        monitoring=MonitoringConfig(polling_interval=1),
        submission=SubmissionConfig(workers=2, retry_backoff=0.1),
    )
    task = asyncio.create_task(watcher.run())
    try:
        while not task.done() and (
            store.jobs_with_status(*OPEN_STATUSES) or sum(store.count_by_status().values()) < requests
        ):
            await asyncio.sleep(0.5)
    finally:
        watcher.stop()
        await task

    logger.info(f"Jobs by status: {store.count_by_status()}")
    logger.info(f"Provider token balance: {token.balance_of(provider.address)}")
    logger.info(f"Router total tokens held: {router.total_tokens_held}")


async def main() -> None:
    """Main entry point for the Router Watcher service.

    Parses startup arguments, loads configuration from environment,
    and starts the watcher that continuously polls for events.

    Raises:
        SystemExit: On configuration or runtime errors
    """
    parser: argparse.ArgumentParser = argparse.ArgumentParser(
        description="Router Watcher - mirror Router events and fulfil data requests",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""Environment Variables:
  RPC_URL               - RPC endpoint of the chain the Router is deployed on
  ROUTER_ADDRESS        - Router contract address
  PROVIDER_PRIVATE_KEY  - Key of the provider account
  DATABASE_URL          - Job store database (default: sqlite:///oracle_router_jobs.db)
  DATA_URL_TEMPLATE     - JSON API for requested data, e.g. https://host/price?fsym={base}&tsyms={target}
  DATA_STATIC_VALUES    - Fixed values instead of an API, e.g. BTC.GBP=123,ETH.USD=456
  POLLING_INTERVAL      - Event polling interval (default: 12)
  LOG_LEVEL             - Logging level (can be overridden with --log-level)
        """
    )
    parser.add_argument(
        "--local",
        action="store_true",
        default=False,
        help="Run against an in-process Router with a demo consumer"
    )
    parser.add_argument(
        "--requests",
        type=int,
        default=3,
        help="Number of demo requests in local mode (default: 3)"
    )
    parser.add_argument(
        "--log-level",
        default=os.environ.get("LOG_LEVEL", "INFO"),
        choices=["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"],
        help="Set the logging level (default: INFO)"
    )
    args: argparse.Namespace = parser.parse_args()

    setup_logging(args.log_level)

    if args.local:
        logger.info("=== Router Watcher Starting (LOCAL MODE) ===")
        await run_local(args.requests)
        return

    logger.info("=== Router Watcher Starting ===")
    logger.info("Loading configuration from environment...")
    load_dotenv()

    try:
        watcher = RouterWatcher.from_env()
        await watcher.run()

    except ValueError as e:
        logger.error(f"Configuration Error: {e}")
        logger.error("Please check your environment variables:")
        logger.error("  - RPC_URL: RPC endpoint of the Router's chain")
        logger.error("  - ROUTER_ADDRESS: Router contract address")
        logger.error("  - PROVIDER_PRIVATE_KEY: Provider account key")
        logger.error("  - DATA_URL_TEMPLATE or DATA_STATIC_VALUES: Data source")
        sys.exit(1)

    except KeyboardInterrupt:
        logger.info("\nReceived interrupt signal, shutting down gracefully...")
        sys.exit(0)

    except Exception as e:
        logger.error(f"Fatal Error: {e}", exc_info=True)
        sys.exit(1)


if __name__ == "__main__":
    asyncio.run(main())
