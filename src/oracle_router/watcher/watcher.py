"""
Router Watcher service.

This module contains the provider-side service that reconciles the job store
on startup, polls Router events into it and runs the fulfilment workers.
"""

import asyncio
import logging
from typing import Any

from eth_account.signers.local import LocalAccount

from ..config import MonitoringConfig, SubmissionConfig, WatcherConfig
from ..models import DATA_REQUESTED, REQUEST_CANCELLED, REQUEST_FULFILLED
from ..utils.contract_utility import ContractUtility
from .chain_client import RouterClient, Web3RouterClient
from .data_source import DataSource, build_data_source
from .event_listener import PollingEventListener
from .event_processor import EventProcessor
from .fulfiller import FulfillmentWorkerPool
from .job_store import JobStore
from .reconciler import Reconciler

logger = logging.getLogger(__name__)

WATCHED_EVENTS = (DATA_REQUESTED, REQUEST_FULFILLED, REQUEST_CANCELLED)


class RouterWatcher:
    """
    Main watcher service that orchestrates reconciliation, event monitoring
    and fulfilment.

    This class focuses on coordination and lifecycle management; event
    handling lives in ``EventProcessor`` and submission in
    ``FulfillmentWorkerPool``.
    """

    def __init__(
        self,
        client: RouterClient,
        store: JobStore,
        data_source: DataSource,
        account: LocalAccount,
        monitoring: MonitoringConfig | None = None,
        submission: SubmissionConfig | None = None,
    ):
        """
        Initialize the Router Watcher.

        Args:
            client: Router client
            store: Job store
            data_source: Source of requested data
            account: Provider account
            monitoring: Event polling settings
            submission: Fulfilment policy
        """
        self.client = client
        self.store = store
        self.monitoring = monitoring or MonitoringConfig()
        self.running = False

        self.pool = FulfillmentWorkerPool(client, store, data_source, account, submission)
        self.event_processor = EventProcessor(store, account.address, enqueue=self.pool.submit)
        self.reconciler = Reconciler(client, store, account.address, enqueue=self.pool.submit)
        self.listeners: dict[str, PollingEventListener] = {
            event_name: PollingEventListener(
                client,
                store,
                event_name,
                lookback_blocks=self.monitoring.lookback_blocks,
                confirmations=self.monitoring.confirmations,
                max_block_range=self.monitoring.max_block_range,
            )
            for event_name in WATCHED_EVENTS
        }

        # Async coordination
        self.shutdown_event = asyncio.Event()

    @classmethod
    def from_config(cls, config: WatcherConfig) -> "RouterWatcher":
        """Build a watcher talking to a Router over JSON-RPC."""
        contract_util = ContractUtility(rpc_url=config.chain.rpc_url, private_key=config.provider.private_key)
        account = config.provider.account
        client = Web3RouterClient(
            contract_util.w3,
            config.chain.router_address,
            contract_util.get_contract_abi("Router"),
            account,
            gas_limit=config.submission.gas_limit,
        )
        return cls(
            client,
            JobStore(config.database_url),
            build_data_source(config.data_source),
            account,
            monitoring=config.monitoring,
            submission=config.submission,
        )

    @classmethod
    def from_env(cls) -> "RouterWatcher":
        """
        Create a RouterWatcher instance from environment variables.

        Raises:
            ValueError: If required environment variables are missing
        """
        config = WatcherConfig.from_env()
        config.log_config()
        return cls.from_config(config)

    async def _periodic_status_logger(self) -> None:
        """Log status periodically while running."""
        while self.running:
            await asyncio.sleep(self.monitoring.status_log_interval)
            pool = self.pool.get_stats()
            jobs = await asyncio.to_thread(self.store.count_by_status)
            logger.info(
                f"Status: {pool['queued']} queued, {pool['in_flight']} in flight, "
                f"{pool['fulfilled']} fulfilled, {pool['failed']} failed; jobs by status {jobs}"
            )

    async def _check_task_health(self, tasks: dict[str, asyncio.Task]) -> bool:
        """Check if any critical task has failed."""
        for name, task in tasks.items():
            if task.done() and name != "status":  # status task can end normally
                try:
                    await task
                except Exception as e:
                    logger.error(f"{name} task failed: {e}", exc_info=True)
                return False
        return True

    async def _cleanup_tasks(self, tasks: dict[str, asyncio.Task]) -> None:
        """Clean up all tasks, listeners and workers."""
        for listener in self.listeners.values():
            await listener.stop()

        for task in tasks.values():
            if not task.done():
                task.cancel()
                try:
                    await task
                except asyncio.CancelledError:
                    pass  # Expected when cancelling

        await self.pool.stop()

    async def run(self) -> None:
        """Main event loop for the watcher service."""
        self.running = True
        logger.info("Router Watcher starting...")
        logger.info(f"Provider: {self.pool.provider_address}")
        logger.info(f"Polling interval: {self.monitoring.polling_interval}s")

        tasks: dict[str, asyncio.Task] = {}
        try:
            await self.pool.start()
            await self.reconciler.reconcile()

            tasks = {
                event_name: asyncio.create_task(
                    listener.start_polling(
                        callback=self.event_processor.process_event,
                        interval=self.monitoring.polling_interval,
                    )
                )
                for event_name, listener in self.listeners.items()
            }
            tasks["status"] = asyncio.create_task(self._periodic_status_logger())

            logger.info("Event monitoring started, waiting for events...")

            # Wait until shutdown or task failure
            while self.running:
                try:
                    await asyncio.wait_for(self.shutdown_event.wait(), timeout=1.0)
                    break  # Shutdown requested
                except asyncio.TimeoutError:
                    pass

                if not await self._check_task_health(tasks):
                    logger.error("Critical task failure, shutting down")
                    break

        except Exception as e:
            logger.error(f"Error in main loop: {e}", exc_info=True)
            raise
        finally:
            await self._cleanup_tasks(tasks)
            self.running = False
            logger.info("Router Watcher stopped")

    def stop(self) -> None:
        """Stop the watcher service."""
        self.running = False
        self.shutdown_event.set()

    def get_status(self) -> dict[str, Any]:
        return {
            "running": self.running,
            "listeners": {name: listener.get_status() for name, listener in self.listeners.items()},
            "processor": self.event_processor.get_stats(),
            "workers": self.pool.get_stats(),
            "jobs": self.store.count_by_status(),
        }
