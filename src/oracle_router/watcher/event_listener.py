"""
Polling-based listener for Router events.

Scan progress is stored per event type in the job store, so a restarted
listener continues from ``last_height + 1`` and never skips or re-commits a
block range.
"""

import asyncio
import logging
from collections.abc import Awaitable, Callable
from typing import Any

from .chain_client import RouterClient
from .job_store import JobStore

logger = logging.getLogger(__name__)

EventCallback = Callable[[Any], Awaitable[Any]]


class PollingEventListener:
    """
    Polls the Router for one event type.

    Heights are committed chunk by chunk, and only after the callback has
    handled every event of the chunk. If the callback (or the node) fails,
    nothing is committed for that chunk and it is scanned again on the next
    poll, so handlers must be idempotent.
    """

    def __init__(
        self,
        client: RouterClient,
        store: JobStore,
        event_name: str,
        lookback_blocks: int = 100,
        confirmations: int = 0,
        max_block_range: int = 1000,
    ):
        """
        Initialize the polling event listener.

        Args:
            client: Router client used to read blocks and logs
            store: Job store holding the committed heights
            event_name: Name of the Router event to listen for
            lookback_blocks: Blocks to scan back on the very first start
            confirmations: Blocks to stay behind the head
            max_block_range: Largest block range requested at once
        """
        if max_block_range <= 0:
            raise ValueError(f"max_block_range must be positive, got {max_block_range}")
        self.client = client
        self.store = store
        self.event_name = event_name
        self.lookback_blocks = lookback_blocks
        self.confirmations = confirmations
        self.max_block_range = max_block_range

        self.last_processed_block: int | None = store.last_height(event_name)
        self.events_seen = 0
        self.is_running = False

    async def _start_block(self, head: int) -> int:
        last = await asyncio.to_thread(self.store.last_height, self.event_name)
        if last is None:
            return max(0, head - self.lookback_blocks)
        return last + 1

    async def poll_for_events(self, callback: EventCallback) -> int:
        """
        Scan every unprocessed block up to the confirmed head.

        Args:
            callback: Async function to call for each event found

        Returns:
            Number of events handed to ``callback``
        """
        head = await asyncio.to_thread(self.client.block_number)
        safe_head = head - self.confirmations
        from_block = await self._start_block(safe_head)
        handled = 0

        while from_block <= safe_head:
            to_block = min(from_block + self.max_block_range - 1, safe_head)
            events = await asyncio.to_thread(self.client.get_events, self.event_name, from_block, to_block)
            if events:
                logger.info(
                    f"Found {len(events)} {self.event_name} events in blocks {from_block}-{to_block}"
                )
            for event in events:
                await callback(event)
            await asyncio.to_thread(self.store.update_last_height, self.event_name, to_block)
            self.last_processed_block = to_block
            handled += len(events)
            from_block = to_block + 1

        self.events_seen += handled
        return handled

    async def initial_sync(self, callback: EventCallback) -> None:
        """
        Catch up from the stored height (or the lookback window on first start).

        Args:
            callback: Async function to call for each event found
        """
        last = await asyncio.to_thread(self.store.last_height, self.event_name)
        if last is None:
            logger.info(f"Initial sync for {self.event_name}: no stored height, looking back {self.lookback_blocks} blocks")
        else:
            logger.info(f"Initial sync for {self.event_name}: resuming from block {last + 1}")
        count = await self.poll_for_events(callback)
        logger.info(f"Initial sync for {self.event_name} done, {count} events")

    async def start_polling(self, callback: EventCallback, interval: float = 12) -> None:
        """
        Start polling for events at the specified interval.

        Args:
            callback: Async function to call when events are received
            interval: Polling interval in seconds
        """
        if self.is_running:
            logger.warning(f"Polling for {self.event_name} already running")
            return

        self.is_running = True
        logger.info(f"Starting polling for {self.event_name} events every {interval} seconds")

        try:
            await self.initial_sync(callback)
        except Exception as e:
            logger.error(f"Initial sync for {self.event_name} failed, will retry: {e}", exc_info=True)

        while self.is_running:
            try:
                await asyncio.sleep(interval)
                await self.poll_for_events(callback)
            except asyncio.CancelledError:
                logger.info(f"Polling for {self.event_name} cancelled")
                break
            except Exception as e:
                logger.error(f"Error polling {self.event_name}: {e}", exc_info=True)

    async def stop(self) -> None:
        """Stop the polling loop."""
        logger.info(f"Stopping polling for {self.event_name} events")
        self.is_running = False

    def get_status(self) -> dict[str, Any]:
        return {
            "is_running": self.is_running,
            "event_name": self.event_name,
            "last_processed_block": self.last_processed_block,
            "events_seen": self.events_seen,
        }
