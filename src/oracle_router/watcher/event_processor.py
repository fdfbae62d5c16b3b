"""
Event processor for Router events.

Applies ``DataRequested``, ``RequestFulfilled`` and ``RequestCancelled``
events to the job store and hands new jobs for this provider to the
fulfilment workers. Every handler is idempotent, so replayed or duplicated
events leave the store unchanged.
"""

import asyncio
import logging
from collections.abc import Awaitable, Callable
from typing import Any

from web3 import Web3

from ..models import (
    DATA_REQUESTED,
    REQUEST_CANCELLED,
    REQUEST_FULFILLED,
    JobRecord,
    JobStatus,
    RequestCancelledEvent,
    RequestCreatedEvent,
    RequestFulfilledEvent,
)
from .job_store import JobStore

logger = logging.getLogger(__name__)


class EventProcessor:
    """Mirrors Router events into the job store."""

    def __init__(
        self,
        store: JobStore,
        provider_address: str,
        enqueue: Callable[[str], Awaitable[bool]] | None = None,
    ) -> None:
        """Initialize the event processor.

        Args:
            store: Job store to write to
            provider_address: Provider this watcher fulfils for
            enqueue: Coroutine handing a request ID to the fulfilment workers
        """
        self.store = store
        self.provider_address = Web3.to_checksum_address(provider_address)
        self.enqueue = enqueue

        self.requests_seen = 0
        self.duplicates = 0
        self.fulfilled_seen = 0
        self.cancelled_seen = 0
        self.invalid_events = 0
        self.jobs_enqueued = 0

    async def process_event(self, event: Any) -> JobRecord | None:
        """Dispatch any Router event by name."""
        match event.get("event"):
            case "DataRequested":
                return await self.process_data_requested(event)
            case "RequestFulfilled":
                return await self.process_request_fulfilled(event)
            case "RequestCancelled":
                return await self.process_request_cancelled(event)
            case name:
                logger.debug(f"Ignoring event {name}")
                return None

    async def process_data_requested(self, event: Any) -> JobRecord | None:
        """
        Record a new request and queue it if this provider should fulfil it.

        Args:
            event: The DataRequested event data

        Returns:
            The stored job, or None if the event could not be parsed
        """
        try:
            parsed = RequestCreatedEvent.from_event(event)
        except (KeyError, TypeError, ValueError) as e:
            self.invalid_events += 1
            logger.error(f"Malformed {DATA_REQUESTED} event skipped: {e}", exc_info=True)
            return None

        record, created = await asyncio.to_thread(self.store.record_request, parsed)
        self.requests_seen += 1
        if not created:
            self.duplicates += 1
            logger.debug(f"Duplicate {DATA_REQUESTED} for {parsed.request_id[:10]}...")

        if record.status is JobStatus.PENDING and parsed.provider == self.provider_address and self.enqueue:
            if await self.enqueue(record.request_id):
                self.jobs_enqueued += 1
        return record

    async def process_request_fulfilled(self, event: Any) -> JobRecord | None:
        try:
            parsed = RequestFulfilledEvent.from_event(event)
        except (KeyError, TypeError, ValueError) as e:
            self.invalid_events += 1
            logger.error(f"Malformed {REQUEST_FULFILLED} event skipped: {e}", exc_info=True)
            return None

        self.fulfilled_seen += 1
        record = await asyncio.to_thread(
            self.store.mark_fulfilled,
            parsed.request_id,
            tx_ref=parsed.meta.transaction_hash,
            height=parsed.meta.block_number,
            requested_data=parsed.requested_data,
        )
        logger.info(
            f"Request {parsed.request_id[:10]}... fulfilled in block {parsed.meta.block_number} "
            f"(gas used {parsed.gas_used})"
        )
        return record

    async def process_request_cancelled(self, event: Any) -> JobRecord | None:
        try:
            parsed = RequestCancelledEvent.from_event(event)
        except (KeyError, TypeError, ValueError) as e:
            self.invalid_events += 1
            logger.error(f"Malformed {REQUEST_CANCELLED} event skipped: {e}", exc_info=True)
            return None

        self.cancelled_seen += 1
        record = await asyncio.to_thread(
            self.store.mark_cancelled,
            parsed.request_id,
            tx_ref=parsed.meta.transaction_hash,
            height=parsed.meta.block_number,
        )
        logger.info(f"Request {parsed.request_id[:10]}... cancelled, refund {parsed.refund}")
        return record

    def get_stats(self) -> dict[str, int]:
        return {
            "requests_seen": self.requests_seen,
            "duplicates": self.duplicates,
            "fulfilled_seen": self.fulfilled_seen,
            "cancelled_seen": self.cancelled_seen,
            "invalid_events": self.invalid_events,
            "jobs_enqueued": self.jobs_enqueued,
        }
