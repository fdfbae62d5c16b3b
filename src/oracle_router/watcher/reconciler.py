"""Startup reconciliation of open jobs against the chain.

The job store is only a mirror: after a crash, every job still open locally
is checked against the Router before any new work is done.
"""

import asyncio
import logging
from collections.abc import Awaitable, Callable

from web3 import Web3

from ..errors import TransientSubmissionFailure
from ..models import JobRecord, JobStatus
from .chain_client import RouterClient
from .job_store import JobStore

logger = logging.getLogger(__name__)

OPEN_STATUSES = (JobStatus.PENDING, JobStatus.RECEIVED, JobStatus.FULFILLING)


class Reconciler:
    """Brings open jobs in line with on-chain state.

    For each PENDING, RECEIVED or FULFILLING job:

    - a confirmed receipt for its recorded fulfilment marks it FULFILLED;
    - a request still live on chain is queued again (if it is ours);
    - a request gone from the Router is backfilled from its terminal event;
    - if no terminal event is found the job is left untouched.
    """

    def __init__(
        self,
        client: RouterClient,
        store: JobStore,
        provider_address: str,
        enqueue: Callable[[str], Awaitable[bool]] | None = None,
    ) -> None:
        self.client = client
        self.store = store
        self.provider_address = Web3.to_checksum_address(provider_address)
        self.enqueue = enqueue

    async def reconcile(self) -> dict[str, int]:
        stats = {"checked": 0, "fulfilled": 0, "cancelled": 0, "requeued": 0, "unresolved": 0, "errors": 0}
        jobs = await asyncio.to_thread(self.store.jobs_with_status, *OPEN_STATUSES)
        logger.info(f"Reconciling {len(jobs)} open jobs")

        for job in jobs:
            stats["checked"] += 1
            try:
                outcome = await self.reconcile_job(job)
            except TransientSubmissionFailure as e:
                stats["errors"] += 1
                logger.warning(f"Could not reconcile {job}: {e}")
                continue
            stats[outcome] += 1

        logger.info(
            f"Reconciliation done: {stats['fulfilled']} fulfilled, {stats['cancelled']} cancelled, "
            f"{stats['requeued']} requeued, {stats['unresolved']} unresolved, {stats['errors']} errors"
        )
        return stats

    async def reconcile_job(self, job: JobRecord) -> str:
        """Reconcile one job and return what happened to it."""
        if job.status is JobStatus.FULFILLING and job.fulfill_tx_ref:
            receipt = await asyncio.to_thread(self.client.get_receipt, job.fulfill_tx_ref)
            if receipt is not None and receipt.succeeded:
                await asyncio.to_thread(
                    self.store.mark_fulfilled, job.request_id, receipt.tx_ref, receipt.block_number, job.requested_data
                )
                logger.info(f"{job} confirmed by receipt {receipt.tx_ref[:10]}...")
                return "fulfilled"

        if await asyncio.to_thread(self.client.request_exists, job.request_id):
            if job.provider == self.provider_address and self.enqueue:
                await self.enqueue(job.request_id)
                return "requeued"
            return "unresolved"

        settlement = await asyncio.to_thread(
            self.client.find_settlement, job.request_id, job.request_height or 0
        )
        if settlement is None:
            await asyncio.to_thread(
                self.store.record_reason, job.request_id, "not live on chain and no settlement event found"
            )
            logger.warning(f"{job} is not live and has no settlement event")
            return "unresolved"
        if settlement.status is JobStatus.FULFILLED:
            await asyncio.to_thread(
                self.store.mark_fulfilled,
                job.request_id,
                settlement.tx_ref,
                settlement.block_number,
                settlement.requested_data,
            )
            return "fulfilled"
        await asyncio.to_thread(
            self.store.mark_cancelled, job.request_id, settlement.tx_ref, settlement.block_number
        )
        return "cancelled"
