"""Fulfilment workers.

Request IDs arrive on one queue and are drained by N workers. Work on a single
request is serialised by a per-request ``asyncio.Lock``; distinct requests
proceed in parallel. Per job::

    check the request is still live on chain
    PENDING -> RECEIVED
    fetch data, sign it
    wait until the gas price is within the request's limit
    prepare tx -> persist FULFILLING with the tx ref -> broadcast -> poll receipt

A transaction not mined within ``resubmit_after_blocks`` is replaced (same
nonce, bumped gas price). Transient failures are retried with exponential
backoff, and a job whose node reads keep failing is requeued rather than
dropped. Permanent failures and reverted receipts mark the job FAILED unless
the chain shows the request was settled anyway. Request expiry is judged by
the latest block timestamp, the clock the Router itself uses.
"""

import asyncio
import logging
from collections.abc import AsyncIterator, Callable
from contextlib import asynccontextmanager
from typing import Any, TypeVar

from eth_account.signers.local import LocalAccount

from ..config import SubmissionConfig
from ..errors import DataSourceError, PermanentSubmissionFailure, TransientSubmissionFailure
from ..models import JobRecord, JobStatus
from ..utils.encoding import to_bytes32
from ..utils.signing import sign_fulfillment
from .chain_client import PreparedTx, RouterClient, SubmissionReceipt
from .data_source import DataSource
from .job_store import JobStore

logger = logging.getLogger(__name__)

T = TypeVar("T")


class FulfillmentWorkerPool:
    """Drives provider-side fulfilment of queued jobs.

    Args:
        client: Router client
        store: Job store
        data_source: Source of the values to deliver
        account: Provider account signing the data
        config: Retry and resubmission policy
    """

    def __init__(
        self,
        client: RouterClient,
        store: JobStore,
        data_source: DataSource,
        account: LocalAccount,
        config: SubmissionConfig | None = None,
    ) -> None:
        self.client = client
        self.store = store
        self.data_source = data_source
        self.account = account
        self.config = config or SubmissionConfig()

        self.queue: asyncio.Queue[str] = asyncio.Queue()
        self._queued: set[str] = set()
        self._locks: dict[str, asyncio.Lock] = {}
        self._lock_users: dict[str, int] = {}
        self._workers: list[asyncio.Task] = []
        self._requeues: set[asyncio.Task] = set()

        self.fulfilled = 0
        self.failed = 0
        self.retries = 0
        self.resubmissions = 0
        self.in_flight = 0

    @property
    def provider_address(self) -> str:
        return self.account.address

    # -- queue --------------------------------------------------------------

    async def submit(self, request_id: str) -> bool:
        """Queue ``request_id`` unless it is already waiting."""
        if request_id in self._queued:
            return False
        self._queued.add(request_id)
        await self.queue.put(request_id)
        return True

    async def start(self) -> None:
        if self._workers:
            return
        self._workers = [
            asyncio.create_task(self._worker(n), name=f"fulfiller-{n}")
            for n in range(self.config.workers)
        ]
        logger.info(f"Started {len(self._workers)} fulfilment workers")

    async def stop(self) -> None:
        tasks = [*self._workers, *self._requeues]
        for task in tasks:
            task.cancel()
        for task in tasks:
            try:
                await task
            except asyncio.CancelledError:
                pass
        self._workers = []
        self._requeues.clear()

    async def join(self) -> None:
        """Wait until every queued job has been processed."""
        await self.queue.join()

    async def _worker(self, n: int) -> None:
        while True:
            request_id = await self.queue.get()
            self._queued.discard(request_id)
            try:
                await self.process(request_id)
            except TransientSubmissionFailure as e:
                delay = self._backoff(self.config.max_attempts)
                logger.warning(f"Worker {n} could not reach the node for {request_id[:10]}... ({e}), "
                               f"requeueing in {delay:.1f}s")
                self._requeue_later(request_id, delay)
            except Exception as e:
                logger.error(f"Worker {n} failed on {request_id[:10]}...: {e}", exc_info=True)
            finally:
                self.queue.task_done()

    def _requeue_later(self, request_id: str, delay: float) -> None:
        async def _requeue() -> None:
            await asyncio.sleep(delay)
            await self.submit(request_id)

        task = asyncio.create_task(_requeue(), name=f"requeue-{request_id[:10]}")
        self._requeues.add(task)
        task.add_done_callback(self._requeues.discard)

    @asynccontextmanager
    async def _request_lock(self, request_id: str) -> AsyncIterator[None]:
        lock = self._locks.setdefault(request_id, asyncio.Lock())
        self._lock_users[request_id] = self._lock_users.get(request_id, 0) + 1
        try:
            async with lock:
                yield
        finally:
            self._lock_users[request_id] -= 1
            if not self._lock_users[request_id]:
                del self._lock_users[request_id]
                del self._locks[request_id]

    # -- per-job processing -------------------------------------------------

    async def process(self, request_id: str) -> JobRecord | None:
        """Take one job as far as it can go. Returns its final record."""
        async with self._request_lock(request_id):
            self.in_flight += 1
            try:
                return await self._process_locked(request_id)
            finally:
                self.in_flight -= 1

    async def _process_locked(self, request_id: str) -> JobRecord | None:
        job = await asyncio.to_thread(self.store.get, request_id)
        if job is None:
            logger.warning(f"No job stored for {request_id[:10]}..., skipping")
            return None
        if not job.is_open:
            return job
        if job.provider != self.provider_address:
            logger.debug(f"Job {job} belongs to another provider")
            return job

        if not await self._is_live(job.request_id):
            return await self._settle_from_chain(job)

        if job.status is JobStatus.PENDING:
            await asyncio.to_thread(self.store.mark_received, job.request_id)
        elif job.status is JobStatus.FULFILLING and job.fulfill_tx_ref:
            receipt = await self._read(self.client.get_receipt, job.fulfill_tx_ref)
            if receipt is not None and receipt.succeeded:
                return await self._record_success(job, receipt, job.requested_data)
            logger.info(f"Resuming {job}: earlier submission {job.fulfill_tx_ref[:10]}... not mined")

        return await self._submit_with_retries(job)

    async def _submit_with_retries(self, job: JobRecord) -> JobRecord | None:
        request_id = job.request_id
        requested_data = job.requested_data if job.status is JobStatus.FULFILLING else None
        signature: bytes | None = None
        prepared: PreparedTx | None = None
        tries = job.fulfill_attempts
        last_error = "no attempts made"

        while tries < self.config.max_attempts:
            if tries > job.fulfill_attempts and not await self._is_live(request_id):
                return await self._settle_from_chain(job)
            tries += 1
            try:
                if requested_data is None:
                    requested_data = await self.data_source.fetch(job.data_spec)
                if signature is None:
                    signature = sign_fulfillment(self.account, to_bytes32(request_id), requested_data)

                gas_price = await self._gas_price_for(job, replacing=prepared)
                if gas_price is None:
                    if not await self._is_live(request_id):
                        return await self._settle_from_chain(job)
                    return await self._fail(job, "gas price stayed above the request limit until expiry")

                prepared = await asyncio.to_thread(
                    self.client.prepare_fulfillment,
                    request_id,
                    requested_data,
                    signature,
                    gas_price,
                    prepared,
                )
                height = await asyncio.to_thread(self.client.block_number)
                await asyncio.to_thread(
                    self.store.mark_fulfilling, request_id, requested_data, prepared.tx_ref, height
                )
                await asyncio.to_thread(self.client.broadcast, prepared)
                logger.info(f"Submitted fulfilment {prepared.tx_ref[:10]}... for {job} at {gas_price} wei")

                receipt = await self._await_receipt(prepared, height)
                if receipt is None:
                    self.resubmissions += 1
                    last_error = f"{prepared.tx_ref} not mined within {self.config.resubmit_after_blocks} blocks"
                    await asyncio.to_thread(self.store.record_reason, request_id, last_error)
                    logger.warning(f"Fulfilment for {job} unconfirmed, resubmitting")
                    continue
                if receipt.succeeded:
                    return await self._record_success(job, receipt, requested_data)
                return await self._fail(job, f"fulfilment reverted: {receipt.revert_reason}")

            except (TransientSubmissionFailure, DataSourceError) as e:
                self.retries += 1
                last_error = str(e)
                await asyncio.to_thread(self.store.record_reason, request_id, last_error)
                delay = self._backoff(tries)
                logger.warning(f"Attempt {tries} for {job} failed ({e}), retrying in {delay:.1f}s")
                await asyncio.sleep(delay)
            except PermanentSubmissionFailure as e:
                return await self._fail(job, str(e))

        return await self._fail(job, f"gave up after {tries} attempts: {last_error}")

    def _backoff(self, attempt: int) -> float:
        return min(self.config.max_backoff, self.config.retry_backoff * 2 ** (attempt - 1))

    async def _read(self, fn: Callable[..., T], *args: Any) -> T:
        """Run a blocking client read, retrying transient node errors with backoff."""
        attempt = 1
        while True:
            try:
                return await asyncio.to_thread(fn, *args)
            except TransientSubmissionFailure as e:
                if attempt >= self.config.max_attempts:
                    raise
                self.retries += 1
                delay = self._backoff(attempt)
                logger.warning(f"Node read {getattr(fn, '__name__', fn)} failed ({e}), retrying in {delay:.1f}s")
                await asyncio.sleep(delay)
                attempt += 1

    async def _is_live(self, request_id: str) -> bool:
        return await self._read(self.client.request_exists, request_id)

    async def _gas_price_for(self, job: JobRecord, replacing: PreparedTx | None) -> int | None:
        """Current gas price, bumped for replacements and capped at the request limit.

        Waits while the network price is above the limit; None once the
        request has expired by chain time or is no longer live.
        """
        limit = job.gas_price_limit or 0
        while True:
            price = await asyncio.to_thread(self.client.gas_price)
            if price <= limit:
                if replacing is not None:
                    bumped = replacing.gas_price * (100 + self.config.gas_price_bump_percent) // 100
                    price = min(max(price, bumped), limit)
                return price
            chain_time = await asyncio.to_thread(self.client.timestamp)
            if job.expires_at is not None and chain_time >= job.expires_at:
                return None
            if not await self._is_live(job.request_id):
                return None
            logger.info(f"Gas price {price} above limit {limit} for {job}, waiting")
            await asyncio.sleep(self.config.gas_wait_interval)

    async def _await_receipt(self, prepared: PreparedTx, submitted_height: int) -> SubmissionReceipt | None:
        while True:
            receipt = await asyncio.to_thread(self.client.get_receipt, prepared.tx_ref)
            if receipt is not None:
                return receipt
            height = await asyncio.to_thread(self.client.block_number)
            if height - submitted_height >= self.config.resubmit_after_blocks:
                return None
            await asyncio.sleep(self.config.receipt_poll_interval)

    async def _record_success(
        self,
        job: JobRecord,
        receipt: SubmissionReceipt,
        requested_data: int | None,
    ) -> JobRecord:
        self.fulfilled += 1
        logger.info(f"Fulfilled {job} in block {receipt.block_number}")
        return await asyncio.to_thread(
            self.store.mark_fulfilled, job.request_id, receipt.tx_ref, receipt.block_number, requested_data
        )

    async def _settle_from_chain(self, job: JobRecord) -> JobRecord | None:
        """Record the terminal event for a request that is no longer live."""
        request_id = job.request_id
        settlement = await self._read(self.client.find_settlement, request_id, job.request_height or 0)
        if settlement is None:
            await asyncio.to_thread(
                self.store.record_reason, request_id, "request not live and no settlement event found"
            )
            return await asyncio.to_thread(self.store.get, request_id)
        if settlement.status is JobStatus.FULFILLED:
            return await asyncio.to_thread(
                self.store.mark_fulfilled,
                request_id,
                settlement.tx_ref,
                settlement.block_number,
                settlement.requested_data,
            )
        return await asyncio.to_thread(
            self.store.mark_cancelled, request_id, settlement.tx_ref, settlement.block_number
        )

    async def _fail(self, job: JobRecord, reason: str) -> JobRecord | None:
        try:
            if not await self._is_live(job.request_id):
                settled = await self._settle_from_chain(job)
                if settled is not None and settled.status.is_settled:
                    return settled
        except TransientSubmissionFailure as e:
            logger.warning(f"Could not check settlement of {job.request_id[:10]}...: {e}")
        self.failed += 1
        return await asyncio.to_thread(self.store.mark_failed, job.request_id, reason)

    def get_stats(self) -> dict[str, int]:
        return {
            "queued": self.queue.qsize(),
            "in_flight": self.in_flight,
            "fulfilled": self.fulfilled,
            "failed": self.failed,
            "retries": self.retries,
            "resubmissions": self.resubmissions,
        }
