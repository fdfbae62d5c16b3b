#!/usr/bin/env python3
"""Tests for the fulfilment worker pool."""

import asyncio
import itertools
from unittest.mock import MagicMock

import pytest

from oracle_router.config import SubmissionConfig
from oracle_router.errors import PermanentSubmissionFailure, TransientSubmissionFailure
from oracle_router.models import JobStatus, RequestCreatedEvent
from oracle_router.utils.encoding import to_hex
from oracle_router.watcher import JobStore, LocalRouterClient
from oracle_router.watcher.chain_client import PreparedTx, Settlement, SubmissionReceipt
from oracle_router.watcher.data_source import StaticDataSource
from oracle_router.watcher.fulfiller import FulfillmentWorkerPool

GAS_PRICE = 10**9
GAS_PRICE_LIMIT = 2 * 10**9
REQUEST_ID = "0x" + "ab" * 32
CHAIN_TIME = 1_700_000_000

FAST = SubmissionConfig(
    workers=2,
    max_attempts=3,
    retry_backoff=0,
    receipt_poll_interval=0,
    gas_wait_interval=0,
    resubmit_after_blocks=2,
)


@pytest.fixture
def store():
    store = JobStore()
    yield store
    store.close()


@pytest.fixture
def data_source():
    return StaticDataSource({"BTC.GBP": 42})


# -- against a Router on the in-process chain ---------------------------------


@pytest.fixture
def client(chain, router, provider):
    return LocalRouterClient(chain, router, provider.address)


@pytest.fixture
def pool(client, store, data_source, provider):
    return FulfillmentWorkerPool(client, store, data_source, provider, FAST)


@pytest.fixture
def request_id(chain, client, store, owner, consumer, provider):
    """A live request recorded in the store as PENDING."""
    receipt = chain.transact(owner.address, consumer.request_data, provider.address, "BTC.GBP")
    assert receipt.succeeded, receipt.revert_reason

    for event in client.get_events("DataRequested", 0, chain.block_number):
        store.record_request(RequestCreatedEvent.from_event(event))
    return to_hex(receipt.return_value)


class TestFulfilOnChain:
    """End-to-end fulfilment against the in-process Router."""

    @pytest.mark.asyncio
    async def test_fulfils_pending_job(self, pool, store, chain, router, token, consumer, provider, request_id):
        record = await pool.process(request_id)

        assert record.status is JobStatus.FULFILLED
        assert record.requested_data == 42
        assert record.fulfill_attempts == 1
        assert not router.request_exists(request_id)
        assert token.balance_of(provider.address) == 100
        assert consumer.get_received_data(request_id) == 42

        receipt = chain.get_receipt(bytes.fromhex(record.fulfill_tx_ref[2:]))
        assert receipt.succeeded
        assert record.completion_height == receipt.block_number
        assert pool.get_stats()["fulfilled"] == 1

    @pytest.mark.asyncio
    async def test_concurrent_processing_sends_one_transaction(self, pool, store, chain, request_id):
        """Work on one request is serialised; the second run sees it settled."""
        first, second = await asyncio.gather(pool.process(request_id), pool.process(request_id))

        assert first.status is JobStatus.FULFILLED
        assert second.status is JobStatus.FULFILLED
        assert len(chain.get_logs("RequestFulfilled")) == 1
        assert store.get(request_id).fulfill_attempts == 1

    @pytest.mark.asyncio
    async def test_workers_drain_queue(self, pool, store, request_id):
        await pool.start()
        try:
            assert await pool.submit(request_id)
            await pool.join()
        finally:
            await pool.stop()

        assert store.get(request_id).status is JobStatus.FULFILLED

    @pytest.mark.asyncio
    async def test_submit_dedupes_queued_ids(self, pool, request_id):
        assert await pool.submit(request_id)
        assert not await pool.submit(request_id)
        assert pool.get_stats()["queued"] == 1

    @pytest.mark.asyncio
    async def test_cancelled_request_is_settled_not_sent(self, pool, chain, owner, consumer, request_id):
        chain.advance_time(300)
        assert chain.transact(owner.address, consumer.cancel_request, request_id).succeeded

        record = await pool.process(request_id)

        assert record.status is JobStatus.CANCELLED
        assert record.fulfill_attempts == 0
        assert chain.get_logs("RequestFulfilled") == []

    @pytest.mark.asyncio
    async def test_reverted_fulfilment_fails_job(self, pool, chain, owner, consumer, provider, request_id):
        assert chain.transact(
            owner.address, consumer.add_remove_data_provider, provider.address, 0, True
        ).succeeded

        record = await pool.process(request_id)

        assert record.status is JobStatus.FAILED
        assert "provider no longer authorised" in record.status_reason
        assert pool.get_stats()["failed"] == 1

    @pytest.mark.asyncio
    async def test_transient_broadcast_failure_retried(self, pool, client, store, monkeypatch, request_id):
        sent: list[PreparedTx] = []
        real_broadcast = client.broadcast

        def flaky_broadcast(prepared):
            sent.append(prepared)
            if len(sent) == 1:
                raise TransientSubmissionFailure("connection reset")
            real_broadcast(prepared)

        monkeypatch.setattr(client, "broadcast", flaky_broadcast)

        record = await pool.process(request_id)

        assert record.status is JobStatus.FULFILLED
        assert record.fulfill_attempts == 2
        assert record.fulfill_tx_ref == sent[1].tx_ref
        assert sent[1].gas_price == GAS_PRICE * 112 // 100
        assert pool.get_stats()["retries"] == 1

    @pytest.mark.asyncio
    async def test_permanent_failure_fails_job(self, pool, client, monkeypatch, request_id):
        def rejected(prepared):
            raise PermanentSubmissionFailure("fulfilment rejected by node: nonce too low")

        monkeypatch.setattr(client, "broadcast", rejected)

        record = await pool.process(request_id)

        assert record.status is JobStatus.FAILED
        assert "nonce too low" in record.status_reason

    @pytest.mark.asyncio
    async def test_data_source_failures_exhaust_attempts(self, client, store, provider, request_id):
        pool = FulfillmentWorkerPool(client, store, StaticDataSource({}), provider, FAST)

        record = await pool.process(request_id)

        assert record.status is JobStatus.FAILED
        assert record.status_reason.startswith("gave up after 3 attempts")
        assert pool.get_stats()["retries"] == 3

    @pytest.mark.asyncio
    async def test_resumes_unbroadcast_fulfilment(self, pool, client, store, request_id):
        """A crash between recording and broadcasting is resumed with a fresh transaction."""
        store.mark_received(request_id)
        lost = client.prepare_fulfillment(request_id, 42, b"\x01", GAS_PRICE)
        store.mark_fulfilling(request_id, 42, lost.tx_ref, client.block_number())

        record = await pool.process(request_id)

        assert record.status is JobStatus.FULFILLED
        assert record.fulfill_attempts == 2
        assert record.fulfill_tx_ref != lost.tx_ref

    def test_client_reports_chain_time(self, client, chain):
        assert client.timestamp() == chain.timestamp
        chain.advance_time(300)
        assert client.timestamp() == chain.timestamp

    @pytest.mark.asyncio
    async def test_skips_other_providers_jobs(self, client, store, data_source, other_provider, request_id):
        pool = FulfillmentWorkerPool(client, store, data_source, other_provider, FAST)

        record = await pool.process(request_id)

        assert record.status is JobStatus.PENDING

    @pytest.mark.asyncio
    async def test_unknown_job(self, pool):
        assert await pool.process("0x" + "01" * 32) is None


# -- with a scripted client ---------------------------------------------------


@pytest.fixture
def mock_client():
    client = MagicMock()
    client.request_exists.return_value = True
    client.timestamp.return_value = CHAIN_TIME
    client.gas_price.return_value = GAS_PRICE
    client.block_number.side_effect = itertools.count(100)
    client.find_settlement.return_value = None

    counter = itertools.count(1)

    def prepare(request_id, requested_data, signature, gas_price, replace=None):
        return PreparedTx(
            tx_ref=f"0x{next(counter):064x}",
            request_id=request_id,
            requested_data=requested_data,
            gas_price=gas_price,
            nonce=7,
            payload=b"",
        )

    client.prepare_fulfillment.side_effect = prepare
    return client


def record_job(store, provider_address, expires_at=None):
    store.record_request(RequestCreatedEvent.from_event({
        "event": "DataRequested",
        "args": {
            "consumer": "0x1111111111111111111111111111111111111111",
            "provider": provider_address,
            "fee": 100,
            "dataSpec": "BTC.GBP",
            "requestId": REQUEST_ID,
            "gasPriceLimit": GAS_PRICE_LIMIT,
            "expiresAt": expires_at if expires_at is not None else CHAIN_TIME + 3600,
            "callbackSelector": "0xa1b2c3d4",
            "nonce": 0,
        },
        "blockNumber": 90,
        "transactionHash": "0x" + "ef" * 32,
        "logIndex": 0,
    }))


class TestSubmissionPolicy:
    """Resubmission, gas price and failure handling."""

    @pytest.mark.asyncio
    async def test_unmined_transaction_replaced(self, mock_client, store, data_source, provider):
        record_job(store, provider.address)
        second_ref = f"0x{2:064x}"
        mock_client.get_receipt.side_effect = lambda tx_ref: (
            SubmissionReceipt(tx_ref=tx_ref, block_number=105, succeeded=True) if tx_ref == second_ref else None
        )
        pool = FulfillmentWorkerPool(mock_client, store, data_source, provider, FAST)

        record = await pool.process(REQUEST_ID)

        assert record.status is JobStatus.FULFILLED
        assert record.fulfill_tx_ref == second_ref
        _, second_call = mock_client.prepare_fulfillment.call_args_list
        replaced = second_call.args[4]
        assert replaced.tx_ref == f"0x{1:064x}"
        assert second_call.args[3] == GAS_PRICE * 112 // 100
        assert pool.get_stats()["resubmissions"] == 1

    @pytest.mark.asyncio
    async def test_bumped_price_capped_at_limit(self, mock_client, store, data_source, provider):
        record_job(store, provider.address)
        mock_client.gas_price.return_value = GAS_PRICE_LIMIT - 1
        mock_client.get_receipt.side_effect = lambda tx_ref: (
            SubmissionReceipt(tx_ref=tx_ref, block_number=105, succeeded=True)
            if tx_ref == f"0x{2:064x}" else None
        )
        pool = FulfillmentWorkerPool(mock_client, store, data_source, provider, FAST)

        await pool.process(REQUEST_ID)

        assert mock_client.prepare_fulfillment.call_args_list[1].args[3] == GAS_PRICE_LIMIT

    @pytest.mark.asyncio
    async def test_waits_for_gas_price(self, mock_client, store, data_source, provider):
        record_job(store, provider.address)
        mock_client.gas_price.side_effect = [3 * GAS_PRICE, GAS_PRICE]
        mock_client.get_receipt.side_effect = lambda tx_ref: SubmissionReceipt(tx_ref, 101, True)
        pool = FulfillmentWorkerPool(mock_client, store, data_source, provider, FAST)

        record = await pool.process(REQUEST_ID)

        assert record.status is JobStatus.FULFILLED
        assert mock_client.prepare_fulfillment.call_args.args[3] == GAS_PRICE

    @pytest.mark.asyncio
    async def test_gas_price_above_limit_until_expiry(self, mock_client, store, data_source, provider):
        record_job(store, provider.address, expires_at=CHAIN_TIME)
        mock_client.gas_price.return_value = 3 * GAS_PRICE
        pool = FulfillmentWorkerPool(mock_client, store, data_source, provider, FAST)

        record = await pool.process(REQUEST_ID)

        assert record.status is JobStatus.FAILED
        assert "gas price" in record.status_reason
        mock_client.prepare_fulfillment.assert_not_called()

    @pytest.mark.asyncio
    async def test_expiry_judged_by_chain_time(self, mock_client, store, data_source, provider):
        """A request the wall clock considers long expired keeps waiting while the chain says it is live."""
        record_job(store, provider.address, expires_at=CHAIN_TIME + 300)
        mock_client.gas_price.side_effect = [3 * GAS_PRICE, 3 * GAS_PRICE, GAS_PRICE]
        mock_client.get_receipt.side_effect = lambda tx_ref: SubmissionReceipt(tx_ref, 101, True)
        pool = FulfillmentWorkerPool(mock_client, store, data_source, provider, FAST)

        record = await pool.process(REQUEST_ID)

        assert record.status is JobStatus.FULFILLED
        assert mock_client.timestamp.call_count == 2

    @pytest.mark.asyncio
    async def test_gives_up_once_chain_time_reaches_expiry(self, mock_client, store, data_source, provider):
        record_job(store, provider.address, expires_at=CHAIN_TIME + 300)
        mock_client.gas_price.return_value = 3 * GAS_PRICE
        mock_client.timestamp.side_effect = [CHAIN_TIME, CHAIN_TIME + 299, CHAIN_TIME + 300]
        pool = FulfillmentWorkerPool(mock_client, store, data_source, provider, FAST)

        record = await pool.process(REQUEST_ID)

        assert record.status is JobStatus.FAILED
        assert record.status_reason == "gas price stayed above the request limit until expiry"
        assert mock_client.timestamp.call_count == 3
        mock_client.prepare_fulfillment.assert_not_called()

    @pytest.mark.asyncio
    async def test_cancelled_while_waiting_for_gas(self, mock_client, store, data_source, provider):
        record_job(store, provider.address)
        mock_client.gas_price.return_value = 3 * GAS_PRICE
        mock_client.request_exists.side_effect = itertools.chain([True], itertools.repeat(False))
        mock_client.find_settlement.return_value = Settlement(
            status=JobStatus.CANCELLED, tx_ref="0x" + "13" * 32, block_number=400
        )
        pool = FulfillmentWorkerPool(mock_client, store, data_source, provider, FAST)

        record = await pool.process(REQUEST_ID)

        assert record.status is JobStatus.CANCELLED
        assert record.cancel_tx_ref == "0x" + "13" * 32
        assert pool.get_stats()["failed"] == 0
        mock_client.prepare_fulfillment.assert_not_called()
        mock_client.find_settlement.assert_called_once_with(REQUEST_ID, 90)

    @pytest.mark.asyncio
    async def test_reverted_but_settled_on_chain(self, mock_client, store, data_source, provider):
        """A revert caused by an earlier fulfilment landing is recorded as FULFILLED."""
        record_job(store, provider.address)
        mock_client.request_exists.side_effect = [True, False]
        mock_client.get_receipt.side_effect = lambda tx_ref: SubmissionReceipt(
            tx_ref, 101, False, "request does not exist"
        )
        mock_client.find_settlement.return_value = Settlement(
            status=JobStatus.FULFILLED, tx_ref="0x" + "77" * 32, block_number=99, requested_data=42
        )
        pool = FulfillmentWorkerPool(mock_client, store, data_source, provider, FAST)

        record = await pool.process(REQUEST_ID)

        assert record.status is JobStatus.FULFILLED
        assert record.fulfill_tx_ref == "0x" + "77" * 32
        assert pool.get_stats()["failed"] == 0
        mock_client.find_settlement.assert_called_once_with(REQUEST_ID, 90)

    @pytest.mark.asyncio
    async def test_transient_node_errors_exhaust_attempts(self, mock_client, store, data_source, provider):
        record_job(store, provider.address)
        mock_client.broadcast.side_effect = TransientSubmissionFailure("broadcast failed: timeout")
        pool = FulfillmentWorkerPool(mock_client, store, data_source, provider, FAST)

        record = await pool.process(REQUEST_ID)

        assert record.status is JobStatus.FAILED
        assert record.fulfill_attempts == 3
        assert "broadcast failed: timeout" in record.status_reason
        # Each resend replaces the previous transaction
        replaced = [call.args[4] for call in mock_client.prepare_fulfillment.call_args_list[1:]]
        assert [prepared.tx_ref for prepared in replaced] == [f"0x{1:064x}", f"0x{2:064x}"]


async def wait_for_status(store, status, timeout=5.0):
    async def _poll():
        while store.get(REQUEST_ID).status is not status:
            await asyncio.sleep(0.01)

    await asyncio.wait_for(_poll(), timeout=timeout)


class TestNodeErrors:
    """Transient node errors outside a submission never strand a job."""

    @pytest.mark.asyncio
    async def test_liveness_check_retried(self, mock_client, store, data_source, provider):
        record_job(store, provider.address)
        mock_client.request_exists.side_effect = itertools.chain(
            [TransientSubmissionFailure("node down")], itertools.repeat(True)
        )
        mock_client.get_receipt.side_effect = lambda tx_ref: SubmissionReceipt(tx_ref, 101, True)
        pool = FulfillmentWorkerPool(mock_client, store, data_source, provider, FAST)

        record = await pool.process(REQUEST_ID)

        assert record.status is JobStatus.FULFILLED
        assert record.fulfill_attempts == 1
        assert pool.get_stats()["retries"] == 1

    @pytest.mark.asyncio
    async def test_resumed_receipt_lookup_retried(self, mock_client, store, data_source, provider):
        record_job(store, provider.address)
        store.mark_received(REQUEST_ID)
        store.mark_fulfilling(REQUEST_ID, 42, "0x" + "55" * 32, 95)
        mock_client.get_receipt.side_effect = [
            TransientSubmissionFailure("could not fetch receipt"),
            SubmissionReceipt("0x" + "55" * 32, 96, True),
        ]
        pool = FulfillmentWorkerPool(mock_client, store, data_source, provider, FAST)

        record = await pool.process(REQUEST_ID)

        assert record.status is JobStatus.FULFILLED
        assert record.fulfill_tx_ref == "0x" + "55" * 32
        mock_client.prepare_fulfillment.assert_not_called()

    @pytest.mark.asyncio
    async def test_worker_requeues_job_after_outage(self, mock_client, store, data_source, provider):
        """A job whose reads keep failing goes back on the queue and is fulfilled once the node recovers."""
        record_job(store, provider.address)
        mock_client.request_exists.side_effect = itertools.chain(
            [TransientSubmissionFailure("node down")] * FAST.max_attempts, itertools.repeat(True)
        )
        mock_client.get_receipt.side_effect = lambda tx_ref: SubmissionReceipt(tx_ref, 101, True)
        pool = FulfillmentWorkerPool(mock_client, store, data_source, provider, FAST)

        await pool.start()
        try:
            assert await pool.submit(REQUEST_ID)
            await wait_for_status(store, JobStatus.FULFILLED)
        finally:
            await pool.stop()

        assert store.get(REQUEST_ID).fulfill_attempts == 1
        assert mock_client.request_exists.call_count >= FAST.max_attempts + 1

    @pytest.mark.asyncio
    async def test_settlement_lookup_starts_at_request_block(self, mock_client, store, data_source, provider):
        record_job(store, provider.address)
        mock_client.request_exists.return_value = False
        mock_client.find_settlement.return_value = Settlement(
            status=JobStatus.FULFILLED, tx_ref="0x" + "77" * 32, block_number=99, requested_data=42
        )
        pool = FulfillmentWorkerPool(mock_client, store, data_source, provider, FAST)

        record = await pool.process(REQUEST_ID)

        assert record.status is JobStatus.FULFILLED
        mock_client.find_settlement.assert_called_once_with(REQUEST_ID, 90)
