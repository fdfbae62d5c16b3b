"""Provider-side access to a deployed Router.

``RouterClient`` is everything the Watcher needs from the chain. Fulfilment
is split into ``prepare_fulfillment`` (build and sign, which fixes the
transaction reference) and ``broadcast`` so the reference can be persisted
before the transaction leaves the process.

Two implementations:
    - ``LocalRouterClient`` drives a Router on an in-process ``Chain``.
    - ``Web3RouterClient`` talks JSON-RPC through web3.py and signs locally
      with eth_account.
"""

import logging
from collections.abc import Callable
from dataclasses import dataclass
from typing import Any, Protocol

from eth_account.signers.local import LocalAccount
from web3 import Web3
from web3.exceptions import ContractLogicError, TransactionNotFound, Web3Exception

from ..errors import PermanentSubmissionFailure, TransientSubmissionFailure
from ..models import REQUEST_CANCELLED, REQUEST_FULFILLED, JobStatus
from ..router.host import Chain
from ..router.router import Router
from ..utils.encoding import to_bytes32, to_hex

logger = logging.getLogger(__name__)

# Node responses that mean a resent transaction is already in the pool
_ALREADY_KNOWN = ("already known", "known transaction", "already imported")
# Node responses that retrying the same payload cannot fix
_PERMANENT_RPC_ERRORS = ("nonce too low", "insufficient funds", "replacement transaction underpriced")


@dataclass(frozen=True, slots=True)
class PreparedTx:
    """A signed fulfilment transaction that has not been broadcast yet.

    Attributes:
        tx_ref: Transaction hash (0x-prefixed hex), known before broadcast
        request_id: Request being fulfilled
        requested_data: Value delivered to the consumer
        gas_price: Gas price the transaction pays
        nonce: Account nonce (None for the in-process host)
        payload: Whatever ``broadcast`` needs to send it
    """

    tx_ref: str
    request_id: str
    requested_data: int
    gas_price: int
    nonce: int | None
    payload: Any


@dataclass(frozen=True, slots=True)
class SubmissionReceipt:
    tx_ref: str
    block_number: int
    succeeded: bool
    revert_reason: str | None = None


@dataclass(frozen=True, slots=True)
class Settlement:
    """The terminal Router event found for a request."""

    status: JobStatus
    tx_ref: str
    block_number: int
    requested_data: int | None = None


class RouterClient(Protocol):
    def block_number(self) -> int: ...

    def timestamp(self) -> int: ...

    def gas_price(self) -> int: ...

    def get_events(self, event_name: str, from_block: int, to_block: int) -> list[Any]: ...

    def request_exists(self, request_id: str) -> bool: ...

    def prepare_fulfillment(
        self,
        request_id: str,
        requested_data: int,
        signature: bytes,
        gas_price: int,
        replace: PreparedTx | None = None,
    ) -> PreparedTx: ...

    def broadcast(self, prepared: PreparedTx) -> None: ...

    def get_receipt(self, tx_ref: str) -> SubmissionReceipt | None: ...

    def find_settlement(self, request_id: str, from_block: int = 0) -> Settlement | None: ...


def _settlement_from_event(event: Any) -> Settlement:
    args = event["args"]
    if event["event"] == REQUEST_FULFILLED:
        return Settlement(
            status=JobStatus.FULFILLED,
            tx_ref=to_hex(event["transactionHash"]),
            block_number=int(event["blockNumber"]),
            requested_data=int(args["requestedData"]),
        )
    return Settlement(
        status=JobStatus.CANCELLED,
        tx_ref=to_hex(event["transactionHash"]),
        block_number=int(event["blockNumber"]),
    )


class LocalRouterClient:
    """``RouterClient`` for a Router deployed on an in-process ``Chain``.

    Args:
        chain: Host the Router runs on
        router: The Router contract
        provider_address: Account fulfilments are sent from
    """

    def __init__(self, chain: Chain, router: Router, provider_address: str) -> None:
        self.chain = chain
        self.router = router
        self.provider_address = Web3.to_checksum_address(provider_address)

    def block_number(self) -> int:
        return self.chain.block_number

    def timestamp(self) -> int:
        return self.chain.timestamp

    def gas_price(self) -> int:
        return self.chain.gas_price

    def get_events(self, event_name: str, from_block: int, to_block: int) -> list[Any]:
        return [
            entry.to_event_data()
            for entry in self.chain.get_logs(event_name, from_block, to_block, address=self.router.address)
        ]

    def request_exists(self, request_id: str) -> bool:
        return self.router.request_exists(request_id)

    def prepare_fulfillment(
        self,
        request_id: str,
        requested_data: int,
        signature: bytes,
        gas_price: int,
        replace: PreparedTx | None = None,
    ) -> PreparedTx:
        tx_hash = self.chain.reserve_transaction_hash(self.provider_address)
        return PreparedTx(
            tx_ref=to_hex(tx_hash),
            request_id=to_hex(request_id),
            requested_data=requested_data,
            gas_price=gas_price,
            nonce=None,
            payload=(to_bytes32(request_id), requested_data, bytes(signature)),
        )

    def broadcast(self, prepared: PreparedTx) -> None:
        tx_hash = to_bytes32(prepared.tx_ref)
        if self.chain.get_receipt(tx_hash) is not None:
            return
        self.chain.transact(
            self.provider_address,
            self.router.fulfill_request,
            *prepared.payload,
            gas_price=prepared.gas_price,
            transaction_hash=tx_hash,
        )

    def get_receipt(self, tx_ref: str) -> SubmissionReceipt | None:
        receipt = self.chain.get_receipt(to_bytes32(tx_ref))
        if receipt is None:
            return None
        return SubmissionReceipt(
            tx_ref=to_hex(receipt.transaction_hash),
            block_number=receipt.block_number,
            succeeded=receipt.succeeded,
            revert_reason=receipt.revert_reason,
        )

    def find_settlement(self, request_id: str, from_block: int = 0) -> Settlement | None:
        wanted = to_bytes32(request_id)
        for event_name in (REQUEST_FULFILLED, REQUEST_CANCELLED):
            for entry in self.chain.get_logs(event_name, from_block, address=self.router.address):
                if entry.args["requestId"] == wanted:
                    return _settlement_from_event(entry.to_event_data())
        return None


class Web3RouterClient:
    """``RouterClient`` for a Router reached over JSON-RPC.

    Args:
        w3: Connected Web3 instance
        router_address: Address of the deployed Router
        abi: Router ABI
        account: Provider account used to sign fulfilments
        gas_limit: Gas limit for fulfilment transactions
    """

    def __init__(
        self,
        w3: Web3,
        router_address: str,
        abi: list[dict[str, Any]],
        account: LocalAccount,
        gas_limit: int = 1_000_000,
    ) -> None:
        self.w3 = w3
        self.router_address = Web3.to_checksum_address(router_address)
        self.contract = w3.eth.contract(address=self.router_address, abi=abi)
        self.account = account
        self.gas_limit = gas_limit
        self._chain_id: int | None = None

    @property
    def chain_id(self) -> int:
        if self._chain_id is None:
            self._chain_id = self.w3.eth.chain_id
        return self._chain_id

    @staticmethod
    def _rpc(fn: Callable[..., Any], *args: Any, **kwargs: Any) -> Any:
        try:
            return fn(*args, **kwargs)
        except (Web3Exception, OSError) as e:
            raise TransientSubmissionFailure(f"RPC call failed: {e}") from e

    def block_number(self) -> int:
        return self._rpc(lambda: self.w3.eth.block_number)

    def timestamp(self) -> int:
        """Timestamp of the latest block, the clock the Router checks expiry against."""
        return int(self._rpc(self.w3.eth.get_block, "latest")["timestamp"])

    def gas_price(self) -> int:
        return self._rpc(lambda: self.w3.eth.gas_price)

    def get_events(self, event_name: str, from_block: int, to_block: int) -> list[Any]:
        event_obj = getattr(self.contract.events, event_name)
        return list(self._rpc(event_obj.get_logs, from_block=from_block, to_block=to_block))

    def request_exists(self, request_id: str) -> bool:
        call = self.contract.functions.requestExists(to_bytes32(request_id)).call
        return bool(self._rpc(call))

    def prepare_fulfillment(
        self,
        request_id: str,
        requested_data: int,
        signature: bytes,
        gas_price: int,
        replace: PreparedTx | None = None,
    ) -> PreparedTx:
        """Build and sign ``fulfillRequest``.

        With ``replace`` the earlier transaction's nonce is reused so at most
        one of the two can ever be mined.
        """
        try:
            nonce = (
                replace.nonce
                if replace is not None and replace.nonce is not None
                else self.w3.eth.get_transaction_count(self.account.address, "pending")
            )
            tx = self.contract.functions.fulfillRequest(
                to_bytes32(request_id), requested_data, bytes(signature)
            ).build_transaction({
                "from": self.account.address,
                "nonce": nonce,
                "gas": self.gas_limit,
                "gasPrice": gas_price,
                "chainId": self.chain_id,
            })
        except (Web3Exception, OSError) as e:
            raise TransientSubmissionFailure(f"could not build fulfilment: {e}") from e

        signed = self.account.sign_transaction(tx)
        return PreparedTx(
            tx_ref=to_hex(signed.hash),
            request_id=to_hex(request_id),
            requested_data=requested_data,
            gas_price=gas_price,
            nonce=nonce,
            payload=bytes(signed.raw_transaction),
        )

    def broadcast(self, prepared: PreparedTx) -> None:
        try:
            self.w3.eth.send_raw_transaction(prepared.payload)
        except ContractLogicError as e:
            raise PermanentSubmissionFailure(f"fulfilment rejected: {e}") from e
        except Web3Exception as e:
            message = str(e).lower()
            if any(marker in message for marker in _ALREADY_KNOWN):
                logger.debug(f"Transaction {prepared.tx_ref[:10]}... already in the pool")
                return
            if any(marker in message for marker in _PERMANENT_RPC_ERRORS):
                raise PermanentSubmissionFailure(f"fulfilment rejected by node: {e}") from e
            raise TransientSubmissionFailure(f"broadcast failed: {e}") from e
        except OSError as e:
            raise TransientSubmissionFailure(f"node unreachable: {e}") from e

    def get_receipt(self, tx_ref: str) -> SubmissionReceipt | None:
        try:
            receipt = self.w3.eth.get_transaction_receipt(tx_ref)
        except TransactionNotFound:
            return None
        except (Web3Exception, OSError) as e:
            raise TransientSubmissionFailure(f"could not fetch receipt: {e}") from e
        succeeded = receipt["status"] == 1
        return SubmissionReceipt(
            tx_ref=to_hex(receipt["transactionHash"]),
            block_number=int(receipt["blockNumber"]),
            succeeded=succeeded,
            revert_reason=None if succeeded else "transaction reverted",
        )

    def find_settlement(self, request_id: str, from_block: int = 0) -> Settlement | None:
        wanted = to_bytes32(request_id)
        for event_name in (REQUEST_FULFILLED, REQUEST_CANCELLED):
            event_obj = getattr(self.contract.events, event_name)
            events = self._rpc(
                event_obj.get_logs,
                argument_filters={"requestId": wanted},
                from_block=from_block,
                to_block="latest",
            )
            for event in events:
                return _settlement_from_event(event)
        return None
