"""In-process execution host for Router and consumer contracts.

The host plays the part an EVM plays for the deployed contracts:

- it knows which addresses are contracts,
- it owns the block clock (height and timestamp),
- it serialises every operation behind one re-entrant lock,
- ``atomic()`` snapshots the state of every deployed contract and restores it
  (and drops the logs emitted so far) if the body raises,
- ``call()`` dispatches a selector to a contract under a gas meter,
- ``transact()`` runs an operation as a mined transaction and records a receipt.
"""

import copy
import logging
import threading
import time
from collections.abc import Callable, Iterator
from contextlib import contextmanager
from dataclasses import dataclass, field
from typing import Any

from eth_abi import encode
from web3 import Web3

from ..errors import CallbackFailed, OutOfGas, RouterError
from ..utils.encoding import to_hex

logger = logging.getLogger(__name__)

ZERO_ADDRESS = "0x0000000000000000000000000000000000000000"

# Gas schedule used to meter external calls
CALL_BASE_GAS = 700
CALLDATA_ZERO_BYTE_GAS = 4
CALLDATA_NONZERO_BYTE_GAS = 16
STORAGE_WRITE_GAS = 20_000
LOG_GAS = 375


@dataclass(frozen=True, slots=True)
class Msg:
    """Call context: who is calling and at which effective gas price."""

    sender: str
    gas_price: int = 0
    gas: "GasMeter | None" = None


class GasMeter:
    """Debit-only gas accounting for a single external call."""

    __slots__ = ("limit", "used")

    def __init__(self, limit: int) -> None:
        if limit < 0:
            raise ValueError(f"Gas limit must be non-negative, got {limit}")
        self.limit = limit
        self.used = 0

    @property
    def remaining(self) -> int:
        return max(0, self.limit - self.used)

    def consume(self, amount: int) -> None:
        if amount < 0:
            raise ValueError(f"Gas amount must be non-negative, got {amount}")
        if self.used + amount > self.limit:
            self.used = self.limit
            raise OutOfGas(f"out of gas (limit {self.limit})")
        self.used += amount


@dataclass(frozen=True, slots=True)
class LogEntry:
    """An event emitted by a contract, in the shape web3 returns for decoded logs."""

    address: str
    event: str
    args: dict[str, Any]
    block_number: int
    transaction_hash: bytes
    log_index: int

    def to_event_data(self) -> dict[str, Any]:
        return {
            "event": self.event,
            "address": self.address,
            "args": dict(self.args),
            "blockNumber": self.block_number,
            "transactionHash": self.transaction_hash,
            "logIndex": self.log_index,
        }


@dataclass(frozen=True, slots=True)
class Receipt:
    """Outcome of a mined transaction."""

    transaction_hash: bytes
    block_number: int
    status: int
    revert_reason: str | None = None
    logs: tuple[LogEntry, ...] = ()
    return_value: Any = None

    @property
    def succeeded(self) -> bool:
        return self.status == 1


class Contract:
    """Base class for contracts deployed on a ``Chain``.

    Subclasses keep all mutable storage in ``self.state`` so the host can
    snapshot and restore it around each atomic operation.
    """

    state: Any = None

    def __init__(self, host: "Chain", deployer: str = ZERO_ADDRESS) -> None:
        self.host = host
        self.address = host.deploy(self, deployer)
        # selector -> bound handler(msg, *args)
        self.selectors: dict[bytes, Callable[..., Any]] = {}

    def snapshot(self) -> Any:
        return copy.deepcopy(self.state)

    def restore(self, snapshot: Any) -> None:
        self.state = snapshot

    def emit(self, event: str, args: dict[str, Any]) -> None:
        self.host.emit(self.address, event, args)


@dataclass
class _TxContext:
    transaction_hash: bytes
    logs: list[LogEntry] = field(default_factory=list)


class Chain:
    """A single-writer execution host for contracts."""

    def __init__(self, timestamp: int | None = None, gas_price: int = 1_000_000_000) -> None:
        self.block_number = 0
        self.timestamp = int(timestamp if timestamp is not None else time.time())
        self.gas_price = gas_price
        self._lock = threading.RLock()
        self._contracts: dict[str, Contract] = {}
        self._account_nonces: dict[str, int] = {}
        self._logs: list[LogEntry] = []
        self._receipts: dict[bytes, Receipt] = {}
        self._tx: _TxContext | None = None

    # -- accounts -----------------------------------------------------------

    def _next_nonce(self, account: str) -> int:
        nonce = self._account_nonces.get(account, 0)
        self._account_nonces[account] = nonce + 1
        return nonce

    def deploy(self, contract: Contract, deployer: str = ZERO_ADDRESS) -> str:
        """Register ``contract`` and return its new address."""
        with self._lock:
            deployer = Web3.to_checksum_address(deployer)
            nonce = self._next_nonce(deployer)
            digest = Web3.keccak(encode(["address", "uint256", "string"], [deployer, nonce, "contract"]))
            address = Web3.to_checksum_address(digest[-20:])
            self._contracts[address] = contract
            logger.debug(f"Deployed {type(contract).__name__} at {address}")
            return address

    def is_contract(self, address: str) -> bool:
        return Web3.is_address(address) and Web3.to_checksum_address(address) in self._contracts

    def contract_at(self, address: str) -> Contract:
        try:
            return self._contracts[Web3.to_checksum_address(address)]
        except KeyError:
            raise RouterError(f"no contract at {address}") from None

    # -- clock --------------------------------------------------------------

    def advance_time(self, seconds: int) -> None:
        with self._lock:
            self.timestamp += seconds

    def mine(self, blocks: int = 1) -> int:
        with self._lock:
            self.block_number += blocks
            return self.block_number

    # -- atomicity ----------------------------------------------------------

    @contextmanager
    def atomic(self) -> Iterator[None]:
        """Run the body all-or-nothing across every deployed contract."""
        with self._lock:
            snapshots = {addr: c.snapshot() for addr, c in self._contracts.items()}
            log_mark = len(self._tx.logs) if self._tx else len(self._logs)
            try:
                yield
            except BaseException:
                for addr, snap in snapshots.items():
                    self._contracts[addr].restore(snap)
                if self._tx:
                    del self._tx.logs[log_mark:]
                else:
                    del self._logs[log_mark:]
                raise

    # -- events -------------------------------------------------------------

    def emit(self, address: str, event: str, args: dict[str, Any]) -> None:
        with self._lock:
            if self._tx:
                entry = LogEntry(
                    address=address,
                    event=event,
                    args=dict(args),
                    block_number=self.block_number,
                    transaction_hash=self._tx.transaction_hash,
                    log_index=len(self._tx.logs),
                )
                self._tx.logs.append(entry)
            else:
                entry = LogEntry(
                    address=address,
                    event=event,
                    args=dict(args),
                    block_number=self.block_number,
                    transaction_hash=b"\x00" * 32,
                    log_index=len(self._logs),
                )
                self._logs.append(entry)

    def get_logs(
        self,
        event: str | None = None,
        from_block: int = 0,
        to_block: int | None = None,
        address: str | None = None,
    ) -> list[LogEntry]:
        with self._lock:
            upper = self.block_number if to_block is None else to_block
            return [
                entry for entry in self._logs
                if (event is None or entry.event == event)
                and (address is None or entry.address == Web3.to_checksum_address(address))
                and from_block <= entry.block_number <= upper
            ]

    # -- calls --------------------------------------------------------------

    def call(
        self,
        msg: Msg,
        target: str,
        selector: bytes,
        arg_types: list[str],
        args: list[Any],
        gas_limit: int,
    ) -> int:
        """Invoke ``selector`` on ``target`` and return the gas it used.

        Any exception raised by the callee surfaces as ``CallbackFailed``;
        the caller's atomic scope is responsible for undoing its own effects.
        """
        meter = GasMeter(gas_limit)
        calldata = selector + encode(arg_types, args)
        try:
            meter.consume(CALL_BASE_GAS + sum(
                CALLDATA_ZERO_BYTE_GAS if b == 0 else CALLDATA_NONZERO_BYTE_GAS for b in calldata
            ))
            if not self.is_contract(target):
                raise CallbackFailed(f"call to non-contract {target}")
            contract = self.contract_at(target)
            handler = contract.selectors.get(bytes(selector))
            if handler is None:
                raise CallbackFailed(f"{target} has no function for selector {to_hex(selector)}")
            with self.atomic():
                handler(Msg(sender=msg.sender, gas_price=msg.gas_price, gas=meter), *args)
        except CallbackFailed:
            raise
        except Exception as e:
            raise CallbackFailed(f"callback reverted: {e}") from e
        return meter.used

    # -- transactions -------------------------------------------------------

    def reserve_transaction_hash(self, sender: str) -> bytes:
        """Allocate the hash of ``sender``'s next transaction before it is sent."""
        with self._lock:
            sender = Web3.to_checksum_address(sender)
            nonce = self._next_nonce(f"tx:{sender}")
            return bytes(Web3.keccak(encode(["address", "uint256"], [sender, nonce])))

    def transact(
        self,
        sender: str,
        fn: Callable[..., Any],
        *args: Any,
        gas_price: int | None = None,
        transaction_hash: bytes | None = None,
        **kwargs: Any,
    ) -> Receipt:
        """Mine ``fn(Msg(sender, gas_price), *args, **kwargs)`` in a new block.

        Router errors turn into a reverted receipt; nothing the call did survives.
        """
        with self._lock:
            tx_hash = transaction_hash or self.reserve_transaction_hash(sender)
            if tx_hash in self._receipts:
                raise ValueError(f"transaction {to_hex(tx_hash)} already mined")
            self.block_number += 1
            self._tx = _TxContext(transaction_hash=tx_hash)
            msg = Msg(
                sender=Web3.to_checksum_address(sender),
                gas_price=self.gas_price if gas_price is None else gas_price,
            )
            try:
                with self.atomic():
                    result = fn(msg, *args, **kwargs)
            except RouterError as e:
                receipt = Receipt(
                    transaction_hash=tx_hash,
                    block_number=self.block_number,
                    status=0,
                    revert_reason=str(e),
                )
                logger.debug(f"Transaction {to_hex(tx_hash)[:10]}... reverted: {e}")
            else:
                logs = tuple(self._tx.logs)
                self._logs.extend(logs)
                receipt = Receipt(
                    transaction_hash=tx_hash,
                    block_number=self.block_number,
                    status=1,
                    logs=logs,
                    return_value=result,
                )
            finally:
                self._tx = None
            self._receipts[tx_hash] = receipt
            return receipt

    def get_receipt(self, transaction_hash: bytes) -> Receipt | None:
        with self._lock:
            return self._receipts.get(bytes(transaction_hash))
