#!/usr/bin/env python3
"""Data models shared by the Router and the off-chain Watcher.

The Router owns ``DataRequest`` entries. The Watcher parses Router events
into the immutable event classes below and keeps its own ``JobRecord``
mirror of each request.
"""

from collections.abc import Mapping
from dataclasses import dataclass
from enum import Enum
from typing import Any

from web3 import Web3

from .utils.encoding import to_bytes32, to_hex, to_selector

# Event names emitted by the Router
DATA_REQUESTED = "DataRequested"
REQUEST_FULFILLED = "RequestFulfilled"
REQUEST_CANCELLED = "RequestCancelled"
GRANT_PROVIDER_PERMISSION = "GrantProviderPermission"
REVOKE_PROVIDER_PERMISSION = "RevokeProviderPermission"


@dataclass(frozen=True, slots=True)
class DataRequest:
    """A live oracle request held in the Router's request table.

    Attributes:
        request_id: 32-byte request identifier
        consumer: Address of the requesting contract
        provider: Address allowed to fulfil the request
        callback_selector: 4-byte selector invoked on the consumer
        fee: Escrowed fee in token base units
        gas_price_limit: Highest gas price the fulfilment may use
        expires_at: Unix timestamp after which the consumer may cancel
        nonce: Consumer nonce used to derive the ID
        data_spec: Description of the requested data (e.g. "BTC.GBP")
    """

    request_id: bytes
    consumer: str
    provider: str
    callback_selector: bytes
    fee: int
    gas_price_limit: int
    expires_at: int
    nonce: int
    data_spec: str

    def __str__(self) -> str:
        return (
            f"DataRequest(id={to_hex(self.request_id)[:10]}..., "
            f"consumer={self.consumer[:8]}..., provider={self.provider[:8]}..., fee={self.fee})"
        )


def _event_field(event_data: Any, name: str, default: Any = None) -> Any:
    """Read a top-level field from a dict-like or attribute-style event."""
    if isinstance(event_data, Mapping):
        return event_data.get(name, default)
    return getattr(event_data, name, default)


@dataclass(frozen=True, slots=True)
class EventMeta:
    """Where an event was observed on chain."""

    block_number: int
    transaction_hash: str
    log_index: int

    @classmethod
    def from_event(cls, event_data: Any) -> "EventMeta":
        return cls(
            block_number=int(_event_field(event_data, "blockNumber", 0)),
            transaction_hash=to_hex(_event_field(event_data, "transactionHash", b"")),
            log_index=int(_event_field(event_data, "logIndex", 0)),
        )


@dataclass(frozen=True, slots=True)
class RequestCreatedEvent:
    """A parsed ``DataRequested`` event."""

    request_id: str
    consumer: str
    provider: str
    fee: int
    data_spec: str
    gas_price_limit: int
    expires_at: int
    callback_selector: str
    nonce: int
    meta: EventMeta

    @classmethod
    def from_event(cls, event_data: Any) -> "RequestCreatedEvent":
        args: Mapping[str, Any] = _event_field(event_data, "args", {})
        return cls(
            request_id=to_hex(to_bytes32(args["requestId"])),
            consumer=Web3.to_checksum_address(args["consumer"]),
            provider=Web3.to_checksum_address(args["provider"]),
            fee=int(args["fee"]),
            data_spec=str(args["dataSpec"]),
            gas_price_limit=int(args["gasPriceLimit"]),
            expires_at=int(args["expiresAt"]),
            callback_selector=to_hex(to_selector(args["callbackSelector"])),
            nonce=int(args["nonce"]),
            meta=EventMeta.from_event(event_data),
        )


@dataclass(frozen=True, slots=True)
class RequestFulfilledEvent:
    """A parsed ``RequestFulfilled`` event."""

    request_id: str
    consumer: str
    provider: str
    requested_data: int
    gas_used: int
    meta: EventMeta

    @classmethod
    def from_event(cls, event_data: Any) -> "RequestFulfilledEvent":
        args: Mapping[str, Any] = _event_field(event_data, "args", {})
        return cls(
            request_id=to_hex(to_bytes32(args["requestId"])),
            consumer=Web3.to_checksum_address(args["consumer"]),
            provider=Web3.to_checksum_address(args["provider"]),
            requested_data=int(args["requestedData"]),
            gas_used=int(args["gasUsed"]),
            meta=EventMeta.from_event(event_data),
        )


@dataclass(frozen=True, slots=True)
class RequestCancelledEvent:
    """A parsed ``RequestCancelled`` event."""

    request_id: str
    consumer: str
    provider: str
    refund: int
    meta: EventMeta

    @classmethod
    def from_event(cls, event_data: Any) -> "RequestCancelledEvent":
        args: Mapping[str, Any] = _event_field(event_data, "args", {})
        return cls(
            request_id=to_hex(to_bytes32(args["requestId"])),
            consumer=Web3.to_checksum_address(args["consumer"]),
            provider=Web3.to_checksum_address(args["provider"]),
            refund=int(args["refund"]),
            meta=EventMeta.from_event(event_data),
        )


class JobStatus(str, Enum):
    """Lifecycle of a mirrored request in the job store."""

    PENDING = "PENDING"
    RECEIVED = "RECEIVED"
    FULFILLING = "FULFILLING"
    FULFILLED = "FULFILLED"
    CANCELLED = "CANCELLED"
    FAILED = "FAILED"

    @property
    def is_settled(self) -> bool:
        """True once the chain has settled the request one way or the other."""
        return self in (JobStatus.FULFILLED, JobStatus.CANCELLED)


@dataclass(frozen=True, slots=True)
class JobRecord:
    """Read-only snapshot of a row in the job store."""

    request_id: str
    status: JobStatus
    consumer: str | None
    provider: str | None
    fee: int | None
    data_spec: str | None
    gas_price_limit: int | None
    expires_at: int | None
    callback_selector: str | None
    nonce: int | None
    request_height: int | None
    request_tx_ref: str | None
    requested_data: int | None
    fulfill_tx_ref: str | None
    fulfill_attempts: int
    submitted_height: int | None
    cancel_tx_ref: str | None
    completion_height: int | None
    status_reason: str | None

    @property
    def is_open(self) -> bool:
        """True while the Watcher still has work to do for this job."""
        return self.status in (JobStatus.PENDING, JobStatus.RECEIVED, JobStatus.FULFILLING)

    def __str__(self) -> str:
        return f"Job({self.request_id[:10]}..., {self.status.value})"
