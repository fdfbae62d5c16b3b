"""The Request Router state machine.

Per request::

    UNSET --initialise_request--> LIVE --fulfill_request--> (deleted)
                                       --cancel_request---> (deleted)

Fulfilled and cancelled requests are both removed from the request table;
only the Router's events (and the off-chain job store built from them) tell
the two outcomes apart.

Each operation runs inside ``host.atomic()``: if any check, token transfer or
consumer callback fails, every state change made by the operation (including
token movements and emitted events) is rolled back.
"""

import logging
from dataclasses import dataclass, field

from web3 import Web3

from ..errors import PreconditionViolation, require
from ..models import (
    DATA_REQUESTED,
    GRANT_PROVIDER_PERMISSION,
    REQUEST_CANCELLED,
    REQUEST_FULFILLED,
    REVOKE_PROVIDER_PERMISSION,
    DataRequest,
)
from ..utils.encoding import to_bytes32, to_hex, to_selector
from .escrow import EscrowLedger, LedgerState
from .host import ZERO_ADDRESS, Chain, Contract, Msg
from .registry import (
    ADMIN_ROLE,
    AuthorizationRegistry,
    AuthorizationState,
    RoleRegistry,
    RoleState,
)
from .request_id import deployment_salt, generate_request_id
from .token import Token

logger = logging.getLogger(__name__)

# Consumer callback signature: receiveData(requestedData, requestId, signature)
CALLBACK_ARG_TYPES = ["uint256", "bytes32", "bytes"]
DEFAULT_CALLBACK_GAS_LIMIT = 500_000
DEFAULT_GAS_TOP_UP_LIMIT = 10**17  # 0.1 ETH in wei


def _request_key(request_id: bytes | str) -> bytes:
    try:
        return to_bytes32(request_id)
    except ValueError as e:
        raise PreconditionViolation(f"malformed request id: {e}") from e


@dataclass
class RouterState:
    """All storage owned by the Router."""

    requests: dict[bytes, DataRequest] = field(default_factory=dict)
    ledger: LedgerState = field(default_factory=LedgerState)
    permissions: AuthorizationState = field(default_factory=AuthorizationState)
    roles: RoleState = field(default_factory=RoleState)
    provider_min_fees: dict[str, int] = field(default_factory=dict)
    gas_top_up_limit: int = DEFAULT_GAS_TOP_UP_LIMIT


class Router(Contract):
    """Mediates data requests between consumer contracts and providers.

    Args:
        host: Execution host the Router is deployed on
        token: Fee token
        admin: Account granted ``ADMIN_ROLE``
        salt: Deployment salt mixed into request IDs (defaults to keccak(address))
        callback_gas_limit: Gas available to each consumer callback
    """

    def __init__(
        self,
        host: Chain,
        token: Token,
        admin: str = ZERO_ADDRESS,
        salt: bytes | None = None,
        callback_gas_limit: int = DEFAULT_CALLBACK_GAS_LIMIT,
    ) -> None:
        super().__init__(host, admin)
        self.token = token
        self.salt = to_bytes32(salt) if salt is not None else deployment_salt(self.address)
        self.callback_gas_limit = callback_gas_limit
        self.state = RouterState()
        self.roles.grant_role(ADMIN_ROLE, admin)
        logger.info(f"Router deployed at {self.address} (token {token.address})")

    # Components are views over the current state, so a restored snapshot is
    # picked up automatically.

    @property
    def escrow(self) -> EscrowLedger:
        return EscrowLedger(self.state.ledger, self.token, self.address)

    @property
    def permissions(self) -> AuthorizationRegistry:
        return AuthorizationRegistry(self.state.permissions)

    @property
    def roles(self) -> RoleRegistry:
        return RoleRegistry(self.state.roles)

    # -- authorisation ------------------------------------------------------

    def grant_provider_permission(self, msg: Msg, provider: str) -> bool:
        """Authorise ``provider`` to serve the calling consumer."""
        provider = Web3.to_checksum_address(provider)
        with self.host.atomic():
            self.permissions.grant(msg.sender, provider)
            self.emit(GRANT_PROVIDER_PERMISSION, {"consumer": msg.sender, "provider": provider})
        return True

    def revoke_provider_permission(self, msg: Msg, provider: str) -> bool:
        """Withdraw the calling consumer's authorisation of ``provider``."""
        provider = Web3.to_checksum_address(provider)
        with self.host.atomic():
            self.permissions.revoke(msg.sender, provider)
            self.emit(REVOKE_PROVIDER_PERMISSION, {"consumer": msg.sender, "provider": provider})
        return True

    # -- provider registry and limits ----------------------------------------

    def register_as_provider(self, msg: Msg, min_fee: int) -> bool:
        """Register the caller as a data provider with its minimum fee."""
        require(min_fee > 0, "min fee must be > 0")
        with self.host.atomic():
            self.state.provider_min_fees[msg.sender] = min_fee
            self.emit("ProviderRegistered", {"provider": msg.sender, "minFee": min_fee})
        return True

    def set_gas_top_up_limit(self, msg: Msg, limit: int) -> bool:
        self.roles.require_role(ADMIN_ROLE, msg.sender, "caller is not an admin")
        require(limit > 0, "limit must be > 0")
        with self.host.atomic():
            old_limit = self.state.gas_top_up_limit
            self.state.gas_top_up_limit = limit
            self.emit("SetGasTopUpLimit", {"sender": msg.sender, "oldLimit": old_limit, "newLimit": limit})
        return True

    # -- request lifecycle ----------------------------------------------------

    def initialise_request(
        self,
        msg: Msg,
        provider: str,
        fee: int,
        nonce: int,
        data_spec: str,
        gas_price_limit: int,
        expires_at: int,
        request_id: bytes | str,
        callback_selector: bytes | str,
    ) -> bool:
        """Create a live request and escrow its fee (UNSET -> LIVE)."""
        with self.host.atomic():
            consumer = msg.sender
            require(self.host.is_contract(consumer), "only a contract can initialise a request")
            require(Web3.is_address(provider), "invalid provider address")
            provider = Web3.to_checksum_address(provider)
            require(
                self.permissions.is_authorized(consumer, provider),
                "provider not authorised for this consumer",
            )
            require(fee >= 0, "fee must be >= 0")
            require(nonce >= 0 and gas_price_limit >= 0, "nonce and gas price limit must be >= 0")
            require(isinstance(data_spec, str), "data spec must be a string")
            require(expires_at > self.host.timestamp, "expiration must be in the future")

            request_id = _request_key(request_id)
            try:
                callback_selector = to_selector(callback_selector)
            except ValueError as e:
                raise PreconditionViolation(f"malformed callback selector: {e}") from e
            expected_id = generate_request_id(
                consumer, nonce, provider, data_spec, callback_selector, gas_price_limit, self.salt
            )
            require(expected_id == request_id, "request id does not match parameters")
            require(request_id not in self.state.requests, "request already initialised")

            self.escrow.reserve(consumer, provider, fee)
            request = DataRequest(
                request_id=request_id,
                consumer=consumer,
                provider=provider,
                callback_selector=callback_selector,
                fee=fee,
                gas_price_limit=gas_price_limit,
                expires_at=expires_at,
                nonce=nonce,
                data_spec=data_spec,
            )
            self.state.requests[request_id] = request
            self.emit(DATA_REQUESTED, {
                "consumer": consumer,
                "provider": provider,
                "fee": fee,
                "dataSpec": data_spec,
                "requestId": request_id,
                "gasPriceLimit": gas_price_limit,
                "expiresAt": expires_at,
                "callbackSelector": callback_selector,
                "nonce": nonce,
            })
        logger.info(f"Request initialised: {request}")
        return True

    def fulfill_request(
        self,
        msg: Msg,
        request_id: bytes | str,
        requested_data: int,
        signature: bytes,
    ) -> bool:
        """Deliver data and pay the provider (LIVE -> deleted).

        The entry is removed and the fee settled before the consumer callback
        runs, so a re-entrant call sees the request as already gone. If the
        callback fails the atomic scope puts both back.
        """
        with self.host.atomic():
            require(bool(signature), "signature required")
            request_id = _request_key(request_id)
            request = self.state.requests.get(request_id)
            require(request is not None, "request does not exist")
            require(msg.sender == request.provider, "only the request's provider can fulfil")
            require(msg.gas_price <= request.gas_price_limit, "gas price exceeds request limit")
            require(
                self.permissions.is_authorized(request.consumer, request.provider),
                "provider no longer authorised for this consumer",
            )

            del self.state.requests[request_id]
            self.escrow.settle(request.consumer, request.provider, request.fee, recipient=request.provider)

            gas_used = self.host.call(
                Msg(sender=self.address, gas_price=msg.gas_price),
                request.consumer,
                request.callback_selector,
                CALLBACK_ARG_TYPES,
                [requested_data, request_id, bytes(signature)],
                gas_limit=self.callback_gas_limit,
            )
            self.emit(REQUEST_FULFILLED, {
                "consumer": request.consumer,
                "provider": request.provider,
                "requestId": request_id,
                "requestedData": requested_data,
                "gasUsed": gas_used,
            })
        logger.info(f"Request fulfilled: {to_hex(request_id)[:10]}... gas used {gas_used}")
        return True

    def cancel_request(self, msg: Msg, request_id: bytes | str) -> bool:
        """Refund an expired request to its consumer (LIVE -> deleted)."""
        with self.host.atomic():
            request_id = _request_key(request_id)
            request = self.state.requests.get(request_id)
            require(request is not None, "request does not exist")
            require(
                self.host.is_contract(msg.sender) and msg.sender == request.consumer,
                "only the request's consumer can cancel",
            )
            require(self.host.timestamp >= request.expires_at, "request not yet expired")

            del self.state.requests[request_id]
            self.escrow.settle(request.consumer, request.provider, request.fee, recipient=request.consumer)
            self.emit(REQUEST_CANCELLED, {
                "consumer": request.consumer,
                "provider": request.provider,
                "requestId": request_id,
                "refund": request.fee,
            })
        logger.info(f"Request cancelled: {to_hex(request_id)[:10]}... refund {request.fee}")
        return True

    # -- read-only accessors --------------------------------------------------

    def get_request(self, request_id: bytes | str) -> DataRequest | None:
        return self.state.requests.get(to_bytes32(request_id))

    def request_exists(self, request_id: bytes | str) -> bool:
        return to_bytes32(request_id) in self.state.requests

    def _require_request(self, request_id: bytes | str) -> DataRequest:
        request = self.get_request(request_id)
        if request is None:
            raise PreconditionViolation("request does not exist")
        return request

    def get_request_consumer(self, request_id: bytes | str) -> str:
        return self._require_request(request_id).consumer

    def get_request_provider(self, request_id: bytes | str) -> str:
        return self._require_request(request_id).provider

    def get_request_fee(self, request_id: bytes | str) -> int:
        return self._require_request(request_id).fee

    def get_request_expires(self, request_id: bytes | str) -> int:
        return self._require_request(request_id).expires_at

    def get_request_gas_price_limit(self, request_id: bytes | str) -> int:
        return self._require_request(request_id).gas_price_limit

    def provider_is_authorised(self, consumer: str, provider: str) -> bool:
        return self.permissions.is_authorized(consumer, provider)

    def tokens_held(self, consumer: str, provider: str) -> int:
        return self.escrow.tokens_held(Web3.to_checksum_address(consumer), Web3.to_checksum_address(provider))

    @property
    def total_tokens_held(self) -> int:
        return self.escrow.total_tokens_held

    @property
    def token_address(self) -> str:
        return self.token.address

    @property
    def gas_top_up_limit(self) -> int:
        return self.state.gas_top_up_limit

    def is_provider(self, address: str) -> bool:
        return Web3.to_checksum_address(address) in self.state.provider_min_fees

    def get_provider_min_fee(self, address: str) -> int:
        return self.state.provider_min_fees.get(Web3.to_checksum_address(address), 0)

    def has_role(self, role: str, account: str) -> bool:
        return self.roles.has_role(role, account)
