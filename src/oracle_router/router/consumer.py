"""Consumer-side contract library.

``ConsumerBase`` is what a data consumer deploys to talk to the Router. Its
owner manages which providers it uses (and at what fee), the request
variables applied to new requests and the token allowance the Router may
draw fees from. The Router calls back ``receiveData`` on fulfilment; the
callback only trusts data signed by the provider the request was made to.
"""

import logging
from dataclasses import dataclass, field
from enum import IntEnum
from typing import TYPE_CHECKING

from web3 import Web3

from ..errors import require
from ..utils.encoding import function_selector, to_bytes32
from ..utils.signing import recover_fulfillment_signer
from .host import LOG_GAS, STORAGE_WRITE_GAS, ZERO_ADDRESS, Chain, Contract, Msg
from .registry import OWNER_ROLE, REQUESTER_ROLE, RoleRegistry, RoleState
from .request_id import generate_request_id

if TYPE_CHECKING:
    from .router import Router

logger = logging.getLogger(__name__)

RECEIVE_DATA_SIGNATURE = "receiveData(uint256,bytes32,bytes)"


class RequestVar(IntEnum):
    GAS_PRICE_LIMIT = 1  # gas price limit in wei for fulfilment transactions
    TOP_UP_LIMIT = 2  # max value of a gas top-up transaction
    REQUEST_TIMEOUT = 3  # seconds until a request may be cancelled


@dataclass
class ConsumerState:
    router: str
    roles: RoleState = field(default_factory=RoleState)
    owner: str = ZERO_ADDRESS
    nonce: int = 0
    provider_fees: dict[str, int] = field(default_factory=dict)
    providers: set[str] = field(default_factory=set)
    request_vars: dict[int, int] = field(default_factory=dict)
    pending: dict[bytes, str] = field(default_factory=dict)
    received: dict[bytes, int] = field(default_factory=dict)


class ConsumerBase(Contract):
    """A consumer contract with owner-managed providers and request settings."""

    def __init__(
        self,
        host: Chain,
        router_address: str,
        owner: str,
        gas_price_limit: int = 200 * 10**9,
        request_timeout: int = 300,
        top_up_limit: int = 10**16,
    ) -> None:
        super().__init__(host, owner)
        owner = Web3.to_checksum_address(owner)
        self.state = ConsumerState(router=Web3.to_checksum_address(router_address), owner=owner)
        self.roles.grant_role(OWNER_ROLE, owner)
        self.roles.grant_role(REQUESTER_ROLE, owner)
        self.state.request_vars = {
            RequestVar.GAS_PRICE_LIMIT: gas_price_limit,
            RequestVar.TOP_UP_LIMIT: top_up_limit,
            RequestVar.REQUEST_TIMEOUT: request_timeout,
        }
        self.callback_selector = function_selector(RECEIVE_DATA_SIGNATURE)
        self.selectors[self.callback_selector] = self.receive_data

    @property
    def roles(self) -> RoleRegistry:
        return RoleRegistry(self.state.roles)

    @property
    def router(self) -> "Router":
        return self.host.contract_at(self.state.router)

    def _only_owner(self, msg: Msg) -> None:
        self.roles.require_role(OWNER_ROLE, msg.sender, "only owner")

    def _as_self(self, msg: Msg) -> Msg:
        return Msg(sender=self.address, gas_price=msg.gas_price)

    # -- owner administration -------------------------------------------------

    def transfer_ownership(self, msg: Msg, new_owner: str) -> bool:
        self._only_owner(msg)
        require(Web3.is_address(new_owner) and new_owner != ZERO_ADDRESS, "new owner cannot be the zero address")
        new_owner = Web3.to_checksum_address(new_owner)
        with self.host.atomic():
            previous = self.state.owner
            for role in (OWNER_ROLE, REQUESTER_ROLE):
                self.roles.revoke_role(role, previous)
                self.roles.grant_role(role, new_owner)
            self.state.owner = new_owner
            self.emit("OwnershipTransferred", {"previousOwner": previous, "newOwner": new_owner})
        return True

    def set_router(self, msg: Msg, router_address: str) -> bool:
        self._only_owner(msg)
        require(router_address != ZERO_ADDRESS, "router cannot be the zero address")
        require(self.host.is_contract(router_address), "router address must be a contract")
        router_address = Web3.to_checksum_address(router_address)
        with self.host.atomic():
            old_router = self.state.router
            self.state.router = router_address
            self.emit("RouterSet", {"sender": msg.sender, "oldRouter": old_router, "newRouter": router_address})
        return True

    def withdraw_all_tokens(self, msg: Msg) -> bool:
        self._only_owner(msg)
        token = self.router.token
        with self.host.atomic():
            amount = token.balance_of(self.address)
            token.transfer(self._as_self(msg), self.state.owner, amount)
            self.emit("WithdrawTokensFromContract", {
                "sender": msg.sender,
                "from": self.address,
                "to": self.state.owner,
                "amount": amount,
            })
        return True

    def set_router_allowance(self, msg: Msg, amount: int, increase: bool) -> bool:
        self._only_owner(msg)
        require(amount >= 0, "amount must be >= 0")
        token = self.router.token
        with self.host.atomic():
            current = token.allowance(self.address, self.state.router)
            if increase:
                new_allowance = current + amount
            else:
                require(amount <= current, "allowance cannot go below zero")
                new_allowance = current - amount
            token.approve(self._as_self(msg), self.state.router, new_allowance)
            self.emit("IncreasedRouterAllowance" if increase else "DecreasedRouterAllowance", {
                "sender": msg.sender,
                "router": self.state.router,
                "contractAddress": self.address,
                "amount": amount,
            })
        return True

    def add_remove_data_provider(self, msg: Msg, provider: str, fee: int, remove: bool) -> bool:
        """Authorise (with a fee) or de-authorise ``provider`` on the Router.

        Re-adding a provider with ``fee == 0`` keeps its previous fee.
        """
        self._only_owner(msg)
        require(Web3.is_address(provider) and provider != ZERO_ADDRESS, "data provider cannot be the zero address")
        provider = Web3.to_checksum_address(provider)
        with self.host.atomic():
            if remove:
                require(provider in self.state.providers, "data provider does not exist")
                self.state.providers.discard(provider)
                self.router.revoke_provider_permission(self._as_self(msg), provider)
                self.emit("RemovedDataProvider", {"sender": msg.sender, "provider": provider})
                return True

            require(self.router.is_provider(provider), "must be a registered provider on the Router")
            old_fee = self.state.provider_fees.get(provider, 0)
            new_fee = fee if fee > 0 else old_fee
            require(new_fee > 0, "fee must be > 0")
            self.state.provider_fees[provider] = new_fee
            self.state.providers.add(provider)
            self.router.grant_provider_permission(self._as_self(msg), provider)
            self.emit("AddedDataProvider", {
                "sender": msg.sender,
                "provider": provider,
                "oldFee": old_fee,
                "newFee": new_fee,
            })
        return True

    def set_request_var(self, msg: Msg, var: RequestVar | int, value: int) -> bool:
        self._only_owner(msg)
        var = RequestVar(var)
        require(value > 0, f"new {var.name.lower()} must be > 0")
        if var is RequestVar.TOP_UP_LIMIT:
            require(value <= self.router.gas_top_up_limit, "new top up limit must be <= Router gas top up limit")
        with self.host.atomic():
            old_value = self.state.request_vars.get(var, 0)
            self.state.request_vars[var] = value
            self.emit("SetRequestVar", {
                "sender": msg.sender,
                "var": int(var),
                "oldValue": old_value,
                "newValue": value,
            })
        return True

    # -- requests -------------------------------------------------------------

    def request_data(self, msg: Msg, provider: str, data_spec: str) -> bytes:
        """Ask ``provider`` for ``data_spec``; returns the new request ID."""
        self.roles.require_role(REQUESTER_ROLE, msg.sender, "caller cannot request data")
        provider = Web3.to_checksum_address(provider)
        require(provider in self.state.providers, "data provider not authorised")
        with self.host.atomic():
            fee = self.state.provider_fees[provider]
            nonce = self.state.nonce
            self.state.nonce += 1
            gas_price_limit = self.state.request_vars[RequestVar.GAS_PRICE_LIMIT]
            expires_at = self.host.timestamp + self.state.request_vars[RequestVar.REQUEST_TIMEOUT]
            router = self.router
            request_id = generate_request_id(
                self.address, nonce, provider, data_spec, self.callback_selector, gas_price_limit, router.salt
            )
            router.initialise_request(
                self._as_self(msg),
                provider,
                fee,
                nonce,
                data_spec,
                gas_price_limit,
                expires_at,
                request_id,
                self.callback_selector,
            )
            self.state.pending[request_id] = provider
        logger.debug(f"Consumer {self.address[:8]}... requested {data_spec!r} from {provider[:8]}...")
        return request_id

    def cancel_request(self, msg: Msg, request_id: bytes | str) -> bool:
        self.roles.require_role(REQUESTER_ROLE, msg.sender, "caller cannot cancel requests")
        request_id = to_bytes32(request_id)
        with self.host.atomic():
            self.router.cancel_request(self._as_self(msg), request_id)
            self.state.pending.pop(request_id, None)
        return True

    def receive_data(self, msg: Msg, requested_data: int, request_id: bytes, signature: bytes) -> None:
        """Router callback delivering the data for a pending request."""
        require(msg.sender == self.state.router, "only the Router can deliver data")
        provider = self.state.pending.get(request_id)
        require(provider is not None, "request is not pending")
        signer = recover_fulfillment_signer(request_id, requested_data, signature)
        require(signer == provider, "data not signed by the request's provider")

        if msg.gas:
            msg.gas.consume(STORAGE_WRITE_GAS + LOG_GAS)
        del self.state.pending[request_id]
        self.state.received[request_id] = requested_data
        self.emit("ReceivedData", {"requestId": request_id, "requestedData": requested_data, "signer": signer})
        self.on_data_received(request_id, requested_data)

    def on_data_received(self, request_id: bytes, requested_data: int) -> None:
        """Hook for subclasses; called after data has been stored."""

    # -- read-only accessors --------------------------------------------------

    @property
    def owner(self) -> str:
        return self.state.owner

    def get_router_address(self) -> str:
        return self.state.router

    def get_request_var(self, var: RequestVar | int) -> int:
        return self.state.request_vars.get(RequestVar(var), 0)

    def get_data_provider_fee(self, provider: str) -> int:
        return self.state.provider_fees.get(Web3.to_checksum_address(provider), 0)

    def has_role(self, role: str, account: str) -> bool:
        return self.roles.has_role(role, account)

    def get_received_data(self, request_id: bytes | str) -> int | None:
        return self.state.received.get(to_bytes32(request_id))

    def is_pending(self, request_id: bytes | str) -> bool:
        return to_bytes32(request_id) in self.state.pending
