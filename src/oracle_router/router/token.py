"""ERC20-style token ledger used for request fees.

The Router treats the token as an opaque ledger: it only relies on
``transfer`` / ``transfer_from`` either succeeding or raising
``TokenTransferError``.
"""

from dataclasses import dataclass, field

from web3 import Web3

from ..errors import TokenTransferError
from .host import ZERO_ADDRESS, Chain, Contract, Msg


@dataclass
class TokenState:
    total_supply: int = 0
    balances: dict[str, int] = field(default_factory=dict)
    allowances: dict[tuple[str, str], int] = field(default_factory=dict)


class Token(Contract):
    """Minimal fungible token with balances and allowances."""

    def __init__(
        self,
        host: Chain,
        name: str,
        symbol: str,
        initial_supply: int,
        decimals: int = 9,
        owner: str = ZERO_ADDRESS,
    ) -> None:
        super().__init__(host, owner)
        self.name = name
        self.symbol = symbol
        self.decimals = decimals
        self.state = TokenState()
        if initial_supply:
            self._mint(Web3.to_checksum_address(owner), initial_supply)

    def _mint(self, to: str, amount: int) -> None:
        self.state.total_supply += amount
        self.state.balances[to] = self.state.balances.get(to, 0) + amount
        self.emit("Transfer", {"from": ZERO_ADDRESS, "to": to, "value": amount})

    def _move(self, sender: str, to: str, amount: int) -> None:
        if amount < 0:
            raise TokenTransferError(f"negative transfer amount {amount}")
        if to == ZERO_ADDRESS:
            raise TokenTransferError("transfer to the zero address")
        balance = self.state.balances.get(sender, 0)
        if balance < amount:
            raise TokenTransferError(f"transfer amount {amount} exceeds balance {balance}")
        self.state.balances[sender] = balance - amount
        self.state.balances[to] = self.state.balances.get(to, 0) + amount
        self.emit("Transfer", {"from": sender, "to": to, "value": amount})

    def balance_of(self, account: str) -> int:
        return self.state.balances.get(Web3.to_checksum_address(account), 0)

    def allowance(self, owner: str, spender: str) -> int:
        key = (Web3.to_checksum_address(owner), Web3.to_checksum_address(spender))
        return self.state.allowances.get(key, 0)

    @property
    def total_supply(self) -> int:
        return self.state.total_supply

    def transfer(self, msg: Msg, to: str, amount: int) -> bool:
        with self.host.atomic():
            self._move(msg.sender, Web3.to_checksum_address(to), amount)
        return True

    def approve(self, msg: Msg, spender: str, amount: int) -> bool:
        if amount < 0:
            raise TokenTransferError(f"negative allowance {amount}")
        spender = Web3.to_checksum_address(spender)
        with self.host.atomic():
            self.state.allowances[(msg.sender, spender)] = amount
            self.emit("Approval", {"owner": msg.sender, "spender": spender, "value": amount})
        return True

    def transfer_from(self, msg: Msg, owner: str, to: str, amount: int) -> bool:
        owner = Web3.to_checksum_address(owner)
        with self.host.atomic():
            allowed = self.state.allowances.get((owner, msg.sender), 0)
            if allowed < amount:
                raise TokenTransferError(f"transfer amount {amount} exceeds allowance {allowed}")
            self.state.allowances[(owner, msg.sender)] = allowed - amount
            self._move(owner, Web3.to_checksum_address(to), amount)
        return True
