"""Escrow accounting for request fees.

Every fee the Router takes into custody is tracked per (consumer, provider)
pair and in a running total, and every token movement happens in the same
step as the matching ledger update. At any point::

    sum(tokens_held[c][p]) == total_tokens_held == token.balance_of(router)
"""

import logging
from dataclasses import dataclass, field

from ..errors import InsufficientBalanceOrAllowance, LedgerUnderflow, TokenTransferError
from .host import Msg
from .token import Token

logger = logging.getLogger(__name__)


@dataclass
class LedgerState:
    tokens_held: dict[tuple[str, str], int] = field(default_factory=dict)
    total_tokens_held: int = 0


class EscrowLedger:
    """Moves fees in and out of the Router's custody.

    Args:
        state: Ledger storage owned by the Router
        token: Fee token
        custodian: Address holding escrowed tokens (the Router)
    """

    def __init__(self, state: LedgerState, token: Token, custodian: str) -> None:
        self.state = state
        self.token = token
        self.custodian = custodian

    def tokens_held(self, consumer: str, provider: str) -> int:
        return self.state.tokens_held.get((consumer, provider), 0)

    @property
    def total_tokens_held(self) -> int:
        return self.state.total_tokens_held

    def reserve(self, consumer: str, provider: str, amount: int) -> None:
        """Pull ``amount`` from ``consumer`` into custody for ``provider``."""
        if amount < 0:
            raise LedgerUnderflow(f"cannot reserve a negative amount ({amount})")
        try:
            self.token.transfer_from(Msg(sender=self.custodian), consumer, self.custodian, amount)
        except TokenTransferError as e:
            raise InsufficientBalanceOrAllowance(f"could not collect fee from {consumer}: {e}") from e

        key = (consumer, provider)
        self.state.tokens_held[key] = self.state.tokens_held.get(key, 0) + amount
        self.state.total_tokens_held += amount
        logger.debug(f"Reserved {amount} for {consumer[:8]}.../{provider[:8]}...")

    def settle(self, consumer: str, provider: str, amount: int, recipient: str) -> None:
        """Release ``amount`` held for the pair to ``recipient``."""
        key = (consumer, provider)
        held = self.state.tokens_held.get(key, 0)
        if amount < 0 or amount > held:
            raise LedgerUnderflow(
                f"cannot settle {amount} for {consumer}/{provider}: only {held} held"
            )
        if amount > self.state.total_tokens_held:
            raise LedgerUnderflow(
                f"cannot settle {amount}: total held is {self.state.total_tokens_held}"
            )

        self.token.transfer(Msg(sender=self.custodian), recipient, amount)
        remaining = held - amount
        if remaining:
            self.state.tokens_held[key] = remaining
        else:
            self.state.tokens_held.pop(key, None)
        self.state.total_tokens_held -= amount
        logger.debug(f"Settled {amount} from {consumer[:8]}.../{provider[:8]}... to {recipient[:8]}...")
