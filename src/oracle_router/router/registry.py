"""Provider authorisations and role-based capability checks."""

from dataclasses import dataclass, field

from web3 import Web3

from ..errors import PreconditionViolation

ADMIN_ROLE = "ADMIN_ROLE"
OWNER_ROLE = "OWNER_ROLE"
REQUESTER_ROLE = "REQUESTER_ROLE"


@dataclass
class AuthorizationState:
    # (consumer, provider) pairs currently authorised
    authorised: set[tuple[str, str]] = field(default_factory=set)


class AuthorizationRegistry:
    """Tracks which providers each consumer has authorised.

    Only the consumer itself changes its own entries; callers pass the
    already-authenticated consumer address. Granting or revoking twice is a
    no-op state-wise.
    """

    def __init__(self, state: AuthorizationState) -> None:
        self.state = state

    def grant(self, consumer: str, provider: str) -> None:
        self.state.authorised.add((Web3.to_checksum_address(consumer), Web3.to_checksum_address(provider)))

    def revoke(self, consumer: str, provider: str) -> None:
        self.state.authorised.discard((Web3.to_checksum_address(consumer), Web3.to_checksum_address(provider)))

    def is_authorized(self, consumer: str, provider: str) -> bool:
        return (Web3.to_checksum_address(consumer), Web3.to_checksum_address(provider)) in self.state.authorised


@dataclass
class RoleState:
    members: dict[str, set[str]] = field(default_factory=dict)


class RoleRegistry:
    """Role membership with a single ``has_role`` capability check."""

    def __init__(self, state: RoleState) -> None:
        self.state = state

    def has_role(self, role: str, account: str) -> bool:
        return Web3.to_checksum_address(account) in self.state.members.get(role, set())

    def grant_role(self, role: str, account: str) -> None:
        self.state.members.setdefault(role, set()).add(Web3.to_checksum_address(account))

    def revoke_role(self, role: str, account: str) -> None:
        self.state.members.get(role, set()).discard(Web3.to_checksum_address(account))

    def require_role(self, role: str, account: str, message: str) -> None:
        if not self.has_role(role, account):
            raise PreconditionViolation(message)
