"""Exception hierarchy for the oracle router.

On-chain failures derive from ``RouterError`` and always abort the whole
operation they are raised in. Off-chain submission failures derive from
``SubmissionError`` and tell the fulfilment workers whether a retry makes sense.
"""


class RouterError(Exception):
    """Base class for every failure raised by a Router operation."""


class PreconditionViolation(RouterError):
    """Bad caller, missing authorisation, wrong timing or a malformed request ID."""


class LedgerInvariantViolation(RouterError):
    """Escrow accounting would be broken. Never reachable in correct operation."""


class LedgerUnderflow(LedgerInvariantViolation):
    """A settlement exceeds the tokens tracked for a consumer/provider pair."""


class ExternalCallFailure(RouterError):
    """A call leaving the Router failed (token transfer or consumer callback)."""


class TokenTransferError(ExternalCallFailure):
    """The token ledger refused a transfer."""


class InsufficientBalanceOrAllowance(ExternalCallFailure):
    """The consumer could not be charged the request fee."""


class CallbackFailed(ExternalCallFailure):
    """The consumer's data callback reverted."""


class OutOfGas(ExternalCallFailure):
    """A metered call exhausted its gas limit."""


class SubmissionError(Exception):
    """Base class for off-chain fulfilment submission failures."""


class TransientSubmissionFailure(SubmissionError):
    """Network or node trouble. The submission may be retried."""


class PermanentSubmissionFailure(SubmissionError):
    """The transaction cannot succeed (e.g. the request was already settled)."""


class DataSourceError(Exception):
    """The provider could not compute the requested data."""


def require(condition: bool, message: str) -> None:
    """Raise ``PreconditionViolation`` with ``message`` unless ``condition`` holds."""
    if not condition:
        raise PreconditionViolation(message)
