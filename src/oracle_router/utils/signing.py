"""Provider signatures over fulfilled data.

The provider signs ``keccak(abi.encode(bytes32 requestId, uint256 data))`` as
an EIP-191 personal message. Consumers recover the signer and compare it with
the provider the request was made to before trusting the data.
"""

from eth_abi import encode
from eth_account import Account
from eth_account.messages import encode_defunct
from eth_account.signers.local import LocalAccount
from web3 import Web3


def fulfillment_digest(request_id: bytes, requested_data: int) -> bytes:
    return bytes(Web3.keccak(encode(["bytes32", "uint256"], [request_id, requested_data])))


def sign_fulfillment(account: LocalAccount, request_id: bytes, requested_data: int) -> bytes:
    """Return the 65-byte signature of ``account`` over the fulfilment."""
    message = encode_defunct(primitive=fulfillment_digest(request_id, requested_data))
    return bytes(account.sign_message(message).signature)


def recover_fulfillment_signer(request_id: bytes, requested_data: int, signature: bytes) -> str:
    """Return the checksummed address that produced ``signature``."""
    message = encode_defunct(primitive=fulfillment_digest(request_id, requested_data))
    return Account.recover_message(message, signature=signature)
