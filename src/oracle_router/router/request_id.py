"""Deterministic request identifiers.

A request ID is the keccak-256 digest of the ABI encoding of
``(consumer, nonce, provider, dataSpec, callbackSelector, gasPriceLimit, salt)``.
Standard ABI encoding length-prefixes the ``string`` field, so two different
tuples can never share an encoding. Anyone holding the seven components can
recompute the ID, which lets a consumer pre-compute it and the Router check it.
"""

from eth_abi import encode
from web3 import Web3

from ..utils.encoding import to_bytes32, to_selector

REQUEST_ID_TYPES: tuple[str, ...] = (
    "address",
    "uint256",
    "address",
    "string",
    "bytes4",
    "uint256",
    "bytes32",
)


def encode_request_tuple(
    consumer: str,
    nonce: int,
    provider: str,
    data_spec: str,
    callback_selector: bytes | str,
    gas_price_limit: int,
    salt: bytes | str,
) -> bytes:
    """Canonical byte encoding of the request tuple."""
    return encode(
        list(REQUEST_ID_TYPES),
        [
            Web3.to_checksum_address(consumer),
            nonce,
            Web3.to_checksum_address(provider),
            data_spec,
            to_selector(callback_selector),
            gas_price_limit,
            to_bytes32(salt),
        ],
    )


def generate_request_id(
    consumer: str,
    nonce: int,
    provider: str,
    data_spec: str,
    callback_selector: bytes | str,
    gas_price_limit: int,
    salt: bytes | str,
) -> bytes:
    """Return the 32-byte request ID for the given parameters."""
    encoded = encode_request_tuple(
        consumer, nonce, provider, data_spec, callback_selector, gas_price_limit, salt
    )
    return bytes(Web3.keccak(encoded))


def deployment_salt(router_address: str) -> bytes:
    """Default per-deployment salt: keccak of the Router address."""
    return bytes(Web3.keccak(hexstr=Web3.to_checksum_address(router_address)))
