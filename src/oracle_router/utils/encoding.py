"""Helpers for moving between raw bytes and 0x-prefixed hex strings."""

from typing import Any

from web3 import Web3


def to_hex(value: Any) -> str:
    """Return ``value`` (bytes, HexBytes or hex string) as a lowercase 0x-prefixed string."""
    match value:
        case bytes() | bytearray():
            return "0x" + bytes(value).hex()
        case str() as text:
            text = text.lower()
            return text if text.startswith("0x") else "0x" + text
        case _:
            raise TypeError(f"Cannot convert {type(value).__name__} to hex")


def to_bytes32(value: Any) -> bytes:
    """Return a 32-byte value from bytes or a hex string."""
    raw = bytes(value) if isinstance(value, (bytes, bytearray)) else Web3.to_bytes(hexstr=value)
    if len(raw) != 32:
        raise ValueError(f"Expected 32 bytes, got {len(raw)}")
    return raw


def to_selector(value: Any) -> bytes:
    """Return a 4-byte function selector from bytes or a hex string."""
    raw = bytes(value) if isinstance(value, (bytes, bytearray)) else Web3.to_bytes(hexstr=value)
    if len(raw) != 4:
        raise ValueError(f"Expected a 4-byte selector, got {len(raw)} bytes")
    return raw


def function_selector(signature: str) -> bytes:
    """Return the 4-byte selector of a Solidity function signature."""
    return bytes(Web3.keccak(text=signature)[:4])
