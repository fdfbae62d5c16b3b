#!/usr/bin/env python3
"""Tests for deterministic request ID generation."""

import pytest
from eth_abi import encode
from web3 import Web3

from oracle_router.router import Router
from oracle_router.router.request_id import deployment_salt, encode_request_tuple, generate_request_id

CONSUMER = "0x1111111111111111111111111111111111111111"
PROVIDER = "0x2222222222222222222222222222222222222222"
SELECTOR = bytes.fromhex("a1b2c3d4")
SALT = b"\x05" * 32

BASE = dict(
    consumer=CONSUMER,
    nonce=3,
    provider=PROVIDER,
    data_spec="BTC.GBP",
    callback_selector=SELECTOR,
    gas_price_limit=200 * 10**9,
    salt=SALT,
)


class TestGenerateRequestId:
    """Request IDs are a pure function of their seven components."""

    def test_deterministic(self):
        assert generate_request_id(**BASE) == generate_request_id(**BASE)
        assert len(generate_request_id(**BASE)) == 32

    def test_matches_abi_encoding(self):
        expected = Web3.keccak(encode(
            ["address", "uint256", "address", "string", "bytes4", "uint256", "bytes32"],
            [CONSUMER, 3, PROVIDER, "BTC.GBP", SELECTOR, 200 * 10**9, SALT],
        ))
        assert generate_request_id(**BASE) == bytes(expected)

    @pytest.mark.parametrize(
        "field, value",
        [
            ("consumer", "0x3333333333333333333333333333333333333333"),
            ("nonce", 4),
            ("provider", "0x4444444444444444444444444444444444444444"),
            ("data_spec", "BTC.USD"),
            ("callback_selector", bytes.fromhex("a1b2c3d5")),
            ("gas_price_limit", 200 * 10**9 + 1),
            ("salt", b"\x06" * 32),
        ],
    )
    def test_every_field_changes_id(self, field, value):
        assert generate_request_id(**{**BASE, field: value}) != generate_request_id(**BASE)

    def test_hex_inputs_accepted(self):
        hex_args = {**BASE, "callback_selector": "0xa1b2c3d4", "salt": "0x" + "05" * 32}
        assert generate_request_id(**hex_args) == generate_request_id(**BASE)

    def test_string_field_is_length_prefixed(self):
        """Moving characters between the spec and neighbouring fields cannot collide."""
        assert encode_request_tuple(**{**BASE, "data_spec": "AB"}) != encode_request_tuple(
            **{**BASE, "data_spec": "A"}
        )

    def test_bad_selector_rejected(self):
        with pytest.raises(ValueError, match="4-byte selector"):
            generate_request_id(**{**BASE, "callback_selector": b"\x01\x02"})


class TestDeploymentSalt:

    def test_salt_depends_on_address(self):
        assert deployment_salt(CONSUMER) != deployment_salt(PROVIDER)
        assert deployment_salt(CONSUMER.lower()) == deployment_salt(CONSUMER)

    def test_routers_have_distinct_salts(self, chain, token):
        assert Router(chain, token).salt != Router(chain, token).salt
