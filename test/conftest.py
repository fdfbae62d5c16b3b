"""Shared fixtures: an in-process chain with a Router, a token and a consumer."""

import pytest
from eth_account import Account

from oracle_router.router import Chain, ConsumerBase, Router, Token

START_TIME = 1_700_000_000
GAS_PRICE = 10**9
CONSUMER_GAS_PRICE_LIMIT = 2 * 10**9
PROVIDER_FEE = 100


@pytest.fixture
def chain():
    return Chain(timestamp=START_TIME, gas_price=GAS_PRICE)


@pytest.fixture
def admin():
    return Account.from_key("0x" + "a1" * 32)


@pytest.fixture
def provider():
    return Account.from_key("0x" + "b2" * 32)


@pytest.fixture
def other_provider():
    return Account.from_key("0x" + "b3" * 32)


@pytest.fixture
def owner():
    return Account.from_key("0x" + "c4" * 32)


@pytest.fixture
def stranger():
    return Account.from_key("0x" + "d5" * 32)


@pytest.fixture
def token(chain, owner):
    return Token(chain, "Test Oracle Token", "TOT", 10**24, owner=owner.address)


@pytest.fixture
def router(chain, token, admin):
    return Router(chain, token, admin=admin.address)


@pytest.fixture
def make_consumer(chain, token, owner, provider):
    """Factory deploying a funded consumer that has authorised ``provider``."""

    def _make(router, consumer_cls=ConsumerBase, fee=PROVIDER_FEE, funds=10**6):
        consumer = consumer_cls(chain, router.address, owner.address, gas_price_limit=CONSUMER_GAS_PRICE_LIMIT)
        if not router.is_provider(provider.address):
            assert chain.transact(provider.address, router.register_as_provider, 1).succeeded
        assert chain.transact(owner.address, token.transfer, consumer.address, funds).succeeded
        assert chain.transact(owner.address, consumer.set_router_allowance, funds, True).succeeded
        assert chain.transact(
            owner.address, consumer.add_remove_data_provider, provider.address, fee, False
        ).succeeded
        return consumer

    return _make


@pytest.fixture
def consumer(make_consumer, router):
    return make_consumer(router)
