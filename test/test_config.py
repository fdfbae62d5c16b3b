#!/usr/bin/env python3
"""Tests for configuration loading and validation."""

import logging
import os
from unittest.mock import patch

import pytest

from oracle_router.config import (
    ChainConfig,
    DataSourceConfig,
    MonitoringConfig,
    ProviderConfig,
    SubmissionConfig,
    WatcherConfig,
)

ROUTER = "0x5aaeb6053f3e94c9b9a09f33669435e7ef1beaed"
PRIVATE_KEY = "0x" + "b2" * 32

BASE_ENV = {
    "RPC_URL": "https://testnet.example.org",
    "ROUTER_ADDRESS": ROUTER,
    "PROVIDER_PRIVATE_KEY": PRIVATE_KEY,
    "DATA_STATIC_VALUES": "BTC.GBP=123,ETH.USD=456",
}


class TestChainConfig:
    """Test chain configuration validation."""

    def test_address_checksummed(self):
        """Test router address is checksummed."""
        config = ChainConfig(rpc_url="http://localhost:8545", router_address=ROUTER)
        assert config.router_address == "0x5aAeb6053F3E94C9b9A09f33669435E7Ef1BeAed"

    @pytest.mark.parametrize("url", ["ws://localhost:8546", "wss://node.example.org", "https://node"])
    def test_valid_schemes(self, url):
        ChainConfig(rpc_url=url, router_address=ROUTER)

    def test_invalid_scheme(self):
        with pytest.raises(ValueError, match="Invalid RPC URL scheme"):
            ChainConfig(rpc_url="ftp://node", router_address=ROUTER)

    def test_missing_values(self):
        with pytest.raises(ValueError, match="RPC URL is required"):
            ChainConfig(rpc_url="", router_address=ROUTER)
        with pytest.raises(ValueError, match="Router address is required"):
            ChainConfig(rpc_url="http://node", router_address="")

    def test_invalid_address(self):
        with pytest.raises(ValueError, match="Invalid router address"):
            ChainConfig(rpc_url="http://node", router_address="0x1234")


class TestProviderConfig:
    """Test provider key validation."""

    def test_address_from_key(self):
        config = ProviderConfig(private_key=PRIVATE_KEY)
        assert config.address == config.account.address

    def test_key_without_prefix(self):
        ProviderConfig(private_key="b2" * 32)

    def test_wrong_length(self):
        with pytest.raises(ValueError, match="Invalid private key length"):
            ProviderConfig(private_key="0x1234")

    def test_not_hex(self):
        with pytest.raises(ValueError, match="Must be hexadecimal"):
            ProviderConfig(private_key="zz" * 32)

    def test_key_not_in_repr(self):
        assert PRIVATE_KEY[2:] not in repr(ProviderConfig(private_key=PRIVATE_KEY))


class TestMonitoringConfig:
    """Test monitoring configuration validation."""

    def test_defaults(self):
        config = MonitoringConfig()
        assert config.polling_interval == 12
        assert config.lookback_blocks == 100
        assert config.max_block_range == 1000

    @pytest.mark.parametrize(
        "kwargs, message",
        [
            ({"polling_interval": 0}, "Polling interval must be positive"),
            ({"polling_interval": 301}, "Polling interval too long"),
            ({"lookback_blocks": -1}, "Lookback blocks must be non-negative"),
            ({"confirmations": -1}, "Confirmations must be non-negative"),
            ({"max_block_range": 0}, "Max block range must be positive"),
        ],
    )
    def test_invalid(self, kwargs, message):
        with pytest.raises(ValueError, match=message):
            MonitoringConfig(**kwargs)


class TestSubmissionConfig:
    """Test submission policy validation."""

    @pytest.mark.parametrize(
        "kwargs, message",
        [
            ({"workers": 0}, "Worker count must be positive"),
            ({"max_attempts": 0}, "Max attempts must be positive"),
            ({"retry_backoff": -1}, "Backoff delays must be non-negative"),
            ({"resubmit_after_blocks": 0}, "Resubmit threshold must be positive"),
            ({"gas_price_bump_percent": 5}, "Gas price bump must be between 10 and 100"),
            ({"gas_limit": 0}, "Gas limit must be positive"),
        ],
    )
    def test_invalid(self, kwargs, message):
        with pytest.raises(ValueError, match=message):
            SubmissionConfig(**kwargs)


class TestDataSourceConfig:
    """Test data source configuration."""

    def test_requires_a_source(self):
        with pytest.raises(ValueError, match="Set DATA_URL_TEMPLATE or DATA_STATIC_VALUES"):
            DataSourceConfig()

    def test_url_scheme(self):
        with pytest.raises(ValueError, match="Invalid data URL scheme"):
            DataSourceConfig(url_template="ftp://prices/{base}")

    def test_parse_static_values(self):
        assert DataSourceConfig.parse_static_values(" BTC.GBP=123 , ETH.USD=456,") == (
            ("BTC.GBP", 123),
            ("ETH.USD", 456),
        )

    def test_parse_static_values_invalid(self):
        with pytest.raises(ValueError, match="expected SPEC=VALUE"):
            DataSourceConfig.parse_static_values("BTC.GBP")
        with pytest.raises(ValueError, match="must be an integer"):
            DataSourceConfig.parse_static_values("BTC.GBP=1.5")


class TestWatcherConfig:
    """Test loading the full configuration from the environment."""

    @patch.dict(os.environ, BASE_ENV, clear=True)
    def test_from_env_defaults(self):
        config = WatcherConfig.from_env()

        assert config.chain.router_address == "0x5aAeb6053F3E94C9b9A09f33669435E7Ef1BeAed"
        assert config.data_source.static_values == (("BTC.GBP", 123), ("ETH.USD", 456))
        assert config.monitoring.polling_interval == 12
        assert config.submission.workers == 4
        assert config.database_url == "sqlite:///oracle_router_jobs.db"

    @patch.dict(
        os.environ,
        {
            **BASE_ENV,
            "POLLING_INTERVAL": "5",
            "CONFIRMATIONS": "3",
            "WORKERS": "8",
            "RETRY_BACKOFF": "0.5",
            "GAS_PRICE_BUMP_PERCENT": "20",
            "DATA_URL_TEMPLATE": "https://prices.example.org/{base}/{target}",
            "DATA_DECIMALS": "8",
            "DATABASE_URL": "sqlite:///custom.db",
        },
        clear=True,
    )
    def test_from_env_overrides(self):
        config = WatcherConfig.from_env()

        assert config.monitoring.polling_interval == 5
        assert config.monitoring.confirmations == 3
        assert config.submission.workers == 8
        assert config.submission.retry_backoff == 0.5
        assert config.submission.gas_price_bump_percent == 20
        assert config.data_source.url_template == "https://prices.example.org/{base}/{target}"
        assert config.data_source.decimals == 8
        assert config.database_url == "sqlite:///custom.db"

    @patch.dict(os.environ, {**BASE_ENV, "WORKERS": "many"}, clear=True)
    def test_non_integer_env(self):
        with pytest.raises(ValueError, match="WORKERS must be an integer"):
            WatcherConfig.from_env()

    @patch.dict(os.environ, {}, clear=True)
    def test_missing_required(self):
        with pytest.raises(ValueError, match="RPC URL is required"):
            WatcherConfig.from_env()

    @patch.dict(os.environ, {**BASE_ENV, "DATABASE_URL": "postgresql://user:secret@db/jobs"}, clear=True)
    def test_log_config_hides_secrets(self, caplog):
        config = WatcherConfig.from_env()

        with caplog.at_level(logging.INFO, logger="oracle_router.config"):
            config.log_config()

        assert "secret" not in caplog.text
        assert PRIVATE_KEY[2:] not in caplog.text
        assert "postgresql://user:***@db/jobs" in caplog.text
