#!/usr/bin/env python3
"""Configuration management for the Router Watcher.

This module provides type-safe configuration dataclasses with validation
for the provider-side Watcher. Configuration is loaded from environment
variables with sensible defaults where appropriate.
"""

import logging
import os
from dataclasses import dataclass, field
from urllib.parse import urlparse

from eth_account import Account
from eth_account.signers.local import LocalAccount
from web3 import Web3

# Get logger for this module
logger = logging.getLogger(__name__)


def _env_int(name: str, default: int) -> int:
    raw = os.environ.get(name, "")
    try:
        return int(raw) if raw else default
    except ValueError:
        raise ValueError(f"{name} must be an integer, got {raw!r}") from None


def _env_float(name: str, default: float) -> float:
    raw = os.environ.get(name, "")
    try:
        return float(raw) if raw else default
    except ValueError:
        raise ValueError(f"{name} must be a number, got {raw!r}") from None


@dataclass(frozen=True, slots=True)
class ChainConfig:
    """Where the Router lives.

    Attributes:
        rpc_url: HTTP(S) or WS(S) RPC endpoint
        router_address: Checksummed address of the Router contract
    """

    rpc_url: str
    router_address: str

    def __post_init__(self) -> None:
        """Validate chain configuration."""
        if not self.rpc_url:
            raise ValueError("RPC URL is required (RPC_URL)")

        parsed = urlparse(self.rpc_url)
        if parsed.scheme not in ('http', 'https', 'ws', 'wss'):
            raise ValueError(
                f"Invalid RPC URL scheme: {parsed.scheme}. "
                "Expected http, https, ws, or wss"
            )

        if not self.router_address:
            raise ValueError("Router address is required (ROUTER_ADDRESS)")
        if not Web3.is_address(self.router_address):
            raise ValueError(f"Invalid router address: {self.router_address}")

        checksummed = Web3.to_checksum_address(self.router_address)
        if checksummed != self.router_address:
            # Use object.__setattr__ since dataclass is frozen
            object.__setattr__(self, 'router_address', checksummed)


@dataclass(frozen=True, slots=True)
class ProviderConfig:
    """The provider account the Watcher fulfils for."""

    private_key: str = field(repr=False)

    def __post_init__(self) -> None:
        if not self.private_key:
            raise ValueError("Provider private key is required (PROVIDER_PRIVATE_KEY)")

        key = self.private_key.removeprefix('0x')
        if len(key) != 64:
            raise ValueError(
                f"Invalid private key length. Expected 64 hex characters, got {len(key)}"
            )
        try:
            int(key, 16)
        except ValueError:
            raise ValueError("Invalid private key format. Must be hexadecimal") from None

    @property
    def account(self) -> LocalAccount:
        return Account.from_key(self.private_key)

    @property
    def address(self) -> str:
        return self.account.address


@dataclass(frozen=True, slots=True)
class MonitoringConfig:
    """Configuration for event monitoring."""
    polling_interval: int = 12  # seconds between event polls
    lookback_blocks: int = 100  # blocks to look back on first start
    confirmations: int = 0  # blocks to stay behind the head
    max_block_range: int = 1000  # largest eth_getLogs range
    status_log_interval: int = 30  # seconds between status lines

    def __post_init__(self) -> None:
        """Validate monitoring configuration."""
        if self.polling_interval <= 0:
            raise ValueError(f"Polling interval must be positive, got {self.polling_interval}")
        if self.polling_interval > 300:
            raise ValueError(f"Polling interval too long (max 300s), got {self.polling_interval}")

        if self.lookback_blocks < 0:
            raise ValueError(f"Lookback blocks must be non-negative, got {self.lookback_blocks}")
        if self.confirmations < 0:
            raise ValueError(f"Confirmations must be non-negative, got {self.confirmations}")
        if self.max_block_range <= 0:
            raise ValueError(f"Max block range must be positive, got {self.max_block_range}")
        if self.status_log_interval <= 0:
            raise ValueError(f"Status log interval must be positive, got {self.status_log_interval}")


@dataclass(frozen=True, slots=True)
class SubmissionConfig:
    """Retry, resubmission and concurrency policy for fulfilments."""
    workers: int = 4
    max_attempts: int = 5
    retry_backoff: float = 1.0  # seconds, doubled per attempt
    max_backoff: float = 60.0
    resubmit_after_blocks: int = 20
    receipt_poll_interval: float = 2.0
    gas_price_bump_percent: int = 12
    gas_wait_interval: float = 15.0
    gas_limit: int = 1_000_000

    def __post_init__(self) -> None:
        """Validate submission configuration."""
        if self.workers <= 0:
            raise ValueError(f"Worker count must be positive, got {self.workers}")
        if self.max_attempts <= 0:
            raise ValueError(f"Max attempts must be positive, got {self.max_attempts}")
        if self.retry_backoff < 0 or self.max_backoff < 0:
            raise ValueError("Backoff delays must be non-negative")
        if self.resubmit_after_blocks <= 0:
            raise ValueError(
                f"Resubmit threshold must be positive, got {self.resubmit_after_blocks}"
            )
        if self.receipt_poll_interval < 0 or self.gas_wait_interval < 0:
            raise ValueError("Poll intervals must be non-negative")
        # Nodes reject replacements bumped by less than 10%
        if not 10 <= self.gas_price_bump_percent <= 100:
            raise ValueError(
                f"Gas price bump must be between 10 and 100 percent, got {self.gas_price_bump_percent}"
            )
        if self.gas_limit <= 0:
            raise ValueError(f"Gas limit must be positive, got {self.gas_limit}")


@dataclass(frozen=True, slots=True)
class DataSourceConfig:
    """Where requested data comes from.

    Either an HTTP JSON endpoint (``url_template``) or a fixed table of
    values (``static_values``, mainly for local runs).
    """

    url_template: str | None = None
    json_path: str = "{target}"
    decimals: int = 18
    timeout: float = 10.0
    static_values: tuple[tuple[str, int], ...] = ()

    def __post_init__(self) -> None:
        if self.url_template:
            parsed = urlparse(self.url_template)
            if parsed.scheme not in ('http', 'https'):
                raise ValueError(f"Invalid data URL scheme: {parsed.scheme}. Expected http or https")
        elif not self.static_values:
            raise ValueError("Set DATA_URL_TEMPLATE or DATA_STATIC_VALUES")
        if not 0 <= self.decimals <= 36:
            raise ValueError(f"Decimals must be between 0 and 36, got {self.decimals}")
        if self.timeout <= 0:
            raise ValueError(f"Data timeout must be positive, got {self.timeout}")

    @staticmethod
    def parse_static_values(raw: str) -> tuple[tuple[str, int], ...]:
        """Parse ``"BTC.GBP=123,ETH.USD=456"``."""
        values = []
        for item in filter(None, (part.strip() for part in raw.split(","))):
            spec, sep, value = item.partition("=")
            if not sep:
                raise ValueError(f"Invalid static value {item!r}, expected SPEC=VALUE")
            try:
                values.append((spec.strip(), int(value)))
            except ValueError:
                raise ValueError(f"Static value for {spec!r} must be an integer") from None
        return tuple(values)


@dataclass(frozen=True, slots=True)
class WatcherConfig:
    """Main configuration for the Router Watcher.

    Attributes:
        chain: Router location
        provider: Provider account
        monitoring: Event polling settings
        submission: Fulfilment policy
        data_source: Data source settings
        database_url: SQLAlchemy URL of the job store
    """

    chain: ChainConfig
    provider: ProviderConfig
    data_source: DataSourceConfig
    monitoring: MonitoringConfig = field(default_factory=MonitoringConfig)
    submission: SubmissionConfig = field(default_factory=SubmissionConfig)
    database_url: str = "sqlite:///oracle_router_jobs.db"

    def __post_init__(self) -> None:
        if not self.database_url:
            raise ValueError("Database URL must not be empty (DATABASE_URL)")

    @classmethod
    def from_env(cls) -> "WatcherConfig":
        """Load configuration from environment variables.

        Returns:
            WatcherConfig instance with loaded values

        Raises:
            ValueError: If required environment variables are missing or invalid
        """
        chain = ChainConfig(
            rpc_url=os.environ.get("RPC_URL", ""),
            router_address=os.environ.get("ROUTER_ADDRESS", ""),
        )
        provider = ProviderConfig(private_key=os.environ.get("PROVIDER_PRIVATE_KEY", ""))

        monitoring = MonitoringConfig(
            polling_interval=_env_int("POLLING_INTERVAL", 12),
            lookback_blocks=_env_int("LOOKBACK_BLOCKS", 100),
            confirmations=_env_int("CONFIRMATIONS", 0),
            max_block_range=_env_int("MAX_BLOCK_RANGE", 1000),
        )
        submission = SubmissionConfig(
            workers=_env_int("WORKERS", 4),
            max_attempts=_env_int("MAX_ATTEMPTS", 5),
            retry_backoff=_env_float("RETRY_BACKOFF", 1.0),
            resubmit_after_blocks=_env_int("RESUBMIT_AFTER_BLOCKS", 20),
            gas_price_bump_percent=_env_int("GAS_PRICE_BUMP_PERCENT", 12),
            gas_limit=_env_int("GAS_LIMIT", 1_000_000),
        )
        data_source = DataSourceConfig(
            url_template=os.environ.get("DATA_URL_TEMPLATE") or None,
            json_path=os.environ.get("DATA_JSON_PATH", "{target}"),
            decimals=_env_int("DATA_DECIMALS", 18),
            timeout=_env_float("DATA_TIMEOUT", 10.0),
            static_values=DataSourceConfig.parse_static_values(os.environ.get("DATA_STATIC_VALUES", "")),
        )

        return cls(
            chain=chain,
            provider=provider,
            data_source=data_source,
            monitoring=monitoring,
            submission=submission,
            database_url=os.environ.get("DATABASE_URL", "sqlite:///oracle_router_jobs.db"),
        )

    def log_config(self) -> None:
        """Log the configuration in a readable format for debugging."""
        logger.info("=" * 60)
        logger.info("Router Watcher Configuration")
        logger.info("=" * 60)

        logger.info("Chain:")
        logger.info(f"  RPC URL: {self.chain.rpc_url}")
        logger.info(f"  Router: {self.chain.router_address}")

        logger.info("Provider:")
        logger.info(f"  Address: {self.provider.address}")
        logger.info("  Private Key: [CONFIGURED]")

        logger.info("Monitoring Settings:")
        logger.info(f"  Polling Interval: {self.monitoring.polling_interval} seconds")
        logger.info(f"  Lookback Blocks: {self.monitoring.lookback_blocks}")
        logger.info(f"  Confirmations: {self.monitoring.confirmations}")
        logger.info(f"  Max Block Range: {self.monitoring.max_block_range}")

        logger.info("Submission Settings:")
        logger.info(f"  Workers: {self.submission.workers}")
        logger.info(f"  Max Attempts: {self.submission.max_attempts}")
        logger.info(f"  Resubmit After: {self.submission.resubmit_after_blocks} blocks")
        logger.info(f"  Gas Price Bump: {self.submission.gas_price_bump_percent}%")

        logger.info("Data Source:")
        if self.data_source.url_template:
            logger.info(f"  URL Template: {self.data_source.url_template}")
            logger.info(f"  JSON Path: {self.data_source.json_path}")
            logger.info(f"  Decimals: {self.data_source.decimals}")
        else:
            logger.info(f"  Static Values: {len(self.data_source.static_values)} configured")

        # Hide credentials embedded in the database URL
        db_url = urlparse(self.database_url)
        shown = self.database_url if not db_url.password else self.database_url.replace(db_url.password, "***")
        logger.info(f"Database: {shown}")
        logger.info("=" * 60)
