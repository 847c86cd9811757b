#!/usr/bin/env python3
"""Configuration management for the bridge oracle.

This module provides type-safe configuration dataclasses with validation
for the relay oracle and the proof pipeline. Configuration is loaded from
environment variables with sensible defaults where appropriate.
"""

import logging
import os
import re
from dataclasses import dataclass
from typing import ClassVar
from urllib.parse import urlparse

# Get logger for this module
logger = logging.getLogger(__name__)

_PROCESS_ID_RE = re.compile(r"^[A-Za-z0-9_-]{43}$")


def _validate_url(url: str, schemes: tuple[str, ...], what: str) -> None:
    parsed = urlparse(url)
    if parsed.scheme not in schemes:
        raise ValueError(
            f"Invalid {what} scheme: {parsed.scheme or '(none)'}. "
            f"Expected {', '.join(schemes)}"
        )
    if not parsed.netloc:
        raise ValueError(f"Invalid {what}: {url}")


@dataclass(frozen=True, slots=True)
class ChainConfig:
    """Configuration for the watched EVM chain.

    Attributes:
        network: 'local' (Anvil dev node) or 'test' (Sepolia)
        rpc_url: HTTP(S) or WS(S) RPC endpoint
        local_port: Anvil port, used to build rpc_url when network is 'local'
        polling_interval: Seconds between head polls on HTTP transports
    """

    network: str
    rpc_url: str
    local_port: int = 8545
    polling_interval: float = 4.0

    # Expected chain IDs and display names per network
    NETWORKS: ClassVar[dict[str, tuple[int, str]]] = {
        "local": (31337, "Foundry"),
        "test": (11155111, "Sepolia"),
    }

    def __post_init__(self) -> None:
        """Validate chain configuration."""
        if self.network not in self.NETWORKS:
            raise ValueError(
                f"Unsupported network: {self.network}. "
                f"Supported networks: {', '.join(sorted(self.NETWORKS))}"
            )

        if not 0 < self.local_port <= 65535:
            raise ValueError(f"Invalid local port: {self.local_port}")

        if not self.rpc_url:
            raise ValueError("RPC URL is required (SEPOLIA_RPC_URL when NODE_ENV=test)")
        _validate_url(self.rpc_url, ("http", "https", "ws", "wss"), "RPC URL")

        if self.polling_interval <= 0:
            raise ValueError(f"Polling interval must be positive, got {self.polling_interval}")
        if self.polling_interval > 300:
            raise ValueError(f"Polling interval too long (max 300s), got {self.polling_interval}")

    @property
    def expected_chain_id(self) -> int:
        return self.NETWORKS[self.network][0]

    @property
    def chain_name(self) -> str:
        return self.NETWORKS[self.network][1]

    @property
    def is_websocket(self) -> bool:
        return urlparse(self.rpc_url).scheme in ("ws", "wss")

    @classmethod
    def for_network(
        cls,
        network: str,
        rpc_url: str | None = None,
        local_port: int = 8545,
        polling_interval: float = 4.0,
    ) -> "ChainConfig":
        """Build a chain config, deriving the Anvil URL in local mode."""
        if network == "local":
            rpc_url = f"http://127.0.0.1:{local_port}"
        return cls(
            network=network,
            rpc_url=rpc_url or "",
            local_port=local_port,
            polling_interval=polling_interval,
        )


@dataclass(frozen=True, slots=True)
class DestinationConfig:
    """Configuration for the destination ledger.

    Attributes:
        process_id: ID of the process receiving relayed messages
        message_url: Message-ingestion endpoint
        request_timeout: HTTP timeout in seconds for each delivery attempt
    """

    process_id: str
    message_url: str = "https://mu.ao-testnet.xyz"
    request_timeout: float = 30.0

    def __post_init__(self) -> None:
        """Validate destination configuration."""
        if not self.process_id:
            raise ValueError("Destination process ID is required (AO_PROCESS_ID)")
        if not _PROCESS_ID_RE.match(self.process_id):
            raise ValueError(f"Invalid destination process ID: {self.process_id}")

        _validate_url(self.message_url, ("http", "https"), "message URL")

        if self.request_timeout <= 0:
            raise ValueError(f"Request timeout must be positive, got {self.request_timeout}")
        if self.request_timeout > 120:
            raise ValueError(f"Request timeout too long (max 120s), got {self.request_timeout}")


@dataclass(frozen=True, slots=True)
class RetryConfig:
    """Backoff policy for retryable deliveries and the block queue bound."""
    base_delay: float = 1.0  # seconds before the first retry
    max_delay: float = 30.0  # backoff cap
    queue_size: int = 100  # headers buffered between chain client and relay loop

    def __post_init__(self) -> None:
        """Validate retry configuration."""
        if self.base_delay <= 0:
            raise ValueError(f"Retry base delay must be positive, got {self.base_delay}")
        if self.max_delay < self.base_delay:
            raise ValueError(
                f"Retry max delay ({self.max_delay}) must be >= base delay ({self.base_delay})"
            )
        if self.queue_size <= 0:
            raise ValueError(f"Block queue size must be positive, got {self.queue_size}")

    def delay_for(self, attempt: int) -> float:
        """Backoff delay after the given failed attempt (1-based)."""
        return min(self.base_delay * (2 ** (attempt - 1)), self.max_delay)


@dataclass(frozen=True, slots=True)
class WalletConfig:
    """Location of the on-disk signing credential."""

    wallet_file: str = "wallet.json"
    password: str | None = None

    def __post_init__(self) -> None:
        if not self.wallet_file:
            raise ValueError("Wallet file path is required (WALLET_FILE)")


@dataclass(frozen=True, slots=True)
class ProofServiceConfig:
    """Location of the external proof-generation service."""

    base_url: str = "http://127.0.0.1:3000"
    request_timeout: float = 300.0

    def __post_init__(self) -> None:
        _validate_url(self.base_url, ("http", "https"), "proof service URL")
        if self.request_timeout <= 0:
            raise ValueError(f"Proof request timeout must be positive, got {self.request_timeout}")


@dataclass(frozen=True, slots=True)
class OracleConfig:
    """Main configuration for the bridge oracle.

    Attributes:
        chain: Configuration for the watched chain
        destination: Configuration for the destination ledger
        retry: Backoff policy and queue bound
        wallet: Signing credential location
        proof_service: Proof-generation service location
    """

    chain: ChainConfig
    destination: DestinationConfig
    retry: RetryConfig
    wallet: WalletConfig
    proof_service: ProofServiceConfig

    @classmethod
    def from_env(cls) -> "OracleConfig":
        """Load configuration from environment variables.

        Returns:
            OracleConfig instance with loaded values

        Raises:
            ValueError: If required environment variables are missing or invalid
        """
        network = os.environ.get("NODE_ENV", "local")
        chain_config = ChainConfig.for_network(
            network=network,
            rpc_url=os.environ.get("SEPOLIA_RPC_URL"),
            local_port=_env_int("ANVIL_PORT", "8545"),
            polling_interval=_env_float("POLLING_INTERVAL", "4"),
        )

        destination_config = DestinationConfig(
            process_id=os.environ.get("AO_PROCESS_ID", ""),
            message_url=os.environ.get("AO_MU_URL", "https://mu.ao-testnet.xyz"),
            request_timeout=_env_float("REQUEST_TIMEOUT", "30"),
        )

        retry_config = RetryConfig(
            base_delay=_env_float("RETRY_BASE_DELAY", "1"),
            max_delay=_env_float("RETRY_MAX_DELAY", "30"),
            queue_size=_env_int("BLOCK_QUEUE_SIZE", "100"),
        )

        wallet_config = WalletConfig(
            wallet_file=os.environ.get("WALLET_FILE", "wallet.json"),
            password=os.environ.get("WALLET_PASSWORD") or None,
        )

        proof_config = ProofServiceConfig(
            base_url=os.environ.get("PROOF_SERVICE_URL", "http://127.0.0.1:3000"),
        )

        return cls(
            chain=chain_config,
            destination=destination_config,
            retry=retry_config,
            wallet=wallet_config,
            proof_service=proof_config,
        )

    def log_config(self) -> None:
        """Log the configuration in a readable format for debugging."""
        logger.info("=" * 60)
        logger.info("Bridge Oracle Configuration")
        logger.info("=" * 60)

        logger.info("Source Chain:")
        logger.info(f"  Network: {self.chain.network} ({self.chain.chain_name})")
        logger.info(f"  RPC URL: {self.chain.rpc_url}")
        if not self.chain.is_websocket:
            logger.info(f"  Polling Interval: {self.chain.polling_interval} seconds")

        logger.info("Destination:")
        logger.info(f"  Process: {self.destination.process_id}")
        logger.info(f"  Message URL: {self.destination.message_url}")
        logger.info(f"  Request Timeout: {self.destination.request_timeout} seconds")

        logger.info("Retry Settings:")
        logger.info(f"  Base Delay: {self.retry.base_delay} seconds")
        logger.info(f"  Max Delay: {self.retry.max_delay} seconds")
        logger.info(f"  Queue Size: {self.retry.queue_size}")

        logger.info("Wallet:")
        logger.info(f"  File: {self.wallet.wallet_file}")
        logger.info(f"  Password: {'[CONFIGURED]' if self.wallet.password else '[NONE]'}")

        logger.info("=" * 60)


def _env_int(name: str, default: str) -> int:
    raw = os.environ.get(name, default)
    try:
        return int(raw)
    except ValueError:
        raise ValueError(f"{name} must be an integer, got {raw!r}") from None


def _env_float(name: str, default: str) -> float:
    raw = os.environ.get(name, default)
    try:
        return float(raw)
    except ValueError:
        raise ValueError(f"{name} must be a number, got {raw!r}") from None
