#!/usr/bin/env python3
"""Configuration management for the GMP relayer.

This module provides type-safe configuration dataclasses with validation.
Configuration is read from a JSON file (the same shape the gateway
deployment scripts produce) and selectively overridden by environment
variables.
"""

import json
import logging
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, ClassVar
from urllib.parse import urlparse

from eth_account import Account
from web3 import Web3

from .errors import ConfigurationError

# Get logger for this module
logger = logging.getLogger(__name__)

ROLE_SOURCE = "source"
ROLE_DESTINATION = "destination"


@dataclass(frozen=True, slots=True)
class ChainConfig:
    """Configuration for one chain the relayer talks to.

    Attributes:
        name: Chain name, used as the key in events and commands
        rpc_url: HTTP(S) RPC endpoint
        chain_id: Numeric EVM chain id
        gateway_address: Checksummed address of the gateway contract
        block_confirmations: Confirmations required before events are final
        roles: Whether the chain is watched (source), written to (destination) or both
    """

    name: str
    rpc_url: str
    chain_id: int
    gateway_address: str
    block_confirmations: int = 1
    roles: frozenset[str] = frozenset({ROLE_SOURCE, ROLE_DESTINATION})

    VALID_ROLES: ClassVar[frozenset[str]] = frozenset({ROLE_SOURCE, ROLE_DESTINATION})

    def __post_init__(self) -> None:
        """Validate chain configuration."""
        if not self.name:
            raise ConfigurationError("Chain name is required")

        if not self.rpc_url:
            raise ConfigurationError(f"RPC URL is required for chain {self.name}")

        parsed = urlparse(self.rpc_url)
        if parsed.scheme not in ('http', 'https'):
            raise ConfigurationError(
                f"Invalid RPC URL scheme for {self.name}: {parsed.scheme}. "
                "Expected http or https"
            )

        if self.chain_id <= 0:
            raise ConfigurationError(f"Chain id must be positive for {self.name}, got {self.chain_id}")

        if not self.gateway_address:
            raise ConfigurationError(f"Gateway address is required for chain {self.name}")

        if not Web3.is_address(self.gateway_address):
            raise ConfigurationError(
                f"Invalid gateway address for {self.name}: {self.gateway_address}"
            )

        # Convert to checksum address
        checksummed = Web3.to_checksum_address(self.gateway_address)
        if checksummed != self.gateway_address:
            # Use object.__setattr__ since dataclass is frozen
            object.__setattr__(self, 'gateway_address', checksummed)

        if self.block_confirmations < 0:
            raise ConfigurationError(
                f"Block confirmations must be non-negative for {self.name}, "
                f"got {self.block_confirmations}"
            )

        roles = frozenset(self.roles)
        if not roles or not roles <= self.VALID_ROLES:
            raise ConfigurationError(
                f"Invalid roles for {self.name}: {sorted(roles)}. "
                f"Expected a non-empty subset of {sorted(self.VALID_ROLES)}"
            )
        object.__setattr__(self, 'roles', roles)

    @property
    def is_source(self) -> bool:
        return ROLE_SOURCE in self.roles

    @property
    def is_destination(self) -> bool:
        return ROLE_DESTINATION in self.roles

    @classmethod
    def from_dict(cls, name: str, data: dict[str, Any]) -> "ChainConfig":
        """Build a chain config from one entry of the `chains` mapping."""
        try:
            return cls(
                name=name,
                rpc_url=data.get("rpc", ""),
                chain_id=int(data.get("chainId", 0)),
                gateway_address=data.get("gatewayAddress") or data.get("ixfiAddress", ""),
                block_confirmations=int(data.get("blockConfirmations", 1)),
                roles=frozenset(data.get("roles", (ROLE_SOURCE, ROLE_DESTINATION))),
            )
        except ConfigurationError:
            raise
        except (TypeError, ValueError) as e:
            raise ConfigurationError(f"Invalid configuration for chain {name}: {e}") from e


@dataclass(frozen=True, slots=True)
class MonitoringConfig:
    """Configuration for polling, timeouts and retries."""
    polling_interval: float = 5.0  # seconds between polls per source chain
    lookback_blocks: int = 10  # blocks re-scanned when no watermark is persisted
    max_block_range: int = 2000  # widest getLogs window per request
    request_timeout: int = 30  # RPC request timeout in seconds
    receipt_timeout: int = 120  # seconds to wait for a destination receipt
    retry_count: int = 3  # read retries before a chain is reported unreachable
    retry_base_delay: float = 1.0
    retry_max_delay: float = 60.0
    max_submission_attempts: int = 3
    failed_retry_interval: int = 30  # seconds between failed-command retry sweeps
    status_log_interval: int = 30

    def __post_init__(self) -> None:
        """Validate monitoring configuration."""
        if self.polling_interval <= 0:
            raise ConfigurationError(f"Polling interval must be positive, got {self.polling_interval}")
        if self.polling_interval > 300:
            raise ConfigurationError(f"Polling interval too long (max 300s), got {self.polling_interval}")

        if self.lookback_blocks < 0:
            raise ConfigurationError(f"Lookback blocks must be non-negative, got {self.lookback_blocks}")

        if self.max_block_range <= 0:
            raise ConfigurationError(f"Max block range must be positive, got {self.max_block_range}")

        if self.request_timeout <= 0 or self.request_timeout > 120:
            raise ConfigurationError(
                f"Request timeout must be between 1 and 120 seconds, got {self.request_timeout}"
            )

        if self.receipt_timeout <= 0:
            raise ConfigurationError(f"Receipt timeout must be positive, got {self.receipt_timeout}")

        if self.retry_count < 0 or self.retry_count > 10:
            raise ConfigurationError(f"Retry count must be between 0 and 10, got {self.retry_count}")

        if self.max_submission_attempts < 1:
            raise ConfigurationError(
                f"Max submission attempts must be at least 1, got {self.max_submission_attempts}"
            )


@dataclass(frozen=True, slots=True)
class RelayerConfig:
    """Main configuration for the GMP relayer.

    Attributes:
        chains: Chain configurations keyed by chain name
        relayer_private_key: Signing key shared by every chain
        gas_limit: Gas cap applied to submitted transactions
        gas_price_gwei: Optional fixed gas price; network price is used when unset
        monitoring: Polling, timeout and retry settings
        state_file: Optional JSON file persisting processed commands and watermarks
        health_check_port: Port of the operator status API
        max_processed_entries: Processed-set size that triggers pruning
    """

    chains: dict[str, ChainConfig]
    relayer_private_key: str
    gas_limit: int = 500_000
    gas_price_gwei: float | None = None
    monitoring: MonitoringConfig = field(default_factory=MonitoringConfig)
    state_file: str | None = None
    health_check_port: int = 3000
    max_processed_entries: int = 10_000

    def __post_init__(self) -> None:
        """Validate relayer configuration."""
        if not self.chains:
            raise ConfigurationError("At least one chain must be configured")

        for name, chain in self.chains.items():
            if name != chain.name:
                raise ConfigurationError(f"Chain key {name} does not match chain name {chain.name}")

        if not any(chain.is_source for chain in self.chains.values()):
            raise ConfigurationError("At least one chain must have the source role")

        if not self.relayer_private_key:
            raise ConfigurationError(
                "Relayer private key is required (relayerPrivateKey or RELAYER_PRIVATE_KEY)"
            )

        # Should be 64 hex chars, optionally with 0x prefix
        key = self.relayer_private_key.removeprefix('0x')
        if len(key) != 64:
            raise ConfigurationError(
                f"Invalid private key length. Expected 64 hex characters, got {len(key)}"
            )

        try:
            int(key, 16)
        except ValueError:
            raise ConfigurationError(
                "Invalid private key format. Must be hexadecimal"
            ) from None

        if self.gas_limit <= 0:
            raise ConfigurationError(f"Gas limit must be positive, got {self.gas_limit}")

        if self.gas_price_gwei is not None and self.gas_price_gwei <= 0:
            raise ConfigurationError(f"Gas price must be positive, got {self.gas_price_gwei}")

        if self.max_processed_entries < 2:
            raise ConfigurationError(
                f"Max processed entries must be at least 2, got {self.max_processed_entries}"
            )

    @property
    def relayer_address(self) -> str:
        """Address derived from the shared relayer key."""
        return Account.from_key(self.relayer_private_key).address

    @property
    def source_chains(self) -> list[ChainConfig]:
        return [chain for chain in self.chains.values() if chain.is_source]

    @property
    def destination_chains(self) -> list[ChainConfig]:
        return [chain for chain in self.chains.values() if chain.is_destination]

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "RelayerConfig":
        """Build configuration from the decoded JSON document.

        `pollingInterval` is given in milliseconds, as in the deployment
        scripts' config.json.

        Raises:
            ConfigurationError: If required values are missing or invalid
        """
        raw_chains = data.get("chains")
        if not isinstance(raw_chains, dict) or not raw_chains:
            raise ConfigurationError("`chains` must be a non-empty mapping of chain name to settings")

        chains = {
            name: ChainConfig.from_dict(name, chain_data)
            for name, chain_data in raw_chains.items()
        }

        try:
            monitoring_kwargs: dict[str, Any] = {}
            if "pollingInterval" in data:
                monitoring_kwargs["polling_interval"] = float(data["pollingInterval"]) / 1000
            if "maxRetries" in data:
                monitoring_kwargs["max_submission_attempts"] = int(data["maxRetries"])
            if "lookbackBlocks" in data:
                monitoring_kwargs["lookback_blocks"] = int(data["lookbackBlocks"])

            gas_price = data.get("gasPrice")
            gas_limit = int(data.get("gasLimit", 500_000))
            gas_price_gwei = float(gas_price) if gas_price is not None else None
            health_check_port = int(data.get("healthCheckPort", 3000))
        except (TypeError, ValueError) as e:
            raise ConfigurationError(f"Invalid configuration value: {e}") from e

        return cls(
            chains=chains,
            relayer_private_key=data.get("relayerPrivateKey", ""),
            gas_limit=gas_limit,
            gas_price_gwei=gas_price_gwei,
            monitoring=MonitoringConfig(**monitoring_kwargs),
            state_file=data.get("stateFile"),
            health_check_port=health_check_port,
        )

    @staticmethod
    def _read_document(path: str | Path) -> dict[str, Any]:
        config_path = Path(path)
        if not config_path.exists():
            raise ConfigurationError(f"Configuration file not found: {config_path}")

        try:
            with config_path.open() as file:
                return json.load(file)
        except json.JSONDecodeError as e:
            raise ConfigurationError(f"Configuration file {config_path} is not valid JSON: {e}") from e

    @classmethod
    def from_file(cls, path: str | Path) -> "RelayerConfig":
        """Load configuration from a JSON file."""
        return cls.from_dict(cls._read_document(path))

    @classmethod
    def from_env(cls) -> "RelayerConfig":
        """Load the configuration file named by RELAYER_CONFIG and apply env overrides.

        Environment overrides:
            RELAYER_PRIVATE_KEY: Signing key (preferred over the file value)
            POLLING_INTERVAL: Polling interval in seconds
            GAS_LIMIT: Gas cap for submissions
            STATE_FILE: Path of the processed-state file
            HEALTH_CHECK_PORT: Port of the status API

        Returns:
            RelayerConfig instance with loaded values

        Raises:
            ConfigurationError: If required values are missing or invalid
        """
        data = cls._read_document(os.environ.get("RELAYER_CONFIG", "config.json"))

        # Overrides are applied before validation so the key may live only in the environment
        if private_key := os.environ.get("RELAYER_PRIVATE_KEY"):
            data["relayerPrivateKey"] = private_key
        if gas_limit := os.environ.get("GAS_LIMIT"):
            data["gasLimit"] = gas_limit
        if state_file := os.environ.get("STATE_FILE"):
            data["stateFile"] = state_file
        if port := os.environ.get("HEALTH_CHECK_PORT"):
            data["healthCheckPort"] = port
        if polling_interval := os.environ.get("POLLING_INTERVAL"):
            try:
                data["pollingInterval"] = float(polling_interval) * 1000
            except ValueError:
                raise ConfigurationError(
                    f"POLLING_INTERVAL must be a number of seconds, got {polling_interval!r}"
                ) from None

        return cls.from_dict(data)

    def log_config(self) -> None:
        """Log the configuration in a readable format, hiding the key."""
        logger.info("=" * 60)
        logger.info("GMP Relayer Configuration")
        logger.info("=" * 60)

        for chain in self.chains.values():
            roles = "/".join(sorted(chain.roles))
            logger.info(f"Chain {chain.name} ({roles}):")
            logger.info(f"  RPC URL: {chain.rpc_url}")
            logger.info(f"  Chain ID: {chain.chain_id}")
            logger.info(f"  Gateway: {chain.gateway_address}")
            logger.info(f"  Confirmations: {chain.block_confirmations}")

        logger.info("Relayer Settings:")
        logger.info(f"  Address: {self.relayer_address}")
        logger.info("  Private Key: [CONFIGURED]")
        logger.info(f"  Gas Limit: {self.gas_limit}")
        if self.gas_price_gwei is not None:
            logger.info(f"  Gas Price: {self.gas_price_gwei} gwei")
        logger.info(f"  State File: {self.state_file or '[IN-MEMORY]'}")

        logger.info("Monitoring Settings:")
        logger.info(f"  Polling Interval: {self.monitoring.polling_interval} seconds")
        logger.info(f"  Lookback Blocks: {self.monitoring.lookback_blocks}")
        logger.info(f"  Request Timeout: {self.monitoring.request_timeout} seconds")
        logger.info(f"  Retry Count: {self.monitoring.retry_count}")
        logger.info(f"  Max Submission Attempts: {self.monitoring.max_submission_attempts}")

        logger.info("=" * 60)
