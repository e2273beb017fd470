#!/usr/bin/env python3
"""Tests for the configuration module."""

import json
import logging
import os
from unittest.mock import patch

import pytest

from gmp_relayer.config import (
    ROLE_SOURCE,
    ChainConfig,
    MonitoringConfig,
    RelayerConfig,
)
from gmp_relayer.errors import ConfigurationError

from conftest import CROSSFI_GATEWAY, ETHEREUM_GATEWAY, PRIVATE_KEY, RELAYER_ADDRESS


def config_document(**overrides) -> dict:
    document = {
        "chains": {
            "crossfi": {
                "rpc": "https://rpc.crossfi.test",
                "chainId": 4157,
                "ixfiAddress": CROSSFI_GATEWAY,
                "blockConfirmations": 1,
            },
            "ethereum": {
                "rpc": "https://rpc.ethereum.test",
                "chainId": 1,
                "gatewayAddress": ETHEREUM_GATEWAY,
                "blockConfirmations": 12,
            },
        },
        "relayerPrivateKey": PRIVATE_KEY,
        "pollingInterval": 5000,
        "gasLimit": 500000,
        "gasPrice": 20,
        "maxRetries": 3,
    }
    document.update(overrides)
    return document


class TestChainConfig:
    """Tests for ChainConfig."""

    def test_checksum_address_conversion(self):
        """Test that gateway addresses are converted to checksum format."""
        config = ChainConfig(
            name="crossfi",
            rpc_url="https://rpc.crossfi.test",
            chain_id=4157,
            gateway_address="0x85bfe05492afc3d04ff3b2ca6771acf6f853d90d",
        )

        assert config.gateway_address == "0x85BfE05492aFC3D04Ff3B2ca6771ACF6f853d90d"
        assert config.is_source and config.is_destination

    def test_invalid_rpc_url_scheme(self):
        with pytest.raises(ConfigurationError, match="Invalid RPC URL scheme"):
            ChainConfig(name="crossfi", rpc_url="ftp://x", chain_id=1, gateway_address=CROSSFI_GATEWAY)

    def test_invalid_gateway_address(self):
        with pytest.raises(ConfigurationError, match="Invalid gateway address"):
            ChainConfig(name="crossfi", rpc_url="https://x", chain_id=1, gateway_address="0x1234")

    def test_negative_confirmations(self):
        with pytest.raises(ConfigurationError, match="non-negative"):
            ChainConfig(
                name="crossfi",
                rpc_url="https://x",
                chain_id=1,
                gateway_address=CROSSFI_GATEWAY,
                block_confirmations=-1,
            )

    def test_invalid_roles(self):
        with pytest.raises(ConfigurationError, match="Invalid roles"):
            ChainConfig(
                name="crossfi",
                rpc_url="https://x",
                chain_id=1,
                gateway_address=CROSSFI_GATEWAY,
                roles=frozenset({"observer"}),
            )

    def test_source_only_role(self):
        config = ChainConfig.from_dict("crossfi", {
            "rpc": "https://x",
            "chainId": 4157,
            "gatewayAddress": CROSSFI_GATEWAY,
            "roles": [ROLE_SOURCE],
        })

        assert config.is_source
        assert not config.is_destination

    def test_configuration_error_is_value_error(self):
        """Test callers catching ValueError still see configuration errors."""
        with pytest.raises(ValueError):
            ChainConfig.from_dict("crossfi", {"rpc": "https://x", "chainId": "abc"})


class TestMonitoringConfig:
    """Tests for MonitoringConfig."""

    def test_defaults(self):
        config = MonitoringConfig()

        assert config.polling_interval == 5.0
        assert config.lookback_blocks == 10
        assert config.max_submission_attempts == 3

    def test_invalid_polling_interval(self):
        with pytest.raises(ConfigurationError, match="Polling interval must be positive"):
            MonitoringConfig(polling_interval=0)

    def test_invalid_submission_attempts(self):
        with pytest.raises(ConfigurationError, match="at least 1"):
            MonitoringConfig(max_submission_attempts=0)


class TestRelayerConfig:
    """Tests for RelayerConfig."""

    def test_from_dict(self):
        """Test the JSON document maps onto typed config, polling interval in ms."""
        config = RelayerConfig.from_dict(config_document())

        assert set(config.chains) == {"crossfi", "ethereum"}
        assert config.chains["crossfi"].chain_id == 4157
        assert config.chains["crossfi"].gateway_address == CROSSFI_GATEWAY
        assert config.chains["ethereum"].block_confirmations == 12
        assert config.monitoring.polling_interval == 5.0
        assert config.monitoring.max_submission_attempts == 3
        assert config.gas_limit == 500_000
        assert config.gas_price_gwei == 20.0
        assert config.relayer_address == RELAYER_ADDRESS

    def test_missing_chains(self):
        with pytest.raises(ConfigurationError, match="chains"):
            RelayerConfig.from_dict(config_document(chains={}))

    def test_missing_private_key(self):
        with pytest.raises(ConfigurationError, match="private key is required"):
            RelayerConfig.from_dict(config_document(relayerPrivateKey=""))

    def test_invalid_private_key(self):
        with pytest.raises(ConfigurationError, match="Invalid private key length"):
            RelayerConfig.from_dict(config_document(relayerPrivateKey="0x1234"))

        with pytest.raises(ConfigurationError, match="hexadecimal"):
            RelayerConfig.from_dict(config_document(relayerPrivateKey="0x" + "z" * 64))

    def test_requires_a_source_chain(self):
        document = config_document()
        for chain in document["chains"].values():
            chain["roles"] = ["destination"]

        with pytest.raises(ConfigurationError, match="source role"):
            RelayerConfig.from_dict(document)

    def test_from_file_missing(self, tmp_path):
        with pytest.raises(ConfigurationError, match="not found"):
            RelayerConfig.from_file(tmp_path / "missing.json")

    def test_from_env_overrides(self, tmp_path):
        """Test environment variables override the file."""
        config_path = tmp_path / "config.json"
        config_path.write_text(json.dumps(config_document(relayerPrivateKey="")))

        env = {
            "RELAYER_CONFIG": str(config_path),
            "RELAYER_PRIVATE_KEY": PRIVATE_KEY,
            "POLLING_INTERVAL": "2",
            "GAS_LIMIT": "300000",
            "STATE_FILE": str(tmp_path / "state.json"),
            "HEALTH_CHECK_PORT": "8080",
        }
        with patch.dict(os.environ, env, clear=True):
            config = RelayerConfig.from_env()

        assert config.relayer_private_key == PRIVATE_KEY
        assert config.monitoring.polling_interval == 2.0
        assert config.gas_limit == 300_000
        assert config.state_file == str(tmp_path / "state.json")
        assert config.health_check_port == 8080

    def test_log_config_masks_key(self, caplog):
        """Test the private key never reaches the logs."""
        config = RelayerConfig.from_dict(config_document())

        with caplog.at_level(logging.INFO):
            config.log_config()

        assert "[CONFIGURED]" in caplog.text
        assert PRIVATE_KEY[2:] not in caplog.text
        assert RELAYER_ADDRESS in caplog.text
