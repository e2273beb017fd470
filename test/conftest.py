"""Shared fixtures for the GMP relayer tests."""

from unittest.mock import AsyncMock, MagicMock

import pytest
from eth_account import Account
from web3 import Web3

from gmp_relayer.chain_client import ChainClient
from gmp_relayer.config import ChainConfig, MonitoringConfig, RelayerConfig
from gmp_relayer.dedup_store import DedupStore
from gmp_relayer.event_processor import EventProcessor
from gmp_relayer.models import ContractCallEvent, TokenSentEvent

PRIVATE_KEY = "0x0123456789012345678901234567890123456789012345678901234567890123"
RELAYER_ADDRESS = Account.from_key(PRIVATE_KEY).address

CROSSFI_GATEWAY = "0x1234567890123456789012345678901234567890"
ETHEREUM_GATEWAY = "0x0987654321098765432109876543210987654321"

SENDER = Web3.to_checksum_address("0x" + "11" * 20)
DESTINATION_CONTRACT = Web3.to_checksum_address("0x" + "22" * 20)
PAYLOAD_HASH = bytes.fromhex("33" * 32)
TX_HASH = "0x" + "ab" * 32
DEST_TX_HASH = "0x" + "cd" * 32


def make_contract_call(
    block_number: int = 100,
    log_index: int = 0,
    tx_hash: str = TX_HASH,
    source_chain: str = "crossfi",
    destination_chain: str = "ethereum",
) -> ContractCallEvent:
    return ContractCallEvent(
        source_chain=source_chain,
        tx_hash=tx_hash,
        log_index=log_index,
        block_number=block_number,
        sender=SENDER,
        destination_chain=destination_chain,
        destination_contract_address=DESTINATION_CONTRACT,
        payload_hash=PAYLOAD_HASH,
        payload=b"\x01\x02\x03",
    )


def make_token_sent(
    block_number: int = 100,
    log_index: int = 1,
    tx_hash: str = TX_HASH,
    source_chain: str = "crossfi",
    destination_chain: str = "ethereum",
    amount: int = 10**18,
) -> TokenSentEvent:
    return TokenSentEvent(
        source_chain=source_chain,
        tx_hash=tx_hash,
        log_index=log_index,
        block_number=block_number,
        sender=SENDER,
        destination_chain=destination_chain,
        destination_address=DESTINATION_CONTRACT,
        symbol="XFI",
        amount=amount,
    )


def make_client(name: str, latest_block: int = 200, events: list | None = None) -> MagicMock:
    """Fake ChainClient with a healthy chain and a whitelisted relayer."""
    client = MagicMock(spec=ChainClient)
    client.name = name
    client.relayer_address = RELAYER_ADDRESS
    client.event_processor = EventProcessor(name)

    client.latest_block = AsyncMock(return_value=latest_block)
    client.get_logs = AsyncMock(return_value=list(events or []))
    client.is_reachable = AsyncMock(return_value=True)
    client.is_whitelisted_relayer = AsyncMock(return_value=True)
    client.is_command_executed = AsyncMock(return_value=False)
    client.next_nonce = AsyncMock(return_value=7)
    client.gas_price = AsyncMock(return_value=1_000_000_000)
    client.build_execute_tx = AsyncMock(return_value={"nonce": 7, "gas": 500_000})
    client.sign_digest = MagicMock(return_value=b"\x01" * 65)
    client.sign_transaction = MagicMock(return_value=b"\x02" * 110)
    client.send_signed_tx = AsyncMock(return_value=DEST_TX_HASH)
    client.wait_receipt = AsyncMock(return_value={"status": 1, "blockNumber": 201})
    client.close = AsyncMock()
    client.get_status = MagicMock(return_value={"chain": name})
    return client


@pytest.fixture
def monitoring_config():
    """Monitoring settings with no backoff so retry tests run instantly."""
    return MonitoringConfig(
        polling_interval=0.01,
        lookback_blocks=10,
        retry_count=0,
        retry_base_delay=0.0,
        retry_max_delay=0.0,
        max_submission_attempts=3,
        failed_retry_interval=1,
        status_log_interval=1,
    )


@pytest.fixture
def relayer_config(monitoring_config):
    """Two-chain setup: crossfi (1 confirmation) and ethereum (12 confirmations)."""
    return RelayerConfig(
        chains={
            "crossfi": ChainConfig(
                name="crossfi",
                rpc_url="https://rpc.crossfi.test",
                chain_id=4157,
                gateway_address=CROSSFI_GATEWAY,
                block_confirmations=1,
            ),
            "ethereum": ChainConfig(
                name="ethereum",
                rpc_url="https://rpc.ethereum.test",
                chain_id=1,
                gateway_address=ETHEREUM_GATEWAY,
                block_confirmations=12,
            ),
        },
        relayer_private_key=PRIVATE_KEY,
        monitoring=monitoring_config,
    )


@pytest.fixture
def clients():
    return {
        "crossfi": make_client("crossfi"),
        "ethereum": make_client("ethereum"),
    }


@pytest.fixture
def dedup():
    return DedupStore()
