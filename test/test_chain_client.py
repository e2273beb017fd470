#!/usr/bin/env python3
"""Unit tests for ChainClient against a mocked AsyncWeb3."""

from unittest.mock import AsyncMock, MagicMock

import pytest
from eth_account import Account
from eth_account.messages import encode_defunct
from hexbytes import HexBytes
from web3 import Web3
from web3.datastructures import AttributeDict
from web3.exceptions import ContractLogicError, TimeExhausted

from gmp_relayer.chain_client import ChainClient
from gmp_relayer.config import ChainConfig, MonitoringConfig
from gmp_relayer.errors import (
    ConfigurationError,
    ConnectivityError,
    NonceConflict,
    SubmissionReverted,
    SubmissionTimeout,
)
from gmp_relayer.models import ContractCallEvent, TokenSentEvent
from gmp_relayer.utils.contract_utility import get_contract_abi, load_relayer_account

from conftest import (
    CROSSFI_GATEWAY,
    DEST_TX_HASH,
    DESTINATION_CONTRACT,
    PAYLOAD_HASH,
    PRIVATE_KEY,
    RELAYER_ADDRESS,
    SENDER,
    TX_HASH,
)


def make_raw_log(event: str, block_number: int, log_index: int, args: dict) -> AttributeDict:
    return AttributeDict({
        "event": event,
        "args": AttributeDict(args),
        "transactionHash": HexBytes(TX_HASH),
        "logIndex": log_index,
        "blockNumber": block_number,
    })


@pytest.fixture
def mock_w3():
    """Create a mock AsyncWeb3 whose contract() returns a mock gateway."""
    w3 = MagicMock()
    w3.eth.contract.return_value = MagicMock()
    for name in ("ContractCall", "ContractCallWithToken", "TokenSent"):
        getattr(w3.eth.contract.return_value.events, name).get_logs = AsyncMock(return_value=[])
    return w3


@pytest.fixture
def client(mock_w3):
    config = ChainConfig(
        name="crossfi",
        rpc_url="https://rpc.crossfi.test",
        chain_id=4157,
        gateway_address=CROSSFI_GATEWAY,
    )
    monitoring = MonitoringConfig(
        retry_count=2,
        retry_base_delay=0.0,
        retry_max_delay=0.0,
        max_block_range=2,
        receipt_timeout=5,
    )
    return ChainClient(config, Account.from_key(PRIVATE_KEY), monitoring, w3=mock_w3)


class TestChainClientReads:
    """Tests for read operations and their retry policy."""

    @pytest.mark.asyncio
    async def test_latest_block_retries_transient_errors(self, client):
        """Test a transient failure is retried before succeeding."""
        client._block_number = AsyncMock(side_effect=[OSError("connection reset"), 123])

        assert await client.latest_block() == 123
        assert client._block_number.await_count == 2

    @pytest.mark.asyncio
    async def test_latest_block_gives_up(self, client):
        """Test exhausting retries raises ConnectivityError naming the chain."""
        client._block_number = AsyncMock(side_effect=OSError("connection refused"))

        with pytest.raises(ConnectivityError, match=r"\[crossfi\] eth_blockNumber failed"):
            await client.latest_block()
        assert client._block_number.await_count == 3

    @pytest.mark.asyncio
    async def test_is_reachable(self, client):
        client._block_number = AsyncMock(side_effect=OSError("down"))
        assert await client.is_reachable() is False

        client._block_number = AsyncMock(return_value=1)
        assert await client.is_reachable() is True

    @pytest.mark.asyncio
    async def test_get_logs_parses_and_orders(self, client):
        """Test logs of every kind are parsed and sorted by (block, logIndex)."""
        events = client.gateway.events
        events.TokenSent.get_logs.return_value = [
            make_raw_log("TokenSent", 2, 0, {
                "sender": SENDER,
                "destinationChain": "ethereum",
                "destinationAddress": DESTINATION_CONTRACT,
                "symbol": "XFI",
                "amount": 1,
            }),
        ]
        events.ContractCall.get_logs.return_value = [
            make_raw_log("ContractCall", 1, 5, {
                "sender": SENDER,
                "destinationChain": "ethereum",
                "destinationContractAddress": DESTINATION_CONTRACT,
                "payloadHash": PAYLOAD_HASH,
                "payload": b"",
            }),
        ]

        result = await client.get_logs(1, 2)

        assert [type(event) for event in result] == [ContractCallEvent, TokenSentEvent]
        assert [event.position for event in result] == [(1, 5), (2, 0)]

    @pytest.mark.asyncio
    async def test_get_logs_splits_wide_ranges(self, client):
        """Test ranges wider than max_block_range are fetched in windows."""
        await client.get_logs(1, 5)

        calls = client.gateway.events.ContractCall.get_logs.await_args_list
        assert [(c.kwargs["from_block"], c.kwargs["to_block"]) for c in calls] == [(1, 2), (3, 4), (5, 5)]

    @pytest.mark.asyncio
    async def test_get_logs_skips_malformed(self, client):
        """Test an unparseable log is skipped and counted, not fatal."""
        client.gateway.events.TokenSent.get_logs.return_value = [
            make_raw_log("TokenSent", 1, 0, {"sender": SENDER}),
        ]

        assert await client.get_logs(1, 1) == []
        assert client.event_processor.get_metrics()["events_unsupported"] == 1

    @pytest.mark.asyncio
    async def test_empty_range(self, client):
        assert await client.get_logs(10, 9) == []

    @pytest.mark.asyncio
    async def test_is_command_executed(self, client):
        command_id = "0x" + "01" * 32
        function = client.gateway.functions.isCommandExecuted
        function.return_value.call = AsyncMock(return_value=True)

        assert await client.is_command_executed(command_id) is True
        function.assert_called_once_with(bytes.fromhex("01" * 32))

    @pytest.mark.asyncio
    async def test_is_whitelisted_relayer_defaults_to_own_address(self, client):
        function = client.gateway.functions.isWhitelistedRelayer
        function.return_value.call = AsyncMock(return_value=False)

        assert await client.is_whitelisted_relayer() is False
        function.assert_called_once_with(RELAYER_ADDRESS)


class TestChainClientWrites:
    """Tests for signing, sending and receipt handling."""

    def test_sign_digest_recovers_to_relayer(self, client):
        """Test the execute signature is an EIP-191 signature by the relayer key."""
        digest = Web3.keccak(text="digest")

        signature = client.sign_digest(digest)

        recovered = Account.recover_message(encode_defunct(primitive=digest), signature=signature)
        assert recovered == RELAYER_ADDRESS

    @pytest.mark.asyncio
    async def test_send_signed_tx(self, client, mock_w3):
        mock_w3.eth.send_raw_transaction = AsyncMock(return_value=HexBytes(DEST_TX_HASH))

        assert await client.send_signed_tx(b"\x01") == DEST_TX_HASH

    @pytest.mark.asyncio
    async def test_send_nonce_conflict(self, client, mock_w3):
        mock_w3.eth.send_raw_transaction = AsyncMock(side_effect=ValueError("nonce too low"))

        with pytest.raises(NonceConflict):
            await client.send_signed_tx(b"\x01")

    @pytest.mark.asyncio
    async def test_send_already_known(self, client, mock_w3):
        """Test a duplicate broadcast resolves to the transaction's own hash."""
        mock_w3.eth.send_raw_transaction = AsyncMock(side_effect=ValueError("already known"))

        assert await client.send_signed_tx(b"\x01") == Web3.to_hex(Web3.keccak(b"\x01"))

    @pytest.mark.asyncio
    async def test_send_rejected_by_contract(self, client, mock_w3):
        mock_w3.eth.send_raw_transaction = AsyncMock(side_effect=ContractLogicError("execution reverted"))

        with pytest.raises(SubmissionReverted):
            await client.send_signed_tx(b"\x01")

    @pytest.mark.asyncio
    async def test_send_transport_failure(self, client, mock_w3):
        mock_w3.eth.send_raw_transaction = AsyncMock(side_effect=OSError("connection reset"))

        with pytest.raises(ConnectivityError):
            await client.send_signed_tx(b"\x01")

    @pytest.mark.asyncio
    async def test_wait_receipt_success(self, client, mock_w3):
        receipt = {"status": 1, "blockNumber": 77}
        mock_w3.eth.wait_for_transaction_receipt = AsyncMock(return_value=receipt)

        assert await client.wait_receipt(DEST_TX_HASH) == receipt

    @pytest.mark.asyncio
    async def test_wait_receipt_reverted(self, client, mock_w3):
        mock_w3.eth.wait_for_transaction_receipt = AsyncMock(return_value={"status": 0, "blockNumber": 77})

        with pytest.raises(SubmissionReverted) as exc_info:
            await client.wait_receipt(DEST_TX_HASH)
        assert exc_info.value.tx_hash == DEST_TX_HASH
        assert exc_info.value.retryable is False

    @pytest.mark.asyncio
    async def test_wait_receipt_timeout(self, client, mock_w3):
        mock_w3.eth.wait_for_transaction_receipt = AsyncMock(side_effect=TimeExhausted("no receipt"))

        with pytest.raises(SubmissionTimeout) as exc_info:
            await client.wait_receipt(DEST_TX_HASH)
        assert exc_info.value.retryable is True

    @pytest.mark.asyncio
    async def test_build_execute_tx(self, client):
        """Test execute() is built from the relayer with explicit nonce and gas."""
        function = client.gateway.functions.execute
        function.return_value.build_transaction = AsyncMock(return_value={"data": "0x"})
        command_id = "0x" + "01" * 32

        tx = await client.build_execute_tx(
            command_id, [(0, b"\x02")], b"\x03", nonce=9, gas_limit=500_000, gas_price=10
        )

        assert tx == {"data": "0x"}
        function.assert_called_once_with(bytes.fromhex("01" * 32), [(0, b"\x02")], b"\x03")
        params = function.return_value.build_transaction.await_args.args[0]
        assert params["nonce"] == 9
        assert params["gas"] == 500_000
        assert params["chainId"] == 4157
        assert params["from"] == RELAYER_ADDRESS

    @pytest.mark.asyncio
    async def test_balance_of_defaults_to_relayer(self, client, mock_w3):
        mock_w3.eth.get_balance = AsyncMock(return_value=10**18)

        assert await client.balance_of() == 10**18
        mock_w3.eth.get_balance.assert_awaited_once_with(RELAYER_ADDRESS)


class TestContractUtility:
    """Tests for ABI and account loading."""

    def test_gateway_abi_declares_relayed_events(self):
        names = {entry["name"] for entry in get_contract_abi() if entry.get("type") == "event"}

        assert {"ContractCall", "ContractCallWithToken", "TokenSent"} <= names

    def test_load_relayer_account(self):
        assert load_relayer_account(PRIVATE_KEY).address == RELAYER_ADDRESS

        with pytest.raises(ConfigurationError, match="Missing relayer private key"):
            load_relayer_account("")
