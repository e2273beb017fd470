"""
Per-chain RPC and signer wrapper.

A ChainClient is the only component that talks to a chain. It exposes the
read operations the polling loop needs, the write operations the submission
queue needs, and the gateway view calls used for authorization and replay
checks. It holds no pipeline state.
"""

import asyncio
import logging
from collections.abc import Awaitable, Callable
from typing import Any, TypeVar

from eth_account.messages import encode_defunct
from eth_account.signers.local import LocalAccount
from hexbytes import HexBytes
from web3 import AsyncHTTPProvider, AsyncWeb3, Web3
from web3.contract import AsyncContract
from web3.exceptions import ContractLogicError, TimeExhausted
from web3.types import EventData, TxParams, TxReceipt, Wei

from .config import ChainConfig, MonitoringConfig
from .errors import (
    ConnectivityError,
    NonceConflict,
    SubmissionReverted,
    SubmissionTimeout,
    UnsupportedEventKind,
)
from .event_processor import EventProcessor
from .models import EventKind, RelayEvent
from .utils.contract_utility import get_contract_abi

T = TypeVar("T")

NONCE_ERROR_MARKERS = ("nonce too low", "replacement transaction underpriced", "nonce has already been used")
KNOWN_TX_MARKERS = ("already known", "known transaction")
UNDERPRICED_MARKER = "replacement transaction underpriced"


class ChainClient:
    """Async capability wrapper around one chain's RPC endpoint and the relayer signer."""

    def __init__(
        self,
        config: ChainConfig,
        account: LocalAccount,
        monitoring: MonitoringConfig | None = None,
        w3: AsyncWeb3 | None = None,
    ):
        """
        Initialize the client.

        Args:
            config: Chain configuration
            account: Relayer account, shared by every chain
            monitoring: Timeout and retry settings
            w3: Pre-built AsyncWeb3 instance (tests); built from config.rpc_url when omitted
        """
        self.config = config
        self.name = config.name
        self.account = account
        self.monitoring = monitoring or MonitoringConfig()

        self.w3 = w3 or AsyncWeb3(AsyncHTTPProvider(config.rpc_url))
        self.gateway: AsyncContract = self.w3.eth.contract(
            address=config.gateway_address,
            abi=get_contract_abi(),
        )

        self.event_processor = EventProcessor(config.name)
        self.logger = logging.getLogger(f"{__name__}.{config.name}")

    @property
    def relayer_address(self) -> str:
        return self.account.address

    # -- reads -------------------------------------------------------------

    async def _read(self, label: str, call: Callable[[], Awaitable[T]]) -> T:
        """
        Run a read with a timeout and exponential backoff.

        Raises:
            ConnectivityError: Once retry_count retries are exhausted
        """
        attempts = self.monitoring.retry_count + 1
        last_error: Exception | None = None

        for attempt in range(attempts):
            try:
                return await asyncio.wait_for(call(), timeout=self.monitoring.request_timeout)
            except asyncio.TimeoutError:
                last_error = TimeoutError(f"{label} timed out after {self.monitoring.request_timeout}s")
            except Exception as e:
                last_error = e

            if attempt + 1 < attempts:
                delay = min(
                    self.monitoring.retry_base_delay * (2 ** attempt),
                    self.monitoring.retry_max_delay,
                )
                self.logger.warning(
                    f"{label} failed (attempt {attempt + 1}/{attempts}): {last_error}. "
                    f"Retrying in {delay:.1f}s"
                )
                await asyncio.sleep(delay)

        raise ConnectivityError(self.name, f"{label} failed: {last_error}") from last_error

    async def latest_block(self) -> int:
        """Current head block number."""
        return await self._read("eth_blockNumber", self._block_number)

    async def get_logs(self, from_block: int, to_block: int) -> list[RelayEvent]:
        """
        Fetch relayed gateway events in [from_block, to_block].

        Wide ranges are split into max_block_range windows. Results are
        ordered by (block_number, log_index). Logs that cannot be parsed are
        logged and skipped; EventProcessor counts them.
        """
        if to_block < from_block:
            return []

        raw_events: list[EventData] = []
        window = self.monitoring.max_block_range
        start = from_block
        while start <= to_block:
            end = min(start + window - 1, to_block)
            for kind in EventKind:
                event_obj = getattr(self.gateway.events, kind.value)

                async def _fetch(event_obj=event_obj, start=start, end=end) -> list[EventData]:
                    return await event_obj.get_logs(from_block=start, to_block=end)

                raw_events.extend(await self._read(f"getLogs({kind.value}, {start}-{end})", _fetch))
            start = end + 1

        events: list[RelayEvent] = []
        for raw in raw_events:
            try:
                events.append(self.event_processor.parse(raw))
            except UnsupportedEventKind as e:
                self.logger.warning(f"Skipping log: {e}")

        events.sort(key=lambda event: event.position)
        return events

    async def is_reachable(self) -> bool:
        """Single, non-retried head lookup for health checks."""
        try:
            await asyncio.wait_for(self._block_number(), timeout=self.monitoring.request_timeout)
            return True
        except Exception as e:
            self.logger.warning(f"{self.name} is unreachable: {e}")
            return False

    async def _block_number(self) -> int:
        return await self.w3.eth.block_number

    async def is_whitelisted_relayer(self, address: str | None = None) -> bool:
        relayer = Web3.to_checksum_address(address or self.relayer_address)

        async def _call() -> bool:
            return await self.gateway.functions.isWhitelistedRelayer(relayer).call()

        return bool(await self._read("isWhitelistedRelayer", _call))

    async def is_command_executed(self, command_id: str) -> bool:
        command_bytes = bytes(HexBytes(command_id))

        async def _call() -> bool:
            return await self.gateway.functions.isCommandExecuted(command_bytes).call()

        return bool(await self._read("isCommandExecuted", _call))

    async def next_nonce(self) -> int:
        """Pending-inclusive nonce of the relayer account."""
        async def _call() -> int:
            return await self.w3.eth.get_transaction_count(self.relayer_address, "pending")

        return await self._read("eth_getTransactionCount", _call)

    async def gas_price(self) -> Wei:
        async def _call() -> Wei:
            return await self.w3.eth.gas_price

        return await self._read("eth_gasPrice", _call)

    async def balance_of(self, address: str | None = None) -> Wei:
        target = address or self.relayer_address

        async def _call() -> Wei:
            return await self.w3.eth.get_balance(target)

        return await self._read("eth_getBalance", _call)

    # -- writes ------------------------------------------------------------

    async def build_execute_tx(
        self,
        command_id: str,
        commands: list[tuple[int, bytes]],
        signature: bytes,
        nonce: int,
        gas_limit: int,
        gas_price: int,
    ) -> TxParams:
        """Build gateway.execute(commandId, commands, signature) from the relayer."""
        tx_params: TxParams = {
            'from': self.relayer_address,
            'nonce': nonce,
            'gas': gas_limit,
            'gasPrice': Wei(gas_price),
            'chainId': self.config.chain_id,
            'value': Wei(0),
        }
        try:
            return await self.gateway.functions.execute(
                bytes(HexBytes(command_id)),
                commands,
                signature,
            ).build_transaction(tx_params)
        except ContractLogicError as e:
            raise SubmissionReverted(self.name, f"execute() would revert: {e}") from e

    def sign_digest(self, digest: bytes) -> bytes:
        """EIP-191 signature over a 32-byte digest, as the gateway verifies it."""
        signed = self.account.sign_message(encode_defunct(primitive=digest))
        return bytes(signed.signature)

    def sign_transaction(self, tx: TxParams) -> bytes:
        signed = self.account.sign_transaction(tx)
        return bytes(signed.raw_transaction)

    async def send_signed_tx(self, raw_tx: bytes) -> str:
        """
        Broadcast a signed transaction.

        Returns:
            0x-prefixed transaction hash

        Raises:
            SubmissionReverted: If the node rejects the call as reverting
            NonceConflict: If the nonce was already used
            ConnectivityError: If the node cannot be reached
        """
        try:
            tx_hash = await asyncio.wait_for(
                self.w3.eth.send_raw_transaction(raw_tx),
                timeout=self.monitoring.request_timeout,
            )
            return Web3.to_hex(tx_hash)
        except ContractLogicError as e:
            raise SubmissionReverted(self.name, f"Transaction rejected: {e}") from e
        except asyncio.TimeoutError as e:
            raise ConnectivityError(self.name, "eth_sendRawTransaction timed out") from e
        except Exception as e:
            message = str(e).lower()
            if any(marker in message for marker in KNOWN_TX_MARKERS):
                # The node already has this exact transaction
                return Web3.to_hex(Web3.keccak(raw_tx))
            if any(marker in message for marker in NONCE_ERROR_MARKERS):
                raise NonceConflict(
                    self.name,
                    f"Nonce rejected: {e}",
                    underpriced=UNDERPRICED_MARKER in message,
                ) from e
            raise ConnectivityError(self.name, f"eth_sendRawTransaction failed: {e}") from e

    async def wait_receipt(self, tx_hash: str, timeout: float | None = None) -> TxReceipt:
        """
        Wait for a receipt and check its status.

        Raises:
            SubmissionTimeout: If no receipt arrives within the timeout
            SubmissionReverted: If the transaction was mined but reverted
        """
        timeout = timeout or self.monitoring.receipt_timeout
        try:
            receipt: TxReceipt = await self.w3.eth.wait_for_transaction_receipt(
                HexBytes(tx_hash), timeout=timeout
            )
        except (TimeExhausted, asyncio.TimeoutError) as e:
            raise SubmissionTimeout(
                self.name, f"No receipt for {tx_hash} after {timeout}s", tx_hash=tx_hash
            ) from e
        except Exception as e:
            raise ConnectivityError(self.name, f"Failed waiting for receipt {tx_hash}: {e}") from e

        if (status := receipt.get('status', 0)) != 1:
            raise SubmissionReverted(
                self.name, f"Transaction {tx_hash} reverted (status={status})", tx_hash=tx_hash
            )

        self.logger.info(f"✓ Transaction {tx_hash} confirmed in block {receipt['blockNumber']}")
        return receipt

    async def close(self) -> None:
        """Release the provider's HTTP session."""
        provider: Any = self.w3.provider
        if hasattr(provider, "disconnect"):
            await provider.disconnect()

    def get_status(self) -> dict[str, Any]:
        return {
            "chain": self.name,
            "chain_id": self.config.chain_id,
            "rpc_url": self.config.rpc_url,
            "gateway_address": self.config.gateway_address,
            "relayer_address": self.relayer_address,
        }
