"""
Serialized submission of commands to one destination chain.

The relayer signer's nonce is a single counter per chain, so every command
bound for a chain goes through one queue drained by one worker task. Exactly
one submission is in flight per destination chain at any time.
"""

import asyncio
import logging
from typing import Any

from web3 import Web3

from .chain_client import ChainClient
from .codec import CommandCodec
from .config import RelayerConfig
from .dedup_store import DedupStore
from .errors import (
    ConnectivityError,
    NonceConflict,
    SubmissionError,
    SubmissionReverted,
    WhitelistError,
)
from .models import Command, CommandStatus

# Nodes only accept a same-nonce replacement paying at least 10% more
REPLACEMENT_GAS_BUMP = 1.125


def bump_gas_price(gas_price: int) -> int:
    """Lowest gas price a node accepts for replacing a transaction priced at gas_price."""
    return int(gas_price * REPLACEMENT_GAS_BUMP) + 1


class SubmissionQueue:
    """
    Single-writer submission worker for one destination chain.

    Commands are processed strictly in enqueue order. A command ends in one
    of three ways: confirmed (receipt success or already executed on the
    gateway), failed (revert, or the retry budget ran out), or held (the
    relayer is not whitelisted; released by `set_authorized(True)`).
    """

    def __init__(self, client: ChainClient, dedup: DedupStore, config: RelayerConfig):
        """
        Initialize the queue.

        Args:
            client: ChainClient of the destination chain
            dedup: Shared idempotency ledger
            config: Relayer configuration (gas settings, retry budget)
        """
        self.client = client
        self.chain = client.name
        self.dedup = dedup
        self.gas_limit = config.gas_limit
        self.gas_price_gwei = config.gas_price_gwei
        self.monitoring = config.monitoring

        self.queue: asyncio.Queue[Command] = asyncio.Queue()
        self.authorized = False
        self.held: list[Command] = []
        self.in_flight: Command | None = None

        self._worker: asyncio.Task | None = None
        self._stopping = False

        # Metrics tracking
        self.commands_confirmed = 0
        self.commands_failed = 0
        self.submissions_sent = 0
        self.retries = 0

        self.logger = logging.getLogger(f"{__name__}.{self.chain}")

    def enqueue(self, command: Command) -> None:
        if command.destination_chain != self.chain:
            raise ValueError(
                f"Command for {command.destination_chain} enqueued on {self.chain} queue"
            )
        self.queue.put_nowait(command)
        self.logger.debug(f"Queued {command} (depth {self.queue.qsize()})")

    def set_authorized(self, authorized: bool) -> None:
        """Record the whitelist check result, releasing held commands once authorized."""
        was_authorized = self.authorized
        self.authorized = authorized

        if authorized and not was_authorized and self.held:
            self.logger.info(f"Relayer authorized on {self.chain}, releasing {len(self.held)} held commands")
            held, self.held = self.held, []
            for command in held:
                self.queue.put_nowait(command)
        elif not authorized and was_authorized:
            self.logger.error(f"Relayer is no longer whitelisted on {self.chain}, submissions halted")

    def start(self) -> None:
        if self._worker and not self._worker.done():
            self.logger.warning("Submission worker already running")
            return
        self._stopping = False
        self._worker = asyncio.create_task(self._run(), name=f"submit:{self.chain}")
        self.logger.info(f"Submission worker started for {self.chain}")

    async def stop(self) -> None:
        """
        Drain and stop the worker.

        The in-flight command is allowed to finish. Commands still queued stay
        pending in the DedupStore and are picked up again on the next start.
        """
        self._stopping = True
        worker = self._worker
        if worker is None or worker.done():
            return

        if self.in_flight is None:
            worker.cancel()
        try:
            await worker
        except asyncio.CancelledError:
            pass  # Expected when cancelling an idle worker

        if not self.queue.empty():
            self.logger.info(f"{self.queue.qsize()} queued commands left pending on {self.chain}")

    async def _run(self) -> None:
        while not self._stopping:
            command = await self.queue.get()
            try:
                if self._stopping:
                    break
                self.in_flight = command
                await self.process(command)
            except WhitelistError as e:
                self.logger.error(f"{e}; holding {command}")
                self.held.append(command)
            except Exception as e:
                self.logger.error(f"Unexpected error submitting {command}: {e}", exc_info=True)
                self._fail(command, f"Unexpected error: {e}", retryable=True)
            finally:
                self.in_flight = None
                self.queue.task_done()

    async def process(self, command: Command) -> CommandStatus:
        """
        Submit one command, retrying transient failures.

        Once a transaction has been broadcast, later attempts reuse its nonce
        with a higher gas price, so at most one execute() for the command can
        be mined. A revert is only recorded as a failure after the gateway
        confirms the command was not executed by an earlier transaction.

        Returns:
            Final status of the command (confirmed, failed, or pending if the
            worker was stopped between attempts)

        Raises:
            WhitelistError: If the relayer is not authorized on this chain
        """
        if not self.authorized:
            raise WhitelistError(self.chain, self.client.relayer_address)

        max_attempts = self.monitoring.max_submission_attempts
        last_error: Exception | None = None
        # Nonce and gas price of a broadcast transaction that may still be mined
        pending_nonce: int | None = None
        pending_gas_price: int | None = None

        for attempt in range(1, max_attempts + 1):
            command.attempts += 1
            try:
                if await self.client.is_command_executed(command.command_id):
                    self.logger.info(f"{command} already executed on {self.chain}")
                    self._confirm(command)
                    return command.status

                tx_hash, nonce, gas_price = await self._submit_once(
                    command, nonce=pending_nonce, min_gas_price=pending_gas_price
                )
                pending_nonce, pending_gas_price = nonce, gas_price
                command.tx_hash = tx_hash
                command.status = CommandStatus.SUBMITTED
                self.dedup.mark_submitted(command.command_id, tx_hash, attempts=command.attempts)
                self.logger.info(
                    f"Submitted {command} in tx {tx_hash} with nonce {nonce} "
                    f"(attempt {attempt}/{max_attempts})"
                )

                await self.client.wait_receipt(tx_hash)
                self._confirm(command)
                return command.status

            except SubmissionReverted as e:
                try:
                    executed = await self.client.is_command_executed(command.command_id)
                except ConnectivityError as check_error:
                    last_error = check_error
                    self.logger.warning(f"Cannot verify reverted {command} on {self.chain}: {check_error}")
                else:
                    if executed:
                        self.logger.info(f"{command} reverted as a replay; an earlier transaction executed it")
                        self._confirm(command)
                    else:
                        self._fail(command, str(e), retryable=False)
                    return command.status
            except NonceConflict as e:
                last_error = e
                if not e.underpriced:
                    # The nonce was mined; the next precheck tells whether it was ours
                    pending_nonce = pending_gas_price = None
                elif pending_gas_price is not None:
                    pending_gas_price = bump_gas_price(pending_gas_price)
                self.logger.warning(f"Attempt {attempt}/{max_attempts} for {command} failed: {e}")
            except (SubmissionError, ConnectivityError) as e:
                last_error = e
                self.logger.warning(f"Attempt {attempt}/{max_attempts} for {command} failed: {e}")

            if attempt < max_attempts:
                if self._stopping:
                    self.logger.info(f"Stopping; {command} stays pending for the next start")
                    return CommandStatus.PENDING
                self.retries += 1
                delay = min(
                    self.monitoring.retry_base_delay * (2 ** (attempt - 1)),
                    self.monitoring.retry_max_delay,
                )
                await asyncio.sleep(delay)

        self._fail(command, f"Gave up after {max_attempts} attempts: {last_error}", retryable=True)
        return command.status

    async def _submit_once(
        self,
        command: Command,
        nonce: int | None = None,
        min_gas_price: int | None = None,
    ) -> tuple[str, int, int]:
        """
        Sign, build and broadcast execute() for one command.

        Args:
            command: Command to submit
            nonce: Nonce of an earlier broadcast to replace; a fresh pending nonce when None
            min_gas_price: Gas price of the transaction being replaced

        Returns:
            (tx_hash, nonce, gas_price) of the broadcast transaction
        """
        digest = CommandCodec.execute_digest(command.command_id, [command])
        signature = self.client.sign_digest(digest)

        if nonce is None:
            nonce = await self.client.next_nonce()
        if self.gas_price_gwei is not None:
            gas_price = int(Web3.to_wei(self.gas_price_gwei, 'gwei'))
        else:
            gas_price = int(await self.client.gas_price())
        if min_gas_price is not None:
            gas_price = max(gas_price, bump_gas_price(min_gas_price))

        tx = await self.client.build_execute_tx(
            command.command_id,
            [(int(command.command_type), command.payload)],
            signature,
            nonce=nonce,
            gas_limit=self.gas_limit,
            gas_price=gas_price,
        )
        raw_tx = self.client.sign_transaction(tx)
        self.submissions_sent += 1
        tx_hash = await self.client.send_signed_tx(raw_tx)
        return tx_hash, nonce, gas_price

    def _confirm(self, command: Command) -> None:
        command.status = CommandStatus.CONFIRMED
        command.last_error = None
        self.dedup.mark_confirmed(command.command_id, command.tx_hash)
        self.commands_confirmed += 1
        self.logger.info(f"✓ {command} confirmed")

    def _fail(self, command: Command, error: str, retryable: bool) -> None:
        command.status = CommandStatus.FAILED
        command.last_error = error
        self.dedup.mark_failed(command.command_id, error, retryable=retryable, attempts=command.attempts)
        self.commands_failed += 1
        self.logger.error(f"✗ {command} failed: {error}")

    def get_stats(self) -> dict[str, Any]:
        return {
            "chain": self.chain,
            "authorized": self.authorized,
            "queued": self.queue.qsize(),
            "held": len(self.held),
            "in_flight": self.in_flight.command_id if self.in_flight else None,
            "submissions_sent": self.submissions_sent,
            "confirmed": self.commands_confirmed,
            "failed": self.commands_failed,
            "retries": self.retries,
        }
