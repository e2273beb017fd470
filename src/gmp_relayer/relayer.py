"""
GMP Relayer implementation.

This module contains the main relayer service: one polling task per source
chain feeding per-destination submission queues, plus the startup checks,
failed-command retry sweep and operator actions around them.
"""

import asyncio
import logging
import time
from typing import Any

from .chain_client import ChainClient
from .codec import CommandCodec, command_from_record, command_to_record
from .config import RelayerConfig
from .confirmation import ConfirmationGate
from .dedup_store import DedupStore
from .errors import ConfigurationError, ConnectivityError, UnsupportedEventKind
from .health import HealthMonitor
from .models import Command, CommandStatus, ProcessOutcome, RelayEvent
from .submission_queue import SubmissionQueue
from .utils.contract_utility import load_relayer_account

logger = logging.getLogger(__name__)


class GMPRelayer:
    """
    Main relayer service that orchestrates event monitoring and submission.

    This class focuses on coordination and lifecycle management, delegating
    chain access to ChainClient, idempotency to DedupStore and destination
    submission to one SubmissionQueue per destination chain.
    """

    FAILED_RETRY_MAX_DELAY = 600  # seconds

    def __init__(
        self,
        config: RelayerConfig,
        clients: dict[str, ChainClient] | None = None,
        dedup: DedupStore | None = None,
    ):
        """
        Initialize the GMP Relayer.

        Args:
            config: Relayer configuration
            clients: Pre-built chain clients keyed by chain name; built from config when omitted
            dedup: Pre-built DedupStore; built from config.state_file when omitted
        """
        self.config = config
        self.running = False

        if clients is None:
            account = load_relayer_account(config.relayer_private_key)
            clients = {
                name: ChainClient(chain, account, config.monitoring)
                for name, chain in config.chains.items()
            }
        self.clients = clients
        self.relayer_address = config.relayer_address

        self.dedup = dedup or DedupStore(config.state_file, config.max_processed_entries)
        self.gate = ConfirmationGate(config.chains.values())
        self.queues: dict[str, SubmissionQueue] = {
            chain.name: SubmissionQueue(self.clients[chain.name], self.dedup, config)
            for chain in config.destination_chains
        }
        self.health = HealthMonitor(
            self.clients,
            self.dedup,
            self.relayer_address,
            unauthorized_chains=self.unauthorized_chains,
        )

        # Last fully scanned block per source chain
        self.cursors: dict[str, int] = {}
        self._sweep_retries: dict[str, int] = {}
        self.outcomes: dict[ProcessOutcome, int] = {outcome: 0 for outcome in ProcessOutcome}

        # Async coordination
        self.shutdown_event = asyncio.Event()

    @classmethod
    def from_env(cls) -> "GMPRelayer":
        """
        Create a GMPRelayer from the configuration file and environment.

        Raises:
            ConfigurationError: If the configuration is missing or invalid
        """
        config = RelayerConfig.from_env()
        config.log_config()
        return cls(config)

    # -- authorization -----------------------------------------------------

    def unauthorized_chains(self) -> list[str]:
        return [name for name, queue in self.queues.items() if not queue.authorized]

    async def verify_authorization(self) -> dict[str, bool]:
        """
        Check the whitelist on every destination gateway.

        A chain that cannot be reached keeps its previous state; at startup
        that means it stays unauthorized until a later recheck succeeds.

        Returns:
            Chain name -> whether the relayer may submit there
        """
        names = list(self.queues)
        results = await asyncio.gather(
            *(self.clients[name].is_whitelisted_relayer(self.relayer_address) for name in names),
            return_exceptions=True,
        )

        for name, result in zip(names, results):
            queue = self.queues[name]
            match result:
                case bool() as whitelisted:
                    if not whitelisted:
                        logger.error(
                            f"Relayer {self.relayer_address} is NOT whitelisted on {name}; "
                            "submissions to this chain are refused"
                        )
                    queue.set_authorized(whitelisted)
                case ConnectivityError() as e:
                    logger.warning(f"Could not verify whitelist on {name}: {e}")
                case Exception() as e:
                    logger.error(f"Whitelist check on {name} failed: {e}", exc_info=e)

        return {name: queue.authorized for name, queue in self.queues.items()}

    async def recheck_authorization(self) -> dict[str, bool]:
        """Re-run the whitelist check on demand."""
        logger.info("Re-checking relayer authorization")
        return await self.verify_authorization()

    # -- event handling ----------------------------------------------------

    def process_event(self, event: RelayEvent) -> ProcessOutcome:
        """
        Turn one final source event into a queued destination command.

        Returns:
            What happened to the event
        """
        queue = self.queues.get(event.destination_chain)
        if queue is None:
            logger.warning(f"Destination {event.destination_chain} not configured, skipping {event}")
            return self._record(ProcessOutcome.UNROUTABLE)

        try:
            command = CommandCodec.encode(event)
        except (UnsupportedEventKind, ValueError) as e:
            logger.error(f"Cannot encode {event}: {e}")
            return self._record(ProcessOutcome.UNSUPPORTED)

        if not self.dedup.try_mark_pending(command.command_id, command_to_record(command)):
            logger.debug(f"Duplicate observation of {event}, already {self.dedup.status(command.command_id)}")
            return self._record(ProcessOutcome.DUPLICATE)

        queue.enqueue(command)
        logger.info(f"Relaying {event} as {command}")
        return self._record(ProcessOutcome.ENQUEUED)

    def _record(self, outcome: ProcessOutcome) -> ProcessOutcome:
        self.outcomes[outcome] += 1
        return outcome

    async def _initial_cursor(self, chain: str) -> int:
        if (watermark := self.dedup.get_watermark(chain)) is not None:
            logger.info(f"Resuming {chain} from persisted block {watermark}")
            return watermark

        latest = await self.clients[chain].latest_block()
        cursor = max(0, latest - self.config.monitoring.lookback_blocks)
        logger.info(f"No watermark for {chain}, scanning from block {cursor + 1} (head {latest})")
        return cursor

    async def poll_once(self, chain: str) -> dict[ProcessOutcome, int]:
        """
        Run one poll cycle for a source chain.

        Events are handled in (block, logIndex) order. The first event that is
        not final yet stops the cycle; the cursor then stays below its block so
        it is fetched again next time.

        Returns:
            Outcome counts for this cycle
        """
        client = self.clients[chain]
        if chain not in self.cursors:
            self.cursors[chain] = await self._initial_cursor(chain)

        cursor = self.cursors[chain]
        latest = await client.latest_block()
        counts = {outcome: 0 for outcome in ProcessOutcome}
        if latest <= cursor:
            return counts

        events = await client.get_logs(cursor + 1, latest)
        if events:
            logger.info(f"Found {len(events)} gateway events on {chain} in blocks {cursor + 1}-{latest}")

        new_cursor = self.gate.safe_head(chain, latest)
        for event in events:
            if not self.gate.is_final_for(chain, event.block_number, latest):
                logger.debug(
                    f"{event} has {latest - event.block_number} confirmations, "
                    f"needs {self.gate.required_confirmations(chain)}; deferring"
                )
                counts[self._record(ProcessOutcome.DEFERRED)] += 1
                new_cursor = min(new_cursor, event.block_number - 1)
                break
            counts[self.process_event(event)] += 1

        if new_cursor > cursor:
            self.cursors[chain] = new_cursor
            self.dedup.set_watermark(chain, new_cursor)
        return counts

    async def _poll_chain(self, chain: str) -> None:
        """Polling loop for one source chain."""
        interval = self.config.monitoring.polling_interval
        logger.info(f"Starting polling for gateway events on {chain} every {interval} seconds")

        while self.running:
            try:
                await self.poll_once(chain)
            except ConnectivityError as e:
                logger.warning(f"Poll of {chain} failed, will retry: {e}")
            except Exception as e:
                logger.error(f"Error polling {chain}: {e}", exc_info=True)

            if await self._wait_for_shutdown(interval):
                break

    async def _wait_for_shutdown(self, timeout: float) -> bool:
        """Sleep up to timeout; True if shutdown was requested meanwhile."""
        try:
            await asyncio.wait_for(self.shutdown_event.wait(), timeout=timeout)
            return True
        except asyncio.TimeoutError:
            return False

    def _resume_unfinished(self) -> int:
        """Re-enqueue commands claimed before a restart but never confirmed."""
        resumed = 0
        for command_id, record in self.dedup.unfinished_records():
            command = command_from_record(command_id, record)
            if (queue := self.queues.get(command.destination_chain)) is None:
                logger.warning(f"Cannot resume {command}: destination no longer configured")
                continue
            queue.enqueue(command)
            resumed += 1

        if resumed:
            logger.info(f"Resumed {resumed} unfinished commands from previous run")
        return resumed

    # -- failed commands ---------------------------------------------------

    async def retry_failed_commands(self) -> int:
        """
        Re-enqueue retryable failures whose backoff has elapsed.

        Reverted commands are never picked up here; they wait for an operator.
        """
        now = time.time()
        requeued = 0
        max_retries = self.config.monitoring.max_submission_attempts
        base_delay = self.config.monitoring.failed_retry_interval

        for command_id, entry in self.dedup.failed_entries().items():
            if not entry.retryable:
                continue
            retries = self._sweep_retries.get(command_id, 0)
            if retries >= max_retries:
                continue
            delay = min(base_delay * (2 ** retries), self.FAILED_RETRY_MAX_DELAY)
            if now - entry.updated_at < delay:
                continue

            if self._requeue(command_id, self.dedup.requeue(command_id)):
                self._sweep_retries[command_id] = retries + 1
                requeued += 1
                logger.info(f"Retrying failed command {command_id[:10]}... ({retries + 1}/{max_retries})")

        return requeued

    def retry_failed(self, command_id: str) -> Command:
        """
        Operator retry of a failed command, including reverted ones.

        Raises:
            LookupError: If the command is unknown
            ValueError: If the command is not failed or cannot be rebuilt
        """
        entry = self.dedup.get_entry(command_id)
        if entry is None:
            raise LookupError(f"Unknown command {command_id}")
        if entry.status is not CommandStatus.FAILED:
            raise ValueError(f"Command {command_id} is {entry.status.value}, not failed")

        command = self._requeue(command_id, self.dedup.reset(command_id))
        if command is None:
            raise ValueError(f"Command {command_id} has no stored record to resubmit")
        self._sweep_retries.pop(command_id, None)
        logger.info(f"Operator retry of {command}")
        return command

    def _requeue(self, command_id: str, record: dict[str, Any] | None) -> Command | None:
        if record is None:
            return None
        command = command_from_record(command_id, record)
        queue = self.queues.get(command.destination_chain)
        if queue is None:
            self.dedup.mark_failed(command_id, f"Destination {command.destination_chain} not configured")
            return None
        queue.enqueue(command)
        return command

    async def trigger_compensation(self, command_id: str) -> Command:
        """
        Queue a refund mint on the source chain for a failed token-carrying command.

        The destination gateway is asked first: a command it reports as
        executed is marked confirmed and never refunded.

        Raises:
            LookupError: If the command is unknown
            ValueError: If the command is not failed, carries no tokens, was
                executed on its destination, or was already compensated
            ConfigurationError: If either chain involved is not configured for it
            ConnectivityError: If the destination gateway cannot be queried
        """
        entry = self.dedup.get_entry(command_id)
        if entry is None or entry.record is None:
            raise LookupError(f"Unknown command {command_id}")
        if entry.status is not CommandStatus.FAILED:
            raise ValueError(f"Only failed commands can be compensated, {command_id} is {entry.status.value}")

        original = command_from_record(command_id, entry.record)
        if (source := CommandCodec.compensation_source(original)) is None:
            raise ValueError(f"Command {command_id} carries no tokens to refund")

        source_chain, refund_address, amount, symbol = source
        queue = self.queues.get(source_chain)
        if queue is None:
            raise ConfigurationError(f"Source chain {source_chain} is not a destination; cannot refund")

        destination = self.clients.get(original.destination_chain)
        if destination is None:
            raise ConfigurationError(
                f"Destination {original.destination_chain} is not configured; cannot verify {command_id}"
            )
        if await destination.is_command_executed(command_id):
            self.dedup.mark_confirmed(command_id)
            raise ValueError(
                f"Command {command_id} was executed on {original.destination_chain}; marked confirmed, not refunding"
            )

        compensation = CommandCodec.encode_compensation(
            command_id, source_chain, refund_address, amount, symbol
        )
        if not self.dedup.try_mark_pending(compensation.command_id, command_to_record(compensation)):
            raise ValueError(f"Compensation for {command_id} was already triggered")

        queue.enqueue(compensation)
        logger.warning(
            f"Compensation {compensation.command_id[:10]}... queued: refunding {amount} {symbol} "
            f"to {refund_address} on {source_chain}"
        )
        return compensation

    async def _failed_retry_loop(self) -> None:
        interval = self.config.monitoring.failed_retry_interval
        while self.running:
            if await self._wait_for_shutdown(interval):
                break
            try:
                if self.unauthorized_chains():
                    await self.verify_authorization()
                await self.retry_failed_commands()
            except Exception as e:
                logger.error(f"Error in failed-command retry sweep: {e}", exc_info=True)

    # -- lifecycle ---------------------------------------------------------

    def get_stats(self) -> dict[str, Any]:
        return {
            "running": self.running,
            "relayer_address": self.relayer_address,
            "cursors": dict(self.cursors),
            "commands": self.dedup.get_stats(),
            "outcomes": {outcome.value: count for outcome, count in self.outcomes.items()},
            "queues": {name: queue.get_stats() for name, queue in self.queues.items()},
            "unauthorized_chains": self.unauthorized_chains(),
            "parsing": {
                chain.name: self.clients[chain.name].event_processor.get_metrics()
                for chain in self.config.source_chains
            },
        }

    async def _periodic_status_logger(self) -> None:
        """Log status periodically while running."""
        interval = self.config.monitoring.status_log_interval
        while self.running:
            if await self._wait_for_shutdown(interval):
                break
            commands = self.dedup.get_stats()
            queued = sum(queue.queue.qsize() for queue in self.queues.values())
            logger.info(
                f"Status: {commands['confirmed']} confirmed, {commands['pending']} pending, "
                f"{commands['submitted']} submitted, {commands['failed']} failed, {queued} queued"
            )

    async def _check_task_health(self, tasks: dict[str, asyncio.Task]) -> bool:
        """Check if any critical task has failed."""
        for name, task in tasks.items():
            if task.done():
                try:
                    await task
                except Exception as e:
                    logger.error(f"{name} task failed: {e}", exc_info=True)
                    return False
                if self.running:
                    logger.error(f"{name} task exited unexpectedly")
                    return False
        return True

    async def _cleanup_tasks(self, tasks: dict[str, asyncio.Task]) -> None:
        """Drain submission queues, cancel tasks and close connections."""
        for queue in self.queues.values():
            await queue.stop()

        for task in tasks.values():
            if not task.done():
                task.cancel()
                try:
                    await task
                except asyncio.CancelledError:
                    pass  # Expected when cancelling

        for client in self.clients.values():
            try:
                await client.close()
            except Exception as e:
                logger.warning(f"Error closing {client.name} client: {e}")

    async def run(self) -> None:
        """Main event loop for the relayer service."""
        self.running = True
        self.shutdown_event.clear()
        logger.info("GMP Relayer starting...")
        logger.info(f"Relayer address: {self.relayer_address}")
        logger.info(f"Source chains: {[chain.name for chain in self.config.source_chains]}")
        logger.info(f"Destination chains: {list(self.queues)}")

        tasks: dict[str, asyncio.Task] = {}
        try:
            await self.verify_authorization()
            self._resume_unfinished()

            for queue in self.queues.values():
                queue.start()

            tasks = {
                f"poll:{chain.name}": asyncio.create_task(self._poll_chain(chain.name))
                for chain in self.config.source_chains
            }
            tasks["retry"] = asyncio.create_task(self._failed_retry_loop())
            tasks["status"] = asyncio.create_task(self._periodic_status_logger())

            logger.info("Event monitoring started, waiting for events...")

            # Wait until shutdown or task failure
            while self.running:
                if await self._wait_for_shutdown(1.0):
                    break

                if not await self._check_task_health(tasks):
                    logger.error("Critical task failure, shutting down")
                    break

        except Exception as e:
            logger.error(f"Error in main loop: {e}", exc_info=True)
            raise
        finally:
            self.running = False
            self.shutdown_event.set()
            await self._cleanup_tasks(tasks)
            logger.info("GMP Relayer stopped")

    def stop(self) -> None:
        """Stop the relayer service."""
        self.running = False
        self.shutdown_event.set()

    def emergency_stop(self) -> None:
        """Operator kill switch: stop polling and submission immediately."""
        logger.critical("Emergency stop requested")
        self.stop()
