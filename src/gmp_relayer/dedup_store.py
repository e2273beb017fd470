"""
Idempotency ledger for the GMP relayer.

The DedupStore is the single source of truth for which source events have
already produced a destination command. It also keeps the per-source-chain
scan watermark so a restart resumes scanning where the last run stopped.
"""

import json
import logging
import os
import threading
import time
from collections import OrderedDict
from pathlib import Path
from typing import Any

from .models import CommandStatus, DedupEntry

logger = logging.getLogger(__name__)

STATE_VERSION = 1


class DedupStore:
    """
    Concurrency-safe CommandId -> status map with optional JSON persistence.

    Uses an OrderedDict so the oldest entries can be evicted in insertion
    order once the store grows past `max_entries`. Only confirmed entries are
    evicted; pending and failed ones stay until they are resolved.
    """

    def __init__(self, state_file: str | Path | None = None, max_entries: int = 10_000):
        """
        Initialize the store, loading persisted state when a file is given.

        Args:
            state_file: JSON file to persist to; None keeps state in memory only
            max_entries: Entry count that triggers eviction of old confirmed entries
        """
        self.state_file = Path(state_file) if state_file else None
        self.max_entries = max_entries

        self._entries: OrderedDict[str, DedupEntry] = OrderedDict()
        self._watermarks: dict[str, int] = {}
        self._lock = threading.Lock()

        if self.state_file:
            self._load()

    # -- idempotency -------------------------------------------------------

    def has_processed(self, command_id: str) -> bool:
        """True if the CommandId is pending, submitted, confirmed or failed."""
        with self._lock:
            return command_id in self._entries

    def try_mark_pending(self, command_id: str, record: dict[str, Any] | None = None) -> bool:
        """
        Atomically claim a CommandId for submission.

        Args:
            command_id: CommandId of the observed event
            record: Serialized command, kept so unfinished work survives restarts

        Returns:
            True if the caller now owns the command, False if it was already known
        """
        with self._lock:
            if command_id in self._entries:
                return False
            self._entries[command_id] = DedupEntry(status=CommandStatus.PENDING, record=record)
            self._evict_if_needed()
            self._save()
            return True

    def mark_pending(self, command_id: str, record: dict[str, Any] | None = None) -> None:
        with self._lock:
            entry = self._entries.get(command_id)
            if entry is None:
                self._entries[command_id] = DedupEntry(status=CommandStatus.PENDING, record=record)
                self._evict_if_needed()
            else:
                entry.status = CommandStatus.PENDING
                entry.updated_at = time.time()
                entry.error = None
                entry.retryable = False
                if record is not None:
                    entry.record = record
            self._save()

    def mark_submitted(self, command_id: str, tx_hash: str, attempts: int | None = None) -> None:
        with self._lock:
            entry = self._require(command_id)
            if entry.status is CommandStatus.CONFIRMED:
                return
            entry.status = CommandStatus.SUBMITTED
            entry.tx_hash = tx_hash
            entry.updated_at = time.time()
            if attempts is not None:
                entry.attempts = attempts
            self._save()

    def mark_confirmed(self, command_id: str, tx_hash: str | None = None) -> None:
        with self._lock:
            entry = self._entries.get(command_id)
            if entry is None:
                entry = self._entries[command_id] = DedupEntry(status=CommandStatus.CONFIRMED)
            entry.status = CommandStatus.CONFIRMED
            entry.updated_at = time.time()
            entry.error = None
            entry.retryable = False
            if tx_hash:
                entry.tx_hash = tx_hash
            self._save()

    def mark_failed(
        self,
        command_id: str,
        error: str,
        retryable: bool = False,
        attempts: int | None = None,
    ) -> None:
        """Record a terminal failure for operator review.

        A confirmed entry is never downgraded.
        """
        with self._lock:
            entry = self._require(command_id)
            if entry.status is CommandStatus.CONFIRMED:
                logger.warning(f"Ignoring failure for already confirmed command {command_id[:10]}...")
                return
            entry.status = CommandStatus.FAILED
            entry.error = error
            entry.retryable = retryable
            entry.updated_at = time.time()
            if attempts is not None:
                entry.attempts = attempts
            self._save()

    def requeue(self, command_id: str, retryable_only: bool = True) -> dict[str, Any] | None:
        """
        Move a failed entry back to pending.

        Args:
            command_id: CommandId to requeue
            retryable_only: Refuse entries whose failure was deterministic

        Returns:
            The stored command record, or None if the entry cannot be requeued
        """
        with self._lock:
            entry = self._entries.get(command_id)
            if entry is None or entry.status is not CommandStatus.FAILED:
                return None
            if retryable_only and not entry.retryable:
                return None
            if entry.record is None:
                return None
            entry.status = CommandStatus.PENDING
            entry.updated_at = time.time()
            self._save()
            return entry.record

    def reset(self, command_id: str) -> dict[str, Any] | None:
        """Operator override: requeue a failed command whatever its failure kind."""
        return self.requeue(command_id, retryable_only=False)

    def status(self, command_id: str) -> CommandStatus | None:
        with self._lock:
            entry = self._entries.get(command_id)
            return entry.status if entry else None

    def get_entry(self, command_id: str) -> DedupEntry | None:
        with self._lock:
            return self._entries.get(command_id)

    def failed_entries(self) -> dict[str, DedupEntry]:
        with self._lock:
            return {
                command_id: entry
                for command_id, entry in self._entries.items()
                if entry.status is CommandStatus.FAILED
            }

    def unfinished_records(self) -> list[tuple[str, dict[str, Any]]]:
        """Commands that were claimed but never confirmed, in claim order."""
        with self._lock:
            return [
                (command_id, entry.record)
                for command_id, entry in self._entries.items()
                if entry.status in (CommandStatus.PENDING, CommandStatus.SUBMITTED)
                and entry.record is not None
            ]

    @property
    def processed_count(self) -> int:
        with self._lock:
            return len(self._entries)

    def get_stats(self) -> dict[str, int]:
        with self._lock:
            stats = {status.value: 0 for status in CommandStatus}
            for entry in self._entries.values():
                stats[entry.status.value] += 1
            stats["total"] = len(self._entries)
            return stats

    # -- scan watermarks ---------------------------------------------------

    def get_watermark(self, chain: str) -> int | None:
        """Last block fully scanned on a source chain, if known."""
        with self._lock:
            return self._watermarks.get(chain)

    def set_watermark(self, chain: str, block_number: int) -> None:
        with self._lock:
            if self._watermarks.get(chain) == block_number:
                return
            self._watermarks[chain] = block_number
            self._save()

    # -- internals ---------------------------------------------------------

    def _require(self, command_id: str) -> DedupEntry:
        entry = self._entries.get(command_id)
        if entry is None:
            raise KeyError(f"Unknown command {command_id}")
        return entry

    def _evict_if_needed(self) -> None:
        """Drop the oldest confirmed entries once the store is over capacity."""
        if len(self._entries) <= self.max_entries:
            return

        target = self.max_entries // 2
        evicted = 0
        for command_id in list(self._entries):
            if len(self._entries) <= target:
                break
            if self._entries[command_id].status is CommandStatus.CONFIRMED:
                del self._entries[command_id]
                evicted += 1

        if evicted:
            logger.info(f"Pruned {evicted} confirmed commands, {len(self._entries)} remain")

    def _load(self) -> None:
        if not self.state_file or not self.state_file.exists():
            logger.info("No previous relayer state found, starting fresh")
            return

        try:
            with self.state_file.open() as file:
                data = json.load(file)
        except (OSError, json.JSONDecodeError) as e:
            raise RuntimeError(f"Failed to read relayer state from {self.state_file}: {e}") from e

        for command_id, raw_entry in data.get("commands", {}).items():
            entry = DedupEntry.from_dict(raw_entry)
            # Anything not confirmed before the restart is retried
            if entry.status is CommandStatus.SUBMITTED:
                entry.status = CommandStatus.PENDING
            self._entries[command_id] = entry

        self._watermarks = {
            chain: int(block) for chain, block in data.get("watermarks", {}).items()
        }
        logger.info(
            f"Loaded {len(self._entries)} commands and "
            f"{len(self._watermarks)} watermarks from {self.state_file}"
        )

    def _save(self) -> None:
        """Persist state atomically. Caller must hold the lock."""
        if not self.state_file:
            return

        data = {
            "version": STATE_VERSION,
            "commands": {
                command_id: entry.to_dict() for command_id, entry in self._entries.items()
            },
            "watermarks": dict(self._watermarks),
        }

        tmp_path = self.state_file.with_suffix(self.state_file.suffix + ".tmp")
        try:
            self.state_file.parent.mkdir(parents=True, exist_ok=True)
            with tmp_path.open("w") as file:
                json.dump(data, file, indent=2)
            os.replace(tmp_path, self.state_file)
        except OSError as e:
            logger.error(f"Failed to save relayer state to {self.state_file}: {e}")
            raise
