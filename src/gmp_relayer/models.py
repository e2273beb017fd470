"""
Shared data models for the GMP relayer.

Source events are modelled as a tagged variant: one frozen dataclass per
gateway event kind, all sharing the transport fields (transaction hash,
log index, block number) that identify where the event was observed.
"""

import time
from dataclasses import dataclass, field
from enum import Enum, IntEnum
from typing import Any, ClassVar

from web3 import Web3


def normalize_tx_hash(tx_hash: bytes | str) -> str:
    """Return a transaction hash as lowercase, 0x-prefixed hex."""
    match tx_hash:
        case bytes() as raw:
            return "0x" + bytes(raw).hex()
        case str() as text:
            text = text.lower()
            return text if text.startswith("0x") else "0x" + text
        case _:
            raise TypeError(f"Unexpected transaction hash type: {type(tx_hash)}")


def derive_command_id(tx_hash: bytes | str, log_index: int) -> str:
    """
    Derive the deterministic CommandId of a source event.

    The id is keccak256 over the UTF-8 string "<txHash>-<logIndex>", which is
    what destination gateways record to reject replays.

    Args:
        tx_hash: Source transaction hash (bytes or hex string)
        log_index: Position of the log within its block

    Returns:
        0x-prefixed 32-byte hex CommandId
    """
    return Web3.to_hex(Web3.keccak(text=f"{normalize_tx_hash(tx_hash)}-{log_index}"))


class EventKind(str, Enum):
    """Gateway events the relayer knows how to relay."""
    CONTRACT_CALL = "ContractCall"
    CONTRACT_CALL_WITH_TOKEN = "ContractCallWithToken"
    TOKEN_SENT = "TokenSent"


class CommandType(IntEnum):
    """Command type tags understood by the destination gateway's execute()."""
    APPROVE_CONTRACT_CALL = 0
    APPROVE_CONTRACT_CALL_WITH_MINT = 1
    MINT_TOKEN = 4


class CommandStatus(str, Enum):
    """Lifecycle of a destination command."""
    PENDING = "pending"
    SUBMITTED = "submitted"
    CONFIRMED = "confirmed"
    FAILED = "failed"


class ProcessOutcome(str, Enum):
    """What the orchestrator did with one observed event."""
    ENQUEUED = "enqueued"
    DEFERRED = "deferred"        # not final yet, retried next poll
    DUPLICATE = "duplicate"      # already pending or confirmed
    UNSUPPORTED = "unsupported"  # unknown kind, skipped and surfaced
    UNROUTABLE = "unroutable"    # destination chain not configured


@dataclass(frozen=True, slots=True)
class _SourceEvent:
    """Transport fields shared by every relayed event."""
    source_chain: str
    tx_hash: str
    log_index: int
    block_number: int
    sender: str
    destination_chain: str

    kind: ClassVar[EventKind]

    @property
    def command_id(self) -> str:
        return derive_command_id(self.tx_hash, self.log_index)

    @property
    def position(self) -> tuple[int, int]:
        """Ordering key within one source chain."""
        return (self.block_number, self.log_index)

    def __str__(self) -> str:
        return (
            f"{self.kind.value}({self.source_chain}->{self.destination_chain}, "
            f"tx={self.tx_hash[:10]}..., log={self.log_index}, block={self.block_number})"
        )


@dataclass(frozen=True, slots=True)
class ContractCallEvent(_SourceEvent):
    """A ContractCall event: generic cross-chain message delivery."""
    destination_contract_address: str
    payload_hash: bytes
    payload: bytes = b""

    kind: ClassVar[EventKind] = EventKind.CONTRACT_CALL


@dataclass(frozen=True, slots=True)
class ContractCallWithTokenEvent(_SourceEvent):
    """A ContractCallWithToken event: a contract call that also mints value."""
    destination_contract_address: str
    payload_hash: bytes
    symbol: str
    amount: int
    payload: bytes = b""

    kind: ClassVar[EventKind] = EventKind.CONTRACT_CALL_WITH_TOKEN


@dataclass(frozen=True, slots=True)
class TokenSentEvent(_SourceEvent):
    """A TokenSent event: plain token value transfer."""
    destination_address: str
    symbol: str
    amount: int

    kind: ClassVar[EventKind] = EventKind.TOKEN_SENT


RelayEvent = ContractCallEvent | ContractCallWithTokenEvent | TokenSentEvent


@dataclass(slots=True)
class Command:
    """
    A destination-chain command derived from one source event.

    Attributes:
        command_id: Deterministic id derived from (tx_hash, log_index)
        destination_chain: Chain the command is executed on
        command_type: Gateway command tag
        payload: ABI-encoded command fields
        source_event: The event the command was derived from (None for compensations)
        status: Current lifecycle status
        attempts: Number of submission attempts so far
        tx_hash: Hash of the last destination transaction sent
        last_error: Message of the last failure, if any
    """
    command_id: str
    destination_chain: str
    command_type: CommandType
    payload: bytes
    source_event: RelayEvent | None = None
    status: CommandStatus = CommandStatus.PENDING
    attempts: int = 0
    tx_hash: str | None = None
    last_error: str | None = None

    def __str__(self) -> str:
        return (
            f"Command({self.command_id[:10]}..., {self.command_type.name} "
            f"-> {self.destination_chain}, {self.status.value})"
        )


@dataclass(slots=True)
class DedupEntry:
    """Processed-set record for one CommandId."""
    status: CommandStatus
    updated_at: float = field(default_factory=time.time)
    attempts: int = 0
    tx_hash: str | None = None
    error: str | None = None
    retryable: bool = False
    record: dict[str, Any] | None = None  # serialized Command, for restart and retry

    def to_dict(self) -> dict[str, Any]:
        return {
            "status": self.status.value,
            "updated_at": self.updated_at,
            "attempts": self.attempts,
            "tx_hash": self.tx_hash,
            "error": self.error,
            "retryable": self.retryable,
            "record": self.record,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "DedupEntry":
        return cls(
            status=CommandStatus(data["status"]),
            updated_at=data.get("updated_at", time.time()),
            attempts=data.get("attempts", 0),
            tx_hash=data.get("tx_hash"),
            error=data.get("error"),
            retryable=data.get("retryable", False),
            record=data.get("record"),
        )


@dataclass(frozen=True, slots=True)
class HealthSnapshot:
    """Point-in-time relayer status."""
    status: str
    chains: dict[str, bool]
    processed_events: int
    relayer_address: str
    failed_commands: int = 0
    unauthorized_chains: tuple[str, ...] = ()

    @property
    def is_healthy(self) -> bool:
        return self.status == "healthy"

    def to_dict(self) -> dict[str, Any]:
        """Serialize using the operator-facing key names."""
        return {
            "status": self.status,
            "chains": dict(self.chains),
            "processedEvents": self.processed_events,
            "relayerAddress": self.relayer_address,
            "failedCommands": self.failed_commands,
            "unauthorizedChains": list(self.unauthorized_chains),
        }
