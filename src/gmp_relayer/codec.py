"""
Command encoding for the destination gateway.

Each relayed event kind maps to one gateway command with a fixed, ordered
ABI field list. Encoding is pure: the same event always yields the same
bytes. Unknown variants fail with UnsupportedEventKind.
"""

import logging
from typing import Any

from eth_abi import decode, encode
from hexbytes import HexBytes
from web3 import Web3

from .errors import UnsupportedEventKind
from .models import (
    Command,
    CommandType,
    ContractCallEvent,
    ContractCallWithTokenEvent,
    EventKind,
    RelayEvent,
    TokenSentEvent,
)

logger = logging.getLogger(__name__)

# Field names and ABI types per command, in the order the gateway expects them
COMMAND_LAYOUTS: dict[CommandType, tuple[tuple[str, str], ...]] = {
    CommandType.APPROVE_CONTRACT_CALL: (
        ("source_chain", "string"),
        ("sender", "string"),
        ("destination_contract_address", "address"),
        ("payload_hash", "bytes32"),
        ("source_tx_hash", "bytes32"),
        ("log_index", "uint256"),
        ("payload", "bytes"),
    ),
    CommandType.APPROVE_CONTRACT_CALL_WITH_MINT: (
        ("source_chain", "string"),
        ("sender", "string"),
        ("destination_contract_address", "address"),
        ("payload_hash", "bytes32"),
        ("symbol", "string"),
        ("amount", "uint256"),
        ("source_tx_hash", "bytes32"),
        ("log_index", "uint256"),
        ("payload", "bytes"),
    ),
    CommandType.MINT_TOKEN: (
        ("destination_address", "address"),
        ("amount", "uint256"),
        ("symbol", "string"),
    ),
}

EXECUTE_DIGEST_TYPES = ["bytes32", "(uint256,bytes)[]"]


def _bytes32(value: bytes | str, name: str) -> bytes:
    raw = bytes(HexBytes(value))
    if len(raw) != 32:
        raise ValueError(f"{name} must be 32 bytes, got {len(raw)}")
    return raw


def _encode_fields(command_type: CommandType, values: list[Any]) -> bytes:
    types = [abi_type for _, abi_type in COMMAND_LAYOUTS[command_type]]
    return encode(types, values)


class CommandCodec:
    """Encodes source events into gateway commands."""

    @staticmethod
    def encode(event: RelayEvent) -> Command:
        """
        Translate a final source event into a destination command.

        Args:
            event: A ContractCall, ContractCallWithToken or TokenSent event

        Returns:
            Pending Command addressed to the event's destination chain

        Raises:
            UnsupportedEventKind: If the event is not one of the relayed variants
        """
        match event:
            case ContractCallEvent():
                command_type = CommandType.APPROVE_CONTRACT_CALL
                values = [
                    event.source_chain,
                    event.sender,
                    Web3.to_checksum_address(event.destination_contract_address),
                    _bytes32(event.payload_hash, "payload_hash"),
                    _bytes32(event.tx_hash, "tx_hash"),
                    event.log_index,
                    event.payload,
                ]
            case ContractCallWithTokenEvent():
                command_type = CommandType.APPROVE_CONTRACT_CALL_WITH_MINT
                values = [
                    event.source_chain,
                    event.sender,
                    Web3.to_checksum_address(event.destination_contract_address),
                    _bytes32(event.payload_hash, "payload_hash"),
                    event.symbol,
                    event.amount,
                    _bytes32(event.tx_hash, "tx_hash"),
                    event.log_index,
                    event.payload,
                ]
            case TokenSentEvent():
                command_type = CommandType.MINT_TOKEN
                values = [
                    Web3.to_checksum_address(event.destination_address),
                    event.amount,
                    event.symbol,
                ]
            case _:
                raise UnsupportedEventKind(f"Cannot encode event of type {type(event).__name__}")

        command = Command(
            command_id=event.command_id,
            destination_chain=event.destination_chain,
            command_type=command_type,
            payload=_encode_fields(command_type, values),
            source_event=event,
        )
        logger.debug(f"Encoded {event} as {command}")
        return command

    @staticmethod
    def decode(command_type: CommandType | int, payload: bytes) -> dict[str, Any]:
        """
        Decode a command payload back into named fields.

        Addresses come back checksummed and bytes32 values as 0x-prefixed hex.
        """
        command_type = CommandType(command_type)
        layout = COMMAND_LAYOUTS[command_type]
        decoded = decode([abi_type for _, abi_type in layout], payload)

        fields: dict[str, Any] = {}
        for (name, abi_type), value in zip(layout, decoded):
            match abi_type:
                case "address":
                    fields[name] = Web3.to_checksum_address(value)
                case "bytes32":
                    fields[name] = Web3.to_hex(value)
                case _:
                    fields[name] = value
        return fields

    @staticmethod
    def encode_compensation(
        original_command_id: str,
        source_chain: str,
        refund_address: str,
        amount: int,
        symbol: str,
    ) -> Command:
        """
        Build a refund mint on the source chain for a failed token-carrying command.

        The compensation id is derived from the original id so a second trigger
        for the same failure maps to the same command and is deduplicated.
        """
        command_id = Web3.to_hex(Web3.keccak(text=f"compensation-{original_command_id}"))
        payload = _encode_fields(
            CommandType.MINT_TOKEN,
            [Web3.to_checksum_address(refund_address), amount, symbol],
        )
        return Command(
            command_id=command_id,
            destination_chain=source_chain,
            command_type=CommandType.MINT_TOKEN,
            payload=payload,
        )

    @staticmethod
    def execute_digest(command_id: str, commands: list[Command]) -> bytes:
        """Hash the relayer signs for gateway.execute(commandId, commands, signature)."""
        return Web3.keccak(
            encode(
                EXECUTE_DIGEST_TYPES,
                [
                    _bytes32(command_id, "command_id"),
                    [(int(command.command_type), command.payload) for command in commands],
                ],
            )
        )

    @staticmethod
    def compensation_source(command: Command) -> tuple[str, str, int, str] | None:
        """(source_chain, refund_address, amount, symbol) for token-carrying commands."""
        match command.source_event:
            case TokenSentEvent() | ContractCallWithTokenEvent() as event:
                return event.source_chain, event.sender, event.amount, event.symbol
            case _:
                return None


def event_to_dict(event: RelayEvent) -> dict[str, Any]:
    """Serialize an event for the state file."""
    data: dict[str, Any] = {
        "kind": event.kind.value,
        "source_chain": event.source_chain,
        "tx_hash": event.tx_hash,
        "log_index": event.log_index,
        "block_number": event.block_number,
        "sender": event.sender,
        "destination_chain": event.destination_chain,
    }
    match event:
        case ContractCallEvent():
            data["destination_contract_address"] = event.destination_contract_address
            data["payload_hash"] = Web3.to_hex(event.payload_hash)
            data["payload"] = Web3.to_hex(event.payload)
        case ContractCallWithTokenEvent():
            data["destination_contract_address"] = event.destination_contract_address
            data["payload_hash"] = Web3.to_hex(event.payload_hash)
            data["payload"] = Web3.to_hex(event.payload)
            data["symbol"] = event.symbol
            # uint256 does not fit JSON numbers everywhere
            data["amount"] = str(event.amount)
        case TokenSentEvent():
            data["destination_address"] = event.destination_address
            data["symbol"] = event.symbol
            data["amount"] = str(event.amount)
        case _:
            raise UnsupportedEventKind(f"Cannot serialize event of type {type(event).__name__}")
    return data


def event_from_dict(data: dict[str, Any]) -> RelayEvent:
    """Inverse of event_to_dict."""
    common = {
        "source_chain": data["source_chain"],
        "tx_hash": data["tx_hash"],
        "log_index": int(data["log_index"]),
        "block_number": int(data["block_number"]),
        "sender": data["sender"],
        "destination_chain": data["destination_chain"],
    }
    try:
        kind = EventKind(data["kind"])
    except ValueError:
        raise UnsupportedEventKind(f"Unknown event kind {data['kind']!r}") from None

    match kind:
        case EventKind.CONTRACT_CALL:
            return ContractCallEvent(
                **common,
                destination_contract_address=data["destination_contract_address"],
                payload_hash=bytes(HexBytes(data["payload_hash"])),
                payload=bytes(HexBytes(data.get("payload", "0x"))),
            )
        case EventKind.CONTRACT_CALL_WITH_TOKEN:
            return ContractCallWithTokenEvent(
                **common,
                destination_contract_address=data["destination_contract_address"],
                payload_hash=bytes(HexBytes(data["payload_hash"])),
                payload=bytes(HexBytes(data.get("payload", "0x"))),
                symbol=data["symbol"],
                amount=int(data["amount"]),
            )
        case EventKind.TOKEN_SENT:
            return TokenSentEvent(
                **common,
                destination_address=data["destination_address"],
                symbol=data["symbol"],
                amount=int(data["amount"]),
            )


def command_to_record(command: Command) -> dict[str, Any]:
    """Serialize the parts of a command needed to resubmit it after a restart."""
    return {
        "destination_chain": command.destination_chain,
        "command_type": int(command.command_type),
        "payload": Web3.to_hex(command.payload),
        "event": event_to_dict(command.source_event) if command.source_event else None,
    }


def command_from_record(command_id: str, record: dict[str, Any]) -> Command:
    event_data = record.get("event")
    return Command(
        command_id=command_id,
        destination_chain=record["destination_chain"],
        command_type=CommandType(record["command_type"]),
        payload=bytes(HexBytes(record["payload"])),
        source_event=event_from_dict(event_data) if event_data else None,
    )
