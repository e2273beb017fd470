"""
Event processor for gateway logs.

This module turns decoded web3 log entries into typed RelayEvent variants,
keeping parsing separate from the relay orchestration.
"""

import logging
from collections.abc import Mapping
from typing import Any

from hexbytes import HexBytes
from web3 import Web3

from .errors import UnsupportedEventKind
from .models import (
    ContractCallEvent,
    ContractCallWithTokenEvent,
    EventKind,
    RelayEvent,
    TokenSentEvent,
    normalize_tx_hash,
)

logger = logging.getLogger(__name__)


class EventProcessor:
    """Parses gateway events observed on one source chain."""

    def __init__(self, source_chain: str) -> None:
        """Initialize the event processor.

        Args:
            source_chain: Name of the chain the events were observed on
        """
        self.source_chain = source_chain

        # Metrics tracking
        self.events_parsed = 0
        self.events_unsupported = 0

    def parse(self, event_data: Mapping[str, Any]) -> RelayEvent:
        """
        Parse one decoded log entry.

        Args:
            event_data: EventData as returned by contract.events.<Name>.get_logs()

        Returns:
            The matching RelayEvent variant

        Raises:
            UnsupportedEventKind: If the event name is not relayed or its fields are malformed
        """
        name = event_data.get('event')
        try:
            kind = EventKind(name)
        except ValueError:
            self.events_unsupported += 1
            raise UnsupportedEventKind(
                f"Unsupported event {name!r} on {self.source_chain}"
            ) from None

        match event_data.get('transactionHash'):
            case None:
                self.events_unsupported += 1
                raise UnsupportedEventKind(f"{name} event on {self.source_chain} is missing its transaction hash")
            case bytes() | str() as raw_hash:
                tx_hash = normalize_tx_hash(raw_hash)
            case other:
                self.events_unsupported += 1
                raise UnsupportedEventKind(f"Unexpected transaction hash type: {type(other)}")

        args: Mapping[str, Any] = event_data.get('args', {})
        common = {
            "source_chain": self.source_chain,
            "tx_hash": tx_hash,
            "log_index": int(event_data.get('logIndex', 0)),
            "block_number": int(event_data.get('blockNumber', 0)),
        }

        try:
            common["sender"] = Web3.to_checksum_address(args['sender'])
            common["destination_chain"] = str(args['destinationChain'])

            match kind:
                case EventKind.CONTRACT_CALL:
                    event = ContractCallEvent(
                        **common,
                        destination_contract_address=Web3.to_checksum_address(
                            args['destinationContractAddress']
                        ),
                        payload_hash=bytes(HexBytes(args['payloadHash'])),
                        payload=bytes(args.get('payload', b"")),
                    )
                case EventKind.CONTRACT_CALL_WITH_TOKEN:
                    event = ContractCallWithTokenEvent(
                        **common,
                        destination_contract_address=Web3.to_checksum_address(
                            args['destinationContractAddress']
                        ),
                        payload_hash=bytes(HexBytes(args['payloadHash'])),
                        payload=bytes(args.get('payload', b"")),
                        symbol=str(args['symbol']),
                        amount=int(args['amount']),
                    )
                case EventKind.TOKEN_SENT:
                    event = TokenSentEvent(
                        **common,
                        destination_address=Web3.to_checksum_address(args['destinationAddress']),
                        symbol=str(args['symbol']),
                        amount=int(args['amount']),
                    )
        except (KeyError, TypeError, ValueError) as e:
            self.events_unsupported += 1
            raise UnsupportedEventKind(
                f"Malformed {name} event in tx {tx_hash} on {self.source_chain}: {e}"
            ) from e

        self.events_parsed += 1
        logger.debug(f"Parsed {event}")
        return event

    def get_metrics(self) -> dict[str, int]:
        """
        Get current parsing metrics.

        Returns:
            Dictionary of metric names to values
        """
        return {
            "events_parsed": self.events_parsed,
            "events_unsupported": self.events_unsupported,
        }
