"""
Finality gating for source-chain events.

An event is acted on once enough blocks have been built on top of the block
it was observed in. Younger events are deferred to a later poll, never
discarded.
"""

from collections.abc import Iterable

from .config import ChainConfig


def is_final(event_block: int, latest_block: int, required_confirmations: int) -> bool:
    """Return True once latest_block - event_block >= required_confirmations."""
    return latest_block - event_block >= required_confirmations


class ConfirmationGate:
    """Per-source-chain confirmation thresholds."""

    def __init__(self, chains: Iterable[ChainConfig]):
        self._required: dict[str, int] = {
            chain.name: chain.block_confirmations for chain in chains
        }

    def required_confirmations(self, chain: str) -> int:
        try:
            return self._required[chain]
        except KeyError:
            raise KeyError(f"No confirmation depth configured for chain {chain}") from None

    def is_final_for(self, chain: str, event_block: int, latest_block: int) -> bool:
        return is_final(event_block, latest_block, self.required_confirmations(chain))

    def safe_head(self, chain: str, latest_block: int) -> int:
        """Highest block whose events are already final (may be negative on young chains)."""
        return latest_block - self.required_confirmations(chain)
