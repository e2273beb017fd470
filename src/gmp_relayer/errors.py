"""
Error types raised by the GMP relayer.

Transient errors (connectivity, submission timeouts) are retried locally;
deterministic errors (reverts, unsupported events) are surfaced per command;
authorization errors halt only the affected destination chain.
"""


class RelayerError(Exception):
    """Base class for all relayer errors."""


class ConfigurationError(RelayerError, ValueError):
    """Raised when relayer configuration is missing or invalid."""


class ConnectivityError(RelayerError):
    """Raised when an RPC endpoint is unreachable, times out or returns garbage."""

    def __init__(self, chain: str, message: str):
        super().__init__(f"[{chain}] {message}")
        self.chain = chain


class UnsupportedEventKind(RelayerError):
    """Raised for an event shape the relayer does not know how to relay."""


class SubmissionError(RelayerError):
    """Base class for destination-side submission failures."""

    retryable: bool = False

    def __init__(self, chain: str, message: str, tx_hash: str | None = None):
        super().__init__(f"[{chain}] {message}")
        self.chain = chain
        self.tx_hash = tx_hash


class SubmissionReverted(SubmissionError):
    """The destination transaction reverted deterministically. Never retried as-is."""


class SubmissionTimeout(SubmissionError):
    """The destination transaction was not confirmed within the bound."""

    retryable = True


class NonceConflict(SubmissionError):
    """
    The node rejected the transaction's nonce.

    `underpriced` means a transaction with the same nonce is still pending and
    the replacement did not pay enough more gas; otherwise the nonce is used up.
    """

    retryable = True

    def __init__(self, chain: str, message: str, tx_hash: str | None = None, underpriced: bool = False):
        super().__init__(chain, message, tx_hash=tx_hash)
        self.underpriced = underpriced


class WhitelistError(RelayerError):
    """Raised when the relayer address is not authorized on a destination gateway."""

    def __init__(self, chain: str, relayer_address: str):
        super().__init__(f"Relayer {relayer_address} is not whitelisted on {chain}")
        self.chain = chain
        self.relayer_address = relayer_address
