"""
GMP Relayer package.

Cross-chain message relay service for IXFI gateway contracts.
"""

from .codec import CommandCodec
from .config import ChainConfig, MonitoringConfig, RelayerConfig
from .dedup_store import DedupStore
from .models import Command, CommandStatus, CommandType, RelayEvent
from .relayer import GMPRelayer

__all__ = [
    "ChainConfig",
    "Command",
    "CommandCodec",
    "CommandStatus",
    "CommandType",
    "DedupStore",
    "GMPRelayer",
    "MonitoringConfig",
    "RelayEvent",
    "RelayerConfig",
]
__version__ = "0.1.0"
