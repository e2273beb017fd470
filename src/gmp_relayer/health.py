"""
Relayer health reporting.
"""

import asyncio
import logging
from collections.abc import Callable, Iterable, Mapping

from .chain_client import ChainClient
from .dedup_store import DedupStore
from .models import HealthSnapshot

logger = logging.getLogger(__name__)

HEALTHY = "healthy"
DEGRADED = "degraded"


class HealthMonitor:
    """Builds HealthSnapshots from chain reachability and the processed-state ledger."""

    def __init__(
        self,
        clients: Mapping[str, ChainClient],
        dedup: DedupStore,
        relayer_address: str,
        unauthorized_chains: Callable[[], Iterable[str]] = tuple,
    ):
        self.clients = clients
        self.dedup = dedup
        self.relayer_address = relayer_address
        self.unauthorized_chains = unauthorized_chains

    async def get_health(self) -> HealthSnapshot:
        """
        Check every configured chain concurrently and summarize.

        The relayer is healthy only if every chain answers, the relayer is
        whitelisted on every destination chain, and no failed command is
        waiting for review.
        """
        names = list(self.clients)
        results = await asyncio.gather(
            *(self.clients[name].is_reachable() for name in names)
        )
        chains = dict(zip(names, results))

        unauthorized = tuple(sorted(self.unauthorized_chains()))
        failed = len(self.dedup.failed_entries())

        status = HEALTHY if all(chains.values()) and not unauthorized and not failed else DEGRADED
        if status == DEGRADED:
            down = [name for name, ok in chains.items() if not ok]
            logger.warning(
                f"Relayer degraded: unreachable={down}, unauthorized={list(unauthorized)}, "
                f"failed_commands={failed}"
            )

        return HealthSnapshot(
            status=status,
            chains=chains,
            processed_events=self.dedup.processed_count,
            relayer_address=self.relayer_address,
            failed_commands=failed,
            unauthorized_chains=unauthorized,
        )
