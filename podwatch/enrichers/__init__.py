"""Enricher registry and abstract Enricher base class."""

from __future__ import annotations

import logging
import time
from abc import ABC, abstractmethod
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from podwatch.config import PodwatchConfig
    from podwatch.models import NodeRecord
    from podwatch.rpc import RpcClient

logger = logging.getLogger(__name__)


class Enricher(ABC):
    """Abstract base class for per-cycle node enrichment.

    Enrichers run after discovery and mutate the discovered records in
    place.  A failed lookup leaves the record's existing values alone.

    Args:
        config: Loaded application configuration.
        client: Shared RPC client for the cycle.
    """

    name: str = ""

    def __init__(self, config: PodwatchConfig, client: RpcClient) -> None:
        self.config = config
        self.client = client

    @abstractmethod
    async def enrich(self, nodes: list[NodeRecord]) -> None:
        """Enrich *nodes* in place.

        Args:
            nodes: Discovered records for this cycle.
        """

    async def aclose(self) -> None:
        """Release resources held across cycles (readers, files)."""


def _build_registry() -> dict[str, type[Enricher]]:
    """Build the name → Enricher-class mapping.

    Imports are deferred to avoid circular imports and to keep the
    registry definition in one place.
    """
    from podwatch.enrichers.geoip import GeoIPEnricher
    from podwatch.enrichers.latency import LatencyEnricher
    from podwatch.enrichers.onchain import OnchainEnricher
    from podwatch.enrichers.stats import StatsEnricher

    return {
        "latency": LatencyEnricher,
        "stats": StatsEnricher,
        "geoip": GeoIPEnricher,
        "onchain": OnchainEnricher,
    }


def get_enricher(name: str, config: PodwatchConfig, client: RpcClient) -> Enricher:
    """Look up and instantiate the enricher called *name*.

    Args:
        name: Enricher name (e.g. ``"stats"``, ``"geoip"``).
        config: Loaded application configuration.
        client: Shared RPC client.

    Returns:
        An instance of the matching ``Enricher`` subclass.

    Raises:
        ValueError: If *name* is not in the registry.
    """
    registry = _build_registry()
    enricher_cls = registry.get(name)
    if enricher_cls is None:
        known = ", ".join(sorted(registry))
        raise ValueError(f"Unknown enricher {name!r}. Known enrichers: {known}")
    return enricher_cls(config, client)


def registered_enrichers() -> list[str]:
    """Return a sorted list of all registered enricher names."""
    return sorted(_build_registry())


async def run_enrichers(enrichers: list[Enricher], nodes: list[NodeRecord]) -> None:
    """Run each enricher in order over *nodes*.

    An enricher that raises is logged and skipped; the remaining ones
    still run.
    """
    for enricher in enrichers:
        start = time.monotonic()
        try:
            await enricher.enrich(nodes)
        except Exception:
            logger.exception("Enricher %s failed; continuing without it", enricher.name)
            continue
        logger.info(
            "Enricher %s finished in %.1fs", enricher.name, time.monotonic() - start
        )
