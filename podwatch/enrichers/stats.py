"""Stats enricher: per-node ``get-stats`` and ``get-version`` over the control RPC."""

import logging
from typing import Any

from podwatch.batch import chunked, gather_batch
from podwatch.enrichers import Enricher
from podwatch.liveness import promote
from podwatch.models import NodeRecord
from podwatch.pods import parse_metrics
from podwatch.prober import probe

logger = logging.getLogger(__name__)


def version_from(result: Any) -> str | None:
    """Pull a version string out of a ``get-version`` result."""
    if isinstance(result, str):
        return result.strip() or None
    if isinstance(result, dict):
        value = result.get("version")
        if isinstance(value, str) and value.strip():
            return value.strip()
    return None


class StatsEnricher(Enricher):
    """Fetches live metrics directly from each node.

    A node that answers ``get-stats`` is promoted to online and has its
    metrics merged (present values only).  A node that doesn't answer is
    left exactly as discovery produced it; an unreachable control port is
    the normal case for private nodes, not evidence of being offline.
    """

    name = "stats"

    async def enrich(self, nodes: list[NodeRecord]) -> None:
        targets = [n for n in nodes if n.address]
        answered = 0
        for batch in chunked(targets, self.config.batch_size):
            outcomes = await gather_batch(batch, self._fetch)
            for node, fetched in outcomes:
                if fetched is None:
                    continue
                stats, version = fetched
                node.metrics.update_from(parse_metrics(stats))
                if version:
                    node.version = version
                node.state = promote(node.state)
                answered += 1

        logger.info("Stats: %d/%d node(s) answered get-stats", answered, len(targets))

    async def _fetch(self, node: NodeRecord) -> tuple[dict, str | None] | None:
        timeout = self.config.enrichment_timeout
        hit = await probe(self.client, node, "get-stats", timeout, self.config.ports)
        if hit is None or not isinstance(hit.result, dict):
            return None

        version = version_from(hit.result)
        if version is None:
            reply = await self.client.call(
                f"{node.ip}:{hit.port}", "get-version", timeout
            )
            version = version_from(reply)
        return hit.result, version
