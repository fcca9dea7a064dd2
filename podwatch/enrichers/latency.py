"""Latency enricher: multi-region batch measurement, then per-node fallbacks.

Measurement precedence, highest first:

1. ``multi-region``: each configured region worker measures every IP in a
   single ``POST {endpoint}/measure-batch`` call; the best region wins.
2. ``direct-ttfb``: time to the first response byte of a ``get-version``
   call from this process, over the node's candidate ports.
3. ``round-trip``: full ``get-version`` round-trip from this process.

Only nodes without a multi-region value fall through to (2), then (3).
"""

import asyncio
import logging
import time

import httpx

from podwatch.batch import chunked, gather_batch
from podwatch.enrichers import Enricher
from podwatch.models import Latency, NodeRecord
from podwatch.prober import probe_ports

logger = logging.getLogger(__name__)

MULTI_REGION = "multi-region"
DIRECT_TTFB = "direct-ttfb"
ROUND_TRIP = "round-trip"


def parse_region_reply(body: object) -> dict[str, float]:
    """Extract ``ip -> ms`` from a ``measure-batch`` reply, numbers only."""
    if not isinstance(body, dict):
        return {}
    latencies = body.get("latencies")
    if not isinstance(latencies, dict):
        return {}
    return {
        ip: float(ms)
        for ip, ms in latencies.items()
        if isinstance(ms, (int, float)) and not isinstance(ms, bool) and ms >= 0
    }


def best_by_ip(by_region: dict[str, dict[str, float]]) -> dict[str, Latency]:
    """Fold per-region measurements into one ``Latency`` per IP."""
    per_ip: dict[str, dict[str, float]] = {}
    for region, latencies in by_region.items():
        for ip, ms in latencies.items():
            per_ip.setdefault(ip, {})[region] = ms
    return {
        ip: Latency(best_ms=min(regions.values()), method=MULTI_REGION, by_region=regions)
        for ip, regions in per_ip.items()
    }


class LatencyEnricher(Enricher):
    """Sets ``NodeRecord.latency`` by the best available method."""

    name = "latency"

    async def enrich(self, nodes: list[NodeRecord]) -> None:
        targets = [n for n in nodes if n.ip]
        if not targets:
            return

        measured = await self.measure_regions(sorted({n.ip for n in targets}))
        remaining: list[NodeRecord] = []
        for node in targets:
            latency = measured.get(node.ip)
            if latency is None:
                remaining.append(node)
            else:
                node.latency = latency

        fallback = 0
        for batch in chunked(remaining, self.config.batch_size):
            outcomes = await gather_batch(batch, self.measure_direct)
            for node, latency in outcomes:
                if latency is not None:
                    node.latency = latency
                    fallback += 1

        logger.info(
            "Latency: %d multi-region, %d direct, %d unmeasured",
            len(targets) - len(remaining),
            fallback,
            len(remaining) - fallback,
        )

    # ------------------------------------------------------------------
    # Multi-region
    # ------------------------------------------------------------------

    async def measure_regions(self, ips: list[str]) -> dict[str, Latency]:
        """Ask every configured region to measure *ips* in one call each."""
        regions = self.config.region_endpoints
        if not regions or not ips:
            return {}

        names = list(regions)
        replies = await asyncio.gather(
            *(self._measure_region(regions[name], ips) for name in names),
        )
        by_region = {name: reply for name, reply in zip(names, replies) if reply}
        logger.debug(
            "Multi-region: %d/%d region(s) answered", len(by_region), len(names)
        )
        return best_by_ip(by_region)

    async def _measure_region(self, endpoint: str, ips: list[str]) -> dict[str, float]:
        url = f"{endpoint.rstrip('/')}/measure-batch"
        try:
            resp = await self.client.http.post(
                url, json={"targets": ips}, timeout=self.config.region_batch_timeout
            )
            resp.raise_for_status()
            return parse_region_reply(resp.json())
        except (httpx.HTTPError, ValueError) as exc:
            logger.warning("Region worker %s failed: %s", url, exc)
            return {}

    # ------------------------------------------------------------------
    # Direct fallbacks
    # ------------------------------------------------------------------

    async def measure_direct(self, node: NodeRecord) -> Latency | None:
        """TTFB over the candidate ports, then a full round-trip."""
        timeout = self.config.enrichment_timeout

        async def ttfb(target: str) -> float | None:
            return await self.client.time_to_first_byte(target, timeout)

        hit = await probe_ports(node, ttfb, self.config.ports)
        if hit is not None:
            return Latency(best_ms=hit.result, method=DIRECT_TTFB)

        async def round_trip(target: str) -> float | None:
            start = time.perf_counter()
            result = await self.client.call(target, "get-version", timeout)
            if result is None:
                return None
            return (time.perf_counter() - start) * 1000

        hit = await probe_ports(node, round_trip, self.config.ports)
        if hit is not None:
            return Latency(best_ms=hit.result, method=ROUND_TRIP)
        return None
