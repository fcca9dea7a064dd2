"""Aggregator: network snapshot totals, averages, distributions and health score."""

import logging
import re
from datetime import UTC, datetime

from podwatch.models import LifecycleState, NetworkSnapshot, NodeRecord

logger = logging.getLogger(__name__)

_SEMVER = re.compile(r"(\d+)\.(\d+)\.(\d+)")

# Weights of the overall health score.
AVAILABILITY_WEIGHT = 0.40
VERSION_WEIGHT = 0.35
DISTRIBUTION_WEIGHT = 0.25

# Country/city counts at which geographic diversity scores 100.
FULL_COUNTRY_SPREAD = 10
FULL_CITY_SPREAD = 20


def parse_semver(version: str | None) -> tuple[int, int, int] | None:
    """Return the first ``major.minor.patch`` found in *version*.

    >>> parse_semver("v0.8.1-trynet.20250101")
    (0, 8, 1)
    >>> parse_semver("unknown") is None
    True
    """
    if not version:
        return None
    match = _SEMVER.search(version)
    if match is None:
        return None
    return tuple(int(part) for part in match.groups())  # type: ignore[return-value]


def _mean(values: list[float]) -> float | None:
    if not values:
        return None
    return sum(values) / len(values)


def distribution(values: list[str | None]) -> list[tuple[str, int]]:
    """Count non-empty *values*, most common first."""
    counts: dict[str, int] = {}
    for value in values:
        if value:
            counts[value] = counts.get(value, 0) + 1
    return sorted(counts.items(), key=lambda item: item[1], reverse=True)


def health_score(nodes: list[NodeRecord]) -> dict[str, int]:
    """Score the network 0-100 on availability, versions and geography.

    * availability: share of nodes online;
    * version_health: share of version-reporting nodes on the highest
      semantic version seen;
    * distribution: country spread (60 %) and city spread (40 %).
    """
    if not nodes:
        return {"availability": 0, "version_health": 0, "distribution": 0, "overall": 0}

    online = sum(1 for n in nodes if n.state is LifecycleState.ONLINE)
    availability = online / len(nodes) * 100

    versions = [v for v in (parse_semver(n.version) for n in nodes) if v is not None]
    if versions:
        latest = max(versions)
        version_health = sum(1 for v in versions if v == latest) / len(versions) * 100
    else:
        version_health = 0.0

    located = [n.location for n in nodes if n.location is not None]
    countries = {loc.country for loc in located if loc.country}
    cities = {(loc.country, loc.city) for loc in located if loc.city}
    country_spread = min(100.0, len(countries) / FULL_COUNTRY_SPREAD * 100)
    city_spread = min(100.0, len(cities) / FULL_CITY_SPREAD * 100)
    geo = country_spread * 0.6 + city_spread * 0.4

    overall = (
        availability * AVAILABILITY_WEIGHT
        + version_health * VERSION_WEIGHT
        + geo * DISTRIBUTION_WEIGHT
    )
    return {
        "availability": round(availability),
        "version_health": round(version_health),
        "distribution": round(geo),
        "overall": round(overall),
    }


def node_entry(node: NodeRecord) -> dict:
    """Per-node row stored in a snapshot."""
    return {
        "identity": node.key,
        "address": node.address,
        "state": node.state.value,
        "seen_in_gossip": node.seen_in_gossip,
        "latency_ms": node.latency.best_ms if node.latency else None,
        "cpu_percent": node.metrics.cpu_percent,
        "ram_percent": node.metrics.ram_percent,
        "version": node.version,
        "country": node.location.country if node.location else None,
    }


def build_snapshot(
    nodes: list[NodeRecord],
    timestamp: datetime | None = None,
) -> NetworkSnapshot:
    """Summarise the reconciled network.

    Totals and health cover every node, including those carried forward
    offline; metric averages cover only nodes seen this cycle.

    Args:
        nodes: Output of the reconciler.
        timestamp: Snapshot time (default: now, UTC).

    Returns:
        A ``NetworkSnapshot`` ready to persist.
    """
    totals = {"total": len(nodes)}
    for state in LifecycleState:
        totals[state.value] = sum(1 for n in nodes if n.state is state)

    live = [n for n in nodes if n.seen_in_gossip]
    averages = {
        "latency_ms": _mean([n.latency.best_ms for n in live if n.latency]),
        "cpu_percent": _mean([n.metrics.cpu_percent for n in live if n.metrics.cpu_percent is not None]),
        "ram_percent": _mean([n.metrics.ram_percent for n in live if n.metrics.ram_percent is not None]),
        "packets_sent": _mean([n.metrics.packets_sent for n in live if n.metrics.packets_sent is not None]),
        "packets_received": _mean(
            [n.metrics.packets_received for n in live if n.metrics.packets_received is not None]
        ),
        "active_streams": _mean(
            [n.metrics.active_streams for n in live if n.metrics.active_streams is not None]
        ),
        "uptime_seconds": _mean(
            [n.metrics.uptime_seconds for n in live if n.metrics.uptime_seconds is not None]
        ),
    }

    located = [n.location for n in nodes if n.location is not None]
    snapshot = NetworkSnapshot(
        timestamp=timestamp or datetime.now(UTC),
        totals=totals,
        averages=averages,
        version_distribution=dict(distribution([n.version for n in nodes])),
        countries=len({loc.country for loc in located if loc.country}),
        cities=len({(loc.country, loc.city) for loc in located if loc.city}),
        health=health_score(nodes),
        nodes=[node_entry(n) for n in nodes],
    )
    logger.debug(
        "Snapshot: %d node(s), health %d", totals["total"], snapshot.health["overall"]
    )
    return snapshot
