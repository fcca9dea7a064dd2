"""Gossip discoverer: multi-round breadth-first crawl of the pod network.

No single endpoint sees the whole network, and pods on older protocol
versions are often only known to a few peers, so the crawl asks every
newly discovered pod for its own view of the network:

* **Round 0** queries the seed endpoints (aggregators and public pods).
* **Round k** queries the *frontier*: every pod discovered so far whose IP
  has not itself been queried.  Each IP is queried at most once per crawl.
* The crawl stops after a round that adds no new pods, or at the round cap.

The frontier is an immutable tuple built between rounds; the visited set
and the record map are only written in the merge step after a batch has
resolved, never from inside a batch.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any

from podwatch.batch import chunked, gather_batch
from podwatch.config import PodwatchConfig
from podwatch.identity import IdentityResolver, normalize_identity, reconcile_identities
from podwatch.liveness import now_ms
from podwatch.models import NodeRecord, Provenance
from podwatch.pods import parse_pods
from podwatch.prober import probe_ports
from podwatch.rpc import RpcClient

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class FrontierEntry:
    """One IP to ask for its peer list, with the port it last answered on."""

    ip: str
    port_hint: int | None = None


@dataclass
class DiscoveryResult:
    """Outcome of one crawl.

    Attributes:
        nodes: Deduplicated records, after global identity reconciliation.
        rounds: Peer-of-peer rounds executed after the seed round.
        queried: Number of distinct IPs queried for peers.
        seed_successes: Seed endpoints that returned at least one pod.
        new_per_round: New keys discovered in each peer-of-peer round.
    """

    nodes: list[NodeRecord]
    rounds: int = 0
    queried: int = 0
    seed_successes: int = 0
    new_per_round: list[int] = field(default_factory=list)


class DiscoveryError(Exception):
    """Raised when a crawl discovers no pods at all."""


class GossipDiscoverer:
    """Crawls the gossip network from the configured seeds.

    Args:
        client: RPC client used for every call.
        config: Seeds, round cap, batch size, timeouts and default ports.
    """

    def __init__(self, client: RpcClient, config: PodwatchConfig) -> None:
        self._client = client
        self._config = config

    async def discover(self, now: int | None = None) -> DiscoveryResult:
        """Run the full crawl and return the reconciled node set.

        Raises:
            DiscoveryError: If no seed or peer returned a single pod.
        """
        now = now_ms() if now is None else now
        resolver = IdentityResolver()
        visited: set[str] = set()

        seed_successes = await self._seed_round(resolver, visited, now)
        logger.info(
            "Seed round: %d/%d endpoint(s) answered, %d pod(s) known",
            seed_successes,
            len(self._seed_targets()),
            len(resolver),
        )

        result = DiscoveryResult(nodes=[], seed_successes=seed_successes)
        for round_no in range(1, self._config.round_cap + 1):
            frontier = build_frontier(resolver.records(), visited)
            if not frontier:
                logger.info("Round %d: frontier empty, stopping", round_no)
                break

            result.rounds = round_no
            new_keys = await self._expand(frontier, resolver, visited, now, round_no)
            result.new_per_round.append(new_keys)
            if new_keys == 0:
                logger.info("Round %d: no new pods, stopping", round_no)
                break

        await self._backfill_identities(resolver)

        result.nodes = reconcile_identities(resolver.records())
        if not result.nodes:
            raise DiscoveryError(
                f"No pods discovered from {len(self._seed_targets())} seed endpoint(s)"
            )
        result.queried = len(visited)
        logger.info(
            "Discovery complete: %d pod(s) after %d round(s), %d IP(s) queried",
            len(result.nodes),
            result.rounds,
            result.queried,
        )
        return result

    # ------------------------------------------------------------------
    # Seed round
    # ------------------------------------------------------------------

    def _seed_targets(self) -> list[str]:
        return [*self._config.proxy_endpoints, *self._config.seed_endpoints]

    async def _seed_round(
        self,
        resolver: IdentityResolver,
        visited: set[str],
        now: int,
    ) -> int:
        targets = self._seed_targets()
        successes = 0

        for batch in chunked(targets, self._config.batch_size):
            outcomes = await gather_batch(batch, self.fetch_peer_list)

            # Single-writer merge step.
            for target, payload in outcomes:
                host = _seed_host(target)
                if host:
                    visited.add(host)
                if not payload:
                    logger.debug("Seed %s returned no pods", target)
                    continue
                records = parse_pods(payload, Provenance.SEED_GOSSIP, now)
                if records:
                    successes += 1
                for record in records:
                    resolver.add(record)
                logger.debug("Seed %s: %d pod(s)", target, len(records))

        return successes

    # ------------------------------------------------------------------
    # Peer-of-peer rounds
    # ------------------------------------------------------------------

    async def _expand(
        self,
        frontier: tuple[FrontierEntry, ...],
        resolver: IdentityResolver,
        visited: set[str],
        now: int,
        round_no: int,
    ) -> int:
        """Query every frontier IP for its peers; return new keys added."""
        logger.info(
            "Round %d/%d: querying %d pod(s) for peers",
            round_no,
            self._config.round_cap,
            len(frontier),
        )
        new_keys = 0
        answered = 0

        for batch in chunked(frontier, self._config.batch_size):
            outcomes = await gather_batch(batch, self._query_entry)

            # Single-writer merge step.
            for entry, hit in outcomes:
                visited.add(entry.ip)
                if hit is None:
                    continue
                port, payload = hit
                answered += 1
                _remember_port(resolver, entry.ip, port)
                for record in parse_pods(payload, Provenance.PEER_GOSSIP, now):
                    if resolver.add(record):
                        new_keys += 1

        logger.info(
            "Round %d: %d/%d answered, %d new pod(s)",
            round_no,
            answered,
            len(frontier),
            new_keys,
        )
        return new_keys

    async def _query_entry(self, entry: FrontierEntry) -> tuple[int, Any] | None:
        probe_node = NodeRecord(address=f"{entry.ip}:0", rpc_port=entry.port_hint)
        hit = await probe_ports(probe_node, self.fetch_peer_list, self._config.ports)
        if hit is None:
            return None
        return hit.port, hit.result

    async def fetch_peer_list(self, target: str) -> Any | None:
        """Ask *target* for its peer list.

        Tries ``get-pods-with-stats`` first and falls back to ``get-pods``
        for pods too old to know the richer method.

        Returns:
            The raw RPC result when it contains at least one pod, else
            ``None``.
        """
        rich = await self._client.call(
            target, "get-pods-with-stats", self._config.discovery_timeout
        )
        if rich is not None and parse_pods(rich, Provenance.PEER_GOSSIP):
            return rich

        basic = await self._client.call(
            target, "get-pods", self._config.basic_discovery_timeout
        )
        if basic is not None and parse_pods(basic, Provenance.PEER_GOSSIP):
            return basic
        return None

    # ------------------------------------------------------------------
    # Identity backfill
    # ------------------------------------------------------------------

    async def _backfill_identities(self, resolver: IdentityResolver) -> None:
        """Ask anonymous pods for their pubkey before global reconciliation."""
        anonymous = [r for r in resolver.records() if r.identity is None and r.address]
        if not anonymous:
            return

        found = 0
        for batch in chunked(anonymous, self._config.batch_size):
            outcomes = await gather_batch(batch, self._fetch_identity)
            for record, hit in outcomes:
                if hit is None:
                    continue
                record.identity, port = hit
                record.rpc_port = record.rpc_port or port
                found += 1

        logger.info("Identity backfill: %d/%d anonymous pod(s) resolved", found, len(anonymous))

    async def _fetch_identity(self, record: NodeRecord) -> tuple[str, int] | None:
        probe_node = NodeRecord(address=record.address, rpc_port=record.rpc_port)
        timeout = self._config.enrichment_timeout

        for method in ("get-version", "get-stats"):

            async def attempt(target: str, method: str = method) -> Any | None:
                result = await self._client.call(target, method, timeout)
                if isinstance(result, dict) and normalize_identity(result.get("pubkey")):
                    return result
                return None

            hit = await probe_ports(probe_node, attempt, self._config.ports)
            if hit is not None:
                return normalize_identity(hit.result.get("pubkey")), hit.port
        return None


def build_frontier(
    records: list[NodeRecord],
    visited: set[str],
) -> tuple[FrontierEntry, ...]:
    """Return the unvisited IPs among *records*, in discovery order.

    Each IP appears once even when several records share it.
    """
    entries: dict[str, FrontierEntry] = {}
    for record in sorted(records, key=lambda r: r.sequence):
        ip = record.ip
        if not ip or ip in visited or ip in entries:
            continue
        entries[ip] = FrontierEntry(ip=ip, port_hint=record.rpc_port)
    return tuple(entries.values())


def _remember_port(resolver: IdentityResolver, ip: str, port: int) -> None:
    for record in resolver.records():
        if record.ip == ip and record.rpc_port is None:
            record.rpc_port = port


def _seed_host(target: str) -> str | None:
    """Host of a direct ``ip:port`` seed; aggregator URLs return ``None``."""
    if target.startswith(("http://", "https://")):
        return None
    host, _, _ = target.rpartition(":")
    return host or target
