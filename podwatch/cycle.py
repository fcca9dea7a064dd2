"""Refresh cycle: discovery, enrichment, reconciliation and persistence as one unit."""

import asyncio
import logging
import sqlite3
import time
from datetime import UTC, datetime

from podwatch.aggregator import build_snapshot
from podwatch.config import PodwatchConfig
from podwatch.discovery import DiscoveryError, GossipDiscoverer
from podwatch.enrichers import Enricher, get_enricher, run_enrichers
from podwatch.models import CycleResult, RefreshRun
from podwatch.persistence import PersistenceError, load_nodes, save_cycle
from podwatch.reconciler import reconcile
from podwatch.rpc import RpcClient

logger = logging.getLogger(__name__)


def build_enrichers(config: PodwatchConfig, client: RpcClient) -> list[Enricher]:
    """Instantiate the configured enrichers, in configured order.

    Raises:
        ValueError: If a configured name is not a registered enricher.
    """
    return [get_enricher(name, config, client) for name in config.enrichers]


async def run_cycle(
    config: PodwatchConfig,
    conn: sqlite3.Connection,
    client: RpcClient,
    enrichers: list[Enricher] | None = None,
) -> CycleResult:
    """Run one discovery + enrichment + reconciliation cycle.

    A crawl that finds no pods at all leaves the store untouched: it is
    not evidence that any node went down.

    Args:
        config: Loaded application configuration.
        conn: Open database connection (from ``init_db``).
        client: RPC client shared by discovery and enrichment.
        enrichers: Enrichers to run; defaults to ``config.enrichers``.

    Returns:
        A ``CycleResult``; ``success`` is False on total discovery failure
        or a persistence error.
    """
    start = time.monotonic()
    started_at = datetime.now(UTC)

    def failed(error: str) -> CycleResult:
        return CycleResult(
            success=False, error=error, duration_seconds=time.monotonic() - start
        )

    try:
        discovered = await GossipDiscoverer(client, config).discover()
    except DiscoveryError as exc:
        logger.error("Cycle failed: %s", exc)
        return failed(str(exc))

    if enrichers is None:
        owned = build_enrichers(config, client)
        try:
            await run_enrichers(owned, discovered.nodes)
        finally:
            for enricher in owned:
                await enricher.aclose()
    else:
        await run_enrichers(enrichers, discovered.nodes)

    try:
        persisted = load_nodes(conn)
        reconciled = reconcile(discovered.nodes, persisted, now=started_at)
        snapshot = build_snapshot(reconciled.nodes)
        run = RefreshRun(
            node_count=len(reconciled.nodes),
            discovered_count=reconciled.seen,
            duration_seconds=time.monotonic() - start,
            rounds=discovered.rounds,
            timestamp=started_at,
            meta={
                "seed_successes": discovered.seed_successes,
                "queried": discovered.queried,
                "new_per_round": discovered.new_per_round,
                "offline": reconciled.offline,
                "merged": len(reconciled.absorbed),
                "activity": len(reconciled.activity),
            },
        )
        run_id = save_cycle(
            conn,
            run,
            reconciled.nodes,
            snapshot,
            absorbed=reconciled.absorbed,
            activity=reconciled.activity,
        )
    except PersistenceError as exc:
        logger.error("Cycle failed: %s", exc)
        return failed(str(exc))

    result = CycleResult(
        success=True,
        nodes_reconciled=len(reconciled.nodes),
        nodes_discovered=reconciled.seen,
        nodes_offline=reconciled.offline,
        duration_seconds=time.monotonic() - start,
        run_id=run_id,
        nodes=reconciled.nodes,
    )
    logger.info(
        "Cycle complete in %.1fs: %d reconciled (%d seen, %d offline)",
        result.duration_seconds,
        result.nodes_reconciled,
        result.nodes_discovered,
        result.nodes_offline,
    )
    return result


class RefreshRunner:
    """Idempotent "run one cycle" entry point for a scheduler.

    Keeps the RPC client and enrichers (and so their caches) alive across
    cycles.  At most one cycle runs at a time; each is bounded by
    ``config.cycle_timeout``.

    Args:
        config: Loaded application configuration.
        conn: Open database connection.
        client: Optional RPC client; one is created and owned otherwise.
    """

    def __init__(
        self,
        config: PodwatchConfig,
        conn: sqlite3.Connection,
        client: RpcClient | None = None,
    ) -> None:
        self.config = config
        self.conn = conn
        self._owns_client = client is None
        self.client = client or RpcClient()
        self.enrichers = build_enrichers(config, self.client)
        self._running = False

    @property
    def running(self) -> bool:
        return self._running

    async def run_once(self) -> CycleResult:
        """Run a single cycle unless one is already in flight."""
        if self._running:
            logger.warning("Refresh already in progress; skipping")
            return CycleResult(success=False, error="refresh already in progress")

        self._running = True
        start = time.monotonic()
        try:
            return await asyncio.wait_for(
                run_cycle(self.config, self.conn, self.client, self.enrichers),
                timeout=self.config.cycle_timeout,
            )
        except TimeoutError:
            logger.error("Cycle exceeded %.0fs timeout; abandoned", self.config.cycle_timeout)
            return CycleResult(
                success=False,
                error=f"cycle timed out after {self.config.cycle_timeout:.0f}s",
                duration_seconds=time.monotonic() - start,
            )
        finally:
            self._running = False

    async def run_forever(
        self,
        interval: float | None = None,
        iterations: int | None = None,
        on_result=None,
    ) -> None:
        """Run cycles back to back, sleeping *interval* seconds between them.

        Args:
            interval: Seconds to sleep between cycles; defaults to
                ``config.refresh_interval``.
            iterations: Stop after this many cycles (``None``: forever).
            on_result: Optional callback receiving each ``CycleResult``.
        """
        interval = self.config.refresh_interval if interval is None else interval
        done = 0
        while iterations is None or done < iterations:
            result = await self.run_once()
            done += 1
            if on_result is not None:
                on_result(result)
            if iterations is not None and done >= iterations:
                break
            await asyncio.sleep(interval)

    async def aclose(self) -> None:
        for enricher in self.enrichers:
            await enricher.aclose()
        if self._owns_client:
            await self.client.aclose()

    async def __aenter__(self) -> "RefreshRunner":
        return self

    async def __aexit__(self, *exc_info: object) -> None:
        await self.aclose()
