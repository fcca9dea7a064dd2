"""On-chain enricher: wallet balance / registration and pod credits."""

import logging

import httpx

from podwatch.batch import chunked, gather_batch
from podwatch.cache import TTLCache
from podwatch.enrichers import Enricher
from podwatch.models import NodeRecord

logger = logging.getLogger(__name__)

LAMPORTS_PER_SOL = 1_000_000_000


def lamports_from(body: object) -> int | None:
    """Extract the lamport balance from a ``getBalance`` reply.

    >>> lamports_from({"result": {"context": {"slot": 1}, "value": 2500000000}})
    2500000000
    >>> lamports_from({"error": {"code": -32602}}) is None
    True
    """
    if not isinstance(body, dict) or body.get("error"):
        return None
    result = body.get("result")
    value = result.get("value") if isinstance(result, dict) else result
    if isinstance(value, int) and not isinstance(value, bool) and value >= 0:
        return value
    return None


def parse_credits(body: object) -> dict[str, float]:
    """Map pod pubkey to credits from a credits API reply."""
    if not isinstance(body, dict) or body.get("status") != "success":
        return {}
    entries = body.get("pods_credits")
    if not isinstance(entries, list):
        return {}
    credits: dict[str, float] = {}
    for entry in entries:
        if not isinstance(entry, dict):
            continue
        pod_id = entry.get("pod_id")
        value = entry.get("credits")
        if isinstance(pod_id, str) and isinstance(value, (int, float)) and not isinstance(value, bool):
            credits[pod_id] = float(value)
    return credits


class OnchainEnricher(Enricher):
    """Sets ``balance``, ``is_registered`` and ``credits`` on identified nodes.

    Balances are cached per identity and the credits table per URL, both
    for ``balance_cache_ttl`` seconds.  A failed lookup leaves the fields
    unset so the reconciler carries the persisted values forward.
    """

    name = "onchain"

    def __init__(self, config, client) -> None:
        super().__init__(config, client)
        self.balances: TTLCache[str, float] = TTLCache(config.balance_cache_ttl, name="balance")
        self.credit_tables: TTLCache[str, dict[str, float]] = TTLCache(
            config.balance_cache_ttl, name="credits"
        )

    async def enrich(self, nodes: list[NodeRecord]) -> None:
        self.balances.prune()
        self.credit_tables.prune()
        identified = [n for n in nodes if n.identity]
        if not identified:
            return

        await self._enrich_balances(identified)
        await self._enrich_credits(identified)

    # ------------------------------------------------------------------
    # Balances
    # ------------------------------------------------------------------

    async def _enrich_balances(self, nodes: list[NodeRecord]) -> None:
        missing = self.balances.missing(sorted({n.identity for n in nodes}))
        for batch in chunked(missing, self.config.batch_size):
            for identity, balance in await gather_batch(batch, self.fetch_balance):
                if balance is not None:
                    self.balances.set(identity, balance)

        applied = 0
        for node in nodes:
            balance = self.balances.get(node.identity)
            if balance is None:
                continue
            node.balance = balance
            node.is_registered = balance > 0
            applied += 1
        logger.info(
            "Balances: %d/%d node(s), %d fetched this cycle",
            applied,
            len(nodes),
            len(missing),
        )

    async def fetch_balance(self, identity: str) -> float | None:
        """Return the SOL balance of *identity*, or ``None`` on failure."""
        payload = {"jsonrpc": "2.0", "id": 1, "method": "getBalance", "params": [identity]}
        try:
            resp = await self.client.http.post(
                self.config.solana_rpc_url,
                json=payload,
                timeout=self.config.enrichment_timeout,
            )
            resp.raise_for_status()
            lamports = lamports_from(resp.json())
        except (httpx.HTTPError, ValueError) as exc:
            logger.debug("getBalance failed for %s: %s", identity, exc)
            return None
        if lamports is None:
            return None
        return lamports / LAMPORTS_PER_SOL

    # ------------------------------------------------------------------
    # Credits
    # ------------------------------------------------------------------

    async def _enrich_credits(self, nodes: list[NodeRecord]) -> None:
        url = self.config.credits_url
        if not url:
            return

        table = self.credit_tables.get(url)
        if table is None:
            table = await self.fetch_credits(url)
            if not table:
                return
            self.credit_tables.set(url, table)

        applied = 0
        for node in nodes:
            if node.identity in table:
                node.credits = table[node.identity]
                applied += 1
        logger.info("Credits: %d/%d node(s) listed", applied, len(nodes))

    async def fetch_credits(self, url: str) -> dict[str, float]:
        """Fetch the whole credits table in one call; ``{}`` on failure."""
        try:
            resp = await self.client.http.get(url, timeout=self.config.region_batch_timeout)
            resp.raise_for_status()
            return parse_credits(resp.json())
        except (httpx.HTTPError, ValueError) as exc:
            logger.warning("Credits API %s failed: %s", url, exc)
            return {}
