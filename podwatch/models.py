"""Data models: NodeRecord, NetworkSnapshot, RefreshRun, CycleResult dataclasses."""

import dataclasses
from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import Enum


class LifecycleState(str, Enum):
    """Liveness of a node as derived from gossip (and successful stats calls)."""

    ONLINE = "online"
    SYNCING = "syncing"
    OFFLINE = "offline"


class Provenance(str, Enum):
    """Discovery path that produced a record.

    Only used to break merge ties; never persisted or rendered.
    """

    SEED_GOSSIP = "seed-gossip"
    PEER_GOSSIP = "peer-gossip"
    DIRECT_ENRICHMENT = "direct-enrichment"

    @property
    def rank(self) -> int:
        return _PROVENANCE_RANK[self]


_PROVENANCE_RANK = {
    Provenance.SEED_GOSSIP: 0,
    Provenance.PEER_GOSSIP: 1,
    Provenance.DIRECT_ENRICHMENT: 2,
}


@dataclass
class NodeMetrics:
    """Point-in-time metrics reported by a node.

    Every field is independently optional: ``None`` means "not measured
    this cycle", never zero.
    """

    cpu_percent: float | None = None
    ram_used: int | None = None
    ram_total: int | None = None
    packets_sent: int | None = None
    packets_received: int | None = None
    active_streams: int | None = None
    storage_used: int | None = None
    storage_committed: int | None = None
    storage_usage_percent: float | None = None
    uptime_seconds: int | None = None
    peer_count: int | None = None
    total_pages: int | None = None
    data_operations_handled: int | None = None

    def populated(self) -> int:
        """Return the number of fields that carry a value."""
        return sum(1 for f in dataclasses.fields(self) if getattr(self, f.name) is not None)

    def update_from(self, other: "NodeMetrics") -> None:
        """Overwrite fields with every value *other* has measured."""
        for f in dataclasses.fields(self):
            value = getattr(other, f.name)
            if value is not None:
                setattr(self, f.name, value)

    def fill_from(self, other: "NodeMetrics") -> None:
        """Fill only the gaps in this bag from *other*."""
        for f in dataclasses.fields(self):
            if getattr(self, f.name) is None:
                setattr(self, f.name, getattr(other, f.name))

    @property
    def ram_percent(self) -> float | None:
        if not self.ram_total or self.ram_used is None:
            return None
        return self.ram_used / self.ram_total * 100


@dataclass
class Latency:
    """Best-effort round-trip estimate.

    Attributes:
        best_ms: Best (lowest) latency in milliseconds.
        method: How it was measured: ``"multi-region"``, ``"direct-ttfb"``
            or ``"round-trip"``.
        by_region: Per measurement region latency, when measured in batch.
    """

    best_ms: float
    method: str
    by_region: dict[str, float] = field(default_factory=dict)


@dataclass
class GeoLocation:
    """Geo-IP data for a node's current IP.

    Attributes:
        city: City name from GeoLite2-City.
        country: Country name from GeoLite2-City.
        country_code: ISO 3166-1 alpha-2 country code.
        latitude: Latitude from GeoLite2-City.
        longitude: Longitude from GeoLite2-City.
        asn: Autonomous System Number from GeoLite2-ASN.
        asn_org: AS organization name from GeoLite2-ASN.
        cloud_provider: Cloud provider name (e.g. "AWS", "Hetzner").
        cloud_region: Inferred cloud region (e.g. "fsn1"), if detected.
        is_cloud: Whether the IP belongs to a known cloud provider.
    """

    city: str | None = None
    country: str | None = None
    country_code: str | None = None
    latitude: float | None = None
    longitude: float | None = None
    asn: int | None = None
    asn_org: str | None = None
    cloud_provider: str | None = None
    cloud_region: str | None = None
    is_cloud: bool | None = None


@dataclass
class NodeRecord:
    """One provider node as currently understood.

    Gossip parsing fills the discovery fields; enrichers add metrics,
    latency, location and on-chain data; the reconciler carries historical
    fields forward between cycles.

    Attributes:
        identity: Base58 public key, if the node reported a valid one.
        address: ``ip:port`` as last observed.
        previous_addresses: Prior addresses for this identity, oldest first.
        version: Free-text version string reported by the node.
        state: Lifecycle state (see ``podwatch.liveness``).
        last_seen: Epoch milliseconds of the latest gossip sighting.
        seen_in_gossip: Whether this cycle's gossip returned the node.
        rpc_port: Control port that last answered, so probing can skip ahead.
        is_public: Whether the node advertises a public control RPC.
        metrics: Point-in-time metrics.
        latency: Latency estimate, if any measurement succeeded.
        balance: On-chain balance in SOL.
        is_registered: On-chain registration status (balance > 0).
        credits: Pod credits reported by the credits service.
        location: Geo-IP data.
        first_seen_at: When the store first saw this node.
        updated_at: When the store last wrote this node.
        provenance: Discovery path, for merge tie-breaking only.
        sequence: Discovery order within one crawl, for tie-breaking only.
    """

    identity: str | None = None
    address: str | None = None
    previous_addresses: list[str] = field(default_factory=list)
    version: str | None = None
    state: LifecycleState = LifecycleState.OFFLINE
    last_seen: int | None = None
    seen_in_gossip: bool = True
    rpc_port: int | None = None
    is_public: bool | None = None
    metrics: NodeMetrics = field(default_factory=NodeMetrics)
    latency: Latency | None = None

    # -- Historical fields (never cleared by absence) --
    balance: float | None = None
    is_registered: bool | None = None
    credits: float | None = None
    location: GeoLocation | None = None
    first_seen_at: datetime | None = None
    updated_at: datetime | None = None

    # -- Merge bookkeeping --
    provenance: Provenance = field(default=Provenance.SEED_GOSSIP, compare=False)
    sequence: int = field(default=0, compare=False)

    @property
    def ip(self) -> str | None:
        """The host part of ``address``."""
        if not self.address:
            return None
        host, _, _ = self.address.rpartition(":")
        return host or self.address

    @property
    def key(self) -> str | None:
        """Stable key: the identity when set, otherwise the address."""
        return self.identity or self.address or None

    def move_to(self, address: str) -> None:
        """Change the current address, remembering the superseded one."""
        if not address or address == self.address:
            return
        if self.address and self.address not in self.previous_addresses:
            self.previous_addresses.append(self.address)
        if address in self.previous_addresses:
            self.previous_addresses.remove(address)
        self.address = address


@dataclass
class NetworkSnapshot:
    """One full-network snapshot, written after every successful cycle.

    Attributes:
        timestamp: When the snapshot was taken (UTC).
        totals: Node counts keyed by ``total`` and each lifecycle state.
        averages: Averages of variable metrics over nodes reporting them.
        version_distribution: ``version -> count``.
        countries: Number of distinct countries.
        cities: Number of distinct cities.
        health: Health score breakdown (``availability``, ``version_health``,
            ``distribution``, ``overall``).
        nodes: Per-node entries, including nodes offline this cycle.
        id: Row id assigned at persist time.
    """

    timestamp: datetime
    totals: dict[str, int] = field(default_factory=dict)
    averages: dict[str, float | None] = field(default_factory=dict)
    version_distribution: dict[str, int] = field(default_factory=dict)
    countries: int = 0
    cities: int = 0
    health: dict[str, int] = field(default_factory=dict)
    nodes: list[dict] = field(default_factory=list)
    id: str | None = None


@dataclass
class RefreshRun:
    """Audit record for a single refresh cycle.

    Attributes:
        node_count: Number of nodes reconciled.
        discovered_count: Number of nodes seen in this cycle's gossip.
        duration_seconds: Wall-clock duration of the cycle.
        rounds: Discovery rounds executed after the seed round.
        id: UUID assigned at persist time; None until persisted.
        timestamp: When the cycle started (UTC).
        meta: Optional extra information about the run.
    """

    node_count: int
    discovered_count: int
    duration_seconds: float
    rounds: int = 0
    id: str | None = None
    timestamp: datetime = field(
        default_factory=lambda: datetime.now(UTC),
    )
    meta: dict = field(default_factory=dict)


@dataclass
class CycleResult:
    """Outcome of one discovery + enrichment + reconciliation cycle.

    Attributes:
        success: Whether the cycle reached persistence.
        nodes_reconciled: Nodes written (seen and carried-forward).
        nodes_discovered: Nodes seen in this cycle's gossip.
        nodes_offline: Persisted nodes absent from this cycle's gossip.
        duration_seconds: Wall-clock duration.
        error: Failure description, if any.
        run_id: Id of the ``RefreshRun`` row, if persisted.
        nodes: The reconciled nodes (empty on failure).
    """

    success: bool
    nodes_reconciled: int = 0
    nodes_discovered: int = 0
    nodes_offline: int = 0
    duration_seconds: float = 0.0
    error: str | None = None
    run_id: str | None = None
    nodes: list[NodeRecord] = field(default_factory=list)


class ActivityType(str, Enum):
    """Kind of change noticed between a node's stored and current state."""

    NEW_NODE = "new_node"
    NODE_ONLINE = "node_online"
    NODE_OFFLINE = "node_offline"
    NODE_SYNCING = "node_syncing"
    CREDITS_EARNED = "credits_earned"
    PACKETS_EARNED = "packets_earned"


@dataclass
class ActivityEvent:
    """One entry of the network activity log.

    Attributes:
        node_key: Key of the node the event is about.
        type: What happened.
        message: Human-readable one-liner.
        timestamp: When the cycle noticed it (UTC).
        address: The node's address at the time.
        country_code: ISO country code of the node, if located.
        data: Type-specific details (old/new state, deltas, totals).
        id: Row id assigned at persist time.
    """

    node_key: str
    type: ActivityType
    message: str
    timestamp: datetime
    address: str | None = None
    country_code: str | None = None
    data: dict = field(default_factory=dict)
    id: str | None = None
