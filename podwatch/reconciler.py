"""Reconciler: merge this cycle's node set against the persisted set."""

import copy
import logging
from dataclasses import dataclass, field
from datetime import UTC, datetime

from podwatch.activity import detect_activity
from podwatch.models import ActivityEvent, LifecycleState, NodeRecord

logger = logging.getLogger(__name__)

# Fields that describe the node rather than this cycle's measurement; they
# fall back to the persisted value when this cycle produced none.
HISTORICAL_FIELDS = (
    "version",
    "rpc_port",
    "is_public",
    "balance",
    "is_registered",
    "credits",
    "location",
    "first_seen_at",
)


@dataclass
class ReconcileResult:
    """Every node ever seen, with this cycle's liveness applied.

    Attributes:
        nodes: Seen nodes first (in discovery order), then carried-forward
            offline ones.
        seen: Nodes present in this cycle's gossip.
        offline: Persisted nodes absent from this cycle's gossip.
        absorbed: Keys of address-keyed rows folded into an identity
            record this cycle; the store drops them.
        activity: Changes against the stored state, for the activity log.
    """

    nodes: list[NodeRecord]
    seen: int = 0
    offline: int = 0
    absorbed: list[str] = field(default_factory=list)
    activity: list[ActivityEvent] = field(default_factory=list)


def reconcile(
    current: list[NodeRecord],
    persisted: list[NodeRecord],
    now: datetime | None = None,
) -> ReconcileResult:
    """Merge *current* into *persisted* without losing any node.

    Args:
        current: This cycle's deduplicated, enriched records.
        persisted: The full node set loaded from the store.
        now: Timestamp used for ``first_seen_at`` of brand-new nodes.

    Returns:
        A ``ReconcileResult`` covering every node in either input.
    """
    now = now or datetime.now(UTC)
    by_key = {r.key: r for r in persisted if r.key}
    anonymous_by_address = {r.address: r for r in persisted if not r.identity and r.address}
    consumed: set[str] = set()
    absorbed: list[str] = []
    activity: list[ActivityEvent] = []

    nodes: list[NodeRecord] = []
    for record in current:
        key = record.key
        if key is None:
            continue
        record.seen_in_gossip = True

        previous = by_key.get(key)
        if previous is not None:
            consumed.add(key)
            carry_history(record, previous)

        # A node that was anonymous last cycle and has since reported an
        # identity supersedes the address-keyed row.
        if record.identity and record.address in anonymous_by_address:
            shadow = anonymous_by_address[record.address]
            consumed.add(shadow.address)
            if shadow.address not in absorbed:
                absorbed.append(shadow.address)
            carry_history(record, shadow)
            previous = previous or shadow

        if record.first_seen_at is None:
            record.first_seen_at = now
        activity.extend(detect_activity(record, previous, now))
        nodes.append(record)

    offline = 0
    for key, previous in by_key.items():
        if key in consumed:
            continue
        record = mark_absent(previous)
        activity.extend(detect_activity(record, previous, now))
        nodes.append(record)
        offline += 1

    # Rows written this cycle must survive even if an address key was absorbed.
    written = {n.key for n in nodes}
    absorbed = [k for k in absorbed if k not in written]

    logger.info(
        "Reconciled %d node(s): %d seen, %d carried forward offline, %d merged, %d event(s)",
        len(nodes),
        len(nodes) - offline,
        offline,
        len(absorbed),
        len(activity),
    )
    return ReconcileResult(
        nodes=nodes,
        seen=len(nodes) - offline,
        offline=offline,
        absorbed=absorbed,
        activity=activity,
    )


def carry_history(record: NodeRecord, previous: NodeRecord) -> None:
    """Fill *record*'s historical gaps and address history from *previous*."""
    for name in HISTORICAL_FIELDS:
        if getattr(record, name) is None:
            setattr(record, name, copy.deepcopy(getattr(previous, name)))

    history = [
        *previous.previous_addresses,
        previous.address,
        *record.previous_addresses,
    ]
    merged: list[str] = []
    for addr in history:
        if addr and addr != record.address and addr not in merged:
            merged.append(addr)
    record.previous_addresses = merged


def mark_absent(previous: NodeRecord) -> NodeRecord:
    """Return a copy of a persisted record that gossip no longer reports."""
    record = copy.deepcopy(previous)
    record.seen_in_gossip = False
    record.state = LifecycleState.OFFLINE
    return record
