"""Gossip payload parsing: pod lists from ``get-pods`` / ``get-pods-with-stats``."""

import logging
from typing import Any

from podwatch.identity import normalize_identity
from podwatch.liveness import classify, normalize_timestamp
from podwatch.models import NodeMetrics, NodeRecord, Provenance

logger = logging.getLogger(__name__)

MAX_PORT = 65535

# Pod field -> NodeMetrics field.  Pods of different versions use snake or
# camel case, so both spellings are listed.
_METRIC_KEYS: dict[str, tuple[str, ...]] = {
    "cpu_percent": ("cpu_percent", "cpuPercent"),
    "ram_used": ("ram_used", "ramUsed"),
    "ram_total": ("ram_total", "ramTotal"),
    "packets_sent": ("packets_sent", "packetsSent"),
    "packets_received": ("packets_received", "packetsReceived"),
    "active_streams": ("active_streams", "activeStreams"),
    "storage_used": ("storage_used", "storageUsed", "file_size"),
    "storage_committed": ("storage_committed", "storageCommitted"),
    "storage_usage_percent": ("storage_usage_percent", "storageUsagePercent"),
    "uptime_seconds": ("uptime", "uptime_seconds"),
    "peer_count": ("peer_count", "peerCount"),
    "total_pages": ("total_pages", "totalPages"),
    "data_operations_handled": ("data_operations_handled", "dataOperationsHandled"),
}


def extract_pods(result: Any) -> list[dict]:
    """Pull the list of pod objects out of a gossip RPC result.

    Aggregators and pods of different versions wrap the list differently:
    a bare list, ``{"pods": [...]}``, ``{"nodes": [...]}``, or the same
    nested one level under ``result``.  Anything unrecognised yields ``[]``.
    """
    if isinstance(result, list):
        return [p for p in result if isinstance(p, dict)]
    if not isinstance(result, dict):
        return []

    for key in ("pods", "nodes"):
        value = result.get(key)
        if isinstance(value, list):
            return [p for p in value if isinstance(p, dict)]

    nested = result.get("result")
    if nested is not None and nested is not result:
        return extract_pods(nested)

    if result.get("total_count", 0):
        logger.debug(
            "Result reports total_count=%s but carries no pod list (keys: %s)",
            result["total_count"],
            ", ".join(sorted(result)),
        )
    return []


def _is_port(value: Any) -> bool:
    return isinstance(value, int) and not isinstance(value, bool) and 0 < value <= MAX_PORT


def parse_metrics(payload: dict) -> NodeMetrics:
    """Build a ``NodeMetrics`` from a pod or ``get-stats`` payload."""
    values: dict[str, Any] = {}
    for field_name, keys in _METRIC_KEYS.items():
        for key in keys:
            value = payload.get(key)
            if isinstance(value, (int, float)) and not isinstance(value, bool):
                values[field_name] = value
                break
    return NodeMetrics(**values)


def parse_pod(
    pod: dict,
    provenance: Provenance,
    now: int | None = None,
) -> NodeRecord | None:
    """Convert one gossip pod object to a ``NodeRecord``.

    Args:
        pod: Raw pod object.
        provenance: Discovery path that produced it.
        now: Reference time in epoch milliseconds for classification.

    Returns:
        The record, or ``None`` when the pod has neither a valid identity
        nor an address.
    """
    address = pod.get("address") or None
    if address is not None and not isinstance(address, str):
        address = None
    identity = normalize_identity(pod.get("pubkey") or pod.get("publicKey"))

    if identity is None and address is None:
        return None

    raw_last_seen = pod.get("last_seen_timestamp", pod.get("lastSeenTimestamp"))
    rpc_port = pod.get("rpc_port", pod.get("rpcPort"))
    is_public = pod.get("is_public", pod.get("isPublic"))

    return NodeRecord(
        identity=identity,
        address=address,
        version=pod.get("version") or None,
        state=classify(raw_last_seen, now),
        last_seen=normalize_timestamp(raw_last_seen),
        seen_in_gossip=True,
        rpc_port=rpc_port if _is_port(rpc_port) else None,
        is_public=is_public if isinstance(is_public, bool) else None,
        metrics=parse_metrics(pod),
        provenance=provenance,
    )


def parse_pods(
    result: Any,
    provenance: Provenance,
    now: int | None = None,
) -> list[NodeRecord]:
    """Parse every usable pod in a gossip RPC result."""
    records: list[NodeRecord] = []
    skipped = 0
    for pod in extract_pods(result):
        record = parse_pod(pod, provenance, now)
        if record is None:
            skipped += 1
            continue
        records.append(record)
    if skipped:
        logger.debug("Skipped %d pod(s) with neither identity nor address", skipped)
    return records
