"""Endpoint prober: try a node's likely control ports in priority order."""

import logging
from dataclasses import dataclass
from typing import Any, Awaitable, Callable

from podwatch.models import NodeRecord
from podwatch.rpc import RpcClient

logger = logging.getLogger(__name__)

DEFAULT_PORTS = (6000, 9000)


@dataclass
class ProbeHit:
    """First successful response from a probe."""

    port: int
    result: Any


def candidate_ports(
    known_port: int | None,
    ports: tuple[int, ...] = DEFAULT_PORTS,
) -> list[int]:
    """Return the ports to try: known port first, then the defaults.

    >>> candidate_ports(7000)
    [7000, 6000, 9000]
    >>> candidate_ports(9000)
    [9000, 6000]
    """
    ordered: list[int] = []
    for port in (known_port, *ports):
        if port and port not in ordered:
            ordered.append(port)
    return ordered


async def probe_ports(
    node: NodeRecord,
    attempt: Callable[[str], Awaitable[Any | None]],
    ports: tuple[int, ...] = DEFAULT_PORTS,
) -> ProbeHit | None:
    """Run *attempt* against ``ip:port`` for each candidate port in turn.

    Ports are never tried in parallel for one node.  On success the working
    port is remembered on ``node.rpc_port``.

    Args:
        node: Node to probe; needs an address.
        attempt: Coroutine taking ``"ip:port"`` and returning a result or
            ``None``.
        ports: Default ports tried after the remembered one.

    Returns:
        A ``ProbeHit`` for the first port that answered, or ``None``.
    """
    ip = node.ip
    if not ip:
        return None

    for port in candidate_ports(node.rpc_port, ports):
        result = await attempt(f"{ip}:{port}")
        if result is not None:
            node.rpc_port = port
            return ProbeHit(port=port, result=result)

    logger.debug("No port answered for %s", ip)
    return None


async def probe(
    client: RpcClient,
    node: NodeRecord,
    method: str,
    timeout: float,
    ports: tuple[int, ...] = DEFAULT_PORTS,
) -> ProbeHit | None:
    """Call *method* on the first of the node's candidate ports that answers."""

    async def attempt(target: str) -> Any | None:
        return await client.call(target, method, timeout)

    return await probe_ports(node, attempt, ports)
