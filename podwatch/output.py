"""Output renderer: rich node table, cycle summary, JSON formatter."""

import dataclasses
import json
import logging
import sys
from io import StringIO

from rich.console import Console
from rich.table import Table

from podwatch.models import ActivityEvent, CycleResult, LifecycleState, NodeRecord

logger = logging.getLogger(__name__)

FORMATS = ("table", "json")

_STATE_STYLE = {
    LifecycleState.ONLINE: "green",
    LifecycleState.SYNCING: "yellow",
    LifecycleState.OFFLINE: "red",
}

# Merge bookkeeping never leaves the process.
_INTERNAL_FIELDS = ("provenance", "sequence")


def render(
    nodes: list[NodeRecord],
    fmt: str,
    *,
    result: CycleResult | None = None,
    file: object | None = None,
    width: int | None = None,
) -> None:
    """Dispatch output to the appropriate formatter.

    Args:
        nodes: Nodes to render.
        fmt: Output format: ``"table"`` or ``"json"``.
        result: Cycle outcome to summarise alongside the nodes, if any.
        file: Writable file object for output (default: ``sys.stdout``).
        width: Explicit console width (default: auto-detect).

    Raises:
        ValueError: If *fmt* is not ``"table"`` or ``"json"``.
    """
    if fmt == "table":
        render_table(nodes, result=result, file=file, width=width)
    elif fmt == "json":
        render_json(nodes, result=result, file=file)
    else:
        raise ValueError(f"Unknown output format: {fmt!r}")


# ---------------------------------------------------------------------------
# Table (rich) formatter
# ---------------------------------------------------------------------------


def render_table(
    nodes: list[NodeRecord],
    *,
    result: CycleResult | None = None,
    file: object | None = None,
    width: int | None = None,
) -> None:
    """Render *nodes* as a ``rich`` table followed by a summary line."""
    out = file or sys.stdout
    console = Console(file=out, highlight=False, width=width)

    if result is not None and not result.success:
        console.print(f"[bold red]Refresh failed:[/bold red] {result.error}")
        return

    table = Table(title=f"Pods: {len(nodes)}")
    table.add_column("Identity")
    table.add_column("Address")
    table.add_column("State")
    table.add_column("Version")
    table.add_column("Latency", justify="right")
    table.add_column("CPU %", justify="right")
    table.add_column("RAM %", justify="right")
    table.add_column("Country")

    for node in nodes:
        style = _STATE_STYLE.get(node.state, "")
        table.add_row(
            _short(node.identity),
            _fmt(node.address),
            f"[{style}]{node.state.value}[/{style}]" if style else node.state.value,
            _fmt(node.version),
            _fmt_number(node.latency.best_ms if node.latency else None, "ms"),
            _fmt_number(node.metrics.cpu_percent),
            _fmt_number(node.metrics.ram_percent),
            _fmt(node.location.country if node.location else None),
        )

    console.print(table)
    console.print(_summary(nodes, result))


def _summary(nodes: list[NodeRecord], result: CycleResult | None) -> str:
    counts = {state: 0 for state in LifecycleState}
    for n in nodes:
        counts[n.state] += 1
    line = (
        f"  {len(nodes)} pods: {counts[LifecycleState.ONLINE]} online, "
        f"{counts[LifecycleState.SYNCING]} syncing, "
        f"{counts[LifecycleState.OFFLINE]} offline"
    )
    if result is not None:
        line += f" (cycle {result.duration_seconds:.1f}s, run {result.run_id or '-'})"
    return line


# ---------------------------------------------------------------------------
# JSON formatter
# ---------------------------------------------------------------------------


def render_json(
    nodes: list[NodeRecord],
    *,
    result: CycleResult | None = None,
    file: object | None = None,
) -> None:
    """Render *nodes* (and the cycle outcome, if given) as JSON to *file*."""
    out = file or sys.stdout
    payload: dict = {"nodes": [node_to_dict(n) for n in nodes]}
    if result is not None:
        payload["cycle"] = {
            "success": result.success,
            "nodes_reconciled": result.nodes_reconciled,
            "nodes_discovered": result.nodes_discovered,
            "nodes_offline": result.nodes_offline,
            "duration_seconds": round(result.duration_seconds, 3),
            "error": result.error,
            "run_id": result.run_id,
        }
    json.dump(payload, out, indent=2, default=str)
    out.write("\n")  # type: ignore[union-attr]


# ---------------------------------------------------------------------------
# Activity log
# ---------------------------------------------------------------------------


def render_activity(
    events: list[ActivityEvent],
    fmt: str,
    *,
    file: object | None = None,
    width: int | None = None,
) -> None:
    """Render activity events, newest first, as a table or JSON.

    Raises:
        ValueError: If *fmt* is not ``"table"`` or ``"json"``.
    """
    out = file or sys.stdout
    if fmt == "json":
        payload = [activity_to_dict(e) for e in events]
        json.dump({"activity": payload}, out, indent=2, default=str)
        out.write("\n")  # type: ignore[union-attr]
        return
    if fmt != "table":
        raise ValueError(f"Unknown output format: {fmt!r}")

    console = Console(file=out, highlight=False, width=width)
    table = Table(title=f"Activity: {len(events)}")
    table.add_column("Time")
    table.add_column("Type")
    table.add_column("Node")
    table.add_column("Message")
    for event in events:
        table.add_row(
            event.timestamp.strftime("%Y-%m-%d %H:%M:%S"),
            event.type.value,
            _short(event.node_key),
            event.message,
        )
    console.print(table)


def activity_to_dict(event: ActivityEvent) -> dict:
    data = dataclasses.asdict(event)
    data["type"] = event.type.value
    data["timestamp"] = event.timestamp.isoformat()
    return data


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def node_to_dict(node: NodeRecord) -> dict:
    """Plain-dict form of a node without merge bookkeeping."""
    data = dataclasses.asdict(node)
    for name in _INTERNAL_FIELDS:
        data.pop(name, None)
    data["state"] = node.state.value
    return data


def _short(identity: str | None) -> str:
    """Abbreviate a pubkey to ``first8…last4``."""
    if not identity:
        return "—"
    if len(identity) <= 14:
        return identity
    return f"{identity[:8]}…{identity[-4:]}"


def _fmt(value: object) -> str:
    """``None`` becomes ``"—"``, everything else is stringified."""
    if value is None:
        return "—"
    return str(value)


def _fmt_number(value: float | None, unit: str = "") -> str:
    if value is None:
        return "—"
    return f"{value:.1f}{unit}"


def render_to_string(
    nodes: list[NodeRecord],
    fmt: str,
    *,
    result: CycleResult | None = None,
    width: int = 200,
) -> str:
    """Render to a string instead of stdout; useful for testing."""
    buf = StringIO()
    render(nodes, fmt, result=result, file=buf, width=width)
    return buf.getvalue()
