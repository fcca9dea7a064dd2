"""CLI entry point for the podwatch tool."""

import asyncio
import logging
import sys

import click

from podwatch.config import ConfigError, PodwatchConfig, load_config
from podwatch.cycle import RefreshRunner
from podwatch.models import ActivityType, CycleResult
from podwatch.output import FORMATS, render, render_activity
from podwatch.persistence import PersistenceError, init_db, load_activity, load_nodes

logger = logging.getLogger(__name__)


@click.group()
@click.option(
    "--config",
    "-c",
    "config_path",
    default=None,
    type=click.Path(exists=False),
    help="Path to YAML config file (default: ~/.podwatch/config.yaml).",
)
@click.option("--verbose", "-v", is_flag=True, help="Enable debug logging.")
@click.pass_context
def main(ctx: click.Context, config_path: str | None, verbose: bool) -> None:
    """Discover and track the pods of a gossip storage network."""
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.INFO,
        format="%(levelname)s: %(message)s",
    )
    # httpx logs every request at INFO.
    logging.getLogger("httpx").setLevel(logging.WARNING)

    try:
        cfg = load_config(config_path)
    except (ConfigError, FileNotFoundError) as exc:
        click.echo(f"Error: {exc}", err=True)
        sys.exit(1)

    logger.debug("Config loaded: %s", cfg)
    ctx.obj = cfg


_format_option = click.option(
    "--format",
    "-f",
    "output_format",
    default="table",
    type=click.Choice(FORMATS, case_sensitive=False),
    show_default=True,
    help="Output format.",
)


@main.command()
@_format_option
@click.pass_obj
def refresh(cfg: PodwatchConfig, output_format: str) -> None:
    """Run one discovery, enrichment and reconciliation cycle."""
    result = asyncio.run(_run_cycles(cfg, iterations=1, output_format=output_format))
    if result is None or not result.success:
        sys.exit(1)


@main.command()
@click.option(
    "--interval",
    "-i",
    type=float,
    default=None,
    help="Seconds between cycles (default: refresh_interval from config).",
)
@click.option(
    "--count",
    "-n",
    type=int,
    default=None,
    help="Stop after this many cycles (default: run until interrupted).",
)
@_format_option
@click.pass_obj
def watch(cfg: PodwatchConfig, interval: float | None, count: int | None, output_format: str) -> None:
    """Run cycles repeatedly on an interval."""
    try:
        asyncio.run(
            _run_cycles(cfg, iterations=count, output_format=output_format, interval=interval)
        )
    except KeyboardInterrupt:
        click.echo("Stopped.", err=True)


@main.command()
@_format_option
@click.pass_obj
def nodes(cfg: PodwatchConfig, output_format: str) -> None:
    """List the persisted network without refreshing it."""
    conn = init_db(cfg.db_path)
    try:
        records = load_nodes(conn)
    except PersistenceError as exc:
        click.echo(f"Error: {exc}", err=True)
        sys.exit(1)
    finally:
        conn.close()
    render(records, output_format)


@main.command()
@click.option("--node", "node_key", default=None, help="Only events for this identity or address.")
@click.option(
    "--type",
    "activity_type",
    default=None,
    type=click.Choice([t.value for t in ActivityType], case_sensitive=False),
    help="Only events of this type.",
)
@click.option("--limit", "-l", type=int, default=50, show_default=True, help="Maximum events to show.")
@_format_option
@click.pass_obj
def activity(
    cfg: PodwatchConfig,
    node_key: str | None,
    activity_type: str | None,
    limit: int,
    output_format: str,
) -> None:
    """Show recent network activity (new nodes, state changes, earnings)."""
    conn = init_db(cfg.db_path)
    try:
        events = load_activity(
            conn,
            node_key=node_key,
            activity_type=ActivityType(activity_type.lower()) if activity_type else None,
            limit=limit,
        )
    except PersistenceError as exc:
        click.echo(f"Error: {exc}", err=True)
        sys.exit(1)
    finally:
        conn.close()
    render_activity(events, output_format)


async def _run_cycles(
    cfg: PodwatchConfig,
    iterations: int | None,
    output_format: str,
    interval: float | None = None,
) -> CycleResult | None:
    """Open the store, run cycles, render each result; return the last one."""
    latest: CycleResult | None = None

    def show(result: CycleResult) -> None:
        nonlocal latest
        latest = result
        render(result.nodes, output_format, result=result)

    conn = init_db(cfg.db_path)
    try:
        try:
            runner = RefreshRunner(cfg, conn)
        except ValueError as exc:
            click.echo(f"Error: {exc}", err=True)
            sys.exit(1)
        async with runner:
            await runner.run_forever(interval=interval, iterations=iterations, on_result=show)
    finally:
        conn.close()
    return latest
