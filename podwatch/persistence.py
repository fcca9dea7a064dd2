"""SQLite persistence: nodes, refresh runs, snapshots, activity log, schema migrations."""

import dataclasses
import json
import logging
import sqlite3
import uuid
from datetime import UTC, datetime
from pathlib import Path

from podwatch.models import (
    ActivityEvent,
    ActivityType,
    GeoLocation,
    Latency,
    LifecycleState,
    NetworkSnapshot,
    NodeMetrics,
    NodeRecord,
    RefreshRun,
)

logger = logging.getLogger(__name__)

_SCHEMA_VERSION = 2

_SCHEMA_V1 = """\
CREATE TABLE IF NOT EXISTS refresh_runs (
    id                TEXT PRIMARY KEY,
    timestamp         TEXT NOT NULL,
    node_count        INTEGER NOT NULL,
    discovered_count  INTEGER NOT NULL,
    duration_seconds  REAL NOT NULL,
    rounds            INTEGER NOT NULL DEFAULT 0,
    meta              TEXT NOT NULL DEFAULT '{}'
);

CREATE TABLE IF NOT EXISTS nodes (
    node_key           TEXT PRIMARY KEY,
    identity           TEXT,
    address            TEXT,
    previous_addresses TEXT NOT NULL DEFAULT '[]',
    version            TEXT,
    state              TEXT NOT NULL,
    last_seen          INTEGER,
    seen_in_gossip     INTEGER NOT NULL,
    rpc_port           INTEGER,
    is_public          INTEGER,
    metrics            TEXT NOT NULL DEFAULT '{}',
    latency            TEXT,
    balance            REAL,
    is_registered      INTEGER,
    credits            REAL,
    location           TEXT,
    first_seen_at      TEXT NOT NULL,
    updated_at         TEXT NOT NULL,
    refresh_run_id     TEXT
);

CREATE TABLE IF NOT EXISTS snapshots (
    id                   TEXT PRIMARY KEY,
    timestamp            TEXT NOT NULL,
    totals               TEXT NOT NULL,
    averages             TEXT NOT NULL,
    version_distribution TEXT NOT NULL,
    countries            INTEGER NOT NULL,
    cities               INTEGER NOT NULL,
    health               TEXT NOT NULL,
    nodes                TEXT NOT NULL,
    refresh_run_id       TEXT
);

CREATE INDEX IF NOT EXISTS idx_snapshots_timestamp ON snapshots (timestamp);
"""

_SCHEMA_V2 = """\
CREATE TABLE IF NOT EXISTS activity_logs (
    id              TEXT PRIMARY KEY,
    timestamp       TEXT NOT NULL,
    node_key        TEXT NOT NULL,
    address         TEXT,
    type            TEXT NOT NULL,
    message         TEXT NOT NULL,
    country_code    TEXT,
    data            TEXT NOT NULL DEFAULT '{}',
    refresh_run_id  TEXT
);

CREATE INDEX IF NOT EXISTS idx_activity_timestamp ON activity_logs (timestamp);
CREATE INDEX IF NOT EXISTS idx_activity_node ON activity_logs (node_key, timestamp);
"""


class PersistenceError(Exception):
    """Raised when the store cannot be read or a cycle cannot be written."""


def init_db(db_path: str) -> sqlite3.Connection:
    """Open (or create) the SQLite database and apply pending migrations.

    Args:
        db_path: Filesystem path for the database, or ``":memory:"`` for
            an in-memory database (useful in tests).

    Returns:
        An open ``sqlite3.Connection`` with WAL journal mode.
    """
    if db_path != ":memory:":
        path = Path(db_path).expanduser()
        path.parent.mkdir(parents=True, exist_ok=True)
        db_path = str(path)
    conn = sqlite3.connect(db_path)
    conn.execute("PRAGMA journal_mode = WAL")
    conn.row_factory = sqlite3.Row
    _migrate(conn)
    return conn


# ------------------------------------------------------------------
# Nodes
# ------------------------------------------------------------------


def load_nodes(conn: sqlite3.Connection) -> list[NodeRecord]:
    """Load every persisted node, in first-seen order.

    Raises:
        PersistenceError: If the query fails.
    """
    try:
        rows = conn.execute("SELECT * FROM nodes ORDER BY first_seen_at, node_key").fetchall()
    except sqlite3.Error as exc:
        raise PersistenceError(f"Could not load nodes: {exc}") from exc
    return [_row_to_node(row) for row in rows]


def save_nodes(
    conn: sqlite3.Connection,
    nodes: list[NodeRecord],
    refresh_run_id: str | None = None,
    commit: bool = True,
) -> None:
    """Upsert *nodes* into the ``nodes`` table, keyed by identity.

    Records without an identity are keyed by address.  ``first_seen_at``
    is kept from the existing row on conflict; ``updated_at`` is set to
    now and written back to each record.  Rows are never deleted.

    Args:
        conn: Open database connection (from ``init_db``).
        nodes: Reconciled nodes to write.
        refresh_run_id: The refresh run that produced them.
        commit: Commit when done; ``False`` when part of a larger
            transaction (see :func:`save_cycle`).
    """
    now = datetime.now(UTC)
    rows = []
    for n in nodes:
        if n.key is None:
            continue
        n.updated_at = now
        if n.first_seen_at is None:
            n.first_seen_at = now
        rows.append(
            (
                n.key,
                n.identity,
                n.address,
                json.dumps(n.previous_addresses),
                n.version,
                n.state.value,
                n.last_seen,
                int(n.seen_in_gossip),
                n.rpc_port,
                _bool_to_int(n.is_public),
                json.dumps(dataclasses.asdict(n.metrics)),
                json.dumps(dataclasses.asdict(n.latency)) if n.latency else None,
                n.balance,
                _bool_to_int(n.is_registered),
                n.credits,
                json.dumps(dataclasses.asdict(n.location)) if n.location else None,
                n.first_seen_at.isoformat(),
                now.isoformat(),
                refresh_run_id,
            )
        )

    conn.executemany(
        """\
        INSERT INTO nodes (
            node_key, identity, address, previous_addresses, version, state,
            last_seen, seen_in_gossip, rpc_port, is_public, metrics, latency,
            balance, is_registered, credits, location,
            first_seen_at, updated_at, refresh_run_id
        ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
        ON CONFLICT (node_key) DO UPDATE SET
            identity           = excluded.identity,
            address            = excluded.address,
            previous_addresses = excluded.previous_addresses,
            version            = excluded.version,
            state              = excluded.state,
            last_seen          = excluded.last_seen,
            seen_in_gossip     = excluded.seen_in_gossip,
            rpc_port           = excluded.rpc_port,
            is_public          = excluded.is_public,
            metrics            = excluded.metrics,
            latency            = excluded.latency,
            balance            = excluded.balance,
            is_registered      = excluded.is_registered,
            credits            = excluded.credits,
            location           = excluded.location,
            updated_at         = excluded.updated_at,
            refresh_run_id     = excluded.refresh_run_id
        """,
        rows,
    )
    if commit:
        conn.commit()


def delete_nodes(conn: sqlite3.Connection, keys: list[str], commit: bool = True) -> int:
    """Drop the rows for *keys*; returns how many existed.

    Only used for address-keyed rows that an identity record has absorbed,
    so no node is lost.
    """
    if not keys:
        return 0
    cur = conn.executemany("DELETE FROM nodes WHERE node_key = ?", [(k,) for k in keys])
    if commit:
        conn.commit()
    return cur.rowcount


# ------------------------------------------------------------------
# Refresh runs and snapshots
# ------------------------------------------------------------------


def save_refresh_run(
    conn: sqlite3.Connection,
    run: RefreshRun,
    commit: bool = True,
) -> str:
    """Persist a refresh run and assign it a UUID.

    The generated UUID is written back to ``run.id``.

    Returns:
        The generated UUID string.
    """
    run_id = uuid.uuid4().hex
    run.id = run_id
    conn.execute(
        "INSERT INTO refresh_runs (id, timestamp, node_count, discovered_count, "
        "duration_seconds, rounds, meta) VALUES (?, ?, ?, ?, ?, ?, ?)",
        (
            run_id,
            run.timestamp.isoformat(),
            run.node_count,
            run.discovered_count,
            run.duration_seconds,
            run.rounds,
            json.dumps(run.meta),
        ),
    )
    if commit:
        conn.commit()
    return run_id


def save_snapshot(
    conn: sqlite3.Connection,
    snapshot: NetworkSnapshot,
    refresh_run_id: str | None = None,
    commit: bool = True,
) -> str:
    """Persist a network snapshot; the generated id is written back."""
    snapshot_id = uuid.uuid4().hex
    snapshot.id = snapshot_id
    conn.execute(
        "INSERT INTO snapshots (id, timestamp, totals, averages, version_distribution, "
        "countries, cities, health, nodes, refresh_run_id) "
        "VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)",
        (
            snapshot_id,
            snapshot.timestamp.isoformat(),
            json.dumps(snapshot.totals),
            json.dumps(snapshot.averages),
            json.dumps(snapshot.version_distribution),
            snapshot.countries,
            snapshot.cities,
            json.dumps(snapshot.health),
            json.dumps(snapshot.nodes),
            refresh_run_id,
        ),
    )
    if commit:
        conn.commit()
    return snapshot_id


def load_snapshots(conn: sqlite3.Connection, limit: int = 100) -> list[NetworkSnapshot]:
    """Return the most recent snapshots, newest first."""
    rows = conn.execute(
        "SELECT * FROM snapshots ORDER BY timestamp DESC LIMIT ?", (limit,)
    ).fetchall()
    return [
        NetworkSnapshot(
            id=row["id"],
            timestamp=datetime.fromisoformat(row["timestamp"]),
            totals=json.loads(row["totals"]),
            averages=json.loads(row["averages"]),
            version_distribution=json.loads(row["version_distribution"]),
            countries=row["countries"],
            cities=row["cities"],
            health=json.loads(row["health"]),
            nodes=json.loads(row["nodes"]),
        )
        for row in rows
    ]


# ------------------------------------------------------------------
# Activity log
# ------------------------------------------------------------------


def save_activity(
    conn: sqlite3.Connection,
    events: list[ActivityEvent],
    refresh_run_id: str | None = None,
    commit: bool = True,
) -> None:
    """Append *events* to ``activity_logs``; ids are written back."""
    rows = []
    for event in events:
        event.id = uuid.uuid4().hex
        rows.append(
            (
                event.id,
                event.timestamp.isoformat(),
                event.node_key,
                event.address,
                event.type.value,
                event.message,
                event.country_code,
                json.dumps(event.data),
                refresh_run_id,
            )
        )
    conn.executemany(
        "INSERT INTO activity_logs (id, timestamp, node_key, address, type, message, "
        "country_code, data, refresh_run_id) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)",
        rows,
    )
    if commit:
        conn.commit()


def load_activity(
    conn: sqlite3.Connection,
    node_key: str | None = None,
    activity_type: ActivityType | None = None,
    limit: int = 50,
) -> list[ActivityEvent]:
    """Return the most recent activity, newest first.

    Args:
        conn: Open database connection.
        node_key: Only events for this node.
        activity_type: Only events of this type.
        limit: Maximum number of events.

    Raises:
        PersistenceError: If the query fails.
    """
    clauses = []
    params: list[object] = []
    if node_key:
        clauses.append("node_key = ?")
        params.append(node_key)
    if activity_type is not None:
        clauses.append("type = ?")
        params.append(activity_type.value)
    where = f"WHERE {' AND '.join(clauses)} " if clauses else ""
    params.append(limit)

    try:
        rows = conn.execute(
            f"SELECT * FROM activity_logs {where}ORDER BY timestamp DESC, rowid DESC LIMIT ?",
            params,
        ).fetchall()
    except sqlite3.Error as exc:
        raise PersistenceError(f"Could not load activity: {exc}") from exc
    return [
        ActivityEvent(
            id=row["id"],
            timestamp=datetime.fromisoformat(row["timestamp"]),
            node_key=row["node_key"],
            address=row["address"],
            type=ActivityType(row["type"]),
            message=row["message"],
            country_code=row["country_code"],
            data=json.loads(row["data"]),
        )
        for row in rows
    ]


def save_cycle(
    conn: sqlite3.Connection,
    run: RefreshRun,
    nodes: list[NodeRecord],
    snapshot: NetworkSnapshot,
    absorbed: list[str] | None = None,
    activity: list[ActivityEvent] | None = None,
) -> str:
    """Write one cycle's run, nodes, snapshot and activity in a single transaction.

    Either everything is committed or nothing is.

    Args:
        conn: Open database connection.
        run: Audit record for the cycle; receives its id.
        nodes: Reconciled nodes to upsert.
        snapshot: Network snapshot for the cycle.
        absorbed: Address-keyed rows merged into identity rows this cycle.
        activity: Activity events detected this cycle.

    Returns:
        The refresh run id.

    Raises:
        PersistenceError: If any write fails; the transaction is rolled back.
    """
    try:
        run_id = save_refresh_run(conn, run, commit=False)
        delete_nodes(conn, absorbed or [], commit=False)
        save_nodes(conn, nodes, run_id, commit=False)
        save_snapshot(conn, snapshot, run_id, commit=False)
        save_activity(conn, activity or [], run_id, commit=False)
        conn.commit()
    except sqlite3.Error as exc:
        conn.rollback()
        run.id = None
        raise PersistenceError(f"Could not persist cycle: {exc}") from exc
    logger.debug(
        "Persisted refresh run %s (%d node(s), %d event(s))",
        run_id,
        len(nodes),
        len(activity or []),
    )
    return run_id


# ------------------------------------------------------------------
# Internal helpers
# ------------------------------------------------------------------


def _bool_to_int(value: bool | None) -> int | None:
    return int(value) if value is not None else None


def _int_to_bool(value: int | None) -> bool | None:
    return bool(value) if value is not None else None


def _row_to_node(row: sqlite3.Row) -> NodeRecord:
    latency = json.loads(row["latency"]) if row["latency"] else None
    location = json.loads(row["location"]) if row["location"] else None
    return NodeRecord(
        identity=row["identity"],
        address=row["address"],
        previous_addresses=json.loads(row["previous_addresses"]),
        version=row["version"],
        state=LifecycleState(row["state"]),
        last_seen=row["last_seen"],
        seen_in_gossip=bool(row["seen_in_gossip"]),
        rpc_port=row["rpc_port"],
        is_public=_int_to_bool(row["is_public"]),
        metrics=NodeMetrics(**json.loads(row["metrics"])),
        latency=Latency(**latency) if latency else None,
        balance=row["balance"],
        is_registered=_int_to_bool(row["is_registered"]),
        credits=row["credits"],
        location=GeoLocation(**location) if location else None,
        first_seen_at=datetime.fromisoformat(row["first_seen_at"]),
        updated_at=datetime.fromisoformat(row["updated_at"]),
    )


def _migrate(conn: sqlite3.Connection) -> None:
    """Apply database migrations up to ``_SCHEMA_VERSION``.

    Uses the SQLite ``user_version`` pragma to track the current schema
    version.
    """
    (current,) = conn.execute("PRAGMA user_version").fetchone()

    if current >= _SCHEMA_VERSION:
        return

    if current < 1:
        logger.debug("Applying schema migration v0 -> v1")
        conn.executescript(_SCHEMA_V1)

    if current < 2:
        logger.debug("Applying schema migration v1 -> v2")
        conn.executescript(_SCHEMA_V2)

    conn.execute(f"PRAGMA user_version = {_SCHEMA_VERSION}")
    conn.commit()
    logger.debug("Database schema at version %d", _SCHEMA_VERSION)
