"""Tests for podwatch.output — table and JSON rendering."""

import io
import json
from datetime import UTC, datetime

import pytest

from fakes import PK_A, PK_B
from podwatch.models import (
    ActivityEvent,
    ActivityType,
    CycleResult,
    GeoLocation,
    Latency,
    LifecycleState,
    NodeMetrics,
    NodeRecord,
)
from podwatch.output import _short, node_to_dict, render_activity, render_to_string


def _make_node(**overrides: object) -> NodeRecord:
    defaults: dict = {
        "identity": PK_A,
        "address": "1.2.3.4:9001",
        "version": "0.8.0",
        "state": LifecycleState.ONLINE,
        "metrics": NodeMetrics(cpu_percent=12.34),
        "latency": Latency(best_ms=42.0, method="direct-ttfb"),
        "location": GeoLocation(country="Germany"),
    }
    defaults.update(overrides)
    return NodeRecord(**defaults)


# ---------------------------------------------------------------------------
# Table
# ---------------------------------------------------------------------------


class TestRenderTable:
    def test_rows_and_summary(self) -> None:
        nodes = [_make_node(), _make_node(identity=PK_B, state=LifecycleState.OFFLINE, latency=None)]
        out = render_to_string(nodes, "table")

        assert "Pods: 2" in out
        assert "1.2.3.4:9001" in out
        assert "Germany" in out
        assert "42.0ms" in out
        assert "12.3" in out
        assert "2 pods: 1 online, 0 syncing, 1 offline" in out

    def test_identity_abbreviated(self) -> None:
        out = render_to_string([_make_node()], "table")
        assert _short(PK_A) in out
        assert PK_A not in out

    def test_missing_values_dashed(self) -> None:
        out = render_to_string([NodeRecord(address="1.2.3.4:9001")], "table")
        assert "—" in out

    def test_failed_cycle(self) -> None:
        result = CycleResult(success=False, error="no pods reachable")
        out = render_to_string([], "table", result=result)
        assert "Refresh failed:" in out
        assert "no pods reachable" in out

    def test_cycle_summary(self) -> None:
        result = CycleResult(success=True, duration_seconds=3.21, run_id="abc123")
        out = render_to_string([_make_node()], "table", result=result)
        assert "cycle 3.2s, run abc123" in out


class TestShort:
    @pytest.mark.parametrize(
        ("identity", "expected"),
        [(None, "—"), ("short", "short"), (PK_B, "Bbbbbbbb…bbbb")],
    )
    def test_short(self, identity: str | None, expected: str) -> None:
        assert _short(identity) == expected


# ---------------------------------------------------------------------------
# JSON
# ---------------------------------------------------------------------------


class TestRenderJson:
    def test_nodes_serialised(self) -> None:
        payload = json.loads(render_to_string([_make_node()], "json"))
        (node,) = payload["nodes"]
        assert node["identity"] == PK_A
        assert node["state"] == "online"
        assert node["latency"]["best_ms"] == 42.0
        assert node["location"]["country"] == "Germany"
        assert "cycle" not in payload

    def test_bookkeeping_dropped(self) -> None:
        data = node_to_dict(_make_node())
        assert "provenance" not in data
        assert "sequence" not in data

    def test_cycle_included(self) -> None:
        result = CycleResult(success=True, nodes_reconciled=1, nodes_discovered=1, run_id="r1")
        payload = json.loads(render_to_string([_make_node()], "json", result=result))
        assert payload["cycle"]["run_id"] == "r1"
        assert payload["cycle"]["success"] is True


class TestRenderDispatch:
    def test_unknown_format(self) -> None:
        with pytest.raises(ValueError, match="Unknown output format"):
            render_to_string([], "csv")


# ---------------------------------------------------------------------------
# Activity
# ---------------------------------------------------------------------------


def _event() -> ActivityEvent:
    return ActivityEvent(
        node_key=PK_A,
        type=ActivityType.CREDITS_EARNED,
        message="1.2.3.4:9001 earned 2.50 credits",
        timestamp=datetime(2025, 6, 15, 12, 30, tzinfo=UTC),
        data={"earned": 2.5, "total": 12.5},
        id="e1",
    )


class TestRenderActivity:
    def test_table(self) -> None:
        buf = io.StringIO()
        render_activity([_event()], "table", file=buf, width=160)
        text = buf.getvalue()
        assert "Activity: 1" in text
        assert "2025-06-15 12:30:00" in text
        assert "credits_earned" in text
        assert _short(PK_A) in text
        assert "earned 2.50 credits" in text

    def test_json(self) -> None:
        buf = io.StringIO()
        render_activity([_event()], "json", file=buf)
        (event,) = json.loads(buf.getvalue())["activity"]
        assert event["type"] == "credits_earned"
        assert event["timestamp"] == "2025-06-15T12:30:00+00:00"
        assert event["data"] == {"earned": 2.5, "total": 12.5}

    def test_unknown_format(self) -> None:
        with pytest.raises(ValueError, match="Unknown output format"):
            render_activity([], "csv", file=io.StringIO())
