"""Tests for podwatch.models dataclasses."""

from datetime import UTC, datetime

import pytest

from fakes import PK_A
from podwatch.models import (
    CycleResult,
    LifecycleState,
    NodeMetrics,
    NodeRecord,
    Provenance,
    RefreshRun,
)


class TestNodeRecord:
    """Tests for the NodeRecord dataclass."""

    def test_minimal_construction(self) -> None:
        """Every field has a default; enrichment fields start empty."""
        node = NodeRecord(identity=PK_A, address="1.2.3.4:9001")

        assert node.state == LifecycleState.OFFLINE
        assert node.seen_in_gossip is True
        assert node.previous_addresses == []
        assert node.latency is None
        assert node.location is None
        assert node.balance is None
        assert node.metrics == NodeMetrics()

    def test_key_prefers_identity(self) -> None:
        assert NodeRecord(identity=PK_A, address="1.2.3.4:9001").key == PK_A
        assert NodeRecord(address="1.2.3.4:9001").key == "1.2.3.4:9001"
        assert NodeRecord().key is None

    def test_ip(self) -> None:
        assert NodeRecord(address="1.2.3.4:9001").ip == "1.2.3.4"
        assert NodeRecord(address="1.2.3.4").ip == "1.2.3.4"
        assert NodeRecord().ip is None

    def test_move_to_records_previous(self) -> None:
        node = NodeRecord(address="1.0.0.1:9001")
        node.move_to("1.0.0.2:9001")
        node.move_to("1.0.0.3:9001")
        assert node.address == "1.0.0.3:9001"
        assert node.previous_addresses == ["1.0.0.1:9001", "1.0.0.2:9001"]

    def test_move_back_removes_from_history(self) -> None:
        node = NodeRecord(address="1.0.0.1:9001")
        node.move_to("1.0.0.2:9001")
        node.move_to("1.0.0.1:9001")
        assert node.previous_addresses == ["1.0.0.2:9001"]

    def test_move_to_same_or_empty_is_noop(self) -> None:
        node = NodeRecord(address="1.0.0.1:9001")
        node.move_to("1.0.0.1:9001")
        node.move_to("")
        assert node.previous_addresses == []

    def test_bookkeeping_ignored_in_equality(self) -> None:
        a = NodeRecord(identity=PK_A, provenance=Provenance.SEED_GOSSIP, sequence=1)
        b = NodeRecord(identity=PK_A, provenance=Provenance.PEER_GOSSIP, sequence=9)
        assert a == b


class TestNodeMetrics:
    def test_populated(self) -> None:
        assert NodeMetrics().populated() == 0
        assert NodeMetrics(cpu_percent=0.0, peer_count=3).populated() == 2

    def test_update_from_overwrites_measured_only(self) -> None:
        metrics = NodeMetrics(cpu_percent=10.0, peer_count=3)
        metrics.update_from(NodeMetrics(cpu_percent=20.0))
        assert metrics.cpu_percent == 20.0
        assert metrics.peer_count == 3

    def test_fill_from_fills_gaps_only(self) -> None:
        metrics = NodeMetrics(cpu_percent=10.0)
        metrics.fill_from(NodeMetrics(cpu_percent=20.0, peer_count=3))
        assert metrics.cpu_percent == 10.0
        assert metrics.peer_count == 3

    def test_ram_percent(self) -> None:
        assert NodeMetrics(ram_used=1, ram_total=4).ram_percent == pytest.approx(25.0)
        assert NodeMetrics(ram_used=1, ram_total=0).ram_percent is None
        assert NodeMetrics(ram_total=4).ram_percent is None


class TestProvenance:
    def test_rank_order(self) -> None:
        assert (
            Provenance.SEED_GOSSIP.rank < Provenance.PEER_GOSSIP.rank < Provenance.DIRECT_ENRICHMENT.rank
        )


class TestRefreshRun:
    def test_defaults(self) -> None:
        before = datetime.now(UTC)
        run = RefreshRun(node_count=3, discovered_count=2, duration_seconds=1.0)
        assert run.id is None
        assert run.rounds == 0
        assert run.meta == {}
        assert run.timestamp >= before
        assert run.timestamp.tzinfo is not None


class TestCycleResult:
    def test_failure_defaults(self) -> None:
        result = CycleResult(success=False, error="boom")
        assert result.nodes == []
        assert result.run_id is None
