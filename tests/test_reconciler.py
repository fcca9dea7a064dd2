"""Tests for podwatch.reconciler — merging the current cycle into the store."""

from datetime import UTC, datetime

from fakes import PK_A, PK_B, PK_C
from podwatch.models import ActivityType, GeoLocation, LifecycleState, NodeRecord
from podwatch.reconciler import reconcile

NOW = datetime(2025, 6, 15, 12, 0, tzinfo=UTC)
EARLIER = datetime(2025, 6, 1, 8, 0, tzinfo=UTC)


def _make_node(**overrides) -> NodeRecord:
    defaults = {
        "identity": PK_A,
        "address": "1.0.0.1:9001",
        "version": "0.8.0",
        "state": LifecycleState.ONLINE,
    }
    defaults.update(overrides)
    return NodeRecord(**defaults)


class TestAbsence:
    def test_absent_node_marked_offline(self) -> None:
        persisted = _make_node(
            identity=PK_B,
            balance=2.5,
            is_registered=True,
            credits=120.0,
            location=GeoLocation(country="Germany"),
            first_seen_at=EARLIER,
        )

        result = reconcile([_make_node()], [persisted], now=NOW)

        (b,) = [n for n in result.nodes if n.identity == PK_B]
        assert b.state == LifecycleState.OFFLINE
        assert b.seen_in_gossip is False
        assert b.balance == 2.5
        assert b.is_registered is True
        assert b.credits == 120.0
        assert b.location == GeoLocation(country="Germany")
        assert b.first_seen_at == EARLIER
        assert result.offline == 1
        assert result.seen == 1

    def test_persisted_input_not_mutated(self) -> None:
        persisted = _make_node(identity=PK_B)
        reconcile([], [persisted], now=NOW)
        assert persisted.state == LifecycleState.ONLINE
        assert persisted.seen_in_gossip is True

    def test_never_deletes(self) -> None:
        persisted = [_make_node(identity=pk) for pk in (PK_A, PK_B, PK_C)]
        result = reconcile([], persisted, now=NOW)
        assert {n.identity for n in result.nodes} == {PK_A, PK_B, PK_C}
        assert all(n.state == LifecycleState.OFFLINE for n in result.nodes)


class TestCarryForward:
    def test_historical_fields_filled_from_store(self) -> None:
        persisted = _make_node(balance=1.0, credits=7.0, first_seen_at=EARLIER, rpc_port=6000)
        current = _make_node(version=None)

        (node,) = reconcile([current], [persisted], now=NOW).nodes

        assert node.balance == 1.0
        assert node.credits == 7.0
        assert node.rpc_port == 6000
        assert node.version == "0.8.0"
        assert node.first_seen_at == EARLIER

    def test_fresh_values_win(self) -> None:
        persisted = _make_node(balance=1.0, version="0.7.0")
        current = _make_node(balance=3.0, version="0.8.1")

        (node,) = reconcile([current], [persisted], now=NOW).nodes

        assert node.balance == 3.0
        assert node.version == "0.8.1"

    def test_new_node_gets_first_seen(self) -> None:
        (node,) = reconcile([_make_node()], [], now=NOW).nodes
        assert node.first_seen_at == NOW
        assert node.seen_in_gossip is True


class TestAddressHistory:
    def test_address_change_remembered(self) -> None:
        persisted = _make_node(address="1.0.0.1:9001", previous_addresses=["1.0.0.9:9001"])
        current = _make_node(address="2.0.0.2:9001")

        (node,) = reconcile([current], [persisted], now=NOW).nodes

        assert node.address == "2.0.0.2:9001"
        assert node.previous_addresses == ["1.0.0.9:9001", "1.0.0.1:9001"]

    def test_return_to_old_address_not_listed_as_previous(self) -> None:
        persisted = _make_node(address="2.0.0.2:9001", previous_addresses=["1.0.0.1:9001"])
        current = _make_node(address="1.0.0.1:9001")

        (node,) = reconcile([current], [persisted], now=NOW).nodes

        assert node.previous_addresses == ["2.0.0.2:9001"]

    def test_unchanged_address_adds_nothing(self) -> None:
        (node,) = reconcile([_make_node()], [_make_node()], now=NOW).nodes
        assert node.previous_addresses == []


class TestAnonymousRows:
    def test_identified_node_absorbs_anonymous_row(self) -> None:
        anonymous = _make_node(identity=None, address="1.0.0.5:9001", first_seen_at=EARLIER)
        current = _make_node(identity=PK_C, address="1.0.0.5:9001")

        result = reconcile([current], [anonymous], now=NOW)

        (node,) = result.nodes
        assert node.identity == PK_C
        assert node.first_seen_at == EARLIER
        assert result.offline == 0
        assert result.absorbed == ["1.0.0.5:9001"]
        assert [e.type for e in result.activity] == []

    def test_anonymous_row_kept_when_still_anonymous(self) -> None:
        anonymous = _make_node(identity=None, address="1.0.0.5:9001")
        current = _make_node(identity=None, address="1.0.0.5:9001", version="0.8.1")

        (node,) = reconcile([current], [anonymous], now=NOW).nodes

        assert node.key == "1.0.0.5:9001"
        assert node.version == "0.8.1"

    def test_nothing_absorbed_without_anonymous_rows(self) -> None:
        result = reconcile([_make_node()], [_make_node()], now=NOW)
        assert result.absorbed == []

    def test_unkeyed_records_ignored(self) -> None:
        result = reconcile([NodeRecord(identity=None, address=None)], [], now=NOW)
        assert result.nodes == []


class TestActivity:
    def test_new_node_reported(self) -> None:
        (event,) = reconcile([_make_node()], [], now=NOW).activity
        assert event.type is ActivityType.NEW_NODE
        assert event.node_key == PK_A
        assert event.timestamp == NOW

    def test_absent_node_goes_offline(self) -> None:
        persisted = _make_node(identity=PK_B)

        result = reconcile([], [persisted], now=NOW)

        (event,) = result.activity
        assert event.type is ActivityType.NODE_OFFLINE
        assert event.node_key == PK_B

    def test_already_offline_absent_node_is_quiet(self) -> None:
        persisted = _make_node(identity=PK_B, state=LifecycleState.OFFLINE)
        assert reconcile([], [persisted], now=NOW).activity == []

    def test_credits_growth_against_store(self) -> None:
        result = reconcile([_make_node(credits=9.0)], [_make_node(credits=7.0)], now=NOW)
        assert [e.type for e in result.activity] == [ActivityType.CREDITS_EARNED]
