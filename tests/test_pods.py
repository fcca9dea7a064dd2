"""Tests for podwatch.pods — gossip payload parsing."""

import pytest

from fakes import NOW_MS, NOW_S, PK_A, PK_B, pod
from podwatch.models import LifecycleState, Provenance
from podwatch.pods import extract_pods, parse_metrics, parse_pod, parse_pods


class TestExtractPods:
    """extract_pods accepts every wrapping seen in the wild."""

    def test_bare_list(self) -> None:
        assert extract_pods([{"address": "a"}, "junk"]) == [{"address": "a"}]

    def test_pods_key(self) -> None:
        assert extract_pods({"pods": [{"address": "a"}], "total_count": 1}) == [{"address": "a"}]

    def test_nodes_key(self) -> None:
        assert extract_pods({"nodes": [{"address": "a"}]}) == [{"address": "a"}]

    def test_nested_result(self) -> None:
        assert extract_pods({"result": {"pods": [{"address": "a"}]}}) == [{"address": "a"}]

    def test_unrecognised_is_empty(self) -> None:
        assert extract_pods({"total_count": 3}) == []
        assert extract_pods("nope") == []
        assert extract_pods(None) == []


class TestParseMetrics:
    def test_snake_and_camel_case(self) -> None:
        metrics = parse_metrics({"cpu_percent": 12.5, "ramUsed": 100, "uptime": 3600})
        assert metrics.cpu_percent == 12.5
        assert metrics.ram_used == 100
        assert metrics.uptime_seconds == 3600

    def test_file_size_maps_to_storage_used(self) -> None:
        assert parse_metrics({"file_size": 2048}).storage_used == 2048

    def test_non_numeric_ignored(self) -> None:
        metrics = parse_metrics({"cpu_percent": "high", "active_streams": True})
        assert metrics.cpu_percent is None
        assert metrics.active_streams is None
        assert metrics.populated() == 0


class TestParsePod:
    def test_full_pod(self) -> None:
        record = parse_pod(
            pod(PK_A, "1.2.3.4:9001", rpc_port=6000, is_public=True, cpu_percent=4.0),
            Provenance.SEED_GOSSIP,
            NOW_MS,
        )
        assert record is not None
        assert record.identity == PK_A
        assert record.address == "1.2.3.4:9001"
        assert record.version == "0.8.0"
        assert record.rpc_port == 6000
        assert record.is_public is True
        assert record.metrics.cpu_percent == 4.0
        assert record.last_seen == NOW_MS
        assert record.state is LifecycleState.ONLINE
        assert record.seen_in_gossip is True
        assert record.provenance is Provenance.SEED_GOSSIP

    def test_stale_pod_classified(self) -> None:
        record = parse_pod(pod(PK_A, "1.2.3.4:9001", last_seen=NOW_S - 1800), Provenance.PEER_GOSSIP, NOW_MS)
        assert record is not None
        assert record.state is LifecycleState.SYNCING

    def test_invalid_pubkey_becomes_anonymous(self) -> None:
        record = parse_pod(pod("pubkey7", "1.2.3.4:9001"), Provenance.PEER_GOSSIP, NOW_MS)
        assert record is not None
        assert record.identity is None
        assert record.key == "1.2.3.4:9001"

    def test_neither_identity_nor_address_dropped(self) -> None:
        assert parse_pod(pod("pubkey7", None), Provenance.PEER_GOSSIP, NOW_MS) is None

    def test_identity_without_address_kept(self) -> None:
        record = parse_pod(pod(PK_B, None), Provenance.PEER_GOSSIP, NOW_MS)
        assert record is not None
        assert record.key == PK_B

    def test_bad_rpc_port_ignored(self) -> None:
        record = parse_pod(pod(PK_A, "1.2.3.4:9001", rpc_port="6000"), Provenance.PEER_GOSSIP, NOW_MS)
        assert record is not None
        assert record.rpc_port is None

    @pytest.mark.parametrize("rpc_port", [0, -1, 65536, 99999, True])
    def test_out_of_range_rpc_port_ignored(self, rpc_port: object) -> None:
        record = parse_pod(pod(PK_A, "1.2.3.4:9001", rpc_port=rpc_port), Provenance.PEER_GOSSIP, NOW_MS)
        assert record is not None
        assert record.rpc_port is None

    def test_highest_port_kept(self) -> None:
        record = parse_pod(pod(PK_A, "1.2.3.4:9001", rpc_port=65535), Provenance.PEER_GOSSIP, NOW_MS)
        assert record is not None
        assert record.rpc_port == 65535


class TestParsePods:
    def test_skips_unusable(self) -> None:
        result = {"pods": [pod(PK_A, "1.2.3.4:9001"), pod(None, None), pod(PK_B, "5.6.7.8:9001")]}
        records = parse_pods(result, Provenance.SEED_GOSSIP, NOW_MS)
        assert [r.identity for r in records] == [PK_A, PK_B]
