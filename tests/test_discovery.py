"""Tests for podwatch.discovery — multi-round gossip crawl."""

import pytest

from fakes import NOW_MS, PK_A, PK_B, PK_C, PK_D, PK_E, FakeNetwork, make_config, pod
from podwatch.discovery import DiscoveryError, FrontierEntry, GossipDiscoverer, build_frontier
from podwatch.models import NodeRecord

SEED = "9.9.9.9:6000"


async def _discover(net: FakeNetwork, **config: object):
    async with net.client() as client:
        return await GossipDiscoverer(client, make_config(**config)).discover(now=NOW_MS)


class TestBuildFrontier:
    def test_skips_visited_and_duplicates(self) -> None:
        records = [
            NodeRecord(identity=PK_A, address="1.0.0.1:9001", sequence=1),
            NodeRecord(identity=PK_B, address="1.0.0.1:9002", sequence=2),
            NodeRecord(identity=PK_C, address="1.0.0.2:9001", sequence=3, rpc_port=9000),
            NodeRecord(identity=PK_D, address="1.0.0.3:9001", sequence=4),
        ]
        frontier = build_frontier(records, visited={"1.0.0.3"})
        assert frontier == (
            FrontierEntry("1.0.0.1", None),
            FrontierEntry("1.0.0.2", 9000),
        )

    def test_records_without_address_skipped(self) -> None:
        assert build_frontier([NodeRecord(identity=PK_A)], set()) == ()


class TestSeedRound:
    @pytest.mark.asyncio
    async def test_rich_method_preferred(self) -> None:
        net = FakeNetwork()
        net.serve_pods(SEED, [pod(PK_A, "1.0.0.1:9001")])
        net.serve_pods(SEED, [pod(PK_B, "1.0.0.2:9001")], method="get-pods")

        result = await _discover(net)

        assert [n.identity for n in result.nodes] == [PK_A]
        assert result.seed_successes == 1

    @pytest.mark.asyncio
    async def test_falls_back_to_basic_method(self) -> None:
        net = FakeNetwork()
        net.serve_pods(SEED, [pod(PK_B, "1.0.0.2:9001")], method="get-pods")

        result = await _discover(net)

        assert [n.identity for n in result.nodes] == [PK_B]

    @pytest.mark.asyncio
    async def test_proxy_endpoint_queried(self) -> None:
        net = FakeNetwork()
        proxy = "https://rpc1.proxy.test/rpc"
        net.serve_pods(proxy, [pod(PK_A, "1.0.0.1:9001")])

        result = await _discover(net, proxy_endpoints=[proxy], seed_endpoints=[])

        assert [n.identity for n in result.nodes] == [PK_A]

    @pytest.mark.asyncio
    async def test_seed_host_not_requeried(self) -> None:
        net = FakeNetwork()
        net.serve_pods(SEED, [pod(PK_A, "9.9.9.9:9001")])

        result = await _discover(net)

        assert result.rounds == 0
        assert set(net.queried()) == {"http://9.9.9.9:6000/rpc"}

    @pytest.mark.asyncio
    async def test_zero_pods_raises(self) -> None:
        with pytest.raises(DiscoveryError):
            await _discover(FakeNetwork())


class TestPeerRounds:
    @pytest.mark.asyncio
    async def test_peers_of_peers_discovered(self) -> None:
        net = FakeNetwork()
        net.serve_pods(SEED, [pod(PK_A, "1.0.0.1:9001")])
        net.serve_pods("1.0.0.1:6000", [pod(PK_B, "1.0.0.2:9001")])
        net.serve_pods("1.0.0.2:9000", [pod(PK_C, "1.0.0.3:9001")])

        result = await _discover(net)

        assert {n.identity for n in result.nodes} == {PK_A, PK_B, PK_C}
        by_id = {n.identity: n for n in result.nodes}
        assert by_id[PK_A].rpc_port == 6000
        assert by_id[PK_B].rpc_port == 9000

    @pytest.mark.asyncio
    async def test_round_termination_after_quiet_round(self) -> None:
        net = FakeNetwork()
        net.serve_pods(SEED, [pod(PK_A, "1.0.0.1:9001")])
        net.serve_pods("1.0.0.1:6000", [pod(PK_B, "1.0.0.2:9001")])
        net.serve_pods("1.0.0.2:6000", [pod(PK_A, "1.0.0.1:9001")])

        result = await _discover(net, round_cap=10)

        assert result.rounds == 2
        assert result.new_per_round == [1, 0]

    @pytest.mark.asyncio
    async def test_round_cap_respected(self) -> None:
        net = FakeNetwork()
        net.serve_pods(SEED, [pod(PK_A, "1.0.0.1:9001")])
        net.serve_pods("1.0.0.1:6000", [pod(PK_B, "1.0.0.2:9001")])
        net.serve_pods("1.0.0.2:6000", [pod(PK_C, "1.0.0.3:9001")])

        result = await _discover(net, round_cap=1)

        assert result.rounds == 1
        assert {n.identity for n in result.nodes} == {PK_A, PK_B}
        assert "http://1.0.0.2:6000/rpc" not in net.queried()

    @pytest.mark.asyncio
    async def test_each_ip_queried_once(self) -> None:
        net = FakeNetwork()
        net.serve_pods(SEED, [pod(PK_A, "1.0.0.1:9001"), pod(PK_B, "1.0.0.1:9002")])
        net.serve_pods("1.0.0.1:6000", [pod(PK_A, "1.0.0.1:9001")])

        result = await _discover(net)

        assert net.queried("get-pods-with-stats").count("http://1.0.0.1:6000/rpc") == 1
        assert result.queried == 2

    @pytest.mark.asyncio
    async def test_small_batches_same_result(self) -> None:
        net = FakeNetwork()
        net.serve_pods(SEED, [pod(pk, f"1.0.0.{i}:9001") for i, pk in enumerate([PK_A, PK_B, PK_C], 1)])
        net.serve_pods("1.0.0.3:6000", [pod(PK_D, "1.0.0.4:9001")])

        result = await _discover(net, batch_size=1)

        assert {n.identity for n in result.nodes} == {PK_A, PK_B, PK_C, PK_D}


class TestScenarios:
    @pytest.mark.asyncio
    async def test_same_identity_seen_at_two_addresses(self) -> None:
        """A and B each report D at a different port; the later sighting wins."""
        net = FakeNetwork()
        net.serve_pods(
            SEED,
            [pod(PK_A, "1.0.0.1:9001"), pod(PK_B, "1.0.0.2:9001"), pod(PK_C, "1.0.0.3:9001")],
        )
        net.serve_pods("1.0.0.1:6000", [pod(PK_D, "1.1.1.1:9001")])
        net.serve_pods("1.0.0.2:6000", [pod(PK_D, "1.1.1.1:9002")])

        result = await _discover(net)

        (d,) = [n for n in result.nodes if n.identity == PK_D]
        assert d.address == "1.1.1.1:9002"
        assert d.previous_addresses == ["1.1.1.1:9001"]
        assert len(result.nodes) == 4

    @pytest.mark.asyncio
    async def test_anonymous_record_shadowed_by_later_identity(self) -> None:
        net = FakeNetwork()
        net.serve_pods(SEED, [pod(None, "1.0.0.5:9001"), pod(PK_A, "1.0.0.1:9001")])
        net.serve_pods("1.0.0.1:6000", [pod(PK_E, "1.0.0.5:9001")])

        result = await _discover(net)

        at_address = [n for n in result.nodes if n.address == "1.0.0.5:9001"]
        assert len(at_address) == 1
        assert at_address[0].identity == PK_E
        assert all(n.identity for n in result.nodes)

    @pytest.mark.asyncio
    async def test_distinct_identities_sharing_address(self) -> None:
        net = FakeNetwork()
        net.serve_pods(SEED, [pod(PK_A, "1.2.3.4:9001"), pod(PK_B, "1.2.3.4:9001")])

        result = await _discover(net)

        assert {n.identity for n in result.nodes} == {PK_A, PK_B}


class TestIdentityBackfill:
    @pytest.mark.asyncio
    async def test_anonymous_pod_asked_for_pubkey(self) -> None:
        net = FakeNetwork()
        net.serve_pods(SEED, [pod(None, "1.0.0.7:9001")])
        net.serve("1.0.0.7:9000", "get-version", {"version": "0.8.0", "pubkey": PK_C})

        result = await _discover(net)

        (record,) = result.nodes
        assert record.identity == PK_C
        assert record.rpc_port == 9000

    @pytest.mark.asyncio
    async def test_get_stats_used_when_version_lacks_pubkey(self) -> None:
        net = FakeNetwork()
        net.serve_pods(SEED, [pod(None, "1.0.0.7:9001")])
        net.serve("1.0.0.7:6000", "get-version", {"version": "0.8.0"})
        net.serve("1.0.0.7:6000", "get-stats", {"pubkey": PK_D, "cpu_percent": 1.0})

        result = await _discover(net)

        assert [n.identity for n in result.nodes] == [PK_D]

    @pytest.mark.asyncio
    async def test_unanswered_anonymous_pod_kept(self) -> None:
        net = FakeNetwork()
        net.serve_pods(SEED, [pod(None, "1.0.0.7:9001")])

        result = await _discover(net)

        (record,) = result.nodes
        assert record.identity is None
        assert record.address == "1.0.0.7:9001"
