"""Tests for podwatch.prober — ordered, sequential port probing."""

import pytest

from fakes import FakeNetwork
from podwatch.models import NodeRecord
from podwatch.prober import candidate_ports, probe, probe_ports


class TestCandidatePorts:
    def test_defaults_only(self) -> None:
        assert candidate_ports(None) == [6000, 9000]

    def test_known_port_first(self) -> None:
        assert candidate_ports(7000) == [7000, 6000, 9000]

    def test_known_default_not_repeated(self) -> None:
        assert candidate_ports(9000) == [9000, 6000]

    def test_custom_defaults(self) -> None:
        assert candidate_ports(None, (6100, 9100)) == [6100, 9100]


class TestProbePorts:
    """probe_ports tries ports one at a time and stops at the first answer."""

    @pytest.mark.asyncio
    async def test_stops_at_first_success(self) -> None:
        tried: list[str] = []

        async def attempt(target: str) -> str | None:
            tried.append(target)
            return "ok" if target.endswith(":6000") else None

        node = NodeRecord(address="1.2.3.4:9001")
        hit = await probe_ports(node, attempt)

        assert hit is not None
        assert hit.port == 6000
        assert tried == ["1.2.3.4:6000"]

    @pytest.mark.asyncio
    async def test_falls_through_to_data_port(self) -> None:
        tried: list[str] = []

        async def attempt(target: str) -> str | None:
            tried.append(target)
            return "ok" if target.endswith(":9000") else None

        node = NodeRecord(address="1.2.3.4:9001")
        hit = await probe_ports(node, attempt)

        assert hit is not None and hit.port == 9000
        assert tried == ["1.2.3.4:6000", "1.2.3.4:9000"]

    @pytest.mark.asyncio
    async def test_remembers_working_port(self) -> None:
        async def attempt(target: str) -> str | None:
            return "ok" if target.endswith(":9000") else None

        node = NodeRecord(address="1.2.3.4:9001")
        await probe_ports(node, attempt)
        assert node.rpc_port == 9000

    @pytest.mark.asyncio
    async def test_remembered_port_tried_first(self) -> None:
        tried: list[str] = []

        async def attempt(target: str) -> str | None:
            tried.append(target)
            return "ok"

        node = NodeRecord(address="1.2.3.4:9001", rpc_port=9000)
        await probe_ports(node, attempt)
        assert tried == ["1.2.3.4:9000"]

    @pytest.mark.asyncio
    async def test_no_address_makes_no_attempts(self) -> None:
        tried: list[str] = []

        async def attempt(target: str) -> str | None:
            tried.append(target)
            return "ok"

        assert await probe_ports(NodeRecord(identity="x"), attempt) is None
        assert tried == []

    @pytest.mark.asyncio
    async def test_all_ports_fail(self) -> None:
        async def attempt(target: str) -> None:
            return None

        node = NodeRecord(address="1.2.3.4:9001")
        assert await probe_ports(node, attempt) is None
        assert node.rpc_port is None


class TestProbe:
    @pytest.mark.asyncio
    async def test_calls_method_on_candidate_ports(self) -> None:
        net = FakeNetwork()
        net.serve("1.2.3.4:9000", "get-stats", {"cpu_percent": 3.0})
        node = NodeRecord(address="1.2.3.4:9001")

        async with net.client() as client:
            hit = await probe(client, node, "get-stats", 2)

        assert hit is not None
        assert hit.result == {"cpu_percent": 3.0}
        assert net.queried("get-stats") == [
            "http://1.2.3.4:6000/rpc",
            "http://1.2.3.4:9000/rpc",
        ]
