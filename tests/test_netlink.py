from __future__ import annotations

import asyncio

import pytest

from fhvm.common.errors import FhvmError
from fhvm.host import netlink
from fhvm.host.netlink import NetlinkBackend
from fhvm.host.network import FilterRule


class FakeProcess:
    def __init__(self, returncode: int = 0, stdout: bytes = b"", stderr: bytes = b""):
        self.returncode = returncode
        self._stdout = stdout
        self._stderr = stderr

    async def communicate(self) -> tuple[bytes, bytes]:
        return self._stdout, self._stderr


@pytest.fixture
def exec_calls(monkeypatch):
    calls: list[tuple[str, ...]] = []
    results: list[FakeProcess] = []

    async def fake_exec(*args, **kwargs):  # noqa: ANN001
        calls.append(args)
        return results.pop(0) if results else FakeProcess()

    monkeypatch.setattr(asyncio, "create_subprocess_exec", fake_exec)
    return calls, results


@pytest.mark.asyncio
async def test_rules_run_inside_namespace(exec_calls):
    calls, _ = exec_calls
    backend = NetlinkBackend()
    rule = FilterRule("FORWARD", ("-i", "fhvm0"), "DROP", netns="fhvm-ns-0", insert=True)

    await backend.add_rule(rule)
    await backend.add_rule(FilterRule("POSTROUTING", ("-o", "eth0"), "MASQUERADE", table="nat"))

    assert calls[0] == ("ip", "netns", "exec", "fhvm-ns-0", "iptables", "-w", "-I", "FORWARD", "-i", "fhvm0", "-j", "DROP")
    assert calls[1][:4] == ("iptables", "-w", "-t", "nat")


@pytest.mark.asyncio
async def test_failed_command_raises(exec_calls):
    _, results = exec_calls
    results.append(FakeProcess(returncode=2, stderr=b"iptables v1.8.9: unknown option"))
    with pytest.raises(FhvmError) as exc_info:
        await NetlinkBackend().add_rule(FilterRule("FORWARD", ("-i", "fhvm0"), "ACCEPT"))
    assert exc_info.value.code == "ERR_NETWORK_COMMAND"
    assert "unknown option" in exc_info.value.message


@pytest.mark.asyncio
async def test_missing_rule_on_delete_is_ignored(exec_calls):
    calls, results = exec_calls
    results.append(FakeProcess(returncode=1, stderr=b"iptables: Bad rule (does a matching rule exist in that chain?)."))
    await NetlinkBackend().delete_rule(FilterRule("FORWARD", ("-i", "fhvm0"), "ACCEPT"))
    assert calls[0][2] == "-D"


@pytest.mark.asyncio
async def test_missing_binary_is_a_network_error(monkeypatch):
    async def fake_exec(*args, **kwargs):  # noqa: ANN001
        raise FileNotFoundError(args[0])

    monkeypatch.setattr(asyncio, "create_subprocess_exec", fake_exec)
    with pytest.raises(FhvmError) as exc_info:
        await netlink.run_command(["tc", "qdisc", "show"])
    assert exc_info.value.code == "ERR_NETWORK_COMMAND"


@pytest.mark.asyncio
async def test_shaping_commands(exec_calls):
    calls, results = exec_calls
    backend = NetlinkBackend()
    await backend.add_shaping("fhvm0", 100, "fhvm-ns-0")
    results.append(FakeProcess(returncode=2, stderr=b"Error: Cannot delete qdisc with handle of zero."))
    await backend.delete_shaping("fhvm0")

    assert calls[0][4:] == (
        "tc", "qdisc", "add", "dev", "fhvm0", "root", "tbf", "rate", "100mbit", "burst", "12500kb", "latency", "400ms",
    )
    assert calls[1] == ("tc", "qdisc", "del", "dev", "fhvm0", "root")


@pytest.mark.asyncio
async def test_forwarding_uses_sysctl(exec_calls):
    calls, _ = exec_calls
    await NetlinkBackend().enable_forwarding()
    assert calls == [("sysctl", "-w", "net.ipv4.ip_forward=1")]


class _Message:
    def __init__(self, **attrs):
        self._attrs = attrs

    def get_attr(self, name: str):
        return self._attrs.get(name)


class _FakeIPRoute:
    routes: list[_Message] = []
    links: dict[int, str] = {}

    def __enter__(self):
        return self

    def __exit__(self, *exc_info):
        return False

    def get_default_routes(self, family):  # noqa: ANN001
        return self.routes

    def get_links(self, index):  # noqa: ANN001
        name = self.links.get(index)
        return [_Message(IFLA_IFNAME=name)] if name else []


@pytest.mark.asyncio
async def test_default_interface_lookup(monkeypatch):
    monkeypatch.setattr(_FakeIPRoute, "routes", [_Message(), _Message(RTA_OIF=2)])
    monkeypatch.setattr(_FakeIPRoute, "links", {2: "enp3s0"})
    monkeypatch.setattr(netlink, "IPRoute", _FakeIPRoute)
    assert await NetlinkBackend().default_interface() == "enp3s0"


@pytest.mark.asyncio
async def test_default_interface_missing(monkeypatch):
    monkeypatch.setattr(_FakeIPRoute, "routes", [])
    monkeypatch.setattr(netlink, "IPRoute", _FakeIPRoute)
    with pytest.raises(FhvmError) as exc_info:
        await NetlinkBackend().default_interface()
    assert exc_info.value.code == "ERR_NETWORK_DEFAULT_INTERFACE"
