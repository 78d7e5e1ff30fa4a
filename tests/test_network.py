from __future__ import annotations

import pytest

from fhvm.common.errors import FhvmError
from fhvm.common.schemas import NetworkPolicy
from fhvm.host import network
from fhvm.host.network import FilterRule, NetworkEngine, build_rule_plan, derive_identity
from tests.utils.fakes import FakeBackend


def _targets(rules: list[FilterRule]) -> list[tuple[str, str]]:
    return [(rule.chain, rule.target) for rule in rules]


def test_identity_addressing_contract():
    identity = derive_identity(9)
    assert identity.tap_device == "fhvm9"
    assert identity.host_ip == "172.16.9.1"
    assert identity.guest_ip == "172.16.9.2"
    assert identity.subnet_mask == "255.255.255.252"
    assert identity.mac_address == "AA:FC:00:00:00:0A"
    assert identity.netns_name == "fhvm-ns-9"
    assert derive_identity(9, use_namespace=False).netns_name is None
    assert network.boot_args(9) == (
        "console=ttyS0 reboot=k panic=1 pci=off "
        "ip=172.16.9.2::172.16.9.1:255.255.255.252::eth0:off:172.16.9.1"
    )
    with pytest.raises(ValueError):
        derive_identity(255)


def test_iptables_rendering():
    masquerade = FilterRule("POSTROUTING", ("-s", "172.16.3.2/30", "-o", "eth0"), "MASQUERADE", table="nat")
    assert masquerade.iptables_args() == [
        "iptables", "-w", "-t", "nat", "-A", "POSTROUTING", "-s", "172.16.3.2/30", "-o", "eth0", "-j", "MASQUERADE",
    ]
    drop = FilterRule("FORWARD", ("-i", "fhvm3"), "DROP", insert=True)
    assert drop.iptables_args() == ["iptables", "-w", "-I", "FORWARD", "-i", "fhvm3", "-j", "DROP"]
    assert drop.iptables_args(delete=True)[2] == "-D"


def test_deny_all_has_exactly_two_drops_and_no_nat():
    identity = derive_identity(1, policy=NetworkPolicy.DENY_ALL, published_ports=[8080])
    rules = build_rule_plan(identity, "eth0")
    assert len(rules) == 2
    assert all(rule.target == "DROP" and rule.chain == "FORWARD" for rule in rules)
    assert {rule.match for rule in rules} == {("-i", "fhvm1"), ("-o", "fhvm1")}
    assert not any(rule.table == "nat" for rule in rules)


def test_allow_all_plan_order():
    identity = derive_identity(2, published_ports=[8080], use_namespace=False)
    rules = build_rule_plan(identity, "eth0", doh_resolvers=("1.1.1.1",))

    assert rules[0].target == "MASQUERADE"
    assert rules[0].table == "nat"
    assert rules[1].match == ("-i", "fhvm2", "-d", "172.16.2.1", "-p", "udp", "--dport", "53")
    assert rules[1].target == "ACCEPT"
    dns_drops = [rule for rule in rules if rule.target == "DROP" and "--dport" in rule.match and "443" not in rule.match]
    assert [rule.match[-1] for rule in dns_drops] == ["53", "53", "853", "853"]
    doh = [rule for rule in rules if "443" in rule.match]
    assert [rule.match[3] for rule in doh] == ["1.1.1.1", "1.1.1.1"]

    guest_drop = rules.index(FilterRule("FORWARD", ("-i", "fhvm2", "-d", network.GUEST_NETWORK), "DROP"))
    catch_all = rules.index(FilterRule("FORWARD", ("-i", "fhvm2"), "ACCEPT"))
    assert guest_drop < catch_all
    assert rules[catch_all + 1].match[-1] == "RELATED,ESTABLISHED"
    assert _targets(rules[-2:]) == [("PREROUTING", "DNAT"), ("FORWARD", "ACCEPT")]
    assert rules[-2].target_args == ("--to-destination", "172.16.2.2:8080")
    assert all(rule.netns is None for rule in rules)


def test_custom_plan_places_cidrs_around_guest_isolation():
    identity = derive_identity(4, allowed_cidrs=["10.0.0.0/8"], denied_cidrs=["169.254.0.0/16"])
    rules = build_rule_plan(identity, "eth0")
    assert identity.network_policy is NetworkPolicy.CUSTOM

    denied = rules.index(FilterRule("FORWARD", ("-i", "fhvm4", "-d", "169.254.0.0/16"), "DROP", netns="fhvm-ns-4"))
    guest = rules.index(FilterRule("FORWARD", ("-i", "fhvm4", "-d", network.GUEST_NETWORK), "DROP", netns="fhvm-ns-4"))
    allowed = rules.index(FilterRule("FORWARD", ("-i", "fhvm4", "-d", "10.0.0.0/8"), "ACCEPT", netns="fhvm-ns-4"))
    assert denied == 1
    assert guest < allowed
    assert rules[0].netns is None


def test_plan_without_default_interface_omits_nat():
    identity = derive_identity(5, published_ports=[80])
    rules = build_rule_plan(identity, None)
    assert not any(rule.table == "nat" for rule in rules)
    assert rules[-1] == FilterRule("FORWARD", ("-p", "tcp", "-d", "172.16.5.2", "--dport", "80"), "ACCEPT")


def test_doh_block_list_is_a_known_subset():
    # Resolvers not on the list stay reachable unless configured as extras.
    assert "94.140.14.14" not in network.DOH_RESOLVER_IPS
    identity = derive_identity(0)
    rules = build_rule_plan(identity, "eth0", doh_resolvers=network.DOH_RESOLVER_IPS + ("94.140.14.14",))
    assert any("94.140.14.14" in rule.match for rule in rules)


@pytest.mark.asyncio
async def test_setup_and_teardown_with_namespace():
    backend = FakeBackend()
    engine = NetworkEngine(derive_identity(6, published_ports=[3000], bandwidth_mbit=50), backend)

    await engine.setup()
    assert backend.namespaces == {"fhvm-ns-6"}
    assert backend.links == {"veth-h-6": None, "veth-g-6": "fhvm-ns-6", "fhvm6": "fhvm-ns-6"}
    assert ("default", "fhvm-ns-6") in backend.routes
    assert ("172.16.6.0/30", None) in backend.routes
    assert backend.shaping == {"fhvm6": 50}
    assert any(rule.target == "DNAT" for rule in backend.rules)

    await engine.teardown()
    assert backend.namespaces == set()
    assert backend.links == {}
    assert backend.rules == []
    assert ("172.16.6.0/30", None) not in backend.routes


@pytest.mark.asyncio
async def test_setup_and_teardown_without_namespace_replaces_leaked_tap():
    backend = FakeBackend()
    backend.links["fhvm0"] = None
    engine = NetworkEngine(derive_identity(0, use_namespace=False, bandwidth_mbit=10), backend)

    await engine.setup()
    assert backend.links == {"fhvm0": None}
    assert backend.namespaces == set()

    await engine.teardown()
    assert backend.links == {}
    assert backend.rules == []
    assert backend.shaping == {}


@pytest.mark.asyncio
async def test_deny_all_setup_does_not_need_default_interface():
    backend = FakeBackend(default_iface=None)
    engine = NetworkEngine(derive_identity(1, policy="deny-all"), backend)
    await engine.setup()
    assert len(backend.rules) == 2
    assert backend.default_interface_calls == 0


@pytest.mark.asyncio
async def test_teardown_is_best_effort():
    backend = FakeBackend(default_iface=None)
    engine = NetworkEngine(derive_identity(3, use_namespace=False), backend)
    await engine.teardown()


@pytest.mark.asyncio
async def test_update_policy_swaps_rules():
    backend = FakeBackend()
    engine = NetworkEngine(derive_identity(2), backend)
    await engine.setup()

    updated = await engine.update_policy("deny-all")
    assert updated.network_policy is NetworkPolicy.DENY_ALL
    assert engine.identity == updated
    assert backend.rules == network.deny_all_rules(updated)

    restored = await engine.update_policy("custom", allowed_cidrs=["10.0.0.0/8"])
    assert restored.network_policy is NetworkPolicy.CUSTOM
    assert backend.rules == build_rule_plan(restored, "eth0")


@pytest.mark.asyncio
async def test_update_policy_failure_restores_previous_rules():
    backend = FakeBackend()
    identity = derive_identity(2, published_ports=[8080])
    engine = NetworkEngine(identity, backend, vm_id="vm-1")
    await engine.setup()
    before = list(backend.rules)

    backend.fail_rule = lambda rule: "10.0.0.0/8" in rule.match
    with pytest.raises(FhvmError) as exc_info:
        await engine.update_policy("custom", allowed_cidrs=["10.0.0.0/8"])

    assert exc_info.value.code == "ERR_NETWORK_COMMAND"
    assert engine.identity == identity
    assert backend.rules == before


@pytest.mark.asyncio
async def test_update_policy_rollback_failure_is_reported():
    backend = FakeBackend()
    engine = NetworkEngine(derive_identity(2), backend, vm_id="vm-1")
    await engine.setup()

    backend.fail_rule = lambda rule: True
    with pytest.raises(FhvmError) as exc_info:
        await engine.update_policy("deny-all")

    error = exc_info.value
    assert error.code == "ERR_NETWORK_POLICY_ROLLBACK_FAILED"
    assert error.vm_id == "vm-1"
    assert isinstance(error.__cause__, FhvmError)
    assert error.__cause__.code == "ERR_NETWORK_COMMAND"
