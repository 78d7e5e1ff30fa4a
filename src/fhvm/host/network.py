"""Per-VM network isolation: addressing, packet filter policy and shaping.

Every VM owns one slot ``s`` in ``[0, 254]``. The slot fixes the TAP device
name, the /30 guest subnet ``172.16.s.0/30``, the guest MAC and, when network
namespaces are enabled, the namespace ``fhvm-ns-s`` and transit veth pair
``veth-h-s``/``veth-g-s`` on ``10.200.s.0/30``.

Filtering is expressed as a list of :class:`FilterRule` values produced by
:func:`build_rule_plan`. The :class:`NetworkEngine` only decides which rules
exist; the :class:`NetworkBackend` turns them into kernel state.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Iterable, Optional, Protocol, Sequence

import structlog

from ..common.errors import FhvmError, policy_rollback_failed_error
from ..common.schemas import NetworkIdentity, NetworkPolicy, effective_policy

LOGGER = structlog.get_logger("fhvm.host.network")

GUEST_NETWORK = "172.16.0.0/16"
SUBNET_MASK = "255.255.255.252"

# Well-known DNS-over-HTTPS/QUIC resolvers (Google, Cloudflare, Quad9, OpenDNS,
# CleanBrowsing). Not exhaustive: a guest can still reach DoH endpoints that are
# absent here or addressed by other IPs.
DOH_RESOLVER_IPS: tuple[str, ...] = (
    "8.8.8.8",
    "8.8.4.4",
    "1.1.1.1",
    "1.0.0.1",
    "9.9.9.9",
    "149.112.112.112",
    "208.67.222.222",
    "208.67.220.220",
    "185.228.168.168",
    "185.228.169.168",
)


def tap_device_name(slot: int) -> str:
    return f"fhvm{slot}"


def netns_name(slot: int) -> str:
    return f"fhvm-ns-{slot}"


def host_veth_name(slot: int) -> str:
    return f"veth-h-{slot}"


def guest_veth_name(slot: int) -> str:
    return f"veth-g-{slot}"


def mac_address(slot: int) -> str:
    return f"AA:FC:00:00:00:{slot + 1:02X}"


def boot_args(slot: int) -> str:
    host_ip = f"172.16.{slot}.1"
    return (
        "console=ttyS0 reboot=k panic=1 pci=off "
        f"ip=172.16.{slot}.2::{host_ip}:{SUBNET_MASK}::eth0:off:{host_ip}"
    )


def derive_identity(
    slot: int,
    *,
    policy: NetworkPolicy | str = NetworkPolicy.ALLOW_ALL,
    allowed_domains: Sequence[str] = (),
    allowed_cidrs: Sequence[str] = (),
    denied_cidrs: Sequence[str] = (),
    published_ports: Sequence[int] = (),
    bandwidth_mbit: Optional[int] = None,
    use_namespace: bool = True,
) -> NetworkIdentity:
    if not 0 <= slot <= 254:
        raise ValueError(f"slot out of range: {slot}")
    return NetworkIdentity(
        tap_device=tap_device_name(slot),
        host_ip=f"172.16.{slot}.1",
        guest_ip=f"172.16.{slot}.2",
        subnet_mask=SUBNET_MASK,
        mac_address=mac_address(slot),
        network_policy=effective_policy(policy, list(allowed_domains), list(allowed_cidrs), list(denied_cidrs)),
        allowed_domains=list(allowed_domains),
        allowed_cidrs=list(allowed_cidrs),
        denied_cidrs=list(denied_cidrs),
        published_ports=list(published_ports),
        bandwidth_mbit=bandwidth_mbit,
        netns_name=netns_name(slot) if use_namespace else None,
    )


@dataclass(frozen=True)
class FilterRule:
    """One iptables rule; ``netns`` of None means the host namespace."""

    chain: str
    match: tuple[str, ...]
    target: str
    target_args: tuple[str, ...] = ()
    table: str = "filter"
    netns: Optional[str] = None
    insert: bool = False

    def iptables_args(self, *, delete: bool = False) -> list[str]:
        args = ["iptables", "-w"]
        if self.table != "filter":
            args += ["-t", self.table]
        if delete:
            op = "-D"
        else:
            op = "-I" if self.insert else "-A"
        args += [op, self.chain, *self.match, "-j", self.target, *self.target_args]
        return args


def _forward(identity: NetworkIdentity, *match: str, target: str, insert: bool = False) -> FilterRule:
    return FilterRule("FORWARD", tuple(match), target, netns=identity.netns_name, insert=insert)


def deny_all_rules(identity: NetworkIdentity) -> list[FilterRule]:
    tap = identity.tap_device
    return [
        _forward(identity, "-i", tap, target="DROP", insert=True),
        _forward(identity, "-o", tap, target="DROP", insert=True),
    ]


def build_rule_plan(
    identity: NetworkIdentity,
    default_iface: Optional[str],
    *,
    doh_resolvers: Iterable[str] = DOH_RESOLVER_IPS,
) -> list[FilterRule]:
    """Ordered rules enforcing the identity's policy.

    FORWARD filtering lands inside the VM's namespace when it has one; NAT and
    port publishing always stay on the host, where external traffic arrives.
    Rules that name ``default_iface`` are left out when it is None.
    """

    policy = identity.network_policy
    if policy is NetworkPolicy.DENY_ALL:
        return deny_all_rules(identity)

    tap = identity.tap_device
    custom = policy is NetworkPolicy.CUSTOM
    rules: list[FilterRule] = []

    if default_iface:
        rules.append(
            FilterRule(
                "POSTROUTING",
                ("-s", f"{identity.guest_ip}/30", "-o", default_iface),
                "MASQUERADE",
                table="nat",
            )
        )

    if custom:
        for cidr in identity.denied_cidrs:
            rules.append(_forward(identity, "-i", tap, "-d", cidr, target="DROP"))

    for proto in ("udp", "tcp"):
        rules.append(_forward(identity, "-i", tap, "-d", identity.host_ip, "-p", proto, "--dport", "53", target="ACCEPT"))
    for port in ("53", "853"):
        for proto in ("udp", "tcp"):
            rules.append(_forward(identity, "-i", tap, "-p", proto, "--dport", port, target="DROP"))
    for resolver in doh_resolvers:
        for proto in ("tcp", "udp"):
            rules.append(_forward(identity, "-i", tap, "-d", resolver, "-p", proto, "--dport", "443", target="DROP"))

    rules.append(_forward(identity, "-i", tap, "-d", GUEST_NETWORK, target="DROP"))
    if custom:
        for cidr in identity.allowed_cidrs:
            rules.append(_forward(identity, "-i", tap, "-d", cidr, target="ACCEPT"))
    rules.append(_forward(identity, "-i", tap, target="ACCEPT"))
    rules.append(_forward(identity, "-o", tap, "-m", "state", "--state", "RELATED,ESTABLISHED", target="ACCEPT"))

    for port in identity.published_ports:
        if default_iface:
            rules.append(
                FilterRule(
                    "PREROUTING",
                    ("-i", default_iface, "-p", "tcp", "--dport", str(port)),
                    "DNAT",
                    ("--to-destination", f"{identity.guest_ip}:{port}"),
                    table="nat",
                )
            )
        rules.append(FilterRule("FORWARD", ("-p", "tcp", "-d", identity.guest_ip, "--dport", str(port)), "ACCEPT"))
    return rules


def all_policy_rules(
    identity: NetworkIdentity,
    default_iface: Optional[str],
    *,
    doh_resolvers: Iterable[str] = DOH_RESOLVER_IPS,
) -> list[FilterRule]:
    """Every rule any policy variant of ``identity`` could have installed."""

    widest = identity.model_copy(update={"network_policy": NetworkPolicy.CUSTOM})
    rules = build_rule_plan(widest, default_iface, doh_resolvers=doh_resolvers) + deny_all_rules(identity)
    return list(dict.fromkeys(rules))


class NetworkBackend(Protocol):
    """Kernel networking primitives used by :class:`NetworkEngine`."""

    async def create_namespace(self, name: str) -> None: ...

    async def delete_namespace(self, name: str) -> None: ...

    async def create_veth_pair(self, host_ifname: str, peer_ifname: str, netns: str) -> None: ...

    async def add_address(self, ifname: str, cidr: str, netns: Optional[str] = None) -> None: ...

    async def set_link_up(self, ifname: str, netns: Optional[str] = None) -> None: ...

    async def add_route(self, dest: str, gateway: str, netns: Optional[str] = None) -> None: ...

    async def delete_route(self, dest: str) -> None: ...

    async def enable_forwarding(self, netns: Optional[str] = None) -> None: ...

    async def create_tap(self, ifname: str, netns: Optional[str] = None) -> None: ...

    async def delete_link(self, ifname: str, netns: Optional[str] = None) -> None: ...

    async def link_exists(self, ifname: str) -> bool: ...

    async def default_interface(self) -> str: ...

    async def add_rule(self, rule: FilterRule) -> None: ...

    async def delete_rule(self, rule: FilterRule) -> None: ...

    async def add_shaping(self, ifname: str, bandwidth_mbit: int, netns: Optional[str] = None) -> None: ...

    async def delete_shaping(self, ifname: str, netns: Optional[str] = None) -> None: ...


class NetworkEngine:
    """Sets up, tears down and re-filters the network of one VM."""

    def __init__(
        self,
        identity: NetworkIdentity,
        backend: NetworkBackend,
        *,
        doh_resolvers: Iterable[str] = DOH_RESOLVER_IPS,
        vm_id: Optional[str] = None,
    ) -> None:
        self.identity = identity
        self.vm_id = vm_id
        self._backend = backend
        self._doh_resolvers = tuple(doh_resolvers)

    @property
    def slot(self) -> int:
        return self.identity.slot

    async def setup(self) -> None:
        LOGGER.debug(
            "Setting up VM network",
            tap=self.identity.tap_device,
            namespace=self.identity.netns_name,
            policy=self.identity.network_policy.value,
        )
        await self._setup_namespace()
        await self._setup_device()
        await self._apply_rules(self.identity)
        await self._setup_shaping()

    async def _setup_namespace(self) -> None:
        ns = self.identity.netns_name
        if not ns:
            return
        s = self.slot
        veth_host, veth_guest = host_veth_name(s), guest_veth_name(s)
        transit_host, transit_guest = f"10.200.{s}.1", f"10.200.{s}.2"
        backend = self._backend

        await backend.create_namespace(ns)
        await backend.create_veth_pair(veth_host, veth_guest, ns)
        await backend.add_address(veth_host, f"{transit_host}/30")
        await backend.set_link_up(veth_host)
        await backend.add_address(veth_guest, f"{transit_guest}/30", ns)
        await backend.set_link_up(veth_guest, ns)
        await backend.set_link_up("lo", ns)
        await backend.add_route("default", transit_host, ns)
        await backend.enable_forwarding(ns)
        await backend.add_route(f"172.16.{s}.0/30", transit_guest)
        await backend.enable_forwarding()

    async def _setup_device(self) -> None:
        identity = self.identity
        tap = identity.tap_device
        ns = identity.netns_name
        backend = self._backend
        if ns is None and await backend.link_exists(tap):
            try:
                await backend.delete_link(tap)
            except FhvmError as exc:
                LOGGER.warning("Failed to remove leaked tap device", tap=tap, error=str(exc))

        await backend.create_tap(tap, ns)
        await backend.add_address(tap, f"{identity.host_ip}/30", ns)
        await backend.set_link_up(tap, ns)
        if ns is None:
            await backend.enable_forwarding()

    async def _setup_shaping(self) -> None:
        if self.identity.bandwidth_mbit is None:
            return
        await self._backend.add_shaping(self.identity.tap_device, self.identity.bandwidth_mbit, self.identity.netns_name)

    async def _apply_rules(self, identity: NetworkIdentity) -> None:
        default_iface = None
        if identity.network_policy is not NetworkPolicy.DENY_ALL:
            default_iface = await self._backend.default_interface()
        for rule in build_rule_plan(identity, default_iface, doh_resolvers=self._doh_resolvers):
            await self._backend.add_rule(rule)

    async def _optional_default_interface(self) -> Optional[str]:
        try:
            return await self._backend.default_interface()
        except FhvmError as exc:
            LOGGER.debug("Default interface unavailable; skipping NAT cleanup", error=str(exc))
            return None

    async def _remove_rules(self, identity: NetworkIdentity, *, host_only: bool = False) -> None:
        default_iface = await self._optional_default_interface()
        for rule in all_policy_rules(identity, default_iface, doh_resolvers=self._doh_resolvers):
            if host_only and rule.netns is not None:
                continue
            try:
                await self._backend.delete_rule(rule)
            except FhvmError as exc:
                LOGGER.debug("Failed to remove filter rule", chain=rule.chain, error=str(exc))

    async def teardown(self) -> None:
        identity = self.identity
        ns = identity.netns_name
        LOGGER.debug("Tearing down VM network", tap=identity.tap_device, namespace=ns)
        if ns:
            # Deleting the namespace takes the tap, its rules and its qdisc with it.
            await self._remove_rules(identity, host_only=True)
            await self._best_effort(self._backend.delete_route(f"172.16.{self.slot}.0/30"), "route")
            await self._best_effort(self._backend.delete_namespace(ns), "namespace")
            return

        await self._best_effort(self._backend.delete_shaping(identity.tap_device), "shaping")
        await self._remove_rules(identity)
        await self._best_effort(self._backend.delete_link(identity.tap_device), "tap")

    async def _best_effort(self, operation, what: str) -> None:
        try:
            await operation
        except FhvmError as exc:
            LOGGER.debug("Network cleanup step failed", step=what, tap=self.identity.tap_device, error=str(exc))

    async def update_policy(
        self,
        policy: NetworkPolicy | str,
        allowed_domains: Sequence[str] = (),
        allowed_cidrs: Sequence[str] = (),
        denied_cidrs: Sequence[str] = (),
    ) -> NetworkIdentity:
        """Swap the filter rules in place, restoring the old ones on failure."""

        previous = self.identity
        updated = previous.model_copy(
            update={
                "network_policy": effective_policy(policy, list(allowed_domains), list(allowed_cidrs), list(denied_cidrs)),
                "allowed_domains": list(allowed_domains),
                "allowed_cidrs": list(allowed_cidrs),
                "denied_cidrs": list(denied_cidrs),
            }
        )

        await self._remove_rules(previous)
        self.identity = updated
        try:
            await self._apply_rules(updated)
        except Exception as exc:
            LOGGER.warning(
                "Network policy update failed; restoring previous policy",
                tap=previous.tap_device,
                policy=updated.network_policy.value,
                error=str(exc),
            )
            self.identity = previous
            try:
                await self._remove_rules(updated)
                await self._apply_rules(previous)
            except Exception as rollback_exc:
                LOGGER.error("Network policy rollback failed", tap=previous.tap_device, error=str(rollback_exc))
                raise policy_rollback_failed_error(self.vm_id, str(rollback_exc)) from exc
            raise
        LOGGER.info(
            "Network policy updated",
            tap=updated.tap_device,
            policy=updated.network_policy.value,
            allowed_cidrs=len(updated.allowed_cidrs),
            denied_cidrs=len(updated.denied_cidrs),
        )
        return updated
