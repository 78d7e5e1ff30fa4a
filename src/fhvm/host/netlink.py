"""Kernel-facing network backend built on pyroute2 and iptables/tc."""

from __future__ import annotations

import asyncio
import errno
import os
import socket
from contextlib import contextmanager
from typing import Iterator, List, Optional

import structlog
from pyroute2 import IPRoute, NetlinkError, NetNS, netns

from ..common.errors import default_interface_not_found_error, network_command_error
from .network import FilterRule

LOGGER = structlog.get_logger("fhvm.host.netlink")

NETNS_RUN_DIR = "/var/run/netns"
_MISSING_RULE_MARKERS = (
    "does a matching rule exist",
    "No chain/target/match by that name",
    "Bad rule",
)


async def run_command(args: List[str], *, ignore: tuple[str, ...] = ()) -> str:
    try:
        process = await asyncio.create_subprocess_exec(
            *args,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
        )
    except OSError as exc:
        raise network_command_error(args, str(exc)) from exc
    stdout, stderr = await process.communicate()
    if process.returncode != 0:
        message = stderr.decode().strip() or stdout.decode().strip()
        if ignore and any(marker in message for marker in ignore):
            LOGGER.debug("Ignoring command failure", command=args[:4], error=message)
            return ""
        raise network_command_error(args, message or f"exit status {process.returncode}")
    return stdout.decode()


def in_netns(ns: Optional[str], args: List[str]) -> List[str]:
    if ns is None:
        return list(args)
    return ["ip", "netns", "exec", ns, *args]


class NetlinkBackend:
    """Applies network primitives to the running kernel.

    Link, address and route changes go through netlink in a worker thread;
    packet filter, traffic control and sysctl changes shell out to the
    standard tools, inside the target namespace when one is given.
    """

    @contextmanager
    def _socket(self, ns: Optional[str]) -> Iterator[IPRoute]:
        handle = NetNS(ns) if ns else IPRoute()
        try:
            yield handle
        finally:
            handle.close()

    async def _netlink(self, description: str, func, *args) -> None:
        try:
            await asyncio.to_thread(func, *args)
        except (OSError, NetlinkError) as exc:
            raise network_command_error([description], str(exc)) from exc

    @staticmethod
    def _index(ipr, ifname: str) -> int:
        indexes = ipr.link_lookup(ifname=ifname)
        if not indexes:
            raise NetlinkError(errno.ENODEV, f"Interface {ifname} not found")
        return indexes[0]

    async def create_namespace(self, name: str) -> None:
        LOGGER.debug("Creating network namespace", namespace=name)
        await self._netlink(f"netns add {name}", netns.create, name)

    async def delete_namespace(self, name: str) -> None:
        LOGGER.debug("Removing network namespace", namespace=name)

        def _remove() -> None:
            try:
                netns.remove(name)
            except FileNotFoundError:
                pass

        await self._netlink(f"netns delete {name}", _remove)

    async def create_veth_pair(self, host_ifname: str, peer_ifname: str, netns_name: str) -> None:
        def _create() -> None:
            with IPRoute() as ipr:
                ipr.link("add", ifname=host_ifname, kind="veth", peer={"ifname": peer_ifname})
                peer_idx = self._index(ipr, peer_ifname)
                ipr.link("set", index=peer_idx, net_ns_fd=netns_name)

        await self._netlink(f"veth add {host_ifname}", _create)

    async def add_address(self, ifname: str, cidr: str, netns: Optional[str] = None) -> None:
        address, _, prefix = cidr.partition("/")

        def _add() -> None:
            with self._socket(netns) as ipr:
                ipr.addr("add", index=self._index(ipr, ifname), address=address, mask=int(prefix or 32))

        await self._netlink(f"addr add {cidr} dev {ifname}", _add)

    async def set_link_up(self, ifname: str, netns: Optional[str] = None) -> None:
        def _up() -> None:
            with self._socket(netns) as ipr:
                ipr.link("set", index=self._index(ipr, ifname), state="up")

        await self._netlink(f"link set {ifname} up", _up)

    async def add_route(self, dest: str, gateway: str, netns: Optional[str] = None) -> None:
        dst = "0.0.0.0/0" if dest == "default" else dest

        def _add() -> None:
            with self._socket(netns) as ipr:
                ipr.route("add", dst=dst, gateway=gateway)

        await self._netlink(f"route add {dest} via {gateway}", _add)

    async def delete_route(self, dest: str) -> None:
        def _delete() -> None:
            with IPRoute() as ipr:
                try:
                    ipr.route("del", dst=dest)
                except NetlinkError as exc:
                    if exc.code not in (errno.ESRCH, errno.ENOENT):
                        raise

        await self._netlink(f"route del {dest}", _delete)

    async def enable_forwarding(self, netns: Optional[str] = None) -> None:
        await run_command(in_netns(netns, ["sysctl", "-w", "net.ipv4.ip_forward=1"]))

    async def create_tap(self, ifname: str, netns: Optional[str] = None) -> None:
        LOGGER.debug("Creating tap device", tap=ifname, namespace=netns)

        def _create() -> None:
            with self._socket(netns) as ipr:
                ipr.link("add", ifname=ifname, kind="tuntap", mode="tap")

        await self._netlink(f"tuntap add {ifname}", _create)

    async def delete_link(self, ifname: str, netns: Optional[str] = None) -> None:
        def _delete() -> None:
            with self._socket(netns) as ipr:
                indexes = ipr.link_lookup(ifname=ifname)
                if indexes:
                    ipr.link("del", index=indexes[0])

        await self._netlink(f"link del {ifname}", _delete)

    async def link_exists(self, ifname: str) -> bool:
        return os.path.exists(f"/sys/class/net/{ifname}")

    async def default_interface(self) -> str:
        def _lookup() -> Optional[str]:
            with IPRoute() as ipr:
                for route in ipr.get_default_routes(family=socket.AF_INET):
                    oif = route.get_attr("RTA_OIF")
                    if oif is None:
                        continue
                    links = ipr.get_links(oif)
                    if links:
                        return links[0].get_attr("IFLA_IFNAME")
            return None

        try:
            name = await asyncio.to_thread(_lookup)
        except (OSError, NetlinkError) as exc:
            raise default_interface_not_found_error() from exc
        if not name:
            raise default_interface_not_found_error()
        return name

    async def add_rule(self, rule: FilterRule) -> None:
        await run_command(in_netns(rule.netns, rule.iptables_args()))

    async def delete_rule(self, rule: FilterRule) -> None:
        await run_command(in_netns(rule.netns, rule.iptables_args(delete=True)), ignore=_MISSING_RULE_MARKERS)

    async def add_shaping(self, ifname: str, bandwidth_mbit: int, netns: Optional[str] = None) -> None:
        burst_kb = max(32, bandwidth_mbit * 1000 // 8)
        await run_command(
            in_netns(
                netns,
                [
                    "tc", "qdisc", "add", "dev", ifname, "root", "tbf",
                    "rate", f"{bandwidth_mbit}mbit",
                    "burst", f"{burst_kb}kb",
                    "latency", "400ms",
                ],
            )
        )

    async def delete_shaping(self, ifname: str, netns: Optional[str] = None) -> None:
        await run_command(
            in_netns(netns, ["tc", "qdisc", "del", "dev", ifname, "root"]),
            ignore=("No such file or directory", "Cannot find device", "Cannot delete qdisc with handle of zero"),
        )
