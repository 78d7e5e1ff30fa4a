"""Persisted data models for microVM records and their network identity."""

from __future__ import annotations

import enum
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel


class VmStatus(str, enum.Enum):
    CREATING = "creating"
    RUNNING = "running"
    STOPPED = "stopped"
    ERROR = "error"


ACTIVE_STATUSES = frozenset({VmStatus.CREATING, VmStatus.RUNNING})


class NetworkPolicy(str, enum.Enum):
    ALLOW_ALL = "allow-all"
    DENY_ALL = "deny-all"
    CUSTOM = "custom"


class _CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, use_enum_values=False)


class NetworkIdentity(_CamelModel):
    """Addressing and policy assigned to one VM slot."""

    tap_device: str
    host_ip: str
    guest_ip: str
    subnet_mask: str = "255.255.255.252"
    mac_address: str
    network_policy: NetworkPolicy = NetworkPolicy.ALLOW_ALL
    allowed_domains: list[str] = Field(default_factory=list)
    allowed_cidrs: list[str] = Field(default_factory=list)
    denied_cidrs: list[str] = Field(default_factory=list)
    published_ports: list[int] = Field(default_factory=list)
    bandwidth_mbit: Optional[int] = None
    netns_name: Optional[str] = None

    @property
    def slot(self) -> int:
        return int(self.host_ip.split(".")[2])


class VmRecord(_CamelModel):
    """Durable description of a single microVM, one JSON file per VM."""

    id: str
    project: str = ""
    runtime: str = "base"
    status: VmStatus = VmStatus.CREATING
    pid: Optional[int] = None
    api_socket: str = ""
    chroot_dir: str = ""
    kernel: str
    rootfs: str
    vcpu_count: int = 1
    mem_size_mib: int = 128
    disk_size_gb: Optional[float] = None
    network: NetworkIdentity
    snapshot: Optional[str] = None
    timeout_ms: Optional[int] = None
    timeout_at: Optional[str] = None
    created_at: str
    error: Optional[str] = None
    agent_token: Optional[str] = None
    agent_port: int = 9119

    def to_json(self) -> str:
        return self.model_dump_json(by_alias=True, indent=2)


def effective_policy(
    policy: NetworkPolicy | str,
    allowed_domains: Optional[list[str]] = None,
    allowed_cidrs: Optional[list[str]] = None,
    denied_cidrs: Optional[list[str]] = None,
) -> NetworkPolicy:
    """Resolve the policy actually enforced for the requested lists."""

    policy = NetworkPolicy(policy)
    if policy is NetworkPolicy.DENY_ALL:
        return policy
    if allowed_domains or allowed_cidrs or denied_cidrs:
        return NetworkPolicy.CUSTOM
    return NetworkPolicy.ALLOW_ALL
