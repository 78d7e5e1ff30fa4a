"""Parsing and validation of user supplied VM parameters."""

from __future__ import annotations

import ipaddress
import re
import secrets
from typing import Iterable, Optional

from .errors import (
    invalid_cidr_error,
    invalid_disk_size_error,
    invalid_domain_error,
    invalid_duration_error,
    invalid_integer_flag_error,
    invalid_network_policy_error,
    invalid_port_error,
    invalid_runtime_error,
    invalid_vm_id_error,
    port_conflict_error,
)
from .schemas import ACTIVE_STATUSES, NetworkPolicy, VmRecord

VALID_RUNTIMES = ("base", "node22", "node22-demo", "python3.13")

_DOMAIN_LABEL = re.compile(r"^[a-z0-9](?:[a-z0-9-]{0,61}[a-z0-9])?$", re.IGNORECASE)
_CIDR_SHAPE = re.compile(r"^(\d{1,3}\.){3}\d{1,3}/\d{1,2}$")
# Jailer --id rules: alphanumerics and dashes, at most 64 characters.
_VM_ID = re.compile(r"[A-Za-z0-9-]{1,64}")
_DURATION_PART = re.compile(r"(\d+)\s*([dhms])", re.IGNORECASE)
_DURATION_UNITS_MS = {"d": 86_400_000, "h": 3_600_000, "m": 60_000, "s": 1_000}


def generate_vm_id() -> str:
    return f"vm-{secrets.token_hex(4)}"


def validate_vm_id(vm_id: str) -> str:
    if not isinstance(vm_id, str) or not _VM_ID.fullmatch(vm_id):
        raise invalid_vm_id_error(str(vm_id))
    return vm_id


def _split(value: Optional[str]) -> list[str]:
    if not value:
        return []
    return [item.strip() for item in value.split(",") if item.strip()]


def _parse_int(flag: str, value, fallback: int, minimum: int, maximum: int, unit_suffix: str = "") -> int:
    raw = fallback if value is None or value == "" else value
    if isinstance(raw, bool):
        raise invalid_integer_flag_error(flag, raw, minimum, maximum, unit_suffix)
    try:
        parsed = int(str(raw).strip())
    except ValueError:
        raise invalid_integer_flag_error(flag, raw, minimum, maximum, unit_suffix) from None
    if parsed < minimum or parsed > maximum:
        raise invalid_integer_flag_error(flag, raw, minimum, maximum, unit_suffix)
    return parsed


def parse_vcpu_count(value=None) -> int:
    return _parse_int("vcpus", value, 1, 1, 32)


def parse_memory_mib(value=None) -> int:
    return _parse_int("memory", value, 128, 128, 32768, " MiB")


def parse_runtime(value: Optional[str] = None) -> str:
    runtime = value or "base"
    if runtime not in VALID_RUNTIMES:
        raise invalid_runtime_error(runtime, VALID_RUNTIMES)
    return runtime


def parse_network_policy(value: Optional[str] = None) -> NetworkPolicy:
    policy = value or NetworkPolicy.ALLOW_ALL.value
    try:
        return NetworkPolicy(policy)
    except ValueError:
        raise invalid_network_policy_error(policy, [p.value for p in NetworkPolicy]) from None


def parse_published_ports(value) -> list[int]:
    """Accept a comma separated string or an iterable of ports."""

    items = _split(value) if isinstance(value, str) or value is None else list(value)
    ports: list[int] = []
    for item in items:
        try:
            port = int(str(item).strip())
        except ValueError:
            raise invalid_port_error(item) from None
        if port < 1 or port > 65535:
            raise invalid_port_error(item)
        ports.append(port)
    return ports


def validate_domain_pattern(domain: str) -> str:
    if not domain:
        return domain
    if any(ch.isspace() for ch in domain):
        raise invalid_domain_error(domain)

    normalized = domain.lower()
    wildcards = normalized.count("*")
    if wildcards and not normalized.startswith("*."):
        raise invalid_domain_error(domain, 'Wildcards are only supported as a leading "*." prefix.')
    if wildcards > 1:
        raise invalid_domain_error(domain, 'Only a single leading "*." wildcard is supported.')

    zone = normalized[2:] if normalized.startswith("*.") else normalized
    if not zone or len(zone) > 253:
        raise invalid_domain_error(domain)
    if not all(_DOMAIN_LABEL.match(label) for label in zone.split(".")):
        raise invalid_domain_error(domain)
    return normalized


def parse_domains(value) -> list[str]:
    items = _split(value) if isinstance(value, str) or value is None else [str(v).strip() for v in value]
    return [d for d in (validate_domain_pattern(item) for item in items) if d]


def parse_cidr_list(value) -> list[str]:
    if isinstance(value, str) or value is None:
        return _split(value)
    return [str(item).strip() for item in value if str(item).strip()]


def validate_cidr(cidr: str) -> None:
    if not _CIDR_SHAPE.match(cidr):
        raise invalid_cidr_error(cidr, "expected a.b.c.d/prefix")
    address, _, prefix = cidr.partition("/")
    if int(prefix) > 32:
        raise invalid_cidr_error(cidr, "prefix length must be between 0 and 32")
    if any(int(octet) > 255 for octet in address.split(".")):
        raise invalid_cidr_error(cidr, "octets must be between 0 and 255")
    # Host bits set are tolerated, iptables masks them.
    ipaddress.ip_network(cidr, strict=False)


def parse_bandwidth(value) -> Optional[int]:
    if value is None or value == "":
        return None
    match = re.match(r"^(\d+)(mbit|m)?$", str(value).strip().lower())
    if not match:
        raise invalid_integer_flag_error("bandwidth", value, 1, 1000, " mbit")
    mbit = int(match.group(1))
    if mbit < 1 or mbit > 1000:
        raise invalid_integer_flag_error("bandwidth", value, 1, 1000, " mbit")
    return mbit


def parse_disk_size_gb(value=None) -> int:
    raw = str(value if value not in (None, "") else "10gb").strip().lower()
    match = re.match(r"^(\d+)(gb|g|gib)?$", raw)
    if not match:
        raise invalid_disk_size_error(value, 'Use a size like "10gb".')
    size = int(match.group(1))
    if size < 1 or size > 1024:
        raise invalid_disk_size_error(value, "Must be between 1 and 1024 GB.")
    return size


def parse_duration_ms(value: str) -> int:
    """Parse "1h", "30m", "2h30m" or plain minutes into milliseconds."""

    text = value.strip()
    if text.isdigit():
        return int(text) * 60_000
    matches = _DURATION_PART.findall(text)
    if not matches:
        raise invalid_duration_error(value)
    return sum(int(amount) * _DURATION_UNITS_MS[unit.lower()] for amount, unit in matches)


def check_published_ports_available(ports: Iterable[int], records: Iterable[VmRecord]) -> None:
    """Reject ports already published by a creating or running VM."""

    wanted = set(ports)
    if not wanted:
        return
    collisions: dict[int, list[str]] = {}
    for record in records:
        if record.status not in ACTIVE_STATUSES:
            continue
        for port in record.network.published_ports:
            if port in wanted:
                collisions.setdefault(port, []).append(record.id)
    if collisions:
        summary = ", ".join(f"{port} (in use by {', '.join(ids)})" for port, ids in collisions.items())
        raise port_conflict_error(summary)
