"""Runtime configuration for the fhvm host components."""

from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path
from typing import Annotated, Literal, Optional

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, NoDecode, SettingsConfigDict

from .errors import (
    missing_binary_error,
    no_ext4_rootfs_error,
    no_kernel_dir_error,
    no_kernel_error,
    no_rootfs_dir_error,
)


def env_field(default, env_name: str):
    return Field(default, validation_alias=env_name)


class FhvmSettings(BaseSettings):
    """Configuration for the microVM orchestrator."""

    model_config = SettingsConfigDict(env_file=".env", env_file_encoding="utf-8", populate_by_name=True)

    base_dir: Path = env_field(Path.home() / ".fhvm", "FHVM_BASE_DIR")
    firecracker_bin_path: Optional[Path] = env_field(None, "FHVM_FC_BIN")
    jailer_bin_path: Optional[Path] = env_field(None, "FHVM_JAILER_BIN")
    jailer_uid: int = env_field(0, "FHVM_JAILER_UID")
    jailer_gid: int = env_field(0, "FHVM_JAILER_GID")
    agent_port: int = env_field(9119, "FHVM_AGENT_PORT")
    enable_network_namespaces: bool = env_field(True, "FHVM_ENABLE_NETNS")
    enable_seccomp: bool = env_field(True, "FHVM_ENABLE_SECCOMP")
    enable_pid_namespace: bool = env_field(True, "FHVM_ENABLE_PID_NS")
    enable_cgroups: bool = env_field(True, "FHVM_ENABLE_CGROUPS")
    socket_timeout_seconds: float = env_field(10.0, "FHVM_SOCKET_TIMEOUT")
    start_socket_timeout_seconds: float = env_field(5.0, "FHVM_START_SOCKET_TIMEOUT")
    start_retry_socket_timeout_seconds: float = env_field(15.0, "FHVM_START_RETRY_SOCKET_TIMEOUT")
    agent_timeout_seconds: float = env_field(60.0, "FHVM_AGENT_TIMEOUT")
    lock_stale_seconds: float = env_field(300.0, "FHVM_LOCK_STALE_SECONDS")
    lock_retry_interval_seconds: float = env_field(0.05, "FHVM_LOCK_RETRY_INTERVAL")
    lock_retries: int = env_field(600, "FHVM_LOCK_RETRIES")
    extra_doh_resolvers: Annotated[list[str], NoDecode] = Field(default_factory=list, validation_alias="FHVM_EXTRA_DOH_RESOLVERS")
    log_level: str = env_field("INFO", "FHVM_LOG_LEVEL")
    log_format: Literal["json", "console"] = env_field("json", "FHVM_LOG_FORMAT")
    otel_exporter_endpoint: Optional[str] = env_field(None, "FHVM_OTEL_EXPORTER_ENDPOINT")
    otel_exporter_headers: Optional[str] = env_field(None, "FHVM_OTEL_EXPORTER_HEADERS")
    otel_sampler_ratio: float = env_field(0.1, "FHVM_OTEL_SAMPLER_RATIO")

    @field_validator("extra_doh_resolvers", mode="before")
    @classmethod
    def _split_resolvers(cls, value):
        if isinstance(value, str):
            return [item.strip() for item in value.split(",") if item.strip()]
        return value

    @field_validator("base_dir", mode="after")
    @classmethod
    def _expand_base_dir(cls, value: Path) -> Path:
        return value.expanduser()

    @property
    def paths(self) -> "FhvmPaths":
        return FhvmPaths.from_base(self.base_dir)

    @property
    def firecracker_bin(self) -> Path:
        return self.firecracker_bin_path or self.paths.bin_dir / "firecracker"

    @property
    def jailer_bin(self) -> Path:
        return self.jailer_bin_path or self.paths.bin_dir / "jailer"

    def validate_environment(self) -> None:
        """Raise a setup error when the VMM binaries are not installed."""

        if not self.firecracker_bin.exists():
            raise missing_binary_error("Firecracker", self.firecracker_bin)
        if not self.jailer_bin.exists():
            raise missing_binary_error("Jailer", self.jailer_bin)


@dataclass(frozen=True)
class FhvmPaths:
    """Filesystem layout rooted at the fhvm base directory."""

    base_dir: Path
    vms_dir: Path
    jailer_base_dir: Path
    bin_dir: Path
    agent_bin: Path
    kernels_dir: Path
    rootfs_dir: Path
    snapshots_dir: Path
    seccomp_dir: Path
    seccomp_filter: Path

    @classmethod
    def from_base(cls, base_dir: Path | str) -> "FhvmPaths":
        base = Path(base_dir).expanduser()
        return cls(
            base_dir=base,
            vms_dir=base / "vms",
            jailer_base_dir=base / "jailer",
            bin_dir=base / "bin",
            agent_bin=base / "bin" / "fhvm-agent",
            kernels_dir=base / "kernels",
            rootfs_dir=base / "rootfs",
            snapshots_dir=base / "snapshots",
            seccomp_dir=base / "seccomp",
            seccomp_filter=base / "seccomp" / "default.json",
        )

    def state_file(self, vm_id: str) -> Path:
        return self.vms_dir / f"{vm_id}.json"

    def snapshot_dir(self, snapshot_id: str) -> Path:
        return self.snapshots_dir / snapshot_id

    def find_kernel(self) -> Path:
        if not self.kernels_dir.is_dir():
            raise no_kernel_dir_error()
        candidates = sorted(p.name for p in self.kernels_dir.iterdir() if p.name.startswith("vmlinux"))
        if not candidates:
            raise no_kernel_error(self.kernels_dir)
        return self.kernels_dir / candidates[-1]

    def find_rootfs(self) -> Path:
        if not self.rootfs_dir.is_dir():
            raise no_rootfs_dir_error()
        candidates = sorted(p.name for p in self.rootfs_dir.iterdir() if p.name.endswith(".ext4"))
        if not candidates:
            raise no_ext4_rootfs_error(self.rootfs_dir)
        return self.rootfs_dir / candidates[-1]
