"""Chroot preparation and jailed VMM launch."""

from __future__ import annotations

import asyncio
import os
import shutil
from dataclasses import dataclass
from pathlib import Path
from typing import Awaitable, Callable, Optional, Sequence

import structlog

from ..common.errors import SpawnError, SpawnFailure, disk_resize_error, jail_prepare_error
from . import guest_services

LOGGER = structlog.get_logger("fhvm.host.jailer")

GIB = 1024 * 1024 * 1024
CGROUP_ROOT = Path("/sys/fs/cgroup")
# Headroom for the VMM process itself, page tables and kernel slab on top of
# guest memory; without it the OOM killer can take the VM down.
CGROUP_VMM_OVERHEAD_MIB = 64
CPU_PERIOD_US = 100_000
E2FSCK_MAX_OK_EXIT = 3


@dataclass(frozen=True)
class CommandResult:
    returncode: int
    stdout: str
    stderr: str


CommandRunner = Callable[[Sequence[str]], Awaitable[CommandResult]]


async def run_process(args: Sequence[str]) -> CommandResult:
    process = await asyncio.create_subprocess_exec(
        *args,
        stdout=asyncio.subprocess.PIPE,
        stderr=asyncio.subprocess.PIPE,
    )
    stdout, stderr = await process.communicate()
    return CommandResult(process.returncode or 0, stdout.decode(), stderr.decode())


@dataclass(frozen=True)
class JailPaths:
    chroot_base: Path
    chroot_dir: Path
    root_dir: Path
    kernel_dir: Path
    kernel_path: Path
    rootfs_dir: Path
    rootfs_path: Path
    socket_dir: Path
    socket_path: Path
    snapshot_dir: Path

    @classmethod
    def for_vm(cls, jailer_base_dir: Path | str, vm_id: str) -> "JailPaths":
        base = Path(jailer_base_dir)
        chroot_dir = base / "firecracker" / vm_id
        root = chroot_dir / "root"
        return cls(
            chroot_base=base,
            chroot_dir=chroot_dir,
            root_dir=root,
            kernel_dir=root / "kernel",
            kernel_path=root / "kernel" / "vmlinux",
            rootfs_dir=root / "rootfs",
            rootfs_path=root / "rootfs" / "rootfs.ext4",
            socket_dir=root / "run",
            socket_path=root / "run" / "firecracker.socket",
            snapshot_dir=root / "snapshot",
        )


@dataclass(frozen=True)
class SnapshotFiles:
    snapshot_file: Path
    mem_file: Path


@dataclass(frozen=True)
class WelcomePage:
    vm_id: str
    ports: tuple[int, ...]


@dataclass(frozen=True)
class AgentInjection:
    binary_path: Path
    token: str
    port: int
    vm_id: str


def detect_cgroup_version(root: Path = CGROUP_ROOT) -> int:
    return 2 if (root / "cgroup.controllers").exists() else 1


@dataclass(frozen=True)
class CgroupLimits:
    cpu_quota_us: int
    cpu_period_us: int
    memory_bytes: int

    @classmethod
    def for_vm(cls, vcpus: int, mem_size_mib: int) -> "CgroupLimits":
        return cls(
            cpu_quota_us=vcpus * CPU_PERIOD_US,
            cpu_period_us=CPU_PERIOD_US,
            memory_bytes=(mem_size_mib + CGROUP_VMM_OVERHEAD_MIB) * 1024 * 1024,
        )

    def jailer_args(self, version: int) -> list[str]:
        if version == 2:
            return [
                "--cgroup-version",
                "2",
                "--cgroup",
                f"cpu.max={self.cpu_quota_us} {self.cpu_period_us}",
                "--cgroup",
                f"memory.max={self.memory_bytes}",
            ]
        return [
            "--cgroup",
            f"cpu.cfs_quota_us={self.cpu_quota_us}",
            "--cgroup",
            f"cpu.cfs_period_us={self.cpu_period_us}",
            "--cgroup",
            f"memory.limit_in_bytes={self.memory_bytes}",
        ]


def classify_spawn_failure(stderr: str) -> SpawnFailure:
    if "File exists" in stderr or "EEXIST" in stderr:
        return SpawnFailure.DEVICE_NODE_EXISTS
    return SpawnFailure.OTHER


class JailProvisioner:
    """Builds the chroot for one VM and launches the VMM inside it."""

    def __init__(
        self,
        vm_id: str,
        jailer_base_dir: Path | str,
        *,
        runner: CommandRunner = run_process,
        cgroup_root: Path = CGROUP_ROOT,
    ) -> None:
        self.vm_id = vm_id
        self.paths = JailPaths.for_vm(jailer_base_dir, vm_id)
        self._run = runner
        self._cgroup_root = cgroup_root

    async def _check(self, args: Sequence[str], error_factory, *, max_ok: int = 0) -> CommandResult:
        try:
            result = await self._run(args)
        except OSError as exc:
            raise error_factory(f"{args[0]}: {exc}", self.vm_id) from exc
        if result.returncode > max_ok:
            detail = result.stderr.strip() or result.stdout.strip() or f"exit status {result.returncode}"
            raise error_factory(f"{' '.join(args)}: {detail}", self.vm_id)
        return result

    async def prepare(
        self,
        kernel_src: Path | str,
        rootfs_src: Path | str,
        *,
        disk_size_gb: Optional[float] = None,
        snapshot: Optional[SnapshotFiles] = None,
        welcome_page: Optional[WelcomePage] = None,
        agent: Optional[AgentInjection] = None,
    ) -> JailPaths:
        paths = self.paths
        try:
            for directory in (paths.kernel_dir, paths.rootfs_dir, paths.socket_dir):
                directory.mkdir(parents=True, exist_ok=True)
            if not paths.kernel_path.exists():
                os.link(kernel_src, paths.kernel_path)
            await asyncio.to_thread(shutil.copyfile, rootfs_src, paths.rootfs_path)
        except OSError as exc:
            raise jail_prepare_error(str(exc), self.vm_id) from exc

        if disk_size_gb is not None:
            await self._grow_rootfs(int(disk_size_gb * GIB))

        await self._customize_rootfs(welcome_page, agent)

        if snapshot is not None:
            try:
                paths.snapshot_dir.mkdir(parents=True, exist_ok=True)
                await asyncio.to_thread(shutil.copyfile, snapshot.snapshot_file, paths.snapshot_dir / "snapshot_file")
                await asyncio.to_thread(shutil.copyfile, snapshot.mem_file, paths.snapshot_dir / "mem_file")
            except OSError as exc:
                raise jail_prepare_error(f"snapshot copy failed: {exc}", self.vm_id) from exc

        LOGGER.info(
            "Jail prepared",
            vm_id=self.vm_id,
            chroot=str(paths.chroot_dir),
            disk_size_gb=disk_size_gb,
            snapshot=snapshot is not None,
        )
        return paths

    async def _grow_rootfs(self, target_bytes: int) -> None:
        image = self.paths.rootfs_path
        current = image.stat().st_size
        if target_bytes <= current:
            return
        LOGGER.debug("Growing rootfs image", vm_id=self.vm_id, from_bytes=current, to_bytes=target_bytes)
        try:
            os.truncate(image, target_bytes)
        except OSError as exc:
            raise disk_resize_error(str(exc), self.vm_id) from exc
        # resize2fs refuses (or corrupts) a filesystem that was not checked first.
        await self._check(["e2fsck", "-fy", str(image)], disk_resize_error, max_ok=E2FSCK_MAX_OK_EXIT)
        await self._check(["resize2fs", str(image)], disk_resize_error)
        await self._check(["tune2fs", "-m", "0", str(image)], disk_resize_error)

    async def _customize_rootfs(self, welcome_page: Optional[WelcomePage], agent: Optional[AgentInjection]) -> None:
        mount_dir = self.paths.root_dir / "tmp-mount"
        mount_dir.mkdir(parents=True, exist_ok=True)
        mounted = False
        try:
            await self._check(["mount", "-o", "loop", str(self.paths.rootfs_path), str(mount_dir)], jail_prepare_error)
            mounted = True
            try:
                await asyncio.to_thread(self._inject, mount_dir, welcome_page, agent)
            except OSError as exc:
                raise jail_prepare_error(f"rootfs customization failed: {exc}", self.vm_id) from exc
        finally:
            still_mounted = mounted and not await self._unmount(mount_dir)
            if not still_mounted:
                try:
                    mount_dir.rmdir()
                except OSError as exc:
                    LOGGER.warning("Failed to remove mount point", vm_id=self.vm_id, mount_dir=str(mount_dir), error=str(exc))

    async def _unmount(self, mount_dir: Path) -> bool:
        result = await self._run(["umount", str(mount_dir)])
        if result.returncode == 0:
            return True
        # The image stays reachable through mount_dir; it must not be removed.
        LOGGER.warning(
            "Failed to unmount rootfs; leaving mount point in place",
            vm_id=self.vm_id,
            mount_dir=str(mount_dir),
            error=result.stderr.strip(),
        )
        return False

    @staticmethod
    def _enable_unit(systemd_dir: Path, unit: str) -> None:
        wants = systemd_dir / "multi-user.target.wants"
        wants.mkdir(parents=True, exist_ok=True)
        link = wants / unit
        link.unlink(missing_ok=True)
        link.symlink_to(f"/etc/systemd/system/{unit}")

    def _inject(self, mount_dir: Path, welcome_page: Optional[WelcomePage], agent: Optional[AgentInjection]) -> None:
        resolv = mount_dir / "etc" / "resolv.conf"
        resolv.parent.mkdir(parents=True, exist_ok=True)
        resolv.unlink(missing_ok=True)
        resolv.symlink_to("/proc/net/pnp")

        systemd_dir = mount_dir / "etc" / "systemd" / "system"
        if welcome_page is not None:
            welcome_dir = mount_dir / guest_services.WELCOME_DIR.lstrip("/")
            welcome_dir.mkdir(parents=True, exist_ok=True)
            (welcome_dir / "index.html").write_text(guest_services.welcome_html(welcome_page.vm_id, welcome_page.ports))
            (welcome_dir / "server.js").write_text(guest_services.welcome_server(welcome_page.ports))
            systemd_dir.mkdir(parents=True, exist_ok=True)
            (systemd_dir / guest_services.WELCOME_UNIT).write_text(guest_services.welcome_service_unit(welcome_page.ports))
            self._enable_unit(systemd_dir, guest_services.WELCOME_UNIT)

        if agent is not None:
            binary = mount_dir / guest_services.AGENT_BINARY_PATH.lstrip("/")
            binary.parent.mkdir(parents=True, exist_ok=True)
            shutil.copyfile(agent.binary_path, binary)
            binary.chmod(0o755)
            env_file = mount_dir / guest_services.AGENT_ENV_PATH.lstrip("/")
            env_file.parent.mkdir(parents=True, exist_ok=True)
            env_file.write_text(guest_services.agent_env(agent.token, agent.port, agent.vm_id))
            env_file.chmod(0o600)
            systemd_dir.mkdir(parents=True, exist_ok=True)
            (systemd_dir / guest_services.AGENT_UNIT).write_text(guest_services.agent_service_unit())
            self._enable_unit(systemd_dir, guest_services.AGENT_UNIT)

    def spawn_args(
        self,
        firecracker_bin: Path | str,
        jailer_bin: Path | str,
        *,
        uid: int = 0,
        gid: int = 0,
        seccomp_filter: Optional[Path] = None,
        new_pid_ns: bool = True,
        cgroup: Optional[CgroupLimits] = None,
        netns: Optional[str] = None,
    ) -> list[str]:
        args = [
            str(jailer_bin),
            "--exec-file",
            str(firecracker_bin),
            "--id",
            self.vm_id,
            "--uid",
            str(uid),
            "--gid",
            str(gid),
            "--chroot-base-dir",
            str(self.paths.chroot_base),
            "--daemonize",
        ]
        if new_pid_ns:
            args.append("--new-pid-ns")
        if netns:
            args.extend(["--netns", f"/var/run/netns/{netns}"])
        if cgroup is not None:
            args.extend(cgroup.jailer_args(detect_cgroup_version(self._cgroup_root)))
        args.extend(["--", "--api-sock", "run/firecracker.socket"])
        if seccomp_filter is not None and Path(seccomp_filter).exists():
            args.extend(["--seccomp-filter", str(seccomp_filter)])
        else:
            args.append("--no-seccomp")
        return args

    async def spawn(self, firecracker_bin: Path | str, jailer_bin: Path | str, **options) -> None:
        """Launch the daemonizing jailer; returns once it has detached."""

        args = self.spawn_args(firecracker_bin, jailer_bin, **options)
        LOGGER.info(
            "Spawning Firecracker with jailer",
            vm_id=self.vm_id,
            netns=options.get("netns"),
            seccomp="--no-seccomp" not in args,
        )
        try:
            result = await self._run(args)
        except OSError as exc:
            raise SpawnError(SpawnFailure.OTHER, f"Failed to execute jailer: {exc}", vm_id=self.vm_id) from exc
        if result.returncode != 0:
            detail = result.stderr.strip() or result.stdout.strip() or f"exit status {result.returncode}"
            failure = classify_spawn_failure(result.stderr)
            raise SpawnError(failure, f"Jailer failed for {self.vm_id}: {detail}", vm_id=self.vm_id)

    def clear_stale_artifacts(self) -> None:
        """Remove leftovers of a previous run that block a fresh launch."""

        root = self.paths.root_dir
        self.paths.socket_path.unlink(missing_ok=True)
        (root / "firecracker.pid").unlink(missing_ok=True)
        shutil.rmtree(root / "dev", ignore_errors=True)


def remove_chroot(chroot_dir: Path | str) -> None:
    """Delete a VM's chroot root and the per-VM directory holding it."""

    root = Path(chroot_dir)
    shutil.rmtree(root, ignore_errors=True)
    shutil.rmtree(root.parent, ignore_errors=True)
