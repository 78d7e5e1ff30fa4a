"""VM lifecycle orchestration: create, start, stop, remove and re-police.

The orchestrator is the only component that sequences the others. Each
operation persists its progress in the state store so a later invocation
(possibly from another process) can find and clean up whatever exists.
"""

from __future__ import annotations

import secrets
from dataclasses import dataclass, field, replace
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Awaitable, Callable, Optional, Sequence

import structlog

from ..common.errors import (
    FhvmError,
    chroot_not_found_error,
    mutually_exclusive_flags_error,
    policy_conflict_error,
    snapshot_not_found_error,
    vm_not_found_error,
    vm_not_running_error,
    vm_not_stopped_error,
    vm_already_exists_error,
    vm_operation_error,
)
from ..common.observability import vm_operation
from ..common.schemas import NetworkIdentity, NetworkPolicy, VmRecord, VmStatus
from ..common.settings import FhvmPaths, FhvmSettings
from ..common.validation import (
    check_published_ports_available,
    generate_vm_id,
    parse_bandwidth,
    parse_cidr_list,
    parse_disk_size_gb,
    parse_domains,
    parse_memory_mib,
    parse_network_policy,
    parse_published_ports,
    parse_runtime,
    parse_vcpu_count,
    validate_cidr,
    validate_vm_id,
)
from .agent_client import wait_for_agent
from .firecracker import FirecrackerClient, wait_for_socket
from .hooks import HookEvent, LifecycleHooks
from .jailer import AgentInjection, CgroupLimits, JailProvisioner, SnapshotFiles, WelcomePage, remove_chroot
from .netlink import NetlinkBackend
from .network import DOH_RESOLVER_IPS, NetworkBackend, NetworkEngine, boot_args, derive_identity
from .processes import find_vm_pid, kill_vm_processes
from .seccomp import ensure_seccomp_filter
from .state import FileVmStateStore

LOGGER = structlog.get_logger("fhvm.host.orchestrator")

DEMO_RUNTIME = "node22-demo"
GUEST_KERNEL_PATH = "kernel/vmlinux"
GUEST_ROOTFS_PATH = "rootfs/rootfs.ext4"
GUEST_SNAPSHOT_PATH = "snapshot/snapshot_file"
GUEST_MEM_PATH = "snapshot/mem_file"


@dataclass
class CreateOptions:
    vcpus: int = 1
    mem_size_mib: int = 128
    runtime: str = "base"
    project: str = ""
    disk_size_gb: Optional[int] = None
    network_policy: NetworkPolicy | str = NetworkPolicy.ALLOW_ALL
    allowed_domains: list[str] = field(default_factory=list)
    allowed_cidrs: list[str] = field(default_factory=list)
    denied_cidrs: list[str] = field(default_factory=list)
    published_ports: list[int] = field(default_factory=list)
    bandwidth_mbit: Optional[int] = None
    snapshot_id: Optional[str] = None
    timeout_ms: Optional[int] = None
    kernel_path: Optional[Path] = None
    rootfs_path: Optional[Path] = None
    vm_id: Optional[str] = None


@dataclass
class CreateResult:
    vm_id: str
    pid: Optional[int]
    record: VmRecord


@dataclass
class LifecycleResult:
    vm_id: str
    success: bool
    error: Optional[FhvmError] = None
    already_stopped: bool = False
    pid: Optional[int] = None


@dataclass
class PolicyUpdateResult:
    vm_id: str
    previous_policy: NetworkPolicy
    new_policy: NetworkPolicy
    network: NetworkIdentity


JailerFactory = Callable[[str, Path], JailProvisioner]
ClientFactory = Callable[[Path], FirecrackerClient]
SocketWaiter = Callable[[Path, float], Awaitable[None]]
SeccompProvider = Callable[[FhvmPaths], Awaitable[Optional[Path]]]


def _now() -> datetime:
    return datetime.now(timezone.utc)


def _policy_value(policy: NetworkPolicy | str | None) -> Optional[str]:
    return policy.value if isinstance(policy, NetworkPolicy) else policy


class VmOrchestrator:
    """Runs the VM lifecycle against injectable host components."""

    def __init__(
        self,
        settings: FhvmSettings,
        *,
        store: Optional[FileVmStateStore] = None,
        backend: Optional[NetworkBackend] = None,
        hooks: Optional[LifecycleHooks] = None,
        jailer_factory: JailerFactory = JailProvisioner,
        client_factory: ClientFactory = FirecrackerClient,
        socket_waiter: SocketWaiter = wait_for_socket,
        seccomp_provider: SeccompProvider = ensure_seccomp_filter,
        process_killer: Callable[[str, Optional[int]], list[int]] = kill_vm_processes,
        pid_finder: Callable[[str], Optional[int]] = find_vm_pid,
    ) -> None:
        self.settings = settings
        self.paths = settings.paths
        self.store = store or FileVmStateStore(self.paths.vms_dir)
        self._backend = backend or NetlinkBackend()
        self.hooks = hooks or LifecycleHooks()
        self._jailer_factory = jailer_factory
        self._client_factory = client_factory
        self._wait_socket = socket_waiter
        self._seccomp = seccomp_provider
        self._kill = process_killer
        self._find_pid = pid_finder

    # Queries

    def get(self, vm_id: str) -> Optional[VmRecord]:
        return self.store.load(vm_id)

    def list(self) -> list[VmRecord]:
        return sorted(self.store.list(), key=lambda record: record.created_at, reverse=True)

    # Helpers

    def _lock_options(self) -> dict:
        return {
            "stale_seconds": self.settings.lock_stale_seconds,
            "retry_interval": self.settings.lock_retry_interval_seconds,
            "retries": self.settings.lock_retries,
        }

    def _engine(self, identity: NetworkIdentity, vm_id: str) -> NetworkEngine:
        resolvers = DOH_RESOLVER_IPS + tuple(self.settings.extra_doh_resolvers)
        return NetworkEngine(identity, self._backend, doh_resolvers=resolvers, vm_id=vm_id)

    async def _spawn(self, jail: JailProvisioner, record: VmRecord, socket_timeout: float) -> None:
        settings = self.settings
        seccomp_filter = await self._seccomp(self.paths) if settings.enable_seccomp else None
        cgroup = CgroupLimits.for_vm(record.vcpu_count, record.mem_size_mib) if settings.enable_cgroups else None
        await jail.spawn(
            settings.firecracker_bin,
            settings.jailer_bin,
            uid=settings.jailer_uid,
            gid=settings.jailer_gid,
            seccomp_filter=seccomp_filter,
            new_pid_ns=settings.enable_pid_namespace,
            cgroup=cgroup,
            netns=record.network.netns_name,
        )
        await self._wait_socket(jail.paths.socket_path, socket_timeout)

    async def _boot(self, client: FirecrackerClient, record: VmRecord) -> None:
        identity = record.network
        await client.boot(GUEST_KERNEL_PATH, boot_args(identity.slot))
        await client.add_drive("rootfs", GUEST_ROOTFS_PATH, is_root=True, read_only=False)
        await client.configure(record.vcpu_count, record.mem_size_mib)
        await client.add_network("eth0", identity.tap_device, identity.mac_address)
        await client.start()

    async def _teardown_network(self, engine: NetworkEngine, vm_id: str) -> None:
        try:
            await engine.teardown()
        except Exception as exc:  # noqa: BLE001
            LOGGER.warning("Network teardown failed", vm_id=vm_id, error=str(exc))
            return
        await self.hooks.emit(HookEvent.NETWORK_AFTER_TEARDOWN, {"vm_id": vm_id, "network": engine.identity})

    def _kill_processes(self, vm_id: str, tracked_pid: Optional[int] = None) -> None:
        try:
            self._kill(vm_id, tracked_pid)
        except Exception as exc:  # noqa: BLE001
            LOGGER.warning("Failed to kill VM processes", vm_id=vm_id, error=str(exc))

    def _mark_error(self, vm_id: str, exc: BaseException) -> None:
        try:
            self.store.update(vm_id, status=VmStatus.ERROR, error=str(exc) or type(exc).__name__)
        except Exception as update_exc:  # noqa: BLE001
            LOGGER.warning("Failed to record VM error", vm_id=vm_id, error=str(update_exc))

    async def _fail(self, vm_id: str, phase: str, exc: Exception, engine: NetworkEngine, chroot: Optional[Path]) -> None:
        LOGGER.error("VM operation failed", vm_id=vm_id, phase=phase, error=str(exc))
        self._kill_processes(vm_id)
        self._mark_error(vm_id, exc)
        await self._teardown_network(engine, vm_id)
        if chroot is not None:
            remove_chroot(chroot)
        await self.hooks.emit(HookEvent.VM_ERROR, {"vm_id": vm_id, "error": exc, "phase": phase})

    # Validation

    def _validate_create(self, options: CreateOptions) -> CreateOptions:
        """Normalize ``options``; raises a validation error on the first bad field."""

        if options.vm_id is not None:
            validate_vm_id(options.vm_id)
        if options.snapshot_id and options.disk_size_gb is not None:
            raise mutually_exclusive_flags_error("--snapshot", "--disk")
        ports = parse_published_ports(options.published_ports)
        allowed = parse_cidr_list(options.allowed_cidrs)
        denied = parse_cidr_list(options.denied_cidrs)
        for cidr in allowed + denied:
            validate_cidr(cidr)
        policy = parse_network_policy(_policy_value(options.network_policy))
        domains = parse_domains(options.allowed_domains)
        if policy is NetworkPolicy.DENY_ALL and (domains or allowed or denied):
            raise policy_conflict_error()
        if options.snapshot_id:
            snapshot_dir = self.paths.snapshot_dir(options.snapshot_id)
            if not (snapshot_dir / "snapshot_file").exists() or not (snapshot_dir / "mem_file").exists():
                raise snapshot_not_found_error(options.snapshot_id)
        normalized = replace(
            options,
            vcpus=parse_vcpu_count(options.vcpus),
            mem_size_mib=parse_memory_mib(options.mem_size_mib),
            runtime=parse_runtime(options.runtime),
            network_policy=policy,
            allowed_domains=domains,
            allowed_cidrs=allowed,
            denied_cidrs=denied,
            published_ports=ports,
            disk_size_gb=None if options.disk_size_gb is None else parse_disk_size_gb(options.disk_size_gb),
            bandwidth_mbit=parse_bandwidth(options.bandwidth_mbit),
        )
        check_published_ports_available(ports, self.store.list())
        return normalized

    # Operations

    async def create(self, options: Optional[CreateOptions] = None) -> CreateResult:
        options = self._validate_create(options or CreateOptions())
        kernel = Path(options.kernel_path) if options.kernel_path else self.paths.find_kernel()
        rootfs = Path(options.rootfs_path) if options.rootfs_path else self.paths.find_rootfs()
        vm_id = options.vm_id or generate_vm_id()

        with vm_operation("create", vm_id) as span:
            await self.hooks.emit(HookEvent.VM_BEFORE_CREATE, {"vm_id": vm_id, "options": options})

            agent_token = secrets.token_hex(32) if self.paths.agent_bin.exists() else None
            created_at = _now()
            async with self.store.slot_lock(**self._lock_options()):
                if self.store.load(vm_id) is not None:
                    raise vm_already_exists_error(vm_id)
                slot = self.store.allocate_slot()
                identity = derive_identity(
                    slot,
                    policy=options.network_policy,
                    allowed_domains=options.allowed_domains,
                    allowed_cidrs=options.allowed_cidrs,
                    denied_cidrs=options.denied_cidrs,
                    published_ports=options.published_ports,
                    bandwidth_mbit=options.bandwidth_mbit,
                    use_namespace=self.settings.enable_network_namespaces,
                )
                record = VmRecord(
                    id=vm_id,
                    project=options.project,
                    runtime=options.runtime,
                    status=VmStatus.CREATING,
                    kernel=str(kernel),
                    rootfs=str(rootfs),
                    vcpu_count=options.vcpus,
                    mem_size_mib=options.mem_size_mib,
                    disk_size_gb=options.disk_size_gb,
                    network=identity,
                    snapshot=options.snapshot_id,
                    timeout_ms=options.timeout_ms,
                    timeout_at=(created_at + timedelta(milliseconds=options.timeout_ms)).isoformat()
                    if options.timeout_ms
                    else None,
                    created_at=created_at.isoformat(),
                    agent_token=agent_token,
                    agent_port=self.settings.agent_port,
                )
                self.store.save(record)
            span.set_attribute("vm.slot", slot)
            LOGGER.info("Creating VM", vm_id=vm_id, slot=slot, policy=identity.network_policy.value)

            engine = self._engine(identity, vm_id)
            jail = self._jailer_factory(vm_id, self.paths.jailer_base_dir)
            try:
                await engine.setup()
                await self.hooks.emit(
                    HookEvent.NETWORK_AFTER_SETUP,
                    {"vm_id": vm_id, "slot": slot, "network": identity, "policy": identity.network_policy.value},
                )

                snapshot = None
                if options.snapshot_id:
                    snapshot_dir = self.paths.snapshot_dir(options.snapshot_id)
                    snapshot = SnapshotFiles(snapshot_dir / "snapshot_file", snapshot_dir / "mem_file")
                welcome = None
                if options.runtime == DEMO_RUNTIME and options.published_ports:
                    welcome = WelcomePage(vm_id, tuple(options.published_ports))
                agent = None
                if agent_token:
                    agent = AgentInjection(self.paths.agent_bin, agent_token, self.settings.agent_port, vm_id)
                await jail.prepare(
                    kernel,
                    rootfs,
                    disk_size_gb=None if snapshot else options.disk_size_gb,
                    snapshot=snapshot,
                    welcome_page=welcome,
                    agent=agent,
                )

                await self._spawn(jail, record, self.settings.socket_timeout_seconds)
                client = self._client_factory(jail.paths.socket_path)
                if snapshot is not None:
                    await client.load_snapshot(GUEST_SNAPSHOT_PATH, GUEST_MEM_PATH)
                    await client.resume()
                else:
                    await self._boot(client, record)

                pid = self._find_pid(vm_id)
                record = self.store.update(
                    vm_id,
                    status=VmStatus.RUNNING,
                    pid=pid,
                    api_socket=str(jail.paths.socket_path),
                    chroot_dir=str(jail.paths.root_dir),
                )
            except Exception as exc:
                span.record_exception(exc)
                await self._fail(vm_id, "create", exc, engine, jail.paths.root_dir)
                raise

            LOGGER.info("VM running", vm_id=vm_id, pid=pid, guest_ip=identity.guest_ip)
            await self.hooks.emit(HookEvent.VM_AFTER_CREATE, {"vm_id": vm_id, "record": record})
            return CreateResult(vm_id=vm_id, pid=pid, record=record)

    async def start(self, vm_id: str) -> LifecycleResult:
        record = self.store.load(vm_id)
        if record is None:
            raise vm_not_found_error(vm_id)
        if record.status is not VmStatus.STOPPED:
            raise vm_not_stopped_error(vm_id, record.status.value)

        jail = self._jailer_factory(vm_id, self.paths.jailer_base_dir)
        chroot = Path(record.chroot_dir) if record.chroot_dir else jail.paths.root_dir
        if not chroot.is_dir():
            raise chroot_not_found_error(vm_id)

        with vm_operation("start", vm_id) as span:
            await self.hooks.emit(HookEvent.VM_BEFORE_START, {"vm_id": vm_id, "record": record})
            engine = self._engine(record.network, vm_id)
            try:
                await engine.setup()
                jail.clear_stale_artifacts()
                try:
                    await self._spawn(jail, record, self.settings.start_socket_timeout_seconds)
                except FhvmError as exc:
                    if not exc.recoverable:
                        raise
                    LOGGER.warning("VM start stalled; retrying once", vm_id=vm_id, error=str(exc))
                    self._kill_processes(vm_id)
                    jail.clear_stale_artifacts()
                    await self._spawn(jail, record, self.settings.start_retry_socket_timeout_seconds)

                await self._boot(self._client_factory(jail.paths.socket_path), record)
                pid = self._find_pid(vm_id)
                record = self.store.update(
                    vm_id,
                    status=VmStatus.RUNNING,
                    pid=pid,
                    error=None,
                    api_socket=str(jail.paths.socket_path),
                )
            except Exception as exc:
                span.record_exception(exc)
                await self._fail(vm_id, "start", exc, engine, None)
                raise

            LOGGER.info("VM started", vm_id=vm_id, pid=pid)
            await self.hooks.emit(HookEvent.VM_AFTER_START, {"vm_id": vm_id, "record": record})
            return LifecycleResult(vm_id=vm_id, success=True, pid=pid)

    async def stop(self, vm_id: str) -> LifecycleResult:
        return await self._guarded("stop", vm_id, self._stop(vm_id))

    async def remove(self, vm_id: str, force: bool = False) -> LifecycleResult:
        return await self._guarded("remove", vm_id, self._remove(vm_id, force))

    async def _guarded(self, operation: str, vm_id: str, work: Awaitable[LifecycleResult]) -> LifecycleResult:
        try:
            return await work
        except Exception as exc:  # noqa: BLE001
            error = exc if isinstance(exc, FhvmError) else vm_operation_error(vm_id, operation, exc)
            LOGGER.warning("VM operation failed", vm_id=vm_id, operation=operation, error=str(error))
            return LifecycleResult(vm_id=vm_id, success=False, error=error)

    async def _stop(self, vm_id: str) -> LifecycleResult:
        record = self.store.load(vm_id)
        if record is None:
            return LifecycleResult(vm_id=vm_id, success=False, error=vm_not_found_error(vm_id))
        if record.status is VmStatus.STOPPED:
            return LifecycleResult(vm_id=vm_id, success=True, already_stopped=True)

        with vm_operation("stop", vm_id):
            await self.hooks.emit(HookEvent.VM_BEFORE_STOP, {"vm_id": vm_id, "record": record})
            self._kill_processes(vm_id, record.pid)
            await self._teardown_network(self._engine(record.network, vm_id), vm_id)
            self.store.update(vm_id, status=VmStatus.STOPPED, pid=None)

            LOGGER.info("VM stopped", vm_id=vm_id, previous_status=record.status.value)
            await self.hooks.emit(HookEvent.VM_AFTER_STOP, {"vm_id": vm_id, "previous_status": record.status.value})
            return LifecycleResult(vm_id=vm_id, success=True)

    async def _remove(self, vm_id: str, force: bool) -> LifecycleResult:
        record = self.store.load(vm_id)
        if record is None:
            return LifecycleResult(vm_id=vm_id, success=False, error=vm_not_found_error(vm_id))

        with vm_operation("remove", vm_id):
            if record.status is not VmStatus.STOPPED:
                if not force:
                    return LifecycleResult(
                        vm_id=vm_id,
                        success=False,
                        error=vm_not_stopped_error(vm_id, record.status.value),
                    )
                stopped = await self.stop(vm_id)
                if not stopped.success:
                    return stopped

            await self.hooks.emit(HookEvent.VM_BEFORE_REMOVE, {"vm_id": vm_id, "record": record, "force": force})
            if record.chroot_dir:
                remove_chroot(record.chroot_dir)
            self.store.delete(vm_id)

            LOGGER.info("VM removed", vm_id=vm_id, forced=force)
            await self.hooks.emit(HookEvent.VM_AFTER_REMOVE, {"vm_id": vm_id})
            return LifecycleResult(vm_id=vm_id, success=True)

    async def update_network_policy(
        self,
        vm_id: str,
        policy: NetworkPolicy | str,
        allowed_domains: Sequence[str] = (),
        allowed_cidrs: Sequence[str] = (),
        denied_cidrs: Sequence[str] = (),
    ) -> PolicyUpdateResult:
        requested = parse_network_policy(_policy_value(policy))
        domains = parse_domains(list(allowed_domains))
        allowed = parse_cidr_list(list(allowed_cidrs))
        denied = parse_cidr_list(list(denied_cidrs))
        for cidr in allowed + denied:
            validate_cidr(cidr)
        if requested is NetworkPolicy.DENY_ALL and (domains or allowed or denied):
            raise policy_conflict_error()

        record = self.store.load(vm_id)
        if record is None:
            raise vm_not_found_error(vm_id)
        if record.status is not VmStatus.RUNNING:
            raise vm_not_running_error(vm_id)

        with vm_operation("update_network_policy", vm_id):
            async with self.store.vm_lock(vm_id, **self._lock_options()):
                record = self.store.load(vm_id)
                if record is None:
                    raise vm_not_found_error(vm_id)
                previous = record.network.network_policy
                engine = self._engine(record.network, vm_id)
                identity = await engine.update_policy(requested, domains, allowed, denied)
                self.store.update(vm_id, network=identity)

            await self.hooks.emit(
                HookEvent.NETWORK_POLICY_CHANGE,
                {
                    "vm_id": vm_id,
                    "previous_policy": previous.value,
                    "new_policy": identity.network_policy.value,
                },
            )
            return PolicyUpdateResult(
                vm_id=vm_id,
                previous_policy=previous,
                new_policy=identity.network_policy,
                network=identity,
            )

    async def wait_for_agent(self, vm_id: str, timeout: Optional[float] = None) -> None:
        """Block until the guest agent of a running VM answers health checks."""

        record = self.store.load(vm_id)
        if record is None:
            raise vm_not_found_error(vm_id)
        if record.status is not VmStatus.RUNNING:
            raise vm_not_running_error(vm_id)
        await wait_for_agent(
            record.network.guest_ip,
            record.agent_port,
            timeout if timeout is not None else self.settings.agent_timeout_seconds,
        )
