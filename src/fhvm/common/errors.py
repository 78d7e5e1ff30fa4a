"""Error taxonomy shared by every fhvm component.

Every failure surfaced to callers is an :class:`FhvmError` carrying a closed
``kind``, a stable machine-readable ``code`` and a kind-specific context
payload. Constructors for the individual errors live at module level so call
sites read ``raise vm_not_found_error(vm_id)``.
"""

from __future__ import annotations

import enum
from dataclasses import dataclass
from typing import Any, Iterable, Optional, Union


class ErrorKind(str, enum.Enum):
    VALIDATION = "validation"
    LIFECYCLE = "lifecycle"
    PROVISIONING = "provisioning"
    CONTROL_PLANE = "control_plane"
    TIMEOUT = "timeout"
    RESOURCE_EXHAUSTION = "resource_exhaustion"


@dataclass(frozen=True, slots=True)
class FlagContext:
    flag: Optional[str] = None


@dataclass(frozen=True, slots=True)
class VmContext:
    vm_id: Optional[str] = None


@dataclass(frozen=True, slots=True)
class TimeoutContext:
    target: str
    timeout_seconds: Optional[float] = None


@dataclass(frozen=True, slots=True)
class ApiContext:
    method: str
    path: str
    http_status: int


ErrorContext = Union[FlagContext, VmContext, TimeoutContext, ApiContext, None]


class FhvmError(Exception):
    """Raised for every expected failure in the VM lifecycle."""

    def __init__(
        self,
        kind: ErrorKind,
        code: str,
        message: str,
        *,
        context: ErrorContext = None,
        why: Optional[str] = None,
        fix: Optional[str] = None,
    ) -> None:
        super().__init__(message)
        self.kind = kind
        self.code = code
        self.message = message
        self.context = context
        self.why = why
        self.fix = fix

    @property
    def recoverable(self) -> bool:
        """Whether a single retry of the failed start may succeed."""
        return self.code == "ERR_TIMEOUT_SOCKET"

    @property
    def vm_id(self) -> Optional[str]:
        if isinstance(self.context, VmContext):
            return self.context.vm_id
        return None

    def to_dict(self) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "kind": self.kind.value,
            "code": self.code,
            "message": self.message,
        }
        if self.why:
            payload["why"] = self.why
        if self.fix:
            payload["fix"] = self.fix

        match self.context:
            case FlagContext(flag=flag):
                if flag is not None:
                    payload["flag"] = flag
            case VmContext(vm_id=vm_id):
                if vm_id is not None:
                    payload["vm_id"] = vm_id
            case TimeoutContext(target=target, timeout_seconds=timeout_seconds):
                payload["target"] = target
                if timeout_seconds is not None:
                    payload["timeout_seconds"] = timeout_seconds
            case ApiContext(method=method, path=path, http_status=http_status):
                payload["method"] = method
                payload["path"] = path
                payload["http_status"] = http_status
            case None:
                pass
        return payload

    def __repr__(self) -> str:
        return f"{type(self).__name__}(code={self.code!r}, message={self.message!r})"


class SpawnFailure(str, enum.Enum):
    # Residue from an unclean shutdown; the jailer refuses to mknod over it.
    DEVICE_NODE_EXISTS = "device_node_exists"
    OTHER = "other"


class SpawnError(FhvmError):
    """Raised when the jailer wrapper fails to launch the VMM."""

    def __init__(self, failure: SpawnFailure, message: str, *, vm_id: Optional[str] = None) -> None:
        super().__init__(
            ErrorKind.PROVISIONING,
            "ERR_JAIL_SPAWN_FAILED",
            message,
            context=VmContext(vm_id=vm_id),
        )
        self.failure = failure

    @property
    def recoverable(self) -> bool:
        return self.failure is SpawnFailure.DEVICE_NODE_EXISTS


INSTALL_FIX = "Install the firecracker and jailer binaries plus a kernel and ext4 rootfs under the fhvm base directory."


# Validation


def _validation(code: str, message: str, flag: Optional[str] = None, **extra: Any) -> FhvmError:
    return FhvmError(ErrorKind.VALIDATION, code, message, context=FlagContext(flag=flag), **extra)


def invalid_integer_flag_error(flag: str, value: object, minimum: int, maximum: int, unit_suffix: str = "") -> FhvmError:
    return _validation(
        "ERR_VALIDATION_INTEGER",
        f'Invalid --{flag}: "{value}". Must be an integer between {minimum} and {maximum}{unit_suffix}.',
        flag,
    )


def invalid_runtime_error(runtime: str, valid: Iterable[str]) -> FhvmError:
    return _validation(
        "ERR_VALIDATION_RUNTIME",
        f'Invalid --runtime: "{runtime}". Must be one of: {", ".join(valid)}',
        "runtime",
    )


def invalid_network_policy_error(policy: str, valid: Iterable[str]) -> FhvmError:
    return _validation(
        "ERR_VALIDATION_NETWORK_POLICY",
        f'Invalid --network-policy: "{policy}". Must be one of: {", ".join(valid)}',
        "network-policy",
    )


def invalid_port_error(port: object) -> FhvmError:
    return _validation("ERR_VALIDATION_PORT", f"Invalid port: {port}", "publish-port")


def port_conflict_error(summary: str) -> FhvmError:
    return _validation("ERR_VALIDATION_PORT_CONFLICT", f"Published port conflict: {summary}", "publish-port")


def invalid_domain_error(domain: str, detail: Optional[str] = None) -> FhvmError:
    message = f'Invalid domain pattern: "{domain}". {detail}' if detail else f'Invalid domain: "{domain}"'
    return _validation("ERR_VALIDATION_DOMAIN", message, "allowed-domain")


def invalid_cidr_error(cidr: str, detail: str) -> FhvmError:
    return _validation("ERR_VALIDATION_CIDR", f'Invalid CIDR "{cidr}": {detail}')


def invalid_disk_size_error(value: object, detail: str) -> FhvmError:
    return _validation("ERR_VALIDATION_DISK_SIZE", f'Invalid --disk: "{value}". {detail}', "disk")


def invalid_duration_error(value: str) -> FhvmError:
    return _validation(
        "ERR_VALIDATION_DURATION",
        f'Invalid duration: "{value}". Use format like "1h", "30m", "2h30m", or plain minutes.',
        "timeout",
    )


def mutually_exclusive_flags_error(flag_a: str, flag_b: str) -> FhvmError:
    return _validation(
        "ERR_VALIDATION_FLAGS",
        f"Cannot use {flag_a} and {flag_b} together",
        why="They are mutually exclusive.",
        fix=f"Use either {flag_a} or {flag_b}, not both.",
    )


def policy_conflict_error() -> FhvmError:
    return _validation(
        "ERR_VALIDATION_POLICY_CONFLICT",
        "Cannot combine network policy deny-all with allowed domains, allowed CIDRs or denied CIDRs.",
        "network-policy",
    )


def snapshot_not_found_error(snapshot_id: str) -> FhvmError:
    return _validation("ERR_VALIDATION_SNAPSHOT", f"Snapshot not found: {snapshot_id}", "snapshot")


def invalid_vm_id_error(vm_id: str) -> FhvmError:
    return _validation(
        "ERR_VALIDATION_VM_ID",
        f"Invalid VM id: {vm_id!r}",
        "id",
        fix="Use 1 to 64 letters, digits or dashes.",
    )


def vm_already_exists_error(vm_id: str) -> FhvmError:
    return _validation(
        "ERR_VALIDATION_VM_EXISTS",
        f"A VM with id {vm_id} already exists",
        "id",
        fix="Pick another id, or remove the existing VM first.",
    )


# Lifecycle


def _lifecycle(code: str, vm_id: str, message: str, **extra: Any) -> FhvmError:
    return FhvmError(ErrorKind.LIFECYCLE, code, message, context=VmContext(vm_id=vm_id), **extra)


def vm_not_found_error(vm_id: str) -> FhvmError:
    return _lifecycle("ERR_VM_NOT_FOUND", vm_id, f"VM not found: {vm_id}")


def vm_state_not_found_error(vm_id: str) -> FhvmError:
    return _lifecycle("ERR_VM_STATE_NOT_FOUND", vm_id, f"VM state not found: {vm_id}")


def vm_state_corrupt_error(vm_id: str, detail: str) -> FhvmError:
    return _lifecycle(
        "ERR_VM_STATE_CORRUPT",
        vm_id,
        f"VM state for {vm_id} is unreadable: {detail}",
        fix="Inspect or delete the state file under the vms directory.",
    )


def vm_operation_error(vm_id: str, operation: str, exc: BaseException) -> FhvmError:
    return _lifecycle(
        "ERR_VM_OPERATION_FAILED",
        vm_id,
        f"Failed to {operation} VM {vm_id}: {str(exc) or type(exc).__name__}",
    )


def vm_not_stopped_error(vm_id: str, status: str) -> FhvmError:
    return _lifecycle(
        "ERR_VM_NOT_STOPPED",
        vm_id,
        f"VM {vm_id} is not stopped (current status: {status})",
        fix="Stop the VM first, or remove it with force to stop and remove in one step.",
    )


def vm_not_running_error(vm_id: str) -> FhvmError:
    return _lifecycle(
        "ERR_VM_NOT_RUNNING",
        vm_id,
        f"VM {vm_id} is not running",
        fix="The VM must be running to update its network policy.",
    )


def chroot_not_found_error(vm_id: str) -> FhvmError:
    return _lifecycle(
        "ERR_VM_CHROOT_NOT_FOUND",
        vm_id,
        f"Chroot directory not found for VM {vm_id}",
        why="The VM data may have been removed.",
        fix="Recreate the VM.",
    )


# Resource exhaustion


def network_slots_exhausted_error() -> FhvmError:
    return FhvmError(
        ErrorKind.RESOURCE_EXHAUSTION,
        "ERR_VM_NETWORK_SLOTS_EXHAUSTED",
        "No available network slots (max 255 VMs)",
    )


# Provisioning


def _provisioning(code: str, message: str, vm_id: Optional[str] = None, **extra: Any) -> FhvmError:
    return FhvmError(ErrorKind.PROVISIONING, code, message, context=VmContext(vm_id=vm_id), **extra)


def default_interface_not_found_error() -> FhvmError:
    return _provisioning(
        "ERR_NETWORK_DEFAULT_INTERFACE",
        "Could not determine default network interface. Check your network configuration.",
    )


def network_command_error(command: Iterable[str], detail: str) -> FhvmError:
    return _provisioning("ERR_NETWORK_COMMAND", f"Command {' '.join(command)} failed: {detail}")


def policy_rollback_failed_error(vm_id: Optional[str], detail: str) -> FhvmError:
    return _provisioning(
        "ERR_NETWORK_POLICY_ROLLBACK_FAILED",
        f"Network policy update failed and the previous policy could not be restored: {detail}",
        vm_id,
        why="The VM may currently have no enforced network policy.",
        fix="Stop the VM, or retry the policy update.",
    )


def jail_prepare_error(detail: str, vm_id: Optional[str] = None) -> FhvmError:
    return _provisioning("ERR_JAIL_PREPARE_FAILED", f"Failed to prepare jail: {detail}", vm_id)


def disk_resize_error(detail: str, vm_id: Optional[str] = None) -> FhvmError:
    return _provisioning("ERR_JAIL_DISK_RESIZE_FAILED", f"Failed to resize rootfs image: {detail}", vm_id)


def missing_binary_error(binary: str, path: object) -> FhvmError:
    return _provisioning("ERR_SETUP_MISSING_BINARY", f"{binary} not found at {path}", fix=INSTALL_FIX)


def no_kernel_dir_error() -> FhvmError:
    return _provisioning("ERR_SETUP_NO_KERNEL_DIR", "No kernels directory found.", fix=INSTALL_FIX)


def no_kernel_error(kernels_dir: object) -> FhvmError:
    return _provisioning("ERR_SETUP_NO_KERNEL", f"No kernel found in {kernels_dir}.", fix=INSTALL_FIX)


def no_rootfs_dir_error() -> FhvmError:
    return _provisioning("ERR_SETUP_NO_ROOTFS_DIR", "No rootfs directory found.", fix=INSTALL_FIX)


def no_ext4_rootfs_error(rootfs_dir: object) -> FhvmError:
    return _provisioning("ERR_SETUP_NO_EXT4_ROOTFS", f"No ext4 rootfs found in {rootfs_dir}.", fix=INSTALL_FIX)


# Control plane


def firecracker_api_error(method: str, path: str, status: int, body: str) -> FhvmError:
    return FhvmError(
        ErrorKind.CONTROL_PLANE,
        "ERR_FIRECRACKER_API",
        f"{method} {path} failed ({status}): {body}",
        context=ApiContext(method=method, path=path, http_status=status),
    )


# Timeouts


def _timeout(code: str, target: str, message: str, timeout_seconds: Optional[float] = None) -> FhvmError:
    return FhvmError(
        ErrorKind.TIMEOUT,
        code,
        message,
        context=TimeoutContext(target=target, timeout_seconds=timeout_seconds),
    )


def socket_timeout_error(socket_path: object, timeout_seconds: Optional[float] = None) -> FhvmError:
    return _timeout("ERR_TIMEOUT_SOCKET", str(socket_path), f"Timeout waiting for API socket at {socket_path}", timeout_seconds)


def lock_timeout_error(lock_name: str) -> FhvmError:
    return _timeout("ERR_TIMEOUT_LOCK", lock_name, f"Timed out waiting for {lock_name} lock")


def agent_timeout_error(guest_ip: str, timeout_seconds: float) -> FhvmError:
    return _timeout(
        "ERR_TIMEOUT_AGENT",
        guest_ip,
        f"Agent at {guest_ip} not available after {timeout_seconds}s",
        timeout_seconds,
    )
