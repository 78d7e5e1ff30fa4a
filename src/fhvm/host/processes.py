"""Locating and killing the processes that belong to a VM."""

from __future__ import annotations

import os
import signal
import subprocess
from pathlib import Path
from typing import Optional

import structlog

LOGGER = structlog.get_logger("fhvm.host.processes")

PROC_ROOT = Path("/proc")


def _find_pid(marker: str, vm_id: str, proc_root: Path = PROC_ROOT) -> Optional[int]:
    try:
        entries = [entry for entry in proc_root.iterdir() if entry.name.isdigit()]
    except OSError:
        return None
    for entry in entries:
        try:
            cmdline = (entry / "cmdline").read_bytes().replace(b"\0", b" ").decode(errors="replace")
        except OSError:
            # Exited between listing and reading.
            continue
        if marker in cmdline and vm_id in cmdline:
            return int(entry.name)
    return None


def find_vm_pid(vm_id: str, proc_root: Path = PROC_ROOT) -> Optional[int]:
    return _find_pid("firecracker", vm_id, proc_root)


def find_jailer_pid(vm_id: str, proc_root: Path = PROC_ROOT) -> Optional[int]:
    return _find_pid("jailer", vm_id, proc_root)


def safe_kill(pid: int, sig: int = signal.SIGTERM) -> bool:
    """Deliver ``sig``; False when the process is already gone."""

    try:
        os.kill(pid, sig)
        return True
    except ProcessLookupError:
        return False
    except PermissionError:
        result = subprocess.run(
            ["sudo", "kill", f"-{int(sig)}", str(pid)],
            stdout=subprocess.PIPE,
            stderr=subprocess.PIPE,
            check=False,
        )
        if result.returncode != 0:
            LOGGER.warning("Failed to kill process", pid=pid, error=result.stderr.decode().strip())
        return result.returncode == 0


def kill_vm_processes(vm_id: str, tracked_pid: Optional[int] = None, proc_root: Path = PROC_ROOT) -> list[int]:
    """SIGKILL the tracked pid plus any VMM or jailer still running for ``vm_id``."""

    killed: list[int] = []
    candidates = [tracked_pid, find_vm_pid(vm_id, proc_root), find_jailer_pid(vm_id, proc_root)]
    for pid in dict.fromkeys(p for p in candidates if p):
        if safe_kill(pid, signal.SIGKILL):
            killed.append(pid)
    if killed:
        LOGGER.info("Killed VM processes", vm_id=vm_id, pids=killed)
    return killed
