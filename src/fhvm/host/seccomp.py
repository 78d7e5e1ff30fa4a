"""Seccomp BPF filter provisioning for the VMM."""

from __future__ import annotations

import asyncio
import platform
import stat
from pathlib import Path
from typing import Optional

import structlog

from ..common.settings import FhvmPaths

LOGGER = structlog.get_logger("fhvm.host.seccomp")

ARCH_MAP = {
    "x86_64": "x86_64",
    "amd64": "x86_64",
    "aarch64": "aarch64",
    "arm64": "aarch64",
}
MAX_FILTER_BYTES = 1_048_576
COMPILER = "seccompiler-bin"


class SeccompError(RuntimeError):
    """Raised when a seccomp filter cannot be compiled."""


def detect_architecture(machine: Optional[str] = None) -> str:
    machine = machine or platform.machine()
    try:
        return ARCH_MAP[machine.lower()]
    except KeyError:
        raise SeccompError(f"unsupported seccomp arch: {machine} (allowed: x86_64, aarch64)") from None


async def compile_filter(source: Path, output: Path, arch: Optional[str] = None) -> Path:
    target_arch = detect_architecture(arch)
    size = source.stat().st_size
    if size > MAX_FILTER_BYTES:
        raise SeccompError(f"seccomp filter too large: {size} bytes (max {MAX_FILTER_BYTES})")
    output.parent.mkdir(parents=True, exist_ok=True)
    try:
        process = await asyncio.create_subprocess_exec(
            COMPILER,
            "--input-file",
            str(source),
            "--target-arch",
            target_arch,
            "--output-file",
            str(output),
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
        )
    except FileNotFoundError as exc:
        raise SeccompError(f"{COMPILER} not installed") from exc
    stdout, stderr = await process.communicate()
    if process.returncode != 0:
        raise SeccompError(stderr.decode().strip() or stdout.decode().strip() or "compilation failed")
    return output


async def ensure_seccomp_filter(paths: FhvmPaths, arch: Optional[str] = None) -> Optional[Path]:
    """Return a compiled BPF filter, compiling the JSON source when needed.

    None means the VMM must run without a filter: either no source exists or
    the compiler is unavailable. The VMM only accepts compiled BPF.
    """

    bpf_path = paths.seccomp_dir / "default.bpf"
    if bpf_path.exists():
        LOGGER.debug("Using compiled seccomp filter", path=str(bpf_path))
        return bpf_path

    source = paths.seccomp_filter
    try:
        mode = source.stat().st_mode
    except FileNotFoundError:
        LOGGER.debug("No seccomp filter source", path=str(source))
        return None
    if mode & (stat.S_IWGRP | stat.S_IWOTH):
        LOGGER.warning(
            "Seccomp filter source is group/world writable; consider restricting permissions",
            path=str(source),
            mode=oct(mode & 0o777),
        )

    try:
        await compile_filter(source, bpf_path, arch)
    except (SeccompError, OSError) as exc:
        LOGGER.warning(
            "Seccomp filter compilation failed; seccomp filtering disabled",
            path=str(source),
            error=str(exc),
        )
        return None
    LOGGER.info("Compiled seccomp filter", path=str(bpf_path))
    return bpf_path
