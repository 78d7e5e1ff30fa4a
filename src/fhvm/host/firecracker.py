"""Client for the Firecracker control API over its Unix socket."""

from __future__ import annotations

import asyncio
import time
from pathlib import Path
from typing import Any, Optional

import httpx
import structlog

from ..common.errors import firecracker_api_error, socket_timeout_error

LOGGER = structlog.get_logger("fhvm.host.firecracker")

SOCKET_POLL_INTERVAL = 0.1


class FirecrackerClient:
    """Drives the boot protocol of one VMM instance."""

    def __init__(self, socket_path: Path | str, *, transport: Optional[httpx.AsyncBaseTransport] = None) -> None:
        self.socket_path = Path(socket_path)
        self._transport = transport

    def _client(self) -> httpx.AsyncClient:
        transport = self._transport or httpx.AsyncHTTPTransport(uds=str(self.socket_path))
        return httpx.AsyncClient(transport=transport, base_url="http://localhost")

    async def _request(self, method: str, path: str, payload: dict[str, Any]) -> None:
        async with self._client() as client:
            response = await client.request(method, path, json=payload)
        if response.status_code >= 400:
            raise firecracker_api_error(method, path, response.status_code, response.text.strip())
        LOGGER.debug("Firecracker API call", method=method, path=path, status=response.status_code)

    async def _put(self, path: str, payload: dict[str, Any]) -> None:
        await self._request("PUT", path, payload)

    async def boot(self, kernel_path: str, boot_args: str) -> None:
        await self._put("/boot-source", {"kernel_image_path": kernel_path, "boot_args": boot_args})

    async def add_drive(self, drive_id: str, path_on_host: str, *, is_root: bool = True, read_only: bool = False) -> None:
        await self._put(
            f"/drives/{drive_id}",
            {
                "drive_id": drive_id,
                "path_on_host": path_on_host,
                "is_root_device": is_root,
                "is_read_only": read_only,
                "cache_type": "Unsafe",
                "io_engine": "Sync",
            },
        )

    async def configure(self, vcpu_count: int, mem_size_mib: int) -> None:
        await self._put(
            "/machine-config",
            {
                "vcpu_count": vcpu_count,
                "mem_size_mib": mem_size_mib,
                "smt": False,
                "track_dirty_pages": False,
            },
        )

    async def add_network(self, iface_id: str, tap_device: str, mac_address: str) -> None:
        await self._put(
            f"/network-interfaces/{iface_id}",
            {"iface_id": iface_id, "host_dev_name": tap_device, "guest_mac": mac_address},
        )

    async def start(self) -> None:
        await self._put("/actions", {"action_type": "InstanceStart"})

    async def load_snapshot(self, snapshot_path: str, mem_file_path: str) -> None:
        await self._put("/snapshot/load", {"snapshot_path": snapshot_path, "mem_file_path": mem_file_path})

    async def resume(self) -> None:
        await self._request("PATCH", "/vm", {"state": "Resumed"})


async def _connectable(path: Path) -> bool:
    try:
        _, writer = await asyncio.open_unix_connection(str(path))
    except OSError:
        return False
    writer.close()
    try:
        await writer.wait_closed()
    except OSError:
        pass
    return True


async def wait_for_socket(socket_path: Path | str, timeout: float = 5.0) -> None:
    """Block until the VMM accepts connections on its API socket."""

    path = Path(socket_path)
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if path.exists() and await _connectable(path):
            return
        await asyncio.sleep(SOCKET_POLL_INTERVAL)
    raise socket_timeout_error(path, timeout)
