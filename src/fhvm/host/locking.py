"""Cross-process advisory lock backed by an exclusively created file."""

from __future__ import annotations

import asyncio
import os
import secrets
import time
from pathlib import Path
from typing import Optional

import structlog

from ..common.errors import lock_timeout_error

LOGGER = structlog.get_logger("fhvm.host.locking")

STALE_SECONDS = 300.0
RETRY_INTERVAL_SECONDS = 0.05
MAX_RETRIES = 600


class FileLock:
    """Mutual exclusion between fhvm processes sharing one state directory.

    The lock file holds the owner's pid. A lock file whose mtime is older than
    ``stale_seconds`` is treated as abandoned by a crashed holder and broken.
    Usable as ``with lock:`` from sync code and ``async with lock:`` from
    coroutines; the async form sleeps between attempts instead of blocking.
    """

    def __init__(
        self,
        path: Path | str,
        name: str,
        *,
        stale_seconds: float = STALE_SECONDS,
        retry_interval: float = RETRY_INTERVAL_SECONDS,
        retries: int = MAX_RETRIES,
    ) -> None:
        self.path = Path(path)
        self.name = name
        self._stale_seconds = stale_seconds
        self._retry_interval = retry_interval
        self._retries = retries
        self._held = False

    @property
    def held(self) -> bool:
        return self._held

    def _try_acquire(self) -> bool:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        try:
            fd = os.open(self.path, os.O_CREAT | os.O_EXCL | os.O_WRONLY, 0o600)
        except FileExistsError:
            self._break_if_stale()
            return False
        try:
            os.write(fd, str(os.getpid()).encode())
        finally:
            os.close(fd)
        self._held = True
        return True

    def _break_if_stale(self) -> None:
        try:
            seen = self.path.stat()
        except FileNotFoundError:
            return
        age = time.time() - seen.st_mtime
        if age <= self._stale_seconds:
            return
        # Claim the file under a private name; only one waiter can win the rename.
        claimed = self.path.with_name(f"{self.path.name}.stale.{os.getpid()}.{secrets.token_hex(4)}")
        try:
            os.rename(self.path, claimed)
        except FileNotFoundError:
            return
        try:
            current = claimed.stat()
            if (current.st_ino, current.st_mtime_ns) != (seen.st_ino, seen.st_mtime_ns):
                # A live holder replaced the stale file after our stat; hand it back.
                try:
                    os.link(claimed, self.path)
                except FileExistsError:
                    LOGGER.warning("Could not restore replaced lock", lock=self.name, path=str(self.path))
                return
            LOGGER.warning("Breaking stale lock", lock=self.name, path=str(self.path), age_seconds=round(age, 1))
        finally:
            claimed.unlink(missing_ok=True)

    def acquire(self) -> None:
        for attempt in range(self._retries + 1):
            if self._try_acquire():
                return
            if attempt < self._retries:
                time.sleep(self._retry_interval)
        raise lock_timeout_error(self.name)

    async def acquire_async(self) -> None:
        for attempt in range(self._retries + 1):
            if self._try_acquire():
                return
            if attempt < self._retries:
                await asyncio.sleep(self._retry_interval)
        raise lock_timeout_error(self.name)

    def release(self) -> None:
        if not self._held:
            return
        self._held = False
        self.path.unlink(missing_ok=True)

    def holder_pid(self) -> Optional[int]:
        try:
            return int(self.path.read_text().strip())
        except (OSError, ValueError):
            return None

    def __enter__(self) -> "FileLock":
        self.acquire()
        return self

    def __exit__(self, *exc_info) -> None:
        self.release()

    async def __aenter__(self) -> "FileLock":
        await self.acquire_async()
        return self

    async def __aexit__(self, *exc_info) -> None:
        self.release()
