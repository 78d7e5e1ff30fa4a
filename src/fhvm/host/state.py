"""Persistent VM state: one JSON document per microVM."""

from __future__ import annotations

import os
import re
import tempfile
from pathlib import Path
from typing import Callable, Iterable, Optional

import structlog
from pydantic import ValidationError

from ..common.errors import network_slots_exhausted_error, vm_state_corrupt_error, vm_state_not_found_error
from ..common.schemas import ACTIVE_STATUSES, VmRecord
from .locking import FileLock

LOGGER = structlog.get_logger("fhvm.host.state")

MAX_SLOT = 254
SYS_CLASS_NET = Path("/sys/class/net")
_SLOT_IFACE = re.compile(r"^(?:fhvm|veth-h-)(\d+)$")


def list_host_interfaces() -> list[str]:
    try:
        return [entry.name for entry in SYS_CLASS_NET.iterdir()]
    except OSError:
        return []


def interface_slots(names: Iterable[str]) -> set[int]:
    """Slots claimed by live TAP devices and host-side veth ends."""

    slots: set[int] = set()
    for name in names:
        match = _SLOT_IFACE.match(name)
        if not match:
            continue
        slot = int(match.group(1))
        if 0 <= slot <= MAX_SLOT:
            slots.add(slot)
    return slots


def lowest_free_slot(used: set[int]) -> int:
    for slot in range(MAX_SLOT + 1):
        if slot not in used:
            return slot
    raise network_slots_exhausted_error()


class FileVmStateStore:
    """VM records stored as ``<id>.json`` files in a private directory."""

    def __init__(
        self,
        directory: Path | str,
        *,
        interface_lister: Callable[[], Iterable[str]] = list_host_interfaces,
    ) -> None:
        self._dir = Path(directory)
        self._interface_lister = interface_lister

    @property
    def directory(self) -> Path:
        return self._dir

    def _ensure_dir(self) -> None:
        self._dir.mkdir(parents=True, exist_ok=True, mode=0o700)
        try:
            self._dir.chmod(0o700)
        except FileNotFoundError:
            pass

    def path_for(self, vm_id: str) -> Path:
        return self._dir / f"{vm_id}.json"

    def slot_lock(self, **options) -> FileLock:
        return FileLock(self._dir / ".slot-allocation.lock", "slot allocation", **options)

    def vm_lock(self, vm_id: str, **options) -> FileLock:
        return FileLock(self._dir / f".{vm_id}.json.lock", f"vm {vm_id}", **options)

    def save(self, record: VmRecord) -> None:
        self._ensure_dir()
        target = self.path_for(record.id)
        fd, tmp_name = tempfile.mkstemp(dir=self._dir, prefix=f".{record.id}.", suffix=".tmp")
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as handle:
                handle.write(record.to_json())
            os.chmod(tmp_name, 0o600)
            os.replace(tmp_name, target)
        except BaseException:
            Path(tmp_name).unlink(missing_ok=True)
            raise

    def load(self, vm_id: str) -> Optional[VmRecord]:
        path = self.path_for(vm_id)
        try:
            raw = path.read_text(encoding="utf-8")
        except FileNotFoundError:
            return None
        try:
            return VmRecord.model_validate_json(raw)
        except ValidationError as exc:
            raise vm_state_corrupt_error(vm_id, f"{exc.error_count()} invalid field(s) in {path.name}") from exc

    def list(self) -> list[VmRecord]:
        self._ensure_dir()
        records: list[VmRecord] = []
        for path in sorted(self._dir.glob("*.json")):
            try:
                records.append(VmRecord.model_validate_json(path.read_text(encoding="utf-8")))
            except FileNotFoundError:
                continue
            except ValidationError as exc:
                LOGGER.warning("Skipping unreadable VM state", path=str(path), error=str(exc))
        return records

    def update(self, vm_id: str, **changes) -> VmRecord:
        record = self.load(vm_id)
        if record is None:
            raise vm_state_not_found_error(vm_id)
        updated = record.model_copy(update=changes)
        self.save(updated)
        return updated

    def delete(self, vm_id: str) -> None:
        self.path_for(vm_id).unlink(missing_ok=True)

    def allocate_slot(self) -> int:
        """Return the lowest slot no active VM or live interface holds.

        Callers must hold :meth:`slot_lock` until the record that claims the
        slot has been saved.
        """

        used = {record.network.slot for record in self.list() if record.status in ACTIVE_STATUSES}
        used |= interface_slots(self._interface_lister())
        slot = lowest_free_slot(used)
        LOGGER.debug("Allocated network slot", slot=slot, in_use=len(used))
        return slot
