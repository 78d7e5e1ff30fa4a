from __future__ import annotations

import json
import stat

import pytest

from fhvm.common.errors import ErrorKind, FhvmError
from fhvm.common.schemas import VmRecord, VmStatus
from fhvm.host import state
from fhvm.host.network import derive_identity
from fhvm.host.state import FileVmStateStore


def _record(vm_id: str, slot: int, status: VmStatus = VmStatus.RUNNING, created_at: str = "2024-01-01T00:00:00+00:00") -> VmRecord:
    return VmRecord(
        id=vm_id,
        status=status,
        kernel="/k",
        rootfs="/r",
        created_at=created_at,
        network=derive_identity(slot),
    )


def test_save_load_and_permissions(tmp_path):
    store = FileVmStateStore(tmp_path / "vms", interface_lister=list)
    record = _record("vm-00000001", 3)
    store.save(record)

    path = store.path_for("vm-00000001")
    assert stat.S_IMODE(path.stat().st_mode) == 0o600
    assert stat.S_IMODE(store.directory.stat().st_mode) == 0o700
    assert json.loads(path.read_text())["network"]["hostIp"] == "172.16.3.1"
    assert store.load("vm-00000001") == record
    assert store.load("vm-missing") is None
    assert not list(store.directory.glob("*.tmp"))


def test_update_and_delete(tmp_path):
    store = FileVmStateStore(tmp_path, interface_lister=list)
    store.save(_record("vm-1", 0, VmStatus.CREATING))

    updated = store.update("vm-1", status=VmStatus.RUNNING, pid=77)
    assert updated.status is VmStatus.RUNNING
    assert store.load("vm-1").pid == 77

    store.delete("vm-1")
    store.delete("vm-1")
    assert store.load("vm-1") is None
    with pytest.raises(FhvmError) as exc_info:
        store.update("vm-1", status=VmStatus.STOPPED)
    assert exc_info.value.code == "ERR_VM_STATE_NOT_FOUND"


def test_list_skips_unreadable_files(tmp_path):
    store = FileVmStateStore(tmp_path, interface_lister=list)
    store.save(_record("vm-b", 1))
    store.save(_record("vm-a", 0))
    (tmp_path / "vm-broken.json").write_text("{not json")
    (tmp_path / "vm-partial.json").write_text(json.dumps({"id": "vm-partial"}))

    assert [record.id for record in store.list()] == ["vm-a", "vm-b"]


def test_load_reports_corrupt_record(tmp_path):
    store = FileVmStateStore(tmp_path, interface_lister=list)
    (tmp_path / "vm-broken.json").write_text("{not json")
    (tmp_path / "vm-partial.json").write_text(json.dumps({"id": "vm-partial"}))

    for vm_id in ("vm-broken", "vm-partial"):
        with pytest.raises(FhvmError) as excinfo:
            store.load(vm_id)
        assert excinfo.value.code == "ERR_VM_STATE_CORRUPT"
        assert excinfo.value.kind is ErrorKind.LIFECYCLE
        assert excinfo.value.vm_id == vm_id


def test_allocate_slot_skips_active_records_and_live_interfaces(tmp_path):
    interfaces = ["lo", "eth0", "fhvm2", "veth-h-3", "veth-g-4", "docker0"]
    store = FileVmStateStore(tmp_path, interface_lister=lambda: interfaces)
    store.save(_record("vm-running", 0, VmStatus.RUNNING))
    store.save(_record("vm-creating", 1, VmStatus.CREATING))
    store.save(_record("vm-stopped", 4, VmStatus.STOPPED))
    store.save(_record("vm-error", 5, VmStatus.ERROR))

    assert store.allocate_slot() == 4


def test_allocate_slot_exhaustion(tmp_path):
    store = FileVmStateStore(tmp_path, interface_lister=lambda: [f"fhvm{slot}" for slot in range(255)])
    with pytest.raises(FhvmError) as exc_info:
        store.allocate_slot()
    assert exc_info.value.kind is ErrorKind.RESOURCE_EXHAUSTION


def test_interface_slots_parsing():
    assert state.interface_slots(["fhvm0", "fhvm254", "fhvm255", "fhvmx", "veth-h-12", "veth-g-13", "docker0"]) == {0, 254, 12}


def test_lock_paths(tmp_path):
    store = FileVmStateStore(tmp_path, interface_lister=list)
    assert store.slot_lock().path == tmp_path / ".slot-allocation.lock"
    assert store.vm_lock("vm-1").path == tmp_path / ".vm-1.json.lock"
