"""Property-based tests for network slot derivation and allocation."""

from __future__ import annotations

import tempfile
from datetime import datetime, timezone

from hypothesis import given, settings, strategies as st

from fhvm.common.schemas import VmRecord, VmStatus
from fhvm.host.network import derive_identity, host_veth_name, tap_device_name
from fhvm.host.state import MAX_SLOT, FileVmStateStore, interface_slots

slots = st.integers(min_value=0, max_value=MAX_SLOT)


@given(slots)
def test_identity_is_a_function_of_the_slot(slot: int) -> None:
    identity = derive_identity(slot)
    assert identity.slot == slot
    assert identity.guest_ip == f"172.16.{slot}.2"
    assert identity.host_ip == f"172.16.{slot}.1"
    assert int(identity.mac_address.rsplit(":", 1)[1], 16) == slot + 1
    assert interface_slots([tap_device_name(slot)]) == {slot}
    assert interface_slots([host_veth_name(slot)]) == {slot}


@settings(max_examples=40, deadline=None)
@given(
    records=st.dictionaries(slots, st.sampled_from(list(VmStatus)), max_size=12),
    interfaces=st.sets(slots, max_size=8),
)
def test_allocate_slot_returns_lowest_unclaimed(records: dict[int, VmStatus], interfaces: set[int]) -> None:
    names = [tap_device_name(slot) for slot in interfaces] + ["eth0", "lo", "docker0"]
    with tempfile.TemporaryDirectory() as tmp_dir:
        store = FileVmStateStore(tmp_dir, interface_lister=lambda: names)
        for slot, status in records.items():
            store.save(
                VmRecord(
                    id=f"vm-{slot:08x}",
                    status=status,
                    kernel="vmlinux",
                    rootfs="rootfs.ext4",
                    network=derive_identity(slot),
                    created_at=datetime.now(timezone.utc).isoformat(),
                )
            )

        allocated = store.allocate_slot()

    claimed = {slot for slot, status in records.items() if status in (VmStatus.CREATING, VmStatus.RUNNING)}
    claimed |= interfaces
    assert allocated not in claimed
    assert all(slot in claimed for slot in range(allocated))
