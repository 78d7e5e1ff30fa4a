from __future__ import annotations

import pytest

from fhvm.host.hooks import HookEvent, LifecycleHooks


@pytest.mark.asyncio
async def test_sync_and_async_callbacks_receive_payload():
    hooks = LifecycleHooks()
    received = []

    def on_sync(payload):  # noqa: ANN001
        received.append(("sync", payload["vm_id"]))

    async def on_async(payload):  # noqa: ANN001
        received.append(("async", payload["vm_id"]))

    hooks.register(HookEvent.VM_AFTER_CREATE, on_sync)
    hooks.register("vm:after_create", on_async)
    await hooks.emit(HookEvent.VM_AFTER_CREATE, {"vm_id": "vm-1"})
    await hooks.emit(HookEvent.VM_AFTER_STOP, {"vm_id": "vm-1"})

    assert received == [("sync", "vm-1"), ("async", "vm-1")]


@pytest.mark.asyncio
async def test_failing_callback_does_not_abort_emit():
    hooks = LifecycleHooks()
    received = []

    async def broken(payload):  # noqa: ANN001
        raise RuntimeError("hook exploded")

    hooks.register(HookEvent.VM_ERROR, broken)
    hooks.register(HookEvent.VM_ERROR, lambda payload: received.append(payload["phase"]))
    await hooks.emit(HookEvent.VM_ERROR, {"vm_id": "vm-1", "phase": "create"})

    assert received == ["create"]


@pytest.mark.asyncio
async def test_unregister():
    hooks = LifecycleHooks()
    received = []
    unregister = hooks.register(HookEvent.NETWORK_POLICY_CHANGE, received.append)
    unregister()
    unregister()
    await hooks.emit(HookEvent.NETWORK_POLICY_CHANGE, {"vm_id": "vm-1"})
    assert received == []


def test_unknown_event_is_rejected():
    with pytest.raises(ValueError):
        LifecycleHooks().register("vm:exploded", print)
