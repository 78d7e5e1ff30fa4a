"""Lifecycle event callbacks for embedding fhvm in larger tools."""

from __future__ import annotations

import enum
import inspect
from collections import defaultdict
from typing import Any, Awaitable, Callable, Union

import structlog

LOGGER = structlog.get_logger("fhvm.host.hooks")


class HookEvent(str, enum.Enum):
    VM_BEFORE_CREATE = "vm:before_create"
    VM_AFTER_CREATE = "vm:after_create"
    VM_BEFORE_START = "vm:before_start"
    VM_AFTER_START = "vm:after_start"
    VM_BEFORE_STOP = "vm:before_stop"
    VM_AFTER_STOP = "vm:after_stop"
    VM_BEFORE_REMOVE = "vm:before_remove"
    VM_AFTER_REMOVE = "vm:after_remove"
    VM_ERROR = "vm:error"
    NETWORK_AFTER_SETUP = "network:after_setup"
    NETWORK_AFTER_TEARDOWN = "network:after_teardown"
    NETWORK_POLICY_CHANGE = "network:policy_change"


HookCallback = Callable[[dict[str, Any]], Union[None, Awaitable[None]]]


class LifecycleHooks:
    """Registry of callbacks per event.

    A failing callback is logged and skipped; it never aborts the operation
    that emitted the event.
    """

    def __init__(self) -> None:
        self._callbacks: dict[HookEvent, list[HookCallback]] = defaultdict(list)

    def register(self, event: HookEvent | str, callback: HookCallback) -> Callable[[], None]:
        key = HookEvent(event)
        self._callbacks[key].append(callback)

        def unregister() -> None:
            if callback in self._callbacks[key]:
                self._callbacks[key].remove(callback)

        return unregister

    async def emit(self, event: HookEvent | str, payload: dict[str, Any]) -> None:
        key = HookEvent(event)
        for callback in list(self._callbacks.get(key, ())):
            try:
                result = callback(payload)
                if inspect.isawaitable(result):
                    await result
            except Exception as exc:  # noqa: BLE001
                LOGGER.warning("Lifecycle hook failed", hook_event=key.value, error=str(exc))
