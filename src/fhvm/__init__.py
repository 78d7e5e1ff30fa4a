"""Firecracker microVM sandbox provisioning for a single Linux host."""

from __future__ import annotations

from typing import Optional

from .common.observability import configure_logging, configure_tracing
from .common.settings import FhvmSettings
from .host.hooks import LifecycleHooks
from .host.orchestrator import VmOrchestrator

__version__ = "0.1.0"


def create_orchestrator(
    settings: Optional[FhvmSettings] = None,
    *,
    hooks: Optional[LifecycleHooks] = None,
) -> VmOrchestrator:
    """Build an orchestrator wired to the real host backends."""

    settings = settings or FhvmSettings()
    configure_logging("fhvm", settings.log_level, settings.log_format)
    configure_tracing(
        "fhvm",
        endpoint=settings.otel_exporter_endpoint,
        headers=settings.otel_exporter_headers,
        sampler_ratio=settings.otel_sampler_ratio,
    )
    return VmOrchestrator(settings, hooks=hooks)
