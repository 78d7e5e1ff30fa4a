"""Readiness probing of the in-guest agent."""

from __future__ import annotations

import asyncio
import time
from typing import Optional

import httpx
import structlog

from ..common.errors import agent_timeout_error

LOGGER = structlog.get_logger("fhvm.host.agent_client")

REQUEST_TIMEOUT_SECONDS = 2.0
POLL_INTERVAL_SECONDS = 0.5


async def wait_for_agent(
    guest_ip: str,
    port: int,
    timeout: float = 60.0,
    *,
    transport: Optional[httpx.AsyncBaseTransport] = None,
) -> None:
    """Poll ``GET /health`` on the guest until it answers 2xx."""

    url = f"http://{guest_ip}:{port}/health"
    deadline = time.monotonic() + timeout
    attempts = 0
    async with httpx.AsyncClient(timeout=REQUEST_TIMEOUT_SECONDS, transport=transport) as client:
        while time.monotonic() < deadline:
            attempts += 1
            try:
                response = await client.get(url)
                if response.is_success:
                    LOGGER.info("Guest agent ready", guest_ip=guest_ip, attempts=attempts)
                    return
            except httpx.HTTPError as exc:
                LOGGER.debug("Guest agent not ready", guest_ip=guest_ip, error=str(exc))
            await asyncio.sleep(POLL_INTERVAL_SECONDS)
    raise agent_timeout_error(guest_ip, timeout)
