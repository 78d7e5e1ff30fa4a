"""Concurrent creates race for network slots under randomized interleavings."""

from __future__ import annotations

import asyncio
import tempfile
from pathlib import Path

from hypothesis import HealthCheck, given, settings, strategies as st

from fhvm.common.schemas import VmStatus
from fhvm.host.state import MAX_SLOT
from tests.utils.fakes import Harness


async def _create_all(harness: Harness, count: int):
    return await asyncio.gather(*(harness.orchestrator.create() for _ in range(count)))


@settings(max_examples=8, deadline=None, suppress_health_check=[HealthCheck.too_slow])
@given(
    count=st.integers(min_value=1, max_value=MAX_SLOT + 1),
    yields=st.lists(st.integers(min_value=0, max_value=5), min_size=1, max_size=16),
)
def test_concurrent_creates_claim_distinct_lowest_slots(count: int, yields: list[int]) -> None:
    with tempfile.TemporaryDirectory() as tmp_dir:
        harness = Harness(Path(tmp_dir))
        harness.backend.yields = yields

        results = asyncio.run(_create_all(harness, count))

        slots = sorted(result.record.network.slot for result in results)
        assert slots == list(range(count))
        assert len({result.vm_id for result in results}) == count
        records = harness.orchestrator.list()
        assert len(records) == count
        assert all(record.status is VmStatus.RUNNING for record in records)
        assert len(harness.backend.namespaces) == count
        assert not (harness.store.directory / ".slot-allocation.lock").exists()
