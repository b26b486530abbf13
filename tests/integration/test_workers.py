import asyncio
from datetime import timedelta

import pytest

from opsflow.core.observability import metrics_registry
from opsflow.core.timeutil import utcnow
from opsflow.services.offer_broadcast import OfferBroadcastService
from opsflow.services.sla_monitor import SlaMonitor
from opsflow.services.workflow_executor import WorkflowExecutor
from opsflow.workers.sla_worker import SlaWorker
from opsflow.workers.workflow_worker import WorkflowWorker


async def _eventually(predicate, timeout: float = 2.0):
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() > deadline:
            raise AssertionError("condition not met in time")
        await asyncio.sleep(0.01)


@pytest.fixture
def sla_worker(session_factory, bus):
    return SlaWorker(
        SlaMonitor(session_factory, bus),
        OfferBroadcastService(session_factory, bus),
        interval_seconds=3600,
    )


@pytest.mark.asyncio
async def test_sla_worker_tick_escalates_and_sweeps(sla_worker, seed_request, seed_profiles):
    now = utcnow()
    await seed_profiles("u1")
    overdue = await seed_request(status="in_progress", sla_breach_at=now - timedelta(minutes=1))
    pending = await seed_request()
    await sla_worker.offers.broadcast(pending, ["u1"], ttl_minutes=1, now=now - timedelta(minutes=5))

    result = await sla_worker.run_once(now=now)

    assert result["breaches_found"] == 1
    assert result["escalated_request_ids"] == [overdue]
    assert result["offers_expired"] == 1

    again = await sla_worker.run_once(now=now)
    assert again["breaches_found"] == 0
    assert again["offers_expired"] == 0


@pytest.mark.asyncio
async def test_sla_worker_stops_between_ticks(sla_worker):
    task = asyncio.create_task(sla_worker.start())
    await _eventually(lambda: metrics_registry.get_counter("opsflow_sla_check_runs_total") == 1)

    await sla_worker.stop()
    await asyncio.wait_for(task, timeout=1)

    assert metrics_registry.get_counter("opsflow_sla_check_runs_total") == 1


@pytest.mark.asyncio
async def test_workflow_worker_unsubscribes_on_stop(session_factory, bus, feed):
    worker = WorkflowWorker(WorkflowExecutor(session_factory, bus), bus)
    task = asyncio.create_task(worker.start())
    await _eventually(lambda: worker.subscription is not None)
    assert feed.channels == [bus.channel_for("all")]

    await worker.stop()
    await asyncio.wait_for(task, timeout=1)

    assert feed.channels == []
    assert worker.subscription is None
