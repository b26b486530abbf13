import asyncio
from datetime import timedelta

import pytest
from sqlalchemy import func, select, update

from opsflow.core.observability import metrics_registry
from opsflow.core.timeutil import utcnow
from opsflow.domain.sla import DedupKeyMode, SlaState
from opsflow.models.base_models import DomainEventRecord, MaintenanceRequest, SLABreachRecord
from opsflow.services.sla_monitor import SlaMonitor
from opsflow.shared.event_bus.subscription import EventFilter


def _monitor(session_factory, bus, mode=DedupKeyMode.BREACH_INSTANCE) -> SlaMonitor:
    return SlaMonitor(session_factory, bus, dedup_mode=mode)


async def _records(session_factory) -> list[SLABreachRecord]:
    async with session_factory() as session:
        return list((await session.execute(select(SLABreachRecord))).scalars().all())


async def _breach_events(session_factory) -> int:
    async with session_factory() as session:
        return await session.scalar(
            select(func.count())
            .select_from(DomainEventRecord)
            .where(DomainEventRecord.event_type == "maintenance.sla.breached")
        )


@pytest.mark.asyncio
async def test_breach_is_escalated_once(session_factory, bus, seed_request):
    now = utcnow()
    request_id = await seed_request(status="in_progress", priority="high", sla_breach_at=now - timedelta(minutes=5))
    received = []

    async def handler(event):
        received.append(event)

    sub = await bus.subscribe(EventFilter(event_type="maintenance.sla.breached"), handler)
    monitor = _monitor(session_factory, bus)

    first = await monitor.run_check(now=now)
    second = await monitor.run_check(now=now + timedelta(seconds=1))
    await sub.drain()

    assert first.breaches_found == 1
    assert first.escalated_request_ids == [request_id]
    assert second.breaches_found == 0
    assert second.skipped == 0
    [record] = await _records(session_factory)
    assert record.request_id == request_id
    assert record.escalation_type == "sla_breach"
    assert record.penalty_amount == 250.0
    assert await _breach_events(session_factory) == 1

    [event] = received
    assert event.severity.value == "critical"
    assert event.payload["breach_record_id"] == record.id
    assert event.payload["penalty_amount"] == 250.0
    assert metrics_registry.get_counter("opsflow_sla_breaches_total") == 1
    assert metrics_registry.get_counter("opsflow_sla_check_runs_total") == 2


@pytest.mark.asyncio
async def test_only_open_overdue_requests_are_candidates(session_factory, bus, seed_request):
    now = utcnow()
    await seed_request(status="completed", sla_breach_at=now - timedelta(hours=1))
    await seed_request(status="cancelled", sla_breach_at=now - timedelta(hours=1))
    await seed_request(status="pending", sla_breach_at=now + timedelta(hours=1))
    await seed_request(status="pending", sla_breach_at=None)
    overdue = await seed_request(status="pending", sla_breach_at=now - timedelta(seconds=1))

    result = await _monitor(session_factory, bus).run_check(now=now)

    assert result.escalated_request_ids == [overdue]
    assert metrics_registry.get_gauge("opsflow_sla_breached_open") == 1


@pytest.mark.asyncio
async def test_penalty_grows_with_hours_overdue(session_factory, bus, seed_request):
    now = utcnow()
    await seed_request(status="in_progress", priority="high", sla_breach_at=now - timedelta(hours=3, minutes=30))

    await _monitor(session_factory, bus).run_check(now=now)

    [record] = await _records(session_factory)
    assert record.penalty_amount == 325.0
    assert record.meta["hours_overdue"] == 3.5


async def _reopen_with_new_deadline(session_factory, request_id, deadline):
    async with session_factory() as session:
        await session.execute(
            update(MaintenanceRequest)
            .where(MaintenanceRequest.id == request_id)
            .values(status="in_progress", sla_breach_at=deadline)
        )
        await session.commit()


@pytest.mark.asyncio
async def test_breach_instance_mode_escalates_each_missed_deadline(session_factory, bus, seed_request):
    now = utcnow()
    request_id = await seed_request(status="in_progress", sla_breach_at=now - timedelta(minutes=5))
    monitor = _monitor(session_factory, bus, DedupKeyMode.BREACH_INSTANCE)
    await monitor.run_check(now=now)

    await _reopen_with_new_deadline(session_factory, request_id, now + timedelta(hours=1))
    result = await monitor.run_check(now=now + timedelta(hours=2))

    assert result.breaches_found == 1
    assert len(await _records(session_factory)) == 2
    assert await _breach_events(session_factory) == 2


@pytest.mark.asyncio
async def test_request_mode_escalates_a_request_only_once(session_factory, bus, seed_request):
    now = utcnow()
    request_id = await seed_request(status="in_progress", sla_breach_at=now - timedelta(minutes=5))
    monitor = _monitor(session_factory, bus, DedupKeyMode.REQUEST)
    await monitor.run_check(now=now)

    await _reopen_with_new_deadline(session_factory, request_id, now + timedelta(hours=1))
    result = await monitor.run_check(now=now + timedelta(hours=2))

    assert result.breaches_found == 0
    assert len(await _records(session_factory)) == 1


@pytest.mark.asyncio
async def test_concurrent_checkers_create_one_record(session_factory, bus, seed_request):
    now = utcnow()
    await seed_request(status="in_progress", sla_breach_at=now - timedelta(minutes=5))
    checkers = [_monitor(session_factory, bus) for _ in range(3)]

    results = await asyncio.gather(*(m.run_check(now=now) for m in checkers))

    assert sum(r.breaches_found for r in results) == 1
    assert len(await _records(session_factory)) == 1
    assert await _breach_events(session_factory) == 1


@pytest.mark.asyncio
async def test_summary_and_breach_listing(session_factory, bus, seed_request):
    now = utcnow()
    breached = await seed_request(
        title="Broken chiller", status="in_progress", priority="critical", sla_breach_at=now - timedelta(minutes=10)
    )
    await seed_request(
        status="completed",
        created_at=now - timedelta(hours=5),
        completed_at=now - timedelta(hours=3),
        sla_breach_at=now - timedelta(hours=1),
    )
    warning = await seed_request(status="assigned", sla_breach_at=now + timedelta(minutes=10))
    await seed_request(status="pending", sla_breach_at=now + timedelta(days=1))
    monitor = _monitor(session_factory, bus)
    await monitor.run_check(now=now)

    summary = await monitor.summary(days=30, now=now)

    assert summary == {
        "window_days": 30,
        "total_requests": 4,
        "breached_requests": 1,
        "warning_requests": 1,
        "compliance_rate": 75.0,
        "avg_resolution_hours": 2.0,
        "total_penalties": 500.0,
    }

    [item] = await monitor.list_breaches(days=30, now=now)
    assert item["request_id"] == breached
    assert item["request"]["title"] == "Broken chiller"
    assert item["penalty_amount"] == 500.0
    assert item["metadata"]["dedup_mode"] == "breach_instance"

    async with session_factory() as session:
        row = await session.get(MaintenanceRequest, warning)
    assert monitor.state_of(row, now) is SlaState.WARNING


@pytest.mark.asyncio
async def test_empty_window_reports_full_compliance(session_factory, bus):
    summary = await _monitor(session_factory, bus).summary()
    assert summary["total_requests"] == 0
    assert summary["compliance_rate"] == 100.0


@pytest.mark.asyncio
@pytest.mark.parametrize("mode", [DedupKeyMode.BREACH_INSTANCE, DedupKeyMode.REQUEST])
async def test_escalated_backlog_does_not_hide_new_breaches(session_factory, bus, seed_request, mode):
    now = utcnow()
    for minutes in (120, 90):
        await seed_request(status="in_progress", sla_breach_at=now - timedelta(minutes=minutes))
    monitor = _monitor(session_factory, bus, mode)
    first = await monitor.run_check(now=now, limit=2)

    fresh = await seed_request(status="pending", sla_breach_at=now - timedelta(minutes=1))
    second = await monitor.run_check(now=now + timedelta(seconds=5), limit=2)
    third = await monitor.run_check(now=now + timedelta(seconds=10), limit=2)

    assert first.breaches_found == 2
    assert second.escalated_request_ids == [fresh]
    assert third.breaches_found == 0
    assert len(await _records(session_factory)) == 3
    assert metrics_registry.get_gauge("opsflow_sla_breached_open") == 3


@pytest.mark.asyncio
async def test_check_summary_and_listing_are_tenant_scoped(session_factory, bus, seed_request):
    now = utcnow()
    acme = await seed_request(tenant_id="acme", status="in_progress", sla_breach_at=now - timedelta(minutes=5))
    local = await seed_request(status="in_progress", priority="high", sla_breach_at=now - timedelta(minutes=5))
    monitor = _monitor(session_factory, bus)

    scoped = await monitor.run_check(now=now, tenant_id="acme")
    rest = await monitor.run_check(now=now)

    assert scoped.escalated_request_ids == [acme]
    assert rest.escalated_request_ids == [local]

    acme_summary = await monitor.summary(now=now, tenant_id="acme")
    assert acme_summary["total_requests"] == 1
    assert acme_summary["breached_requests"] == 1
    assert acme_summary["total_penalties"] == 100.0
    assert [b["request_id"] for b in await monitor.list_breaches(now=now, tenant_id="default")] == [local]
    assert await monitor.list_breaches(now=now, tenant_id="other") == []
