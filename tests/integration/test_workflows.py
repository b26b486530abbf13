import pytest
from sqlalchemy import func, select
from sqlalchemy.exc import OperationalError

from opsflow.core.observability import metrics_registry
from opsflow.domain.conditions import InvalidConditionError
from opsflow.domain.events import DomainEventInput
from opsflow.domain.offer import ClaimReason, OfferStatus
from opsflow.domain.workflow import ExecutionStatus
from opsflow.models.base_models import (
    DomainEventRecord,
    MaintenanceRequest,
    Notification,
    SLABreachRecord,
    TaskOffer,
    WorkflowExecution,
)
from opsflow.services.event_log import EventLogStore
from opsflow.services.offer_broadcast import OfferBroadcastService
from opsflow.services.offer_claim import OfferClaimCoordinator
from opsflow.services.workflow_executor import EXECUTION_FAILED_EVENT, WorkflowExecutor
from opsflow.shared.event_bus.bus import EventBus
from opsflow.shared.event_bus.subscription import EventFilter
from opsflow.workers.workflow_worker import WorkflowWorker

NOTIFY_SUPERVISOR = {
    "type": "notification",
    "target": "user:supervisor-1",
    "parameters": {"title": "Request $request_id completed", "message": "priority $priority"},
}


@pytest.fixture
def executor(session_factory, bus):
    return WorkflowExecutor(session_factory, bus)


async def _count(session_factory, model, *where) -> int:
    async with session_factory() as session:
        stmt = select(func.count()).select_from(model)
        if where:
            stmt = stmt.where(*where)
        return await session.scalar(stmt)


async def _completed(bus, request_id="req-1", priority="high", **kwargs):
    return await bus.publish(
        DomainEventInput(
            event_type="maintenance.request.completed",
            aggregate_id=request_id,
            payload={"request_id": request_id, "priority": priority},
            **kwargs,
        )
    )


@pytest.mark.asyncio
async def test_only_matching_trigger_runs(executor, session_factory, bus):
    await executor.create_trigger(
        "notify-high",
        "maintenance.request.completed",
        [NOTIFY_SUPERVISOR],
        conditions={"field": "priority", "operator": "eq", "value": "high"},
    )
    await executor.create_trigger(
        "notify-low",
        "maintenance.request.completed",
        [NOTIFY_SUPERVISOR],
        conditions={"field": "priority", "operator": "eq", "value": "low"},
    )
    worker = WorkflowWorker(executor, bus)
    subscription = await worker.subscribe()

    await _completed(bus, "X", "high")
    await subscription.drain()

    executions = await executor.list_executions()
    assert [e["trigger_name"] for e in executions] == ["notify-high"]
    assert executions[0]["status"] == "success"
    assert await _count(session_factory, WorkflowExecution) == 1

    async with session_factory() as session:
        [note] = (await session.execute(select(Notification))).scalars().all()
    assert note.user_id == "supervisor-1"
    assert note.title == "Request X completed"
    assert note.message == "priority high"
    await worker.stop()


@pytest.mark.asyncio
async def test_failing_trigger_is_isolated(executor, session_factory, bus):
    await executor.create_trigger(
        "close-missing-request",
        "maintenance.request.completed",
        [NOTIFY_SUPERVISOR, {"type": "set_request_status", "target": "completed"}],
    )
    await executor.create_trigger("notify", "maintenance.request.completed", [NOTIFY_SUPERVISOR])
    failures = []

    async def on_failure(event):
        failures.append(event)

    sub = await bus.subscribe(EventFilter(event_type=EXECUTION_FAILED_EVENT), on_failure)
    event = await _completed(bus, "missing-request")

    summaries = await executor.on_event(event)
    await sub.drain()

    by_name = {s.trigger_name: s for s in summaries}
    assert by_name["close-missing-request"].status is ExecutionStatus.FAILED
    assert "LookupError" in by_name["close-missing-request"].error_message
    assert by_name["notify"].status is ExecutionStatus.SUCCESS
    # the failed execution's notification was rolled back with it
    assert await _count(session_factory, Notification) == 1

    [failed] = await executor.list_executions(status="failed")
    assert failed["execution_log"][-1]["status"] == "failed"
    assert failed["completed_at"] is not None

    [failure] = failures
    assert failure.severity.value == "warning"
    assert failure.payload["trigger_name"] == "close-missing-request"
    assert failure.metadata.causation_id == event.event_id
    assert metrics_registry.get_counter("opsflow_workflow_executions_failed_total") == 1
    assert metrics_registry.get_counter("opsflow_workflow_executions_success_total") == 1


@pytest.mark.asyncio
async def test_redelivered_event_runs_each_trigger_once(executor, session_factory, bus):
    await executor.create_trigger("notify", "maintenance.request.completed", [NOTIFY_SUPERVISOR])
    event = await _completed(bus)

    first = await executor.on_event(event)
    second = await executor.on_event(event)

    assert len(first) == 1
    assert second == []
    assert await _count(session_factory, WorkflowExecution) == 1
    assert await _count(session_factory, Notification) == 1


@pytest.mark.asyncio
async def test_triggers_are_tenant_scoped_and_can_be_disabled(executor, session_factory, bus):
    await executor.create_trigger("acme-only", "maintenance.request.completed", [NOTIFY_SUPERVISOR], tenant_id="acme")
    await executor.create_trigger("disabled", "maintenance.request.completed", [NOTIFY_SUPERVISOR], is_active=False)

    assert await executor.on_event(await _completed(bus, tenant_id="default")) == []
    [summary] = await executor.on_event(await _completed(bus, "req-2", tenant_id="acme"))
    assert summary.trigger_name == "acme-only"

    assert [t["trigger_name"] for t in await executor.list_triggers(tenant_id="acme")] == ["acme-only"]
    assert await executor.list_executions(tenant_id="default") == []


@pytest.mark.asyncio
async def test_escalation_and_status_actions(executor, session_factory, bus, seed_request, seed_profiles):
    await seed_profiles("sup-1", "sup-2", role="supervisor")
    request_id = await seed_request(status="in_progress", priority="critical")
    await executor.create_trigger(
        "escalate-breach",
        "maintenance.sla.breached",
        [
            {"type": "escalation", "target": "facility_manager", "parameters": {"reason": "Missed SLA on $request_id"}},
            {"type": "notification", "target": "role:supervisor"},
            {"type": "set_request_status", "target": "on_hold"},
        ],
        conditions={"field": "priority", "operator": "in", "value": ["high", "critical"]},
    )
    event = await bus.publish(
        DomainEventInput(
            event_type="maintenance.sla.breached",
            aggregate_id=request_id,
            payload={
                "request_id": request_id,
                "breach_record_id": "br-1",
                "sla_breach_at": "2026-03-02T10:00:00+00:00",
                "penalty_amount": 500.0,
                "priority": "critical",
            },
        )
    )

    [summary] = await executor.on_event(event)

    assert summary.status is ExecutionStatus.SUCCESS
    assert summary.actions_run == 3
    async with session_factory() as session:
        [record] = (await session.execute(select(SLABreachRecord))).scalars().all()
        request = await session.get(MaintenanceRequest, request_id)
    assert record.escalation_type == "workflow_auto"
    assert record.escalated_to == "facility_manager"
    assert record.escalation_reason == f"Missed SLA on {request_id}"
    assert record.dedup_key == f"workflow_auto:{summary.trigger_id}:{event.event_id}"
    assert request.status == "on_hold"
    assert await _count(session_factory, Notification) == 2


@pytest.mark.asyncio
async def test_publish_event_action_chains_workflows(session_factory, feed):
    bus = EventBus(feed, EventLogStore(session_factory), contracts_strict=False)
    executor = WorkflowExecutor(session_factory, bus)
    await executor.create_trigger(
        "dispatch-followup",
        "maintenance.request.completed",
        [
            {
                "type": "publish_event",
                "target": "facility.inspection.requested",
                "parameters": {"forward_payload": True, "payload": {"inspector": "qa-team"}},
            }
        ],
    )
    await executor.create_trigger(
        "notify-inspector",
        "facility.inspection.requested",
        [{"type": "notification", "target": "payload:inspector"}],
    )
    worker = WorkflowWorker(executor, bus)
    subscription = await worker.subscribe()

    source = await _completed(bus, "req-7")
    await subscription.drain()

    async with session_factory() as session:
        chained = (
            await session.execute(
                select(DomainEventRecord).where(DomainEventRecord.event_type == "facility.inspection.requested")
            )
        ).scalar_one()
        [note] = (await session.execute(select(Notification))).scalars().all()
    assert chained.causation_id == source.event_id
    assert chained.correlation_id == source.metadata.correlation_id
    assert chained.payload["request_id"] == "req-7"
    assert chained.payload["inspector"] == "qa-team"
    assert note.user_id == "qa-team"
    assert {e["trigger_name"] for e in await executor.list_executions()} == {"dispatch-followup", "notify-inspector"}
    await worker.stop()
    await bus.close()


@pytest.mark.asyncio
async def test_publish_event_refuses_to_retrigger_itself(executor, bus):
    await executor.create_trigger(
        "loop",
        "maintenance.request.completed",
        [{"type": "publish_event", "target": "maintenance.request.completed"}],
    )
    [summary] = await executor.on_event(await _completed(bus))
    assert summary.status is ExecutionStatus.FAILED
    assert "re-trigger" in summary.error_message


@pytest.mark.asyncio
async def test_failure_of_failure_handler_is_not_reannounced(executor, session_factory, bus):
    await executor.create_trigger(
        "broken-alerting",
        EXECUTION_FAILED_EVENT,
        [{"type": "notification", "target": "pager:oncall"}],
    )
    failed = await bus.publish(
        DomainEventInput(
            event_type=EXECUTION_FAILED_EVENT,
            aggregate_id="exec-1",
            payload={"execution_id": "exec-1", "trigger_id": "t-1", "trigger_name": "x", "error_message": "boom"},
        )
    )

    [summary] = await executor.on_event(failed)

    assert summary.status is ExecutionStatus.FAILED
    assert await _count(session_factory, DomainEventRecord, DomainEventRecord.event_type == EXECUTION_FAILED_EVENT) == 1


@pytest.mark.asyncio
async def test_create_trigger_validates_definition(executor):
    with pytest.raises(InvalidConditionError):
        await executor.create_trigger(
            "bad-condition",
            "maintenance.request.completed",
            [NOTIFY_SUPERVISOR],
            conditions={"field": "priority", "operator": "like", "value": "h%"},
        )
    with pytest.raises(ValueError, match="unknown workflow action type"):
        await executor.create_trigger("bad-action", "maintenance.request.completed", [{"type": "send_fax"}])
    with pytest.raises(ValueError, match="requires a type"):
        await executor.create_trigger("no-type", "maintenance.request.completed", [{"target": "user:u1"}])

    created = await executor.create_trigger("ok", "maintenance.request.completed", [NOTIFY_SUPERVISOR])
    assert created["source_module"] == "maintenance"
    assert created["conditions"] is None
    assert await executor.list_triggers("maintenance.request.completed") == [created]


@pytest.mark.asyncio
async def test_terminal_status_action_cancels_open_offers(executor, session_factory, bus, seed_request, seed_profiles):
    await seed_profiles("u1", "u2")
    request_id = await seed_request()
    offers = OfferBroadcastService(session_factory, bus)
    claims = OfferClaimCoordinator(session_factory, bus)
    broadcast = await offers.broadcast(request_id, ["u1", "u2"])
    await executor.create_trigger(
        "close-on-complete",
        "maintenance.request.completed",
        [{"type": "set_request_status", "target": "cancelled"}],
    )

    [summary] = await executor.on_event(await _completed(bus, request_id))

    assert summary.status is ExecutionStatus.SUCCESS
    async with session_factory() as session:
        offer = await session.get(TaskOffer, broadcast.offer.id)
        cancelled = (
            await session.execute(
                select(DomainEventRecord).where(DomainEventRecord.event_type == "maintenance.offer.cancelled")
            )
        ).scalar_one()
    assert offer.status == OfferStatus.CANCELLED.value
    assert cancelled.payload["reason"] == "request_cancelled"
    assert cancelled.payload["offer_id"] == broadcast.offer.id
    [execution] = await executor.list_executions()
    assert execution["execution_log"][0]["result"]["offers_cancelled"] == [broadcast.offer.id]

    result = await claims.accept(broadcast.offer.id, "u1")
    assert result.won is False
    assert result.reason is ClaimReason.OFFER_NOT_FOUND_OR_EXPIRED
    assert await offers.list_open_offers_for_user("u2") == []
    assert metrics_registry.get_counter("opsflow_offer_partial_claim_failures_total") == 0


@pytest.mark.asyncio
async def test_failure_bookkeeping_is_retried(session_factory, bus):
    executor = WorkflowExecutor(session_factory, bus, retry_base_delay=0)
    await executor.create_trigger(
        "close-missing",
        "maintenance.request.completed",
        [{"type": "set_request_status", "target": "completed"}],
    )
    attempts = []

    async def flaky_finalize(session, execution_id, status, log, error=None):
        if status is ExecutionStatus.FAILED:
            attempts.append(execution_id)
            if len(attempts) == 1:
                raise OperationalError("UPDATE workflow_executions", {}, Exception("database is locked"))
        return await WorkflowExecutor._finalize(session, execution_id, status, log, error)

    executor._finalize = flaky_finalize

    [summary] = await executor.on_event(await _completed(bus, "req-missing"))

    assert summary.status is ExecutionStatus.FAILED
    assert "LookupError" in summary.error_message
    assert len(attempts) == 2
    [execution] = await executor.list_executions()
    assert execution["status"] == "failed"
    assert execution["completed_at"] is not None
    assert await _count(session_factory, DomainEventRecord, DomainEventRecord.event_type == EXECUTION_FAILED_EVENT) == 1
