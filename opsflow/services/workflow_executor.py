"""Workflow Trigger Executor.

Per matching trigger, independently of the others:
    1. insert a running execution (unique trigger_id + event_id; a redelivered
       event hits the constraint and is skipped)
    2. run the trigger's actions in one transaction
    3. finalize running → success | failed exactly once
Failures are recorded, published as workflow.execution.failed and never
retried here; only the bookkeeping of a failure is retried with backoff.
"""
from __future__ import annotations

import logging
import uuid
from typing import Any

from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import async_sessionmaker

from opsflow.core.database import AsyncSessionLocal
from opsflow.core.observability import metrics_registry
from opsflow.core.resilience import retry_async
from opsflow.core.timeutil import ensure_utc, utcnow
from opsflow.domain.conditions import evaluate_conditions, validate_conditions
from opsflow.domain.events import DomainEvent, DomainEventInput, EventMetadata, Severity
from opsflow.domain.workflow import ExecutionStatus, ExecutionSummary, WorkflowAction
from opsflow.models.base_models import WorkflowExecution, WorkflowTrigger
from opsflow.services.workflow_actions import ActionContext, ActionRegistry
from opsflow.shared.event_bus.bus import EventBus, get_event_bus

logger = logging.getLogger("opsflow.workflows")

EXECUTION_FAILED_EVENT = "workflow.execution.failed"


class WorkflowExecutor:
    def __init__(
        self,
        session_factory: async_sessionmaker | None = None,
        event_bus: EventBus | None = None,
        registry: ActionRegistry | None = None,
        *,
        finalize_retries: int = 3,
        retry_base_delay: float = 0.2,
    ):
        self._session_factory = session_factory or AsyncSessionLocal
        self._bus = event_bus or get_event_bus()
        self.registry = registry or ActionRegistry.with_builtins()
        self.finalize_retries = finalize_retries
        self.retry_base_delay = retry_base_delay

    async def _matching_triggers(self, event: DomainEvent) -> list[WorkflowTrigger]:
        async with self._session_factory() as session:
            rows = await session.execute(
                select(WorkflowTrigger)
                .where(
                    WorkflowTrigger.is_active.is_(True),
                    WorkflowTrigger.event_type == event.event_type,
                    WorkflowTrigger.tenant_id == event.tenant_id,
                )
                .order_by(WorkflowTrigger.created_at.asc(), WorkflowTrigger.trigger_name.asc())
            )
            triggers = list(rows.scalars().all())

        matched = []
        for trigger in triggers:
            try:
                if evaluate_conditions(trigger.conditions, event.payload):
                    matched.append(trigger)
            except (TypeError, ValueError, KeyError) as e:
                logger.warning("trigger %s has unusable conditions, skipped: %s", trigger.trigger_name, e)
        return matched

    async def on_event(self, event: DomainEvent) -> list[ExecutionSummary]:
        results = []
        for trigger in await self._matching_triggers(event):
            try:
                summary = await self._execute(trigger, event)
            except SQLAlchemyError:
                logger.exception("workflow execution bookkeeping failed: trigger=%s event_id=%s", trigger.trigger_name, event.event_id)
                continue
            if summary is not None:
                results.append(summary)
        return results

    async def _start(self, trigger: WorkflowTrigger, event: DomainEvent) -> str | None:
        execution_id = str(uuid.uuid4())
        async with self._session_factory() as session:
            session.add(
                WorkflowExecution(
                    id=execution_id,
                    trigger_id=trigger.id,
                    event_id=event.event_id,
                    execution_data={"event": event.to_message(), "trigger_name": trigger.trigger_name},
                    status=ExecutionStatus.RUNNING.value,
                    started_at=utcnow(),
                    execution_log=[],
                    tenant_id=event.tenant_id,
                )
            )
            try:
                await session.commit()
            except IntegrityError:
                await session.rollback()
                logger.info("duplicate delivery skipped: trigger=%s event_id=%s", trigger.trigger_name, event.event_id)
                return None
        return execution_id

    async def _execute(self, trigger: WorkflowTrigger, event: DomainEvent) -> ExecutionSummary | None:
        execution_id = await self._start(trigger, event)
        if execution_id is None:
            return None

        log: list[dict[str, Any]] = []
        staged: list[DomainEvent] = []
        error: str | None = None
        async with self._session_factory() as session:
            try:
                for index, raw in enumerate(trigger.actions or []):
                    action = WorkflowAction.from_config(raw)
                    ctx = ActionContext(
                        session=session,
                        bus=self._bus,
                        event=event,
                        action=action,
                        trigger_id=trigger.id,
                        trigger_name=trigger.trigger_name,
                        execution_id=execution_id,
                    )
                    result = await self.registry.get(action.type)(ctx)
                    staged.extend(ctx.staged)
                    log.append({"index": index, "type": action.type, "status": "success", "result": result})
                finalized = await self._finalize(session, execution_id, ExecutionStatus.SUCCESS, log)
                await session.commit()
            except Exception as e:
                await session.rollback()
                error = f"{type(e).__name__}: {e}"
                log.append({"index": len(log), "status": "failed", "error": error})
                staged = []

        if error is None:
            await self._bus.fan_out_all(staged)
            if finalized:
                metrics_registry.inc("opsflow_workflow_executions_success_total")
            logger.info("workflow %s succeeded for event %s (%d actions)", trigger.trigger_name, event.event_id, len(log))
            return ExecutionSummary(
                id=execution_id,
                trigger_id=trigger.id,
                trigger_name=trigger.trigger_name,
                event_id=event.event_id,
                status=ExecutionStatus.SUCCESS,
                actions_run=len(log),
            )

        await self._fail(trigger, event, execution_id, error, log)
        return ExecutionSummary(
            id=execution_id,
            trigger_id=trigger.id,
            trigger_name=trigger.trigger_name,
            event_id=event.event_id,
            status=ExecutionStatus.FAILED,
            error_message=error,
            actions_run=len(log) - 1,
        )

    @staticmethod
    async def _finalize(session, execution_id: str, status: ExecutionStatus, log: list, error: str | None = None) -> bool:
        result = await session.execute(
            update(WorkflowExecution)
            .where(WorkflowExecution.id == execution_id, WorkflowExecution.status == ExecutionStatus.RUNNING.value)
            .values(status=status.value, completed_at=utcnow(), execution_log=log, error_message=error)
            .execution_options(synchronize_session=False)
        )
        return result.rowcount == 1

    async def _fail(
        self, trigger: WorkflowTrigger, event: DomainEvent, execution_id: str, error: str, log: list
    ) -> None:
        metrics_registry.inc("opsflow_workflow_executions_failed_total")
        logger.error("workflow %s failed for event %s: %s", trigger.trigger_name, event.event_id, error)
        try:
            failed_event = await retry_async(
                self._record_failure,
                trigger,
                event,
                execution_id,
                error,
                log,
                max_retries=self.finalize_retries,
                base_delay=self.retry_base_delay,
                retry_on=(SQLAlchemyError,),
            )
        except SQLAlchemyError:
            logger.critical(
                "execution %s of workflow %s left running: failure could not be recorded",
                execution_id, trigger.trigger_name,
            )
            raise
        if failed_event is not None:
            await self._bus.fan_out(failed_event)

    async def _record_failure(
        self, trigger: WorkflowTrigger, event: DomainEvent, execution_id: str, error: str, log: list
    ) -> DomainEvent | None:
        failed_event = None
        async with self._session_factory() as session:
            finalized = await self._finalize(session, execution_id, ExecutionStatus.FAILED, log, error)
            # a failure of a failure handler is recorded but not re-announced
            if finalized and event.event_type != EXECUTION_FAILED_EVENT:
                failed_event = await self._bus.stage(
                    session,
                    DomainEventInput(
                        event_type=EXECUTION_FAILED_EVENT,
                        aggregate_id=execution_id,
                        payload={
                            "execution_id": execution_id,
                            "trigger_id": trigger.id,
                            "trigger_name": trigger.trigger_name,
                            "error_message": error,
                            "source_event_id": event.event_id,
                            "source_event_type": event.event_type,
                        },
                        severity=Severity.WARNING,
                        metadata=EventMetadata(
                            correlation_id=event.metadata.correlation_id,
                            causation_id=event.event_id,
                        ),
                        tenant_id=event.tenant_id,
                    ),
                )
            await session.commit()
        return failed_event

    # ── trigger administration ──

    async def create_trigger(
        self,
        trigger_name: str,
        event_type: str,
        actions: list[dict[str, Any]],
        *,
        source_module: str | None = None,
        conditions: dict[str, Any] | None = None,
        is_active: bool = True,
        tenant_id: str = "default",
    ) -> dict[str, Any]:
        """Validates conditions and every action before storing."""
        validate_conditions(conditions)
        for raw in actions:
            self.registry.get(WorkflowAction.from_config(raw).type)
        trigger = WorkflowTrigger(
            id=str(uuid.uuid4()),
            trigger_name=trigger_name,
            source_module=source_module or event_type.split(".", 1)[0],
            event_type=event_type,
            conditions=conditions or None,
            actions=list(actions),
            is_active=is_active,
            tenant_id=tenant_id,
        )
        async with self._session_factory() as session:
            session.add(trigger)
            await session.commit()
        return trigger_to_dict(trigger)

    async def list_triggers(self, event_type: str | None = None, tenant_id: str = "default") -> list[dict[str, Any]]:
        stmt = select(WorkflowTrigger).where(WorkflowTrigger.tenant_id == tenant_id)
        if event_type:
            stmt = stmt.where(WorkflowTrigger.event_type == event_type)
        async with self._session_factory() as session:
            rows = await session.execute(stmt.order_by(WorkflowTrigger.trigger_name.asc()))
            return [trigger_to_dict(t) for t in rows.scalars().all()]

    async def list_executions(
        self,
        *,
        trigger_id: str | None = None,
        status: str | None = None,
        tenant_id: str = "default",
        limit: int = 100,
    ) -> list[dict[str, Any]]:
        stmt = select(WorkflowExecution, WorkflowTrigger.trigger_name).join(
            WorkflowTrigger, WorkflowTrigger.id == WorkflowExecution.trigger_id
        ).where(WorkflowExecution.tenant_id == tenant_id)
        if trigger_id:
            stmt = stmt.where(WorkflowExecution.trigger_id == trigger_id)
        if status:
            stmt = stmt.where(WorkflowExecution.status == status)
        stmt = stmt.order_by(WorkflowExecution.started_at.desc()).limit(min(max(limit, 1), 1000))
        async with self._session_factory() as session:
            rows = await session.execute(stmt)
            return [
                {
                    "execution_id": execution.id,
                    "trigger_id": execution.trigger_id,
                    "trigger_name": trigger_name,
                    "event_id": execution.event_id,
                    "status": execution.status,
                    "started_at": ensure_utc(execution.started_at).isoformat(),
                    "completed_at": ensure_utc(execution.completed_at).isoformat() if execution.completed_at else None,
                    "error_message": execution.error_message,
                    "execution_log": execution.execution_log or [],
                }
                for execution, trigger_name in rows.all()
            ]


def trigger_to_dict(trigger: WorkflowTrigger) -> dict[str, Any]:
    return {
        "trigger_id": trigger.id,
        "trigger_name": trigger.trigger_name,
        "source_module": trigger.source_module,
        "event_type": trigger.event_type,
        "conditions": trigger.conditions,
        "actions": trigger.actions or [],
        "is_active": bool(trigger.is_active),
    }
