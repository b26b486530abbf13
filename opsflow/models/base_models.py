import uuid

from sqlalchemy import (
    JSON,
    Boolean,
    Column,
    DateTime,
    Float,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
    text,
)
from sqlalchemy.dialects.postgresql import JSONB

from opsflow.core.database import Base
from opsflow.core.timeutil import utcnow

JSONType = JSON().with_variant(JSONB(), "postgresql")


def _uuid() -> str:
    return str(uuid.uuid4())


class DomainEventRecord(Base):
    """Append-only event log. Rows are never updated."""
    __tablename__ = "domain_events"

    seq = Column(Integer, primary_key=True, autoincrement=True)
    event_id = Column(String, nullable=False, unique=True, default=_uuid)
    event_type = Column(String, nullable=False, index=True)
    domain = Column(String, nullable=False, index=True)
    aggregate_id = Column(String, nullable=False, index=True)
    payload = Column(JSONType, nullable=False, default=dict)
    severity = Column(String, nullable=False, default="info")
    user_id = Column(String, nullable=True)
    correlation_id = Column(String, nullable=True, index=True)
    causation_id = Column(String, nullable=True)
    occurred_at = Column(DateTime(timezone=True), nullable=False, default=utcnow)
    tenant_id = Column(String, nullable=False, default="default")


class MaintenanceRequest(Base):
    __tablename__ = "maintenance_requests"

    id = Column(String, primary_key=True, default=_uuid)
    title = Column(String, nullable=False)
    priority = Column(String, nullable=False, default="medium")
    status = Column(String, nullable=False, default="pending", index=True)
    assigned_to = Column(String, nullable=True, index=True)
    assigned_at = Column(DateTime(timezone=True), nullable=True)
    sla_breach_at = Column(DateTime(timezone=True), nullable=True, index=True)
    created_at = Column(DateTime(timezone=True), nullable=False, default=utcnow)
    completed_at = Column(DateTime(timezone=True), nullable=True)
    tenant_id = Column(String, nullable=False, default="default")


class Profile(Base):
    __tablename__ = "profiles"

    id = Column(String, primary_key=True, default=_uuid)
    full_name = Column(String, nullable=True)
    role = Column(String, nullable=False, index=True)
    is_active = Column(Boolean, nullable=False, default=True)
    tenant_id = Column(String, nullable=False, default="default")


class TaskOffer(Base):
    __tablename__ = "task_offers"
    __table_args__ = (
        # one competing offer per request at a time
        Index(
            "uq_task_offers_open_request",
            "request_id",
            unique=True,
            postgresql_where=text("status = 'open'"),
            sqlite_where=text("status = 'open'"),
        ),
    )

    id = Column(String, primary_key=True, default=_uuid)
    request_id = Column(String, ForeignKey("maintenance_requests.id"), nullable=False, index=True)
    status = Column(String, nullable=False, default="open")
    expires_at = Column(DateTime(timezone=True), nullable=False)
    created_at = Column(DateTime(timezone=True), nullable=False, default=utcnow)
    created_by = Column(String, nullable=True)
    claimed_by = Column(String, nullable=True)
    claimed_at = Column(DateTime(timezone=True), nullable=True)
    correlation_id = Column(String, nullable=True)
    created_event_id = Column(String, nullable=True)
    tenant_id = Column(String, nullable=False, default="default")


class OfferRecipient(Base):
    __tablename__ = "offer_recipients"

    offer_id = Column(String, ForeignKey("task_offers.id"), primary_key=True)
    user_id = Column(String, primary_key=True, index=True)
    delivered_at = Column(DateTime(timezone=True), nullable=False, default=utcnow)
    declined_at = Column(DateTime(timezone=True), nullable=True)


class SLABreachRecord(Base):
    """Escalation log; SLA breaches and workflow escalations share it."""
    __tablename__ = "escalation_logs"

    id = Column(String, primary_key=True, default=_uuid)
    request_id = Column(String, nullable=False, index=True)
    escalation_type = Column(String, nullable=False)
    penalty_amount = Column(Float, nullable=True)
    escalation_reason = Column(Text, nullable=True)
    breach_at = Column(DateTime(timezone=True), nullable=True)
    dedup_key = Column(String, nullable=True, unique=True)
    escalated_from = Column(String, nullable=True)
    escalated_to = Column(String, nullable=True)
    meta = Column("metadata", JSONType, nullable=True)
    created_at = Column(DateTime(timezone=True), nullable=False, default=utcnow)
    tenant_id = Column(String, nullable=False, default="default")


class WorkflowTrigger(Base):
    __tablename__ = "workflow_triggers"

    id = Column(String, primary_key=True, default=_uuid)
    trigger_name = Column(String, nullable=False, unique=True)
    source_module = Column(String, nullable=False)
    event_type = Column(String, nullable=False, index=True)
    conditions = Column(JSONType, nullable=True)
    actions = Column(JSONType, nullable=False, default=list)
    is_active = Column(Boolean, nullable=False, default=True)
    created_at = Column(DateTime(timezone=True), nullable=False, default=utcnow)
    updated_at = Column(DateTime(timezone=True), nullable=True, onupdate=utcnow)
    tenant_id = Column(String, nullable=False, default="default")


class WorkflowExecution(Base):
    __tablename__ = "workflow_executions"
    __table_args__ = (
        UniqueConstraint("trigger_id", "event_id", name="uq_workflow_executions_trigger_event"),
    )

    id = Column(String, primary_key=True, default=_uuid)
    trigger_id = Column(String, ForeignKey("workflow_triggers.id"), nullable=False, index=True)
    event_id = Column(String, nullable=False)
    execution_data = Column(JSONType, nullable=False, default=dict)
    status = Column(String, nullable=False, default="running")
    started_at = Column(DateTime(timezone=True), nullable=False, default=utcnow)
    completed_at = Column(DateTime(timezone=True), nullable=True)
    error_message = Column(Text, nullable=True)
    execution_log = Column(JSONType, nullable=False, default=list)
    tenant_id = Column(String, nullable=False, default="default")


class Notification(Base):
    __tablename__ = "notifications"

    id = Column(String, primary_key=True, default=_uuid)
    user_id = Column(String, nullable=False, index=True)
    title = Column(String, nullable=False)
    message = Column(Text, nullable=False)
    type = Column(String, nullable=False, default="info")
    source_event_id = Column(String, nullable=True)
    created_at = Column(DateTime(timezone=True), nullable=False, default=utcnow)
    read_at = Column(DateTime(timezone=True), nullable=True)
    tenant_id = Column(String, nullable=False, default="default")
