"""SQLAlchemy 2.0 async models for the guardrail core tables."""

from __future__ import annotations

from datetime import datetime

from sqlalchemy import Boolean, DateTime, Index, String, Text, func
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column

from src.constants import DB_SCHEMA


class Base(DeclarativeBase):
    pass


class CapabilityLeaseRecord(Base):
    """Capability leases. Rows are never deleted; revoked_at is never cleared."""

    __tablename__ = "capability_leases"
    __table_args__ = (
        Index("idx_capability_leases_scope", "project_id", "scope_type", "scope_id"),
        {"schema": DB_SCHEMA},
    )

    instance_id: Mapped[str] = mapped_column(String(128), primary_key=True)
    lease_token: Mapped[str] = mapped_column(String(128))
    agent_name: Mapped[str] = mapped_column(String(128))
    project_id: Mapped[str] = mapped_column(String(128))
    scope_type: Mapped[str] = mapped_column(String(16))
    scope_id: Mapped[str] = mapped_column(String(128))
    role: Mapped[str] = mapped_column(String(16))
    parent_instance_id: Mapped[str] = mapped_column(String(128), default="")
    allow_equal_scope_delegation: Mapped[bool] = mapped_column(Boolean, default=False)
    issued_at: Mapped[datetime] = mapped_column(DateTime(timezone=True))
    expires_at: Mapped[datetime] = mapped_column(DateTime(timezone=True))
    heartbeat_at: Mapped[datetime] = mapped_column(DateTime(timezone=True))
    revoked_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True, default=None
    )
    revoked_reason: Mapped[str] = mapped_column(Text, default="")


class CapabilityPolicyRecord(Base):
    __tablename__ = "capability_policies"
    __table_args__ = {"schema": DB_SCHEMA}

    project_id: Mapped[str] = mapped_column(String(128), primary_key=True)
    allow_orchestrator_override: Mapped[bool] = mapped_column(Boolean, default=False)
    orchestrator_override_token: Mapped[str] = mapped_column(String(256), default="")
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), onupdate=func.now()
    )


class AttentionItemRecord(Base):
    __tablename__ = "attention_items"
    __table_args__ = (
        Index("idx_attention_items_scope", "project_id", "scope_type", "scope_id"),
        {"schema": DB_SCHEMA},
    )

    id: Mapped[str] = mapped_column(String(128), primary_key=True)
    project_id: Mapped[str] = mapped_column(String(128))
    branch_id: Mapped[str] = mapped_column(String(128), default="")
    scope_type: Mapped[str] = mapped_column(String(16))
    scope_id: Mapped[str] = mapped_column(String(128))
    state: Mapped[str] = mapped_column(String(16))
    kind: Mapped[str] = mapped_column(String(32))
    summary: Mapped[str] = mapped_column(Text)
    body_markdown: Mapped[str] = mapped_column(Text, default="")
    requires_user_action: Mapped[bool] = mapped_column(Boolean, default=False)
    created_by_actor: Mapped[str] = mapped_column(String(128))
    created_by_type: Mapped[str] = mapped_column(String(16))
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True))
    acknowledged_by_actor: Mapped[str | None] = mapped_column(String(128), nullable=True)
    acknowledged_by_type: Mapped[str | None] = mapped_column(String(16), nullable=True)
    acknowledged_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True
    )
    resolved_by_actor: Mapped[str | None] = mapped_column(String(128), nullable=True)
    resolved_by_type: Mapped[str | None] = mapped_column(String(16), nullable=True)
    resolved_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)


class WorkItemRecord(Base):
    __tablename__ = "work_items"
    __table_args__ = (
        Index("idx_work_items_parent", "project_id", "parent_id"),
        {"schema": DB_SCHEMA},
    )

    id: Mapped[str] = mapped_column(String(128), primary_key=True)
    project_id: Mapped[str] = mapped_column(String(128))
    parent_id: Mapped[str] = mapped_column(String(128), default="")
    kind: Mapped[str] = mapped_column(String(64))
    scope: Mapped[str] = mapped_column(String(16))
    lifecycle_state: Mapped[str] = mapped_column(String(16))
    title: Mapped[str] = mapped_column(Text)
    contract: Mapped[dict] = mapped_column(JSONB, default=dict)
    created_by_actor: Mapped[str] = mapped_column(String(128))
    created_by_type: Mapped[str] = mapped_column(String(16))
    updated_by_actor: Mapped[str] = mapped_column(String(128))
    updated_by_type: Mapped[str] = mapped_column(String(16))
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True))
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True))
    started_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    completed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    archived_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)


class ChangeEventRecord(Base):
    __tablename__ = "change_events"
    __table_args__ = (
        Index("idx_change_events_project", "project_id", "occurred_at"),
        {"schema": DB_SCHEMA},
    )

    id: Mapped[str] = mapped_column(String(128), primary_key=True)
    project_id: Mapped[str] = mapped_column(String(128))
    work_item_id: Mapped[str] = mapped_column(String(128))
    operation: Mapped[str] = mapped_column(String(16))
    actor_id: Mapped[str] = mapped_column(String(128))
    actor_type: Mapped[str] = mapped_column(String(16))
    lease_instance_id: Mapped[str] = mapped_column(String(128), default="")
    event_metadata: Mapped[dict] = mapped_column("metadata", JSONB, default=dict)
    occurred_at: Mapped[datetime] = mapped_column(DateTime(timezone=True))


class KindDefinitionRecord(Base):
    __tablename__ = "kind_definitions"
    __table_args__ = {"schema": DB_SCHEMA}

    id: Mapped[str] = mapped_column(String(64), primary_key=True)
    display_name: Mapped[str] = mapped_column(String(128))
    description_markdown: Mapped[str] = mapped_column(Text, default="")
    applies_to: Mapped[list] = mapped_column(JSONB, default=list)
    allowed_parent_scopes: Mapped[list] = mapped_column(JSONB, default=list)
    created_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    updated_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
