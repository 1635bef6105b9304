"""PostgreSQL-backed store.

One unit of work is one AsyncSession transaction. Heartbeat, renewal and
revocation are single conditional UPDATE statements filtered on
``revoked_at IS NULL``; the work item being transitioned is read with
``SELECT ... FOR UPDATE``.
"""

from __future__ import annotations

from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from datetime import datetime
from typing import TYPE_CHECKING

from sqlalchemy import delete, select, update
from sqlalchemy.dialects.postgresql import insert as pg_insert

from src.attention.models import (
    ActorStamp,
    AttentionItem,
    AttentionKind,
    AttentionListFilter,
    AttentionState,
)
from src.catalog.kinds import KindDefinition
from src.guard.context import ActorType
from src.leases.models import CapabilityLease, CapabilityPolicy, CapabilityRole
from src.scope.levels import (
    CapabilityScopeType,
    KindAppliesTo,
    LevelTuple,
    ScopeLevel,
    WorkItemScope,
)
from src.store.models import (
    AttentionItemRecord,
    CapabilityLeaseRecord,
    CapabilityPolicyRecord,
    ChangeEventRecord,
    KindDefinitionRecord,
    WorkItemRecord,
)
from src.workitems.models import (
    ChangeEvent,
    ChangeOperation,
    CompletionContract,
    LifecycleState,
    WorkItem,
)

if TYPE_CHECKING:
    from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker


# -- record <-> value mapping --


def _lease_from_record(row: CapabilityLeaseRecord) -> CapabilityLease:
    return CapabilityLease(
        instance_id=row.instance_id,
        lease_token=row.lease_token,
        agent_name=row.agent_name,
        project_id=row.project_id,
        scope_type=CapabilityScopeType(row.scope_type),
        scope_id=row.scope_id,
        role=CapabilityRole(row.role),
        parent_instance_id=row.parent_instance_id,
        allow_equal_scope_delegation=row.allow_equal_scope_delegation,
        issued_at=row.issued_at,
        expires_at=row.expires_at,
        heartbeat_at=row.heartbeat_at,
        revoked_at=row.revoked_at,
        revoked_reason=row.revoked_reason,
    )


def _stamp(actor: str | None, actor_type: str | None, at: datetime | None) -> ActorStamp | None:
    if actor is None or at is None:
        return None
    return ActorStamp(actor_id=actor, actor_type=ActorType(actor_type or "user"), at=at)


def _attention_from_record(row: AttentionItemRecord) -> AttentionItem:
    created_by = ActorStamp(
        actor_id=row.created_by_actor,
        actor_type=ActorType(row.created_by_type),
        at=row.created_at,
    )
    return AttentionItem(
        id=row.id,
        level=LevelTuple(
            project_id=row.project_id,
            branch_id=row.branch_id,
            scope_type=ScopeLevel(row.scope_type),
            scope_id=row.scope_id,
        ),
        state=AttentionState(row.state),
        kind=AttentionKind(row.kind),
        summary=row.summary,
        body_markdown=row.body_markdown,
        requires_user_action=row.requires_user_action,
        created_by=created_by,
        acknowledged_by=_stamp(
            row.acknowledged_by_actor, row.acknowledged_by_type, row.acknowledged_at
        ),
        resolved_by=_stamp(row.resolved_by_actor, row.resolved_by_type, row.resolved_at),
    )


def _attention_values(item: AttentionItem) -> dict:
    ack = item.acknowledged_by
    res = item.resolved_by
    return {
        "id": item.id,
        "project_id": item.level.project_id,
        "branch_id": item.level.branch_id,
        "scope_type": item.level.scope_type.value,
        "scope_id": item.level.scope_id,
        "state": item.state.value,
        "kind": item.kind.value,
        "summary": item.summary,
        "body_markdown": item.body_markdown,
        "requires_user_action": item.requires_user_action,
        "created_by_actor": item.created_by.actor_id,
        "created_by_type": item.created_by.actor_type.value,
        "created_at": item.created_by.at,
        "acknowledged_by_actor": ack.actor_id if ack else None,
        "acknowledged_by_type": ack.actor_type.value if ack else None,
        "acknowledged_at": ack.at if ack else None,
        "resolved_by_actor": res.actor_id if res else None,
        "resolved_by_type": res.actor_type.value if res else None,
        "resolved_at": res.at if res else None,
    }


def _work_item_from_record(row: WorkItemRecord) -> WorkItem:
    return WorkItem(
        id=row.id,
        project_id=row.project_id,
        parent_id=row.parent_id,
        kind=row.kind,
        scope=WorkItemScope(row.scope),
        lifecycle_state=LifecycleState(row.lifecycle_state),
        title=row.title,
        contract=CompletionContract.from_dict(row.contract),
        created_by=row.created_by_actor,
        created_by_type=ActorType(row.created_by_type),
        updated_by=row.updated_by_actor,
        updated_by_type=ActorType(row.updated_by_type),
        created_at=row.created_at,
        updated_at=row.updated_at,
        started_at=row.started_at,
        completed_at=row.completed_at,
        archived_at=row.archived_at,
    )


def _work_item_values(item: WorkItem) -> dict:
    return {
        "id": item.id,
        "project_id": item.project_id,
        "parent_id": item.parent_id,
        "kind": item.kind,
        "scope": item.scope.value,
        "lifecycle_state": item.lifecycle_state.value,
        "title": item.title,
        "contract": item.contract.as_dict(),
        "created_by_actor": item.created_by,
        "created_by_type": item.created_by_type.value,
        "updated_by_actor": item.updated_by,
        "updated_by_type": item.updated_by_type.value,
        "created_at": item.created_at,
        "updated_at": item.updated_at,
        "started_at": item.started_at,
        "completed_at": item.completed_at,
        "archived_at": item.archived_at,
    }


def _kind_from_record(row: KindDefinitionRecord) -> KindDefinition:
    return KindDefinition(
        id=row.id,
        display_name=row.display_name,
        description_markdown=row.description_markdown,
        applies_to=tuple(KindAppliesTo(v) for v in row.applies_to or ()),
        allowed_parent_scopes=tuple(KindAppliesTo(v) for v in row.allowed_parent_scopes or ()),
        created_at=row.created_at,
        updated_at=row.updated_at,
    )


def _kind_values(kind: KindDefinition) -> dict:
    return {
        "display_name": kind.display_name,
        "description_markdown": kind.description_markdown,
        "applies_to": [v.value for v in kind.applies_to],
        "allowed_parent_scopes": [v.value for v in kind.allowed_parent_scopes],
        "created_at": kind.created_at,
        "updated_at": kind.updated_at,
    }


class SqlUnitOfWork:
    def __init__(self, db: AsyncSession) -> None:
        self._db = db

    # -- capability leases --

    async def create_lease(self, lease: CapabilityLease) -> None:
        self._db.add(CapabilityLeaseRecord(
            instance_id=lease.instance_id,
            lease_token=lease.lease_token,
            agent_name=lease.agent_name,
            project_id=lease.project_id,
            scope_type=lease.scope_type.value,
            scope_id=lease.scope_id,
            role=lease.role.value,
            parent_instance_id=lease.parent_instance_id,
            allow_equal_scope_delegation=lease.allow_equal_scope_delegation,
            issued_at=lease.issued_at,
            expires_at=lease.expires_at,
            heartbeat_at=lease.heartbeat_at,
            revoked_at=lease.revoked_at,
            revoked_reason=lease.revoked_reason,
        ))
        await self._db.flush()

    async def get_lease(self, instance_id: str) -> CapabilityLease | None:
        row = (await self._db.execute(
            select(CapabilityLeaseRecord)
            .where(CapabilityLeaseRecord.instance_id == instance_id)
            .execution_options(populate_existing=True)
        )).scalar_one_or_none()
        return _lease_from_record(row) if row is not None else None

    async def list_leases(
        self,
        project_id: str,
        scope_type: CapabilityScopeType | None = None,
        scope_id: str = "",
    ) -> list[CapabilityLease]:
        stmt = select(CapabilityLeaseRecord).where(CapabilityLeaseRecord.project_id == project_id)
        if scope_type is not None:
            stmt = stmt.where(CapabilityLeaseRecord.scope_type == scope_type.value)
        if scope_id:
            stmt = stmt.where(CapabilityLeaseRecord.scope_id == scope_id)
        stmt = stmt.order_by(
            CapabilityLeaseRecord.issued_at, CapabilityLeaseRecord.instance_id
        ).execution_options(populate_existing=True)
        rows = (await self._db.execute(stmt)).scalars().all()
        return [_lease_from_record(row) for row in rows]

    async def touch_lease(
        self,
        instance_id: str,
        *,
        heartbeat_at: datetime,
        expires_at: datetime | None = None,
    ) -> bool:
        values: dict = {"heartbeat_at": heartbeat_at}
        if expires_at is not None:
            values["expires_at"] = expires_at
        result = await self._db.execute(
            update(CapabilityLeaseRecord)
            .where(
                CapabilityLeaseRecord.instance_id == instance_id,
                CapabilityLeaseRecord.revoked_at.is_(None),
            )
            .values(**values)
        )
        return result.rowcount > 0

    async def revoke_lease(self, instance_id: str, *, reason: str, now: datetime) -> bool:
        result = await self._db.execute(
            update(CapabilityLeaseRecord)
            .where(
                CapabilityLeaseRecord.instance_id == instance_id,
                CapabilityLeaseRecord.revoked_at.is_(None),
            )
            .values(revoked_at=now, revoked_reason=reason)
        )
        return result.rowcount > 0

    async def revoke_leases_by_scope(
        self,
        project_id: str,
        scope_type: CapabilityScopeType,
        scope_id: str,
        *,
        reason: str,
        now: datetime,
    ) -> int:
        stmt = update(CapabilityLeaseRecord).where(
            CapabilityLeaseRecord.project_id == project_id,
            CapabilityLeaseRecord.scope_type == scope_type.value,
            CapabilityLeaseRecord.revoked_at.is_(None),
        )
        if scope_id:
            stmt = stmt.where(CapabilityLeaseRecord.scope_id == scope_id)
        result = await self._db.execute(stmt.values(revoked_at=now, revoked_reason=reason))
        return result.rowcount

    async def get_capability_policy(self, project_id: str) -> CapabilityPolicy | None:
        row = await self._db.get(CapabilityPolicyRecord, project_id)
        if row is None:
            return None
        return CapabilityPolicy(
            project_id=row.project_id,
            allow_orchestrator_override=row.allow_orchestrator_override,
            orchestrator_override_token=row.orchestrator_override_token,
        )

    async def set_capability_policy(self, policy: CapabilityPolicy) -> None:
        values = {
            "allow_orchestrator_override": policy.allow_orchestrator_override,
            "orchestrator_override_token": policy.orchestrator_override_token,
        }
        await self._db.execute(
            pg_insert(CapabilityPolicyRecord)
            .values(project_id=policy.project_id, **values)
            .on_conflict_do_update(index_elements=["project_id"], set_=values)
        )

    # -- attention --

    async def create_attention_item(self, item: AttentionItem) -> None:
        self._db.add(AttentionItemRecord(**_attention_values(item)))
        await self._db.flush()

    async def get_attention_item(self, attention_id: str) -> AttentionItem | None:
        row = await self._db.get(AttentionItemRecord, attention_id, populate_existing=True)
        return _attention_from_record(row) if row is not None else None

    async def update_attention_item(self, item: AttentionItem) -> None:
        values = _attention_values(item)
        values.pop("id")
        await self._db.execute(
            update(AttentionItemRecord).where(AttentionItemRecord.id == item.id).values(**values)
        )

    async def list_attention_items(self, query: AttentionListFilter) -> list[AttentionItem]:
        level = query.level
        stmt = select(AttentionItemRecord).where(
            AttentionItemRecord.project_id == level.project_id,
            AttentionItemRecord.scope_type == level.scope_type.value,
            AttentionItemRecord.scope_id == level.scope_id,
        )
        if query.unresolved_only:
            stmt = stmt.where(AttentionItemRecord.state != AttentionState.resolved.value)
        if query.states:
            stmt = stmt.where(AttentionItemRecord.state.in_([s.value for s in query.states]))
        if query.kinds:
            stmt = stmt.where(AttentionItemRecord.kind.in_([k.value for k in query.kinds]))
        if query.requires_user_action is not None:
            stmt = stmt.where(
                AttentionItemRecord.requires_user_action == query.requires_user_action
            )
        stmt = stmt.order_by(AttentionItemRecord.created_at.desc(), AttentionItemRecord.id.desc())
        if query.limit > 0:
            stmt = stmt.limit(query.limit)
        rows = (await self._db.execute(stmt.execution_options(populate_existing=True))).scalars()
        return [_attention_from_record(row) for row in rows.all()]

    # -- work items --

    async def create_work_item(self, item: WorkItem) -> None:
        self._db.add(WorkItemRecord(**_work_item_values(item)))
        await self._db.flush()

    async def get_work_item(
        self, work_item_id: str, *, for_update: bool = False,
    ) -> WorkItem | None:
        stmt = select(WorkItemRecord).where(WorkItemRecord.id == work_item_id)
        if for_update:
            stmt = stmt.with_for_update()
        row = (
            await self._db.execute(stmt.execution_options(populate_existing=True))
        ).scalar_one_or_none()
        return _work_item_from_record(row) if row is not None else None

    async def update_work_item(self, item: WorkItem) -> None:
        values = _work_item_values(item)
        values.pop("id")
        await self._db.execute(
            update(WorkItemRecord).where(WorkItemRecord.id == item.id).values(**values)
        )

    async def delete_work_item(self, work_item_id: str) -> None:
        await self._db.execute(delete(WorkItemRecord).where(WorkItemRecord.id == work_item_id))

    async def list_children(self, project_id: str, parent_id: str) -> list[WorkItem]:
        rows = (await self._db.execute(
            select(WorkItemRecord)
            .where(WorkItemRecord.project_id == project_id, WorkItemRecord.parent_id == parent_id)
            .order_by(WorkItemRecord.created_at, WorkItemRecord.id)
            .execution_options(populate_existing=True)
        )).scalars().all()
        return [_work_item_from_record(row) for row in rows]

    async def list_work_items(self, project_id: str) -> list[WorkItem]:
        rows = (await self._db.execute(
            select(WorkItemRecord)
            .where(WorkItemRecord.project_id == project_id)
            .order_by(WorkItemRecord.created_at, WorkItemRecord.id)
            .execution_options(populate_existing=True)
        )).scalars().all()
        return [_work_item_from_record(row) for row in rows]

    # -- change events --

    async def create_change_event(self, event: ChangeEvent) -> None:
        self._db.add(ChangeEventRecord(
            id=event.id,
            project_id=event.project_id,
            work_item_id=event.work_item_id,
            operation=event.operation.value,
            actor_id=event.actor_id,
            actor_type=event.actor_type.value,
            lease_instance_id=event.lease_instance_id,
            event_metadata=dict(event.metadata),
            occurred_at=event.occurred_at,
        ))
        await self._db.flush()

    async def list_change_events(self, project_id: str, *, limit: int = 0) -> list[ChangeEvent]:
        stmt = (
            select(ChangeEventRecord)
            .where(ChangeEventRecord.project_id == project_id)
            .order_by(ChangeEventRecord.occurred_at.desc(), ChangeEventRecord.id.desc())
        )
        if limit > 0:
            stmt = stmt.limit(limit)
        rows = (await self._db.execute(stmt)).scalars().all()
        return [
            ChangeEvent(
                id=row.id,
                project_id=row.project_id,
                work_item_id=row.work_item_id,
                operation=ChangeOperation(row.operation),
                actor_id=row.actor_id,
                actor_type=ActorType(row.actor_type),
                lease_instance_id=row.lease_instance_id,
                metadata=dict(row.event_metadata or {}),
                occurred_at=row.occurred_at,
            )
            for row in rows
        ]

    # -- kind catalog --

    async def list_kind_definitions(self) -> list[KindDefinition]:
        rows = (await self._db.execute(
            select(KindDefinitionRecord)
            .order_by(KindDefinitionRecord.id)
            .execution_options(populate_existing=True)
        )).scalars().all()
        return [_kind_from_record(row) for row in rows]

    async def get_kind_definition(self, kind_id: str) -> KindDefinition | None:
        row = await self._db.get(KindDefinitionRecord, kind_id, populate_existing=True)
        return _kind_from_record(row) if row is not None else None

    async def create_kind_definition(self, kind: KindDefinition) -> None:
        self._db.add(KindDefinitionRecord(id=kind.id, **_kind_values(kind)))
        await self._db.flush()

    async def update_kind_definition(self, kind: KindDefinition) -> None:
        await self._db.execute(
            update(KindDefinitionRecord)
            .where(KindDefinitionRecord.id == kind.id)
            .values(**_kind_values(kind))
        )


class SqlGuardStore:
    """GuardStore over an async_sessionmaker; each unit of work commits once."""

    def __init__(self, db_session_factory: async_sessionmaker[AsyncSession]) -> None:
        self._db_factory = db_session_factory

    @asynccontextmanager
    async def transaction(self) -> AsyncIterator[SqlUnitOfWork]:
        async with self._db_factory() as db, db.begin():
            yield SqlUnitOfWork(db)
