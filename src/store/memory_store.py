"""In-process store with the same transactional semantics as the SQL store.

Units of work are serialized by one asyncio.Lock. Each unit works on the
live maps and restores a snapshot when the body raises, so a failed
guarded write leaves no partial state behind.
"""

from __future__ import annotations

import asyncio
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from dataclasses import dataclass, field, replace
from datetime import datetime

from src.attention.models import AttentionItem, AttentionListFilter, sort_newest_first
from src.catalog.kinds import KindDefinition
from src.leases.models import CapabilityLease, CapabilityPolicy
from src.scope.levels import CapabilityScopeType
from src.workitems.models import ChangeEvent, WorkItem


@dataclass
class _Tables:
    leases: dict[str, CapabilityLease] = field(default_factory=dict)
    policies: dict[str, CapabilityPolicy] = field(default_factory=dict)
    attention: dict[str, AttentionItem] = field(default_factory=dict)
    work_items: dict[str, WorkItem] = field(default_factory=dict)
    change_events: list[ChangeEvent] = field(default_factory=list)
    kinds: dict[str, KindDefinition] = field(default_factory=dict)

    def snapshot(self) -> _Tables:
        # Values are frozen dataclasses; copying the containers is enough.
        return _Tables(
            leases=dict(self.leases),
            policies=dict(self.policies),
            attention=dict(self.attention),
            work_items=dict(self.work_items),
            change_events=list(self.change_events),
            kinds=dict(self.kinds),
        )


class MemoryUnitOfWork:
    def __init__(self, tables: _Tables) -> None:
        self._t = tables

    # -- capability leases --

    async def create_lease(self, lease: CapabilityLease) -> None:
        if lease.instance_id in self._t.leases:
            raise ValueError(f"duplicate lease instance_id {lease.instance_id!r}")
        self._t.leases[lease.instance_id] = lease

    async def get_lease(self, instance_id: str) -> CapabilityLease | None:
        return self._t.leases.get(instance_id)

    async def list_leases(
        self,
        project_id: str,
        scope_type: CapabilityScopeType | None = None,
        scope_id: str = "",
    ) -> list[CapabilityLease]:
        rows = [
            lease
            for lease in self._t.leases.values()
            if lease.project_id == project_id
            and (scope_type is None or lease.scope_type is scope_type)
            and (not scope_id or lease.scope_id == scope_id)
        ]
        return sorted(rows, key=lambda lease: (lease.issued_at, lease.instance_id))

    async def touch_lease(
        self,
        instance_id: str,
        *,
        heartbeat_at: datetime,
        expires_at: datetime | None = None,
    ) -> bool:
        lease = self._t.leases.get(instance_id)
        if lease is None or lease.revoked_at is not None:
            return False
        self._t.leases[instance_id] = replace(
            lease,
            heartbeat_at=heartbeat_at,
            expires_at=expires_at or lease.expires_at,
        )
        return True

    async def revoke_lease(self, instance_id: str, *, reason: str, now: datetime) -> bool:
        lease = self._t.leases.get(instance_id)
        if lease is None or lease.revoked_at is not None:
            return False
        self._t.leases[instance_id] = replace(lease, revoked_at=now, revoked_reason=reason)
        return True

    async def revoke_leases_by_scope(
        self,
        project_id: str,
        scope_type: CapabilityScopeType,
        scope_id: str,
        *,
        reason: str,
        now: datetime,
    ) -> int:
        count = 0
        for lease in await self.list_leases(project_id, scope_type, scope_id):
            if await self.revoke_lease(lease.instance_id, reason=reason, now=now):
                count += 1
        return count

    async def get_capability_policy(self, project_id: str) -> CapabilityPolicy | None:
        return self._t.policies.get(project_id)

    async def set_capability_policy(self, policy: CapabilityPolicy) -> None:
        self._t.policies[policy.project_id] = policy

    # -- attention --

    async def create_attention_item(self, item: AttentionItem) -> None:
        if item.id in self._t.attention:
            raise ValueError(f"duplicate attention id {item.id!r}")
        self._t.attention[item.id] = item

    async def get_attention_item(self, attention_id: str) -> AttentionItem | None:
        return self._t.attention.get(attention_id)

    async def update_attention_item(self, item: AttentionItem) -> None:
        self._t.attention[item.id] = item

    async def list_attention_items(self, query: AttentionListFilter) -> list[AttentionItem]:
        rows = sort_newest_first([i for i in self._t.attention.values() if query.matches(i)])
        if query.limit > 0:
            rows = rows[: query.limit]
        return rows

    # -- work items --

    async def create_work_item(self, item: WorkItem) -> None:
        if item.id in self._t.work_items:
            raise ValueError(f"duplicate work item id {item.id!r}")
        self._t.work_items[item.id] = item

    async def get_work_item(
        self, work_item_id: str, *, for_update: bool = False,
    ) -> WorkItem | None:
        return self._t.work_items.get(work_item_id)

    async def update_work_item(self, item: WorkItem) -> None:
        self._t.work_items[item.id] = item

    async def delete_work_item(self, work_item_id: str) -> None:
        self._t.work_items.pop(work_item_id, None)

    async def list_children(self, project_id: str, parent_id: str) -> list[WorkItem]:
        rows = [
            item
            for item in self._t.work_items.values()
            if item.project_id == project_id and item.parent_id == parent_id
        ]
        return sorted(rows, key=lambda item: (item.created_at, item.id))

    async def list_work_items(self, project_id: str) -> list[WorkItem]:
        rows = [item for item in self._t.work_items.values() if item.project_id == project_id]
        return sorted(rows, key=lambda item: (item.created_at, item.id))

    # -- change events --

    async def create_change_event(self, event: ChangeEvent) -> None:
        self._t.change_events.append(event)

    async def list_change_events(self, project_id: str, *, limit: int = 0) -> list[ChangeEvent]:
        rows = sorted(
            (e for e in self._t.change_events if e.project_id == project_id),
            key=lambda e: (e.occurred_at, e.id),
            reverse=True,
        )
        return rows[:limit] if limit > 0 else rows

    # -- kind catalog --

    async def list_kind_definitions(self) -> list[KindDefinition]:
        return sorted(self._t.kinds.values(), key=lambda kind: kind.id)

    async def get_kind_definition(self, kind_id: str) -> KindDefinition | None:
        return self._t.kinds.get(kind_id)

    async def create_kind_definition(self, kind: KindDefinition) -> None:
        self._t.kinds[kind.id] = kind

    async def update_kind_definition(self, kind: KindDefinition) -> None:
        self._t.kinds[kind.id] = kind


class MemoryGuardStore:
    def __init__(self) -> None:
        self._tables = _Tables()
        self._lock = asyncio.Lock()

    @asynccontextmanager
    async def transaction(self) -> AsyncIterator[MemoryUnitOfWork]:
        async with self._lock:
            saved = self._tables.snapshot()
            try:
                yield MemoryUnitOfWork(self._tables)
            except BaseException:
                self._tables = saved
                raise
