"""Persistence ports for the guardrail core.

Every service call opens exactly one unit of work through
``GuardStore.transaction()``. Reads and the guarded write happen inside
the same unit so that a revocation committed by another caller either
precedes the whole check-and-write or follows it.
"""

from __future__ import annotations

from contextlib import AbstractAsyncContextManager
from datetime import datetime
from typing import TYPE_CHECKING, Protocol

if TYPE_CHECKING:
    from src.attention.models import AttentionItem, AttentionListFilter
    from src.catalog.kinds import KindDefinition
    from src.leases.models import CapabilityLease, CapabilityPolicy
    from src.scope.levels import CapabilityScopeType
    from src.workitems.models import ChangeEvent, WorkItem


class GuardUnitOfWork(Protocol):
    # -- capability leases --

    async def create_lease(self, lease: CapabilityLease) -> None: ...

    async def get_lease(self, instance_id: str) -> CapabilityLease | None: ...

    async def list_leases(
        self,
        project_id: str,
        scope_type: CapabilityScopeType | None = None,
        scope_id: str = "",
    ) -> list[CapabilityLease]:
        """Leases ordered by (issued_at, instance_id); revoked rows included."""
        ...

    async def touch_lease(
        self,
        instance_id: str,
        *,
        heartbeat_at: datetime,
        expires_at: datetime | None = None,
    ) -> bool:
        """Conditional write guarded by ``revoked_at IS NULL``; True when a row changed."""
        ...

    async def revoke_lease(self, instance_id: str, *, reason: str, now: datetime) -> bool:
        """Stamp revocation on an unrevoked lease; True when a row changed."""
        ...

    async def revoke_leases_by_scope(
        self,
        project_id: str,
        scope_type: CapabilityScopeType,
        scope_id: str,
        *,
        reason: str,
        now: datetime,
    ) -> int: ...

    async def get_capability_policy(self, project_id: str) -> CapabilityPolicy | None: ...

    async def set_capability_policy(self, policy: CapabilityPolicy) -> None: ...

    # -- attention --

    async def create_attention_item(self, item: AttentionItem) -> None: ...

    async def get_attention_item(self, attention_id: str) -> AttentionItem | None: ...

    async def update_attention_item(self, item: AttentionItem) -> None: ...

    async def list_attention_items(self, query: AttentionListFilter) -> list[AttentionItem]:
        """Matching items ordered (created_at desc, id desc), limit applied."""
        ...

    # -- work items --

    async def create_work_item(self, item: WorkItem) -> None: ...

    async def get_work_item(
        self, work_item_id: str, *, for_update: bool = False,
    ) -> WorkItem | None:
        ...

    async def update_work_item(self, item: WorkItem) -> None: ...

    async def delete_work_item(self, work_item_id: str) -> None: ...

    async def list_children(self, project_id: str, parent_id: str) -> list[WorkItem]: ...

    async def list_work_items(self, project_id: str) -> list[WorkItem]: ...

    # -- change events --

    async def create_change_event(self, event: ChangeEvent) -> None: ...

    async def list_change_events(self, project_id: str, *, limit: int = 0) -> list[ChangeEvent]:
        """Newest first."""
        ...

    # -- kind catalog --

    async def list_kind_definitions(self) -> list[KindDefinition]: ...

    async def get_kind_definition(self, kind_id: str) -> KindDefinition | None: ...

    async def create_kind_definition(self, kind: KindDefinition) -> None: ...

    async def update_kind_definition(self, kind: KindDefinition) -> None: ...


class GuardStore(Protocol):
    def transaction(self) -> AbstractAsyncContextManager[GuardUnitOfWork]: ...
