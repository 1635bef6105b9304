"""Guarded work-item surface: create, update contract, transition, delete.

Each call authorizes, evaluates and writes inside one unit of work and
records a change event stamped with the guard's attribution.
"""

from __future__ import annotations

import uuid
from collections.abc import Callable
from datetime import UTC, datetime
from enum import StrEnum
from typing import TYPE_CHECKING, Any

import structlog

from src.attention.models import AttentionListFilter
from src.infra.errors import (
    InvalidParentIDError,
    InvalidScopeTypeError,
    NotFoundError,
    TransitionBlockedError,
    ValidationError,
)
from src.scope.levels import (
    LevelTuple,
    ScopeLevel,
    ScopeTarget,
    WorkItemScope,
    normalize_token,
)
from src.workitems.completion import ensure_can_complete, ensure_can_start
from src.workitems.lineage import target_for_item
from src.workitems.models import (
    ChangeEvent,
    ChangeOperation,
    CompletionContract,
    LifecycleState,
    WorkItem,
    parse_lifecycle_state,
    validate_work_item_fields,
)

if TYPE_CHECKING:
    from src.catalog.kinds import KindCatalog
    from src.guard.context import Attribution, MutationContext
    from src.guard.mutation_guard import MutationGuard
    from src.store.ports import GuardStore, GuardUnitOfWork

logger = structlog.get_logger()


class DeleteMode(StrEnum):
    archive = "archive"
    hard = "hard"


def parse_work_item_scope(value: WorkItemScope | str | None) -> WorkItemScope:
    try:
        return WorkItemScope(normalize_token(value) or WorkItemScope.task.value)
    except ValueError:
        raise InvalidScopeTypeError(f"unknown work item scope {value!r}") from None


def parse_delete_mode(value: DeleteMode | str | None) -> DeleteMode:
    token = normalize_token(value) or DeleteMode.archive.value
    try:
        return DeleteMode(token)
    except ValueError:
        raise ValidationError(f"unknown delete mode {token!r}") from None


class WorkItemService:
    def __init__(
        self,
        store: GuardStore,
        guard: MutationGuard,
        catalog: KindCatalog,
        *,
        clock: Callable[[], datetime] | None = None,
        id_factory: Callable[[], str] | None = None,
    ) -> None:
        self._store = store
        self._guard = guard
        self._catalog = catalog
        self._clock = clock or (lambda: datetime.now(UTC))
        self._new_id = id_factory or (lambda: str(uuid.uuid4()))

    async def _load(
        self, uow: GuardUnitOfWork, work_item_id: str, *, for_update: bool = False,
    ) -> WorkItem:
        item = await uow.get_work_item((work_item_id or "").strip(), for_update=for_update)
        if item is None:
            raise NotFoundError(f"work item {work_item_id!r} not found")
        return item

    async def _record(
        self,
        uow: GuardUnitOfWork,
        item: WorkItem,
        operation: ChangeOperation,
        attribution: Attribution,
        now: datetime,
        metadata: dict[str, Any] | None = None,
    ) -> None:
        await uow.create_change_event(ChangeEvent(
            id=self._new_id(),
            project_id=item.project_id,
            work_item_id=item.id,
            operation=operation,
            actor_id=attribution.actor_id,
            actor_type=attribution.actor_type,
            lease_instance_id=attribution.lease_instance_id,
            metadata=metadata or {},
            occurred_at=now,
        ))

    async def get(self, work_item_id: str) -> WorkItem:
        async with self._store.transaction() as uow:
            return await self._load(uow, work_item_id)

    async def list_children(self, project_id: str, parent_id: str) -> list[WorkItem]:
        async with self._store.transaction() as uow:
            return await uow.list_children(project_id, parent_id)

    async def list_change_events(self, project_id: str, *, limit: int = 0) -> list[ChangeEvent]:
        async with self._store.transaction() as uow:
            return await uow.list_change_events(project_id, limit=limit)

    async def create(
        self,
        context: MutationContext,
        project_id: str,
        title: str,
        *,
        scope: WorkItemScope | str | None = None,
        parent_id: str = "",
        kind: str = "",
        contract: CompletionContract | None = None,
        item_id: str | None = None,
        now: datetime | None = None,
    ) -> WorkItem:
        """Create a work item; the guard target is the parent, or the project at the root."""
        item_id, project_id, title = validate_work_item_fields(
            item_id or self._new_id(), project_id, title,
        )
        work_scope = parse_work_item_scope(scope)
        parent_id = (parent_id or "").strip()

        async with self._store.transaction() as uow:
            now = now or self._clock()
            if await uow.get_work_item(item_id) is not None:
                raise ValidationError(f"work item {item_id!r} already exists")
            parent = None
            if parent_id:
                parent = await uow.get_work_item(parent_id)
                if parent is None or parent.project_id != project_id:
                    raise InvalidParentIDError(f"parent {parent_id!r} not found in project")
                target = await target_for_item(uow, parent)
            else:
                target = ScopeTarget(
                    level=LevelTuple(project_id, "", ScopeLevel.project, project_id),
                )
            attribution = await self._guard.authorize(uow, context, target, now=now)
            kind_def = await self._catalog.validate_work_item_kind(uow, kind, work_scope, parent)

            item = WorkItem(
                id=item_id,
                project_id=project_id,
                parent_id=parent_id,
                kind=kind_def.id,
                scope=work_scope,
                title=title,
                contract=contract or CompletionContract(),
                created_by=attribution.actor_id,
                created_by_type=attribution.actor_type,
                updated_by=attribution.actor_id,
                updated_by_type=attribution.actor_type,
                created_at=now,
                updated_at=now,
            )
            await uow.create_work_item(item)
            await self._record(uow, item, ChangeOperation.create, attribution, now, {
                "kind": item.kind,
                "scope": item.scope.value,
                "parent_id": item.parent_id,
            })

        logger.info(
            "work_item_created",
            work_item_id=item.id,
            project_id=item.project_id,
            scope=item.scope.value,
            kind=item.kind,
            actor_id=attribution.actor_id,
        )
        return item

    async def update_contract(
        self,
        context: MutationContext,
        work_item_id: str,
        contract: CompletionContract,
        *,
        now: datetime | None = None,
    ) -> WorkItem:
        async with self._store.transaction() as uow:
            now = now or self._clock()
            item = await self._load(uow, work_item_id, for_update=True)
            target = await target_for_item(uow, item)
            attribution = await self._guard.authorize(uow, context, target, now=now)
            updated = item.with_contract(
                contract,
                actor_id=attribution.actor_id,
                actor_type=attribution.actor_type,
                now=now,
            )
            await uow.update_work_item(updated)
            await self._record(uow, updated, ChangeOperation.update, attribution, now, {
                "fields": ["contract"],
            })
        logger.info("work_item_contract_updated", work_item_id=updated.id)
        return updated

    async def transition(
        self,
        context: MutationContext,
        work_item_id: str,
        state: LifecycleState | str,
        *,
        now: datetime | None = None,
    ) -> WorkItem:
        """Move a work item to a new lifecycle state.

        Moving to done requires the completion contract to hold; moving
        todo -> progress requires every start criterion to be done.

        Raises:
            NotFoundError: unknown work item.
            MutationLeaseRequiredError (and subclasses): guard refused.
            TransitionBlockedError: contract unmet, children open or
                blocking attention unresolved at the item's scope.
        """
        target_state = parse_lifecycle_state(state)
        async with self._store.transaction() as uow:
            now = now or self._clock()
            item = await self._load(uow, work_item_id, for_update=True)
            target = await target_for_item(uow, item)
            attribution = await self._guard.authorize(uow, context, target, now=now)
            if item.lifecycle_state is target_state:
                return item

            starting = (
                item.lifecycle_state is LifecycleState.todo
                and target_state is LifecycleState.progress
            )
            if starting:
                ensure_can_start(item)
            if target_state is LifecycleState.done:
                children = await uow.list_children(item.project_id, item.id)
                attention = await uow.list_attention_items(
                    AttentionListFilter.create(item.level(), unresolved_only=True)
                )
                try:
                    ensure_can_complete(item, children, attention)
                except TransitionBlockedError:
                    logger.info("transition_blocked", work_item_id=item.id, to=target_state.value)
                    raise

            updated = item.with_state(
                target_state,
                actor_id=attribution.actor_id,
                actor_type=attribution.actor_type,
                now=now,
            )
            await uow.update_work_item(updated)
            operation = (
                ChangeOperation.archive
                if target_state is LifecycleState.archived
                else ChangeOperation.transition
            )
            await self._record(uow, updated, operation, attribution, now, {
                "from": item.lifecycle_state.value,
                "to": target_state.value,
            })

        logger.info(
            "work_item_transitioned",
            work_item_id=updated.id,
            from_state=item.lifecycle_state.value,
            to_state=target_state.value,
            actor_id=attribution.actor_id,
        )
        return updated

    async def delete(
        self,
        context: MutationContext,
        work_item_id: str,
        *,
        mode: DeleteMode | str | None = None,
        now: datetime | None = None,
    ) -> None:
        """Archive (default) or hard-delete a work item.

        Hard delete removes the whole subtree.
        """
        delete_mode = parse_delete_mode(mode)
        async with self._store.transaction() as uow:
            now = now or self._clock()
            item = await self._load(uow, work_item_id, for_update=True)
            target = await target_for_item(uow, item)
            attribution = await self._guard.authorize(uow, context, target, now=now)

            if delete_mode is DeleteMode.archive:
                archived = item.with_state(
                    LifecycleState.archived,
                    actor_id=attribution.actor_id,
                    actor_type=attribution.actor_type,
                    now=now,
                )
                await uow.update_work_item(archived)
                await self._record(uow, archived, ChangeOperation.archive, attribution, now, {
                    "from": item.lifecycle_state.value,
                })
            else:
                removed = await self._delete_subtree(uow, item)
                await self._record(uow, item, ChangeOperation.delete, attribution, now, {
                    "removed_ids": removed,
                })

        logger.info(
            "work_item_deleted",
            work_item_id=item.id,
            mode=delete_mode.value,
            actor_id=attribution.actor_id,
        )

    async def _delete_subtree(self, uow: GuardUnitOfWork, root: WorkItem) -> list[str]:
        removed: list[str] = []
        pending = [root]
        while pending:
            node = pending.pop()
            pending.extend(await uow.list_children(node.project_id, node.id))
            await uow.delete_work_item(node.id)
            removed.append(node.id)
        return removed
