"""Resolve a level tuple to a guard target with its persisted lineage.

Branch ids and ancestors are always derived from the work-item tree;
whatever the caller supplied is discarded.
"""

from __future__ import annotations

from typing import TYPE_CHECKING

from src.infra.errors import InvalidScopeIDError, NotFoundError
from src.scope.levels import LevelTuple, ScopeLevel, ScopeRef, ScopeTarget, to_work_item_scope

if TYPE_CHECKING:
    from src.store.ports import GuardUnitOfWork
    from src.workitems.models import WorkItem


async def load_scope_item(uow: GuardUnitOfWork, level: LevelTuple) -> WorkItem:
    """Fetch the work item addressed by a non-project level tuple.

    Raises:
        NotFoundError: no item with that id, or it lives in another project
            or at another scope.
    """
    item = await uow.get_work_item(level.scope_id)
    if (
        item is None
        or item.project_id != level.project_id
        or item.scope is not to_work_item_scope(level.scope_type)
    ):
        raise NotFoundError(
            f"{level.scope_type.value} {level.scope_id!r} not found in project {level.project_id!r}"
        )
    return item


async def lineage_of(uow: GuardUnitOfWork, item: WorkItem) -> tuple[ScopeRef, ...]:
    """Ancestors of item, nearest first, ending at the project root."""
    ancestors: list[ScopeRef] = []
    seen = {item.id}
    parent_id = item.parent_id
    while parent_id and parent_id not in seen:
        parent = await uow.get_work_item(parent_id)
        if parent is None or parent.project_id != item.project_id:
            break
        seen.add(parent.id)
        ancestors.append(ScopeRef(parent.level_type, parent.id))
        parent_id = parent.parent_id
    ancestors.append(ScopeRef(ScopeLevel.project, item.project_id))
    return tuple(ancestors)


def branch_of(level: LevelTuple, ancestors: tuple[ScopeRef, ...]) -> str:
    if level.scope_type is ScopeLevel.branch:
        return level.scope_id
    # Nearest branch wins for nested branches.
    for ref in ancestors:
        if ref.scope_type is ScopeLevel.branch:
            return ref.scope_id
    return ""


async def resolve_target(uow: GuardUnitOfWork, level: LevelTuple) -> ScopeTarget:
    if level.scope_type is ScopeLevel.project:
        if level.scope_id != level.project_id:
            raise InvalidScopeIDError("project scope_id must equal project_id")
        return ScopeTarget(
            level=LevelTuple(level.project_id, "", ScopeLevel.project, level.project_id),
        )
    item = await load_scope_item(uow, level)
    ancestors = await lineage_of(uow, item)
    resolved = LevelTuple(
        project_id=level.project_id,
        branch_id=branch_of(level, ancestors),
        scope_type=level.scope_type,
        scope_id=level.scope_id,
    )
    return ScopeTarget(level=resolved, ancestors=ancestors)


async def target_for_item(uow: GuardUnitOfWork, item: WorkItem) -> ScopeTarget:
    """Target for an already-loaded work item."""
    ancestors = await lineage_of(uow, item)
    level = item.level()
    return ScopeTarget(
        level=item.level(branch_of(level, ancestors)),
        ancestors=ancestors,
    )
