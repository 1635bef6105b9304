"""Kind catalog: which work-item kinds may live at which scope.

Built-in definitions are merged into the store at startup. Existing rows
are never overwritten; applies-to and parent-scope lists are unioned so
an operator's widening survives restarts.
"""

from __future__ import annotations

from collections.abc import Callable, Iterable
from dataclasses import dataclass, replace
from datetime import UTC, datetime
from typing import TYPE_CHECKING

import structlog

from src.infra.errors import InvalidKindError, InvalidScopeTypeError
from src.scope.levels import (
    KindAppliesTo,
    WorkItemScope,
    normalize_token,
    parse_scope_level,
    to_kind_applies_to,
)

if TYPE_CHECKING:
    from src.store.ports import GuardStore, GuardUnitOfWork
    from src.workitems.models import WorkItem

logger = structlog.get_logger()


@dataclass(frozen=True)
class KindDefinition:
    id: str
    display_name: str
    applies_to: tuple[KindAppliesTo, ...]
    allowed_parent_scopes: tuple[KindAppliesTo, ...] = ()
    description_markdown: str = ""
    created_at: datetime | None = None
    updated_at: datetime | None = None

    def applies_to_scope(self, scope: KindAppliesTo) -> bool:
        return scope in self.applies_to

    def allows_parent_scope(self, scope: KindAppliesTo) -> bool:
        """An empty parent list allows any parent."""
        if not self.allowed_parent_scopes:
            return True
        return scope in self.allowed_parent_scopes


def _normalize_applies_to(values: Iterable[KindAppliesTo | str]) -> tuple[KindAppliesTo, ...]:
    out: dict[KindAppliesTo, None] = {}
    for value in values:
        level = parse_scope_level(value)
        if level is None:
            raise InvalidScopeTypeError(f"unknown kind applies_to {value!r}")
        out[to_kind_applies_to(level)] = None
    return tuple(out)


def new_kind_definition(
    kind_id: str,
    *,
    applies_to: Iterable[KindAppliesTo | str],
    display_name: str = "",
    allowed_parent_scopes: Iterable[KindAppliesTo | str] = (),
    description_markdown: str = "",
    now: datetime | None = None,
) -> KindDefinition:
    kind_id = normalize_token(kind_id)
    if not kind_id:
        raise InvalidKindError("kind id is required")
    scopes = _normalize_applies_to(applies_to)
    if not scopes:
        raise InvalidKindError(f"kind {kind_id!r} must apply to at least one scope")
    return KindDefinition(
        id=kind_id,
        display_name=(display_name or "").strip() or kind_id,
        applies_to=scopes,
        allowed_parent_scopes=_normalize_applies_to(allowed_parent_scopes),
        description_markdown=(description_markdown or "").strip(),
        created_at=now,
        updated_at=now,
    )


_K = KindAppliesTo

DEFAULT_KIND_DEFINITIONS: tuple[KindDefinition, ...] = (
    new_kind_definition("project", display_name="Project", applies_to=[_K.project]),
    new_kind_definition("task", display_name="Task", applies_to=[_K.task]),
    new_kind_definition(
        "subtask",
        display_name="Subtask",
        applies_to=[_K.subtask],
        allowed_parent_scopes=[_K.task, _K.subtask, _K.phase, _K.branch],
    ),
    new_kind_definition(
        "phase",
        display_name="Phase",
        applies_to=[_K.phase, _K.subphase, _K.task],
        allowed_parent_scopes=[_K.branch, _K.phase, _K.subphase, _K.task],
    ),
    new_kind_definition(
        "branch",
        display_name="Branch",
        applies_to=[_K.branch],
        allowed_parent_scopes=[_K.branch],
    ),
    new_kind_definition("decision", display_name="Decision", applies_to=[_K.task, _K.subtask]),
    new_kind_definition("note", display_name="Note", applies_to=[_K.task, _K.subtask]),
)


_DEFAULT_KIND_FOR_SCOPE: dict[WorkItemScope, str] = {
    WorkItemScope.branch: "branch",
    WorkItemScope.phase: "phase",
    WorkItemScope.subphase: "phase",
    WorkItemScope.task: "task",
    WorkItemScope.subtask: "subtask",
}


def merge_kind_definitions(existing: KindDefinition, builtin: KindDefinition) -> KindDefinition:
    """Union the built-in scopes into an existing definition."""
    applies_to = tuple(dict.fromkeys(existing.applies_to + builtin.applies_to))
    if existing.allowed_parent_scopes and builtin.allowed_parent_scopes:
        parents = tuple(
            dict.fromkeys(existing.allowed_parent_scopes + builtin.allowed_parent_scopes)
        )
    else:
        # Either side unrestricted keeps the definition unrestricted.
        parents = ()
    return replace(existing, applies_to=applies_to, allowed_parent_scopes=parents)


class KindCatalog:
    """Validates work-item kinds per scope against the stored catalog."""

    def __init__(
        self,
        store: GuardStore,
        *,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self._store = store
        self._clock = clock or (lambda: datetime.now(UTC))

    async def ensure_defaults(self) -> int:
        """Create or widen built-in kinds. Returns the number of rows written."""
        async with self._store.transaction() as uow:
            return await self.ensure_defaults_in(uow)

    async def ensure_defaults_in(self, uow: GuardUnitOfWork) -> int:
        now = self._clock()
        existing = {kind.id: kind for kind in await uow.list_kind_definitions()}
        written = 0
        for builtin in DEFAULT_KIND_DEFINITIONS:
            current = existing.get(builtin.id)
            if current is None:
                await uow.create_kind_definition(replace(builtin, created_at=now, updated_at=now))
                written += 1
                continue
            merged = merge_kind_definitions(current, builtin)
            if merged != current:
                await uow.update_kind_definition(replace(merged, updated_at=now))
                written += 1
        if written:
            logger.info("kind_catalog_bootstrapped", written=written)
        return written

    async def list_kinds(self) -> list[KindDefinition]:
        async with self._store.transaction() as uow:
            return await uow.list_kind_definitions()

    async def upsert_kind(self, kind: KindDefinition) -> KindDefinition:
        async with self._store.transaction() as uow:
            now = self._clock()
            current = await uow.get_kind_definition(kind.id)
            if current is None:
                kind = replace(kind, created_at=now, updated_at=now)
                await uow.create_kind_definition(kind)
            else:
                kind = replace(kind, created_at=current.created_at, updated_at=now)
                await uow.update_kind_definition(kind)
        logger.info("kind_definition_upserted", kind_id=kind.id)
        return kind

    async def validate_work_item_kind(
        self,
        uow: GuardUnitOfWork,
        kind_id: str,
        scope: WorkItemScope,
        parent: WorkItem | None,
    ) -> KindDefinition:
        """Return the kind definition after checking scope and parent scope.

        Raises:
            InvalidKindError: unknown kind, or kind not allowed at this scope
                or under this parent.
        """
        kind_id = normalize_token(kind_id) or _DEFAULT_KIND_FOR_SCOPE[scope]
        kind = await uow.get_kind_definition(kind_id)
        if kind is None:
            raise InvalidKindError(f"kind {kind_id!r} not found")
        target_scope = KindAppliesTo(scope.value)
        if not kind.applies_to_scope(target_scope):
            raise InvalidKindError(f"kind {kind_id!r} does not apply to {target_scope.value!r}")
        if parent is not None:
            parent_scope = KindAppliesTo(parent.scope.value)
            if not kind.allows_parent_scope(parent_scope):
                raise InvalidKindError(
                    f"kind {kind_id!r} does not allow parent scope {parent_scope.value!r}"
                )
        return kind
