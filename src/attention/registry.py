"""Attention registry: raise, list and resolve scoped escalations."""

from __future__ import annotations

import uuid
from collections.abc import Callable, Sequence
from datetime import UTC, datetime
from typing import TYPE_CHECKING

import structlog

from src.attention.capture import (
    CaptureStateSummary,
    CaptureStateView,
    build_attention_overview,
    build_follow_up_pointers,
    build_work_overview,
    parse_capture_view,
)
from src.attention.models import (
    AttentionItem,
    AttentionKind,
    AttentionListFilter,
    AttentionState,
    new_attention_item,
)
from src.constants import CAPTURE_STATE_ATTENTION_LIMIT
from src.infra.errors import NotFoundError
from src.workitems.lineage import resolve_target

if TYPE_CHECKING:
    from src.guard.context import MutationContext
    from src.guard.mutation_guard import MutationGuard
    from src.scope.levels import LevelTuple
    from src.store.ports import GuardStore

logger = structlog.get_logger()


class AttentionRegistry:
    """Scoped attention items. Raise and resolve are guard-enforced."""

    def __init__(
        self,
        store: GuardStore,
        guard: MutationGuard,
        *,
        clock: Callable[[], datetime] | None = None,
        id_factory: Callable[[], str] | None = None,
    ) -> None:
        self._store = store
        self._guard = guard
        self._clock = clock or (lambda: datetime.now(UTC))
        self._new_id = id_factory or (lambda: str(uuid.uuid4()))

    @staticmethod
    def blocks_completion(item: AttentionItem) -> bool:
        return item.blocks_completion()

    async def raise_item(
        self,
        context: MutationContext,
        level: LevelTuple,
        kind: AttentionKind | str,
        summary: str,
        *,
        body_markdown: str = "",
        requires_user_action: bool = False,
        state: AttentionState | str | None = None,
        now: datetime | None = None,
    ) -> AttentionItem:
        async with self._store.transaction() as uow:
            now = now or self._clock()
            target = await resolve_target(uow, level)
            # Validate the payload before touching the lease heartbeat.
            item = new_attention_item(
                item_id=self._new_id(),
                level=target.level,
                kind=kind,
                summary=summary,
                body_markdown=body_markdown,
                requires_user_action=requires_user_action,
                state=state,
                actor=context.actor,
                now=now,
            )
            await self._guard.authorize(uow, context, target, now=now)
            await uow.create_attention_item(item)

        logger.info(
            "attention_raised",
            attention_id=item.id,
            kind=item.kind.value,
            state=item.state.value,
            requires_user_action=item.requires_user_action,
            actor_id=context.actor.actor_id,
            **item.level.as_dict(),
        )
        return item

    async def list_items(
        self,
        level: LevelTuple,
        *,
        unresolved_only: bool = False,
        states: Sequence[AttentionState | str] = (),
        kinds: Sequence[AttentionKind | str] = (),
        requires_user_action: bool | None = None,
        limit: int = 0,
    ) -> list[AttentionItem]:
        """Items at exactly this scope, newest first; limit <= 0 means unlimited."""
        query = AttentionListFilter.create(
            level,
            unresolved_only=unresolved_only,
            states=tuple(states),
            kinds=tuple(kinds),
            requires_user_action=requires_user_action,
            limit=limit,
        )
        async with self._store.transaction() as uow:
            return await uow.list_attention_items(query)

    async def resolve_item(
        self,
        context: MutationContext,
        attention_id: str,
        *,
        now: datetime | None = None,
    ) -> AttentionItem:
        """Mark an item resolved. A repeat resolve overwrites the resolver fields."""
        attention_id = (attention_id or "").strip()
        async with self._store.transaction() as uow:
            now = now or self._clock()
            item = await uow.get_attention_item(attention_id)
            if item is None:
                raise NotFoundError(f"attention item {attention_id!r} not found")
            target = await resolve_target(uow, item.level)
            await self._guard.authorize(uow, context, target, now=now)
            resolved = item.resolve(context.actor, now)
            await uow.update_attention_item(resolved)

        logger.info(
            "attention_resolved",
            attention_id=resolved.id,
            actor_id=context.actor.actor_id,
            actor_type=context.actor.actor_type.value,
            previously=item.state.value,
        )
        return resolved

    async def capture_state(
        self,
        level: LevelTuple,
        view: CaptureStateView | str = CaptureStateView.summary,
        *,
        now: datetime | None = None,
    ) -> CaptureStateSummary:
        resolved_view = parse_capture_view(view)
        async with self._store.transaction() as uow:
            now = now or self._clock()
            target = await resolve_target(uow, level)
            attention = await uow.list_attention_items(AttentionListFilter.create(
                target.level,
                unresolved_only=True,
                limit=CAPTURE_STATE_ATTENTION_LIMIT,
            ))
            work_items = await uow.list_work_items(target.project_id)

        scope = target.level
        return CaptureStateSummary(
            captured_at=now,
            level=scope,
            view=resolved_view,
            goal_overview=(
                f"scope={scope.scope_type.value}:{scope.scope_id} "
                f"project={scope.project_id} view={resolved_view.value}"
            ),
            attention_overview=build_attention_overview(attention),
            work_overview=build_work_overview(scope, work_items),
            follow_up_pointers=build_follow_up_pointers(scope),
        )
