"""Attention item value objects.

An attention item records an open question at one hierarchy node:
a blocker, a required consensus, a pending approval or a plain risk note.
Items are created by raise and mutated only by resolve; they are never
deleted.
"""

from __future__ import annotations

from dataclasses import dataclass, field, replace
from datetime import datetime
from enum import StrEnum

from src.guard.context import Actor, ActorType
from src.infra.errors import (
    InvalidAttentionKindError,
    InvalidAttentionStateError,
    InvalidIDError,
    InvalidSummaryError,
)
from src.scope.levels import LevelTuple, normalize_token


class AttentionState(StrEnum):
    open = "open"
    acknowledged = "acknowledged"
    resolved = "resolved"


class AttentionKind(StrEnum):
    blocker = "blocker"
    consensus_required = "consensus_required"
    approval_required = "approval_required"
    risk_note = "risk_note"


BLOCKING_KINDS = frozenset({
    AttentionKind.blocker,
    AttentionKind.consensus_required,
    AttentionKind.approval_required,
})


def parse_attention_state(value: AttentionState | str | None) -> AttentionState:
    token = normalize_token(value)
    try:
        return AttentionState(token)
    except ValueError:
        raise InvalidAttentionStateError(f"unknown attention state {token!r}") from None


def parse_attention_kind(value: AttentionKind | str | None) -> AttentionKind:
    token = normalize_token(value)
    try:
        return AttentionKind(token)
    except ValueError:
        raise InvalidAttentionKindError(f"unknown attention kind {token!r}") from None


@dataclass(frozen=True)
class ActorStamp:
    actor_id: str
    actor_type: ActorType
    at: datetime

    @classmethod
    def from_actor(cls, actor: Actor, at: datetime) -> ActorStamp:
        return cls(actor_id=actor.actor_id, actor_type=actor.actor_type, at=at)


@dataclass(frozen=True)
class AttentionItem:
    id: str
    level: LevelTuple
    state: AttentionState
    kind: AttentionKind
    summary: str
    created_by: ActorStamp
    body_markdown: str = ""
    requires_user_action: bool = False
    acknowledged_by: ActorStamp | None = None
    resolved_by: ActorStamp | None = None

    @property
    def created_at(self) -> datetime:
        return self.created_by.at

    def is_unresolved(self) -> bool:
        return self.state is not AttentionState.resolved

    def blocks_completion(self) -> bool:
        """Unresolved and either waiting on the user or of a blocking kind."""
        if not self.is_unresolved():
            return False
        return self.requires_user_action or self.kind in BLOCKING_KINDS

    def resolve(self, actor: Actor, now: datetime) -> AttentionItem:
        return replace(
            self,
            state=AttentionState.resolved,
            resolved_by=ActorStamp.from_actor(actor, now),
        )


def new_attention_item(
    *,
    item_id: str,
    level: LevelTuple,
    kind: AttentionKind | str,
    summary: str,
    actor: Actor,
    now: datetime,
    body_markdown: str = "",
    requires_user_action: bool = False,
    state: AttentionState | str | None = None,
) -> AttentionItem:
    """Validate and build a freshly raised item.

    Creating directly in acknowledged or resolved state stamps the matching
    attribution from the creator.
    """
    item_id = (item_id or "").strip()
    if not item_id:
        raise InvalidIDError("attention id is required")
    summary = (summary or "").strip()
    if not summary:
        raise InvalidSummaryError("summary is required")
    resolved_kind = parse_attention_kind(kind)
    resolved_state = (
        AttentionState.open if not normalize_token(state) else parse_attention_state(state)
    )

    stamp = ActorStamp.from_actor(actor, now)
    acknowledged_by = None
    resolved_by = None
    if resolved_state is AttentionState.acknowledged:
        acknowledged_by = stamp
    elif resolved_state is AttentionState.resolved:
        resolved_by = stamp

    return AttentionItem(
        id=item_id,
        level=level,
        state=resolved_state,
        kind=resolved_kind,
        summary=summary,
        body_markdown=(body_markdown or "").strip(),
        requires_user_action=requires_user_action,
        created_by=stamp,
        acknowledged_by=acknowledged_by,
        resolved_by=resolved_by,
    )


@dataclass(frozen=True)
class AttentionListFilter:
    """Normalized list query; empty tuples mean no filter."""

    level: LevelTuple
    unresolved_only: bool = False
    states: tuple[AttentionState, ...] = ()
    kinds: tuple[AttentionKind, ...] = ()
    requires_user_action: bool | None = None
    limit: int = 0

    @classmethod
    def create(
        cls,
        level: LevelTuple,
        *,
        unresolved_only: bool = False,
        states: tuple[AttentionState | str, ...] | list[AttentionState | str] = (),
        kinds: tuple[AttentionKind | str, ...] | list[AttentionKind | str] = (),
        requires_user_action: bool | None = None,
        limit: int = 0,
    ) -> AttentionListFilter:
        return cls(
            level=level,
            unresolved_only=unresolved_only,
            states=tuple(dict.fromkeys(parse_attention_state(s) for s in states)),
            kinds=tuple(dict.fromkeys(parse_attention_kind(k) for k in kinds)),
            requires_user_action=requires_user_action,
            limit=max(limit, 0),
        )

    def matches(self, item: AttentionItem) -> bool:
        if (
            item.level.project_id != self.level.project_id
            or item.level.ref != self.level.ref
        ):
            return False
        if self.unresolved_only and not item.is_unresolved():
            return False
        if self.states and item.state not in self.states:
            return False
        if self.kinds and item.kind not in self.kinds:
            return False
        if (
            self.requires_user_action is not None
            and item.requires_user_action != self.requires_user_action
        ):
            return False
        return True


def sort_newest_first(items: list[AttentionItem]) -> list[AttentionItem]:
    return sorted(items, key=lambda item: (item.created_at, item.id), reverse=True)


@dataclass
class AttentionOverview:
    unresolved_count: int = 0
    blocking_count: int = 0
    requires_user_action_count: int = 0
    items: list[AttentionItem] = field(default_factory=list)
