"""Work item, completion contract and change event value objects."""

from __future__ import annotations

from collections.abc import Iterable, Mapping
from dataclasses import dataclass, field, replace
from datetime import datetime
from enum import StrEnum
from typing import Any

from src.guard.context import ActorType
from src.infra.errors import (
    InvalidChecklistError,
    InvalidIDError,
    InvalidLifecycleStateError,
    InvalidTitleError,
)
from src.scope.levels import (
    LevelTuple,
    ScopeLevel,
    WorkItemScope,
    normalize_token,
)


class LifecycleState(StrEnum):
    todo = "todo"
    progress = "progress"
    done = "done"
    archived = "archived"


_LIFECYCLE_ALIASES: dict[str, LifecycleState] = {
    "to-do": LifecycleState.todo,
    "in-progress": LifecycleState.progress,
    "doing": LifecycleState.progress,
    "complete": LifecycleState.done,
    "completed": LifecycleState.done,
    "archive": LifecycleState.archived,
}


def parse_lifecycle_state(value: LifecycleState | str | None) -> LifecycleState:
    token = normalize_token(value)
    if token in _LIFECYCLE_ALIASES:
        return _LIFECYCLE_ALIASES[token]
    try:
        return LifecycleState(token)
    except ValueError:
        raise InvalidLifecycleStateError(f"unknown lifecycle state {token!r}") from None


class ChangeOperation(StrEnum):
    create = "create"
    update = "update"
    transition = "transition"
    archive = "archive"
    delete = "delete"


@dataclass(frozen=True)
class ChecklistItem:
    id: str
    text: str
    done: bool = False

    def as_dict(self) -> dict[str, Any]:
        return {"id": self.id, "text": self.text, "done": self.done}


ChecklistInput = ChecklistItem | Mapping[str, Any]


def normalize_checklist(rows: Iterable[ChecklistInput] | None) -> list[ChecklistItem]:
    """Trim text, drop empty rows, assign item-<n> ids, reject duplicate ids.

    Generated ids use the 1-based position in the input, counting dropped rows.
    """
    normalized: list[ChecklistItem] = []
    seen: set[str] = set()
    for position, row in enumerate(rows or (), start=1):
        if isinstance(row, ChecklistItem):
            raw_id, raw_text, done = row.id, row.text, row.done
        else:
            raw_id = row.get("id")
            raw_text = row.get("text")
            done = bool(row.get("done", False))
        text = str(raw_text or "").strip()
        if not text:
            continue
        item_id = str(raw_id or "").strip() or f"item-{position}"
        if item_id in seen:
            raise InvalidChecklistError(f"duplicate checklist id {item_id!r}")
        seen.add(item_id)
        normalized.append(ChecklistItem(id=item_id, text=text, done=done))
    return normalized


def incomplete_ids(rows: Iterable[ChecklistItem]) -> list[str]:
    return [row.id for row in rows if not row.done]


@dataclass(frozen=True)
class CompletionPolicy:
    require_children_done: bool = False


@dataclass(frozen=True)
class CompletionContract:
    start_criteria: tuple[ChecklistItem, ...] = ()
    completion_criteria: tuple[ChecklistItem, ...] = ()
    completion_checklist: tuple[ChecklistItem, ...] = ()
    completion_evidence: tuple[str, ...] = ()
    completion_notes: str = ""
    policy: CompletionPolicy = field(default_factory=CompletionPolicy)

    @classmethod
    def create(
        cls,
        *,
        start_criteria: Iterable[ChecklistInput] | None = None,
        completion_criteria: Iterable[ChecklistInput] | None = None,
        completion_checklist: Iterable[ChecklistInput] | None = None,
        completion_evidence: Iterable[str] | None = None,
        completion_notes: str = "",
        require_children_done: bool = False,
    ) -> CompletionContract:
        evidence = [str(e).strip() for e in completion_evidence or ()]
        return cls(
            start_criteria=tuple(normalize_checklist(start_criteria)),
            completion_criteria=tuple(normalize_checklist(completion_criteria)),
            completion_checklist=tuple(normalize_checklist(completion_checklist)),
            completion_evidence=tuple(e for e in evidence if e),
            completion_notes=(completion_notes or "").strip(),
            policy=CompletionPolicy(require_children_done=require_children_done),
        )

    @classmethod
    def from_dict(cls, data: Mapping[str, Any] | None) -> CompletionContract:
        data = data or {}
        policy = data.get("policy") or {}
        return cls.create(
            start_criteria=data.get("start_criteria"),
            completion_criteria=data.get("completion_criteria"),
            completion_checklist=data.get("completion_checklist"),
            completion_evidence=data.get("completion_evidence"),
            completion_notes=data.get("completion_notes") or "",
            require_children_done=bool(policy.get("require_children_done", False)),
        )

    def as_dict(self) -> dict[str, Any]:
        return {
            "start_criteria": [row.as_dict() for row in self.start_criteria],
            "completion_criteria": [row.as_dict() for row in self.completion_criteria],
            "completion_checklist": [row.as_dict() for row in self.completion_checklist],
            "completion_evidence": list(self.completion_evidence),
            "completion_notes": self.completion_notes,
            "policy": {"require_children_done": self.policy.require_children_done},
        }

    def start_criteria_unmet(self) -> list[str]:
        return incomplete_ids(self.start_criteria)

    def completion_checklist_unmet(self) -> list[str]:
        return incomplete_ids(self.completion_criteria) + incomplete_ids(
            self.completion_checklist
        )


@dataclass(frozen=True)
class WorkItem:
    id: str
    project_id: str
    kind: str
    scope: WorkItemScope
    title: str
    created_by: str
    created_by_type: ActorType
    updated_by: str
    updated_by_type: ActorType
    created_at: datetime
    updated_at: datetime
    parent_id: str = ""
    lifecycle_state: LifecycleState = LifecycleState.todo
    contract: CompletionContract = field(default_factory=CompletionContract)
    started_at: datetime | None = None
    completed_at: datetime | None = None
    archived_at: datetime | None = None

    @property
    def level_type(self) -> ScopeLevel:
        return ScopeLevel(self.scope.value)

    def level(self, branch_id: str = "") -> LevelTuple:
        return LevelTuple(
            project_id=self.project_id,
            branch_id=branch_id,
            scope_type=self.level_type,
            scope_id=self.id,
        )

    @property
    def is_archived(self) -> bool:
        return self.archived_at is not None or self.lifecycle_state is LifecycleState.archived

    def with_state(
        self, state: LifecycleState, *, actor_id: str, actor_type: ActorType, now: datetime,
    ) -> WorkItem:
        """Apply a lifecycle change and its timestamp side effects."""
        started_at = self.started_at
        completed_at = self.completed_at
        archived_at = self.archived_at
        if state is LifecycleState.progress and started_at is None:
            started_at = now
        if state is LifecycleState.done:
            completed_at = now
        elif state is not LifecycleState.archived:
            completed_at = None
        archived_at = now if state is LifecycleState.archived else None
        return replace(
            self,
            lifecycle_state=state,
            started_at=started_at,
            completed_at=completed_at,
            archived_at=archived_at,
            updated_by=actor_id,
            updated_by_type=actor_type,
            updated_at=now,
        )

    def with_contract(
        self,
        contract: CompletionContract,
        *,
        actor_id: str,
        actor_type: ActorType,
        now: datetime,
    ) -> WorkItem:
        return replace(
            self,
            contract=contract,
            updated_by=actor_id,
            updated_by_type=actor_type,
            updated_at=now,
        )


def validate_work_item_fields(item_id: str, project_id: str, title: str) -> tuple[str, str, str]:
    item_id = (item_id or "").strip()
    project_id = (project_id or "").strip()
    title = (title or "").strip()
    if not item_id:
        raise InvalidIDError("work item id is required")
    if not project_id:
        raise InvalidIDError("project_id is required")
    if not title:
        raise InvalidTitleError("title is required")
    return item_id, project_id, title


@dataclass(frozen=True)
class ChangeEvent:
    id: str
    project_id: str
    work_item_id: str
    operation: ChangeOperation
    actor_id: str
    actor_type: ActorType
    occurred_at: datetime
    lease_instance_id: str = ""
    metadata: dict[str, Any] = field(default_factory=dict)
