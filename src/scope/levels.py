"""Canonical scope hierarchy and boundary adapters.

Three subsystems keep their own scope vocabulary so each can validate
against its own legal value set:

- the kind catalog (KindAppliesTo),
- work items (WorkItemScope, which has no project level),
- capability leases (CapabilityScopeType).

All of them map through ScopeLevel via one table (_ADAPTERS) so the
orderings cannot drift apart.
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import StrEnum

from src.infra.errors import InvalidIDError, InvalidScopeIDError, InvalidScopeTypeError


class ScopeLevel(StrEnum):
    project = "project"
    branch = "branch"
    phase = "phase"
    subphase = "subphase"
    task = "task"
    subtask = "subtask"


class KindAppliesTo(StrEnum):
    project = "project"
    branch = "branch"
    phase = "phase"
    subphase = "subphase"
    task = "task"
    subtask = "subtask"


class WorkItemScope(StrEnum):
    branch = "branch"
    phase = "phase"
    subphase = "subphase"
    task = "task"
    subtask = "subtask"


class CapabilityScopeType(StrEnum):
    project = "project"
    branch = "branch"
    phase = "phase"
    subphase = "subphase"
    task = "task"
    subtask = "subtask"


# Strict total order by depth; used for delegation narrowing.
SCOPE_RANK: dict[ScopeLevel, int] = {
    ScopeLevel.project: 0,
    ScopeLevel.branch: 1,
    ScopeLevel.phase: 2,
    ScopeLevel.subphase: 3,
    ScopeLevel.task: 4,
    ScopeLevel.subtask: 5,
}

_ADAPTERS: dict[ScopeLevel, tuple[KindAppliesTo, WorkItemScope | None, CapabilityScopeType]] = {
    ScopeLevel.project: (KindAppliesTo.project, None, CapabilityScopeType.project),
    ScopeLevel.branch: (KindAppliesTo.branch, WorkItemScope.branch, CapabilityScopeType.branch),
    ScopeLevel.phase: (KindAppliesTo.phase, WorkItemScope.phase, CapabilityScopeType.phase),
    ScopeLevel.subphase: (
        KindAppliesTo.subphase, WorkItemScope.subphase, CapabilityScopeType.subphase,
    ),
    ScopeLevel.task: (KindAppliesTo.task, WorkItemScope.task, CapabilityScopeType.task),
    ScopeLevel.subtask: (KindAppliesTo.subtask, WorkItemScope.subtask, CapabilityScopeType.subtask),
}


def normalize_token(value: object) -> str:
    """Trim and lower-case one enum-ish input value."""
    if value is None:
        return ""
    return str(value).strip().lower()


def parse_scope_level(value: object) -> ScopeLevel | None:
    """Return the canonical level for any of the four vocabularies, or None."""
    try:
        return ScopeLevel(normalize_token(value))
    except ValueError:
        return None


def to_kind_applies_to(level: ScopeLevel) -> KindAppliesTo:
    return _ADAPTERS[level][0]


def to_work_item_scope(level: ScopeLevel) -> WorkItemScope | None:
    return _ADAPTERS[level][1]


def to_capability_scope(level: ScopeLevel) -> CapabilityScopeType:
    return _ADAPTERS[level][2]


def from_kind_applies_to(value: KindAppliesTo | str) -> ScopeLevel | None:
    return parse_scope_level(value)


def from_work_item_scope(value: WorkItemScope | str) -> ScopeLevel | None:
    level = parse_scope_level(value)
    if level is None or to_work_item_scope(level) is None:
        return None
    return level


def from_capability_scope(value: CapabilityScopeType | str) -> ScopeLevel | None:
    return parse_scope_level(value)


def is_narrower(candidate: ScopeLevel, reference: ScopeLevel) -> bool:
    """True when candidate sits strictly below reference in the hierarchy."""
    return SCOPE_RANK[candidate] > SCOPE_RANK[reference]


@dataclass(frozen=True)
class ScopeRef:
    """A (scope_type, scope_id) pair without project context."""

    scope_type: ScopeLevel
    scope_id: str


@dataclass(frozen=True)
class LevelTuple:
    """Canonical address of one hierarchy node."""

    project_id: str
    branch_id: str
    scope_type: ScopeLevel
    scope_id: str

    @property
    def ref(self) -> ScopeRef:
        return ScopeRef(self.scope_type, self.scope_id)

    def as_dict(self) -> dict[str, str]:
        return {
            "project_id": self.project_id,
            "branch_id": self.branch_id,
            "scope_type": self.scope_type.value,
            "scope_id": self.scope_id,
        }


def new_level_tuple(
    project_id: str,
    scope_type: ScopeLevel | str | None = None,
    scope_id: str | None = None,
    branch_id: str | None = None,
) -> LevelTuple:
    """Validate and normalize one level tuple.

    Raises:
        InvalidIDError: empty project id.
        InvalidScopeTypeError: unrecognized scope type.
        InvalidScopeIDError: non-project scope without a scope id.
    """
    project_id = (project_id or "").strip()
    branch_id = (branch_id or "").strip()
    scope_id = (scope_id or "").strip()
    raw_type = normalize_token(scope_type)

    if not project_id:
        raise InvalidIDError("project_id is required")
    if not raw_type:
        raw_type = ScopeLevel.project.value
    level = parse_scope_level(raw_type)
    if level is None:
        raise InvalidScopeTypeError(f"unknown scope type {raw_type!r}")
    if level is ScopeLevel.project and not scope_id:
        scope_id = project_id
    if level is not ScopeLevel.project and not scope_id:
        raise InvalidScopeIDError(f"scope_id is required for scope type {level.value!r}")
    if level is ScopeLevel.branch and not branch_id:
        branch_id = scope_id

    return LevelTuple(
        project_id=project_id,
        branch_id=branch_id,
        scope_type=level,
        scope_id=scope_id,
    )


@dataclass(frozen=True)
class ScopeTarget:
    """A level tuple plus its resolved ancestor lineage (nearest first)."""

    level: LevelTuple
    ancestors: tuple[ScopeRef, ...] = ()

    @property
    def project_id(self) -> str:
        return self.level.project_id

    @property
    def branch_id(self) -> str:
        return self.level.branch_id

    def covers(self, ref: ScopeRef) -> bool:
        """True when ref is the target node itself or one of its ancestors."""
        return ref == self.level.ref or ref in self.ancestors
