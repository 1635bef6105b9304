"""Completion contract evaluation for lifecycle transitions."""

from __future__ import annotations

from collections.abc import Iterable
from dataclasses import dataclass, field

from src.attention.models import AttentionItem
from src.infra.errors import TransitionBlockedError
from src.workitems.models import LifecycleState, WorkItem


@dataclass
class CompletionReport:
    unmet_checklist_ids: list[str] = field(default_factory=list)
    unmet_child_ids: list[str] = field(default_factory=list)
    blocking_attention_ids: list[str] = field(default_factory=list)

    @property
    def satisfied(self) -> bool:
        return not (
            self.unmet_checklist_ids or self.unmet_child_ids or self.blocking_attention_ids
        )


def evaluate_completion(
    item: WorkItem,
    children: Iterable[WorkItem],
    attention: Iterable[AttentionItem],
) -> CompletionReport:
    """Collect every blocker that prevents item from moving to done.

    ``attention`` should be the items raised at the work item's own scope;
    rows for other scopes are ignored.
    """
    report = CompletionReport(unmet_checklist_ids=item.contract.completion_checklist_unmet())

    if item.contract.policy.require_children_done:
        report.unmet_child_ids = [
            child.id
            for child in children
            if not child.is_archived and child.lifecycle_state is not LifecycleState.done
        ]

    own_ref = item.level().ref
    report.blocking_attention_ids = [
        entry.id
        for entry in attention
        if entry.level.project_id == item.project_id
        and entry.level.ref == own_ref
        and entry.blocks_completion()
    ]
    return report


def ensure_can_complete(
    item: WorkItem,
    children: Iterable[WorkItem],
    attention: Iterable[AttentionItem],
) -> CompletionReport:
    report = evaluate_completion(item, children, attention)
    if not report.satisfied:
        raise TransitionBlockedError(
            f"work item {item.id!r} cannot move to done",
            unmet_checklist_ids=report.unmet_checklist_ids,
            unmet_child_ids=report.unmet_child_ids,
            blocking_attention_ids=report.blocking_attention_ids,
        )
    return report


def ensure_can_start(item: WorkItem) -> None:
    """Gate todo -> progress on start criteria."""
    unmet = item.contract.start_criteria_unmet()
    if unmet:
        raise TransitionBlockedError(
            f"work item {item.id!r} cannot start: start criteria unmet",
            unmet_checklist_ids=unmet,
        )
