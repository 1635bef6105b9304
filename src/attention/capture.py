"""Summary-first recovery context for one scope."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from enum import StrEnum
from typing import Any

from src.attention.models import AttentionItem, AttentionOverview
from src.scope.levels import LevelTuple, ScopeLevel, normalize_token
from src.workitems.models import LifecycleState, WorkItem


class CaptureStateView(StrEnum):
    summary = "summary"
    full = "full"


def parse_capture_view(value: CaptureStateView | str | None) -> CaptureStateView:
    """Unknown or blank views fall back to summary."""
    if normalize_token(value) == CaptureStateView.full.value:
        return CaptureStateView.full
    return CaptureStateView.summary


@dataclass
class WorkOverview:
    total_items: int = 0
    active_items: int = 0
    in_progress_items: int = 0
    done_items: int = 0
    open_child_items: int = 0
    focus_item_id: str = ""


@dataclass
class FollowUpPointers:
    list_attention_items: str
    list_project_change_events: str
    list_child_items: str = ""


@dataclass
class CaptureStateSummary:
    captured_at: datetime
    level: LevelTuple
    view: CaptureStateView
    goal_overview: str
    attention_overview: AttentionOverview
    work_overview: WorkOverview
    follow_up_pointers: FollowUpPointers

    def as_dict(self) -> dict[str, Any]:
        attention = self.attention_overview
        work = self.work_overview
        return {
            "captured_at": self.captured_at.isoformat(),
            "level": self.level.as_dict(),
            "view": self.view.value,
            "goal_overview": self.goal_overview,
            "attention_overview": {
                "unresolved_count": attention.unresolved_count,
                "blocking_count": attention.blocking_count,
                "requires_user_action_count": attention.requires_user_action_count,
                "items": [
                    {
                        "id": item.id,
                        "kind": item.kind.value,
                        "state": item.state.value,
                        "summary": item.summary,
                        "requires_user_action": item.requires_user_action,
                        "created_at": item.created_at.isoformat(),
                    }
                    for item in attention.items
                ],
            },
            "work_overview": {
                "total_items": work.total_items,
                "active_items": work.active_items,
                "in_progress_items": work.in_progress_items,
                "done_items": work.done_items,
                "open_child_items": work.open_child_items,
                "focus_item_id": work.focus_item_id,
            },
            "follow_up_pointers": {
                "list_attention_items": self.follow_up_pointers.list_attention_items,
                "list_project_change_events": self.follow_up_pointers.list_project_change_events,
                "list_child_items": self.follow_up_pointers.list_child_items,
            },
        }


def build_attention_overview(items: list[AttentionItem]) -> AttentionOverview:
    overview = AttentionOverview(unresolved_count=len(items), items=list(items))
    for item in items:
        if item.blocks_completion():
            overview.blocking_count += 1
        if item.requires_user_action:
            overview.requires_user_action_count += 1
    return overview


def build_work_overview(level: LevelTuple, items: list[WorkItem]) -> WorkOverview:
    is_project = level.scope_type is ScopeLevel.project
    overview = WorkOverview(
        total_items=len(items),
        focus_item_id="" if is_project else level.scope_id,
    )
    for item in items:
        if not item.is_archived:
            overview.active_items += 1
        if item.lifecycle_state is LifecycleState.progress:
            overview.in_progress_items += 1
        if item.lifecycle_state is LifecycleState.done:
            overview.done_items += 1
        if is_project or item.parent_id != level.scope_id or item.is_archived:
            continue
        if item.lifecycle_state is not LifecycleState.done:
            overview.open_child_items += 1
    return overview


def build_follow_up_pointers(level: LevelTuple) -> FollowUpPointers:
    return FollowUpPointers(
        list_attention_items=(
            f"attention.list(project_id={level.project_id!r}, "
            f"scope_type={level.scope_type.value!r}, scope_id={level.scope_id!r}, "
            "unresolved_only=True)"
        ),
        list_project_change_events=(
            f"change_events.list(project_id={level.project_id!r}, limit=25)"
        ),
        list_child_items=(
            ""
            if level.scope_type is ScopeLevel.project
            else (
                f"work_item.children(project_id={level.project_id!r}, "
                f"parent_id={level.scope_id!r})"
            )
        ),
    )
