"""Tests for completion contract evaluation and lifecycle gating."""

from __future__ import annotations

from datetime import UTC, datetime

import pytest
import pytest_asyncio

from src.guard.context import ActorType
from src.infra.errors import InvalidChecklistError, TransitionBlockedError
from src.scope.levels import WorkItemScope, new_level_tuple
from src.workitems.completion import ensure_can_start, evaluate_completion
from src.workitems.models import (
    ChecklistItem,
    CompletionContract,
    LifecycleState,
    WorkItem,
    normalize_checklist,
)

T0 = datetime(2026, 3, 1, 12, 0, tzinfo=UTC)
P = "p1"
TASK = new_level_tuple(P, "task", "t1")


def _work_item(item_id: str = "t1", **overrides) -> WorkItem:
    fields = {
        "id": item_id,
        "project_id": P,
        "kind": "task",
        "scope": WorkItemScope.task,
        "title": item_id,
        "created_by": "alice",
        "created_by_type": ActorType.user,
        "updated_by": "alice",
        "updated_by_type": ActorType.user,
        "created_at": T0,
        "updated_at": T0,
    }
    fields.update(overrides)
    return WorkItem(**fields)


@pytest_asyncio.fixture
async def tree(runtime, user):
    wi = runtime.work_items
    await wi.create(user, P, "Branch 1", scope="branch", item_id="b1")
    await wi.create(user, P, "Task 1", scope="task", parent_id="b1", item_id="t1")
    return runtime


class TestNormalizeChecklist:
    def test_trims_drops_and_numbers_by_input_position(self) -> None:
        rows = normalize_checklist([
            {"text": "  write tests "},
            {"text": "   "},
            {"id": "review", "text": "review", "done": True},
            {"text": "ship"},
        ])
        assert rows == [
            ChecklistItem(id="item-1", text="write tests"),
            ChecklistItem(id="review", text="review", done=True),
            ChecklistItem(id="item-4", text="ship"),
        ]

    def test_dropped_leading_row_still_counts(self) -> None:
        rows = normalize_checklist([{"text": ""}, {"text": "a"}])
        assert rows == [ChecklistItem(id="item-2", text="a")]

    def test_rejects_duplicate_ids(self) -> None:
        with pytest.raises(InvalidChecklistError):
            normalize_checklist([{"id": "a", "text": "x"}, {"id": " a ", "text": "y"}])

    def test_none_is_empty(self) -> None:
        assert normalize_checklist(None) == []

    def test_contract_dict_round_trip_keeps_policy(self) -> None:
        contract = CompletionContract.create(
            completion_checklist=[{"text": "a"}],
            completion_evidence=[" log ", ""],
            require_children_done=True,
        )
        restored = CompletionContract.from_dict(contract.as_dict())
        assert restored == contract
        assert restored.completion_evidence == ("log",)


class TestEvaluateCompletion:
    def test_empty_contract_is_satisfied(self) -> None:
        assert evaluate_completion(_work_item(), [], []).satisfied

    def test_criteria_and_checklist_both_count(self) -> None:
        contract = CompletionContract.create(
            completion_criteria=[{"id": "c1", "text": "c1"}],
            completion_checklist=[{"id": "k1", "text": "k1", "done": True}, {"text": "k2"}],
        )
        report = evaluate_completion(_work_item(contract=contract), [], [])
        assert report.unmet_checklist_ids == ["c1", "item-2"]
        assert not report.satisfied

    def test_children_ignored_without_policy(self) -> None:
        child = _work_item("st1", scope=WorkItemScope.subtask, parent_id="t1")
        assert evaluate_completion(_work_item(), [child], []).satisfied

    def test_children_must_be_done_under_policy(self) -> None:
        contract = CompletionContract.create(require_children_done=True)
        open_child = _work_item("c1", parent_id="t1")
        done_child = _work_item("c2", parent_id="t1", lifecycle_state=LifecycleState.done)
        archived = _work_item(
            "c3", parent_id="t1", lifecycle_state=LifecycleState.archived, archived_at=T0,
        )
        report = evaluate_completion(
            _work_item(contract=contract), [open_child, done_child, archived], [],
        )
        assert report.unmet_child_ids == ["c1"]


class TestStartGate:
    def test_unmet_start_criteria_block(self) -> None:
        contract = CompletionContract.create(start_criteria=[{"id": "design", "text": "design"}])
        with pytest.raises(TransitionBlockedError) as exc_info:
            ensure_can_start(_work_item(contract=contract))
        assert exc_info.value.unmet_checklist_ids == ["design"]

    @pytest.mark.asyncio
    async def test_start_gate_applies_only_from_todo(self, tree, user) -> None:
        contract = CompletionContract.create(start_criteria=[{"id": "design", "text": "design"}])
        await tree.work_items.update_contract(user, "t1", contract)
        with pytest.raises(TransitionBlockedError):
            await tree.work_items.transition(user, "t1", "in-progress")

        done = CompletionContract.create(
            start_criteria=[{"id": "design", "text": "design", "done": True}],
        )
        await tree.work_items.update_contract(user, "t1", done)
        item = await tree.work_items.transition(user, "t1", "progress")
        assert item.lifecycle_state is LifecycleState.progress


class TestTransitionToDone:
    @pytest.mark.asyncio
    async def test_blocking_attention_gates_done(self, tree, user) -> None:
        item = await tree.attention.raise_item(
            user, TASK, "blocker", "need sign-off", requires_user_action=True,
        )

        with pytest.raises(TransitionBlockedError) as exc_info:
            await tree.work_items.transition(user, "t1", "done")
        assert exc_info.value.code == "transition_blocked"
        assert exc_info.value.blocking_attention_ids == [item.id]
        assert (await tree.work_items.get("t1")).lifecycle_state is LifecycleState.todo

        await tree.attention.resolve_item(user, item.id)
        done = await tree.work_items.transition(user, "t1", "done")
        assert done.lifecycle_state is LifecycleState.done
        assert done.completed_at is not None

    @pytest.mark.asyncio
    async def test_risk_note_does_not_gate(self, tree, user) -> None:
        await tree.attention.raise_item(user, TASK, "risk_note", "fyi")
        done = await tree.work_items.transition(user, "t1", "done")
        assert done.lifecycle_state is LifecycleState.done

    @pytest.mark.asyncio
    async def test_attention_at_other_scopes_ignored(self, tree, user) -> None:
        await tree.attention.raise_item(user, new_level_tuple(P, "branch", "b1"), "blocker", "b")
        await tree.attention.raise_item(user, new_level_tuple(P), "blocker", "p")
        await tree.work_items.transition(user, "t1", "done")

    @pytest.mark.asyncio
    async def test_reports_every_blocker(self, tree, user) -> None:
        contract = CompletionContract.create(
            completion_checklist=[{"id": "qa", "text": "qa"}],
            require_children_done=True,
        )
        await tree.work_items.update_contract(user, "t1", contract)
        child = await tree.work_items.create(user, P, "Sub", scope="subtask", parent_id="t1")
        note = await tree.attention.raise_item(
            user, TASK, "risk_note", "ask", requires_user_action=True,
        )

        with pytest.raises(TransitionBlockedError) as exc_info:
            await tree.work_items.transition(user, "t1", "done")
        assert exc_info.value.details() == {
            "unmet_checklist_ids": ["qa"],
            "unmet_child_ids": [child.id],
            "blocking_attention_ids": [note.id],
        }

    @pytest.mark.asyncio
    async def test_archived_child_does_not_block(self, tree, user) -> None:
        await tree.work_items.update_contract(
            user, "t1", CompletionContract.create(require_children_done=True),
        )
        child = await tree.work_items.create(user, P, "Sub", scope="subtask", parent_id="t1")
        await tree.work_items.delete(user, child.id)
        await tree.work_items.transition(user, "t1", "done")

    @pytest.mark.asyncio
    async def test_leaving_done_clears_completed_at(self, tree, user) -> None:
        await tree.work_items.transition(user, "t1", "done")
        reopened = await tree.work_items.transition(user, "t1", "progress")
        assert reopened.completed_at is None
        assert reopened.started_at is not None
