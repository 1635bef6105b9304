"""Tests for the kind catalog bootstrap, merge and validation."""

from __future__ import annotations

import pytest

from src.catalog.kinds import (
    DEFAULT_KIND_DEFINITIONS,
    KindAppliesTo,
    KindCatalog,
    merge_kind_definitions,
    new_kind_definition,
)
from src.infra.errors import InvalidKindError, InvalidScopeTypeError
from src.store.memory_store import MemoryGuardStore

_K = KindAppliesTo


class TestNewKindDefinition:
    def test_normalizes(self) -> None:
        kind = new_kind_definition(" Spike ", applies_to=["TASK", "task", "subtask"])
        assert kind.id == "spike"
        assert kind.display_name == "spike"
        assert kind.applies_to == (_K.task, _K.subtask)
        assert kind.allows_parent_scope(_K.branch)

    def test_requires_scope(self) -> None:
        with pytest.raises(InvalidKindError):
            new_kind_definition("spike", applies_to=[])

    def test_rejects_unknown_scope(self) -> None:
        with pytest.raises(InvalidScopeTypeError):
            new_kind_definition("spike", applies_to=["epic"])


class TestMerge:
    def test_unions_applies_to_and_parents(self) -> None:
        existing = new_kind_definition(
            "phase", applies_to=["phase", "project"], allowed_parent_scopes=["project"],
            display_name="Custom Phase",
        )
        builtin = next(k for k in DEFAULT_KIND_DEFINITIONS if k.id == "phase")

        merged = merge_kind_definitions(existing, builtin)

        assert merged.display_name == "Custom Phase"
        assert merged.applies_to == (_K.phase, _K.project, _K.subphase, _K.task)
        assert _K.project in merged.allowed_parent_scopes
        assert _K.branch in merged.allowed_parent_scopes

    def test_unrestricted_side_stays_unrestricted(self) -> None:
        existing = new_kind_definition("branch", applies_to=["branch"])
        builtin = next(k for k in DEFAULT_KIND_DEFINITIONS if k.id == "branch")
        assert merge_kind_definitions(existing, builtin).allowed_parent_scopes == ()


class TestCatalog:
    @pytest.mark.asyncio
    async def test_ensure_defaults_is_idempotent(self) -> None:
        catalog = KindCatalog(MemoryGuardStore())
        assert await catalog.ensure_defaults() == len(DEFAULT_KIND_DEFINITIONS)
        assert await catalog.ensure_defaults() == 0
        ids = {kind.id for kind in await catalog.list_kinds()}
        assert ids == {kind.id for kind in DEFAULT_KIND_DEFINITIONS}

    @pytest.mark.asyncio
    async def test_ensure_defaults_preserves_customizations(self) -> None:
        catalog = KindCatalog(MemoryGuardStore())
        await catalog.upsert_kind(
            new_kind_definition("note", applies_to=["branch"], display_name="Memo"),
        )

        assert await catalog.ensure_defaults() == len(DEFAULT_KIND_DEFINITIONS)

        note = next(k for k in await catalog.list_kinds() if k.id == "note")
        assert note.display_name == "Memo"
        assert set(note.applies_to) == {_K.branch, _K.task, _K.subtask}

    @pytest.mark.asyncio
    async def test_upsert_keeps_created_at(self, clock) -> None:
        catalog = KindCatalog(MemoryGuardStore(), clock=clock)
        first = await catalog.upsert_kind(new_kind_definition("spike", applies_to=["task"]))
        clock.advance(hours=1)
        second = await catalog.upsert_kind(new_kind_definition("spike", applies_to=["subtask"]))
        assert second.created_at == first.created_at
        assert second.updated_at == clock.now

    @pytest.mark.asyncio
    async def test_custom_kind_usable_for_work_items(self, runtime, user) -> None:
        await runtime.catalog.upsert_kind(new_kind_definition("spike", applies_to=["task"]))
        item = await runtime.work_items.create(user, "p1", "Try it", scope="task", kind="spike")
        assert item.kind == "spike"
