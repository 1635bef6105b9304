"""Tests for capability lease issuance, maintenance and delegation.

Covers: issue defaults, scope resolution, heartbeat/renew/revoke,
monotonic revocation, revoke-by-scope, delegation narrowing along the
strict depth order, orchestrator overlap policy.
"""

from __future__ import annotations

from datetime import UTC, datetime, timedelta

import pytest
import pytest_asyncio

from src.infra.errors import (
    DelegationError,
    InvalidCapabilityExpiryError,
    InvalidCapabilityRoleError,
    InvalidIDError,
    InvalidNameError,
    MutationLeaseExpiredError,
    MutationLeaseInvalidError,
    MutationLeaseRevokedError,
    NotFoundError,
    OrchestratorOverlapError,
    OverrideTokenInvalidError,
    OverrideTokenRequiredError,
)
from src.leases.models import CapabilityPolicy, CapabilityRole
from src.scope.levels import CapabilityScopeType, new_level_tuple

P = "p1"


@pytest_asyncio.fixture
async def tree(runtime, user):
    """b1 > ph1 > t1 > st1, plus sibling branch b2 > t2."""
    wi = runtime.work_items
    await wi.create(user, P, "Branch 1", scope="branch", item_id="b1")
    await wi.create(user, P, "Branch 2", scope="branch", item_id="b2")
    await wi.create(user, P, "Phase 1", scope="phase", parent_id="b1", item_id="ph1")
    await wi.create(user, P, "Task 1", scope="task", parent_id="ph1", item_id="t1")
    await wi.create(user, P, "Subtask 1", scope="subtask", parent_id="t1", item_id="st1")
    await wi.create(user, P, "Task 2", scope="task", parent_id="b2", item_id="t2")
    return runtime


def _level(scope_type: str = "project", scope_id: str = ""):
    return new_level_tuple(P, scope_type, scope_id)


class TestIssueLease:
    @pytest.mark.asyncio
    async def test_issue_project_lease_defaults(self, runtime, clock) -> None:
        lease = await runtime.leases.issue_lease("orch-1", _level(), "orchestrator")

        assert lease.scope_type is CapabilityScopeType.project
        assert lease.scope_id == P
        assert lease.role is CapabilityRole.orchestrator
        assert lease.issued_at == clock.now
        assert lease.heartbeat_at == clock.now
        assert lease.expires_at == clock.now + timedelta(hours=24)
        assert lease.instance_id and lease.lease_token
        assert lease.instance_id != lease.lease_token
        assert lease.is_active(clock.now)

    @pytest.mark.asyncio
    async def test_explicit_ttl_and_instance_id(self, runtime, clock) -> None:
        lease = await runtime.leases.issue_lease(
            "w-1", _level(), "worker", ttl=timedelta(hours=1), instance_id="inst-7",
        )
        assert lease.instance_id == "inst-7"
        assert lease.expires_at == clock.now + timedelta(hours=1)

    @pytest.mark.asyncio
    async def test_duplicate_instance_id_rejected(self, runtime) -> None:
        await runtime.leases.issue_lease("w-1", _level(), "worker", instance_id="inst-7")
        with pytest.raises(InvalidIDError):
            await runtime.leases.issue_lease("w-2", _level(), "worker", instance_id="inst-7")

    @pytest.mark.asyncio
    async def test_rejects_non_positive_and_oversized_ttl(self, runtime) -> None:
        with pytest.raises(InvalidCapabilityExpiryError):
            await runtime.leases.issue_lease("w-1", _level(), "worker", ttl=timedelta(0))
        with pytest.raises(InvalidCapabilityExpiryError):
            await runtime.leases.issue_lease("w-1", _level(), "worker", ttl=timedelta(days=30))

    @pytest.mark.asyncio
    async def test_rejects_blank_agent_and_unknown_role(self, runtime) -> None:
        with pytest.raises(InvalidNameError):
            await runtime.leases.issue_lease("  ", _level(), "worker")
        with pytest.raises(InvalidCapabilityRoleError):
            await runtime.leases.issue_lease("w-1", _level(), "overlord")

    @pytest.mark.asyncio
    async def test_non_project_scope_must_exist(self, tree) -> None:
        with pytest.raises(NotFoundError):
            await tree.leases.issue_lease("w-1", _level("task", "nope"), "worker")

    @pytest.mark.asyncio
    async def test_scope_type_must_match_stored_item(self, tree) -> None:
        with pytest.raises(NotFoundError):
            await tree.leases.issue_lease("w-1", _level("branch", "t1"), "worker")

    @pytest.mark.asyncio
    async def test_issue_persists_lease(self, tree) -> None:
        lease = await tree.leases.issue_lease("w-1", _level("task", "t1"), "worker")
        stored = await tree.leases.get_lease(lease.instance_id)
        assert stored == lease


class TestHeartbeatRenew:
    @pytest.mark.asyncio
    async def test_heartbeat_refreshes_timestamp(self, runtime, clock) -> None:
        lease = await runtime.leases.issue_lease("w-1", _level(), "worker")
        later = clock.advance(minutes=5)

        beat = await runtime.leases.heartbeat(lease.instance_id, lease.lease_token)

        assert beat.heartbeat_at == later
        assert (await runtime.leases.get_lease(lease.instance_id)).heartbeat_at == later

    @pytest.mark.asyncio
    async def test_heartbeat_token_mismatch(self, runtime) -> None:
        lease = await runtime.leases.issue_lease("w-1", _level(), "worker")
        with pytest.raises(MutationLeaseInvalidError):
            await runtime.leases.heartbeat(lease.instance_id, "wrong")

    @pytest.mark.asyncio
    async def test_heartbeat_unknown_lease(self, runtime) -> None:
        with pytest.raises(NotFoundError):
            await runtime.leases.heartbeat("missing", "tok")

    @pytest.mark.asyncio
    async def test_heartbeat_expired(self, runtime, clock) -> None:
        lease = await runtime.leases.issue_lease(
            "w-1", _level(), "worker", ttl=timedelta(minutes=10),
        )
        clock.advance(minutes=10)
        with pytest.raises(MutationLeaseExpiredError):
            await runtime.leases.heartbeat(lease.instance_id, lease.lease_token)

    @pytest.mark.asyncio
    async def test_renew_extends_expiry_even_after_expiry(self, runtime, clock) -> None:
        lease = await runtime.leases.issue_lease(
            "w-1", _level(), "worker", ttl=timedelta(minutes=10),
        )
        clock.advance(minutes=30)
        renewed = await runtime.leases.renew(
            lease.instance_id, lease.lease_token, ttl=timedelta(hours=2),
        )
        assert renewed.expires_at == clock.now + timedelta(hours=2)
        assert renewed.is_active(clock.now)

    @pytest.mark.asyncio
    async def test_renew_requires_future_expiry(self, runtime, clock) -> None:
        lease = await runtime.leases.issue_lease("w-1", _level(), "worker")
        with pytest.raises(InvalidCapabilityExpiryError):
            await runtime.leases.renew(lease.instance_id, lease.lease_token, expires_at=clock.now)

    @pytest.mark.asyncio
    async def test_blank_token_never_matches(self, runtime) -> None:
        lease = await runtime.leases.issue_lease("w-1", _level(), "worker")
        with pytest.raises(MutationLeaseInvalidError):
            await runtime.leases.heartbeat(lease.instance_id, "")
        with pytest.raises(MutationLeaseInvalidError):
            await runtime.leases.renew(lease.instance_id, "  ", ttl=timedelta(hours=1))

    @pytest.mark.asyncio
    async def test_renew_with_wrong_token_leaves_expiry(self, runtime) -> None:
        lease = await runtime.leases.issue_lease("w-1", _level(), "worker")
        with pytest.raises(MutationLeaseInvalidError):
            await runtime.leases.renew(lease.instance_id, "wrong", ttl=timedelta(hours=1))
        stored = await runtime.leases.get_lease(lease.instance_id)
        assert stored.expires_at == lease.expires_at

    @pytest.mark.asyncio
    async def test_explicit_expiry_bounded_by_max_ttl(self, runtime, clock) -> None:
        lease = await runtime.leases.issue_lease("w-1", _level(), "worker")
        with pytest.raises(InvalidCapabilityExpiryError):
            await runtime.leases.renew(
                lease.instance_id,
                lease.lease_token,
                expires_at=datetime(9999, 1, 1, tzinfo=UTC),
            )
        renewed = await runtime.leases.renew(
            lease.instance_id, lease.lease_token, expires_at=clock.now + timedelta(days=7),
        )
        assert renewed.expires_at == clock.now + timedelta(days=7)

    @pytest.mark.asyncio
    async def test_naive_expiry_rejected(self, runtime, clock) -> None:
        lease = await runtime.leases.issue_lease("w-1", _level(), "worker")
        with pytest.raises(InvalidCapabilityExpiryError):
            await runtime.leases.renew(
                lease.instance_id,
                lease.lease_token,
                expires_at=clock.now.replace(tzinfo=None) + timedelta(hours=1),
            )


class TestRevoke:
    @pytest.mark.asyncio
    async def test_revocation_is_monotonic(self, runtime, clock) -> None:
        lease = await runtime.leases.issue_lease("w-1", _level(), "worker")
        revoked = await runtime.leases.revoke(lease.instance_id, "done")
        assert not revoked.is_active(clock.now)

        with pytest.raises(MutationLeaseRevokedError):
            await runtime.leases.heartbeat(lease.instance_id, lease.lease_token)
        with pytest.raises(MutationLeaseRevokedError):
            await runtime.leases.renew(lease.instance_id, lease.lease_token, ttl=timedelta(hours=5))

        stored = await runtime.leases.get_lease(lease.instance_id)
        assert stored.revoked_at is not None
        assert not stored.is_active(clock.now)

    @pytest.mark.asyncio
    async def test_repeat_revoke_keeps_first_stamp(self, runtime, clock) -> None:
        lease = await runtime.leases.issue_lease("w-1", _level(), "worker")
        first = await runtime.leases.revoke(lease.instance_id, "first")
        clock.advance(minutes=1)
        second = await runtime.leases.revoke(lease.instance_id, "second")

        assert second.revoked_at == first.revoked_at
        assert second.revoked_reason == "first"

    @pytest.mark.asyncio
    async def test_revoke_default_reason(self, runtime) -> None:
        lease = await runtime.leases.issue_lease("w-1", _level(), "worker")
        revoked = await runtime.leases.revoke(lease.instance_id)
        assert revoked.revoked_reason == "revoked"

    @pytest.mark.asyncio
    async def test_revoke_by_scope_leaves_sibling_branch_active(self, tree, clock) -> None:
        leases = tree.leases
        on_b1 = [
            await leases.issue_lease(f"w-{i}", _level("branch", "b1"), "worker")
            for i in range(3)
        ]
        on_b2 = await leases.issue_lease("w-9", _level("branch", "b2"), "worker")

        count = await leases.revoke_by_scope(P, "branch", "b1", "branch closed")

        assert count == 3
        for lease in on_b1:
            assert not (await leases.get_lease(lease.instance_id)).is_active(clock.now)
        assert (await leases.get_lease(on_b2.instance_id)).is_active(clock.now)

    @pytest.mark.asyncio
    async def test_revoke_by_scope_blank_id_revokes_whole_type(self, tree, clock) -> None:
        leases = tree.leases
        a = await leases.issue_lease("w-1", _level("branch", "b1"), "worker")
        b = await leases.issue_lease("w-2", _level("branch", "b2"), "worker")
        project = await leases.issue_lease("w-3", _level(), "worker")

        count = await leases.revoke_by_scope(P, CapabilityScopeType.branch)

        assert count == 2
        assert not (await leases.get_lease(a.instance_id)).is_active(clock.now)
        assert not (await leases.get_lease(b.instance_id)).is_active(clock.now)
        assert (await leases.get_lease(project.instance_id)).is_active(clock.now)

    @pytest.mark.asyncio
    async def test_revoke_by_scope_skips_already_revoked(self, tree) -> None:
        lease = await tree.leases.issue_lease("w-1", _level("branch", "b1"), "worker")
        await tree.leases.revoke(lease.instance_id, "manual")
        assert await tree.leases.revoke_by_scope(P, "branch", "b1") == 0
        assert (await tree.leases.get_lease(lease.instance_id)).revoked_reason == "manual"

    @pytest.mark.asyncio
    async def test_list_leases_ordered_by_issue_time(self, runtime, clock) -> None:
        first = await runtime.leases.issue_lease("w-1", _level(), "worker")
        clock.advance(seconds=1)
        second = await runtime.leases.issue_lease("w-2", _level(), "worker")
        listed = await runtime.leases.list_leases(P)
        assert [lease.instance_id for lease in listed] == [first.instance_id, second.instance_id]


class TestDelegation:
    @pytest.mark.asyncio
    async def test_narrower_descendant_accepted(self, tree) -> None:
        parent = await tree.leases.issue_lease("orch", _level("branch", "b1"), "orchestrator")
        child = await tree.leases.issue_lease(
            "w-1", _level("task", "t1"), "worker", parent_instance_id=parent.instance_id,
        )
        assert child.parent_instance_id == parent.instance_id

    @pytest.mark.asyncio
    async def test_project_parent_covers_everything(self, tree) -> None:
        parent = await tree.leases.issue_lease("orch", _level(), "orchestrator")
        await tree.leases.issue_lease(
            "w-1", _level("subtask", "st1"), "worker", parent_instance_id=parent.instance_id,
        )

    @pytest.mark.asyncio
    async def test_wider_scope_rejected(self, tree) -> None:
        parent = await tree.leases.issue_lease("w-1", _level("task", "t1"), "worker")
        with pytest.raises(DelegationError):
            await tree.leases.issue_lease(
                "w-2", _level("phase", "ph1"), "worker", parent_instance_id=parent.instance_id,
            )

    @pytest.mark.asyncio
    async def test_narrower_but_foreign_branch_rejected(self, tree) -> None:
        parent = await tree.leases.issue_lease("orch", _level("branch", "b1"), "orchestrator")
        with pytest.raises(DelegationError):
            await tree.leases.issue_lease(
                "w-1", _level("task", "t2"), "worker", parent_instance_id=parent.instance_id,
            )

    @pytest.mark.asyncio
    async def test_equal_scope_needs_flag(self, tree) -> None:
        parent = await tree.leases.issue_lease("w-1", _level("task", "t1"), "worker")
        with pytest.raises(DelegationError):
            await tree.leases.issue_lease(
                "w-2", _level("task", "t1"), "worker", parent_instance_id=parent.instance_id,
            )
        child = await tree.leases.issue_lease(
            "w-2",
            _level("task", "t1"),
            "worker",
            parent_instance_id=parent.instance_id,
            allow_equal_scope_delegation=True,
        )
        assert child.allow_equal_scope_delegation

    @pytest.mark.asyncio
    async def test_inactive_or_missing_parent_rejected(self, tree, clock) -> None:
        with pytest.raises(DelegationError):
            await tree.leases.issue_lease(
                "w-1", _level("task", "t1"), "worker", parent_instance_id="ghost",
            )
        parent = await tree.leases.issue_lease(
            "orch", _level(), "orchestrator", ttl=timedelta(minutes=1),
        )
        clock.advance(minutes=2)
        with pytest.raises(DelegationError):
            await tree.leases.issue_lease(
                "w-1", _level("task", "t1"), "worker", parent_instance_id=parent.instance_id,
            )

    @pytest.mark.asyncio
    async def test_revoked_parent_rejected(self, tree) -> None:
        parent = await tree.leases.issue_lease("orch", _level(), "orchestrator")
        await tree.leases.revoke(parent.instance_id)
        with pytest.raises(DelegationError):
            await tree.leases.issue_lease(
                "w-1", _level("task", "t1"), "worker", parent_instance_id=parent.instance_id,
            )


class TestOrchestratorOverlap:
    @pytest.mark.asyncio
    async def test_second_orchestrator_rejected_by_default(self, runtime) -> None:
        await runtime.leases.issue_lease("orch-1", _level(), "orchestrator")
        with pytest.raises(OrchestratorOverlapError):
            await runtime.leases.issue_lease("orch-2", _level(), "orchestrator")

    @pytest.mark.asyncio
    async def test_workers_may_overlap(self, runtime) -> None:
        await runtime.leases.issue_lease("orch-1", _level(), "orchestrator")
        await runtime.leases.issue_lease("w-1", _level(), "worker")
        await runtime.leases.issue_lease("w-2", _level(), "worker")

    @pytest.mark.asyncio
    async def test_revoked_orchestrator_does_not_overlap(self, runtime) -> None:
        first = await runtime.leases.issue_lease("orch-1", _level(), "orchestrator")
        await runtime.leases.revoke(first.instance_id)
        await runtime.leases.issue_lease("orch-2", _level(), "orchestrator")

    @pytest.mark.asyncio
    async def test_override_token_policy(self, runtime) -> None:
        await runtime.leases.set_policy(CapabilityPolicy(
            project_id=P, allow_orchestrator_override=True, orchestrator_override_token="s3cret",
        ))
        await runtime.leases.issue_lease("orch-1", _level(), "orchestrator")

        with pytest.raises(OverrideTokenRequiredError):
            await runtime.leases.issue_lease("orch-2", _level(), "orchestrator")
        with pytest.raises(OverrideTokenInvalidError):
            await runtime.leases.issue_lease(
                "orch-2", _level(), "orchestrator", override_token="nope",
            )
        lease = await runtime.leases.issue_lease(
            "orch-2", _level(), "orchestrator", override_token="s3cret",
        )
        assert lease.role is CapabilityRole.orchestrator

    @pytest.mark.asyncio
    async def test_override_enabled_without_token_configured(self, runtime) -> None:
        await runtime.leases.set_policy(
            CapabilityPolicy(project_id=P, allow_orchestrator_override=True)
        )
        await runtime.leases.issue_lease("orch-1", _level(), "orchestrator")
        with pytest.raises(OverrideTokenRequiredError):
            await runtime.leases.issue_lease(
                "orch-2", _level(), "orchestrator", override_token="anything",
            )
