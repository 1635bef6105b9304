"""Fail-closed authorization for every mutating call.

User actors pass unconditionally. Agent and system actors must present a
lease tuple naming an active, unrevoked lease whose identity matches and
whose scope covers the target. Checks run inside the caller's unit of
work so the lease read and the guarded write share one transaction.
"""

from __future__ import annotations

from collections.abc import Callable
from datetime import UTC, datetime
from typing import TYPE_CHECKING

import structlog

from src.guard.context import Attribution, MutationContext
from src.infra.errors import (
    MutationLeaseExpiredError,
    MutationLeaseInvalidError,
    MutationLeaseRequiredError,
    MutationLeaseRevokedError,
)
from src.workitems.lineage import resolve_target

if TYPE_CHECKING:
    from src.scope.levels import LevelTuple, ScopeTarget
    from src.store.ports import GuardUnitOfWork

logger = structlog.get_logger()


class MutationGuard:
    def __init__(
        self,
        *,
        require_agent_lease: bool = True,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self._require_agent_lease = require_agent_lease
        self._clock = clock or (lambda: datetime.now(UTC))
        if not require_agent_lease:
            logger.warning("mutation_guard_disabled", require_agent_lease=False)

    async def resolve_target(self, uow: GuardUnitOfWork, level: LevelTuple) -> ScopeTarget:
        return await resolve_target(uow, level)

    async def authorize(
        self,
        uow: GuardUnitOfWork,
        context: MutationContext,
        target: ScopeTarget,
        *,
        now: datetime | None = None,
    ) -> Attribution:
        """Authorize one mutation at target and refresh the lease heartbeat.

        Raises:
            MutationLeaseRequiredError: non-user actor without a complete lease tuple.
            MutationLeaseInvalidError: unknown lease, identity, project or scope mismatch.
            MutationLeaseRevokedError: lease revoked (including concurrently).
            MutationLeaseExpiredError: lease past its expiry.
        """
        actor = context.actor
        if actor.is_user or not self._require_agent_lease:
            return Attribution(actor_id=actor.actor_id, actor_type=actor.actor_type)

        now = now or self._clock()
        try:
            lease_instance_id = await self._check_lease(uow, context, target, now)
        except MutationLeaseRequiredError as exc:
            logger.warning(
                "mutation_blocked",
                reason=type(exc).__name__,
                detail=str(exc),
                actor_id=actor.actor_id,
                actor_type=actor.actor_type.value,
                instance_id=context.lease.instance_id if context.lease else None,
                **target.level.as_dict(),
            )
            raise
        return Attribution(
            actor_id=actor.actor_id,
            actor_type=actor.actor_type,
            lease_instance_id=lease_instance_id,
        )

    async def _check_lease(
        self,
        uow: GuardUnitOfWork,
        context: MutationContext,
        target: ScopeTarget,
        now: datetime,
    ) -> str:
        presented = context.lease
        if presented is None or not (
            presented.instance_id and presented.lease_token and presented.agent_name
        ):
            raise MutationLeaseRequiredError(
                "agent_instance_id, lease_token and agent_name are required"
            )

        lease = await uow.get_lease(presented.instance_id)
        if lease is None:
            raise MutationLeaseInvalidError("lease not found")
        if not lease.matches_identity(presented.agent_name, presented.lease_token):
            raise MutationLeaseInvalidError("lease identity mismatch")
        if lease.project_id != target.project_id:
            raise MutationLeaseInvalidError("lease belongs to another project")
        if lease.is_revoked():
            raise MutationLeaseRevokedError()
        if lease.is_expired(now):
            raise MutationLeaseExpiredError()
        if not lease.matches_scope(target):
            raise MutationLeaseInvalidError(
                f"lease scope {lease.scope_type.value}:{lease.scope_id} does not cover "
                f"{target.level.scope_type.value}:{target.level.scope_id}"
            )
        if not await uow.touch_lease(lease.instance_id, heartbeat_at=now):
            raise MutationLeaseRevokedError()
        return lease.instance_id
