"""Capability lease lifecycle: issue, heartbeat, renew, revoke.

Every operation runs inside one store unit of work and re-reads the
persisted lease; nothing is cached between calls. Heartbeat and renewal
are conditional writes that lose to a concurrent revocation.
"""

from __future__ import annotations

import uuid
from collections.abc import Callable
from datetime import UTC, datetime, timedelta
from typing import TYPE_CHECKING

import structlog

from src.constants import DEFAULT_LEASE_TTL_SECONDS
from src.infra.errors import (
    DelegationError,
    InvalidCapabilityExpiryError,
    InvalidIDError,
    MutationLeaseExpiredError,
    MutationLeaseInvalidError,
    MutationLeaseRevokedError,
    NotFoundError,
    OrchestratorOverlapError,
    OverrideTokenInvalidError,
    OverrideTokenRequiredError,
)
from src.leases.models import (
    CapabilityLease,
    CapabilityPolicy,
    CapabilityRole,
    new_capability_lease,
    parse_capability_scope,
)
from src.scope.levels import (
    CapabilityScopeType,
    LevelTuple,
    ScopeTarget,
    is_narrower,
    to_capability_scope,
)
from src.workitems.lineage import resolve_target

if TYPE_CHECKING:
    from src.store.ports import GuardStore, GuardUnitOfWork

logger = structlog.get_logger()


def _utcnow() -> datetime:
    return datetime.now(UTC)


def _new_id() -> str:
    return str(uuid.uuid4())


class LeaseManager:
    """Issues and maintains capability leases against a GuardStore."""

    def __init__(
        self,
        store: GuardStore,
        *,
        default_ttl: timedelta = timedelta(seconds=DEFAULT_LEASE_TTL_SECONDS),
        max_ttl: timedelta | None = None,
        clock: Callable[[], datetime] = _utcnow,
        id_factory: Callable[[], str] = _new_id,
    ) -> None:
        self._store = store
        self._default_ttl = default_ttl
        self._max_ttl = max_ttl
        self._clock = clock
        self._new_id = id_factory

    # -- pure predicates --

    @staticmethod
    def is_active(lease: CapabilityLease, now: datetime) -> bool:
        return lease.is_active(now)

    @staticmethod
    def matches_scope(lease: CapabilityLease, target: ScopeTarget) -> bool:
        return lease.matches_scope(target)

    @staticmethod
    def matches_identity(lease: CapabilityLease, agent_name: str, lease_token: str) -> bool:
        return lease.matches_identity(agent_name, lease_token)

    # -- issuance --

    async def issue_lease(
        self,
        agent_name: str,
        scope: LevelTuple,
        role: CapabilityRole | str,
        *,
        parent_instance_id: str | None = None,
        allow_equal_scope_delegation: bool = False,
        ttl: timedelta | None = None,
        instance_id: str | None = None,
        override_token: str | None = None,
        now: datetime | None = None,
    ) -> CapabilityLease:
        """Issue a new lease for agent_name at scope.

        Raises:
            ValidationError: malformed agent name, role, scope or ttl.
            NotFoundError: the scope does not resolve to a work item.
            DelegationError: parent lease missing, inactive, foreign or
                not strictly wider than the requested scope.
            OrchestratorOverlapError, OverrideTokenRequiredError,
            OverrideTokenInvalidError: overlap policy rejected the lease.
        """
        ttl = self._resolve_ttl(ttl)
        async with self._store.transaction() as uow:
            now = now or self._clock()
            target = await resolve_target(uow, scope)
            lease = new_capability_lease(
                instance_id=(instance_id or "").strip() or self._new_id(),
                lease_token=self._new_id(),
                agent_name=agent_name,
                project_id=target.project_id,
                scope_type=to_capability_scope(target.level.scope_type),
                scope_id=target.level.scope_id,
                role=role,
                parent_instance_id=parent_instance_id or "",
                allow_equal_scope_delegation=allow_equal_scope_delegation,
                expires_at=now + ttl,
                now=now,
            )
            if await uow.get_lease(lease.instance_id) is not None:
                raise InvalidIDError(f"lease instance_id {lease.instance_id!r} already exists")

            if lease.parent_instance_id:
                await self._check_delegation(uow, lease, target, now)
            if lease.role is CapabilityRole.orchestrator:
                await self._check_orchestrator_overlap(uow, lease, override_token, now)

            await uow.create_lease(lease)

        logger.info(
            "lease_issued",
            instance_id=lease.instance_id,
            agent_name=lease.agent_name,
            project_id=lease.project_id,
            scope_type=lease.scope_type.value,
            scope_id=lease.scope_id,
            role=lease.role.value,
            parent_instance_id=lease.parent_instance_id or None,
            expires_at=lease.expires_at.isoformat(),
        )
        return lease

    def _resolve_ttl(self, ttl: timedelta | None) -> timedelta:
        if ttl is None:
            return self._default_ttl
        if ttl <= timedelta(0):
            raise InvalidCapabilityExpiryError("ttl must be positive")
        if self._max_ttl is not None and ttl > self._max_ttl:
            raise InvalidCapabilityExpiryError(
                f"ttl exceeds the maximum of {int(self._max_ttl.total_seconds())}s"
            )
        return ttl

    async def _check_delegation(
        self,
        uow: GuardUnitOfWork,
        lease: CapabilityLease,
        target: ScopeTarget,
        now: datetime,
    ) -> None:
        parent = await uow.get_lease(lease.parent_instance_id)
        if parent is None:
            raise DelegationError(f"parent lease {lease.parent_instance_id!r} not found")
        if not parent.is_active(now):
            raise DelegationError("parent lease is not active")
        if parent.project_id != lease.project_id:
            raise DelegationError("parent lease belongs to another project")

        if parent.ref == lease.ref:
            if not lease.allow_equal_scope_delegation:
                raise DelegationError("equal-scope delegation not allowed")
            return
        if not is_narrower(lease.level, parent.level):
            raise DelegationError(
                f"{lease.scope_type.value} scope is not narrower than parent "
                f"{parent.scope_type.value} scope"
            )
        if not parent.matches_scope(target):
            raise DelegationError("requested scope is outside the parent lease scope")

    async def _check_orchestrator_overlap(
        self,
        uow: GuardUnitOfWork,
        lease: CapabilityLease,
        override_token: str | None,
        now: datetime,
    ) -> None:
        existing = await uow.list_leases(lease.project_id, lease.scope_type, lease.scope_id)
        overlapping = [
            other
            for other in existing
            if other.instance_id != lease.instance_id
            and other.role is CapabilityRole.orchestrator
            and other.is_active(now)
        ]
        if not overlapping:
            return

        policy = await uow.get_capability_policy(lease.project_id) or CapabilityPolicy(
            project_id=lease.project_id
        )
        if not policy.allow_orchestrator_override:
            raise OrchestratorOverlapError()
        expected = policy.orchestrator_override_token.strip()
        supplied = (override_token or "").strip()
        if not expected or not supplied:
            raise OverrideTokenRequiredError()
        if supplied != expected:
            raise OverrideTokenInvalidError()
        logger.warning(
            "orchestrator_override_used",
            project_id=lease.project_id,
            scope_type=lease.scope_type.value,
            scope_id=lease.scope_id,
            overlapping=[other.instance_id for other in overlapping],
        )

    # -- maintenance --

    async def _load(self, uow: GuardUnitOfWork, instance_id: str) -> CapabilityLease:
        lease = await uow.get_lease((instance_id or "").strip())
        if lease is None:
            raise NotFoundError(f"lease {instance_id!r} not found")
        return lease

    @staticmethod
    def _check_token(lease: CapabilityLease, lease_token: str) -> None:
        if not lease.matches_token(lease_token):
            raise MutationLeaseInvalidError("lease token mismatch")

    def _check_expiry(self, expires_at: datetime, now: datetime) -> datetime:
        if expires_at.tzinfo is None:
            raise InvalidCapabilityExpiryError("expires_at must carry a timezone")
        if expires_at <= now:
            raise InvalidCapabilityExpiryError("expires_at must be after now")
        if self._max_ttl is not None and expires_at - now > self._max_ttl:
            raise InvalidCapabilityExpiryError(
                f"expires_at exceeds the maximum ttl of {int(self._max_ttl.total_seconds())}s"
            )
        return expires_at

    async def heartbeat(
        self,
        instance_id: str,
        lease_token: str,
        *,
        now: datetime | None = None,
    ) -> CapabilityLease:
        async with self._store.transaction() as uow:
            now = now or self._clock()
            lease = await self._load(uow, instance_id)
            self._check_token(lease, lease_token)
            if lease.is_revoked():
                raise MutationLeaseRevokedError()
            if lease.is_expired(now):
                raise MutationLeaseExpiredError()
            if not await uow.touch_lease(lease.instance_id, heartbeat_at=now):
                raise MutationLeaseRevokedError()
        logger.debug("lease_heartbeat", instance_id=lease.instance_id)
        return lease.with_heartbeat(now)

    async def renew(
        self,
        instance_id: str,
        lease_token: str,
        *,
        expires_at: datetime | None = None,
        ttl: timedelta | None = None,
        now: datetime | None = None,
    ) -> CapabilityLease:
        """Extend expiry. Expired but unrevoked leases may be renewed.

        An explicit expires_at is bounded by the same maximum ttl as the
        ttl path.
        """
        async with self._store.transaction() as uow:
            now = now or self._clock()
            lease = await self._load(uow, instance_id)
            self._check_token(lease, lease_token)
            if lease.is_revoked():
                raise MutationLeaseRevokedError()
            if expires_at is None:
                expires_at = now + self._resolve_ttl(ttl)
            else:
                expires_at = self._check_expiry(expires_at, now)
            if not await uow.touch_lease(
                lease.instance_id, heartbeat_at=now, expires_at=expires_at,
            ):
                raise MutationLeaseRevokedError()
            renewed = await self._load(uow, lease.instance_id)
        logger.info(
            "lease_renewed",
            instance_id=renewed.instance_id,
            expires_at=renewed.expires_at.isoformat(),
        )
        return renewed

    async def revoke(
        self,
        instance_id: str,
        reason: str = "",
        *,
        now: datetime | None = None,
    ) -> CapabilityLease:
        """Revoke one lease. An already-revoked lease keeps its first stamp."""
        async with self._store.transaction() as uow:
            now = now or self._clock()
            lease = await self._load(uow, instance_id)
            changed = await uow.revoke_lease(
                lease.instance_id, reason=(reason or "").strip() or "revoked", now=now,
            )
            lease = await self._load(uow, lease.instance_id)
        if changed:
            logger.info(
                "lease_revoked",
                instance_id=lease.instance_id,
                reason=lease.revoked_reason,
            )
        return lease

    async def revoke_by_scope(
        self,
        project_id: str,
        scope_type: CapabilityScopeType | str,
        scope_id: str = "",
        reason: str = "",
        *,
        now: datetime | None = None,
    ) -> int:
        """Revoke every unrevoked lease at one scope; blank scope_id means all of that type."""
        project_id = (project_id or "").strip()
        if not project_id:
            raise InvalidIDError("project_id is required")
        capability_scope = parse_capability_scope(scope_type)
        scope_id = (scope_id or "").strip()
        reason = (reason or "").strip() or "scope revoke-all"
        async with self._store.transaction() as uow:
            now = now or self._clock()
            count = await uow.revoke_leases_by_scope(
                project_id, capability_scope, scope_id, reason=reason, now=now,
            )
        logger.info(
            "leases_revoked_by_scope",
            project_id=project_id,
            scope_type=capability_scope.value,
            scope_id=scope_id or None,
            count=count,
        )
        return count

    async def list_leases(
        self,
        project_id: str,
        scope_type: CapabilityScopeType | str | None = None,
        scope_id: str = "",
    ) -> list[CapabilityLease]:
        capability_scope = parse_capability_scope(scope_type) if scope_type else None
        async with self._store.transaction() as uow:
            return await uow.list_leases(
                (project_id or "").strip(), capability_scope, (scope_id or "").strip(),
            )

    async def get_lease(self, instance_id: str) -> CapabilityLease:
        async with self._store.transaction() as uow:
            return await self._load(uow, instance_id)

    async def set_policy(self, policy: CapabilityPolicy) -> None:
        async with self._store.transaction() as uow:
            await uow.set_capability_policy(policy)
        logger.info(
            "capability_policy_updated",
            project_id=policy.project_id,
            allow_orchestrator_override=policy.allow_orchestrator_override,
        )
