"""Capability lease value object and its pure predicates."""

from __future__ import annotations

from dataclasses import dataclass, replace
from datetime import datetime
from enum import StrEnum

from src.infra.errors import (
    InvalidCapabilityExpiryError,
    InvalidCapabilityRoleError,
    InvalidCapabilityScopeError,
    InvalidCapabilityTokenError,
    InvalidIDError,
    InvalidNameError,
)
from src.scope.levels import (
    CapabilityScopeType,
    ScopeLevel,
    ScopeRef,
    ScopeTarget,
    from_capability_scope,
    normalize_token,
    to_capability_scope,
)


class CapabilityRole(StrEnum):
    orchestrator = "orchestrator"
    worker = "worker"
    system = "system"


def parse_capability_role(value: CapabilityRole | str | None) -> CapabilityRole:
    token = normalize_token(value)
    try:
        return CapabilityRole(token)
    except ValueError:
        raise InvalidCapabilityRoleError(f"unknown capability role {token!r}") from None


def parse_capability_scope(value: CapabilityScopeType | str | None) -> CapabilityScopeType:
    level = from_capability_scope(normalize_token(value))
    if level is None:
        raise InvalidCapabilityScopeError(f"unknown capability scope {value!r}")
    return to_capability_scope(level)


@dataclass(frozen=True)
class CapabilityLease:
    instance_id: str
    lease_token: str
    agent_name: str
    project_id: str
    scope_type: CapabilityScopeType
    scope_id: str
    role: CapabilityRole
    issued_at: datetime
    expires_at: datetime
    heartbeat_at: datetime
    parent_instance_id: str = ""
    allow_equal_scope_delegation: bool = False
    revoked_at: datetime | None = None
    revoked_reason: str = ""

    @property
    def level(self) -> ScopeLevel:
        return ScopeLevel(self.scope_type.value)

    @property
    def ref(self) -> ScopeRef:
        return ScopeRef(self.level, self.scope_id)

    def is_revoked(self) -> bool:
        return self.revoked_at is not None

    def is_expired(self, now: datetime) -> bool:
        return now >= self.expires_at

    def is_active(self, now: datetime) -> bool:
        return not self.is_revoked() and not self.is_expired(now)

    def matches_token(self, lease_token: str) -> bool:
        supplied = (lease_token or "").strip()
        return bool(supplied) and self.lease_token.strip() == supplied

    def matches_identity(self, agent_name: str, lease_token: str) -> bool:
        return (
            self.agent_name.strip() == (agent_name or "").strip()
            and self.matches_token(lease_token)
        )

    def matches_scope(self, target: ScopeTarget) -> bool:
        """Exact match, or the lease scope is an ancestor of the target."""
        if self.project_id != target.project_id:
            return False
        if self.scope_type is CapabilityScopeType.project:
            return True
        if self.scope_type is CapabilityScopeType.branch and target.branch_id == self.scope_id:
            return True
        return target.covers(self.ref)

    def with_heartbeat(self, now: datetime) -> CapabilityLease:
        return replace(self, heartbeat_at=now)


def new_capability_lease(
    *,
    instance_id: str,
    lease_token: str,
    agent_name: str,
    project_id: str,
    scope_type: CapabilityScopeType | str,
    scope_id: str,
    role: CapabilityRole | str,
    expires_at: datetime,
    now: datetime,
    parent_instance_id: str = "",
    allow_equal_scope_delegation: bool = False,
) -> CapabilityLease:
    """Normalize and validate one lease issuance request."""
    instance_id = instance_id.strip()
    lease_token = lease_token.strip()
    agent_name = agent_name.strip()
    project_id = project_id.strip()
    scope_id = (scope_id or "").strip()

    if not instance_id:
        raise InvalidIDError("instance_id is required")
    if not lease_token:
        raise InvalidCapabilityTokenError()
    if not agent_name:
        raise InvalidNameError("agent_name is required")
    if not project_id:
        raise InvalidIDError("project_id is required")
    capability_scope = parse_capability_scope(scope_type)
    if capability_scope is CapabilityScopeType.project:
        scope_id = scope_id or project_id
    elif not scope_id:
        raise InvalidCapabilityScopeError(
            f"scope_id is required for scope type {capability_scope.value!r}"
        )
    capability_role = parse_capability_role(role)
    if expires_at <= now:
        raise InvalidCapabilityExpiryError("expires_at must be after issued_at")

    return CapabilityLease(
        instance_id=instance_id,
        lease_token=lease_token,
        agent_name=agent_name,
        project_id=project_id,
        scope_type=capability_scope,
        scope_id=scope_id,
        role=capability_role,
        parent_instance_id=(parent_instance_id or "").strip(),
        allow_equal_scope_delegation=allow_equal_scope_delegation,
        issued_at=now,
        expires_at=expires_at,
        heartbeat_at=now,
    )


@dataclass(frozen=True)
class CapabilityPolicy:
    """Per-project orchestrator overlap policy; default forbids overlap."""

    project_id: str
    allow_orchestrator_override: bool = False
    orchestrator_override_token: str = ""
