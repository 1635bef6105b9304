from __future__ import annotations

import json
import uuid
from datetime import datetime, timedelta
from typing import TYPE_CHECKING, Any, Literal

from pydantic import AwareDatetime, BaseModel, Field, field_validator

from src.guard.context import Actor, LeaseTuple, MutationContext
from src.infra.errors import ValidationError
from src.scope.levels import LevelTuple, new_level_tuple

if TYPE_CHECKING:
    from src.attention.models import ActorStamp, AttentionItem
    from src.leases.models import CapabilityLease
    from src.workitems.models import WorkItem


# -- shared param blocks --


class ActorParams(BaseModel):
    """Caller identity plus the optional lease tuple for non-user actors."""

    actor_id: str = ""
    actor_type: str = ""
    agent_name: str = ""
    agent_instance_id: str = ""
    lease_token: str = ""

    def to_context(self) -> MutationContext:
        actor_id = self.actor_id or self.agent_name
        return MutationContext(
            actor=Actor.create(actor_id, self.actor_type),
            lease=LeaseTuple.create(self.agent_instance_id, self.lease_token, self.agent_name),
        )


class LevelParams(BaseModel):
    project_id: str
    branch_id: str = ""
    scope_type: str = ""
    scope_id: str = ""

    def to_level(self) -> LevelTuple:
        return new_level_tuple(self.project_id, self.scope_type, self.scope_id, self.branch_id)


class ChecklistItemParams(BaseModel):
    id: str = ""
    text: str = ""
    done: bool = False


class CompletionContractParams(BaseModel):
    start_criteria: list[ChecklistItemParams] = Field(default_factory=list)
    completion_criteria: list[ChecklistItemParams] = Field(default_factory=list)
    completion_checklist: list[ChecklistItemParams] = Field(default_factory=list)
    completion_evidence: list[str] = Field(default_factory=list)
    completion_notes: str = ""
    require_children_done: bool = False


# -- lease.* --


class LeaseIssueParams(LevelParams):
    agent_name: str
    role: str
    parent_instance_id: str = ""
    allow_equal_scope_delegation: bool = False
    ttl_seconds: int | None = None
    agent_instance_id: str = ""
    override_token: str = ""

    @property
    def ttl(self) -> timedelta | None:
        return timedelta(seconds=self.ttl_seconds) if self.ttl_seconds is not None else None


class LeaseHeartbeatParams(BaseModel):
    agent_instance_id: str
    lease_token: str


class LeaseRenewParams(BaseModel):
    agent_instance_id: str
    lease_token: str
    ttl_seconds: int | None = None
    expires_at: AwareDatetime | None = None

    @property
    def ttl(self) -> timedelta | None:
        return timedelta(seconds=self.ttl_seconds) if self.ttl_seconds is not None else None


class LeaseRevokeParams(BaseModel):
    agent_instance_id: str
    reason: str = ""


class LeaseRevokeByScopeParams(BaseModel):
    project_id: str
    scope_type: str
    scope_id: str = ""
    reason: str = ""


# -- attention.* --


class AttentionRaiseParams(LevelParams, ActorParams):
    kind: str
    summary: str
    body_markdown: str = ""
    requires_user_action: bool = False
    state: str | None = None


class AttentionListParams(LevelParams):
    unresolved_only: bool = False
    states: list[str] = Field(default_factory=list)
    kinds: list[str] = Field(default_factory=list)
    requires_user_action: bool | None = None
    limit: int = 0


class AttentionResolveParams(ActorParams):
    attention_id: str


class CaptureStateParams(LevelParams):
    view: str = "summary"


# -- work_item.* --


class WorkItemCreateParams(ActorParams):
    project_id: str
    title: str
    scope: str = ""
    parent_id: str = ""
    kind: str = ""
    work_item_id: str = ""
    contract: CompletionContractParams | None = None


class WorkItemUpdateContractParams(ActorParams):
    work_item_id: str
    contract: CompletionContractParams


class WorkItemTransitionParams(ActorParams):
    work_item_id: str
    state: str

    @field_validator("state")
    @classmethod
    def _require_state(cls, v: str) -> str:
        if not v.strip():
            msg = "state must not be empty"
            raise ValueError(msg)
        return v


class WorkItemDeleteParams(ActorParams):
    work_item_id: str
    mode: str = ""


# -- frames --


class RPCRequest(BaseModel):
    """Generic RPC request. method determines which params to expect."""

    type: Literal["request"] = "request"
    id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    method: str
    params: dict[str, Any] = Field(default_factory=dict)


class RPCResponse(BaseModel):
    type: Literal["response"] = "response"
    id: str
    data: Any = None


class RPCErrorData(BaseModel):
    code: str
    message: str
    details: dict[str, Any] | None = None


class RPCError(BaseModel):
    type: Literal["error"] = "error"
    id: str
    error: RPCErrorData


def parse_rpc_request(raw: str) -> RPCRequest:
    """Parse a raw JSON string into an RPCRequest.

    Raises ValidationError (code invalid_request) on invalid JSON or schema mismatch.
    """
    try:
        data = json.loads(raw)
    except json.JSONDecodeError as e:
        raise ValidationError(f"Invalid JSON: {e}") from e
    try:
        return RPCRequest.model_validate(data)
    except Exception as e:
        raise ValidationError(f"Invalid RPC request: {e}") from e


# -- result payloads --


def _iso(value: datetime | None) -> str | None:
    return value.isoformat() if value is not None else None


def _stamp(stamp: ActorStamp | None) -> dict[str, Any] | None:
    if stamp is None:
        return None
    return {"actor_id": stamp.actor_id, "actor_type": stamp.actor_type.value, "at": _iso(stamp.at)}


def lease_payload(lease: CapabilityLease, *, include_token: bool = False) -> dict[str, Any]:
    """Serialize a lease. The token is only handed out at issue time."""
    payload = {
        "instance_id": lease.instance_id,
        "agent_name": lease.agent_name,
        "project_id": lease.project_id,
        "scope_type": lease.scope_type.value,
        "scope_id": lease.scope_id,
        "role": lease.role.value,
        "parent_instance_id": lease.parent_instance_id,
        "allow_equal_scope_delegation": lease.allow_equal_scope_delegation,
        "issued_at": _iso(lease.issued_at),
        "expires_at": _iso(lease.expires_at),
        "heartbeat_at": _iso(lease.heartbeat_at),
        "revoked_at": _iso(lease.revoked_at),
        "revoked_reason": lease.revoked_reason,
    }
    if include_token:
        payload["lease_token"] = lease.lease_token
    return payload


def attention_payload(item: AttentionItem) -> dict[str, Any]:
    return {
        "id": item.id,
        "level": item.level.as_dict(),
        "state": item.state.value,
        "kind": item.kind.value,
        "summary": item.summary,
        "body_markdown": item.body_markdown,
        "requires_user_action": item.requires_user_action,
        "created_by": _stamp(item.created_by),
        "acknowledged_by": _stamp(item.acknowledged_by),
        "resolved_by": _stamp(item.resolved_by),
    }


def work_item_payload(item: WorkItem) -> dict[str, Any]:
    return {
        "id": item.id,
        "project_id": item.project_id,
        "parent_id": item.parent_id,
        "kind": item.kind,
        "scope": item.scope.value,
        "lifecycle_state": item.lifecycle_state.value,
        "title": item.title,
        "contract": item.contract.as_dict(),
        "created_by": item.created_by,
        "updated_by": {"actor_id": item.updated_by, "actor_type": item.updated_by_type.value},
        "created_at": _iso(item.created_at),
        "updated_at": _iso(item.updated_at),
        "started_at": _iso(item.started_at),
        "completed_at": _iso(item.completed_at),
        "archived_at": _iso(item.archived_at),
    }
