"""RPC dispatch: method name -> params model -> service call -> response frame.

Errors map to stable codes: invalid_request, not_found, guardrail_failed,
transition_blocked. Anything else becomes internal_error and is logged
with its traceback.
"""

from __future__ import annotations

from collections.abc import Awaitable, Callable
from typing import TYPE_CHECKING, Any

import structlog
from pydantic import BaseModel
from pydantic import ValidationError as PydanticValidationError

from src.gateway.protocol import (
    AttentionListParams,
    AttentionRaiseParams,
    AttentionResolveParams,
    CaptureStateParams,
    CompletionContractParams,
    LeaseHeartbeatParams,
    LeaseIssueParams,
    LeaseRenewParams,
    LeaseRevokeByScopeParams,
    LeaseRevokeParams,
    RPCError,
    RPCErrorData,
    RPCRequest,
    RPCResponse,
    WorkItemCreateParams,
    WorkItemDeleteParams,
    WorkItemTransitionParams,
    WorkItemUpdateContractParams,
    attention_payload,
    lease_payload,
    parse_rpc_request,
    work_item_payload,
)
from src.infra.errors import KanGuardError, TransitionBlockedError
from src.workitems.models import CompletionContract

if TYPE_CHECKING:
    from src.attention.registry import AttentionRegistry
    from src.leases.manager import LeaseManager
    from src.workitems.service import WorkItemService

logger = structlog.get_logger()

Handler = Callable[[Any], Awaitable[Any]]


def _contract(params: CompletionContractParams | None) -> CompletionContract:
    if params is None:
        return CompletionContract()
    return CompletionContract.create(
        start_criteria=[row.model_dump() for row in params.start_criteria],
        completion_criteria=[row.model_dump() for row in params.completion_criteria],
        completion_checklist=[row.model_dump() for row in params.completion_checklist],
        completion_evidence=params.completion_evidence,
        completion_notes=params.completion_notes,
        require_children_done=params.require_children_done,
    )


class RPCDispatcher:
    def __init__(
        self,
        *,
        leases: LeaseManager,
        attention: AttentionRegistry,
        work_items: WorkItemService,
    ) -> None:
        self._leases = leases
        self._attention = attention
        self._work_items = work_items
        self._methods: dict[str, tuple[type[BaseModel], Handler]] = {
            "lease.issue": (LeaseIssueParams, self._lease_issue),
            "lease.heartbeat": (LeaseHeartbeatParams, self._lease_heartbeat),
            "lease.renew": (LeaseRenewParams, self._lease_renew),
            "lease.revoke": (LeaseRevokeParams, self._lease_revoke),
            "lease.revoke_by_scope": (LeaseRevokeByScopeParams, self._lease_revoke_by_scope),
            "attention.raise": (AttentionRaiseParams, self._attention_raise),
            "attention.list": (AttentionListParams, self._attention_list),
            "attention.resolve": (AttentionResolveParams, self._attention_resolve),
            "attention.capture_state": (CaptureStateParams, self._capture_state),
            "work_item.create": (WorkItemCreateParams, self._work_item_create),
            "work_item.update_contract": (
                WorkItemUpdateContractParams, self._work_item_update_contract,
            ),
            "work_item.transition": (WorkItemTransitionParams, self._work_item_transition),
            "work_item.delete": (WorkItemDeleteParams, self._work_item_delete),
        }

    @property
    def methods(self) -> list[str]:
        return sorted(self._methods)

    async def handle_raw(self, raw: str) -> str:
        """Parse one JSON frame and return the JSON response or error frame."""
        try:
            request = parse_rpc_request(raw)
        except KanGuardError as e:
            logger.warning("request_error", code=e.code, error=str(e), request_id="unknown")
            return RPCError(
                id="unknown", error=RPCErrorData(code=e.code, message=str(e)),
            ).model_dump_json()
        frame = await self.dispatch(request)
        return frame.model_dump_json()

    async def dispatch(self, request: RPCRequest) -> RPCResponse | RPCError:
        request_id = request.id
        entry = self._methods.get(request.method)
        if entry is None:
            return RPCError(
                id=request_id,
                error=RPCErrorData(
                    code="invalid_request",
                    message=f"Unknown method: {request.method}",
                ),
            )
        params_model, handler = entry
        try:
            params = params_model.model_validate(request.params)
            data = await handler(params)
        except PydanticValidationError as e:
            logger.warning("request_invalid_params", method=request.method, request_id=request_id)
            return RPCError(
                id=request_id,
                error=RPCErrorData(code="invalid_request", message=str(e)),
            )
        except TransitionBlockedError as e:
            logger.info("request_transition_blocked", method=request.method, request_id=request_id)
            return RPCError(
                id=request_id,
                error=RPCErrorData(code=e.code, message=str(e), details=e.details()),
            )
        except KanGuardError as e:
            logger.warning(
                "request_error",
                code=e.code,
                error=str(e),
                method=request.method,
                request_id=request_id,
            )
            return RPCError(id=request_id, error=RPCErrorData(code=e.code, message=str(e)))
        except Exception:
            logger.exception("unhandled_error", method=request.method, request_id=request_id)
            return RPCError(
                id=request_id,
                error=RPCErrorData(code="internal_error", message="An internal error occurred"),
            )
        return RPCResponse(id=request_id, data=data)

    # -- lease.* --

    async def _lease_issue(self, p: LeaseIssueParams) -> dict:
        lease = await self._leases.issue_lease(
            p.agent_name,
            p.to_level(),
            p.role,
            parent_instance_id=p.parent_instance_id,
            allow_equal_scope_delegation=p.allow_equal_scope_delegation,
            ttl=p.ttl,
            instance_id=p.agent_instance_id,
            override_token=p.override_token,
        )
        return lease_payload(lease, include_token=True)

    async def _lease_heartbeat(self, p: LeaseHeartbeatParams) -> dict:
        return lease_payload(await self._leases.heartbeat(p.agent_instance_id, p.lease_token))

    async def _lease_renew(self, p: LeaseRenewParams) -> dict:
        lease = await self._leases.renew(
            p.agent_instance_id,
            p.lease_token,
            expires_at=p.expires_at,
            ttl=p.ttl,
        )
        return lease_payload(lease)

    async def _lease_revoke(self, p: LeaseRevokeParams) -> dict:
        return lease_payload(await self._leases.revoke(p.agent_instance_id, p.reason))

    async def _lease_revoke_by_scope(self, p: LeaseRevokeByScopeParams) -> dict:
        count = await self._leases.revoke_by_scope(p.project_id, p.scope_type, p.scope_id, p.reason)
        return {"revoked": count}

    # -- attention.* --

    async def _attention_raise(self, p: AttentionRaiseParams) -> dict:
        item = await self._attention.raise_item(
            p.to_context(),
            p.to_level(),
            p.kind,
            p.summary,
            body_markdown=p.body_markdown,
            requires_user_action=p.requires_user_action,
            state=p.state,
        )
        return attention_payload(item)

    async def _attention_list(self, p: AttentionListParams) -> dict:
        items = await self._attention.list_items(
            p.to_level(),
            unresolved_only=p.unresolved_only,
            states=p.states,
            kinds=p.kinds,
            requires_user_action=p.requires_user_action,
            limit=p.limit,
        )
        return {"items": [attention_payload(item) for item in items]}

    async def _attention_resolve(self, p: AttentionResolveParams) -> dict:
        item = await self._attention.resolve_item(p.to_context(), p.attention_id)
        return attention_payload(item)

    async def _capture_state(self, p: CaptureStateParams) -> dict:
        summary = await self._attention.capture_state(p.to_level(), p.view)
        return summary.as_dict()

    # -- work_item.* --

    async def _work_item_create(self, p: WorkItemCreateParams) -> dict:
        item = await self._work_items.create(
            p.to_context(),
            p.project_id,
            p.title,
            scope=p.scope,
            parent_id=p.parent_id,
            kind=p.kind,
            contract=_contract(p.contract),
            item_id=p.work_item_id or None,
        )
        return work_item_payload(item)

    async def _work_item_update_contract(self, p: WorkItemUpdateContractParams) -> dict:
        item = await self._work_items.update_contract(
            p.to_context(), p.work_item_id, _contract(p.contract),
        )
        return work_item_payload(item)

    async def _work_item_transition(self, p: WorkItemTransitionParams) -> dict:
        item = await self._work_items.transition(p.to_context(), p.work_item_id, p.state)
        return work_item_payload(item)

    async def _work_item_delete(self, p: WorkItemDeleteParams) -> dict:
        await self._work_items.delete(p.to_context(), p.work_item_id, mode=p.mode)
        return {"deleted": p.work_item_id}
