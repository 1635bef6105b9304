"""Custom exception hierarchy for the guardrail core.

All application-specific exceptions inherit from KanGuardError,
which carries an error code for RPC error frame mapping.

Codes are grouped into four families:
- invalid_request: caller-fixable validation failures
- not_found: unknown lease / attention / work item ids
- guardrail_failed: missing, expired, revoked or mismatched leases (fail-closed)
- transition_blocked: completion contract or blocking attention
"""

from __future__ import annotations

from collections.abc import Sequence


class KanGuardError(Exception):
    """Base exception for all guardrail core errors."""

    def __init__(self, message: str, *, code: str = "internal_error") -> None:
        super().__init__(message)
        self.code = code


class ValidationError(KanGuardError):
    """Invalid id, scope, state, kind or payload."""

    default_message = "invalid request"

    def __init__(self, message: str | None = None, *, code: str = "invalid_request") -> None:
        super().__init__(message or self.default_message, code=code)


class InvalidIDError(ValidationError):
    default_message = "invalid id"


class InvalidNameError(ValidationError):
    default_message = "invalid name"


class InvalidScopeTypeError(ValidationError):
    default_message = "invalid scope type"


class InvalidScopeIDError(ValidationError):
    default_message = "invalid scope id"


class InvalidSummaryError(ValidationError):
    default_message = "invalid summary"


class InvalidTitleError(ValidationError):
    default_message = "invalid title"


class InvalidAttentionStateError(ValidationError):
    default_message = "invalid attention state"


class InvalidAttentionKindError(ValidationError):
    default_message = "invalid attention kind"


class InvalidActorTypeError(ValidationError):
    default_message = "invalid actor type"


class InvalidLifecycleStateError(ValidationError):
    default_message = "invalid lifecycle state"


class InvalidParentIDError(ValidationError):
    default_message = "invalid parent id"


class InvalidKindError(ValidationError):
    default_message = "invalid kind"


class InvalidChecklistError(ValidationError):
    default_message = "invalid checklist"


class InvalidCapabilityScopeError(ValidationError):
    default_message = "invalid capability scope"


class InvalidCapabilityRoleError(ValidationError):
    default_message = "invalid capability role"


class InvalidCapabilityExpiryError(ValidationError):
    default_message = "invalid capability expiry"


class InvalidCapabilityTokenError(ValidationError):
    default_message = "invalid capability token"


class NotFoundError(KanGuardError):
    """Unknown lease, attention item or work item."""

    def __init__(self, message: str = "not found", *, code: str = "not_found") -> None:
        super().__init__(message, code=code)


class GuardrailError(KanGuardError):
    """Authorization failure. Never downgraded to a warning."""

    default_message = "guardrail failed"

    def __init__(self, message: str | None = None, *, code: str = "guardrail_failed") -> None:
        super().__init__(message or self.default_message, code=code)


class MutationLeaseRequiredError(GuardrailError):
    default_message = "mutation lease required"


class MutationLeaseInvalidError(MutationLeaseRequiredError):
    default_message = "mutation lease invalid"


class MutationLeaseExpiredError(MutationLeaseRequiredError):
    default_message = "mutation lease expired"


class MutationLeaseRevokedError(MutationLeaseRequiredError):
    default_message = "mutation lease revoked"


class DelegationError(GuardrailError):
    default_message = "delegated scope must be narrower than the parent lease scope"


class OrchestratorOverlapError(GuardrailError):
    default_message = "orchestrator lease overlap is not allowed"


class OverrideTokenRequiredError(GuardrailError):
    default_message = "override token required"


class OverrideTokenInvalidError(GuardrailError):
    default_message = "override token invalid"


class TransitionBlockedError(KanGuardError):
    """Lifecycle transition refused by the completion contract.

    Carries the specific blockers so callers can remediate without
    re-querying state.
    """

    def __init__(
        self,
        message: str = "transition blocked by completion contract",
        *,
        unmet_checklist_ids: Sequence[str] = (),
        unmet_child_ids: Sequence[str] = (),
        blocking_attention_ids: Sequence[str] = (),
    ) -> None:
        super().__init__(message, code="transition_blocked")
        self.unmet_checklist_ids = list(unmet_checklist_ids)
        self.unmet_child_ids = list(unmet_child_ids)
        self.blocking_attention_ids = list(blocking_attention_ids)

    def details(self) -> dict[str, list[str]]:
        return {
            "unmet_checklist_ids": self.unmet_checklist_ids,
            "unmet_child_ids": self.unmet_child_ids,
            "blocking_attention_ids": self.blocking_attention_ids,
        }
