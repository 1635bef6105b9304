"""Explicit mutation context carried by every mutating call.

The actor identity and the optional lease tuple are plain parameters,
never ambient state, so the guard's precondition is visible in every
service signature and trivially fakeable in tests.
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import StrEnum

from src.constants import DEFAULT_SYSTEM_ACTOR, DEFAULT_USER_ACTOR
from src.infra.errors import InvalidActorTypeError
from src.scope.levels import normalize_token


class ActorType(StrEnum):
    user = "user"
    agent = "agent"
    system = "system"


def parse_actor_type(value: ActorType | str | None) -> ActorType:
    """Canonicalize an actor type; blank means user."""
    token = normalize_token(value)
    if not token:
        return ActorType.user
    try:
        return ActorType(token)
    except ValueError:
        raise InvalidActorTypeError(f"unknown actor type {token!r}") from None


@dataclass(frozen=True)
class Actor:
    actor_id: str
    actor_type: ActorType = ActorType.user

    @classmethod
    def create(cls, actor_id: str | None, actor_type: ActorType | str | None = None) -> Actor:
        resolved_type = parse_actor_type(actor_type)
        fallback = DEFAULT_SYSTEM_ACTOR if resolved_type is ActorType.system else DEFAULT_USER_ACTOR
        resolved_id = (actor_id or "").strip() or fallback
        return cls(actor_id=resolved_id, actor_type=resolved_type)

    @property
    def is_user(self) -> bool:
        return self.actor_type is ActorType.user


@dataclass(frozen=True)
class LeaseTuple:
    """Proof of lease ownership presented by a non-user actor."""

    instance_id: str
    lease_token: str
    agent_name: str

    @classmethod
    def create(
        cls, instance_id: str | None, lease_token: str | None, agent_name: str | None,
    ) -> LeaseTuple | None:
        """Build a normalized tuple; an all-blank tuple counts as absent."""
        instance_id = (instance_id or "").strip()
        lease_token = (lease_token or "").strip()
        agent_name = (agent_name or "").strip()
        if not (instance_id or lease_token or agent_name):
            return None
        return cls(instance_id=instance_id, lease_token=lease_token, agent_name=agent_name)


@dataclass(frozen=True)
class MutationContext:
    actor: Actor
    lease: LeaseTuple | None = None

    @classmethod
    def for_user(cls, actor_id: str = DEFAULT_USER_ACTOR) -> MutationContext:
        return cls(actor=Actor.create(actor_id, ActorType.user))

    @classmethod
    def for_agent(
        cls,
        agent_name: str,
        *,
        instance_id: str | None = None,
        lease_token: str | None = None,
        actor_type: ActorType | str = ActorType.agent,
    ) -> MutationContext:
        return cls(
            actor=Actor.create(agent_name, actor_type),
            lease=LeaseTuple.create(instance_id, lease_token, agent_name),
        )


@dataclass(frozen=True)
class Attribution:
    """Who performed an authorized mutation; stamped on change events."""

    actor_id: str
    actor_type: ActorType
    lease_instance_id: str = ""
