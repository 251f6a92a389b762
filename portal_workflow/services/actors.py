"""Who performed a transition.

Automated transitions are attributed to ``SystemActor`` instead of a
sentinel user row.
"""

from dataclasses import dataclass
from uuid import UUID

from ..models import ActorType


@dataclass(frozen=True)
class ClientActor:
    user_id: UUID


@dataclass(frozen=True)
class OperatorActor:
    user_id: UUID


@dataclass(frozen=True)
class SystemActor:
    pass


Actor = ClientActor | OperatorActor | SystemActor

SYSTEM = SystemActor()


def actor_type(actor: Actor) -> ActorType:
    if isinstance(actor, ClientActor):
        return ActorType.CLIENT
    if isinstance(actor, OperatorActor):
        return ActorType.OPERATOR
    return ActorType.SYSTEM


def actor_user_id(actor: Actor) -> UUID | None:
    if isinstance(actor, (ClientActor, OperatorActor)):
        return actor.user_id
    return None


def describe_actor(actor: Actor) -> str:
    user_id = actor_user_id(actor)
    kind = actor_type(actor).value
    return kind if user_id is None else f"{kind}:{user_id}"
