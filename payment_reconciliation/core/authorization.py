"""
Authorization guard.

Stateless predicates over (actor, resource owner) pairs. Callers raise
PaymentAuthorizationError when a predicate fails; nothing here touches I/O.
"""
from dataclasses import dataclass
from enum import Enum
from typing import Optional


class Role(str, Enum):
    """Actor roles known to the payment core."""

    USER = "user"
    SELLER = "seller"
    ADMIN = "admin"


@dataclass(frozen=True)
class ActorContext:
    """The authenticated caller of a payment operation."""

    user_id: str
    role: Role = Role.USER

    @classmethod
    def admin(cls, user_id: str) -> "ActorContext":
        return cls(user_id=user_id, role=Role.ADMIN)


def is_owner(ctx: ActorContext, resource_user_id: Optional[str]) -> bool:
    return resource_user_id is not None and ctx.user_id == resource_user_id


def is_admin(ctx: ActorContext) -> bool:
    return ctx.role == Role.ADMIN


def is_owner_or_admin(ctx: ActorContext, resource_user_id: Optional[str]) -> bool:
    return is_admin(ctx) or is_owner(ctx, resource_user_id)
