"""
Actor identity for admin routes. The auth gateway in front of this service has already
authenticated the caller and forwards who they are in X-Actor-* headers.
"""
from fastapi import Header

from orderflow.errors import AuthRequiredError, ForbiddenError
from orderflow.models import Actor, ActorRole

STAFF_ROLES = frozenset({ActorRole.ADMIN, ActorRole.EDITOR})


async def require_staff(
    x_actor_id: str | None = Header(default=None),
    x_actor_name: str | None = Header(default=None),
    x_actor_role: str | None = Header(default=None),
) -> Actor:
    if not x_actor_id:
        raise AuthRequiredError()
    try:
        role = ActorRole((x_actor_role or "").upper())
    except ValueError:
        raise ForbiddenError(f"Unknown role {x_actor_role!r}", [{"role": x_actor_role}])
    if role not in STAFF_ROLES:
        raise ForbiddenError("Staff role required", [{"role": role.value}])
    return Actor(id=x_actor_id, name=x_actor_name, role=role)


def ensure_can_force(actor: Actor, force: bool) -> None:
    """Only ADMIN may bypass the transition table."""
    if force and not actor.is_privileged:
        raise ForbiddenError("Only ADMIN may force a transition", [{"field": "force", "role": actor.role.value}])
