"""
Permissions System

Role-based access control checked before any entity store or outbox
writer call made through a unit of work.
"""

import logging
from dataclasses import dataclass
from enum import Enum
from typing import Dict, Set

from ..config import is_auth_required
from ..errors import AuthorizationDenied

logger = logging.getLogger(__name__)


class Permission(str, Enum):
    """Available permissions."""

    ENTITIES_READ = "entities:read"
    ENTITIES_WRITE = "entities:write"
    OUTBOX_ENQUEUE = "outbox:enqueue"
    OUTBOX_ADMIN = "outbox:admin"


# Role to permissions mapping
ROLE_PERMISSIONS: Dict[str, Set[Permission]] = {
    "admin": {
        Permission.ENTITIES_READ, Permission.ENTITIES_WRITE,
        Permission.OUTBOX_ENQUEUE, Permission.OUTBOX_ADMIN,
    },
    "service": {
        Permission.ENTITIES_READ, Permission.ENTITIES_WRITE,
        Permission.OUTBOX_ENQUEUE,
    },
    "writer": {
        Permission.ENTITIES_READ, Permission.ENTITIES_WRITE,
        Permission.OUTBOX_ENQUEUE,
    },
    "viewer": {
        Permission.ENTITIES_READ,
    },
}


@dataclass(frozen=True)
class Actor:
    """Identity on whose behalf an operation runs."""
    id: str
    role: str = "viewer"


SYSTEM_ACTOR = Actor(id="system", role="service")


def get_permissions_for_role(role: str) -> Set[Permission]:
    """
    Get all permissions for a role.

    Args:
        role: Role name (admin, service, writer, viewer)

    Returns:
        Set of permissions for the role
    """
    return ROLE_PERMISSIONS.get(role, set())


def has_permission(role: str, permission: Permission) -> bool:
    """Check if a role has a specific permission."""
    return permission in get_permissions_for_role(role)


def authorize(actor: Actor, permission: Permission) -> None:
    """
    Raise AuthorizationDenied unless the actor's role grants the permission.

    Skipped entirely when AUTH_REQUIRED=false.
    """
    if not is_auth_required():
        return
    if not has_permission(actor.role, permission):
        logger.warning(
            f"Authorization denied: actor={actor.id} role={actor.role} permission={permission.value}"
        )
        raise AuthorizationDenied(actor.id, permission.value)
