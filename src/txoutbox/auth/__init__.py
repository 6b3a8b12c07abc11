"""
Authorization

Usage:
    from txoutbox.auth import Actor, Permission, authorize

    authorize(Actor(id="svc-boards", role="service"), Permission.OUTBOX_ENQUEUE)
"""

from .permissions import (
    Actor,
    Permission,
    ROLE_PERMISSIONS,
    SYSTEM_ACTOR,
    authorize,
    get_permissions_for_role,
    has_permission,
)

__all__ = [
    "Actor",
    "Permission",
    "ROLE_PERMISSIONS",
    "SYSTEM_ACTOR",
    "authorize",
    "get_permissions_for_role",
    "has_permission",
]
