"""
Tests for role-based authorization.
"""

import pytest

from txoutbox.auth import (
    ROLE_PERMISSIONS,
    SYSTEM_ACTOR,
    Actor,
    Permission,
    authorize,
    get_permissions_for_role,
    has_permission,
)
from txoutbox.errors import AuthorizationDenied


class TestRolePermissions:

    def test_admin_has_everything(self):
        assert get_permissions_for_role("admin") == set(Permission)

    def test_viewer_is_read_only(self):
        assert get_permissions_for_role("viewer") == {Permission.ENTITIES_READ}

    def test_service_cannot_administer(self):
        assert has_permission("service", Permission.OUTBOX_ENQUEUE)
        assert not has_permission("service", Permission.OUTBOX_ADMIN)

    def test_unknown_role_has_nothing(self):
        assert get_permissions_for_role("intern") == set()

    def test_all_roles_defined(self):
        assert set(ROLE_PERMISSIONS) == {"admin", "service", "writer", "viewer"}


class TestAuthorize:

    def test_allowed(self):
        authorize(Actor("alice", "writer"), Permission.ENTITIES_WRITE)

    def test_denied(self):
        with pytest.raises(AuthorizationDenied) as exc_info:
            authorize(Actor("bob", "viewer"), Permission.OUTBOX_ENQUEUE)

        assert exc_info.value.actor_id == "bob"
        assert exc_info.value.permission == "outbox:enqueue"

    def test_system_actor_can_write_and_enqueue(self):
        authorize(SYSTEM_ACTOR, Permission.ENTITIES_WRITE)
        authorize(SYSTEM_ACTOR, Permission.OUTBOX_ENQUEUE)

    def test_bypassed_when_auth_not_required(self, monkeypatch):
        """AUTH_REQUIRED=false is dev mode."""
        monkeypatch.setenv("AUTH_REQUIRED", "false")
        authorize(Actor("bob", "viewer"), Permission.OUTBOX_ADMIN)
