"""Unit tests for identity and permission models."""

import pytest
from pydantic import ValidationError

from flowgate.core.identity import (
    AuthMethod,
    Condition,
    Identity,
    Permission,
    Role,
    perm,
)


class TestPermission:
    """Tests for Permission."""

    def test_from_dict_plain(self) -> None:
        """Plain stored permission has no condition."""
        p = Permission.from_dict({"resource": "workflows", "action": "read"})

        assert p.resource == "workflows"
        assert p.action == "read"
        assert p.condition == Condition.NONE

    def test_from_dict_owner_self(self) -> None:
        """{"owner": "self"} maps to the OWNER_SELF condition."""
        p = Permission.from_dict(
            {"resource": "api_keys", "action": "*", "conditions": {"owner": "self"}}
        )

        assert p.condition == Condition.OWNER_SELF

    def test_from_dict_rejects_unknown_conditions(self) -> None:
        """Only the ownership condition exists."""
        with pytest.raises(ValueError):
            Permission.from_dict(
                {"resource": "workflows", "action": "read", "conditions": {"team": "ops"}}
            )

    def test_to_dict_round_trip_shape(self) -> None:
        """to_dict emits the stored JSON shape."""
        assert perm("agents", "start").to_dict() == {"resource": "agents", "action": "start"}
        assert perm("api_keys", "*", owner_self=True).to_dict() == {
            "resource": "api_keys",
            "action": "*",
            "conditions": {"owner": "self"},
        }

    def test_empty_fields_rejected(self) -> None:
        """Resource and action must be non-empty."""
        with pytest.raises(ValidationError):
            Permission(resource="", action="read")

    def test_permission_is_immutable(self) -> None:
        """Permissions are frozen once loaded."""
        p = perm("workflows", "read")
        with pytest.raises(ValidationError):
            p.action = "delete"  # type: ignore[misc]

    def test_str(self) -> None:
        assert str(perm("workflows", "read")) == "workflows:read"
        assert str(perm("workflows", "*", owner_self=True)) == "workflows:* (owner=self)"


class TestRole:
    """Tests for Role."""

    def test_permissions_keep_order(self) -> None:
        """Permission order is significant (first match wins)."""
        role = Role(
            role_id="r1",
            name="custom",
            permissions=(perm("a", "read"), perm("b", "read"), perm("a", "*")),
        )

        assert [str(p) for p in role.permissions] == ["a:read", "b:read", "a:*"]
        assert role.is_system is False


class TestIdentity:
    """Tests for Identity."""

    def test_rate_limit_key_uses_subject(self) -> None:
        identity = Identity(
            subject_id="u-42",
            role="viewer",
            organization_id="org-1",
            session_id="s-1",
            auth_method=AuthMethod.BEARER,
        )

        assert identity.rate_limit_key == "subject:u-42"
        assert identity.key_permissions is None

    def test_identity_is_frozen(self) -> None:
        identity = Identity(
            subject_id="u-42",
            role="viewer",
            organization_id="org-1",
            session_id="s-1",
            auth_method=AuthMethod.API_KEY,
        )
        with pytest.raises(ValidationError):
            identity.role = "admin"  # type: ignore[misc]
