"""
Identity and permission models for Flowgate.

An Identity is the resolved principal of a single request. It is produced by
the credential verifier, consumed by the rate limiter and permission engine,
and never persisted.

Permission and Role are the declarative RBAC model. Permissions are immutable
once loaded; their order inside a Role is significant (first match wins).
"""

from __future__ import annotations

from datetime import UTC, datetime
from enum import Enum
from typing import Any

from pydantic import BaseModel, Field

WILDCARD = "*"
MANAGE_OWN = "manage_own"


class AuthMethod(str, Enum):
    """Credential scheme that produced an Identity."""

    BEARER = "bearer"
    API_KEY = "apikey"


class Condition(str, Enum):
    """Closed set of permission conditions."""

    NONE = "none"
    OWNER_SELF = "owner_self"


class Permission(BaseModel):
    """
    A (resource, action, condition) rule.

    "*" in resource or action is a full wildcard. The OWNER_SELF condition
    restricts a match to resources owned by the requesting subject.
    """

    model_config = {"frozen": True}

    resource: str = Field(..., min_length=1)
    action: str = Field(..., min_length=1)
    condition: Condition = Condition.NONE

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> Permission:
        """
        Parse the stored JSON shape.

        Accepts ``{"resource", "action", "conditions": {"owner": "self"}}``.
        Any other condition key or value is rejected.
        """
        conditions = data.get("conditions") or {}
        condition = Condition.NONE
        if conditions:
            if conditions != {"owner": "self"}:
                raise ValueError(f"Unsupported permission conditions: {conditions!r}")
            condition = Condition.OWNER_SELF
        return cls(resource=data["resource"], action=data["action"], condition=condition)

    def to_dict(self) -> dict[str, Any]:
        """Serialize to the stored JSON shape."""
        data: dict[str, Any] = {"resource": self.resource, "action": self.action}
        if self.condition == Condition.OWNER_SELF:
            data["conditions"] = {"owner": "self"}
        return data

    def __str__(self) -> str:
        suffix = " (owner=self)" if self.condition == Condition.OWNER_SELF else ""
        return f"{self.resource}:{self.action}{suffix}"


def perm(resource: str, action: str, *, owner_self: bool = False) -> Permission:
    """Shorthand constructor used for role definitions."""
    return Permission(
        resource=resource,
        action=action,
        condition=Condition.OWNER_SELF if owner_self else Condition.NONE,
    )


class Role(BaseModel):
    """Named, ordered bundle of permissions."""

    model_config = {"frozen": True}

    role_id: str
    name: str
    description: str = ""
    permissions: tuple[Permission, ...] = ()
    is_system: bool = False
    organization_id: str | None = None
    created_at: datetime = Field(default_factory=lambda: datetime.now(UTC))
    updated_at: datetime = Field(default_factory=lambda: datetime.now(UTC))


class Identity(BaseModel):
    """
    Resolved principal for one request.

    key_permissions is set only for API keys that carry their own scope; an
    allow decision must then also match one of those permissions.
    """

    model_config = {"frozen": True}

    subject_id: str
    role: str
    organization_id: str
    session_id: str
    auth_method: AuthMethod
    email: str | None = None
    key_id: str | None = None
    key_permissions: tuple[Permission, ...] | None = None

    @property
    def rate_limit_key(self) -> str:
        """Key used by the rate limiter for authenticated requests."""
        return f"subject:{self.subject_id}"
