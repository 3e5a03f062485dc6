"""
Role Storage and Permission Cache for Flowgate.

The RoleStore protocol is the permission engine's data store: role lookup by
name (system roles, or an organization's custom roles), role upsert, and
subject-to-role assignment.

The PermissionCache is the shared role -> permissions map that sits in front
of the store. It is invalidated globally on any role write; a generation
counter stops readers that loaded before a write from caching stale data.
"""

from __future__ import annotations

import asyncio
import secrets
import threading
from datetime import UTC, datetime
from typing import Protocol, runtime_checkable

from flowgate.core.identity import Permission, Role
from flowgate.errors import RoleMutationError, RoleNotFoundError


@runtime_checkable
class RoleStore(Protocol):
    """
    Protocol for role storage backends.

    Custom roles are keyed by (organization_id, name); system roles have no
    organization and are visible to every organization.
    """

    async def get_role(self, name: str, organization_id: str | None = None) -> Role | None:
        """Organization's custom role by name, else the system role by name."""
        ...

    async def get_role_by_id(self, role_id: str) -> Role | None:
        ...

    async def upsert_system_role(
        self, name: str, permissions: tuple[Permission, ...], description: str = ""
    ) -> Role:
        """Create the system role or overwrite its permission set."""
        ...

    async def create_role(
        self,
        name: str,
        permissions: tuple[Permission, ...],
        organization_id: str,
        description: str = "",
    ) -> Role:
        ...

    async def update_permissions(
        self, role_id: str, permissions: tuple[Permission, ...], organization_id: str
    ) -> Role:
        ...

    async def assign_role(self, subject_id: str, role_name: str, organization_id: str) -> None:
        """Bind a subject to a role. Refuses to move a subject across organizations."""
        ...

    async def get_assignment(self, subject_id: str) -> tuple[str, str] | None:
        """(role_name, organization_id) assigned to the subject, if any."""
        ...

    async def list_roles(self, organization_id: str | None = None) -> list[Role]:
        ...


class InMemoryRoleStore:
    """
    In-memory role store.

    Mirrors the roles table semantics: (name, organization_id) is unique, and
    custom-role updates never touch system roles.
    """

    def __init__(self) -> None:
        self._roles: dict[str, Role] = {}
        self._assignments: dict[str, tuple[str, str]] = {}
        self._lock = asyncio.Lock()

    def _find(self, name: str, organization_id: str | None) -> Role | None:
        for role in self._roles.values():
            if role.name == name and role.organization_id == organization_id:
                return role
        return None

    async def get_role(self, name: str, organization_id: str | None = None) -> Role | None:
        if organization_id is not None:
            custom = self._find(name, organization_id)
            if custom is not None:
                return custom
        role = self._find(name, None)
        return role if role is not None and role.is_system else None

    async def get_role_by_id(self, role_id: str) -> Role | None:
        return self._roles.get(role_id)

    async def upsert_system_role(
        self, name: str, permissions: tuple[Permission, ...], description: str = ""
    ) -> Role:
        async with self._lock:
            existing = self._find(name, None)
            now = datetime.now(UTC)
            if existing is None:
                role = Role(
                    role_id=f"role_{secrets.token_hex(6)}",
                    name=name,
                    description=description or f"System {name} role",
                    permissions=tuple(permissions),
                    is_system=True,
                )
            else:
                role = existing.model_copy(
                    update={"permissions": tuple(permissions), "updated_at": now}
                )
            self._roles[role.role_id] = role
            return role

    async def create_role(
        self,
        name: str,
        permissions: tuple[Permission, ...],
        organization_id: str,
        description: str = "",
    ) -> Role:
        async with self._lock:
            if self._find(name, organization_id) is not None:
                raise RoleMutationError(f"Role {name!r} already exists in organization")
            role = Role(
                role_id=f"role_{secrets.token_hex(6)}",
                name=name,
                description=description,
                permissions=tuple(permissions),
                is_system=False,
                organization_id=organization_id,
            )
            self._roles[role.role_id] = role
            return role

    async def update_permissions(
        self, role_id: str, permissions: tuple[Permission, ...], organization_id: str
    ) -> Role:
        async with self._lock:
            role = self._roles.get(role_id)
            if role is None or role.organization_id != organization_id or role.is_system:
                raise RoleNotFoundError(f"No custom role {role_id} in organization")
            updated = role.model_copy(
                update={"permissions": tuple(permissions), "updated_at": datetime.now(UTC)}
            )
            self._roles[role_id] = updated
            return updated

    async def assign_role(self, subject_id: str, role_name: str, organization_id: str) -> None:
        async with self._lock:
            current = self._assignments.get(subject_id)
            if current is not None and current[1] != organization_id:
                raise RoleMutationError(f"Subject {subject_id} belongs to another organization")
            self._assignments[subject_id] = (role_name, organization_id)

    async def get_assignment(self, subject_id: str) -> tuple[str, str] | None:
        return self._assignments.get(subject_id)

    async def list_roles(self, organization_id: str | None = None) -> list[Role]:
        return [
            r
            for r in self._roles.values()
            if r.is_system or (organization_id is not None and r.organization_id == organization_id)
        ]


@runtime_checkable
class PermissionCache(Protocol):
    """Shared role -> permission-set map. Must be safe under concurrent use."""

    @property
    def generation(self) -> int:
        """Incremented by every invalidate()."""
        ...

    def get(self, key: str) -> tuple[Permission, ...] | None:
        ...

    def set(self, key: str, permissions: tuple[Permission, ...], *, generation: int) -> bool:
        """Store unless an invalidation happened since `generation` was read."""
        ...

    def invalidate(self) -> None:
        """Drop every entry."""
        ...


class InMemoryPermissionCache:
    """
    Thread-safe in-memory permission cache.

    Coarse invalidation (clear-all) keeps locking simple; the price is an
    occasional cold lookup after a role write.
    """

    def __init__(self) -> None:
        self._entries: dict[str, tuple[Permission, ...]] = {}
        self._generation = 0
        self._lock = threading.RLock()

    @property
    def generation(self) -> int:
        with self._lock:
            return self._generation

    def get(self, key: str) -> tuple[Permission, ...] | None:
        with self._lock:
            return self._entries.get(key)

    def set(self, key: str, permissions: tuple[Permission, ...], *, generation: int) -> bool:
        with self._lock:
            if generation != self._generation:
                return False
            self._entries[key] = permissions
            return True

    def invalidate(self) -> None:
        with self._lock:
            self._entries.clear()
            self._generation += 1

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)
