"""
Permission Engine for Flowgate.

The "Can you do this?" logic - RBAC enforcement with default deny.
Evaluates an Identity's role permissions against (resource, action) pairs,
with wildcard and ownership matching.

Zero-trust: If no permission matches, deny. Every allow is attributable to
exactly one matched Permission.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Iterable
from dataclasses import dataclass, field
from typing import Any

from flowgate.audit import AuditEventType, AuditLogger
from flowgate.core.identity import (
    MANAGE_OWN,
    WILDCARD,
    Condition,
    Identity,
    Permission,
    Role,
    perm,
)
from flowgate.engines.role_store import InMemoryPermissionCache, PermissionCache, RoleStore
from flowgate.errors import RoleMutationError, RoleNotFoundError, StoreUnavailableError

logger = logging.getLogger(__name__)


# Baseline permission sets of the seeded system roles. Order is significant.
SYSTEM_ROLES: dict[str, tuple[Permission, ...]] = {
    "admin": (perm(WILDCARD, WILDCARD),),
    "developer": (
        perm("workflows", WILDCARD),
        perm("agents", WILDCARD),
        perm("optimizations", WILDCARD),
        perm("metrics", "read"),
        perm("logs", "read"),
        perm("api_keys", MANAGE_OWN),
    ),
    "analyst": (
        perm("workflows", "read"),
        perm("agents", "read"),
        perm("optimizations", "read"),
        perm("metrics", WILDCARD),
        perm("reports", WILDCARD),
        perm("logs", "read"),
    ),
    "viewer": (
        perm("workflows", "read"),
        perm("agents", "read"),
        perm("metrics", "read"),
        perm("reports", "read"),
    ),
}

RESOURCE_ACTIONS: dict[str, tuple[str, ...]] = {
    "workflows": ("create", "read", "update", "delete", "execute", "optimize"),
    "agents": ("create", "read", "update", "delete", "start", "stop", "configure"),
    "optimizations": ("create", "read", "approve", "reject", "apply"),
    "metrics": ("read", "export", "analyze"),
    "reports": ("create", "read", "export", "schedule"),
    "api_keys": ("create", "read", "revoke", MANAGE_OWN),
    "users": ("create", "read", "update", "delete", "assign_role"),
    "roles": ("create", "read", "update"),
    "settings": ("read", "update"),
}

DEFAULT_ACTIONS: tuple[str, ...] = ("create", "read", "update", "delete")


def permission_matches(
    permission: Permission,
    resource: str,
    action: str,
    subject_id: str,
    resource_owner_id: str | None = None,
) -> bool:
    """
    Check if a single permission grants (resource, action).

    - resource and action match exactly or by "*"
    - a manage_own permission covers any action on the resource, but only for
      resources owned by the subject
    - the OWNER_SELF condition requires ownership however the action matched
    """
    if permission.resource != WILDCARD and permission.resource != resource:
        return False

    owns = resource_owner_id is not None and resource_owner_id == subject_id

    if permission.action == MANAGE_OWN:
        if not owns:
            return False
    elif permission.action != WILDCARD and permission.action != action:
        return False

    if permission.condition == Condition.OWNER_SELF and not owns:
        return False

    return True


@dataclass
class PermissionDecision:
    """
    Result of a permission evaluation.

    Contains the decision and the matched permission for audit purposes.
    """

    allowed: bool
    reason: str
    matched: Permission | None = None
    role: str | None = None
    failed_closed: bool = False
    metadata: dict[str, Any] = field(default_factory=dict)


class PermissionEngine:
    """
    RBAC Permission Engine.

    Permission sets are loaded from the RoleStore per role and cached. Role
    writes go through this engine so the cache is invalidated together with
    the write.

    Usage:
        engine = PermissionEngine(InMemoryRoleStore())
        await engine.reconcile_system_roles()

        if await engine.has_permission(identity, "workflows", "update", owner_id):
            ...
    """

    def __init__(
        self,
        store: RoleStore,
        *,
        cache: PermissionCache | None = None,
        lookup_timeout: float = 2.0,
        audit: AuditLogger | None = None,
    ) -> None:
        """
        Initialize permission engine.

        Args:
            store: Role store
            cache: Permission cache (defaults to InMemoryPermissionCache)
            lookup_timeout: Bound on role store reads, in seconds
            audit: Receives a ROLE_CHANGED event for every role write
        """
        self._store = store
        self._cache = cache if cache is not None else InMemoryPermissionCache()
        self._lookup_timeout = lookup_timeout
        self._audit = audit
        self._write_lock = asyncio.Lock()

    @property
    def cache(self) -> PermissionCache:
        return self._cache

    async def reconcile_system_roles(self) -> list[Role]:
        """
        Seed or reset the system roles to their baseline permission sets.

        Custom roles are never touched. Safe to run on every start.
        """
        async with self._write_lock:
            try:
                roles = [
                    await self._store.upsert_system_role(name, permissions)
                    for name, permissions in SYSTEM_ROLES.items()
                ]
            finally:
                self._cache.invalidate()
        logger.info("Reconciled %d system roles", len(roles))
        return roles

    async def get_role_permissions(
        self, role: str, organization_id: str | None = None
    ) -> tuple[Permission, ...]:
        """
        Permission set for a role, served from cache when warm.

        Raises:
            StoreUnavailableError: the role store failed or timed out
        """
        key = f"{organization_id or ''}:{role}"
        cached = self._cache.get(key)
        if cached is not None:
            return cached

        generation = self._cache.generation
        try:
            found = await asyncio.wait_for(
                self._store.get_role(role, organization_id),
                timeout=self._lookup_timeout,
            )
        except asyncio.TimeoutError as e:
            raise StoreUnavailableError(
                f"Role lookup for {role!r} timed out after {self._lookup_timeout:.2f}s"
            ) from e
        except Exception as e:
            raise StoreUnavailableError(f"Role lookup for {role!r} failed: {e}") from e
        if found is None:
            return ()

        self._cache.set(key, found.permissions, generation=generation)
        return found.permissions

    async def evaluate(
        self,
        identity: Identity,
        resource: str,
        action: str,
        resource_owner_id: str | None = None,
    ) -> PermissionDecision:
        """
        Evaluate with full decision details.

        Use this when the reason or the matched permission is needed (audit).
        """
        try:
            permissions = await self.get_role_permissions(identity.role, identity.organization_id)
        except StoreUnavailableError:
            logger.exception(
                "Permission lookup failed; denying",
                extra={
                    "subject_id": identity.subject_id,
                    "role": identity.role,
                    "resource": resource,
                    "action": action,
                },
            )
            return PermissionDecision(
                allowed=False,
                reason="Permission lookup failed",
                role=identity.role,
                failed_closed=True,
            )

        matched: Permission | None = None
        for permission in permissions:
            if permission_matches(
                permission, resource, action, identity.subject_id, resource_owner_id
            ):
                matched = permission
                break

        if matched is None:
            return PermissionDecision(
                allowed=False,
                reason=f"No permission of role {identity.role!r} grants {resource}:{action}",
                role=identity.role,
            )

        if identity.key_permissions is not None and not any(
            permission_matches(kp, resource, action, identity.subject_id, resource_owner_id)
            for kp in identity.key_permissions
        ):
            return PermissionDecision(
                allowed=False,
                reason=f"API key scope does not include {resource}:{action}",
                role=identity.role,
                metadata={"key_id": identity.key_id},
            )

        return PermissionDecision(
            allowed=True,
            reason=f"Allowed by {matched} of role {identity.role!r}",
            matched=matched,
            role=identity.role,
        )

    async def has_permission(
        self,
        identity: Identity,
        resource: str,
        action: str,
        resource_owner_id: str | None = None,
    ) -> bool:
        """
        Check a single permission.

        Returns:
            True if some permission of the identity's role matches
        """
        decision = await self.evaluate(identity, resource, action, resource_owner_id)
        return decision.allowed

    async def has_any_permission(
        self,
        identity: Identity,
        checks: Iterable[tuple[str, str]],
        resource_owner_id: str | None = None,
    ) -> bool:
        """True on the first (resource, action) pair that is allowed."""
        for resource, action in checks:
            if await self.has_permission(identity, resource, action, resource_owner_id):
                return True
        return False

    async def has_all_permissions(
        self,
        identity: Identity,
        checks: Iterable[tuple[str, str]],
        resource_owner_id: str | None = None,
    ) -> bool:
        """False on the first (resource, action) pair that is denied."""
        for resource, action in checks:
            if not await self.has_permission(identity, resource, action, resource_owner_id):
                return False
        return True

    async def get_effective_permissions(self, identity: Identity) -> tuple[Permission, ...]:
        """Permissions the identity's role grants, in evaluation order."""
        return await self.get_role_permissions(identity.role, identity.organization_id)

    @staticmethod
    def get_resource_actions(resource: str) -> tuple[str, ...]:
        """Known actions for a resource type."""
        return RESOURCE_ACTIONS.get(resource, DEFAULT_ACTIONS)

    # -------------------------------------------------------------------------
    # Role mutations (organization admins only)
    # -------------------------------------------------------------------------

    async def create_role(
        self,
        actor: Identity,
        name: str,
        permissions: Iterable[Permission],
        *,
        description: str = "",
    ) -> Role:
        """
        Create a custom role in the actor's organization.

        Raises:
            RoleMutationError: actor is not an org admin, or name is reserved/taken
        """
        await self._require_org_admin(actor, "roles", "create")
        if name in SYSTEM_ROLES:
            raise RoleMutationError(f"Role name {name!r} is reserved for a system role")

        async with self._write_lock:
            try:
                role = await self._store.create_role(
                    name, tuple(permissions), actor.organization_id, description
                )
            finally:
                self._cache.invalidate()

        logger.info(
            "Created role %s in organization %s",
            name,
            actor.organization_id,
            extra={"actor": actor.subject_id},
        )
        self._record_role_change(actor, "create_role", role=name, role_id=role.role_id)
        return role

    async def update_role_permissions(
        self,
        actor: Identity,
        role_id: str,
        permissions: Iterable[Permission],
    ) -> Role:
        """
        Replace a custom role's permission set.

        Raises:
            RoleMutationError: actor is not an org admin, or the role is a system role
            RoleNotFoundError: no such custom role in the actor's organization
        """
        await self._require_org_admin(actor, "roles", "update")

        existing = await self._store.get_role_by_id(role_id)
        if existing is not None and existing.is_system:
            raise RoleMutationError("System roles can only be changed by reconciliation")

        async with self._write_lock:
            try:
                role = await self._store.update_permissions(
                    role_id, tuple(permissions), actor.organization_id
                )
            finally:
                self._cache.invalidate()

        logger.info(
            "Updated permissions of role %s",
            role.name,
            extra={"actor": actor.subject_id, "role_id": role_id},
        )
        self._record_role_change(actor, "update_permissions", role=role.name, role_id=role_id)
        return role

    async def assign_role(self, actor: Identity, subject_id: str, role_name: str) -> None:
        """
        Assign a role (system or the organization's custom role) to a subject.

        Raises:
            RoleMutationError: actor is not an org admin, or the subject is
                assigned in another organization
            RoleNotFoundError: role does not exist for the organization
        """
        await self._require_org_admin(actor, "users", "assign_role")

        current = await self._store.get_assignment(subject_id)
        if current is not None and current[1] != actor.organization_id:
            raise RoleMutationError(f"Subject {subject_id} is not in the actor's organization")

        role = await self._store.get_role(role_name, actor.organization_id)
        if role is None:
            raise RoleNotFoundError(f"Unknown role {role_name!r}")

        async with self._write_lock:
            try:
                await self._store.assign_role(subject_id, role_name, actor.organization_id)
            finally:
                self._cache.invalidate()

        logger.info(
            "Assigned role %s to %s",
            role_name,
            subject_id,
            extra={"actor": actor.subject_id},
        )
        self._record_role_change(actor, "assign_role", role=role_name, subject=subject_id)

    async def _require_org_admin(self, actor: Identity, resource: str, action: str) -> None:
        if not await self.has_permission(actor, resource, action):
            raise RoleMutationError(
                f"Subject {actor.subject_id} may not {action} {resource} in organization"
            )

    def _record_role_change(self, actor: Identity, operation: str, **metadata: Any) -> None:
        if self._audit is None:
            return
        self._audit.log_security_event(
            AuditEventType.ROLE_CHANGED,
            identity=actor,
            resource="roles",
            action=operation,
            metadata=metadata,
        )
