"""Credential, permission and rate-limit engines."""

from flowgate.engines.authentication import (
    AuthErrorCode,
    CredentialVerifier,
    VerificationResult,
    create_bearer_token,
)
from flowgate.engines.permissions import (
    SYSTEM_ROLES,
    PermissionDecision,
    PermissionEngine,
    permission_matches,
)
from flowgate.engines.rate_limiter import (
    CounterStore,
    InMemoryCounterStore,
    RateLimiterRegistry,
    RateLimitInfo,
    RateLimitResult,
    RedisCounterStore,
    SlidingWindowRateLimiter,
)
from flowgate.engines.role_store import (
    InMemoryPermissionCache,
    InMemoryRoleStore,
    PermissionCache,
    RoleStore,
)

__all__ = [
    # Authentication
    "CredentialVerifier",
    "VerificationResult",
    "AuthErrorCode",
    "create_bearer_token",
    # Permissions
    "PermissionEngine",
    "PermissionDecision",
    "permission_matches",
    "SYSTEM_ROLES",
    "RoleStore",
    "InMemoryRoleStore",
    "PermissionCache",
    "InMemoryPermissionCache",
    # Rate limiting
    "CounterStore",
    "InMemoryCounterStore",
    "RedisCounterStore",
    "SlidingWindowRateLimiter",
    "RateLimiterRegistry",
    "RateLimitInfo",
    "RateLimitResult",
]
