"""
Flowgate - Request authorization gateway for the workflow platform.

Every inbound API call is authenticated, checked against the role/permission
model, rate limited, and audited before it reaches business logic.
Zero-trust: anything ambiguous fails closed.
"""

from flowgate.audit import (
    AuditEvent,
    AuditEventType,
    AuditLogger,
    AuditStore,
    InMemoryAuditStore,
    JsonlAuditStore,
    verify_chain,
)
from flowgate.config import GatewaySettings, RateLimitSetting
from flowgate.core.correlation import CorrelatedLogger, correlation_context, get_correlation_id
from flowgate.core.credentials import ApiKeyRecord, InMemoryCredentialStore, TokenKeyring
from flowgate.core.identity import AuthMethod, Condition, Identity, Permission, Role, perm
from flowgate.engines.authentication import CredentialVerifier, VerificationResult
from flowgate.engines.permissions import PermissionDecision, PermissionEngine
from flowgate.engines.rate_limiter import (
    InMemoryCounterStore,
    RateLimiterRegistry,
    RateLimitInfo,
    RedisCounterStore,
    SlidingWindowRateLimiter,
)
from flowgate.engines.role_store import InMemoryRoleStore
from flowgate.errors import RejectionReason
from flowgate.gateway.pipeline import Gateway, GatewayStage, RouteRule

__version__ = "0.1.0"

__all__ = [
    # Identity
    "Identity",
    "AuthMethod",
    "Permission",
    "Condition",
    "Role",
    "perm",
    # Credentials
    "ApiKeyRecord",
    "InMemoryCredentialStore",
    "TokenKeyring",
    "CredentialVerifier",
    "VerificationResult",
    # Authorization
    "PermissionEngine",
    "PermissionDecision",
    "InMemoryRoleStore",
    # Rate limiting
    "SlidingWindowRateLimiter",
    "RateLimiterRegistry",
    "RateLimitInfo",
    "InMemoryCounterStore",
    "RedisCounterStore",
    # Audit
    "AuditEvent",
    "AuditEventType",
    "AuditLogger",
    "AuditStore",
    "InMemoryAuditStore",
    "JsonlAuditStore",
    "verify_chain",
    # Gateway
    "Gateway",
    "GatewayStage",
    "RouteRule",
    "GatewaySettings",
    "RateLimitSetting",
    "RejectionReason",
    # Correlation
    "correlation_context",
    "get_correlation_id",
    "CorrelatedLogger",
]
