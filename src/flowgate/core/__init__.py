"""Core identity, credential and correlation models."""

from flowgate.core.correlation import (
    CorrelatedLogger,
    CorrelationHeaders,
    add_trace_context,
    correlation_context,
    generate_correlation_id,
    get_correlation_id,
    get_trace_context,
)
from flowgate.core.credentials import (
    ApiKeyRecord,
    CredentialStore,
    InMemoryCredentialStore,
    TokenKeyring,
    generate_api_key,
    hash_api_key,
)
from flowgate.core.identity import AuthMethod, Condition, Identity, Permission, Role, perm

__all__ = [
    "Identity",
    "AuthMethod",
    "Permission",
    "Condition",
    "Role",
    "perm",
    "ApiKeyRecord",
    "CredentialStore",
    "InMemoryCredentialStore",
    "TokenKeyring",
    "hash_api_key",
    "generate_api_key",
    # Correlation
    "correlation_context",
    "get_correlation_id",
    "generate_correlation_id",
    "get_trace_context",
    "add_trace_context",
    "CorrelationHeaders",
    "CorrelatedLogger",
]
