"""
Rejection taxonomy and exceptions for Flowgate.

Every expected outcome of the gateway (missing credentials, denied permission,
rate limit, ...) is a RejectionReason with a fixed HTTP status. Exceptions are
reserved for programming errors and store failures; the gateway converts the
latter into fail-closed rejections.
"""

from __future__ import annotations

from enum import Enum


class RejectionReason(str, Enum):
    """Why a request was stopped before reaching business logic."""

    UNAUTHENTICATED = "unauthenticated"
    INVALID_CREDENTIAL = "invalid_credential"
    CREDENTIAL_EXPIRED = "credential_expired"
    PERMISSION_DENIED = "permission_denied"
    RATE_LIMIT_EXCEEDED = "rate_limit_exceeded"
    INVALID_CSRF_TOKEN = "invalid_csrf_token"
    PAYLOAD_TOO_LARGE = "payload_too_large"
    UNSUPPORTED_CONTENT_TYPE = "unsupported_content_type"
    UNSUPPORTED_API_VERSION = "unsupported_api_version"
    INTERNAL_FAILURE = "internal_failure"

    @property
    def status_code(self) -> int:
        """HTTP status surfaced to the caller."""
        return _STATUS_CODES[self]

    @property
    def message(self) -> str:
        """Minimal client-facing message (no internal details)."""
        return _MESSAGES[self]


_STATUS_CODES: dict[RejectionReason, int] = {
    RejectionReason.UNAUTHENTICATED: 401,
    RejectionReason.INVALID_CREDENTIAL: 401,
    RejectionReason.CREDENTIAL_EXPIRED: 401,
    RejectionReason.PERMISSION_DENIED: 403,
    RejectionReason.INVALID_CSRF_TOKEN: 403,
    RejectionReason.RATE_LIMIT_EXCEEDED: 429,
    RejectionReason.PAYLOAD_TOO_LARGE: 413,
    RejectionReason.UNSUPPORTED_CONTENT_TYPE: 415,
    RejectionReason.UNSUPPORTED_API_VERSION: 400,
    RejectionReason.INTERNAL_FAILURE: 500,
}

_MESSAGES: dict[RejectionReason, str] = {
    RejectionReason.UNAUTHENTICATED: "Authentication required",
    RejectionReason.INVALID_CREDENTIAL: "Invalid authentication",
    RejectionReason.CREDENTIAL_EXPIRED: "Credential expired",
    RejectionReason.PERMISSION_DENIED: "Permission denied",
    RejectionReason.INVALID_CSRF_TOKEN: "Invalid CSRF token",
    RejectionReason.RATE_LIMIT_EXCEEDED: "Too many requests",
    RejectionReason.PAYLOAD_TOO_LARGE: "Request entity too large",
    RejectionReason.UNSUPPORTED_CONTENT_TYPE: "Unsupported Media Type",
    RejectionReason.UNSUPPORTED_API_VERSION: "API version mismatch",
    RejectionReason.INTERNAL_FAILURE: "Internal error",
}


class FlowgateError(Exception):
    """Base class for Flowgate exceptions."""


class StoreUnavailableError(FlowgateError):
    """A backing store (credentials, roles, audit) failed or timed out."""


class RoleNotFoundError(FlowgateError):
    """Role does not exist in the requested organization."""


class RoleMutationError(FlowgateError):
    """Role write refused (system role, name clash, or actor not an org admin)."""


class PayloadTooLargeError(FlowgateError):
    """Request body crossed the configured ceiling while being read."""

    def __init__(self, limit: int) -> None:
        super().__init__(f"Request body exceeds {limit} bytes")
        self.limit = limit
