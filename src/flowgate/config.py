"""
Gateway configuration.

GatewaySettings holds every tunable of the request gateway. Build it directly
in code, or from FLOWGATE_* environment variables with from_env().
"""

from __future__ import annotations

import os
from collections.abc import Mapping
from dataclasses import dataclass, field
from pathlib import Path

FIFTEEN_MINUTES_MS = 15 * 60 * 1000
TEN_MEGABYTES = 10 * 1024 * 1024


@dataclass(frozen=True)
class RateLimitSetting:
    """A named limiter and the path prefixes routed to it."""

    name: str
    limit: int
    window_ms: int
    path_prefixes: tuple[str, ...] = ()


def _default_rate_limits() -> tuple[RateLimitSetting, ...]:
    return (
        RateLimitSetting("auth", 5, FIFTEEN_MINUTES_MS, ("/api/v1/auth",)),
        RateLimitSetting("api", 100, FIFTEEN_MINUTES_MS, ("/api/v1",)),
    )


@dataclass
class GatewaySettings:
    """
    Configuration for the Flowgate request gateway.

    Bearer secrets: the first entry of jwt_secrets is the active key, the rest
    are accepted during rotation.
    """

    jwt_secrets: tuple[str, ...] = ()
    jwt_issuer: str | None = "workflow-platform"
    jwt_audience: str | None = "api"
    jwt_leeway_seconds: int = 0

    max_body_bytes: int = TEN_MEGABYTES
    allowed_content_types: tuple[str, ...] = (
        "application/json",
        "application/x-www-form-urlencoded",
    )

    credential_timeout: float = 2.0
    permission_timeout: float = 2.0
    audit_timeout: float = 2.0
    audit_queue_size: int = 10_000
    audit_log_path: Path | None = None

    csrf_enabled: bool = True
    csrf_ttl_seconds: int = 3600
    csrf_exempt_paths: tuple[str, ...] = ()

    public_paths: tuple[str, ...] = (
        "/health",
        "/api/v1/docs",
        "/api/v1/auth/login",
        "/api/v1/auth/register",
        "/api/v1/public",
    )

    rate_limits: tuple[RateLimitSetting, ...] = field(default_factory=_default_rate_limits)
    sanitize_input: bool = True
    api_version: str | None = None
    api_version_paths: tuple[str, ...] = ("/api/v1",)
    hsts_max_age: int = 31_536_000

    @classmethod
    def from_env(cls, environ: Mapping[str, str] | None = None) -> GatewaySettings:
        """
        Load settings from FLOWGATE_* variables, falling back to defaults.

        Variables:
            FLOWGATE_JWT_SECRET, FLOWGATE_JWT_PREVIOUS_SECRETS (comma-separated)
            FLOWGATE_JWT_ISSUER, FLOWGATE_JWT_AUDIENCE, FLOWGATE_JWT_LEEWAY
            FLOWGATE_MAX_BODY_BYTES, FLOWGATE_CREDENTIAL_TIMEOUT,
            FLOWGATE_PERMISSION_TIMEOUT, FLOWGATE_AUDIT_TIMEOUT, FLOWGATE_AUDIT_LOG
            FLOWGATE_CSRF_ENABLED, FLOWGATE_CSRF_TTL, FLOWGATE_CSRF_EXEMPT_PATHS
            FLOWGATE_PUBLIC_PATHS (comma-separated)
            FLOWGATE_AUTH_RATE_LIMIT, FLOWGATE_API_RATE_LIMIT, FLOWGATE_RATE_WINDOW_MS
            FLOWGATE_API_VERSION (unset disables the version check)
        """
        env = os.environ if environ is None else environ
        defaults = cls()

        secrets_ = [env["FLOWGATE_JWT_SECRET"]] if env.get("FLOWGATE_JWT_SECRET") else []
        secrets_ += _split(env.get("FLOWGATE_JWT_PREVIOUS_SECRETS"))

        window_ms = int(env.get("FLOWGATE_RATE_WINDOW_MS", FIFTEEN_MINUTES_MS))
        rate_limits = (
            RateLimitSetting(
                "auth", int(env.get("FLOWGATE_AUTH_RATE_LIMIT", 5)), window_ms, ("/api/v1/auth",)
            ),
            RateLimitSetting(
                "api", int(env.get("FLOWGATE_API_RATE_LIMIT", 100)), window_ms, ("/api/v1",)
            ),
        )

        audit_log = env.get("FLOWGATE_AUDIT_LOG")

        return cls(
            jwt_secrets=tuple(secrets_),
            jwt_issuer=env.get("FLOWGATE_JWT_ISSUER", defaults.jwt_issuer) or None,
            jwt_audience=env.get("FLOWGATE_JWT_AUDIENCE", defaults.jwt_audience) or None,
            jwt_leeway_seconds=int(env.get("FLOWGATE_JWT_LEEWAY", defaults.jwt_leeway_seconds)),
            max_body_bytes=int(env.get("FLOWGATE_MAX_BODY_BYTES", defaults.max_body_bytes)),
            credential_timeout=float(
                env.get("FLOWGATE_CREDENTIAL_TIMEOUT", defaults.credential_timeout)
            ),
            permission_timeout=float(
                env.get("FLOWGATE_PERMISSION_TIMEOUT", defaults.permission_timeout)
            ),
            audit_timeout=float(env.get("FLOWGATE_AUDIT_TIMEOUT", defaults.audit_timeout)),
            audit_log_path=Path(audit_log) if audit_log else None,
            csrf_enabled=_truthy(env.get("FLOWGATE_CSRF_ENABLED", "true")),
            csrf_ttl_seconds=int(env.get("FLOWGATE_CSRF_TTL", defaults.csrf_ttl_seconds)),
            csrf_exempt_paths=tuple(_split(env.get("FLOWGATE_CSRF_EXEMPT_PATHS")))
            or defaults.csrf_exempt_paths,
            public_paths=tuple(_split(env.get("FLOWGATE_PUBLIC_PATHS"))) or defaults.public_paths,
            rate_limits=rate_limits,
            api_version=env.get("FLOWGATE_API_VERSION") or None,
        )


def _split(value: str | None) -> list[str]:
    if not value:
        return []
    return [part.strip() for part in value.split(",") if part.strip()]


def _truthy(value: str) -> bool:
    return value.strip().lower() in ("1", "true", "yes", "on")
