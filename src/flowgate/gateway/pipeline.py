"""
Request Gateway for Flowgate.

Every request walks an ordered list of stages:

    RECEIVED -> TRANSPORT_CHECKED -> VERSION_CHECKED -> CREDENTIAL_VERIFIED
             -> RATE_CHECKED -> CSRF_CHECKED -> PERMISSION_CHECKED -> DISPATCHED

Each stage returns Continue(next_state) or Reject(reason). The first Reject
ends the walk; it is audited and turned into the response by the HTTP adapter.
The Audit Logger observes every outcome but never takes part in a decision.
"""

from __future__ import annotations

import logging
import re
import time
from collections.abc import Awaitable, Callable, Iterable, Mapping
from dataclasses import dataclass, field
from enum import Enum
from functools import cached_property
from typing import Any

from flowgate.audit import AuditEventType, AuditLogger
from flowgate.config import GatewaySettings
from flowgate.core.correlation import CorrelatedLogger, add_trace_context
from flowgate.core.identity import Identity
from flowgate.engines.authentication import CredentialVerifier
from flowgate.engines.permissions import PermissionDecision, PermissionEngine
from flowgate.engines.rate_limiter import RateLimiterRegistry, RateLimitInfo
from flowgate.errors import PayloadTooLargeError, RejectionReason
from flowgate.gateway import sanitize, transport
from flowgate.gateway.csrf import CSRF_FIELD, CsrfTokenStore

logger = CorrelatedLogger(logging.getLogger(__name__))


class GatewayStage(str, Enum):
    """States of a request inside the gateway."""

    RECEIVED = "received"
    TRANSPORT_CHECKED = "transport_checked"
    VERSION_CHECKED = "version_checked"
    CREDENTIAL_VERIFIED = "credential_verified"
    RATE_CHECKED = "rate_checked"
    CSRF_CHECKED = "csrf_checked"
    PERMISSION_CHECKED = "permission_checked"
    DISPATCHED = "dispatched"
    REJECTED = "rejected"


@dataclass(frozen=True)
class Continue:
    """Stage passed; the request is now in `stage`."""

    stage: GatewayStage


@dataclass(frozen=True)
class Reject:
    """Stage failed; the request ends here with `reason`."""

    reason: RejectionReason
    stage: GatewayStage
    detail: str | None = None
    headers: dict[str, str] = field(default_factory=dict)

    @property
    def status_code(self) -> int:
        return self.reason.status_code


StageResult = Continue | Reject

_REJECTION_EVENTS: dict[RejectionReason, AuditEventType] = {
    RejectionReason.UNAUTHENTICATED: AuditEventType.AUTH_FAILED,
    RejectionReason.INVALID_CREDENTIAL: AuditEventType.AUTH_FAILED,
    RejectionReason.CREDENTIAL_EXPIRED: AuditEventType.AUTH_FAILED,
    RejectionReason.PERMISSION_DENIED: AuditEventType.PERMISSION_DENIED,
    RejectionReason.RATE_LIMIT_EXCEEDED: AuditEventType.RATE_LIMIT_EXCEEDED,
    RejectionReason.INVALID_CSRF_TOKEN: AuditEventType.CSRF_REJECTED,
    RejectionReason.PAYLOAD_TOO_LARGE: AuditEventType.PAYLOAD_TOO_LARGE,
    RejectionReason.UNSUPPORTED_CONTENT_TYPE: AuditEventType.UNSUPPORTED_CONTENT_TYPE,
}

_PARAM = re.compile(r"\{([A-Za-z_][A-Za-z0-9_]*)\}")


@dataclass(frozen=True)
class RouteRule:
    """
    A protected route: requests matching path and method need resource:action.

    path is a template such as "/api/v1/users/{user_id}/api_keys". owner_param
    names the path parameter (or body field) holding the resource owner's id.
    """

    path: str
    methods: frozenset[str]
    resource: str
    action: str
    owner_param: str | None = None

    @classmethod
    def of(
        cls,
        path: str,
        methods: Iterable[str],
        resource: str,
        action: str,
        owner_param: str | None = None,
    ) -> RouteRule:
        return cls(path, frozenset(m.upper() for m in methods), resource, action, owner_param)

    @cached_property
    def pattern(self) -> re.Pattern[str]:
        escaped = re.escape(self.path).replace(r"\{", "{").replace(r"\}", "}")
        regex = _PARAM.sub(lambda m: f"(?P<{m.group(1)}>[^/]+)", escaped)
        return re.compile(f"^{regex}/?$")

    def match(self, method: str, path: str) -> dict[str, str] | None:
        if method.upper() not in self.methods:
            return None
        m = self.pattern.match(path)
        return m.groupdict() if m else None


@dataclass
class GatewayRequest:
    """
    Request state carried through the stages.

    headers are lower-cased. body_reader, when set, streams the raw body;
    the transport stage replaces raw_body/body with the sanitized values.
    """

    method: str
    path: str
    headers: dict[str, str] = field(default_factory=dict)
    client_ip: str | None = None
    query_string: str = ""
    body_reader: Callable[[], Awaitable[bytes]] | None = None

    raw_body: bytes = b""
    body: Any = None
    body_rewritten: bool = False
    path_params: dict[str, str] = field(default_factory=dict)

    stage: GatewayStage = GatewayStage.RECEIVED
    identity: Identity | None = None
    route: RouteRule | None = None
    rate_limit: RateLimitInfo | None = None
    decision: PermissionDecision | None = None
    csrf_token: str | None = None
    started_at: float = field(default_factory=time.perf_counter)

    def header(self, name: str) -> str | None:
        return self.headers.get(name.lower())

    @property
    def user_agent(self) -> str | None:
        return self.header("user-agent")

    @property
    def media_type(self) -> str | None:
        return transport.media_type(self.header("content-type"))

    @property
    def is_safe_method(self) -> bool:
        return self.method.upper() in transport.SAFE_METHODS

    def body_field(self, name: str) -> Any:
        return self.body.get(name) if isinstance(self.body, Mapping) else None


Stage = Callable[[GatewayRequest], Awaitable[StageResult]]
OwnerResolver = Callable[[GatewayRequest, RouteRule], Awaitable[str | None]]


class Gateway:
    """
    Composes verifier, rate limiter, CSRF guard, and permission engine.

    Usage:
        gateway = Gateway(
            settings=settings,
            verifier=verifier,
            permissions=engine,
            rate_limiters=registry,
            audit=audit,
            csrf=CsrfTokenStore(),
            routes=[RouteRule.of("/api/v1/workflows", ["POST"], "workflows", "create")],
        )

        result = await gateway.process(request)
        if isinstance(result, Reject):
            respond(result.status_code, result.reason.message)
    """

    def __init__(
        self,
        *,
        settings: GatewaySettings,
        verifier: CredentialVerifier,
        permissions: PermissionEngine,
        rate_limiters: RateLimiterRegistry,
        audit: AuditLogger,
        csrf: CsrfTokenStore | None = None,
        routes: Iterable[RouteRule] = (),
        owner_resolver: OwnerResolver | None = None,
    ) -> None:
        self.settings = settings
        self.verifier = verifier
        self.permissions = permissions
        self.rate_limiters = rate_limiters
        self.audit = audit
        self.csrf = csrf
        self._routes: list[RouteRule] = list(routes)
        self._owner_resolver = owner_resolver
        self._started = False

        self.stages: list[Stage] = [
            self.check_transport,
            self.check_api_version,
            self.verify_credentials,
            self.check_rate_limit,
            self.check_csrf,
            self.check_permission,
        ]

    # -------------------------------------------------------------------------
    # Lifecycle
    # -------------------------------------------------------------------------

    async def startup(self) -> None:
        """Reconcile system roles and start the audit worker. Idempotent."""
        if self._started:
            return
        await self.permissions.reconcile_system_roles()
        await self.audit.start()
        self._started = True

    async def shutdown(self) -> None:
        await self.verifier.drain()
        await self.audit.stop()
        self._started = False

    # -------------------------------------------------------------------------
    # Routing
    # -------------------------------------------------------------------------

    def add_route(self, rule: RouteRule) -> None:
        self._routes.append(rule)

    @property
    def routes(self) -> list[RouteRule]:
        return list(self._routes)

    def match_route(self, method: str, path: str) -> tuple[RouteRule | None, dict[str, str]]:
        for rule in self._routes:
            params = rule.match(method, path)
            if params is not None:
                return rule, params
        return None, {}

    def is_public(self, path: str) -> bool:
        return _matches_prefix(path, self.settings.public_paths)

    # -------------------------------------------------------------------------
    # Pipeline
    # -------------------------------------------------------------------------

    async def process(self, request: GatewayRequest) -> StageResult:
        """
        Run every stage in order.

        Returns:
            Continue(DISPATCHED) when the request may reach business logic,
            else the first Reject
        """
        for stage in self.stages:
            result = await stage(request)
            if isinstance(result, Reject):
                request.stage = GatewayStage.REJECTED
                self._audit_rejection(request, result)
                return result
            request.stage = result.stage

        request.stage = GatewayStage.DISPATCHED
        return Continue(GatewayStage.DISPATCHED)

    async def check_transport(self, request: GatewayRequest) -> StageResult:
        """Payload ceiling, content-type whitelist, body read and sanitization."""
        stage = GatewayStage.TRANSPORT_CHECKED
        settings = self.settings

        if transport.check_content_length(request.headers, settings.max_body_bytes):
            return Reject(
                RejectionReason.PAYLOAD_TOO_LARGE,
                stage,
                detail=f"declared length {request.header('content-length')}",
                headers={"Connection": "close"},
            )

        if transport.check_content_type(
            request.method, request.headers, settings.allowed_content_types
        ):
            return Reject(
                RejectionReason.UNSUPPORTED_CONTENT_TYPE,
                stage,
                detail=request.header("content-type") or "missing",
            )

        if request.body_reader is not None:
            try:
                request.raw_body = await request.body_reader()
            except PayloadTooLargeError as e:
                return Reject(
                    RejectionReason.PAYLOAD_TOO_LARGE,
                    stage,
                    detail=str(e),
                    headers={"Connection": "close"},
                )
            request.body_reader = None

        request.body = sanitize.parse_body(request.raw_body, request.media_type)

        if settings.sanitize_input:
            if request.query_string:
                request.query_string = sanitize.sanitize_query_string(request.query_string)
            if request.body is not None:
                request.body = sanitize.sanitize_value(request.body)
                request.raw_body = sanitize.encode_body(request.body, request.media_type)
                request.body_rewritten = True

        return Continue(stage)

    async def check_api_version(self, request: GatewayRequest) -> StageResult:
        """Requests under the versioned prefixes must not ask for another version."""
        stage = GatewayStage.VERSION_CHECKED
        supported = self.settings.api_version
        if supported is None or not _matches_prefix(request.path, self.settings.api_version_paths):
            return Continue(stage)

        requested = request.header("x-api-version") or supported
        if requested != supported:
            return Reject(
                RejectionReason.UNSUPPORTED_API_VERSION,
                stage,
                detail=f"requested {requested}, supported {supported}",
                headers={"X-API-Version": supported},
            )
        return Continue(stage)

    async def verify_credentials(self, request: GatewayRequest) -> StageResult:
        """Resolve the Identity. Public paths pass without credentials."""
        stage = GatewayStage.CREDENTIAL_VERIFIED
        api_key = request.header("x-api-key")
        authorization = request.header("authorization")

        if self.is_public(request.path) and not (api_key or authorization):
            return Continue(stage)

        result = await self.verifier.verify(api_key=api_key, authorization=authorization)
        if not result.success or result.identity is None:
            code = result.error_code.rejection if result.error_code else RejectionReason.UNAUTHENTICATED
            return Reject(
                code,
                stage,
                detail=result.error_message,
                headers={"WWW-Authenticate": "Bearer"},
            )

        request.identity = result.identity
        add_trace_context(
            subject_id=result.identity.subject_id,
            auth_method=result.identity.auth_method.value,
        )
        return Continue(stage)

    async def check_rate_limit(self, request: GatewayRequest) -> StageResult:
        """Count the request against the limiter for its route class."""
        stage = GatewayStage.RATE_CHECKED
        limiter = self.rate_limiters.limiter_for(request.path)
        if limiter is None:
            return Continue(stage)

        key = (
            request.identity.rate_limit_key
            if request.identity is not None
            else f"ip:{request.client_ip or 'unknown'}"
        )
        info = limiter.check(key)
        request.rate_limit = info

        if not info.is_allowed:
            return Reject(
                RejectionReason.RATE_LIMIT_EXCEEDED,
                stage,
                detail=f"{limiter.name} limit {info.limit}/{info.window_ms}ms for {key}",
                headers={"Retry-After": str(info.retry_after_seconds), **rate_limit_headers(info)},
            )
        return Continue(stage)

    async def check_csrf(self, request: GatewayRequest) -> StageResult:
        """Issue tokens on safe requests; demand them on unsafe ones."""
        stage = GatewayStage.CSRF_CHECKED
        if self.csrf is None or not self.settings.csrf_enabled or request.identity is None:
            return Continue(stage)

        session_id = request.identity.session_id
        if request.is_safe_method:
            request.csrf_token = self.csrf.issue(session_id)
            return Continue(stage)

        if _matches_prefix(request.path, self.settings.csrf_exempt_paths):
            return Continue(stage)

        provided = request.header("x-csrf-token") or request.body_field(CSRF_FIELD)
        if not isinstance(provided, str) or not self.csrf.verify(session_id, provided):
            return Reject(
                RejectionReason.INVALID_CSRF_TOKEN,
                stage,
                detail="missing" if not provided else "mismatch or expired",
            )
        return Continue(stage)

    async def check_permission(self, request: GatewayRequest) -> StageResult:
        """Evaluate the route rule, if any, against the Identity."""
        stage = GatewayStage.PERMISSION_CHECKED
        rule, params = self.match_route(request.method, request.path)
        if rule is None:
            return Continue(stage)

        request.route = rule
        request.path_params = params

        if request.identity is None:
            return Reject(RejectionReason.UNAUTHENTICATED, stage, detail="protected route")

        owner_id = await self._resolve_owner(request, rule)
        decision = await self.permissions.evaluate(
            request.identity, rule.resource, rule.action, owner_id
        )
        request.decision = decision

        if not decision.allowed:
            return Reject(RejectionReason.PERMISSION_DENIED, stage, detail=decision.reason)
        return Continue(stage)

    async def _resolve_owner(self, request: GatewayRequest, rule: RouteRule) -> str | None:
        if rule.owner_param:
            value = request.path_params.get(rule.owner_param) or request.body_field(rule.owner_param)
            if value is not None:
                return str(value)
        if self._owner_resolver is not None:
            try:
                return await self._owner_resolver(request, rule)
            except Exception:
                logger.exception("Owner lookup failed; evaluating without owner")
        return None

    # -------------------------------------------------------------------------
    # Audit
    # -------------------------------------------------------------------------

    def _audit_rejection(self, request: GatewayRequest, rejection: Reject) -> None:
        logger.warning(
            "Rejected %s %s at %s: %s",
            request.method,
            request.path,
            rejection.stage.value,
            rejection.reason.value,
        )
        event_type = _REJECTION_EVENTS.get(rejection.reason)
        if event_type is None:
            return

        resource = request.route.resource if request.route else request.path
        action = request.route.action if request.route else request.method
        self.audit.log_security_event(
            event_type,
            identity=request.identity,
            resource=resource,
            action=action,
            ip=request.client_ip,
            user_agent=request.user_agent,
            metadata={
                "reason": rejection.reason.value,
                "stage": rejection.stage.value,
                "detail": rejection.detail,
                "method": request.method,
                "path": request.path,
                **(
                    {"failed_closed": True}
                    if request.decision is not None and request.decision.failed_closed
                    else {}
                ),
            },
        )

    def complete(self, request: GatewayRequest, status_code: int) -> None:
        """Record a state-changing request that reached business logic."""
        if request.method.upper() not in transport.STATE_CHANGING_METHODS:
            return
        latency_ms = (time.perf_counter() - request.started_at) * 1000
        self.audit.log_security_event(
            AuditEventType.REQUEST_COMPLETED,
            identity=request.identity,
            resource=request.route.resource if request.route else request.path,
            action=request.route.action if request.route else request.method,
            ip=request.client_ip,
            user_agent=request.user_agent,
            metadata={
                "method": request.method,
                "route": request.route.path if request.route else request.path,
                "status_code": status_code,
                "latency_ms": round(latency_ms, 2),
            },
        )


def rate_limit_headers(info: RateLimitInfo) -> dict[str, str]:
    return {
        "X-RateLimit-Limit": str(info.limit),
        "X-RateLimit-Remaining": str(info.remaining),
    }


def _matches_prefix(path: str, prefixes: Iterable[str]) -> bool:
    return any(path == p or path.startswith(p.rstrip("/") + "/") for p in prefixes)
