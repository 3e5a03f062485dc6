"""
FastAPI / Starlette integration for Flowgate.

Provides:
- GatewayMiddleware: pure ASGI middleware running the Gateway on every request
- Dependencies: get_identity, require_identity, require_permission
- create_gateway: wires every component from GatewaySettings

Usage:
    from fastapi import Depends, FastAPI
    from flowgate.config import GatewaySettings
    from flowgate.middleware.fastapi import (
        GatewayMiddleware, create_gateway, require_permission,
    )

    gateway = create_gateway(GatewaySettings.from_env())
    app = FastAPI()
    app.add_middleware(GatewayMiddleware, gateway=gateway)

    @app.delete("/api/v1/workflows/{workflow_id}")
    async def delete_workflow(
        workflow_id: str,
        identity: Identity = Depends(require_permission("workflows", "delete")),
    ):
        ...
"""

from __future__ import annotations

import logging
from collections.abc import Callable, Iterable
from typing import Annotated, Any

from fastapi import Depends, HTTPException, Request, status
from starlette.datastructures import Headers, MutableHeaders
from starlette.requests import ClientDisconnect
from starlette.responses import JSONResponse
from starlette.types import ASGIApp, Message, Receive, Scope, Send

from flowgate.audit import (
    AuditEventType,
    AuditLogger,
    AuditStore,
    InMemoryAuditStore,
    JsonlAuditStore,
)
from flowgate.config import GatewaySettings
from flowgate.core.correlation import CorrelatedLogger, CorrelationHeaders, correlation_context
from flowgate.core.credentials import CredentialStore, InMemoryCredentialStore, TokenKeyring
from flowgate.core.identity import Identity
from flowgate.engines.authentication import CredentialVerifier
from flowgate.engines.permissions import PermissionEngine
from flowgate.engines.rate_limiter import CounterStore, RateLimiterRegistry
from flowgate.engines.role_store import InMemoryRoleStore, RoleStore
from flowgate.errors import RejectionReason
from flowgate.gateway import transport
from flowgate.gateway.csrf import CSRF_HEADER, CsrfTokenStore
from flowgate.gateway.pipeline import (
    Gateway,
    GatewayRequest,
    GatewayStage,
    OwnerResolver,
    Reject,
    RouteRule,
    rate_limit_headers,
)

logger = CorrelatedLogger(logging.getLogger(__name__))


def create_gateway(
    settings: GatewaySettings | None = None,
    *,
    credential_store: CredentialStore | None = None,
    role_store: RoleStore | None = None,
    counter_store: CounterStore | None = None,
    audit_store: AuditStore | None = None,
    keyring: TokenKeyring | None = None,
    routes: Iterable[RouteRule] = (),
    owner_resolver: OwnerResolver | None = None,
) -> Gateway:
    """
    Build a Gateway from configuration.

    Stores default to the in-memory implementations; pass real ones to back
    the gateway with a database or Redis.

    Args:
        settings: Gateway settings (defaults to GatewaySettings())
        credential_store: API key store
        role_store: Role store, shared by the permission engine and the
            verifier's API-key role resolution
        counter_store: Rate-limit counter store
        audit_store: Audit store (defaults to JSONL when audit_log_path is set)
        keyring: Bearer-token keys (defaults to settings.jwt_secrets)
        routes: Protected route rules
        owner_resolver: Async lookup of a resource owner for route rules

    Returns:
        Configured Gateway
    """
    settings = settings or GatewaySettings()

    if keyring is None:
        keyring = TokenKeyring()
        for i, secret in enumerate(settings.jwt_secrets):
            if i == 0:
                keyring.add_key(secret, key_id="jwt_active")
            else:
                keyring.add_legacy_key(secret, key_id=f"jwt_previous_{i}")
    if not keyring.has_keys():
        logger.warning("No bearer verification keys configured; bearer tokens will be rejected")

    if role_store is None:
        role_store = InMemoryRoleStore()

    if audit_store is None:
        audit_store = (
            JsonlAuditStore(settings.audit_log_path)
            if settings.audit_log_path
            else InMemoryAuditStore()
        )
    audit = AuditLogger(
        audit_store,
        write_timeout=settings.audit_timeout,
        max_queue=settings.audit_queue_size,
    )

    verifier = CredentialVerifier(
        credential_store if credential_store is not None else InMemoryCredentialStore(),
        keyring,
        role_store=role_store,
        issuer=settings.jwt_issuer,
        audience=settings.jwt_audience,
        lookup_timeout=settings.credential_timeout,
        leeway_seconds=settings.jwt_leeway_seconds,
    )

    permissions = PermissionEngine(
        role_store,
        lookup_timeout=settings.permission_timeout,
        audit=audit,
    )

    registry = RateLimiterRegistry(counter_store)
    for limit in settings.rate_limits:
        registry.register(limit.name, limit.limit, limit.window_ms)
        for prefix in limit.path_prefixes:
            registry.add_rule(prefix, limit.name)

    return Gateway(
        settings=settings,
        verifier=verifier,
        permissions=permissions,
        rate_limiters=registry,
        audit=audit,
        csrf=CsrfTokenStore(settings.csrf_ttl_seconds) if settings.csrf_enabled else None,
        routes=routes,
        owner_resolver=owner_resolver,
    )


class GatewayMiddleware:
    """
    Pure ASGI middleware running the Flowgate pipeline.

    - Lifespan startup reconciles system roles and starts the audit worker;
      shutdown drains it.
    - Rejections are answered here and never reach the app.
    - Allowed requests reach the app with the sanitized body and query string,
      and with scope["state"]["identity"] set.
    - Every response carries the security and correlation headers.
    - State-changing requests are audited once the response has been sent.
    """

    def __init__(self, app: ASGIApp, gateway: Gateway) -> None:
        self.app = app
        self.gateway = gateway

    async def __call__(self, scope: Scope, receive: Receive, send: Send) -> None:
        if scope["type"] == "lifespan":
            await self._lifespan(scope, receive, send)
            return
        if scope["type"] != "http":
            await self.app(scope, receive, send)
            return

        headers = Headers(scope=scope)
        client = scope.get("client")
        client_ip = client[0] if client else None

        with correlation_context(
            CorrelationHeaders.extract_from_headers(headers),
            method=scope["method"],
            path=scope["path"],
            client_ip=client_ip,
        ) as cid:
            request = GatewayRequest(
                method=scope["method"],
                path=scope["path"],
                headers={k.lower(): v for k, v in headers.items()},
                client_ip=client_ip,
                query_string=scope.get("query_string", b"").decode("latin-1"),
                body_reader=lambda: transport.read_body_limited(
                    receive, self.gateway.settings.max_body_bytes
                ),
            )

            try:
                result = await self.gateway.process(request)
            except ClientDisconnect:
                logger.info("Client disconnected before the request was processed")
                return
            except Exception:
                logger.exception("Gateway failure; rejecting request")
                result = Reject(RejectionReason.INTERNAL_FAILURE, request.stage)

            if isinstance(result, Reject):
                await self._reject(scope, receive, send, result, cid)
                return

            await self._dispatch(scope, receive, send, request, cid)

    async def _lifespan(self, scope: Scope, receive: Receive, send: Send) -> None:
        async def wrapped_receive() -> Message:
            message = await receive()
            if message["type"] == "lifespan.startup":
                await self.gateway.startup()
            elif message["type"] == "lifespan.shutdown":
                await self.gateway.shutdown()
            return message

        await self.app(scope, wrapped_receive, send)

    def _response_headers(self, correlation_id: str) -> dict[str, str]:
        return {
            **transport.security_headers(self.gateway.settings.hsts_max_age),
            CorrelationHeaders.CORRELATION_ID: correlation_id,
        }

    async def _reject(
        self,
        scope: Scope,
        receive: Receive,
        send: Send,
        rejection: Reject,
        correlation_id: str,
    ) -> None:
        response = JSONResponse(
            {"error": rejection.reason.value, "message": rejection.reason.message},
            status_code=rejection.status_code,
            headers={**self._response_headers(correlation_id), **rejection.headers},
        )
        await response(scope, receive, send)

    async def _dispatch(
        self,
        scope: Scope,
        receive: Receive,
        send: Send,
        request: GatewayRequest,
        correlation_id: str,
    ) -> None:
        scope = dict(scope)
        scope["query_string"] = request.query_string.encode("latin-1")
        scope["headers"] = _with_content_length(scope["headers"], len(request.raw_body))
        state = dict(scope.get("state") or {})
        state.update(
            identity=request.identity,
            gateway=self.gateway,
            gateway_request=request,
            correlation_id=correlation_id,
        )
        scope["state"] = state

        extra_headers = self._response_headers(correlation_id)
        if request.csrf_token:
            extra_headers[CSRF_HEADER] = request.csrf_token
        if request.rate_limit is not None:
            extra_headers.update(rate_limit_headers(request.rate_limit))

        status_code = 500

        async def send_wrapper(message: Message) -> None:
            nonlocal status_code
            if message["type"] == "http.response.start":
                status_code = message["status"]
                response_headers = MutableHeaders(scope=message)
                for name, value in extra_headers.items():
                    response_headers.setdefault(name, value)
            await send(message)
            if message["type"] == "http.response.body" and not message.get("more_body", False):
                self.gateway.complete(request, status_code)

        await self.app(scope, transport.replay_receive(request.raw_body, receive), send_wrapper)


def _with_content_length(
    raw_headers: Iterable[tuple[bytes, bytes]], length: int
) -> list[tuple[bytes, bytes]]:
    headers = [
        (k, v) for k, v in raw_headers if k.lower() not in (b"content-length", b"transfer-encoding")
    ]
    headers.append((b"content-length", str(length).encode("latin-1")))
    return headers


# -----------------------------------------------------------------------------
# Dependencies
# -----------------------------------------------------------------------------


def get_gateway(request: Request) -> Gateway:
    gateway = getattr(request.state, "gateway", None)
    if gateway is None:
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="Gateway middleware not installed",
        )
    return gateway


def get_identity(request: Request) -> Identity | None:
    """
    FastAPI dependency for the request's Identity (None on public routes).

    Usage:
        @app.get("/api/v1/public/templates")
        async def templates(identity: Identity | None = Depends(get_identity)):
            ...
    """
    return getattr(request.state, "identity", None)


def require_identity(
    identity: Annotated[Identity | None, Depends(get_identity)],
) -> Identity:
    """
    Dependency that requires a verified Identity.

    Raises:
        HTTPException: 401 if the request carried no valid credentials
    """
    if identity is None:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail=RejectionReason.UNAUTHENTICATED.message,
            headers={"WWW-Authenticate": "Bearer"},
        )
    return identity


def require_permission(
    resource: str,
    action: str,
    owner_param: str | None = None,
) -> Callable[..., Any]:
    """
    Factory for permission-checking dependency.

    Usage:
        @app.post("/api/v1/users/{user_id}/api_keys")
        async def create_key(
            user_id: str,
            identity: Identity = Depends(require_permission("api_keys", "manage_own", "user_id")),
        ):
            ...

    Args:
        resource: Resource type
        action: Action on the resource
        owner_param: Path or query parameter holding the resource owner's id

    Returns:
        Dependency function
    """

    async def check_permission(
        request: Request,
        identity: Annotated[Identity, Depends(require_identity)],
    ) -> Identity:
        gateway = get_gateway(request)

        owner_id: str | None = None
        if owner_param:
            owner_id = request.path_params.get(owner_param) or request.query_params.get(owner_param)

        decision = await gateway.permissions.evaluate(identity, resource, action, owner_id)
        if not decision.allowed:
            gateway.audit.log_security_event(
                AuditEventType.PERMISSION_DENIED,
                identity=identity,
                resource=resource,
                action=action,
                ip=request.client.host if request.client else None,
                user_agent=request.headers.get("user-agent"),
                metadata={
                    "reason": RejectionReason.PERMISSION_DENIED.value,
                    "stage": GatewayStage.PERMISSION_CHECKED.value,
                    "detail": decision.reason,
                    "method": request.method,
                    "path": request.url.path,
                },
            )
            raise HTTPException(
                status_code=status.HTTP_403_FORBIDDEN,
                detail=RejectionReason.PERMISSION_DENIED.message,
            )
        return identity

    return check_permission


def get_audit_logger(request: Request) -> AuditLogger:
    return get_gateway(request).audit
