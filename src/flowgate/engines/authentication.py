"""
Credential Verifier for Flowgate.

The "Who are you?" logic - routes between API-key and Bearer authentication.
Produces a verified Identity or fails closed.

Zero-trust: No credential = no access. Store errors and timeouts are treated as
invalid credentials, never as an implicit allow.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import Enum
from typing import Any

import jwt

from flowgate.core.credentials import CredentialStore, TokenKeyring, hash_api_key
from flowgate.core.identity import AuthMethod, Identity
from flowgate.engines.role_store import RoleStore
from flowgate.errors import RejectionReason

logger = logging.getLogger(__name__)


class AuthErrorCode(str, Enum):
    """Authentication failure codes."""

    UNAUTHENTICATED = "unauthenticated"
    INVALID_CREDENTIAL = "invalid_credential"
    CREDENTIAL_EXPIRED = "credential_expired"

    @property
    def rejection(self) -> RejectionReason:
        return RejectionReason(self.value)


@dataclass
class VerificationResult:
    """
    Result of a verification attempt.

    Contains either a verified Identity or error details.
    """

    success: bool
    identity: Identity | None = None
    method: AuthMethod | None = None
    error_code: AuthErrorCode | None = None
    error_message: str | None = None
    metadata: dict[str, Any] = field(default_factory=dict)

    @classmethod
    def failure(
        cls,
        code: AuthErrorCode,
        message: str,
        method: AuthMethod | None = None,
    ) -> VerificationResult:
        return cls(success=False, method=method, error_code=code, error_message=message)


class CredentialVerifier:
    """
    Central credential verifier.

    API key (X-API-Key header) takes precedence over a bearer token when both
    are presented. Bearer tokens are HS256 JWTs verified against the keyring
    without a store round-trip.

    An API key carries the role it was issued with. When a role store is
    given, the subject's current role assignment in the key's organization
    overrides it, so a demotion applies to keys already in circulation.

    Usage:
        verifier = CredentialVerifier(store, keyring)

        result = await verifier.verify(
            api_key=request.headers.get("X-API-Key"),
            authorization=request.headers.get("Authorization"),
        )

        if result.success:
            identity = result.identity
        else:
            reject(result.error_code.rejection)
    """

    ALGORITHM = "HS256"
    REQUIRED_CLAIMS = ("role", "organizationId", "sessionId")

    def __init__(
        self,
        store: CredentialStore,
        keyring: TokenKeyring,
        *,
        role_store: RoleStore | None = None,
        issuer: str | None = "workflow-platform",
        audience: str | None = "api",
        lookup_timeout: float = 2.0,
        leeway_seconds: int = 0,
    ) -> None:
        """
        Initialize verifier.

        Args:
            store: API key store
            keyring: Bearer-token verification keys
            role_store: Source of role assignments for API-key subjects
            issuer: Required "iss" claim (None disables the check)
            audience: Required "aud" claim (None disables the check)
            lookup_timeout: Bound on credential store lookups, in seconds
            leeway_seconds: Clock skew tolerated on "exp"
        """
        self._store = store
        self._keyring = keyring
        self._role_store = role_store
        self._issuer = issuer
        self._audience = audience
        self._lookup_timeout = lookup_timeout
        self._leeway = leeway_seconds
        self._background: set[asyncio.Task[None]] = set()

    async def verify(
        self,
        *,
        api_key: str | None = None,
        authorization: str | None = None,
    ) -> VerificationResult:
        """
        Verify the credentials presented with a request.

        Args:
            api_key: Value of the API key header
            authorization: Value of the Authorization header

        Returns:
            VerificationResult with Identity or error
        """
        if api_key:
            return await self._verify_api_key(api_key)

        if not authorization:
            return VerificationResult.failure(
                AuthErrorCode.UNAUTHENTICATED,
                "Authentication required",
            )

        scheme, _, token = authorization.partition(" ")
        if scheme.lower() != "bearer":
            return VerificationResult.failure(
                AuthErrorCode.UNAUTHENTICATED,
                "Unknown authorization format. Expected 'Bearer' or an API key",
            )

        token = token.strip()
        if not token:
            return VerificationResult.failure(
                AuthErrorCode.INVALID_CREDENTIAL,
                "Bearer token is empty",
                AuthMethod.BEARER,
            )

        return self._verify_bearer(token)

    async def _verify_api_key(self, raw_key: str) -> VerificationResult:
        """Authenticate using an API key."""
        key_hash = hash_api_key(raw_key)

        try:
            record = await asyncio.wait_for(
                self._store.find_by_hash(key_hash),
                timeout=self._lookup_timeout,
            )
        except asyncio.TimeoutError:
            logger.error(
                "Credential store lookup timed out after %.2fs",
                self._lookup_timeout,
                extra={"key_prefix": raw_key[:8]},
            )
            return VerificationResult.failure(
                AuthErrorCode.INVALID_CREDENTIAL,
                "Invalid API key",
                AuthMethod.API_KEY,
            )
        except Exception:
            logger.exception("Credential store lookup failed", extra={"key_prefix": raw_key[:8]})
            return VerificationResult.failure(
                AuthErrorCode.INVALID_CREDENTIAL,
                "Invalid API key",
                AuthMethod.API_KEY,
            )

        if record is None or not record.is_active:
            return VerificationResult.failure(
                AuthErrorCode.INVALID_CREDENTIAL,
                "Invalid API key",
                AuthMethod.API_KEY,
            )

        now = datetime.now(UTC)
        if record.is_expired(now):
            return VerificationResult.failure(
                AuthErrorCode.CREDENTIAL_EXPIRED,
                "API key expired",
                AuthMethod.API_KEY,
            )

        try:
            role = await self._resolve_role(record.subject_id, record.organization_id, record.role)
        except Exception:
            logger.exception(
                "Role assignment lookup failed",
                extra={"key_prefix": raw_key[:8], "subject_id": record.subject_id},
            )
            return VerificationResult.failure(
                AuthErrorCode.INVALID_CREDENTIAL,
                "Invalid API key",
                AuthMethod.API_KEY,
            )

        identity = Identity(
            subject_id=record.subject_id,
            role=role,
            organization_id=record.organization_id,
            session_id=f"api-{record.key_id}",
            auth_method=AuthMethod.API_KEY,
            key_id=record.key_id,
            key_permissions=record.permissions or None,
        )

        self._schedule_touch(record.key_id, now)

        return VerificationResult(
            success=True,
            identity=identity,
            method=AuthMethod.API_KEY,
            metadata={"key_id": record.key_id},
        )

    async def _resolve_role(self, subject_id: str, organization_id: str, issued_role: str) -> str:
        """Assigned role in the organization, else the role the key was issued with."""
        if self._role_store is None:
            return issued_role
        assignment = await asyncio.wait_for(
            self._role_store.get_assignment(subject_id),
            timeout=self._lookup_timeout,
        )
        if assignment is None:
            return issued_role
        role_name, assigned_org = assignment
        # An assignment made by another organization never applies here
        return role_name if assigned_org == organization_id else issued_role

    def _verify_bearer(self, token: str) -> VerificationResult:
        """Authenticate using a signed bearer token."""
        keys = self._keyring.valid_keys
        if not keys:
            logger.error("Bearer token presented but no verification keys are configured")
            return VerificationResult.failure(
                AuthErrorCode.INVALID_CREDENTIAL,
                "Invalid token",
                AuthMethod.BEARER,
            )

        options = {"require": ["exp"]}
        claims: dict[str, Any] | None = None
        for key in keys:
            try:
                claims = jwt.decode(
                    token,
                    key.secret,
                    algorithms=[self.ALGORITHM],
                    issuer=self._issuer,
                    audience=self._audience,
                    leeway=self._leeway,
                    options=options,
                )
                break
            except jwt.ExpiredSignatureError:
                # Signature was valid for this key; no other key can help.
                return VerificationResult.failure(
                    AuthErrorCode.CREDENTIAL_EXPIRED,
                    "Token expired",
                    AuthMethod.BEARER,
                )
            except jwt.InvalidSignatureError:
                continue
            except jwt.InvalidTokenError as e:
                return VerificationResult.failure(
                    AuthErrorCode.INVALID_CREDENTIAL,
                    f"Invalid token: {e.__class__.__name__}",
                    AuthMethod.BEARER,
                )

        if claims is None:
            return VerificationResult.failure(
                AuthErrorCode.INVALID_CREDENTIAL,
                "Invalid token signature",
                AuthMethod.BEARER,
            )

        subject_id = claims.get("userId") or claims.get("sub")
        missing = [c for c in self.REQUIRED_CLAIMS if not claims.get(c)]
        if not subject_id or missing:
            return VerificationResult.failure(
                AuthErrorCode.INVALID_CREDENTIAL,
                "Token is missing required claims",
                AuthMethod.BEARER,
            )

        identity = Identity(
            subject_id=str(subject_id),
            role=str(claims["role"]),
            organization_id=str(claims["organizationId"]),
            session_id=str(claims["sessionId"]),
            auth_method=AuthMethod.BEARER,
            email=claims.get("email"),
        )

        return VerificationResult(
            success=True,
            identity=identity,
            method=AuthMethod.BEARER,
            metadata={"session_id": identity.session_id},
        )

    def _schedule_touch(self, key_id: str, used_at: datetime) -> None:
        """Fire-and-forget last_used_at update."""
        try:
            task = asyncio.get_running_loop().create_task(self._touch(key_id, used_at))
        except RuntimeError:
            return
        self._background.add(task)
        task.add_done_callback(self._background.discard)

    async def _touch(self, key_id: str, used_at: datetime) -> None:
        try:
            await asyncio.wait_for(
                self._store.touch_last_used(key_id, used_at),
                timeout=self._lookup_timeout,
            )
        except Exception:
            logger.warning("Failed to update last_used_at for key %s", key_id, exc_info=True)

    async def drain(self) -> None:
        """Wait for pending last-used updates (shutdown and tests)."""
        if self._background:
            await asyncio.gather(*list(self._background), return_exceptions=True)


def create_bearer_token(
    secret: str,
    *,
    subject_id: str,
    role: str,
    organization_id: str,
    session_id: str,
    email: str | None = None,
    issuer: str | None = "workflow-platform",
    audience: str | None = "api",
    ttl_seconds: int = 900,
    now: datetime | None = None,
) -> str:
    """
    Sign a bearer token in the claim layout the verifier expects.

    Token issuance belongs to the login service; this helper exists for clients,
    fixtures and the stability tests.
    """
    issued = now or datetime.now(UTC)
    payload: dict[str, Any] = {
        "userId": subject_id,
        "role": role,
        "organizationId": organization_id,
        "sessionId": session_id,
        "iat": int(issued.timestamp()),
        "exp": int(issued.timestamp()) + ttl_seconds,
    }
    if email:
        payload["email"] = email
    if issuer:
        payload["iss"] = issuer
    if audience:
        payload["aud"] = audience
    return jwt.encode(payload, secret, algorithm=CredentialVerifier.ALGORITHM)
