"""Unit tests for the credential verifier."""

import asyncio
from datetime import UTC, datetime, timedelta

import jwt
import pytest

from flowgate.core.credentials import ApiKeyRecord, InMemoryCredentialStore, TokenKeyring
from flowgate.core.identity import AuthMethod, perm
from flowgate.engines.authentication import (
    AuthErrorCode,
    CredentialVerifier,
    create_bearer_token,
)
from flowgate.engines.permissions import PermissionEngine
from flowgate.engines.role_store import InMemoryRoleStore
from flowgate.errors import RejectionReason

SECRET = "test-signing-secret-0123456789abcdef"
OLD_SECRET = "old-signing-secret-fedcba9876543210"


class SlowStore:
    """Credential store that never answers in time."""

    async def find_by_hash(self, key_hash: str) -> ApiKeyRecord | None:
        await asyncio.sleep(10)
        return None

    async def touch_last_used(self, key_id: str, used_at: datetime) -> None:
        return None


class BrokenStore:
    """Credential store whose backend is down."""

    async def find_by_hash(self, key_hash: str) -> ApiKeyRecord | None:
        raise ConnectionError("database unavailable")

    async def touch_last_used(self, key_id: str, used_at: datetime) -> None:
        raise ConnectionError("database unavailable")


def _token(**overrides: object) -> str:
    claims: dict = {
        "subject_id": "user-1",
        "role": "developer",
        "organization_id": "org-1",
        "session_id": "sess-1",
    }
    claims.update(overrides)
    return create_bearer_token(SECRET, **claims)  # type: ignore[arg-type]


class TestCredentialVerifier:
    """Tests for CredentialVerifier."""

    @pytest.fixture
    def store(self) -> InMemoryCredentialStore:
        store = InMemoryCredentialStore()
        store.register(
            "fgk_valid_key",
            subject_id="key-owner",
            role="analyst",
            organization_id="org-2",
            key_id="k-valid",
        )
        store.register(
            "fgk_inactive_key",
            subject_id="key-owner",
            role="analyst",
            organization_id="org-2",
            is_active=False,
        )
        store.register(
            "fgk_expired_key",
            subject_id="key-owner",
            role="analyst",
            organization_id="org-2",
            expires_at=datetime.now(UTC) - timedelta(minutes=1),
        )
        return store

    @pytest.fixture
    def keyring(self) -> TokenKeyring:
        keyring = TokenKeyring()
        keyring.add_key(SECRET, key_id="active")
        return keyring

    @pytest.fixture
    def verifier(self, store: InMemoryCredentialStore, keyring: TokenKeyring) -> CredentialVerifier:
        return CredentialVerifier(store, keyring)

    @pytest.mark.asyncio
    async def test_no_credentials_is_unauthenticated(self, verifier: CredentialVerifier) -> None:
        result = await verifier.verify()

        assert result.success is False
        assert result.error_code == AuthErrorCode.UNAUTHENTICATED
        assert result.error_code.rejection == RejectionReason.UNAUTHENTICATED

    @pytest.mark.asyncio
    async def test_unknown_scheme_is_unauthenticated(self, verifier: CredentialVerifier) -> None:
        result = await verifier.verify(authorization="Basic dXNlcjpwYXNz")

        assert result.error_code == AuthErrorCode.UNAUTHENTICATED

    @pytest.mark.asyncio
    async def test_empty_bearer_is_invalid(self, verifier: CredentialVerifier) -> None:
        result = await verifier.verify(authorization="Bearer ")

        assert result.error_code == AuthErrorCode.INVALID_CREDENTIAL

    @pytest.mark.asyncio
    async def test_api_key_success(self, verifier: CredentialVerifier) -> None:
        """Valid API key resolves the key owner's identity."""
        result = await verifier.verify(api_key="fgk_valid_key")

        assert result.success is True
        assert result.method == AuthMethod.API_KEY
        assert result.identity is not None
        assert result.identity.subject_id == "key-owner"
        assert result.identity.role == "analyst"
        assert result.identity.organization_id == "org-2"
        assert result.identity.session_id == "api-k-valid"
        assert result.identity.key_id == "k-valid"

    @pytest.mark.asyncio
    async def test_unknown_api_key_is_invalid(self, verifier: CredentialVerifier) -> None:
        result = await verifier.verify(api_key="fgk_not_registered")

        assert result.success is False
        assert result.error_code == AuthErrorCode.INVALID_CREDENTIAL

    @pytest.mark.asyncio
    async def test_inactive_api_key_is_invalid(self, verifier: CredentialVerifier) -> None:
        result = await verifier.verify(api_key="fgk_inactive_key")

        assert result.error_code == AuthErrorCode.INVALID_CREDENTIAL

    @pytest.mark.asyncio
    async def test_expired_api_key_is_expired_even_if_active(
        self, verifier: CredentialVerifier
    ) -> None:
        """An active key past expires_at yields CREDENTIAL_EXPIRED."""
        result = await verifier.verify(api_key="fgk_expired_key")

        assert result.success is False
        assert result.error_code == AuthErrorCode.CREDENTIAL_EXPIRED

    @pytest.mark.asyncio
    async def test_api_key_takes_precedence_over_bearer(
        self, verifier: CredentialVerifier
    ) -> None:
        """Both credentials valid: identity comes from the API key."""
        result = await verifier.verify(
            api_key="fgk_valid_key",
            authorization=f"Bearer {_token()}",
        )

        assert result.success is True
        assert result.method == AuthMethod.API_KEY
        assert result.identity is not None
        assert result.identity.subject_id == "key-owner"

    @pytest.mark.asyncio
    async def test_invalid_api_key_does_not_fall_back_to_bearer(
        self, verifier: CredentialVerifier
    ) -> None:
        result = await verifier.verify(
            api_key="fgk_not_registered",
            authorization=f"Bearer {_token()}",
        )

        assert result.success is False
        assert result.method == AuthMethod.API_KEY

    @pytest.mark.asyncio
    async def test_api_key_scope_is_carried(self, keyring: TokenKeyring) -> None:
        store = InMemoryCredentialStore()
        store.register(
            "fgk_scoped",
            subject_id="u1",
            role="developer",
            organization_id="org-1",
            permissions=(perm("workflows", "read"),),
        )
        verifier = CredentialVerifier(store, keyring)

        result = await verifier.verify(api_key="fgk_scoped")

        assert result.identity is not None
        assert result.identity.key_permissions == (perm("workflows", "read"),)

    @pytest.mark.asyncio
    async def test_api_key_updates_last_used(
        self, verifier: CredentialVerifier, store: InMemoryCredentialStore
    ) -> None:
        """last_used_at is bumped in the background."""
        await verifier.verify(api_key="fgk_valid_key")
        await verifier.drain()

        record = store.get_by_id("k-valid")
        assert record is not None
        assert record.last_used_at is not None

    @pytest.mark.asyncio
    async def test_store_timeout_fails_closed(self, keyring: TokenKeyring) -> None:
        """A timed-out lookup is an invalid credential, never an allow."""
        verifier = CredentialVerifier(SlowStore(), keyring, lookup_timeout=0.05)

        result = await verifier.verify(api_key="fgk_any")

        assert result.success is False
        assert result.error_code == AuthErrorCode.INVALID_CREDENTIAL

    @pytest.mark.asyncio
    async def test_store_error_fails_closed(self, keyring: TokenKeyring) -> None:
        verifier = CredentialVerifier(BrokenStore(), keyring)

        result = await verifier.verify(api_key="fgk_any")

        assert result.success is False
        assert result.error_code == AuthErrorCode.INVALID_CREDENTIAL

    @pytest.mark.asyncio
    async def test_bearer_success(self, verifier: CredentialVerifier) -> None:
        """Claims decode straight into the Identity."""
        result = await verifier.verify(authorization=f"Bearer {_token(email='a@b.io')}")

        assert result.success is True
        assert result.method == AuthMethod.BEARER
        assert result.identity is not None
        assert result.identity.subject_id == "user-1"
        assert result.identity.session_id == "sess-1"
        assert result.identity.email == "a@b.io"

    @pytest.mark.asyncio
    async def test_bearer_expired(self, verifier: CredentialVerifier) -> None:
        token = _token(now=datetime.now(UTC) - timedelta(hours=2), ttl_seconds=60)

        result = await verifier.verify(authorization=f"Bearer {token}")

        assert result.error_code == AuthErrorCode.CREDENTIAL_EXPIRED

    @pytest.mark.asyncio
    async def test_bearer_bad_signature(self, verifier: CredentialVerifier) -> None:
        token = create_bearer_token(
            "some-other-secret-not-in-keyring-000",
            subject_id="user-1",
            role="admin",
            organization_id="org-1",
            session_id="sess-1",
        )

        result = await verifier.verify(authorization=f"Bearer {token}")

        assert result.success is False
        assert result.error_code == AuthErrorCode.INVALID_CREDENTIAL

    @pytest.mark.asyncio
    async def test_bearer_garbage(self, verifier: CredentialVerifier) -> None:
        result = await verifier.verify(authorization="Bearer not.a.jwt")

        assert result.error_code == AuthErrorCode.INVALID_CREDENTIAL

    @pytest.mark.asyncio
    async def test_bearer_wrong_audience(self, verifier: CredentialVerifier) -> None:
        result = await verifier.verify(authorization=f"Bearer {_token(audience='other')}")

        assert result.error_code == AuthErrorCode.INVALID_CREDENTIAL

    @pytest.mark.asyncio
    async def test_bearer_missing_claims(self, verifier: CredentialVerifier) -> None:
        token = jwt.encode(
            {
                "userId": "user-1",
                "exp": int(datetime.now(UTC).timestamp()) + 60,
                "iss": "workflow-platform",
                "aud": "api",
            },
            SECRET,
            algorithm="HS256",
        )

        result = await verifier.verify(authorization=f"Bearer {token}")

        assert result.error_code == AuthErrorCode.INVALID_CREDENTIAL

    @pytest.mark.asyncio
    async def test_bearer_without_exp_rejected(self, verifier: CredentialVerifier) -> None:
        token = jwt.encode(
            {
                "userId": "user-1",
                "role": "admin",
                "organizationId": "org-1",
                "sessionId": "s",
                "iss": "workflow-platform",
                "aud": "api",
            },
            SECRET,
            algorithm="HS256",
        )

        result = await verifier.verify(authorization=f"Bearer {token}")

        assert result.error_code == AuthErrorCode.INVALID_CREDENTIAL

    @pytest.mark.asyncio
    async def test_legacy_key_still_verifies(self, store: InMemoryCredentialStore) -> None:
        """Tokens signed with a rotated-out key verify while it is legacy."""
        keyring = TokenKeyring()
        keyring.add_legacy_key(OLD_SECRET, key_id="old")
        keyring.add_key(SECRET, key_id="new")
        verifier = CredentialVerifier(store, keyring)

        token = create_bearer_token(
            OLD_SECRET,
            subject_id="user-1",
            role="viewer",
            organization_id="org-1",
            session_id="s",
        )
        result = await verifier.verify(authorization=f"Bearer {token}")
        assert result.success is True

        keyring.revoke_key("old")
        result = await verifier.verify(authorization=f"Bearer {token}")
        assert result.success is False

    @pytest.mark.asyncio
    async def test_no_keys_rejects_bearer(self, store: InMemoryCredentialStore) -> None:
        verifier = CredentialVerifier(store, TokenKeyring())

        result = await verifier.verify(authorization=f"Bearer {_token()}")

        assert result.error_code == AuthErrorCode.INVALID_CREDENTIAL

    @pytest.mark.asyncio
    async def test_verification_is_repeatable(self, verifier: CredentialVerifier) -> None:
        """Same input, same result."""
        header = f"Bearer {_token()}"

        first = await verifier.verify(authorization=header)
        second = await verifier.verify(authorization=header)

        assert first.identity == second.identity


class BrokenAssignments(InMemoryRoleStore):
    """Role store whose assignment table is unreachable."""

    async def get_assignment(self, subject_id: str) -> tuple[str, str] | None:
        raise ConnectionError("assignments unavailable")


class TestRoleAssignment:
    """API-key identities follow the subject's current role assignment."""

    @pytest.fixture
    def store(self) -> InMemoryCredentialStore:
        store = InMemoryCredentialStore()
        store.register(
            "fgk_dev_key",
            subject_id="user-9",
            role="developer",
            organization_id="org-1",
            key_id="k-dev",
        )
        return store

    @pytest.mark.asyncio
    async def test_demoted_subject_loses_permissions(
        self, store: InMemoryCredentialStore, make_identity
    ) -> None:
        roles = InMemoryRoleStore()
        engine = PermissionEngine(roles)
        await engine.reconcile_system_roles()
        verifier = CredentialVerifier(store, TokenKeyring(), role_store=roles)

        before = await verifier.verify(api_key="fgk_dev_key")
        assert before.identity is not None
        assert await engine.has_permission(before.identity, "workflows", "create")

        await engine.assign_role(make_identity(subject_id="root", role="admin"), "user-9", "viewer")
        after = await verifier.verify(api_key="fgk_dev_key")

        assert after.identity is not None
        assert after.identity.role == "viewer"
        assert not await engine.has_permission(after.identity, "workflows", "create")
        assert await engine.has_permission(after.identity, "workflows", "read")

    @pytest.mark.asyncio
    async def test_unassigned_subject_keeps_issued_role(
        self, store: InMemoryCredentialStore
    ) -> None:
        verifier = CredentialVerifier(store, TokenKeyring(), role_store=InMemoryRoleStore())

        result = await verifier.verify(api_key="fgk_dev_key")

        assert result.identity is not None
        assert result.identity.role == "developer"

    @pytest.mark.asyncio
    async def test_other_organizations_assignment_ignored(
        self, store: InMemoryCredentialStore
    ) -> None:
        roles = InMemoryRoleStore()
        await roles.assign_role("user-9", "admin", "org-2")
        verifier = CredentialVerifier(store, TokenKeyring(), role_store=roles)

        result = await verifier.verify(api_key="fgk_dev_key")

        assert result.identity is not None
        assert result.identity.role == "developer"

    @pytest.mark.asyncio
    async def test_assignment_lookup_failure_fails_closed(
        self, store: InMemoryCredentialStore
    ) -> None:
        verifier = CredentialVerifier(store, TokenKeyring(), role_store=BrokenAssignments())

        result = await verifier.verify(api_key="fgk_dev_key")

        assert result.success is False
        assert result.error_code == AuthErrorCode.INVALID_CREDENTIAL
