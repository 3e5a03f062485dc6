"""
Credential Storage for Flowgate.

Holds the two kinds of secrets the verifier checks against:
- API keys, stored only as SHA-256 hashes behind a CredentialStore
- Bearer-token verification keys, held in a TokenKeyring with rotation support

Zero-trust: Default deny. Keys must be explicitly provided.
"""

from __future__ import annotations

import asyncio
import hashlib
import os
import secrets
import warnings
from dataclasses import dataclass, field, replace
from datetime import UTC, datetime
from enum import Enum
from typing import Protocol, runtime_checkable

from flowgate.core.identity import Permission


def hash_api_key(raw_key: str) -> str:
    """
    One-way hash of a presented API key.

    Args:
        raw_key: Key as presented by the client

    Returns:
        Hex-encoded SHA-256 digest
    """
    return hashlib.sha256(raw_key.encode("utf-8")).hexdigest()


def generate_api_key(prefix: str = "fgk") -> str:
    """Generate a new random API key (for provisioning and tests)."""
    return f"{prefix}_{secrets.token_urlsafe(32)}"


@dataclass(frozen=True)
class ApiKeyRecord:
    """Stored API key, joined with its subject's role and organization."""

    key_id: str
    key_hash: str
    subject_id: str
    role: str
    organization_id: str
    key_prefix: str = ""
    is_active: bool = True
    expires_at: datetime | None = None
    permissions: tuple[Permission, ...] | None = None
    last_used_at: datetime | None = None

    def is_expired(self, now: datetime | None = None) -> bool:
        """Whether expires_at lies in the past."""
        if self.expires_at is None:
            return False
        return (now or datetime.now(UTC)) > self.expires_at


@runtime_checkable
class CredentialStore(Protocol):
    """
    Protocol for API key storage backends.

    find_by_hash is awaited on the request path; touch_last_used is
    best-effort and never awaited by the verifier's caller.
    """

    async def find_by_hash(self, key_hash: str) -> ApiKeyRecord | None:
        """Look up a key by hash. Returns None when not found."""
        ...

    async def touch_last_used(self, key_id: str, used_at: datetime) -> None:
        """Record the last successful use of a key."""
        ...


class InMemoryCredentialStore:
    """
    In-memory API key store.

    Suitable for tests and single-instance deployments. Production deployments
    back this protocol with the api_keys table joined to users.
    """

    def __init__(self) -> None:
        self._by_hash: dict[str, ApiKeyRecord] = {}
        self._lock = asyncio.Lock()

    def add(self, record: ApiKeyRecord) -> None:
        """Insert or replace a record."""
        self._by_hash[record.key_hash] = record

    def register(
        self,
        raw_key: str,
        *,
        subject_id: str,
        role: str,
        organization_id: str,
        key_id: str | None = None,
        is_active: bool = True,
        expires_at: datetime | None = None,
        permissions: tuple[Permission, ...] | None = None,
    ) -> ApiKeyRecord:
        """
        Store a raw key by hash.

        Returns:
            The stored record
        """
        record = ApiKeyRecord(
            key_id=key_id or f"key_{secrets.token_hex(4)}",
            key_hash=hash_api_key(raw_key),
            key_prefix=raw_key[:8],
            subject_id=subject_id,
            role=role,
            organization_id=organization_id,
            is_active=is_active,
            expires_at=expires_at,
            permissions=permissions,
        )
        self.add(record)
        return record

    def get_by_id(self, key_id: str) -> ApiKeyRecord | None:
        """Find a record by key ID."""
        for record in self._by_hash.values():
            if record.key_id == key_id:
                return record
        return None

    async def find_by_hash(self, key_hash: str) -> ApiKeyRecord | None:
        return self._by_hash.get(key_hash)

    async def touch_last_used(self, key_id: str, used_at: datetime) -> None:
        async with self._lock:
            record = self.get_by_id(key_id)
            if record is not None:
                self._by_hash[record.key_hash] = replace(record, last_used_at=used_at)


class KeyStatus(str, Enum):
    """Status of a verification key in the keyring."""

    ACTIVE = "active"  # Current signing key of the token issuer
    LEGACY = "legacy"  # Still accepted during rotation
    REVOKED = "revoked"


@dataclass(frozen=True)
class VerificationKey:
    """Shared secret used to verify HS256 bearer tokens."""

    key_id: str
    secret: str
    status: KeyStatus = KeyStatus.ACTIVE
    created_at: datetime = field(default_factory=lambda: datetime.now(UTC))

    @property
    def is_valid(self) -> bool:
        """Revoked keys never verify."""
        return self.status != KeyStatus.REVOKED

    def __repr__(self) -> str:
        return f"VerificationKey(key_id={self.key_id!r}, status={self.status.value})"


class TokenKeyring:
    """
    Bearer-token verification keys with rotation support.

    Tokens are issued elsewhere; this keyring only holds what is needed to
    verify them. All valid keys (active and legacy) are tried in turn.

    Usage:
        keyring = TokenKeyring()
        keyring.load_from_env("FLOWGATE_JWT_SECRET")
        keyring.add_legacy_key(old_secret)
    """

    # Known insecure default secrets - will warn if used
    _INSECURE_DEFAULTS = frozenset(
        {
            "secret",
            "changeme",
            "development-secret",
            "test-jwt-secret",
        }
    )

    def __init__(self) -> None:
        self._keys: dict[str, VerificationKey] = {}
        self._active_key_id: str | None = None

    def load_from_env(
        self,
        env_var: str = "FLOWGATE_JWT_SECRET",
        *,
        key_id: str | None = None,
    ) -> bool:
        """
        Load the active verification secret from an environment variable.

        Returns:
            True if a key was loaded
        """
        value = os.environ.get(env_var)
        if not value:
            return False
        return self.add_key(value, key_id=key_id or env_var)

    def add_key(
        self,
        secret: str,
        *,
        key_id: str | None = None,
        status: KeyStatus = KeyStatus.ACTIVE,
    ) -> bool:
        """
        Add a verification key.

        Returns:
            True if the key was added
        """
        if not secret:
            return False

        if secret in self._INSECURE_DEFAULTS:
            warnings.warn(
                f"Insecure default JWT secret loaded ({key_id or 'unnamed'})! "
                "This is NOT safe for production.",
                UserWarning,
                stacklevel=2,
            )

        key_id = key_id or f"jwt_{secrets.token_hex(4)}"
        self._keys[key_id] = VerificationKey(key_id=key_id, secret=secret, status=status)
        if status == KeyStatus.ACTIVE:
            self._active_key_id = key_id
        return True

    def add_legacy_key(self, secret: str, *, key_id: str | None = None) -> bool:
        """Add a key that is still accepted while clients rotate."""
        return self.add_key(secret, key_id=key_id, status=KeyStatus.LEGACY)

    def revoke_key(self, key_id: str) -> bool:
        """Revoke a key by ID."""
        key = self._keys.get(key_id)
        if key is None:
            return False
        self._keys[key_id] = replace(key, status=KeyStatus.REVOKED)
        if self._active_key_id == key_id:
            self._active_key_id = None
        return True

    @property
    def active_key(self) -> VerificationKey | None:
        if not self._active_key_id:
            return None
        return self._keys.get(self._active_key_id)

    @property
    def valid_keys(self) -> list[VerificationKey]:
        """Active key first, then legacy keys."""
        keys = [k for k in self._keys.values() if k.is_valid]
        keys.sort(key=lambda k: k.key_id != self._active_key_id)
        return keys

    def has_keys(self) -> bool:
        return bool(self.valid_keys)

    def get_key_info(self) -> list[dict[str, str | bool]]:
        """Non-sensitive key metadata."""
        return [
            {
                "key_id": k.key_id,
                "status": k.status.value,
                "is_active": k.key_id == self._active_key_id,
            }
            for k in self._keys.values()
        ]
