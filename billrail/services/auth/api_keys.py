from __future__ import annotations

import hashlib
import secrets
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Literal, Protocol
from uuid import uuid4

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from billrail.core.config import get_settings
from billrail.core.errors import AuthenticationError
from billrail.core.result import Err, Ok, Result
from billrail.persistence.repos import api_keys as api_keys_repo


KeyType = Literal["secret", "billing_portal"]


@dataclass(frozen=True)
class VerifiedKey:
    # Metadata returned by key verification; the resolver never sees the raw secret again.
    key_id: str
    key_type: KeyType
    owner_id: str
    subject_user_id: str | None
    environment: Literal["live", "test"]
    metadata: dict[str, Any] = field(default_factory=dict)


class KeyVerifier(Protocol):
    async def verify(self, token: str) -> Result[VerifiedKey, AuthenticationError]: ...


def hash_api_key(raw_key: str) -> str:
    # Use SHA-256 for deterministic, non-reversible key storage.
    return hashlib.sha256(raw_key.encode("utf-8")).hexdigest()


def key_prefix_for(key_type: KeyType, *, livemode: bool) -> str:
    settings = get_settings()
    base = settings.api_key_prefix_secret if key_type == "secret" else settings.api_key_prefix_billing_portal
    return f"{base}{'live' if livemode else 'test'}_"


def generate_api_key(
    *, key_type: KeyType, livemode: bool, key_id: str | None = None
) -> tuple[str, str, str, str]:
    # Embed the key id in the token so operators can trace secrets safely.
    resolved_id = key_id or uuid4().hex
    secret = secrets.token_urlsafe(32)
    raw_key = f"{key_prefix_for(key_type, livemode=livemode)}{resolved_id}_{secret}"
    key_prefix = raw_key[:16]
    return resolved_id, raw_key, key_prefix, hash_api_key(raw_key)


def key_type_from_token(token: str) -> KeyType:
    # Route tokens to the matching resolver branch before verification; unknown prefixes default to secret.
    if token.startswith(get_settings().api_key_prefix_billing_portal):
        return "billing_portal"
    return "secret"


def _is_expired(expires_at: datetime | None) -> bool:
    if expires_at is None:
        return False
    if expires_at.tzinfo is None:
        expires_at = expires_at.replace(tzinfo=timezone.utc)
    return expires_at <= datetime.now(timezone.utc)


class DatabaseKeyVerifier:
    """Verifies tokens against hashed keys stored in ``api_keys``."""

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]) -> None:
        self._session_factory = session_factory

    async def verify(self, token: str) -> Result[VerifiedKey, AuthenticationError]:
        if not token:
            return Err(AuthenticationError("API key is required"))
        async with self._session_factory() as session:
            row = await api_keys_repo.get_api_key_by_hash(session, hash_api_key(token))
        if row is None:
            return Err(AuthenticationError("Invalid API key"))
        if row.revoked_at is not None:
            return Err(AuthenticationError("API key revoked"))
        if _is_expired(row.expires_at):
            return Err(AuthenticationError("API key expired"))
        return Ok(
            VerifiedKey(
                key_id=row.id,
                key_type=row.key_type,  # type: ignore[arg-type]
                owner_id=row.organization_id,
                subject_user_id=row.user_id,
                environment="live" if row.livemode else "test",
                metadata=dict(row.metadata_json or {}),
            )
        )
