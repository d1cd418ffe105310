from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any
from uuid import uuid4

from billrail.domain.models import ApiKey, Customer, Membership, Organization, User
from billrail.persistence.db import get_session
from billrail.services.auth.api_keys import KeyType, generate_api_key


def _utc_now() -> datetime:
    # Keep timestamps consistent for test-generated records.
    return datetime.now(timezone.utc)


@dataclass(frozen=True)
class MerchantSeed:
    organization: Organization
    user: User
    membership: Membership
    api_key: str


async def create_organization(*, name: str | None = None) -> Organization:
    organization = Organization(id=f"org_{uuid4().hex}", name=name or f"org-{uuid4().hex[:8]}")
    async with get_session() as session:
        session.add(organization)
        await session.commit()
    return organization


async def create_user(*, external_id: str | None = None, email: str | None = None) -> User:
    user = User(
        id=f"usr_{uuid4().hex}",
        external_id=external_id or f"ext_{uuid4().hex}",
        email=email or f"{uuid4().hex[:8]}@example.test",
    )
    async with get_session() as session:
        session.add(user)
        await session.commit()
    return user


async def create_membership(
    *,
    user_id: str,
    organization_id: str,
    focused: bool = False,
    livemode: bool = False,
    created_offset_s: int = 0,
) -> Membership:
    # Explicit created_at offsets make earliest-membership ordering deterministic.
    membership = Membership(
        id=f"mem_{uuid4().hex}",
        user_id=user_id,
        organization_id=organization_id,
        focused=focused,
        livemode=livemode,
        created_at=_utc_now() - timedelta(days=1) + timedelta(seconds=created_offset_s),
    )
    async with get_session() as session:
        session.add(membership)
        await session.commit()
    return membership


async def create_customer(
    *,
    organization_id: str,
    user_id: str | None = None,
    livemode: bool = True,
    hosted_billing_user_id: str | None = None,
) -> Customer:
    customer = Customer(
        id=f"cus_{uuid4().hex}",
        organization_id=organization_id,
        user_id=user_id,
        email=f"{uuid4().hex[:8]}@customer.test",
        livemode=livemode,
        hosted_billing_user_id=hosted_billing_user_id,
    )
    async with get_session() as session:
        session.add(customer)
        await session.commit()
    return customer


async def create_api_key(
    *,
    organization_id: str,
    user_id: str | None = None,
    key_type: KeyType = "secret",
    livemode: bool = False,
    metadata: dict[str, Any] | None = None,
    revoked: bool = False,
    expires_at: datetime | None = None,
) -> str:
    # Provision a hashed key row and hand back the raw token, which is never stored.
    key_id, raw_key, key_prefix, key_hash = generate_api_key(key_type=key_type, livemode=livemode)
    async with get_session() as session:
        session.add(
            ApiKey(
                id=f"key_{key_id}",
                organization_id=organization_id,
                user_id=user_id,
                key_type=key_type,
                livemode=livemode,
                key_prefix=key_prefix,
                key_hash=key_hash,
                metadata_json=metadata,
                revoked_at=_utc_now() if revoked else None,
                expires_at=expires_at,
            )
        )
        await session.commit()
    return raw_key


async def seed_merchant(*, livemode: bool = False, focused: bool = True) -> MerchantSeed:
    # Organization + member user + secret key: the common starting point for transaction tests.
    organization = await create_organization()
    user = await create_user()
    membership = await create_membership(
        user_id=user.id, organization_id=organization.id, focused=focused, livemode=livemode
    )
    api_key = await create_api_key(organization_id=organization.id, user_id=user.id, livemode=livemode)
    return MerchantSeed(organization=organization, user=user, membership=membership, api_key=api_key)
