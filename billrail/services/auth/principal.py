from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Literal, Union

from pydantic import BaseModel, Field
from sqlalchemy.ext.asyncio import AsyncSession

from billrail.core.errors import AuthenticationError
from billrail.core.result import Err, Ok, Result
from billrail.persistence.repos import customers as customers_repo
from billrail.persistence.repos import memberships as memberships_repo
from billrail.services.auth.api_keys import KeyVerifier, VerifiedKey, key_type_from_token


logger = logging.getLogger(__name__)

API_KEY_EMAIL = "apiKey@example.com"
TEST_OVERRIDE_ERROR = "Attempted to use test organization id in a non-test environment"

Role = Literal["merchant", "customer"]


class AppMetadata(BaseModel):
    provider: str
    customer_id: str | None = None


class UserMetadata(BaseModel):
    # Mirrors the top-level subject so RLS policies can read either location.
    id: str
    email: str
    role: Role
    app_metadata: AppMetadata


class Claims(BaseModel):
    sub: str
    email: str
    organization_id: str
    role: Role
    livemode: bool
    session_id: str | None = None
    user_metadata: UserMetadata
    app_metadata: AppMetadata


class Principal(BaseModel):
    # Resolved identity used to scope a single transaction; never persisted.
    user_id: str | None
    organization_id: str
    livemode: bool
    role: Role = "merchant"
    claims: Claims
    auth_method: str = Field(default="api_key")

    @property
    def is_empty(self) -> bool:
        return not self.organization_id


@dataclass(frozen=True)
class ApiKeySecret:
    token: str


@dataclass(frozen=True)
class ApiKeyBillingPortal:
    token: str


@dataclass(frozen=True)
class WebSession:
    session_user_id: str
    email: str | None = None


@dataclass(frozen=True)
class CustomerSession:
    session_user_id: str
    organization_id: str
    customer_id: str | None = None


@dataclass(frozen=True)
class TestOverride:
    # Not a pytest test class despite the name.
    __test__ = False

    organization_id: str


AuthenticationSource = Union[ApiKeySecret, ApiKeyBillingPortal, WebSession, CustomerSession, TestOverride]


def build_claims(
    *,
    user_id: str | None,
    email: str,
    organization_id: str,
    role: Role,
    livemode: bool,
    provider: str,
    session_id: str | None = None,
    customer_id: str | None = None,
) -> Claims:
    subject = user_id or ""
    app_metadata = AppMetadata(provider=provider, customer_id=customer_id)
    return Claims(
        sub=subject,
        email=email,
        organization_id=organization_id,
        role=role,
        livemode=livemode,
        session_id=session_id,
        user_metadata=UserMetadata(id=subject, email=email, role=role, app_metadata=app_metadata),
        app_metadata=app_metadata,
    )


def empty_principal(*, email: str = "", auth_method: str = "session") -> Principal:
    # Users without memberships still authenticate; transactions then reject the blank organization.
    return Principal(
        user_id=None,
        organization_id="",
        livemode=False,
        role="merchant",
        claims=build_claims(
            user_id=None,
            email=email,
            organization_id="",
            role="merchant",
            livemode=False,
            provider=auth_method,
        ),
        auth_method=auth_method,
    )


def authentication_source(
    *,
    api_key: str | None = None,
    session_user_id: str | None = None,
    customer_organization_id: str | None = None,
    customer_id: str | None = None,
    test_only_organization_id: str | None = None,
) -> Result[AuthenticationSource, AuthenticationError]:
    """Choose the credential variant from call options.

    The test override takes precedence so that supplying a valid API key
    alongside it cannot route around the test-environment check.
    """
    if test_only_organization_id:
        return Ok(TestOverride(organization_id=test_only_organization_id))
    if api_key:
        if key_type_from_token(api_key) == "billing_portal":
            return Ok(ApiKeyBillingPortal(token=api_key))
        return Ok(ApiKeySecret(token=api_key))
    if session_user_id and customer_organization_id:
        return Ok(
            CustomerSession(
                session_user_id=session_user_id,
                organization_id=customer_organization_id,
                customer_id=customer_id,
            )
        )
    if session_user_id:
        return Ok(WebSession(session_user_id=session_user_id))
    return Err(AuthenticationError("No credentials supplied"))


async def _resolve_secret_key(
    session: AsyncSession, verified: VerifiedKey
) -> Result[Principal, AuthenticationError]:
    if not verified.subject_user_id:
        return Err(AuthenticationError("API key has no subject user"))
    user = await memberships_repo.get_user_by_id_or_external_id(session, verified.subject_user_id)
    if user is None:
        return Err(AuthenticationError("No user found for api key"))
    membership = await memberships_repo.get_membership(
        session, user_id=user.id, organization_id=verified.owner_id
    )
    if membership is None:
        return Err(AuthenticationError("No membership found for api key"))
    livemode = verified.environment == "live"
    return Ok(
        Principal(
            user_id=user.id,
            organization_id=membership.organization_id,
            livemode=livemode,
            role="merchant",
            claims=build_claims(
                user_id=user.id,
                email=API_KEY_EMAIL,
                organization_id=membership.organization_id,
                role="merchant",
                livemode=livemode,
                provider="apiKey",
                session_id=verified.key_id,
            ),
            auth_method="api_key",
        )
    )


async def _resolve_billing_portal_key(
    session: AsyncSession, verified: VerifiedKey
) -> Result[Principal, AuthenticationError]:
    organization_id = str(verified.metadata.get("organization_id") or verified.owner_id)
    hosted_billing_user_id = verified.metadata.get("hosted_billing_user_id")
    if not hosted_billing_user_id:
        return Err(AuthenticationError("Billing portal key is missing hosted_billing_user_id"))
    customer = await customers_repo.get_customer_by_hosted_billing_user(
        session,
        organization_id=organization_id,
        hosted_billing_user_id=str(hosted_billing_user_id),
    )
    if customer is None:
        return Err(AuthenticationError("Customer not found for billing portal key"))
    # The acting merchant user is always the earliest member of the organization.
    acting = await memberships_repo.earliest_membership(session, organization_id)
    if acting is None:
        return Err(AuthenticationError("No memberships found for organization"))
    membership, _user = acting
    livemode = verified.environment == "live"
    return Ok(
        Principal(
            user_id=membership.user_id,
            organization_id=organization_id,
            livemode=livemode,
            role="merchant",
            claims=build_claims(
                user_id=membership.user_id,
                email=API_KEY_EMAIL,
                organization_id=organization_id,
                role="merchant",
                livemode=livemode,
                provider="apiKey",
                session_id=verified.key_id,
                customer_id=customer.id,
            ),
            auth_method="billing_portal_key",
        )
    )


async def _resolve_api_key(
    session: AsyncSession,
    token: str,
    expected_type: str,
    key_verifier: KeyVerifier,
) -> Result[Principal, AuthenticationError]:
    verification = await key_verifier.verify(token)
    if verification.is_err():
        return verification
    verified = verification.unwrap()
    if verified.key_type != expected_type:
        return Err(AuthenticationError(f"Received invalid API key type: {verified.key_type}"))
    if verified.key_type == "secret":
        return await _resolve_secret_key(session, verified)
    return await _resolve_billing_portal_key(session, verified)


async def _resolve_web_session(
    session: AsyncSession, source: WebSession
) -> Result[Principal, AuthenticationError]:
    user = await memberships_repo.get_user_by_external_id(session, source.session_user_id)
    if user is None:
        return Ok(empty_principal(email=source.email or ""))
    memberships = await memberships_repo.list_memberships_for_user(session, user.id)
    if not memberships:
        return Ok(empty_principal(email=user.email or source.email or ""))
    # Ordered focused-first, then earliest created_at, then id.
    membership = memberships[0]
    email = user.email or source.email or ""
    return Ok(
        Principal(
            user_id=user.id,
            organization_id=membership.organization_id,
            livemode=membership.livemode,
            role="merchant",
            claims=build_claims(
                user_id=user.id,
                email=email,
                organization_id=membership.organization_id,
                role="merchant",
                livemode=membership.livemode,
                provider="session",
            ),
            auth_method="session",
        )
    )


async def _resolve_customer_session(
    session: AsyncSession, source: CustomerSession
) -> Result[Principal, AuthenticationError]:
    found = await customers_repo.get_livemode_customer_for_session_user(
        session,
        organization_id=source.organization_id,
        session_user_id=source.session_user_id,
        customer_id=source.customer_id,
    )
    if found is None:
        # Wrong organization and missing record are reported identically.
        return Err(AuthenticationError("Customer not found"))
    customer, user = found
    return Ok(
        Principal(
            user_id=user.id,
            organization_id=customer.organization_id,
            livemode=customer.livemode,
            role="customer",
            claims=build_claims(
                user_id=user.id,
                email=user.email or customer.email,
                organization_id=customer.organization_id,
                role="customer",
                livemode=customer.livemode,
                provider="customerBillingPortal",
                customer_id=customer.id,
            ),
            auth_method="customer_session",
        )
    )


async def _resolve_test_override(
    session: AsyncSession, source: TestOverride
) -> Result[Principal, AuthenticationError]:
    acting = await memberships_repo.earliest_membership(session, source.organization_id)
    user_id = acting[0].user_id if acting else None
    email = (acting[1].email if acting else None) or ""
    return Ok(
        Principal(
            user_id=user_id,
            organization_id=source.organization_id,
            livemode=False,
            role="merchant",
            claims=build_claims(
                user_id=user_id,
                email=email,
                organization_id=source.organization_id,
                role="merchant",
                livemode=False,
                provider="testOverride",
            ),
            auth_method="test_override",
        )
    )


async def resolve_principal(
    session: AsyncSession,
    source: AuthenticationSource,
    *,
    key_verifier: KeyVerifier,
    test_environment: bool,
) -> Result[Principal, AuthenticationError]:
    """Turn a credential into a :class:`Principal`.

    ``test_environment`` is injected by the caller and must be evaluated per
    call. Test overrides are rejected before any credential is looked at.
    """
    if isinstance(source, TestOverride):
        if not test_environment:
            return Err(AuthenticationError(TEST_OVERRIDE_ERROR))
        return await _resolve_test_override(session, source)
    if isinstance(source, ApiKeySecret):
        return await _resolve_api_key(session, source.token, "secret", key_verifier)
    if isinstance(source, ApiKeyBillingPortal):
        return await _resolve_api_key(session, source.token, "billing_portal", key_verifier)
    if isinstance(source, CustomerSession):
        return await _resolve_customer_session(session, source)
    if isinstance(source, WebSession):
        return await _resolve_web_session(session, source)
    logger.warning("principal_resolution_unknown_source source=%s", type(source).__name__)
    return Err(AuthenticationError("Unsupported authentication source"))
