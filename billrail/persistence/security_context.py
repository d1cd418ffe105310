from __future__ import annotations

import json
import logging
from typing import TYPE_CHECKING, Protocol

from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncSession

from billrail.core.config import Settings, get_settings
from billrail.core.errors import AuthenticationError
from billrail.persistence.db import dialect_name

if TYPE_CHECKING:
    from billrail.services.auth.principal import Principal


logger = logging.getLogger(__name__)


class SecurityContext(Protocol):
    async def activate(self, session: AsyncSession, principal: "Principal") -> None: ...

    async def deactivate(self, session: AsyncSession) -> None: ...


class PostgresSecurityContext:
    """Installs the principal as transaction-local settings read by RLS policies.

    Every statement uses ``set_config(..., true)`` or ``SET LOCAL`` so the
    context dies with the transaction and never leaks to the next checkout of
    a pooled connection.
    """

    def __init__(self, settings: Settings | None = None) -> None:
        self._settings = settings or get_settings()

    def _role_for(self, principal: "Principal") -> str:
        roles = {
            "merchant": self._settings.rls_merchant_role,
            "customer": self._settings.rls_customer_role,
        }
        role = roles.get(principal.role)
        if role is None:
            raise AuthenticationError(f"Unsupported principal role: {principal.role}")
        return role

    async def activate(self, session: AsyncSession, principal: "Principal") -> None:
        role = self._role_for(principal)
        claims = json.dumps(principal.claims.model_dump(mode="json"))
        # Clear anything a previous statement in this transaction may have set.
        await session.execute(text("SELECT set_config('request.jwt.claims', NULL, true)"))
        await session.execute(
            text("SELECT set_config('request.jwt.claims', :claims, true)"), {"claims": claims}
        )
        await session.execute(
            text("SELECT set_config('app.livemode', :livemode, true)"),
            {"livemode": "true" if principal.livemode else "false"},
        )
        await session.execute(
            text("SELECT set_config('app.current_organization_id', :organization_id, true)"),
            {"organization_id": principal.organization_id},
        )
        # Role names cannot be bound parameters; quote the configured identifier instead.
        quoted = session.get_bind().dialect.identifier_preparer.quote(role)
        await session.execute(text(f"SET LOCAL ROLE {quoted}"))

    async def deactivate(self, session: AsyncSession) -> None:
        await session.execute(text("RESET ROLE"))
        await session.execute(text("SELECT set_config('request.jwt.claims', NULL, true)"))
        await session.execute(text("SELECT set_config('app.current_organization_id', NULL, true)"))


class NullSecurityContext:
    # Dialects without transaction-local settings rely on repository organization predicates.
    async def activate(self, session: AsyncSession, principal: "Principal") -> None:
        logger.debug(
            "security_context_skipped dialect=%s organization_id=%s",
            dialect_name(session),
            principal.organization_id,
        )

    async def deactivate(self, session: AsyncSession) -> None:
        return None


def security_context_for(session: AsyncSession) -> SecurityContext:
    if dialect_name(session) == "postgresql":
        return PostgresSecurityContext()
    return NullSecurityContext()
