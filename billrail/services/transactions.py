from __future__ import annotations

import logging
from dataclasses import asdict, dataclass, field
from functools import lru_cache
from typing import Any, Awaitable, Callable, Sequence, TypeVar

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from billrail.core.config import get_settings
from billrail.core.errors import AuthenticationError, ValidationError
from billrail.core.result import Err, Ok, Result
from billrail.persistence.repos import events as events_repo
from billrail.persistence.security_context import SecurityContext, security_context_for
from billrail.services.auth.api_keys import DatabaseKeyVerifier, KeyVerifier
from billrail.services.auth.principal import (
    TEST_OVERRIDE_ERROR,
    Principal,
    authentication_source,
    resolve_principal,
)
from billrail.services.cache import CacheInvalidator, build_cache_invalidator
from billrail.services.effects import (
    CacheKey,
    EventInput,
    TransactionContext,
    TransactionEffects,
    TransactionOutput,
    utcnow,
)
from billrail.services.ledger import LedgerCommandProcessor, LedgerManager, check_command_scope


logger = logging.getLogger(__name__)

T = TypeVar("T")

Work = Callable[[TransactionContext], Awaitable[T]]
ComprehensiveWork = Callable[[TransactionContext], Awaitable[TransactionOutput[T]]]


@dataclass(frozen=True)
class AuthOptions:
    # Credentials accepted by every calling convention; at most one source is used.
    api_key: str | None = None
    session_user_id: str | None = None
    customer_organization_id: str | None = None
    customer_id: str | None = None
    test_only_organization_id: str | None = None


@dataclass(frozen=True)
class ProcedureContext:
    # Request context threaded through procedure adapters by the RPC layer.
    auth: AuthOptions
    extra: dict[str, Any] = field(default_factory=dict)


class _ErrResult(Exception):
    # Carries a non-exception Err out of the transaction so it rolls back.
    def __init__(self, result: Err[Any]) -> None:
        super().__init__(repr(result.error))
        self.result = result


class TransactionRunner:
    """Runs units of work inside one security-scoped database transaction.

    The principal is resolved before the work transaction opens. Declared
    events and ledger commands are applied inside the transaction, and cache
    invalidation only runs after a successful commit.
    """

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        *,
        key_verifier: KeyVerifier | None = None,
        ledger_processor: LedgerCommandProcessor | None = None,
        cache_invalidator: CacheInvalidator | None = None,
        security_context: SecurityContext | None = None,
        test_environment: Callable[[], bool] | None = None,
    ) -> None:
        self._session_factory = session_factory
        self._key_verifier = key_verifier or DatabaseKeyVerifier(session_factory)
        self._ledger_processor = ledger_processor or LedgerManager()
        self._cache_invalidator = cache_invalidator or build_cache_invalidator()
        self._security_context = security_context
        self._test_environment = test_environment or (lambda: get_settings().is_test)

    async def resolve(self, auth: AuthOptions, *, require_user: bool = False) -> Principal:
        # Evaluate the flag per call so toggling it takes effect immediately.
        test_environment = bool(self._test_environment())
        if auth.test_only_organization_id and not test_environment:
            raise AuthenticationError(TEST_OVERRIDE_ERROR)
        source = authentication_source(**asdict(auth)).unwrap()
        async with self._session_factory() as lookup_session:
            resolved = await resolve_principal(
                lookup_session,
                source,
                key_verifier=self._key_verifier,
                test_environment=test_environment,
            )
        principal = resolved.unwrap()
        if not principal.organization_id:
            raise AuthenticationError("No organization found for principal")
        if require_user and not principal.user_id:
            raise AuthenticationError("No user found for principal")
        return principal

    async def run_comprehensive(
        self, work: ComprehensiveWork[T], auth: AuthOptions, *, require_user: bool = False
    ) -> T:
        principal = await self.resolve(auth, require_user=require_user)
        return await self._execute(
            work,
            principal=principal,
            organization_id=principal.organization_id,
            livemode=principal.livemode,
        )

    async def run(self, work: Work[T], auth: AuthOptions, *, require_user: bool = False) -> T:
        async def _comprehensive(ctx: TransactionContext) -> TransactionOutput[T]:
            return TransactionOutput(result=await work(ctx))

        return await self.run_comprehensive(_comprehensive, auth, require_user=require_user)

    async def run_with_result(
        self, work: Callable[[TransactionContext], Awaitable[Result[T, Any]]], auth: AuthOptions
    ) -> Result[T, Any]:
        """Return failures as ``Err`` instead of raising.

        An ``Err`` returned by the work rolls the transaction back exactly
        like a raised exception.
        """

        async def _comprehensive(ctx: TransactionContext) -> TransactionOutput[T]:
            outcome = await work(ctx)
            if isinstance(outcome, Err):
                if isinstance(outcome.error, Exception):
                    raise outcome.error
                raise _ErrResult(outcome)
            return TransactionOutput(result=outcome.unwrap())

        try:
            value = await self.run_comprehensive(_comprehensive, auth)
        except _ErrResult as exc:
            return exc.result
        except Exception as exc:
            return Err(exc)
        return Ok(value)

    async def run_unwrap(
        self, work: Callable[[TransactionContext], Awaitable[Result[T, Any]]], auth: AuthOptions
    ) -> T:
        return (await self.run_with_result(work, auth)).unwrap()

    async def run_admin(
        self, work: ComprehensiveWork[T], *, organization_id: str = "", livemode: bool = False
    ) -> T:
        # Trusted internal callers skip principal resolution and the security context.
        return await self._execute(
            work, principal=None, organization_id=organization_id, livemode=livemode
        )

    async def _execute(
        self,
        work: ComprehensiveWork[T],
        *,
        principal: Principal | None,
        organization_id: str,
        livemode: bool,
    ) -> T:
        effects = TransactionEffects()
        async with self._session_factory() as session:
            async with session.begin():
                security_context = None
                if principal is not None:
                    security_context = self._security_context or security_context_for(session)
                    await security_context.activate(session, principal)
                ctx = TransactionContext(
                    session=session,
                    user_id=principal.user_id if principal else None,
                    organization_id=organization_id,
                    livemode=livemode,
                    principal=principal,
                    emit_event=effects.emit_event,
                    enqueue_ledger_command=effects.enqueue_ledger_command,
                    invalidate_cache=effects.invalidate_cache,
                )
                output = await work(ctx)
                if not isinstance(output, TransactionOutput):
                    raise ValidationError("Unit of work must return a TransactionOutput")
                applied = effects.merge(output)
                await self._insert_events(
                    session, applied.events, organization_id=organization_id, livemode=livemode
                )
                for command in applied.ledger_commands:
                    check_command_scope(command, organization_id=organization_id, livemode=livemode)
                    await self._ledger_processor.process(command, session)
                if security_context is not None:
                    await security_context.deactivate(session)
        logger.debug(
            "authenticated_transaction_committed organization_id=%s events=%s ledger_commands=%s",
            organization_id,
            len(applied.events),
            len(applied.ledger_commands),
        )
        await self._invalidate(applied.cache_invalidations)
        return output.result

    async def _insert_events(
        self,
        session: AsyncSession,
        events: Sequence[EventInput],
        *,
        organization_id: str,
        livemode: bool,
    ) -> None:
        if not events:
            return
        if not organization_id:
            raise ValidationError("Events require an organization")
        submitted_at = utcnow()
        rows = [
            event.to_row(organization_id=organization_id, livemode=livemode, submitted_at=submitted_at)
            for event in events
        ]
        await events_repo.bulk_insert_ignoring_duplicate_hash(session, rows)

    async def _invalidate(self, keys: Sequence[CacheKey]) -> None:
        if not keys:
            return
        try:
            await self._cache_invalidator.invalidate(keys)
        except Exception as exc:  # noqa: BLE001 - invalidation failures are logged, never raised
            logger.warning("cache_invalidation_failed keys=%s", list(keys), exc_info=exc)


@lru_cache
def get_transaction_runner() -> TransactionRunner:
    from billrail.persistence.db import SessionLocal

    return TransactionRunner(SessionLocal)


def _auth(
    api_key: str | None,
    session_user_id: str | None,
    customer_organization_id: str | None,
    customer_id: str | None,
    test_only_organization_id: str | None,
) -> AuthOptions:
    return AuthOptions(
        api_key=api_key,
        session_user_id=session_user_id,
        customer_organization_id=customer_organization_id,
        customer_id=customer_id,
        test_only_organization_id=test_only_organization_id,
    )


async def run_authenticated(
    work: Work[T],
    *,
    api_key: str | None = None,
    session_user_id: str | None = None,
    customer_organization_id: str | None = None,
    customer_id: str | None = None,
    test_only_organization_id: str | None = None,
    runner: TransactionRunner | None = None,
) -> T:
    auth = _auth(api_key, session_user_id, customer_organization_id, customer_id, test_only_organization_id)
    return await (runner or get_transaction_runner()).run(work, auth)


async def run_authenticated_comprehensive(
    work: ComprehensiveWork[T],
    *,
    api_key: str | None = None,
    session_user_id: str | None = None,
    customer_organization_id: str | None = None,
    customer_id: str | None = None,
    test_only_organization_id: str | None = None,
    runner: TransactionRunner | None = None,
) -> T:
    auth = _auth(api_key, session_user_id, customer_organization_id, customer_id, test_only_organization_id)
    return await (runner or get_transaction_runner()).run_comprehensive(work, auth)


async def run_authenticated_with_result(
    work: Callable[[TransactionContext], Awaitable[Result[T, Any]]],
    *,
    api_key: str | None = None,
    session_user_id: str | None = None,
    customer_organization_id: str | None = None,
    customer_id: str | None = None,
    test_only_organization_id: str | None = None,
    runner: TransactionRunner | None = None,
) -> Result[T, Any]:
    auth = _auth(api_key, session_user_id, customer_organization_id, customer_id, test_only_organization_id)
    return await (runner or get_transaction_runner()).run_with_result(work, auth)


async def run_authenticated_unwrap(
    work: Callable[[TransactionContext], Awaitable[Result[T, Any]]],
    *,
    api_key: str | None = None,
    session_user_id: str | None = None,
    customer_organization_id: str | None = None,
    customer_id: str | None = None,
    test_only_organization_id: str | None = None,
    runner: TransactionRunner | None = None,
) -> T:
    auth = _auth(api_key, session_user_id, customer_organization_id, customer_id, test_only_organization_id)
    return await (runner or get_transaction_runner()).run_unwrap(work, auth)


async def admin_transaction(
    work: ComprehensiveWork[T],
    *,
    organization_id: str = "",
    livemode: bool = False,
    runner: TransactionRunner | None = None,
) -> T:
    return await (runner or get_transaction_runner()).run_admin(
        work, organization_id=organization_id, livemode=livemode
    )


ProcedureHandler = Callable[..., Awaitable[Any]]


def authenticated_procedure(
    handler: ProcedureHandler, *, runner: TransactionRunner | None = None
) -> Callable[..., Awaitable[Any]]:
    """Adapt ``handler(input=, ctx=, transaction_ctx=)`` to the raw convention."""

    async def _procedure(*, input: Any, ctx: ProcedureContext) -> Any:
        async def _work(transaction_ctx: TransactionContext) -> Any:
            return await handler(input=input, ctx=ctx, transaction_ctx=transaction_ctx)

        return await (runner or get_transaction_runner()).run(_work, ctx.auth)

    return _procedure


def comprehensive_procedure(
    handler: ProcedureHandler, *, runner: TransactionRunner | None = None
) -> Callable[..., Awaitable[Any]]:
    """Like :func:`authenticated_procedure` but the handler returns a ``TransactionOutput``."""

    async def _procedure(*, input: Any, ctx: ProcedureContext) -> Any:
        async def _work(transaction_ctx: TransactionContext) -> TransactionOutput[Any]:
            return await handler(input=input, ctx=ctx, transaction_ctx=transaction_ctx)

        return await (runner or get_transaction_runner()).run_comprehensive(_work, ctx.auth)

    return _procedure
