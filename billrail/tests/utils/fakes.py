from __future__ import annotations

from typing import Any, Awaitable, Callable, Sequence

from sqlalchemy.ext.asyncio import AsyncSession

from billrail.persistence.db import SessionLocal
from billrail.services.auth.principal import Principal
from billrail.services.effects import CacheKey
from billrail.services.ledger import LedgerCommand, LedgerManager
from billrail.services.transactions import TransactionRunner


class FakeCacheInvalidator:
    """Records invalidated keys; optionally fails or runs a hook first."""

    def __init__(
        self,
        *,
        fail: bool = False,
        on_invalidate: Callable[[Sequence[CacheKey]], Awaitable[None]] | None = None,
    ) -> None:
        self.calls: list[list[CacheKey]] = []
        self._fail = fail
        self._on_invalidate = on_invalidate

    async def invalidate(self, keys: Sequence[CacheKey]) -> None:
        if self._on_invalidate is not None:
            await self._on_invalidate(keys)
        self.calls.append(list(keys))
        if self._fail:
            raise ConnectionError("cache unavailable")


class RecordingSecurityContext:
    def __init__(self) -> None:
        self.calls: list[tuple[str, str | None]] = []

    async def activate(self, session: AsyncSession, principal: Principal) -> None:
        self.calls.append(("activate", principal.organization_id))

    async def deactivate(self, session: AsyncSession) -> None:
        self.calls.append(("deactivate", None))


class RecordingLedgerProcessor:
    """Delegates to the real ledger manager while recording call order."""

    def __init__(self, *, fail_on: str | None = None) -> None:
        self.processed: list[str] = []
        self._fail_on = fail_on
        self._delegate = LedgerManager()

    async def process(self, command: LedgerCommand, session: AsyncSession) -> None:
        if command.idempotency_key == self._fail_on:
            raise RuntimeError(f"ledger processor failed for {command.idempotency_key}")
        await self._delegate.process(command, session)
        self.processed.append(command.idempotency_key)


def make_runner(
    *,
    test_environment: bool = True,
    cache_invalidator: Any | None = None,
    ledger_processor: Any | None = None,
    security_context: Any | None = None,
) -> TransactionRunner:
    return TransactionRunner(
        SessionLocal,
        cache_invalidator=cache_invalidator or FakeCacheInvalidator(),
        ledger_processor=ledger_processor,
        security_context=security_context,
        test_environment=lambda: test_environment,
    )
