from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, Literal, Protocol
from uuid import uuid4

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from billrail.core.errors import ValidationError
from billrail.domain.models import LedgerEntry, LedgerTransaction


logger = logging.getLogger(__name__)

Direction = Literal["debit", "credit"]


@dataclass(frozen=True)
class LedgerEntryInput:
    account: str
    direction: Direction
    amount: int
    entry_type: str


@dataclass(frozen=True)
class LedgerCommand:
    """Declarative instruction to append one balanced transaction to the ledger."""

    type: str
    organization_id: str
    livemode: bool
    idempotency_key: str
    entries: tuple[LedgerEntryInput, ...]
    description: str | None = None
    metadata: dict[str, Any] = field(default_factory=dict)


class LedgerCommandProcessor(Protocol):
    async def process(self, command: LedgerCommand, session: AsyncSession) -> None: ...


def check_command_scope(command: LedgerCommand, *, organization_id: str, livemode: bool) -> None:
    # Commands may only write to the ledger of the transaction that declared them.
    if command.organization_id != organization_id:
        raise ValidationError("Ledger command organization does not match the transaction organization")
    if command.livemode != livemode:
        raise ValidationError("Ledger command livemode does not match the transaction livemode")


def validate_ledger_command(command: LedgerCommand) -> None:
    # Invalid commands fail the transaction; they are never skipped.
    if not command.idempotency_key:
        raise ValidationError("Ledger command requires an idempotency key")
    if not command.entries:
        raise ValidationError(f"Ledger command {command.type} has no entries")
    debits = 0
    credits = 0
    for entry in command.entries:
        if entry.amount <= 0:
            raise ValidationError(f"Ledger entry amounts must be positive, got {entry.amount}")
        if entry.direction == "debit":
            debits += entry.amount
        elif entry.direction == "credit":
            credits += entry.amount
        else:
            raise ValidationError(f"Unsupported ledger entry direction: {entry.direction}")
    if debits != credits:
        raise ValidationError(f"Ledger command {command.type} is unbalanced: debits={debits} credits={credits}")


class LedgerManager:
    """Default processor: one ledger transaction plus its entries per command."""

    async def process(self, command: LedgerCommand, session: AsyncSession) -> None:
        validate_ledger_command(command)
        existing = await session.execute(
            select(LedgerTransaction.id).where(
                LedgerTransaction.organization_id == command.organization_id,
                LedgerTransaction.idempotency_key == command.idempotency_key,
            )
        )
        if existing.scalar_one_or_none() is not None:
            logger.info(
                "ledger_command_duplicate type=%s organization_id=%s idempotency_key=%s",
                command.type,
                command.organization_id,
                command.idempotency_key,
            )
            return
        ledger_transaction = LedgerTransaction(
            id=f"ltx_{uuid4().hex}",
            organization_id=command.organization_id,
            livemode=command.livemode,
            type=command.type,
            idempotency_key=command.idempotency_key,
            description=command.description,
            metadata_json=dict(command.metadata) or None,
        )
        session.add(ledger_transaction)
        session.add_all(
            [
                LedgerEntry(
                    id=f"le_{uuid4().hex}",
                    ledger_transaction_id=ledger_transaction.id,
                    organization_id=command.organization_id,
                    livemode=command.livemode,
                    account=entry.account,
                    direction=entry.direction,
                    amount=entry.amount,
                    entry_type=entry.entry_type,
                )
                for entry in command.entries
            ]
        )
        # Flush so a second command with the same key in this transaction sees the row.
        await session.flush()
