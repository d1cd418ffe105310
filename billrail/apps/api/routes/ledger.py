from __future__ import annotations

from typing import Literal

from fastapi import APIRouter, Depends, Request, status
from pydantic import BaseModel, Field

from billrail.apps.api.deps import get_procedure_context, get_runner
from billrail.services.effects import EventInput, TransactionContext, TransactionOutput
from billrail.services.ledger import LedgerCommand, LedgerEntryInput
from billrail.services.transactions import ProcedureContext, comprehensive_procedure

router = APIRouter(prefix="/v1/ledger", tags=["ledger"])


class LedgerEntryRequest(BaseModel):
    account: str = Field(min_length=1)
    direction: Literal["debit", "credit"]
    amount: int = Field(gt=0)
    entry_type: str = "adjustment"


class LedgerTransactionRequest(BaseModel):
    idempotency_key: str = Field(min_length=1, max_length=128)
    type: str = "manual_adjustment"
    description: str | None = None
    entries: list[LedgerEntryRequest] = Field(min_length=2)


async def record_ledger_transaction(
    *, input: LedgerTransactionRequest, ctx: ProcedureContext, transaction_ctx: TransactionContext
) -> TransactionOutput[dict]:
    # Balance and idempotency are enforced by the ledger processor before commit.
    command = LedgerCommand(
        type=input.type,
        organization_id=transaction_ctx.organization_id,
        livemode=transaction_ctx.livemode,
        idempotency_key=input.idempotency_key,
        entries=tuple(
            LedgerEntryInput(
                account=entry.account,
                direction=entry.direction,
                amount=entry.amount,
                entry_type=entry.entry_type,
            )
            for entry in input.entries
        ),
        description=input.description,
        metadata={"path": ctx.extra.get("path")},
    )
    event = EventInput(
        type="ledger.transaction_requested",
        payload={"idempotency_key": input.idempotency_key, "type": input.type},
    )
    return TransactionOutput(
        result={"idempotency_key": input.idempotency_key, "entries": len(command.entries)},
        events_to_insert=[event],
        ledger_command=command,
    )


@router.post("/transactions", status_code=status.HTTP_202_ACCEPTED)
async def create_ledger_transaction(
    payload: LedgerTransactionRequest,
    request: Request,
    ctx: ProcedureContext = Depends(get_procedure_context),
) -> dict:
    procedure = comprehensive_procedure(record_ledger_transaction, runner=get_runner(request))
    return {"data": await procedure(input=payload, ctx=ctx)}
