from __future__ import annotations

import pytest

from billrail.core.errors import ValidationError
from billrail.services.effects import (
    EventInput,
    TransactionEffects,
    TransactionOutput,
    hash_event_payload,
    utcnow,
)
from billrail.services.ledger import LedgerCommand, LedgerEntryInput


def _command(key: str) -> LedgerCommand:
    return LedgerCommand(
        type="credit_grant",
        organization_id="org_1",
        livemode=False,
        idempotency_key=key,
        entries=(
            LedgerEntryInput(account="cash", direction="debit", amount=100, entry_type="grant"),
            LedgerEntryInput(account="credits", direction="credit", amount=100, entry_type="grant"),
        ),
    )


def test_merge_rejects_singular_and_plural_ledger_commands() -> None:
    effects = TransactionEffects()
    output = TransactionOutput(result=None, ledger_command=_command("a"), ledger_commands=[_command("b")])
    with pytest.raises(ValidationError):
        effects.merge(output)


def test_merge_orders_callback_effects_before_returned_effects() -> None:
    effects = TransactionEffects()
    effects.emit_event(EventInput(type="first"))
    effects.enqueue_ledger_command(_command("ctx"))
    effects.invalidate_cache("organization:org_1", "pricing_model:pm_1")
    output = TransactionOutput(
        result="ok",
        events_to_insert=[EventInput(type="second")],
        ledger_commands=[_command("out-1"), _command("out-2")],
        cache_invalidations=["pricing_model:pm_1", "customer:cus_1"],
    )
    applied = effects.merge(output)
    assert [event.type for event in applied.events] == ["first", "second"]
    assert [command.idempotency_key for command in applied.ledger_commands] == ["ctx", "out-1", "out-2"]
    # Duplicate keys collapse, first occurrence wins.
    assert applied.cache_invalidations == ["organization:org_1", "pricing_model:pm_1", "customer:cus_1"]


def test_event_hash_is_scoped_to_organization_and_mode() -> None:
    event = EventInput(type="pricing_model.created", payload={"b": 2, "a": 1})
    now = utcnow()
    row_a = event.to_row(organization_id="org_a", livemode=False, submitted_at=now)
    row_b = event.to_row(organization_id="org_b", livemode=False, submitted_at=now)
    row_live = event.to_row(organization_id="org_a", livemode=True, submitted_at=now)
    assert len({row_a["hash"], row_b["hash"], row_live["hash"]}) == 3
    assert row_a["occurred_at"] == now


def test_explicit_event_hash_is_kept() -> None:
    event = EventInput(type="x", payload={}, hash="caller-hash")
    assert event.to_row(organization_id="org", livemode=False, submitted_at=utcnow())["hash"] == "caller-hash"


def test_payload_hash_ignores_key_order() -> None:
    assert hash_event_payload("t", {"a": 1, "b": 2}) == hash_event_payload("t", {"b": 2, "a": 1})
