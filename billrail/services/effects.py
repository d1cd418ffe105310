from __future__ import annotations

import hashlib
import json
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import TYPE_CHECKING, Any, Callable, Generic, TypeVar
from uuid import uuid4

from sqlalchemy.ext.asyncio import AsyncSession

from billrail.core.errors import ValidationError

if TYPE_CHECKING:
    from billrail.services.auth.principal import Principal
    from billrail.services.ledger import LedgerCommand


T = TypeVar("T")

CacheKey = str


def hash_event_payload(event_type: str, payload: dict[str, Any]) -> str:
    # Canonical JSON keeps the hash stable regardless of dict insertion order.
    body = json.dumps({"type": event_type, "payload": payload}, sort_keys=True, default=str)
    return hashlib.sha256(body.encode("utf-8")).hexdigest()


def organization_cache_key(organization_id: str) -> CacheKey:
    return f"organization:{organization_id}"


def pricing_model_cache_key(pricing_model_id: str) -> CacheKey:
    return f"pricing_model:{pricing_model_id}"


@dataclass(frozen=True)
class EventInput:
    type: str
    payload: dict[str, Any] = field(default_factory=dict)
    hash: str | None = None
    occurred_at: datetime | None = None

    def resolved_hash(self, *, organization_id: str = "", livemode: bool = False) -> str:
        # Identical payloads from different organizations or modes must not collide.
        if self.hash:
            return self.hash
        return hash_event_payload(
            self.type, {"organization_id": organization_id, "livemode": livemode, "payload": self.payload}
        )

    def to_row(self, *, organization_id: str, livemode: bool, submitted_at: datetime) -> dict[str, Any]:
        return {
            "id": f"evt_{uuid4().hex}",
            "organization_id": organization_id,
            "livemode": livemode,
            "type": self.type,
            "payload": self.payload,
            "hash": self.resolved_hash(organization_id=organization_id, livemode=livemode),
            "occurred_at": self.occurred_at or submitted_at,
            "submitted_at": submitted_at,
        }


@dataclass
class TransactionOutput(Generic[T]):
    """What a unit of work returns: its result plus side effects to apply."""

    result: T
    events_to_insert: list[EventInput] = field(default_factory=list)
    ledger_command: "LedgerCommand | None" = None
    ledger_commands: list["LedgerCommand"] = field(default_factory=list)
    cache_invalidations: list[CacheKey] = field(default_factory=list)


@dataclass(frozen=True)
class AppliedEffects:
    events: list[EventInput]
    ledger_commands: list["LedgerCommand"]
    cache_invalidations: list[CacheKey]


@dataclass
class TransactionEffects:
    # Accumulates effects declared through ctx callbacks while the unit of work runs.
    events: list[EventInput] = field(default_factory=list)
    ledger_commands: list["LedgerCommand"] = field(default_factory=list)
    cache_invalidations: list[CacheKey] = field(default_factory=list)

    def emit_event(self, *events: EventInput) -> None:
        self.events.extend(events)

    def enqueue_ledger_command(self, *commands: "LedgerCommand") -> None:
        self.ledger_commands.extend(commands)

    def invalidate_cache(self, *keys: CacheKey) -> None:
        self.cache_invalidations.extend(keys)

    def merge(self, output: TransactionOutput[Any]) -> AppliedEffects:
        if output.ledger_command is not None and output.ledger_commands:
            raise ValidationError(
                "Cannot provide both ledger_command and ledger_commands in a transaction output"
            )
        commands = list(self.ledger_commands)
        if output.ledger_command is not None:
            commands.append(output.ledger_command)
        commands.extend(output.ledger_commands)
        keys: list[CacheKey] = []
        seen: set[CacheKey] = set()
        for key in [*self.cache_invalidations, *output.cache_invalidations]:
            if key not in seen:
                seen.add(key)
                keys.append(key)
        return AppliedEffects(
            events=[*self.events, *output.events_to_insert],
            ledger_commands=commands,
            cache_invalidations=keys,
        )


@dataclass(frozen=True)
class TransactionContext:
    """Capability bundle handed to a unit of work.

    Effects declared through the callbacks are applied with the same
    guarantees as effects returned in a :class:`TransactionOutput`.
    """

    session: AsyncSession
    user_id: str | None
    organization_id: str
    livemode: bool
    principal: "Principal | None"
    emit_event: Callable[..., None]
    enqueue_ledger_command: Callable[..., None]
    invalidate_cache: Callable[..., None]

    @property
    def transaction(self) -> AsyncSession:
        return self.session


def utcnow() -> datetime:
    return datetime.now(timezone.utc)
