from __future__ import annotations

from typing import Any, Sequence

from sqlalchemy import select
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.ext.asyncio import AsyncSession

from billrail.domain.models import Event
from billrail.persistence.db import dialect_name
from billrail.persistence.guards import organization_predicate


def _insert_for(session: AsyncSession):
    if dialect_name(session) == "postgresql":
        return pg_insert
    return sqlite_insert


async def bulk_insert_ignoring_duplicate_hash(
    session: AsyncSession, rows: Sequence[dict[str, Any]]
) -> list[Event]:
    """Insert event rows, skipping any whose hash is already stored.

    Returns the stored rows for every submitted hash, whether they were
    written now or by an earlier submission.
    """
    if not rows:
        return []
    # Collapse duplicates inside the batch; the first submission wins.
    unique: dict[str, dict[str, Any]] = {}
    for row in rows:
        unique.setdefault(row["hash"], row)
    insert = _insert_for(session)
    stmt = insert(Event).values(list(unique.values()))
    stmt = stmt.on_conflict_do_nothing(index_elements=[Event.hash])
    await session.execute(stmt)
    result = await session.execute(select(Event).where(Event.hash.in_(list(unique.keys()))))
    return list(result.scalars().all())


async def list_events(
    session: AsyncSession, organization_id: str, *, event_type: str | None = None
) -> list[Event]:
    query = select(Event).where(organization_predicate(Event, organization_id))
    if event_type is not None:
        query = query.where(Event.type == event_type)
    result = await session.execute(query.order_by(Event.occurred_at.asc(), Event.id.asc()))
    return list(result.scalars().all())
