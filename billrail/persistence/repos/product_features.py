from __future__ import annotations

from datetime import datetime, timezone
from typing import Iterable, Sequence
from uuid import uuid4

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from billrail.domain.models import ProductFeature
from billrail.persistence.guards import organization_predicate


async def list_product_features(
    session: AsyncSession, product_ids: Sequence[str], organization_id: str
) -> list[ProductFeature]:
    # Includes expired rows so restored grants reuse their original identity.
    if not product_ids:
        return []
    result = await session.execute(
        select(ProductFeature)
        .where(
            ProductFeature.product_id.in_(list(product_ids)),
            organization_predicate(ProductFeature, organization_id),
        )
        .order_by(ProductFeature.product_id.asc(), ProductFeature.feature_id.asc())
    )
    return list(result.scalars().all())


async def expire_product_features(
    session: AsyncSession, ids: Sequence[str], organization_id: str, *, expired_at: datetime | None = None
) -> None:
    if not ids:
        return
    await session.execute(
        update(ProductFeature)
        .where(ProductFeature.id.in_(list(ids)), organization_predicate(ProductFeature, organization_id))
        .values(expired_at=expired_at or datetime.now(timezone.utc))
        .execution_options(synchronize_session=False)
    )


async def unexpire_product_features(session: AsyncSession, ids: Sequence[str], organization_id: str) -> None:
    if not ids:
        return
    await session.execute(
        update(ProductFeature)
        .where(ProductFeature.id.in_(list(ids)), organization_predicate(ProductFeature, organization_id))
        .values(expired_at=None)
        .execution_options(synchronize_session=False)
    )


async def get_product_features(
    session: AsyncSession, ids: Sequence[str], organization_id: str
) -> list[ProductFeature]:
    if not ids:
        return []
    result = await session.execute(
        select(ProductFeature)
        .where(ProductFeature.id.in_(list(ids)), organization_predicate(ProductFeature, organization_id))
        .order_by(ProductFeature.id.asc())
        # Bulk updates bypass the identity map, so refresh any loaded rows.
        .execution_options(populate_existing=True)
    )
    return list(result.scalars().all())


async def apply_product_feature_changes(
    session: AsyncSession,
    *,
    organization_id: str,
    livemode: bool,
    insert: Iterable[tuple[str, str]],
    unexpire_ids: Sequence[str],
    expire_ids: Sequence[str],
) -> tuple[list[ProductFeature], list[ProductFeature]]:
    """Write an already computed grant diff.

    ``insert`` holds ``(product_id, feature_id)`` pairs for brand-new grants.
    Returns ``(added, expired)``; ``added`` lists inserted rows first, then
    restored ones.
    """
    now = datetime.now(timezone.utc)
    await expire_product_features(session, expire_ids, organization_id, expired_at=now)
    await unexpire_product_features(session, unexpire_ids, organization_id)
    rows = [
        ProductFeature(
            id=f"pf_{uuid4().hex}",
            organization_id=organization_id,
            livemode=livemode,
            product_id=product_id,
            feature_id=feature_id,
        )
        for product_id, feature_id in insert
    ]
    if rows:
        session.add_all(rows)
        await session.flush()
    restored = await get_product_features(session, unexpire_ids, organization_id)
    expired = await get_product_features(session, expire_ids, organization_id)
    return [*rows, *restored], expired


async def sync_product_features(
    session: AsyncSession,
    *,
    organization_id: str,
    livemode: bool,
    desired: Iterable[tuple[str, str]],
    product_ids: Sequence[str],
) -> tuple[list[ProductFeature], list[ProductFeature]]:
    """Make the active grants of ``product_ids`` equal ``desired``.

    ``desired`` holds ``(product_id, feature_id)`` pairs. Returns
    ``(added, expired)`` where ``added`` covers both new rows and restored
    rows whose expiry was cleared.
    """
    wanted = set(desired)
    existing = await list_product_features(session, product_ids, organization_id)
    by_key = {(row.product_id, row.feature_id): row for row in existing}

    to_expire = [row for key, row in by_key.items() if key not in wanted and row.expired_at is None]
    to_unexpire = [row for key, row in by_key.items() if key in wanted and row.expired_at is not None]
    to_insert = [
        ProductFeature(
            id=f"pf_{uuid4().hex}",
            organization_id=organization_id,
            livemode=livemode,
            product_id=product_id,
            feature_id=feature_id,
        )
        for product_id, feature_id in sorted(wanted)
        if (product_id, feature_id) not in by_key
    ]

    now = datetime.now(timezone.utc)
    await expire_product_features(session, [row.id for row in to_expire], organization_id, expired_at=now)
    await unexpire_product_features(session, [row.id for row in to_unexpire], organization_id)
    # Keep the in-memory rows consistent with the bulk updates above.
    for row in to_expire:
        row.expired_at = now
    for row in to_unexpire:
        row.expired_at = None
    if to_insert:
        session.add_all(to_insert)
        await session.flush()
    return [*to_insert, *to_unexpire], to_expire
