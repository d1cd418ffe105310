from __future__ import annotations

from typing import Any, Iterable, Sequence, TypeVar

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from billrail.domain.models import (
    Feature,
    Price,
    PricingModel,
    Product,
    Resource,
    UsageMeter,
)
from billrail.persistence.guards import livemode_predicate, organization_predicate


M = TypeVar("M")


async def get_pricing_model(
    session: AsyncSession, organization_id: str, pricing_model_id: str
) -> PricingModel | None:
    # Scope by organization so another tenant's model reads as absent.
    result = await session.execute(
        select(PricingModel).where(
            PricingModel.id == pricing_model_id,
            organization_predicate(PricingModel, organization_id),
        )
    )
    return result.scalar_one_or_none()


async def get_live_pricing_model(session: AsyncSession, organization_id: str) -> PricingModel | None:
    result = await session.execute(
        select(PricingModel)
        .where(organization_predicate(PricingModel, organization_id), PricingModel.livemode.is_(True))
        .order_by(PricingModel.is_default.desc(), PricingModel.created_at.asc(), PricingModel.id.asc())
        .limit(1)
    )
    return result.scalar_one_or_none()


async def list_pricing_models(
    session: AsyncSession, organization_id: str, *, livemode: bool | None = None
) -> list[PricingModel]:
    query = select(PricingModel).where(organization_predicate(PricingModel, organization_id))
    if livemode is not None:
        query = query.where(livemode_predicate(PricingModel, livemode))
    result = await session.execute(query.order_by(PricingModel.created_at.asc(), PricingModel.id.asc()))
    return list(result.scalars().all())


async def _list_children(session: AsyncSession, model: Any, pricing_model_id: str, organization_id: str) -> list[Any]:
    result = await session.execute(
        select(model)
        .where(model.pricing_model_id == pricing_model_id, organization_predicate(model, organization_id))
        .order_by(model.slug.asc())
    )
    return list(result.scalars().all())


async def list_usage_meters(session: AsyncSession, pricing_model_id: str, organization_id: str) -> list[UsageMeter]:
    return await _list_children(session, UsageMeter, pricing_model_id, organization_id)


async def list_resources(session: AsyncSession, pricing_model_id: str, organization_id: str) -> list[Resource]:
    return await _list_children(session, Resource, pricing_model_id, organization_id)


async def list_features(session: AsyncSession, pricing_model_id: str, organization_id: str) -> list[Feature]:
    return await _list_children(session, Feature, pricing_model_id, organization_id)


async def list_products(session: AsyncSession, pricing_model_id: str, organization_id: str) -> list[Product]:
    return await _list_children(session, Product, pricing_model_id, organization_id)


async def list_prices(
    session: AsyncSession,
    organization_id: str,
    *,
    product_ids: Sequence[str] = (),
    usage_meter_ids: Sequence[str] = (),
) -> list[Price]:
    if not product_ids and not usage_meter_ids:
        return []
    query = select(Price).where(organization_predicate(Price, organization_id))
    if product_ids:
        query = query.where(Price.product_id.in_(list(product_ids)))
    else:
        query = query.where(Price.usage_meter_id.in_(list(usage_meter_ids)))
    result = await session.execute(query.order_by(Price.created_at.asc(), Price.id.asc()))
    return list(result.scalars().all())


async def bulk_insert(session: AsyncSession, rows: Iterable[M]) -> list[M]:
    # Flush so generated ids are usable by later inserts in the same transaction.
    items = list(rows)
    if not items:
        return []
    session.add_all(items)
    await session.flush()
    return items


async def update_by_id(
    session: AsyncSession, model: Any, row_id: str, values: dict[str, Any], organization_id: str
) -> None:
    if not values:
        return
    await session.execute(
        update(model)
        .where(model.id == row_id, organization_predicate(model, organization_id))
        .values(**values)
        .execution_options(synchronize_session=False)
    )


async def deactivate(session: AsyncSession, model: Any, ids: Sequence[str], organization_id: str) -> None:
    # Soft-deactivate only; rows are kept for history.
    if not ids:
        return
    await session.execute(
        update(model)
        .where(model.id.in_(list(ids)), organization_predicate(model, organization_id))
        .values(active=False)
        .execution_options(synchronize_session=False)
    )


async def deactivate_prices_for_products(
    session: AsyncSession, product_ids: Sequence[str], organization_id: str
) -> None:
    if not product_ids:
        return
    await session.execute(
        update(Price)
        .where(Price.product_id.in_(list(product_ids)), organization_predicate(Price, organization_id))
        .values(active=False)
        .execution_options(synchronize_session=False)
    )


async def deactivate_prices_for_meters(
    session: AsyncSession, usage_meter_ids: Sequence[str], organization_id: str
) -> None:
    if not usage_meter_ids:
        return
    await session.execute(
        update(Price)
        .where(Price.usage_meter_id.in_(list(usage_meter_ids)), organization_predicate(Price, organization_id))
        .values(active=False)
        .execution_options(synchronize_session=False)
    )
