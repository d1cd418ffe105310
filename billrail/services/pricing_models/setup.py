from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any
from uuid import uuid4

from sqlalchemy.ext.asyncio import AsyncSession

from billrail.core.errors import ValidationError
from billrail.core.result import Err, Ok, Result
from billrail.domain.models import (
    Feature,
    Price,
    PricingModel,
    Product,
    ProductFeature,
    Resource,
    UsageMeter,
)
from billrail.persistence.repos import pricing_models as pricing_models_repo
from billrail.persistence.repos import product_features as product_features_repo
from billrail.services.effects import (
    EventInput,
    TransactionContext,
    organization_cache_key,
    pricing_model_cache_key,
)
from billrail.services.pricing_models.diffing import normalize_structure
from billrail.services.pricing_models.schemas import (
    PricingModelStructure,
    ProductInput,
    ResourceFeature,
    ResourceInput,
    UsageCreditGrantFeature,
    UsageMeterInput,
    UsagePrice,
    validate_structure,
)


logger = logging.getLogger(__name__)


@dataclass
class SetupResult:
    pricing_model: PricingModel
    usage_meters: list[UsageMeter] = field(default_factory=list)
    resources: list[Resource] = field(default_factory=list)
    features: list[Feature] = field(default_factory=list)
    products: list[Product] = field(default_factory=list)
    prices: list[Price] = field(default_factory=list)
    product_features: list[ProductFeature] = field(default_factory=list)


@dataclass(frozen=True)
class RowScope:
    # Ownership columns shared by every row written for one pricing model.
    pricing_model_id: str
    organization_id: str
    livemode: bool


def meter_row(meter: UsageMeterInput, scope: RowScope) -> UsageMeter:
    return UsageMeter(
        id=f"um_{uuid4().hex}",
        pricing_model_id=scope.pricing_model_id,
        organization_id=scope.organization_id,
        livemode=scope.livemode,
        slug=meter.slug,
        name=meter.name,
        aggregation_type=meter.aggregation_type,
        active=meter.active,
    )


def resource_row(resource: ResourceInput, scope: RowScope) -> Resource:
    return Resource(
        id=f"res_{uuid4().hex}",
        pricing_model_id=scope.pricing_model_id,
        organization_id=scope.organization_id,
        livemode=scope.livemode,
        slug=resource.slug,
        name=resource.name,
        active=resource.active,
    )


def feature_values(feature, meter_ids: dict[str, str], resource_ids: dict[str, str]) -> dict[str, Any]:
    # Column values derived from a feature input, with slugs resolved to row ids.
    values: dict[str, Any] = {
        "slug": feature.slug,
        "name": feature.name,
        "description": feature.description,
        "type": feature.type,
        "active": feature.active,
        "amount": None,
        "usage_meter_id": None,
        "resource_id": None,
        "renewal_frequency": None,
    }
    if isinstance(feature, UsageCreditGrantFeature):
        meter_id = meter_ids.get(feature.usage_meter_slug)
        if meter_id is None:
            raise ValidationError(
                f"Feature {feature.slug} references unknown usage meter {feature.usage_meter_slug}"
            )
        values.update(
            amount=feature.amount,
            usage_meter_id=meter_id,
            renewal_frequency=feature.renewal_frequency,
        )
    elif isinstance(feature, ResourceFeature):
        resource_id = resource_ids.get(feature.resource_slug)
        if resource_id is None:
            raise ValidationError(f"Feature {feature.slug} references unknown resource {feature.resource_slug}")
        values.update(amount=feature.amount, resource_id=resource_id)
    return values


def feature_row(feature, scope: RowScope, meter_ids: dict[str, str], resource_ids: dict[str, str]) -> Feature:
    return Feature(
        id=f"feat_{uuid4().hex}",
        pricing_model_id=scope.pricing_model_id,
        organization_id=scope.organization_id,
        livemode=scope.livemode,
        **feature_values(feature, meter_ids, resource_ids),
    )


def product_values(product: ProductInput) -> dict[str, Any]:
    return {
        "slug": product.slug,
        "name": product.name,
        "description": product.description,
        "default": product.default,
        "active": product.active,
        "external_id": product.external_id,
    }


def product_row(product: ProductInput, scope: RowScope) -> Product:
    return Product(
        id=f"prod_{uuid4().hex}",
        pricing_model_id=scope.pricing_model_id,
        organization_id=scope.organization_id,
        livemode=scope.livemode,
        **product_values(product),
    )


def price_values(price) -> dict[str, Any]:
    values: dict[str, Any] = {
        "type": price.type,
        "slug": price.slug,
        "name": price.name,
        "unit_price": price.unit_price,
        "currency": price.currency,
        "is_default": price.is_default,
        "active": price.active,
        "interval_unit": getattr(price, "interval_unit", None),
        "interval_count": getattr(price, "interval_count", None),
        "trial_period_days": getattr(price, "trial_period_days", None),
        "usage_events_per_unit": getattr(price, "usage_events_per_unit", None),
    }
    return values


def price_row(
    price, scope: RowScope, *, product_id: str | None = None, usage_meter_id: str | None = None
) -> Price:
    return Price(
        id=f"price_{uuid4().hex}",
        organization_id=scope.organization_id,
        livemode=scope.livemode,
        product_id=product_id,
        usage_meter_id=usage_meter_id,
        **price_values(price),
    )


def usage_price_rows(meter_id: str, prices: list[UsagePrice], scope: RowScope) -> list[Price]:
    return [price_row(price, scope, usage_meter_id=meter_id) for price in prices]


async def insert_structure(
    session: AsyncSession, pricing_model: PricingModel, structure: PricingModelStructure
) -> SetupResult:
    """Insert every entity of a normalized structure under ``pricing_model``."""
    scope = RowScope(
        pricing_model_id=pricing_model.id,
        organization_id=pricing_model.organization_id,
        livemode=pricing_model.livemode,
    )
    result = SetupResult(pricing_model=pricing_model)

    result.usage_meters = await pricing_models_repo.bulk_insert(
        session, [meter_row(meter, scope) for meter in structure.usage_meters]
    )
    meter_ids = {row.slug: row.id for row in result.usage_meters}
    result.resources = await pricing_models_repo.bulk_insert(
        session, [resource_row(resource, scope) for resource in structure.resources]
    )
    resource_ids = {row.slug: row.id for row in result.resources}
    result.features = await pricing_models_repo.bulk_insert(
        session, [feature_row(feature, scope, meter_ids, resource_ids) for feature in structure.features]
    )
    feature_ids = {row.slug: row.id for row in result.features}
    result.products = await pricing_models_repo.bulk_insert(
        session, [product_row(product, scope) for product in structure.products]
    )
    product_ids = {row.slug: row.id for row in result.products}

    prices = [
        price_row(product.price, scope, product_id=product_ids[product.slug]) for product in structure.products
    ]
    for meter in structure.usage_meters:
        prices.extend(usage_price_rows(meter_ids[meter.slug], meter.prices, scope))
    result.prices = await pricing_models_repo.bulk_insert(session, prices)

    added, _expired = await product_features_repo.sync_product_features(
        session,
        organization_id=scope.organization_id,
        livemode=scope.livemode,
        desired=[
            (product_ids[product.slug], feature_ids[feature_slug])
            for product in structure.products
            for feature_slug in product.features
        ],
        product_ids=list(product_ids.values()),
    )
    result.product_features = added
    return result


async def create_pricing_model(
    session: AsyncSession,
    *,
    organization_id: str,
    livemode: bool,
    structure: PricingModelStructure,
) -> Result[SetupResult, ValidationError]:
    validated = validate_structure(structure)
    if validated.is_err():
        return validated
    pricing_model_id = f"pm_{uuid4().hex}"
    normalized = normalize_structure(structure, pricing_model_id=pricing_model_id)
    if normalized.is_err():
        return normalized
    pricing_model = PricingModel(
        id=pricing_model_id,
        organization_id=organization_id,
        livemode=livemode,
        name=structure.name,
        is_default=structure.is_default,
    )
    await pricing_models_repo.bulk_insert(session, [pricing_model])
    return Ok(await insert_structure(session, pricing_model, normalized.unwrap()))


async def setup_pricing_model(
    ctx: TransactionContext, structure: PricingModelStructure, *, livemode: bool | None = None
) -> Result[SetupResult, ValidationError]:
    """Create a pricing model and its whole tree in the caller's transaction.

    Validation failures are returned before any row is written.
    """
    created = await create_pricing_model(
        ctx.session,
        organization_id=ctx.organization_id,
        livemode=ctx.livemode if livemode is None else livemode,
        structure=structure,
    )
    if created.is_err():
        return created
    result = created.unwrap()
    pricing_model = result.pricing_model
    ctx.emit_event(
        EventInput(
            type="pricing_model.created",
            payload={"pricing_model_id": pricing_model.id, "livemode": pricing_model.livemode},
        )
    )
    ctx.invalidate_cache(
        pricing_model_cache_key(pricing_model.id), organization_cache_key(ctx.organization_id)
    )
    logger.info(
        "pricing_model_setup organization_id=%s pricing_model_id=%s products=%s features=%s",
        ctx.organization_id,
        pricing_model.id,
        len(result.products),
        len(result.features),
    )
    return Ok(result)
