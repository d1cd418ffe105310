from __future__ import annotations

from dataclasses import dataclass, field

from sqlalchemy.ext.asyncio import AsyncSession

from billrail.domain.models import Feature, Price, PricingModel, Product, UsageMeter
from billrail.persistence.repos import pricing_models as pricing_models_repo
from billrail.persistence.repos import product_features as product_features_repo
from billrail.services.pricing_models.diffing import ProductFeatureLink
from billrail.services.pricing_models.schemas import (
    PricingModelStructure,
    ProductInput,
    ResourceFeature,
    ResourceInput,
    SinglePaymentPrice,
    SubscriptionPrice,
    ToggleFeature,
    UsageCreditGrantFeature,
    UsageMeterInput,
    UsagePrice,
)


@dataclass(frozen=True)
class PricingModelSnapshot:
    pricing_model: PricingModel
    structure: PricingModelStructure
    links: list[ProductFeatureLink]
    # Slug to row id lookups used when applying a diff.
    meter_ids: dict[str, str] = field(default_factory=dict)
    resource_ids: dict[str, str] = field(default_factory=dict)
    feature_ids: dict[str, str] = field(default_factory=dict)
    product_ids: dict[str, str] = field(default_factory=dict)


def _feature_input(row: Feature, meter_slugs: dict[str, str], resource_slugs: dict[str, str]):
    common = {
        "id": row.id,
        "slug": row.slug,
        "name": row.name,
        "description": row.description,
        "active": row.active,
    }
    if row.type == "usage_credit_grant":
        return UsageCreditGrantFeature(
            **common,
            usage_meter_slug=meter_slugs.get(row.usage_meter_id or "", ""),
            amount=row.amount or 1,
            renewal_frequency=row.renewal_frequency or "every_billing_period",
        )
    if row.type == "resource":
        return ResourceFeature(
            **common,
            resource_slug=resource_slugs.get(row.resource_id or "", ""),
            amount=row.amount or 1,
        )
    return ToggleFeature(**common)


def _product_price_input(row: Price):
    common = {
        "id": row.id,
        "slug": row.slug,
        "name": row.name,
        "unit_price": row.unit_price,
        "currency": row.currency,
        "is_default": row.is_default,
        "active": row.active,
    }
    if row.type == "single_payment":
        return SinglePaymentPrice(**common)
    return SubscriptionPrice(
        **common,
        interval_unit=row.interval_unit or "month",
        interval_count=row.interval_count or 1,
        trial_period_days=row.trial_period_days,
    )


def _usage_price_input(row: Price) -> UsagePrice:
    return UsagePrice(
        id=row.id,
        slug=row.slug,
        name=row.name,
        unit_price=row.unit_price,
        currency=row.currency,
        is_default=row.is_default,
        active=row.active,
        interval_unit=row.interval_unit or "month",
        interval_count=row.interval_count or 1,
        usage_events_per_unit=row.usage_events_per_unit or 1,
    )


def _current_price(prices: list[Price]) -> Price | None:
    # Prefer the active price; fall back to the newest one for deactivated products.
    active = [price for price in prices if price.active]
    if active:
        return active[-1]
    return prices[-1] if prices else None


async def load_snapshot(session: AsyncSession, pricing_model: PricingModel) -> PricingModelSnapshot:
    """Read a stored pricing model back into the structure used for diffing."""
    organization_id = pricing_model.organization_id
    meters = await pricing_models_repo.list_usage_meters(session, pricing_model.id, organization_id)
    resources = await pricing_models_repo.list_resources(session, pricing_model.id, organization_id)
    features = await pricing_models_repo.list_features(session, pricing_model.id, organization_id)
    products = await pricing_models_repo.list_products(session, pricing_model.id, organization_id)

    meter_slugs = {meter.id: meter.slug for meter in meters}
    resource_slugs = {resource.id: resource.slug for resource in resources}
    feature_slugs = {feature.id: feature.slug for feature in features}
    product_slugs = {product.id: product.slug for product in products}

    usage_prices = await pricing_models_repo.list_prices(
        session, organization_id, usage_meter_ids=list(meter_slugs)
    )
    product_prices = await pricing_models_repo.list_prices(
        session, organization_id, product_ids=list(product_slugs)
    )
    grants = await product_features_repo.list_product_features(session, list(product_slugs), organization_id)

    prices_by_product: dict[str, list[Price]] = {}
    for price in product_prices:
        prices_by_product.setdefault(price.product_id or "", []).append(price)

    links = [
        ProductFeatureLink(
            product_slug=product_slugs[grant.product_id],
            feature_slug=feature_slugs[grant.feature_id],
            id=grant.id,
            expired=grant.expired_at is not None,
        )
        for grant in grants
        if grant.product_id in product_slugs and grant.feature_id in feature_slugs
    ]
    active_grants: dict[str, list[str]] = {}
    for link in links:
        if not link.expired:
            active_grants.setdefault(link.product_slug, []).append(link.feature_slug)

    product_inputs: list[ProductInput] = []
    for product in products:
        price = _current_price(prices_by_product.get(product.id, []))
        if price is None:
            continue
        product_inputs.append(
            _product_input(product, _product_price_input(price), active_grants.get(product.slug, []))
        )

    structure = PricingModelStructure(
        id=pricing_model.id,
        name=pricing_model.name,
        is_default=pricing_model.is_default,
        features=[_feature_input(row, meter_slugs, resource_slugs) for row in features],
        products=product_inputs,
        usage_meters=[_meter_input(meter, usage_prices) for meter in meters],
        resources=[
            ResourceInput(id=row.id, slug=row.slug, name=row.name, active=row.active) for row in resources
        ],
    )
    return PricingModelSnapshot(
        pricing_model=pricing_model,
        structure=structure,
        links=links,
        meter_ids={meter.slug: meter.id for meter in meters},
        resource_ids={resource.slug: resource.id for resource in resources},
        feature_ids={feature.slug: feature.id for feature in features},
        product_ids={product.slug: product.id for product in products},
    )


def _product_input(row: Product, price, features: list[str]) -> ProductInput:
    return ProductInput(
        id=row.id,
        slug=row.slug,
        name=row.name,
        description=row.description,
        default=row.default,
        active=row.active,
        external_id=row.external_id,
        price=price,
        features=sorted(features),
    )


def _meter_input(meter: UsageMeter, usage_prices: list[Price]) -> UsageMeterInput:
    return UsageMeterInput(
        id=meter.id,
        slug=meter.slug,
        name=meter.name,
        aggregation_type=meter.aggregation_type,
        active=meter.active,
        prices=[
            _usage_price_input(price)
            for price in usage_prices
            if price.usage_meter_id == meter.id and price.active
        ],
    )
