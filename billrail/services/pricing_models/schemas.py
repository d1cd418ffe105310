from __future__ import annotations

from typing import Annotated, Literal, Union

from pydantic import BaseModel, ConfigDict, Field

from billrail.core.errors import ValidationError
from billrail.core.result import Err, Ok, Result


IntervalUnit = Literal["day", "week", "month", "year"]


class _Entity(BaseModel):
    model_config = ConfigDict(extra="forbid", frozen=True)

    # Set on snapshots loaded from the database; always None in caller input.
    id: str | None = None


class _FeatureBase(_Entity):
    slug: str = Field(min_length=1)
    name: str
    description: str = ""
    active: bool = True


class ToggleFeature(_FeatureBase):
    type: Literal["toggle"] = "toggle"


class UsageCreditGrantFeature(_FeatureBase):
    type: Literal["usage_credit_grant"] = "usage_credit_grant"
    usage_meter_slug: str
    amount: int = Field(gt=0)
    renewal_frequency: Literal["once", "every_billing_period"] = "every_billing_period"


class ResourceFeature(_FeatureBase):
    type: Literal["resource"] = "resource"
    resource_slug: str
    amount: int = Field(gt=0)


FeatureInput = Annotated[
    Union[ToggleFeature, UsageCreditGrantFeature, ResourceFeature],
    Field(discriminator="type"),
]


class _PriceBase(_Entity):
    slug: str | None = None
    name: str | None = None
    unit_price: int = Field(ge=0)
    currency: str = "USD"
    is_default: bool = True
    active: bool = True


class SubscriptionPrice(_PriceBase):
    type: Literal["subscription"] = "subscription"
    interval_unit: IntervalUnit = "month"
    interval_count: int = Field(default=1, ge=1)
    trial_period_days: int | None = None


class SinglePaymentPrice(_PriceBase):
    type: Literal["single_payment"] = "single_payment"


class UsagePrice(_PriceBase):
    type: Literal["usage"] = "usage"
    # Meters may carry several prices; only one can be the default.
    is_default: bool = False
    interval_unit: IntervalUnit = "month"
    interval_count: int = Field(default=1, ge=1)
    usage_events_per_unit: int = Field(default=1, ge=1)


ProductPriceInput = Annotated[
    Union[SubscriptionPrice, SinglePaymentPrice],
    Field(discriminator="type"),
]


class ProductInput(_Entity):
    slug: str = Field(min_length=1)
    name: str
    description: str = ""
    default: bool = False
    active: bool = True
    external_id: str | None = None
    price: ProductPriceInput
    # Slugs of features granted by this product.
    features: list[str] = Field(default_factory=list)


class UsageMeterInput(_Entity):
    slug: str = Field(min_length=1)
    name: str
    aggregation_type: Literal["sum", "count_distinct_properties"] = "sum"
    active: bool = True
    prices: list[UsagePrice] = Field(default_factory=list)


class ResourceInput(_Entity):
    slug: str = Field(min_length=1)
    name: str
    active: bool = True


class PricingModelStructure(_Entity):
    name: str
    is_default: bool = False
    features: list[FeatureInput] = Field(default_factory=list)
    products: list[ProductInput] = Field(default_factory=list)
    usage_meters: list[UsageMeterInput] = Field(default_factory=list)
    resources: list[ResourceInput] = Field(default_factory=list)


def _duplicates(slugs: list[str]) -> list[str]:
    seen: set[str] = set()
    dupes: list[str] = []
    for slug in slugs:
        if slug in seen and slug not in dupes:
            dupes.append(slug)
        seen.add(slug)
    return dupes


def duplicate_price_slugs(structure: PricingModelStructure) -> list[str]:
    # Prices without a slug are skipped; normalization assigns theirs.
    price_slugs = [product.price.slug for product in structure.products if product.price.slug]
    price_slugs.extend(price.slug for meter in structure.usage_meters for price in meter.prices if price.slug)
    return _duplicates(price_slugs)


def validate_structure(structure: PricingModelStructure) -> Result[PricingModelStructure, ValidationError]:
    """Check cross-entity rules that single-field validation cannot express."""
    for kind, slugs in (
        ("feature", [feature.slug for feature in structure.features]),
        ("product", [product.slug for product in structure.products]),
        ("usage meter", [meter.slug for meter in structure.usage_meters]),
        ("resource", [resource.slug for resource in structure.resources]),
    ):
        dupes = _duplicates(slugs)
        if dupes:
            return Err(ValidationError(f"Duplicate {kind} slugs: {', '.join(dupes)}"))

    feature_slugs = {feature.slug for feature in structure.features}
    meter_slugs = {meter.slug for meter in structure.usage_meters}
    resource_slugs = {resource.slug for resource in structure.resources}

    for product in structure.products:
        missing = [slug for slug in product.features if slug not in feature_slugs]
        if missing:
            return Err(
                ValidationError(f"Product {product.slug} references unknown features: {', '.join(missing)}")
            )

    for feature in structure.features:
        if isinstance(feature, UsageCreditGrantFeature) and feature.usage_meter_slug not in meter_slugs:
            return Err(
                ValidationError(
                    f"Feature {feature.slug} references unknown usage meter {feature.usage_meter_slug}"
                )
            )
        if isinstance(feature, ResourceFeature) and feature.resource_slug not in resource_slugs:
            return Err(
                ValidationError(f"Feature {feature.slug} references unknown resource {feature.resource_slug}")
            )

    dupes = duplicate_price_slugs(structure)
    if dupes:
        return Err(ValidationError(f"Duplicate price slugs: {', '.join(dupes)}"))

    for meter in structure.usage_meters:
        if sum(1 for price in meter.prices if price.is_default) > 1:
            return Err(ValidationError(f"Usage meter {meter.slug} has multiple default prices"))

    if sum(1 for product in structure.products if product.default) > 1:
        return Err(ValidationError("Multiple default products not allowed"))

    return Ok(structure)
