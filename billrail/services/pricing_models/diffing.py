"""Pure reconciliation of pricing-model structures.

Nothing here touches the database. Every function takes immutable
snapshots and returns plain diff values; the setup, update and promotion
services apply those diffs inside a transaction.

Entities are matched by slug:

* slug only in the desired structure: add
* slug in both: update in place, keeping the existing id
* slug only in the existing structure: expire, unless the kind is preserved
"""

from __future__ import annotations

import hashlib
import json
from dataclasses import dataclass, field
from typing import Any, Callable, Generic, Iterable, TypeVar

from pydantic import BaseModel

from billrail.core.errors import ValidationError
from billrail.core.result import Err, Ok, Result
from billrail.services.pricing_models.schemas import (
    PricingModelStructure,
    ProductInput,
    SubscriptionPrice,
    UsageMeterInput,
    UsagePrice,
    duplicate_price_slugs,
)


S = TypeVar("S", bound=BaseModel)

DEFAULT_PRODUCT_NAME = "Free Plan"
DEFAULT_PRODUCT_SLUG = "free"

# Changing any of these replaces the price (deactivate old, insert new) instead of updating it.
PRICE_IMMUTABLE_FIELDS = frozenset(
    {
        "type",
        "unit_price",
        "currency",
        "interval_unit",
        "interval_count",
        "trial_period_days",
        "usage_events_per_unit",
    }
)


def _stable_hash(data: dict[str, Any]) -> str:
    body = json.dumps(data, sort_keys=True, separators=(",", ":"), default=str)
    return hashlib.sha256(body.encode("utf-8")).hexdigest()


def usage_price_slug(meter_slug: str, price: UsagePrice) -> str:
    # Display fields (name, active, is_default) are excluded so renames update in place.
    digest = _stable_hash(
        {
            "meter_slug": meter_slug,
            "unit_price": price.unit_price,
            "usage_events_per_unit": price.usage_events_per_unit,
            "currency": price.currency,
            "interval_count": price.interval_count,
            "interval_unit": price.interval_unit,
        }
    )
    return f"usage_{digest[:16]}"


def default_product_external_id(pricing_model_id: str | None) -> str:
    return _stable_hash({"name": DEFAULT_PRODUCT_NAME, "pricing_model_id": pricing_model_id})


def build_default_product(pricing_model_id: str | None, *, taken_slugs: Iterable[str] = ()) -> ProductInput:
    external_id = default_product_external_id(pricing_model_id)
    slug = DEFAULT_PRODUCT_SLUG
    if slug in set(taken_slugs):
        slug = f"{DEFAULT_PRODUCT_SLUG}_{external_id[:8]}"
    return ProductInput(
        slug=slug,
        name=DEFAULT_PRODUCT_NAME,
        description="Default plan",
        default=True,
        external_id=external_id,
        price=SubscriptionPrice(slug=slug, name=DEFAULT_PRODUCT_NAME, unit_price=0, is_default=True),
        features=[],
    )


def normalize_structure(
    structure: PricingModelStructure, *, pricing_model_id: str | None = None
) -> Result[PricingModelStructure, ValidationError]:
    """Make slug matching total and guarantee exactly one default product."""
    defaults = [product for product in structure.products if product.default]
    if len(defaults) > 1:
        return Err(ValidationError("Multiple default products not allowed"))

    products: list[ProductInput] = []
    for product in structure.products:
        if product.price.slug:
            products.append(product)
        else:
            products.append(
                product.model_copy(update={"price": product.price.model_copy(update={"slug": product.slug})})
            )

    meters: list[UsageMeterInput] = []
    for meter in structure.usage_meters:
        prices = [
            price if price.slug else price.model_copy(update={"slug": usage_price_slug(meter.slug, price)})
            for price in meter.prices
        ]
        meters.append(meter.model_copy(update={"prices": prices}))

    if not defaults:
        products.append(
            build_default_product(pricing_model_id, taken_slugs=[product.slug for product in products])
        )

    normalized = structure.model_copy(update={"products": products, "usage_meters": meters})
    # Defaulted slugs can collide with explicit ones.
    dupes = duplicate_price_slugs(normalized)
    if dupes:
        return Err(ValidationError(f"Duplicate price slugs: {', '.join(dupes)}"))
    return Ok(normalized)


def find_default_product(structure: PricingModelStructure) -> ProductInput | None:
    return next((product for product in structure.products if product.default and product.active), None)


def _protected_fields(product: ProductInput) -> dict[str, Any]:
    price = product.price
    return {
        "slug": product.slug,
        "active": product.active,
        "price_slug": price.slug or product.slug,
        "price_type": price.type,
        "unit_price": price.unit_price,
        "currency": price.currency,
        "interval_unit": getattr(price, "interval_unit", None),
        "interval_count": getattr(price, "interval_count", None),
        "trial_period_days": getattr(price, "trial_period_days", None),
    }


def has_protected_field_changes(existing: ProductInput, proposed: ProductInput) -> bool:
    return _protected_fields(existing) != _protected_fields(proposed)


def merge_default_product(existing: ProductInput, proposed: ProductInput) -> ProductInput:
    """Keep the existing default's identity and price; take only display fields and grants."""
    return existing.model_copy(
        update={
            "id": None,
            "name": proposed.name,
            "description": proposed.description,
            "features": list(proposed.features),
            "price": existing.price.model_copy(update={"id": None}),
        }
    )


def protect_default_product(
    existing: PricingModelStructure, desired: PricingModelStructure
) -> Result[PricingModelStructure, ValidationError]:
    """Stop an update from removing or re-pricing the stored default product.

    A desired structure without a default gets the stored one back. A desired
    default that changes protected fields (slug, active, price terms) is
    merged onto the stored one. Other products pass through untouched.
    """
    proposed_defaults = [product for product in desired.products if product.default]
    if len(proposed_defaults) > 1:
        return Err(ValidationError("Multiple default products not allowed"))
    current = find_default_product(existing)
    if current is None:
        return Ok(desired)
    if not proposed_defaults:
        desired_features = {feature.slug for feature in desired.features}
        restored = merge_default_product(
            current,
            current.model_copy(
                update={"features": [slug for slug in current.features if slug in desired_features]}
            ),
        )
        # A non-default entry under the default's slug is folded into it.
        same_slug = next((product for product in desired.products if product.slug == current.slug), None)
        if same_slug is not None:
            restored = merge_default_product(current, same_slug)
        kept = [product for product in desired.products if product.slug != current.slug]
        kept.append(restored)
        return Ok(desired.model_copy(update={"products": kept}))
    proposed = proposed_defaults[0]
    if not has_protected_field_changes(current, proposed):
        return Ok(desired)
    merged = merge_default_product(current, proposed)
    products: list[ProductInput] = []
    for product in desired.products:
        if product is proposed:
            products.append(merged)
        elif product.slug != current.slug:
            products.append(product)
    return Ok(desired.model_copy(update={"products": products}))


def compute_update_fields(
    existing: BaseModel, desired: BaseModel, *, exclude: Iterable[str] = ("id",)
) -> dict[str, Any]:
    """Return only the desired fields whose values differ from the existing entity."""
    excluded = set(exclude)
    before = existing.model_dump(exclude=excluded)
    after = desired.model_dump(exclude=excluded)
    changes: dict[str, Any] = {}
    for key in sorted(set(before) | set(after)):
        if before.get(key) != after.get(key):
            changes[key] = after.get(key)
    return changes


@dataclass(frozen=True)
class EntityUpdate(Generic[S]):
    existing: S
    desired: S
    # Desired fields carrying the existing identity.
    merged: S
    changes: dict[str, Any]

    @property
    def changed(self) -> bool:
        return bool(self.changes)


@dataclass(frozen=True)
class SlugDiff(Generic[S]):
    to_add: list[S] = field(default_factory=list)
    to_update: list[EntityUpdate[S]] = field(default_factory=list)
    to_expire: list[S] = field(default_factory=list)
    # Unreferenced existing entities kept because the kind is preserved.
    preserved: list[S] = field(default_factory=list)

    @property
    def is_noop(self) -> bool:
        return not self.to_add and not self.to_expire and not any(u.changed for u in self.to_update)


def diff_slugged(
    existing: Iterable[S],
    desired: Iterable[S],
    *,
    preserve_unreferenced: bool = False,
    key: Callable[[S], str] = lambda entity: entity.slug,  # type: ignore[attr-defined]
    exclude: Iterable[str] = ("id",),
) -> SlugDiff[S]:
    existing_map = {key(entity): entity for entity in existing}
    desired_map = {key(entity): entity for entity in desired}

    result: SlugDiff[S] = SlugDiff()
    for slug, proposed in desired_map.items():
        current = existing_map.get(slug)
        if current is None:
            result.to_add.append(proposed)
            continue
        merged = proposed.model_copy(update={"id": current.id})  # type: ignore[attr-defined]
        result.to_update.append(
            EntityUpdate(
                existing=current,
                desired=proposed,
                merged=merged,
                changes=compute_update_fields(current, proposed, exclude=exclude),
            )
        )
    for slug, current in existing_map.items():
        if slug in desired_map:
            continue
        # Already-inactive entities are not expired a second time.
        if getattr(current, "active", True) is False:
            continue
        if preserve_unreferenced:
            result.preserved.append(current)
        else:
            result.to_expire.append(current)
    return result


def diff_features(existing, desired, *, preserve_unreferenced: bool = False):
    diff = diff_slugged(existing, desired, preserve_unreferenced=preserve_unreferenced)
    for update in diff.to_update:
        if update.existing.type != update.desired.type:
            raise ValidationError(
                f"Feature type cannot be changed. Feature '{update.existing.slug}' has type "
                f"'{update.existing.type}' but proposed type is '{update.desired.type}'."
            )
    return diff


def diff_resources(existing, desired, *, preserve_unreferenced: bool = False):
    return diff_slugged(existing, desired, preserve_unreferenced=preserve_unreferenced)


def requires_price_replacement(changes: dict[str, Any]) -> bool:
    return any(name in PRICE_IMMUTABLE_FIELDS for name in changes)


@dataclass(frozen=True)
class PriceChange:
    existing: Any
    desired: Any
    changes: dict[str, Any]

    @property
    def replace(self) -> bool:
        return requires_price_replacement(self.changes)


@dataclass(frozen=True)
class ProductDiff:
    products: SlugDiff[ProductInput]
    # Keyed by product slug; only present when the price differs.
    price_changes: dict[str, PriceChange] = field(default_factory=dict)


def diff_products(
    existing: Iterable[ProductInput],
    desired: Iterable[ProductInput],
    *,
    preserve_unreferenced: bool = False,
) -> ProductDiff:
    # Prices and feature grants are diffed separately from the product's own fields.
    diff = diff_slugged(
        existing,
        desired,
        preserve_unreferenced=preserve_unreferenced,
        exclude=("id", "price", "features"),
    )
    price_changes: dict[str, PriceChange] = {}
    for update in diff.to_update:
        before, after = update.existing.price, update.desired.price
        if before.type != after.type:
            raise ValidationError(
                f"Price type cannot be changed. Existing type is '{before.type}' "
                f"but proposed type is '{after.type}'."
            )
        changes = compute_update_fields(before, after)
        if changes:
            price_changes[update.existing.slug] = PriceChange(existing=before, desired=after, changes=changes)
    return ProductDiff(products=diff, price_changes=price_changes)


@dataclass(frozen=True)
class UsageMeterDiff:
    meters: SlugDiff[UsageMeterInput]
    # Keyed by meter slug for every added or updated meter.
    prices: dict[str, SlugDiff[UsagePrice]] = field(default_factory=dict)


def diff_usage_meters(
    existing: Iterable[UsageMeterInput],
    desired: Iterable[UsageMeterInput],
    *,
    preserve_unreferenced: bool = False,
) -> UsageMeterDiff:
    diff = diff_slugged(
        existing,
        desired,
        preserve_unreferenced=preserve_unreferenced,
        exclude=("id", "prices"),
    )
    prices: dict[str, SlugDiff[UsagePrice]] = {}
    for meter in diff.to_add:
        prices[meter.slug] = diff_slugged([], meter.prices)
    for update in diff.to_update:
        prices[update.desired.slug] = diff_slugged(update.existing.prices, update.desired.prices)
    return UsageMeterDiff(meters=diff, prices=prices)


@dataclass(frozen=True)
class ProductFeatureLink:
    product_slug: str
    feature_slug: str
    id: str | None = None
    expired: bool = False

    @property
    def key(self) -> tuple[str, str]:
        return (self.product_slug, self.feature_slug)


@dataclass(frozen=True)
class AssociationDiff:
    # New links plus previously expired links being restored (those keep their id).
    to_add: list[ProductFeatureLink] = field(default_factory=list)
    to_expire: list[ProductFeatureLink] = field(default_factory=list)
    unchanged: list[ProductFeatureLink] = field(default_factory=list)

    @property
    def unexpired(self) -> list[ProductFeatureLink]:
        return [link for link in self.to_add if link.id is not None]


def links_from_structure(structure: PricingModelStructure) -> list[ProductFeatureLink]:
    return [
        ProductFeatureLink(product_slug=product.slug, feature_slug=feature_slug)
        for product in structure.products
        for feature_slug in product.features
    ]


def diff_product_features(
    existing_links: Iterable[ProductFeatureLink],
    desired: PricingModelStructure,
    *,
    untouched_products: Iterable[str] = (),
) -> AssociationDiff:
    """Diff product/feature grants keyed by (product, feature).

    An expired grant that is desired again is restored rather than inserted
    a second time. An expired grant that is not desired is left alone, and
    so are the grants of ``untouched_products``.
    """
    untouched = set(untouched_products)
    existing_map = {link.key: link for link in existing_links}
    desired_keys: list[tuple[str, str]] = []
    for link in links_from_structure(desired):
        if link.key not in desired_keys:
            desired_keys.append(link.key)

    result = AssociationDiff()
    for product_slug, feature_slug in desired_keys:
        current = existing_map.get((product_slug, feature_slug))
        if current is None:
            result.to_add.append(ProductFeatureLink(product_slug=product_slug, feature_slug=feature_slug))
        elif current.expired:
            result.to_add.append(
                ProductFeatureLink(
                    product_slug=product_slug, feature_slug=feature_slug, id=current.id, expired=False
                )
            )
        else:
            result.unchanged.append(current)
    wanted = set(desired_keys)
    for key, current in existing_map.items():
        if key not in wanted and not current.expired and current.product_slug not in untouched:
            result.to_expire.append(current)
    return result


@dataclass(frozen=True)
class ReconcilePolicy:
    # Per-kind switch: keep unreferenced existing entities instead of expiring them.
    preserve_features: bool = False
    preserve_products: bool = False
    preserve_usage_meters: bool = False
    preserve_resources: bool = False


PROMOTE_TO_LIVE_POLICY = ReconcilePolicy(preserve_usage_meters=True)


@dataclass(frozen=True)
class PricingModelDiff:
    structure: PricingModelStructure
    features: SlugDiff[Any]
    products: ProductDiff
    usage_meters: UsageMeterDiff
    resources: SlugDiff[Any]
    product_features: AssociationDiff

    @property
    def is_noop(self) -> bool:
        return (
            self.features.is_noop
            and self.products.products.is_noop
            and not self.products.price_changes
            and self.usage_meters.meters.is_noop
            and all(price_diff.is_noop for price_diff in self.usage_meters.prices.values())
            and self.resources.is_noop
            and not self.product_features.to_add
            and not self.product_features.to_expire
        )


def reconcile(
    desired: PricingModelStructure,
    existing: PricingModelStructure,
    policy: ReconcilePolicy = ReconcilePolicy(),
    *,
    existing_links: Iterable[ProductFeatureLink] | None = None,
    pricing_model_id: str | None = None,
) -> Result[PricingModelDiff, ValidationError]:
    """Compute add/update/expire sets for every entity kind.

    ``existing_links`` carries expired grants as well; when omitted the
    grants are read from ``existing.products`` and treated as active.
    """
    normalized = normalize_structure(desired, pricing_model_id=pricing_model_id or existing.id)
    if normalized.is_err():
        return normalized
    structure = normalized.unwrap()
    links = list(existing_links) if existing_links is not None else links_from_structure(existing)
    try:
        products = diff_products(
            existing.products, structure.products, preserve_unreferenced=policy.preserve_products
        )
        desired_slugs = {product.slug for product in structure.products}
        # Preserved and already-inactive products keep their grants as they are.
        untouched = {product.slug for product in products.products.preserved}
        untouched.update(
            product.slug
            for product in existing.products
            if product.slug not in desired_slugs and not product.active
        )
        result = PricingModelDiff(
            structure=structure,
            features=diff_features(
                existing.features, structure.features, preserve_unreferenced=policy.preserve_features
            ),
            products=products,
            usage_meters=diff_usage_meters(
                existing.usage_meters,
                structure.usage_meters,
                preserve_unreferenced=policy.preserve_usage_meters,
            ),
            resources=diff_resources(
                existing.resources, structure.resources, preserve_unreferenced=policy.preserve_resources
            ),
            product_features=diff_product_features(links, structure, untouched_products=untouched),
        )
    except ValidationError as exc:
        return Err(exc)
    return Ok(result)
