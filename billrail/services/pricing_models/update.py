from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any
from uuid import uuid4

from sqlalchemy.ext.asyncio import AsyncSession

from billrail.core.errors import NotFoundError, ValidationError
from billrail.core.result import Err, Ok, Result
from billrail.domain.models import Feature, Price, PricingModel, Product, ProductFeature, Resource, UsageMeter
from billrail.persistence.repos import pricing_models as pricing_models_repo
from billrail.persistence.repos import product_features as product_features_repo
from billrail.services.effects import (
    EventInput,
    TransactionContext,
    hash_event_payload,
    organization_cache_key,
    pricing_model_cache_key,
)
from billrail.services.pricing_models.diffing import (
    PricingModelDiff,
    ReconcilePolicy,
    protect_default_product,
    reconcile,
    requires_price_replacement,
)
from billrail.services.pricing_models.schemas import PricingModelStructure, validate_structure
from billrail.services.pricing_models.setup import (
    RowScope,
    feature_row,
    feature_values,
    meter_row,
    price_row,
    price_values,
    product_row,
    product_values,
    resource_row,
)
from billrail.services.pricing_models.snapshot import PricingModelSnapshot, load_snapshot


logger = logging.getLogger(__name__)

# Price fields that can change without replacing the price row.
_MUTABLE_PRICE_FIELDS = ("slug", "name", "is_default", "active")


@dataclass
class KindChanges:
    created: list[Any] = field(default_factory=list)
    updated: list[str] = field(default_factory=list)
    deactivated: list[str] = field(default_factory=list)


@dataclass
class UpdateResult:
    pricing_model: PricingModel
    usage_meters: KindChanges = field(default_factory=KindChanges)
    resources: KindChanges = field(default_factory=KindChanges)
    features: KindChanges = field(default_factory=KindChanges)
    products: KindChanges = field(default_factory=KindChanges)
    prices: KindChanges = field(default_factory=KindChanges)
    product_features_added: list[ProductFeature] = field(default_factory=list)
    product_features_removed: list[ProductFeature] = field(default_factory=list)


async def _apply_usage_meters(
    session: AsyncSession, diff: PricingModelDiff, snapshot: PricingModelSnapshot, scope: RowScope, out: UpdateResult
) -> dict[str, str]:
    organization_id = scope.organization_id
    meter_ids = dict(snapshot.meter_ids)

    created = await pricing_models_repo.bulk_insert(
        session, [meter_row(meter, scope) for meter in diff.usage_meters.meters.to_add]
    )
    meter_ids.update({row.slug: row.id for row in created})
    out.usage_meters.created.extend(created)

    for update in diff.usage_meters.meters.to_update:
        values = {name: update.changes[name] for name in ("name", "aggregation_type", "active") if name in update.changes}
        if values:
            await pricing_models_repo.update_by_id(session, UsageMeter, update.existing.id, values, organization_id)
            out.usage_meters.updated.append(update.existing.id)

    expired_ids = [meter.id for meter in diff.usage_meters.meters.to_expire]
    await pricing_models_repo.deactivate(session, UsageMeter, expired_ids, organization_id)
    await pricing_models_repo.deactivate_prices_for_meters(session, expired_ids, organization_id)
    out.usage_meters.deactivated.extend(expired_ids)

    new_prices: list[Price] = []
    for meter_slug, price_diff in diff.usage_meters.prices.items():
        meter_id = meter_ids[meter_slug]
        new_prices.extend(price_row(price, scope, usage_meter_id=meter_id) for price in price_diff.to_add)
        for update in price_diff.to_update:
            if requires_price_replacement(update.changes):
                await pricing_models_repo.deactivate(session, Price, [update.existing.id], organization_id)
                out.prices.deactivated.append(update.existing.id)
                new_prices.append(price_row(update.desired, scope, usage_meter_id=meter_id))
            elif update.changed:
                values = {name: update.changes[name] for name in _MUTABLE_PRICE_FIELDS if name in update.changes}
                await pricing_models_repo.update_by_id(session, Price, update.existing.id, values, organization_id)
                out.prices.updated.append(update.existing.id)
        expired_price_ids = [price.id for price in price_diff.to_expire]
        await pricing_models_repo.deactivate(session, Price, expired_price_ids, organization_id)
        out.prices.deactivated.extend(expired_price_ids)
    out.prices.created.extend(await pricing_models_repo.bulk_insert(session, new_prices))
    return meter_ids


async def _apply_resources(
    session: AsyncSession, diff: PricingModelDiff, snapshot: PricingModelSnapshot, scope: RowScope, out: UpdateResult
) -> dict[str, str]:
    resource_ids = dict(snapshot.resource_ids)
    created = await pricing_models_repo.bulk_insert(
        session, [resource_row(resource, scope) for resource in diff.resources.to_add]
    )
    resource_ids.update({row.slug: row.id for row in created})
    out.resources.created.extend(created)
    for update in diff.resources.to_update:
        values = {name: update.changes[name] for name in ("name", "active") if name in update.changes}
        if values:
            await pricing_models_repo.update_by_id(
                session, Resource, update.existing.id, values, scope.organization_id
            )
            out.resources.updated.append(update.existing.id)
    expired_ids = [resource.id for resource in diff.resources.to_expire]
    await pricing_models_repo.deactivate(session, Resource, expired_ids, scope.organization_id)
    out.resources.deactivated.extend(expired_ids)
    return resource_ids


async def _apply_features(
    session: AsyncSession,
    diff: PricingModelDiff,
    snapshot: PricingModelSnapshot,
    scope: RowScope,
    out: UpdateResult,
    *,
    meter_ids: dict[str, str],
    resource_ids: dict[str, str],
) -> dict[str, str]:
    feature_ids = dict(snapshot.feature_ids)
    created = await pricing_models_repo.bulk_insert(
        session, [feature_row(feature, scope, meter_ids, resource_ids) for feature in diff.features.to_add]
    )
    feature_ids.update({row.slug: row.id for row in created})
    out.features.created.extend(created)
    for update in diff.features.to_update:
        if not update.changed:
            continue
        values = feature_values(update.desired, meter_ids, resource_ids)
        values.pop("slug")
        values.pop("type")
        await pricing_models_repo.update_by_id(session, Feature, update.existing.id, values, scope.organization_id)
        out.features.updated.append(update.existing.id)
    expired_ids = [feature.id for feature in diff.features.to_expire]
    await pricing_models_repo.deactivate(session, Feature, expired_ids, scope.organization_id)
    out.features.deactivated.extend(expired_ids)
    return feature_ids


async def _apply_products(
    session: AsyncSession, diff: PricingModelDiff, snapshot: PricingModelSnapshot, scope: RowScope, out: UpdateResult
) -> dict[str, str]:
    organization_id = scope.organization_id
    product_ids = dict(snapshot.product_ids)
    products = diff.products.products

    created = await pricing_models_repo.bulk_insert(session, [product_row(product, scope) for product in products.to_add])
    product_ids.update({row.slug: row.id for row in created})
    out.products.created.extend(created)

    new_prices = [price_row(product.price, scope, product_id=product_ids[product.slug]) for product in products.to_add]
    for update in products.to_update:
        product_id = update.existing.id
        if update.changed:
            values = {name: value for name, value in product_values(update.desired).items() if name in update.changes}
            await pricing_models_repo.update_by_id(session, Product, product_id, values, organization_id)
            out.products.updated.append(product_id)
        change = diff.products.price_changes.get(update.existing.slug)
        if change is None:
            continue
        if change.replace:
            # Deactivate first so the product never has two active prices.
            await pricing_models_repo.deactivate(session, Price, [change.existing.id], organization_id)
            out.prices.deactivated.append(change.existing.id)
            new_prices.append(price_row(change.desired, scope, product_id=product_id))
        else:
            values = {
                name: value for name, value in price_values(change.desired).items() if name in change.changes
            }
            await pricing_models_repo.update_by_id(session, Price, change.existing.id, values, organization_id)
            out.prices.updated.append(change.existing.id)
    out.prices.created.extend(await pricing_models_repo.bulk_insert(session, new_prices))

    expired_ids = [product.id for product in products.to_expire]
    await pricing_models_repo.deactivate(session, Product, expired_ids, organization_id)
    await pricing_models_repo.deactivate_prices_for_products(session, expired_ids, organization_id)
    out.products.deactivated.extend(expired_ids)
    return product_ids


async def apply_diff(
    session: AsyncSession, pricing_model: PricingModel, snapshot: PricingModelSnapshot, diff: PricingModelDiff
) -> UpdateResult:
    """Write a reconciled diff. Must run inside the caller's transaction."""
    scope = RowScope(
        pricing_model_id=pricing_model.id,
        organization_id=pricing_model.organization_id,
        livemode=pricing_model.livemode,
    )
    out = UpdateResult(pricing_model=pricing_model)

    model_values: dict[str, Any] = {}
    if diff.structure.name != pricing_model.name:
        model_values["name"] = diff.structure.name
    if diff.structure.is_default != pricing_model.is_default:
        model_values["is_default"] = diff.structure.is_default
    if model_values:
        await pricing_models_repo.update_by_id(
            session, PricingModel, pricing_model.id, model_values, scope.organization_id
        )
        for name, value in model_values.items():
            setattr(pricing_model, name, value)

    meter_ids = await _apply_usage_meters(session, diff, snapshot, scope, out)
    resource_ids = await _apply_resources(session, diff, snapshot, scope, out)
    feature_ids = await _apply_features(
        session, diff, snapshot, scope, out, meter_ids=meter_ids, resource_ids=resource_ids
    )
    product_ids = await _apply_products(session, diff, snapshot, scope, out)

    grants = diff.product_features
    added, removed = await product_features_repo.apply_product_feature_changes(
        session,
        organization_id=scope.organization_id,
        livemode=scope.livemode,
        insert=[
            (product_ids[link.product_slug], feature_ids[link.feature_slug])
            for link in grants.to_add
            if link.id is None
        ],
        unexpire_ids=[link.id for link in grants.unexpired if link.id],
        expire_ids=[link.id for link in grants.to_expire if link.id],
    )
    out.product_features_added = added
    out.product_features_removed = removed
    return out


async def update_pricing_model(
    ctx: TransactionContext,
    pricing_model_id: str,
    structure: PricingModelStructure,
    *,
    policy: ReconcilePolicy = ReconcilePolicy(),
) -> Result[UpdateResult, NotFoundError | ValidationError]:
    """Reconcile a stored pricing model towards ``structure``."""
    pricing_model = await pricing_models_repo.get_pricing_model(ctx.session, ctx.organization_id, pricing_model_id)
    if pricing_model is None:
        return Err(NotFoundError("Pricing model not found"))
    validated = validate_structure(structure)
    if validated.is_err():
        return validated
    snapshot = await load_snapshot(ctx.session, pricing_model)
    protected = protect_default_product(snapshot.structure, structure)
    if protected.is_err():
        return protected
    desired = protected.unwrap()
    if desired is not structure:
        logger.info(
            "pricing_model_default_product_protected organization_id=%s pricing_model_id=%s",
            ctx.organization_id,
            pricing_model.id,
        )
    reconciled = reconcile(
        desired,
        snapshot.structure,
        policy,
        existing_links=snapshot.links,
        pricing_model_id=pricing_model.id,
    )
    if reconciled.is_err():
        return reconciled
    diff = reconciled.unwrap()
    result = await apply_diff(ctx.session, pricing_model, snapshot, diff)

    payload = {
        "pricing_model_id": pricing_model.id,
        "update_id": uuid4().hex,
        "structure_hash": hash_event_payload("structure", diff.structure.model_dump(mode="json", exclude={"id"})),
    }
    ctx.emit_event(EventInput(type="pricing_model.updated", payload=payload))
    ctx.invalidate_cache(pricing_model_cache_key(pricing_model.id), organization_cache_key(ctx.organization_id))
    logger.info(
        "pricing_model_updated organization_id=%s pricing_model_id=%s noop=%s",
        ctx.organization_id,
        pricing_model.id,
        diff.is_noop,
    )
    return Ok(result)
