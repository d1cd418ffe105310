from __future__ import annotations

import logging
from uuid import uuid4

from billrail.core.errors import NotFoundError, ValidationError
from billrail.core.result import Err, Ok, Result
from billrail.domain.models import PricingModel
from billrail.persistence.repos import pricing_models as pricing_models_repo
from billrail.services.effects import (
    EventInput,
    TransactionContext,
    organization_cache_key,
    pricing_model_cache_key,
)
from billrail.services.pricing_models.diffing import PROMOTE_TO_LIVE_POLICY, reconcile
from billrail.services.pricing_models.schemas import PricingModelStructure
from billrail.services.pricing_models.setup import create_pricing_model
from billrail.services.pricing_models.snapshot import load_snapshot
from billrail.services.pricing_models.update import apply_diff


logger = logging.getLogger(__name__)


def promotable_structure(structure: PricingModelStructure) -> PricingModelStructure:
    """Copy the active part of a stored structure without any row identities."""
    data = structure.model_dump(
        exclude={
            "id": True,
            "features": {"__all__": {"id"}},
            "products": {"__all__": {"id": True, "price": {"id"}}},
            "usage_meters": {"__all__": {"id": True, "prices": {"__all__": {"id"}}}},
            "resources": {"__all__": {"id"}},
        }
    )
    data["features"] = [feature for feature in data["features"] if feature["active"]]
    active_features = {feature["slug"] for feature in data["features"]}
    data["products"] = [
        {**product, "features": [slug for slug in product["features"] if slug in active_features]}
        for product in data["products"]
        if product["active"]
    ]
    data["usage_meters"] = [meter for meter in data["usage_meters"] if meter["active"]]
    data["resources"] = [resource for resource in data["resources"] if resource["active"]]
    return PricingModelStructure.model_validate(data)


async def promote_to_live(
    ctx: TransactionContext, test_pricing_model_id: str
) -> Result[PricingModel, NotFoundError | ValidationError]:
    """Copy a test-mode pricing model onto the organization's live pricing model.

    The source model is only read. When the organization has no live model
    yet, a new one is created from the source structure; otherwise the live
    model keeps its name and any usage meters the source does not mention.
    """
    session = ctx.session
    source = await pricing_models_repo.get_pricing_model(session, ctx.organization_id, test_pricing_model_id)
    if source is None:
        return Err(NotFoundError("Pricing model not found"))
    if source.livemode:
        return Ok(source)

    source_snapshot = await load_snapshot(session, source)
    desired = promotable_structure(source_snapshot.structure)

    live = await pricing_models_repo.get_live_pricing_model(session, ctx.organization_id)
    if live is None:
        created = await create_pricing_model(
            session,
            organization_id=ctx.organization_id,
            livemode=True,
            structure=desired.model_copy(update={"is_default": True}),
        )
        if created.is_err():
            return created
        live = created.unwrap().pricing_model
        action = "created"
    else:
        live_snapshot = await load_snapshot(session, live)
        reconciled = reconcile(
            desired.model_copy(update={"name": live.name, "is_default": live.is_default}),
            live_snapshot.structure,
            PROMOTE_TO_LIVE_POLICY,
            existing_links=live_snapshot.links,
            pricing_model_id=live.id,
        )
        if reconciled.is_err():
            return reconciled
        await apply_diff(session, live, live_snapshot, reconciled.unwrap())
        action = "updated"

    ctx.emit_event(
        EventInput(
            type="pricing_model.promoted",
            payload={
                "source_pricing_model_id": source.id,
                "live_pricing_model_id": live.id,
                "action": action,
                "promotion_id": uuid4().hex,
            },
        )
    )
    ctx.invalidate_cache(pricing_model_cache_key(live.id), organization_cache_key(ctx.organization_id))
    logger.info(
        "pricing_model_promoted organization_id=%s source_id=%s live_id=%s action=%s",
        ctx.organization_id,
        source.id,
        live.id,
        action,
    )
    return Ok(live)
