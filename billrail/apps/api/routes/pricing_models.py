from __future__ import annotations

from fastapi import APIRouter, Depends, status

from billrail.apps.api.deps import get_auth_options, get_runner
from billrail.core.result import Ok
from billrail.persistence.repos import pricing_models as pricing_models_repo
from billrail.services.effects import TransactionContext
from billrail.services.pricing_models.make_live import promote_to_live
from billrail.services.pricing_models.schemas import PricingModelStructure
from billrail.services.pricing_models.setup import setup_pricing_model
from billrail.services.pricing_models.update import update_pricing_model
from billrail.services.transactions import AuthOptions, TransactionRunner

router = APIRouter(prefix="/v1/pricing-models", tags=["pricing-models"])


@router.get("")
async def list_pricing_models(
    auth: AuthOptions = Depends(get_auth_options),
    runner: TransactionRunner = Depends(get_runner),
) -> dict:
    async def _work(ctx: TransactionContext):
        models = await pricing_models_repo.list_pricing_models(
            ctx.session, ctx.organization_id, livemode=ctx.livemode
        )
        return Ok(models)

    models = (await runner.run_with_result(_work, auth)).unwrap()
    return {
        "data": [
            {"id": model.id, "name": model.name, "livemode": model.livemode, "is_default": model.is_default}
            for model in models
        ]
    }


@router.post("", status_code=status.HTTP_201_CREATED)
async def create_pricing_model(
    structure: PricingModelStructure,
    auth: AuthOptions = Depends(get_auth_options),
    runner: TransactionRunner = Depends(get_runner),
) -> dict:
    async def _work(ctx: TransactionContext):
        return await setup_pricing_model(ctx, structure)

    result = (await runner.run_with_result(_work, auth)).unwrap()
    pricing_model = result.pricing_model
    return {
        "data": {
            "id": pricing_model.id,
            "name": pricing_model.name,
            "livemode": pricing_model.livemode,
            "products": [product.slug for product in result.products],
            "features": [feature.slug for feature in result.features],
        }
    }


@router.put("/{pricing_model_id}")
async def replace_pricing_model(
    pricing_model_id: str,
    structure: PricingModelStructure,
    auth: AuthOptions = Depends(get_auth_options),
    runner: TransactionRunner = Depends(get_runner),
) -> dict:
    async def _work(ctx: TransactionContext):
        return await update_pricing_model(ctx, pricing_model_id, structure)

    result = (await runner.run_with_result(_work, auth)).unwrap()
    return {
        "data": {
            "id": result.pricing_model.id,
            "name": result.pricing_model.name,
            "products_created": len(result.products.created),
            "products_deactivated": result.products.deactivated,
            "prices_deactivated": result.prices.deactivated,
            "features_deactivated": result.features.deactivated,
        }
    }


@router.post("/{pricing_model_id}/promote")
async def promote_pricing_model(
    pricing_model_id: str,
    auth: AuthOptions = Depends(get_auth_options),
    runner: TransactionRunner = Depends(get_runner),
) -> dict:
    async def _work(ctx: TransactionContext):
        return await promote_to_live(ctx, pricing_model_id)

    live = (await runner.run_with_result(_work, auth)).unwrap()
    return {"data": {"id": live.id, "name": live.name, "livemode": live.livemode}}
