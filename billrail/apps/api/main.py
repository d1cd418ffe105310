from __future__ import annotations

from fastapi import FastAPI

from billrail.apps.api.errors import register_exception_handlers
from billrail.apps.api.routes.ledger import router as ledger_router
from billrail.apps.api.routes.pricing_models import router as pricing_models_router
from billrail.core.config import get_settings
from billrail.core.logging import configure_logging
from billrail.services.transactions import TransactionRunner


def create_app(*, runner: TransactionRunner | None = None) -> FastAPI:
    configure_logging()
    app = FastAPI(title=get_settings().app_name)
    # None falls back to the process-wide runner at request time.
    app.state.transaction_runner = runner

    @app.get("/health")
    async def health() -> dict:
        return {"status": "ok"}

    register_exception_handlers(app)
    app.include_router(pricing_models_router)
    app.include_router(ledger_router)
    return app


app = create_app()
