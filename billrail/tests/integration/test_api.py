from __future__ import annotations

import pytest
from httpx import ASGITransport, AsyncClient

from billrail.apps.api.main import create_app
from billrail.tests.utils.fakes import make_runner
from billrail.tests.utils.seed import seed_merchant


def _headers(api_key: str) -> dict[str, str]:
    return {"Authorization": f"Bearer {api_key}"}


def _structure(**overrides) -> dict:
    payload = {
        "name": "Plans",
        "features": [{"type": "toggle", "slug": "sso", "name": "SSO"}],
        "products": [
            {
                "slug": "pro",
                "name": "Pro",
                "price": {"type": "subscription", "unit_price": 4900},
                "features": ["sso"],
            }
        ],
    }
    payload.update(overrides)
    return payload


@pytest.mark.asyncio
async def test_pricing_model_endpoints_round_trip() -> None:
    seed = await seed_merchant()
    app = create_app(runner=make_runner())
    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as client:
        created = await client.post("/v1/pricing-models", json=_structure(), headers=_headers(seed.api_key))
        assert created.status_code == 201
        data = created.json()["data"]
        assert data["livemode"] is False
        assert set(data["products"]) == {"pro", "free"}

        updated = await client.put(
            f"/v1/pricing-models/{data['id']}",
            json=_structure(
                products=[
                    {
                        "slug": "pro",
                        "name": "Pro",
                        "price": {"type": "subscription", "unit_price": 5900},
                        "features": ["sso"],
                    }
                ]
            ),
            headers=_headers(seed.api_key),
        )
        assert updated.status_code == 200
        assert len(updated.json()["data"]["prices_deactivated"]) == 1

        promoted = await client.post(f"/v1/pricing-models/{data['id']}/promote", headers=_headers(seed.api_key))
        assert promoted.status_code == 200
        assert promoted.json()["data"]["livemode"] is True
        assert promoted.json()["data"]["id"] != data["id"]

        listed = await client.get("/v1/pricing-models", headers=_headers(seed.api_key))
        assert listed.status_code == 200
        # Test-mode keys only see test-mode models.
        assert [model["id"] for model in listed.json()["data"]] == [data["id"]]


@pytest.mark.asyncio
async def test_domain_errors_map_to_http_statuses() -> None:
    seed = await seed_merchant()
    app = create_app(runner=make_runner())
    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as client:
        unauthorized = await client.post(
            "/v1/pricing-models", json=_structure(), headers=_headers("sk_test_not_a_key")
        )
        assert unauthorized.status_code == 401
        assert unauthorized.json()["error"]["code"] == "AUTH_UNAUTHORIZED"

        malformed = await client.post(
            "/v1/pricing-models", json=_structure(), headers={"Authorization": "Token abc"}
        )
        assert malformed.status_code == 401

        two_defaults = _structure(
            products=[
                {"slug": "a", "name": "A", "default": True, "price": {"type": "subscription", "unit_price": 0}},
                {"slug": "b", "name": "B", "default": True, "price": {"type": "subscription", "unit_price": 0}},
            ],
            features=[],
        )
        invalid = await client.post("/v1/pricing-models", json=two_defaults, headers=_headers(seed.api_key))
        assert invalid.status_code == 422
        assert invalid.json()["error"] == {
            "code": "VALIDATION_ERROR",
            "message": "Multiple default products not allowed",
        }

        missing = await client.post("/v1/pricing-models/pm_missing/promote", headers=_headers(seed.api_key))
        assert missing.status_code == 404
        assert missing.json()["error"]["code"] == "NOT_FOUND"


@pytest.mark.asyncio
async def test_ledger_endpoint_applies_balanced_transactions_once() -> None:
    seed = await seed_merchant()
    app = create_app(runner=make_runner())
    transport = ASGITransport(app=app)
    body = {
        "idempotency_key": "adj-1",
        "entries": [
            {"account": "credits", "direction": "debit", "amount": 250},
            {"account": "liability", "direction": "credit", "amount": 250},
        ],
    }
    async with AsyncClient(transport=transport, base_url="http://test") as client:
        first = await client.post("/v1/ledger/transactions", json=body, headers=_headers(seed.api_key))
        assert first.status_code == 202
        assert first.json()["data"] == {"idempotency_key": "adj-1", "entries": 2}

        unbalanced = dict(body, idempotency_key="adj-2")
        unbalanced["entries"] = [
            {"account": "credits", "direction": "debit", "amount": 250},
            {"account": "liability", "direction": "credit", "amount": 200},
        ]
        rejected = await client.post("/v1/ledger/transactions", json=unbalanced, headers=_headers(seed.api_key))
        assert rejected.status_code == 422
