from __future__ import annotations

import pytest

from billrail.core.config import get_settings
from billrail.domain.models import Price
from billrail.persistence.guards import TenantPredicateError, organization_predicate
from billrail.persistence.repos import customers as customers_repo
from billrail.persistence.repos import events as events_repo
from billrail.persistence.repos import pricing_models as pricing_models_repo
from billrail.persistence.repos import product_features as product_features_repo


class _UnusedSession:
    # Any query reaching the database means the guard did not fire.
    async def execute(self, *args, **kwargs):
        raise AssertionError("query executed without an organization predicate")


def _enable_guard(monkeypatch: pytest.MonkeyPatch) -> None:
    # Force organization predicate enforcement for guard tests.
    monkeypatch.setenv("AUTHZ_REQUIRE_TENANT_PREDICATE", "true")
    get_settings.cache_clear()


@pytest.mark.asyncio
async def test_pricing_model_repo_requires_organization(monkeypatch: pytest.MonkeyPatch) -> None:
    _enable_guard(monkeypatch)
    with pytest.raises(TenantPredicateError):
        await pricing_models_repo.get_pricing_model(_UnusedSession(), "", "pm_1")
    with pytest.raises(TenantPredicateError):
        await pricing_models_repo.list_prices(_UnusedSession(), "", product_ids=["prod_1"])
    with pytest.raises(TenantPredicateError):
        await pricing_models_repo.deactivate(_UnusedSession(), Price, ["price_1"], "")


@pytest.mark.asyncio
async def test_other_repos_require_organization(monkeypatch: pytest.MonkeyPatch) -> None:
    _enable_guard(monkeypatch)
    with pytest.raises(TenantPredicateError):
        await customers_repo.get_customer(_UnusedSession(), "", "cus_1")
    with pytest.raises(TenantPredicateError):
        await events_repo.list_events(_UnusedSession(), "")
    with pytest.raises(TenantPredicateError):
        await product_features_repo.list_product_features(_UnusedSession(), ["prod_1"], "")


def test_guard_can_be_disabled(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("AUTHZ_REQUIRE_TENANT_PREDICATE", "false")
    get_settings.cache_clear()
    assert organization_predicate(Price, "") is not None
