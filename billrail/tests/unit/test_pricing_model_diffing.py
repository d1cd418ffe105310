from __future__ import annotations

import pytest

from billrail.core.errors import ValidationError
from billrail.services.pricing_models.diffing import (
    DEFAULT_PRODUCT_SLUG,
    PROMOTE_TO_LIVE_POLICY,
    ProductFeatureLink,
    ReconcilePolicy,
    diff_features,
    diff_product_features,
    diff_slugged,
    has_protected_field_changes,
    normalize_structure,
    protect_default_product,
    reconcile,
    usage_price_slug,
)
from billrail.services.pricing_models.schemas import (
    PricingModelStructure,
    ProductInput,
    SinglePaymentPrice,
    SubscriptionPrice,
    ToggleFeature,
    UsageCreditGrantFeature,
    UsageMeterInput,
    UsagePrice,
    validate_structure,
)


def _feature(slug: str, **overrides) -> ToggleFeature:
    return ToggleFeature(slug=slug, name=overrides.pop("name", slug.upper()), **overrides)


def _product(slug: str, *, unit_price: int = 1000, features: list[str] | None = None, **overrides) -> ProductInput:
    return ProductInput(
        slug=slug,
        name=overrides.pop("name", slug.title()),
        price=overrides.pop("price", SubscriptionPrice(unit_price=unit_price)),
        features=features or [],
        **overrides,
    )


def _structure(**overrides) -> PricingModelStructure:
    values = {"name": "Plans"}
    values.update(overrides)
    return PricingModelStructure(**values)


def test_features_a_b_to_b_updates_b_and_expires_a() -> None:
    existing = [_feature("a", id="feat_a"), _feature("b", id="feat_b")]
    diff = diff_features(existing, [_feature("b")])
    assert diff.to_add == []
    assert [update.existing.id for update in diff.to_update] == ["feat_b"]
    assert diff.to_update[0].merged.id == "feat_b"
    assert not diff.to_update[0].changed
    assert [feature.id for feature in diff.to_expire] == ["feat_a"]


def test_preserve_unreferenced_keeps_existing_entities() -> None:
    existing = [_feature("a", id="feat_a")]
    diff = diff_slugged(existing, [], preserve_unreferenced=True)
    assert diff.to_expire == []
    assert [feature.id for feature in diff.preserved] == ["feat_a"]


def test_inactive_entities_are_not_expired_again() -> None:
    existing = [_feature("a", id="feat_a", active=False)]
    diff = diff_slugged(existing, [])
    assert diff.to_expire == []
    assert diff.is_noop


def test_feature_type_change_is_rejected() -> None:
    existing = [_feature("credits", id="feat_1")]
    desired = [UsageCreditGrantFeature(slug="credits", name="Credits", usage_meter_slug="api", amount=10)]
    with pytest.raises(ValidationError):
        diff_features(existing, desired)


def test_reconcile_is_idempotent_against_its_own_output() -> None:
    desired = _structure(
        features=[_feature("sso")],
        products=[_product("pro", features=["sso"])],
        usage_meters=[UsageMeterInput(slug="api", name="API", prices=[UsagePrice(unit_price=2)])],
    )
    normalized = normalize_structure(desired, pricing_model_id="pm_1").unwrap()
    diff = reconcile(desired, normalized, pricing_model_id="pm_1").unwrap()
    assert diff.is_noop


def test_normalize_synthesizes_single_default_product() -> None:
    structure = normalize_structure(_structure(products=[_product("pro")]), pricing_model_id="pm_1").unwrap()
    defaults = [product for product in structure.products if product.default]
    assert [product.slug for product in defaults] == [DEFAULT_PRODUCT_SLUG]
    assert defaults[0].price.unit_price == 0
    # Product prices without a slug take the product slug.
    assert structure.products[0].price.slug == "pro"


def test_normalize_keeps_explicit_default_product() -> None:
    structure = _structure(products=[_product("starter", default=True, unit_price=0)])
    normalized = normalize_structure(structure, pricing_model_id="pm_1").unwrap()
    assert [product.slug for product in normalized.products] == ["starter"]


def test_two_default_products_are_rejected_before_any_write() -> None:
    structure = _structure(products=[_product("a", default=True), _product("b", default=True)])
    assert validate_structure(structure).is_err()
    result = reconcile(structure, _structure())
    assert result.is_err()
    assert result.error.message == "Multiple default products not allowed"


def test_synthetic_usage_price_slug_is_stable_across_renames() -> None:
    base = UsagePrice(unit_price=5, usage_events_per_unit=100)
    renamed = base.model_copy(update={"name": "Renamed", "active": False})
    repriced = base.model_copy(update={"unit_price": 6})
    assert usage_price_slug("api", base) == usage_price_slug("api", renamed)
    assert usage_price_slug("api", base) != usage_price_slug("api", repriced)
    assert usage_price_slug("api", base) != usage_price_slug("other", base)
    assert usage_price_slug("api", base).startswith("usage_")


def test_price_amount_change_requires_replacement() -> None:
    existing = normalize_structure(_structure(products=[_product("pro", unit_price=1000)])).unwrap()
    desired = _structure(products=[_product("pro", unit_price=1500)])
    diff = reconcile(desired, existing).unwrap()
    change = diff.products.price_changes["pro"]
    assert change.replace
    assert change.changes == {"unit_price": 1500}


def test_price_display_change_updates_in_place() -> None:
    existing = normalize_structure(_structure(products=[_product("pro")])).unwrap()
    desired = _structure(products=[_product("pro", price=SubscriptionPrice(unit_price=1000, name="Monthly"))])
    change = reconcile(desired, existing).unwrap().products.price_changes["pro"]
    assert not change.replace


def test_price_type_change_is_rejected() -> None:
    existing = normalize_structure(_structure(products=[_product("pro")])).unwrap()
    desired = _structure(products=[_product("pro", price=SinglePaymentPrice(unit_price=1000))])
    assert reconcile(desired, existing).is_err()


def test_promote_policy_preserves_live_meters() -> None:
    existing = normalize_structure(
        _structure(usage_meters=[UsageMeterInput(slug="live_only", name="Live", id="um_live")])
    ).unwrap()
    diff = reconcile(_structure(), existing, PROMOTE_TO_LIVE_POLICY).unwrap()
    assert diff.usage_meters.meters.to_expire == []
    assert [meter.slug for meter in diff.usage_meters.meters.preserved] == ["live_only"]
    default_diff = reconcile(_structure(), existing, ReconcilePolicy()).unwrap()
    assert [meter.slug for meter in default_diff.usage_meters.meters.to_expire] == ["live_only"]


def test_expired_association_is_restored_not_duplicated() -> None:
    desired = _structure(features=[_feature("sso")], products=[_product("pro", features=["sso"])])
    links = [ProductFeatureLink(product_slug="pro", feature_slug="sso", id="pf_1", expired=True)]
    diff = diff_product_features(links, desired)
    assert len(diff.to_add) == 1
    assert diff.to_add[0].id == "pf_1"
    assert not diff.to_add[0].expired
    assert [link.id for link in diff.unexpired] == ["pf_1"]


def test_removed_association_is_expired_once() -> None:
    desired = _structure(features=[_feature("sso")], products=[_product("pro")])
    links = [
        ProductFeatureLink(product_slug="pro", feature_slug="sso", id="pf_1"),
        ProductFeatureLink(product_slug="pro", feature_slug="old", id="pf_2", expired=True),
    ]
    diff = diff_product_features(links, desired)
    assert [link.id for link in diff.to_expire] == ["pf_1"]
    assert diff.to_add == []


def test_explicit_price_slug_colliding_with_defaulted_slug_is_rejected() -> None:
    structure = _structure(
        products=[_product("pro")],
        usage_meters=[UsageMeterInput(slug="api", name="API", prices=[UsagePrice(slug="pro", unit_price=2)])],
    )
    assert validate_structure(structure).is_ok()
    result = normalize_structure(structure)
    assert result.is_err()
    assert result.error.message == "Duplicate price slugs: pro"


def test_price_slug_colliding_with_synthesized_default_is_rejected() -> None:
    structure = _structure(
        products=[_product("pro", price=SubscriptionPrice(slug=DEFAULT_PRODUCT_SLUG, unit_price=100))]
    )
    assert reconcile(structure, _structure()).is_err()


def _stored_with_default() -> PricingModelStructure:
    return _structure(
        id="pm_1",
        features=[_feature("sso", id="feat_sso"), _feature("api", id="feat_api")],
        products=[
            _product(
                "basic",
                id="prod_basic",
                default=True,
                price=SubscriptionPrice(id="price_basic", slug="basic", unit_price=0),
                features=["sso"],
            ),
            _product(
                "pro",
                id="prod_pro",
                price=SubscriptionPrice(id="price_pro", slug="pro", unit_price=2000),
                features=["sso", "api"],
            ),
        ],
    )


def test_dropped_default_product_is_added_back() -> None:
    existing = _stored_with_default()
    desired = _structure(features=[_feature("api")], products=[_product("pro", unit_price=2000, features=["api"])])
    protected = protect_default_product(existing, desired).unwrap()
    assert [product.slug for product in protected.products] == ["pro", "basic"]
    basic = protected.products[1]
    assert basic.default and basic.active
    assert basic.price.unit_price == 0
    # Grants on features that no longer exist are dropped.
    assert basic.features == []

    diff = reconcile(protected, existing, pricing_model_id="pm_1").unwrap()
    assert diff.products.products.to_expire == []
    assert "basic" not in diff.products.price_changes
    assert [product.slug for product in diff.structure.products if product.default] == ["basic"]


def test_default_with_only_display_changes_passes_through() -> None:
    existing = _stored_with_default()
    renamed = _product("basic", name="Starter", default=True, unit_price=0, features=["sso", "api"])
    desired = _structure(features=[_feature("sso"), _feature("api")], products=[renamed])
    assert not has_protected_field_changes(existing.products[0], renamed)
    assert protect_default_product(existing, desired).unwrap() is desired


def test_protected_default_fields_are_kept_while_display_fields_apply() -> None:
    existing = _stored_with_default()
    repriced = _product(
        "basic",
        name="Starter",
        description="Entry plan",
        default=True,
        active=False,
        price=SubscriptionPrice(slug="starter-monthly", unit_price=900),
        features=["api"],
    )
    desired = _structure(features=[_feature("sso"), _feature("api")], products=[repriced])
    merged = protect_default_product(existing, desired).unwrap().products[0]
    assert (merged.name, merged.description, merged.features) == ("Starter", "Entry plan", ["api"])
    assert (merged.slug, merged.active, merged.default) == ("basic", True, True)
    assert (merged.price.slug, merged.price.unit_price) == ("basic", 0)
    assert merged.id is None and merged.price.id is None


def test_moving_the_default_flag_keeps_the_stored_default() -> None:
    existing = _stored_with_default()
    desired = _structure(
        features=[_feature("sso"), _feature("api")],
        products=[_product("pro", name="Pro Updated", default=True, unit_price=2000)],
    )
    protected = protect_default_product(existing, desired).unwrap()
    assert [(product.slug, product.name) for product in protected.products] == [("basic", "Pro Updated")]


def test_default_protection_rejects_two_proposed_defaults() -> None:
    desired = _structure(products=[_product("a", default=True), _product("b", default=True)])
    assert protect_default_product(_stored_with_default(), desired).is_err()


def test_without_a_stored_default_the_desired_structure_is_kept() -> None:
    existing = _structure(products=[_product("pro", id="prod_pro")])
    desired = _structure(products=[_product("pro")])
    assert protect_default_product(existing, desired).unwrap() is desired


def test_preserved_products_keep_their_grants() -> None:
    desired = _structure(features=[_feature("sso")], products=[_product("pro", features=["sso"])])
    links = [
        ProductFeatureLink(product_slug="pro", feature_slug="sso", id="pf_1"),
        ProductFeatureLink(product_slug="legacy", feature_slug="sso", id="pf_2"),
    ]
    diff = diff_product_features(links, desired, untouched_products=["legacy"])
    assert diff.to_expire == []
    assert [link.id for link in diff.unchanged] == ["pf_1"]


def test_reconcile_leaves_grants_of_preserved_products_alone() -> None:
    existing = normalize_structure(
        _structure(
            features=[_feature("sso", id="feat_sso")],
            products=[_product("legacy", id="prod_legacy", features=["sso"])],
        )
    ).unwrap()
    links = [ProductFeatureLink(product_slug="legacy", feature_slug="sso", id="pf_1")]
    desired = _structure(features=[_feature("sso")])
    preserving = reconcile(
        desired, existing, ReconcilePolicy(preserve_products=True), existing_links=links
    ).unwrap()
    assert preserving.product_features.to_expire == []
    expiring = reconcile(desired, existing, existing_links=links).unwrap()
    assert [link.id for link in expiring.product_features.to_expire] == ["pf_1"]
