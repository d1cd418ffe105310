from __future__ import annotations

from datetime import datetime
from typing import Any, Callable
from uuid import uuid4

from sqlalchemy import (
    JSON,
    BigInteger,
    Boolean,
    DateTime,
    ForeignKey,
    Integer,
    String,
    Text,
    func,
    Index,
    UniqueConstraint,
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column


# JSONB on Postgres, portable JSON elsewhere so the test suite can run on SQLite.
JSONType = JSON().with_variant(JSONB(), "postgresql")


def _prefixed_id(prefix: str) -> Callable[[], str]:
    # Prefix ids by table so leaked identifiers are self-describing in logs.
    def _factory() -> str:
        return f"{prefix}_{uuid4().hex}"

    return _factory


class Base(DeclarativeBase):
    pass


class Organization(Base):
    __tablename__ = "organizations"

    id: Mapped[str] = mapped_column(String, primary_key=True, default=_prefixed_id("org"))
    name: Mapped[str] = mapped_column(String)
    # Currency applied to prices created through pricing-model setup.
    default_currency: Mapped[str] = mapped_column(String, default="USD", nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())


class User(Base):
    __tablename__ = "users"

    id: Mapped[str] = mapped_column(String, primary_key=True, default=_prefixed_id("usr"))
    # Identity-provider id carried by sessions and API-key subjects.
    external_id: Mapped[str | None] = mapped_column(String, unique=True, nullable=True)
    email: Mapped[str | None] = mapped_column(String, nullable=True)
    name: Mapped[str | None] = mapped_column(String, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())


class Membership(Base):
    __tablename__ = "memberships"
    __table_args__ = (
        UniqueConstraint("user_id", "organization_id", name="uq_memberships_user_org"),
    )

    id: Mapped[str] = mapped_column(String, primary_key=True, default=_prefixed_id("mem"))
    user_id: Mapped[str] = mapped_column(String, ForeignKey("users.id"), index=True)
    organization_id: Mapped[str] = mapped_column(String, ForeignKey("organizations.id"), index=True)
    # The organization currently selected in the dashboard for this user.
    focused: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    livemode: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())


class Customer(Base):
    __tablename__ = "customers"
    __table_args__ = (
        Index("ix_customers_org_hosted_billing_user", "organization_id", "hosted_billing_user_id"),
    )

    id: Mapped[str] = mapped_column(String, primary_key=True, default=_prefixed_id("cus"))
    organization_id: Mapped[str] = mapped_column(String, ForeignKey("organizations.id"), index=True)
    user_id: Mapped[str | None] = mapped_column(String, ForeignKey("users.id"), nullable=True)
    email: Mapped[str] = mapped_column(String)
    name: Mapped[str | None] = mapped_column(String, nullable=True)
    livemode: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    # Identity of the end customer inside the hosted billing portal.
    hosted_billing_user_id: Mapped[str | None] = mapped_column(String, nullable=True)
    external_id: Mapped[str | None] = mapped_column(String, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())


class ApiKey(Base):
    __tablename__ = "api_keys"

    id: Mapped[str] = mapped_column(String, primary_key=True, default=_prefixed_id("key"))
    organization_id: Mapped[str] = mapped_column(String, ForeignKey("organizations.id"), index=True)
    # Subject user for secret keys; billing-portal keys carry their subject in metadata.
    user_id: Mapped[str | None] = mapped_column(String, ForeignKey("users.id"), nullable=True)
    # "secret" or "billing_portal".
    key_type: Mapped[str] = mapped_column(String)
    livemode: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    key_prefix: Mapped[str] = mapped_column(String)
    # Only the SHA-256 digest is stored; the raw token is shown once at creation.
    key_hash: Mapped[str] = mapped_column(String, unique=True, index=True)
    metadata_json: Mapped[dict[str, Any] | None] = mapped_column(JSONType, nullable=True)
    revoked_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    expires_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())


class Event(Base):
    __tablename__ = "events"

    id: Mapped[str] = mapped_column(String, primary_key=True, default=_prefixed_id("evt"))
    organization_id: Mapped[str] = mapped_column(String, index=True)
    livemode: Mapped[bool] = mapped_column(Boolean, nullable=False)
    type: Mapped[str] = mapped_column(String)
    payload: Mapped[dict[str, Any]] = mapped_column(JSONType, default=dict)
    # Deduplication key; re-submitting the same hash is a no-op.
    hash: Mapped[str] = mapped_column(String, unique=True)
    occurred_at: Mapped[datetime] = mapped_column(DateTime(timezone=True))
    submitted_at: Mapped[datetime] = mapped_column(DateTime(timezone=True))
    processed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)


class PricingModel(Base):
    __tablename__ = "pricing_models"
    __table_args__ = (
        Index("ix_pricing_models_org_livemode", "organization_id", "livemode"),
    )

    id: Mapped[str] = mapped_column(String, primary_key=True, default=_prefixed_id("pm"))
    organization_id: Mapped[str] = mapped_column(String, ForeignKey("organizations.id"), index=True)
    livemode: Mapped[bool] = mapped_column(Boolean, nullable=False)
    name: Mapped[str] = mapped_column(String)
    is_default: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), onupdate=func.now()
    )


class UsageMeter(Base):
    __tablename__ = "usage_meters"
    __table_args__ = (
        UniqueConstraint("pricing_model_id", "slug", name="uq_usage_meters_pm_slug"),
    )

    id: Mapped[str] = mapped_column(String, primary_key=True, default=_prefixed_id("um"))
    pricing_model_id: Mapped[str] = mapped_column(String, ForeignKey("pricing_models.id"), index=True)
    organization_id: Mapped[str] = mapped_column(String, index=True)
    livemode: Mapped[bool] = mapped_column(Boolean, nullable=False)
    slug: Mapped[str] = mapped_column(String)
    name: Mapped[str] = mapped_column(String)
    aggregation_type: Mapped[str] = mapped_column(String, default="sum", nullable=False)
    active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)


class Resource(Base):
    __tablename__ = "resources"
    __table_args__ = (
        UniqueConstraint("pricing_model_id", "slug", name="uq_resources_pm_slug"),
    )

    id: Mapped[str] = mapped_column(String, primary_key=True, default=_prefixed_id("res"))
    pricing_model_id: Mapped[str] = mapped_column(String, ForeignKey("pricing_models.id"), index=True)
    organization_id: Mapped[str] = mapped_column(String, index=True)
    livemode: Mapped[bool] = mapped_column(Boolean, nullable=False)
    slug: Mapped[str] = mapped_column(String)
    name: Mapped[str] = mapped_column(String)
    active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)


class Feature(Base):
    __tablename__ = "features"
    __table_args__ = (
        UniqueConstraint("pricing_model_id", "slug", name="uq_features_pm_slug"),
    )

    id: Mapped[str] = mapped_column(String, primary_key=True, default=_prefixed_id("feat"))
    pricing_model_id: Mapped[str] = mapped_column(String, ForeignKey("pricing_models.id"), index=True)
    organization_id: Mapped[str] = mapped_column(String, index=True)
    livemode: Mapped[bool] = mapped_column(Boolean, nullable=False)
    slug: Mapped[str] = mapped_column(String)
    name: Mapped[str] = mapped_column(String)
    description: Mapped[str] = mapped_column(Text, default="", nullable=False)
    # "toggle", "usage_credit_grant" or "resource"; immutable after creation.
    type: Mapped[str] = mapped_column(String)
    amount: Mapped[int | None] = mapped_column(BigInteger, nullable=True)
    usage_meter_id: Mapped[str | None] = mapped_column(String, ForeignKey("usage_meters.id"), nullable=True)
    resource_id: Mapped[str | None] = mapped_column(String, ForeignKey("resources.id"), nullable=True)
    renewal_frequency: Mapped[str | None] = mapped_column(String, nullable=True)
    active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)


class Product(Base):
    __tablename__ = "products"
    __table_args__ = (
        UniqueConstraint("pricing_model_id", "slug", name="uq_products_pm_slug"),
    )

    id: Mapped[str] = mapped_column(String, primary_key=True, default=_prefixed_id("prod"))
    pricing_model_id: Mapped[str] = mapped_column(String, ForeignKey("pricing_models.id"), index=True)
    organization_id: Mapped[str] = mapped_column(String, index=True)
    livemode: Mapped[bool] = mapped_column(Boolean, nullable=False)
    slug: Mapped[str] = mapped_column(String)
    name: Mapped[str] = mapped_column(String)
    description: Mapped[str] = mapped_column(Text, default="", nullable=False)
    default: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
    # Stable hash identity for synthesized rows such as the free default plan.
    external_id: Mapped[str | None] = mapped_column(String, nullable=True)


class Price(Base):
    __tablename__ = "prices"
    __table_args__ = (
        Index("ix_prices_product_active", "product_id", "active"),
        Index("ix_prices_usage_meter_active", "usage_meter_id", "active"),
    )

    id: Mapped[str] = mapped_column(String, primary_key=True, default=_prefixed_id("price"))
    organization_id: Mapped[str] = mapped_column(String, index=True)
    livemode: Mapped[bool] = mapped_column(Boolean, nullable=False)
    # Exactly one of product_id / usage_meter_id is set depending on the price type.
    product_id: Mapped[str | None] = mapped_column(String, ForeignKey("products.id"), nullable=True)
    usage_meter_id: Mapped[str | None] = mapped_column(String, ForeignKey("usage_meters.id"), nullable=True)
    # "subscription", "single_payment" or "usage".
    type: Mapped[str] = mapped_column(String)
    slug: Mapped[str] = mapped_column(String)
    name: Mapped[str | None] = mapped_column(String, nullable=True)
    # Minor currency units.
    unit_price: Mapped[int] = mapped_column(BigInteger)
    currency: Mapped[str] = mapped_column(String, default="USD", nullable=False)
    interval_unit: Mapped[str | None] = mapped_column(String, nullable=True)
    interval_count: Mapped[int | None] = mapped_column(Integer, nullable=True)
    trial_period_days: Mapped[int | None] = mapped_column(Integer, nullable=True)
    usage_events_per_unit: Mapped[int | None] = mapped_column(Integer, nullable=True)
    is_default: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())


class ProductFeature(Base):
    __tablename__ = "product_features"
    __table_args__ = (
        UniqueConstraint("product_id", "feature_id", name="uq_product_features_product_feature"),
    )

    id: Mapped[str] = mapped_column(String, primary_key=True, default=_prefixed_id("pf"))
    organization_id: Mapped[str] = mapped_column(String, index=True)
    livemode: Mapped[bool] = mapped_column(Boolean, nullable=False)
    product_id: Mapped[str] = mapped_column(String, ForeignKey("products.id"), index=True)
    feature_id: Mapped[str] = mapped_column(String, ForeignKey("features.id"), index=True)
    # Soft-expiry marker; associations are never hard-deleted.
    expired_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)


class LedgerTransaction(Base):
    __tablename__ = "ledger_transactions"
    __table_args__ = (
        UniqueConstraint("organization_id", "idempotency_key", name="uq_ledger_transactions_org_key"),
    )

    id: Mapped[str] = mapped_column(String, primary_key=True, default=_prefixed_id("ltx"))
    organization_id: Mapped[str] = mapped_column(String, index=True)
    livemode: Mapped[bool] = mapped_column(Boolean, nullable=False)
    type: Mapped[str] = mapped_column(String)
    idempotency_key: Mapped[str] = mapped_column(String)
    description: Mapped[str | None] = mapped_column(Text, nullable=True)
    metadata_json: Mapped[dict[str, Any] | None] = mapped_column(JSONType, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())


class LedgerEntry(Base):
    __tablename__ = "ledger_entries"

    id: Mapped[str] = mapped_column(String, primary_key=True, default=_prefixed_id("le"))
    ledger_transaction_id: Mapped[str] = mapped_column(
        String, ForeignKey("ledger_transactions.id"), index=True
    )
    organization_id: Mapped[str] = mapped_column(String, index=True)
    livemode: Mapped[bool] = mapped_column(Boolean, nullable=False)
    account: Mapped[str] = mapped_column(String)
    # "debit" or "credit".
    direction: Mapped[str] = mapped_column(String)
    amount: Mapped[int] = mapped_column(BigInteger)
    entry_type: Mapped[str] = mapped_column(String)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())
