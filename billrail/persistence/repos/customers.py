from __future__ import annotations

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from billrail.domain.models import Customer, User
from billrail.persistence.guards import organization_predicate


async def get_customer(session: AsyncSession, organization_id: str, customer_id: str) -> Customer | None:
    result = await session.execute(
        select(Customer).where(
            Customer.id == customer_id,
            organization_predicate(Customer, organization_id),
        )
    )
    return result.scalar_one_or_none()


async def get_customer_by_hosted_billing_user(
    session: AsyncSession, *, organization_id: str, hosted_billing_user_id: str
) -> Customer | None:
    result = await session.execute(
        select(Customer)
        .where(
            organization_predicate(Customer, organization_id),
            Customer.hosted_billing_user_id == hosted_billing_user_id,
        )
        .order_by(Customer.created_at.asc(), Customer.id.asc())
        .limit(1)
    )
    return result.scalar_one_or_none()


async def get_livemode_customer_for_session_user(
    session: AsyncSession,
    *,
    organization_id: str,
    session_user_id: str,
    customer_id: str | None = None,
) -> tuple[Customer, User] | None:
    # Billing-portal sessions only ever act on livemode customers of the requested organization.
    query = (
        select(Customer, User)
        .join(User, User.id == Customer.user_id)
        .where(
            User.external_id == session_user_id,
            organization_predicate(Customer, organization_id),
            Customer.livemode.is_(True),
        )
    )
    if customer_id is not None:
        query = query.where(Customer.id == customer_id)
    result = await session.execute(query.order_by(Customer.created_at.asc(), Customer.id.asc()).limit(1))
    row = result.first()
    if row is None:
        return None
    return row[0], row[1]
