from __future__ import annotations

from sqlalchemy import or_, select
from sqlalchemy.ext.asyncio import AsyncSession

from billrail.domain.models import Membership, User
from billrail.persistence.guards import organization_predicate


async def get_user_by_id_or_external_id(session: AsyncSession, subject_user_id: str) -> User | None:
    # API-key subjects may carry either the internal id or the identity-provider id.
    result = await session.execute(
        select(User)
        .where(or_(User.id == subject_user_id, User.external_id == subject_user_id))
        .order_by(User.created_at.asc(), User.id.asc())
        .limit(1)
    )
    return result.scalar_one_or_none()


async def get_user_by_external_id(session: AsyncSession, external_id: str) -> User | None:
    result = await session.execute(select(User).where(User.external_id == external_id))
    return result.scalar_one_or_none()


async def get_membership(
    session: AsyncSession, *, user_id: str, organization_id: str
) -> Membership | None:
    result = await session.execute(
        select(Membership).where(
            Membership.user_id == user_id,
            organization_predicate(Membership, organization_id),
        )
    )
    return result.scalar_one_or_none()


async def list_memberships_for_user(session: AsyncSession, user_id: str) -> list[Membership]:
    # Focused first, then earliest created, then id for a stable order across queries.
    result = await session.execute(
        select(Membership)
        .where(Membership.user_id == user_id)
        .order_by(Membership.focused.desc(), Membership.created_at.asc(), Membership.id.asc())
    )
    return list(result.scalars().all())


async def earliest_membership(
    session: AsyncSession, organization_id: str
) -> tuple[Membership, User] | None:
    result = await session.execute(
        select(Membership, User)
        .join(User, User.id == Membership.user_id)
        .where(organization_predicate(Membership, organization_id))
        .order_by(Membership.created_at.asc(), Membership.id.asc())
        .limit(1)
    )
    row = result.first()
    if row is None:
        return None
    return row[0], row[1]
