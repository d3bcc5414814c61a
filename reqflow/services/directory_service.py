"""
Directory lookups: the acting member and notification recipients.

Roles are per organization (OrganizationMember.workflow_role). A user with no
active membership in the selected organization cannot act in it.
"""

from dataclasses import dataclass
from typing import Iterable, Optional
import uuid

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession
import structlog

from reqflow.errors import Unauthorized
from reqflow.models.organization import OrganizationMember
from reqflow.models.user import User

logger = structlog.get_logger()


@dataclass
class Actor:
    user_id: uuid.UUID
    org_id: uuid.UUID
    role: str
    email: Optional[str] = None
    full_name: Optional[str] = None

    @property
    def display_name(self) -> str:
        return self.full_name or self.email or "Someone"


@dataclass
class Recipient:
    user_id: uuid.UUID
    email: str
    full_name: Optional[str]
    role: str


async def get_actor(session: AsyncSession, org_id, user_id) -> Actor:
    try:
        user_id = uuid.UUID(str(user_id))
    except ValueError:
        raise Unauthorized()

    result = await session.execute(
        select(OrganizationMember, User)
        .join(User, OrganizationMember.user_id == User.id)
        .where(
            OrganizationMember.org_id == org_id,
            OrganizationMember.user_id == user_id,
            OrganizationMember.is_active == True,  # noqa: E712
            User.deactivated_at == None,  # noqa: E711
        )
    )
    row = result.first()
    if not row:
        logger.warning(
            "actor_not_member",
            org_id=str(org_id),
            user_id=str(user_id),
        )
        raise Unauthorized()

    member, user = row
    return Actor(
        user_id=user.id,
        org_id=member.org_id,
        role=member.workflow_role,
        email=user.email,
        full_name=user.full_name,
    )


async def display_name(
    session: AsyncSession, user_id, fallback: str = "Someone"
) -> str:
    if not user_id:
        return fallback
    result = await session.execute(
        select(User.full_name, User.email).where(User.id == user_id)
    )
    row = result.first()
    if not row:
        return fallback
    return row[0] or row[1] or fallback


async def members_with_roles(
    session: AsyncSession, org_id, roles: Iterable[str]
) -> list[Recipient]:
    """Active members of ``org_id`` holding any of ``roles``."""
    roles = list(roles)
    if not roles:
        return []
    result = await session.execute(
        select(User.id, User.email, User.full_name, OrganizationMember.workflow_role)
        .join(OrganizationMember, OrganizationMember.user_id == User.id)
        .where(
            OrganizationMember.org_id == org_id,
            OrganizationMember.workflow_role.in_(roles),
            OrganizationMember.is_active == True,  # noqa: E712
            User.deactivated_at == None,  # noqa: E711
        )
    )
    return [Recipient(*row) for row in result.all()]


async def active_members(
    session: AsyncSession, org_id, user_ids: Iterable
) -> list[Recipient]:
    """Subset of ``user_ids`` that are still active members of ``org_id``."""
    ids = [uid for uid in user_ids if uid]
    if not ids:
        return []
    result = await session.execute(
        select(User.id, User.email, User.full_name, OrganizationMember.workflow_role)
        .join(OrganizationMember, OrganizationMember.user_id == User.id)
        .where(
            OrganizationMember.org_id == org_id,
            OrganizationMember.user_id.in_(ids),
            OrganizationMember.is_active == True,  # noqa: E712
            User.deactivated_at == None,  # noqa: E711
        )
    )
    return [Recipient(*row) for row in result.all()]
