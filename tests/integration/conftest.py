"""
Fixtures for tests that need a real PostgreSQL.

Set TEST_DATABASE_URL (postgresql+asyncpg://...) to run them; the schema in
that database is dropped and recreated for every test.
"""

import os
import uuid
from decimal import Decimal
from types import SimpleNamespace

import pytest_asyncio
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import NullPool

from reqflow.database import Base
from reqflow.models.organization import Organization, OrganizationMember
from reqflow.models.project import Project
from reqflow.models.user import User
import reqflow.models  # noqa: F401

TEST_DATABASE_URL = os.getenv("TEST_DATABASE_URL")


@pytest_asyncio.fixture
async def session_factory():
    engine = create_async_engine(TEST_DATABASE_URL, poolclass=NullPool)
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)
        await conn.run_sync(Base.metadata.create_all)
    yield async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)
    await engine.dispose()


@pytest_asyncio.fixture
async def tenants(session_factory):
    """Two organizations; org A has one member per role and a 10,000 project."""
    ids = SimpleNamespace(
        org_a=uuid.uuid4(),
        org_b=uuid.uuid4(),
        submitter=uuid.uuid4(),
        reviewer=uuid.uuid4(),
        approver=uuid.uuid4(),
        outsider=uuid.uuid4(),
        project_a=uuid.uuid4(),
        project_b=uuid.uuid4(),
    )
    async with session_factory() as session:
        session.add_all([
            Organization(id=ids.org_a, name="Acme", slug=f"acme-{ids.org_a.hex[:8]}", settings={}),
            Organization(id=ids.org_b, name="Globex", slug=f"globex-{ids.org_b.hex[:8]}", settings={}),
        ])
        for user_id, name in [
            (ids.submitter, "Sam"),
            (ids.reviewer, "Rita"),
            (ids.approver, "Alex"),
            (ids.outsider, "Otto"),
        ]:
            session.add(User(id=user_id, email=f"{name.lower()}-{user_id.hex[:8]}@example.com", full_name=name))
        await session.flush()

        session.add_all([
            OrganizationMember(org_id=ids.org_a, user_id=ids.submitter, workflow_role="submitter", is_active=True),
            OrganizationMember(org_id=ids.org_a, user_id=ids.reviewer, workflow_role="reviewer", is_active=True),
            OrganizationMember(org_id=ids.org_a, user_id=ids.approver, workflow_role="approver", is_active=True),
            OrganizationMember(org_id=ids.org_b, user_id=ids.outsider, workflow_role="super_admin", is_active=True),
            Project(id=ids.project_a, org_id=ids.org_a, name="HQ Fitout", budget=Decimal("10000.00"),
                    spent_amount=Decimal("0"), is_active=True),
            Project(id=ids.project_b, org_id=ids.org_b, name="Warehouse", budget=Decimal("5000.00"),
                    spent_amount=Decimal("0"), is_active=True),
        ])
        await session.commit()
    return ids
