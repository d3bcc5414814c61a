import uuid

import pytest
import pytest_asyncio
from httpx import AsyncClient, ASGITransport
from unittest.mock import AsyncMock, MagicMock

from reqflow.main import app
from reqflow.database import get_db
from reqflow.middleware.auth import get_current_user

ORG_ID = uuid.UUID("a0000000-0000-0000-0000-000000000001")
USER_ID = uuid.UUID("c0000000-0000-0000-0000-000000000001")


@pytest.fixture
def db_session():
    session = AsyncMock()
    session.add = MagicMock()
    return session


@pytest.fixture
def current_user():
    return {"user_id": str(USER_ID), "email": "sam@acme.com", "org_id": str(ORG_ID)}


@pytest_asyncio.fixture
async def client(db_session, current_user):
    async def _get_db():
        yield db_session

    app.dependency_overrides[get_db] = _get_db
    app.dependency_overrides[get_current_user] = lambda: current_user
    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as c:
        yield c
    app.dependency_overrides.clear()
