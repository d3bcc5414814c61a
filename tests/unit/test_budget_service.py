"""
Unit tests for reqflow/services/budget_service.py

Uses AsyncMock to isolate from the database.
Tests: available, check_availability, commit, lock_project, available_budget.
"""

import uuid
from decimal import Decimal
from typing import Optional
from unittest.mock import AsyncMock, MagicMock, patch

import pytest

from sqlalchemy.dialects import postgresql

from reqflow.errors import InsufficientBudget, NotFoundOrAccessDenied
from reqflow.services import audit_service
from reqflow.services.budget_service import (
    available,
    available_budget,
    check_availability,
    commit,
    is_unlimited,
    lock_project,
)


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

def _make_project(budget: Optional[str] = "10000.00", spent: str = "0"):
    p = MagicMock()
    p.id = uuid.uuid4()
    p.org_id = uuid.uuid4()
    p.budget = Decimal(budget) if budget is not None else None
    p.spent_amount = Decimal(spent)
    return p


def _mock_session(reserved: str = "0") -> AsyncMock:
    session = AsyncMock()
    session.flush = AsyncMock()
    session.add = MagicMock()
    result = MagicMock()
    result.scalar.return_value = Decimal(reserved)
    session.execute = AsyncMock(return_value=result)
    return session


# ---------------------------------------------------------------------------
# available
# ---------------------------------------------------------------------------

@pytest.mark.asyncio
async def test_available_nets_spent_and_reserved():
    project = _make_project(budget="10000.00", spent="1500.00")
    session = _mock_session(reserved="2500.00")

    result = await available(session, project)

    assert result.is_unlimited is False
    assert result.reserved_amount == Decimal("2500.00")
    assert result.available == Decimal("6000.00")


@pytest.mark.asyncio
@pytest.mark.parametrize("budget", [None, "0"])
async def test_null_or_zero_budget_is_unlimited(budget):
    project = _make_project(budget=budget, spent="999999.00")
    session = _mock_session()

    result = await available(session, project)

    assert is_unlimited(project)
    assert result.is_unlimited is True
    assert result.available is None
    assert result.covers(Decimal("1000000000"))
    session.execute.assert_not_awaited()


@pytest.mark.asyncio
async def test_reserved_amount_passes_exclusion():
    project = _make_project()
    session = _mock_session()
    excluded = uuid.uuid4()

    with patch(
        "reqflow.services.budget_service.reserved_amount",
        new=AsyncMock(return_value=Decimal("0")),
    ) as reserved:
        await available(session, project, excluding_requisition_id=excluded)

    reserved.assert_awaited_once_with(session, project.id, excluded)


# ---------------------------------------------------------------------------
# check_availability
# ---------------------------------------------------------------------------

@pytest.mark.asyncio
async def test_three_submissions_against_ten_thousand():
    """6000 fits, then 5000 does not (4000 left), then 4000 does."""
    project = _make_project(budget="10000.00")

    first = await check_availability(_mock_session("0"), project, Decimal("6000.00"))
    assert first.available == Decimal("10000.00")

    with pytest.raises(InsufficientBudget) as exc_info:
        await check_availability(_mock_session("6000.00"), project, Decimal("5000.00"))
    assert exc_info.value.available == Decimal("4000.00")
    assert exc_info.value.requested == Decimal("5000.00")

    third = await check_availability(_mock_session("6000.00"), project, Decimal("4000.00"))
    assert third.available == Decimal("4000.00")


@pytest.mark.asyncio
async def test_exact_fit_is_allowed():
    project = _make_project(budget="1000.00", spent="400.00")
    result = await check_availability(_mock_session("100.00"), project, Decimal("500.00"))
    assert result.available == Decimal("500.00")


@pytest.mark.asyncio
async def test_insufficient_budget_detail_is_serialisable():
    project = _make_project(budget="100.00")
    with pytest.raises(InsufficientBudget) as exc_info:
        await check_availability(_mock_session("0"), project, Decimal("100.01"))

    detail = exc_info.value.to_detail()["error"]
    assert detail["code"] == "INSUFFICIENT_BUDGET"
    assert detail["available"] == "100.00"
    assert detail["requested"] == "100.01"


# ---------------------------------------------------------------------------
# commit
# ---------------------------------------------------------------------------

@pytest.mark.asyncio
async def test_commit_adds_to_spent():
    project = _make_project(budget="10000.00", spent="2000.00")
    session = _mock_session()

    new_spent = await commit(session, project, Decimal("3000.00"))

    assert new_spent == Decimal("5000.00")
    assert project.spent_amount == Decimal("5000.00")
    session.flush.assert_awaited_once()


@pytest.mark.asyncio
async def test_commit_refuses_to_exceed_budget():
    project = _make_project(budget="10000.00", spent="9000.00")
    session = _mock_session()

    with pytest.raises(InsufficientBudget) as exc_info:
        await commit(session, project, Decimal("2000.00"))

    assert exc_info.value.available == Decimal("1000.00")
    assert project.spent_amount == Decimal("9000.00")
    session.flush.assert_not_awaited()


@pytest.mark.asyncio
async def test_commit_on_unlimited_project():
    project = _make_project(budget=None, spent="50.00")
    new_spent = await commit(_mock_session(), project, Decimal("1000000.00"))
    assert new_spent == Decimal("1000050.00")


# ---------------------------------------------------------------------------
# lock_project
# ---------------------------------------------------------------------------

def _compiled(statement) -> str:
    return str(statement.compile(dialect=postgresql.dialect()))


@pytest.mark.asyncio
async def test_lock_project_takes_no_key_update_lock():
    project = _make_project()
    session = AsyncMock()
    result = MagicMock()
    result.scalar_one_or_none.return_value = project
    session.execute = AsyncMock(return_value=result)

    locked = await lock_project(session, project.id)

    assert locked is project
    sql = _compiled(session.execute.await_args.args[0])
    assert "FOR NO KEY UPDATE" in sql


@pytest.mark.asyncio
async def test_lock_project_missing_row():
    session = AsyncMock()
    result = MagicMock()
    result.scalar_one_or_none.return_value = None
    session.execute = AsyncMock(return_value=result)

    with pytest.raises(NotFoundOrAccessDenied):
        await lock_project(session, uuid.uuid4())


# ---------------------------------------------------------------------------
# available_budget
# ---------------------------------------------------------------------------

def _project_lookup_session(project, reserved: str = "0") -> AsyncMock:
    session = AsyncMock()
    lookup = MagicMock()
    lookup.scalar_one_or_none.return_value = project
    reserved_result = MagicMock()
    reserved_result.scalar.return_value = Decimal(reserved)
    session.execute = AsyncMock(side_effect=[lookup, reserved_result])
    return session


@pytest.mark.asyncio
async def test_available_budget_for_own_project():
    project = _make_project(budget="10000.00", spent="1000.00")
    session = _project_lookup_session(project, reserved="500.00")

    with patch.object(audit_service, "record_cross_tenant_attempt", new=AsyncMock()) as audit:
        result = await available_budget(session, project.org_id, project.id, uuid.uuid4())

    assert result.available == Decimal("8500.00")
    audit.assert_not_awaited()


@pytest.mark.asyncio
async def test_available_budget_for_foreign_project_is_denied_and_audited():
    project = _make_project()
    session = _project_lookup_session(project)
    caller_org = uuid.uuid4()

    with patch.object(audit_service, "record_cross_tenant_attempt", new=AsyncMock()) as audit:
        with pytest.raises(NotFoundOrAccessDenied):
            await available_budget(session, caller_org, project.id, uuid.uuid4())

    audit.assert_awaited_once()
    assert audit.await_args.kwargs["caller_org_id"] == caller_org
    assert session.execute.await_count == 1


@pytest.mark.asyncio
async def test_available_budget_for_missing_project():
    session = _project_lookup_session(None)

    with patch.object(audit_service, "record_cross_tenant_attempt", new=AsyncMock()) as audit:
        with pytest.raises(NotFoundOrAccessDenied):
            await available_budget(session, uuid.uuid4(), uuid.uuid4())

    audit.assert_not_awaited()
