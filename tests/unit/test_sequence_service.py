"""
Unit tests for reqflow/services/sequence_service.py
"""

from types import SimpleNamespace
from unittest.mock import AsyncMock, MagicMock, patch

import pytest
from sqlalchemy.exc import DBAPIError

from reqflow.errors import SequenceLockTimeout
from reqflow.models.enums import SequenceKind
from reqflow.services.sequence_service import format_number, next_number


class _LockNotAvailable(Exception):
    sqlstate = "55P03"


class _UniqueViolation(Exception):
    sqlstate = "23505"


def _counter_result(current_value: int):
    result = MagicMock()
    result.scalar_one.return_value = SimpleNamespace(current_value=current_value)
    return result


def _patch_timeouts():
    return (
        patch("reqflow.services.sequence_service.set_lock_timeout", new=AsyncMock()),
        patch("reqflow.services.sequence_service.reset_lock_timeout", new=AsyncMock()),
    )


def _mock_session(*execute_effects) -> AsyncMock:
    session = AsyncMock()
    session.flush = AsyncMock()
    session.execute = AsyncMock(side_effect=list(execute_effects))
    return session


# ---------------------------------------------------------------------------
# format_number
# ---------------------------------------------------------------------------

def test_format_number_pads_to_five_digits():
    assert format_number(SequenceKind.REQUISITION, 2026, 7) == "REQ-26-00007"
    assert format_number(SequenceKind.PURCHASE_ORDER, 2026, 12345) == "PO-26-12345"


def test_format_number_two_digit_year():
    assert format_number("REQ", 2009, 1) == "REQ-09-00001"


# ---------------------------------------------------------------------------
# next_number
# ---------------------------------------------------------------------------

@pytest.mark.asyncio
async def test_next_number_increments_locked_counter():
    counter = _counter_result(6)
    session = _mock_session(MagicMock(), counter)

    set_patch, reset_patch = _patch_timeouts()
    with set_patch as set_timeout, reset_patch as reset_timeout:
        number = await next_number(session, SequenceKind.REQUISITION, year=2026)

    assert number == "REQ-26-00007"
    assert counter.scalar_one.return_value.current_value == 7
    set_timeout.assert_awaited_once()
    reset_timeout.assert_awaited_once_with(session)
    session.flush.assert_awaited_once()


@pytest.mark.asyncio
async def test_first_number_of_the_year():
    session = _mock_session(MagicMock(), _counter_result(0))

    set_patch, reset_patch = _patch_timeouts()
    with set_patch, reset_patch:
        number = await next_number(session, SequenceKind.REQUISITION, year=2027)

    assert number == "REQ-27-00001"


@pytest.mark.asyncio
async def test_lock_timeout_becomes_retryable_error():
    timeout = DBAPIError("SELECT ... FOR UPDATE", {}, _LockNotAvailable("canceling statement"))
    session = _mock_session(MagicMock(), timeout)

    set_patch, reset_patch = _patch_timeouts()
    with set_patch, reset_patch as reset_timeout:
        with pytest.raises(SequenceLockTimeout) as exc_info:
            await next_number(session, SequenceKind.REQUISITION, year=2026)

    assert exc_info.value.retryable is True
    assert exc_info.value.to_detail()["error"]["retryable"] is True
    session.flush.assert_not_awaited()
    reset_timeout.assert_not_awaited()


@pytest.mark.asyncio
async def test_other_database_errors_propagate():
    failure = DBAPIError("INSERT", {}, _UniqueViolation("duplicate key"))
    session = _mock_session(failure)

    set_patch, reset_patch = _patch_timeouts()
    with set_patch, reset_patch:
        with pytest.raises(DBAPIError):
            await next_number(session, SequenceKind.REQUISITION, year=2026)
