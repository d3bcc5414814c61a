"""
Sequence service: collision-free document numbers (REQ-YY-NNNNN, PO-YY-NNNNN).

One counter row per (kind, year). The row is created idempotently with
INSERT ... ON CONFLICT DO NOTHING and then locked with SELECT ... FOR UPDATE,
so concurrent allocators queue on the row instead of reading the same max.
The lock is held until the caller's transaction ends.

Waiting is bounded by a transaction-local lock_timeout. When it fires the
caller gets SequenceLockTimeout (retryable) before anything else has been
written in the transaction. Once the counter row is held the timeout goes back
to the server default so later statements in the same transaction keep it.
"""

from datetime import datetime
from typing import Optional

from sqlalchemy import select
from sqlalchemy.dialects.postgresql import insert
from sqlalchemy.exc import DBAPIError
from sqlalchemy.ext.asyncio import AsyncSession
import structlog

from reqflow.config import settings
from reqflow.database import reset_lock_timeout, set_lock_timeout
from reqflow.errors import SequenceLockTimeout
from reqflow.models.enums import SequenceKind
from reqflow.models.sequence import SequenceCounter

logger = structlog.get_logger()

# PostgreSQL lock_not_available
LOCK_NOT_AVAILABLE = "55P03"


def format_number(kind: SequenceKind, year: int, value: int) -> str:
    """REQ + 2026 + 7 -> 'REQ-26-00007'."""
    return f"{SequenceKind(kind).value}-{year % 100:02d}-{value:05d}"


def _is_lock_timeout(exc: DBAPIError) -> bool:
    orig = getattr(exc, "orig", None)
    code = getattr(orig, "sqlstate", None) or getattr(orig, "pgcode", None)
    if code == LOCK_NOT_AVAILABLE:
        return True
    return "lock timeout" in str(exc).lower()


async def next_number(
    session: AsyncSession,
    kind: SequenceKind,
    org_id=None,
    year: Optional[int] = None,
) -> str:
    """
    Allocate the next number for ``kind`` in the current year.

    Numbering is global: ``org_id`` is only logged. Raises SequenceLockTimeout
    if the counter row stays locked longer than SEQUENCE_LOCK_TIMEOUT_MS.
    """
    kind = SequenceKind(kind)
    year = year or datetime.utcnow().year

    try:
        await set_lock_timeout(session, settings.SEQUENCE_LOCK_TIMEOUT_MS)

        await session.execute(
            insert(SequenceCounter)
            .values(kind=kind.value, year=year, current_value=0)
            .on_conflict_do_nothing(index_elements=["kind", "year"])
        )

        result = await session.execute(
            select(SequenceCounter)
            .where(SequenceCounter.kind == kind.value, SequenceCounter.year == year)
            .with_for_update()
            .execution_options(populate_existing=True)
        )
        counter = result.scalar_one()
        await reset_lock_timeout(session)
    except DBAPIError as exc:
        if _is_lock_timeout(exc):
            logger.warning(
                "sequence_lock_timeout",
                kind=kind.value,
                year=year,
                org_id=str(org_id) if org_id else None,
                timeout_ms=settings.SEQUENCE_LOCK_TIMEOUT_MS,
            )
            raise SequenceLockTimeout() from exc
        raise

    counter.current_value += 1
    await session.flush()

    number = format_number(kind, year, counter.current_value)
    logger.info(
        "sequence_allocated",
        kind=kind.value,
        number=number,
        org_id=str(org_id) if org_id else None,
    )
    return number
