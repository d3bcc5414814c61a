"""
Unit tests for reqflow/services/email_service.py

Brevo is never called: send_email() is patched for the outbox tests and the
API key is cleared for the send tests.
"""

import uuid
from types import SimpleNamespace
from unittest.mock import AsyncMock, MagicMock, patch

import pytest

from reqflow.config import settings
from reqflow.services import email_service


def _make_email(retry_count: int = 0):
    return SimpleNamespace(
        id=uuid.uuid4(),
        recipient_email="sam@acme.com",
        subject="Requisition Approved: REQ-26-00001",
        body_html="<p>ok</p>",
        body_text="ok",
        status="pending",
        retry_count=retry_count,
        sent_at=None,
        error_message=None,
    )


def _claim(email):
    result = MagicMock()
    result.scalar_one_or_none.return_value = email
    return result


def _mock_session(emails) -> AsyncMock:
    """One claim per row, then an empty claim."""
    session = AsyncMock()
    session.execute = AsyncMock(side_effect=[_claim(e) for e in [*emails, None]])
    return session


@pytest.mark.asyncio
async def test_send_email_without_api_key_is_skipped():
    with patch.object(settings, "BREVO_API_KEY", None):
        ok = await email_service.send_email(["sam@acme.com"], "Hi", "<p>Hi</p>")
    assert ok is False


@pytest.mark.asyncio
async def test_send_email_without_recipients_is_skipped():
    with patch.object(settings, "BREVO_API_KEY", "test-key"):
        ok = await email_service.send_email([], "Hi", "<p>Hi</p>")
    assert ok is False


@pytest.mark.asyncio
async def test_outbox_marks_sent_and_counts_failures():
    delivered = _make_email()
    bounced = _make_email(retry_count=0)
    session = _mock_session([delivered, bounced])

    with patch.object(email_service, "send_email", new=AsyncMock(side_effect=[True, False])):
        summary = await email_service.deliver_pending_emails(session)

    assert summary == {"processed": 2, "sent": 1, "failed": 1}
    assert delivered.status == "sent"
    assert delivered.sent_at is not None
    assert bounced.status == "pending"
    assert bounced.retry_count == 1
    assert session.commit.await_count == 2


@pytest.mark.asyncio
async def test_outbox_gives_up_after_max_retries():
    last_try = _make_email(retry_count=settings.EMAIL_MAX_RETRIES - 1)
    session = _mock_session([last_try])

    with patch.object(email_service, "send_email", new=AsyncMock(return_value=False)):
        await email_service.deliver_pending_emails(session)

    assert last_try.retry_count == settings.EMAIL_MAX_RETRIES
    assert last_try.status == "failed"


@pytest.mark.asyncio
async def test_empty_outbox():
    session = _mock_session([])
    with patch.object(email_service, "send_email", new=AsyncMock()) as send:
        summary = await email_service.deliver_pending_emails(session)
    assert summary == {"processed": 0, "sent": 0, "failed": 0}
    send.assert_not_awaited()


@pytest.mark.asyncio
async def test_sent_row_is_committed_before_next_send():
    first = _make_email()
    second = _make_email()
    session = _mock_session([first, second])

    with patch.object(email_service, "send_email", new=AsyncMock(side_effect=[True, RuntimeError("boom")])):
        with pytest.raises(RuntimeError):
            await email_service.deliver_pending_emails(session)

    assert first.status == "sent"
    session.commit.assert_awaited_once()
    assert second.status == "pending"


@pytest.mark.asyncio
async def test_later_claims_skip_rows_already_tried():
    bounced = _make_email()
    session = _mock_session([bounced])

    with patch.object(email_service, "send_email", new=AsyncMock(return_value=False)):
        await email_service.deliver_pending_emails(session)

    second_claim = session.execute.await_args_list[1].args[0]
    assert "NOT IN" in str(second_claim.whereclause)
    assert "NOT IN" not in str(session.execute.await_args_list[0].args[0].whereclause)


@pytest.mark.asyncio
async def test_outbox_stops_at_batch_size():
    emails = [_make_email(), _make_email(), _make_email()]
    session = _mock_session(emails)

    with patch.object(email_service, "send_email", new=AsyncMock(return_value=True)) as send:
        summary = await email_service.deliver_pending_emails(session, batch_size=2)

    assert summary == {"processed": 2, "sent": 2, "failed": 0}
    assert send.await_count == 2
    assert emails[2].status == "pending"
