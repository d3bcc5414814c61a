from datetime import datetime
from typing import List, Optional

import httpx
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession
from tenacity import retry, stop_after_attempt, wait_exponential, retry_if_exception_type, before_sleep_log
import logging
import structlog

from reqflow.config import settings
from reqflow.models.enums import DispatchStatus
from reqflow.models.notification import EmailNotification

logger = structlog.get_logger()
_std_logger = logging.getLogger(__name__)

BREVO_API_URL = "https://api.brevo.com/v3/smtp/email"

# Reused across calls so TLS connections are pooled
_http_client: Optional[httpx.AsyncClient] = None


def get_http_client() -> httpx.AsyncClient:
    global _http_client
    if _http_client is None or _http_client.is_closed:
        _http_client = httpx.AsyncClient(
            timeout=httpx.Timeout(10.0, connect=5.0),
        )
    return _http_client


async def close_http_client():
    global _http_client
    if _http_client is not None and not _http_client.is_closed:
        await _http_client.aclose()
    _http_client = None


class _BrevoRetryableError(Exception):
    """5xx or network error."""


@retry(
    retry=retry_if_exception_type(_BrevoRetryableError),
    stop=stop_after_attempt(3),
    wait=wait_exponential(multiplier=1, min=2, max=10),
    before_sleep=before_sleep_log(_std_logger, logging.WARNING),
    reraise=True,
)
async def _send_with_retry(headers: dict, payload: dict, to_emails: List[str], subject: str) -> bool:
    client = get_http_client()
    try:
        response = await client.post(BREVO_API_URL, headers=headers, json=payload)
    except (httpx.ConnectError, httpx.TimeoutException, httpx.NetworkError) as exc:
        logger.warning("email_network_error_retrying", error=str(exc), to=to_emails)
        raise _BrevoRetryableError(str(exc)) from exc

    if response.status_code in (201, 202):
        logger.info(
            "email_sent_brevo",
            to=to_emails,
            subject=subject,
            message_id=response.json().get("messageId"),
        )
        return True

    if response.status_code >= 500:
        logger.warning("email_brevo_5xx_retrying", status_code=response.status_code, to=to_emails)
        raise _BrevoRetryableError(f"Brevo returned {response.status_code}")

    # 4xx, retrying will not help
    logger.error(
        "email_failed_brevo",
        status_code=response.status_code,
        response=response.text[:500],
        to=to_emails,
        subject=subject,
    )
    return False


async def send_email(
    to_emails: List[str],
    subject: str,
    html_content: str,
    text_content: Optional[str] = None,
    sender_name: str = settings.APP_NAME,
    sender_email: str = settings.EMAIL_FROM_ADDRESS,
) -> bool:
    """
    Send one message through the Brevo REST API.

    Retries 5xx and network errors up to 3 times with exponential back-off.
    Returns True if Brevo accepted the message.
    """
    if not settings.BREVO_API_KEY:
        logger.warning("brevo_api_key_missing", message="Email sending skipped")
        return False

    if not to_emails:
        logger.warning("email_no_recipients")
        return False

    headers = {
        "accept": "application/json",
        "api-key": settings.BREVO_API_KEY,
        "content-type": "application/json",
    }
    payload = {
        "sender": {"name": sender_name, "email": sender_email},
        "to": [{"email": email} for email in to_emails],
        "subject": subject,
        "htmlContent": html_content,
    }
    if text_content:
        payload["textContent"] = text_content

    try:
        return await _send_with_retry(headers, payload, to_emails, subject)
    except _BrevoRetryableError as exc:
        logger.error("email_all_retries_exhausted", error=str(exc), to=to_emails, subject=subject)
        return False


async def deliver_pending_emails(session: AsyncSession, batch_size: Optional[int] = None) -> dict:
    """
    Drain the email outbox.

    Rows stay 'pending' until they are sent or have failed EMAIL_MAX_RETRIES
    times, at which point they are marked 'failed'. Each row is claimed with
    SKIP LOCKED and its outcome committed before the next one is sent, so a
    crash mid-batch never re-sends a delivered email and overlapping job runs
    do not send the same row twice.
    """
    batch_size = batch_size or settings.EMAIL_BATCH_SIZE
    seen = []
    sent = failed = 0

    while len(seen) < batch_size:
        q = (
            select(EmailNotification)
            .where(
                EmailNotification.status == DispatchStatus.PENDING.value,
                EmailNotification.retry_count < settings.EMAIL_MAX_RETRIES,
            )
            .order_by(EmailNotification.created_at)
            .limit(1)
            .with_for_update(skip_locked=True)
        )
        if seen:
            q = q.where(EmailNotification.id.notin_(seen))
        email = (await session.execute(q)).scalar_one_or_none()
        if email is None:
            break
        seen.append(email.id)

        ok = await send_email([email.recipient_email], email.subject, email.body_html, email.body_text)
        if ok:
            email.status = DispatchStatus.SENT.value
            email.sent_at = datetime.utcnow()
            email.error_message = None
            sent += 1
        else:
            email.retry_count = (email.retry_count or 0) + 1
            email.error_message = "Email provider did not accept the message"
            if email.retry_count >= settings.EMAIL_MAX_RETRIES:
                email.status = DispatchStatus.FAILED.value
            failed += 1

        await session.commit()

    logger.info("email_outbox_processed", total=len(seen), sent=sent, failed=failed)
    return {"processed": len(seen), "sent": sent, "failed": failed}
