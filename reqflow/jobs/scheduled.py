"""
Background jobs triggered by an external scheduler calling these endpoints.

Jobs:
  - retry-notifications: every minute, re-dispatches transitions whose
    fan-out failed or never ran
  - send-emails: every minute, drains the email outbox
"""

from fastapi import APIRouter, Depends, HTTPException, Request, status
from sqlalchemy.ext.asyncio import AsyncSession
import structlog

from reqflow.config import settings
from reqflow.database import get_db
from reqflow.services import email_service, notification_service

logger = structlog.get_logger()
router = APIRouter()


async def _require_internal_auth(request: Request):
    """Check X-Internal-Secret against INTERNAL_JOB_SECRET."""
    secret = settings.INTERNAL_JOB_SECRET
    if not secret:
        # Unauthenticated internal calls are allowed only in DEBUG
        if settings.DEBUG:
            return
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="INTERNAL_JOB_SECRET is not configured",
        )
    provided = request.headers.get("X-Internal-Secret")
    if not provided or provided != secret:
        logger.warning("internal_auth_failed", path=request.url.path)
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Forbidden",
        )


@router.post("/retry-notifications")
async def retry_notifications(
    db: AsyncSession = Depends(get_db),
    _auth: None = Depends(_require_internal_auth),
):
    return await notification_service.retry_pending_dispatches(db)


@router.post("/send-emails")
async def send_emails(
    db: AsyncSession = Depends(get_db),
    _auth: None = Depends(_require_internal_auth),
):
    return await email_service.deliver_pending_emails(db)
