import uuid
from typing import Optional

from fastapi import APIRouter, Depends, Header, HTTPException, Query, status
from sqlalchemy.ext.asyncio import AsyncSession

from reqflow.database import get_db
from reqflow.middleware.auth import get_current_user
from reqflow.middleware.tenant import resolve_org_id
from reqflow.models.notification import Notification
from reqflow.schemas.notification import NotificationListResponse, NotificationResponse
from reqflow.services import notification_service

router = APIRouter()


def _user_id(current_user: dict) -> uuid.UUID:
    try:
        return uuid.UUID(str(current_user["user_id"]))
    except ValueError:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail={"error": {"code": "AUTH_TOKEN_INVALID", "message": "Invalid or expired token"}},
        )


def _optional_org_id(current_user: dict, x_organization_id: Optional[str]) -> Optional[uuid.UUID]:
    """Notifications are per user; the org filter applies only when one is selected."""
    if not (x_organization_id or current_user.get("org_id")):
        return None
    return resolve_org_id(current_user, x_organization_id)


def _to_response(n: Notification) -> NotificationResponse:
    return NotificationResponse(
        id=str(n.id),
        type=n.type,
        title=n.title,
        message=n.message,
        link=n.link,
        requisition_id=str(n.requisition_id) if n.requisition_id else None,
        is_read=bool(n.is_read),
        read_at=n.read_at.isoformat() if n.read_at else None,
        created_at=n.created_at.isoformat() if n.created_at else "",
    )


@router.get("", response_model=NotificationListResponse)
async def list_notifications(
    unread_only: bool = Query(False),
    limit: int = Query(50, ge=1, le=200),
    x_organization_id: Optional[str] = Header(None, alias="X-Organization-ID"),
    current_user: dict = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    """Most recent notifications for the logged-in user."""
    user_id = _user_id(current_user)
    org_id = _optional_org_id(current_user, x_organization_id)
    rows = await notification_service.list_notifications(
        db, user_id, org_id=org_id, unread_only=unread_only, limit=limit
    )
    unread = await notification_service.count_unread(db, user_id, org_id=org_id)
    return NotificationListResponse(data=[_to_response(n) for n in rows], unread_count=unread)


@router.post("/read-all")
async def mark_all_read(
    x_organization_id: Optional[str] = Header(None, alias="X-Organization-ID"),
    current_user: dict = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    updated = await notification_service.mark_all_read(
        db, _user_id(current_user), org_id=_optional_org_id(current_user, x_organization_id)
    )
    return {"updated": updated}


@router.post("/{notification_id}/read", response_model=NotificationResponse)
async def mark_read(
    notification_id: uuid.UUID,
    current_user: dict = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    notification = await notification_service.mark_read(db, _user_id(current_user), notification_id)
    return _to_response(notification)


@router.delete("/{notification_id}", status_code=status.HTTP_204_NO_CONTENT)
async def delete_notification(
    notification_id: uuid.UUID,
    current_user: dict = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    await notification_service.delete_notification(db, _user_id(current_user), notification_id)
