from typing import Optional
import uuid

from fastapi import Depends, Header
import structlog

from reqflow.errors import NoOrganizationSelected
from reqflow.middleware.auth import get_current_user

logger = structlog.get_logger()


def resolve_org_id(current_user: dict, x_organization_id: Optional[str] = None) -> uuid.UUID:
    """
    The one organization a request acts in: the X-Organization-ID header if
    sent, else the token's org_id claim. Membership is checked later, per
    operation, by directory_service.get_actor().
    """
    raw = (x_organization_id or "").strip() or current_user.get("org_id")
    if not raw:
        raise NoOrganizationSelected()
    try:
        return uuid.UUID(str(raw))
    except ValueError:
        logger.warning("tenant_org_id_invalid", value=str(raw)[:64])
        raise NoOrganizationSelected("Selected organization is not a valid id")


async def get_org_id(
    current_user: dict = Depends(get_current_user),
    x_organization_id: Optional[str] = Header(None, alias="X-Organization-ID"),
) -> uuid.UUID:
    """FastAPI dependency: resolved org id, bound to the request's log context."""
    org_id = resolve_org_id(current_user, x_organization_id)
    structlog.contextvars.bind_contextvars(org_id=str(org_id))
    return org_id
