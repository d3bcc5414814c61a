"""
Cross-tenant guard.

Every resource fetched by ID goes through ensure_same_org() before it is
used. A missing row and a row owned by another organization produce the same
NotFoundOrAccessDenied; only the second one is audited.
"""

from datetime import datetime
from typing import Optional, TypeVar

import structlog

from reqflow.errors import NotFoundOrAccessDenied
from reqflow.services import audit_service

logger = structlog.get_logger()

R = TypeVar("R")


def belongs_to(resource, org_id) -> bool:
    return str(getattr(resource, "org_id", None)) == str(org_id)


async def ensure_same_org(
    resource: Optional[R],
    resource_type: str,
    resource_id,
    caller_org_id,
    actor_id,
    action: str,
) -> R:
    """Return ``resource`` if the caller's org owns it, else deny."""
    if resource is None:
        raise NotFoundOrAccessDenied()

    if belongs_to(resource, caller_org_id):
        return resource

    resource_org_id = getattr(resource, "org_id", None)
    logger.warning(
        "cross_tenant_access_denied",
        resource_type=resource_type,
        resource_id=str(resource_id),
        resource_org_id=str(resource_org_id),
        caller_org_id=str(caller_org_id),
        actor_id=str(actor_id) if actor_id else None,
        action=action,
    )
    await audit_service.record_cross_tenant_attempt(
        resource_type=resource_type,
        resource_id=resource_id,
        resource_org_id=resource_org_id,
        action=action,
        caller_org_id=caller_org_id,
        actor_id=actor_id,
        timestamp=datetime.utcnow(),
    )
    raise NotFoundOrAccessDenied()
