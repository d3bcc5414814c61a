"""Security audit service: records blocked cross-tenant access attempts."""

from typing import Optional
from datetime import datetime
import uuid

import structlog

from reqflow.database import AsyncSessionLocal
from reqflow.models.audit_log import SecurityAuditLog

logger = structlog.get_logger()

CROSS_ORG_ACCESS_ATTEMPT = "cross_org_access_attempt"


def _to_uuid(value, field_name: str) -> Optional[uuid.UUID]:
    if value is None:
        return None
    try:
        return uuid.UUID(str(value))
    except (ValueError, TypeError):
        logger.warning("audit_invalid_uuid", field=field_name, value=str(value))
        return None


def _current_request_id() -> Optional[str]:
    return structlog.contextvars.get_contextvars().get("request_id")


async def record_cross_tenant_attempt(
    resource_type: str,
    resource_id,
    resource_org_id,
    action: str,
    caller_org_id,
    actor_id,
    timestamp: Optional[datetime] = None,
) -> bool:
    """
    Persist one audit row in its own session and transaction.

    The surrounding request is about to fail and roll back, so the audit row
    cannot ride on the request session. Never raises: a failed write is
    logged and reported as False, and the caller still denies access.
    """
    timestamp = timestamp or datetime.utcnow()
    entry = SecurityAuditLog(
        event_type=CROSS_ORG_ACCESS_ATTEMPT,
        severity="warning",
        actor_id=_to_uuid(actor_id, "actor_id"),
        current_org_id=_to_uuid(caller_org_id, "caller_org_id"),
        target_org_id=_to_uuid(resource_org_id, "resource_org_id"),
        resource_type=resource_type,
        resource_id=_to_uuid(resource_id, "resource_id"),
        action_attempted=action,
        message=f"Blocked {action} on {resource_type} owned by another organization",
        details={
            "resource_type": resource_type,
            "resource_id": str(resource_id),
            "resource_org_id": str(resource_org_id),
            "action": action,
            "caller_org_id": str(caller_org_id),
            "actor_id": str(actor_id) if actor_id else None,
            "timestamp": timestamp.isoformat(),
        },
        was_blocked=True,
        request_id=_current_request_id(),
        created_at=timestamp,
    )

    try:
        async with AsyncSessionLocal() as audit_session:
            audit_session.add(entry)
            await audit_session.commit()
    except Exception as exc:
        logger.error(
            "security_audit_write_failed",
            error=str(exc),
            resource_type=resource_type,
            resource_id=str(resource_id),
            caller_org_id=str(caller_org_id),
        )
        return False

    logger.info(
        "security_audit_log_created",
        event_type=CROSS_ORG_ACCESS_ATTEMPT,
        resource_type=resource_type,
        resource_id=str(resource_id),
    )
    return True
