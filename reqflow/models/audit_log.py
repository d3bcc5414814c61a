import uuid
from datetime import datetime
from typing import Optional

from sqlalchemy import String, Boolean, DateTime, Text, Index, CheckConstraint, desc
from sqlalchemy.dialects.postgresql import UUID, JSONB
from sqlalchemy.orm import Mapped, mapped_column

from reqflow.database import Base


class SecurityAuditLog(Base):
    """
    Write-only record of blocked access attempts.

    No foreign keys: the row must be insertable even when the referenced
    organization, user or resource is gone or never existed.
    """

    __tablename__ = "security_audit_logs"

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), primary_key=True, default=uuid.uuid4
    )
    event_type: Mapped[str] = mapped_column(String(50), nullable=False)
    severity: Mapped[str] = mapped_column(String(20), nullable=False, default="warning")
    actor_id: Mapped[Optional[uuid.UUID]] = mapped_column(UUID(as_uuid=True))
    current_org_id: Mapped[Optional[uuid.UUID]] = mapped_column(UUID(as_uuid=True))
    target_org_id: Mapped[Optional[uuid.UUID]] = mapped_column(UUID(as_uuid=True))
    resource_type: Mapped[Optional[str]] = mapped_column(String(50))
    resource_id: Mapped[Optional[uuid.UUID]] = mapped_column(UUID(as_uuid=True))
    action_attempted: Mapped[Optional[str]] = mapped_column(String(50))
    message: Mapped[str] = mapped_column(Text, nullable=False)
    details: Mapped[Optional[dict]] = mapped_column(JSONB)
    was_blocked: Mapped[bool] = mapped_column(Boolean, default=True)
    request_id: Mapped[Optional[str]] = mapped_column(String(64))
    created_at: Mapped[datetime] = mapped_column(
        DateTime, default=datetime.utcnow
    )

    __table_args__ = (
        CheckConstraint(
            "severity IN ('info', 'warning', 'critical')",
            name="chk_security_audit_severity",
        ),
        Index("idx_security_audit_event", "event_type"),
        Index("idx_security_audit_current_org", "current_org_id"),
        Index("idx_security_audit_target_org", "target_org_id"),
        Index("idx_security_audit_created", desc("created_at")),
    )
