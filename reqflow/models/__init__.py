"""Central model registry. Import all models so Alembic autodiscover works."""

from reqflow.database import Base  # noqa: F401

from reqflow.models.organization import Organization, OrganizationMember  # noqa: F401
from reqflow.models.user import User  # noqa: F401
from reqflow.models.project import Project, ExpenseAccount  # noqa: F401
from reqflow.models.requisition import (  # noqa: F401
    Requisition,
    RequisitionItem,
    Comment,
    RequisitionTransition,
)
from reqflow.models.notification import Notification, EmailNotification  # noqa: F401
from reqflow.models.audit_log import SecurityAuditLog  # noqa: F401
from reqflow.models.sequence import SequenceCounter  # noqa: F401
