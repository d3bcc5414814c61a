"""
Workflow error taxonomy.

Services raise these; ``reqflow.main`` turns them into the
``{"error": {"code": ..., "message": ...}}`` envelope. Raising inside the
request transaction means ``get_db()`` rolls everything back, so a failed
operation never leaves a partial write behind.
"""

from decimal import Decimal
from typing import Optional


class WorkflowError(Exception):
    code = "WORKFLOW_ERROR"
    http_status = 400
    retryable = False

    def __init__(self, message: Optional[str] = None, **details):
        self.message = message or self.default_message()
        self.details = details
        super().__init__(self.message)

    def default_message(self) -> str:
        return "Workflow operation failed"

    def to_detail(self) -> dict:
        error = {"code": self.code, "message": self.message}
        for key, value in self.details.items():
            error[key] = str(value) if isinstance(value, Decimal) else value
        if self.retryable:
            error["retryable"] = True
        return {"error": error}


class EmptyRequisition(WorkflowError):
    code = "EMPTY_REQUISITION"
    http_status = 422

    def default_message(self) -> str:
        return "Cannot submit a requisition without items"


class InsufficientBudget(WorkflowError):
    code = "INSUFFICIENT_BUDGET"
    http_status = 422

    def __init__(self, available: Decimal, requested: Decimal, message: Optional[str] = None):
        super().__init__(
            message
            or f"Insufficient budget: requested {requested}, available {available}",
            available=available,
            requested=requested,
        )
        self.available = available
        self.requested = requested


class InvalidTransition(WorkflowError):
    code = "INVALID_TRANSITION"
    http_status = 409

    def __init__(self, from_status: Optional[str], to_status: str, message: Optional[str] = None):
        super().__init__(
            message or f"Cannot move requisition from '{from_status}' to '{to_status}'",
            from_status=from_status,
            to_status=to_status,
        )
        self.from_status = from_status
        self.to_status = to_status


class Unauthorized(WorkflowError):
    """Wrong role or not the owner. The message never says which."""

    code = "PERMISSION_DENIED"
    http_status = 403

    def default_message(self) -> str:
        return "You do not have permission to perform this action"


class NotFoundOrAccessDenied(WorkflowError):
    """Same answer for 'missing' and 'belongs to another tenant'."""

    code = "NOT_FOUND"
    http_status = 404

    def default_message(self) -> str:
        return "Resource not found"


class NoOrganizationSelected(WorkflowError):
    code = "NO_ORGANIZATION_SELECTED"
    http_status = 400

    def default_message(self) -> str:
        return "No organization selected"


class InvalidRequisition(WorkflowError):
    code = "VALIDATION_ERROR"
    http_status = 422


class SequenceLockTimeout(WorkflowError):
    code = "SEQUENCE_LOCK_TIMEOUT"
    http_status = 503
    retryable = True

    def default_message(self) -> str:
        return "Could not allocate a document number, please retry"


class NotificationDeliveryFailed(WorkflowError):
    """Logged and retried out of band; never reaches a transition caller."""

    code = "NOTIFICATION_DELIVERY_FAILED"
    http_status = 500
    retryable = True
