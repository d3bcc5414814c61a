"""Enumerations shared by models, services and schemas."""

from enum import Enum


class RequisitionStatus(str, Enum):
    DRAFT = "draft"
    PENDING = "pending"
    UNDER_REVIEW = "under_review"
    REVIEWED = "reviewed"
    APPROVED = "approved"
    REJECTED = "rejected"

    @classmethod
    def reserving(cls) -> tuple["RequisitionStatus", ...]:
        """Statuses whose total_amount is held against the project budget."""
        return (cls.PENDING, cls.UNDER_REVIEW)

    @classmethod
    def terminal(cls) -> tuple["RequisitionStatus", ...]:
        return (cls.APPROVED, cls.REJECTED)


class WorkflowRole(str, Enum):
    """Per-organization role held through an OrganizationMember row."""

    SUBMITTER = "submitter"
    REVIEWER = "reviewer"
    APPROVER = "approver"
    STORE_MANAGER = "store_manager"
    SUPER_ADMIN = "super_admin"


class OrganizationStatus(str, Enum):
    ACTIVE = "active"
    SUSPENDED = "suspended"


class DispatchStatus(str, Enum):
    """Outbound message lifecycle for transition events and queued emails."""

    PENDING = "pending"
    SENT = "sent"
    FAILED = "failed"


class SequenceKind(str, Enum):
    REQUISITION = "REQ"
    PURCHASE_ORDER = "PO"
