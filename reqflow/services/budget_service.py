"""
Budget ledger: reservation netting and approval commit.

    available = budget - spent_amount
                - sum(total_amount of pending/under_review requisitions,
                      excluding the one being validated)

A NULL or zero budget is unlimited. All functions use the caller's session
and never commit; the state machine locks the project row FOR NO KEY UPDATE
before calling check_availability() or commit(), which is what serializes two
submissions against the same project.
"""

from dataclasses import dataclass
from decimal import Decimal
from typing import Optional
import uuid

from sqlalchemy import select, func
from sqlalchemy.ext.asyncio import AsyncSession
import structlog

from reqflow.errors import InsufficientBudget, NotFoundOrAccessDenied
from reqflow.models.enums import RequisitionStatus
from reqflow.models.project import Project
from reqflow.models.requisition import Requisition
from reqflow.services.tenant_guard import ensure_same_org

logger = structlog.get_logger()

ZERO = Decimal("0")


@dataclass
class BudgetAvailability:
    project_id: str
    is_unlimited: bool
    budget: Optional[Decimal]
    spent_amount: Decimal
    reserved_amount: Decimal
    available: Optional[Decimal]

    def covers(self, amount: Decimal) -> bool:
        return self.is_unlimited or amount <= self.available


def is_unlimited(project: Project) -> bool:
    return project.budget is None or project.budget == 0


async def lock_project(session: AsyncSession, project_id) -> Project:
    """SELECT ... FOR NO KEY UPDATE on the project row.

    NO KEY keeps FK inserts that reference the project (requisitions, audit
    rows) from queueing behind the budget lock.
    """
    result = await session.execute(
        select(Project)
        .where(Project.id == project_id)
        .with_for_update(key_share=True)
        .execution_options(populate_existing=True)
    )
    project = result.scalar_one_or_none()
    if not project:
        raise NotFoundOrAccessDenied()
    return project


async def reserved_amount(
    session: AsyncSession,
    project_id,
    excluding_requisition_id=None,
) -> Decimal:
    """Sum of total_amount held by in-flight requisitions of the project."""
    q = select(func.coalesce(func.sum(Requisition.total_amount), 0)).where(
        Requisition.project_id == project_id,
        Requisition.status.in_([s.value for s in RequisitionStatus.reserving()]),
    )
    if excluding_requisition_id is not None:
        q = q.where(Requisition.id != excluding_requisition_id)

    result = await session.execute(q)
    return Decimal(result.scalar() or 0)


async def available(
    session: AsyncSession,
    project: Project,
    excluding_requisition_id=None,
) -> BudgetAvailability:
    spent = Decimal(project.spent_amount or 0)

    if is_unlimited(project):
        return BudgetAvailability(
            project_id=str(project.id),
            is_unlimited=True,
            budget=project.budget,
            spent_amount=spent,
            reserved_amount=ZERO,
            available=None,
        )

    reserved = await reserved_amount(session, project.id, excluding_requisition_id)
    return BudgetAvailability(
        project_id=str(project.id),
        is_unlimited=False,
        budget=Decimal(project.budget),
        spent_amount=spent,
        reserved_amount=reserved,
        available=Decimal(project.budget) - spent - reserved,
    )


async def check_availability(
    session: AsyncSession,
    project: Project,
    amount: Decimal,
    excluding_requisition_id=None,
) -> BudgetAvailability:
    """Raise InsufficientBudget unless ``amount`` fits in what is left."""
    availability = await available(session, project, excluding_requisition_id)

    if not availability.covers(amount):
        logger.info(
            "budget_insufficient",
            project_id=str(project.id),
            requested=str(amount),
            available=str(availability.available),
        )
        raise InsufficientBudget(available=availability.available, requested=amount)

    return availability


async def commit(session: AsyncSession, project: Project, amount: Decimal) -> Decimal:
    """
    Add an approved amount to spent_amount. Only called on entry to 'approved',
    inside the same transaction as the status write.

    The approved requisition's own reservation is already part of what the
    project can absorb, so the guard here is simply spent + amount <= budget.
    """
    spent = Decimal(project.spent_amount or 0)
    new_spent = spent + amount

    if not is_unlimited(project) and new_spent > Decimal(project.budget):
        raise InsufficientBudget(
            available=Decimal(project.budget) - spent,
            requested=amount,
            message=(
                f"Approving {amount} would exceed the project budget "
                f"({spent} of {project.budget} already spent)"
            ),
        )

    project.spent_amount = new_spent
    await session.flush()

    logger.info(
        "budget_committed_spent",
        project_id=str(project.id),
        amount=str(amount),
        spent_amount=str(new_spent),
    )
    return new_spent


async def available_budget(
    session: AsyncSession,
    org_id: uuid.UUID,
    project_id,
    actor_id=None,
) -> BudgetAvailability:
    """Tenant-guarded read used by the budget endpoint."""
    result = await session.execute(select(Project).where(Project.id == project_id))
    project = result.scalar_one_or_none()
    await ensure_same_org(project, "project", project_id, org_id, actor_id, "read")
    return await available(session, project)
