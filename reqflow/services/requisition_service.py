"""
Requisition service: drafts and status transitions.

A transition runs inside the caller's transaction:

  1. resolve the actor's per-organization role
  2. lock the project row, then the requisition row (FOR UPDATE, in that order)
  3. evaluate the authorization matrix against the *persisted* status
  4. validate items / budget, commit spend on approval
  5. compare-and-set the status (UPDATE ... WHERE status = :expected)
  6. write the workflow comment and the RequisitionTransition event

Notifications are not sent here. The route hands the transition id to the
dispatcher as a background task once the request transaction has committed.
"""

from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal, ROUND_HALF_UP, InvalidOperation
from typing import Any, Optional
import uuid

from sqlalchemy import select, update, delete, func, or_
from sqlalchemy.ext.asyncio import AsyncSession
import structlog

from reqflow.errors import (
    EmptyRequisition,
    InvalidRequisition,
    NotFoundOrAccessDenied,
    Unauthorized,
    InvalidTransition,
)
from reqflow.models.enums import RequisitionStatus, SequenceKind, WorkflowRole
from reqflow.models.project import Project, ExpenseAccount
from reqflow.models.requisition import (
    Requisition,
    RequisitionItem,
    Comment,
    RequisitionTransition,
)
from reqflow.services import budget_service, sequence_service
from reqflow.services.directory_service import Actor, get_actor
from reqflow.services.state_machine import (
    TransitionDecision,
    available_transitions,
    evaluate_transition,
)
from reqflow.services.tenant_guard import ensure_same_org

logger = structlog.get_logger()

CENTS = Decimal("0.01")
MAX_ITEMS = 200


@dataclass
class TransitionOutcome:
    requisition: Requisition
    transition: RequisitionTransition
    decision: TransitionDecision


@dataclass
class RequisitionView:
    requisition: Requisition
    items: list[RequisitionItem] = field(default_factory=list)
    available_actions: list[str] = field(default_factory=list)


# ---------- helpers ----------


def _is_owner(requisition: Requisition, actor: Actor) -> bool:
    return str(requisition.submitted_by) == str(actor.user_id)


def _field(item: Any, name: str, default=None):
    if isinstance(item, dict):
        return item.get(name, default)
    return getattr(item, name, default)


def _to_decimal(value, name: str, line_number: int) -> Decimal:
    try:
        return Decimal(str(value))
    except (InvalidOperation, TypeError, ValueError):
        raise InvalidRequisition(f"Line {line_number}: {name} is not a number")


def _build_items(org_id, requisition_id, items) -> tuple[list[RequisitionItem], Decimal]:
    """Validate raw line data and return (RequisitionItem rows, total)."""
    items = list(items or [])
    if len(items) > MAX_ITEMS:
        raise InvalidRequisition(f"A requisition can hold at most {MAX_ITEMS} items")

    rows = []
    total = Decimal("0")
    for line_number, item in enumerate(items, start=1):
        description = (_field(item, "description") or "").strip()
        if not description:
            raise InvalidRequisition(f"Line {line_number}: description is required")

        quantity = _to_decimal(_field(item, "quantity"), "quantity", line_number)
        unit_price = _to_decimal(_field(item, "unit_price"), "unit_price", line_number)
        if quantity <= 0:
            raise InvalidRequisition(f"Line {line_number}: quantity must be positive")
        if unit_price < 0:
            raise InvalidRequisition(f"Line {line_number}: unit_price cannot be negative")

        line_total = (quantity * unit_price).quantize(CENTS, rounding=ROUND_HALF_UP)
        total += line_total
        rows.append(
            RequisitionItem(
                org_id=org_id,
                requisition_id=requisition_id,
                line_number=line_number,
                description=description,
                quantity=quantity,
                unit_price=unit_price,
                line_total=line_total,
                unit_of_measure=_field(item, "unit_of_measure"),
                notes=_field(item, "notes"),
            )
        )
    return rows, total


async def _load_requisition(session: AsyncSession, requisition_id) -> Optional[Requisition]:
    result = await session.execute(
        select(Requisition).where(Requisition.id == requisition_id)
    )
    return result.scalar_one_or_none()


async def _lock_requisition(session: AsyncSession, requisition_id) -> Requisition:
    result = await session.execute(
        select(Requisition)
        .where(Requisition.id == requisition_id)
        .with_for_update(key_share=True)
        .execution_options(populate_existing=True)
    )
    requisition = result.scalar_one_or_none()
    if not requisition:
        raise NotFoundOrAccessDenied()
    return requisition


async def _load_items(session: AsyncSession, requisition_id) -> list[RequisitionItem]:
    result = await session.execute(
        select(RequisitionItem)
        .where(RequisitionItem.requisition_id == requisition_id)
        .order_by(RequisitionItem.line_number)
    )
    return list(result.scalars().all())


async def _item_summary(session: AsyncSession, requisition_id) -> tuple[int, Decimal]:
    """(item count, sum of line totals)."""
    result = await session.execute(
        select(
            func.count(RequisitionItem.id),
            func.coalesce(func.sum(RequisitionItem.line_total), 0),
        ).where(RequisitionItem.requisition_id == requisition_id)
    )
    count, total = result.one()
    return int(count or 0), Decimal(total or 0)


async def _compare_and_set_status(
    session: AsyncSession,
    requisition: Requisition,
    expected: str,
    values: dict,
) -> bool:
    result = await session.execute(
        update(Requisition)
        .where(Requisition.id == requisition.id, Requisition.status == expected)
        .values(**values)
        .execution_options(synchronize_session="fetch")
    )
    return result.rowcount == 1


async def _add_workflow_comment(
    session: AsyncSession,
    requisition: Requisition,
    actor: Actor,
    text: str,
    is_internal: bool,
) -> Comment:
    comment = Comment(
        id=uuid.uuid4(),
        org_id=requisition.org_id,
        requisition_id=requisition.id,
        user_id=actor.user_id,
        comment_text=text,
        is_internal=is_internal,
    )
    session.add(comment)
    return comment


def _ensure_visible(requisition: Requisition, actor: Actor) -> None:
    """Drafts are private to their owner; submitters only see their own."""
    if _is_owner(requisition, actor):
        return
    if requisition.status == RequisitionStatus.DRAFT.value:
        raise NotFoundOrAccessDenied()
    if actor.role == WorkflowRole.SUBMITTER.value:
        raise NotFoundOrAccessDenied()


async def _guarded_requisition(
    session: AsyncSession, org_id, requisition_id, actor: Actor, action: str
) -> Requisition:
    requisition = await _load_requisition(session, requisition_id)
    return await ensure_same_org(
        requisition, "requisition", requisition_id, org_id, actor.user_id, action
    )


def status_fields(decision: TransitionDecision, actor: Actor, note: Optional[str], now: datetime) -> dict:
    """Column values written alongside the new status."""
    target = decision.to_status
    values = {"status": target.value, "updated_at": now}

    if target == RequisitionStatus.PENDING:
        values["submitted_at"] = now
    elif target == RequisitionStatus.REVIEWED:
        values["reviewed_by"] = actor.user_id
        values["reviewed_at"] = now
    elif target == RequisitionStatus.APPROVED:
        values["approved_by"] = actor.user_id
        values["approved_at"] = now
    elif target == RequisitionStatus.REJECTED:
        values["rejection_reason"] = note or None
        values["rejected_at"] = now
        if actor.role == WorkflowRole.REVIEWER.value:
            values["reviewed_by"] = actor.user_id
            values["reviewed_at"] = now
        else:
            values["approved_by"] = actor.user_id
    elif target == RequisitionStatus.DRAFT:
        values["rejection_reason"] = None
    return values


def workflow_comment(decision: TransitionDecision, note: Optional[str]) -> Optional[tuple[str, bool]]:
    """(text, is_internal) annotating the transition, or None."""
    target = decision.to_status
    note = (note or "").strip()

    if target == RequisitionStatus.UNDER_REVIEW:
        return "Started review", True
    if target == RequisitionStatus.REVIEWED:
        return (f"Reviewed: {note}", False) if note else ("Marked as reviewed", True)
    if target == RequisitionStatus.APPROVED and note:
        return f"Approved: {note}", False
    if target == RequisitionStatus.REJECTED and note:
        return f"Rejected: {note}", False
    return None


# ---------- create / edit ----------


async def create_requisition(
    session: AsyncSession,
    org_id,
    project_id,
    actor_id,
    items,
    title: Optional[str] = None,
    description: Optional[str] = None,
    expense_account_id=None,
) -> Requisition:
    """
    Create a numbered draft. Project and expense account are tenant-checked
    before the number is allocated, so a denied request never consumes one.
    """
    actor = await get_actor(session, org_id, actor_id)

    project_result = await session.execute(select(Project).where(Project.id == project_id))
    project = await ensure_same_org(
        project_result.scalar_one_or_none(), "project", project_id, org_id, actor.user_id, "create_requisition"
    )
    if not project.is_active:
        raise InvalidRequisition("Project is not active")

    if expense_account_id:
        account_result = await session.execute(
            select(ExpenseAccount).where(ExpenseAccount.id == expense_account_id)
        )
        account = await ensure_same_org(
            account_result.scalar_one_or_none(),
            "expense_account",
            expense_account_id,
            org_id,
            actor.user_id,
            "create_requisition",
        )
        if str(account.project_id) != str(project.id):
            raise InvalidRequisition("Expense account does not belong to the project")

    requisition_id = uuid.uuid4()
    rows, total = _build_items(org_id, requisition_id, items)

    # Raises SequenceLockTimeout before anything has been written
    number = await sequence_service.next_number(session, SequenceKind.REQUISITION, org_id=org_id)

    requisition = Requisition(
        id=requisition_id,
        org_id=org_id,
        project_id=project.id,
        expense_account_id=expense_account_id,
        requisition_number=number,
        title=(title or "").strip() or number,
        description=description,
        status=RequisitionStatus.DRAFT.value,
        total_amount=total,
        submitted_by=actor.user_id,
    )
    session.add(requisition)
    await session.flush()
    for row in rows:
        session.add(row)
    await session.flush()

    logger.info(
        "requisition_created",
        requisition_id=str(requisition.id),
        requisition_number=number,
        org_id=str(org_id),
        project_id=str(project.id),
        items=len(rows),
        total_amount=str(total),
    )
    return requisition


async def replace_items(
    session: AsyncSession,
    org_id,
    requisition_id,
    actor_id,
    items,
) -> RequisitionView:
    """Replace every line of a draft owned by the actor; recompute the total."""
    actor = await get_actor(session, org_id, actor_id)
    requisition = await _guarded_requisition(session, org_id, requisition_id, actor, "replace_items")
    _ensure_visible(requisition, actor)
    requisition = await _lock_requisition(session, requisition_id)

    if not _is_owner(requisition, actor):
        raise Unauthorized()
    if requisition.status != RequisitionStatus.DRAFT.value:
        raise InvalidRequisition("Items can only be edited while the requisition is a draft")

    rows, total = _build_items(org_id, requisition.id, items)

    await session.execute(
        delete(RequisitionItem).where(RequisitionItem.requisition_id == requisition.id)
    )
    for row in rows:
        session.add(row)
    requisition.total_amount = total
    requisition.updated_at = datetime.utcnow()
    await session.flush()

    logger.info(
        "requisition_items_replaced",
        requisition_id=str(requisition.id),
        items=len(rows),
        total_amount=str(total),
    )
    return RequisitionView(requisition=requisition, items=rows)


async def delete_requisition(session: AsyncSession, org_id, requisition_id, actor_id) -> None:
    """Drafts only. Items and comments go with it."""
    actor = await get_actor(session, org_id, actor_id)
    requisition = await _guarded_requisition(session, org_id, requisition_id, actor, "delete")
    if actor.role != WorkflowRole.SUPER_ADMIN.value:
        _ensure_visible(requisition, actor)
    requisition = await _lock_requisition(session, requisition_id)

    if not (_is_owner(requisition, actor) or actor.role == WorkflowRole.SUPER_ADMIN.value):
        raise Unauthorized()
    if requisition.status != RequisitionStatus.DRAFT.value:
        raise InvalidRequisition("Only draft requisitions can be deleted")

    await session.delete(requisition)
    await session.flush()
    logger.info(
        "requisition_deleted",
        requisition_id=str(requisition_id),
        actor_id=str(actor.user_id),
    )


# ---------- transitions ----------


async def transition(
    session: AsyncSession,
    org_id,
    requisition_id,
    actor_id,
    target_status,
    note: Optional[str] = None,
) -> TransitionOutcome:
    actor = await get_actor(session, org_id, actor_id)
    target = str(getattr(target_status, "value", target_status))

    # Plain read only to find the project; the locked re-read below is authoritative
    requisition = await _guarded_requisition(
        session, org_id, requisition_id, actor, f"transition:{target}"
    )
    if actor.role != WorkflowRole.SUPER_ADMIN.value:
        _ensure_visible(requisition, actor)

    project = await budget_service.lock_project(session, requisition.project_id)
    await ensure_same_org(
        project, "project", requisition.project_id, org_id, actor.user_id, f"transition:{target}"
    )
    requisition = await _lock_requisition(session, requisition_id)
    from_status = requisition.status

    decision = evaluate_transition(from_status, target, actor.role, _is_owner(requisition, actor))

    amount = Decimal(requisition.total_amount or 0)
    if decision.requires_items:
        count, amount = await _item_summary(session, requisition.id)
        if count == 0:
            raise EmptyRequisition()

    if decision.reserves_budget:
        await budget_service.check_availability(
            session, project, amount, excluding_requisition_id=requisition.id
        )
    if decision.commits_budget:
        await budget_service.commit(session, project, amount)

    now = datetime.utcnow()
    values = status_fields(decision, actor, note, now)
    values["total_amount"] = amount

    if not await _compare_and_set_status(session, requisition, from_status, values):
        # Someone else moved it between our read and our write
        raise InvalidTransition(from_status, target)

    annotation = workflow_comment(decision, note)
    if annotation:
        text, is_internal = annotation
        await _add_workflow_comment(session, requisition, actor, text, is_internal)

    event = RequisitionTransition(
        id=uuid.uuid4(),
        org_id=requisition.org_id,
        requisition_id=requisition.id,
        from_status=from_status,
        to_status=decision.to_status.value,
        actor_id=actor.user_id,
        note=note,
        title=requisition.title,
        reviewed_by=values.get("reviewed_by", requisition.reviewed_by),
        total_amount=amount,
        dispatch_status="pending",
        dispatch_attempts=0,
        created_at=now,
    )
    session.add(event)
    await session.flush()

    logger.info(
        "requisition_transitioned",
        requisition_id=str(requisition.id),
        from_status=from_status,
        to_status=decision.to_status.value,
        actor_id=str(actor.user_id),
        role=actor.role,
        via_bypass=decision.via_bypass,
        transition_id=str(event.id),
    )
    return TransitionOutcome(requisition=requisition, transition=event, decision=decision)


async def submit(session: AsyncSession, org_id, requisition_id, actor_id) -> TransitionOutcome:
    """draft -> pending, by the requisition's owner."""
    return await transition(
        session, org_id, requisition_id, actor_id, RequisitionStatus.PENDING
    )


# ---------- reads ----------


async def get_requisition(session: AsyncSession, org_id, requisition_id, actor_id) -> RequisitionView:
    actor = await get_actor(session, org_id, actor_id)
    requisition = await _guarded_requisition(session, org_id, requisition_id, actor, "read")
    _ensure_visible(requisition, actor)

    items = await _load_items(session, requisition.id)
    actions = [
        s.value
        for s in available_transitions(requisition.status, actor.role, _is_owner(requisition, actor))
    ]
    return RequisitionView(requisition=requisition, items=items, available_actions=actions)


async def list_requisitions(
    session: AsyncSession,
    org_id,
    actor_id,
    status: Optional[str] = None,
    project_id=None,
    page: int = 1,
    limit: int = 20,
) -> tuple[list[Requisition], int]:
    """Newest first. Always scoped to ``org_id``."""
    actor = await get_actor(session, org_id, actor_id)

    conditions = [Requisition.org_id == org_id]
    if status:
        conditions.append(Requisition.status == status)
    if project_id:
        conditions.append(Requisition.project_id == project_id)

    if actor.role == WorkflowRole.SUBMITTER.value:
        conditions.append(Requisition.submitted_by == actor.user_id)
    else:
        conditions.append(
            or_(
                Requisition.status != RequisitionStatus.DRAFT.value,
                Requisition.submitted_by == actor.user_id,
            )
        )

    total = (
        await session.execute(select(func.count(Requisition.id)).where(*conditions))
    ).scalar() or 0
    result = await session.execute(
        select(Requisition)
        .where(*conditions)
        .order_by(Requisition.created_at.desc())
        .offset((page - 1) * limit)
        .limit(limit)
    )
    return list(result.scalars().all()), total


async def items_by_requisition(session: AsyncSession, requisition_ids) -> dict[str, list[RequisitionItem]]:
    """Batch load lines for a page of requisitions."""
    if not requisition_ids:
        return {}
    result = await session.execute(
        select(RequisitionItem)
        .where(RequisitionItem.requisition_id.in_(requisition_ids))
        .order_by(RequisitionItem.requisition_id, RequisitionItem.line_number)
    )
    grouped: dict[str, list[RequisitionItem]] = {}
    for item in result.scalars().all():
        grouped.setdefault(str(item.requisition_id), []).append(item)
    return grouped


# ---------- comments ----------


async def add_comment(
    session: AsyncSession,
    org_id,
    requisition_id,
    actor_id,
    comment_text: str,
    is_internal: bool = False,
) -> Comment:
    actor = await get_actor(session, org_id, actor_id)
    requisition = await _guarded_requisition(session, org_id, requisition_id, actor, "comment")
    _ensure_visible(requisition, actor)

    text = (comment_text or "").strip()
    if not text:
        raise InvalidRequisition("Comment text is required")
    if is_internal and actor.role == WorkflowRole.SUBMITTER.value:
        raise Unauthorized()

    comment = await _add_workflow_comment(session, requisition, actor, text, is_internal)
    await session.flush()
    logger.info(
        "requisition_comment_added",
        requisition_id=str(requisition.id),
        comment_id=str(comment.id),
        is_internal=is_internal,
    )
    return comment


async def list_comments(session: AsyncSession, org_id, requisition_id, actor_id) -> list[Comment]:
    """Oldest first. Internal comments are hidden from submitters."""
    actor = await get_actor(session, org_id, actor_id)
    requisition = await _guarded_requisition(session, org_id, requisition_id, actor, "read_comments")
    _ensure_visible(requisition, actor)

    q = select(Comment).where(
        Comment.requisition_id == requisition.id, Comment.org_id == org_id
    )
    if actor.role == WorkflowRole.SUBMITTER.value:
        q = q.where(Comment.is_internal == False)  # noqa: E712
    result = await session.execute(q.order_by(Comment.created_at))
    return list(result.scalars().all())
