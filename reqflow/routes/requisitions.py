import uuid
from typing import Optional

from fastapi import APIRouter, BackgroundTasks, Depends, Query, status
from sqlalchemy.ext.asyncio import AsyncSession
import structlog

from reqflow.database import get_db
from reqflow.middleware.auth import get_current_user
from reqflow.middleware.tenant import get_org_id
from reqflow.models.requisition import Requisition, RequisitionItem, Comment
from reqflow.schemas.common import PaginatedResponse, build_pagination
from reqflow.schemas.requisition import (
    RequisitionCreate,
    RequisitionItemsReplace,
    RequisitionItemResponse,
    RequisitionResponse,
    TransitionRequest,
    TransitionResponse,
    CommentCreate,
    CommentResponse,
)
from reqflow.services import notification_service, requisition_service

logger = structlog.get_logger()
router = APIRouter()


def _iso(value) -> Optional[str]:
    return value.isoformat() if value else None


def _str(value) -> Optional[str]:
    return str(value) if value else None


def _item_to_response(item: RequisitionItem) -> RequisitionItemResponse:
    return RequisitionItemResponse(
        id=str(item.id),
        line_number=item.line_number,
        description=item.description,
        quantity=item.quantity,
        unit_price=item.unit_price,
        line_total=item.line_total,
        unit_of_measure=item.unit_of_measure,
        notes=item.notes,
    )


def _to_response(
    requisition: Requisition,
    items: list[RequisitionItem],
    available_actions: Optional[list[str]] = None,
) -> RequisitionResponse:
    return RequisitionResponse(
        id=str(requisition.id),
        org_id=str(requisition.org_id),
        project_id=str(requisition.project_id),
        expense_account_id=_str(requisition.expense_account_id),
        requisition_number=requisition.requisition_number,
        title=requisition.title,
        description=requisition.description,
        status=requisition.status,
        total_amount=requisition.total_amount,
        submitted_by=str(requisition.submitted_by),
        reviewed_by=_str(requisition.reviewed_by),
        approved_by=_str(requisition.approved_by),
        rejection_reason=requisition.rejection_reason,
        items=[_item_to_response(i) for i in items],
        available_actions=available_actions or [],
        created_at=_iso(requisition.created_at) or "",
        updated_at=_iso(requisition.updated_at) or "",
        submitted_at=_iso(requisition.submitted_at),
        reviewed_at=_iso(requisition.reviewed_at),
        approved_at=_iso(requisition.approved_at),
        rejected_at=_iso(requisition.rejected_at),
    )


def _comment_to_response(comment: Comment) -> CommentResponse:
    return CommentResponse(
        id=str(comment.id),
        requisition_id=str(comment.requisition_id),
        user_id=str(comment.user_id),
        comment_text=comment.comment_text,
        is_internal=bool(comment.is_internal),
        created_at=_iso(comment.created_at) or "",
    )


# ---------- LIST / GET ----------


@router.get("", response_model=PaginatedResponse[RequisitionResponse])
async def list_requisitions(
    page: int = Query(1, ge=1, le=1000),
    limit: int = Query(20, ge=1, le=100),
    req_status: Optional[str] = Query(None, alias="status"),
    project_id: Optional[uuid.UUID] = Query(None),
    current_user: dict = Depends(get_current_user),
    org_id: uuid.UUID = Depends(get_org_id),
    db: AsyncSession = Depends(get_db),
):
    requisitions, total = await requisition_service.list_requisitions(
        db,
        org_id,
        current_user["user_id"],
        status=req_status,
        project_id=project_id,
        page=page,
        limit=limit,
    )
    items_map = await requisition_service.items_by_requisition(db, [r.id for r in requisitions])
    data = [_to_response(r, items_map.get(str(r.id), [])) for r in requisitions]
    return PaginatedResponse(data=data, pagination=build_pagination(page, limit, total))


@router.get("/{requisition_id}", response_model=RequisitionResponse)
async def get_requisition(
    requisition_id: uuid.UUID,
    current_user: dict = Depends(get_current_user),
    org_id: uuid.UUID = Depends(get_org_id),
    db: AsyncSession = Depends(get_db),
):
    view = await requisition_service.get_requisition(db, org_id, requisition_id, current_user["user_id"])
    return _to_response(view.requisition, view.items, view.available_actions)


# ---------- CREATE / EDIT ----------


@router.post("", response_model=RequisitionResponse, status_code=status.HTTP_201_CREATED)
async def create_requisition(
    body: RequisitionCreate,
    current_user: dict = Depends(get_current_user),
    org_id: uuid.UUID = Depends(get_org_id),
    db: AsyncSession = Depends(get_db),
):
    requisition = await requisition_service.create_requisition(
        db,
        org_id,
        body.project_id,
        current_user["user_id"],
        [item.model_dump() for item in body.items],
        title=body.title,
        description=body.description,
        expense_account_id=body.expense_account_id,
    )
    items = await requisition_service.items_by_requisition(db, [requisition.id])
    return _to_response(requisition, items.get(str(requisition.id), []))


@router.put("/{requisition_id}/items", response_model=RequisitionResponse)
async def replace_items(
    requisition_id: uuid.UUID,
    body: RequisitionItemsReplace,
    current_user: dict = Depends(get_current_user),
    org_id: uuid.UUID = Depends(get_org_id),
    db: AsyncSession = Depends(get_db),
):
    view = await requisition_service.replace_items(
        db,
        org_id,
        requisition_id,
        current_user["user_id"],
        [item.model_dump() for item in body.items],
    )
    return _to_response(view.requisition, view.items)


@router.delete("/{requisition_id}", status_code=status.HTTP_204_NO_CONTENT)
async def delete_requisition(
    requisition_id: uuid.UUID,
    current_user: dict = Depends(get_current_user),
    org_id: uuid.UUID = Depends(get_org_id),
    db: AsyncSession = Depends(get_db),
):
    await requisition_service.delete_requisition(db, org_id, requisition_id, current_user["user_id"])


# ---------- WORKFLOW ----------


async def _transition_response(db: AsyncSession, outcome) -> TransitionResponse:
    items = await requisition_service.items_by_requisition(db, [outcome.requisition.id])
    return TransitionResponse(
        transition_id=str(outcome.transition.id),
        from_status=outcome.decision.from_status.value,
        to_status=outcome.decision.to_status.value,
        requisition=_to_response(outcome.requisition, items.get(str(outcome.requisition.id), [])),
    )


@router.post("/{requisition_id}/submit", response_model=TransitionResponse)
async def submit_requisition(
    requisition_id: uuid.UUID,
    background_tasks: BackgroundTasks,
    current_user: dict = Depends(get_current_user),
    org_id: uuid.UUID = Depends(get_org_id),
    db: AsyncSession = Depends(get_db),
):
    outcome = await requisition_service.submit(db, org_id, requisition_id, current_user["user_id"])
    # The dispatcher reads the transition in its own session
    await db.commit()
    background_tasks.add_task(notification_service.dispatch_transition, outcome.transition.id)
    return await _transition_response(db, outcome)


@router.post("/{requisition_id}/transition", response_model=TransitionResponse)
async def transition_requisition(
    requisition_id: uuid.UUID,
    body: TransitionRequest,
    background_tasks: BackgroundTasks,
    current_user: dict = Depends(get_current_user),
    org_id: uuid.UUID = Depends(get_org_id),
    db: AsyncSession = Depends(get_db),
):
    outcome = await requisition_service.transition(
        db,
        org_id,
        requisition_id,
        current_user["user_id"],
        body.target_status,
        note=body.note,
    )
    await db.commit()
    background_tasks.add_task(notification_service.dispatch_transition, outcome.transition.id)
    return await _transition_response(db, outcome)


# ---------- COMMENTS ----------


@router.get("/{requisition_id}/comments", response_model=list[CommentResponse])
async def list_comments(
    requisition_id: uuid.UUID,
    current_user: dict = Depends(get_current_user),
    org_id: uuid.UUID = Depends(get_org_id),
    db: AsyncSession = Depends(get_db),
):
    comments = await requisition_service.list_comments(db, org_id, requisition_id, current_user["user_id"])
    return [_comment_to_response(c) for c in comments]


@router.post(
    "/{requisition_id}/comments",
    response_model=CommentResponse,
    status_code=status.HTTP_201_CREATED,
)
async def add_comment(
    requisition_id: uuid.UUID,
    body: CommentCreate,
    background_tasks: BackgroundTasks,
    current_user: dict = Depends(get_current_user),
    org_id: uuid.UUID = Depends(get_org_id),
    db: AsyncSession = Depends(get_db),
):
    comment = await requisition_service.add_comment(
        db,
        org_id,
        requisition_id,
        current_user["user_id"],
        body.comment_text,
        is_internal=body.is_internal,
    )
    await db.commit()
    background_tasks.add_task(notification_service.notify_comment, comment.id)
    return _comment_to_response(comment)
