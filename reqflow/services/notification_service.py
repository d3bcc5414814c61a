"""
Notification dispatcher: fan-out of requisition transitions.

Runs after the transition's transaction has committed (FastAPI
BackgroundTasks), in its own session. One RequisitionTransition row is one
dispatch: notification rows are unique on (transition_id, user_id) and a
transition already marked 'sent' is skipped, so re-running a dispatch never
duplicates anything.

A failed dispatch never touches the requisition. The transition row records
the attempt and the out-of-band job retries it until
NOTIFICATION_MAX_ATTEMPTS, after which it is marked 'failed'.
"""

from dataclasses import dataclass
from datetime import datetime, timedelta
from decimal import Decimal
from html import escape
from typing import Optional
import uuid

from sqlalchemy import select, update, func
from sqlalchemy.dialects.postgresql import insert
from sqlalchemy.ext.asyncio import AsyncSession
import structlog

from reqflow.config import settings
from reqflow.database import AsyncSessionLocal
from reqflow.errors import NotFoundOrAccessDenied, NotificationDeliveryFailed
from reqflow.models.enums import DispatchStatus, RequisitionStatus as S, WorkflowRole as R
from reqflow.models.notification import Notification, EmailNotification
from reqflow.models.organization import Organization
from reqflow.models.project import Project
from reqflow.models.requisition import Requisition, RequisitionTransition, Comment
from reqflow.services import directory_service
from reqflow.services.directory_service import Recipient

logger = structlog.get_logger()

STAFF_ROLES = (R.REVIEWER.value, R.APPROVER.value, R.SUPER_ADMIN.value)
APPROVAL_ROLES = (R.APPROVER.value, R.SUPER_ADMIN.value)

# Freshly committed transitions are left to their own background task
RETRY_GRACE = timedelta(seconds=30)


@dataclass
class PlannedNotification:
    user_id: uuid.UUID
    type: str
    title: str
    message: str


@dataclass
class RequisitionSnapshot:
    """The requisition as it stood when the transition was applied."""

    id: uuid.UUID
    requisition_number: str
    project_id: uuid.UUID
    title: str
    total_amount: Optional[Decimal]
    submitted_by: uuid.UUID
    reviewed_by: Optional[uuid.UUID]
    rejection_reason: Optional[str]


def snapshot_for(event: RequisitionTransition, requisition: Requisition) -> RequisitionSnapshot:
    """Mutable fields come from the event row, identity from the requisition."""
    return RequisitionSnapshot(
        id=requisition.id,
        requisition_number=requisition.requisition_number,
        project_id=requisition.project_id,
        title=event.title or requisition.title,
        total_amount=(
            event.total_amount if event.total_amount is not None else requisition.total_amount
        ),
        submitted_by=requisition.submitted_by,
        reviewed_by=event.reviewed_by,
        rejection_reason=(event.note or None) if event.to_status == S.REJECTED.value else None,
    )


# ---------- templates ----------

EMAIL_TEMPLATES = {
    "requisition_submitted": {
        "subject": "New Requisition Submitted: {number}",
        "heading": "New Requisition Submitted",
        "intro": "A new requisition has been submitted in {org_name} and requires your attention.",
    },
    "requisition_reviewed": {
        "subject": "Requisition Reviewed: {number}",
        "heading": "Requisition Reviewed",
        "intro": "Your requisition in {org_name} has been reviewed and is pending approval.",
    },
    "requisition_pending_approval": {
        "subject": "Approval Required: {number}",
        "heading": "Requisition Pending Approval",
        "intro": "A requisition in {org_name} has been reviewed and needs your approval.",
    },
    "requisition_approved": {
        "subject": "Requisition Approved: {number}",
        "heading": "Requisition Approved",
        "intro": "A requisition in {org_name} has been approved.",
    },
    "requisition_rejected": {
        "subject": "Requisition Rejected: {number}",
        "heading": "Requisition Rejected",
        "intro": "A requisition in {org_name} has been rejected.",
    },
}


def _format_amount(amount) -> str:
    return f"{Decimal(amount or 0):,.2f}"


def requisition_link(requisition_id) -> str:
    return f"/requisitions/{requisition_id}"


def render_email(
    notification_type: str,
    recipient_name: str,
    requisition: RequisitionSnapshot,
    message: str,
    org_name: str,
    project_name: Optional[str],
    base_url: str,
) -> tuple[str, str, str]:
    """(subject, html, text) for one outbox row."""
    template = EMAIL_TEMPLATES.get(notification_type, EMAIL_TEMPLATES["requisition_submitted"])
    url = f"{base_url.rstrip('/')}{requisition_link(requisition.id)}"
    rows = [
        ("Requisition #", requisition.requisition_number),
        ("Title", requisition.title),
        ("Project", project_name or "N/A"),
        ("Amount", _format_amount(requisition.total_amount)),
    ]
    intro = template["intro"].format(org_name=org_name)
    subject = template["subject"].format(number=requisition.requisition_number)

    html = (
        "<html><body>"
        f"<h2>{escape(template['heading'])}</h2>"
        f"<p>Dear {escape(recipient_name)},</p>"
        f"<p>{escape(intro)}</p>"
        f"<p>{escape(message)}</p>"
        "<table>"
        + "".join(
            f"<tr><td><strong>{escape(label)}:</strong></td><td>{escape(str(value))}</td></tr>"
            for label, value in rows
        )
        + "</table>"
        f"<p><a href=\"{escape(url)}\">View Requisition</a></p>"
        f"<p>This is an automated message from {escape(org_name)}.</p>"
        "</body></html>"
    )
    text = "\n".join(
        [
            template["heading"],
            "",
            f"Dear {recipient_name},",
            "",
            intro,
            message,
            "",
            *[f"{label}: {value}" for label, value in rows],
            "",
            f"View requisition at: {url}",
            "",
            f"This is an automated message from {org_name}.",
        ]
    )
    return subject, html, text


# ---------- recipient rules ----------


def plan_transition_notifications(
    from_status: str,
    to_status: str,
    requisition: RequisitionSnapshot,
    actor_id,
    actor_name: Optional[str],
    staff: list[Recipient],
    active_user_ids: set[str],
) -> list[PlannedNotification]:
    """
    Who hears about a transition and what they are told.

    ``staff`` holds active reviewers, approvers and super_admins of the
    organization; ``active_user_ids`` the submitter/reviewer ids that are
    still active members. The actor is never notified, and each user gets
    at most one notification per transition.
    """
    title = requisition.title
    submitter = str(requisition.submitted_by)
    reviewer = str(requisition.reviewed_by) if requisition.reviewed_by else None
    actor = str(actor_id)
    planned: dict[str, PlannedNotification] = {}

    def add(user_id, kind, heading, message):
        key = str(user_id)
        if key == actor or key in planned:
            return
        planned[key] = PlannedNotification(user_id, kind, heading, message)

    def add_if_active(user_id, kind, heading, message):
        if user_id and str(user_id) in active_user_ids:
            add(user_id, kind, heading, message)

    def add_staff(roles, exclude, kind, heading, message):
        for member in staff:
            if member.role in roles and str(member.user_id) not in exclude:
                add(member.user_id, kind, heading, message)

    by_actor = f" by {actor_name}" if actor_name else ""

    if to_status == S.PENDING.value:
        add_staff(
            STAFF_ROLES,
            {submitter},
            "requisition_submitted",
            "New Requisition Submitted",
            f'{actor_name or "Someone"} submitted requisition "{title}" for review.',
        )

    elif to_status == S.REVIEWED.value:
        reviewer_name = actor_name or "a reviewer"
        add_if_active(
            requisition.submitted_by,
            "requisition_reviewed",
            "Requisition Reviewed",
            f'Your requisition "{title}" has been reviewed by {reviewer_name} and is pending approval.',
        )
        add_staff(
            APPROVAL_ROLES,
            {submitter, actor},
            "requisition_pending_approval",
            "Requisition Pending Approval",
            f'Requisition "{title}" has been reviewed by {reviewer_name} and needs your approval.',
        )

    elif to_status == S.APPROVED.value:
        add_if_active(
            requisition.submitted_by,
            "requisition_approved",
            "Requisition Approved",
            f'Your requisition "{title}" has been approved{by_actor}.',
        )
        if reviewer and reviewer != actor:
            add_if_active(
                requisition.reviewed_by,
                "requisition_approved",
                "Requisition Approved",
                f'Requisition "{title}" that you reviewed has been approved{by_actor}.',
            )

    elif to_status == S.REJECTED.value:
        message = f'Your requisition "{title}" has been rejected{by_actor}.'
        if requisition.rejection_reason:
            message += f" Reason: {requisition.rejection_reason}"
        add_if_active(
            requisition.submitted_by, "requisition_rejected", "Requisition Rejected", message
        )
        if reviewer and reviewer != actor:
            add_if_active(
                requisition.reviewed_by,
                "requisition_rejected",
                "Requisition Rejected",
                f'Requisition "{title}" that you reviewed has been rejected{by_actor}.',
            )
        if from_status in (S.PENDING.value, S.UNDER_REVIEW.value):
            add_staff(
                APPROVAL_ROLES,
                {submitter, actor},
                "requisition_rejected",
                "Requisition Rejected",
                f'Requisition "{title}" was rejected during review{by_actor}.',
            )

    return list(planned.values())


# ---------- dispatch ----------


async def _load_transition(session: AsyncSession, transition_id) -> Optional[RequisitionTransition]:
    result = await session.execute(
        select(RequisitionTransition)
        .where(RequisitionTransition.id == transition_id)
        .with_for_update(skip_locked=True)
    )
    return result.scalar_one_or_none()


async def _fan_out(session: AsyncSession, event: RequisitionTransition) -> int:
    requisition = (
        await session.execute(select(Requisition).where(Requisition.id == event.requisition_id))
    ).scalar_one_or_none()
    if not requisition:
        return 0
    requisition = snapshot_for(event, requisition)

    staff = await directory_service.members_with_roles(session, event.org_id, STAFF_ROLES)
    individuals = await directory_service.active_members(
        session, event.org_id, [requisition.submitted_by, requisition.reviewed_by]
    )
    actor_name = await directory_service.display_name(session, event.actor_id, fallback="")

    planned = plan_transition_notifications(
        event.from_status,
        event.to_status,
        requisition,
        event.actor_id,
        actor_name or None,
        staff,
        {str(r.user_id) for r in individuals},
    )
    if not planned:
        return 0

    now = datetime.utcnow()
    link = requisition_link(requisition.id)
    await session.execute(
        insert(Notification)
        .values(
            [
                {
                    "id": uuid.uuid4(),
                    "org_id": event.org_id,
                    "user_id": p.user_id,
                    "transition_id": event.id,
                    "requisition_id": requisition.id,
                    "type": p.type,
                    "title": p.title,
                    "message": p.message,
                    "link": link,
                    "is_read": False,
                    "created_at": now,
                }
                for p in planned
            ]
        )
        .on_conflict_do_nothing(index_elements=["transition_id", "user_id"])
    )

    organization = (
        await session.execute(select(Organization).where(Organization.id == event.org_id))
    ).scalar_one_or_none()
    org_settings = (organization.settings or {}) if organization else {}
    if org_settings.get("email_notifications_enabled"):
        await _queue_emails(session, event, requisition, organization, planned, staff + individuals, now)

    return len(planned)


async def _queue_emails(
    session: AsyncSession,
    event: RequisitionTransition,
    requisition: RequisitionSnapshot,
    organization: Organization,
    planned: list[PlannedNotification],
    directory: list[Recipient],
    now: datetime,
) -> None:
    by_id = {str(r.user_id): r for r in directory}
    project_name = (
        await session.execute(select(Project.name).where(Project.id == requisition.project_id))
    ).scalar()
    base_url = (organization.settings or {}).get("app_base_url") or settings.APP_BASE_URL

    rows = []
    for p in planned:
        recipient = by_id.get(str(p.user_id))
        if not recipient or not recipient.email:
            continue
        subject, html, text = render_email(
            p.type,
            recipient.full_name or recipient.email,
            requisition,
            p.message,
            organization.name,
            project_name,
            base_url,
        )
        rows.append(
            {
                "id": uuid.uuid4(),
                "org_id": event.org_id,
                "user_id": p.user_id,
                "transition_id": event.id,
                "requisition_id": requisition.id,
                "recipient_email": recipient.email,
                "notification_type": p.type,
                "subject": subject,
                "body_html": html,
                "body_text": text,
                "status": DispatchStatus.PENDING.value,
                "retry_count": 0,
                "created_at": now,
            }
        )
    if not rows:
        return

    await session.execute(
        insert(EmailNotification)
        .values(rows)
        .on_conflict_do_nothing(index_elements=["transition_id", "user_id"])
    )
    logger.info("email_notifications_queued", transition_id=str(event.id), count=len(rows))


async def _record_dispatch_failure(transition_id, exc: Exception) -> None:
    """Bump the attempt counter in a fresh session; 'failed' once exhausted."""
    error = NotificationDeliveryFailed(str(exc) or exc.__class__.__name__)
    logger.error(
        "notification_delivery_failed",
        transition_id=str(transition_id),
        **error.to_detail()["error"],
    )
    try:
        async with AsyncSessionLocal() as session:
            event = (
                await session.execute(
                    select(RequisitionTransition).where(RequisitionTransition.id == transition_id)
                )
            ).scalar_one_or_none()
            if not event:
                return
            event.dispatch_attempts = (event.dispatch_attempts or 0) + 1
            event.last_error = error.message[:1000]
            if event.dispatch_attempts >= settings.NOTIFICATION_MAX_ATTEMPTS:
                event.dispatch_status = DispatchStatus.FAILED.value
                logger.error(
                    "notification_dispatch_abandoned",
                    transition_id=str(transition_id),
                    attempts=event.dispatch_attempts,
                )
            await session.commit()
    except Exception as bookkeeping_exc:
        logger.error(
            "notification_failure_record_failed",
            transition_id=str(transition_id),
            error=str(bookkeeping_exc),
        )


async def dispatch_transition(transition_id) -> int:
    """
    Fan out one transition. Returns the number of notifications planned
    (0 when already sent, locked by another dispatcher, or failed).
    Never raises.
    """
    try:
        async with AsyncSessionLocal() as session:
            event = await _load_transition(session, transition_id)
            if not event:
                logger.info("notification_dispatch_skipped", transition_id=str(transition_id))
                return 0
            if event.dispatch_status != DispatchStatus.PENDING.value:
                return 0

            count = await _fan_out(session, event)
            event.dispatch_status = DispatchStatus.SENT.value
            event.dispatch_attempts = (event.dispatch_attempts or 0) + 1
            event.dispatched_at = datetime.utcnow()
            event.last_error = None
            await session.commit()
    except Exception as exc:
        await _record_dispatch_failure(transition_id, exc)
        return 0

    logger.info(
        "notifications_dispatched",
        transition_id=str(transition_id),
        recipients=count,
    )
    return count


async def retry_pending_dispatches(session: AsyncSession, limit: Optional[int] = None) -> dict:
    """Re-run dispatch for transitions still pending after the grace period."""
    limit = limit or settings.NOTIFICATION_RETRY_BATCH_SIZE
    cutoff = datetime.utcnow() - RETRY_GRACE
    result = await session.execute(
        select(RequisitionTransition.id)
        .where(
            RequisitionTransition.dispatch_status == DispatchStatus.PENDING.value,
            RequisitionTransition.created_at < cutoff,
        )
        .order_by(RequisitionTransition.created_at)
        .limit(limit)
    )
    transition_ids = [row[0] for row in result.all()]

    delivered = 0
    for transition_id in transition_ids:
        if await dispatch_transition(transition_id):
            delivered += 1

    logger.info(
        "notification_retry_complete",
        processed=len(transition_ids),
        delivered=delivered,
    )
    return {"processed": len(transition_ids), "delivered": delivered}


async def notify_comment(comment_id) -> int:
    """Tell the submitter about a public comment left by someone else."""
    try:
        async with AsyncSessionLocal() as session:
            comment = (
                await session.execute(select(Comment).where(Comment.id == comment_id))
            ).scalar_one_or_none()
            if not comment or comment.is_internal:
                return 0
            requisition = (
                await session.execute(
                    select(Requisition).where(Requisition.id == comment.requisition_id)
                )
            ).scalar_one_or_none()
            if not requisition or str(requisition.submitted_by) == str(comment.user_id):
                return 0

            active = await directory_service.active_members(
                session, requisition.org_id, [requisition.submitted_by]
            )
            if not active:
                return 0

            commenter = await directory_service.display_name(session, comment.user_id)
            await session.execute(
                insert(Notification)
                .values(
                    id=uuid.uuid4(),
                    org_id=requisition.org_id,
                    user_id=requisition.submitted_by,
                    comment_id=comment.id,
                    requisition_id=requisition.id,
                    type="requisition_commented",
                    title="New Comment on Requisition",
                    message=f'{commenter} commented on requisition "{requisition.title}"',
                    link=requisition_link(requisition.id),
                    is_read=False,
                    created_at=datetime.utcnow(),
                )
                .on_conflict_do_nothing(index_elements=["comment_id", "user_id"])
            )
            await session.commit()
    except Exception as exc:
        logger.error("comment_notification_failed", comment_id=str(comment_id), error=str(exc))
        return 0

    logger.info("comment_notification_sent", comment_id=str(comment_id))
    return 1


# ---------- user-facing reads / writes ----------


async def list_notifications(
    session: AsyncSession,
    user_id,
    org_id=None,
    unread_only: bool = False,
    limit: int = 50,
) -> list[Notification]:
    q = select(Notification).where(Notification.user_id == user_id)
    if org_id:
        q = q.where(Notification.org_id == org_id)
    if unread_only:
        q = q.where(Notification.is_read == False)  # noqa: E712
    result = await session.execute(q.order_by(Notification.created_at.desc()).limit(limit))
    return list(result.scalars().all())


async def count_unread(session: AsyncSession, user_id, org_id=None) -> int:
    q = select(func.count(Notification.id)).where(
        Notification.user_id == user_id,
        Notification.is_read == False,  # noqa: E712
    )
    if org_id:
        q = q.where(Notification.org_id == org_id)
    return (await session.execute(q)).scalar() or 0


async def _owned_notification(session: AsyncSession, user_id, notification_id) -> Notification:
    result = await session.execute(
        select(Notification).where(Notification.id == notification_id)
    )
    notification = result.scalar_one_or_none()
    if not notification or str(notification.user_id) != str(user_id):
        raise NotFoundOrAccessDenied()
    return notification


async def mark_read(session: AsyncSession, user_id, notification_id) -> Notification:
    notification = await _owned_notification(session, user_id, notification_id)
    if not notification.is_read:
        notification.is_read = True
        notification.read_at = datetime.utcnow()
        await session.flush()
    return notification


async def mark_all_read(session: AsyncSession, user_id, org_id=None) -> int:
    q = (
        update(Notification)
        .where(
            Notification.user_id == user_id,
            Notification.is_read == False,  # noqa: E712
        )
        .values(is_read=True, read_at=datetime.utcnow())
        .execution_options(synchronize_session=False)
    )
    if org_id:
        q = q.where(Notification.org_id == org_id)
    result = await session.execute(q)
    return result.rowcount or 0


async def delete_notification(session: AsyncSession, user_id, notification_id) -> None:
    notification = await _owned_notification(session, user_id, notification_id)
    await session.delete(notification)
    await session.flush()
