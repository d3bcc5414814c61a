"""
Unit tests for reqflow/services/requisition_service.py

Row locking, item summaries and the compare-and-set write are patched out so
each test drives the transition pipeline directly.
"""

import uuid
from datetime import datetime
from decimal import Decimal
from types import SimpleNamespace
from unittest.mock import AsyncMock, MagicMock, patch

import pytest

from reqflow.errors import (
    EmptyRequisition,
    InsufficientBudget,
    InvalidRequisition,
    InvalidTransition,
    NotFoundOrAccessDenied,
    Unauthorized,
)
from reqflow.models.requisition import Comment, RequisitionItem, RequisitionTransition
from reqflow.services import audit_service
from reqflow.services import requisition_service as svc
from reqflow.services.directory_service import Actor
from reqflow.services.state_machine import evaluate_transition

ORG_A = uuid.UUID("a0000000-0000-0000-0000-000000000001")
ORG_B = uuid.UUID("b0000000-0000-0000-0000-000000000002")
SUBMITTER = uuid.UUID("c0000000-0000-0000-0000-000000000001")
REVIEWER = uuid.UUID("c0000000-0000-0000-0000-000000000002")
APPROVER = uuid.UUID("c0000000-0000-0000-0000-000000000003")
ADMIN = uuid.UUID("c0000000-0000-0000-0000-000000000004")
OTHER_SUBMITTER = uuid.UUID("c0000000-0000-0000-0000-000000000005")

ROLES = {
    SUBMITTER: "submitter",
    REVIEWER: "reviewer",
    APPROVER: "approver",
    ADMIN: "super_admin",
    OTHER_SUBMITTER: "submitter",
}


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

def _actor(user_id: uuid.UUID, org_id: uuid.UUID = ORG_A) -> Actor:
    return Actor(user_id=user_id, org_id=org_id, role=ROLES[user_id], full_name="Test User")


def _make_requisition(status: str = "draft", org_id: uuid.UUID = ORG_A, total: str = "600.00"):
    return SimpleNamespace(
        id=uuid.uuid4(),
        org_id=org_id,
        project_id=uuid.uuid4(),
        status=status,
        title="Laptops",
        total_amount=Decimal(total),
        submitted_by=SUBMITTER,
        reviewed_by=None,
        rejection_reason=None,
    )


def _mock_session() -> AsyncMock:
    session = AsyncMock()
    session.flush = AsyncMock()
    session.add = MagicMock()
    return session


def _added(session, model):
    return [c.args[0] for c in session.add.call_args_list if isinstance(c.args[0], model)]


@pytest.fixture
def workflow():
    """Patch the transactional helpers; tests tweak the returned mocks."""
    requisition = _make_requisition()
    project = SimpleNamespace(id=requisition.project_id, org_id=ORG_A, budget=Decimal("10000"), spent_amount=Decimal("0"))
    mocks = SimpleNamespace(
        requisition=requisition,
        project=project,
        get_actor=AsyncMock(side_effect=lambda session, org_id, user_id: _actor(user_id)),
        load=AsyncMock(return_value=requisition),
        lock=AsyncMock(return_value=requisition),
        lock_project=AsyncMock(return_value=project),
        summary=AsyncMock(return_value=(2, Decimal("600.00"))),
        check=AsyncMock(),
        commit=AsyncMock(),
        cas=AsyncMock(return_value=True),
    )
    with patch.object(svc, "get_actor", new=mocks.get_actor), \
         patch.object(svc, "_load_requisition", new=mocks.load), \
         patch.object(svc, "_lock_requisition", new=mocks.lock), \
         patch.object(svc, "_item_summary", new=mocks.summary), \
         patch.object(svc, "_compare_and_set_status", new=mocks.cas), \
         patch.object(svc.budget_service, "lock_project", new=mocks.lock_project), \
         patch.object(svc.budget_service, "check_availability", new=mocks.check), \
         patch.object(svc.budget_service, "commit", new=mocks.commit):
        yield mocks


# ---------------------------------------------------------------------------
# submit
# ---------------------------------------------------------------------------

@pytest.mark.asyncio
async def test_submit_reserves_budget_and_records_transition(workflow):
    session = _mock_session()
    req = workflow.requisition

    outcome = await svc.submit(session, ORG_A, req.id, SUBMITTER)

    workflow.check.assert_awaited_once_with(
        session, workflow.project, Decimal("600.00"), excluding_requisition_id=req.id
    )
    workflow.commit.assert_not_awaited()

    _, _, expected, values = workflow.cas.await_args.args
    assert expected == "draft"
    assert values["status"] == "pending"
    assert values["total_amount"] == Decimal("600.00")
    assert isinstance(values["submitted_at"], datetime)

    events = _added(session, RequisitionTransition)
    assert len(events) == 1
    assert events[0] is outcome.transition
    assert events[0].from_status == "draft"
    assert events[0].to_status == "pending"
    assert events[0].dispatch_status == "pending"


@pytest.mark.asyncio
async def test_submit_locks_project_before_requisition(workflow):
    calls = []
    workflow.lock_project.side_effect = lambda *a, **k: calls.append("project") or workflow.project
    workflow.lock.side_effect = lambda *a, **k: calls.append("requisition") or workflow.requisition

    await svc.submit(_mock_session(), ORG_A, workflow.requisition.id, SUBMITTER)

    assert calls == ["project", "requisition"]


@pytest.mark.asyncio
async def test_submit_without_items_is_rejected(workflow):
    workflow.summary.return_value = (0, Decimal("0"))

    with pytest.raises(EmptyRequisition):
        await svc.submit(_mock_session(), ORG_A, workflow.requisition.id, SUBMITTER)

    workflow.check.assert_not_awaited()
    workflow.cas.assert_not_awaited()


@pytest.mark.asyncio
async def test_submit_over_budget_leaves_status_alone(workflow):
    workflow.check.side_effect = InsufficientBudget(available=Decimal("4000"), requested=Decimal("600.00"))
    session = _mock_session()

    with pytest.raises(InsufficientBudget):
        await svc.submit(session, ORG_A, workflow.requisition.id, SUBMITTER)

    workflow.cas.assert_not_awaited()
    assert _added(session, RequisitionTransition) == []


@pytest.mark.asyncio
async def test_someone_elses_draft_is_invisible_to_submit(workflow):
    with pytest.raises(NotFoundOrAccessDenied):
        await svc.submit(_mock_session(), ORG_A, workflow.requisition.id, REVIEWER)
    workflow.lock_project.assert_not_awaited()
    workflow.cas.assert_not_awaited()


@pytest.mark.asyncio
async def test_super_admin_may_submit_someone_elses_draft(workflow):
    outcome = await svc.submit(_mock_session(), ORG_A, workflow.requisition.id, ADMIN)
    assert outcome.decision.to_status.value == "pending"
    workflow.lock_project.assert_awaited_once()


@pytest.mark.asyncio
async def test_submit_uses_item_sum_not_stored_total(workflow):
    workflow.requisition.total_amount = Decimal("1.00")
    workflow.summary.return_value = (3, Decimal("750.25"))

    await svc.submit(_mock_session(), ORG_A, workflow.requisition.id, SUBMITTER)

    assert workflow.check.await_args.args[2] == Decimal("750.25")
    assert workflow.cas.await_args.args[3]["total_amount"] == Decimal("750.25")


# ---------------------------------------------------------------------------
# review / approve / reject
# ---------------------------------------------------------------------------

@pytest.mark.asyncio
async def test_start_review_adds_internal_comment(workflow):
    workflow.requisition.status = "pending"
    session = _mock_session()

    await svc.transition(session, ORG_A, workflow.requisition.id, REVIEWER, "under_review")

    workflow.check.assert_not_awaited()
    comments = _added(session, Comment)
    assert len(comments) == 1
    assert comments[0].comment_text == "Started review"
    assert comments[0].is_internal is True


@pytest.mark.asyncio
async def test_review_with_note_is_public(workflow):
    workflow.requisition.status = "under_review"
    session = _mock_session()

    await svc.transition(session, ORG_A, workflow.requisition.id, REVIEWER, "reviewed", note="Prices checked")

    values = workflow.cas.await_args.args[3]
    assert values["reviewed_by"] == REVIEWER
    comment = _added(session, Comment)[0]
    assert comment.comment_text == "Reviewed: Prices checked"
    assert comment.is_internal is False


@pytest.mark.asyncio
async def test_reviewer_cannot_approve(workflow):
    workflow.requisition.status = "pending"

    with pytest.raises(Unauthorized):
        await svc.transition(_mock_session(), ORG_A, workflow.requisition.id, REVIEWER, "approved")

    workflow.commit.assert_not_awaited()
    workflow.cas.assert_not_awaited()


@pytest.mark.asyncio
async def test_approval_commits_spend(workflow):
    workflow.requisition.status = "reviewed"
    session = _mock_session()

    outcome = await svc.transition(session, ORG_A, workflow.requisition.id, APPROVER, "approved")

    workflow.commit.assert_awaited_once_with(session, workflow.project, Decimal("600.00"))
    assert workflow.cas.await_args.args[3]["approved_by"] == APPROVER
    assert outcome.decision.to_status.value == "approved"


@pytest.mark.asyncio
async def test_super_admin_can_approve_from_pending(workflow):
    workflow.requisition.status = "pending"

    outcome = await svc.transition(_mock_session(), ORG_A, workflow.requisition.id, ADMIN, "approved")

    assert outcome.decision.via_bypass is True
    workflow.commit.assert_awaited_once()


@pytest.mark.asyncio
async def test_rejection_does_not_touch_budget(workflow):
    workflow.requisition.status = "under_review"
    session = _mock_session()

    await svc.transition(session, ORG_A, workflow.requisition.id, REVIEWER, "rejected", note="Duplicate")

    workflow.check.assert_not_awaited()
    workflow.commit.assert_not_awaited()
    values = workflow.cas.await_args.args[3]
    assert values["rejection_reason"] == "Duplicate"
    assert values["reviewed_by"] == REVIEWER


@pytest.mark.asyncio
async def test_reopening_rejected_draft_clears_reason(workflow):
    workflow.requisition.status = "rejected"
    workflow.requisition.rejection_reason = "Duplicate"

    await svc.transition(_mock_session(), ORG_A, workflow.requisition.id, SUBMITTER, "draft")

    values = workflow.cas.await_args.args[3]
    assert values["status"] == "draft"
    assert values["rejection_reason"] is None
    workflow.summary.assert_not_awaited()


@pytest.mark.asyncio
@pytest.mark.parametrize("target", ["draft", "pending", "rejected"])
async def test_approved_is_terminal(workflow, target):
    workflow.requisition.status = "approved"

    with pytest.raises(InvalidTransition):
        await svc.transition(_mock_session(), ORG_A, workflow.requisition.id, ADMIN, target)


@pytest.mark.asyncio
async def test_lost_race_raises_invalid_transition(workflow):
    workflow.requisition.status = "pending"
    workflow.cas.return_value = False
    session = _mock_session()

    with pytest.raises(InvalidTransition):
        await svc.transition(session, ORG_A, workflow.requisition.id, REVIEWER, "under_review")

    assert _added(session, RequisitionTransition) == []


@pytest.mark.asyncio
async def test_decision_uses_locked_status(workflow):
    """A plain read saying 'pending' loses to the locked row saying 'under_review'."""
    stale = _make_requisition(status="pending")
    fresh = _make_requisition(status="under_review")
    fresh.id = stale.id
    fresh.project_id = stale.project_id
    workflow.load.return_value = stale
    workflow.lock.return_value = fresh

    with pytest.raises(InvalidTransition):
        await svc.transition(_mock_session(), ORG_A, stale.id, REVIEWER, "under_review")


# ---------------------------------------------------------------------------
# cross-tenant
# ---------------------------------------------------------------------------

@pytest.mark.asyncio
async def test_foreign_requisition_is_not_found_and_audited(workflow):
    foreign = _make_requisition(status="pending", org_id=ORG_B)
    workflow.load.return_value = foreign

    with patch.object(audit_service, "record_cross_tenant_attempt", new=AsyncMock(return_value=True)) as audit:
        with pytest.raises(NotFoundOrAccessDenied):
            await svc.transition(_mock_session(), ORG_A, foreign.id, REVIEWER, "under_review")

    audit.assert_awaited_once()
    workflow.lock_project.assert_not_awaited()
    workflow.cas.assert_not_awaited()


@pytest.mark.asyncio
async def test_missing_requisition_is_not_audited(workflow):
    workflow.load.return_value = None

    with patch.object(audit_service, "record_cross_tenant_attempt", new=AsyncMock()) as audit:
        with pytest.raises(NotFoundOrAccessDenied):
            await svc.transition(_mock_session(), ORG_A, uuid.uuid4(), REVIEWER, "under_review")

    audit.assert_not_awaited()


# ---------------------------------------------------------------------------
# create_requisition
# ---------------------------------------------------------------------------

def _scalar_result(value):
    result = MagicMock()
    result.scalar_one_or_none.return_value = value
    return result


@pytest.mark.asyncio
async def test_create_numbers_after_guarding_project():
    project = SimpleNamespace(id=uuid.uuid4(), org_id=ORG_A, is_active=True)
    session = _mock_session()
    session.execute = AsyncMock(return_value=_scalar_result(project))
    items = [
        {"description": "Laptop", "quantity": "2", "unit_price": "150.00"},
        {"description": "Dock", "quantity": 3, "unit_price": 100},
    ]

    with patch.object(svc, "get_actor", new=AsyncMock(return_value=_actor(SUBMITTER))), \
         patch.object(svc.sequence_service, "next_number", new=AsyncMock(return_value="REQ-26-00001")) as numbering:
        requisition = await svc.create_requisition(session, ORG_A, project.id, SUBMITTER, items)

    numbering.assert_awaited_once()
    assert requisition.requisition_number == "REQ-26-00001"
    assert requisition.title == "REQ-26-00001"
    assert requisition.status == "draft"
    assert requisition.total_amount == Decimal("600.00")
    assert requisition.submitted_by == SUBMITTER


@pytest.mark.asyncio
async def test_create_in_foreign_project_allocates_no_number():
    project = SimpleNamespace(id=uuid.uuid4(), org_id=ORG_B, is_active=True)
    session = _mock_session()
    session.execute = AsyncMock(return_value=_scalar_result(project))

    with patch.object(svc, "get_actor", new=AsyncMock(return_value=_actor(SUBMITTER))), \
         patch.object(audit_service, "record_cross_tenant_attempt", new=AsyncMock(return_value=True)), \
         patch.object(svc.sequence_service, "next_number", new=AsyncMock()) as numbering:
        with pytest.raises(NotFoundOrAccessDenied):
            await svc.create_requisition(session, ORG_A, project.id, SUBMITTER, [])

    numbering.assert_not_awaited()


@pytest.mark.asyncio
async def test_create_in_inactive_project():
    project = SimpleNamespace(id=uuid.uuid4(), org_id=ORG_A, is_active=False)
    session = _mock_session()
    session.execute = AsyncMock(return_value=_scalar_result(project))

    with patch.object(svc, "get_actor", new=AsyncMock(return_value=_actor(SUBMITTER))):
        with pytest.raises(InvalidRequisition):
            await svc.create_requisition(session, ORG_A, project.id, SUBMITTER, [])


# ---------------------------------------------------------------------------
# pure helpers
# ---------------------------------------------------------------------------

def test_build_items_rounds_line_totals():
    rows, total = svc._build_items(ORG_A, uuid.uuid4(), [
        {"description": "Cable", "quantity": "3", "unit_price": "0.335"},
        {"description": "Tape", "quantity": "1.5", "unit_price": "2.00"},
    ])
    assert [r.line_number for r in rows] == [1, 2]
    assert rows[0].line_total == Decimal("1.01")
    assert rows[1].line_total == Decimal("3.00")
    assert total == Decimal("4.01")


@pytest.mark.parametrize(
    "item",
    [
        {"description": "", "quantity": 1, "unit_price": 1},
        {"description": "Pen", "quantity": 0, "unit_price": 1},
        {"description": "Pen", "quantity": 1, "unit_price": -1},
        {"description": "Pen", "quantity": "abc", "unit_price": 1},
    ],
)
def test_build_items_rejects_bad_lines(item):
    with pytest.raises(InvalidRequisition):
        svc._build_items(ORG_A, uuid.uuid4(), [item])


def test_build_items_caps_line_count():
    items = [{"description": "x", "quantity": 1, "unit_price": 1}] * (svc.MAX_ITEMS + 1)
    with pytest.raises(InvalidRequisition):
        svc._build_items(ORG_A, uuid.uuid4(), items)


def test_rejection_by_approver_records_approver():
    decision = evaluate_transition("reviewed", "rejected", "approver", False)
    values = svc.status_fields(decision, _actor(APPROVER), None, datetime(2026, 1, 1))
    assert values["approved_by"] == APPROVER
    assert "reviewed_by" not in values
    assert values["rejection_reason"] is None


def test_workflow_comment_variants():
    approve = evaluate_transition("reviewed", "approved", "approver", False)
    reject = evaluate_transition("pending", "rejected", "reviewer", False)
    review = evaluate_transition("pending", "reviewed", "reviewer", False)

    assert svc.workflow_comment(approve, None) is None
    assert svc.workflow_comment(approve, "ok") == ("Approved: ok", False)
    assert svc.workflow_comment(reject, "  ") is None
    assert svc.workflow_comment(review, None) == ("Marked as reviewed", True)


# ---------------------------------------------------------------------------
# transition event snapshot
# ---------------------------------------------------------------------------

@pytest.mark.asyncio
async def test_rejection_event_carries_requisition_fields(workflow):
    workflow.requisition.status = "under_review"
    session = _mock_session()

    outcome = await svc.transition(
        session, ORG_A, workflow.requisition.id, REVIEWER, "rejected", note="Over the quarterly cap"
    )

    event = outcome.transition
    assert event.note == "Over the quarterly cap"
    assert event.title == "Laptops"
    assert event.reviewed_by == REVIEWER
    assert event.total_amount == Decimal("600.00")


@pytest.mark.asyncio
async def test_approval_event_keeps_earlier_reviewer(workflow):
    workflow.requisition.status = "reviewed"
    workflow.requisition.reviewed_by = REVIEWER

    outcome = await svc.transition(_mock_session(), ORG_A, workflow.requisition.id, APPROVER, "approved")

    assert outcome.transition.reviewed_by == REVIEWER
    assert outcome.transition.to_status == "approved"


# ---------------------------------------------------------------------------
# visibility on writes
# ---------------------------------------------------------------------------

@pytest.mark.asyncio
async def test_other_submitter_cannot_see_pending_requisition(workflow):
    workflow.requisition.status = "pending"

    with pytest.raises(NotFoundOrAccessDenied):
        await svc.transition(_mock_session(), ORG_A, workflow.requisition.id, OTHER_SUBMITTER, "rejected")

    workflow.lock_project.assert_not_awaited()


@pytest.mark.asyncio
async def test_reviewer_cannot_reopen_someone_elses_rejection(workflow):
    workflow.requisition.status = "rejected"

    with pytest.raises(Unauthorized):
        await svc.transition(_mock_session(), ORG_A, workflow.requisition.id, REVIEWER, "draft")

    workflow.cas.assert_not_awaited()


# ---------------------------------------------------------------------------
# replace_items
# ---------------------------------------------------------------------------

ITEMS = [
    {"description": "Monitor", "quantity": 2, "unit_price": "199.99"},
    {"description": "Stand", "quantity": 1, "unit_price": "40.00"},
]


@pytest.mark.asyncio
async def test_replace_items_recomputes_total(workflow):
    session = _mock_session()

    view = await svc.replace_items(session, ORG_A, workflow.requisition.id, SUBMITTER, ITEMS)

    assert workflow.requisition.total_amount == Decimal("439.98")
    assert len(view.items) == 2
    assert len(_added(session, RequisitionItem)) == 2
    session.execute.assert_awaited_once()
    session.flush.assert_awaited_once()


@pytest.mark.asyncio
async def test_replace_items_on_someone_elses_draft(workflow):
    session = _mock_session()

    with pytest.raises(NotFoundOrAccessDenied):
        await svc.replace_items(session, ORG_A, workflow.requisition.id, REVIEWER, ITEMS)

    session.execute.assert_not_awaited()


@pytest.mark.asyncio
async def test_replace_items_by_non_owner_on_visible_requisition(workflow):
    workflow.requisition.status = "pending"

    with pytest.raises(Unauthorized):
        await svc.replace_items(_mock_session(), ORG_A, workflow.requisition.id, APPROVER, ITEMS)


@pytest.mark.asyncio
async def test_replace_items_after_submission(workflow):
    workflow.requisition.status = "pending"
    session = _mock_session()

    with pytest.raises(InvalidRequisition):
        await svc.replace_items(session, ORG_A, workflow.requisition.id, SUBMITTER, ITEMS)

    assert workflow.requisition.total_amount == Decimal("600.00")
    session.execute.assert_not_awaited()


# ---------------------------------------------------------------------------
# delete_requisition
# ---------------------------------------------------------------------------

@pytest.mark.asyncio
async def test_owner_deletes_draft(workflow):
    session = _mock_session()

    await svc.delete_requisition(session, ORG_A, workflow.requisition.id, SUBMITTER)

    session.delete.assert_awaited_once_with(workflow.requisition)
    session.flush.assert_awaited_once()


@pytest.mark.asyncio
async def test_super_admin_deletes_someone_elses_draft(workflow):
    session = _mock_session()

    await svc.delete_requisition(session, ORG_A, workflow.requisition.id, ADMIN)

    session.delete.assert_awaited_once_with(workflow.requisition)


@pytest.mark.asyncio
async def test_reviewer_cannot_delete(workflow):
    workflow.requisition.status = "pending"
    session = _mock_session()

    with pytest.raises(Unauthorized):
        await svc.delete_requisition(session, ORG_A, workflow.requisition.id, REVIEWER)

    session.delete.assert_not_awaited()


@pytest.mark.asyncio
async def test_submitted_requisition_cannot_be_deleted(workflow):
    workflow.requisition.status = "pending"
    session = _mock_session()

    with pytest.raises(InvalidRequisition):
        await svc.delete_requisition(session, ORG_A, workflow.requisition.id, SUBMITTER)

    session.delete.assert_not_awaited()


# ---------------------------------------------------------------------------
# comments
# ---------------------------------------------------------------------------

@pytest.mark.asyncio
async def test_submitter_cannot_post_internal_comment(workflow):
    session = _mock_session()

    with pytest.raises(Unauthorized):
        await svc.add_comment(session, ORG_A, workflow.requisition.id, SUBMITTER, "note to self", is_internal=True)

    assert _added(session, Comment) == []


@pytest.mark.asyncio
async def test_reviewer_posts_internal_comment(workflow):
    workflow.requisition.status = "pending"
    session = _mock_session()

    comment = await svc.add_comment(session, ORG_A, workflow.requisition.id, REVIEWER, " check vendor ", is_internal=True)

    assert comment.comment_text == "check vendor"
    assert comment.is_internal is True
    session.flush.assert_awaited_once()


@pytest.mark.asyncio
async def test_blank_comment_is_rejected(workflow):
    with pytest.raises(InvalidRequisition):
        await svc.add_comment(_mock_session(), ORG_A, workflow.requisition.id, SUBMITTER, "   ")


def _comments_session(rows):
    session = _mock_session()
    result = MagicMock()
    result.scalars.return_value.all.return_value = rows
    session.execute = AsyncMock(return_value=result)
    return session


@pytest.mark.asyncio
async def test_submitter_comment_list_hides_internal(workflow):
    session = _comments_session([])

    await svc.list_comments(session, ORG_A, workflow.requisition.id, SUBMITTER)

    statement = session.execute.await_args.args[0]
    assert "is_internal" in str(statement.whereclause)


@pytest.mark.asyncio
async def test_staff_comment_list_includes_internal(workflow):
    workflow.requisition.status = "pending"
    rows = [SimpleNamespace(id=uuid.uuid4(), is_internal=True)]
    session = _comments_session(rows)

    comments = await svc.list_comments(session, ORG_A, workflow.requisition.id, REVIEWER)

    statement = session.execute.await_args.args[0]
    assert "is_internal" not in str(statement.whereclause)
    assert comments == rows
