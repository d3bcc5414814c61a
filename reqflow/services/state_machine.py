"""
Requisition state machine: the authorization matrix, no database access.

    draft ──► pending ──► under_review ──► reviewed ──► approved
                 │              │              │
                 └──────────────┴──────────────┴──► rejected ──► draft

evaluate_transition() answers "may this actor move the requisition from A to
B" and what that move implies for the ledger and validation. The
transactional side lives in requisition_service.
"""

from dataclasses import dataclass
from typing import FrozenSet, Optional

from reqflow.errors import InvalidTransition, Unauthorized
from reqflow.models.enums import RequisitionStatus as S, WorkflowRole as R

OWNER = "owner"


@dataclass(frozen=True)
class Edge:
    from_status: S
    to_status: S
    roles: FrozenSet[str]


def _edges(from_states, to_status, *roles) -> list[Edge]:
    return [Edge(f, to_status, frozenset(roles)) for f in from_states]


# Explicit edges. super_admin's bypass is applied on top of these in
# _allowed_roles(), it is not listed here.
TRANSITIONS: dict[tuple[S, S], Edge] = {
    (e.from_status, e.to_status): e
    for e in [
        *_edges([S.DRAFT], S.PENDING, OWNER),
        *_edges([S.PENDING], S.UNDER_REVIEW, R.REVIEWER.value),
        *_edges([S.PENDING, S.UNDER_REVIEW], S.REVIEWED, R.REVIEWER.value),
        *_edges([S.REVIEWED], S.APPROVED, R.APPROVER.value),
        *_edges(
            [S.PENDING, S.UNDER_REVIEW],
            S.REJECTED,
            R.REVIEWER.value,
            R.APPROVER.value,
        ),
        *_edges([S.REVIEWED], S.REJECTED, R.APPROVER.value),
        *_edges([S.REJECTED], S.DRAFT, OWNER),
    ]
}

NON_TERMINAL = frozenset({S.DRAFT, S.PENDING, S.UNDER_REVIEW, S.REVIEWED})


@dataclass(frozen=True)
class TransitionDecision:
    from_status: S
    to_status: S
    role: str
    is_owner: bool
    via_bypass: bool

    @property
    def leaves_draft(self) -> bool:
        return self.from_status == S.DRAFT

    @property
    def requires_items(self) -> bool:
        return self.leaves_draft and self.to_status in (
            S.PENDING,
            S.UNDER_REVIEW,
            S.REVIEWED,
            S.APPROVED,
        )

    @property
    def reserves_budget(self) -> bool:
        """Entering a reserving status from outside one needs a budget check."""
        return (
            self.to_status in S.reserving()
            and self.from_status not in S.reserving()
        )

    @property
    def commits_budget(self) -> bool:
        return self.to_status == S.APPROVED


def _coerce_status(value) -> Optional[S]:
    try:
        return S(value)
    except ValueError:
        return None


def _allowed_roles(from_status: S, to_status: S) -> Optional[FrozenSet[str]]:
    """Roles for the edge, or None if no edge exists for anyone."""
    edge = TRANSITIONS.get((from_status, to_status))
    roles = set(edge.roles) if edge else set()

    # super_admin may move a non-terminal requisition to any other state
    if from_status in NON_TERMINAL and from_status != to_status:
        roles.add(R.SUPER_ADMIN.value)

    return frozenset(roles) if roles else None


def can_transition(from_status, to_status, role: str, is_owner: bool) -> bool:
    try:
        evaluate_transition(from_status, to_status, role, is_owner)
    except (InvalidTransition, Unauthorized):
        return False
    return True


def evaluate_transition(from_status, to_status, role: str, is_owner: bool) -> TransitionDecision:
    """
    Raise InvalidTransition if no edge from -> to exists for any role,
    Unauthorized if it exists but not for this actor.
    """
    src = _coerce_status(from_status)
    dst = _coerce_status(to_status)
    if src is None or dst is None:
        raise InvalidTransition(str(from_status), str(to_status))

    roles = _allowed_roles(src, dst)
    if roles is None:
        raise InvalidTransition(src.value, dst.value)

    explicit = TRANSITIONS.get((src, dst))
    explicit_roles = explicit.roles if explicit else frozenset()

    if OWNER in explicit_roles and is_owner:
        return TransitionDecision(src, dst, role, is_owner, via_bypass=False)
    if role in explicit_roles:
        return TransitionDecision(src, dst, role, is_owner, via_bypass=False)
    if role == R.SUPER_ADMIN.value and R.SUPER_ADMIN.value in roles:
        return TransitionDecision(src, dst, role, is_owner, via_bypass=explicit is None)

    raise Unauthorized()


def available_transitions(from_status, role: str, is_owner: bool) -> list[S]:
    """Targets this actor could move the requisition to, for UI action buttons."""
    return [
        target
        for target in S
        if can_transition(from_status, target, role, is_owner)
    ]
