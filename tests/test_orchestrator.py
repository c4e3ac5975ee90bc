from datetime import datetime, timedelta, timezone

import pytest

from review_assignment.activity import ActivityKind, ActivityLog
from review_assignment.errors import StateError
from review_assignment.models import (
    AssignmentStatus,
    Manuscript,
    ManuscriptStatus,
    ReviewAssignment,
    Reviewer,
)
from review_assignment.orchestrator import PAIR_LOCK_STRIPES, AssignmentOrchestrator, is_legal_transition
from review_assignment.stores import (
    InMemoryAssignments,
    InMemoryManuscripts,
    InMemoryReviewers,
    InMemoryWorkloadStore,
)
from review_assignment.workload import WorkloadSettings, WorkloadTracker

NOW = datetime(2026, 3, 2, 12, 0, tzinfo=timezone.utc)
DUE = NOW + timedelta(days=14)


class StaleOverdueAssignments(InMemoryAssignments):
    """Returns the sweep snapshot taken before a reviewer answered."""

    def __init__(self) -> None:
        super().__init__()
        self.snapshot: list[ReviewAssignment] = []

    def overdue(self, now: datetime) -> list[ReviewAssignment]:
        return list(self.snapshot)


class FailingAssignments(InMemoryAssignments):
    def add(self, assignment: ReviewAssignment) -> None:
        raise RuntimeError("database unavailable")


class ConcurrentlyOpenedAssignments(InMemoryAssignments):
    """Another process opens the same pair between the read and the insert."""

    def __init__(self, rival: ReviewAssignment) -> None:
        super().__init__()
        self.rival = rival
        self.visible = False

    def for_manuscript(self, manuscript_id: str) -> list[ReviewAssignment]:
        if not self.visible:
            return []
        return super().for_manuscript(manuscript_id)

    def add(self, assignment: ReviewAssignment) -> None:
        if not self.visible:
            self.visible = True
            super().add(self.rival)
        super().add(assignment)


def make_orchestrator(assignments: InMemoryAssignments | None = None):
    tracker = WorkloadTracker(InMemoryWorkloadStore([WorkloadSettings(reviewer_id="rev-1", monthly_capacity=2)]))
    activity = ActivityLog()
    changed: list[str] = []
    orchestrator = AssignmentOrchestrator(
        InMemoryManuscripts(
            [
                Manuscript(
                    id="ms-1",
                    field_of_study="Chemistry",
                    author_id="auth-1",
                    status=ManuscriptStatus.IN_REVIEW,
                    created_at=NOW,
                    updated_at=NOW,
                )
            ]
        ),
        InMemoryReviewers([Reviewer(id="rev-1", name="Marie", expertise=("Chemistry",))]),
        tracker,
        assignments if assignments is not None else InMemoryAssignments(),
        activity,
        clock=lambda: NOW,
        on_change=changed.append,
    )
    return orchestrator, tracker, activity, changed


def test_transition_table() -> None:
    assert is_legal_transition(AssignmentStatus.INVITED, AssignmentStatus.ACCEPTED)
    assert is_legal_transition(AssignmentStatus.ACCEPTED, AssignmentStatus.COMPLETED)
    assert not is_legal_transition(AssignmentStatus.ACCEPTED, AssignmentStatus.DECLINED)
    assert not is_legal_transition(AssignmentStatus.DECLINED, AssignmentStatus.ACCEPTED)
    assert not is_legal_transition(AssignmentStatus.INVITED, AssignmentStatus.COMPLETED)
    assert not is_legal_transition(AssignmentStatus.EXPIRED, AssignmentStatus.INVITED)


def test_full_lifecycle_emits_events_and_releases_once() -> None:
    orchestrator, tracker, activity, changed = make_orchestrator()

    invited = orchestrator.invite("ms-1", "rev-1", DUE)
    orchestrator.accept(invited.id)
    completed = orchestrator.complete(invited.id, now=NOW + timedelta(days=9))
    again = orchestrator.complete(invited.id, now=NOW + timedelta(days=10))

    assert completed == again
    assert completed.completed_at == NOW + timedelta(days=9)
    assert tracker.settings("rev-1").current_assignments == 0
    assert [event.kind for event in activity.events()] == [
        ActivityKind.REVIEWER_INVITED,
        ActivityKind.INVITATION_ACCEPTED,
        ActivityKind.REVIEW_COMPLETED,
    ]
    assert activity.events()[2].detail["previous"] == "accepted"
    assert changed == ["ms-1", "ms-1", "ms-1"]


def test_illegal_transitions_raise_state_error() -> None:
    orchestrator, tracker, _, _ = make_orchestrator()
    invited = orchestrator.invite("ms-1", "rev-1", DUE)

    with pytest.raises(StateError):
        orchestrator.complete(invited.id)

    orchestrator.decline(invited.id, "Too busy")

    with pytest.raises(StateError) as excinfo:
        orchestrator.accept(invited.id)
    assert excinfo.value.current == "declined"
    assert tracker.settings("rev-1").current_assignments == 0


def test_accept_after_completion_is_rejected() -> None:
    orchestrator, _, _, _ = make_orchestrator()
    invited = orchestrator.invite("ms-1", "rev-1", DUE)
    orchestrator.accept(invited.id)
    orchestrator.complete(invited.id)

    with pytest.raises(StateError):
        orchestrator.accept(invited.id)


def test_expire_requires_due_date_to_pass() -> None:
    orchestrator, _, _, _ = make_orchestrator()
    invited = orchestrator.invite("ms-1", "rev-1", DUE)

    with pytest.raises(StateError):
        orchestrator.expire(invited.id, now=DUE)

    expired = orchestrator.expire(invited.id, now=DUE + timedelta(seconds=1))

    assert expired.status is AssignmentStatus.EXPIRED


def test_sweep_skips_invitations_answered_meanwhile() -> None:
    assignments = StaleOverdueAssignments()
    orchestrator, tracker, _, _ = make_orchestrator(assignments)
    answered = orchestrator.invite("ms-1", "rev-1", DUE)
    assignments.snapshot = [answered]
    orchestrator.decline(answered.id, "Out of scope")

    assert orchestrator.expire_overdue(DUE + timedelta(days=1)) == []
    assert tracker.settings("rev-1").current_assignments == 0


def test_failed_insert_returns_reserved_capacity() -> None:
    orchestrator, tracker, activity, _ = make_orchestrator(FailingAssignments())

    with pytest.raises(RuntimeError):
        orchestrator.invite("ms-1", "rev-1", DUE)

    assert tracker.settings("rev-1").current_assignments == 0
    assert len(activity) == 0


def test_pair_opened_elsewhere_returns_existing_assignment() -> None:
    rival = ReviewAssignment(
        id="a-other",
        manuscript_id="ms-1",
        reviewer_id="rev-1",
        status=AssignmentStatus.INVITED,
        invited_at=NOW,
        due_date=DUE,
    )
    orchestrator, tracker, activity, _ = make_orchestrator(ConcurrentlyOpenedAssignments(rival))

    assert orchestrator.invite("ms-1", "rev-1", DUE) == rival
    assert tracker.settings("rev-1").current_assignments == 0
    assert len(activity) == 0


def test_pair_locks_are_a_fixed_stripe_set() -> None:
    orchestrator, _, _, _ = make_orchestrator()

    for index in range(200):
        orchestrator._pair_lock(f"ms-{index}", "rev-1")

    assert len(orchestrator._pair_locks) == PAIR_LOCK_STRIPES
    assert orchestrator._pair_lock("ms-1", "rev-1") is orchestrator._pair_lock("ms-1", "rev-1")
