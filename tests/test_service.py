from concurrent.futures import ThreadPoolExecutor
from dataclasses import replace
from datetime import date, datetime, timedelta, timezone

import pytest

from review_assignment.activity import ActivityKind
from review_assignment.conflicts import ConflictType
from review_assignment.errors import CapacityExceeded, ConflictBlocked, NotFound
from review_assignment.models import (
    Affiliation,
    AssignmentStatus,
    Coauthorship,
    Manuscript,
    ManuscriptStatus,
    Priority,
    Reviewer,
)
from review_assignment.service import ReviewAssignmentEngine
from review_assignment.stores import (
    InMemoryAssignments,
    InMemoryManuscripts,
    InMemoryReviewers,
    InMemoryWorkloadStore,
)
from review_assignment.workload import AutoDeclineConditions, AutoDeclineRule, DateRange, WorkloadSettings

NOW = datetime(2026, 3, 2, 12, 0, tzinfo=timezone.utc)
DUE = NOW + timedelta(days=21)

MANUSCRIPTS = [
    Manuscript(
        id=f"ms-{index}",
        field_of_study="Computer Science",
        subfield="Machine Learning",
        author_id="auth-1",
        author_affiliations={"auth-1": (Affiliation("University of Toronto", date(2017, 9, 1)),)},
        status=ManuscriptStatus.IN_REVIEW,
        created_at=NOW - timedelta(days=3),
        updated_at=NOW - timedelta(days=3),
    )
    for index in range(1, 9)
]

REVIEWERS = [
    Reviewer(id="rev-ada", name="Ada", expertise=("Computer Science", "Machine Learning"), h_index=12),
    Reviewer(
        id="rev-ben",
        name="Ben",
        expertise=("Computer Science", "Machine Learning"),
        affiliations=(Affiliation("University of Toronto", date(2020, 1, 1)),),
    ),
    Reviewer(
        id="rev-cy",
        name="Cy",
        expertise=("Computer Science",),
        coauthorships=(Coauthorship("auth-1", date(2025, 4, 1)),),
    ),
]


def make_engine(*settings: WorkloadSettings) -> ReviewAssignmentEngine:
    if not settings:
        settings = tuple(WorkloadSettings(reviewer_id=reviewer.id, monthly_capacity=5) for reviewer in REVIEWERS)
    return ReviewAssignmentEngine(
        InMemoryManuscripts(MANUSCRIPTS),
        InMemoryReviewers(REVIEWERS),
        InMemoryWorkloadStore(settings),
        InMemoryAssignments(),
        clock=lambda: NOW,
    )


def kinds(engine: ReviewAssignmentEngine) -> list[ActivityKind]:
    return [event.kind for event in engine.activity.events()]


def test_field_expert_scores_at_least_forty() -> None:
    results = make_engine().rank_candidates("ms-1", ["rev-ada"])

    assert results[0].relevance_score >= 40


def test_shared_current_institution_blocks_ranking_and_invites() -> None:
    engine = make_engine()

    ranked = engine.rank_candidates("ms-1", ["rev-ada", "rev-ben", "rev-cy", "rev-ada"])

    assert [item.reviewer_id for item in ranked] == ["rev-ada", "rev-cy"]

    shown = engine.rank_candidates("ms-1", ["rev-ben"], show_blocked=True)
    assert shown[0].conflicts[0].type is ConflictType.INSTITUTIONAL_CURRENT
    assert not shown[0].assignable

    with pytest.raises(ConflictBlocked) as excinfo:
        engine.invite("ms-1", "rev-ben", DUE)
    assert excinfo.value.conflict_types == ["institutional_current"]
    assert len(engine.activity) == 0


def test_capacity_override_requires_reason_and_is_recorded() -> None:
    engine = make_engine(WorkloadSettings(reviewer_id="rev-ada", monthly_capacity=5, current_assignments=5))

    with pytest.raises(CapacityExceeded):
        engine.invite("ms-1", "rev-ada", DUE)
    with pytest.raises(ValueError):
        engine.invite("ms-1", "rev-ada", DUE, override_capacity=True)

    assignment = engine.invite(
        "ms-1",
        "rev-ada",
        DUE,
        override_capacity=True,
        override_reason="Only reviewer with this expertise",
    )

    assert assignment.status is AssignmentStatus.INVITED
    assert assignment.override_reason == "Only reviewer with this expertise"
    assert engine.tracker.settings("rev-ada").current_assignments == 6
    assert kinds(engine) == [ActivityKind.REVIEWER_INVITED, ActivityKind.CAPACITY_OVERRIDDEN]


def test_auto_decline_rule_declines_without_reserving() -> None:
    rule = AutoDeclineRule("busy", "Over 80%", AutoDeclineConditions(max_workload_percentage=80))
    engine = make_engine(
        WorkloadSettings(reviewer_id="rev-ada", monthly_capacity=20, current_assignments=17, auto_decline_rules=(rule,))
    )

    assignment = engine.invite("ms-1", "rev-ada", DUE)

    assert assignment.status is AssignmentStatus.DECLINED
    assert assignment.decline_reason == "auto_declined"
    assert engine.tracker.settings("rev-ada").current_assignments == 17
    assert kinds(engine) == [ActivityKind.INVITATION_AUTO_DECLINED]
    assert engine.activity.events()[0].detail["rules"] == ["busy"]


def test_blackout_on_invitation_date_auto_declines() -> None:
    engine = make_engine(
        WorkloadSettings(
            reviewer_id="rev-ada",
            monthly_capacity=5,
            blackout_ranges=(DateRange(date(2026, 3, 1), date(2026, 3, 8)),),
        )
    )

    assignment = engine.invite("ms-1", "rev-ada", DUE)

    assert assignment.status is AssignmentStatus.DECLINED
    assert engine.tracker.settings("rev-ada").current_assignments == 0


def test_expire_overdue_releases_capacity() -> None:
    engine = make_engine()
    assignment = engine.invite("ms-1", "rev-ada", NOW + timedelta(days=1))
    accepted = engine.invite("ms-2", "rev-ada", NOW + timedelta(days=1))
    engine.accept(accepted.id)

    assert engine.tracker.capacity_remaining("rev-ada") == 3

    expired = engine.expire_overdue(NOW + timedelta(days=2))

    assert [item.id for item in expired] == [assignment.id]
    assert expired[0].status is AssignmentStatus.EXPIRED
    assert engine.tracker.capacity_remaining("rev-ada") == 4
    assert engine.expire_overdue(NOW + timedelta(days=3)) == []


def test_invite_then_decline_restores_capacity() -> None:
    engine = make_engine()
    before = engine.tracker.capacity_remaining("rev-cy")

    assignment = engine.invite("ms-1", "rev-cy", DUE)
    declined = engine.decline(assignment.id, "On leave")

    assert declined.decline_reason == "On leave"
    assert engine.tracker.capacity_remaining("rev-cy") == before


def test_accept_is_idempotent() -> None:
    engine = make_engine()
    assignment = engine.invite("ms-1", "rev-ada", DUE)

    first = engine.accept(assignment.id, now=NOW + timedelta(hours=1))
    second = engine.accept(assignment.id, now=NOW + timedelta(hours=5))

    assert first == second
    assert first.responded_at == NOW + timedelta(hours=1)
    assert kinds(engine).count(ActivityKind.INVITATION_ACCEPTED) == 1
    assert engine.tracker.settings("rev-ada").current_assignments == 1


def test_reinvite_returns_open_assignment_and_counts_rounds() -> None:
    engine = make_engine()
    first = engine.invite("ms-1", "rev-ada", DUE)

    assert engine.invite("ms-1", "rev-ada", DUE + timedelta(days=3)) == first

    engine.decline(first.id, "")
    second = engine.invite("ms-1", "rev-ada", DUE)

    assert second.id != first.id
    assert second.status is AssignmentStatus.INVITED
    assert second.round == 2


def test_capacity_is_never_exceeded_without_override() -> None:
    engine = make_engine(WorkloadSettings(reviewer_id="rev-ada", monthly_capacity=3))
    invited = []
    for manuscript in MANUSCRIPTS:
        try:
            invited.append(engine.invite(manuscript.id, "rev-ada", DUE))
        except CapacityExceeded:
            pass
        settings = engine.tracker.settings("rev-ada")
        assert settings.current_assignments <= settings.monthly_capacity

    assert len(invited) == 3
    engine.accept(invited[0].id)
    engine.complete(invited[0].id)
    engine.decline(invited[1].id, "Conflict with travel")

    assert engine.tracker.capacity_remaining("rev-ada") == 2


def test_concurrent_invites_for_one_pair_create_one_assignment() -> None:
    engine = make_engine()

    with ThreadPoolExecutor(max_workers=8) as pool:
        results = list(pool.map(lambda _: engine.invite("ms-1", "rev-ada", DUE), range(16)))

    assert len({item.id for item in results}) == 1
    assert engine.tracker.settings("rev-ada").current_assignments == 1


def test_invite_validation() -> None:
    engine = make_engine()

    with pytest.raises(ValueError):
        engine.invite("ms-1", "rev-ada", NOW)
    with pytest.raises(NotFound):
        engine.invite("ms-404", "rev-ada", DUE)
    with pytest.raises(NotFound):
        engine.invite("ms-1", "rev-404", DUE)


def test_non_blocking_conflicts_travel_as_warnings() -> None:
    engine = make_engine()

    assignment = engine.invite("ms-1", "rev-cy", DUE)

    assert assignment.conflict_warnings == ("high:coauthorship_recent:auth-1",)


def test_conflict_override_clears_warning() -> None:
    engine = make_engine()

    override = engine.record_conflict_override("ms-2", "rev-cy", ConflictType.COAUTHORSHIP_RECENT, "Paper was a 200-author consortium")
    assignment = engine.invite("ms-2", "rev-cy", DUE)

    assert override.reason == "Paper was a 200-author consortium"
    assert assignment.conflict_warnings == ()
    assert ActivityKind.CONFLICT_OVERRIDDEN in kinds(engine)


def test_conflict_override_rejections() -> None:
    engine = make_engine()

    with pytest.raises(ConflictBlocked):
        engine.record_conflict_override("ms-1", "rev-ben", ConflictType.INSTITUTIONAL_CURRENT, "Different department")
    with pytest.raises(NotFound):
        engine.record_conflict_override("ms-1", "rev-ada", ConflictType.FINANCIAL_COMPETING, "Nothing to override")
    with pytest.raises(ValueError):
        engine.record_conflict_override("ms-1", "rev-cy", ConflictType.COAUTHORSHIP_RECENT, " ")


def test_priority_is_cached_and_invalidated_by_changes() -> None:
    engine = make_engine()

    assert engine.compute_priority("ms-1") is Priority.NORMAL
    assert "ms-1" in engine.priorities

    engine.invite("ms-1", "rev-ada", NOW + timedelta(days=1))
    assert "ms-1" not in engine.priorities
    engine.invite("ms-1", "rev-cy", NOW + timedelta(days=1))

    assert engine.compute_priority("ms-1", NOW + timedelta(days=2)) is Priority.HIGH


def test_priority_override_and_queue_order() -> None:
    engine = make_engine()

    assert engine.set_priority_override("ms-2", Priority.URGENT, "Special issue deadline") is Priority.URGENT
    assert engine.set_priority_override("ms-3", Priority.LOW, "Author requested a pause") is Priority.LOW

    ordered = engine.prioritized(["ms-3", "ms-1", "ms-2"])

    assert ordered == [("ms-2", Priority.URGENT), ("ms-1", Priority.NORMAL), ("ms-3", Priority.LOW)]
    assert kinds(engine).count(ActivityKind.PRIORITY_OVERRIDDEN) == 2
    assert engine.set_priority_override("ms-2", None, "Deadline passed") is Priority.NORMAL


def test_cached_priority_follows_manuscript_status_changes() -> None:
    manuscript = replace(MANUSCRIPTS[0], created_at=NOW - timedelta(days=40), updated_at=NOW - timedelta(days=40))
    manuscripts = InMemoryManuscripts([manuscript])
    engine = ReviewAssignmentEngine(
        manuscripts,
        InMemoryReviewers(REVIEWERS),
        InMemoryWorkloadStore(),
        InMemoryAssignments(),
        clock=lambda: NOW,
    )

    assert engine.compute_priority("ms-1") is Priority.NORMAL

    manuscripts.add(replace(manuscript, status=ManuscriptStatus.AWAITING_DECISION))

    assert engine.compute_priority("ms-1", NOW + timedelta(minutes=1)) is Priority.HIGH


def test_conflict_evidence_marks_overridden_items() -> None:
    engine = make_engine()
    engine.record_conflict_override("ms-2", "rev-cy", ConflictType.COAUTHORSHIP_RECENT, "Consortium paper")

    evidence = engine.conflict_evidence("ms-2", ["rev-ada", "rev-ben", "rev-cy", "rev-cy"])

    assert [(item.reviewer_id, item.type, item.overridden) for item in evidence] == [
        ("rev-ben", ConflictType.INSTITUTIONAL_CURRENT, False),
        ("rev-cy", ConflictType.COAUTHORSHIP_RECENT, True),
    ]
    with pytest.raises(NotFound):
        engine.conflict_evidence("ms-2", ["rev-404"])
