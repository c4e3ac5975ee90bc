from datetime import datetime, timedelta, timezone

from review_assignment.models import (
    AssignmentStatus,
    AvailabilityStatus,
    Manuscript,
    ManuscriptStatus,
    ReviewAssignment,
    Reviewer,
)
from review_assignment.scoring import (
    ReviewHistory,
    availability_score,
    relevance_score,
    score_reviewer,
    summarize_history,
)

NOW = datetime(2026, 3, 2, tzinfo=timezone.utc)


def make_manuscript(**changes) -> Manuscript:
    values = dict(
        id="ms-1",
        field_of_study="Biology",
        subfield="Genomics",
        keywords=("CRISPR", "sequencing"),
        author_id="auth-1",
        status=ManuscriptStatus.SUBMITTED,
        created_at=NOW,
        updated_at=NOW,
    )
    values.update(changes)
    return Manuscript(**values)


def make_assignment(index: int, status: AssignmentStatus, invited_days_ago: int) -> ReviewAssignment:
    invited_at = NOW - timedelta(days=invited_days_ago)
    return ReviewAssignment(
        id=f"a-{index}",
        manuscript_id=f"ms-{index}",
        reviewer_id="rev-1",
        status=status,
        invited_at=invited_at,
        due_date=invited_at + timedelta(days=21),
        completed_at=invited_at + timedelta(days=10) if status is AssignmentStatus.COMPLETED else None,
    )


def test_field_match_scores_at_least_forty() -> None:
    manuscript = make_manuscript(field_of_study="Computer Science", subfield=None, keywords=())
    reviewer = Reviewer(id="rev-1", name="Ada", expertise=("Computer Science", "Machine Learning"))

    assert relevance_score(manuscript, reviewer, availability_score(reviewer)) >= 40


def test_score_breakdown_components() -> None:
    reviewer = Reviewer(
        id="rev-1",
        name="Grace",
        expertise=("biology", "GENOMICS", "crispr gene editing"),
        h_index=5,
    )

    breakdown = score_reviewer(make_manuscript(), reviewer, availability=80)

    assert breakdown.field_match == 40
    assert breakdown.subfield_match == 30
    assert breakdown.keyword_matches == ("CRISPR",)
    assert breakdown.quality_bonus == 5
    assert breakdown.availability_bonus == 8
    assert breakdown.total == 93


def test_score_is_capped_at_one_hundred() -> None:
    manuscript = make_manuscript(keywords=("crispr", "Crispr", "genome", "editing", "cells"))
    reviewer = Reviewer(
        id="rev-1",
        name="Prolific",
        expertise=("Biology", "Genomics", "crispr genome editing in cells"),
        h_index=85,
    )

    breakdown = score_reviewer(manuscript, reviewer, availability=100)

    assert breakdown.quality_bonus == 20
    assert len(breakdown.keyword_matches) == 4
    assert breakdown.total == 100


def test_unrelated_reviewer_scores_only_bonuses() -> None:
    reviewer = Reviewer(id="rev-1", name="Historian", expertise=("History",), h_index=3)

    assert relevance_score(make_manuscript(), reviewer, 50) == 8


def test_availability_from_history() -> None:
    reviewer = Reviewer(id="rev-1", name="Lin")

    assert availability_score(reviewer) == 100
    assert availability_score(reviewer, ReviewHistory(4, 1, 2, 1, None)) == 65
    assert availability_score(reviewer, ReviewHistory(6, 4, 0, 0, 12.0)) == 80
    assert availability_score(reviewer, ReviewHistory(10, 0, 10, 8, None)) == 0


def test_availability_status_adjustments() -> None:
    busy = Reviewer(id="rev-1", name="Busy", availability=AvailabilityStatus.BUSY, availability_score=70)
    away = Reviewer(id="rev-2", name="Away", availability=AvailabilityStatus.UNAVAILABLE, availability_score=90)

    assert availability_score(busy) == 35
    assert availability_score(away) == 0


def test_summarize_history_uses_window() -> None:
    assignments = [
        make_assignment(1, AssignmentStatus.COMPLETED, 30),
        make_assignment(2, AssignmentStatus.DECLINED, 60),
        make_assignment(3, AssignmentStatus.INVITED, 5),
        make_assignment(4, AssignmentStatus.COMPLETED, 400),
    ]

    history = summarize_history(assignments, NOW, window_days=365)

    assert history.total == 3
    assert history.completed == 1
    assert history.declined == 1
    assert history.pending == 1
    assert history.average_turnaround_days == 10
