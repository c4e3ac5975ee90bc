from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Callable, Iterable, Mapping, Sequence

from .config import EngineConfig
from .conflicts import (
    ConflictEvidence,
    ConflictOverride,
    apply_overrides,
    evaluate_conflicts,
    is_eligible,
    risk_score,
    warnings_for,
)
from .errors import NotFound
from .models import Manuscript, ReviewAssignment, Reviewer
from .scoring import ScoreBreakdown, availability_score, score_reviewer, summarize_history
from .workload import WorkloadSnapshot, WorkloadTracker


@dataclass(frozen=True)
class CandidateResult:
    reviewer_id: str
    name: str
    relevance_score: float
    availability_score: float
    recent_reviews: int
    conflicts: tuple[ConflictEvidence, ...]
    eligible: bool
    risk_score: int
    workload: WorkloadSnapshot | None
    warnings: tuple[str, ...]
    breakdown: ScoreBreakdown

    @property
    def assignable(self) -> bool:
        return self.eligible and self.workload is not None


def _workload_warnings(snapshot: WorkloadSnapshot | None) -> list[str]:
    if snapshot is None:
        return ["workload:missing_settings"]
    warnings: list[str] = []
    if snapshot.capacity_remaining <= 0:
        warnings.append("workload:at_capacity")
    if snapshot.blackout_overlap:
        warnings.append("workload:blackout")
    if snapshot.auto_decline:
        warnings.append("workload:auto_decline")
    if snapshot.availability.value != "available":
        warnings.append(f"availability:{snapshot.availability.value}")
    return warnings


def candidate_sort_key(candidate: CandidateResult) -> tuple:
    return (
        -candidate.relevance_score,
        -candidate.availability_score,
        candidate.recent_reviews,
        candidate.reviewer_id,
    )


def rank_candidates(
    manuscript: Manuscript,
    reviewers: Iterable[Reviewer],
    tracker: WorkloadTracker,
    now: datetime,
    *,
    histories: Mapping[str, Sequence[ReviewAssignment]] | None = None,
    overrides_for: Callable[[str], Iterable[ConflictOverride]] | None = None,
    due_date: datetime | None = None,
    show_blocked: bool = False,
    config: EngineConfig | None = None,
) -> list[CandidateResult]:
    config = config or EngineConfig()
    histories = histories or {}
    eligible: list[CandidateResult] = []
    blocked: list[CandidateResult] = []

    for reviewer in reviewers:
        evidence = evaluate_conflicts(manuscript, reviewer, now, config)
        if overrides_for is not None:
            evidence = apply_overrides(evidence, overrides_for(reviewer.id))
        reviewer_eligible = is_eligible(evidence)
        if not reviewer_eligible and not show_blocked:
            continue

        history = None
        recent_reviews = reviewer.recent_review_count
        if reviewer.id in histories:
            history = summarize_history(histories[reviewer.id], now, config.history_window_days)
            recent_reviews = history.completed
        availability = availability_score(reviewer, history)
        breakdown = score_reviewer(manuscript, reviewer, availability)

        try:
            settings = tracker.settings(reviewer.id)
            window_end = due_date or now + timedelta(days=settings.preferred_deadline_days)
            snapshot = tracker.snapshot(reviewer.id, reviewer.availability, now, window_end)
        except NotFound:
            snapshot = None

        result = CandidateResult(
            reviewer_id=reviewer.id,
            name=reviewer.name,
            relevance_score=breakdown.total,
            availability_score=availability,
            recent_reviews=recent_reviews,
            conflicts=tuple(evidence),
            eligible=reviewer_eligible,
            risk_score=risk_score(evidence),
            workload=snapshot,
            warnings=tuple(warnings_for(evidence) + _workload_warnings(snapshot)),
            breakdown=breakdown,
        )
        (eligible if reviewer_eligible else blocked).append(result)

    eligible.sort(key=candidate_sort_key)
    blocked.sort(key=candidate_sort_key)
    return eligible + blocked
