from __future__ import annotations

from datetime import datetime
from typing import Callable, Iterable

from .activity import ActivityEvent, ActivityKind, ActivityLog, ActivitySink
from .config import EngineConfig
from .conflicts import (
    ConflictEvidence,
    ConflictOverride,
    ConflictType,
    apply_overrides,
    evaluate_conflicts,
)
from .errors import ConflictBlocked, NotFound
from .models import Priority, ReviewAssignment, utc, utc_now
from .orchestrator import AssignmentOrchestrator
from .priority import (
    PriorityCache,
    calculate_priority,
    manuscript_fingerprint,
    priority_sort_key,
    stale_after,
)
from .ranking import CandidateResult, rank_candidates
from .stores import (
    AssignmentStore,
    InMemoryOverrides,
    ManuscriptDirectory,
    OverrideStore,
    ReviewerDirectory,
    WorkloadStore,
)
from .workload import WorkloadSettings, WorkloadTracker


class ReviewAssignmentEngine:
    """Public surface of the reviewer assignment engine.

    Wires the ranker, the workload tracker, the orchestrator and the
    priority calculator over caller-supplied stores. Every operation is a
    short synchronous unit of work; errors from ``errors.py`` propagate to
    the caller.
    """

    def __init__(
        self,
        manuscripts: ManuscriptDirectory,
        reviewers: ReviewerDirectory,
        workload: WorkloadStore,
        assignments: AssignmentStore,
        *,
        activity: ActivitySink | None = None,
        overrides: OverrideStore | None = None,
        config: EngineConfig | None = None,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self._manuscripts = manuscripts
        self._reviewers = reviewers
        self._workload = workload
        self._assignments = assignments
        self.activity = activity if activity is not None else ActivityLog()
        self._overrides = overrides if overrides is not None else InMemoryOverrides()
        self._config = config or EngineConfig()
        self._clock = clock
        self.tracker = WorkloadTracker(workload)
        self.priorities = PriorityCache()
        self.orchestrator = AssignmentOrchestrator(
            manuscripts,
            reviewers,
            self.tracker,
            assignments,
            self.activity,
            overrides=self._overrides,
            config=self._config,
            clock=clock,
            on_change=self.priorities.invalidate,
        )

    def _now(self, now: datetime | None) -> datetime:
        return utc(now or self._clock())

    def register_workload(self, settings: WorkloadSettings) -> None:
        self._workload.put(settings)

    def rank_candidates(
        self,
        manuscript_id: str,
        candidate_reviewer_ids: Iterable[str],
        *,
        due_date: datetime | None = None,
        show_blocked: bool = False,
        now: datetime | None = None,
    ) -> list[CandidateResult]:
        now = self._now(now)
        manuscript = self._manuscripts.get(manuscript_id)
        reviewers = [self._reviewers.get(reviewer_id) for reviewer_id in dict.fromkeys(candidate_reviewer_ids)]
        histories = {reviewer.id: self._assignments.for_reviewer(reviewer.id) for reviewer in reviewers}
        return rank_candidates(
            manuscript,
            reviewers,
            self.tracker,
            now,
            histories=histories,
            overrides_for=lambda reviewer_id: self._overrides.for_pair(manuscript_id, reviewer_id),
            due_date=due_date,
            show_blocked=show_blocked,
            config=self._config,
        )

    def conflict_evidence(
        self,
        manuscript_id: str,
        reviewer_ids: Iterable[str],
        now: datetime | None = None,
    ) -> list[ConflictEvidence]:
        """Conflict evidence for each reviewer, with recorded overrides applied."""
        now = self._now(now)
        manuscript = self._manuscripts.get(manuscript_id)
        evidence: list[ConflictEvidence] = []
        for reviewer_id in dict.fromkeys(reviewer_ids):
            reviewer = self._reviewers.get(reviewer_id)
            evidence.extend(
                apply_overrides(
                    evaluate_conflicts(manuscript, reviewer, now, self._config),
                    self._overrides.for_pair(manuscript_id, reviewer_id),
                )
            )
        return evidence

    def invite(
        self,
        manuscript_id: str,
        reviewer_id: str,
        due_date: datetime,
        *,
        override_capacity: bool = False,
        override_reason: str | None = None,
        now: datetime | None = None,
    ) -> ReviewAssignment:
        return self.orchestrator.invite(
            manuscript_id,
            reviewer_id,
            due_date,
            override_capacity=override_capacity,
            override_reason=override_reason,
            now=now,
        )

    def accept(self, assignment_id: str, *, now: datetime | None = None) -> ReviewAssignment:
        return self.orchestrator.accept(assignment_id, now=now)

    def decline(self, assignment_id: str, reason: str, *, now: datetime | None = None) -> ReviewAssignment:
        return self.orchestrator.decline(assignment_id, reason, now=now)

    def complete(self, assignment_id: str, *, now: datetime | None = None) -> ReviewAssignment:
        return self.orchestrator.complete(assignment_id, now=now)

    def expire_overdue(self, now: datetime | None = None) -> list[ReviewAssignment]:
        return self.orchestrator.expire_overdue(self._now(now))

    def compute_priority(self, manuscript_id: str, now: datetime | None = None) -> Priority:
        now = self._now(now)
        manuscript = self._manuscripts.get(manuscript_id)
        fingerprint = manuscript_fingerprint(manuscript)
        cached = self.priorities.get(manuscript_id, now, fingerprint)
        if cached is not None:
            return cached
        assignments = self._assignments.for_manuscript(manuscript_id)
        priority = calculate_priority(manuscript, assignments, now)
        self.priorities.put(
            manuscript_id,
            priority,
            now,
            stale_after(manuscript, assignments, now),
            fingerprint,
        )
        return priority

    def prioritized(self, manuscript_ids: Iterable[str], now: datetime | None = None) -> list[tuple[str, Priority]]:
        now = self._now(now)
        ranked = [(manuscript_id, self.compute_priority(manuscript_id, now)) for manuscript_id in manuscript_ids]
        ranked.sort(key=lambda item: priority_sort_key(item[1]))
        return ranked

    def set_priority_override(
        self,
        manuscript_id: str,
        priority: Priority | None,
        reason: str,
        *,
        now: datetime | None = None,
    ) -> Priority:
        now = self._now(now)
        self._manuscripts.set_priority_override(manuscript_id, priority)
        self.priorities.invalidate(manuscript_id)
        self.activity.record(
            ActivityEvent(
                manuscript_id=manuscript_id,
                kind=ActivityKind.PRIORITY_OVERRIDDEN,
                occurred_at=now,
                detail={"priority": priority.value if priority else None, "reason": reason},
            )
        )
        return self.compute_priority(manuscript_id, now)

    def record_conflict_override(
        self,
        manuscript_id: str,
        reviewer_id: str,
        conflict_type: ConflictType,
        reason: str,
        *,
        now: datetime | None = None,
    ) -> ConflictOverride:
        now = self._now(now)
        if not (reason or "").strip():
            raise ValueError("A conflict override must carry a reason")
        manuscript = self._manuscripts.get(manuscript_id)
        reviewer = self._reviewers.get(reviewer_id)
        matching = [
            item
            for item in evaluate_conflicts(manuscript, reviewer, now, self._config)
            if item.type is conflict_type
        ]
        if not matching:
            raise NotFound("conflict", f"{conflict_type.value} between {reviewer_id} and {manuscript_id}")
        if any(item.is_blocking for item in matching):
            raise ConflictBlocked(reviewer_id, manuscript_id, [conflict_type.value])

        override = ConflictOverride(
            manuscript_id=manuscript_id,
            reviewer_id=reviewer_id,
            conflict_type=conflict_type,
            reason=reason,
            recorded_at=now,
        )
        self._overrides.record(override)
        self.activity.record(
            ActivityEvent(
                manuscript_id=manuscript_id,
                kind=ActivityKind.CONFLICT_OVERRIDDEN,
                occurred_at=now,
                reviewer_id=reviewer_id,
                detail={"conflict_type": conflict_type.value, "reason": reason},
            )
        )
        return override
