from __future__ import annotations

import logging
import threading
import uuid
from dataclasses import replace
from datetime import datetime
from typing import Any, Callable

from .activity import ActivityEvent, ActivityKind, ActivitySink
from .config import EngineConfig
from .conflicts import apply_overrides, blocking_types, evaluate_conflicts, warnings_for
from .errors import ConflictBlocked, DuplicateAssignment, StateError
from .models import AssignmentStatus, ReviewAssignment, utc, utc_now
from .stores import AssignmentStore, ManuscriptDirectory, OverrideStore, ReviewerDirectory
from .workload import WorkloadTracker

logger = logging.getLogger(__name__)

AUTO_DECLINED = "auto_declined"

PAIR_LOCK_STRIPES = 64

_TRANSITIONS: set[tuple[AssignmentStatus, AssignmentStatus]] = {
    (AssignmentStatus.INVITED, AssignmentStatus.ACCEPTED),
    (AssignmentStatus.INVITED, AssignmentStatus.DECLINED),
    (AssignmentStatus.INVITED, AssignmentStatus.EXPIRED),
    (AssignmentStatus.ACCEPTED, AssignmentStatus.COMPLETED),
}

_RELEASING = frozenset({AssignmentStatus.DECLINED, AssignmentStatus.COMPLETED, AssignmentStatus.EXPIRED})

_EVENT_KINDS = {
    AssignmentStatus.ACCEPTED: ActivityKind.INVITATION_ACCEPTED,
    AssignmentStatus.DECLINED: ActivityKind.INVITATION_DECLINED,
    AssignmentStatus.COMPLETED: ActivityKind.REVIEW_COMPLETED,
    AssignmentStatus.EXPIRED: ActivityKind.INVITATION_EXPIRED,
}


def is_legal_transition(current: AssignmentStatus, target: AssignmentStatus) -> bool:
    return (current, target) in _TRANSITIONS


class AssignmentOrchestrator:
    """Owns the invitation lifecycle.

    Transitions are fail-closed and idempotent by assignment id: re-applying
    the transition that produced the current status returns the assignment
    unchanged. Capacity is released exactly once, by whichever caller wins
    the status compare-and-swap.
    """

    def __init__(
        self,
        manuscripts: ManuscriptDirectory,
        reviewers: ReviewerDirectory,
        tracker: WorkloadTracker,
        assignments: AssignmentStore,
        activity: ActivitySink,
        *,
        overrides: OverrideStore | None = None,
        config: EngineConfig | None = None,
        clock: Callable[[], datetime] = utc_now,
        on_change: Callable[[str], None] | None = None,
    ) -> None:
        self._manuscripts = manuscripts
        self._reviewers = reviewers
        self._tracker = tracker
        self._assignments = assignments
        self._activity = activity
        self._overrides = overrides
        self._config = config or EngineConfig()
        self._clock = clock
        self._on_change = on_change
        self._pair_locks = [threading.Lock() for _ in range(PAIR_LOCK_STRIPES)]

    def _pair_lock(self, manuscript_id: str, reviewer_id: str) -> threading.Lock:
        # Fixed stripe count; distinct pairs may share a lock.
        return self._pair_locks[hash((manuscript_id, reviewer_id)) % PAIR_LOCK_STRIPES]

    def _emit(
        self,
        kind: ActivityKind,
        assignment: ReviewAssignment,
        now: datetime,
        **detail: Any,
    ) -> None:
        self._activity.record(
            ActivityEvent(
                manuscript_id=assignment.manuscript_id,
                kind=kind,
                occurred_at=now,
                reviewer_id=assignment.reviewer_id,
                assignment_id=assignment.id,
                detail=detail,
            )
        )

    def _open_assignment(self, manuscript_id: str, reviewer_id: str) -> ReviewAssignment | None:
        for item in self._assignments.for_manuscript(manuscript_id):
            if item.reviewer_id == reviewer_id and item.is_open:
                return item
        return None

    def _changed(self, manuscript_id: str) -> None:
        if self._on_change is not None:
            self._on_change(manuscript_id)

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
        now = utc(now or self._clock())
        if override_capacity and not (override_reason or "").strip():
            raise ValueError("A capacity override must carry a reason")
        if utc(due_date) <= now:
            raise ValueError(f"Due date {due_date.isoformat()} is not in the future")

        manuscript = self._manuscripts.get(manuscript_id)
        reviewer = self._reviewers.get(reviewer_id)
        settings = self._tracker.settings(reviewer_id)

        evidence = evaluate_conflicts(manuscript, reviewer, now, self._config)
        if self._overrides is not None:
            evidence = apply_overrides(evidence, self._overrides.for_pair(manuscript_id, reviewer_id))
        blocked = blocking_types(evidence)
        if blocked:
            raise ConflictBlocked(reviewer_id, manuscript_id, blocked)
        warnings = tuple(warnings_for(evidence))

        with self._pair_lock(manuscript_id, reviewer_id):
            previous = [
                item for item in self._assignments.for_manuscript(manuscript_id) if item.reviewer_id == reviewer_id
            ]
            for item in previous:
                if item.is_open:
                    logger.debug("Invitation %s already open for %s/%s", item.id, manuscript_id, reviewer_id)
                    return item

            base = ReviewAssignment(
                id=str(uuid.uuid4()),
                manuscript_id=manuscript_id,
                reviewer_id=reviewer_id,
                status=AssignmentStatus.INVITED,
                invited_at=now,
                due_date=utc(due_date),
                round=len(previous) + 1,
                conflict_warnings=warnings,
            )

            matched = self._tracker.matching_rules(reviewer_id, due_date, now)
            blacked_out = self._tracker.is_blacked_out(reviewer_id, now)
            if matched or blacked_out:
                declined = replace(
                    base,
                    status=AssignmentStatus.DECLINED,
                    responded_at=now,
                    decline_reason=AUTO_DECLINED,
                )
                self._assignments.add(declined)
                self._emit(
                    ActivityKind.INVITATION_AUTO_DECLINED,
                    declined,
                    now,
                    rules=[rule.id for rule in matched],
                    blackout=blacked_out,
                    workload_percentage=round(settings.workload_percentage, 2),
                )
                self._changed(manuscript_id)
                return declined

            reservation = self._tracker.reserve(
                reviewer_id,
                override=override_capacity,
                reason=override_reason,
            )
            invited = replace(base, override_reason=reservation.reason)
            try:
                self._assignments.add(invited)
            except DuplicateAssignment:
                self._tracker.release(reviewer_id)
                existing = self._open_assignment(manuscript_id, reviewer_id)
                if existing is None:
                    raise
                logger.info(
                    "Invitation %s for %s/%s was opened concurrently; returning it",
                    existing.id,
                    manuscript_id,
                    reviewer_id,
                )
                return existing
            except Exception:
                self._tracker.release(reviewer_id)
                raise

        self._emit(
            ActivityKind.REVIEWER_INVITED,
            invited,
            now,
            due_date=invited.due_date.isoformat(),
            round=invited.round,
            conflict_warnings=list(warnings),
        )
        if reservation.overridden:
            self._emit(
                ActivityKind.CAPACITY_OVERRIDDEN,
                invited,
                now,
                reason=reservation.reason,
                current_assignments=reservation.current_assignments,
                monthly_capacity=reservation.monthly_capacity,
            )
        self._changed(manuscript_id)
        return invited

    def _transition(
        self,
        assignment_id: str,
        target: AssignmentStatus,
        now: datetime,
        detail: dict[str, Any],
        **changes: Any,
    ) -> ReviewAssignment:
        while True:
            current = self._assignments.get(assignment_id)
            if current.status is target:
                return current
            if not is_legal_transition(current.status, target):
                raise StateError(assignment_id, current.status.value, target.value)
            if target is AssignmentStatus.EXPIRED and not current.is_overdue(now):
                raise StateError(assignment_id, "invited (not yet due)", target.value)
            updated = replace(current, status=target, **changes)
            if self._assignments.compare_and_swap(current.status, updated):
                break
            logger.debug("Assignment %s changed concurrently; re-reading", assignment_id)

        if target in _RELEASING:
            self._tracker.release(updated.reviewer_id)
        self._emit(_EVENT_KINDS[target], updated, now, previous=current.status.value, **detail)
        self._changed(updated.manuscript_id)
        return updated

    def accept(self, assignment_id: str, *, now: datetime | None = None) -> ReviewAssignment:
        now = utc(now or self._clock())
        return self._transition(assignment_id, AssignmentStatus.ACCEPTED, now, {}, responded_at=now)

    def decline(self, assignment_id: str, reason: str, *, now: datetime | None = None) -> ReviewAssignment:
        now = utc(now or self._clock())
        reason = (reason or "").strip() or "declined"
        return self._transition(
            assignment_id,
            AssignmentStatus.DECLINED,
            now,
            {"reason": reason},
            responded_at=now,
            decline_reason=reason,
        )

    def complete(self, assignment_id: str, *, now: datetime | None = None) -> ReviewAssignment:
        now = utc(now or self._clock())
        return self._transition(assignment_id, AssignmentStatus.COMPLETED, now, {}, completed_at=now)

    def expire(self, assignment_id: str, *, now: datetime | None = None) -> ReviewAssignment:
        now = utc(now or self._clock())
        return self._transition(assignment_id, AssignmentStatus.EXPIRED, now, {})

    def expire_overdue(self, now: datetime | None = None) -> list[ReviewAssignment]:
        now = utc(now or self._clock())
        expired: list[ReviewAssignment] = []
        for assignment in self._assignments.overdue(now):
            try:
                expired.append(self.expire(assignment.id, now=now))
            except StateError as exc:
                # answered between the sweep query and the transition
                logger.info("Skipping expiry of %s: %s", assignment.id, exc)
        return expired
