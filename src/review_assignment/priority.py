from __future__ import annotations

import threading
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Iterable

from .models import (
    AssignmentStatus,
    Manuscript,
    ManuscriptStatus,
    Priority,
    ReviewAssignment,
    utc,
)


def _whole_days(earlier: datetime, now: datetime) -> int:
    return int((utc(now) - utc(earlier)).total_seconds() // 86400)


def count_overdue_invitations(assignments: Iterable[ReviewAssignment], now: datetime) -> int:
    return sum(
        1
        for assignment in assignments
        if assignment.status is AssignmentStatus.INVITED and utc(assignment.due_date) < utc(now)
    )


def calculate_priority(
    manuscript: Manuscript,
    assignments: Iterable[ReviewAssignment],
    now: datetime,
) -> Priority:
    """Derive the operational priority of a manuscript.

    An editorial override wins outright; it is the only source of LOW.
    """
    if manuscript.priority_override is not None:
        return manuscript.priority_override

    days_since_created = _whole_days(_started_at(manuscript), now)
    days_since_updated = _whole_days(manuscript.updated_at, now)
    status = manuscript.status

    if status is ManuscriptStatus.REVISIONS_REQUESTED and days_since_updated > 60:
        return Priority.URGENT
    if status is ManuscriptStatus.AWAITING_DECISION and days_since_created > 45:
        return Priority.URGENT

    if status is ManuscriptStatus.REVISIONS_REQUESTED and days_since_updated > 45:
        return Priority.HIGH
    if status is ManuscriptStatus.AWAITING_DECISION and days_since_created > 30:
        return Priority.HIGH
    if status is ManuscriptStatus.IN_REVIEW and days_since_created > 45:
        return Priority.HIGH
    if count_overdue_invitations(assignments, now) > 1:
        return Priority.HIGH

    return Priority.NORMAL


def priority_sort_key(priority: Priority) -> int:
    return -priority.rank


def _started_at(manuscript: Manuscript) -> datetime:
    if manuscript.submitted_at is not None and utc(manuscript.submitted_at) > utc(manuscript.created_at):
        return manuscript.submitted_at
    return manuscript.created_at


def stale_after(
    manuscript: Manuscript,
    assignments: Iterable[ReviewAssignment],
    now: datetime,
) -> datetime:
    """Earliest instant at which the derived priority could change with time alone."""
    now = utc(now)
    boundaries = [
        utc(anchor) + timedelta(days=_whole_days(anchor, now) + 1)
        for anchor in (_started_at(manuscript), manuscript.updated_at)
    ]
    boundaries.extend(
        utc(assignment.due_date)
        for assignment in assignments
        if assignment.status is AssignmentStatus.INVITED and utc(assignment.due_date) >= now
    )
    return min(boundaries)


def manuscript_fingerprint(manuscript: Manuscript) -> tuple:
    """Fields of a manuscript that feed the derived priority."""
    return (
        manuscript.status,
        manuscript.created_at,
        manuscript.submitted_at,
        manuscript.updated_at,
        manuscript.priority_override,
    )


@dataclass(frozen=True)
class _CacheEntry:
    priority: Priority
    computed_at: datetime
    valid_until: datetime
    fingerprint: tuple = ()


class PriorityCache:
    """Stored priorities for sorting.

    An entry misses after it expires or is invalidated, and whenever the
    manuscript no longer matches the fingerprint it was computed from.
    """

    def __init__(self) -> None:
        self._entries: dict[str, _CacheEntry] = {}
        self._lock = threading.Lock()

    def get(self, manuscript_id: str, now: datetime, fingerprint: tuple = ()) -> Priority | None:
        now = utc(now)
        with self._lock:
            entry = self._entries.get(manuscript_id)
        if entry is None or not entry.computed_at <= now < entry.valid_until:
            return None
        if entry.fingerprint != fingerprint:
            return None
        return entry.priority

    def put(
        self,
        manuscript_id: str,
        priority: Priority,
        now: datetime,
        valid_until: datetime,
        fingerprint: tuple = (),
    ) -> None:
        with self._lock:
            self._entries[manuscript_id] = _CacheEntry(priority, utc(now), utc(valid_until), fingerprint)

    def invalidate(self, manuscript_id: str) -> None:
        with self._lock:
            self._entries.pop(manuscript_id, None)

    def __contains__(self, manuscript_id: str) -> bool:
        with self._lock:
            return manuscript_id in self._entries
