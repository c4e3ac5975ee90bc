from __future__ import annotations

import threading
from dataclasses import replace
from datetime import datetime
from typing import Iterable, Protocol

from .conflicts import ConflictOverride
from .errors import DuplicateAssignment, NotFound
from .models import AssignmentStatus, Manuscript, Priority, ReviewAssignment, Reviewer
from .workload import WorkloadSettings


class ManuscriptDirectory(Protocol):
    def get(self, manuscript_id: str) -> Manuscript: ...

    def set_priority_override(self, manuscript_id: str, priority: Priority | None) -> Manuscript: ...


class ReviewerDirectory(Protocol):
    def get(self, reviewer_id: str) -> Reviewer: ...


class WorkloadStore(Protocol):
    def get(self, reviewer_id: str) -> WorkloadSettings: ...

    def put(self, settings: WorkloadSettings) -> None: ...

    def compare_and_swap(self, expected_version: int, settings: WorkloadSettings) -> bool: ...


class AssignmentStore(Protocol):
    def get(self, assignment_id: str) -> ReviewAssignment: ...

    def add(self, assignment: ReviewAssignment) -> None: ...

    def compare_and_swap(self, expected_status: AssignmentStatus, assignment: ReviewAssignment) -> bool: ...

    def for_manuscript(self, manuscript_id: str) -> list[ReviewAssignment]: ...

    def for_reviewer(self, reviewer_id: str) -> list[ReviewAssignment]: ...

    def overdue(self, now: datetime) -> list[ReviewAssignment]: ...


class OverrideStore(Protocol):
    def record(self, override: ConflictOverride) -> None: ...

    def for_pair(self, manuscript_id: str, reviewer_id: str) -> list[ConflictOverride]: ...


class InMemoryManuscripts:
    def __init__(self, manuscripts: Iterable[Manuscript] = ()) -> None:
        self._items = {manuscript.id: manuscript for manuscript in manuscripts}
        self._lock = threading.Lock()

    def add(self, manuscript: Manuscript) -> None:
        with self._lock:
            self._items[manuscript.id] = manuscript

    def get(self, manuscript_id: str) -> Manuscript:
        with self._lock:
            if manuscript_id not in self._items:
                raise NotFound("manuscript", manuscript_id)
            return self._items[manuscript_id]

    def all(self) -> list[Manuscript]:
        with self._lock:
            return list(self._items.values())

    def set_priority_override(self, manuscript_id: str, priority: Priority | None) -> Manuscript:
        with self._lock:
            if manuscript_id not in self._items:
                raise NotFound("manuscript", manuscript_id)
            updated = replace(self._items[manuscript_id], priority_override=priority)
            self._items[manuscript_id] = updated
            return updated


class InMemoryReviewers:
    def __init__(self, reviewers: Iterable[Reviewer] = ()) -> None:
        self._items = {reviewer.id: reviewer for reviewer in reviewers}

    def add(self, reviewer: Reviewer) -> None:
        self._items[reviewer.id] = reviewer

    def get(self, reviewer_id: str) -> Reviewer:
        if reviewer_id not in self._items:
            raise NotFound("reviewer", reviewer_id)
        return self._items[reviewer_id]


class InMemoryWorkloadStore:
    def __init__(self, settings: Iterable[WorkloadSettings] = ()) -> None:
        self._items = {item.reviewer_id: item for item in settings}
        self._lock = threading.Lock()

    def get(self, reviewer_id: str) -> WorkloadSettings:
        with self._lock:
            if reviewer_id not in self._items:
                raise NotFound("workload settings", reviewer_id)
            return self._items[reviewer_id]

    def put(self, settings: WorkloadSettings) -> None:
        with self._lock:
            self._items[settings.reviewer_id] = settings

    def compare_and_swap(self, expected_version: int, settings: WorkloadSettings) -> bool:
        with self._lock:
            current = self._items.get(settings.reviewer_id)
            if current is None:
                raise NotFound("workload settings", settings.reviewer_id)
            if current.version != expected_version:
                return False
            self._items[settings.reviewer_id] = settings
            return True


class InMemoryAssignments:
    def __init__(self) -> None:
        self._items: dict[str, ReviewAssignment] = {}
        self._lock = threading.Lock()

    def get(self, assignment_id: str) -> ReviewAssignment:
        with self._lock:
            if assignment_id not in self._items:
                raise NotFound("assignment", assignment_id)
            return self._items[assignment_id]

    def add(self, assignment: ReviewAssignment) -> None:
        with self._lock:
            if assignment.id in self._items:
                raise ValueError(f"Assignment {assignment.id} already exists")
            if assignment.is_open and any(
                item.is_open
                and item.manuscript_id == assignment.manuscript_id
                and item.reviewer_id == assignment.reviewer_id
                for item in self._items.values()
            ):
                raise DuplicateAssignment(assignment.manuscript_id, assignment.reviewer_id)
            self._items[assignment.id] = assignment

    def compare_and_swap(self, expected_status: AssignmentStatus, assignment: ReviewAssignment) -> bool:
        with self._lock:
            current = self._items.get(assignment.id)
            if current is None:
                raise NotFound("assignment", assignment.id)
            if current.status is not expected_status:
                return False
            self._items[assignment.id] = assignment
            return True

    def _select(self, predicate) -> list[ReviewAssignment]:
        with self._lock:
            items = [item for item in self._items.values() if predicate(item)]
        items.sort(key=lambda item: (item.invited_at, item.id))
        return items

    def for_manuscript(self, manuscript_id: str) -> list[ReviewAssignment]:
        return self._select(lambda item: item.manuscript_id == manuscript_id)

    def for_reviewer(self, reviewer_id: str) -> list[ReviewAssignment]:
        return self._select(lambda item: item.reviewer_id == reviewer_id)

    def overdue(self, now: datetime) -> list[ReviewAssignment]:
        return self._select(lambda item: item.is_overdue(now))


class InMemoryOverrides:
    def __init__(self) -> None:
        self._items: list[ConflictOverride] = []
        self._lock = threading.Lock()

    def record(self, override: ConflictOverride) -> None:
        with self._lock:
            self._items.append(override)

    def for_pair(self, manuscript_id: str, reviewer_id: str) -> list[ConflictOverride]:
        with self._lock:
            return [
                item
                for item in self._items
                if item.manuscript_id == manuscript_id and item.reviewer_id == reviewer_id
            ]
