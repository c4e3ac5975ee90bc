from __future__ import annotations


class EngineError(Exception):
    """Base class for errors raised by the assignment engine."""


class NotFound(EngineError):
    def __init__(self, kind: str, identifier: str) -> None:
        super().__init__(f"Unknown {kind}: {identifier}")
        self.kind = kind
        self.identifier = identifier


class ConflictBlocked(EngineError):
    """A blocking conflict of interest; never overridable."""

    def __init__(self, reviewer_id: str, manuscript_id: str, conflict_types: list[str]) -> None:
        joined = ", ".join(conflict_types)
        super().__init__(
            f"Reviewer {reviewer_id} has a blocking conflict on manuscript {manuscript_id}: {joined}"
        )
        self.reviewer_id = reviewer_id
        self.manuscript_id = manuscript_id
        self.conflict_types = conflict_types


class CapacityExceeded(EngineError):
    def __init__(self, reviewer_id: str, current: int, capacity: int) -> None:
        super().__init__(
            f"Reviewer {reviewer_id} is at capacity ({current}/{capacity}); override requires a reason"
        )
        self.reviewer_id = reviewer_id
        self.current = current
        self.capacity = capacity


class DuplicateAssignment(EngineError):
    """An open assignment already exists for the manuscript/reviewer pair."""

    def __init__(self, manuscript_id: str, reviewer_id: str) -> None:
        super().__init__(f"Reviewer {reviewer_id} already has an open assignment on manuscript {manuscript_id}")
        self.manuscript_id = manuscript_id
        self.reviewer_id = reviewer_id


class StateError(EngineError):
    def __init__(self, assignment_id: str, current: str, target: str) -> None:
        super().__init__(f"Illegal transition for assignment {assignment_id}: {current} -> {target}")
        self.assignment_id = assignment_id
        self.current = current
        self.target = target
