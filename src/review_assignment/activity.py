from __future__ import annotations

import threading
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Protocol


class ActivityKind(str, Enum):
    REVIEWER_INVITED = "reviewer_invited"
    INVITATION_AUTO_DECLINED = "invitation_auto_declined"
    INVITATION_ACCEPTED = "invitation_accepted"
    INVITATION_DECLINED = "invitation_declined"
    REVIEW_COMPLETED = "review_completed"
    INVITATION_EXPIRED = "invitation_expired"
    CAPACITY_OVERRIDDEN = "capacity_overridden"
    CONFLICT_OVERRIDDEN = "conflict_overridden"
    PRIORITY_OVERRIDDEN = "priority_overridden"


@dataclass(frozen=True)
class ActivityEvent:
    manuscript_id: str
    kind: ActivityKind
    occurred_at: datetime
    reviewer_id: str | None = None
    assignment_id: str | None = None
    detail: dict[str, Any] = field(default_factory=dict)


class ActivitySink(Protocol):
    def record(self, event: ActivityEvent) -> None: ...


class ActivityLog:
    """Append-only editorial history kept in memory."""

    def __init__(self) -> None:
        self._events: list[ActivityEvent] = []
        self._lock = threading.Lock()

    def record(self, event: ActivityEvent) -> None:
        with self._lock:
            self._events.append(event)

    def events(self) -> list[ActivityEvent]:
        with self._lock:
            return list(self._events)

    def for_manuscript(self, manuscript_id: str) -> list[ActivityEvent]:
        return [event for event in self.events() if event.manuscript_id == manuscript_id]

    def __len__(self) -> int:
        with self._lock:
            return len(self._events)
