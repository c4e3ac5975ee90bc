from __future__ import annotations

from dataclasses import dataclass, field
from datetime import date, datetime, timezone
from enum import Enum


class ManuscriptStatus(str, Enum):
    DRAFT = "draft"
    SUBMITTED = "submitted"
    WITH_EDITOR = "with_editor"
    IN_REVIEW = "in_review"
    REVISIONS_REQUESTED = "revisions_requested"
    AWAITING_DECISION = "awaiting_decision"
    ACCEPTED = "accepted"
    REJECTED = "rejected"
    PUBLISHED = "published"


_LEGACY_STATUSES = {
    "under_review": ManuscriptStatus.IN_REVIEW,
    "pending_decision": ManuscriptStatus.AWAITING_DECISION,
    "revision_requested": ManuscriptStatus.REVISIONS_REQUESTED,
}


def normalize_status(value: str | ManuscriptStatus) -> ManuscriptStatus:
    if isinstance(value, ManuscriptStatus):
        return value
    text = str(value or "").strip().lower()
    if text in _LEGACY_STATUSES:
        return _LEGACY_STATUSES[text]
    return ManuscriptStatus(text)


class AvailabilityStatus(str, Enum):
    AVAILABLE = "available"
    BUSY = "busy"
    UNAVAILABLE = "unavailable"


class AssignmentStatus(str, Enum):
    INVITED = "invited"
    ACCEPTED = "accepted"
    DECLINED = "declined"
    COMPLETED = "completed"
    EXPIRED = "expired"


OPEN_STATUSES = frozenset({AssignmentStatus.INVITED, AssignmentStatus.ACCEPTED})


class Priority(str, Enum):
    LOW = "low"
    NORMAL = "normal"
    HIGH = "high"
    URGENT = "urgent"

    @property
    def rank(self) -> int:
        return _PRIORITY_RANKS[self]


_PRIORITY_RANKS = {
    Priority.LOW: 0,
    Priority.NORMAL: 1,
    Priority.HIGH: 2,
    Priority.URGENT: 3,
}


def utc(timestamp: datetime) -> datetime:
    if timestamp.tzinfo is None:
        return timestamp.replace(tzinfo=timezone.utc)
    return timestamp


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


@dataclass(frozen=True)
class Affiliation:
    institution: str
    started_on: date | None = None
    ended_on: date | None = None

    @property
    def is_current(self) -> bool:
        return self.ended_on is None

    @property
    def key(self) -> str:
        return " ".join(self.institution.lower().split())


@dataclass(frozen=True)
class Coauthorship:
    coauthor_id: str
    published_on: date
    title: str = ""


@dataclass(frozen=True)
class AdvisorLink:
    person_id: str
    role: str = "advisor"


@dataclass(frozen=True)
class FinancialDisclosure:
    party_id: str
    description: str = ""


@dataclass(frozen=True)
class DeclaredConflict:
    author_id: str
    severity: str
    detail: str = ""


@dataclass(frozen=True)
class Manuscript:
    id: str
    field_of_study: str
    author_id: str
    status: ManuscriptStatus
    created_at: datetime
    updated_at: datetime
    subfield: str | None = None
    keywords: tuple[str, ...] = ()
    co_author_ids: tuple[str, ...] = ()
    author_affiliations: dict[str, tuple[Affiliation, ...]] = field(default_factory=dict)
    excluded_reviewer_ids: frozenset[str] = frozenset()
    submitted_at: datetime | None = None
    accepted_at: datetime | None = None
    published_at: datetime | None = None
    priority_override: Priority | None = None

    @property
    def author_ids(self) -> tuple[str, ...]:
        ordered = [self.author_id]
        ordered.extend(author for author in self.co_author_ids if author != self.author_id)
        return tuple(ordered)


@dataclass(frozen=True)
class Reviewer:
    id: str
    name: str
    expertise: tuple[str, ...] = ()
    h_index: float = 0.0
    total_publications: int = 0
    recent_review_count: int = 0
    average_turnaround_days: float | None = None
    availability: AvailabilityStatus = AvailabilityStatus.AVAILABLE
    availability_score: float | None = None
    affiliations: tuple[Affiliation, ...] = ()
    coauthorships: tuple[Coauthorship, ...] = ()
    advisor_links: tuple[AdvisorLink, ...] = ()
    financial_disclosures: tuple[FinancialDisclosure, ...] = ()
    declared_conflicts: tuple[DeclaredConflict, ...] = ()


@dataclass(frozen=True)
class ReviewAssignment:
    id: str
    manuscript_id: str
    reviewer_id: str
    status: AssignmentStatus
    invited_at: datetime
    due_date: datetime
    round: int = 1
    responded_at: datetime | None = None
    completed_at: datetime | None = None
    decline_reason: str | None = None
    override_reason: str | None = None
    conflict_warnings: tuple[str, ...] = ()

    @property
    def is_open(self) -> bool:
        return self.status in OPEN_STATUSES

    def is_overdue(self, now: datetime) -> bool:
        return self.status is AssignmentStatus.INVITED and utc(now) > utc(self.due_date)
