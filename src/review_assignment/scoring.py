from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Iterable

from .models import (
    AssignmentStatus,
    AvailabilityStatus,
    Manuscript,
    ReviewAssignment,
    Reviewer,
    utc,
)

FIELD_POINTS = 40.0
SUBFIELD_POINTS = 30.0
KEYWORD_POINTS = 10.0
QUALITY_CAP = 20.0
AVAILABILITY_WEIGHT = 0.1
MAX_SCORE = 100.0


@dataclass(frozen=True)
class ReviewHistory:
    total: int
    completed: int
    declined: int
    pending: int
    average_turnaround_days: float | None


@dataclass(frozen=True)
class ScoreBreakdown:
    field_match: float
    subfield_match: float
    keyword_matches: tuple[str, ...]
    quality_bonus: float
    availability_bonus: float
    total: float


def _normalize(text: str | None) -> str:
    return " ".join((text or "").lower().split())


def summarize_history(
    assignments: Iterable[ReviewAssignment],
    now: datetime,
    window_days: int = 365,
) -> ReviewHistory:
    cutoff = utc(now) - timedelta(days=window_days)
    recent = [item for item in assignments if utc(item.invited_at) >= cutoff]
    completed = [item for item in recent if item.status is AssignmentStatus.COMPLETED]
    turnarounds = [
        (utc(item.completed_at) - utc(item.invited_at)).total_seconds() / 86400
        for item in completed
        if item.completed_at is not None
    ]
    return ReviewHistory(
        total=len(recent),
        completed=len(completed),
        declined=sum(1 for item in recent if item.status is AssignmentStatus.DECLINED),
        pending=sum(1 for item in recent if item.status is AssignmentStatus.INVITED),
        average_turnaround_days=(sum(turnarounds) / len(turnarounds)) if turnarounds else None,
    )


def availability_score(reviewer: Reviewer, history: ReviewHistory | None = None) -> float:
    if reviewer.availability is AvailabilityStatus.UNAVAILABLE:
        return 0.0

    if reviewer.availability_score is not None:
        score = float(reviewer.availability_score)
    elif history is None or history.total == 0:
        score = 100.0
    else:
        decline_rate = history.declined / history.total
        score = 100.0 - decline_rate * 50 - history.pending * 10
        if history.total > 5:
            score -= 20

    score = max(0.0, min(100.0, score))
    if reviewer.availability is AvailabilityStatus.BUSY:
        score /= 2
    return round(score, 2)


def score_reviewer(
    manuscript: Manuscript,
    reviewer: Reviewer,
    availability: float,
) -> ScoreBreakdown:
    expertise = [_normalize(tag) for tag in reviewer.expertise if _normalize(tag)]
    expertise_set = set(expertise)

    field_match = FIELD_POINTS if _normalize(manuscript.field_of_study) in expertise_set else 0.0

    subfield = _normalize(manuscript.subfield)
    subfield_match = SUBFIELD_POINTS if subfield and subfield in expertise_set else 0.0

    matched: list[str] = []
    seen: set[str] = set()
    for keyword in manuscript.keywords:
        needle = _normalize(keyword)
        if not needle or needle in seen:
            continue
        seen.add(needle)
        if any(needle in tag for tag in expertise):
            matched.append(keyword)

    quality_bonus = min(max(float(reviewer.h_index), 0.0), QUALITY_CAP)
    availability_bonus = AVAILABILITY_WEIGHT * max(0.0, min(100.0, availability))

    raw = field_match + subfield_match + KEYWORD_POINTS * len(matched) + quality_bonus + availability_bonus
    return ScoreBreakdown(
        field_match=field_match,
        subfield_match=subfield_match,
        keyword_matches=tuple(matched),
        quality_bonus=quality_bonus,
        availability_bonus=availability_bonus,
        total=round(max(0.0, min(MAX_SCORE, raw)), 4),
    )


def relevance_score(manuscript: Manuscript, reviewer: Reviewer, availability: float) -> float:
    return score_reviewer(manuscript, reviewer, availability).total
