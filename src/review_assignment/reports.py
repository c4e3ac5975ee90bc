from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Iterable

from .conflicts import ConflictEvidence
from .models import AssignmentStatus, ReviewAssignment, utc

AGE_BUCKETS = ("0-6", "7-13", "14-20", "21+")


@dataclass(frozen=True)
class ReviewerBacklog:
    reviewer_id: str
    invited: int
    accepted: int
    overdue: int
    oldest_age_days: float


@dataclass(frozen=True)
class BacklogReport:
    total: int
    overdue: int
    avg_age_days: float
    oldest_age_days: float
    bucket_counts: dict[str, int]
    reviewer_stats: list[ReviewerBacklog]
    oldest_assignments: list[tuple[ReviewAssignment, float]]


@dataclass(frozen=True)
class ThroughputReviewer:
    reviewer_id: str
    completed: int
    avg_cycle_days: float


@dataclass(frozen=True)
class ThroughputReport:
    total_completed: int
    avg_cycle_days: float
    min_cycle_days: float
    max_cycle_days: float
    daily_counts: dict[str, int]
    reviewer_stats: list[ThroughputReviewer]


@dataclass(frozen=True)
class ConflictStatistics:
    total: int
    blocking: int
    by_type: dict[str, int]
    by_severity: dict[str, int]
    reviewers_affected: int


def age_in_days(invited_at: datetime, now: datetime) -> float:
    return (utc(now) - utc(invited_at)).total_seconds() / 86400


def bucket_age(age_days: float) -> str:
    if age_days < 7:
        return "0-6"
    if age_days < 14:
        return "7-13"
    if age_days < 21:
        return "14-20"
    return "21+"


def build_backlog_report(assignments: Iterable[ReviewAssignment], now: datetime) -> BacklogReport:
    bucket_counts = {bucket: 0 for bucket in AGE_BUCKETS}
    reviewer_totals: dict[str, dict[str, float]] = {}
    oldest_assignments: list[tuple[ReviewAssignment, float]] = []
    ages: list[float] = []
    overdue = 0

    for assignment in assignments:
        if not assignment.is_open:
            continue
        age_days = age_in_days(assignment.invited_at, now)
        ages.append(age_days)
        bucket_counts[bucket_age(age_days)] += 1
        oldest_assignments.append((assignment, age_days))

        stats = reviewer_totals.setdefault(
            assignment.reviewer_id, {"invited": 0, "accepted": 0, "overdue": 0, "oldest": 0.0}
        )
        stats[assignment.status.value] += 1
        if utc(assignment.due_date) < utc(now):
            stats["overdue"] += 1
            overdue += 1
        stats["oldest"] = max(stats["oldest"], age_days)

    total = len(ages)
    reviewer_stats = [
        ReviewerBacklog(
            reviewer_id=reviewer_id,
            invited=int(stats["invited"]),
            accepted=int(stats["accepted"]),
            overdue=int(stats["overdue"]),
            oldest_age_days=float(stats["oldest"]),
        )
        for reviewer_id, stats in reviewer_totals.items()
    ]
    reviewer_stats.sort(key=lambda item: (item.overdue, item.invited + item.accepted), reverse=True)
    oldest_assignments.sort(key=lambda item: item[1], reverse=True)

    return BacklogReport(
        total=total,
        overdue=overdue,
        avg_age_days=sum(ages) / total if total else 0.0,
        oldest_age_days=max(ages) if ages else 0.0,
        bucket_counts=bucket_counts,
        reviewer_stats=reviewer_stats,
        oldest_assignments=oldest_assignments,
    )


def build_throughput_report(
    assignments: Iterable[ReviewAssignment],
    now: datetime,
    days: int,
) -> ThroughputReport:
    cutoff = utc(now) - timedelta(days=days)
    daily_counts: dict[str, int] = {}
    reviewer_totals: dict[str, dict[str, float]] = {}
    cycles: list[float] = []

    for assignment in assignments:
        if assignment.status is not AssignmentStatus.COMPLETED or assignment.completed_at is None:
            continue
        completed_at = utc(assignment.completed_at)
        if completed_at < cutoff:
            continue
        cycle_days = (completed_at - utc(assignment.invited_at)).total_seconds() / 86400
        cycles.append(cycle_days)
        day_key = completed_at.date().isoformat()
        daily_counts[day_key] = daily_counts.get(day_key, 0) + 1

        stats = reviewer_totals.setdefault(assignment.reviewer_id, {"total": 0, "cycle_sum": 0.0})
        stats["total"] += 1
        stats["cycle_sum"] += cycle_days

    total = len(cycles)
    reviewer_stats = [
        ThroughputReviewer(
            reviewer_id=reviewer_id,
            completed=int(stats["total"]),
            avg_cycle_days=stats["cycle_sum"] / stats["total"],
        )
        for reviewer_id, stats in reviewer_totals.items()
    ]
    reviewer_stats.sort(key=lambda item: (-item.completed, item.reviewer_id))

    return ThroughputReport(
        total_completed=total,
        avg_cycle_days=sum(cycles) / total if total else 0.0,
        min_cycle_days=min(cycles) if cycles else 0.0,
        max_cycle_days=max(cycles) if cycles else 0.0,
        daily_counts=daily_counts,
        reviewer_stats=reviewer_stats,
    )


def build_conflict_statistics(evidence: Iterable[ConflictEvidence]) -> ConflictStatistics:
    by_type: dict[str, int] = {}
    by_severity: dict[str, int] = {}
    reviewers: set[str] = set()
    total = 0
    blocking = 0
    for item in evidence:
        total += 1
        if item.is_blocking:
            blocking += 1
        by_type[item.type.value] = by_type.get(item.type.value, 0) + 1
        by_severity[item.severity.value] = by_severity.get(item.severity.value, 0) + 1
        reviewers.add(item.reviewer_id)
    return ConflictStatistics(
        total=total,
        blocking=blocking,
        by_type=by_type,
        by_severity=by_severity,
        reviewers_affected=len(reviewers),
    )
