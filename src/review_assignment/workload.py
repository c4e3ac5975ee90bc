from __future__ import annotations

import logging
from dataclasses import dataclass, field, replace
from datetime import date, datetime
from typing import TYPE_CHECKING

from .errors import CapacityExceeded
from .models import AvailabilityStatus, utc

if TYPE_CHECKING:
    from .stores import WorkloadStore

logger = logging.getLogger(__name__)

MAX_RESERVE_ATTEMPTS = 32


@dataclass(frozen=True)
class DateRange:
    """Half-open blackout range [start, end)."""

    start: date
    end: date

    def __post_init__(self) -> None:
        if self.end <= self.start:
            raise ValueError(f"Blackout range must end after it starts: {self.start} -> {self.end}")

    def contains(self, day: date) -> bool:
        return self.start <= day < self.end

    def overlaps(self, start: date, end: date) -> bool:
        return self.start < end and start < self.end


@dataclass(frozen=True)
class AutoDeclineConditions:
    max_workload_percentage: float | None = None
    min_days_to_deadline: float | None = None

    @property
    def is_empty(self) -> bool:
        return self.max_workload_percentage is None and self.min_days_to_deadline is None


@dataclass(frozen=True)
class AutoDeclineRule:
    id: str
    name: str
    conditions: AutoDeclineConditions
    enabled: bool = True

    def matches(self, workload_percentage: float, days_to_deadline: float) -> bool:
        if not self.enabled or self.conditions.is_empty:
            return False
        limit = self.conditions.max_workload_percentage
        if limit is not None and not workload_percentage > limit:
            return False
        minimum = self.conditions.min_days_to_deadline
        if minimum is not None and not minimum > days_to_deadline:
            return False
        return True


@dataclass(frozen=True)
class WorkloadSettings:
    reviewer_id: str
    monthly_capacity: int
    current_assignments: int = 0
    blackout_ranges: tuple[DateRange, ...] = ()
    preferred_deadline_days: int = 21
    auto_decline_rules: tuple[AutoDeclineRule, ...] = ()
    version: int = 0

    def __post_init__(self) -> None:
        if self.monthly_capacity <= 0:
            raise ValueError(f"monthly_capacity must be positive for reviewer {self.reviewer_id}")
        if self.current_assignments < 0:
            raise ValueError(f"current_assignments cannot be negative for reviewer {self.reviewer_id}")

    @property
    def capacity_remaining(self) -> int:
        return self.monthly_capacity - self.current_assignments

    @property
    def workload_percentage(self) -> float:
        return self.current_assignments / self.monthly_capacity * 100


@dataclass(frozen=True)
class Reservation:
    reviewer_id: str
    current_assignments: int
    monthly_capacity: int
    overridden: bool = False
    reason: str | None = None


@dataclass(frozen=True)
class WorkloadSnapshot:
    reviewer_id: str
    monthly_capacity: int
    current_assignments: int
    capacity_remaining: int
    workload_percentage: float
    availability: AvailabilityStatus
    blackout_overlap: bool
    auto_decline: bool
    matched_rules: tuple[str, ...] = field(default_factory=tuple)


def days_between(now: datetime, later: datetime) -> float:
    return (utc(later) - utc(now)).total_seconds() / 86400


class WorkloadTracker:
    """Capacity, blackout and auto-decline bookkeeping per reviewer.

    Settings records are versioned. Every mutation is a compare-and-swap
    against the store, so concurrent reservations for one reviewer can
    never both take the last slot.
    """

    _SETTABLE = frozenset(
        {"monthly_capacity", "blackout_ranges", "preferred_deadline_days", "auto_decline_rules"}
    )

    def __init__(self, store: WorkloadStore) -> None:
        self._store = store

    def settings(self, reviewer_id: str) -> WorkloadSettings:
        return self._store.get(reviewer_id)

    def capacity_remaining(self, reviewer_id: str) -> int:
        return self._store.get(reviewer_id).capacity_remaining

    def is_blacked_out(self, reviewer_id: str, day: date | datetime) -> bool:
        if isinstance(day, datetime):
            day = utc(day).date()
        return any(blackout.contains(day) for blackout in self._store.get(reviewer_id).blackout_ranges)

    def matching_rules(
        self,
        reviewer_id: str,
        proposed_due_date: datetime,
        now: datetime,
    ) -> list[AutoDeclineRule]:
        settings = self._store.get(reviewer_id)
        workload = settings.workload_percentage
        days_to_deadline = days_between(now, proposed_due_date)
        return [rule for rule in settings.auto_decline_rules if rule.matches(workload, days_to_deadline)]

    def evaluate_auto_decline(
        self,
        reviewer_id: str,
        proposed_due_date: datetime,
        now: datetime,
    ) -> bool:
        return bool(self.matching_rules(reviewer_id, proposed_due_date, now))

    def reserve(self, reviewer_id: str, *, override: bool = False, reason: str | None = None) -> Reservation:
        if override and not (reason or "").strip():
            raise ValueError("A capacity override must carry a reason")

        for _ in range(MAX_RESERVE_ATTEMPTS):
            current = self._store.get(reviewer_id)
            overridden = current.capacity_remaining <= 0
            if overridden and not override:
                raise CapacityExceeded(reviewer_id, current.current_assignments, current.monthly_capacity)
            updated = replace(
                current,
                current_assignments=current.current_assignments + 1,
                version=current.version + 1,
            )
            if not self._store.compare_and_swap(current.version, updated):
                logger.debug("Reservation for %s lost a race at version %s", reviewer_id, current.version)
                continue
            if overridden:
                logger.warning(
                    "Capacity override for reviewer %s (%s/%s): %s",
                    reviewer_id,
                    updated.current_assignments,
                    updated.monthly_capacity,
                    reason,
                )
            return Reservation(
                reviewer_id=reviewer_id,
                current_assignments=updated.current_assignments,
                monthly_capacity=updated.monthly_capacity,
                overridden=overridden,
                reason=reason if overridden else None,
            )
        raise RuntimeError(f"Could not reserve capacity for reviewer {reviewer_id}: too much contention")

    def release(self, reviewer_id: str) -> WorkloadSettings:
        for _ in range(MAX_RESERVE_ATTEMPTS):
            current = self._store.get(reviewer_id)
            updated = replace(
                current,
                current_assignments=max(current.current_assignments - 1, 0),
                version=current.version + 1,
            )
            if self._store.compare_and_swap(current.version, updated):
                return updated
        raise RuntimeError(f"Could not release capacity for reviewer {reviewer_id}: too much contention")

    def update_settings(self, reviewer_id: str, **changes: object) -> WorkloadSettings:
        unknown = set(changes) - self._SETTABLE
        if unknown:
            raise ValueError(f"Cannot update workload fields: {', '.join(sorted(unknown))}")
        for _ in range(MAX_RESERVE_ATTEMPTS):
            current = self._store.get(reviewer_id)
            updated = replace(current, version=current.version + 1, **changes)
            if self._store.compare_and_swap(current.version, updated):
                return updated
        raise RuntimeError(f"Could not update settings for reviewer {reviewer_id}: too much contention")

    def snapshot(
        self,
        reviewer_id: str,
        availability: AvailabilityStatus,
        now: datetime,
        due_date: datetime,
    ) -> WorkloadSnapshot:
        settings = self._store.get(reviewer_id)
        start = utc(now).date()
        end = max(utc(due_date).date(), start)
        days_to_deadline = days_between(now, due_date)
        matched = tuple(
            rule.id
            for rule in settings.auto_decline_rules
            if rule.matches(settings.workload_percentage, days_to_deadline)
        )
        return WorkloadSnapshot(
            reviewer_id=reviewer_id,
            monthly_capacity=settings.monthly_capacity,
            current_assignments=settings.current_assignments,
            capacity_remaining=settings.capacity_remaining,
            workload_percentage=round(settings.workload_percentage, 2),
            availability=availability,
            # inclusive of the due date itself
            blackout_overlap=any(
                blackout.overlaps(start, date.fromordinal(end.toordinal() + 1))
                for blackout in settings.blackout_ranges
            ),
            auto_decline=bool(matched),
            matched_rules=matched,
        )
