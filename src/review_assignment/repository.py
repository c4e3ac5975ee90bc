from __future__ import annotations

from datetime import datetime
from typing import Any, Callable, ContextManager

from psycopg2.errors import UniqueViolation
from psycopg2.extras import Json

from .activity import ActivityEvent
from .conflicts import ConflictOverride, ConflictType
from .db import SCHEMA, db_cursor
from .errors import DuplicateAssignment, NotFound
from .models import (
    AdvisorLink,
    Affiliation,
    AssignmentStatus,
    AvailabilityStatus,
    Coauthorship,
    DeclaredConflict,
    FinancialDisclosure,
    Manuscript,
    Priority,
    ReviewAssignment,
    Reviewer,
    normalize_status,
)
from .workload import AutoDeclineConditions, AutoDeclineRule, DateRange, WorkloadSettings

CursorFactory = Callable[[], ContextManager[Any]]


def _float(value: Any) -> float | None:
    return None if value is None else float(value)


def _affiliation(row: dict) -> Affiliation:
    return Affiliation(institution=row["institution"], started_on=row["started_on"], ended_on=row["ended_on"])


class PostgresManuscripts:
    def __init__(self, cursor_factory: CursorFactory = db_cursor) -> None:
        self._cursor = cursor_factory

    def get(self, manuscript_id: str) -> Manuscript:
        with self._cursor() as cursor:
            cursor.execute(
                f"""
                SELECT id, field_of_study, subfield,
                       COALESCE(keywords, '{{}}') AS keywords,
                       author_id,
                       COALESCE(co_author_ids, '{{}}') AS co_author_ids,
                       COALESCE(excluded_reviewer_ids, '{{}}') AS excluded_reviewer_ids,
                       status, created_at, submitted_at, updated_at,
                       accepted_at, published_at, priority_override
                  FROM {SCHEMA}.manuscripts
                 WHERE id = %s;
                """,
                (manuscript_id,),
            )
            row = cursor.fetchone()
            if row is None:
                raise NotFound("manuscript", manuscript_id)

            author_ids = [row["author_id"], *row["co_author_ids"]]
            cursor.execute(
                f"""
                SELECT author_id, institution, started_on, ended_on
                  FROM {SCHEMA}.author_affiliations
                 WHERE author_id = ANY(%s)
                 ORDER BY author_id, started_on NULLS FIRST;
                """,
                (author_ids,),
            )
            affiliations: dict[str, list[Affiliation]] = {}
            for affiliation_row in cursor.fetchall():
                affiliations.setdefault(affiliation_row["author_id"], []).append(_affiliation(affiliation_row))

        return Manuscript(
            id=row["id"],
            field_of_study=row["field_of_study"],
            subfield=row["subfield"],
            keywords=tuple(row["keywords"]),
            author_id=row["author_id"],
            co_author_ids=tuple(row["co_author_ids"]),
            excluded_reviewer_ids=frozenset(row["excluded_reviewer_ids"]),
            author_affiliations={author: tuple(items) for author, items in affiliations.items()},
            status=normalize_status(row["status"]),
            created_at=row["created_at"],
            submitted_at=row["submitted_at"],
            updated_at=row["updated_at"],
            accepted_at=row["accepted_at"],
            published_at=row["published_at"],
            priority_override=Priority(row["priority_override"]) if row["priority_override"] else None,
        )

    def set_priority_override(self, manuscript_id: str, priority: Priority | None) -> Manuscript:
        with self._cursor() as cursor:
            cursor.execute(
                f"UPDATE {SCHEMA}.manuscripts SET priority_override = %s WHERE id = %s;",
                (priority.value if priority else None, manuscript_id),
            )
            if cursor.rowcount == 0:
                raise NotFound("manuscript", manuscript_id)
        return self.get(manuscript_id)

    def list_ids(self, statuses: list[str] | None = None) -> list[str]:
        query = f"SELECT id FROM {SCHEMA}.manuscripts"
        params: tuple = ()
        if statuses:
            query += " WHERE status = ANY(%s)"
            params = (statuses,)
        with self._cursor() as cursor:
            cursor.execute(query + " ORDER BY created_at ASC;", params)
            return [row["id"] for row in cursor.fetchall()]


class PostgresReviewers:
    def __init__(self, cursor_factory: CursorFactory = db_cursor) -> None:
        self._cursor = cursor_factory

    def get(self, reviewer_id: str) -> Reviewer:
        with self._cursor() as cursor:
            cursor.execute(
                f"""
                SELECT id, name,
                       COALESCE(expertise, '{{}}') AS expertise,
                       h_index, total_publications, recent_review_count,
                       average_turnaround_days, availability, availability_score
                  FROM {SCHEMA}.reviewers
                 WHERE id = %s;
                """,
                (reviewer_id,),
            )
            row = cursor.fetchone()
            if row is None:
                raise NotFound("reviewer", reviewer_id)

            def children(table: str, columns: str) -> list[dict]:
                cursor.execute(
                    f"SELECT {columns} FROM {SCHEMA}.{table} WHERE reviewer_id = %s;",
                    (reviewer_id,),
                )
                return cursor.fetchall()

            affiliations = children("reviewer_affiliations", "institution, started_on, ended_on")
            coauthorships = children("coauthorships", "coauthor_id, published_on, title")
            advisor_links = children("advisor_links", "person_id, role")
            disclosures = children("financial_disclosures", "party_id, description")
            declared = children("declared_conflicts", "author_id, severity, detail")

        return Reviewer(
            id=row["id"],
            name=row["name"],
            expertise=tuple(row["expertise"]),
            h_index=_float(row["h_index"]) or 0.0,
            total_publications=row["total_publications"] or 0,
            recent_review_count=row["recent_review_count"] or 0,
            average_turnaround_days=_float(row["average_turnaround_days"]),
            availability=AvailabilityStatus(row["availability"] or "available"),
            availability_score=_float(row["availability_score"]),
            affiliations=tuple(_affiliation(item) for item in affiliations),
            coauthorships=tuple(
                Coauthorship(coauthor_id=item["coauthor_id"], published_on=item["published_on"], title=item["title"] or "")
                for item in coauthorships
            ),
            advisor_links=tuple(AdvisorLink(person_id=item["person_id"], role=item["role"]) for item in advisor_links),
            financial_disclosures=tuple(
                FinancialDisclosure(party_id=item["party_id"], description=item["description"] or "")
                for item in disclosures
            ),
            declared_conflicts=tuple(
                DeclaredConflict(author_id=item["author_id"], severity=item["severity"], detail=item["detail"] or "")
                for item in declared
            ),
        )

    def list_ids(self) -> list[str]:
        with self._cursor() as cursor:
            cursor.execute(f"SELECT id FROM {SCHEMA}.reviewers ORDER BY name;")
            return [row["id"] for row in cursor.fetchall()]


class PostgresWorkloadStore:
    """Versioned workload settings; compare-and-swap is a conditional UPDATE."""

    def __init__(self, cursor_factory: CursorFactory = db_cursor) -> None:
        self._cursor = cursor_factory

    @staticmethod
    def _children(cursor, reviewer_id: str) -> tuple[tuple[DateRange, ...], tuple[AutoDeclineRule, ...]]:
        cursor.execute(
            f"""
            SELECT starts_on, ends_on
              FROM {SCHEMA}.blackout_ranges
             WHERE reviewer_id = %s
             ORDER BY starts_on;
            """,
            (reviewer_id,),
        )
        blackouts = tuple(DateRange(row["starts_on"], row["ends_on"]) for row in cursor.fetchall())
        cursor.execute(
            f"""
            SELECT id, name, enabled, max_workload_percentage, min_days_to_deadline
              FROM {SCHEMA}.auto_decline_rules
             WHERE reviewer_id = %s
             ORDER BY position, id;
            """,
            (reviewer_id,),
        )
        rules = tuple(
            AutoDeclineRule(
                id=row["id"],
                name=row["name"],
                enabled=row["enabled"],
                conditions=AutoDeclineConditions(
                    max_workload_percentage=_float(row["max_workload_percentage"]),
                    min_days_to_deadline=_float(row["min_days_to_deadline"]),
                ),
            )
            for row in cursor.fetchall()
        )
        return blackouts, rules

    @staticmethod
    def _write_children(cursor, settings: WorkloadSettings) -> None:
        cursor.execute(f"DELETE FROM {SCHEMA}.blackout_ranges WHERE reviewer_id = %s;", (settings.reviewer_id,))
        cursor.execute(f"DELETE FROM {SCHEMA}.auto_decline_rules WHERE reviewer_id = %s;", (settings.reviewer_id,))
        if settings.blackout_ranges:
            cursor.executemany(
                f"INSERT INTO {SCHEMA}.blackout_ranges (reviewer_id, starts_on, ends_on) VALUES (%s, %s, %s);",
                [(settings.reviewer_id, item.start, item.end) for item in settings.blackout_ranges],
            )
        if settings.auto_decline_rules:
            cursor.executemany(
                f"""
                INSERT INTO {SCHEMA}.auto_decline_rules
                    (id, reviewer_id, name, enabled, max_workload_percentage, min_days_to_deadline, position)
                VALUES (%s, %s, %s, %s, %s, %s, %s);
                """,
                [
                    (
                        rule.id,
                        settings.reviewer_id,
                        rule.name,
                        rule.enabled,
                        rule.conditions.max_workload_percentage,
                        rule.conditions.min_days_to_deadline,
                        position,
                    )
                    for position, rule in enumerate(settings.auto_decline_rules)
                ],
            )

    def get(self, reviewer_id: str) -> WorkloadSettings:
        with self._cursor() as cursor:
            cursor.execute(
                f"""
                SELECT reviewer_id, monthly_capacity, current_assignments, preferred_deadline_days, version
                  FROM {SCHEMA}.workload_settings
                 WHERE reviewer_id = %s;
                """,
                (reviewer_id,),
            )
            row = cursor.fetchone()
            if row is None:
                raise NotFound("workload settings", reviewer_id)
            blackouts, rules = self._children(cursor, reviewer_id)
        return WorkloadSettings(
            reviewer_id=row["reviewer_id"],
            monthly_capacity=row["monthly_capacity"],
            current_assignments=row["current_assignments"],
            preferred_deadline_days=row["preferred_deadline_days"],
            version=row["version"],
            blackout_ranges=blackouts,
            auto_decline_rules=rules,
        )

    def put(self, settings: WorkloadSettings) -> None:
        with self._cursor() as cursor:
            cursor.execute(
                f"""
                INSERT INTO {SCHEMA}.workload_settings
                    (reviewer_id, monthly_capacity, current_assignments, preferred_deadline_days, version)
                VALUES (%s, %s, %s, %s, %s)
                ON CONFLICT (reviewer_id) DO UPDATE
                   SET monthly_capacity = EXCLUDED.monthly_capacity,
                       current_assignments = EXCLUDED.current_assignments,
                       preferred_deadline_days = EXCLUDED.preferred_deadline_days,
                       version = EXCLUDED.version;
                """,
                (
                    settings.reviewer_id,
                    settings.monthly_capacity,
                    settings.current_assignments,
                    settings.preferred_deadline_days,
                    settings.version,
                ),
            )
            self._write_children(cursor, settings)

    def compare_and_swap(self, expected_version: int, settings: WorkloadSettings) -> bool:
        with self._cursor() as cursor:
            cursor.execute(
                f"""
                UPDATE {SCHEMA}.workload_settings
                   SET monthly_capacity = %s,
                       current_assignments = %s,
                       preferred_deadline_days = %s,
                       version = %s
                 WHERE reviewer_id = %s
                   AND version = %s;
                """,
                (
                    settings.monthly_capacity,
                    settings.current_assignments,
                    settings.preferred_deadline_days,
                    settings.version,
                    settings.reviewer_id,
                    expected_version,
                ),
            )
            if cursor.rowcount != 1:
                return False
            if self._children(cursor, settings.reviewer_id) != (
                settings.blackout_ranges,
                settings.auto_decline_rules,
            ):
                self._write_children(cursor, settings)
            return True


_ASSIGNMENT_COLUMNS = """
    id, manuscript_id, reviewer_id, status, round, invited_at, due_date,
    responded_at, completed_at, decline_reason, override_reason,
    COALESCE(conflict_warnings, '{}') AS conflict_warnings
"""


def _assignment(row: dict) -> ReviewAssignment:
    return ReviewAssignment(
        id=row["id"],
        manuscript_id=row["manuscript_id"],
        reviewer_id=row["reviewer_id"],
        status=AssignmentStatus(row["status"]),
        round=row["round"],
        invited_at=row["invited_at"],
        due_date=row["due_date"],
        responded_at=row["responded_at"],
        completed_at=row["completed_at"],
        decline_reason=row["decline_reason"],
        override_reason=row["override_reason"],
        conflict_warnings=tuple(row["conflict_warnings"]),
    )


class PostgresAssignments:
    def __init__(self, cursor_factory: CursorFactory = db_cursor) -> None:
        self._cursor = cursor_factory

    def _select(self, where: str, params: tuple) -> list[ReviewAssignment]:
        with self._cursor() as cursor:
            cursor.execute(
                f"""
                SELECT {_ASSIGNMENT_COLUMNS}
                  FROM {SCHEMA}.review_assignments
                 WHERE {where}
                 ORDER BY invited_at ASC, id ASC;
                """,
                params,
            )
            return [_assignment(row) for row in cursor.fetchall()]

    def get(self, assignment_id: str) -> ReviewAssignment:
        rows = self._select("id = %s", (assignment_id,))
        if not rows:
            raise NotFound("assignment", assignment_id)
        return rows[0]

    def add(self, assignment: ReviewAssignment) -> None:
        with self._cursor() as cursor:
            try:
                cursor.execute(
                    f"""
                    INSERT INTO {SCHEMA}.review_assignments
                        (id, manuscript_id, reviewer_id, status, round, invited_at, due_date,
                         responded_at, completed_at, decline_reason, override_reason, conflict_warnings)
                    VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s);
                    """,
                    (
                        assignment.id,
                        assignment.manuscript_id,
                        assignment.reviewer_id,
                        assignment.status.value,
                        assignment.round,
                        assignment.invited_at,
                        assignment.due_date,
                        assignment.responded_at,
                        assignment.completed_at,
                        assignment.decline_reason,
                        assignment.override_reason,
                        list(assignment.conflict_warnings),
                    ),
                )
            except UniqueViolation as exc:
                # review_assignments_open_pair: another process opened this pair first.
                raise DuplicateAssignment(assignment.manuscript_id, assignment.reviewer_id) from exc

    def compare_and_swap(self, expected_status: AssignmentStatus, assignment: ReviewAssignment) -> bool:
        with self._cursor() as cursor:
            cursor.execute(
                f"""
                UPDATE {SCHEMA}.review_assignments
                   SET status = %s,
                       responded_at = %s,
                       completed_at = %s,
                       decline_reason = %s
                 WHERE id = %s
                   AND status = %s;
                """,
                (
                    assignment.status.value,
                    assignment.responded_at,
                    assignment.completed_at,
                    assignment.decline_reason,
                    assignment.id,
                    expected_status.value,
                ),
            )
            return cursor.rowcount == 1

    def for_manuscript(self, manuscript_id: str) -> list[ReviewAssignment]:
        return self._select("manuscript_id = %s", (manuscript_id,))

    def for_reviewer(self, reviewer_id: str) -> list[ReviewAssignment]:
        return self._select("reviewer_id = %s", (reviewer_id,))

    def overdue(self, now: datetime) -> list[ReviewAssignment]:
        return self._select("status = 'invited' AND due_date < %s", (now,))

    def open_assignments(self) -> list[ReviewAssignment]:
        return self._select("status IN ('invited', 'accepted')", ())

    def completed_since(self, since: datetime) -> list[ReviewAssignment]:
        return self._select("status = 'completed' AND completed_at >= %s", (since,))


class PostgresOverrides:
    def __init__(self, cursor_factory: CursorFactory = db_cursor) -> None:
        self._cursor = cursor_factory

    def record(self, override: ConflictOverride) -> None:
        with self._cursor() as cursor:
            cursor.execute(
                f"""
                INSERT INTO {SCHEMA}.conflict_overrides
                    (manuscript_id, reviewer_id, conflict_type, reason, recorded_at)
                VALUES (%s, %s, %s, %s, %s);
                """,
                (
                    override.manuscript_id,
                    override.reviewer_id,
                    override.conflict_type.value,
                    override.reason,
                    override.recorded_at,
                ),
            )

    def for_pair(self, manuscript_id: str, reviewer_id: str) -> list[ConflictOverride]:
        with self._cursor() as cursor:
            cursor.execute(
                f"""
                SELECT manuscript_id, reviewer_id, conflict_type, reason, recorded_at
                  FROM {SCHEMA}.conflict_overrides
                 WHERE manuscript_id = %s
                   AND reviewer_id = %s
                 ORDER BY recorded_at;
                """,
                (manuscript_id, reviewer_id),
            )
            return [
                ConflictOverride(
                    manuscript_id=row["manuscript_id"],
                    reviewer_id=row["reviewer_id"],
                    conflict_type=ConflictType(row["conflict_type"]),
                    reason=row["reason"],
                    recorded_at=row["recorded_at"],
                )
                for row in cursor.fetchall()
            ]


class PostgresActivitySink:
    def __init__(self, cursor_factory: CursorFactory = db_cursor) -> None:
        self._cursor = cursor_factory

    def record(self, event: ActivityEvent) -> None:
        with self._cursor() as cursor:
            cursor.execute(
                f"""
                INSERT INTO {SCHEMA}.editorial_activity
                    (manuscript_id, kind, occurred_at, reviewer_id, assignment_id, detail)
                VALUES (%s, %s, %s, %s, %s, %s);
                """,
                (
                    event.manuscript_id,
                    event.kind.value,
                    event.occurred_at,
                    event.reviewer_id,
                    event.assignment_id,
                    Json(event.detail),
                ),
            )
