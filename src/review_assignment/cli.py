from __future__ import annotations

import logging
from datetime import timedelta
from typing import NoReturn

import typer
from rich import print
from rich.logging import RichHandler
from rich.table import Table

from .config import EngineConfig
from .db import SQL_DIR, db_cursor, load_sql
from .errors import EngineError
from .models import Priority, ReviewAssignment, utc_now
from .reports import build_backlog_report, build_conflict_statistics, build_throughput_report
from .repository import (
    PostgresActivitySink,
    PostgresAssignments,
    PostgresManuscripts,
    PostgresOverrides,
    PostgresReviewers,
    PostgresWorkloadStore,
)
from .service import ReviewAssignmentEngine

app = typer.Typer(help="Reviewer assignment and conflict engine CLI.")


def build_engine() -> ReviewAssignmentEngine:
    return ReviewAssignmentEngine(
        PostgresManuscripts(),
        PostgresReviewers(),
        PostgresWorkloadStore(),
        PostgresAssignments(),
        activity=PostgresActivitySink(),
        overrides=PostgresOverrides(),
        config=EngineConfig.from_env(),
    )


def _fail(exc: Exception) -> NoReturn:
    print(f"[red]{exc}[/red]")
    raise typer.Exit(code=1)


def _print_assignment(assignment: ReviewAssignment) -> None:
    table = Table(title=f"Assignment {assignment.id}")
    table.add_column("Field")
    table.add_column("Value")
    table.add_row("Manuscript", assignment.manuscript_id)
    table.add_row("Reviewer", assignment.reviewer_id)
    table.add_row("Status", assignment.status.value)
    table.add_row("Round", str(assignment.round))
    table.add_row("Due", assignment.due_date.isoformat())
    if assignment.decline_reason:
        table.add_row("Decline Reason", assignment.decline_reason)
    if assignment.override_reason:
        table.add_row("Override Reason", assignment.override_reason)
    if assignment.conflict_warnings:
        table.add_row("Conflict Warnings", ", ".join(assignment.conflict_warnings))
    print(table)


@app.callback()
def main(verbose: bool = typer.Option(False, "--verbose", "-v", help="Enable debug logging.")) -> None:
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.WARNING,
        format="%(message)s",
        datefmt="[%X]",
        handlers=[RichHandler(rich_tracebacks=True)],
    )


@app.command("init-db")
def init_db() -> None:
    """Create schema and tables."""
    sql = load_sql(SQL_DIR / "001_init.sql")
    with db_cursor() as cursor:
        cursor.execute(sql)
    print("[green]Database initialized.[/green]")


@app.command("seed")
def seed() -> None:
    """Insert seed data into the database."""
    sql = load_sql(SQL_DIR / "seed.sql")
    with db_cursor() as cursor:
        cursor.execute(sql)
    print("[green]Seed data inserted.[/green]")


@app.command("rank")
def rank(
    manuscript_id: str = typer.Argument(..., help="Manuscript to find reviewers for."),
    reviewer_ids: list[str] = typer.Argument(None, help="Candidate reviewer ids (default: all reviewers)."),
    show_blocked: bool = typer.Option(False, help="Include candidates with blocking conflicts."),
    top: int = typer.Option(20, help="Maximum candidates to show."),
) -> None:
    """Rank candidate reviewers for a manuscript."""
    engine = build_engine()
    candidates = reviewer_ids or PostgresReviewers().list_ids()
    try:
        results = engine.rank_candidates(manuscript_id, candidates, show_blocked=show_blocked)
    except EngineError as exc:
        _fail(exc)

    if not results:
        print("[yellow]No eligible reviewers found.[/yellow]")
        return

    table = Table(title=f"Candidates for {manuscript_id}")
    table.add_column("Reviewer")
    table.add_column("Score", justify="right")
    table.add_column("Availability", justify="right")
    table.add_column("Capacity", justify="right")
    table.add_column("Risk", justify="right")
    table.add_column("Eligible")
    table.add_column("Warnings")

    for result in results[:top]:
        capacity = "-"
        if result.workload is not None:
            capacity = f"{result.workload.current_assignments}/{result.workload.monthly_capacity}"
        table.add_row(
            result.name,
            f"{result.relevance_score:.1f}",
            f"{result.availability_score:.0f}",
            capacity,
            str(result.risk_score),
            "yes" if result.eligible else "[red]blocked[/red]",
            ", ".join(result.warnings) or "-",
        )
    print(table)


@app.command("conflicts")
def conflicts(
    manuscript_id: str = typer.Argument(..., help="Manuscript to screen."),
    reviewer_ids: list[str] = typer.Argument(None, help="Reviewer ids to screen (default: all reviewers)."),
) -> None:
    """Show conflict-of-interest evidence and totals for a manuscript."""
    engine = build_engine()
    candidates = reviewer_ids or PostgresReviewers().list_ids()
    try:
        evidence = engine.conflict_evidence(manuscript_id, candidates)
    except EngineError as exc:
        _fail(exc)

    stats = build_conflict_statistics(evidence)
    print(
        f"[bold]Conflicts:[/bold] {stats.total} | "
        f"[bold]Blocking:[/bold] {stats.blocking} | "
        f"[bold]Reviewers Affected:[/bold] {stats.reviewers_affected}"
    )
    if not evidence:
        return

    severities = Table(title="By Severity")
    severities.add_column("Severity")
    severities.add_column("Count", justify="right")
    for severity, count in sorted(stats.by_severity.items()):
        severities.add_row(severity, str(count))
    print(severities)

    table = Table(title=f"Conflict Evidence for {manuscript_id}")
    table.add_column("Reviewer")
    table.add_column("Type")
    table.add_column("Severity")
    table.add_column("Author")
    table.add_column("Detail")
    for item in evidence:
        severity = f"[red]{item.severity.value}[/red]" if item.is_blocking else item.severity.value
        if item.overridden:
            severity += " (overridden)"
        table.add_row(item.reviewer_id, item.type.value, severity, item.author_id, item.detail)
    print(table)


@app.command("invite")
def invite(
    manuscript_id: str = typer.Argument(...),
    reviewer_id: str = typer.Argument(...),
    due_days: int | None = typer.Option(None, help="Days until the review is due."),
    override_reason: str | None = typer.Option(None, help="Invite past capacity, recording this reason."),
) -> None:
    """Invite a reviewer to a manuscript."""
    engine = build_engine()
    now = utc_now()
    days = due_days if due_days is not None else EngineConfig.from_env().default_due_days
    try:
        assignment = engine.invite(
            manuscript_id,
            reviewer_id,
            now + timedelta(days=days),
            override_capacity=override_reason is not None,
            override_reason=override_reason,
            now=now,
        )
    except (EngineError, ValueError) as exc:
        _fail(exc)
    _print_assignment(assignment)


@app.command("accept")
def accept(assignment_id: str = typer.Argument(...)) -> None:
    """Record that a reviewer accepted an invitation."""
    try:
        assignment = build_engine().accept(assignment_id)
    except EngineError as exc:
        _fail(exc)
    _print_assignment(assignment)


@app.command("decline")
def decline(
    assignment_id: str = typer.Argument(...),
    reason: str = typer.Option("declined", help="Reason given by the reviewer."),
) -> None:
    """Record that a reviewer declined an invitation."""
    try:
        assignment = build_engine().decline(assignment_id, reason)
    except EngineError as exc:
        _fail(exc)
    _print_assignment(assignment)


@app.command("complete")
def complete(assignment_id: str = typer.Argument(...)) -> None:
    """Mark an accepted review as completed."""
    try:
        assignment = build_engine().complete(assignment_id)
    except EngineError as exc:
        _fail(exc)
    _print_assignment(assignment)


@app.command("expire")
def expire() -> None:
    """Expire every invitation that is past due and unanswered."""
    expired = build_engine().expire_overdue()
    if not expired:
        print("[green]No overdue invitations.[/green]")
        return
    table = Table(title="Expired Invitations")
    table.add_column("Assignment")
    table.add_column("Manuscript")
    table.add_column("Reviewer")
    table.add_column("Due")
    for assignment in expired:
        table.add_row(assignment.id, assignment.manuscript_id, assignment.reviewer_id, assignment.due_date.isoformat())
    print(table)
    print(f"[yellow]Expired {len(expired)} invitations.[/yellow]")


@app.command("priority")
def priority(
    manuscript_id: str = typer.Argument(...),
    set_to: Priority | None = typer.Option(None, "--set", help="Editorial override."),
    clear: bool = typer.Option(False, help="Remove the editorial override."),
    reason: str = typer.Option("", help="Reason recorded with an override."),
) -> None:
    """Show, or override, a manuscript's priority."""
    engine = build_engine()
    try:
        if set_to is not None or clear:
            value = engine.set_priority_override(manuscript_id, None if clear else set_to, reason)
        else:
            value = engine.compute_priority(manuscript_id)
    except EngineError as exc:
        _fail(exc)
    print(f"[bold]{manuscript_id}[/bold]: {value.value}")


@app.command("queue")
def queue(status: list[str] = typer.Option(None, help="Only manuscripts in these statuses.")) -> None:
    """Show manuscripts ordered by derived priority."""
    engine = build_engine()
    ranked = engine.prioritized(PostgresManuscripts().list_ids(status or None))
    if not ranked:
        print("[yellow]No manuscripts found.[/yellow]")
        return
    table = Table(title="Editorial Queue")
    table.add_column("Manuscript")
    table.add_column("Priority")
    for manuscript_id, value in ranked:
        table.add_row(manuscript_id, value.value)
    print(table)


@app.command("status")
def status() -> None:
    """Show reviewer load and capacity."""
    engine = build_engine()
    table = Table(title="Reviewer Load Status")
    table.add_column("Reviewer")
    table.add_column("Assigned", justify="right")
    table.add_column("Capacity", justify="right")
    table.add_column("Utilization", justify="right")
    table.add_column("Auto Rules", justify="right")

    for reviewer_id in PostgresReviewers().list_ids():
        try:
            settings = engine.tracker.settings(reviewer_id)
        except EngineError:
            table.add_row(reviewer_id, "-", "-", "-", "-")
            continue
        table.add_row(
            reviewer_id,
            str(settings.current_assignments),
            str(settings.monthly_capacity),
            f"{settings.workload_percentage / 100:.0%}",
            str(sum(1 for rule in settings.auto_decline_rules if rule.enabled)),
        )
    print(table)


@app.command("backlog")
def backlog(top: int = typer.Option(10, help="Oldest open assignments to list.")) -> None:
    """Show open invitations and reviews by age."""
    now = utc_now()
    report = build_backlog_report(PostgresAssignments().open_assignments(), now)
    print(
        f"[bold]Open:[/bold] {report.total} | "
        f"[bold]Overdue:[/bold] {report.overdue} | "
        f"[bold]Avg Age:[/bold] {report.avg_age_days:.1f} days"
    )
    if not report.total:
        return

    buckets = Table(title="Age Buckets (days)")
    for bucket in report.bucket_counts:
        buckets.add_column(bucket, justify="right")
    buckets.add_row(*(str(count) for count in report.bucket_counts.values()))
    print(buckets)

    reviewers = Table(title="Backlog by Reviewer")
    reviewers.add_column("Reviewer")
    reviewers.add_column("Invited", justify="right")
    reviewers.add_column("Accepted", justify="right")
    reviewers.add_column("Overdue", justify="right")
    reviewers.add_column("Oldest (days)", justify="right")
    for item in report.reviewer_stats:
        reviewers.add_row(
            item.reviewer_id,
            str(item.invited),
            str(item.accepted),
            str(item.overdue),
            f"{item.oldest_age_days:.1f}",
        )
    print(reviewers)

    table = Table(title="Oldest Open Assignments")
    table.add_column("Assignment")
    table.add_column("Reviewer")
    table.add_column("Status")
    table.add_column("Age (days)", justify="right")
    for assignment, age_days in report.oldest_assignments[:top]:
        table.add_row(assignment.id, assignment.reviewer_id, assignment.status.value, f"{age_days:.1f}")
    print(table)


@app.command("throughput")
def throughput(days: int = typer.Option(30, help="Look-back window in days.")) -> None:
    """Show completed reviews and cycle time."""
    now = utc_now()
    report = build_throughput_report(
        PostgresAssignments().completed_since(now - timedelta(days=days)),
        now,
        days,
    )
    print(
        f"[bold]Completed:[/bold] {report.total_completed} | "
        f"[bold]Avg Cycle:[/bold] {report.avg_cycle_days:.1f} days | "
        f"[bold]Range:[/bold] {report.min_cycle_days:.1f}-{report.max_cycle_days:.1f} days"
    )
    if not report.reviewer_stats:
        return

    daily = Table(title="Completions by Day")
    daily.add_column("Day")
    daily.add_column("Completed", justify="right")
    for day, count in sorted(report.daily_counts.items()):
        daily.add_row(day, str(count))
    print(daily)

    table = Table(title="Reviewer Throughput")
    table.add_column("Reviewer")
    table.add_column("Completed", justify="right")
    table.add_column("Avg Cycle (days)", justify="right")
    for item in report.reviewer_stats:
        table.add_row(item.reviewer_id, str(item.completed), f"{item.avg_cycle_days:.1f}")
    print(table)


if __name__ == "__main__":
    app()
