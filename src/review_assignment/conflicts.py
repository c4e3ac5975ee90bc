from __future__ import annotations

from dataclasses import dataclass, replace
from datetime import date, datetime
from enum import Enum
from typing import Iterable

from .config import EngineConfig
from .models import Affiliation, Manuscript, Reviewer, utc


class ConflictType(str, Enum):
    AUTHOR_IS_REVIEWER = "author_is_reviewer"
    AUTHOR_EXCLUDED = "author_excluded"
    INSTITUTIONAL_CURRENT = "institutional_current"
    INSTITUTIONAL_RECENT = "institutional_recent"
    COAUTHORSHIP_RECENT = "coauthorship_recent"
    ADVISOR_ADVISEE = "advisor_advisee"
    FINANCIAL_COMPETING = "financial_competing"
    CUSTOM = "custom"


class ConflictSeverity(str, Enum):
    BLOCKING = "blocking"
    HIGH = "high"
    MEDIUM = "medium"
    LOW = "low"


_SEVERITY_ORDER = {
    ConflictSeverity.BLOCKING: 0,
    ConflictSeverity.HIGH: 1,
    ConflictSeverity.MEDIUM: 2,
    ConflictSeverity.LOW: 3,
}

_SEVERITY_WEIGHTS = {
    ConflictSeverity.BLOCKING: 100,
    ConflictSeverity.HIGH: 60,
    ConflictSeverity.MEDIUM: 30,
    ConflictSeverity.LOW: 10,
}

_TYPE_WEIGHTS = {
    ConflictType.ADVISOR_ADVISEE: 1.5,
    ConflictType.COAUTHORSHIP_RECENT: 1.3,
    ConflictType.FINANCIAL_COMPETING: 1.2,
    ConflictType.INSTITUTIONAL_CURRENT: 1.1,
    ConflictType.INSTITUTIONAL_RECENT: 0.8,
}


@dataclass(frozen=True)
class ConflictEvidence:
    reviewer_id: str
    manuscript_id: str
    type: ConflictType
    severity: ConflictSeverity
    author_id: str
    detail: str
    overridden: bool = False

    @property
    def is_blocking(self) -> bool:
        return self.severity is ConflictSeverity.BLOCKING


@dataclass(frozen=True)
class ConflictOverride:
    manuscript_id: str
    reviewer_id: str
    conflict_type: ConflictType
    reason: str
    recorded_at: datetime


def _years_before(day: date, years: int) -> date:
    try:
        return day.replace(year=day.year - years)
    except ValueError:
        # Feb 29 on a non-leap target year
        return day.replace(year=day.year - years, day=28)


def _overlap_end(first: Affiliation, second: Affiliation, today: date) -> date | None:
    start = max(first.started_on or date.min, second.started_on or date.min)
    end = min(first.ended_on or today, second.ended_on or today)
    if start > end:
        return None
    return end


def _institutional(
    manuscript: Manuscript,
    reviewer: Reviewer,
    today: date,
    config: EngineConfig,
) -> list[ConflictEvidence]:
    evidence: list[ConflictEvidence] = []
    recent_cutoff = _years_before(today, config.institutional_recent_years)
    seen: set[tuple[ConflictType, str, str]] = set()

    for author_id in manuscript.author_ids:
        for author_affiliation in manuscript.author_affiliations.get(author_id, ()):
            for own in reviewer.affiliations:
                if own.key != author_affiliation.key:
                    continue
                if own.is_current and author_affiliation.is_current:
                    conflict_type = ConflictType.INSTITUTIONAL_CURRENT
                    severity = ConflictSeverity.BLOCKING
                    detail = f"Both currently affiliated with {own.institution}"
                else:
                    overlap_end = _overlap_end(own, author_affiliation, today)
                    if overlap_end is None or overlap_end < recent_cutoff:
                        continue
                    conflict_type = ConflictType.INSTITUTIONAL_RECENT
                    severity = ConflictSeverity.HIGH
                    detail = f"Shared affiliation with {own.institution} until {overlap_end.isoformat()}"
                key = (conflict_type, author_id, own.key)
                if key in seen:
                    continue
                seen.add(key)
                evidence.append(
                    ConflictEvidence(
                        reviewer_id=reviewer.id,
                        manuscript_id=manuscript.id,
                        type=conflict_type,
                        severity=severity,
                        author_id=author_id,
                        detail=detail,
                    )
                )
    return evidence


def _coauthorship(
    manuscript: Manuscript,
    reviewer: Reviewer,
    today: date,
    config: EngineConfig,
) -> list[ConflictEvidence]:
    cutoff = _years_before(today, config.coauthorship_recent_years)
    authors = set(manuscript.author_ids)
    latest: dict[str, date] = {}
    for record in reviewer.coauthorships:
        if record.coauthor_id not in authors or record.published_on < cutoff:
            continue
        if record.coauthor_id not in latest or record.published_on > latest[record.coauthor_id]:
            latest[record.coauthor_id] = record.published_on
    return [
        ConflictEvidence(
            reviewer_id=reviewer.id,
            manuscript_id=manuscript.id,
            type=ConflictType.COAUTHORSHIP_RECENT,
            severity=ConflictSeverity.HIGH,
            author_id=author_id,
            detail=f"Co-authored with {author_id} on {published_on.isoformat()}",
        )
        for author_id, published_on in latest.items()
    ]


def evaluate_conflicts(
    manuscript: Manuscript,
    reviewer: Reviewer,
    now: datetime,
    config: EngineConfig | None = None,
) -> list[ConflictEvidence]:
    config = config or EngineConfig()
    today = utc(now).date()
    authors = manuscript.author_ids
    author_set = set(authors)
    evidence: list[ConflictEvidence] = []

    if reviewer.id in author_set:
        evidence.append(
            ConflictEvidence(
                reviewer_id=reviewer.id,
                manuscript_id=manuscript.id,
                type=ConflictType.AUTHOR_IS_REVIEWER,
                severity=ConflictSeverity.BLOCKING,
                author_id=reviewer.id,
                detail="Reviewer is an author of the manuscript",
            )
        )

    if reviewer.id in manuscript.excluded_reviewer_ids:
        evidence.append(
            ConflictEvidence(
                reviewer_id=reviewer.id,
                manuscript_id=manuscript.id,
                type=ConflictType.AUTHOR_EXCLUDED,
                severity=ConflictSeverity.BLOCKING,
                author_id=manuscript.author_id,
                detail="Reviewer excluded at submission",
            )
        )

    evidence.extend(_institutional(manuscript, reviewer, today, config))
    evidence.extend(_coauthorship(manuscript, reviewer, today, config))

    for link in reviewer.advisor_links:
        if link.person_id in author_set:
            evidence.append(
                ConflictEvidence(
                    reviewer_id=reviewer.id,
                    manuscript_id=manuscript.id,
                    type=ConflictType.ADVISOR_ADVISEE,
                    severity=ConflictSeverity.BLOCKING,
                    author_id=link.person_id,
                    detail=f"Declared {link.role} relationship",
                )
            )

    for disclosure in reviewer.financial_disclosures:
        if disclosure.party_id in author_set:
            evidence.append(
                ConflictEvidence(
                    reviewer_id=reviewer.id,
                    manuscript_id=manuscript.id,
                    type=ConflictType.FINANCIAL_COMPETING,
                    severity=ConflictSeverity.MEDIUM,
                    author_id=disclosure.party_id,
                    detail=disclosure.description or "Declared financial or competing interest",
                )
            )

    for declared in reviewer.declared_conflicts:
        if declared.author_id in author_set:
            evidence.append(
                ConflictEvidence(
                    reviewer_id=reviewer.id,
                    manuscript_id=manuscript.id,
                    type=ConflictType.CUSTOM,
                    severity=ConflictSeverity(declared.severity),
                    author_id=declared.author_id,
                    detail=declared.detail or "Declared by reviewer",
                )
            )

    author_rank = {author_id: index for index, author_id in enumerate(authors)}
    evidence.sort(
        key=lambda item: (
            _SEVERITY_ORDER[item.severity],
            item.type.value,
            author_rank.get(item.author_id, len(author_rank)),
        )
    )
    return evidence


def is_eligible(evidence: Iterable[ConflictEvidence]) -> bool:
    return not any(item.is_blocking for item in evidence)


def blocking_types(evidence: Iterable[ConflictEvidence]) -> list[str]:
    return sorted({item.type.value for item in evidence if item.is_blocking})


def risk_score(evidence: list[ConflictEvidence]) -> int:
    """Weighted 0-100 risk; overridden evidence still counts."""
    if not evidence:
        return 0
    score = 0.0
    for item in evidence:
        score += _SEVERITY_WEIGHTS[item.severity] * _TYPE_WEIGHTS.get(item.type, 1.0)
    score *= 1 + (len(evidence) - 1) * 0.1
    return int(round(min(100.0, score)))


def apply_overrides(
    evidence: list[ConflictEvidence],
    overrides: Iterable[ConflictOverride],
) -> list[ConflictEvidence]:
    overridden_types = {override.conflict_type for override in overrides}
    if not overridden_types:
        return evidence
    return [
        replace(item, overridden=True)
        if item.type in overridden_types and not item.is_blocking
        else item
        for item in evidence
    ]


def warnings_for(evidence: Iterable[ConflictEvidence]) -> list[str]:
    return [
        f"{item.severity.value}:{item.type.value}:{item.author_id}"
        for item in evidence
        if not item.is_blocking and not item.overridden
    ]
