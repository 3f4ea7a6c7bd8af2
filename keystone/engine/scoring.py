"""
keystone.engine.scoring — Competency Standing Calculation
=========================================================

Pure calculation: event history + assessment history → CompetencyStanding.
No database I/O and no wall-clock reads; the only timestamps involved are
the ones carried by the events themselves, so the same history always
yields the same standing.

Pipeline:
  history → verified filter → points (base × multiplier) → level lookup
          → previous level (history minus its most recent event)
          → assessment summary → CompetencyStanding
"""

from __future__ import annotations

import logging
from collections.abc import Iterable, Sequence
from dataclasses import dataclass, field
from datetime import datetime
from decimal import ROUND_HALF_UP, Decimal
from typing import Protocol

from keystone.database.models import AssessmentKind, Category
from keystone.engine.events import event_points
from keystone.errors import ValidationError

logger = logging.getLogger(__name__)

__all__ = [
    "AssessmentSummary",
    "CompetencyStanding",
    "Level",
    "LevelTable",
    "compute_standing",
    "summarize_assessments",
]


class ScoredEventLike(Protocol):
    category: str
    base_points: int
    impact_multiplier: Decimal
    occurred_at: datetime
    verified: bool


class AssessmentLike(Protocol):
    taken_at: datetime
    kind: str
    scores: dict[str, Decimal | None]
    overall_score: Decimal | None


# ---------------------------------------------------------------------------
# Level table — configuration, not code
# ---------------------------------------------------------------------------
@dataclass(frozen=True, slots=True)
class Level:
    threshold: int
    name: str


class LevelTable:
    """Ordered (threshold, name) pairs.

    Thresholds must start at 0 and strictly increase so that every
    non-negative point total maps to exactly one level.
    """

    __slots__ = ("_levels", "_rank")

    def __init__(self, levels: Iterable[tuple[int, str] | Sequence]) -> None:
        parsed: list[Level] = []
        for entry in levels:
            try:
                threshold, name = entry
            except (TypeError, ValueError):
                raise ValidationError(
                    f"level entry must be a [threshold, name] pair, got {entry!r}"
                ) from None
            if isinstance(threshold, bool) or not isinstance(threshold, int):
                raise ValidationError(f"level threshold must be an integer: {entry!r}")
            if not isinstance(name, str) or not name:
                raise ValidationError(f"level name must be a non-empty string: {entry!r}")
            parsed.append(Level(threshold, name))

        if not parsed:
            raise ValidationError("level table must define at least one level")
        if parsed[0].threshold != 0:
            raise ValidationError("the lowest level threshold must be 0")
        for lower, higher in zip(parsed, parsed[1:]):
            if higher.threshold <= lower.threshold:
                raise ValidationError(
                    f"level thresholds must strictly increase "
                    f"({lower.name}={lower.threshold}, {higher.name}={higher.threshold})"
                )
        names = [lvl.name for lvl in parsed]
        if len(set(names)) != len(names):
            raise ValidationError("level names must be unique")

        self._levels: tuple[Level, ...] = tuple(parsed)
        self._rank: dict[str, int] = {lvl.name: i for i, lvl in enumerate(parsed)}

    @property
    def levels(self) -> tuple[Level, ...]:
        return self._levels

    @property
    def lowest(self) -> Level:
        return self._levels[0]

    def level_for(self, points: int) -> Level:
        """Highest level whose threshold is ≤ *points*."""
        current = self._levels[0]
        for level in self._levels:
            if level.threshold > points:
                break
            current = level
        return current

    def rank(self, name: str) -> int | None:
        """Position of *name* in the table (0 = lowest), or None if unknown."""
        return self._rank.get(name)

    def next_level(self, level: Level) -> Level | None:
        idx = self._rank[level.name]
        if idx + 1 < len(self._levels):
            return self._levels[idx + 1]
        return None

    def progress(self, points: int) -> float:
        """Percent of the way from the current threshold to the next (0–100)."""
        current = self.level_for(points)
        upcoming = self.next_level(current)
        if upcoming is None:
            return 100.0
        span = upcoming.threshold - current.threshold
        pct = (points - current.threshold) / span * 100
        return round(min(100.0, max(0.0, pct)), 2)

    def to_setting(self) -> list[list[object]]:
        return [[lvl.threshold, lvl.name] for lvl in self._levels]

    def __len__(self) -> int:
        return len(self._levels)

    def __repr__(self) -> str:
        return f"<LevelTable {[(lvl.threshold, lvl.name) for lvl in self._levels]}>"


# ---------------------------------------------------------------------------
# Output types
# ---------------------------------------------------------------------------
@dataclass(frozen=True, slots=True)
class AssessmentSummary:
    """What the assessment history says, independent of points."""

    assessments_taken: int = 0
    latest_taken_at: datetime | None = None
    latest_overall: Decimal | None = None
    latest_scores: dict[str, Decimal | None] = field(default_factory=dict)
    baseline_scores: dict[str, Decimal | None] = field(default_factory=dict)
    growth: dict[str, Decimal] = field(default_factory=dict)

    def to_dict(self) -> dict:
        def _num(v):
            return float(v) if v is not None else None

        return {
            "assessments_taken": self.assessments_taken,
            "latest_taken_at": (
                self.latest_taken_at.isoformat() if self.latest_taken_at else None
            ),
            "latest_overall": _num(self.latest_overall),
            "latest_scores": {k: _num(v) for k, v in self.latest_scores.items()},
            "baseline_scores": {k: _num(v) for k, v in self.baseline_scores.items()},
            "growth": {k: float(v) for k, v in self.growth.items()},
        }


@dataclass(frozen=True, slots=True)
class CompetencyStanding:
    """Derived standing.  Never stored as ground truth."""

    user_id: str
    total_points: int
    current_level: str
    previous_level: str
    computed_at: datetime | None
    level_progress: float = 0.0
    next_level: str | None = None
    points_to_next_level: int | None = None
    points_by_category: dict[str, int] = field(default_factory=dict)
    verified_events: int = 0
    unverified_events: int = 0
    assessment: AssessmentSummary = field(default_factory=AssessmentSummary)

    @property
    def leveled_up(self) -> bool:
        return self.current_level != self.previous_level

    def to_dict(self) -> dict:
        return {
            "user_id": self.user_id,
            "total_points": self.total_points,
            "current_level": self.current_level,
            "previous_level": self.previous_level,
            "leveled_up": self.leveled_up,
            "computed_at": self.computed_at.isoformat() if self.computed_at else None,
            "level_progress": self.level_progress,
            "next_level": self.next_level,
            "points_to_next_level": self.points_to_next_level,
            "points_by_category": dict(self.points_by_category),
            "verified_events": self.verified_events,
            "unverified_events": self.unverified_events,
            "assessment": self.assessment.to_dict(),
        }


# ---------------------------------------------------------------------------
# Assessment summary
# ---------------------------------------------------------------------------
def summarize_assessments(records: Iterable[AssessmentLike]) -> AssessmentSummary:
    """Latest scores, first-baseline scores, and growth between them."""
    ordered = sorted(records, key=lambda r: r.taken_at)
    if not ordered:
        return AssessmentSummary()

    latest = ordered[-1]
    baseline = next(
        (r for r in ordered if r.kind == AssessmentKind.BASELINE), None
    )
    baseline_scores = dict(baseline.scores) if baseline is not None else {}

    growth: dict[str, Decimal] = {}
    for dimension, score in latest.scores.items():
        base = baseline_scores.get(dimension)
        if score is not None and base is not None:
            growth[dimension] = (score - base).quantize(Decimal("0.01"), ROUND_HALF_UP)

    return AssessmentSummary(
        assessments_taken=len(ordered),
        latest_taken_at=latest.taken_at,
        latest_overall=latest.overall_score,
        latest_scores=dict(latest.scores),
        baseline_scores=baseline_scores,
        growth=growth,
    )


# ---------------------------------------------------------------------------
# Main calculation
# ---------------------------------------------------------------------------
def compute_standing(
    history: Iterable[ScoredEventLike],
    levels: LevelTable,
    *,
    user_id: str,
    assessments: Iterable[AssessmentLike] = (),
) -> CompetencyStanding:
    """Derive a :class:`CompetencyStanding` from history alone.

    Only verified events score; an unverified event contributes 0 until the
    verification flip is recorded and the standing is recomputed.
    ``previous_level`` is the level the history implied before its most
    recent event, which is how callers detect a level-up.
    """
    events = sorted(history, key=lambda e: e.occurred_at)
    summary = summarize_assessments(assessments)

    total = 0
    by_category: dict[str, int] = {c.value: 0 for c in Category}
    verified_count = 0
    last_contribution = 0
    for event in events:
        contribution = 0
        if event.verified:
            contribution = event_points(event.base_points, event.impact_multiplier)
            verified_count += 1
            category = str(event.category)
            by_category[category] = by_category.get(category, 0) + contribution
        total += contribution
        last_contribution = contribution

    current = levels.level_for(total)
    previous = levels.level_for(total - last_contribution)
    upcoming = levels.next_level(current)

    stamps = [events[-1].occurred_at] if events else []
    if summary.latest_taken_at is not None:
        stamps.append(summary.latest_taken_at)
    computed_at = max(stamps) if stamps else None

    return CompetencyStanding(
        user_id=user_id,
        total_points=total,
        current_level=current.name,
        previous_level=previous.name,
        computed_at=computed_at,
        level_progress=levels.progress(total),
        next_level=upcoming.name if upcoming else None,
        points_to_next_level=(upcoming.threshold - total) if upcoming else None,
        points_by_category=by_category,
        verified_events=verified_count,
        unverified_events=len(events) - verified_count,
        assessment=summary,
    )
