"""
keystone.engine.events — Inbound event envelopes
================================================

Every payload a collaborator delivers (scored action, assessment, billing
signal) is normalized into one of these frozen dataclasses before any
service touches storage.  ``validate()`` is the boundary: anything it
rejects is never partially applied.
"""

from __future__ import annotations

import enum
from dataclasses import dataclass, field
from datetime import datetime
from decimal import ROUND_HALF_UP, Decimal, InvalidOperation

from keystone.database.models import AssessmentKind, Category
from keystone.errors import ValidationError

__all__ = [
    "AssessmentSubmission",
    "BillingEvent",
    "BillingEventKind",
    "ScoredAction",
    "event_points",
    "parse_enum",
    "to_decimal",
]


def parse_enum(enum_cls: type[enum.StrEnum], value: object, field_name: str):
    """Coerce *value* into *enum_cls* or raise :class:`ValidationError`."""
    try:
        return enum_cls(value)
    except ValueError:
        allowed = ", ".join(m.value for m in enum_cls)
        raise ValidationError(
            f"{field_name}: {value!r} is not one of [{allowed}]"
        ) from None


def to_decimal(value: object, field_name: str) -> Decimal:
    """Exact decimal from int/str/Decimal/float (floats go through ``str``)."""
    if isinstance(value, bool):
        raise ValidationError(f"{field_name}: expected a number, got {value!r}")
    try:
        result = value if isinstance(value, Decimal) else Decimal(str(value))
    except (InvalidOperation, ValueError):
        raise ValidationError(f"{field_name}: expected a number, got {value!r}") from None
    if not result.is_finite():
        raise ValidationError(f"{field_name}: must be finite")
    return result


def _require_aware(value: datetime, field_name: str) -> None:
    if not isinstance(value, datetime):
        raise ValidationError(f"{field_name}: expected a datetime")
    if value.tzinfo is None:
        raise ValidationError(f"{field_name}: must be timezone-aware")


def event_points(base_points: int, impact_multiplier: Decimal) -> int:
    """Points one verified event is worth: base × multiplier, half-up to int."""
    return int(
        (Decimal(base_points) * impact_multiplier).to_integral_value(ROUND_HALF_UP)
    )


# ---------------------------------------------------------------------------
# ScoredAction — a scored action on its way into the Event Store
# ---------------------------------------------------------------------------
@dataclass(frozen=True, slots=True)
class ScoredAction:
    user_id: str
    category: Category | str
    base_points: int
    occurred_at: datetime
    impact_multiplier: Decimal | float | str = Decimal("1.0")
    verified: bool = False
    source_system: str = "actions"
    source_event_id: str | None = None
    metadata: dict = field(default_factory=dict)

    def validate(self) -> ScoredAction:
        """Return a normalized copy or raise :class:`ValidationError`."""
        if not self.user_id:
            raise ValidationError("user_id is required")
        category = parse_enum(Category, self.category, "category")
        if isinstance(self.base_points, bool) or not isinstance(self.base_points, int):
            raise ValidationError("base_points must be an integer")
        if self.base_points < 0:
            raise ValidationError(
                f"base_points must be non-negative, got {self.base_points}"
            )
        multiplier = to_decimal(self.impact_multiplier, "impact_multiplier")
        if multiplier <= 0:
            raise ValidationError(
                f"impact_multiplier must be positive, got {multiplier}"
            )
        if multiplier >= 1000:
            raise ValidationError("impact_multiplier is out of range")
        _require_aware(self.occurred_at, "occurred_at")
        return ScoredAction(
            user_id=self.user_id,
            category=category,
            base_points=self.base_points,
            occurred_at=self.occurred_at,
            impact_multiplier=multiplier,
            verified=bool(self.verified),
            source_system=self.source_system,
            source_event_id=self.source_event_id,
            metadata=dict(self.metadata),
        )


# ---------------------------------------------------------------------------
# AssessmentSubmission — a finished assessment
# ---------------------------------------------------------------------------
@dataclass(frozen=True, slots=True)
class AssessmentSubmission:
    user_id: str
    taken_at: datetime
    kind: AssessmentKind | str = AssessmentKind.PROGRESS
    scores: dict[str, float | Decimal | None] = field(default_factory=dict)

    def validate(self) -> AssessmentSubmission:
        if not self.user_id:
            raise ValidationError("user_id is required")
        kind = parse_enum(AssessmentKind, self.kind, "kind")
        _require_aware(self.taken_at, "taken_at")

        normalized: dict[str, Decimal | None] = {c.value: None for c in Category}
        for dimension, raw in self.scores.items():
            key = parse_enum(Category, dimension, "scores").value
            if raw is None:
                continue
            score = to_decimal(raw, f"scores.{key}")
            if not Decimal(0) <= score <= Decimal(100):
                raise ValidationError(
                    f"scores.{key} must be within 0–100, got {score}"
                )
            normalized[key] = score.quantize(Decimal("0.01"), ROUND_HALF_UP)

        return AssessmentSubmission(
            user_id=self.user_id, taken_at=self.taken_at, kind=kind, scores=normalized,
        )

    @property
    def overall_score(self) -> Decimal | None:
        """Mean of the non-null dimension scores, two decimals."""
        present = [s for s in self.scores.values() if s is not None]
        if not present:
            return None
        mean = sum(present, Decimal(0)) / len(present)
        return mean.quantize(Decimal("0.01"), ROUND_HALF_UP)


# ---------------------------------------------------------------------------
# BillingEvent — normalized billing-provider signal
# ---------------------------------------------------------------------------
class BillingEventKind(enum.StrEnum):
    TRIAL_STARTED = "trial_started"
    ACTIVATED = "activated"
    PAST_DUE = "past_due"
    CANCELLED = "cancelled"


@dataclass(frozen=True, slots=True)
class BillingEvent:
    """Provider-agnostic billing signal.

    ``trial_end_at`` / ``period_end`` are optional; the subscription service
    falls back to the configured trial and period lengths.
    """

    user_id: str
    kind: BillingEventKind | str
    effective_at: datetime
    trial_end_at: datetime | None = None
    period_end: datetime | None = None

    def validate(self) -> BillingEvent:
        if not self.user_id:
            raise ValidationError("user_id is required")
        kind = parse_enum(BillingEventKind, self.kind, "kind")
        _require_aware(self.effective_at, "effective_at")
        for name in ("trial_end_at", "period_end"):
            value = getattr(self, name)
            if value is not None:
                _require_aware(value, name)
        return BillingEvent(
            user_id=self.user_id,
            kind=kind,
            effective_at=self.effective_at,
            trial_end_at=self.trial_end_at,
            period_end=self.period_end,
        )
