"""
keystone.engine.access — Access-Gate Evaluation
===============================================

Declarative capability rules → allow/deny decisions.

Gate order (first failure wins, later gates are never loaded):
  1. subscription  — cheapest and most restrictive
  2. level         — needs the derived standing
  3. milestones    — needs the user's completed milestone set
  4. scores        — needs the latest assessment

Each gate's input is supplied as a zero-argument loader so a request that
fails early never pays for the later reads.  The evaluator never raises on
an unknown capability; it answers ``UnknownCapability``.
"""

from __future__ import annotations

import enum
import logging
from collections.abc import Callable, Iterable, Mapping
from dataclasses import dataclass, field
from decimal import Decimal

from keystone.database.models import Category, MilestoneType, SubscriptionStatus
from keystone.engine.scoring import CompetencyStanding, LevelTable

logger = logging.getLogger(__name__)

__all__ = [
    "AccessDecision",
    "CapabilityRule",
    "DecisionReason",
    "evaluate_access",
    "parse_capability_rule",
    "parse_capability_rules",
]


class DecisionReason(enum.StrEnum):
    ALLOWED = "Allowed"
    UNKNOWN_CAPABILITY = "UnknownCapability"
    SUBSCRIPTION_REQUIRED = "SubscriptionRequired"
    LEVEL_TOO_LOW = "LevelTooLow"
    MILESTONE_INCOMPLETE = "MilestoneIncomplete"
    SCORE_TOO_LOW = "ScoreTooLow"
    STORAGE_UNAVAILABLE = "StorageUnavailable"


@dataclass(frozen=True, slots=True)
class AccessDecision:
    """Ephemeral answer to "may user U use capability C now?"."""

    user_id: str
    capability: str
    allowed: bool
    reason: DecisionReason
    detail: str | None = None

    def to_dict(self) -> dict:
        return {
            "user_id": self.user_id,
            "capability": self.capability,
            "allowed": self.allowed,
            "reason": self.reason.value,
            "detail": self.detail,
        }


@dataclass(frozen=True, slots=True)
class CapabilityRule:
    """Requirements for one capability.  Empty fields impose no gate."""

    name: str
    subscription: frozenset[SubscriptionStatus] = frozenset()
    min_level: str | None = None
    milestones: frozenset[MilestoneType] = frozenset()
    min_overall_score: Decimal | None = None
    min_dimension_scores: dict[str, Decimal] = field(default_factory=dict)

    @property
    def needs_assessment(self) -> bool:
        return self.min_overall_score is not None or bool(self.min_dimension_scores)


# ---------------------------------------------------------------------------
# Rule parsing
# ---------------------------------------------------------------------------
def parse_capability_rule(name: str, raw: Mapping, levels: LevelTable) -> CapabilityRule:
    unknown_keys = set(raw) - {
        "subscription", "min_level", "milestones",
        "min_overall_score", "min_dimension_scores",
    }
    if unknown_keys:
        raise ValueError(f"unknown rule keys {sorted(unknown_keys)}")

    subscription = frozenset(SubscriptionStatus(s) for s in raw.get("subscription") or ())
    min_level = raw.get("min_level")
    if min_level is not None and levels.rank(min_level) is None:
        raise ValueError(f"min_level {min_level!r} is not in the level table")
    milestones = frozenset(MilestoneType(m) for m in raw.get("milestones") or ())

    min_overall = raw.get("min_overall_score")
    dimensions = {
        Category(dim).value: Decimal(str(score))
        for dim, score in (raw.get("min_dimension_scores") or {}).items()
    }
    return CapabilityRule(
        name=name,
        subscription=subscription,
        min_level=min_level,
        milestones=milestones,
        min_overall_score=Decimal(str(min_overall)) if min_overall is not None else None,
        min_dimension_scores=dimensions,
    )


def parse_capability_rules(
    raw: Mapping | None, levels: LevelTable
) -> dict[str, CapabilityRule]:
    """Parse the ``access.capabilities`` setting.

    A malformed rule is dropped with a warning; that capability then
    evaluates as unknown (deny) rather than taking the others down with it.
    """
    rules: dict[str, CapabilityRule] = {}
    for name, body in (raw or {}).items():
        if not isinstance(body, Mapping):
            logger.warning("Dropping capability %r: rule must be an object", name)
            continue
        try:
            rules[name] = parse_capability_rule(name, body, levels)
        except (ValueError, TypeError, ArithmeticError) as exc:
            logger.warning("Dropping capability %r: %s", name, exc)
    return rules


# ---------------------------------------------------------------------------
# Evaluation
# ---------------------------------------------------------------------------
def evaluate_access(
    user_id: str,
    capability: str,
    rules: Mapping[str, CapabilityRule],
    levels: LevelTable,
    *,
    subscription_status: Callable[[], SubscriptionStatus],
    standing: Callable[[], CompetencyStanding],
    completed_milestones: Callable[[], Iterable[MilestoneType | str]],
) -> AccessDecision:
    """Run the gates for *capability* in order and report the first failure."""
    rule = rules.get(capability)
    if rule is None:
        return AccessDecision(
            user_id, capability, False, DecisionReason.UNKNOWN_CAPABILITY,
        )

    def deny(reason: DecisionReason, detail: str) -> AccessDecision:
        return AccessDecision(user_id, capability, False, reason, detail)

    # 1. Subscription gate
    if rule.subscription:
        status = subscription_status()
        if status not in rule.subscription:
            allowed = ", ".join(sorted(s.value for s in rule.subscription))
            return deny(
                DecisionReason.SUBSCRIPTION_REQUIRED,
                f"subscription is {status.value}; requires one of [{allowed}]",
            )

    # 2. Level gate (standing only loaded when a later gate needs it)
    current: CompetencyStanding | None = None
    if rule.min_level is not None:
        current = standing()
        have = levels.rank(current.current_level)
        need = levels.rank(rule.min_level)
        if have is None or have < need:
            return deny(
                DecisionReason.LEVEL_TOO_LOW,
                f"level {current.current_level} is below {rule.min_level}",
            )

    # 3. Milestone gate
    if rule.milestones:
        done = {MilestoneType(m) for m in completed_milestones()}
        missing = sorted(m.value for m in rule.milestones - done)
        if missing:
            return deny(
                DecisionReason.MILESTONE_INCOMPLETE,
                f"missing milestones: {', '.join(missing)}",
            )

    # 4. Assessment score gate
    if rule.needs_assessment:
        if current is None:
            current = standing()
        summary = current.assessment
        if rule.min_overall_score is not None:
            overall = summary.latest_overall
            if overall is None or overall < rule.min_overall_score:
                return deny(
                    DecisionReason.SCORE_TOO_LOW,
                    f"overall score {overall} is below {rule.min_overall_score}",
                )
        for dimension, minimum in sorted(rule.min_dimension_scores.items()):
            score = summary.latest_scores.get(dimension)
            if score is None or score < minimum:
                return deny(
                    DecisionReason.SCORE_TOO_LOW,
                    f"{dimension} score {score} is below {minimum}",
                )

    return AccessDecision(user_id, capability, True, DecisionReason.ALLOWED)
