"""
tests/test_access.py — Access-Gate Tests
========================================
Rule parsing, gate order and laziness, and the service wiring including
the fail-closed answer when storage is down.
"""

from __future__ import annotations

from datetime import timedelta
from decimal import Decimal
from unittest.mock import patch

import pytest
from conftest import T0

from keystone.database.models import MilestoneType, SubscriptionStatus
from keystone.database.seed import DEFAULT_LEVELS
from keystone.engine.access import (
    DecisionReason,
    evaluate_access,
    parse_capability_rule,
    parse_capability_rules,
)
from keystone.engine.events import AssessmentSubmission, ScoredAction
from keystone.engine.scoring import AssessmentSummary, CompetencyStanding, LevelTable
from keystone.errors import StorageUnavailable
from keystone.services import access_service, event_store, milestone_service, subscription_service

LEVELS = LevelTable(DEFAULT_LEVELS)

RULES = parse_capability_rules(
    {
        "community": {
            "subscription": ["active"],
            "min_level": "Intermediate",
            "milestones": ["waitlist_paid"],
        },
        "calculator": {"min_dimension_scores": {"value_communication": 70}},
        "resources": {"min_overall_score": 50},
        "open": {},
    },
    LEVELS,
)


def _standing(level="Foundation", overall=None, scores=None) -> CompetencyStanding:
    return CompetencyStanding(
        user_id="u1",
        total_points=0,
        current_level=level,
        previous_level=level,
        computed_at=None,
        assessment=AssessmentSummary(
            latest_overall=overall, latest_scores=dict(scores or {}),
        ),
    )


class Loaders:
    """Zero-argument loaders that record which gates were consulted."""

    def __init__(self, status=SubscriptionStatus.ACTIVE, standing=None, milestones=()):
        self.calls: list[str] = []
        self._status = status
        self._standing = standing or _standing()
        self._milestones = milestones

    def subscription(self):
        self.calls.append("subscription")
        return self._status

    def standing(self):
        self.calls.append("standing")
        return self._standing

    def milestones(self):
        self.calls.append("milestones")
        return self._milestones

    def evaluate(self, capability):
        return evaluate_access(
            "u1", capability, RULES, LEVELS,
            subscription_status=self.subscription,
            standing=self.standing,
            completed_milestones=self.milestones,
        )


# ===========================================================================
# Rule parsing
# ===========================================================================
class TestRuleParsing:
    def test_parses_fields(self):
        rule = RULES["community"]
        assert rule.subscription == frozenset({SubscriptionStatus.ACTIVE})
        assert rule.min_level == "Intermediate"
        assert rule.milestones == frozenset({MilestoneType.WAITLIST_PAID})
        assert RULES["calculator"].min_dimension_scores == {"value_communication": Decimal("70")}
        assert RULES["calculator"].needs_assessment

    @pytest.mark.parametrize(
        "body",
        [
            {"subscription": ["gold"]},
            {"min_level": "Grandmaster"},
            {"milestones": ["won_the_lottery"]},
            {"min_dimension_scores": {"negotiation": 50}},
            {"min_overall_score": "lots"},
            {"max_level": "Expert"},
        ],
    )
    def test_strict_parser_rejects(self, body):
        with pytest.raises((ValueError, ArithmeticError)):
            parse_capability_rule("bad", body, LEVELS)

    def test_malformed_rule_is_dropped_not_fatal(self):
        rules = parse_capability_rules(
            {"bad": {"min_level": "Grandmaster"}, "also_bad": "yes", "good": {}}, LEVELS,
        )
        assert set(rules) == {"good"}


# ===========================================================================
# Gate evaluation
# ===========================================================================
class TestEvaluateAccess:
    def test_unknown_capability_denies(self):
        loaders = Loaders()
        decision = loaders.evaluate("time_machine")
        assert not decision.allowed
        assert decision.reason == DecisionReason.UNKNOWN_CAPABILITY
        assert loaders.calls == []

    def test_rule_without_gates_allows(self):
        decision = Loaders().evaluate("open")
        assert decision.allowed
        assert decision.reason == DecisionReason.ALLOWED

    def test_subscription_fails_first_and_skips_later_loads(self):
        loaders = Loaders(status=SubscriptionStatus.TRIAL)
        decision = loaders.evaluate("community")
        assert decision.reason == DecisionReason.SUBSCRIPTION_REQUIRED
        assert loaders.calls == ["subscription"]

    def test_level_gate(self):
        loaders = Loaders(standing=_standing("Developing"))
        decision = loaders.evaluate("community")
        assert decision.reason == DecisionReason.LEVEL_TOO_LOW
        assert "milestones" not in loaders.calls

    def test_milestone_gate(self):
        loaders = Loaders(standing=_standing("Advanced"))
        decision = loaders.evaluate("community")
        assert decision.reason == DecisionReason.MILESTONE_INCOMPLETE
        assert "waitlist_paid" in decision.detail

    def test_all_gates_pass(self):
        loaders = Loaders(standing=_standing("Advanced"), milestones=["waitlist_paid"])
        decision = loaders.evaluate("community")
        assert decision.allowed
        assert loaders.calls == ["subscription", "standing", "milestones"]

    @pytest.mark.parametrize(
        "capability, standing, allowed",
        [
            ("calculator", _standing(scores={"value_communication": Decimal("69.99")}), False),
            ("calculator", _standing(scores={"value_communication": Decimal("70")}), True),
            ("calculator", _standing(scores={"value_communication": None}), False),
            ("resources", _standing(overall=None), False),
            ("resources", _standing(overall=Decimal("50.00")), True),
        ],
    )
    def test_score_gates(self, capability, standing, allowed):
        decision = Loaders(standing=standing).evaluate(capability)
        assert decision.allowed is allowed
        if not allowed:
            assert decision.reason == DecisionReason.SCORE_TOO_LOW

    def test_to_dict(self):
        data = Loaders().evaluate("time_machine").to_dict()
        assert data == {
            "user_id": "u1",
            "capability": "time_machine",
            "allowed": False,
            "reason": "UnknownCapability",
            "detail": None,
        }


# ===========================================================================
# Service wiring
# ===========================================================================
class TestAccessService:
    def test_icp_generator_needs_trial_and_assessment(self, db_engine, cache, bus):
        now = T0 + timedelta(hours=1)
        denied = access_service.evaluate(db_engine, cache, "u1", "icp_generator", now=now)
        assert denied.reason == DecisionReason.SUBSCRIPTION_REQUIRED

        subscription_service.start_trial(db_engine, cache, "u1", T0 + timedelta(days=3), now=T0)
        denied = access_service.evaluate(db_engine, cache, "u1", "icp_generator", now=now)
        assert denied.reason == DecisionReason.MILESTONE_INCOMPLETE

        milestone_service.complete(db_engine, "u1", "assessment_completed", T0, bus=bus)
        assert access_service.evaluate(db_engine, cache, "u1", "icp_generator", now=now).allowed

    def test_score_gate_reads_latest_assessment(self, db_engine, cache):
        subscription_service.start_trial(db_engine, cache, "u1", T0 + timedelta(days=3), now=T0)
        event_store.append_assessment(db_engine, AssessmentSubmission(
            user_id="u1", taken_at=T0, kind="baseline", scores={"value_communication": 55},
        ))
        now = T0 + timedelta(hours=1)
        low = access_service.evaluate(db_engine, cache, "u1", "cost_calculator", now=now)
        assert low.reason == DecisionReason.SCORE_TOO_LOW

        event_store.append_assessment(db_engine, AssessmentSubmission(
            user_id="u1", taken_at=T0 + timedelta(minutes=30), scores={"value_communication": 72},
        ))
        assert access_service.evaluate(db_engine, cache, "u1", "cost_calculator", now=now).allowed

    def test_level_gate_over_stored_history(self, db_engine, cache, bus):
        subscription_service.start_trial(db_engine, cache, "u1", T0 + timedelta(days=3), now=T0)
        subscription_service.activate(db_engine, cache, "u1", T0 + timedelta(days=30), now=T0)
        milestone_service.complete(db_engine, "u1", "waitlist_paid", T0, bus=bus)
        now = T0 + timedelta(hours=1)

        low = access_service.evaluate(db_engine, cache, "u1", "founding_member_community", now=now)
        assert low.reason == DecisionReason.LEVEL_TOO_LOW

        event_store.append_event(db_engine, ScoredAction(
            user_id="u1", category="sales_execution", base_points=400,
            occurred_at=T0, impact_multiplier="1.0", verified=True,
        ))
        assert access_service.evaluate(
            db_engine, cache, "u1", "founding_member_community", now=now,
        ).allowed

    def test_unknown_capability_never_raises(self, db_engine, cache):
        decision = access_service.evaluate(db_engine, cache, "u1", "time_machine")
        assert decision.reason == DecisionReason.UNKNOWN_CAPABILITY

    def test_storage_failure_fails_closed(self, db_engine, cache):
        with patch(
            "keystone.services.subscription_service.get_stored_state",
            side_effect=StorageUnavailable("database unreachable"),
        ):
            decision = access_service.evaluate(db_engine, cache, "u1", "resources")
        assert not decision.allowed
        assert decision.reason == DecisionReason.STORAGE_UNAVAILABLE

    def test_evaluate_many_shares_reads(self, db_engine, cache):
        with patch(
            "keystone.services.subscription_service.get_stored_state",
            wraps=subscription_service.get_stored_state,
        ) as spy:
            decisions = access_service.evaluate_many(db_engine, cache, "u1")
        assert set(decisions) == set(cache.get_capability_rules())
        assert all(d.reason == DecisionReason.SUBSCRIPTION_REQUIRED for d in decisions.values())
        assert spy.call_count == 1

    def test_evaluate_many_named(self, db_engine, cache):
        decisions = access_service.evaluate_many(
            db_engine, cache, "u1", ["export", "time_machine"],
        )
        assert decisions["export"].reason == DecisionReason.SUBSCRIPTION_REQUIRED
        assert decisions["time_machine"].reason == DecisionReason.UNKNOWN_CAPABILITY
