"""
tests/test_cache.py — ConfigCache & Settings Service Tests
==========================================================

NOTIFY payload routing (without a real PG connection), the NOTIFY
allowlist, fallback on bad tuning, and the audited settings writes.
"""

from __future__ import annotations

from unittest.mock import MagicMock, patch

import pytest
from sqlalchemy import select
from sqlalchemy.orm import Session

from keystone.database.models import AdminLog, MilestoneType
from keystone.database.seed import DEFAULT_LEVELS
from keystone.engine.cache import ALLOWED_NOTIFY_TABLES, ConfigCache, notify_before_commit
from keystone.errors import ValidationError
from keystone.services import settings_service


class TestNotifyRouting:
    @pytest.fixture
    def mock_cache(self):
        return ConfigCache(MagicMock())

    def test_settings_payload_reloads(self, mock_cache):
        with patch.object(mock_cache, "load_all") as mock_load:
            mock_cache.handle_notify("  Settings ")
            mock_load.assert_called_once()

    def test_unknown_notify_ignored(self, mock_cache):
        with patch.object(mock_cache, "load_all") as mock_load:
            mock_cache.handle_notify("channels")
            mock_load.assert_not_called()


# ---------------------------------------------------------------------------
# NOTIFY allowlist
# ---------------------------------------------------------------------------
class TestNotifyAllowlist:
    def test_rejects_unknown_table(self):
        with pytest.raises(ValueError, match="Invalid table name"):
            notify_before_commit(MagicMock(), "users")

    def test_rejects_sql_injection_attempt(self):
        with pytest.raises(ValueError, match="Invalid table name"):
            notify_before_commit(MagicMock(), "settings'; DROP TABLE users; --")

    def test_allowlist_is_frozen(self):
        assert ALLOWED_NOTIFY_TABLES == frozenset({"settings"})

    def test_postgres_session_emits_notify(self):
        session = MagicMock()
        session.get_bind.return_value.dialect.name = "postgresql"
        notify_before_commit(session, "settings")
        (statement,), _ = session.execute.call_args
        assert str(statement) == "NOTIFY settings_changed, 'settings'"

    def test_other_backends_skip_notify(self):
        session = MagicMock()
        session.get_bind.return_value.dialect.name = "sqlite"
        notify_before_commit(session, "settings")
        session.execute.assert_not_called()


# ---------------------------------------------------------------------------
# Loading
# ---------------------------------------------------------------------------
class TestLoading:
    def test_defaults_load_from_seeded_db(self, cache):
        assert cache.get_level_table().to_setting() == DEFAULT_LEVELS
        assert "icp_generator" in cache.get_capability_rules()
        assert MilestoneType.DEMO_VIEWED in cache.get_deadline_policy().deadlines
        assert cache.get_past_due_grace().days == 3

    def test_bad_level_table_falls_back_to_defaults(self, cache):
        cache.load_from_mapping({"scoring.levels": [[10, "Broken"]]})
        assert cache.get_level_table().lowest.name == "Foundation"

    def test_bad_rule_dropped_others_kept(self, cache):
        cache.load_from_mapping({"access.capabilities": {
            "ok": {"subscription": ["active"]},
            "broken": {"min_level": "Grandmaster"},
        }})
        assert set(cache.get_capability_rules()) == {"ok"}

    def test_bad_level_triggers_skipped(self, cache):
        cache.load_from_mapping({"milestones.level_triggers": {
            "Expert": "early_access_granted",
            "Grandmaster": "early_access_granted",
            "Master": "won_the_lottery",
        }})
        assert cache.get_level_triggers() == {"Expert": MilestoneType.EARLY_ACCESS_GRANTED}

    def test_typed_accessors(self, cache):
        cache.load_from_mapping({"billing.trial_days": "seven", "billing.period_days": 14})
        assert cache.get_float("billing.trial_days", 3.0) == 3.0
        assert cache.get_period_length().days == 14

    def test_load_all_without_engine(self):
        with pytest.raises(RuntimeError):
            ConfigCache(None).load_all()

    def test_listener_skipped_off_postgres(self, cache):
        cache.start_listener()
        assert cache.listener_healthy is False
        assert cache.listener_failed is False


# ===========================================================================
# settings_service
# ===========================================================================
class TestSettingsService:
    def test_get_setting(self, db_engine):
        setting = settings_service.get_setting(db_engine, "billing.trial_days")
        assert setting["value"] == 3
        assert setting["category"] == "billing"
        assert settings_service.get_setting(db_engine, "nope") is None

    def test_get_all_ordered_by_category(self, db_engine):
        categories = [s["category"] for s in settings_service.get_all_settings(db_engine)]
        assert categories == sorted(categories)

    def test_update_audits_and_reloads(self, db_engine, cache):
        levels = [[0, "Novice"], [300, "Pro"]]
        changed = settings_service.update_settings(
            db_engine, cache,
            {"scoring.levels": levels, "billing.trial_days": 3,
             "access.capabilities": {"pro_tools": {"min_level": "Pro"}}},
            actor_id="admin-1", reason="simplify levels",
        )
        assert changed == 2
        assert cache.get_level_table().level_for(350).name == "Pro"
        assert set(cache.get_capability_rules()) == {"pro_tools"}

        with Session(db_engine) as session:
            logs = session.scalars(select(AdminLog).order_by(AdminLog.id)).all()
        assert [log.target_id for log in logs] == ["scoring.levels", "access.capabilities"]
        assert logs[0].before_snapshot["value"] == DEFAULT_LEVELS
        assert logs[0].after_snapshot["value"] == levels
        assert logs[0].reason == "simplify levels"
        assert logs[0].action_type == "UPDATE"

    def test_unchanged_values_write_nothing(self, db_engine, cache):
        assert settings_service.update_settings(
            db_engine, cache, {"billing.trial_days": 3}, actor_id="admin-1",
        ) == 0
        with Session(db_engine) as session:
            assert session.scalars(select(AdminLog)).all() == []

    @pytest.mark.parametrize(
        "values",
        [
            {"scoring.colour": "blue"},
            {"scoring.levels": [[5, "Late start"]]},
            {"scoring.levels": "Foundation"},
            {"access.capabilities": {"x": {"min_level": "Grandmaster"}}},
            {"access.capabilities": {"x": "not a rule"}},
            {"milestones.deadline_hours": {"demo_viewed": 0}},
            {"milestones.deadline_hours": {"won_the_lottery": 5}},
            {"milestones.level_triggers": {"Grandmaster": "early_access_granted"}},
            {"milestones.level_triggers": {"Expert": "won_the_lottery"}},
            {"billing.past_due_grace_days": -1},
            {"billing.trial_days": True},
        ],
    )
    def test_invalid_values_rejected_without_write(self, db_engine, cache, values):
        with pytest.raises(ValidationError):
            settings_service.update_settings(db_engine, cache, values, actor_id="admin-1")
        with Session(db_engine) as session:
            assert session.scalars(select(AdminLog)).all() == []

    def test_rule_checked_against_levels_in_same_batch(self, cache):
        settings_service.validate_settings(
            {"scoring.levels": [[0, "Novice"], [300, "Pro"]],
             "milestones.level_triggers": {"Pro": "early_access_granted"}},
            cache,
        )
        with pytest.raises(ValidationError):
            settings_service.validate_settings(
                {"milestones.level_triggers": {"Pro": "early_access_granted"}}, cache,
            )
