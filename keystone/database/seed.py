"""
keystone.database.seed — Default Settings Seeder
================================================

Baseline tuning seeded on first startup so the engine answers sensibly
before anyone edits a setting (level table, capability rules, milestone
deadlines, billing windows).

Idempotent — only inserts keys that don't already exist.  Values edited
later through the settings service are never overwritten.
"""

from __future__ import annotations

import json
import logging

from sqlalchemy import Engine, select
from sqlalchemy.orm import Session

from keystone.database.models import Setting

logger = logging.getLogger(__name__)


DEFAULT_LEVELS: list[list[object]] = [
    [0, "Foundation"],
    [200, "Developing"],
    [400, "Intermediate"],
    [600, "Advanced"],
    [800, "Expert"],
    [1000, "Master"],
]

DEFAULT_CAPABILITIES: dict[str, dict] = {
    "cost_calculator": {
        "subscription": ["trial", "active"],
        "min_dimension_scores": {"value_communication": 70},
    },
    "business_case": {
        "subscription": ["trial", "active"],
        "min_dimension_scores": {"sales_execution": 70},
    },
    "resources": {
        "subscription": ["trial", "active"],
        "min_overall_score": 50,
    },
    "export": {
        "subscription": ["active"],
        "min_overall_score": 60,
    },
    "icp_generator": {
        "subscription": ["trial", "active"],
        "milestones": ["assessment_completed"],
    },
    "founding_member_community": {
        "subscription": ["active"],
        "min_level": "Intermediate",
        "milestones": ["waitlist_paid"],
    },
}


# ---------------------------------------------------------------------------
# Default settings catalogue
# ---------------------------------------------------------------------------
DEFAULT_SETTINGS: dict[str, tuple[object, str, str]] = {
    "scoring.levels": (
        DEFAULT_LEVELS, "scoring",
        "Ordered [threshold, level name] pairs; first threshold must be 0",
    ),
    "milestones.deadline_hours": (
        {"assessment_started": 168, "demo_viewed": 72}, "milestones",
        "Hours a pending milestone may stay open; absent types never expire",
    ),
    "milestones.level_triggers": (
        {}, "milestones",
        "Level name → milestone type completed when a user first reaches it",
    ),
    "billing.trial_days": (3, "billing", "Trial length when the provider omits it"),
    "billing.period_days": (
        30, "billing", "Billing period length when the provider omits it",
    ),
    "billing.past_due_grace_days": (
        3, "billing", "Days a past_due subscription keeps access before cancelling",
    ),
    "access.capabilities": (
        DEFAULT_CAPABILITIES, "access",
        "Capability → gate rule (subscription, min_level, milestones, scores)",
    ),
}
"""Each entry maps ``key`` → ``(default_value, category, description)``."""


def seed_default_settings(engine: Engine) -> int:
    """Insert any missing default settings.  Returns the number inserted."""
    inserted = 0
    with Session(engine) as session:
        existing = set(session.scalars(select(Setting.key)).all())
        for key, (value, category, description) in DEFAULT_SETTINGS.items():
            if key in existing:
                continue
            session.add(Setting(
                key=key,
                value_json=json.dumps(value),
                category=category,
                description=description,
            ))
            inserted += 1
        session.commit()

    if inserted:
        logger.info("Seeded %d default settings", inserted)
    return inserted
