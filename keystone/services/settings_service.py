"""
keystone.services.settings_service — Tuning settings CRUD & NOTIFY
==================================================================

Typed read/write access to the ``settings`` table.  Every write:

1. validates the new value (a level table or capability rule that would not
   load is rejected with ``ValidationError``, nothing is written);
2. records an ``admin_log`` row with before/after snapshots;
3. queues ``NOTIFY settings_changed`` inside the transaction;
4. commits, then reloads the local :class:`ConfigCache`.
"""

from __future__ import annotations

import json
import logging
from collections.abc import Mapping
from typing import TYPE_CHECKING, Any

from sqlalchemy import select
from sqlalchemy.orm import Session

from keystone.database.engine import storage_guard
from keystone.database.models import AdminLog, MilestoneType, Setting
from keystone.database.seed import DEFAULT_SETTINGS
from keystone.engine.access import parse_capability_rule
from keystone.engine.cache import notify_before_commit
from keystone.engine.scoring import LevelTable
from keystone.errors import ValidationError

if TYPE_CHECKING:
    from sqlalchemy import Engine

    from keystone.engine.cache import ConfigCache

logger = logging.getLogger(__name__)

_MILESTONE_TYPES = frozenset(t.value for t in MilestoneType)


# ---------------------------------------------------------------------------
# Validation
# ---------------------------------------------------------------------------
def _require_mapping(key: str, value: Any) -> Mapping:
    if not isinstance(value, Mapping):
        raise ValidationError(f"{key} must be an object")
    return value


def _positive_number(key: str, value: Any) -> None:
    if isinstance(value, bool) or not isinstance(value, (int, float)) or value <= 0:
        raise ValidationError(f"{key} must be a positive number")


def validate_settings(values: Mapping[str, Any], current: ConfigCache) -> None:
    """Reject any value the cache would refuse or silently drop.

    Cross-key checks (a rule's ``min_level``, a trigger's level) are made
    against the level table being written in the same batch, if any.
    """
    unknown = sorted(set(values) - set(DEFAULT_SETTINGS))
    if unknown:
        raise ValidationError(f"Unknown setting key(s): {', '.join(unknown)}")

    if "scoring.levels" in values:
        if not isinstance(values["scoring.levels"], list):
            raise ValidationError("scoring.levels must be a list of [threshold, name] pairs")
        levels = LevelTable(values["scoring.levels"])
    else:
        levels = current.get_level_table()

    if "access.capabilities" in values:
        rules = _require_mapping("access.capabilities", values["access.capabilities"])
        for name, body in rules.items():
            try:
                parse_capability_rule(name, _require_mapping(name, body), levels)
            except (ValueError, TypeError, ArithmeticError) as exc:
                raise ValidationError(f"Capability {name!r}: {exc}") from None

    if "milestones.deadline_hours" in values:
        raw = _require_mapping("milestones.deadline_hours", values["milestones.deadline_hours"])
        for mtype, hours in raw.items():
            if mtype not in _MILESTONE_TYPES:
                raise ValidationError(f"Unknown milestone type in deadlines: {mtype!r}")
            if hours is not None:
                _positive_number(f"milestones.deadline_hours.{mtype}", hours)

    if "milestones.level_triggers" in values:
        raw = _require_mapping("milestones.level_triggers", values["milestones.level_triggers"])
        for level_name, mtype in raw.items():
            if levels.rank(level_name) is None:
                raise ValidationError(f"Level trigger for unknown level {level_name!r}")
            if mtype not in _MILESTONE_TYPES:
                raise ValidationError(f"Unknown milestone type in level triggers: {mtype!r}")

    for key in ("billing.trial_days", "billing.period_days", "billing.past_due_grace_days"):
        if key in values:
            _positive_number(key, values[key])


# ---------------------------------------------------------------------------
# Reads
# ---------------------------------------------------------------------------
def _decode(row: Setting) -> Any:
    try:
        return json.loads(row.value_json)
    except (json.JSONDecodeError, TypeError):
        return row.value_json


def _row_dict(row: Setting) -> dict:
    return {
        "key": row.key,
        "value": _decode(row),
        "category": row.category,
        "description": row.description,
    }


def get_setting(engine: Engine, key: str) -> dict | None:
    """Fetch one setting as ``{key, value, category, description}``."""
    with storage_guard("get_setting"), Session(engine) as session:
        row = session.get(Setting, key)
        return _row_dict(row) if row is not None else None


def get_all_settings(engine: Engine) -> list[dict]:
    """Every setting, ordered by category then key."""
    with storage_guard("get_all_settings"), Session(engine) as session:
        rows = session.scalars(select(Setting).order_by(Setting.category, Setting.key)).all()
        return [_row_dict(r) for r in rows]


# ---------------------------------------------------------------------------
# Writes
# ---------------------------------------------------------------------------
def update_settings(
    engine: Engine,
    cache: ConfigCache,
    values: Mapping[str, Any],
    *,
    actor_id: str,
    reason: str | None = None,
) -> int:
    """Validate and write *values* in one audited transaction.

    Returns the number of settings whose value actually changed.
    """
    validate_settings(values, cache)

    changed = 0
    with storage_guard("update_settings"), Session(engine) as session:
        for key, value in values.items():
            row = session.get(Setting, key)
            before = _row_dict(row) if row is not None else None
            if before is not None and before["value"] == value:
                continue

            if row is None:
                _, category, description = DEFAULT_SETTINGS[key]
                row = Setting(key=key, category=category, description=description)
                session.add(row)
            row.value_json = json.dumps(value)

            session.add(AdminLog(
                actor_id=actor_id,
                action_type="UPDATE" if before else "CREATE",
                target_table="settings",
                target_id=key,
                before_snapshot=before,
                after_snapshot=_row_dict(row),
                reason=reason,
            ))
            changed += 1

        if changed:
            notify_before_commit(session, "settings")
        session.commit()

    if changed:
        logger.info("Settings updated by %s: %s", actor_id, ", ".join(sorted(values)))
        cache.load_all()
    return changed
