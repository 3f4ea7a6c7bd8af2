"""
keystone.services.progression_service — Upstream submission pipeline
=====================================================================

Entry point for the action/assessment submission collaborators.  Each call:

1. appends to the event store (validation happens there);
2. re-derives the standing when the append can change it;
3. lets the milestone tracker react (assessment completed, level triggers).

The standing returned is freshly computed, never incrementally patched.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime
from typing import TYPE_CHECKING

from keystone.engine.events import AssessmentSubmission, ScoredAction
from keystone.engine.scoring import CompetencyStanding
from keystone.services import event_store, milestone_service, standing_service

if TYPE_CHECKING:
    from sqlalchemy import Engine

    from keystone.engine.cache import ConfigCache
    from keystone.services.notifications import MilestoneBus

logger = logging.getLogger(__name__)


@dataclass(frozen=True, slots=True)
class SubmissionResult:
    record_id: int
    standing: CompetencyStanding | None = None


def _refresh(
    engine: Engine, cache: ConfigCache, user_id: str, bus: MilestoneBus | None
) -> CompetencyStanding:
    standing = standing_service.get_standing(engine, cache, user_id)
    if standing.leveled_up:
        logger.info(
            "User %s leveled up: %s → %s (%d points)",
            user_id, standing.previous_level, standing.current_level, standing.total_points,
        )
    milestone_service.react_to_standing(engine, cache, standing, bus=bus)
    return standing


def submit_action(
    engine: Engine,
    cache: ConfigCache,
    action: ScoredAction,
    *,
    bus: MilestoneBus | None = None,
) -> SubmissionResult:
    """Store a scored action.  Only a verified action can move the standing."""
    event_id = event_store.append_event(engine, action)
    if not action.verified:
        return SubmissionResult(event_id)
    return SubmissionResult(event_id, _refresh(engine, cache, action.user_id, bus))


def verify_event(
    engine: Engine,
    cache: ConfigCache,
    event_id: int,
    *,
    verified_by: str,
    at: datetime,
    bus: MilestoneBus | None = None,
) -> SubmissionResult:
    """Record the one-way verification flip and recompute the standing."""
    user_id, _ = event_store.mark_verified(engine, event_id, verified_by=verified_by, at=at)
    return SubmissionResult(event_id, _refresh(engine, cache, user_id, bus))


def submit_assessment(
    engine: Engine,
    cache: ConfigCache,
    submission: AssessmentSubmission,
    *,
    bus: MilestoneBus | None = None,
) -> SubmissionResult:
    """Store a finished assessment and complete ``assessment_completed``."""
    record_id = event_store.append_assessment(engine, submission)
    milestone_service.react_to_assessment(
        engine, submission.user_id, submission.taken_at, bus=bus,
    )
    return SubmissionResult(record_id, _refresh(engine, cache, submission.user_id, bus))
