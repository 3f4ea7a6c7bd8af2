"""
keystone.services.standing_service — Standing over stored history
=================================================================

Reads a user's scored events and assessments from the store and hands them
to the pure scorer.  Nothing is cached: the standing is always re-derived
from history, so two calls over the same history return equal values.
"""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING

from keystone.engine.scoring import CompetencyStanding, compute_standing
from keystone.services import event_store

if TYPE_CHECKING:
    from sqlalchemy import Engine

    from keystone.engine.cache import ConfigCache

logger = logging.getLogger(__name__)


def get_standing(engine: Engine, cache: ConfigCache, user_id: str) -> CompetencyStanding:
    """Current standing for *user_id* under the cached level table."""
    standing = compute_standing(
        event_store.history(engine, user_id),
        cache.get_level_table(),
        user_id=user_id,
        assessments=event_store.assessments(engine, user_id),
    )
    logger.debug(
        "Standing for %s: %d points, level %s (previous %s)",
        user_id, standing.total_points, standing.current_level, standing.previous_level,
    )
    return standing
