"""
keystone.services.access_service — "Can user U use capability C now?"
=====================================================================

Wires the stored state into :func:`keystone.engine.access.evaluate_access`.
Each gate's input is fetched lazily, so a request denied by the
subscription gate never reads event history.

``evaluate`` is a pure read and always returns an :class:`AccessDecision`:
when storage fails the answer is a deny with reason ``StorageUnavailable``.
"""

from __future__ import annotations

import logging
from collections.abc import Iterable
from datetime import UTC, datetime
from functools import cache as memoize
from typing import TYPE_CHECKING

from keystone.engine.access import AccessDecision, DecisionReason, evaluate_access
from keystone.errors import StorageUnavailable
from keystone.services import milestone_service, standing_service, subscription_service

if TYPE_CHECKING:
    from sqlalchemy import Engine

    from keystone.engine.cache import ConfigCache
    from keystone.services.notifications import MilestoneBus, MilestoneCompleted

logger = logging.getLogger(__name__)


def _evaluate_with_loaders(
    user_id: str, capability: str, cache: ConfigCache, loaders: dict
) -> AccessDecision:
    try:
        return evaluate_access(
            user_id,
            capability,
            cache.get_capability_rules(),
            cache.get_level_table(),
            subscription_status=loaders["subscription"],
            standing=loaders["standing"],
            completed_milestones=loaders["milestones"],
        )
    except StorageUnavailable as exc:
        logger.warning("Access to %s for %s denied: %s", capability, user_id, exc)
        return AccessDecision(
            user_id, capability, False, DecisionReason.STORAGE_UNAVAILABLE, str(exc),
        )


def _loaders(engine: Engine, cache: ConfigCache, user_id: str, now: datetime) -> dict:
    """Zero-argument loaders, each memoized for the lifetime of one request."""

    @memoize
    def subscription():
        return subscription_service.get_subscription_state(engine, cache, user_id, now).status

    @memoize
    def standing():
        return standing_service.get_standing(engine, cache, user_id)

    @memoize
    def milestones():
        return frozenset(milestone_service.completed_types(engine, user_id))

    return {"subscription": subscription, "standing": standing, "milestones": milestones}


def evaluate(
    engine: Engine,
    cache: ConfigCache,
    user_id: str,
    capability: str,
    now: datetime | None = None,
) -> AccessDecision:
    """Decide one capability for *user_id* at *now* (default: the clock)."""
    now = now or datetime.now(UTC)
    decision = _evaluate_with_loaders(
        user_id, capability, cache, _loaders(engine, cache, user_id, now),
    )
    logger.debug(
        "Access %s/%s → %s (%s)", user_id, capability, decision.allowed, decision.reason,
    )
    return decision


def evaluate_many(
    engine: Engine,
    cache: ConfigCache,
    user_id: str,
    capabilities: Iterable[str] | None = None,
    now: datetime | None = None,
) -> dict[str, AccessDecision]:
    """Decide several capabilities, sharing each gate's reads between them.

    With no *capabilities* every configured capability is evaluated.
    """
    now = now or datetime.now(UTC)
    names = list(capabilities) if capabilities is not None else sorted(
        cache.get_capability_rules()
    )
    loaders = _loaders(engine, cache, user_id, now)
    return {
        name: _evaluate_with_loaders(user_id, name, cache, loaders)
        for name in names
    }


def install_milestone_hooks(engine: Engine, cache: ConfigCache, bus: MilestoneBus) -> None:
    """Log which capabilities a completed milestone may have opened."""

    def on_milestone_completed(event: MilestoneCompleted) -> None:
        gated = sorted(
            name for name, rule in cache.get_capability_rules().items()
            if event.milestone_type in rule.milestones
        )
        if gated:
            logger.info(
                "Milestone %s for %s affects access to: %s",
                event.milestone_type, event.user_id, ", ".join(gated),
            )

    bus.subscribe(on_milestone_completed)
