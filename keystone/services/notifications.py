"""
keystone.services.notifications — "Milestone completed" fan-out
===============================================================

The milestone tracker publishes one :class:`MilestoneCompleted` per
successful pending → completed swap, after the swap has committed.
Subscribers are plain callables registered per milestone type (or for all
types).  A subscriber that raises is logged and skipped; it never undoes
the completion or stops other subscribers.
"""

from __future__ import annotations

import logging
import threading
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import datetime

from keystone.database.models import MilestoneType

logger = logging.getLogger(__name__)


@dataclass(frozen=True, slots=True)
class MilestoneCompleted:
    user_id: str
    milestone_type: MilestoneType
    completed_at: datetime
    metadata: dict = field(default_factory=dict)


Subscriber = Callable[[MilestoneCompleted], None]


class MilestoneBus:
    """Synchronous in-process publish/subscribe for milestone completions."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        # None → subscribed to every type
        self._subscribers: dict[MilestoneType | None, list[Subscriber]] = {}

    def subscribe(
        self, callback: Subscriber, milestone_type: MilestoneType | None = None
    ) -> None:
        with self._lock:
            self._subscribers.setdefault(milestone_type, []).append(callback)
        logger.debug(
            "Subscribed %s to %s",
            getattr(callback, "__name__", callback), milestone_type or "all milestones",
        )

    def publish(self, event: MilestoneCompleted) -> int:
        """Deliver *event*; returns how many subscribers ran without error."""
        with self._lock:
            targets = list(self._subscribers.get(event.milestone_type, []))
            targets += self._subscribers.get(None, [])

        delivered = 0
        for callback in targets:
            try:
                callback(event)
                delivered += 1
            except Exception:
                logger.exception(
                    "Milestone subscriber %s failed for %s/%s",
                    getattr(callback, "__name__", callback),
                    event.user_id, event.milestone_type,
                )
        return delivered


# Process-wide default bus
default_bus = MilestoneBus()
