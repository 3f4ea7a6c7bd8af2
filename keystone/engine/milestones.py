"""
keystone.engine.milestones — Milestone lifecycle rules
======================================================

Pure rules for the per-(user, milestone type) state machine::

    absent ──attempt──▶ pending ──complete──▶ completed   (terminal)
                           │
                           └──deadline──▶ expired ──attempt──▶ pending

Re-arming an expired row keeps the lapsed window in its metadata under
``previous_windows``.

The database work (compare-and-swap on status) lives in
:mod:`keystone.services.milestone_service`; this module only answers
"is this move legal" and "is this row overdue".
"""

from __future__ import annotations

import logging
from collections.abc import Mapping
from dataclasses import dataclass, field
from datetime import datetime, timedelta

from keystone.database.models import MilestoneStatus, MilestoneType
from keystone.errors import UnknownMilestoneType

logger = logging.getLogger(__name__)

# None stands for "no row yet"; absent → completed is an attempt and its
# completion recorded in one insert
ALLOWED_TRANSITIONS: dict[MilestoneStatus | None, frozenset[MilestoneStatus]] = {
    None: frozenset({MilestoneStatus.PENDING, MilestoneStatus.COMPLETED}),
    MilestoneStatus.PENDING: frozenset({MilestoneStatus.COMPLETED, MilestoneStatus.EXPIRED}),
    MilestoneStatus.EXPIRED: frozenset({MilestoneStatus.PENDING}),
    MilestoneStatus.COMPLETED: frozenset(),
}


def parse_milestone_type(value: object) -> MilestoneType:
    """Coerce *value* to a :class:`MilestoneType` or raise UnknownMilestoneType."""
    try:
        return MilestoneType(value)
    except ValueError:
        raise UnknownMilestoneType(value) from None


def can_transition(
    current: MilestoneStatus | str | None, target: MilestoneStatus
) -> bool:
    if current is not None:
        current = MilestoneStatus(current)
    return target in ALLOWED_TRANSITIONS[current]


# ---------------------------------------------------------------------------
# Deadline policy
# ---------------------------------------------------------------------------
@dataclass(frozen=True, slots=True)
class DeadlinePolicy:
    """How long a pending milestone of each type may stay open.

    Types missing from ``deadlines`` never expire.
    """

    deadlines: dict[MilestoneType, timedelta] = field(default_factory=dict)

    @classmethod
    def from_setting(cls, raw: Mapping | None) -> DeadlinePolicy:
        """Build from the ``milestones.deadline_hours`` setting.

        Unknown types and non-positive or non-numeric hours are skipped
        with a warning so one bad entry can't disable the whole policy.
        """
        deadlines: dict[MilestoneType, timedelta] = {}
        for key, hours in (raw or {}).items():
            try:
                mtype = MilestoneType(key)
            except ValueError:
                logger.warning("Ignoring deadline for unknown milestone type %r", key)
                continue
            if hours is None:
                continue
            if isinstance(hours, bool) or not isinstance(hours, (int, float)) or hours <= 0:
                logger.warning("Ignoring invalid deadline %r for %s", hours, mtype)
                continue
            deadlines[mtype] = timedelta(hours=hours)
        return cls(deadlines=deadlines)

    def deadline_for(self, milestone_type: MilestoneType) -> timedelta | None:
        return self.deadlines.get(milestone_type)

    def is_overdue(
        self,
        milestone_type: MilestoneType | str,
        status: MilestoneStatus | str,
        attempted_at: datetime,
        now: datetime,
    ) -> bool:
        """True only for a pending row whose configured deadline has elapsed."""
        if MilestoneStatus(status) != MilestoneStatus.PENDING:
            return False
        deadline = self.deadline_for(MilestoneType(milestone_type))
        if deadline is None:
            return False
        return now >= attempted_at + deadline
