"""
keystone.services.milestone_service — Milestone Tracker
=======================================================

The only writer of ``user_milestones``.  At most one row per
(user, milestone type) is guaranteed twice over:

* in-process, by a keyed lock per (user, type) so same-process callers
  queue rather than race;
* across processes, by ``UNIQUE(user_id, milestone_type)`` for creation and
  a compare-and-swap ``UPDATE … WHERE status = <status just read>`` for
  every status change, so a second concurrent ``complete`` matches zero rows
  instead of re-completing.

Which moves are legal comes from :data:`keystone.engine.milestones.ALLOWED_TRANSITIONS`.

Completion notifications are published on the :class:`MilestoneBus` after
the swap has committed and outside the lock.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import TYPE_CHECKING

from sqlalchemy import case, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from keystone.database.engine import storage_guard
from keystone.database.models import Milestone, MilestoneStatus, MilestoneType
from keystone.engine.locks import milestone_locks
from keystone.engine.milestones import DeadlinePolicy, can_transition, parse_milestone_type
from keystone.services.notifications import MilestoneBus, MilestoneCompleted, default_bus

if TYPE_CHECKING:
    from sqlalchemy import Engine

    from keystone.engine.cache import ConfigCache
    from keystone.engine.scoring import CompetencyStanding

logger = logging.getLogger(__name__)

PENDING = MilestoneStatus.PENDING.value
COMPLETED = MilestoneStatus.COMPLETED.value
EXPIRED = MilestoneStatus.EXPIRED.value


@dataclass(frozen=True, slots=True)
class MilestoneView:
    """Detached, read-only copy of a milestone row."""

    user_id: str
    milestone_type: MilestoneType
    status: MilestoneStatus
    attempted_at: datetime
    completed_at: datetime | None = None
    expired_at: datetime | None = None
    metadata: dict = field(default_factory=dict)

    @classmethod
    def from_row(cls, row: Milestone) -> MilestoneView:
        return cls(
            user_id=row.user_id,
            milestone_type=MilestoneType(row.milestone_type),
            status=MilestoneStatus(row.status),
            attempted_at=row.attempted_at,
            completed_at=row.completed_at,
            expired_at=row.expired_at,
            metadata=dict(row.metadata_ or {}),
        )

    def to_dict(self) -> dict:
        return {
            "user_id": self.user_id,
            "milestone_type": self.milestone_type.value,
            "status": self.status.value,
            "attempted_at": self.attempted_at.isoformat(),
            "completed_at": self.completed_at.isoformat() if self.completed_at else None,
            "expired_at": self.expired_at.isoformat() if self.expired_at else None,
            "metadata": dict(self.metadata),
        }


def _now() -> datetime:
    return datetime.now(UTC)


def _fetch(session: Session, user_id: str, mtype: MilestoneType) -> Milestone | None:
    return session.scalar(
        select(Milestone)
        .where(Milestone.user_id == user_id, Milestone.milestone_type == mtype.value)
        .execution_options(populate_existing=True)
    )


def _insert(session: Session, row: Milestone) -> Milestone | None:
    """Insert *row* in its own transaction.

    Returns None when a concurrent writer created the (user, type) row
    first; the caller re-reads and carries on from that row.
    """
    session.add(row)
    try:
        session.commit()
    except IntegrityError:
        session.rollback()
        logger.debug(
            "Milestone %s/%s created concurrently; using existing row",
            row.user_id, row.milestone_type,
        )
        return None
    return row


# ---------------------------------------------------------------------------
# Lifecycle operations
# ---------------------------------------------------------------------------
def record_attempt(
    engine: Engine,
    user_id: str,
    milestone_type: MilestoneType | str,
    *,
    at: datetime | None = None,
    metadata: dict | None = None,
) -> MilestoneView:
    """Open a pending window for (user, type).

    absent → pending; expired → pending (a fresh window from *at*, the
    lapsed one appended to ``metadata["previous_windows"]``);
    pending or completed → no-op.
    """
    mtype = parse_milestone_type(milestone_type)
    at = at or _now()

    with milestone_locks.hold((user_id, mtype)), storage_guard("record_attempt"):
        with Session(engine, expire_on_commit=False) as session:
            row = _fetch(session, user_id, mtype)
            if row is None:
                created = _insert(session, Milestone(
                    user_id=user_id,
                    milestone_type=mtype.value,
                    status=PENDING,
                    attempted_at=at,
                    metadata_=dict(metadata or {}),
                ))
                if created is not None:
                    logger.info("Milestone %s/%s → pending", user_id, mtype)
                    return MilestoneView.from_row(created)
                row = _fetch(session, user_id, mtype)

            if can_transition(row.status, MilestoneStatus.PENDING):
                # The lapsed window stays on the row
                previous = list((row.metadata_ or {}).get("previous_windows", []))
                previous.append({
                    "attempted_at": row.attempted_at.isoformat(),
                    "expired_at": row.expired_at.isoformat() if row.expired_at else None,
                })
                result = session.execute(
                    update(Milestone)
                    .where(Milestone.id == row.id, Milestone.status == row.status)
                    .values({
                        Milestone.status: PENDING,
                        Milestone.attempted_at: at,
                        Milestone.expired_at: None,
                        Milestone.metadata_: {
                            **(row.metadata_ or {}), "previous_windows": previous,
                        },
                    })
                )
                session.commit()
                if result.rowcount == 1:
                    logger.info("Milestone %s/%s re-armed: expired → pending", user_id, mtype)
                row = _fetch(session, user_id, mtype)
            else:
                logger.debug("record_attempt no-op for %s/%s (%s)", user_id, mtype, row.status)
            return MilestoneView.from_row(row)


def complete(
    engine: Engine,
    user_id: str,
    milestone_type: MilestoneType | str,
    at: datetime | None = None,
    *,
    metadata: dict | None = None,
    bus: MilestoneBus | None = None,
) -> MilestoneView:
    """Swap pending → completed with ``completed_at = at``.

    Already completed: no-op, the first ``completed_at`` is kept.
    Absent: the attempt is recorded and completed in one insert.
    Expired: no-op; the window has to be re-armed by a new attempt.
    Raises UnknownMilestoneType for a type outside the enumeration.
    """
    mtype = parse_milestone_type(milestone_type)
    at = at or _now()
    extra = dict(metadata or {})
    completed_now = False

    with milestone_locks.hold((user_id, mtype)), storage_guard("complete_milestone"):
        with Session(engine, expire_on_commit=False) as session:
            row = _fetch(session, user_id, mtype)
            if row is None:
                created = _insert(session, Milestone(
                    user_id=user_id,
                    milestone_type=mtype.value,
                    status=COMPLETED,
                    attempted_at=at,
                    completed_at=at,
                    metadata_=extra,
                ))
                if created is not None:
                    row, completed_now = created, True
                else:
                    row = _fetch(session, user_id, mtype)

            if not completed_now and can_transition(row.status, MilestoneStatus.COMPLETED):
                result = session.execute(
                    update(Milestone)
                    .where(Milestone.id == row.id, Milestone.status == row.status)
                    .values({
                        Milestone.status: COMPLETED,
                        Milestone.completed_at: at,
                        Milestone.metadata_: {**(row.metadata_ or {}), **extra},
                    })
                )
                session.commit()
                completed_now = result.rowcount == 1
                row = _fetch(session, user_id, mtype)

            view = MilestoneView.from_row(row)

    if not completed_now:
        logger.debug("complete no-op for %s/%s (%s)", user_id, mtype, view.status)
        return view

    logger.info("Milestone %s/%s → completed at %s", user_id, mtype, at.isoformat())
    (bus or default_bus).publish(MilestoneCompleted(
        user_id=user_id,
        milestone_type=mtype,
        completed_at=view.completed_at,
        metadata=dict(view.metadata),
    ))
    return view


def expire(
    engine: Engine,
    user_id: str,
    milestone_type: MilestoneType | str,
    now: datetime,
    policy: DeadlinePolicy,
) -> MilestoneView | None:
    """Swap pending → expired if the configured deadline has elapsed.

    Returns the row as it stands afterwards (None if there is no row).
    Completed rows and types without a deadline are never touched.
    """
    view, _ = _expire_one(engine, user_id, parse_milestone_type(milestone_type), now, policy)
    return view


def _expire_one(
    engine: Engine,
    user_id: str,
    mtype: MilestoneType,
    now: datetime,
    policy: DeadlinePolicy,
) -> tuple[MilestoneView | None, bool]:
    with milestone_locks.hold((user_id, mtype)), storage_guard("expire_milestone"):
        with Session(engine, expire_on_commit=False) as session:
            row = _fetch(session, user_id, mtype)
            if row is None:
                return None, False
            if not (
                can_transition(row.status, MilestoneStatus.EXPIRED)
                and policy.is_overdue(mtype, row.status, row.attempted_at, now)
            ):
                return MilestoneView.from_row(row), False
            result = session.execute(
                update(Milestone)
                .where(Milestone.id == row.id, Milestone.status == row.status)
                .values(status=EXPIRED, expired_at=now)
            )
            session.commit()
            changed = result.rowcount == 1
            if changed:
                logger.info("Milestone %s/%s → expired", user_id, mtype)
            return MilestoneView.from_row(_fetch(session, user_id, mtype)), changed


def expire_overdue(engine: Engine, policy: DeadlinePolicy, now: datetime) -> int:
    """Expire every pending row whose deadline has elapsed.  Returns the count."""
    expired = 0
    with storage_guard("expire_overdue"):
        with Session(engine) as session:
            candidates = session.execute(
                select(Milestone.user_id, Milestone.milestone_type).where(
                    Milestone.status == PENDING,
                    Milestone.milestone_type.in_([t.value for t in policy.deadlines]),
                )
            ).all()

    for user_id, mtype in candidates:
        _, changed = _expire_one(engine, user_id, MilestoneType(mtype), now, policy)
        expired += changed
    if expired:
        logger.info("Expired %d overdue milestone(s)", expired)
    return expired


# ---------------------------------------------------------------------------
# Reads
# ---------------------------------------------------------------------------
def list_milestones(engine: Engine, user_id: str) -> list[MilestoneView]:
    """All of a user's milestones by completed_at ascending, nulls last."""
    with storage_guard("list_milestones"):
        with Session(engine) as session:
            rows = session.scalars(
                select(Milestone)
                .where(Milestone.user_id == user_id)
                .order_by(
                    case((Milestone.completed_at.is_(None), 1), else_=0),
                    Milestone.completed_at,
                    Milestone.milestone_type,
                )
            ).all()
            return [MilestoneView.from_row(r) for r in rows]


def completed_types(engine: Engine, user_id: str) -> set[MilestoneType]:
    with storage_guard("completed_milestones"):
        with Session(engine) as session:
            rows = session.scalars(
                select(Milestone.milestone_type).where(
                    Milestone.user_id == user_id, Milestone.status == COMPLETED,
                )
            ).all()
    return {MilestoneType(t) for t in rows}


# ---------------------------------------------------------------------------
# Reactions to upstream signals
# ---------------------------------------------------------------------------
def react_to_assessment(
    engine: Engine, user_id: str, taken_at: datetime, *, bus: MilestoneBus | None = None
) -> MilestoneView:
    """A stored assessment completes ``assessment_completed``."""
    return complete(
        engine, user_id, MilestoneType.ASSESSMENT_COMPLETED, taken_at, bus=bus,
    )


def react_to_standing(
    engine: Engine,
    cache: ConfigCache,
    standing: CompetencyStanding,
    *,
    bus: MilestoneBus | None = None,
) -> list[MilestoneView]:
    """Complete level-triggered milestones for every level the user holds.

    Triggers are checked against the current level rather than only the
    crossing, so a trigger added after the user passed that level still
    fires on the next recomputation.  Repeats are no-ops.
    """
    triggers = cache.get_level_triggers()
    if not triggers:
        return []
    levels = cache.get_level_table()
    have = levels.rank(standing.current_level)
    at = standing.computed_at or _now()

    views: list[MilestoneView] = []
    for level_name, mtype in sorted(triggers.items()):
        need = levels.rank(level_name)
        if have is None or need is None or have < need:
            continue
        views.append(complete(
            engine, standing.user_id, mtype, at,
            metadata={"level": level_name}, bus=bus,
        ))
    return views
