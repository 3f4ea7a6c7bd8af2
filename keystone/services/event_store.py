"""
keystone.services.event_store — Append-only Event & Assessment Store
====================================================================

Durable, append-only persistence of scored actions and assessment records.

- Appends validate first; a rejected payload writes nothing.
- Each append is its own transaction: it either commits completely or is
  reported failed (``StorageUnavailable``).  Appends for different users
  touch disjoint rows and take no locks.
- A caller-supplied ``source_event_id`` makes re-delivery idempotent: the
  duplicate returns the original row's id.
- ``history()`` / ``assessments()`` return lazy, restartable iterables
  ordered by time ascending; each iteration runs a fresh query.
"""

from __future__ import annotations

import logging
from collections.abc import Callable, Iterator
from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal
from typing import TYPE_CHECKING, Generic, TypeVar

from sqlalchemy import Select, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from keystone.database.engine import storage_guard
from keystone.database.models import AssessmentRecord, ScoredEvent
from keystone.engine.events import AssessmentSubmission, ScoredAction, event_points
from keystone.errors import ValidationError

if TYPE_CHECKING:
    from sqlalchemy import Engine

logger = logging.getLogger(__name__)

T = TypeVar("T")


# ---------------------------------------------------------------------------
# Read-side views (detached, immutable)
# ---------------------------------------------------------------------------
@dataclass(frozen=True, slots=True)
class EventView:
    id: int
    user_id: str
    category: str
    base_points: int
    impact_multiplier: Decimal
    occurred_at: datetime
    verified: bool
    verified_at: datetime | None = None
    source_system: str = "actions"
    source_event_id: str | None = None

    @property
    def points(self) -> int:
        """Points this event is worth once verified."""
        return event_points(self.base_points, self.impact_multiplier)

    @classmethod
    def from_row(cls, row: ScoredEvent) -> EventView:
        return cls(
            id=row.id,
            user_id=row.user_id,
            category=row.category,
            base_points=row.base_points,
            impact_multiplier=Decimal(row.impact_multiplier),
            occurred_at=row.occurred_at,
            verified=bool(row.verified),
            verified_at=row.verified_at,
            source_system=row.source_system,
            source_event_id=row.source_event_id,
        )


@dataclass(frozen=True, slots=True)
class AssessmentView:
    id: int
    user_id: str
    taken_at: datetime
    kind: str
    scores: dict[str, Decimal | None]
    overall_score: Decimal | None

    @classmethod
    def from_row(cls, row: AssessmentRecord) -> AssessmentView:
        return cls(
            id=row.id,
            user_id=row.user_id,
            taken_at=row.taken_at,
            kind=row.kind,
            scores=row.dimension_scores(),
            overall_score=row.overall_score,
        )


class History(Generic[T]):
    """Lazy, restartable, time-ordered sequence backed by a query.

    Nothing is read until iteration starts; every ``iter()`` re-runs the
    query against the current committed state.
    """

    def __init__(
        self,
        engine: Engine,
        statement: Select,
        convert: Callable[[object], T],
        *,
        batch_size: int = 500,
    ) -> None:
        self._engine = engine
        self._statement = statement
        self._convert = convert
        self._batch_size = batch_size

    def __iter__(self) -> Iterator[T]:
        with storage_guard("history read"):
            with Session(self._engine) as session:
                rows = session.scalars(
                    self._statement.execution_options(yield_per=self._batch_size)
                )
                for row in rows:
                    yield self._convert(row)


# ---------------------------------------------------------------------------
# Scored events
# ---------------------------------------------------------------------------
def append_event(engine: Engine, action: ScoredAction) -> int:
    """Validate and store *action*; return its stable id.

    Raises ValidationError for bad input and StorageUnavailable when the
    write could not be made durable.
    """
    event = action.validate()
    row = ScoredEvent(
        user_id=event.user_id,
        category=event.category.value,
        base_points=event.base_points,
        impact_multiplier=event.impact_multiplier,
        occurred_at=event.occurred_at,
        verified=event.verified,
        verified_at=event.occurred_at if event.verified else None,
        source_system=event.source_system,
        source_event_id=event.source_event_id,
        metadata_=event.metadata,
    )

    with storage_guard("append_event"):
        with Session(engine) as session:
            session.add(row)
            try:
                session.commit()
            except IntegrityError:
                session.rollback()
                if event.source_event_id is None:
                    raise
                existing = session.scalar(
                    select(ScoredEvent.id).where(
                        ScoredEvent.source_system == event.source_system,
                        ScoredEvent.source_event_id == event.source_event_id,
                    )
                )
                if existing is None:
                    raise
                logger.debug(
                    "Duplicate scored event %s/%s → id=%s",
                    event.source_system, event.source_event_id, existing,
                )
                return existing
            event_id = row.id

    logger.info(
        "Scored event %d stored: user=%s category=%s base=%d x%s verified=%s",
        event_id, event.user_id, event.category, event.base_points,
        event.impact_multiplier, event.verified,
    )
    return event_id


def mark_verified(
    engine: Engine, event_id: int, *, verified_by: str, at: datetime
) -> tuple[str, bool]:
    """Flip an event to verified.  One-way; repeating it is a no-op.

    Returns ``(user_id, flipped_now)``.
    """
    with storage_guard("mark_verified"):
        with Session(engine) as session:
            user_id = session.scalar(
                select(ScoredEvent.user_id).where(ScoredEvent.id == event_id)
            )
            if user_id is None:
                raise ValidationError(f"Unknown scored event id: {event_id}")
            result = session.execute(
                update(ScoredEvent)
                .where(ScoredEvent.id == event_id, ScoredEvent.verified.is_(False))
                .values(verified=True, verified_by=verified_by, verified_at=at)
            )
            session.commit()

    flipped = result.rowcount == 1
    if flipped:
        logger.info("Scored event %d verified by %s", event_id, verified_by)
    else:
        logger.debug("Scored event %d was already verified", event_id)
    return user_id, flipped


def history(
    engine: Engine, user_id: str, since: datetime | None = None
) -> History[EventView]:
    """All scored events for *user_id* (optionally from *since*), oldest first."""
    stmt = select(ScoredEvent).where(ScoredEvent.user_id == user_id)
    if since is not None:
        stmt = stmt.where(ScoredEvent.occurred_at >= since)
    stmt = stmt.order_by(ScoredEvent.occurred_at, ScoredEvent.id)
    return History(engine, stmt, EventView.from_row)


# ---------------------------------------------------------------------------
# Assessments
# ---------------------------------------------------------------------------
def append_assessment(engine: Engine, submission: AssessmentSubmission) -> int:
    """Validate and store a finished assessment; return its id."""
    record = submission.validate()
    scores = record.scores
    row = AssessmentRecord(
        user_id=record.user_id,
        taken_at=record.taken_at,
        kind=record.kind.value,
        buyer_analysis_score=scores["buyer_analysis"],
        value_communication_score=scores["value_communication"],
        sales_execution_score=scores["sales_execution"],
        overall_score=record.overall_score,
    )
    with storage_guard("append_assessment"):
        with Session(engine) as session:
            session.add(row)
            session.commit()
            record_id = row.id

    logger.info(
        "Assessment %d stored: user=%s kind=%s overall=%s",
        record_id, record.user_id, record.kind, record.overall_score,
    )
    return record_id


def assessments(
    engine: Engine, user_id: str, since: datetime | None = None
) -> History[AssessmentView]:
    """All assessments for *user_id*, oldest first."""
    stmt = select(AssessmentRecord).where(AssessmentRecord.user_id == user_id)
    if since is not None:
        stmt = stmt.where(AssessmentRecord.taken_at >= since)
    stmt = stmt.order_by(AssessmentRecord.taken_at, AssessmentRecord.id)
    return History(engine, stmt, AssessmentView.from_row)
