"""
keystone.services.subscription_service — Subscription persistence
=================================================================

The only writer of ``subscriptions``.  Each transition runs:

1. inside the per-user keyed lock (same-process callers queue);
2. inside one transaction that reads the row ``FOR UPDATE`` (other
   processes queue on PostgreSQL; SQLite ignores the hint and serializes
   writers on its own);
3. settle → apply via :mod:`keystone.engine.subscription`, then persist
   only if the snapshot changed;
4. a first-row insert that loses to another process rolls back and runs
   once more against the row that process wrote.

Reads never lock and never write: :func:`get_subscription_state` reports
the effective status at ``now`` without materializing it.
"""

from __future__ import annotations

import logging
from dataclasses import replace
from datetime import UTC, datetime, timedelta
from typing import TYPE_CHECKING

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from keystone.database.engine import storage_guard
from keystone.database.models import MilestoneType, Subscription, SubscriptionStatus
from keystone.engine import subscription as machine
from keystone.engine.events import BillingEvent, BillingEventKind
from keystone.engine.locks import subscription_locks
from keystone.engine.subscription import SubscriptionSnapshot
from keystone.errors import StorageUnavailable

if TYPE_CHECKING:
    from sqlalchemy import Engine

    from keystone.engine.cache import ConfigCache
    from keystone.services.notifications import MilestoneBus, MilestoneCompleted

logger = logging.getLogger(__name__)


def _now() -> datetime:
    return datetime.now(UTC)


def _snapshot(user_id: str, row: Subscription | None) -> SubscriptionSnapshot:
    if row is None:
        return SubscriptionSnapshot(user_id=user_id)
    return SubscriptionSnapshot(
        user_id=row.user_id,
        status=SubscriptionStatus(row.status),
        trial_end_at=row.trial_end_at,
        current_period_end=row.current_period_end,
        cancel_at=row.cancel_at,
        past_due_since=row.past_due_since,
    )


def _write(session: Session, row: Subscription | None, snap: SubscriptionSnapshot) -> None:
    if row is None:
        row = Subscription(user_id=snap.user_id)
        session.add(row)
    row.status = snap.status.value
    row.trial_end_at = snap.trial_end_at
    row.current_period_end = snap.current_period_end
    row.cancel_at = snap.cancel_at
    row.past_due_since = snap.past_due_since


# ---------------------------------------------------------------------------
# Reads
# ---------------------------------------------------------------------------
def get_stored_state(engine: Engine, user_id: str) -> SubscriptionSnapshot:
    """The persisted record as-is (``none`` when the user has no row)."""
    with storage_guard("get_subscription"), Session(engine) as session:
        return _snapshot(user_id, session.get(Subscription, user_id))


def get_subscription_state(
    engine: Engine,
    cache: ConfigCache,
    user_id: str,
    now: datetime | None = None,
) -> SubscriptionSnapshot:
    """The subscription as it governs access at *now*.

    Time-based moves that have already happened (trial lapsed, grace
    exhausted, scheduled cancel reached) are reflected in ``status`` even
    if no transition has persisted them yet.
    """
    stored = get_stored_state(engine, user_id)
    status = machine.effective_status(stored, now or _now(), cache.get_past_due_grace())
    if status == stored.status:
        return stored
    return replace(stored, status=status)


# ---------------------------------------------------------------------------
# Transitions
# ---------------------------------------------------------------------------
def _transition(
    engine: Engine,
    cache: ConfigCache,
    user_id: str,
    action: str,
    *,
    now: datetime | None = None,
    **kwargs,
) -> SubscriptionSnapshot:
    now = now or _now()
    grace = cache.get_past_due_grace()

    with subscription_locks.hold(user_id), storage_guard(f"subscription {action}"):
        result = _apply(engine, user_id, action, now, grace, kwargs)
        if result is None:
            # Another process created the user's first row; redo against it
            result = _apply(engine, user_id, action, now, grace, kwargs)
    if result is None:
        raise StorageUnavailable(f"subscription {action}: row for {user_id} kept changing")

    current, updated = result
    if updated == current:
        logger.debug("Subscription %s: %s is a no-op (%s)", user_id, action, current.status)
        return current
    logger.info(
        "Subscription %s: %s %s → %s", user_id, action, current.status, updated.status,
    )
    return updated


def _apply(
    engine: Engine,
    user_id: str,
    action: str,
    now: datetime,
    grace: timedelta,
    kwargs: dict,
) -> tuple[SubscriptionSnapshot, SubscriptionSnapshot] | None:
    """One read-settle-apply-write pass over the user's row.

    Returns ``(before, after)``, or None when the row did not exist and a
    concurrent insert for the same user won the race.
    """
    with Session(engine) as session:
        row = session.scalar(
            select(Subscription)
            .where(Subscription.user_id == user_id)
            .with_for_update()
        )
        current = _snapshot(user_id, row)
        # InvalidTransition propagates; the transaction rolls back untouched
        updated = machine.transition(current, action, now=now, grace=grace, **kwargs)
        if updated == current:
            return current, current
        _write(session, row, updated)
        try:
            session.commit()
        except IntegrityError:
            if row is not None:
                raise
            session.rollback()
            logger.debug("Subscription %s created concurrently; re-reading", user_id)
            return None
    return current, updated


def start_trial(
    engine: Engine,
    cache: ConfigCache,
    user_id: str,
    trial_end_at: datetime,
    *,
    now: datetime | None = None,
) -> SubscriptionSnapshot:
    """none → trial.  Fails with InvalidTransition from any other state."""
    return _transition(engine, cache, user_id, "start_trial", now=now, trial_end_at=trial_end_at)


def activate(
    engine: Engine,
    cache: ConfigCache,
    user_id: str,
    period_end: datetime,
    *,
    now: datetime | None = None,
) -> SubscriptionSnapshot:
    """trial | past_due → active.  Already active: extends the period end."""
    return _transition(engine, cache, user_id, "activate", now=now, period_end=period_end)


def mark_past_due(
    engine: Engine,
    cache: ConfigCache,
    user_id: str,
    *,
    now: datetime | None = None,
) -> SubscriptionSnapshot:
    """active → past_due; the grace window starts at *now*."""
    return _transition(engine, cache, user_id, "mark_past_due", now=now)


def cancel(
    engine: Engine,
    cache: ConfigCache,
    user_id: str,
    effective_at: datetime,
    *,
    now: datetime | None = None,
) -> SubscriptionSnapshot:
    """Schedule cancellation; status flips once *effective_at* has passed."""
    return _transition(engine, cache, user_id, "cancel", now=now, effective_at=effective_at)


def apply_billing_event(
    engine: Engine, cache: ConfigCache, event: BillingEvent
) -> SubscriptionSnapshot:
    """Forward a normalized billing-provider event to its transition.

    ``effective_at`` doubles as the transition's clock, so replaying a
    provider event log reproduces the same states.
    """
    event = event.validate()
    at = event.effective_at

    if event.kind == BillingEventKind.TRIAL_STARTED:
        trial_end = event.trial_end_at or at + cache.get_trial_length()
        return start_trial(engine, cache, event.user_id, trial_end, now=at)
    if event.kind == BillingEventKind.ACTIVATED:
        period_end = event.period_end or at + cache.get_period_length()
        return activate(engine, cache, event.user_id, period_end, now=at)
    if event.kind == BillingEventKind.PAST_DUE:
        return mark_past_due(engine, cache, event.user_id, now=at)
    return cancel(engine, cache, event.user_id, at, now=at)


# ---------------------------------------------------------------------------
# Milestone hook
# ---------------------------------------------------------------------------
def install_milestone_hooks(engine: Engine, cache: ConfigCache, bus: MilestoneBus) -> None:
    """Let a confirmed payment milestone activate the subscription.

    A completed ``waitlist_paid`` carrying ``period_end`` (ISO-8601) in its
    metadata activates a trial or past-due subscription.  Any other state is
    left alone: the billing provider's own events remain authoritative.
    """
    def on_payment_confirmed(event: MilestoneCompleted) -> None:
        raw_end = event.metadata.get("period_end")
        if not raw_end:
            return
        period_end = datetime.fromisoformat(raw_end)
        if period_end.tzinfo is None:
            period_end = period_end.replace(tzinfo=UTC)
        stored = get_stored_state(engine, event.user_id)
        grace = cache.get_past_due_grace()
        status = machine.effective_status(stored, event.completed_at, grace)
        if (
            status not in (SubscriptionStatus.TRIAL, SubscriptionStatus.PAST_DUE)
            and not machine.converts_late(stored, event.completed_at, grace)
        ):
            logger.info(
                "Payment milestone for %s ignored by subscription (status %s)",
                event.user_id, status,
            )
            return
        activate(engine, cache, event.user_id, period_end, now=event.completed_at)

    bus.subscribe(on_payment_confirmed, MilestoneType.WAITLIST_PAID)
