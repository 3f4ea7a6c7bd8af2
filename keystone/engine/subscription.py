"""
keystone.engine.subscription — Subscription State Machine
=========================================================

Pure state machine over :class:`SubscriptionSnapshot` values::

    none ──start_trial──▶ trial ──activate──▶ active ──cancel──▶ cancelled
                            │                 ▲    │
                            │          activate│    │mark_past_due
                            │                 │    ▼
                            └──(trial ends)   past_due ──(grace elapsed)──▶ cancelled
                                   ▼
                               cancelled

Time-based moves (trial expiry, grace expiry, a scheduled cancel date
passing) are derived by :func:`effective_status`; nothing here reads the
wall clock — every function takes ``now``.  Persisting the result and
serializing per user is the job of
:mod:`keystone.services.subscription_service`.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, replace
from datetime import datetime, timedelta

from keystone.database.models import SubscriptionStatus
from keystone.errors import InvalidTransition

logger = logging.getLogger(__name__)

S = SubscriptionStatus

# action → (target state, states it may be applied from)
TRANSITIONS: dict[str, tuple[SubscriptionStatus, frozenset[SubscriptionStatus]]] = {
    "start_trial": (S.TRIAL, frozenset({S.NONE})),
    "activate": (S.ACTIVE, frozenset({S.TRIAL, S.PAST_DUE})),
    "mark_past_due": (S.PAST_DUE, frozenset({S.ACTIVE})),
    "cancel": (S.CANCELLED, frozenset({S.TRIAL, S.ACTIVE, S.PAST_DUE})),
}

TERMINAL: frozenset[SubscriptionStatus] = frozenset({S.CANCELLED})


@dataclass(frozen=True, slots=True)
class SubscriptionSnapshot:
    user_id: str
    status: SubscriptionStatus = S.NONE
    trial_end_at: datetime | None = None
    current_period_end: datetime | None = None
    cancel_at: datetime | None = None
    past_due_since: datetime | None = None

    def to_dict(self) -> dict:
        def _iso(value: datetime | None) -> str | None:
            return value.isoformat() if value else None

        return {
            "user_id": self.user_id,
            "status": self.status.value,
            "trial_end_at": _iso(self.trial_end_at),
            "current_period_end": _iso(self.current_period_end),
            "cancel_at": _iso(self.cancel_at),
            "past_due_since": _iso(self.past_due_since),
        }


# ---------------------------------------------------------------------------
# Time-derived status
# ---------------------------------------------------------------------------
def effective_status(
    snapshot: SubscriptionSnapshot, now: datetime, grace: timedelta
) -> SubscriptionStatus:
    """Status in force at *now*.

    A scheduled cancel only takes effect once its date has passed; until
    then the prior status governs access.
    """
    status = snapshot.status
    if status in TERMINAL or status == S.NONE:
        return status
    if snapshot.cancel_at is not None and now >= snapshot.cancel_at:
        return S.CANCELLED
    if (
        status == S.TRIAL
        and snapshot.trial_end_at is not None
        and now >= snapshot.trial_end_at
    ):
        return S.CANCELLED
    if (
        status == S.PAST_DUE
        and snapshot.past_due_since is not None
        and now >= snapshot.past_due_since + grace
    ):
        return S.CANCELLED
    return status


def settle(
    snapshot: SubscriptionSnapshot, now: datetime, grace: timedelta
) -> SubscriptionSnapshot:
    """Materialize any time-based transition that has already happened."""
    status = effective_status(snapshot, now, grace)
    if status == snapshot.status:
        return snapshot
    logger.info(
        "Subscription %s settled %s → %s", snapshot.user_id, snapshot.status, status,
    )
    return replace(snapshot, status=status)


def converts_late(
    snapshot: SubscriptionSnapshot, now: datetime, grace: timedelta
) -> bool:
    """True if an activation at *now* may still convert a lapsed trial.

    The provider stamps its conversion at trial end and may deliver it a
    little later.  Access already lapsed at ``trial_end_at``; this only lets
    that late activation land instead of being rejected.
    """
    return (
        snapshot.status == S.TRIAL
        and snapshot.trial_end_at is not None
        and snapshot.trial_end_at <= now < snapshot.trial_end_at + grace
        and (snapshot.cancel_at is None or now < snapshot.cancel_at)
    )


# ---------------------------------------------------------------------------
# Transitions
# ---------------------------------------------------------------------------
def _check(action: str, current: SubscriptionStatus) -> bool:
    """True if *action* applies, False if it is a re-entrant no-op.

    Raises InvalidTransition for any other source state.
    """
    target, sources = TRANSITIONS[action]
    if current == target:
        return False
    if current not in sources:
        raise InvalidTransition("subscription", current.value, action)
    return True


def start_trial(
    snapshot: SubscriptionSnapshot, trial_end_at: datetime
) -> SubscriptionSnapshot:
    if not _check("start_trial", snapshot.status):
        return snapshot
    return replace(snapshot, status=S.TRIAL, trial_end_at=trial_end_at)


def activate(
    snapshot: SubscriptionSnapshot, period_end: datetime
) -> SubscriptionSnapshot:
    if not _check("activate", snapshot.status):
        # Renewal of an already-active subscription: only ever extend
        if snapshot.current_period_end is None or period_end > snapshot.current_period_end:
            return replace(snapshot, current_period_end=period_end)
        return snapshot
    return replace(
        snapshot, status=S.ACTIVE, current_period_end=period_end, past_due_since=None,
    )


def mark_past_due(snapshot: SubscriptionSnapshot, now: datetime) -> SubscriptionSnapshot:
    if not _check("mark_past_due", snapshot.status):
        return snapshot
    return replace(snapshot, status=S.PAST_DUE, past_due_since=now)


def cancel(
    snapshot: SubscriptionSnapshot, effective_at: datetime, now: datetime
) -> SubscriptionSnapshot:
    """Schedule (or apply) cancellation.

    The earliest cancel date ever requested wins.  Status flips to
    cancelled only once that date is not in the future.
    """
    if not _check("cancel", snapshot.status):
        return snapshot
    cancel_at = effective_at
    if snapshot.cancel_at is not None and snapshot.cancel_at < cancel_at:
        cancel_at = snapshot.cancel_at
    status = S.CANCELLED if cancel_at <= now else snapshot.status
    return replace(snapshot, status=status, cancel_at=cancel_at)


def transition(
    snapshot: SubscriptionSnapshot,
    action: str,
    *,
    now: datetime,
    grace: timedelta,
    trial_end_at: datetime | None = None,
    period_end: datetime | None = None,
    effective_at: datetime | None = None,
) -> SubscriptionSnapshot:
    """Settle *snapshot* at *now*, then apply *action*.

    Returns the new snapshot (the same object for a no-op).
    """
    if action not in TRANSITIONS:
        raise ValueError(f"Unknown subscription action: {action!r}")
    if action == "activate" and converts_late(snapshot, now, grace):
        current = snapshot
    else:
        current = settle(snapshot, now, grace)

    if action == "start_trial":
        if trial_end_at is None:
            raise ValueError("start_trial requires trial_end_at")
        return start_trial(current, trial_end_at)
    if action == "activate":
        if period_end is None:
            raise ValueError("activate requires period_end")
        return activate(current, period_end)
    if action == "mark_past_due":
        return mark_past_due(current, now)
    if effective_at is None:
        raise ValueError("cancel requires effective_at")
    return cancel(current, effective_at, now)
