"""
keystone.api.routes.ingest — Upstream collaborator endpoints
============================================================

Normalized events from the submission pipeline, the verification reviewers
and the billing integration.  Service tokens only (``role=service``).
Payload validation happens in the engine; a rejected payload is a 422.
"""

from __future__ import annotations

from datetime import UTC, datetime
from decimal import Decimal
from typing import Any

from fastapi import APIRouter, Depends
from pydantic import BaseModel, Field
from sqlalchemy import Engine

from keystone.api.deps import get_bus, get_cache, get_engine, require_service
from keystone.engine.cache import ConfigCache
from keystone.engine.events import AssessmentSubmission, BillingEvent, ScoredAction
from keystone.services import milestone_service, progression_service, subscription_service
from keystone.services.notifications import MilestoneBus

router = APIRouter(prefix="/ingest", tags=["ingest"], dependencies=[Depends(require_service)])


# ---------------------------------------------------------------------------
# Pydantic schemas
# ---------------------------------------------------------------------------
class ScoredEventIn(BaseModel):
    user_id: str
    category: str
    base_points: int
    impact_multiplier: Decimal = Decimal("1.0")
    occurred_at: datetime
    verified: bool = False
    source_system: str = "actions"
    source_event_id: str | None = None
    metadata: dict[str, Any] = Field(default_factory=dict)


class VerifyIn(BaseModel):
    verified_by: str
    at: datetime | None = None


class AssessmentIn(BaseModel):
    user_id: str
    taken_at: datetime
    kind: str = "progress"
    scores: dict[str, float | None] = Field(default_factory=dict)


class BillingEventIn(BaseModel):
    user_id: str
    kind: str
    effective_at: datetime
    trial_end_at: datetime | None = None
    period_end: datetime | None = None


class MilestoneSignalIn(BaseModel):
    at: datetime | None = None
    metadata: dict[str, Any] = Field(default_factory=dict)


class ExpireIn(BaseModel):
    now: datetime | None = None


def _standing(result: progression_service.SubmissionResult) -> dict | None:
    return result.standing.to_dict() if result.standing is not None else None


# ---------------------------------------------------------------------------
# Scored actions & assessments
# ---------------------------------------------------------------------------
@router.post("/events", status_code=201)
def submit_event(
    body: ScoredEventIn,
    engine: Engine = Depends(get_engine),
    cache: ConfigCache = Depends(get_cache),
    bus: MilestoneBus = Depends(get_bus),
):
    result = progression_service.submit_action(engine, cache, ScoredAction(
        user_id=body.user_id,
        category=body.category,
        base_points=body.base_points,
        impact_multiplier=body.impact_multiplier,
        occurred_at=body.occurred_at,
        verified=body.verified,
        source_system=body.source_system,
        source_event_id=body.source_event_id,
        metadata=body.metadata,
    ), bus=bus)
    return {"event_id": result.record_id, "standing": _standing(result)}


@router.post("/events/{event_id}/verify")
def verify_event(
    event_id: int,
    body: VerifyIn,
    engine: Engine = Depends(get_engine),
    cache: ConfigCache = Depends(get_cache),
    bus: MilestoneBus = Depends(get_bus),
):
    result = progression_service.verify_event(
        engine, cache, event_id,
        verified_by=body.verified_by, at=body.at or datetime.now(UTC), bus=bus,
    )
    return {"event_id": event_id, "standing": _standing(result)}


@router.post("/assessments", status_code=201)
def submit_assessment(
    body: AssessmentIn,
    engine: Engine = Depends(get_engine),
    cache: ConfigCache = Depends(get_cache),
    bus: MilestoneBus = Depends(get_bus),
):
    result = progression_service.submit_assessment(engine, cache, AssessmentSubmission(
        user_id=body.user_id,
        taken_at=body.taken_at,
        kind=body.kind,
        scores=body.scores,
    ), bus=bus)
    return {"assessment_id": result.record_id, "standing": _standing(result)}


# ---------------------------------------------------------------------------
# Billing
# ---------------------------------------------------------------------------
@router.post("/billing")
def billing_event(
    body: BillingEventIn,
    engine: Engine = Depends(get_engine),
    cache: ConfigCache = Depends(get_cache),
):
    snapshot = subscription_service.apply_billing_event(engine, cache, BillingEvent(
        user_id=body.user_id,
        kind=body.kind,
        effective_at=body.effective_at,
        trial_end_at=body.trial_end_at,
        period_end=body.period_end,
    ))
    return snapshot.to_dict()


# ---------------------------------------------------------------------------
# Milestone signals
# ---------------------------------------------------------------------------
@router.post("/milestones/{user_id}/{milestone_type}/attempt")
def record_attempt(
    user_id: str,
    milestone_type: str,
    body: MilestoneSignalIn,
    engine: Engine = Depends(get_engine),
):
    view = milestone_service.record_attempt(
        engine, user_id, milestone_type, at=body.at, metadata=body.metadata,
    )
    return view.to_dict()


@router.post("/milestones/{user_id}/{milestone_type}/complete")
def complete_milestone(
    user_id: str,
    milestone_type: str,
    body: MilestoneSignalIn,
    engine: Engine = Depends(get_engine),
    bus: MilestoneBus = Depends(get_bus),
):
    view = milestone_service.complete(
        engine, user_id, milestone_type, body.at, metadata=body.metadata, bus=bus,
    )
    return view.to_dict()


@router.post("/milestones/expire-overdue")
def expire_overdue(
    body: ExpireIn,
    engine: Engine = Depends(get_engine),
    cache: ConfigCache = Depends(get_cache),
):
    count = milestone_service.expire_overdue(
        engine, cache.get_deadline_policy(), body.now or datetime.now(UTC),
    )
    return {"expired": count}
