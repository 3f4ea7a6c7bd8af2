"""
keystone.api.routes.me — The caller's own standing, milestones and access
=========================================================================

Every endpoint answers for the token's ``sub``.  Handlers run on the event
loop and push the synchronous service calls to a worker thread.
"""

from __future__ import annotations

from fastapi import APIRouter, Depends, Query
from sqlalchemy import Engine

from keystone.api.deps import get_cache, get_current_user_id, get_engine
from keystone.database.engine import run_db
from keystone.engine.cache import ConfigCache
from keystone.services import (
    access_service,
    milestone_service,
    standing_service,
    subscription_service,
)

router = APIRouter(prefix="/me", tags=["me"])


@router.get("/standing")
async def get_standing(
    user_id: str = Depends(get_current_user_id),
    engine: Engine = Depends(get_engine),
    cache: ConfigCache = Depends(get_cache),
):
    standing = await run_db(standing_service.get_standing, engine, cache, user_id)
    return standing.to_dict()


@router.get("/milestones")
async def list_milestones(
    user_id: str = Depends(get_current_user_id),
    engine: Engine = Depends(get_engine),
):
    views = await run_db(milestone_service.list_milestones, engine, user_id)
    return {"milestones": [v.to_dict() for v in views]}


@router.get("/subscription")
async def get_subscription(
    user_id: str = Depends(get_current_user_id),
    engine: Engine = Depends(get_engine),
    cache: ConfigCache = Depends(get_cache),
):
    state = await run_db(subscription_service.get_subscription_state, engine, cache, user_id)
    return state.to_dict()


@router.get("/access")
async def evaluate_many(
    capability: list[str] | None = Query(None),
    user_id: str = Depends(get_current_user_id),
    engine: Engine = Depends(get_engine),
    cache: ConfigCache = Depends(get_cache),
):
    """Decisions for the requested capabilities (all configured ones if none)."""
    decisions = await run_db(access_service.evaluate_many, engine, cache, user_id, capability)
    return {"decisions": {name: d.to_dict() for name, d in decisions.items()}}


@router.get("/access/{capability}")
async def evaluate(
    capability: str,
    user_id: str = Depends(get_current_user_id),
    engine: Engine = Depends(get_engine),
    cache: ConfigCache = Depends(get_cache),
):
    decision = await run_db(access_service.evaluate, engine, cache, user_id, capability)
    return decision.to_dict()
