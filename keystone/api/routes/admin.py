"""
keystone.api.routes.admin — Tuning settings & audit log
=======================================================
"""

from __future__ import annotations

from typing import Any

from fastapi import APIRouter, Depends, Query
from pydantic import BaseModel, Field
from sqlalchemy import Engine, func, select
from sqlalchemy.orm import Session

from keystone.api.deps import get_cache, get_engine, require_admin
from keystone.database.models import AdminLog
from keystone.engine.cache import ConfigCache
from keystone.services import settings_service

router = APIRouter(prefix="/admin", tags=["admin"])


class SettingsUpdate(BaseModel):
    values: dict[str, Any] = Field(default_factory=dict)
    reason: str | None = None


@router.get("/settings")
def get_all_settings(
    admin: dict = Depends(require_admin),
    engine: Engine = Depends(get_engine),
):
    return {"settings": settings_service.get_all_settings(engine)}


@router.put("/settings")
def update_settings(
    body: SettingsUpdate,
    admin: dict = Depends(require_admin),
    engine: Engine = Depends(get_engine),
    cache: ConfigCache = Depends(get_cache),
):
    count = settings_service.update_settings(
        engine, cache, body.values, actor_id=str(admin["sub"]), reason=body.reason,
    )
    return {"updated": count}


@router.get("/audit")
def get_audit_log(
    page: int = Query(1, ge=1),
    page_size: int = Query(25, ge=1, le=100),
    admin: dict = Depends(require_admin),
    engine: Engine = Depends(get_engine),
):
    """Paginated settings audit log, newest first."""
    with Session(engine) as session:
        total = session.scalar(select(func.count()).select_from(AdminLog)) or 0
        rows = session.scalars(
            select(AdminLog)
            .order_by(AdminLog.timestamp.desc(), AdminLog.id.desc())
            .offset((page - 1) * page_size)
            .limit(page_size)
        ).all()
        entries = [
            {
                "id": r.id,
                "actor_id": r.actor_id,
                "action_type": r.action_type,
                "target_table": r.target_table,
                "target_id": r.target_id,
                "before": r.before_snapshot,
                "after": r.after_snapshot,
                "reason": r.reason,
                "timestamp": r.timestamp.isoformat() if r.timestamp else None,
            }
            for r in rows
        ]
    return {"total": total, "page": page, "page_size": page_size, "entries": entries}
