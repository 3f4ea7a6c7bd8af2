"""
keystone.api.main — FastAPI application entry point
===================================================

Run with::

    uvicorn keystone.api.main:app --port 8000

or through ``python -m keystone``, which also reads ``config.yaml``.

Engine errors map onto HTTP uniformly:

* ``ValidationError``     → 422
* ``InvalidTransition``   → 409
* ``StorageUnavailable``  → 503 with ``Retry-After``
"""

from __future__ import annotations

import logging
import os
from contextlib import asynccontextmanager

from dotenv import load_dotenv
from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

load_dotenv()

from keystone.api.deps import get_bus, get_cache, get_engine  # noqa: E402
from keystone.api.routes.admin import router as admin_router  # noqa: E402
from keystone.api.routes.ingest import router as ingest_router  # noqa: E402
from keystone.api.routes.me import router as me_router  # noqa: E402
from keystone.errors import InvalidTransition, StorageUnavailable, ValidationError  # noqa: E402
from keystone.services import access_service, subscription_service  # noqa: E402

logger = logging.getLogger(__name__)

RETRY_AFTER_SECONDS = 5


def _cors_origins() -> list[str]:
    """Allowed CORS origins from CORS_ALLOW_ORIGINS (comma-separated)."""
    raw = os.getenv("CORS_ALLOW_ORIGINS", "").strip()
    return [origin.strip().rstrip("/") for origin in raw.split(",") if origin.strip()]


def install_hooks(app: FastAPI) -> None:
    """Subscribe the milestone consumers once per process."""
    if getattr(app.state, "hooks_installed", False):
        return
    engine = app.dependency_overrides.get(get_engine, get_engine)()
    cache = app.dependency_overrides.get(get_cache, get_cache)()
    bus = app.dependency_overrides.get(get_bus, get_bus)()
    subscription_service.install_milestone_hooks(engine, cache, bus)
    access_service.install_milestone_hooks(engine, cache, bus)
    app.state.hooks_installed = True


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Startup/shutdown lifecycle: warm the cache, wire milestone hooks."""
    install_hooks(app)
    cache = app.dependency_overrides.get(get_cache, get_cache)()
    cache.start_listener()
    logger.info("Keystone API started")
    yield
    cache.stop_listener()
    logger.info("Keystone API shutting down")


app = FastAPI(
    title="Keystone Progression & Access API",
    version="1.0.0",
    lifespan=lifespan,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=_cors_origins(),
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


# ---------------------------------------------------------------------------
# Error mapping
# ---------------------------------------------------------------------------
@app.exception_handler(ValidationError)
async def _validation_error(request: Request, exc: ValidationError):
    return JSONResponse(status_code=422, content={"error": "ValidationError", "detail": str(exc)})


@app.exception_handler(InvalidTransition)
async def _invalid_transition(request: Request, exc: InvalidTransition):
    return JSONResponse(status_code=409, content={
        "error": "InvalidTransition",
        "detail": str(exc),
        "current": exc.current,
        "attempted": exc.attempted,
    })


@app.exception_handler(StorageUnavailable)
async def _storage_unavailable(request: Request, exc: StorageUnavailable):
    return JSONResponse(
        status_code=503,
        content={"error": "StorageUnavailable", "detail": str(exc)},
        headers={"Retry-After": str(RETRY_AFTER_SECONDS)},
    )


app.include_router(me_router, prefix="/api")
app.include_router(ingest_router, prefix="/api")
app.include_router(admin_router, prefix="/api")


@app.get("/api/health")
def health():
    return {"status": "ok"}
