"""
keystone.database.engine — Database Connection & Async Helpers
================================================================

The engine is synchronous SQLAlchemy.  Request handlers that live on an
event loop hand work to a thread with :func:`run_db`; everything else calls
the services directly.

Usage::

    from keystone.database.engine import create_db_engine, init_db, run_db

    engine = create_db_engine()          # reads DATABASE_URL from .env
    init_db(engine)                      # CREATE TABLE IF NOT EXISTS + seed

    standing = await run_db(standing_service.get_standing, engine, cache, user_id)
"""

from __future__ import annotations

import asyncio
import logging
import os
from collections.abc import Callable
from contextlib import contextmanager
from typing import ParamSpec, TypeVar

from sqlalchemy import Engine, create_engine
from sqlalchemy.exc import DBAPIError, IntegrityError, OperationalError

from keystone.database.models import Base
from keystone.errors import StorageUnavailable

logger = logging.getLogger(__name__)

P = ParamSpec("P")
T = TypeVar("T")


# ---------------------------------------------------------------------------
# Engine creation
# ---------------------------------------------------------------------------
def create_db_engine(url: str | None = None) -> Engine:
    """Build a SQLAlchemy :class:`Engine` from *url* or ``DATABASE_URL``.

    Pool sizing assumes several request workers per process:
    * ``pool_size=10`` persistent connections, ``max_overflow=20`` extra.
    * ``pool_timeout=10`` — fail fast rather than queue forever.
    * ``pool_recycle=1800`` — recycle connections after 30 minutes.

    Raises
    ------
    RuntimeError
        If no URL is given and ``DATABASE_URL`` is not set.
    """
    url = url or os.getenv("DATABASE_URL")
    if not url:
        raise RuntimeError(
            "DATABASE_URL is not set.  "
            "Copy .env.example → .env and set a valid PostgreSQL URL."
        )

    engine = create_engine(
        url,
        echo=False,
        pool_size=10,
        max_overflow=20,
        pool_pre_ping=True,
        pool_timeout=10,
        pool_recycle=1800,
    )
    logger.info("Database engine created → %s", engine.url.host)
    return engine


def init_db(engine: Engine) -> None:
    """Create all tables and seed default tuning settings.

    Safe on every startup.  Production schema changes go through Alembic;
    ``create_all`` is kept for dev/test databases.
    """
    Base.metadata.create_all(engine)
    logger.info("Database tables verified / created.")

    from keystone.database.seed import seed_default_settings

    seed_default_settings(engine)


# ---------------------------------------------------------------------------
# Failure translation
# ---------------------------------------------------------------------------
@contextmanager
def storage_guard(operation: str):
    """Re-raise driver/connection failures as :class:`StorageUnavailable`.

    ``IntegrityError`` passes through untouched: the services rely on it to
    detect concurrent duplicate inserts.
    """
    try:
        yield
    except IntegrityError:
        raise
    except (OperationalError, DBAPIError) as exc:
        logger.exception("Storage failure during %s", operation)
        raise StorageUnavailable(f"{operation} failed: storage unavailable") from exc

