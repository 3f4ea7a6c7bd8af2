"""
keystone.api.deps — FastAPI dependency injection
================================================

The identity layer signs HS256 tokens with the shared ``JWT_SECRET``; the
engine only reads them.  Claims used:

* ``sub``       — the user id every read endpoint answers for;
* ``role``      — ``"service"`` for upstream collaborators (ingest routes);
* ``is_admin``  — tuning-settings access.
"""

from __future__ import annotations

import os
from functools import lru_cache
from typing import Annotated

import jwt
from fastapi import Depends, Header, HTTPException, status
from jwt.exceptions import InvalidTokenError
from sqlalchemy import Engine

from keystone.database.engine import create_db_engine
from keystone.engine.cache import ConfigCache
from keystone.services.notifications import MilestoneBus, default_bus

_WEAK_SECRETS = frozenset({
    "keystone-dev-secret-change-me",
    "change-me",
    "secret",
    "dev",
    "",
})

_MIN_SECRET_LENGTH = 32

JWT_ALGORITHM = "HS256"


def _load_jwt_secret() -> str:
    """Load and validate JWT_SECRET from the environment.

    Raises RuntimeError at import time if the secret is missing, blank,
    too short (< 32 chars), or a known weak default.
    """
    secret = os.getenv("JWT_SECRET", "")
    if not secret:
        raise RuntimeError(
            "JWT_SECRET environment variable is not set. "
            "Generate one with: python -c \"import secrets; print(secrets.token_urlsafe(64))\""
        )
    if secret in _WEAK_SECRETS:
        raise RuntimeError(
            f"JWT_SECRET is set to a known weak default ('{secret}'). "
            "Please set a strong, unique secret."
        )
    if len(secret) < _MIN_SECRET_LENGTH:
        raise RuntimeError(
            f"JWT_SECRET is too short ({len(secret)} chars). "
            f"Minimum length is {_MIN_SECRET_LENGTH} characters."
        )
    return secret


JWT_SECRET: str = _load_jwt_secret()


@lru_cache(maxsize=1)
def get_engine() -> Engine:
    return create_db_engine()


@lru_cache(maxsize=1)
def get_cache() -> ConfigCache:
    cache = ConfigCache(get_engine())
    cache.load_all()
    return cache


def get_bus() -> MilestoneBus:
    return default_bus


# ---------------------------------------------------------------------------
# Token handling
# ---------------------------------------------------------------------------
def get_claims(authorization: Annotated[str | None, Header()] = None) -> dict:
    """Validate the bearer token and return its payload.  401 if invalid."""
    if not authorization or not authorization.startswith("Bearer "):
        raise HTTPException(status.HTTP_401_UNAUTHORIZED, "Missing token")
    token = authorization.split(" ", 1)[1]
    try:
        payload = jwt.decode(token, JWT_SECRET, algorithms=[JWT_ALGORITHM])
    except InvalidTokenError:
        raise HTTPException(status.HTTP_401_UNAUTHORIZED, "Invalid token")
    if not payload.get("sub"):
        raise HTTPException(status.HTTP_401_UNAUTHORIZED, "Token has no subject")
    return payload


def get_current_user_id(claims: Annotated[dict, Depends(get_claims)]) -> str:
    return str(claims["sub"])


def require_service(claims: Annotated[dict, Depends(get_claims)]) -> dict:
    """Upstream collaborators only (billing, submissions, verification)."""
    if claims.get("role") != "service":
        raise HTTPException(status.HTTP_403_FORBIDDEN, "Service token required")
    return claims


def require_admin(claims: Annotated[dict, Depends(get_claims)]) -> dict:
    if not claims.get("is_admin"):
        raise HTTPException(status.HTTP_403_FORBIDDEN, "Not admin")
    return claims
