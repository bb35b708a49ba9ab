from __future__ import annotations

import hmac

from fastapi import Depends, Header, HTTPException, status

from digestcron.core.config import get_settings
from digestcron.persistence.blob_store import BlobStore, get_blob_store
from digestcron.services.scheduler.orchestrator import TickDependencies


def get_store() -> BlobStore:
    return get_blob_store()


def _auth_error(message: str) -> HTTPException:
    # Normalize auth errors for clients without leaking internal details.
    return HTTPException(
        status_code=status.HTTP_401_UNAUTHORIZED,
        detail={"code": "AUTH_UNAUTHORIZED", "message": message},
        headers={"WWW-Authenticate": "Bearer"},
    )


def _bearer_token(authorization: str | None) -> str | None:
    if not authorization:
        return None
    scheme, _, token = authorization.partition(" ")
    if scheme.lower() != "bearer" or not token.strip():
        return None
    return token.strip()


def _matches(presented: str | None, expected: str | None) -> bool:
    # An unset secret never authorizes anything.
    if not presented or not expected:
        return False
    return hmac.compare_digest(presented.encode("utf-8"), expected.encode("utf-8"))


async def require_cron_secret(authorization: str | None = Header(default=None)) -> None:
    if not _matches(_bearer_token(authorization), get_settings().cron_secret):
        raise _auth_error("Missing or invalid cron secret")


async def require_admin(authorization: str | None = Header(default=None)) -> None:
    if not _matches(_bearer_token(authorization), get_settings().admin_api_token):
        raise _auth_error("Missing or invalid admin token")


def get_tick_dependencies(store: BlobStore = Depends(get_store)) -> TickDependencies:
    # Production wiring around the request's store; tests override this dependency.
    return TickDependencies(store=store)
