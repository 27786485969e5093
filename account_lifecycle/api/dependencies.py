"""FastAPI dependencies shared by the account and admin routers."""

from __future__ import annotations

import logging

import jwt
from fastapi import Depends, HTTPException, Request, status
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer

from ..config import Settings, get_settings
from ..domain.service import AccountLifecycleService
from ..jobs.scheduler import ReconciliationScheduler
from ..security.tokens import ADMIN_SCOPE, decode_access_token

logger = logging.getLogger(__name__)

bearer_scheme = HTTPBearer(auto_error=False)


def get_service(request: Request) -> AccountLifecycleService:
    """Resolve the `AccountLifecycleService` stored on the FastAPI application state."""
    service: AccountLifecycleService = request.app.state.lifecycle_service
    return service


def get_scheduler(request: Request) -> ReconciliationScheduler:
    scheduler: ReconciliationScheduler = request.app.state.reconciliation_scheduler
    return scheduler


def _claims(credentials: HTTPAuthorizationCredentials | None) -> dict:
    if credentials is None:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="missing bearer token",
            headers={"WWW-Authenticate": "Bearer"},
        )
    try:
        return decode_access_token(credentials.credentials)
    except jwt.PyJWTError as exc:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="invalid bearer token",
            headers={"WWW-Authenticate": "Bearer"},
        ) from exc


def require_account_subject(
    account_id: str,
    credentials: HTTPAuthorizationCredentials | None = Depends(bearer_scheme),
) -> str:
    """Allow the request only when the token subject is the account in the path."""
    claims = _claims(credentials)
    if claims.get("sub") != account_id:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="token does not match account")
    return account_id


def require_operator(
    credentials: HTTPAuthorizationCredentials | None = Depends(bearer_scheme),
    settings: Settings = Depends(get_settings),
) -> str:
    """Gate administrative endpoints; anonymous access is only allowed in development."""
    if settings.is_development and credentials is None:
        return "anonymous"
    claims = _claims(credentials)
    if ADMIN_SCOPE not in (claims.get("scopes") or []):
        logger.warning("operator access denied for subject %s", claims.get("sub"))
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="operator scope required")
    return str(claims.get("sub"))
