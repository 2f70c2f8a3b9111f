"""
REST API - Health, Session and Logout Endpoints.

FastAPI router for the broker's HTTP surface.

Endpoints:
- GET /api/health - Service status and registry statistics
- GET /api/sessions - Caller's own session (Bearer token)
- DELETE /api/sessions/{identity} - Terminate caller's session (Bearer token)
- POST /api/auth/logout - Revoke credentials and terminate session (Bearer token)

Author: Backend Lead Developer
"""

import logging
import time
from typing import List, Optional

from fastapi import APIRouter, Depends, HTTPException, Request, status
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from pydantic import BaseModel, Field

from ..core.auth import CredentialStore, TokenValidator
from ..core.identity import InvalidIdentityError, normalize_identity
from ..core.session_registry import SessionRegistry

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api", tags=["sessions"])

_bearer = HTTPBearer(auto_error=False)


# Request/Response Models

class SessionSummary(BaseModel):
    """Caller-visible session metadata."""
    identity: str
    created: float
    last_activity: float = Field(serialization_alias="lastActivity")
    viewer_count: int = Field(serialization_alias="viewerCount")
    active: bool


class OperationResult(BaseModel):
    """Generic success response."""
    success: bool = True


# Dependencies (wired through app.state at startup)

def get_registry(request: Request) -> SessionRegistry:
    return request.app.state.registry


def get_token_validator(request: Request) -> TokenValidator:
    return request.app.state.token_validator


def get_credential_store(request: Request) -> CredentialStore:
    return request.app.state.credentials


def require_identity(
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(_bearer),
    validator: TokenValidator = Depends(get_token_validator),
) -> str:
    """Resolve the Bearer token to a normalized identity or fail with 401."""
    if credentials is None:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="No token provided"
        )

    result = validator.validate(credentials.credentials)
    if not result.valid:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail=result.error or "Invalid or expired token"
        )

    return result.identity


@router.get("/health")
async def health_check(request: Request):
    """Health check endpoint for load balancers."""
    config = request.app.state.config
    return {
        "status": "ok",
        "uptime": time.time() - request.app.state.started_at,
        "config": {
            "chatHost": config.chat_host,
            "sessionTimeoutSeconds": config.session_timeout_seconds,
        },
        "stats": get_registry(request).stats(),
    }


@router.get("/sessions", response_model=List[SessionSummary])
async def list_sessions(
    identity: str = Depends(require_identity),
    registry: SessionRegistry = Depends(get_registry),
):
    """List the caller's session (at most one)."""
    session = registry.get(identity)
    if session is None:
        return []

    return [
        SessionSummary(
            identity=session.identity,
            created=session.created,
            last_activity=session.last_activity,
            viewer_count=session.viewer_count,
            active=session.viewer_count > 0,
        )
    ]


@router.delete("/sessions/{target}", response_model=OperationResult)
async def delete_session(
    target: str,
    identity: str = Depends(require_identity),
    registry: SessionRegistry = Depends(get_registry),
):
    """Terminate a session. Callers may only terminate their own."""
    try:
        normalized_target = normalize_identity(target)
    except InvalidIdentityError as e:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(e))

    if normalized_target != identity:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Forbidden")

    await registry.destroy(identity, reason="revoked")
    logger.info(f"Session terminated for {identity}")
    return OperationResult()


@router.post("/auth/logout", response_model=OperationResult)
async def logout(
    identity: str = Depends(require_identity),
    registry: SessionRegistry = Depends(get_registry),
    credentials: CredentialStore = Depends(get_credential_store),
):
    """Revoke stored credentials and terminate the caller's session."""
    credentials.revoke(identity)
    await registry.destroy(identity, reason="logout")
    logger.info(f"Logout successful for {identity}")
    return OperationResult()
