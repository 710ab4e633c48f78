"""
OAuth authentication endpoints for the remote reader API.

Flow:
1. GET /auth/login -> Redirects to the remote consent screen
2. The remote redirects back to /auth/callback with a code
3. /auth/callback exchanges the code for tokens and stores them encrypted
"""

import logging
import secrets
import time

from fastapi import APIRouter, Depends, HTTPException
from fastapi.responses import RedirectResponse, JSONResponse
from pydantic import BaseModel
from typing import Optional

from feedsync.container import Container, get_container
from feedsync.exceptions import (
    ConfigurationError,
    NoCredentialError,
    NoRefreshTokenError,
    RemoteServiceError,
    TokenRefreshError,
    CredentialError,
)

logger = logging.getLogger(__name__)


# Response Models
class AuthStatusResponse(BaseModel):
    """Authentication status check response."""
    authenticated: bool
    status: str
    has_refresh_token: bool
    expires_at: Optional[float] = None
    needs_refresh: bool
    token_age_seconds: Optional[int] = None
    message: str


class AuthSuccessResponse(BaseModel):
    """Successful authentication response."""
    success: bool
    message: str
    has_refresh_token: bool = False
    expires_in: Optional[int] = None


router = APIRouter(prefix="/auth", tags=["Authentication"])

# States handed out by /login and not yet seen on /callback, oldest first
_pending_states: dict[str, float] = {}
STATE_TTL_SECONDS = 600
MAX_PENDING_STATES = 100


def _remember_state(state: str) -> None:
    cutoff = time.monotonic() - STATE_TTL_SECONDS
    for old, issued in list(_pending_states.items()):
        if issued >= cutoff and len(_pending_states) < MAX_PENDING_STATES:
            break
        del _pending_states[old]
    _pending_states[state] = time.monotonic()


def _take_state(state: str | None) -> bool:
    issued = _pending_states.pop(state, None)
    return issued is not None and time.monotonic() - issued <= STATE_TTL_SECONDS


@router.get("/status", response_model=AuthStatusResponse)
def auth_status(container: Container = Depends(get_container)):
    """Check current authentication status without refreshing."""
    return container.token_manager.status()


@router.get("/login")
def login(container: Container = Depends(get_container)):
    """
    Start OAuth flow - redirects to the consent screen.

    After the user grants access, the remote redirects to /auth/callback.
    """
    state = secrets.token_urlsafe(16)
    try:
        auth_url = container.token_manager.authorization_url(state)
    except ConfigurationError as e:
        raise HTTPException(status_code=500, detail=str(e))

    _remember_state(state)
    return RedirectResponse(url=auth_url)


@router.get("/callback", response_model=AuthSuccessResponse)
async def callback(
    code: str = None,
    state: str = None,
    error: str = None,
    container: Container = Depends(get_container),
):
    """OAuth callback - exchanges the authorization code for tokens."""
    if error:
        return JSONResponse(
            status_code=400,
            content={
                "success": False,
                "error": error,
                "message": "Authentication was denied or failed."
            }
        )

    if not code:
        return JSONResponse(
            status_code=400,
            content={
                "success": False,
                "error": "missing_code",
                "message": "No authorization code received."
            }
        )

    if not _take_state(state):
        return JSONResponse(
            status_code=400,
            content={
                "success": False,
                "error": "invalid_state",
                "message": "Unknown or reused OAuth state. Start again at /auth/login."
            }
        )

    try:
        credential = await container.token_manager.exchange_code(code)
    except (ConfigurationError, TokenRefreshError, RemoteServiceError) as e:
        logger.error("Authorization code exchange failed: %s", e)
        return JSONResponse(
            status_code=502 if isinstance(e, RemoteServiceError) else 400,
            content={
                "success": False,
                "error": str(e),
                "message": "Failed to exchange authorization code for tokens."
            }
        )

    if container.settings.sync_autostart and not container.orchestrator.is_running:
        container.orchestrator.start()

    return {
        "success": True,
        "message": "Authentication successful. Sync is now enabled.",
        "has_refresh_token": bool(credential.get("refresh_token")),
        "expires_in": credential.get("expires_in"),
    }


@router.post("/refresh", response_model=AuthSuccessResponse)
async def refresh_token(container: Container = Depends(get_container)):
    """
    Manually refresh the OAuth token.

    Use this if the token is expired but has a refresh token.
    """
    try:
        credential = await container.token_manager.refresh()
    except NoCredentialError:
        raise HTTPException(
            status_code=400,
            detail="No token file found. Please sign in first via /auth/login"
        )
    except NoRefreshTokenError:
        raise HTTPException(
            status_code=400,
            detail="No refresh token available. Please sign in again via /auth/login"
        )
    except TokenRefreshError as e:
        raise HTTPException(status_code=401, detail=str(e))
    except RemoteServiceError as e:
        raise HTTPException(status_code=502, detail=str(e))
    except CredentialError as e:
        raise HTTPException(status_code=500, detail=str(e))

    return {
        "success": True,
        "message": "Token refreshed successfully.",
        "has_refresh_token": bool(credential.get("refresh_token")),
        "expires_in": credential.get("expires_in"),
    }


@router.delete("/logout")
def logout(container: Container = Depends(get_container)):
    """Stop syncing and delete the stored credential."""
    container.orchestrator.stop()
    removed = container.token_manager.logout()
    return {"success": True, "removed": removed}
