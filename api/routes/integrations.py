"""
Integration Routes

Manage the agency's shared Google Business Profile connection.

Endpoints:
- GET /integrations/google/connect - Start OAuth (returns the consent URL)
- GET /integrations/google/callback - OAuth callback (redirect from Google)
- GET /integrations/google/status - Connection status, never refreshes
- POST /integrations/google/disconnect - Revoke and clear stored tokens
"""

import os
import logging
from typing import Annotated, Optional

from fastapi import APIRouter, Cookie, Depends, HTTPException, Query
from fastapi.responses import JSONResponse, RedirectResponse

from integrations.core.credentials import CredentialStore
from integrations.core.encryption import TokenCipher, get_token_cipher
from integrations.core.oauth import (
    OAUTH_CONFIGS,
    STATE_COOKIE_NAME,
    connect_account,
    disconnect_account,
    generate_oauth_state,
    get_authorization_url,
    get_connection_status,
    get_frontend_redirect_url,
)
from integrations.core.types import ConnectionStatus
from services.admin_auth import AdminAuth
from services.supabase import ServiceClient, UserClient

logger = logging.getLogger(__name__)

router = APIRouter()

GOOGLE = OAUTH_CONFIGS["google"]

# State cookie only needs to survive the consent screen
STATE_COOKIE_MAX_AGE = 600


def get_google_store(client: ServiceClient) -> CredentialStore:
    return CredentialStore(client, provider=GOOGLE.provider)


GoogleStore = Annotated[CredentialStore, Depends(get_google_store)]
Cipher = Annotated[TokenCipher, Depends(get_token_cipher)]


# =============================================================================
# OAuth Flow
# =============================================================================

@router.get("/integrations/google/connect")
async def connect_google(auth: AdminAuth) -> JSONResponse:
    """
    Initiate the Google OAuth flow.

    Returns the consent URL for the frontend to open; the CSRF state is
    set as an HttpOnly cookie and checked in the callback.
    """
    if not GOOGLE.is_configured:
        raise HTTPException(status_code=503, detail="Google OAuth not configured. Missing credentials.")

    state = generate_oauth_state()
    response = JSONResponse({"authorization_url": get_authorization_url(GOOGLE, state)})
    response.set_cookie(
        STATE_COOKIE_NAME,
        state,
        max_age=STATE_COOKIE_MAX_AGE,
        httponly=True,
        secure=os.getenv("ENVIRONMENT") == "production",
        samesite="lax",
    )
    logger.info(f"[INTEGRATIONS] Admin {auth.user_id} initiating Google OAuth")
    return response


@router.get("/integrations/google/callback")
async def google_callback(
    store: GoogleStore,
    cipher: Cipher,
    code: Optional[str] = Query(None, description="Authorization code from Google"),
    state: Optional[str] = Query(None, description="State parameter for CSRF protection"),
    error: Optional[str] = Query(None, description="Error from Google"),
    stored_state: Optional[str] = Cookie(None, alias=STATE_COOKIE_NAME),
) -> RedirectResponse:
    """Exchange the code, store encrypted tokens, and send the admin back to the app."""

    def finish(success: bool, reason: Optional[str] = None) -> RedirectResponse:
        response = RedirectResponse(url=get_frontend_redirect_url(success, reason))
        response.delete_cookie(STATE_COOKIE_NAME)
        return response

    if error:
        logger.warning(f"[INTEGRATIONS] OAuth error from Google: {error}")
        return finish(False, error)

    if not state or not stored_state or state != stored_state:
        return finish(False, "invalid_state")

    if not code:
        return finish(False, "no_code")

    try:
        await connect_account(GOOGLE, store, cipher, code)
    except Exception as e:
        logger.error(f"[INTEGRATIONS] Google OAuth callback failed: {e}")
        return finish(False, "token_exchange_failed")

    return finish(True)


# =============================================================================
# Status / Disconnect
# =============================================================================

@router.get("/integrations/google/status", response_model=ConnectionStatus)
async def google_status(auth: UserClient, store: GoogleStore) -> ConnectionStatus:
    return get_connection_status(store)


@router.post("/integrations/google/disconnect")
async def disconnect_google(auth: AdminAuth, store: GoogleStore, cipher: Cipher) -> dict:
    try:
        disconnected = await disconnect_account(GOOGLE, store, cipher)
    except RuntimeError as e:
        raise HTTPException(status_code=409, detail=str(e))

    if not disconnected:
        raise HTTPException(status_code=404, detail="Integration not found")

    logger.info(f"[INTEGRATIONS] Admin {auth.user_id} disconnected Google")
    return {"success": True, "message": "Disconnected google"}
