"""
OAuth flow management for the agency's Google connection.

The agency connects one Google account that manages every Business Profile
location. This module builds the consent URL, exchanges the authorization
code, stores the encrypted tokens in agency_integrations, and reports or
tears down the connection.

Invocations are stateless, so the CSRF state is round-tripped through a
cookie by the route rather than kept in process memory.
"""

import os
import logging
import secrets
from datetime import timedelta
from typing import Optional
from urllib.parse import urlencode

import httpx

from .credentials import CredentialStore
from .encryption import TokenCipher
from .timeutils import utc_now
from .types import ConnectionStatus, IntegrationStatus

logger = logging.getLogger(__name__)

_OAUTH_TIMEOUT = httpx.Timeout(30.0, connect=10.0)

STATE_COOKIE_NAME = "google_oauth_state"


# =============================================================================
# OAuth Configuration
# =============================================================================

class OAuthConfig:
    """OAuth configuration for a provider."""

    def __init__(
        self,
        provider: str,
        client_id_env: str,
        client_secret_env: str,
        authorize_url: str,
        token_url: str,
        revoke_url: str,
        userinfo_url: str,
        scopes: list[str],
        redirect_path: str,
    ):
        self.provider = provider
        self.client_id = os.getenv(client_id_env, "")
        self.client_secret = os.getenv(client_secret_env, "")
        self.authorize_url = authorize_url
        self.token_url = token_url
        self.revoke_url = revoke_url
        self.userinfo_url = userinfo_url
        self.scopes = scopes
        self.redirect_path = redirect_path

    @property
    def redirect_uri(self) -> str:
        base_url = os.getenv("API_BASE_URL", "http://localhost:8000")
        return f"{base_url}{self.redirect_path}"

    @property
    def is_configured(self) -> bool:
        return bool(self.client_id and self.client_secret)


OAUTH_CONFIGS: dict[str, OAuthConfig] = {
    "google": OAuthConfig(
        provider="google",
        client_id_env="GOOGLE_CLIENT_ID",
        client_secret_env="GOOGLE_CLIENT_SECRET",
        authorize_url="https://accounts.google.com/o/oauth2/v2/auth",
        token_url="https://oauth2.googleapis.com/token",
        revoke_url="https://oauth2.googleapis.com/revoke",
        userinfo_url="https://www.googleapis.com/oauth2/v2/userinfo",
        scopes=[
            "https://www.googleapis.com/auth/business.manage",
            "https://www.googleapis.com/auth/userinfo.email",
            "https://www.googleapis.com/auth/userinfo.profile",
        ],
        redirect_path="/api/integrations/google/callback",
    ),
}


# =============================================================================
# OAuth Flow Functions
# =============================================================================

def generate_oauth_state() -> str:
    return secrets.token_urlsafe(32)


def get_authorization_url(config: OAuthConfig, state: str) -> str:
    """Consent URL with offline access so Google issues a refresh token."""
    if not config.is_configured:
        raise ValueError(f"{config.provider} OAuth not configured")

    params = {
        "client_id": config.client_id,
        "redirect_uri": config.redirect_uri,
        "response_type": "code",
        "scope": " ".join(config.scopes),
        "access_type": "offline",  # Required for refresh token
        "prompt": "consent",  # Force consent to get refresh token
        "state": state,
    }
    return f"{config.authorize_url}?{urlencode(params)}"


async def exchange_code_for_tokens(config: OAuthConfig, code: str, transport=None) -> dict:
    """
    Exchange an authorization code for tokens.

    Returns the raw token payload (access_token, expires_in, scope and,
    usually, refresh_token).
    """
    async with httpx.AsyncClient(timeout=_OAUTH_TIMEOUT, transport=transport) as client:
        response = await client.post(
            config.token_url,
            data={
                "code": code,
                "client_id": config.client_id,
                "client_secret": config.client_secret,
                "redirect_uri": config.redirect_uri,
                "grant_type": "authorization_code",
            },
        )

    try:
        data = response.json()
    except ValueError:
        data = {"error": "unknown", "error_description": response.text}

    if not response.is_success or "error" in data:
        raise ValueError(
            f"Token exchange failed: {data.get('error')} - {data.get('error_description', '')}"
        )
    return data


async def fetch_user_info(config: OAuthConfig, access_token: str, transport=None) -> dict:
    async with httpx.AsyncClient(timeout=_OAUTH_TIMEOUT, transport=transport) as client:
        response = await client.get(
            config.userinfo_url,
            headers={"Authorization": f"Bearer {access_token}"},
        )
    if not response.is_success:
        raise ValueError(f"Failed to fetch Google user info ({response.status_code})")
    return response.json()


async def revoke_token(config: OAuthConfig, token: str, transport=None) -> bool:
    """Revoke a token at Google. Failure is reported, not raised."""
    try:
        async with httpx.AsyncClient(timeout=_OAUTH_TIMEOUT, transport=transport) as client:
            response = await client.post(
                config.revoke_url,
                params={"token": token},
                headers={"Content-Type": "application/x-www-form-urlencoded"},
            )
        return response.is_success
    except httpx.HTTPError as e:
        logger.warning(f"[GOOGLE_AUTH] Token revoke request failed: {e}")
        return False


async def connect_account(
    config: OAuthConfig,
    store: CredentialStore,
    cipher: TokenCipher,
    code: str,
    transport=None,
) -> dict:
    """
    Complete the OAuth callback: exchange the code, look up the account and
    store encrypted tokens. Returns a summary for logging/redirects.
    """
    tokens = await exchange_code_for_tokens(config, code, transport=transport)
    logger.info(
        f"[GOOGLE_AUTH] Token exchange success: has_refresh={bool(tokens.get('refresh_token'))}, "
        f"expires_in={tokens.get('expires_in')}s"
    )

    user_info = await fetch_user_info(config, tokens["access_token"], transport=transport)
    now = utc_now()

    credential = store.save_connection(
        access_token_encrypted=cipher.encrypt(tokens["access_token"]),
        refresh_token_encrypted=cipher.encrypt(tokens["refresh_token"]) if tokens.get("refresh_token") else None,
        token_expires_at=now + timedelta(seconds=int(tokens.get("expires_in", 3600))),
        account_email=user_info.get("email"),
        scopes=(tokens.get("scope") or "").split(),
        metadata={
            "account_name": user_info.get("name"),
            "connected_at": now.isoformat(),
        },
    )

    if not credential.refresh_token_encrypted:
        logger.warning("[GOOGLE_AUTH] Connected without a refresh token - reconnection will be required")

    logger.info(f"[GOOGLE_AUTH] Connected {config.provider} as {credential.account_email}")
    return {
        "provider": config.provider,
        "email": credential.account_email,
        "has_refresh_token": bool(credential.refresh_token_encrypted),
    }


def get_connection_status(store: CredentialStore) -> ConnectionStatus:
    """Report the stored connection state. Never refreshes."""
    credential = store.load()

    if credential is None or credential.status == IntegrationStatus.NOT_CONNECTED.value:
        return ConnectionStatus(connected=False, status=IntegrationStatus.NOT_CONNECTED.value)

    expires_at = credential.token_expires_at.isoformat() if credential.token_expires_at else None
    last_refreshed_at = credential.metadata.get("last_refreshed_at")

    if not credential.refresh_token_encrypted:
        return ConnectionStatus(
            connected=False,
            status="no_refresh_token",
            email=credential.account_email,
            token_expires_at=expires_at,
        )

    if credential.is_error:
        return ConnectionStatus(
            connected=False,
            status=IntegrationStatus.ERROR.value,
            email=credential.account_email,
            error=credential.metadata.get("error_detail") or credential.metadata.get("error") or "Connection error",
            token_expires_at=expires_at,
            last_refreshed_at=last_refreshed_at,
        )

    return ConnectionStatus(
        connected=True,
        status=credential.status,
        email=credential.account_email,
        token_expires_at=expires_at,
        last_refreshed_at=last_refreshed_at,
    )


async def disconnect_account(
    config: OAuthConfig,
    store: CredentialStore,
    cipher: TokenCipher,
    transport=None,
) -> bool:
    """Revoke the refresh token at Google (best effort) and clear stored tokens."""
    credential = store.load()
    if credential is None:
        return False

    if credential.refresh_token_encrypted:
        revoked = await revoke_token(
            config, cipher.decrypt(credential.refresh_token_encrypted), transport=transport
        )
        if not revoked:
            logger.warning("[GOOGLE_AUTH] Google did not confirm revocation; clearing tokens anyway")

    updated = store.mark_disconnected()
    if updated is None:
        raise RuntimeError("Connection changed while disconnecting, try again")
    logger.info(f"[GOOGLE_AUTH] Disconnected {config.provider}")
    return True


def get_frontend_redirect_url(success: bool, error: Optional[str] = None) -> str:
    """Where to send the admin after the OAuth callback."""
    base_url = os.getenv("FRONTEND_URL", "http://localhost:3000")

    if success:
        return f"{base_url}/agency/integrations/google/setup"

    params = {"error": error or "unknown"}
    return f"{base_url}/agency/integrations?{urlencode(params)}"
