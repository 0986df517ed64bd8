"""
Token lifecycle for the shared Google connection.

There is no in-memory token cache: every invocation is short-lived, so the
credential row *is* the cache. get_valid_access_token() returns the stored
access token while it has more than five minutes left and otherwise
exchanges the refresh token.

Refresh outcome is always written back so the next invocation sees it:
- success: new token + expiry, status=connected, previous error cleared
- invalid_grant: status=error, metadata.error=refresh_token_revoked (terminal,
  never retried automatically until someone reconnects)
- anything else, after retries: status=error, metadata.error=refresh_failed
  (the next invocation attempts one recovery refresh)
"""

import asyncio
import logging
from datetime import timedelta
from typing import Optional

import httpx

from .credentials import CredentialStore, IntegrationCredential
from .encryption import TokenCipher, get_token_cipher
from .errors import NotConnectedError, ReconnectRequiredError, TransientIntegrationError
from .oauth import OAUTH_CONFIGS, OAuthConfig
from .timeutils import utc_now
from .types import CredentialError, IntegrationStatus

logger = logging.getLogger(__name__)

_TOKEN_TIMEOUT = httpx.Timeout(30.0, connect=10.0)

TOKEN_EXPIRY_BUFFER = timedelta(minutes=5)
REFRESH_ATTEMPTS = 2
REFRESH_RETRY_DELAY_SECONDS = 1

# The only provider error code that means the grant is gone for good
TERMINAL_ERROR_CODE = "invalid_grant"


class TokenManager:
    """
    Owns one provider credential's lifecycle.

    Usage:
        manager = get_token_manager()
        access_token = await manager.get_valid_access_token()
    """

    def __init__(
        self,
        store: CredentialStore,
        cipher: TokenCipher,
        config: OAuthConfig,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.store = store
        self.cipher = cipher
        self.config = config
        self._transport = transport

    async def get_valid_access_token(self) -> str:
        credential = self._load_refreshable()

        if credential.is_error:
            # A transient failure may have flagged the row; try once to recover
            logger.info("[GOOGLE_AUTH] Status is error but refresh token exists - attempting recovery")
            return await self._refresh(credential)

        if not credential.access_token_encrypted:
            return await self._refresh(credential)

        if self._is_fresh(credential):
            return self.cipher.decrypt(credential.access_token_encrypted)

        return await self._refresh(credential)

    async def force_refresh(self) -> str:
        """Refresh regardless of the stored expiry (the provider said 401)."""
        credential = self._load_refreshable()
        return await self._refresh(credential)

    # =========================================================================
    # Internals
    # =========================================================================

    def _load_refreshable(self) -> IntegrationCredential:
        credential = self.store.load()

        if credential is None or credential.status == IntegrationStatus.NOT_CONNECTED.value:
            logger.error(f"[GOOGLE_AUTH] No {self.config.provider} integration connected")
            raise NotConnectedError(f"{self.config.provider} integration not connected")

        if not credential.refresh_token_encrypted:
            logger.error("[GOOGLE_AUTH] No refresh token stored - reconnection required")
            raise ReconnectRequiredError(f"{self.config.provider} refresh token missing - reconnection required")

        if credential.is_error and credential.metadata.get("error") == CredentialError.REFRESH_TOKEN_REVOKED.value:
            raise ReconnectRequiredError(
                f"{self.config.provider} refresh token revoked - reconnection required"
            )

        return credential

    def _is_fresh(self, credential: IntegrationCredential) -> bool:
        if not credential.token_expires_at:
            return False
        return credential.token_expires_at - utc_now() > TOKEN_EXPIRY_BUFFER

    async def _refresh(self, credential: IntegrationCredential) -> str:
        refresh_token = self.cipher.decrypt(credential.refresh_token_encrypted)
        last_error: dict = {}

        for attempt in range(REFRESH_ATTEMPTS):
            if attempt > 0:
                await asyncio.sleep(REFRESH_RETRY_DELAY_SECONDS)

            try:
                response = await self._post_refresh(refresh_token)
            except httpx.HTTPError as e:
                last_error = {"error": type(e).__name__, "error_description": str(e)}
                logger.warning(f"[GOOGLE_AUTH] Refresh attempt {attempt + 1} raised: {e}")
                continue

            if response.is_success:
                return self._store_success(credential, response.json())

            last_error = _error_body(response)

            if last_error.get("error") == TERMINAL_ERROR_CODE:
                logger.error("[GOOGLE_AUTH] invalid_grant - refresh token revoked or expired. Reconnect required.")
                recovered = self._store_failure(
                    credential,
                    CredentialError.REFRESH_TOKEN_REVOKED,
                    f"Google returned invalid_grant: "
                    f"{last_error.get('error_description') or 'Token has been expired or revoked'}",
                )
                if recovered:
                    return recovered
                raise ReconnectRequiredError(
                    f"{self.config.provider} refresh token revoked - reconnection required"
                )

            logger.warning(
                f"[GOOGLE_AUTH] Refresh attempt {attempt + 1} failed: "
                f"{last_error.get('error')} - {last_error.get('error_description')}"
            )

        logger.error(f"[GOOGLE_AUTH] All refresh attempts failed: {last_error.get('error')}")
        recovered = self._store_failure(
            credential,
            CredentialError.REFRESH_FAILED,
            last_error.get("error_description") or last_error.get("error") or "Unknown error",
        )
        if recovered:
            return recovered
        raise TransientIntegrationError(
            f"{self.config.provider} token refresh failed after retries: {last_error.get('error', 'unknown')}"
        )

    async def _post_refresh(self, refresh_token: str) -> httpx.Response:
        async with httpx.AsyncClient(timeout=_TOKEN_TIMEOUT, transport=self._transport) as client:
            return await client.post(
                self.config.token_url,
                data={
                    "grant_type": "refresh_token",
                    "refresh_token": refresh_token,
                    "client_id": self.config.client_id,
                    "client_secret": self.config.client_secret,
                },
            )

    def _store_success(self, credential: IntegrationCredential, tokens: dict) -> str:
        access_token = tokens["access_token"]
        now = utc_now()

        metadata = {
            key: value for key, value in credential.metadata.items()
            if key not in ("error", "error_at", "error_detail")
        }
        metadata["last_refreshed_at"] = now.isoformat()

        changes = {
            "status": IntegrationStatus.CONNECTED.value,
            "access_token_encrypted": self.cipher.encrypt(access_token),
            "token_expires_at": (now + timedelta(seconds=int(tokens.get("expires_in", 3600)))).isoformat(),
            "metadata": metadata,
        }
        if tokens.get("refresh_token"):
            changes["refresh_token_encrypted"] = self.cipher.encrypt(tokens["refresh_token"])

        if self.store.write(credential, changes) is None:
            # Another invocation refreshed concurrently; this token is still valid
            logger.info("[GOOGLE_AUTH] Token refreshed but a concurrent write won; using fresh token anyway")
        else:
            logger.info("[GOOGLE_AUTH] Token refreshed successfully")
        return access_token

    def _store_failure(
        self,
        credential: IntegrationCredential,
        error: CredentialError,
        detail: str,
    ) -> Optional[str]:
        """
        Persist the failure. If the write is stale and the concurrent writer
        left a usable token behind, return that token instead.
        """
        changes = {
            "status": IntegrationStatus.ERROR.value,
            "metadata": {
                **credential.metadata,
                "error": error.value,
                "error_at": utc_now().isoformat(),
                "error_detail": detail,
            },
        }
        if self.store.write(credential, changes) is not None:
            return None

        current = self.store.load()
        if (
            current is not None
            and current.status == IntegrationStatus.CONNECTED.value
            and current.access_token_encrypted
            and self._is_fresh(current)
        ):
            logger.info("[GOOGLE_AUTH] Concurrent refresh succeeded; using its token")
            return self.cipher.decrypt(current.access_token_encrypted)
        return None


def _error_body(response: httpx.Response) -> dict:
    try:
        body = response.json()
        if isinstance(body, dict):
            return body
    except ValueError:
        pass
    return {"error": "unknown", "error_description": response.reason_phrase or str(response.status_code)}


# Singleton instance
_token_manager: Optional[TokenManager] = None


def get_token_manager() -> TokenManager:
    """Get the global TokenManager for the Google connection."""
    global _token_manager
    if _token_manager is None:
        from services.supabase import get_service_client

        _token_manager = TokenManager(
            store=CredentialStore(get_service_client(), provider="google"),
            cipher=get_token_cipher(),
            config=OAUTH_CONFIGS["google"],
        )
    return _token_manager


async def get_valid_access_token() -> str:
    return await get_token_manager().get_valid_access_token()
