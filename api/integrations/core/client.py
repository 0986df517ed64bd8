"""
Resilient HTTP client for provider calls.

All outbound provider traffic goes through ResilientClient.fetch() so that
soft auth expiry and transient failures are handled in one place:

- 401: refresh the token once and resend the same request once
- 429 / 5xx gateway errors / transport errors: exponential backoff retry
- anything else: returned as-is; callers decide what the status means

fetch() does not raise for HTTP status codes. It raises
TransientIntegrationError only when transport errors outlast the retries,
and lets credential errors from the TokenManager propagate.
"""

import asyncio
import logging
from typing import Optional

import httpx

from .errors import TransientIntegrationError

logger = logging.getLogger(__name__)

# Shared timeout for all provider calls
_PROVIDER_API_TIMEOUT = httpx.Timeout(30.0, connect=10.0)

RETRYABLE_STATUS_CODES = frozenset({429, 500, 502, 503, 504})
_RETRY_BACKOFF_SECONDS = [1, 2, 4]
DEFAULT_MAX_RETRIES = 2


class ResilientClient:
    """
    Usage:
        client = ResilientClient(token_manager=get_token_manager())
        response = await client.fetch("get", url)

    Without a token manager no Authorization header is attached (API-key
    providers pass their key in params instead).
    """

    def __init__(
        self,
        token_manager=None,
        max_retries: int = DEFAULT_MAX_RETRIES,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        label: str = "PROVIDER_API",
    ):
        self.token_manager = token_manager
        self.max_retries = max_retries
        self._transport = transport
        self._label = label

    @staticmethod
    def backoff_for(attempt: int) -> int:
        """Delay before retry number `attempt` (0-based)."""
        return _RETRY_BACKOFF_SECONDS[min(attempt, len(_RETRY_BACKOFF_SECONDS) - 1)]

    async def fetch(self, method: str, url: str, headers: Optional[dict] = None, **kwargs) -> httpx.Response:
        access_token = None
        if self.token_manager is not None:
            access_token = await self.token_manager.get_valid_access_token()

        refreshed = False
        retries = 0

        while True:
            try:
                response = await self._send(method, url, headers, access_token, **kwargs)
            except httpx.TransportError as e:
                if retries >= self.max_retries:
                    raise TransientIntegrationError(
                        f"{method.upper()} {url} failed after {retries + 1} attempts: {e}"
                    ) from e
                wait = self.backoff_for(retries)
                retries += 1
                logger.warning(
                    f"[{self._label}] {method.upper()} {url} raised {type(e).__name__}, "
                    f"retrying in {wait}s (retry {retries}/{self.max_retries})"
                )
                await asyncio.sleep(wait)
                continue

            if response.status_code == 401 and self.token_manager is not None and not refreshed:
                refreshed = True
                logger.info(f"[{self._label}] {method.upper()} {url} returned 401, refreshing token")
                access_token = await self.token_manager.force_refresh()
                continue

            if response.status_code in RETRYABLE_STATUS_CODES and retries < self.max_retries:
                wait = self.backoff_for(retries)
                retries += 1
                logger.warning(
                    f"[{self._label}] {method.upper()} {url} returned {response.status_code}, "
                    f"retrying in {wait}s (retry {retries}/{self.max_retries})"
                )
                await asyncio.sleep(wait)
                continue

            return response

    async def _send(
        self,
        method: str,
        url: str,
        headers: Optional[dict],
        access_token: Optional[str],
        **kwargs,
    ) -> httpx.Response:
        request_headers = dict(headers or {})
        if access_token:
            request_headers["Authorization"] = f"Bearer {access_token}"

        async with httpx.AsyncClient(timeout=_PROVIDER_API_TIMEOUT, transport=self._transport) as client:
            return await client.request(method.upper(), url, headers=request_headers, **kwargs)
