"""
Google Business Profile API client.

Reviews and local posts still live on the legacy v4 API. Every call goes
through ResilientClient, so token refresh and transient retries are already
handled; a non-2xx response here is a real provider answer and becomes a
ProviderRequestError.
"""

import logging
from typing import Any, Optional

from .client import ResilientClient
from .errors import ProviderRequestError

logger = logging.getLogger(__name__)

GBP_V4_API = "https://mybusiness.googleapis.com/v4"


class GoogleBusinessClient:
    """
    Usage:
        client = get_google_client()
        await client.reply_to_review("accounts/1/locations/2/reviews/3", "Thanks!")
    """

    def __init__(self, http: ResilientClient):
        self.http = http

    async def ensure_connected(self) -> None:
        """Fail fast with a credential error before any queued work is touched."""
        if self.http.token_manager is not None:
            await self.http.token_manager.get_valid_access_token()

    async def _json(self, method: str, path: str, action: str, **kwargs) -> dict[str, Any]:
        response = await self.http.fetch(method, f"{GBP_V4_API}/{path}", **kwargs)
        if not response.is_success:
            raise ProviderRequestError(
                f"Failed to {action}: {response.status_code} {response.text[:300]}",
                status_code=response.status_code,
                body=response.text,
            )
        if not response.content:
            return {}
        return response.json()

    # =========================================================================
    # Reviews
    # =========================================================================

    async def get_review(self, review_name: str) -> dict[str, Any]:
        """Fetch a single review, including any existing reviewReply."""
        return await self._json("get", review_name, "fetch review")

    async def reply_to_review(self, review_name: str, comment: str) -> dict[str, Any]:
        """PUT replaces the reply, so repeating it is harmless."""
        return await self._json(
            "put",
            f"{review_name}/reply",
            "reply to review",
            json={"comment": comment},
        )

    # =========================================================================
    # Local posts
    # =========================================================================

    async def create_post(self, location_name: str, post: dict[str, Any]) -> dict[str, Any]:
        """Create a local post. Not idempotent: callers verify before retrying."""
        return await self._json("post", f"{location_name}/localPosts", "create post", json=post)

    async def list_posts(self, location_name: str, page_size: int = 20) -> list[dict[str, Any]]:
        data = await self._json(
            "get",
            f"{location_name}/localPosts",
            "list posts",
            params={"pageSize": str(page_size)},
        )
        return data.get("localPosts", [])


# Singleton instance
_google_client: Optional[GoogleBusinessClient] = None


def get_google_client() -> GoogleBusinessClient:
    global _google_client
    if _google_client is None:
        from .tokens import get_token_manager

        _google_client = GoogleBusinessClient(
            ResilientClient(token_manager=get_token_manager(), label="GOOGLE_API")
        )
    return _google_client
