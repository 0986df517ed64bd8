"""
Review replies: direct posting and the deferred reply queue.

Replies are PUT to Google, which replaces any existing reply, so a
re-delivery is harmless; verification still runs before a retry so a
reply that already landed is confirmed without another call.
"""

import logging
from datetime import datetime
from typing import Optional

from integrations.core.google_client import GoogleBusinessClient, get_google_client
from integrations.core.timeutils import utc_now
from integrations.core.types import QueueStatus, ReplySource
from services.work_queue import QueueHandler

logger = logging.getLogger(__name__)

QUEUE_TABLE = "review_reply_queue"
MISSING_RESOURCE_NAME = "No Google resource name on review"


def resource_name_of(review: Optional[dict]) -> Optional[str]:
    if not review:
        return None
    return (review.get("platform_metadata") or {}).get("resource_name")


def mark_review_responded(client, review_id: str, reply_body: str, replied_via: str, replied_by: Optional[str] = None):
    changes = {
        "reply_body": reply_body,
        "reply_published_at": utc_now().isoformat(),
        "replied_via": replied_via,
        "status": "responded",
    }
    if replied_by:
        changes["replied_by"] = replied_by
    client.table("reviews").update(changes).eq("id", review_id).execute()


class ReviewReplyHandler(QueueHandler):
    table = QUEUE_TABLE
    parent_field = "review_id"
    label = "REPLY_QUEUE"

    def __init__(self, google: Optional[GoogleBusinessClient] = None):
        self._google = google

    @property
    def google(self) -> GoogleBusinessClient:
        if self._google is None:
            self._google = get_google_client()
        return self._google

    def load_parents(self, client, entries: list[dict]) -> dict[str, dict]:
        review_ids = list({e["review_id"] for e in entries if e.get("review_id")})
        if not review_ids:
            return {}
        result = (
            client.table("reviews")
            .select("id, location_id, platform, platform_metadata")
            .in_("id", review_ids)
            .execute()
        )
        return {r["id"]: r for r in result.data or []}

    def missing_reference(self, entry: dict, parent: Optional[dict]) -> Optional[str]:
        if parent is None:
            return "Review not found"
        if not resource_name_of(parent):
            return MISSING_RESOURCE_NAME
        return None

    async def verify_delivered(self, entry: dict, parent: dict) -> Optional[dict]:
        review = await self.google.get_review(resource_name_of(parent))
        existing = (review.get("reviewReply") or {}).get("comment") or ""
        if existing.strip() == entry["reply_body"].strip():
            return review.get("reviewReply")
        return None

    async def deliver(self, entry: dict, parent: dict) -> dict:
        return await self.google.reply_to_review(resource_name_of(parent), entry["reply_body"])

    def on_confirmed(self, client, entry: dict, parent: dict, result: dict) -> None:
        replied_via = "ai_autopilot" if entry.get("source") == ReplySource.AI_AUTOPILOT.value else "api"
        mark_review_responded(client, entry["review_id"], entry["reply_body"], replied_via)


def enqueue_reply(
    client,
    review_id: str,
    reply_body: str,
    queued_by: Optional[str] = None,
    source: ReplySource = ReplySource.MANUAL,
    scheduled_for: Optional[datetime] = None,
) -> dict:
    """
    Queue a reply for the reply-queue job.

    scheduled_for delays delivery (autopilot spaces replies out so they do
    not all land at once).
    """
    row = {
        "review_id": review_id,
        "reply_body": reply_body.strip(),
        "queued_by": queued_by,
        "source": source.value,
        "status": QueueStatus.PENDING.value,
        "attempts": 0,
        "scheduled_for": scheduled_for.isoformat() if scheduled_for else None,
    }
    result = client.table(QUEUE_TABLE).insert(row).execute()
    logger.info(f"[REPLY_QUEUE] Queued reply for review {review_id} (source={source.value})")
    return result.data[0] if result.data else row


async def post_reply(
    client,
    review: dict,
    reply_body: str,
    user_id: str,
    google: Optional[GoogleBusinessClient] = None,
) -> dict:
    """
    Post a reply on behalf of a user.

    Google reviews are posted immediately; if that fails for any reason the
    reply is queued instead of lost. Other platforms have no reply API, so
    the reply is only stored for the user to post by hand.
    """
    reply_body = reply_body.strip()

    if review.get("platform") != "google":
        mark_review_responded(client, review["id"], reply_body, "manual", replied_by=user_id)
        return {"ok": True, "posted_via": "manual"}

    resource_name = resource_name_of(review)
    if not resource_name:
        raise ValueError("Google review resource name not found")

    try:
        await (google or get_google_client()).reply_to_review(resource_name, reply_body)
    except Exception as e:
        logger.error(f"[REVIEW_REPLY] Google API error for review {review['id']}, queueing: {e}")
        enqueue_reply(client, review["id"], reply_body, queued_by=user_id)
        return {"ok": True, "posted_via": "queued", "message": "Reply queued for retry"}

    mark_review_responded(client, review["id"], reply_body, "api", replied_by=user_id)
    return {"ok": True, "posted_via": "api"}
