"""
Google Business Profile post queue.

Creating a local post is not idempotent: a blind retry after an ambiguous
timeout would publish the post twice. Before any re-attempt the location's
recent posts are listed and a post with the same summary counts as
delivered.
"""

import logging
from datetime import timedelta
from typing import Any, Optional

from integrations.core.google_client import GoogleBusinessClient, get_google_client
from integrations.core.timeutils import parse_datetime, utc_now
from services.work_queue import QueueHandler

logger = logging.getLogger(__name__)

QUEUE_TABLE = "gbp_post_queue"
MISSING_PROFILE = "No GBP profile found for location"


def account_location_name(profile: dict) -> str:
    if profile.get("gbp_account_name"):
        return f"{profile['gbp_account_name']}/{profile['gbp_location_name']}"
    return profile["gbp_location_name"]


def _date_parts(value) -> tuple[dict, dict]:
    return (
        {"year": value.year, "month": value.month, "day": value.day},
        {"hours": value.hour, "minutes": value.minute},
    )


def build_post_payload(entry: dict) -> dict[str, Any]:
    """Translate a queue row into a GBP localPosts body."""
    topic_type = entry.get("topic_type") or "STANDARD"
    payload: dict[str, Any] = {
        "topicType": topic_type,
        "summary": entry["summary"],
        "languageCode": "en",
    }

    if entry.get("action_type") and entry.get("action_url"):
        payload["callToAction"] = {"actionType": entry["action_type"], "url": entry["action_url"]}

    if entry.get("media_url"):
        payload["media"] = [{"mediaFormat": "PHOTO", "sourceUrl": entry["media_url"]}]

    if topic_type == "EVENT" and entry.get("event_title"):
        start = parse_datetime(entry.get("event_start")) or utc_now()
        end = parse_datetime(entry.get("event_end")) or start + timedelta(days=1)
        start_date, start_time = _date_parts(start)
        end_date, end_time = _date_parts(end)
        payload["event"] = {
            "title": entry["event_title"],
            "schedule": {
                "startDate": start_date,
                "startTime": start_time,
                "endDate": end_date,
                "endTime": end_time,
            },
        }

    if topic_type == "OFFER":
        offer = {}
        if entry.get("offer_coupon_code"):
            offer["couponCode"] = entry["offer_coupon_code"]
        if entry.get("offer_terms"):
            offer["termsConditions"] = entry["offer_terms"]
        payload["offer"] = offer

    return payload


class GBPPostHandler(QueueHandler):
    table = QUEUE_TABLE
    parent_field = "location_id"
    label = "POST_QUEUE"

    def __init__(self, google: Optional[GoogleBusinessClient] = None):
        self._google = google

    @property
    def google(self) -> GoogleBusinessClient:
        if self._google is None:
            self._google = get_google_client()
        return self._google

    def load_parents(self, client, entries: list[dict]) -> dict[str, dict]:
        location_ids = list({e["location_id"] for e in entries if e.get("location_id")})
        if not location_ids:
            return {}
        result = (
            client.table("gbp_profiles")
            .select("location_id, gbp_location_name, gbp_account_name")
            .in_("location_id", location_ids)
            .execute()
        )
        return {p["location_id"]: p for p in result.data or []}

    def missing_reference(self, entry: dict, parent: Optional[dict]) -> Optional[str]:
        if not parent or not parent.get("gbp_location_name"):
            return MISSING_PROFILE
        return None

    async def verify_delivered(self, entry: dict, parent: dict) -> Optional[dict]:
        """
        A post counts as ours only if it has the same summary and was created
        after the entry was queued; recurring post texts reuse summaries.
        """
        posts = await self.google.list_posts(account_location_name(parent))
        summary = (entry.get("summary") or "").strip()
        queued_at = parse_datetime(entry.get("created_at"))
        for post in posts:
            if (post.get("summary") or "").strip() != summary:
                continue
            created = parse_datetime(post.get("createTime"))
            if queued_at is not None and (created is None or created < queued_at):
                continue
            return post
        return None

    async def deliver(self, entry: dict, parent: dict) -> dict:
        return await self.google.create_post(account_location_name(parent), build_post_payload(entry))

    def confirmation_fields(self, entry: dict, result: dict) -> dict[str, Any]:
        return {"gbp_post_name": result.get("name")}

    def on_confirmed(self, client, entry: dict, parent: dict, result: dict) -> None:
        call_to_action = result.get("callToAction") or {}
        client.table("gbp_posts").insert({
            "location_id": entry["location_id"],
            "gbp_post_name": result.get("name") or "",
            "topic_type": result.get("topicType") or entry.get("topic_type") or "STANDARD",
            "summary": result.get("summary") or entry["summary"],
            "action_type": call_to_action.get("actionType") or entry.get("action_type"),
            "action_url": call_to_action.get("url") or entry.get("action_url"),
            "media_url": entry.get("media_url"),
            "event_title": entry.get("event_title"),
            "event_start": entry.get("event_start"),
            "event_end": entry.get("event_end"),
            "offer_coupon_code": entry.get("offer_coupon_code"),
            "offer_terms": entry.get("offer_terms"),
            "state": result.get("state") or "LIVE",
            "search_url": result.get("searchUrl"),
            "create_time": result.get("createTime") or utc_now().isoformat(),
            "update_time": result.get("updateTime"),
        }).execute()
