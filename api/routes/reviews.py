"""
Review Routes

Endpoints:
- POST /reviews/:review_id/reply - Reply to a review (direct, or queued on failure)
"""

import logging

from fastapi import APIRouter, HTTPException
from fastapi.responses import JSONResponse
from pydantic import BaseModel

from services.review_replies import post_reply
from services.supabase import ServiceClient, UserClient

logger = logging.getLogger(__name__)

router = APIRouter()


class ReplyRequest(BaseModel):
    reply_body: str


@router.post("/{review_id}/reply")
async def reply_to_review(
    review_id: str,
    request: ReplyRequest,
    auth: UserClient,
    client: ServiceClient,
):
    if not request.reply_body.strip():
        raise HTTPException(status_code=400, detail="Reply body required")

    review_result = (
        client.table("reviews")
        .select("id, location_id, platform, platform_metadata")
        .eq("id", review_id)
        .limit(1)
        .execute()
    )
    if not review_result.data:
        raise HTTPException(status_code=404, detail="Review not found")
    review = review_result.data[0]

    # RLS decides whether the caller can see the location
    access = (
        auth.client.table("locations")
        .select("id")
        .eq("id", review["location_id"])
        .limit(1)
        .execute()
    )
    if not access.data:
        raise HTTPException(status_code=403, detail="Access denied")

    try:
        result = await post_reply(client, review, request.reply_body, auth.user_id)
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))

    if result["posted_via"] == "queued":
        return JSONResponse(status_code=202, content=result)
    return result
