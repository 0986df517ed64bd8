"""
Review Reply Queue Job

Delivers queued review replies to Google Business Profile.

Run every 5 minutes (scheduler hits /api/cron/reply-queue, or directly):
  schedule: "*/5 * * * *"
  command: cd api && python -m jobs.reply_queue
"""

from __future__ import annotations

import asyncio
import logging
from typing import Optional

from integrations.core.google_client import GoogleBusinessClient, get_google_client
from integrations.core.types import QueueRunSummary
from services.review_replies import ReviewReplyHandler
from services.work_queue import WorkQueueProcessor

logger = logging.getLogger(__name__)


async def run_reply_queue(client=None, google: Optional[GoogleBusinessClient] = None) -> QueueRunSummary:
    """Drain one batch of the reply queue. Credential errors propagate."""
    if client is None:
        from services.supabase import get_service_client
        client = get_service_client()

    google = google or get_google_client()
    await google.ensure_connected()

    processor = WorkQueueProcessor(client, ReviewReplyHandler(google))
    return await processor.run()


if __name__ == "__main__":
    from dotenv import load_dotenv

    load_dotenv()
    logging.basicConfig(level=logging.INFO, format="%(asctime)s %(levelname)s %(name)s: %(message)s")
    summary = asyncio.run(run_reply_queue())
    logger.info(f"[REPLY_QUEUE] {summary.to_dict()}")
