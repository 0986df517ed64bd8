"""
GBP Post Queue Job

Publishes queued local posts to Google Business Profile.

Run every 5 minutes (scheduler hits /api/cron/post-queue, or directly):
  schedule: "*/5 * * * *"
  command: cd api && python -m jobs.post_queue
"""

from __future__ import annotations

import asyncio
import logging
from typing import Optional

from integrations.core.google_client import GoogleBusinessClient, get_google_client
from integrations.core.types import QueueRunSummary
from services.post_queue import GBPPostHandler
from services.work_queue import WorkQueueProcessor

logger = logging.getLogger(__name__)


async def run_post_queue(client=None, google: Optional[GoogleBusinessClient] = None) -> QueueRunSummary:
    if client is None:
        from services.supabase import get_service_client
        client = get_service_client()

    google = google or get_google_client()
    await google.ensure_connected()

    processor = WorkQueueProcessor(client, GBPPostHandler(google))
    return await processor.run()


if __name__ == "__main__":
    from dotenv import load_dotenv

    load_dotenv()
    logging.basicConfig(level=logging.INFO, format="%(asctime)s %(levelname)s %(name)s: %(message)s")
    summary = asyncio.run(run_post_queue())
    logger.info(f"[POST_QUEUE] {summary.to_dict()}")
