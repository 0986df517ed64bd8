"""
Cron Routes

Scheduler-triggered endpoints. Each one runs a single batch of a job and
returns its summary; the same jobs can be run with `python -m jobs.<name>`.

Endpoints:
- GET /cron/reply-queue - Deliver queued review replies
- GET /cron/post-queue - Publish queued GBP posts
- GET /cron/citation-sync - Map, trigger and pull BrightLocal citation audits
"""

import logging

from fastapi import APIRouter, HTTPException

from integrations.core.brightlocal_client import is_configured as brightlocal_configured
from integrations.core.errors import CREDENTIAL_ERRORS, IntegrationError
from jobs.citation_sync import run_citation_sync
from jobs.post_queue import run_post_queue
from jobs.reply_queue import run_reply_queue
from services.supabase import CronAuth, ServiceClient

logger = logging.getLogger(__name__)

router = APIRouter()


async def _run_queue(label: str, job, client) -> dict:
    try:
        summary = await job(client)
    except CREDENTIAL_ERRORS as e:
        logger.error(f"[{label}] Google credential unusable: {e}")
        raise HTTPException(status_code=401, detail="Google integration requires reconnection")
    except IntegrationError as e:
        logger.error(f"[{label}] Google auth error: {e}")
        raise HTTPException(status_code=500, detail="Google auth error")

    return {"ok": True, **summary.to_dict()}


@router.get("/reply-queue")
async def reply_queue(_: CronAuth, client: ServiceClient) -> dict:
    return await _run_queue("REPLY_QUEUE", run_reply_queue, client)


@router.get("/post-queue")
async def post_queue(_: CronAuth, client: ServiceClient) -> dict:
    return await _run_queue("POST_QUEUE", run_post_queue, client)


@router.get("/citation-sync")
async def citation_sync(_: CronAuth, client: ServiceClient) -> dict:
    if not brightlocal_configured():
        return {"ok": False, "error": "BrightLocal not configured"}

    summary = await run_citation_sync(client)
    return {"ok": True, **summary.to_dict()}
