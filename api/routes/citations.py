"""
Citation Routes

Endpoints:
- POST /citations/audit - Provision, trigger or pull citation audits
"""

import logging
from typing import Optional

from fastapi import APIRouter, Body, HTTPException
from fastapi.responses import JSONResponse
from pydantic import BaseModel

from integrations.core.brightlocal_client import is_configured as brightlocal_configured
from services.admin_auth import CronOrAdminAuth
from services.citation_audit import CitationAuditWorkflow
from services.supabase import ServiceClient

logger = logging.getLogger(__name__)

router = APIRouter()


class AuditRequest(BaseModel):
    location_ids: Optional[list[str]] = None


@router.post("/audit")
async def run_citation_audit(
    auth: CronOrAdminAuth,
    client: ServiceClient,
    request: Optional[AuditRequest] = Body(None),
):
    """
    Run the audit workflow for the given locations (all active ones when
    omitted). Locations with a running audit are pulled instead of re-run.
    """
    if not brightlocal_configured():
        raise HTTPException(status_code=400, detail="BrightLocal not configured")

    workflow = CitationAuditWorkflow(client)
    locations = workflow.load_locations(request.location_ids if request else None)
    if not locations:
        raise HTTPException(status_code=404, detail="No matching locations found")

    caller = auth.user_id if auth else "cron"
    logger.info(f"[CITATION_AUDIT] {caller} requested audit of {len(locations)} location(s)")

    result = await workflow.run(locations=locations)

    if result.triggered == 0 and result.pulled == 0:
        return JSONResponse(
            status_code=422,
            content={"error": "No audits triggered or pulled", **result.to_dict()},
        )

    return {"ok": True, **result.to_dict()}
