"""
Citation Sync Job

Three-phase citation sync via BrightLocal:

Phase 1 - Map: locations with an active GBP profile but no citation tracker
          report get a BrightLocal location + report and an initial pending audit.
Phase 2 - Trigger: run the oldest pending audit, but only when nothing is
          running (BrightLocal allows one scan at a time).
Phase 3 - Pull: fetch results for running audits that had time to finish.

A failing phase never prevents the next one from running.

Run every 15 minutes (scheduler hits /api/cron/citation-sync, or directly):
  schedule: "*/15 * * * *"
  command: cd api && python -m jobs.citation_sync
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from typing import Optional

from integrations.core.brightlocal_client import BrightLocalClient
from integrations.core.errors import AlreadyInProgress
from integrations.core.types import RunStatus
from services.citation_audit import CitationAuditWorkflow, LOCATION_COLUMNS
from services.citation_sync import pull_audit_results

logger = logging.getLogger(__name__)

MAP_BATCH_SIZE = 10
PULL_BATCH_SIZE = 10


@dataclass
class CitationSyncSummary:
    mapped: int = 0
    triggered: int = 0
    pulled: int = 0
    in_progress: int = 0
    errors: list[str] = field(default_factory=list)

    def to_dict(self) -> dict:
        return {
            "mapped": self.mapped,
            "triggered": self.triggered,
            "pulled": self.pulled,
            "in_progress": self.in_progress,
            "errors": list(self.errors),
        }


def _mark_audit_error(client, audit_id: str, message: str) -> None:
    client.table("citation_audits").update({
        "status": RunStatus.ERROR.value,
        "last_error": message,
    }).eq("id", audit_id).execute()


async def map_locations(workflow: CitationAuditWorkflow, summary: CitationSyncSummary) -> None:
    client = workflow.client
    unmapped = (
        client.table("locations")
        .select(LOCATION_COLUMNS)
        .eq("active", True)
        .is_("brightlocal_report_id", "null")
        .limit(MAP_BATCH_SIZE)
        .execute()
    ).data or []
    if not unmapped:
        return

    # Only real businesses: a synced GBP profile is required
    profiles = workflow.load_profiles([loc["id"] for loc in unmapped], active_only=True)

    for location in unmapped:
        profile = profiles.get(location["id"])
        if profile is None:
            continue
        if not location.get("phone") or not location.get("city") or not location.get("state"):
            continue

        try:
            await workflow.ensure_brightlocal_location(location, profile)
            await workflow.ensure_report(location, profile)
            workflow.create_audit(location["id"], location["brightlocal_report_id"])
            summary.mapped += 1
        except AlreadyInProgress:
            summary.mapped += 1
        except Exception as e:
            logger.error(f"[CITATION_SYNC] Failed to map location {location['id']}: {e}")
            summary.errors.append(f"map {location['id']}: {e}")


async def trigger_next_audit(workflow: CitationAuditWorkflow, summary: CitationSyncSummary) -> None:
    client = workflow.client
    running = (
        client.table("citation_audits")
        .select("id")
        .eq("status", RunStatus.RUNNING.value)
        .limit(1)
        .execute()
    ).data
    if running:
        logger.info("[CITATION_SYNC] A scan is already running, not triggering")
        return

    pending = (
        client.table("citation_audits")
        .select("id, brightlocal_report_id, location_id")
        .eq("status", RunStatus.PENDING.value)
        .order("created_at")
        .limit(1)
        .execute()
    ).data
    if not pending:
        return

    audit = pending[0]
    try:
        await workflow.start_run(audit)
        summary.triggered += 1
    except AlreadyInProgress:
        summary.in_progress += 1
    except Exception as e:
        logger.error(f"[CITATION_SYNC] Failed to trigger audit {audit['id']}: {e}")
        _mark_audit_error(client, audit["id"], str(e))
        summary.errors.append(f"trigger {audit['id']}: {e}")


async def pull_running_audits(workflow: CitationAuditWorkflow, summary: CitationSyncSummary) -> None:
    client = workflow.client
    running = (
        client.table("citation_audits")
        .select("id, brightlocal_report_id, location_id, started_at, created_at")
        .eq("status", RunStatus.RUNNING.value)
        .limit(PULL_BATCH_SIZE)
        .execute()
    ).data or []

    for audit in running:
        if not workflow.ready_to_pull(audit):
            summary.in_progress += 1
            continue
        try:
            if await pull_audit_results(client, audit, brightlocal=workflow.brightlocal):
                summary.pulled += 1
            else:
                summary.in_progress += 1
        except Exception as e:
            logger.error(f"[CITATION_SYNC] Failed to pull audit {audit['id']}: {e}")
            _mark_audit_error(client, audit["id"], str(e))
            summary.errors.append(f"pull {audit['id']}: {e}")


PHASES = (
    ("map", map_locations),
    ("trigger", trigger_next_audit),
    ("pull", pull_running_audits),
)


async def run_citation_sync(client=None, brightlocal: Optional[BrightLocalClient] = None) -> CitationSyncSummary:
    if client is None:
        from services.supabase import get_service_client
        client = get_service_client()

    workflow = CitationAuditWorkflow(client, brightlocal)
    summary = CitationSyncSummary()

    for name, phase in PHASES:
        try:
            await phase(workflow, summary)
        except Exception as e:
            logger.error(f"[CITATION_SYNC] Phase {name} failed: {e}")
            summary.errors.append(f"{name}: {e}")

    logger.info(f"[CITATION_SYNC] {summary.to_dict()}")
    return summary


if __name__ == "__main__":
    from dotenv import load_dotenv

    load_dotenv()
    logging.basicConfig(level=logging.INFO, format="%(asctime)s %(levelname)s %(name)s: %(message)s")
    asyncio.run(run_citation_sync())
