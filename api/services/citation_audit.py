"""
Citation audit provisioning workflow.

Each location moves through three resumable stages:

  A. BrightLocal location   -> locations.brightlocal_location_id
  B. Citation tracker report -> locations.brightlocal_report_id
  C. Audit run               -> citation_audits row (pending -> running -> completed)

A stage is complete when its ID is persisted, never because of in-memory
state, so an invocation that dies between stages resumes on the next run.
Stages A and B search BrightLocal by our own ID before creating anything,
which covers a crash between the create call and the write-back.

At most one audit per location is pending/running (partial unique index);
an existing one is resumed or pulled, never duplicated.
"""

import logging
from datetime import timedelta
from typing import Optional

from integrations.core.brightlocal_client import (
    DEFAULT_BUSINESS_CATEGORY_ID,
    BrightLocalClient,
    get_brightlocal_client,
)
from integrations.core.errors import AlreadyInProgress, StructuralError
from integrations.core.timeutils import parse_datetime, utc_now
from integrations.core.types import ACTIVE_RUN_STATUSES, AuditBatchResult, RunOutcome, RunStatus
from services.citation_sync import pull_audit_results

logger = logging.getLogger(__name__)

DEFAULT_LOCATION_LIMIT = 50

# A report is not worth polling sooner than this after it was started
MIN_PULL_INTERVAL = timedelta(minutes=10)

LOCATION_COLUMNS = (
    "id, name, type, phone, address_line1, city, state, postal_code, country, "
    "brightlocal_location_id, brightlocal_report_id"
)


def brightlocal_country(country: Optional[str]) -> str:
    if not country or country == "US":
        return "USA"
    return country


def derive_website(name: str) -> str:
    return "".join(name.lower().split()) + ".com"


class CitationAuditWorkflow:
    """
    Usage:
        workflow = CitationAuditWorkflow(get_service_client())
        result = await workflow.run(["location-uuid"])
    """

    def __init__(self, client, brightlocal: Optional[BrightLocalClient] = None):
        self.client = client
        self._brightlocal = brightlocal

    @property
    def brightlocal(self) -> BrightLocalClient:
        if self._brightlocal is None:
            self._brightlocal = get_brightlocal_client()
        return self._brightlocal

    # =========================================================================
    # Batch reads
    # =========================================================================

    def load_locations(self, location_ids: Optional[list[str]] = None, limit: int = DEFAULT_LOCATION_LIMIT) -> list[dict]:
        query = self.client.table("locations").select(LOCATION_COLUMNS).eq("active", True)
        if location_ids:
            query = query.in_("id", location_ids)
        return query.limit(limit).execute().data or []

    def load_profiles(self, location_ids: list[str], active_only: bool = False) -> dict[str, dict]:
        if not location_ids:
            return {}
        query = (
            self.client.table("gbp_profiles")
            .select("location_id, primary_category_name, website_uri")
            .in_("location_id", location_ids)
        )
        if active_only:
            query = query.eq("sync_status", "active")
        return {p["location_id"]: p for p in query.execute().data or []}

    def load_active_audits(self, location_ids: list[str]) -> dict[str, dict]:
        if not location_ids:
            return {}
        result = (
            self.client.table("citation_audits")
            .select("id, location_id, brightlocal_report_id, status, started_at, created_at")
            .in_("location_id", location_ids)
            .in_("status", ACTIVE_RUN_STATUSES)
            .execute()
        )
        return {a["location_id"]: a for a in result.data or []}

    # =========================================================================
    # Stages
    # =========================================================================

    async def ensure_brightlocal_location(self, location: dict, profile: Optional[dict]) -> str:
        """Stage A. Returns the BrightLocal location id, creating it at most once."""
        if location.get("brightlocal_location_id"):
            return location["brightlocal_location_id"]

        if not location.get("phone") or not location.get("city") or not location.get("state"):
            raise StructuralError("missing phone, city, or state")

        bl_location_id = await self.brightlocal.find_location(location["id"])

        if not bl_location_id:
            profile = profile or {}
            country = brightlocal_country(location.get("country"))
            category_id = (
                await self.brightlocal.search_business_category(
                    profile.get("primary_category_name") or "Business", country
                )
                or DEFAULT_BUSINESS_CATEGORY_ID
            )
            bl_location_id = await self.brightlocal.create_location(
                name=location["name"],
                phone=location["phone"],
                address1=location.get("address_line1"),
                city=location["city"],
                region=location["state"],
                postcode=location.get("postal_code") or "",
                country=country,
                website=profile.get("website_uri") or derive_website(location["name"]),
                business_category_id=category_id,
                location_reference=location["id"],
            )
            logger.info(f"[CITATION_AUDIT] Created BrightLocal location {bl_location_id} for {location['id']}")

        self.client.table("locations").update(
            {"brightlocal_location_id": bl_location_id}
        ).eq("id", location["id"]).execute()
        location["brightlocal_location_id"] = bl_location_id
        return bl_location_id

    async def ensure_report(self, location: dict, profile: Optional[dict]) -> bool:
        """Stage B. Returns True when a report id was stored on this call."""
        if location.get("brightlocal_report_id"):
            return False

        report_id = await self.brightlocal.find_report(location["brightlocal_location_id"])

        if not report_id:
            report_id = await self.brightlocal.create_report(
                location["brightlocal_location_id"],
                business_type=(profile or {}).get("primary_category_name") or "Business",
                primary_location=location.get("postal_code") or location.get("city") or "",
            )
            logger.info(f"[CITATION_AUDIT] Created CT report {report_id} for {location['id']}")

        self.client.table("locations").update(
            {"brightlocal_report_id": report_id}
        ).eq("id", location["id"]).execute()
        location["brightlocal_report_id"] = report_id
        return True

    def create_audit(self, location_id: str, report_id: str) -> dict:
        """Insert a pending audit, or return the active one another invocation created."""
        try:
            result = self.client.table("citation_audits").insert({
                "location_id": location_id,
                "brightlocal_report_id": report_id,
                "status": RunStatus.PENDING.value,
            }).execute()
            return result.data[0]
        except Exception as e:
            if "duplicate key" not in str(e).lower():
                raise
            existing = self.load_active_audits([location_id]).get(location_id)
            if existing is None:
                raise
            if existing["status"] == RunStatus.RUNNING.value:
                raise AlreadyInProgress("audit already running")
            return existing

    async def start_run(self, audit: dict) -> None:
        """Stage C. Raises AlreadyInProgress when BrightLocal is busy."""
        outcome = await self.brightlocal.run_report(audit["brightlocal_report_id"])

        if outcome == RunOutcome.ALREADY_RUNNING:
            raise AlreadyInProgress("another CT scan is already running, audit queued")

        self.client.table("citation_audits").update({
            "status": RunStatus.RUNNING.value,
            "started_at": utc_now().isoformat(),
        }).eq("id", audit["id"]).eq("status", RunStatus.PENDING.value).execute()

    def ready_to_pull(self, audit: dict) -> bool:
        started_at = parse_datetime(audit.get("started_at")) or parse_datetime(audit.get("created_at"))
        if started_at is None:
            return True
        return utc_now() - started_at >= MIN_PULL_INTERVAL

    # =========================================================================
    # Batch
    # =========================================================================

    async def run(self, location_ids: Optional[list[str]] = None, locations: Optional[list[dict]] = None) -> AuditBatchResult:
        """Provision, trigger or pull each location. One location never blocks another."""
        result = AuditBatchResult()
        if locations is None:
            locations = self.load_locations(location_ids)
        if not locations:
            return result

        ids = [loc["id"] for loc in locations]
        profiles = self.load_profiles(ids)
        audits = self.load_active_audits(ids)

        for location in locations:
            name = location.get("name") or location["id"]
            try:
                await self._process_location(location, profiles.get(location["id"]), audits.get(location["id"]), result)
            except AlreadyInProgress as e:
                result.in_progress += 1
                result.errors.append(f"{name}: {e.message}")
            except StructuralError as e:
                result.failed += 1
                result.errors.append(f"{name}: {e.message}")
                logger.warning(f"[CITATION_AUDIT] {location['id']} skipped: {e.message}")
            except Exception as e:
                result.failed += 1
                result.errors.append(f"{name}: {e}")
                logger.error(f"[CITATION_AUDIT] Failed for location {location['id']}: {e}")

        logger.info(
            f"[CITATION_AUDIT] created={result.created} triggered={result.triggered} "
            f"pulled={result.pulled} in_progress={result.in_progress} failed={result.failed}"
        )
        return result

    async def _process_location(
        self,
        location: dict,
        profile: Optional[dict],
        audit: Optional[dict],
        result: AuditBatchResult,
    ) -> None:
        if audit and audit["status"] == RunStatus.RUNNING.value:
            if not self.ready_to_pull(audit):
                raise AlreadyInProgress("BL report still running, check back later")
            try:
                pulled = await pull_audit_results(self.client, audit, brightlocal=self.brightlocal)
            except Exception as e:
                raise RuntimeError(f"failed to pull results: {e}") from e
            if not pulled:
                raise AlreadyInProgress("BL report still running, check back later")
            result.pulled += 1
            return

        await self.ensure_brightlocal_location(location, profile)
        if await self.ensure_report(location, profile):
            result.created += 1

        if audit is None:
            audit = self.create_audit(location["id"], location["brightlocal_report_id"])

        await self.start_run(audit)
        result.triggered += 1
