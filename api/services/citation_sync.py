"""
Citation result pulling.

Once a BrightLocal citation tracker report has finished, its citations are
compared against the location's own NAP (name, address, phone) and stored
in citation_listings, one row per directory.
"""

import re
import logging
from typing import Optional

from integrations.core.brightlocal_client import BrightLocalClient, get_brightlocal_client
from integrations.core.timeutils import utc_now
from integrations.core.types import RunStatus

logger = logging.getLogger(__name__)

COMPLETE_REPORT_STATUSES = ("complete", "completed")


# =============================================================================
# NAP comparison
# =============================================================================

def normalize_phone(phone: Optional[str]) -> str:
    """Digits only, with a leading US country code dropped."""
    if not phone:
        return ""
    digits = re.sub(r"\D", "", phone)
    if len(digits) == 11 and digits.startswith("1"):
        return digits[1:]
    return digits


def normalize_text(text: Optional[str]) -> str:
    if not text:
        return ""
    text = re.sub(r"[^\w\s]", "", text.lower())
    return re.sub(r"\s+", " ", text).strip()


def expected_nap(location: dict) -> tuple[str, str, str]:
    address = ", ".join(
        part for part in (
            location.get("address_line1"),
            location.get("city"),
            location.get("state"),
            location.get("postal_code"),
        ) if part
    )
    return location.get("name") or "", address, location.get("phone") or ""


def compare_citation(citation: dict, name: str, address: str, phone: str) -> dict[str, bool]:
    """A field the directory does not show counts as matching."""
    found_name = citation.get("business-name")
    found_phone = citation.get("telephone")
    found_address = citation.get("address")

    name_match = not found_name or normalize_text(found_name) == normalize_text(name)
    phone_match = not found_phone or normalize_phone(found_phone) == normalize_phone(phone)
    address_match = not found_address or normalize_text(found_address) == normalize_text(address)
    return {
        "name_match": name_match,
        "phone_match": phone_match,
        "address_match": address_match,
        "nap_correct": name_match and phone_match and address_match,
    }


def listing_status(citation: dict, nap_correct: bool) -> str:
    if citation.get("citation-status") != "active" and not citation.get("url"):
        return "not_listed"
    if not nap_correct:
        return "action_needed"
    return "found"


def build_recommendation(citation: dict, is_listed: bool, name: str, phone: str) -> Optional[str]:
    source = citation.get("source")
    if not is_listed:
        return f"Not listed on {source}. Submit business listing to improve citation coverage."

    issues = []
    if citation.get("business-name") and normalize_text(citation["business-name"]) != normalize_text(name):
        issues.append("business name")
    if citation.get("telephone") and normalize_phone(citation["telephone"]) != normalize_phone(phone):
        issues.append("phone number")

    if not issues:
        return None
    return f"Incorrect {', '.join(issues)} on {source}. Update the listing to match current business information."


# =============================================================================
# Pull
# =============================================================================

async def pull_audit_results(client, audit: dict, brightlocal: Optional[BrightLocalClient] = None) -> bool:
    """
    Pull a finished report into citation_listings and complete the audit.

    Returns False while the report is still running.
    """
    bl = brightlocal or get_brightlocal_client()
    report_id = audit["brightlocal_report_id"]

    report = await bl.get_report(report_id)
    if str(report.get("status", "")).lower() not in COMPLETE_REPORT_STATUSES:
        return False

    citations = await bl.get_results(report_id)

    location_result = (
        client.table("locations")
        .select("name, phone, address_line1, city, state, postal_code")
        .eq("id", audit["location_id"])
        .limit(1)
        .execute()
    )
    location = location_result.data[0] if location_result.data else {}
    name, address, phone = expected_nap(location)

    correct = incorrect = missing = 0
    now = utc_now().isoformat()

    for citation in citations:
        is_listed = citation.get("citation-status") == "active" or bool(citation.get("url"))
        match = compare_citation(citation, name, address, phone)

        if not is_listed:
            missing += 1
        elif match["nap_correct"]:
            correct += 1
        else:
            incorrect += 1

        client.table("citation_listings").upsert(
            {
                "location_id": audit["location_id"],
                "audit_id": audit["id"],
                "directory_name": citation.get("source"),
                "directory_url": None,
                "listing_url": citation.get("url"),
                "expected_name": name,
                "expected_address": address,
                "expected_phone": phone,
                "found_name": citation.get("business-name"),
                "found_address": citation.get("address"),
                "found_phone": citation.get("telephone"),
                **match,
                "status": listing_status(citation, match["nap_correct"]),
                "ai_recommendation": build_recommendation(citation, is_listed, name, phone),
                "last_checked_at": now,
                "updated_at": now,
            },
            on_conflict="location_id,directory_name",
        ).execute()

    client.table("citation_audits").update({
        "status": RunStatus.COMPLETED.value,
        "total_found": len(citations),
        "total_correct": correct,
        "total_incorrect": incorrect,
        "total_missing": missing,
        "completed_at": utc_now().isoformat(),
        "last_error": None,
    }).eq("id", audit["id"]).execute()

    logger.info(
        f"[CITATION_SYNC] Audit {audit['id']} completed: {len(citations)} citations "
        f"({correct} correct, {incorrect} incorrect, {missing} missing)"
    )
    return True
