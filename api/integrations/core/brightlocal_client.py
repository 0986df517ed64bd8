"""
BrightLocal API client (locations + Citation Tracker).

BrightLocal authenticates with an API key passed as a parameter, so calls
use a ResilientClient without a token manager: only the transient retry
behaviour applies.

Response shapes are inconsistent between endpoints and between the docs and
production: some wrap the payload in {"response": {...}}, some return it
flat, and ct/get uses a top-level "report" key. Every reader below accepts
both forms.
"""

import os
import json
import logging
from typing import Any, Optional

from .client import ResilientClient
from .errors import ProviderRequestError, StructuralError
from .types import RunOutcome

logger = logging.getLogger(__name__)

BASE_URL = "https://tools.brightlocal.com/seo-tools/api"

# "Business" in the US category list; used when no better match exists
DEFAULT_BUSINESS_CATEGORY_ID = "605"


def format_errors(errors: Any) -> str:
    if not errors:
        return "unknown error"
    if isinstance(errors, list):
        return ", ".join(str(e) for e in errors)
    if isinstance(errors, str):
        return errors
    return json.dumps(errors)


def _payload(res: dict) -> dict:
    """The useful part of a response, wrapped or flat."""
    inner = res.get("response")
    return inner if isinstance(inner, dict) else res


class BrightLocalClient:
    """
    Usage:
        bl = get_brightlocal_client()
        location_id = await bl.find_location("our-location-uuid")
    """

    def __init__(self, http: ResilientClient, api_key: Optional[str] = None):
        self.http = http
        self._api_key = api_key

    @property
    def api_key(self) -> str:
        key = self._api_key or os.getenv("BRIGHTLOCAL_API_KEY")
        if not key:
            raise ValueError("BRIGHTLOCAL_API_KEY must be set")
        return key

    async def _call(self, path: str, method: str, params: Optional[dict[str, str]] = None) -> dict:
        all_params = {"api-key": self.api_key, **(params or {})}
        url = f"{BASE_URL}{path}"

        if method == "get":
            response = await self.http.fetch(method, url, params=all_params)
        else:
            response = await self.http.fetch(
                method,
                url,
                data=all_params,
                headers={"Content-Type": "application/x-www-form-urlencoded"},
            )

        if not response.is_success:
            raise ProviderRequestError(
                f"BrightLocal API {method.upper()} {path} failed ({response.status_code}): {response.text[:300]}",
                status_code=response.status_code,
                body=response.text,
            )
        return response.json()

    # =========================================================================
    # Locations API
    # =========================================================================

    async def find_location(self, reference: str) -> Optional[str]:
        """Find a BrightLocal location whose location-reference is ours."""
        res = await self._call(
            "/v2/clients-and-locations/locations/search",
            "get",
            {"q": reference},
        )
        payload = _payload(res)
        items = payload.get("items") or payload.get("results") or []

        for item in items:
            item_ref = item.get("location_reference") or item.get("location-reference")
            if item_ref == reference:
                location_id = item.get("location_id") or item.get("location-id")
                if location_id:
                    return str(location_id)
        return None

    async def create_location(
        self,
        name: str,
        phone: str,
        city: str,
        region: str,
        postcode: str,
        country: str,
        website: str,
        business_category_id: str,
        address1: Optional[str] = None,
        location_reference: Optional[str] = None,
    ) -> str:
        """Create a BrightLocal location holding the NAP data. Returns its id."""
        params = {
            "name": name,
            "telephone": phone,
            "city": city,
            "region": region,
            "postcode": postcode,
            "country": country,
            "url": website,
            "business-category-id": business_category_id,
        }
        if address1:
            params["address1"] = address1
        if location_reference:
            params["location-reference"] = location_reference

        res = await self._call("/v2/clients-and-locations/locations/", "post", params)
        location_id = _payload(res).get("location-id")

        if res.get("success") is False or not location_id:
            raise ProviderRequestError(f"Failed to create BL location: {format_errors(res.get('errors'))}")
        return str(location_id)

    async def search_business_category(self, category_name: str, country: str = "USA") -> Optional[str]:
        res = await self._call(
            "/v2/clients-and-locations/business-categories",
            "get",
            {"country": country, "q": category_name},
        )
        categories = res.get("response")
        if res.get("success") is False or not isinstance(categories, list) or not categories:
            return None
        return str(categories[0]["id"])

    # =========================================================================
    # Citation Tracker API
    # =========================================================================

    async def find_report(self, location_id: str) -> Optional[str]:
        """Existing CT report for a BrightLocal location, if any."""
        res = await self._call("/v2/ct/get-all", "get", {"location-id": location_id})
        results = _payload(res).get("results")
        if isinstance(results, list) and results:
            return str(results[0]["report_id"])
        return None

    async def create_report(self, location_id: str, business_type: str, primary_location: str) -> str:
        """Create a CT report. primary_location is a ZIP code or city for competitor lookup."""
        if not primary_location:
            raise StructuralError("missing postal code or city for competitor lookup")

        res = await self._call("/v2/ct/add", "post", {
            "location-id": location_id,
            "business-type": business_type,
            "primary-location": primary_location,
        })
        report_id = _payload(res).get("report-id")
        if not report_id:
            raise ProviderRequestError(f"Failed to create CT report: {format_errors(res.get('errors'))}")
        return str(report_id)

    async def run_report(self, report_id: str) -> RunOutcome:
        """
        Start a report scan.

        BrightLocal allows one scan at a time; "already running" is reported
        as a distinct outcome, not an error.
        """
        res = await self._call("/v2/ct/run", "post", {"report-id": report_id})
        status = _payload(res).get("status")

        if status == "running":
            return RunOutcome.STARTED
        if status == "already_running" or "already running" in format_errors(res.get("errors")).lower():
            return RunOutcome.ALREADY_RUNNING
        if res.get("success") is True:
            return RunOutcome.STARTED

        raise ProviderRequestError(f"Failed to run CT report {report_id}: {format_errors(res.get('errors'))}")

    async def get_report(self, report_id: str) -> dict[str, Any]:
        res = await self._call("/v2/ct/get", "get", {"report-id": report_id})
        report = res.get("report") or res.get("response")
        if res.get("success") is False or not report:
            raise ProviderRequestError(f"Failed to get CT report {report_id}: {format_errors(res.get('errors'))}")
        return report

    async def get_results(self, report_id: str) -> list[dict[str, Any]]:
        """All citations for a report: active, then pending, then possible."""
        res = await self._call("/v2/ct/get-results", "get", {"report-id": report_id})
        results = _payload(res).get("results")
        if res.get("success") is False or not isinstance(results, dict):
            raise ProviderRequestError(
                f"Failed to get CT results for {report_id}: {format_errors(res.get('errors'))}"
            )
        return [
            *(results.get("active") or []),
            *(results.get("pending") or []),
            *(results.get("possible") or []),
        ]


def is_configured() -> bool:
    return bool(os.getenv("BRIGHTLOCAL_API_KEY"))


# Singleton instance
_brightlocal_client: Optional[BrightLocalClient] = None


def get_brightlocal_client() -> BrightLocalClient:
    global _brightlocal_client
    if _brightlocal_client is None:
        _brightlocal_client = BrightLocalClient(ResilientClient(label="BRIGHTLOCAL"))
    return _brightlocal_client
