"""
Resilient client and provider client tests.

Run: cd api && python -m pytest tests/test_client.py

Tests validate:
1. Repeated 503s: 1 + max_retries attempts with non-decreasing backoff
2. 401 triggers exactly one refresh and one resend
3. Non-retryable statuses are returned unmodified
4. Transport errors surface as TransientIntegrationError after retries
5. BrightLocal response shapes (wrapped and flat) and "already running"
6. Google client raises ProviderRequestError on non-2xx
"""

import asyncio
from unittest.mock import AsyncMock, MagicMock, patch

import httpx


def _token_manager(token="token-1", refreshed="token-2"):
    manager = MagicMock()
    manager.get_valid_access_token = AsyncMock(return_value=token)
    manager.force_refresh = AsyncMock(return_value=refreshed)
    return manager


def _client(handler, token_manager=None, **kwargs):
    from integrations.core.client import ResilientClient

    return ResilientClient(token_manager=token_manager, transport=httpx.MockTransport(handler), **kwargs)


# =============================================================================
# Test: backoff
# =============================================================================

def test_repeated_503_exhausts_retries_with_monotonic_backoff():
    from integrations.core.client import DEFAULT_MAX_RETRIES

    calls = []

    def handler(request):
        calls.append(request)
        return httpx.Response(503)

    client = _client(handler)

    with patch("integrations.core.client.asyncio.sleep", new=AsyncMock()) as sleep:
        response = asyncio.run(client.fetch("get", "https://provider.test/resource"))

    delays = [c.args[0] for c in sleep.await_args_list]
    assert response.status_code == 503, "Last response is returned, not raised"
    assert len(calls) == 1 + DEFAULT_MAX_RETRIES, f"Expected {1 + DEFAULT_MAX_RETRIES} attempts, got {len(calls)}"
    assert delays == sorted(delays), f"Backoff must be non-decreasing: {delays}"
    assert delays == [1, 2]


def test_backoff_schedule_is_non_decreasing():
    from integrations.core.client import ResilientClient

    delays = [ResilientClient.backoff_for(i) for i in range(6)]
    assert delays == sorted(delays)
    assert delays[:3] == [1, 2, 4]


def test_429_then_success_returns_success():
    responses = [httpx.Response(429), httpx.Response(200, json={"ok": True})]
    client = _client(lambda request: responses.pop(0))

    with patch("integrations.core.client.asyncio.sleep", new=AsyncMock()):
        response = asyncio.run(client.fetch("get", "https://provider.test/resource"))

    assert response.status_code == 200
    assert response.json() == {"ok": True}


def test_other_statuses_returned_without_retry():
    calls = []

    def handler(request):
        calls.append(request)
        return httpx.Response(404, json={"error": "not found"})

    response = asyncio.run(_client(handler).fetch("get", "https://provider.test/missing"))

    assert response.status_code == 404
    assert len(calls) == 1


def test_transport_errors_raise_transient_after_retries():
    from integrations.core.errors import TransientIntegrationError

    calls = []

    def handler(request):
        calls.append(request)
        raise httpx.ConnectError("connection refused", request=request)

    client = _client(handler, max_retries=2)

    with patch("integrations.core.client.asyncio.sleep", new=AsyncMock()):
        try:
            asyncio.run(client.fetch("post", "https://provider.test/resource"))
            assert False, "Expected TransientIntegrationError"
        except TransientIntegrationError as e:
            assert e.code == "transient"

    assert len(calls) == 3


# =============================================================================
# Test: auth expiry
# =============================================================================

def test_401_refreshes_once_and_resends():
    seen_auth = []

    def handler(request):
        seen_auth.append(request.headers.get("Authorization"))
        if request.headers.get("Authorization") == "Bearer token-1":
            return httpx.Response(401)
        return httpx.Response(200, json={"name": "ok"})

    manager = _token_manager()
    response = asyncio.run(_client(handler, token_manager=manager).fetch("put", "https://provider.test/reply", json={}))

    assert response.status_code == 200
    assert seen_auth == ["Bearer token-1", "Bearer token-2"]
    assert manager.force_refresh.await_count == 1


def test_second_401_is_returned_not_looped():
    calls = []

    def handler(request):
        calls.append(request)
        return httpx.Response(401)

    manager = _token_manager()
    response = asyncio.run(_client(handler, token_manager=manager).fetch("get", "https://provider.test/x"))

    assert response.status_code == 401
    assert len(calls) == 2, f"Expected original + one resend, got {len(calls)}"
    assert manager.force_refresh.await_count == 1


def test_credential_errors_propagate():
    from integrations.core.errors import ReconnectRequiredError

    manager = _token_manager()
    manager.get_valid_access_token = AsyncMock(side_effect=ReconnectRequiredError("revoked"))
    client = _client(lambda request: httpx.Response(200), token_manager=manager)

    try:
        asyncio.run(client.fetch("get", "https://provider.test/x"))
        assert False, "Expected ReconnectRequiredError"
    except ReconnectRequiredError:
        pass


# =============================================================================
# Test: provider clients
# =============================================================================

def _brightlocal(handler):
    from integrations.core.brightlocal_client import BrightLocalClient

    return BrightLocalClient(_client(handler, label="BRIGHTLOCAL"), api_key="bl-key")


def test_brightlocal_sends_api_key_as_query_or_form():
    requests = []

    def handler(request):
        requests.append(request)
        if request.method == "GET":
            return httpx.Response(200, json={"success": True, "response": {"results": [{"report_id": 77}]}})
        return httpx.Response(200, json={"success": True, "response": {"report-id": 91}})

    bl = _brightlocal(handler)
    existing = asyncio.run(bl.find_report("bl-loc-1"))
    created = asyncio.run(bl.create_report("bl-loc-1", "Dentist", "78701"))

    assert existing == "77"
    assert created == "91"
    assert requests[0].url.params["api-key"] == "bl-key"
    assert requests[0].url.params["location-id"] == "bl-loc-1"
    assert b"api-key=bl-key" in requests[1].content
    assert b"primary-location=78701" in requests[1].content


def test_brightlocal_accepts_flat_report_id():
    bl = _brightlocal(lambda request: httpx.Response(200, json={"success": True, "report-id": "55"}))
    assert asyncio.run(bl.create_report("bl-loc-1", "Dentist", "Austin")) == "55"


def test_brightlocal_create_report_requires_primary_location():
    from integrations.core.errors import StructuralError

    bl = _brightlocal(lambda request: httpx.Response(200, json={}))
    try:
        asyncio.run(bl.create_report("bl-loc-1", "Dentist", ""))
        assert False, "Expected StructuralError"
    except StructuralError as e:
        assert "postal code or city" in e.message


def test_brightlocal_run_report_outcomes():
    from integrations.core.errors import ProviderRequestError
    from integrations.core.types import RunOutcome

    running = _brightlocal(lambda r: httpx.Response(200, json={"success": True, "response": {"status": "running"}}))
    busy = _brightlocal(lambda r: httpx.Response(200, json={"success": False, "errors": {"status": "already_running"}, "response": {"status": "already_running"}}))
    broken = _brightlocal(lambda r: httpx.Response(200, json={"success": False, "errors": ["Invalid report-id"]}))

    assert asyncio.run(running.run_report("r1")) == RunOutcome.STARTED
    assert asyncio.run(busy.run_report("r1")) == RunOutcome.ALREADY_RUNNING

    try:
        asyncio.run(broken.run_report("r1"))
        assert False, "Expected ProviderRequestError"
    except ProviderRequestError as e:
        assert "Invalid report-id" in e.message


def test_brightlocal_find_location_matches_reference():
    payload = {
        "success": True,
        "response": {"items": [
            {"location_id": 1, "location_reference": "other"},
            {"location_id": 2, "location_reference": "loc-uuid"},
        ]},
    }
    bl = _brightlocal(lambda r: httpx.Response(200, json=payload))

    assert asyncio.run(bl.find_location("loc-uuid")) == "2"
    assert asyncio.run(bl.find_location("missing")) is None


def test_brightlocal_results_combine_all_buckets():
    payload = {"success": True, "results": {
        "active": [{"source": "yelp"}],
        "pending": [{"source": "bing"}],
        "possible": [{"source": "foursquare"}],
    }}
    bl = _brightlocal(lambda r: httpx.Response(200, json=payload))

    sources = [c["source"] for c in asyncio.run(bl.get_results("r1"))]
    assert sources == ["yelp", "bing", "foursquare"]


def test_google_client_raises_on_error_status():
    from integrations.core.errors import ProviderRequestError
    from integrations.core.google_client import GoogleBusinessClient

    google = GoogleBusinessClient(_client(lambda r: httpx.Response(404, text="Requested entity was not found."), _token_manager()))

    try:
        asyncio.run(google.reply_to_review("accounts/1/locations/2/reviews/3", "Thanks!"))
        assert False, "Expected ProviderRequestError"
    except ProviderRequestError as e:
        assert e.status_code == 404


def test_google_client_reply_puts_comment():
    requests = []

    def handler(request):
        requests.append(request)
        return httpx.Response(200, json={"comment": "Thanks!"})

    from integrations.core.google_client import GoogleBusinessClient

    google = GoogleBusinessClient(_client(handler, _token_manager()))
    result = asyncio.run(google.reply_to_review("accounts/1/locations/2/reviews/3", "Thanks!"))

    assert result == {"comment": "Thanks!"}
    assert requests[0].method == "PUT"
    assert requests[0].url.path == "/v4/accounts/1/locations/2/reviews/3/reply"
