"""
HTTP route tests.

Run: cd api && python -m pytest tests/test_routes.py

Dependencies (Supabase clients, admin/cron auth) are overridden so the
routes run against the in-memory fake.
"""

import os
from contextlib import contextmanager
from unittest.mock import AsyncMock, MagicMock, patch

from fastapi.testclient import TestClient

from fake_supabase import FakeSupabase


CRON_HEADERS = {"Authorization": "Bearer cron-secret"}


@contextmanager
def _client(db, admin=True):
    from main import app
    from integrations.core.encryption import TokenCipher, get_token_cipher
    from services.admin_auth import AdminClient, verify_admin_access, verify_cron_or_admin
    from services.supabase import AuthenticatedClient, get_service_client, get_user_client

    admin_client = AdminClient(client=db, user_id="admin-1") if admin else None
    cipher = TokenCipher(TokenCipher.generate_key())

    app.dependency_overrides[get_service_client] = lambda: db
    app.dependency_overrides[get_user_client] = lambda: AuthenticatedClient(client=db, user_id="user-1")
    app.dependency_overrides[verify_admin_access] = lambda: admin_client
    app.dependency_overrides[verify_cron_or_admin] = lambda: admin_client
    app.dependency_overrides[get_token_cipher] = lambda: cipher
    try:
        with patch.dict(os.environ, {"CRON_SECRET": "cron-secret", "BRIGHTLOCAL_API_KEY": "bl-key"}):
            yield TestClient(app)
    finally:
        app.dependency_overrides.clear()


def test_health():
    with _client(FakeSupabase()) as client:
        response = client.get("/health")

    assert response.status_code == 200
    assert response.json()["status"] == "ok"


# =============================================================================
# Test: cron
# =============================================================================

def test_cron_requires_secret():
    with _client(FakeSupabase()) as client:
        missing = client.get("/api/cron/reply-queue")
        wrong = client.get("/api/cron/reply-queue", headers={"Authorization": "Bearer nope"})

    assert missing.status_code == 401
    assert wrong.status_code == 401


def test_reply_queue_credential_failure_is_401():
    from integrations.core.errors import ReconnectRequiredError

    job = AsyncMock(side_effect=ReconnectRequiredError("google refresh token revoked"))
    with _client(FakeSupabase()) as client, patch("routes.cron.run_reply_queue", job):
        response = client.get("/api/cron/reply-queue", headers=CRON_HEADERS)

    assert response.status_code == 401
    assert "requires reconnection" in response.json()["detail"]


def test_reply_queue_returns_summary():
    from integrations.core.types import QueueRunSummary

    job = AsyncMock(return_value=QueueRunSummary(processed=2, confirmed=2))
    with _client(FakeSupabase()) as client, patch("routes.cron.run_reply_queue", job):
        response = client.get("/api/cron/reply-queue", headers=CRON_HEADERS)

    body = response.json()
    assert response.status_code == 200
    assert body["ok"] is True
    assert body["confirmed"] == 2


def test_citation_sync_without_brightlocal_key():
    with _client(FakeSupabase()) as client, patch.dict(os.environ, {"BRIGHTLOCAL_API_KEY": ""}):
        response = client.get("/api/cron/citation-sync", headers=CRON_HEADERS)

    assert response.status_code == 200
    assert response.json() == {"ok": False, "error": "BrightLocal not configured"}


# =============================================================================
# Test: citation audit
# =============================================================================

def test_audit_unknown_locations_is_404():
    with _client(FakeSupabase({"locations": []})) as client:
        response = client.post("/api/citations/audit", json={"location_ids": ["missing"]})

    assert response.status_code == 404


def test_audit_with_nothing_triggered_is_422():
    db = FakeSupabase({"locations": [{
        "id": "loc-1", "name": "No Phone Co", "active": True, "phone": None,
        "city": "Austin", "state": "TX", "brightlocal_location_id": None, "brightlocal_report_id": None,
    }]})

    with _client(db) as client:
        response = client.post("/api/citations/audit", json={"location_ids": ["loc-1"]})

    body = response.json()
    assert response.status_code == 422
    assert body["error"] == "No audits triggered or pulled"
    assert body["failed"] == 1
    assert body["errors"] == ["No Phone Co: missing phone, city, or state"]


def test_audit_not_configured_is_400():
    with _client(FakeSupabase()) as client, patch.dict(os.environ, {"BRIGHTLOCAL_API_KEY": ""}):
        response = client.post("/api/citations/audit", json={})

    assert response.status_code == 400


# =============================================================================
# Test: review reply
# =============================================================================

def _review_db():
    return FakeSupabase({
        "locations": [{"id": "loc-1"}],
        "reviews": [{
            "id": "rev-1", "location_id": "loc-1", "platform": "google",
            "platform_metadata": {"resource_name": "accounts/1/locations/2/reviews/3"}, "status": "new",
        }],
    })


def test_reply_queued_on_google_failure_is_202():
    google = MagicMock()
    google.reply_to_review = AsyncMock(side_effect=RuntimeError("503"))
    db = _review_db()

    with _client(db) as client, patch("services.review_replies.get_google_client", return_value=google):
        response = client.post("/api/reviews/rev-1/reply", json={"reply_body": "Thank you!"})

    assert response.status_code == 202
    assert response.json()["posted_via"] == "queued"
    assert len(db.rows("review_reply_queue")) == 1


def test_reply_posted_directly():
    google = MagicMock()
    google.reply_to_review = AsyncMock(return_value={"comment": "Thank you!"})
    db = _review_db()

    with _client(db) as client, patch("services.review_replies.get_google_client", return_value=google):
        response = client.post("/api/reviews/rev-1/reply", json={"reply_body": "Thank you!"})

    assert response.status_code == 200
    assert response.json() == {"ok": True, "posted_via": "api"}
    assert db.row("reviews", "rev-1")["replied_by"] == "user-1"


def test_reply_validation():
    with _client(_review_db()) as client:
        empty = client.post("/api/reviews/rev-1/reply", json={"reply_body": "   "})
        missing = client.post("/api/reviews/nope/reply", json={"reply_body": "Hi"})

    assert empty.status_code == 400
    assert missing.status_code == 404


# =============================================================================
# Test: Google integration
# =============================================================================

def test_status_when_not_connected():
    with _client(FakeSupabase()) as client:
        response = client.get("/api/integrations/google/status")

    assert response.status_code == 200
    assert response.json()["connected"] is False
    assert response.json()["status"] == "not_connected"


def test_callback_rejects_state_mismatch():
    with _client(FakeSupabase()) as client:
        response = client.get(
            "/api/integrations/google/callback",
            params={"code": "abc", "state": "forged"},
            follow_redirects=False,
        )

    assert response.status_code in (302, 307)
    assert response.headers["location"].endswith("error=invalid_state")


def test_disconnect_when_never_connected_is_404():
    with _client(FakeSupabase()) as client:
        response = client.post("/api/integrations/google/disconnect")

    assert response.status_code == 404
