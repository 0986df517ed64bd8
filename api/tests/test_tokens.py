"""
Token lifecycle tests.

Run: cd api && python -m pytest tests/test_tokens.py

Tests validate:
1. A token with more than 5 minutes left is returned with zero network calls
2. Expired tokens are refreshed and the outcome persisted (version bumped)
3. invalid_grant is terminal: status=error once, no further refresh attempts
4. Transient refresh failures retry, then persist refresh_failed
5. A refresh_failed row gets one optimistic recovery refresh
6. Stale (concurrent) credential writes are discarded
"""

import asyncio
from datetime import timedelta
from unittest.mock import AsyncMock, patch

import httpx

from fake_supabase import FakeSupabase


def _setup(status="connected", expires_in=timedelta(hours=1), metadata=None, refresh_token="refresh-1"):
    from integrations.core.credentials import CredentialStore
    from integrations.core.encryption import TokenCipher
    from integrations.core.timeutils import utc_now

    cipher = TokenCipher(TokenCipher.generate_key())
    db = FakeSupabase({
        "agency_integrations": [{
            "id": "cred-1",
            "provider": "google",
            "status": status,
            "version": 1,
            "account_email": "agency@example.com",
            "access_token_encrypted": cipher.encrypt("old-access"),
            "refresh_token_encrypted": cipher.encrypt(refresh_token) if refresh_token else None,
            "token_expires_at": (utc_now() + expires_in).isoformat(),
            "metadata": metadata or {},
        }]
    })
    return db, CredentialStore(db, provider="google"), cipher


def _manager(store, cipher, handler):
    from integrations.core.oauth import OAUTH_CONFIGS
    from integrations.core.tokens import TokenManager

    return TokenManager(store, cipher, OAUTH_CONFIGS["google"], transport=httpx.MockTransport(handler))


def _recording(*responses):
    """MockTransport handler returning the given responses in order."""
    requests = []
    queue = list(responses)

    def handler(request):
        requests.append(request)
        return queue.pop(0) if len(queue) > 1 else queue[0]

    return handler, requests


# =============================================================================
# Test: caching
# =============================================================================

def test_fresh_token_makes_no_network_call():
    db, store, cipher = _setup(expires_in=timedelta(minutes=30))
    handler, requests = _recording(httpx.Response(500))
    manager = _manager(store, cipher, handler)

    token = asyncio.run(manager.get_valid_access_token())

    assert token == "old-access", f"Expected cached token, got {token}"
    assert requests == [], f"Expected no refresh calls, got {len(requests)}"
    assert db.writes("agency_integrations") == [], "Cached read must not write"


def test_token_inside_expiry_buffer_is_refreshed():
    db, store, cipher = _setup(expires_in=timedelta(minutes=4))
    handler, requests = _recording(
        httpx.Response(200, json={"access_token": "new-access", "expires_in": 3600})
    )
    manager = _manager(store, cipher, handler)

    token = asyncio.run(manager.get_valid_access_token())

    assert token == "new-access"
    assert len(requests) == 1
    assert b"grant_type=refresh_token" in requests[0].content


# =============================================================================
# Test: refresh success
# =============================================================================

def test_refresh_success_persists_token_and_clears_error():
    db, store, cipher = _setup(
        expires_in=timedelta(minutes=-10),
        metadata={"account_name": "Agency"},
    )
    handler, _ = _recording(httpx.Response(200, json={
        "access_token": "new-access",
        "expires_in": 3600,
        "refresh_token": "refresh-2",
    }))
    manager = _manager(store, cipher, handler)

    token = asyncio.run(manager.get_valid_access_token())

    row = db.row("agency_integrations", "cred-1")
    assert token == "new-access"
    assert row["status"] == "connected"
    assert row["version"] == 2, f"Expected version bump, got {row['version']}"
    assert cipher.decrypt(row["access_token_encrypted"]) == "new-access"
    assert cipher.decrypt(row["refresh_token_encrypted"]) == "refresh-2", "Rotated refresh token must be stored"
    assert "last_refreshed_at" in row["metadata"]
    assert row["metadata"]["account_name"] == "Agency"


def test_refresh_failed_row_gets_recovery_attempt():
    db, store, cipher = _setup(
        status="error",
        metadata={"error": "refresh_failed", "error_detail": "timeout", "error_at": "2026-01-01T00:00:00+00:00"},
    )
    handler, requests = _recording(httpx.Response(200, json={"access_token": "recovered", "expires_in": 3600}))
    manager = _manager(store, cipher, handler)

    token = asyncio.run(manager.get_valid_access_token())

    row = db.row("agency_integrations", "cred-1")
    assert token == "recovered"
    assert len(requests) == 1
    assert row["status"] == "connected"
    for key in ("error", "error_at", "error_detail"):
        assert key not in row["metadata"], f"{key} should be cleared after recovery"


# =============================================================================
# Test: terminal failure
# =============================================================================

def test_invalid_grant_is_terminal_and_idempotent():
    from integrations.core.errors import ReconnectRequiredError

    db, store, cipher = _setup(expires_in=timedelta(minutes=-1))
    handler, requests = _recording(
        httpx.Response(400, json={"error": "invalid_grant", "error_description": "Token has been expired or revoked."})
    )
    manager = _manager(store, cipher, handler)

    for _ in range(3):
        try:
            asyncio.run(manager.get_valid_access_token())
            assert False, "Expected ReconnectRequiredError"
        except ReconnectRequiredError:
            pass

    row = db.row("agency_integrations", "cred-1")
    assert row["status"] == "error"
    assert row["metadata"]["error"] == "refresh_token_revoked"
    assert "invalid_grant" in row["metadata"]["error_detail"]
    assert len(requests) == 1, f"invalid_grant must not be retried, saw {len(requests)} calls"
    assert len(db.writes("agency_integrations", "update")) == 1, "Terminal state written exactly once"


def test_missing_credential_raises_not_connected():
    from integrations.core.credentials import CredentialStore
    from integrations.core.encryption import TokenCipher
    from integrations.core.errors import NotConnectedError

    handler, requests = _recording(httpx.Response(200, json={}))
    manager = _manager(CredentialStore(FakeSupabase(), "google"), TokenCipher(TokenCipher.generate_key()), handler)

    try:
        asyncio.run(manager.get_valid_access_token())
        assert False, "Expected NotConnectedError"
    except NotConnectedError as e:
        assert e.code == "not_connected"
    assert requests == []


def test_missing_refresh_token_requires_reconnect():
    from integrations.core.errors import ReconnectRequiredError

    _, store, cipher = _setup(refresh_token=None)
    handler, _ = _recording(httpx.Response(200, json={}))
    manager = _manager(store, cipher, handler)

    try:
        asyncio.run(manager.get_valid_access_token())
        assert False, "Expected ReconnectRequiredError"
    except ReconnectRequiredError:
        pass


# =============================================================================
# Test: transient failure
# =============================================================================

def test_transient_failures_retry_then_mark_refresh_failed():
    from integrations.core.errors import TransientIntegrationError
    from integrations.core.tokens import REFRESH_ATTEMPTS

    db, store, cipher = _setup(expires_in=timedelta(minutes=-1))
    handler, requests = _recording(httpx.Response(503, json={"error": "backend_error"}))
    manager = _manager(store, cipher, handler)

    with patch("integrations.core.tokens.asyncio.sleep", new=AsyncMock()) as sleep:
        try:
            asyncio.run(manager.get_valid_access_token())
            assert False, "Expected TransientIntegrationError"
        except TransientIntegrationError:
            pass

    row = db.row("agency_integrations", "cred-1")
    assert len(requests) == REFRESH_ATTEMPTS
    assert sleep.await_count == REFRESH_ATTEMPTS - 1
    assert row["status"] == "error"
    assert row["metadata"]["error"] == "refresh_failed"


# =============================================================================
# Test: optimistic concurrency
# =============================================================================

def test_stale_credential_write_is_discarded():
    db, store, _ = _setup()

    first = store.load()
    second = store.load()

    assert store.write(first, {"status": "error"}) is not None
    assert store.write(second, {"status": "connected"}) is None, "Stale version must not overwrite"

    row = db.row("agency_integrations", "cred-1")
    assert row["status"] == "error"
    assert row["version"] == 2


def test_failed_refresh_after_concurrent_success_uses_winner_token():
    from integrations.core.timeutils import utc_now

    db, store, cipher = _setup(expires_in=timedelta(minutes=-1))

    def handler(request):
        # Another invocation refreshes while this one is waiting on Google
        row = db.row("agency_integrations", "cred-1")
        row.update({
            "version": row["version"] + 1,
            "access_token_encrypted": cipher.encrypt("winner-token"),
            "token_expires_at": (utc_now() + timedelta(hours=1)).isoformat(),
        })
        return httpx.Response(400, json={"error": "invalid_grant"})

    manager = _manager(store, cipher, handler)
    token = asyncio.run(manager.get_valid_access_token())

    row = db.row("agency_integrations", "cred-1")
    assert token == "winner-token"
    assert row["status"] == "connected", "Stale failure write must not flag the row"


def test_save_connection_resets_error_state():
    db, store, cipher = _setup(status="error", metadata={"error": "refresh_token_revoked", "account_name": "Old"})

    from integrations.core.timeutils import utc_now

    credential = store.save_connection(
        access_token_encrypted=cipher.encrypt("a"),
        refresh_token_encrypted=cipher.encrypt("r"),
        token_expires_at=utc_now() + timedelta(hours=1),
        account_email="new@example.com",
        scopes=["https://www.googleapis.com/auth/business.manage"],
        metadata={"account_name": "New"},
    )

    assert credential.status == "connected"
    assert credential.account_email == "new@example.com"
    assert "error" not in credential.metadata
    assert credential.metadata["account_name"] == "New"
    assert len(db.rows("agency_integrations")) == 1
