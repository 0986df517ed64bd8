"""
Supabase clients and request authentication.

- get_service_client(): service-role client used by jobs and routes (bypasses RLS)
- get_user_client(): per-request client carrying the caller's session JWT, so
  RLS decides what the caller can see
- verify_cron_secret(): shared-secret check for scheduler-only endpoints
"""
from __future__ import annotations

import os
import json
import base64
import hmac
from functools import lru_cache
from typing import Annotated, Optional
from dataclasses import dataclass

from supabase import create_client, Client
from fastapi import Depends, HTTPException, Header


def _env(name: str) -> str:
    value = os.environ.get(name)
    if not value:
        raise ValueError(f"{name} must be set")
    return value


# =============================================================================
# Session tokens
# =============================================================================

def decode_jwt_payload(token: str) -> dict:
    """
    Read the claims of a session JWT.

    The signature is not checked here; every query made with the token is
    verified by Supabase itself.
    """
    segments = token.split(".")
    if len(segments) != 3:
        raise ValueError("Malformed session token")

    claims = segments[1] + "=" * (-len(segments[1]) % 4)
    try:
        return json.loads(base64.urlsafe_b64decode(claims))
    except (ValueError, TypeError) as e:
        raise ValueError(f"Unreadable session token: {e}")


def bearer_token(authorization: Optional[str]) -> Optional[str]:
    scheme, _, token = (authorization or "").partition(" ")
    if scheme != "Bearer" or not token:
        return None
    return token


@dataclass
class AuthenticatedClient:
    """A caller's session: RLS-scoped client plus identity claims."""
    client: Client
    user_id: str
    email: Optional[str] = None


# =============================================================================
# Clients
# =============================================================================

@lru_cache()
def get_supabase_url() -> str:
    return _env("SUPABASE_URL")


@lru_cache()
def get_service_client() -> Client:
    return create_client(get_supabase_url(), _env("SUPABASE_SERVICE_KEY"))


def authenticate_session(token: str) -> AuthenticatedClient:
    """Scope a fresh anon-key client to the caller's session."""
    try:
        claims = decode_jwt_payload(token)
    except ValueError as e:
        raise HTTPException(status_code=401, detail=str(e))

    if not claims.get("sub"):
        raise HTTPException(status_code=401, detail="Session token has no subject")

    session_client = create_client(get_supabase_url(), _env("SUPABASE_ANON_KEY"))
    session_client.postgrest.auth(token)

    return AuthenticatedClient(client=session_client, user_id=claims["sub"], email=claims.get("email"))


def get_user_client(authorization: Optional[str] = Header(None)) -> AuthenticatedClient:
    token = bearer_token(authorization)
    if token is None:
        raise HTTPException(status_code=401, detail="Missing or invalid Authorization header")
    return authenticate_session(token)


# =============================================================================
# Scheduler authentication
# =============================================================================

def is_cron_request(authorization: Optional[str]) -> bool:
    """True when the header carries the shared scheduler secret."""
    secret = os.environ.get("CRON_SECRET")
    token = bearer_token(authorization)
    if not secret or not token:
        return False
    return hmac.compare_digest(token, secret)


def verify_cron_secret(authorization: Optional[str] = Header(None)) -> None:
    if not os.environ.get("CRON_SECRET"):
        raise HTTPException(status_code=500, detail="CRON_SECRET not configured")
    if not is_cron_request(authorization):
        raise HTTPException(status_code=401, detail="Unauthorized")


UserClient = Annotated[AuthenticatedClient, Depends(get_user_client)]
ServiceClient = Annotated[Client, Depends(get_service_client)]
CronAuth = Annotated[None, Depends(verify_cron_secret)]
