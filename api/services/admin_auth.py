"""
Agency admin authentication and authorization.

An agency admin is any user with an org_members row flagged
is_agency_admin. Some endpoints are also called by the scheduler, which
authenticates with the shared CRON_SECRET instead of a session.
"""
from __future__ import annotations

from typing import Annotated, Optional
from dataclasses import dataclass

from supabase import Client
from fastapi import Depends, HTTPException, Header

from services.supabase import (
    authenticate_session,
    bearer_token,
    get_service_client,
    is_cron_request,
)


def is_agency_admin(client: Client, user_id: str) -> bool:
    result = (
        client.table("org_members")
        .select("is_agency_admin")
        .eq("user_id", user_id)
        .eq("is_agency_admin", True)
        .limit(1)
        .execute()
    )
    return bool(result.data)


@dataclass
class AdminClient:
    """Admin-authenticated request with service-level database access."""
    client: Client
    user_id: str
    email: Optional[str] = None


def _require_admin(authorization: Optional[str]) -> AdminClient:
    token = bearer_token(authorization)
    if not token:
        raise HTTPException(status_code=401, detail="Missing or invalid Authorization header")

    session = authenticate_session(token)
    service_client = get_service_client()

    if not is_agency_admin(service_client, session.user_id):
        raise HTTPException(status_code=403, detail="Agency admin required")

    return AdminClient(client=service_client, user_id=session.user_id, email=session.email)


def verify_admin_access(authorization: Optional[str] = Header(None)) -> AdminClient:
    """FastAPI dependency for agency-admin endpoints."""
    return _require_admin(authorization)


def verify_cron_or_admin(authorization: Optional[str] = Header(None)) -> Optional[AdminClient]:
    """
    Scheduler secret or agency-admin session.
    Returns None for scheduler calls.
    """
    if is_cron_request(authorization):
        return None
    return _require_admin(authorization)


# Type alias for dependency injection
AdminAuth = Annotated[AdminClient, Depends(verify_admin_access)]
CronOrAdminAuth = Annotated[Optional[AdminClient], Depends(verify_cron_or_admin)]
