"""
Credential store for the agency's shared provider connection.

One row per provider in agency_integrations. Rows carry a `version` column:
every write is conditional on the version that was read and increments it,
so two invocations refreshing at the same time cannot silently overwrite
each other. A write that matches zero rows is stale and is discarded.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Optional

from .timeutils import parse_datetime, utc_now
from .types import IntegrationStatus

logger = logging.getLogger(__name__)

TABLE = "agency_integrations"

# Connect retries its read-modify-write this many times when it loses a race
_CONNECT_WRITE_ATTEMPTS = 3


@dataclass
class IntegrationCredential:
    """Snapshot of an agency_integrations row."""
    id: str
    provider: str
    status: str
    version: int = 0
    access_token_encrypted: Optional[str] = None
    refresh_token_encrypted: Optional[str] = None
    token_expires_at: Optional[datetime] = None
    account_email: Optional[str] = None
    metadata: dict[str, Any] = field(default_factory=dict)

    @classmethod
    def from_row(cls, row: dict) -> "IntegrationCredential":
        return cls(
            id=row["id"],
            provider=row["provider"],
            status=row.get("status") or IntegrationStatus.NOT_CONNECTED.value,
            version=row.get("version") or 0,
            access_token_encrypted=row.get("access_token_encrypted"),
            refresh_token_encrypted=row.get("refresh_token_encrypted"),
            token_expires_at=parse_datetime(row.get("token_expires_at")),
            account_email=row.get("account_email"),
            metadata=dict(row.get("metadata") or {}),
        )

    @property
    def is_error(self) -> bool:
        return self.status == IntegrationStatus.ERROR.value


class CredentialStore:
    """Versioned reads/writes of one provider's credential row."""

    def __init__(self, client, provider: str = "google"):
        self.client = client
        self.provider = provider

    def load(self) -> Optional[IntegrationCredential]:
        result = (
            self.client.table(TABLE)
            .select("*")
            .eq("provider", self.provider)
            .limit(1)
            .execute()
        )
        if not result.data:
            return None
        return IntegrationCredential.from_row(result.data[0])

    def write(self, credential: IntegrationCredential, changes: dict[str, Any]) -> Optional[IntegrationCredential]:
        """
        Apply changes if the row still has the version we read.

        Returns the updated credential, or None when another writer got there
        first (stale write discarded).
        """
        payload = {
            **changes,
            "version": credential.version + 1,
            "updated_at": utc_now().isoformat(),
        }
        result = (
            self.client.table(TABLE)
            .update(payload)
            .eq("id", credential.id)
            .eq("version", credential.version)
            .execute()
        )
        if not result.data:
            logger.warning(
                f"[CREDENTIALS] Stale write discarded for {self.provider} "
                f"(read version {credential.version})"
            )
            return None
        return IntegrationCredential.from_row(result.data[0])

    def save_connection(
        self,
        access_token_encrypted: str,
        refresh_token_encrypted: Optional[str],
        token_expires_at: datetime,
        account_email: Optional[str],
        scopes: list[str],
        metadata: dict[str, Any],
    ) -> IntegrationCredential:
        """
        Store tokens from a fresh OAuth grant.

        A manual reconnect always resets status to connected and drops any
        previous error detail.
        """
        changes: dict[str, Any] = {
            "status": IntegrationStatus.CONNECTED.value,
            "access_token_encrypted": access_token_encrypted,
            "token_expires_at": token_expires_at.isoformat(),
            "account_email": account_email,
            "scopes": scopes,
        }
        # Google only returns a refresh token on consent; keep the old one otherwise
        if refresh_token_encrypted:
            changes["refresh_token_encrypted"] = refresh_token_encrypted

        for _ in range(_CONNECT_WRITE_ATTEMPTS):
            existing = self.load()
            if existing is None:
                result = self.client.table(TABLE).insert({
                    "provider": self.provider,
                    "version": 1,
                    "metadata": metadata,
                    **changes,
                }).execute()
                return IntegrationCredential.from_row(result.data[0])

            merged = {
                key: value for key, value in existing.metadata.items()
                if key not in ("error", "error_at", "error_detail")
            }
            merged.update(metadata)
            updated = self.write(existing, {**changes, "metadata": merged})
            if updated is not None:
                return updated

        raise RuntimeError(f"Could not store {self.provider} connection: concurrent writes")

    def mark_disconnected(self) -> Optional[IntegrationCredential]:
        """Drop stored tokens and flag the row as not connected."""
        existing = self.load()
        if existing is None:
            return None
        return self.write(existing, {
            "status": IntegrationStatus.NOT_CONNECTED.value,
            "access_token_encrypted": None,
            "refresh_token_encrypted": None,
            "token_expires_at": None,
            "metadata": {
                **existing.metadata,
                "disconnected_at": utc_now().isoformat(),
            },
        })
