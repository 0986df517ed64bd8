"""
Integration type definitions.

Shared enums and models for credentials, queue entries and audit runs.
"""

from dataclasses import dataclass, field
from enum import Enum
from typing import Optional

from pydantic import BaseModel


class IntegrationProvider(str, Enum):
    """Supported integration providers."""
    GOOGLE = "google"
    BRIGHTLOCAL = "brightlocal"  # API key, no credential row


class IntegrationStatus(str, Enum):
    """Status of the agency's shared connection to a provider."""
    CONNECTED = "connected"
    ERROR = "error"
    NOT_CONNECTED = "not_connected"


class CredentialError(str, Enum):
    """Values stored in agency_integrations.metadata.error."""
    REFRESH_TOKEN_REVOKED = "refresh_token_revoked"  # terminal
    REFRESH_FAILED = "refresh_failed"  # transient, recoverable


class QueueStatus(str, Enum):
    """Queue entry lifecycle: pending -> sending -> confirmed | pending | failed."""
    PENDING = "pending"
    SENDING = "sending"
    CONFIRMED = "confirmed"
    FAILED = "failed"


class ReplySource(str, Enum):
    MANUAL = "manual"
    AI_AUTOPILOT = "ai_autopilot"


class RunStatus(str, Enum):
    """Citation audit run status."""
    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    ERROR = "error"


ACTIVE_RUN_STATUSES = [RunStatus.PENDING.value, RunStatus.RUNNING.value]


class RunOutcome(str, Enum):
    """Result of asking the provider to start a report run."""
    STARTED = "started"
    ALREADY_RUNNING = "already_running"


class ConnectionStatus(BaseModel):
    """User-facing connection status (no tokens)."""
    connected: bool
    status: str
    email: Optional[str] = None
    error: Optional[str] = None
    token_expires_at: Optional[str] = None
    last_refreshed_at: Optional[str] = None


@dataclass
class QueueRunSummary:
    """Aggregate outcome of one queue processor invocation."""
    processed: int = 0
    confirmed: int = 0
    failed: int = 0
    retried: int = 0
    skipped: int = 0
    recovered: int = 0
    errors: list[str] = field(default_factory=list)

    def to_dict(self) -> dict:
        return {
            "processed": self.processed,
            "confirmed": self.confirmed,
            "failed": self.failed,
            "retried": self.retried,
            "skipped": self.skipped,
            "recovered": self.recovered,
            "errors": list(self.errors),
        }


@dataclass
class AuditBatchResult:
    """Aggregate outcome of a citation audit provisioning batch."""
    created: int = 0
    triggered: int = 0
    pulled: int = 0
    in_progress: int = 0
    failed: int = 0
    errors: list[str] = field(default_factory=list)

    def to_dict(self) -> dict:
        return {
            "created": self.created,
            "triggered": self.triggered,
            "pulled": self.pulled,
            "in_progress": self.in_progress,
            "failed": self.failed,
            "errors": list(self.errors),
        }
