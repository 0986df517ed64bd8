"""
Durable work queue processor.

Deferred, side-effecting provider calls (review replies, profile posts) are
rows in a queue table. A scheduled invocation drains a small batch:

    pending -> sending -> confirmed
                       -> pending   (failed, attempts left)
                       -> failed    (failed at max_attempts, or precondition missing)

Overlapping invocations are possible, so nothing is trusted from the
initial select:

- Claim is one conditional update: status=sending, attempts+1, claimed_at=now
  WHERE id=? AND status='pending' AND attempts=<read value>. Zero rows means
  another invocation owns the entry.
- Entries left in `sending` past the lease (crashed or timed-out invocation)
  are released back to pending at the start of every run.
- An entry that has been attempted before may already have reached the
  provider (ambiguous timeout, crash after the call). The handler checks
  remote state first and confirms without calling out when the effect exists.

A credential failure stops the batch and propagates: every remaining entry
would fail the same way and only a human reconnect can fix it.
"""

import logging
from abc import ABC, abstractmethod
from datetime import timedelta
from typing import Any, Optional

from integrations.core.errors import CREDENTIAL_ERRORS
from integrations.core.timeutils import utc_now
from integrations.core.types import QueueRunSummary, QueueStatus

logger = logging.getLogger(__name__)

DEFAULT_BATCH_SIZE = 20
DEFAULT_MAX_ATTEMPTS = 5
DEFAULT_LEASE = timedelta(minutes=10)


class QueueHandler(ABC):
    """
    What a queue delivers. The processor owns state transitions; a handler
    only knows its parent records and how to talk to the provider.
    """

    table: str
    parent_field: str
    label: str = "QUEUE"
    max_attempts: int = DEFAULT_MAX_ATTEMPTS

    @abstractmethod
    def load_parents(self, client, entries: list[dict]) -> dict[str, dict]:
        """Batch-load parent records keyed by the entry's parent_field value."""
        pass

    @abstractmethod
    def missing_reference(self, entry: dict, parent: Optional[dict]) -> Optional[str]:
        """Reason the entry can never be delivered, or None."""
        pass

    @abstractmethod
    async def verify_delivered(self, entry: dict, parent: dict) -> Optional[dict]:
        """Return the remote resource if the side effect already exists."""
        pass

    @abstractmethod
    async def deliver(self, entry: dict, parent: dict) -> dict:
        """Perform the provider call. Raises on failure."""
        pass

    def confirmation_fields(self, entry: dict, result: dict) -> dict[str, Any]:
        """Extra columns written on the queue row when it is confirmed."""
        return {}

    @abstractmethod
    def on_confirmed(self, client, entry: dict, parent: dict, result: dict) -> None:
        """Propagate the delivered effect to the parent record."""
        pass


class WorkQueueProcessor:
    """
    Usage:
        processor = WorkQueueProcessor(get_service_client(), ReviewReplyHandler())
        summary = await processor.run()
    """

    def __init__(
        self,
        client,
        handler: QueueHandler,
        batch_size: int = DEFAULT_BATCH_SIZE,
        lease: timedelta = DEFAULT_LEASE,
    ):
        self.client = client
        self.handler = handler
        self.batch_size = batch_size
        self.lease = lease

    @property
    def _table(self):
        return self.client.table(self.handler.table)

    @property
    def _tag(self) -> str:
        return f"[{self.handler.label}]"

    async def run(self) -> QueueRunSummary:
        summary = QueueRunSummary()
        summary.recovered = self.recover_expired_claims()

        entries = self.fetch_ready()
        summary.processed = len(entries)
        if not entries:
            return summary

        parents = self.handler.load_parents(self.client, entries)

        for entry in entries:
            parent = parents.get(entry.get(self.handler.parent_field))
            await self._process(entry, parent, summary)

        logger.info(
            f"{self._tag} processed={summary.processed} confirmed={summary.confirmed} "
            f"failed={summary.failed} retried={summary.retried} skipped={summary.skipped}"
        )
        return summary

    # =========================================================================
    # Queue reads
    # =========================================================================

    def fetch_ready(self) -> list[dict]:
        """Pending entries due now, oldest first."""
        now = utc_now().isoformat()
        result = (
            self._table
            .select("*")
            .eq("status", QueueStatus.PENDING.value)
            .or_(f"scheduled_for.is.null,scheduled_for.lte.{now}")
            .lt("attempts", self.handler.max_attempts)
            .order("created_at")
            .limit(self.batch_size)
            .execute()
        )
        return result.data or []

    def recover_expired_claims(self) -> int:
        """Release `sending` entries whose claim outlived the lease."""
        cutoff = (utc_now() - self.lease).isoformat()
        result = (
            self._table
            .select("id, attempts")
            .eq("status", QueueStatus.SENDING.value)
            .or_(f"claimed_at.is.null,claimed_at.lt.{cutoff}")
            .execute()
        )

        recovered = 0
        for entry in result.data or []:
            exhausted = entry["attempts"] >= self.handler.max_attempts
            released = (
                self._table
                .update({
                    "status": QueueStatus.FAILED.value if exhausted else QueueStatus.PENDING.value,
                    "last_error": "Claim expired before the send was confirmed",
                    "claimed_at": None,
                })
                .eq("id", entry["id"])
                .eq("status", QueueStatus.SENDING.value)
                .eq("attempts", entry["attempts"])
                .execute()
            )
            if released.data:
                recovered += 1
                logger.warning(f"{self._tag} Recovered expired claim on {entry['id']} (attempts={entry['attempts']})")
        return recovered

    # =========================================================================
    # Per-entry state machine
    # =========================================================================

    async def _process(self, entry: dict, parent: Optional[dict], summary: QueueRunSummary) -> None:
        entry_id = entry["id"]

        reason = self.handler.missing_reference(entry, parent)
        if reason:
            # Structurally impossible; no attempt consumed
            failed = (
                self._table
                .update({"status": QueueStatus.FAILED.value, "last_error": reason})
                .eq("id", entry_id)
                .eq("status", QueueStatus.PENDING.value)
                .execute()
            )
            if failed.data:
                summary.failed += 1
                summary.errors.append(f"{entry_id}: {reason}")
                logger.warning(f"{self._tag} {entry_id} failed precondition: {reason}")
            else:
                summary.skipped += 1
            return

        claimed = self.claim(entry)
        if claimed is None:
            summary.skipped += 1
            logger.info(f"{self._tag} {entry_id} claimed by another invocation, skipping")
            return

        try:
            result = None
            if entry["attempts"] > 0:
                result = await self.handler.verify_delivered(claimed, parent)
                if result is not None:
                    logger.info(f"{self._tag} {entry_id} already delivered by an earlier attempt")
            if result is None:
                result = await self.handler.deliver(claimed, parent)
        except CREDENTIAL_ERRORS as e:
            self._record_failure(claimed, str(e), summary)
            logger.error(f"{self._tag} Credential failure, stopping batch: {e}")
            raise
        except Exception as e:
            self._record_failure(claimed, str(e) or type(e).__name__, summary)
            return

        self._confirm(claimed, parent, result, summary)

    def claim(self, entry: dict) -> Optional[dict]:
        """Conditionally move pending -> sending. Returns the claimed row or None."""
        result = (
            self._table
            .update({
                "status": QueueStatus.SENDING.value,
                "attempts": entry["attempts"] + 1,
                "claimed_at": utc_now().isoformat(),
            })
            .eq("id", entry["id"])
            .eq("status", QueueStatus.PENDING.value)
            .eq("attempts", entry["attempts"])
            .execute()
        )
        if not result.data:
            return None
        return {**entry, **result.data[0]}

    def _confirm(self, claimed: dict, parent: dict, result: dict, summary: QueueRunSummary) -> None:
        updated = (
            self._table
            .update({
                "status": QueueStatus.CONFIRMED.value,
                "sent_at": utc_now().isoformat(),
                "last_error": None,
                **self.handler.confirmation_fields(claimed, result),
            })
            .eq("id", claimed["id"])
            .eq("status", QueueStatus.SENDING.value)
            .eq("attempts", claimed["attempts"])
            .execute()
        )
        if not updated.data:
            # Lease expired mid-send; the next holder verifies and confirms
            logger.warning(f"{self._tag} {claimed['id']} delivered but claim was lost")
            summary.skipped += 1
            return

        self.handler.on_confirmed(self.client, claimed, parent, result)
        summary.confirmed += 1
        logger.info(f"{self._tag} {claimed['id']} confirmed")

    def _record_failure(self, claimed: dict, message: str, summary: QueueRunSummary) -> None:
        exhausted = claimed["attempts"] >= self.handler.max_attempts
        new_status = QueueStatus.FAILED if exhausted else QueueStatus.PENDING

        updated = (
            self._table
            .update({"status": new_status.value, "last_error": message, "claimed_at": None})
            .eq("id", claimed["id"])
            .eq("status", QueueStatus.SENDING.value)
            .eq("attempts", claimed["attempts"])
            .execute()
        )
        if not updated.data:
            # Lease expired mid-send and another invocation re-claimed the entry
            logger.warning(f"{self._tag} {claimed['id']} failed but claim was lost: {message}")
            summary.skipped += 1
            return

        if exhausted:
            summary.failed += 1
            logger.error(f"{self._tag} {claimed['id']} failed permanently after {claimed['attempts']} attempts: {message}")
        else:
            summary.retried += 1
            logger.warning(f"{self._tag} {claimed['id']} attempt {claimed['attempts']} failed, will retry: {message}")
        summary.errors.append(f"{claimed['id']}: {message}")
