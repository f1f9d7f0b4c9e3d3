"""Offline Envelope.

The unit written to the local durability layer: an encounter snapshot plus
the bookkeeping needed to synchronize it later.

Security Impact:
    - The envelope is the only copy of an encounter while the device is
      offline; its lifecycle stage must never move backwards or a pending
      submission could be silently downgraded to a draft

Architecture:
    - Pure domain model, persisted by LocalStorePort implementations
    - ``merged_with`` applies the monotonic-stage rule; the store itself
      stays a plain overwrite-by-key
"""

from datetime import datetime, timezone
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field

from encounter_capture.domain.encounter_record import EncounterRecord
from encounter_capture.domain.enums import OfflineStatus


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


class OfflineEnvelope(BaseModel):
    """Encounter snapshot plus sync bookkeeping.

    Parameters:
        record: The encounter snapshot
        offline_status: Envelope stage (draft, pending_submission, synced)
        saved_at: When this envelope was written
        attempted_submit: True once a valid Submit has been attempted
        submitted_at: When the Submit was attempted
        server_synced_at: When the server confirmed the submission
        sync_attempts: Number of replay attempts made for this envelope
        last_error: Message from the most recent failed sync
    """

    model_config = ConfigDict(frozen=True)

    record: EncounterRecord = Field(..., description="Encounter snapshot")
    offline_status: OfflineStatus = Field(default=OfflineStatus.DRAFT)
    saved_at: datetime = Field(default_factory=utc_now)
    attempted_submit: bool = False
    submitted_at: Optional[datetime] = None
    server_synced_at: Optional[datetime] = None
    sync_attempts: int = 0
    last_error: Optional[str] = None

    @property
    def key(self) -> str:
        return self.record.storage_key

    @property
    def is_synced(self) -> bool:
        return self.offline_status == OfflineStatus.SYNCED

    def merged_with(self, previous: Optional["OfflineEnvelope"]) -> "OfflineEnvelope":
        """Apply the monotonic-stage rule against the previously stored envelope.

        The new record contents always win. ``offline_status`` keeps the
        higher of the two stages, ``attempted_submit`` is sticky, and
        submission timestamps are never cleared.
        """
        if previous is None:
            return self

        status = self.offline_status
        if previous.offline_status.rank > status.rank:
            status = previous.offline_status

        return self.model_copy(update={
            "offline_status": status,
            "attempted_submit": self.attempted_submit or previous.attempted_submit,
            "submitted_at": self.submitted_at or previous.submitted_at,
            "server_synced_at": self.server_synced_at or previous.server_synced_at,
            "sync_attempts": max(self.sync_attempts, previous.sync_attempts),
        })

    def with_sync_failure(self, message: str) -> "OfflineEnvelope":
        return self.model_copy(update={
            "sync_attempts": self.sync_attempts + 1,
            "last_error": message,
            "saved_at": utc_now(),
        })

    def with_server_sync(self, record: Optional[EncounterRecord] = None) -> "OfflineEnvelope":
        """Mark the current contents as confirmed by the server.

        The stage is unchanged; a later local save with a newer ``saved_at``
        makes the envelope pending again.
        """
        now = utc_now()
        return self.model_copy(update={
            "record": record or self.record,
            "saved_at": now,
            "server_synced_at": now,
            "last_error": None,
        })

    def as_submitted(self, record: EncounterRecord) -> "OfflineEnvelope":
        """Terminal stage after the server accepted the submission."""
        now = utc_now()
        return self.model_copy(update={
            "record": record,
            "offline_status": OfflineStatus.SYNCED,
            "attempted_submit": True,
            "saved_at": now,
            "submitted_at": self.submitted_at or now,
            "server_synced_at": now,
            "last_error": None,
        })
