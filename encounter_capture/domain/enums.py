"""Domain Enumerations.

Shared vocabulary for the encounter capture core: record lifecycle states,
offline envelope stages, section identifiers and the discrete outcomes the
sync orchestrator reports back to its caller.

Architecture:
    - Pure domain values with no infrastructure dependencies
    - String-valued so they serialize unchanged into JSON and DuckDB columns
"""

from enum import Enum


class EncounterStatus(str, Enum):
    """Lifecycle status carried by the record model itself."""
    DRAFT = "draft"
    PENDING_SUBMISSION = "pending_submission"
    SUBMITTED = "submitted"
    SYNCED = "synced"


class OfflineStatus(str, Enum):
    """Stage of an offline envelope.

    Stages are ordered: an envelope for one encounter may only move forward
    (draft -> pending_submission -> synced), never back.
    """
    DRAFT = "draft"
    PENDING_SUBMISSION = "pending_submission"
    SYNCED = "synced"

    @property
    def rank(self) -> int:
        return _OFFLINE_STATUS_RANK[self]


_OFFLINE_STATUS_RANK = {
    OfflineStatus.DRAFT: 0,
    OfflineStatus.PENDING_SUBMISSION: 1,
    OfflineStatus.SYNCED: 2,
}


class Section(str, Enum):
    """Independently editable parts of an encounter, in workspace order."""
    INCIDENT = "incident"
    PATIENT = "patient"
    ASSESSMENTS = "assessments"
    VITALS = "vitals"
    TREATMENT = "treatment"
    NARRATIVE = "narrative"
    DISPOSITION = "disposition"
    SIGNATURES = "signatures"

    @property
    def display_name(self) -> str:
        return self.value.capitalize()


class OutcomeKind(str, Enum):
    """Discrete results of a Save or Submit action."""
    SAVED = "saved"
    SAVED_OFFLINE = "saved_offline"
    SAVED_SYNC_FAILED = "saved_sync_failed"
    SESSION_EXPIRED = "session_expired"
    LOCAL_WRITE_FAILED = "local_write_failed"
    VALIDATION_FAILED = "validation_failed"
    SERVER_REJECTED = "server_rejected"
    QUEUED_FOR_SUBMISSION = "queued_for_submission"
    SUBMITTED = "submitted"
    SUBMIT_IN_PROGRESS = "submit_in_progress"


class SyncType(str, Enum):
    """Kind of remote work a replayed envelope required."""
    DRAFT_SAVE = "draft_save"
    SUBMISSION = "submission"


class SyncEvent(str, Enum):
    """Transition events written to the sync audit trail."""
    LOCAL_WRITE = "local_write"
    LOCAL_WRITE_FAILED = "local_write_failed"
    REMOTE_CREATE = "remote_create"
    REMOTE_UPDATE = "remote_update"
    REMOTE_SUBMIT = "remote_submit"
    REMOTE_FAILURE = "remote_failure"
    REKEY = "rekey"
    OUTCOME = "outcome"
