"""Sync Orchestrator.

The state machine behind the Save and Submit actions of the encounter
workspace. Every action writes the offline envelope first; only after that
write has completed may the remote service be contacted.

Save:
    draft envelope -> (online) remote create, or remote update once a server
    id exists. The first successful create stamps the server id onto the
    record, re-keys the envelope under it and asks the caller to redirect.

Submit:
    validate -> pending_submission envelope -> (online) ensure server id ->
    submit for review -> synced envelope and navigate away, or server
    rejection mapped back onto sections.

Error Handling:
    - Local write failure: the only data-loss risk, reported as
      LOCAL_WRITE_FAILED and never as "saved"
    - Remote unavailability: downgraded to "saved locally, sync pending"
    - Authentication failure: reported as SESSION_EXPIRED, data kept locally
    - Server-side validation rejection: SERVER_REJECTED with section-tagged errors

Architecture:
    - Domain service depending only on ports
    - Identity is passed in with each record; there is no ambient current encounter
    - Navigation is returned as data (redirect_to, navigate_away), never performed
"""

import logging
from dataclasses import dataclass
from typing import Optional

from encounter_capture.domain.encounter_record import EncounterRecord
from encounter_capture.domain.enums import (
    EncounterStatus,
    OfflineStatus,
    OutcomeKind,
    Section,
    SyncEvent,
)
from encounter_capture.domain.envelope import OfflineEnvelope, utc_now
from encounter_capture.domain.guardrails import SubmissionGuard
from encounter_capture.domain.ports import (
    AuditTrailPort,
    AuthenticationError,
    ConnectivityPort,
    InvalidEncounterIdError,
    LocalStorePort,
    PayloadBuilderPort,
    RemoteEncounterPort,
    RemoteServiceError,
    StorageError,
)
from encounter_capture.domain.services.reconciliation import IdentifierReconciler
from encounter_capture.domain.validation import FieldError, map_server_errors, validate

logger = logging.getLogger(__name__)

DEFAULT_NAVIGATE_DELAY_MS = 1500

MSG_CREATED = "Encounter created and synced to server"
MSG_UPDATED = "Saved and synced to server"
MSG_SAVED_OFFLINE = "Saved locally (offline mode). Will sync when online."
MSG_SYNC_FAILED = "Saved locally. Server sync failed - will retry when online."
MSG_SESSION_EXPIRED = "Session expired. Data saved locally - please log in again."
MSG_QUEUED = "Report saved for submission when online"
MSG_SUBMITTED = "Encounter submitted successfully!"
MSG_SUBMIT_REJECTED = "Failed to submit encounter"
MSG_SUBMIT_IN_PROGRESS = "Submission already in progress"


@dataclass(frozen=True)
class SyncOutcome:
    """Result of one Save or Submit action, as the UI should present it.

    Attributes:
        kind: Discrete outcome
        message: User-facing message
        record: Latest snapshot (carries the server id once reconciled)
        errors: Client or server validation errors
        active_section: Section the UI should switch to
        redirect_to: Server id to replace the local id in URLs, set once
        navigate_away: Leave the workspace after ``navigate_delay_ms``
        navigate_delay_ms: Confirmation delay before navigating away
        completion_percentage: Set for validation failures
    """

    kind: OutcomeKind
    message: str
    record: EncounterRecord
    errors: tuple[FieldError, ...] = ()
    active_section: Optional[Section] = None
    redirect_to: Optional[str] = None
    navigate_away: bool = False
    navigate_delay_ms: int = 0
    completion_percentage: Optional[int] = None

    @property
    def saved_locally(self) -> bool:
        """True when the action left a durable local copy."""
        return self.kind not in (
            OutcomeKind.LOCAL_WRITE_FAILED,
            OutcomeKind.VALIDATION_FAILED,
            OutcomeKind.SUBMIT_IN_PROGRESS,
        )


class SyncOrchestrator:
    """Coordinates local durability and remote sync for Save and Submit.

    Example Usage:
        ```python
        orchestrator = SyncOrchestrator(store, remote, connectivity, payloads, audit=audit)
        outcome = await orchestrator.save(record)
        if outcome.redirect_to:
            router.replace(f"/encounters/{outcome.redirect_to}")
        record = outcome.record
        ```
    """

    def __init__(
        self,
        store: LocalStorePort,
        remote: RemoteEncounterPort,
        connectivity: ConnectivityPort,
        payloads: PayloadBuilderPort,
        audit: Optional[AuditTrailPort] = None,
        navigate_delay_ms: int = DEFAULT_NAVIGATE_DELAY_MS,
        guard: Optional[SubmissionGuard] = None,
        reconciler: Optional[IdentifierReconciler] = None,
    ):
        """Initialize the orchestrator.

        Parameters:
            store: Local durability layer
            remote: Remote encounter service
            connectivity: Online signal
            payloads: Request body builder
            audit: Optional sync audit trail
            navigate_delay_ms: Delay reported with navigate-away outcomes
            guard: Submission guard (shared if several orchestrators serve one session)
            reconciler: Identifier reconciler (shared with the replay service)
        """
        self.store = store
        self.remote = remote
        self.connectivity = connectivity
        self.payloads = payloads
        self.audit = audit
        self.navigate_delay_ms = navigate_delay_ms
        self.guard = guard or SubmissionGuard()
        self.reconciler = reconciler or IdentifierReconciler(store, remote, payloads, audit)

    # -- helpers -------------------------------------------------------------

    def _record_event(self, event: SyncEvent, key: str, **details) -> None:
        if self.audit is not None:
            self.audit.record_event(event, key, **details)

    def _outcome(self, kind: OutcomeKind, message: str, record: EncounterRecord, **kwargs) -> SyncOutcome:
        self._record_event(SyncEvent.OUTCOME, record.storage_key, outcome=kind.value)
        logger.info(f"Encounter {record.storage_key}: {kind.value}")
        return SyncOutcome(kind=kind, message=message, record=record, **kwargs)

    def _previous(self, key: str) -> Optional[OfflineEnvelope]:
        try:
            return self.store.read_offline(key)
        except StorageError as e:
            # Unreadable rows are replaced by the new write
            logger.warning(f"Previous envelope for {key} unreadable, overwriting: {e}")
            return None

    def _persist(self, envelope: OfflineEnvelope) -> Optional[str]:
        """Write ``envelope`` under its key; return the error message on failure."""
        key = envelope.key
        result = self.store.save_offline(key, envelope)
        if result.is_failure():
            self._record_event(SyncEvent.LOCAL_WRITE_FAILED, key, error=result.error)
            return result.error or "local storage unavailable"
        self._record_event(SyncEvent.LOCAL_WRITE, key, offline_status=envelope.offline_status.value)
        return None

    def _note_remote_failure(self, envelope: OfflineEnvelope, error: Exception) -> None:
        self._record_event(
            SyncEvent.REMOTE_FAILURE, envelope.key,
            error_type=type(error).__name__, status_code=getattr(error, "status_code", 0),
        )
        failed = envelope.with_sync_failure(str(error))
        result = self.store.save_offline(failed.key, failed)
        if result.is_failure():
            logger.error(f"Could not record sync failure for {failed.key}: {result.error}")

    def _resolve(self, record: EncounterRecord) -> EncounterRecord:
        return self.reconciler.resolve(record)

    # -- Save ----------------------------------------------------------------

    async def save(self, record: EncounterRecord) -> SyncOutcome:
        """Save a draft: local write first, then create or update remotely.

        Parameters:
            record: Current snapshot

        Returns:
            SyncOutcome
        """
        record = self._resolve(record)
        envelope = OfflineEnvelope(
            record=record,
            offline_status=OfflineStatus.DRAFT,
            attempted_submit=False,
        ).merged_with(self._previous(record.storage_key))

        error = self._persist(envelope)
        if error is not None:
            return self._outcome(OutcomeKind.LOCAL_WRITE_FAILED, f"Save failed: {error}", record)

        if not self.connectivity.is_online():
            return self._outcome(OutcomeKind.SAVED_OFFLINE, MSG_SAVED_OFFLINE, record)

        redirect_to: Optional[str] = None
        try:
            if record.server_id is None:
                reconciliation = await self.reconciler.ensure_server_id(record, envelope)
                record, envelope = reconciliation.record, reconciliation.envelope
                if reconciliation.created:
                    redirect_to = record.server_id
                if reconciliation.rekey_failed:
                    return self._outcome(
                        OutcomeKind.LOCAL_WRITE_FAILED,
                        f"Save failed: {reconciliation.rekey_result.error}",
                        record,
                        redirect_to=redirect_to,
                    )
                message = MSG_CREATED if reconciliation.created else MSG_UPDATED
                if not reconciliation.created:
                    await self.remote.update_encounter(record.server_id, self.payloads.build_payload(record))
                    self._record_event(SyncEvent.REMOTE_UPDATE, record.storage_key)
            else:
                await self.remote.update_encounter(record.server_id, self.payloads.build_payload(record))
                self._record_event(SyncEvent.REMOTE_UPDATE, record.storage_key)
                message = MSG_UPDATED
        except AuthenticationError as e:
            logger.warning(f"Save of {record.storage_key} not synced: session expired")
            self._note_remote_failure(envelope, e)
            return self._outcome(OutcomeKind.SESSION_EXPIRED, MSG_SESSION_EXPIRED, record)
        except (RemoteServiceError, InvalidEncounterIdError) as e:
            logger.warning(f"Save of {record.storage_key} not synced: {e}")
            self._note_remote_failure(envelope, e)
            return self._outcome(OutcomeKind.SAVED_SYNC_FAILED, MSG_SYNC_FAILED, record)

        synced_error = self._persist(envelope.with_server_sync(record))
        if synced_error is not None:
            logger.error(f"Encounter {record.storage_key} synced but local bookkeeping failed: {synced_error}")

        return self._outcome(OutcomeKind.SAVED, message, record, redirect_to=redirect_to)

    # -- Submit --------------------------------------------------------------

    async def submit(self, record: EncounterRecord) -> SyncOutcome:
        """Submit for review: validate, persist as pending, then submit remotely.

        A second call for the same encounter while one is in flight returns
        SUBMIT_IN_PROGRESS without any write or remote call.
        """
        with self.guard.hold(record.local_id) as entered:
            if not entered:
                logger.info(f"Submit for {record.storage_key} ignored: already in progress")
                return SyncOutcome(OutcomeKind.SUBMIT_IN_PROGRESS, MSG_SUBMIT_IN_PROGRESS, record)
            return await self._submit(self._resolve(record))

    async def _submit(self, record: EncounterRecord) -> SyncOutcome:
        result = validate(record)
        if not result.is_valid:
            return self._outcome(
                OutcomeKind.VALIDATION_FAILED,
                f"Please complete all required fields ({result.completion_percentage}% complete)",
                record,
                errors=result.errors,
                active_section=result.errors[0].section,
                completion_percentage=result.completion_percentage,
            )

        record = record.with_identity(record.identity.with_status(EncounterStatus.PENDING_SUBMISSION))
        envelope = OfflineEnvelope(
            record=record,
            offline_status=OfflineStatus.PENDING_SUBMISSION,
            attempted_submit=True,
            submitted_at=utc_now(),
        ).merged_with(self._previous(record.storage_key))

        error = self._persist(envelope)
        if error is not None:
            return self._outcome(OutcomeKind.LOCAL_WRITE_FAILED, f"Save failed: {error}", record)

        if not self.connectivity.is_online():
            return self._queued(record)

        redirect_to: Optional[str] = None
        try:
            reconciliation = await self.reconciler.ensure_server_id(record, envelope)
            record, envelope = reconciliation.record, reconciliation.envelope
            if reconciliation.created:
                redirect_to = record.server_id
            if reconciliation.rekey_failed:
                return self._outcome(
                    OutcomeKind.LOCAL_WRITE_FAILED,
                    f"Save failed: {reconciliation.rekey_result.error}",
                    record,
                    redirect_to=redirect_to,
                )

            response = await self.remote.submit_for_review(
                record.server_id, self.payloads.build_submission_payload(record)
            )
            self._record_event(SyncEvent.REMOTE_SUBMIT, record.storage_key, success=response.success)
        except AuthenticationError as e:
            logger.warning(f"Submit of {record.storage_key} queued: session expired")
            self._note_remote_failure(envelope, e)
            return self._outcome(
                OutcomeKind.SESSION_EXPIRED, MSG_SESSION_EXPIRED, record, redirect_to=redirect_to
            )
        except (RemoteServiceError, InvalidEncounterIdError) as e:
            logger.warning(f"Submit of {record.storage_key} queued: {e}")
            self._note_remote_failure(envelope, e)
            return self._queued(record, redirect_to=redirect_to)

        if not response.success:
            errors = tuple(map_server_errors(response.errors))
            return self._outcome(
                OutcomeKind.SERVER_REJECTED,
                response.message or MSG_SUBMIT_REJECTED,
                record,
                errors=errors,
                active_section=errors[0].section if errors else None,
                redirect_to=redirect_to,
            )

        record = record.with_identity(record.identity.with_status(EncounterStatus.SUBMITTED))
        synced_error = self._persist(envelope.as_submitted(record))
        if synced_error is not None:
            logger.error(f"Encounter {record.storage_key} submitted but local status update failed: {synced_error}")

        return self._outcome(
            OutcomeKind.SUBMITTED,
            MSG_SUBMITTED,
            record,
            redirect_to=redirect_to,
            navigate_away=True,
            navigate_delay_ms=self.navigate_delay_ms,
        )

    def _queued(self, record: EncounterRecord, redirect_to: Optional[str] = None) -> SyncOutcome:
        return self._outcome(
            OutcomeKind.QUEUED_FOR_SUBMISSION,
            MSG_QUEUED,
            record,
            redirect_to=redirect_to,
            navigate_away=True,
            navigate_delay_ms=self.navigate_delay_ms,
        )
