"""Replay of Queued Offline Envelopes.

Envelopes left behind by offline saves and offline submissions are replayed
against the remote service when the caller asks for it (on reconnect, from
the CLI ``sync`` command, or per encounter via ``retry_single``).

    - pending_submission envelope: create on the server if it still has a
      local id, then submit for review; success marks it synced
    - draft envelope: create or update; success records the server sync time
    - failure: ``last_error`` is recorded and ``sync_attempts`` bumped, the
      envelope stays queued

Replay is single-flight (a second call while one runs returns nothing),
never runs while offline, and stops early through a CircuitBreaker when the
server keeps failing or immediately on an authentication failure.

Architecture:
    - Domain service over the same ports as the sync orchestrator
    - Shares IdentifierReconciler with the orchestrator so a replayed local
      encounter is created on the server at most once
"""

import asyncio
import logging
from dataclasses import dataclass
from typing import Callable, List, Optional

from encounter_capture.domain.encounter_record import LOCAL_ID_PREFIX
from encounter_capture.domain.enums import EncounterStatus, OfflineStatus, SyncEvent, SyncType
from encounter_capture.domain.envelope import OfflineEnvelope
from encounter_capture.domain.guardrails import (
    CircuitBreaker,
    CircuitBreakerConfig,
    CircuitBreakerOpenError,
)
from encounter_capture.domain.ports import (
    AuditTrailPort,
    AuthenticationError,
    ConnectivityPort,
    InvalidEncounterIdError,
    LocalStorePort,
    PayloadBuilderPort,
    RemoteEncounterPort,
    RemoteServiceError,
    Result,
)
from encounter_capture.domain.services.reconciliation import IdentifierReconciler
from encounter_capture.domain.validation import is_valid_encounter_id

logger = logging.getLogger(__name__)

SyncListener = Callable[[bool], None]


@dataclass(frozen=True)
class ReplayResult:
    """Outcome of replaying one envelope.

    Attributes:
        success: True if the server accepted the envelope
        encounter_key: Key the envelope was stored under before replay
        message: Human-readable result
        server_id: Server id after replay, when known
        sync_type: Kind of remote work performed
    """

    success: bool
    encounter_key: str
    message: str
    server_id: Optional[str] = None
    sync_type: Optional[SyncType] = None


def summarize_replay(results: List[ReplayResult]) -> str:
    """One-line summary of a replay run."""
    succeeded = [r for r in results if r.success]
    failed = len(results) - len(succeeded)

    if not results:
        return "Nothing to sync"
    if failed == 0:
        submitted = sum(1 for r in succeeded if r.sync_type == SyncType.SUBMISSION)
        saved = sum(1 for r in succeeded if r.sync_type == SyncType.DRAFT_SAVE)
        parts = []
        if submitted:
            parts.append(f"{submitted} submitted for review")
        if saved:
            parts.append(f"{saved} draft{'s' if saved > 1 else ''} saved")
        return ", ".join(parts)
    if not succeeded:
        return f"Failed to sync {failed} encounter{'s' if failed > 1 else ''}"
    return f"Synced {len(succeeded)}, failed {failed} encounter{'s' if failed > 1 else ''}"


class ResyncService:
    """Replays queued offline envelopes.

    Example Usage:
        ```python
        resync = ResyncService(store, remote, connectivity, payloads)
        monitor.add_reconnect_listener(resync.schedule_replay)
        results = await resync.replay_pending()
        print(summarize_replay(results))
        ```
    """

    def __init__(
        self,
        store: LocalStorePort,
        remote: RemoteEncounterPort,
        connectivity: ConnectivityPort,
        payloads: PayloadBuilderPort,
        audit: Optional[AuditTrailPort] = None,
        breaker_config: Optional[CircuitBreakerConfig] = None,
        reconciler: Optional[IdentifierReconciler] = None,
    ):
        self.store = store
        self.remote = remote
        self.connectivity = connectivity
        self.payloads = payloads
        self.audit = audit
        self.breaker_config = breaker_config or CircuitBreakerConfig()
        self.reconciler = reconciler or IdentifierReconciler(store, remote, payloads, audit)
        self._syncing = False
        self._listeners: List[SyncListener] = []
        self.last_breaker_statistics: Optional[dict] = None
        self._scheduled: Optional[asyncio.Task] = None

    @property
    def is_syncing(self) -> bool:
        return self._syncing

    def add_sync_listener(self, listener: SyncListener) -> Callable[[], None]:
        """Register a callback for syncing state changes; returns an unsubscribe function."""
        self._listeners.append(listener)

        def unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return unsubscribe

    def _set_syncing(self, syncing: bool) -> None:
        self._syncing = syncing
        for listener in list(self._listeners):
            listener(syncing)

    def _record_event(self, event: SyncEvent, key: str, **details) -> None:
        if self.audit is not None:
            self.audit.record_event(event, key, **details)

    def schedule_replay(self) -> Optional[asyncio.Task]:
        """Reconnect listener: start a replay on the running event loop.

        Returns:
            The scheduled task, or None when no event loop is running (the
            CLI ``sync`` command replays in that case)
        """
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            logger.info("Reconnected outside an event loop, replay left to the caller")
            return None
        self._scheduled = loop.create_task(self.replay_pending())
        return self._scheduled

    async def replay_pending(self) -> List[ReplayResult]:
        """Replay every queued envelope, oldest first.

        Returns:
            List[ReplayResult]: One result per envelope attempted; empty when
            offline or when a replay is already running
        """
        if self._syncing:
            logger.info("Replay already in progress, skipping")
            return []
        if not self.connectivity.is_online():
            logger.info("Offline, replay skipped")
            return []

        self._set_syncing(True)
        results: List[ReplayResult] = []
        breaker = CircuitBreaker(self.breaker_config)
        try:
            pending = self.store.list_pending()
            logger.info(f"Replaying {len(pending)} queued envelope(s)")

            for envelope in pending:
                try:
                    result = await self._replay(envelope)
                except AuthenticationError:
                    results.append(ReplayResult(
                        success=False,
                        encounter_key=envelope.key,
                        message="Session expired. Please log in again to sync.",
                    ))
                    logger.warning("Replay stopped: session expired")
                    break

                results.append(result)
                try:
                    breaker.record_result(
                        Result.success_result(result.encounter_key) if result.success
                        else Result.failure_result(result.message, error_type="RemoteServiceError")
                    )
                except CircuitBreakerOpenError as e:
                    logger.error(f"Replay aborted after {e.records_processed} attempt(s): {e}")
                    break
        finally:
            self.last_breaker_statistics = breaker.get_statistics()
            self._set_syncing(False)

        logger.info(summarize_replay(results))
        return results

    async def retry_single(self, key: str) -> ReplayResult:
        """Replay one envelope by key, regardless of the rest of the queue."""
        if not self.connectivity.is_online():
            return ReplayResult(success=False, encounter_key=key, message="Device is offline")

        envelope = self.store.read_offline(key)
        if envelope is None:
            return ReplayResult(success=False, encounter_key=key, message="Encounter not found in local storage")

        try:
            return await self._replay(envelope)
        except AuthenticationError:
            return ReplayResult(
                success=False, encounter_key=key,
                message="Session expired. Please log in again to sync.",
            )

    async def _replay(self, envelope: OfflineEnvelope) -> ReplayResult:
        """Replay one envelope.

        Raises:
            AuthenticationError: Left to the caller, which stops the run
        """
        key = envelope.key
        if not key.startswith(LOCAL_ID_PREFIX) and not is_valid_encounter_id(key):
            message = "Invalid encounter ID. Cannot sync this encounter."
            self._fail(envelope, message)
            return ReplayResult(success=False, encounter_key=key, message=message)

        is_submission = envelope.offline_status == OfflineStatus.PENDING_SUBMISSION
        sync_type = SyncType.SUBMISSION if is_submission else SyncType.DRAFT_SAVE
        record = self.reconciler.resolve(envelope.record)

        try:
            reconciliation = await self.reconciler.ensure_server_id(record, envelope)
            record, envelope = reconciliation.record, reconciliation.envelope
            if reconciliation.rekey_failed:
                return ReplayResult(
                    success=False, encounter_key=key, message=reconciliation.rekey_result.error,
                    server_id=record.server_id, sync_type=sync_type,
                )

            if is_submission:
                response = await self.remote.submit_for_review(
                    record.server_id, self.payloads.build_submission_payload(record)
                )
                self._record_event(SyncEvent.REMOTE_SUBMIT, record.storage_key, success=response.success)
                if not response.success:
                    message = response.message or "Sync failed"
                    self._fail(envelope, message)
                    return ReplayResult(
                        success=False, encounter_key=key, message=message,
                        server_id=record.server_id, sync_type=sync_type,
                    )
                record = record.with_identity(record.identity.with_status(EncounterStatus.SUBMITTED))
                final = envelope.as_submitted(record)
                message = "Submitted for review"
            else:
                if not reconciliation.created:
                    await self.remote.update_encounter(record.server_id, self.payloads.build_payload(record))
                    self._record_event(SyncEvent.REMOTE_UPDATE, record.storage_key)
                final = envelope.with_server_sync(record)
                message = "Draft saved"
        except AuthenticationError as e:
            self._fail(envelope, str(e))
            raise
        except (RemoteServiceError, InvalidEncounterIdError) as e:
            logger.warning(f"Replay of {key} failed: {e}")
            self._fail(envelope, str(e))
            return ReplayResult(
                success=False, encounter_key=key, message=str(e),
                server_id=record.server_id, sync_type=sync_type,
            )

        write = self.store.save_offline(final.key, final)
        self._record_event(
            SyncEvent.LOCAL_WRITE if write.is_success() else SyncEvent.LOCAL_WRITE_FAILED,
            final.key, offline_status=final.offline_status.value,
        )
        if write.is_failure():
            logger.error(f"Replayed {key} but could not record it locally: {write.error}")

        logger.info(f"Replayed {key} as {sync_type.value}")
        return ReplayResult(
            success=True, encounter_key=key, message=message,
            server_id=record.server_id, sync_type=sync_type,
        )

    def _fail(self, envelope: OfflineEnvelope, message: str) -> None:
        self._record_event(SyncEvent.REMOTE_FAILURE, envelope.key, error=message)
        failed = envelope.with_sync_failure(message)
        result = self.store.save_offline(failed.key, failed)
        if result.is_failure():
            logger.error(f"Could not record replay failure for {failed.key}: {result.error}")
