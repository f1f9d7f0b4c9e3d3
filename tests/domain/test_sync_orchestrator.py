"""Unit tests for the SyncOrchestrator Save and Submit state machine."""

import asyncio

import pytest

from encounter_capture.adapters.storage.duckdb_store import DuckDBEncounterStore
from encounter_capture.domain.encounter_record import EncounterRecord
from encounter_capture.domain.enums import EncounterStatus, OfflineStatus, OutcomeKind, Section
from encounter_capture.domain.ports import (
    AuthenticationError,
    InvalidEncounterIdError,
    LocalWriteError,
    RemoteUnavailableError,
    Result,
    SubmitResponse,
)
from encounter_capture.domain.services.sync_orchestrator import (
    MSG_CREATED,
    MSG_QUEUED,
    MSG_SAVED_OFFLINE,
    MSG_SESSION_EXPIRED,
    MSG_SUBMIT_IN_PROGRESS,
    MSG_SUBMITTED,
    MSG_SYNC_FAILED,
    MSG_UPDATED,
    SyncOrchestrator,
)
from encounter_capture.infrastructure.connectivity import ConnectivityMonitor


class FailingWriteStore(DuckDBEncounterStore):
    """Store whose writes always fail, as on a full disk."""

    def save_offline(self, key, envelope):
        return Result.failure_result(LocalWriteError("disk full"), error_type="LocalWriteError")


class FailingRekeyStore(DuckDBEncounterStore):
    def rekey(self, old_key, new_key, envelope):
        return Result.failure_result(LocalWriteError("disk full"), error_type="LocalWriteError")


@pytest.fixture
def offline(connectivity):
    connectivity.set_online(False)
    return connectivity


class TestSave:
    """Test suite for the Save action."""

    def test_offline_save_writes_draft_envelope(self, orchestrator, store, remote, offline, draft_record):
        """Offline: envelope written as draft, no remote call."""
        before = store.count()

        outcome = asyncio.run(orchestrator.save(draft_record))

        assert outcome.kind == OutcomeKind.SAVED_OFFLINE
        assert outcome.message == MSG_SAVED_OFFLINE
        assert outcome.saved_locally
        assert remote.calls == []
        assert store.count() == before + 1
        envelope = store.read_offline(draft_record.local_id)
        assert envelope.offline_status == OfflineStatus.DRAFT
        assert envelope.record == draft_record

    def test_first_online_save_creates_and_rekeys(self, orchestrator, store, remote, draft_record):
        outcome = asyncio.run(orchestrator.save(draft_record))

        assert outcome.kind == OutcomeKind.SAVED
        assert outcome.message == MSG_CREATED
        assert outcome.redirect_to == "enc-1"
        assert outcome.record.server_id == "enc-1"
        assert outcome.record.local_id == draft_record.local_id
        assert remote.calls == [("create", None)]
        assert store.read_offline("enc-1").record.server_id == "enc-1"
        assert store.superseded_by(draft_record.local_id) == "enc-1"
        assert store.count() == 0

    def test_later_save_updates(self, orchestrator, remote, draft_record):
        first = asyncio.run(orchestrator.save(draft_record))

        second = asyncio.run(orchestrator.save(first.record))

        assert second.kind == OutcomeKind.SAVED
        assert second.message == MSG_UPDATED
        assert second.redirect_to is None
        assert remote.calls == [("create", None), ("update", "enc-1")]

    def test_stale_snapshot_never_creates_twice(self, orchestrator, store, remote, draft_record):
        """A snapshot taken before the server id arrived still updates."""
        asyncio.run(orchestrator.save(draft_record))

        outcome = asyncio.run(orchestrator.save(draft_record))

        assert remote.count("create") == 1
        assert remote.calls[-1] == ("update", "enc-1")
        assert outcome.record.server_id == "enc-1"
        assert store.read_offline(draft_record.local_id).record.server_id is None

    def test_concurrent_saves_create_once(self, orchestrator, store, remote, draft_record):
        remote.delay = 0.05

        async def save_twice():
            return await asyncio.gather(
                orchestrator.save(draft_record),
                orchestrator.save(draft_record),
            )

        outcomes = asyncio.run(save_twice())

        assert remote.count("create") == 1
        assert remote.count("update") == 1
        assert all(o.kind == OutcomeKind.SAVED for o in outcomes)
        assert store.superseded_by(draft_record.local_id) == "enc-1"
        assert store.count() == 0

    def test_local_write_precedes_network(self, orchestrator, audit, draft_record):
        asyncio.run(orchestrator.save(draft_record))

        assert audit.event_types() == [
            "local_write", "remote_create", "rekey", "local_write", "outcome",
        ]

    def test_remote_failure_keeps_local_copy(self, orchestrator, store, remote, draft_record):
        remote.error = RemoteUnavailableError("Server error 503", status_code=503)

        outcome = asyncio.run(orchestrator.save(draft_record))

        assert outcome.kind == OutcomeKind.SAVED_SYNC_FAILED
        assert outcome.message == MSG_SYNC_FAILED
        assert outcome.saved_locally
        envelope = store.read_offline(draft_record.local_id)
        assert envelope.sync_attempts == 1
        assert envelope.last_error == "Server error 503"
        assert store.count() == 1

    def test_session_expired(self, orchestrator, store, remote, draft_record):
        remote.error = AuthenticationError("Unauthorized", status_code=401)

        outcome = asyncio.run(orchestrator.save(draft_record))

        assert outcome.kind == OutcomeKind.SESSION_EXPIRED
        assert outcome.message == MSG_SESSION_EXPIRED
        assert store.read_offline(draft_record.local_id) is not None

    def test_placeholder_server_id_creates(self, orchestrator, remote):
        record = EncounterRecord.from_document({
            "serverId": "new",
            "patientForm": {"firstName": "Jordan"},
        })

        outcome = asyncio.run(orchestrator.save(record))

        assert outcome.kind == OutcomeKind.SAVED
        assert outcome.redirect_to == "enc-1"
        assert remote.calls == [("create", None)]

    def test_rejected_id_on_update_is_a_sync_failure(self, orchestrator, store, remote, draft_record):
        saved = asyncio.run(orchestrator.save(draft_record))
        remote.errors["update"] = InvalidEncounterIdError("Cannot update encounter with id 'enc-1'")

        outcome = asyncio.run(orchestrator.save(saved.record))

        assert outcome.kind == OutcomeKind.SAVED_SYNC_FAILED
        assert outcome.saved_locally
        assert store.read_offline("enc-1").sync_attempts == 1
        assert store.count() == 1

    def test_local_write_failure_is_never_reported_as_saved(self, remote, payloads, draft_record):
        store = FailingWriteStore(db_path=":memory:")
        orchestrator = SyncOrchestrator(store, remote, ConnectivityMonitor(online=True), payloads)

        outcome = asyncio.run(orchestrator.save(draft_record))

        assert outcome.kind == OutcomeKind.LOCAL_WRITE_FAILED
        assert outcome.message.startswith("Save failed: ")
        assert "disk full" in outcome.message
        assert not outcome.saved_locally
        assert remote.calls == []
        store.close()

    def test_rekey_failure_is_a_local_write_failure(self, remote, payloads, draft_record):
        store = FailingRekeyStore(db_path=":memory:")
        orchestrator = SyncOrchestrator(store, remote, ConnectivityMonitor(online=True), payloads)

        outcome = asyncio.run(orchestrator.save(draft_record))

        assert outcome.kind == OutcomeKind.LOCAL_WRITE_FAILED
        assert outcome.redirect_to == "enc-1"
        store.close()

    def test_save_after_offline_submit_keeps_pending_submission(
        self, orchestrator, store, offline, complete_record
    ):
        queued = asyncio.run(orchestrator.submit(complete_record))

        asyncio.run(orchestrator.save(queued.record))

        envelope = store.read_offline(complete_record.local_id)
        assert envelope.offline_status == OfflineStatus.PENDING_SUBMISSION
        assert envelope.attempted_submit

    def test_online_save_after_offline_submit_stays_queued(
        self, orchestrator, resync, store, remote, connectivity, complete_record
    ):
        saved = asyncio.run(orchestrator.save(complete_record))
        connectivity.set_online(False)
        queued = asyncio.run(orchestrator.submit(saved.record))
        connectivity.set_online(True)

        outcome = asyncio.run(orchestrator.save(queued.record))

        assert outcome.kind == OutcomeKind.SAVED
        assert store.read_offline("enc-1").offline_status == OfflineStatus.PENDING_SUBMISSION
        assert store.count() == 1
        assert [e.key for e in store.list_pending()] == ["enc-1"]

        results = asyncio.run(resync.replay_pending())

        assert [r.success for r in results] == [True]
        assert remote.count("submit") == 1
        assert store.count() == 0

    def test_synced_draft_becomes_pending_after_offline_edit(
        self, orchestrator, store, connectivity, draft_record
    ):
        saved = asyncio.run(orchestrator.save(draft_record))
        assert store.count() == 0

        connectivity.set_online(False)
        asyncio.run(orchestrator.save(saved.record))

        assert store.count() == 1
        assert store.list_pending()[0].key == "enc-1"


class TestSubmit:
    """Test suite for the Submit action."""

    def test_invalid_record_is_not_written(self, orchestrator, store, remote, draft_record):
        outcome = asyncio.run(orchestrator.submit(draft_record))

        assert outcome.kind == OutcomeKind.VALIDATION_FAILED
        assert outcome.message == "Please complete all required fields (6% complete)"
        assert outcome.completion_percentage == 6
        assert outcome.active_section == Section.INCIDENT
        assert outcome.errors[0].field == "clinicName"
        assert not outcome.saved_locally
        assert store.read_offline(draft_record.local_id) is None
        assert remote.calls == []

    def test_online_submit_of_new_encounter(self, orchestrator, store, remote, audit, complete_record):
        """Local write, remote create, remote submit, then synced and navigate away."""
        outcome = asyncio.run(orchestrator.submit(complete_record))

        assert outcome.kind == OutcomeKind.SUBMITTED
        assert outcome.message == MSG_SUBMITTED
        assert outcome.navigate_away
        assert outcome.navigate_delay_ms == 1500
        assert outcome.redirect_to == "enc-1"
        assert outcome.record.status == EncounterStatus.SUBMITTED
        assert remote.calls == [("create", None), ("submit", "enc-1")]
        assert audit.event_types() == [
            "local_write", "remote_create", "rekey", "remote_submit", "local_write", "outcome",
        ]

        envelope = store.read_offline("enc-1")
        assert envelope.offline_status == OfflineStatus.SYNCED
        assert envelope.attempted_submit
        assert envelope.submitted_at is not None
        assert store.count() == 0

    def test_first_local_write_is_pending_submission(self, orchestrator, audit, complete_record):
        asyncio.run(orchestrator.submit(complete_record))

        first = audit.get_logs()[0]
        assert first["event_type"] == "local_write"
        assert first["encounter_key"] == complete_record.local_id
        assert first["details"]["offline_status"] == "pending_submission"

    def test_offline_submit_is_queued(self, orchestrator, store, remote, offline, complete_record):
        outcome = asyncio.run(orchestrator.submit(complete_record))

        assert outcome.kind == OutcomeKind.QUEUED_FOR_SUBMISSION
        assert outcome.message == MSG_QUEUED
        assert outcome.navigate_away
        assert remote.calls == []
        envelope = store.read_offline(complete_record.local_id)
        assert envelope.offline_status == OfflineStatus.PENDING_SUBMISSION
        assert envelope.record.status == EncounterStatus.PENDING_SUBMISSION
        assert store.count() == 1

    def test_network_error_on_submit_is_queued(self, orchestrator, store, remote, complete_record):
        """The envelope stays pending_submission and the user sees the queued message."""
        remote.errors["submit"] = RemoteUnavailableError("Network error")

        outcome = asyncio.run(orchestrator.submit(complete_record))

        assert outcome.kind == OutcomeKind.QUEUED_FOR_SUBMISSION
        assert outcome.message == MSG_QUEUED
        assert outcome.errors == ()
        assert outcome.redirect_to == "enc-1"
        envelope = store.read_offline("enc-1")
        assert envelope.offline_status == OfflineStatus.PENDING_SUBMISSION
        assert envelope.last_error == "Network error"
        assert store.count() == 1

    def test_rejected_id_on_submit_is_queued(self, orchestrator, store, remote, complete_record):
        remote.errors["submit"] = InvalidEncounterIdError("Cannot submit encounter with id 'enc-1'")

        outcome = asyncio.run(orchestrator.submit(complete_record))

        assert outcome.kind == OutcomeKind.QUEUED_FOR_SUBMISSION
        assert store.read_offline("enc-1").offline_status == OfflineStatus.PENDING_SUBMISSION
        assert store.count() == 1

    def test_server_rejection_maps_errors_to_sections(self, orchestrator, store, remote, complete_record):
        remote.submit_response = SubmitResponse(
            success=False,
            message="Validation failed",
            errors={"narrativeForm.text": "too short"},
        )

        outcome = asyncio.run(orchestrator.submit(complete_record))

        assert outcome.kind == OutcomeKind.SERVER_REJECTED
        assert outcome.message == "Validation failed"
        assert outcome.active_section == Section.NARRATIVE
        assert outcome.errors[0].section == Section.NARRATIVE
        assert not outcome.navigate_away
        assert store.read_offline("enc-1").offline_status == OfflineStatus.PENDING_SUBMISSION

    def test_session_expired_does_not_navigate(self, orchestrator, store, remote, complete_record):
        remote.error = AuthenticationError("Unauthorized", status_code=401)

        outcome = asyncio.run(orchestrator.submit(complete_record))

        assert outcome.kind == OutcomeKind.SESSION_EXPIRED
        assert not outcome.navigate_away
        envelope = store.read_offline(complete_record.local_id)
        assert envelope.offline_status == OfflineStatus.PENDING_SUBMISSION

    def test_double_submit_is_rejected(self, orchestrator, remote, complete_record):
        remote.delay = 0.05

        async def submit_twice():
            return await asyncio.gather(
                orchestrator.submit(complete_record),
                orchestrator.submit(complete_record),
            )

        outcomes = asyncio.run(submit_twice())

        kinds = sorted(o.kind.value for o in outcomes)
        assert kinds == [OutcomeKind.SUBMIT_IN_PROGRESS.value, OutcomeKind.SUBMITTED.value]
        rejected = next(o for o in outcomes if o.kind == OutcomeKind.SUBMIT_IN_PROGRESS)
        assert rejected.message == MSG_SUBMIT_IN_PROGRESS
        assert remote.count("create") == 1
        assert remote.count("submit") == 1

    def test_submit_after_save_uses_server_id(self, orchestrator, remote, complete_record):
        saved = asyncio.run(orchestrator.save(complete_record))

        outcome = asyncio.run(orchestrator.submit(saved.record))

        assert outcome.kind == OutcomeKind.SUBMITTED
        assert outcome.redirect_to is None
        assert remote.calls == [("create", None), ("submit", "enc-1")]

    def test_submission_payload_is_record_document(self, orchestrator, remote, complete_record):
        asyncio.run(orchestrator.submit(complete_record))

        submitted = remote.payloads[-1]
        assert submitted["serverId"] == "enc-1"
        assert submitted["status"] == "pending_submission"
        assert submitted["narrative"] == complete_record.narrative
