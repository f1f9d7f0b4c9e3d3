"""Shared fixtures for the encounter capture test suite."""

import asyncio
import copy
from typing import Optional

import pytest

from encounter_capture.adapters.remote.payload_builder import EncounterPayloadBuilder
from encounter_capture.adapters.storage.duckdb_store import DuckDBEncounterStore
from encounter_capture.domain.encounter_record import EncounterRecord
from encounter_capture.domain.ports import RemoteEncounterPort, SubmitResponse
from encounter_capture.domain.services.reconciliation import IdentifierReconciler
from encounter_capture.domain.services.resync import ResyncService
from encounter_capture.domain.services.sync_orchestrator import SyncOrchestrator
from encounter_capture.infrastructure.audit.sync_audit_logger import SyncAuditLogger
from encounter_capture.infrastructure.connectivity import ConnectivityMonitor


COMPLETE_DOCUMENT = {
    "incidentForm": {
        "clinicName": "Acme Occupational Health",
        "clinicStreetAddress": "100 Industrial Way",
        "clinicCity": "Springfield",
        "clinicState": "IL",
        "patientContactTime": "10:42",
        "clearedClinicTime": "11:30",
        "location": "Loading dock B",
        "injuryClassifiedByName": "Pat Reyes",
        "injuryClassification": "recordable",
        "mechanismOfInjury": "Struck by pallet",
    },
    "patientForm": {
        "firstName": "Jordan",
        "lastName": "Smith",
        "dob": "1985-04-12",
        "streetAddress": "12 Elm Street",
        "city": "Springfield",
        "state": "IL",
        "employer": "Acme Logistics",
        "supervisorName": "Lee Chen",
        "supervisorPhone": "555-0100",
        "medicalHistory": "None reported",
        "allergies": "NKDA",
        "currentMedications": "None",
    },
    "providers": [{"id": "prov-1", "name": "Dana Ortiz", "role": "lead"}],
    "assessments": [{"type": "primary", "findings": "Contusion to left forearm"}],
    "vitals": [{
        "time": "10:45",
        "date": "2026-03-02",
        "avpu": "A",
        "bp": "128/82",
        "bpTaken": "auto",
        "pulse": "88",
        "respiration": "16",
        "gcsTotal": "15",
    }],
    "narrative": "Patient struck on left forearm by a pallet while unloading; ice applied.",
    "disposition": "returned_to_work",
    "disclosureAcknowledgments": {"privacy": True, "treatment": True},
}


class FakeRemote(RemoteEncounterPort):
    """In-memory remote encounter service that records every call.

    Attributes:
        calls: (operation, encounter id or None) tuples in call order
        error: Raised by every call when set
        errors: Operation name -> exception raised by that operation only
        submit_response: Returned by submit_for_review
        delay: Seconds each call waits before answering
    """

    def __init__(self):
        self.calls: list[tuple[str, Optional[str]]] = []
        self.payloads: list[dict] = []
        self.error: Optional[Exception] = None
        self.errors: dict[str, Exception] = {}
        self.submit_response = SubmitResponse(success=True, message="Encounter submitted for review")
        self.delay = 0.0
        self._next_id = 0

    async def _call(self, operation: str, encounter_id: Optional[str], payload: dict) -> None:
        self.calls.append((operation, encounter_id))
        self.payloads.append(payload)
        if self.delay:
            await asyncio.sleep(self.delay)
        error = self.errors.get(operation, self.error)
        if error is not None:
            raise error

    def count(self, operation: str) -> int:
        return sum(1 for name, _ in self.calls if name == operation)

    async def create_encounter(self, payload: dict) -> str:
        await self._call("create", None, payload)
        self._next_id += 1
        return f"enc-{self._next_id}"

    async def update_encounter(self, encounter_id: str, payload: dict) -> str:
        await self._call("update", encounter_id, payload)
        return encounter_id

    async def submit_for_review(self, encounter_id: str, payload: dict) -> SubmitResponse:
        await self._call("submit", encounter_id, payload)
        return self.submit_response


@pytest.fixture
def complete_document():
    """A record document satisfying every required field."""
    return copy.deepcopy(COMPLETE_DOCUMENT)


@pytest.fixture
def complete_record(complete_document):
    return EncounterRecord.from_document(complete_document)


@pytest.fixture
def draft_record():
    """A freshly started encounter with only the patient name filled in."""
    return EncounterRecord.from_document({
        "patientForm": {"firstName": "Jordan", "lastName": "Smith"},
    })


@pytest.fixture
def store():
    duckdb_store = DuckDBEncounterStore(db_path=":memory:")
    duckdb_store.initialize_schema()
    yield duckdb_store
    duckdb_store.close()


@pytest.fixture
def remote():
    return FakeRemote()


@pytest.fixture
def connectivity(store):
    return ConnectivityMonitor(store, online=True)


@pytest.fixture
def audit():
    return SyncAuditLogger(session_id="test-session")


@pytest.fixture
def payloads():
    return EncounterPayloadBuilder()


@pytest.fixture
def reconciler(store, remote, payloads, audit):
    return IdentifierReconciler(store, remote, payloads, audit)


@pytest.fixture
def orchestrator(store, remote, connectivity, payloads, audit, reconciler):
    return SyncOrchestrator(
        store, remote, connectivity, payloads,
        audit=audit, navigate_delay_ms=1500, reconciler=reconciler,
    )


@pytest.fixture
def resync(store, remote, connectivity, payloads, audit, reconciler):
    return ResyncService(store, remote, connectivity, payloads, audit=audit, reconciler=reconciler)
