"""Unit tests for the encounter record model and section assembly."""

import pytest
from pydantic import ValidationError

from encounter_capture.domain.encounter_record import (
    LOCAL_ID_PREFIX,
    EncounterIdentity,
    EncounterRecord,
    EncounterSections,
    assemble_record,
)
from encounter_capture.domain.enums import EncounterStatus
from encounter_capture.domain.ports import IdentifierReconciliationError


class TestEncounterIdentity:
    """Test suite for EncounterIdentity."""

    def test_new_identity_has_unique_local_id(self):
        first, second = EncounterIdentity(), EncounterIdentity()

        assert first.local_id.startswith(LOCAL_ID_PREFIX)
        assert first.local_id != second.local_id
        assert first.server_id is None
        assert first.status == EncounterStatus.DRAFT

    def test_storage_key_prefers_server_id(self):
        identity = EncounterIdentity(local_id="temp_a")
        assert identity.storage_key == "temp_a"

        reconciled = identity.with_server_id("enc-7")
        assert reconciled.storage_key == "enc-7"
        assert reconciled.local_id == "temp_a"
        assert identity.server_id is None

    def test_server_id_assigned_once(self):
        identity = EncounterIdentity(local_id="temp_a").with_server_id("enc-7")

        assert identity.with_server_id("enc-7").server_id == "enc-7"
        with pytest.raises(IdentifierReconciliationError) as exc_info:
            identity.with_server_id("enc-8")
        assert exc_info.value.local_id == "temp_a"
        assert exc_info.value.server_id == "enc-7"

    def test_with_status(self):
        identity = EncounterIdentity().with_status(EncounterStatus.PENDING_SUBMISSION)
        assert identity.status == EncounterStatus.PENDING_SUBMISSION

    @pytest.mark.parametrize("placeholder", ["", "  ", "new", "temp_abc"])
    def test_placeholder_server_id_is_none(self, placeholder):
        identity = EncounterIdentity(local_id="temp_a", server_id=placeholder)
        record = EncounterRecord.from_document({"serverId": placeholder})

        assert identity.server_id is None
        assert identity.storage_key == "temp_a"
        assert record.server_id is None

    def test_server_id_is_trimmed(self):
        assert EncounterRecord.from_document({"serverId": " enc-3 "}).server_id == "enc-3"


class TestEncounterRecord:
    """Test suite for EncounterRecord snapshots."""

    def test_document_uses_camel_case(self, complete_record):
        document = complete_record.to_document()

        assert document["localId"] == complete_record.local_id
        assert document["serverId"] is None
        assert document["incidentForm"]["clinicName"] == "Acme Occupational Health"
        assert document["vitals"][0]["gcsTotal"] == "15"
        assert document["disclosureAcknowledgments"] == {"privacy": True, "treatment": True}

    def test_from_document_restores_snapshot(self, complete_record):
        assert EncounterRecord.from_document(complete_record.to_document()) == complete_record

    def test_unknown_section_keys_are_preserved(self):
        record = EncounterRecord.from_document({
            "incidentForm": {"clinicName": "Acme", "weather": "rain"},
        })

        assert record.to_document()["incidentForm"]["weather"] == "rain"

    def test_snapshot_is_immutable(self, complete_record):
        with pytest.raises(ValidationError):
            complete_record.narrative = "changed"

    def test_with_identity(self, draft_record):
        identity = draft_record.identity.with_server_id("enc-3").with_status(EncounterStatus.SUBMITTED)

        updated = draft_record.with_identity(identity)

        assert updated.server_id == "enc-3"
        assert updated.status == EncounterStatus.SUBMITTED
        assert updated.storage_key == "enc-3"
        assert updated.patient_form == draft_record.patient_form
        assert draft_record.server_id is None


class TestEncounterSections:
    """Test suite for section-local edit state."""

    def test_edit_merges_into_section(self):
        sections = EncounterSections()
        sections.edit("incident_form", clinic_name="Acme")
        sections.edit("incident_form", clinic_city="Springfield")

        incident = sections.snapshot("incident_form")
        assert incident.clinic_name == "Acme"
        assert incident.clinic_city == "Springfield"

    def test_edit_acknowledgments(self):
        sections = EncounterSections()
        sections.edit("disclosure_acknowledgments", privacy=True)
        sections.edit("disclosure_acknowledgments", treatment=False)

        assert sections.snapshot("disclosure_acknowledgments") == {"privacy": True, "treatment": False}

    def test_edit_rejects_list_sections(self):
        with pytest.raises(KeyError):
            EncounterSections().edit("vitals", pulse="80")

    def test_replace_rejects_unknown_part(self):
        with pytest.raises(KeyError):
            EncounterSections().replace("treatment_notes", [])

    def test_replace_validates_list_elements(self):
        sections = EncounterSections()
        sections.replace("vitals", [{"time": "10:42", "pulse": "88"}])

        assert sections.snapshot("vitals")[0].pulse == "88"

    def test_snapshots_are_independent(self):
        """Mutating a snapshot never leaks back into edit state."""
        sections = EncounterSections(assessments=[{"type": "primary"}])

        snapshot = sections.snapshot("assessments")
        snapshot.append({"type": "secondary"})
        snapshot[0]["type"] = "changed"

        assert sections.snapshot("assessments") == [{"type": "primary"}]

    def test_assemble_is_independent_of_edit_order(self):
        identity = EncounterIdentity(local_id="temp_fixed")

        first = EncounterSections()
        first.edit("patient_form", first_name="Jordan")
        first.replace("narrative", "Patient reports pain in left forearm.")
        first.edit("incident_form", clinic_name="Acme")

        second = EncounterSections()
        second.edit("incident_form", clinic_name="Acme")
        second.replace("narrative", "Patient reports pain in left forearm.")
        second.edit("patient_form", first_name="Jordan")

        assert assemble_record(first, identity) == assemble_record(second, identity)

    def test_assemble_stamps_identity(self):
        identity = EncounterIdentity(local_id="temp_x", server_id="enc-9", status=EncounterStatus.PENDING_SUBMISSION)

        record = assemble_record(EncounterSections(narrative="hello"), identity)

        assert record.local_id == "temp_x"
        assert record.server_id == "enc-9"
        assert record.status == EncounterStatus.PENDING_SUBMISSION
        assert record.narrative == "hello"

    def test_from_record_reassembles_same_snapshot(self, complete_record):
        sections = EncounterSections.from_record(complete_record)

        assert assemble_record(sections, complete_record.identity) == complete_record
