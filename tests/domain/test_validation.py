"""Unit tests for the validation engine."""

from encounter_capture.domain.encounter_record import EncounterRecord
from encounter_capture.domain.enums import Section
from encounter_capture.domain.required_fields import REQUIRED_FIELDS, resolve_path
from encounter_capture.domain.validation import (
    errors_for_toast,
    get_first_invalid_section,
    group_errors_by_section,
    has_minimum_required_data,
    is_valid_encounter_id,
    map_server_errors,
    resolve_field_target,
    section_for_field,
    sections_with_errors,
    validate,
    validate_section,
    validation_summary_message,
)


def _with(document: dict, **changes) -> EncounterRecord:
    document = dict(document)
    document.update(changes)
    return EncounterRecord.from_document(document)


class TestValidate:
    """Test suite for full-record validation."""

    def test_complete_record_is_valid(self, complete_record):
        """A record satisfying the whole catalog has no errors."""
        result = validate(complete_record)

        assert result.is_valid
        assert result.errors == ()
        assert result.completion_percentage == 100
        assert result.completed_fields == result.total_fields == 33

    def test_missing_clinic_name_and_short_narrative(self, complete_document):
        """Both failures are reported, each tagged to its own section."""
        complete_document["incidentForm"]["clinicName"] = ""
        record = _with(complete_document, narrative="Too short")

        result = validate(record)

        assert not result.is_valid
        assert [(e.field, e.section) for e in result.errors] == [
            ("clinicName", Section.INCIDENT),
            ("narrative", Section.NARRATIVE),
        ]
        assert get_first_invalid_section(record) == Section.INCIDENT
        assert result.completion_percentage == 94

    def test_empty_record_reports_catalog_order(self):
        """Errors follow catalog declaration order."""
        result = validate(EncounterRecord())

        assert result.completion_percentage == 0
        assert [e.field for e in result.errors] == [
            rule.name for rule in REQUIRED_FIELDS if rule.required_when is None
        ]
        assert result.errors[0].message == "Clinic Name is required"
        assert result.errors[0].element_ref == "incidentClinicName"

    def test_validation_is_deterministic(self, complete_document):
        """The same snapshot always yields the same result."""
        del complete_document["vitals"]
        record = EncounterRecord.from_document(complete_document)

        assert validate(record) == validate(record)

    def test_accepts_plain_document(self, complete_document):
        """Validation works on the camelCase document as well as the model."""
        assert validate(complete_document).is_valid

    def test_whitespace_only_values_are_missing(self, complete_document):
        complete_document["patientForm"]["employer"] = "   "

        result = validate(complete_document)

        assert [e.field for e in result.errors] == ["employer"]
        assert result.errors[0].section == Section.PATIENT

    def test_phone_and_email_only_required_after_opt_in(self, complete_document):
        """Notification opt-in makes phone and email required."""
        assert validate(complete_document).is_valid

        complete_document["patientForm"]["optInNotifications"] = True
        result = validate(complete_document)

        assert [e.field for e in result.errors] == ["phone", "email"]
        assert result.total_fields == 35
        assert result.completion_percentage == 94

    def test_vitals_rule_satisfied_by_any_row(self, complete_document):
        """A vitals value counts if any row carries it."""
        row = complete_document["vitals"][0]
        complete_document["vitals"] = [
            {**row, "pulse": ""},
            {"time": "11:00", "pulse": "92"},
        ]

        assert validate(complete_document).is_valid

    def test_gcs_missing_from_every_row(self, complete_document):
        for row in complete_document["vitals"]:
            row.pop("gcsTotal")

        result = validate(complete_document)

        assert len(result.errors) == 1
        error = result.errors[0]
        assert error.field == "gcs"
        assert error.section == Section.VITALS
        assert error.element_ref == "vitals-table"

    def test_lead_provider_requires_lead_role(self, complete_document):
        complete_document["providers"] = [{"name": "Dana Ortiz", "role": "assist"}]

        result = validate(complete_document)

        assert [e.field for e in result.errors] == ["leadProvider"]
        assert result.errors[0].section == Section.INCIDENT

    def test_disclosures_must_all_be_acknowledged(self, complete_document):
        complete_document["disclosureAcknowledgments"]["treatment"] = False

        result = validate(complete_document)

        assert [e.field for e in result.errors] == ["disclosures"]
        assert result.errors[0].section == Section.SIGNATURES

    def test_narrative_length_ignores_surrounding_whitespace(self, complete_document):
        complete_document["narrative"] = "   " + "x" * 24 + "   "

        assert [e.field for e in validate(complete_document).errors] == ["narrative"]


class TestValidateSection:
    """Test suite for per-section validation and completion rounding."""

    def test_completion_rounds_half_up(self):
        """One of eight vitals fields is 12.5%, displayed as 13%."""
        record = EncounterRecord.from_document({"vitals": [{"time": "10:45"}]})

        result = validate_section(record, Section.VITALS)

        assert result.completed_fields == 1
        assert result.total_fields == 8
        assert result.completion_percentage == 13

    def test_section_without_rules_is_complete(self):
        result = validate_section(EncounterRecord(), Section.TREATMENT)

        assert result.is_valid
        assert result.completion_percentage == 100
        assert result.total_fields == 0

    def test_only_section_errors_reported(self, complete_document):
        complete_document["incidentForm"]["location"] = None
        complete_document["narrative"] = ""

        result = validate_section(complete_document, Section.NARRATIVE)

        assert [e.field for e in result.errors] == ["narrative"]


class TestErrorPresentation:
    """Test suite for grouping, toasts and summary messages."""

    def test_group_and_order_sections(self):
        errors = validate(EncounterRecord()).errors

        grouped = group_errors_by_section(errors)

        assert set(grouped) == {
            Section.INCIDENT, Section.PATIENT, Section.ASSESSMENTS,
            Section.VITALS, Section.NARRATIVE, Section.SIGNATURES,
        }
        assert len(grouped[Section.VITALS]) == 8
        assert sections_with_errors(errors) == [
            Section.INCIDENT, Section.PATIENT, Section.ASSESSMENTS,
            Section.VITALS, Section.NARRATIVE, Section.SIGNATURES,
        ]

    def test_errors_for_toast_splits_overflow(self):
        errors = validate(EncounterRecord()).errors

        shown, hidden = errors_for_toast(errors)

        assert len(shown) == 3
        assert hidden == len(errors) - 3

    def test_summary_messages(self, complete_document):
        assert validation_summary_message(validate(complete_document)) == (
            "All required fields are complete. Ready to submit."
        )

        complete_document["patientForm"]["dob"] = None
        assert validation_summary_message(validate(complete_document)) == (
            "1 required field is missing (97% complete)"
        )

        complete_document["patientForm"]["city"] = None
        assert validation_summary_message(validate(complete_document)) == (
            "2 required fields are missing (94% complete)"
        )

    def test_has_minimum_required_data(self, draft_record, complete_record):
        assert not has_minimum_required_data(draft_record)
        assert has_minimum_required_data(complete_record)


class TestEncounterIds:
    """Test suite for remote identifier checks."""

    def test_invalid_ids(self):
        for value in (None, "", "   ", "new", "temp_1234", 42):
            assert not is_valid_encounter_id(value)

    def test_server_ids(self):
        assert is_valid_encounter_id("enc-1")
        assert is_valid_encounter_id(" 8f3c2a ")


class TestServerErrorMapping:
    """Test suite for mapping server-side validation errors to sections."""

    def test_narrative_form_path_maps_to_narrative(self):
        errors = map_server_errors({"narrativeForm.text": "too short"})

        assert len(errors) == 1
        assert errors[0].section == Section.NARRATIVE
        assert errors[0].path == "narrativeForm.text"
        assert errors[0].message == "too short"

    def test_known_path_uses_catalog_label(self):
        errors = map_server_errors({"patientForm.firstName": ["is required", "too short"]})

        assert errors[0].section == Section.PATIENT
        assert errors[0].label == "First Name"
        assert errors[0].element_ref == "firstName"
        assert errors[0].message == "is required; too short"

    def test_section_for_field(self):
        assert section_for_field("vitals[0].pulse") == Section.VITALS
        assert section_for_field("disclosureAcknowledgments.privacy") == Section.SIGNATURES
        assert section_for_field("leadProvider") == Section.INCIDENT
        assert section_for_field("somethingElse") == Section.INCIDENT

    def test_resolve_field_target(self):
        target = resolve_field_target("clinicName", Section.INCIDENT)
        assert target.element_ref == "incidentClinicName"

        fallback = resolve_field_target("unknownField", Section.PATIENT)
        assert fallback.section == Section.PATIENT
        assert fallback.element_ref == "unknownField"


class TestResolvePath:
    """Test suite for field path resolution."""

    def test_fan_out_collects_every_row(self):
        document = {"vitals": [{"pulse": "80"}, {}, {"pulse": "90"}]}

        assert resolve_path(document, "vitals[].pulse") == ["80", None, "90"]

    def test_missing_step_is_none(self):
        assert resolve_path({}, "patientForm.firstName") is None
