"""Validation Engine.

Pure functions over an encounter snapshot that produce a completeness
verdict, field-level errors tagged with their owning section, and a
completion ratio.

Validation never raises and never touches storage or the network, so
callers may run it speculatively (e.g. to enable a submit button) without
that counting as an attempted submission.

Architecture:
    - Iterates the ordered catalog in ``required_fields``
    - Server-side validation errors are mapped into the same ``FieldError``
      shape so both sources share one display contract
"""

import math
from collections.abc import Mapping
from dataclasses import dataclass
from typing import Any, Optional, Union

from encounter_capture.domain.encounter_record import LOCAL_ID_PREFIX, EncounterRecord
from encounter_capture.domain.enums import Section
from encounter_capture.domain.required_fields import (
    REQUIRED_FIELDS,
    SECTION_ORDER,
    RequiredField,
    fields_for_section,
    find_field,
    has_lead_provider,
    has_value,
)

RecordInput = Union[EncounterRecord, Mapping]

# Leading segment of a field path -> owning section.
FIELD_PREFIX_SECTIONS: dict[str, Section] = {
    "incidentForm": Section.INCIDENT,
    "patientForm": Section.PATIENT,
    "providers": Section.INCIDENT,
    "assessments": Section.ASSESSMENTS,
    "vitals": Section.VITALS,
    "vitalsData": Section.VITALS,
    "narrative": Section.NARRATIVE,
    "narrativeForm": Section.NARRATIVE,
    "narrativeText": Section.NARRATIVE,
    "disposition": Section.DISPOSITION,
    "dispositionNotes": Section.DISPOSITION,
    "disclosures": Section.SIGNATURES,
    "disclosureAcknowledgments": Section.SIGNATURES,
    "signatures": Section.SIGNATURES,
}

DEFAULT_ERROR_SECTION = Section.INCIDENT


@dataclass(frozen=True)
class FieldError:
    """A single field-level error, traceable to exactly one section."""

    field: str
    label: str
    section: Section
    element_ref: Optional[str] = None
    path: Optional[str] = None
    section_name: Optional[str] = None
    message: str = ""

    @classmethod
    def from_rule(cls, rule: RequiredField) -> "FieldError":
        return cls(
            field=rule.name,
            label=rule.label,
            section=rule.section,
            element_ref=rule.element_ref,
            path=rule.path,
            section_name=rule.section_name,
            message=f"{rule.label} is required",
        )


@dataclass(frozen=True)
class ValidationResult:
    """Completeness verdict for one snapshot.

    ``is_valid`` is decided by the error list alone; ``completion_percentage``
    is rounded for display and must not be used for comparisons.
    """

    is_valid: bool
    errors: tuple[FieldError, ...]
    completion_percentage: int
    completed_fields: int
    total_fields: int


@dataclass(frozen=True)
class FieldTarget:
    """Where the UI should scroll and focus for a given field."""

    section: Section
    element_ref: str


def _document(record: RecordInput) -> Mapping:
    if isinstance(record, EncounterRecord):
        return record.to_document()
    return record


def _percentage(completed: int, total: int) -> int:
    if total == 0:
        return 100
    # Round half up.
    return math.floor(completed * 100 / total + 0.5)


def _evaluate(document: Mapping, rules: tuple[RequiredField, ...]) -> ValidationResult:
    errors: list[FieldError] = []
    completed = 0
    total = 0
    for rule in rules:
        if not rule.is_required(document):
            continue
        total += 1
        if rule.is_completed(document):
            completed += 1
        else:
            errors.append(FieldError.from_rule(rule))

    return ValidationResult(
        is_valid=not errors,
        errors=tuple(errors),
        completion_percentage=_percentage(completed, total),
        completed_fields=completed,
        total_fields=total,
    )


def validate(record: RecordInput) -> ValidationResult:
    """Validate a snapshot against the full required-field catalog.

    Parameters:
        record: Encounter snapshot or its camelCase document

    Returns:
        ValidationResult: Verdict, errors in catalog order and completion
    """
    return _evaluate(_document(record), REQUIRED_FIELDS)


def validate_section(record: RecordInput, section: Section) -> ValidationResult:
    """Validate only the rules owned by ``section``."""
    return _evaluate(_document(record), fields_for_section(section))


def get_first_invalid_section(record: RecordInput) -> Optional[Section]:
    """Section of the first failing rule in catalog order, or None if valid."""
    errors = validate(record).errors
    return errors[0].section if errors else None


def group_errors_by_section(errors: tuple[FieldError, ...]) -> dict[Section, list[FieldError]]:
    grouped: dict[Section, list[FieldError]] = {}
    for error in errors:
        grouped.setdefault(error.section, []).append(error)
    return grouped


def sections_with_errors(errors: tuple[FieldError, ...]) -> list[Section]:
    """Sections that have at least one error, in workspace order."""
    flagged = {error.section for error in errors}
    return [section for section in SECTION_ORDER if section in flagged]


def errors_for_toast(errors: tuple[FieldError, ...], max_display: int = 3) -> tuple[list[FieldError], int]:
    """Split errors into the ones to display and a count of the rest."""
    displayed = list(errors[:max_display])
    return displayed, max(0, len(errors) - max_display)


def has_minimum_required_data(record: RecordInput) -> bool:
    """Quick check: patient name plus a lead provider."""
    document = _document(record)
    patient = document.get("patientForm") or {}
    has_name = has_value(patient.get("firstName")) and has_value(patient.get("lastName"))
    return has_name and has_lead_provider(document.get("providers"))


def validation_summary_message(result: ValidationResult) -> str:
    if result.is_valid:
        return "All required fields are complete. Ready to submit."
    count = len(result.errors)
    if count == 1:
        return f"1 required field is missing ({result.completion_percentage}% complete)"
    return f"{count} required fields are missing ({result.completion_percentage}% complete)"


def is_valid_encounter_id(encounter_id: Any) -> bool:
    """True if ``encounter_id`` can be used against the remote service.

    Empty ids, the ``new`` placeholder and client-local ids are rejected.
    """
    if not isinstance(encounter_id, str):
        return False
    trimmed = encounter_id.strip()
    if not trimmed or trimmed == "new":
        return False
    return not trimmed.startswith(LOCAL_ID_PREFIX)


def _leading_segment(path: str) -> str:
    return path.split(".", 1)[0].split("[", 1)[0]


def section_for_field(path: str) -> Section:
    """Map a field path to its owning section via the prefix table."""
    prefix = _leading_segment(path)
    if prefix in FIELD_PREFIX_SECTIONS:
        return FIELD_PREFIX_SECTIONS[prefix]
    rule = find_field(prefix)
    if rule is not None:
        return rule.section
    return DEFAULT_ERROR_SECTION


def map_server_errors(errors: Mapping[str, Any]) -> list[FieldError]:
    """Convert server-side validation errors into ``FieldError`` values.

    Parameters:
        errors: Field path -> message (or list of messages)

    Returns:
        list[FieldError]: One error per field, in the order received
    """
    mapped: list[FieldError] = []
    for path, detail in errors.items():
        if isinstance(detail, (list, tuple)):
            message = "; ".join(str(item) for item in detail)
        else:
            message = str(detail)
        section = section_for_field(path)
        rule = next((r for r in REQUIRED_FIELDS if r.path == path), None)
        field_name = path.rsplit(".", 1)[-1]
        mapped.append(FieldError(
            field=field_name,
            label=rule.label if rule else field_name,
            section=section,
            element_ref=rule.element_ref if rule else None,
            path=path,
            message=message,
        ))
    return mapped


def resolve_field_target(field_name: str, section: Section) -> FieldTarget:
    """Resolve the unique UI target for a field within its owning section."""
    rule = find_field(field_name, section)
    if rule is not None:
        return FieldTarget(section=section, element_ref=rule.element_ref)
    return FieldTarget(section=section, element_ref=field_name)
