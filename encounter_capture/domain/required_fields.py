"""Required Field Catalog.

The ordered catalog of required-field rules the validation engine iterates.
Declaration order matters: it decides which section is reported as the
first invalid one.

Each rule names its owning section, a field path into the camelCase record
document, a human label and the element the UI should focus. A path segment
ending in ``[]`` fans out over a list, so ``vitals[].pulse`` resolves to the
pulse of every vitals row.

Architecture:
    - Pure data plus small predicate helpers, no infrastructure dependencies
    - Rules are evaluated against ``EncounterRecord.to_document()``
"""

from collections.abc import Mapping
from dataclasses import dataclass
from typing import Any, Callable, Optional

from encounter_capture.domain.enums import Section

MIN_NARRATIVE_LENGTH = 25


def has_value(value: Any) -> bool:
    """True unless ``value`` is missing, blank text or an empty collection."""
    if value is None:
        return False
    if isinstance(value, str):
        return len(value.strip()) > 0
    if isinstance(value, (list, tuple, dict)):
        return len(value) > 0
    return True


def resolve_path(document: Mapping, path: str) -> Any:
    """Resolve a dotted field path against a record document.

    Returns a list of values when the path contains a ``[]`` segment,
    otherwise the single value (None when any step is missing).
    """
    current: list[Any] = [document]
    fans_out = False
    for segment in path.split("."):
        many = segment.endswith("[]")
        name = segment[:-2] if many else segment
        resolved: list[Any] = []
        for value in current:
            child = value.get(name) if isinstance(value, Mapping) else None
            if many:
                fans_out = True
                if isinstance(child, list):
                    resolved.extend(child)
            else:
                resolved.append(child)
        current = resolved
    if fans_out:
        return current
    return current[0] if current else None


def any_value(values: Any) -> bool:
    return isinstance(values, list) and any(has_value(v) for v in values)


def has_lead_provider(providers: Any) -> bool:
    if not isinstance(providers, list):
        return False
    return any(
        isinstance(p, Mapping) and has_value(p.get("name")) and p.get("role") == "lead"
        for p in providers
    )


def has_min_items(minimum: int) -> Callable[[Any], bool]:
    def check(items: Any) -> bool:
        return isinstance(items, list) and len(items) >= minimum
    return check


def has_min_text_length(minimum: int) -> Callable[[Any], bool]:
    def check(text: Any) -> bool:
        return isinstance(text, str) and len(text.strip()) >= minimum
    return check


def all_acknowledged(acknowledgments: Any) -> bool:
    return (
        isinstance(acknowledgments, Mapping)
        and len(acknowledgments) > 0
        and all(value is True for value in acknowledgments.values())
    )


def notifications_opted_in(document: Mapping) -> bool:
    return resolve_path(document, "patientForm.optInNotifications") is True


@dataclass(frozen=True)
class RequiredField:
    """One required-field rule.

    Attributes:
        name: Field name reported in errors
        label: Human-readable label
        path: Dotted path into the record document
        element_ref: UI element to scroll to and focus
        section: Owning section
        section_name: Group heading within the section
        check: Predicate over the resolved value (defaults to presence)
        required_when: Predicate over the whole document; when it returns
            False the rule is skipped and does not count toward completion
    """

    name: str
    label: str
    path: str
    element_ref: str
    section: Section
    section_name: str
    check: Optional[Callable[[Any], bool]] = None
    required_when: Optional[Callable[[Mapping], bool]] = None

    def is_required(self, document: Mapping) -> bool:
        return self.required_when is None or self.required_when(document)

    def is_completed(self, document: Mapping) -> bool:
        value = resolve_path(document, self.path)
        if self.check is not None:
            return self.check(value)
        if "[]" in self.path:
            return any_value(value)
        return has_value(value)


def _incident(name, label, path, element_ref, section_name, **kwargs) -> RequiredField:
    return RequiredField(name, label, path, element_ref, Section.INCIDENT, section_name, **kwargs)


def _patient(name, label, section_name, **kwargs) -> RequiredField:
    return RequiredField(name, label, f"patientForm.{name}", name, Section.PATIENT, section_name, **kwargs)


def _vital(name, label, key=None) -> RequiredField:
    return RequiredField(
        name, label, f"vitals[].{key or name}", "vitals-table",
        Section.VITALS, "Required Vitals (min 1 complete set)",
    )


# Every section in workspace order, including sections without rules.
SECTION_ORDER: tuple[Section, ...] = tuple(Section)

REQUIRED_FIELDS: tuple[RequiredField, ...] = (
    _incident("clinicName", "Clinic Name", "incidentForm.clinicName",
              "incidentClinicName", "Clinic Information"),
    _incident("clinicStreetAddress", "Street Address", "incidentForm.clinicStreetAddress",
              "incidentClinicStreetAddress", "Clinic Information"),
    _incident("clinicCity", "City", "incidentForm.clinicCity",
              "incidentClinicCity", "Clinic Information"),
    _incident("clinicState", "State", "incidentForm.clinicState",
              "incidentClinicState", "Clinic Information"),
    _incident("patientContactTime", "Patient Contact Time", "incidentForm.patientContactTime",
              "incidentPatientContactTime", "Time Fields"),
    _incident("clearedClinicTime", "Cleared Clinic Time", "incidentForm.clearedClinicTime",
              "incidentClearedClinicTime", "Time Fields"),
    _incident("location", "Location of Injury/Illness", "incidentForm.location",
              "incidentLocation", "Incident Details"),
    _incident("injuryClassifiedByName", "Classified By (Name)", "incidentForm.injuryClassifiedByName",
              "injuryClassifiedByFirstName", "Incident Details"),
    _incident("injuryClassification", "Classification", "incidentForm.injuryClassification",
              "injuryClassification", "Incident Details"),
    _incident("leadProvider", "Lead Provider (min 1)", "providers",
              "provider-info", "Provider Information", check=has_lead_provider),

    _patient("firstName", "First Name", "Demographics"),
    _patient("lastName", "Last Name", "Demographics"),
    _patient("dob", "Date of Birth", "Demographics"),
    _patient("phone", "Phone Number", "Demographics", required_when=notifications_opted_in),
    _patient("email", "Email Address", "Demographics", required_when=notifications_opted_in),
    _patient("streetAddress", "Street Address", "Home Address"),
    _patient("city", "City", "Home Address"),
    _patient("state", "State", "Home Address"),
    _patient("employer", "Employer", "Employment"),
    _patient("supervisorName", "Supervisor Name", "Employment"),
    _patient("supervisorPhone", "Supervisor Phone", "Employment"),
    _patient("medicalHistory", "Medical History", "Medical History"),
    _patient("allergies", "Allergies", "Medical History"),
    _patient("currentMedications", "Current Medications", "Medical History"),

    RequiredField("minimumAssessment", "Minimum 1 Assessment", "assessments",
                  "assessment-content", Section.ASSESSMENTS, "Assessment Requirements",
                  check=has_min_items(1)),

    _vital("time", "Time"),
    _vital("date", "Date"),
    _vital("avpu", "AVPU"),
    _vital("bp", "Blood Pressure"),
    _vital("bpTaken", "BP Method"),
    _vital("pulse", "Pulse"),
    _vital("respiration", "Respiratory Rate"),
    _vital("gcs", "GCS", key="gcsTotal"),

    RequiredField("narrative", f"Narrative (min {MIN_NARRATIVE_LENGTH} chars)", "narrative",
                  "clinical-narrative", Section.NARRATIVE, "Clinical Narrative",
                  check=has_min_text_length(MIN_NARRATIVE_LENGTH)),

    RequiredField("disclosures", "Disclosures Acknowledged", "disclosureAcknowledgments",
                  "disclosures", Section.SIGNATURES, "Disclosures & Signatures",
                  check=all_acknowledged),
)


def fields_for_section(section: Section) -> tuple[RequiredField, ...]:
    """Rules owned by ``section``, in catalog order."""
    return tuple(rule for rule in REQUIRED_FIELDS if rule.section == section)


def find_field(field_name: str, section: Optional[Section] = None) -> Optional[RequiredField]:
    """Look up a rule by field name, optionally restricted to one section."""
    for rule in REQUIRED_FIELDS:
        if rule.name == field_name and (section is None or rule.section == section):
            return rule
    return None
