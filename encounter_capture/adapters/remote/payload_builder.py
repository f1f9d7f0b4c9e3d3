"""Remote Payload Builder.

Maps an EncounterRecord snapshot to the request bodies the remote encounter
service expects, and back.

The create/update body carries most flat fields twice, once in camelCase and
once in snake_case, followed by a ``formData`` block holding every section
as edited. The server reads either spelling, so both must be populated and
the key set and key order must stay exactly as listed in
``PAYLOAD_FIELD_MAP``. The pairing lives only in that table; nothing outside
this module knows about the second spelling.

Architecture:
    - Adapter-side mapping, the domain core only sees EncounterRecord
    - ``build_payload`` and ``read_payload`` are driven by the same table so
      the two directions cannot drift apart
"""

from dataclasses import dataclass
from typing import Any, Mapping, Optional

from encounter_capture.domain.encounter_record import EncounterRecord
from encounter_capture.domain.ports import PayloadBuilderPort

ENCOUNTER_TYPE = "clinical"
PAYLOAD_STATUS = "draft"


@dataclass(frozen=True)
class PayloadField:
    """One flat payload field.

    Attributes:
        camel: camelCase key (always emitted)
        snake: snake_case twin, or None for single-spelling keys
        part: Record part the value is read from
        attribute: Attribute of that part, or None when the part is a plain value
    """

    camel: str
    snake: Optional[str]
    part: str
    attribute: Optional[str] = None

    def read(self, record: EncounterRecord) -> Any:
        value = getattr(record, self.part)
        if self.attribute is not None:
            value = getattr(value, self.attribute)
        return value

    def keys(self) -> tuple[str, ...]:
        return (self.camel, self.snake) if self.snake else (self.camel,)


def _patient(camel: str, snake: str, attribute: str) -> PayloadField:
    return PayloadField(camel, snake, "patient_form", attribute)


def _incident(camel: str, snake: Optional[str], attribute: str) -> PayloadField:
    return PayloadField(camel, snake, "incident_form", attribute)


PAYLOAD_FIELD_MAP: tuple[PayloadField, ...] = (
    _patient("patientId", "patient_id", "id"),
    _patient("patientFirstName", "patient_first_name", "first_name"),
    _patient("patientLastName", "patient_last_name", "last_name"),
    _patient("patientDob", "patient_dob", "dob"),
    _patient("patientSsn", "patient_ssn", "ssn"),
    _patient("patientPhone", "patient_phone", "phone"),
    _patient("patientEmail", "patient_email", "email"),
    _patient("patientAddress", "patient_address", "street_address"),
    _patient("patientCity", "patient_city", "city"),
    _patient("patientState", "patient_state", "state"),
    _patient("patientEmployer", "patient_employer", "employer"),

    _incident("clinicName", "clinic_name", "clinic_name"),
    _incident("clinicAddress", "clinic_address", "clinic_street_address"),
    _incident("clinicCity", "clinic_city", "clinic_city"),
    _incident("clinicState", "clinic_state", "clinic_state"),
    _incident("patientContactTime", "patient_contact_time", "patient_contact_time"),
    _incident("clearedClinicTime", "cleared_clinic_time", "cleared_clinic_time"),
    _incident("location", None, "location"),
    _incident("massCasualty", "mass_casualty", "mass_casualty"),
    _incident("injuryClassification", "injury_classification", "injury_classification"),
    _incident("natureOfIllness", "nature_of_illness", "nature_of_illness"),
    _incident("mechanismOfInjury", "mechanism_of_injury", "mechanism_of_injury"),

    PayloadField("narrative", None, "narrative"),
    PayloadField("disposition", None, "disposition"),
    PayloadField("dispositionNotes", "disposition_notes", "disposition_notes"),
)

# formData key -> record document key
FORM_DATA_KEYS: tuple[tuple[str, str], ...] = (
    ("incidentForm", "incidentForm"),
    ("patientForm", "patientForm"),
    ("providers", "providers"),
    ("assessments", "assessments"),
    ("vitalsData", "vitals"),
    ("narrativeText", "narrative"),
    ("disposition", "disposition"),
    ("dispositionNotes", "dispositionNotes"),
    ("disclosureAcknowledgments", "disclosureAcknowledgments"),
)


def _blank_to_none(value: Any) -> Any:
    return value if value not in ("", None) else None


def build_payload(record: EncounterRecord) -> dict[str, Any]:
    """Build the create/update request body for ``record``.

    Parameters:
        record: Encounter snapshot

    Returns:
        dict: Flat dual-spelling fields, status, encounter type and formData
    """
    payload: dict[str, Any] = {}
    for mapping in PAYLOAD_FIELD_MAP:
        value = mapping.read(record)
        if mapping.camel == "patientId":
            value = _blank_to_none(value)
        for key in mapping.keys():
            payload[key] = value

        # status/encounterType follow dispositionNotes in the wire order
        if mapping.camel == "dispositionNotes":
            payload["status"] = PAYLOAD_STATUS
            payload["encounterType"] = ENCOUNTER_TYPE
            payload["encounter_type"] = ENCOUNTER_TYPE

    document = record.to_document()
    payload["formData"] = {form_key: document.get(doc_key) for form_key, doc_key in FORM_DATA_KEYS}
    return payload


def build_submission_payload(record: EncounterRecord) -> dict[str, Any]:
    """Body for submit-for-review: the camelCase record document itself."""
    return record.to_document()


def read_payload(payload: Mapping[str, Any], base: Optional[EncounterRecord] = None) -> EncounterRecord:
    """Rebuild a record from a create/update body.

    ``formData`` wins when present. Otherwise the flat fields are read,
    preferring the camelCase spelling and falling back to snake_case.

    Parameters:
        payload: Request body produced by ``build_payload`` (or a server echo)
        base: Record whose identity is kept; a fresh identity when None

    Returns:
        EncounterRecord
    """
    record = base or EncounterRecord()
    form_data = payload.get("formData")
    if isinstance(form_data, Mapping):
        document = record.to_document()
        for form_key, doc_key in FORM_DATA_KEYS:
            if form_key in form_data and form_data[form_key] is not None:
                document[doc_key] = form_data[form_key]
        return EncounterRecord.from_document(document)

    updates: dict[str, dict[str, Any]] = {}
    plain: dict[str, Any] = {}
    for mapping in PAYLOAD_FIELD_MAP:
        if mapping.camel in payload:
            value = payload[mapping.camel]
        elif mapping.snake and mapping.snake in payload:
            value = payload[mapping.snake]
        else:
            continue
        if mapping.attribute is None:
            plain[mapping.part] = value
        else:
            updates.setdefault(mapping.part, {})[mapping.attribute] = value

    changes: dict[str, Any] = dict(plain)
    for part, values in updates.items():
        changes[part] = getattr(record, part).model_copy(update=values)
    return record.model_copy(update=changes)


class EncounterPayloadBuilder(PayloadBuilderPort):
    """PayloadBuilderPort backed by ``PAYLOAD_FIELD_MAP``."""

    def build_payload(self, record: EncounterRecord) -> dict:
        return build_payload(record)

    def build_submission_payload(self, record: EncounterRecord) -> dict:
        return build_submission_payload(record)
