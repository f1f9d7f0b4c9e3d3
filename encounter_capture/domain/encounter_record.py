"""Encounter Record Model.

This module defines the canonical representation of one encounter in
progress and the pure projection that assembles it from section-local
edit state.

Each workspace section (incident, patient, assessments, vitals, narrative,
disposition, signatures) owns an independent sub-document. Sections are
edited in isolation through ``EncounterSections`` and flattened on demand
by ``assemble_record`` into an ``EncounterRecord`` snapshot, which is the
exact input to both the validation engine and the payload builder.

Security Impact:
    - Records carry PHI; only storage keys are ever written to logs
    - Snapshots are immutable so a validated record cannot drift before it
      is persisted or sent

Architecture:
    - Pure domain models with zero infrastructure dependencies
    - Serialized documents use camelCase keys; every validation field path
      resolves against that document shape
    - Identity (local id, server id, lifecycle status) is passed explicitly,
      there is no ambient "current encounter"
"""

import copy
import uuid
from typing import Any, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator
from pydantic.alias_generators import to_camel

from encounter_capture.domain.enums import EncounterStatus
from encounter_capture.domain.ports import IdentifierReconciliationError

LOCAL_ID_PREFIX = "temp_"


def new_local_id() -> str:
    """Generate a client-local encounter identifier, unique per encounter."""
    return f"{LOCAL_ID_PREFIX}{uuid.uuid4()}"


def _server_id_or_none(value: Any) -> Any:
    """Placeholders (empty, ``new``, client-local ids) are not server ids."""
    if isinstance(value, str):
        trimmed = value.strip()
        if not trimmed or trimmed == "new" or trimmed.startswith(LOCAL_ID_PREFIX):
            return None
        return trimmed
    return value


class _SectionDocument(BaseModel):
    """Base for section sub-documents.

    Unknown keys are preserved so widgets can carry fields the core does not
    interpret.
    """

    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        extra="allow",
        frozen=True,
    )


class IncidentForm(_SectionDocument):
    """Incident section: clinic, timing and classification details."""

    clinic_name: Optional[str] = Field(None, description="Name of the treating clinic")
    clinic_street_address: Optional[str] = Field(None, description="Clinic street address")
    clinic_city: Optional[str] = None
    clinic_state: Optional[str] = None
    clinic_county: Optional[str] = None
    clinic_unit_number: Optional[str] = None
    patient_contact_time: Optional[str] = Field(None, description="Time of first patient contact")
    cleared_clinic_time: Optional[str] = Field(None, description="Time the clinic was cleared")
    may_day_time: Optional[str] = None
    transfer_of_care_time: Optional[str] = None
    location: Optional[str] = Field(None, description="Location of injury or illness")
    injury_classified_by_name: Optional[str] = None
    injury_classification: Optional[str] = None
    mass_casualty: Optional[str] = None
    nature_of_illness: Optional[str] = None
    mechanism_of_injury: Optional[str] = None


class PatientForm(_SectionDocument):
    """Patient section: demographics, contact, employment and history."""

    id: Optional[str] = Field(None, description="Existing patient identifier, if known")
    first_name: Optional[str] = None
    last_name: Optional[str] = None
    dob: Optional[str] = Field(None, description="Date of birth")
    sex: Optional[str] = None
    ssn: Optional[str] = None
    phone: Optional[str] = None
    email: Optional[str] = None
    opt_in_notifications: bool = Field(
        default=False,
        description="Patient asked for notifications; makes phone and email required",
    )
    street_address: Optional[str] = None
    city: Optional[str] = None
    state: Optional[str] = None
    county: Optional[str] = None
    employer: Optional[str] = None
    supervisor_name: Optional[str] = None
    supervisor_phone: Optional[str] = None
    medical_history: Optional[str] = None
    allergies: Optional[str] = None
    current_medications: Optional[str] = None


class Provider(_SectionDocument):
    """A provider attending the encounter."""

    id: Optional[str] = None
    name: Optional[str] = None
    role: Optional[str] = Field(None, description="Provider role, e.g. 'lead'")


class VitalsEntry(_SectionDocument):
    """One row of the vitals table."""

    time: Optional[str] = None
    date: Optional[str] = None
    avpu: Optional[str] = None
    bp: Optional[str] = None
    bp_taken: Optional[str] = None
    pulse: Optional[str] = None
    respiration: Optional[str] = None
    spo2: Optional[str] = None
    gcs_total: Optional[str] = None


# Sub-document name -> model used to validate edits. List parts map to the
# model of one element; ``None`` means a plain value.
RECORD_PARTS: dict[str, Optional[type]] = {
    "incident_form": IncidentForm,
    "patient_form": PatientForm,
    "providers": Provider,
    "assessments": None,
    "vitals": VitalsEntry,
    "narrative": None,
    "disposition": None,
    "disposition_notes": None,
    "disclosure_acknowledgments": None,
    "provider_signature": None,
    "patient_signature": None,
}

_LIST_PARTS = {"providers", "assessments", "vitals"}
_MAPPING_PARTS = {"incident_form", "patient_form", "disclosure_acknowledgments"}


class EncounterIdentity(BaseModel):
    """The three identifiers an encounter carries over its lifetime.

    Parameters:
        local_id: Client-generated identifier, created at first edit
        server_id: Identifier assigned by the remote service on first create
        status: Lifecycle status of the record
    """

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, frozen=True)

    local_id: str = Field(default_factory=new_local_id)
    server_id: Optional[str] = None
    status: EncounterStatus = EncounterStatus.DRAFT

    normalize_server_id = field_validator("server_id", mode="before")(_server_id_or_none)

    @property
    def storage_key(self) -> str:
        """Latest known key: the server id once assigned, else the local id."""
        return self.server_id or self.local_id

    def with_server_id(self, server_id: str) -> "EncounterIdentity":
        """Return a copy carrying ``server_id``.

        Raises:
            IdentifierReconciliationError: If a different server id was
                already assigned
        """
        if self.server_id is not None and self.server_id != server_id:
            raise IdentifierReconciliationError(
                f"Encounter {self.local_id} already reconciled to {self.server_id}",
                local_id=self.local_id,
                server_id=self.server_id,
            )
        return self.model_copy(update={"server_id": server_id})

    def with_status(self, status: EncounterStatus) -> "EncounterIdentity":
        return self.model_copy(update={"status": status})


class EncounterRecord(BaseModel):
    """Canonical snapshot of one encounter in progress.

    Every section is optional while editing. The aggregate must satisfy the
    required-field catalog before a submission is accepted.
    """

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, frozen=True)

    local_id: str = Field(default_factory=new_local_id)
    server_id: Optional[str] = None
    status: EncounterStatus = EncounterStatus.DRAFT

    normalize_server_id = field_validator("server_id", mode="before")(_server_id_or_none)

    incident_form: IncidentForm = Field(default_factory=IncidentForm)
    patient_form: PatientForm = Field(default_factory=PatientForm)
    providers: list[Provider] = Field(default_factory=list)
    assessments: list[dict[str, Any]] = Field(default_factory=list)
    vitals: list[VitalsEntry] = Field(default_factory=list)
    narrative: Optional[str] = None
    disposition: Optional[str] = None
    disposition_notes: Optional[str] = None
    disclosure_acknowledgments: dict[str, bool] = Field(default_factory=dict)
    provider_signature: Optional[str] = None
    patient_signature: Optional[str] = None

    @property
    def identity(self) -> EncounterIdentity:
        return EncounterIdentity(
            local_id=self.local_id,
            server_id=self.server_id,
            status=self.status,
        )

    @property
    def storage_key(self) -> str:
        return self.identity.storage_key

    def with_identity(self, identity: EncounterIdentity) -> "EncounterRecord":
        """Return a copy of this snapshot carrying ``identity``."""
        return self.model_copy(update={
            "local_id": identity.local_id,
            "server_id": identity.server_id,
            "status": identity.status,
        })

    def to_document(self) -> dict[str, Any]:
        """Serialize to the camelCase document used for validation and storage."""
        return self.model_dump(by_alias=True, mode="json")

    @classmethod
    def from_document(cls, document: dict[str, Any]) -> "EncounterRecord":
        return cls.model_validate(document)


class EncounterSections:
    """Section-local edit state for one encounter.

    Each sub-document is replaced wholesale on every edit, so sections never
    share mutable state and an edit in one section cannot leak into another.

    Example Usage:
        ```python
        sections = EncounterSections()
        sections.edit("incident_form", clinic_name="Acme Occupational Health")
        sections.replace("vitals", [{"time": "10:42", "pulse": "88"}])
        record = assemble_record(sections, EncounterIdentity())
        ```
    """

    def __init__(self, **parts: Any):
        self._parts: dict[str, Any] = {}
        for name, value in parts.items():
            self.replace(name, value)

    @classmethod
    def from_record(cls, record: EncounterRecord) -> "EncounterSections":
        """Load edit state from an existing snapshot (e.g. an offline envelope)."""
        sections = cls()
        for name in RECORD_PARTS:
            sections._parts[name] = copy.deepcopy(getattr(record, name))
        return sections

    def edit(self, part: str, **changes: Any) -> Any:
        """Merge ``changes`` into a mapping sub-document.

        Parameters:
            part: Name of a mapping part (``incident_form``, ``patient_form``
                or ``disclosure_acknowledgments``)
            **changes: Field values keyed by their snake_case name

        Returns:
            The new sub-document

        Raises:
            KeyError: If ``part`` is not a mapping part
        """
        if part not in _MAPPING_PARTS:
            raise KeyError(f"'{part}' is not an editable mapping section")

        model = RECORD_PARTS[part]
        current = self._parts.get(part)
        if model is None:
            merged = {**(current or {}), **changes}
        else:
            base = current.model_dump() if current is not None else {}
            merged = model.model_validate({**base, **changes})
        self._parts[part] = merged
        return merged

    def replace(self, part: str, value: Any) -> None:
        """Replace a sub-document wholesale, validating list elements."""
        if part not in RECORD_PARTS:
            raise KeyError(f"Unknown record part: '{part}'")

        model = RECORD_PARTS[part]
        if part in _LIST_PARTS:
            items = list(value or [])
            if model is not None:
                items = [model.model_validate(item) for item in items]
            else:
                items = [dict(item) for item in items]
            self._parts[part] = items
        elif model is not None and value is not None:
            self._parts[part] = model.model_validate(value)
        else:
            self._parts[part] = copy.deepcopy(value)

    def snapshot(self, part: str) -> Any:
        """Return an independent copy of one sub-document."""
        return copy.deepcopy(self._parts.get(part))

    def parts(self) -> dict[str, Any]:
        """Return independent copies of every sub-document that has been set."""
        return {name: self.snapshot(name) for name in RECORD_PARTS if name in self._parts}


def assemble_record(sections: EncounterSections, identity: EncounterIdentity) -> EncounterRecord:
    """Project section edit state and identity into one canonical snapshot.

    The projection is deterministic and side-effect free: the same section
    states always produce the same snapshot regardless of edit order.

    Parameters:
        sections: Section-local edit state
        identity: Identifiers and lifecycle status to stamp on the snapshot

    Returns:
        EncounterRecord: Immutable snapshot
    """
    values = {name: value for name, value in sections.parts().items() if value is not None}
    return EncounterRecord(
        local_id=identity.local_id,
        server_id=identity.server_id,
        status=identity.status,
        **values,
    )
