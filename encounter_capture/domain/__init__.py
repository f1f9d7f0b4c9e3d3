"""Domain layer for Encounter-Capture.

This module contains the record model, the validation engine and the ports
the sync services depend on. Domain models are pure Python with no external
dependencies beyond Pydantic.
"""

from .encounter_record import (
    EncounterIdentity,
    EncounterRecord,
    EncounterSections,
    assemble_record,
)
from .envelope import OfflineEnvelope

__all__ = [
    "EncounterIdentity",
    "EncounterRecord",
    "EncounterSections",
    "assemble_record",
    "OfflineEnvelope",
]
