"""Remote adapters for Encounter-Capture.

The HTTP client for the remote encounter API and the payload builder that
maps records to its request bodies.
"""

from encounter_capture.adapters.remote.http_encounter_service import HttpEncounterService
from encounter_capture.adapters.remote.payload_builder import EncounterPayloadBuilder

__all__ = ["HttpEncounterService", "EncounterPayloadBuilder"]
