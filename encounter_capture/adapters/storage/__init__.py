"""Storage adapters for Encounter-Capture.

This module contains storage adapters that implement the LocalStorePort
interface for persisting offline envelopes.
"""

from encounter_capture.adapters.storage.duckdb_store import DuckDBEncounterStore

__all__ = ["DuckDBEncounterStore"]
