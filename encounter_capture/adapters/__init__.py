"""Adapters layer for Encounter-Capture.

This module contains adapters that interface with external systems: the
local DuckDB envelope store and the remote encounter API. Adapters implement
Port interfaces defined in the domain layer.
"""
