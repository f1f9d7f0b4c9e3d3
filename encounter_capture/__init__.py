"""Encounter-Capture: durability and correctness engine for encounter capture."""

__version__ = "1.0.0"
