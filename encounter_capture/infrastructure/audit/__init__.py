"""Audit infrastructure components.

This package provides the sync audit trail.
"""

from encounter_capture.infrastructure.audit.sync_audit_logger import SyncAuditLogger

__all__ = ['SyncAuditLogger']
