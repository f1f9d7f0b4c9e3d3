"""Sync Audit Logger.

This module provides an append-only trail of sync transitions: every local
envelope write, every remote create/update/submit call, every re-key and
every outcome reported to the user. Entries carry a wall-clock timestamp and
a monotonically increasing sequence number so ordering can be verified even
when two events share a timestamp.

Security Impact:
    - Creates an audit trail of every attempt to persist or transmit PHI
    - Entries reference encounters by storage key only, never by content
    - Trail is append-only; entries are copied out, never mutated in place

Architecture:
    - Infrastructure layer component implementing AuditTrailPort
    - Called from the sync orchestrator and resync service
    - In-memory buffer that callers may drain to persistent storage
"""

import itertools
import logging
import uuid
from datetime import datetime, timezone
from threading import Lock
from typing import List, Optional

from encounter_capture.domain.ports import AuditTrailPort

logger = logging.getLogger(__name__)


class SyncAuditLogger(AuditTrailPort):
    """Logger for tracking sync transition events.

    Example Usage:
        ```python
        audit = SyncAuditLogger()
        orchestrator = SyncOrchestrator(store, remote, connectivity, payloads, audit=audit)
        await orchestrator.submit(record)
        [e["event_type"] for e in audit.get_logs()]
        # ['local_write', 'remote_create', 'rekey', 'remote_submit', 'local_write', 'outcome']
        ```
    """

    def __init__(self, session_id: Optional[str] = None):
        """Initialize sync audit logger.

        Parameters:
            session_id: Identifier grouping events from one client session
        """
        self._logs: List[dict] = []
        self._sequence = itertools.count(1)
        self._lock = Lock()
        self._session_id = session_id or str(uuid.uuid4())

    def record_event(self, event_type: str, encounter_key: str, **details) -> None:
        """Append one event.

        Parameters:
            event_type: A SyncEvent value
            encounter_key: Storage key of the encounter involved
            **details: Additional non-PHI context (status, outcome, error)
        """
        event_name = getattr(event_type, "value", event_type)
        with self._lock:
            log_entry = {
                "event_id": str(uuid.uuid4()),
                "sequence": next(self._sequence),
                "event_type": event_name,
                "encounter_key": encounter_key,
                "recorded_at": datetime.now(timezone.utc),
                "session_id": self._session_id,
                "details": details,
            }
            self._logs.append(log_entry)
        logger.debug(f"Sync event {event_name} for encounter {encounter_key}")

    def events_for(self, encounter_key: str) -> List[dict]:
        """Events recorded for one key, in order."""
        with self._lock:
            return [entry.copy() for entry in self._logs if entry["encounter_key"] == encounter_key]

    def event_types(self) -> List[str]:
        with self._lock:
            return [entry["event_type"] for entry in self._logs]

    def get_logs(self) -> List[dict]:
        """Get all logged sync events, oldest first."""
        with self._lock:
            return [entry.copy() for entry in self._logs]

    def clear_logs(self) -> None:
        """Clear all logged events (after flushing to storage)."""
        with self._lock:
            self._logs.clear()
        logger.debug("Cleared sync audit logs")

    def get_log_count(self) -> int:
        with self._lock:
            return len(self._logs)

    def has_logs(self) -> bool:
        with self._lock:
            return len(self._logs) > 0
