"""Domain Ports - Abstract Contracts for Encounter Capture.

This module defines the Port interfaces (abstract contracts) that Adapters must implement.
Following Hexagonal Architecture, the Domain Core defines what it needs, not how it's provided.

Security Impact:
    - The local store contract makes the durable write an explicit, checked step
    - Remote failures are typed so authentication problems are never mistaken
      for plain connectivity loss
    - Error messages carry storage keys, never record contents

Architecture:
    - Pure abstract interfaces with zero infrastructure dependencies
    - Adapters (DuckDB store, HTTP encounter service, connectivity monitor)
      implement these ports
    - The sync orchestrator depends only on these contracts
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Generic, Optional, TypeVar, Union

if TYPE_CHECKING:
    from encounter_capture.domain.encounter_record import EncounterRecord
    from encounter_capture.domain.envelope import OfflineEnvelope

# Type variable for Result generic
T = TypeVar('T')


# ============================================================================
# Result Type for Success/Failure Communication
# ============================================================================

@dataclass(frozen=True)
class Result(Generic[T]):
    """Result type for communicating success or failure without exceptions.

    Storage operations report through Result so the orchestrator can decide,
    without exception plumbing, whether the durable write happened before it
    is allowed to touch the network.

    Attributes:
        success: True if the operation succeeded, False otherwise
        value: The successful result value (only present if success=True)
        error: Error information (only present if success=False)
        error_type: Type of error (StorageError, LocalWriteError, etc.)
        error_details: Additional error context (key, operation, etc.)

    Example:
        ```python
        result = store.save_offline(key, envelope)
        if result.is_failure():
            return SyncOutcome.local_write_failed(result.error)
        ```
    """

    success: bool
    value: Optional[T] = None
    error: Optional[str] = None
    error_type: Optional[str] = None
    error_details: Optional[dict] = None

    @classmethod
    def success_result(cls, value: T) -> 'Result[T]':
        """Create a successful result.

        Parameters:
            value: The successful result value

        Returns:
            Result: Success result with the value
        """
        return cls(success=True, value=value)

    @classmethod
    def failure_result(
        cls,
        error: Union[str, Exception],
        error_type: Optional[str] = None,
        error_details: Optional[dict] = None
    ) -> 'Result[T]':
        """Create a failure result.

        Parameters:
            error: Error message or exception
            error_type: Type of error (e.g., "StorageError", "LocalWriteError")
            error_details: Additional context (key, operation, etc.)

        Returns:
            Result: Failure result with error information
        """
        error_message = str(error) if isinstance(error, Exception) else error
        error_type_name = error_type or (type(error).__name__ if isinstance(error, Exception) else "UnknownError")

        return cls(
            success=False,
            value=None,
            error=error_message,
            error_type=error_type_name,
            error_details=error_details or {}
        )

    def is_success(self) -> bool:
        """Check if result is successful."""
        return self.success

    def is_failure(self) -> bool:
        """Check if result is a failure."""
        return not self.success


# ============================================================================
# Custom Exception Hierarchy
# ============================================================================

class EncounterCaptureError(Exception):
    """Base exception for all encounter capture errors."""
    pass


class StorageError(EncounterCaptureError):
    """Raised when the local durability layer cannot complete an operation.

    Attributes:
        operation: The storage operation that failed
        details: Additional error context
    """

    def __init__(self, message: str, operation: Optional[str] = None, details: Optional[dict] = None):
        super().__init__(message)
        self.operation = operation
        self.details = details or {}


class LocalWriteError(StorageError):
    """Raised when an offline envelope could not be written.

    This is the one failure where data loss is possible; it must be surfaced
    to the user and never downgraded to "sync pending".
    """
    pass


class RemoteServiceError(EncounterCaptureError):
    """Raised when a call to the remote encounter service fails.

    Attributes:
        status_code: HTTP status code, or 0 when no response was received
        body: Response body (may be empty)
    """

    def __init__(self, message: str, status_code: int = 0, body: str = ""):
        super().__init__(message)
        self.status_code = status_code
        self.body = body


class AuthenticationError(RemoteServiceError):
    """Raised when the remote service rejects the session (HTTP 401)."""
    pass


class RemoteUnavailableError(RemoteServiceError):
    """Raised on network failure, timeout, or a 5xx response."""
    pass


class IdentifierReconciliationError(EncounterCaptureError):
    """Raised when a second, different server id is assigned to an encounter.

    Attributes:
        local_id: The client-local identifier
        server_id: The server identifier already on record
    """

    def __init__(self, message: str, local_id: Optional[str] = None, server_id: Optional[str] = None):
        super().__init__(message)
        self.local_id = local_id
        self.server_id = server_id


class InvalidEncounterIdError(EncounterCaptureError, ValueError):
    """Raised when an identifier cannot be used against the remote service."""
    pass


# ============================================================================
# Remote contract value types
# ============================================================================

@dataclass(frozen=True)
class SubmitResponse:
    """Reply from the remote submit-for-review contract.

    Attributes:
        success: True if the server accepted the submission
        message: Optional human-readable message
        errors: Field path -> message for server-side validation failures
        code: Optional machine-readable error code
    """

    success: bool
    message: Optional[str] = None
    errors: dict[str, str] = field(default_factory=dict)
    code: Optional[str] = None


# ============================================================================
# Ports
# ============================================================================

class LocalStorePort(ABC):
    """Abstract contract for the local durability layer.

    A persistent key-value store of offline envelopes, keyed by encounter
    identifier, that survives process restarts and network loss.

    Key Principles:
        - Overwrite-by-key: last write wins, no merge
        - Callers pass the latest known key (server id once assigned)
        - ``save_offline`` completes before any remote call for the same action
    """

    @abstractmethod
    def save_offline(self, key: str, envelope: 'OfflineEnvelope') -> Result[str]:
        """Persist an envelope under ``key``, replacing any previous one.

        Parameters:
            key: Local or server identifier
            envelope: Envelope to persist

        Returns:
            Result[str]: The key written, or a LocalWriteError failure
        """
        pass

    @abstractmethod
    def read_offline(self, key: str) -> Optional['OfflineEnvelope']:
        """Read the envelope stored under ``key``, or None."""
        pass

    @abstractmethod
    def count(self) -> int:
        """Number of envelopes still waiting to be synchronized."""
        pass

    def has_any(self) -> bool:
        """True if at least one envelope is waiting to be synchronized."""
        return self.count() > 0

    @abstractmethod
    def rekey(self, old_key: str, new_key: str, envelope: 'OfflineEnvelope') -> Result[str]:
        """Write ``envelope`` under ``new_key`` and retire ``old_key``.

        The retired entry is kept but no longer counted or replayed.
        """
        pass

    @abstractmethod
    def superseded_by(self, key: str) -> Optional[str]:
        """Key that replaced ``key`` after re-keying, or None.

        This is the durable record of a completed reconciliation and
        survives process restarts.
        """
        pass

    @abstractmethod
    def list_pending(self) -> list['OfflineEnvelope']:
        """All envelopes not yet synchronized, oldest first."""
        pass


class RemoteEncounterPort(ABC):
    """Abstract contract for the remote encounter service.

    Implementations raise ``AuthenticationError`` when the session is no
    longer valid and ``RemoteUnavailableError`` for network failures,
    timeouts and server errors.
    """

    @abstractmethod
    async def create_encounter(self, payload: dict) -> str:
        """Create an encounter and return its server identifier."""
        pass

    @abstractmethod
    async def update_encounter(self, encounter_id: str, payload: dict) -> str:
        """Update an existing encounter and return its server identifier."""
        pass

    @abstractmethod
    async def submit_for_review(self, encounter_id: str, payload: dict) -> SubmitResponse:
        """Submit an encounter for review.

        Server-side validation failures are returned as
        ``SubmitResponse(success=False, errors=...)`` rather than raised.
        """
        pass


class PayloadBuilderPort(ABC):
    """Maps a record snapshot to remote request bodies.

    Keeps wire naming out of the orchestrator's internal state.
    """

    @abstractmethod
    def build_payload(self, record: 'EncounterRecord') -> dict:
        """Body for create and update calls."""
        pass

    @abstractmethod
    def build_submission_payload(self, record: 'EncounterRecord') -> dict:
        """Body for the submit-for-review call."""
        pass


class AuditTrailPort(ABC):
    """Append-only trail of sync transitions.

    The orchestrator records every local write and remote call here, which
    makes the durability-before-network ordering observable.
    """

    @abstractmethod
    def record_event(self, event_type: str, encounter_key: str, **details) -> None:
        """Append one event for ``encounter_key``."""
        pass


class ConnectivityPort(ABC):
    """Connectivity signal consumed by the core, never computed by it."""

    @abstractmethod
    def is_online(self) -> bool:
        """True if the remote service is believed reachable."""
        pass

    @abstractmethod
    def queued_count(self) -> int:
        """Number of offline items currently queued."""
        pass
