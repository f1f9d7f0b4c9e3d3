"""Domain Services.

This package contains the sync services that implement the Save/Submit state
machine and the replay of queued envelopes, without infrastructure
dependencies.
"""

from encounter_capture.domain.services.reconciliation import IdentifierReconciler
from encounter_capture.domain.services.resync import ReplayResult, ResyncService
from encounter_capture.domain.services.sync_orchestrator import SyncOrchestrator, SyncOutcome

__all__ = ['IdentifierReconciler', 'ReplayResult', 'ResyncService', 'SyncOrchestrator', 'SyncOutcome']
