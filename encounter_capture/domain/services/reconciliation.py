"""Identifier Reconciliation.

Turns a client-local encounter into a server-backed one exactly once: calls
the remote create contract, stamps the returned server id onto the record
and re-keys the offline envelope under it.

Both the sync orchestrator and the replay service go through this class, so
a local id is never created twice on the server. Stale snapshots and
racing actions reuse the first server id, and so does a later process once
the re-key is on disk.

Architecture:
    - Domain service over LocalStorePort, RemoteEncounterPort and
      PayloadBuilderPort
    - One asyncio.Lock per local id serializes creates for that encounter
"""

import asyncio
import logging
from dataclasses import dataclass
from typing import Optional

from encounter_capture.domain.encounter_record import EncounterRecord
from encounter_capture.domain.enums import SyncEvent
from encounter_capture.domain.envelope import OfflineEnvelope
from encounter_capture.domain.ports import (
    AuditTrailPort,
    LocalStorePort,
    PayloadBuilderPort,
    RemoteEncounterPort,
    Result,
    StorageError,
)

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Reconciliation:
    """Outcome of ensuring a server id.

    Attributes:
        record: Record carrying the server id
        envelope: Envelope holding that record
        created: True if this call issued the remote create
        rekey_result: Result of re-keying the envelope (None when not created)
    """

    record: EncounterRecord
    envelope: OfflineEnvelope
    created: bool
    rekey_result: Optional[Result[str]] = None

    @property
    def rekey_failed(self) -> bool:
        return self.rekey_result is not None and self.rekey_result.is_failure()


class IdentifierReconciler:
    """Performs the one-time local id -> server id hand-over."""

    def __init__(
        self,
        store: LocalStorePort,
        remote: RemoteEncounterPort,
        payloads: PayloadBuilderPort,
        audit: Optional[AuditTrailPort] = None,
    ):
        self.store = store
        self.remote = remote
        self.payloads = payloads
        self.audit = audit
        self._reconciled: dict[str, str] = {}
        self._locks: dict[str, asyncio.Lock] = {}

    def _record_event(self, event: SyncEvent, key: str, **details) -> None:
        if self.audit is not None:
            self.audit.record_event(event, key, **details)

    def known_server_id(self, local_id: str) -> Optional[str]:
        """Server id already assigned to ``local_id``, in this process or an earlier one.

        A completed re-key leaves the local key retired in the store, so the
        assignment survives restarts even though the in-memory map does not.
        """
        server_id = self._reconciled.get(local_id)
        if server_id is not None:
            return server_id
        try:
            server_id = self.store.superseded_by(local_id)
        except StorageError as e:
            logger.warning(f"Could not look up reconciliation for {local_id}: {e}")
            return None
        if server_id is not None:
            logger.info(f"Encounter {local_id} was reconciled earlier as {server_id}")
            self._reconciled[local_id] = server_id
        return server_id

    def resolve(self, record: EncounterRecord) -> EncounterRecord:
        """Attach a server id already assigned to this encounter, if any."""
        if record.server_id is None:
            server_id = self.known_server_id(record.local_id)
            if server_id is not None:
                return record.with_identity(record.identity.with_server_id(server_id))
        return record

    async def ensure_server_id(self, record: EncounterRecord, envelope: OfflineEnvelope) -> Reconciliation:
        """Create the remote encounter if ``record`` has no server id yet.

        Parameters:
            record: Snapshot to create from
            envelope: Envelope already persisted under the local id

        Returns:
            Reconciliation

        Raises:
            RemoteServiceError: If the remote create fails; nothing is re-keyed
        """
        lock = self._locks.setdefault(record.local_id, asyncio.Lock())
        async with lock:
            record = self.resolve(record)
            if record.server_id is not None:
                current = envelope.model_copy(update={"record": record})
                rekey_result = None
                # Written under the local id while another action was creating
                if envelope.key != current.key:
                    rekey_result = self.store.rekey(envelope.key, current.key, current)
                return Reconciliation(record=record, envelope=current, created=False, rekey_result=rekey_result)

            local_id = record.local_id
            server_id = await self.remote.create_encounter(self.payloads.build_payload(record))
            self._record_event(SyncEvent.REMOTE_CREATE, local_id, server_id=server_id)

            identity = record.identity.with_server_id(server_id)
            self._reconciled[local_id] = server_id
            reconciled = record.with_identity(identity)
            rekeyed = envelope.model_copy(update={"record": reconciled})

            rekey_result = self.store.rekey(local_id, server_id, rekeyed)
            self._record_event(
                SyncEvent.REKEY, server_id,
                previous_key=local_id, success=rekey_result.is_success(),
            )
            if rekey_result.is_failure():
                logger.error(f"Encounter {local_id} created as {server_id} but re-key failed: {rekey_result.error}")
            else:
                logger.info(f"Reconciled encounter {local_id} -> {server_id}")

            return Reconciliation(record=reconciled, envelope=rekeyed, created=True, rekey_result=rekey_result)
