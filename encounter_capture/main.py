"""Main entry point and service wiring for Encounter-Capture.

This module builds the adapters and domain services from configuration and
hands them to the command-line interface.

Security Impact:
    - Configuration (including the API token) is loaded via the configuration manager
    - Envelope bodies are encrypted at rest when EC_ENCRYPTION_ENABLED is set
    - Every sync transition is recorded on the audit trail

Architecture:
    - Follows Hexagonal Architecture principles
    - The only module that knows which adapter implements which port
"""

import logging
from dataclasses import dataclass
from typing import Optional

from encounter_capture.adapters.remote import EncounterPayloadBuilder, HttpEncounterService
from encounter_capture.adapters.storage import DuckDBEncounterStore
from encounter_capture.domain.guardrails import CircuitBreakerConfig
from encounter_capture.domain.services import IdentifierReconciler, ResyncService, SyncOrchestrator
from encounter_capture.infrastructure.audit import SyncAuditLogger
from encounter_capture.infrastructure.config_manager import RemoteConfig, StoreConfig, SyncConfig
from encounter_capture.infrastructure.connectivity import ConnectivityMonitor
from encounter_capture.infrastructure.encryption.encryption_service import EncryptionService
from encounter_capture.infrastructure.settings import settings

# Configure logging
logging.basicConfig(
    level=getattr(logging, settings.log_level.upper(), logging.INFO),
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
)
logger = logging.getLogger(__name__)


def create_store(store_config: Optional[StoreConfig] = None) -> DuckDBEncounterStore:
    """Create the local envelope store from configuration.

    Raises:
        ValueError: If encryption is enabled but no key is configured
    """
    store_config = store_config or settings.store_config
    encryption = EncryptionService() if store_config.encryption_enabled else None
    logger.info(
        f"Initializing DuckDB envelope store at {store_config.db_path} "
        f"(encryption {'on' if encryption else 'off'})"
    )
    return DuckDBEncounterStore(store_config=store_config, encryption=encryption)


def create_remote(remote_config: Optional[RemoteConfig] = None) -> HttpEncounterService:
    remote_config = remote_config or settings.remote_config
    logger.info(f"Remote encounter service: {remote_config.base_url}")
    return HttpEncounterService(remote_config)


def create_breaker_config(sync_config: SyncConfig) -> CircuitBreakerConfig:
    return CircuitBreakerConfig(
        failure_threshold_percent=sync_config.failure_threshold_percent,
        window_size=sync_config.window_size,
        min_records_before_check=sync_config.min_results_before_check,
    )


@dataclass
class EncounterServices:
    """Wired adapters and services for one client session."""

    store: DuckDBEncounterStore
    remote: HttpEncounterService
    connectivity: ConnectivityMonitor
    audit: SyncAuditLogger
    orchestrator: SyncOrchestrator
    resync: ResyncService

    def close(self) -> None:
        self.store.close()


def build_services(
    store: Optional[DuckDBEncounterStore] = None,
    remote: Optional[HttpEncounterService] = None,
    sync_config: Optional[SyncConfig] = None,
    online: Optional[bool] = None,
) -> EncounterServices:
    """Wire store, remote, connectivity, audit trail, orchestrator and replay.

    Replay is registered as a reconnect listener, so an online transition
    inside a running event loop drains the queue.

    Parameters:
        store: Envelope store (created from configuration when None)
        remote: Remote service (created from configuration when None)
        sync_config: Sync policy (from configuration when None)
        online: Initial connectivity, overriding ``sync_config.start_online``
    """
    sync_config = sync_config or settings.sync_config
    store = store or create_store()
    remote = remote or create_remote()

    schema = store.initialize_schema()
    if schema.is_failure():
        raise RuntimeError(f"Schema initialization failed: {schema.error}")

    connectivity = ConnectivityMonitor(
        store, online=sync_config.start_online if online is None else online
    )
    audit = SyncAuditLogger()
    payloads = EncounterPayloadBuilder()
    reconciler = IdentifierReconciler(store, remote, payloads, audit)

    orchestrator = SyncOrchestrator(
        store, remote, connectivity, payloads,
        audit=audit,
        navigate_delay_ms=sync_config.navigate_delay_ms,
        reconciler=reconciler,
    )
    resync = ResyncService(
        store, remote, connectivity, payloads,
        audit=audit,
        breaker_config=create_breaker_config(sync_config),
        reconciler=reconciler,
    )
    connectivity.add_reconnect_listener(resync.schedule_replay)
    return EncounterServices(store, remote, connectivity, audit, orchestrator, resync)


def main() -> None:
    from encounter_capture.cli import app
    app()


if __name__ == "__main__":
    main()
