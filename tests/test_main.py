"""Tests for service wiring."""

import asyncio

from encounter_capture.domain.enums import OutcomeKind
from encounter_capture.infrastructure.config_manager import SyncConfig
from encounter_capture.main import build_services


class TestBuildServices:
    """Test suite for build_services."""

    def test_shared_reconciler(self, store, remote):
        services = build_services(store=store, remote=remote, sync_config=SyncConfig(), online=True)

        assert services.orchestrator.reconciler is services.resync.reconciler
        assert services.connectivity.is_online()

    def test_online_override(self, store, remote):
        services = build_services(store=store, remote=remote, sync_config=SyncConfig(start_online=True), online=False)

        assert not services.connectivity.is_online()

    def test_reconnect_replays_queue(self, store, remote, draft_record):
        services = build_services(store=store, remote=remote, sync_config=SyncConfig(), online=False)

        async def save_then_reconnect():
            outcome = await services.orchestrator.save(draft_record)
            services.connectivity.set_online(True)
            pending = [task for task in asyncio.all_tasks() if task is not asyncio.current_task()]
            await asyncio.gather(*pending)
            return outcome

        outcome = asyncio.run(save_then_reconnect())

        assert outcome.kind == OutcomeKind.SAVED_OFFLINE
        assert remote.calls == [("create", None)]
        assert store.superseded_by(draft_record.local_id) == "enc-1"
        assert store.count() == 0
