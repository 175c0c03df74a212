"""Tests for the sync coordinator."""

from unittest.mock import AsyncMock, MagicMock

import pytest

from nephsync.crypto import derive_key, seal
from nephsync.errors import AuthenticationError, BatchRejectedError, TransientError
from nephsync.records import EntityType, IntakePayload, OutputPayload
from nephsync.store import FallbackQueue, LocalRecordStore, StateFile
from nephsync.sync import Credentials, SyncCoordinator, SyncSession, SyncState, SyncStatus

PASSPHRASE = "hunter2-but-longer"


@pytest.fixture(scope="module")
def key():
    return derive_key(PASSPHRASE)


@pytest.fixture
def session(tmp_path):
    state = StateFile(tmp_path / "state.json")
    store = LocalRecordStore(tmp_path / "records.db", FallbackQueue(state))
    store.connect()
    session = SyncSession(store, state, Credentials("token-1", PASSPHRASE, user_id="alice"))
    yield session
    store.close()


def empty_page(cursor: int = 0) -> dict:
    return {"entries": [], "nextCursor": cursor, "serverTime": 1_000_000}


@pytest.fixture
def client():
    """Remote client that accepts every pushed entry and has nothing to pull."""
    client = MagicMock()
    client.base_url = "http://sync.test"

    async def accept_all(token, entries):
        return {"acceptedIds": [e["id"] for e in entries], "skippedIds": []}

    client.push_batch = AsyncMock(side_effect=accept_all)
    client.pull_page = AsyncMock(return_value=empty_page())
    return client


@pytest.fixture
def coordinator(session, client):
    return SyncCoordinator(session, client, batch_size=2, page_size=2)


def pulled_entry(key, record_id, server_stamp, amount=100, entity_type="intake", updated_at=5000):
    return {
        "id": record_id,
        "entityType": entity_type,
        "sealedPayload": seal({"amountMl": amount}, key),
        "timestamp": 1000,
        "updatedAt": updated_at,
        "serverUpdatedAt": server_stamp,
        "deleted": False,
        "deletedAt": None,
    }


class TestSkipping:
    """Tests for cycles that must not run."""

    @pytest.mark.asyncio
    async def test_paused(self, coordinator, client):
        coordinator.pause()
        assert await coordinator.run_cycle() is None
        client.push_batch.assert_not_called()

        coordinator.resume()
        assert await coordinator.run_cycle() is not None

    @pytest.mark.asyncio
    async def test_disabled_starts_paused(self, session, client):
        coordinator = SyncCoordinator(session, client, enabled=False)
        assert coordinator.paused is True
        assert await coordinator.run_cycle() is None

    @pytest.mark.asyncio
    async def test_missing_credentials(self, coordinator, session, client):
        session.set_credentials(Credentials("token-1", None))
        assert await coordinator.run_cycle() is None

        session.set_credentials(None)
        assert await coordinator.run_cycle() is None
        client.pull_page.assert_not_called()

    @pytest.mark.asyncio
    async def test_no_server(self, coordinator, client):
        client.base_url = None
        assert await coordinator.run_cycle() is None

    @pytest.mark.asyncio
    async def test_single_flight(self, coordinator, session, client):
        async with session.lock:
            assert coordinator.running is True
            assert await coordinator.run_cycle() is None
        client.pull_page.assert_not_called()

    @pytest.mark.asyncio
    async def test_credentials_provider_reread(self, coordinator, session, client):
        current = {"creds": None}
        session.set_credentials(lambda: current["creds"])

        assert await coordinator.run_cycle() is None

        current["creds"] = Credentials("token-1", PASSPHRASE)
        assert await coordinator.run_cycle() is not None


class TestPush:
    """Tests for the push phase."""

    @pytest.mark.asyncio
    async def test_pushes_sealed_batches(self, coordinator, session, client, key):
        for amount in (1, 2, 3):
            session.store.add(EntityType.INTAKE, IntakePayload(amount_ml=amount))
        session.store.add(EntityType.OUTPUT, OutputPayload(amount_ml=4))

        status = await coordinator.run_cycle()

        assert status.pushed == 4
        assert status.pending == 0
        assert status.errors == []
        assert status.state is SyncState.IDLE
        # Three intake records in batches of two, plus one output batch
        assert client.push_batch.await_count == 3

        token, entries = client.push_batch.await_args_list[0].args
        assert token == "token-1"
        assert "payload" not in entries[0]
        assert entries[0]["entityType"] == "intake"
        assert entries[0]["sealedPayload"] != ""

    @pytest.mark.asyncio
    async def test_skipped_ids_stay_unsynced(self, coordinator, session, client):
        kept = session.store.add(EntityType.INTAKE, IntakePayload(amount_ml=1)).record_id
        skipped = session.store.add(EntityType.INTAKE, IntakePayload(amount_ml=2)).record_id
        client.push_batch = AsyncMock(return_value={"acceptedIds": [kept], "skippedIds": [skipped]})

        status = await coordinator.run_cycle()

        assert status.pushed == 1
        assert status.skipped == 1
        assert [r.id for r in session.store.get_unsynced(EntityType.INTAKE)] == [skipped]

    @pytest.mark.asyncio
    async def test_rejected_batch_stays_unsynced_and_cycle_continues(self, coordinator, session, client):
        session.store.add(EntityType.INTAKE, IntakePayload(amount_ml=1))
        session.store.add(EntityType.OUTPUT, OutputPayload(amount_ml=2))

        async def reject_intake(token, entries):
            if entries[0]["entityType"] == "intake":
                raise BatchRejectedError("rolled back", 500)
            return {"acceptedIds": [e["id"] for e in entries], "skippedIds": []}

        client.push_batch = AsyncMock(side_effect=reject_intake)

        status = await coordinator.run_cycle()

        assert status.pushed == 1
        assert len(status.errors) == 1
        assert len(session.store.get_unsynced(EntityType.INTAKE)) == 1
        assert session.store.get_unsynced(EntityType.OUTPUT) == []
        client.pull_page.assert_awaited()

    @pytest.mark.asyncio
    async def test_edit_during_push_stays_unsynced(self, coordinator, session, client):
        record_id = session.store.add(EntityType.INTAKE, IntakePayload(amount_ml=1)).record_id

        async def edit_while_pushing(token, entries):
            session.store.update(EntityType.INTAKE, record_id, {"amountMl": 2})
            return {"acceptedIds": [e["id"] for e in entries], "skippedIds": []}

        client.push_batch = AsyncMock(side_effect=edit_while_pushing)

        await coordinator.run_cycle()

        unsynced = session.store.get_unsynced(EntityType.INTAKE)
        assert [r.payload.amount_ml for r in unsynced] == [2]

    @pytest.mark.asyncio
    async def test_auth_rejection_pauses_until_token_changes(self, coordinator, session, client):
        session.store.add(EntityType.INTAKE, IntakePayload(amount_ml=1))
        client.push_batch = AsyncMock(side_effect=AuthenticationError("HTTP 401", 401))

        status = await coordinator.run_cycle()

        assert status.last_error.startswith("authentication")
        assert status.last_success_at is None
        client.pull_page.assert_not_called()
        assert await coordinator.run_cycle() is None

        session.set_credentials(Credentials("token-2", PASSPHRASE, user_id="alice"))
        assert await coordinator.run_cycle() is not None


class TestPull:
    """Tests for the pull phase."""

    @pytest.mark.asyncio
    async def test_applies_entries_and_persists_cursor(self, coordinator, session, client, key):
        client.pull_page = AsyncMock(return_value={
            "entries": [pulled_entry(key, "r1", 10, amount=300)],
            "nextCursor": 10,
            "serverTime": 2_000_000,
        })

        status = await coordinator.run_cycle()

        assert status.pulled == 1
        assert session.get_cursor("alice") == 10
        record = session.store.get(EntityType.INTAKE, "r1")
        assert record.payload.amount_ml == 300
        assert record.synced is True
        assert status.server_time == 2_000_000
        assert status.clock_skew_ms is not None

    @pytest.mark.asyncio
    async def test_pages_until_short_page(self, coordinator, session, client, key):
        pages = [
            {"entries": [pulled_entry(key, "a", 1), pulled_entry(key, "b", 2)], "nextCursor": 2},
            {"entries": [pulled_entry(key, "c", 3), pulled_entry(key, "d", 4)], "nextCursor": 4},
            {"entries": [pulled_entry(key, "e", 5)], "nextCursor": 5},
        ]
        client.pull_page = AsyncMock(side_effect=pages)

        status = await coordinator.run_cycle()

        assert status.pulled == 5
        assert session.get_cursor("alice") == 5
        since_values = [call.args[1] for call in client.pull_page.await_args_list]
        assert since_values == [0, 2, 4]

    @pytest.mark.asyncio
    async def test_bad_entries_skipped(self, coordinator, session, client, key):
        other_key = derive_key("someone else")
        client.pull_page = AsyncMock(return_value={
            "entries": [
                pulled_entry(other_key, "undecryptable", 1),
                pulled_entry(key, "unknown", 2, entity_type="medication"),
                {"id": "malformed", "entityType": "intake",
                 "sealedPayload": seal({"amountMl": 1}, key), "serverUpdatedAt": 3},
            ],
            "nextCursor": 3,
        })
        coordinator.page_size = 10

        status = await coordinator.run_cycle()

        assert status.pulled == 0
        assert len(status.errors) == 3
        assert session.get_cursor("alice") == 3
        assert session.store.get_all(EntityType.INTAKE) == []

    @pytest.mark.asyncio
    async def test_alias_entity_type(self, coordinator, session, client, key):
        entry = pulled_entry(key, "u1", 1, entity_type="urinal")
        client.pull_page = AsyncMock(return_value={"entries": [entry], "nextCursor": 1})

        await coordinator.run_cycle()

        record = session.store.get(EntityType.OUTPUT, "u1")
        assert record.payload.type == "urinal"

    @pytest.mark.asyncio
    async def test_older_remote_does_not_overwrite(self, coordinator, session, client, key):
        record_id = session.store.add(EntityType.INTAKE, IntakePayload(amount_ml=500)).record_id
        local = session.store.get(EntityType.INTAKE, record_id)
        client.pull_page = AsyncMock(return_value={
            "entries": [pulled_entry(key, record_id, 1, amount=1, updated_at=local.updated_at - 1)],
            "nextCursor": 1,
        })

        await coordinator.run_cycle()

        assert session.store.get(EntityType.INTAKE, record_id).payload.amount_ml == 500

    @pytest.mark.asyncio
    async def test_remote_failure_keeps_cursor(self, coordinator, session, client, key):
        session.set_cursor("alice", 7)
        client.pull_page = AsyncMock(side_effect=[
            {"entries": [pulled_entry(key, "a", 8), pulled_entry(key, "b", 9)], "nextCursor": 9},
            TransientError("offline"),
        ])

        status = await coordinator.run_cycle()

        assert session.get_cursor("alice") == 7
        assert status.last_error.startswith("pull")

    @pytest.mark.asyncio
    async def test_merge_failure_keeps_cursor(self, coordinator, session, client, key, monkeypatch):
        from nephsync.store import MergeOutcome

        monkeypatch.setattr(session.store, "merge_remote", lambda record: MergeOutcome.ERROR)
        client.pull_page = AsyncMock(return_value={
            "entries": [pulled_entry(key, "a", 8)],
            "nextCursor": 8,
        })

        status = await coordinator.run_cycle()

        assert session.get_cursor("alice") == 0
        assert status.errors


class TestStatus:
    """Tests for status tracking."""

    @pytest.mark.asyncio
    async def test_status_persisted(self, coordinator, session, client):
        await coordinator.run_cycle()

        stored = SyncStatus.from_dict(session.load_status())
        assert stored.last_success_at is not None
        assert stored.state is SyncState.IDLE

        reloaded = SyncCoordinator(session, client)
        assert reloaded.status.last_success_at == stored.last_success_at

    def test_status_is_a_copy(self, coordinator):
        status = coordinator.status
        status.errors.append("mutated")
        assert coordinator.status.errors == []

    def test_error_list_capped(self):
        status = SyncStatus()
        for i in range(50):
            status.record_error(f"error {i}")
        assert len(status.errors) == 20
        assert status.last_error == "error 49"

    @pytest.mark.asyncio
    async def test_reset_local_state(self, coordinator, session, client, key):
        session.store.add(EntityType.INTAKE, IntakePayload(amount_ml=1))
        await coordinator.run_cycle()
        session.set_cursor("alice", 42)

        session.reset_local_state()

        assert session.get_cursor("alice") == 0
        assert session.load_status() is None
        assert session.store.get_all(EntityType.INTAKE) == []


class TestFromConfig:
    """Tests for building a coordinator from configuration."""

    def test_from_config(self, session):
        from nephsync.config import Config, CryptoConfig, SyncConfig

        config = Config(
            sync=SyncConfig(server_url="http://sync.test", batch_size=10, enabled=False),
            crypto=CryptoConfig(salt="per-user"),
        )

        coordinator = SyncCoordinator.from_config(config, session)

        assert coordinator.client.base_url == "http://sync.test"
        assert coordinator.batch_size == 10
        assert coordinator.salt == b"per-user"
        assert coordinator.paused is True
