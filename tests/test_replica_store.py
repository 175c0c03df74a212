"""Tests for the server-side replica store."""

import sqlite3

import pytest

from nephsync.server import ReplicaStore


@pytest.fixture
def replica(tmp_path):
    """Replica store on a temporary database file."""
    store = ReplicaStore(tmp_path / "server.db", default_page_size=500, max_page_size=1000)
    store.connect()
    return store


def entry(record_id: str, updated_at: int, blob: str = "blob", deleted: bool = False) -> dict:
    return {
        "id": record_id,
        "entityType": "intake",
        "sealedPayload": blob,
        "timestamp": 100,
        "updatedAt": updated_at,
        "deleted": deleted,
        "deletedAt": updated_at if deleted else None,
    }


class TestPush:
    """Tests for conditional upserts."""

    def test_insert_new(self, replica):
        result = replica.push("alice", [entry("r1", 1000), entry("r2", 1000)])

        assert result.accepted_ids == ["r1", "r2"]
        assert result.skipped_ids == []

    def test_newer_wins_regardless_of_arrival_order(self, replica):
        replica.push("alice", [entry("r1", 2000, blob="new")])
        result = replica.push("alice", [entry("r1", 1000, blob="old")])

        assert result.skipped_ids == ["r1"]
        page = replica.pull("alice")
        assert page.entries[0]["sealedPayload"] == "new"
        assert page.entries[0]["updatedAt"] == 2000

    def test_repeat_push_is_skipped(self, replica):
        replica.push("alice", [entry("r1", 1000)])
        first = replica.pull("alice")

        result = replica.push("alice", [entry("r1", 1000)])

        assert result.accepted_ids == []
        assert result.skipped_ids == ["r1"]
        assert replica.pull("alice", since=first.next_cursor).entries == []

    def test_equal_stamp_with_new_content_overwrites(self, replica):
        replica.push("alice", [entry("r1", 1000, blob="a")])
        result = replica.push("alice", [entry("r1", 1000, blob="b")])

        assert result.accepted_ids == ["r1"]
        assert replica.pull("alice").entries[0]["sealedPayload"] == "b"

    def test_tombstone_propagates(self, replica):
        replica.push("alice", [entry("r1", 1000)])
        replica.push("alice", [entry("r1", 2000, deleted=True)])

        pulled = replica.pull("alice").entries[0]
        assert pulled["deleted"] is True
        assert pulled["deletedAt"] == 2000

    def test_users_are_isolated(self, replica):
        replica.push("alice", [entry("r1", 1000, blob="alice")])
        replica.push("bob", [entry("r1", 500, blob="bob")])

        assert replica.pull("alice").entries[0]["sealedPayload"] == "alice"
        assert replica.pull("bob").entries[0]["sealedPayload"] == "bob"

    def test_failed_batch_rolls_back(self, replica):
        bad = {"id": "r2", "entityType": "intake", "sealedPayload": None,
               "timestamp": 100, "updatedAt": 1000}

        with pytest.raises(sqlite3.IntegrityError):
            replica.push("alice", [entry("r1", 1000), bad])

        assert replica.pull("alice").entries == []

    def test_empty_batch(self, replica):
        result = replica.push("alice", [])
        assert result.accepted_ids == []
        assert result.skipped_ids == []


class TestPull:
    """Tests for the change feed."""

    def test_ordered_and_strictly_increasing(self, replica):
        replica.push("alice", [entry("a", 1000), entry("b", 1000)])
        replica.push("alice", [entry("c", 1000)])

        page = replica.pull("alice")
        stamps = [e["serverUpdatedAt"] for e in page.entries]

        assert [e["id"] for e in page.entries] == ["a", "b", "c"]
        assert stamps == sorted(stamps)
        assert len(set(stamps)) == 3
        assert page.next_cursor == stamps[-1]

    def test_repeat_pull_is_empty(self, replica):
        replica.push("alice", [entry("a", 1000)])
        page = replica.pull("alice")

        again = replica.pull("alice", since=page.next_cursor)

        assert again.entries == []
        assert again.next_cursor == page.next_cursor

    def test_paging(self, replica):
        replica.push("alice", [entry(f"r{i}", 1000) for i in range(5)])

        first = replica.pull("alice", since=0, limit=2)
        second = replica.pull("alice", since=first.next_cursor, limit=2)
        third = replica.pull("alice", since=second.next_cursor, limit=2)

        ids = [e["id"] for page in (first, second, third) for e in page.entries]
        assert ids == [f"r{i}" for i in range(5)]

    def test_limit_clamped(self, tmp_path):
        replica = ReplicaStore(tmp_path / "server.db", default_page_size=2, max_page_size=3)
        replica.connect()
        replica.push("alice", [entry(f"r{i}", 1000) for i in range(5)])

        assert len(replica.pull("alice").entries) == 2
        assert len(replica.pull("alice", limit=100).entries) == 3
        assert len(replica.pull("alice", limit=0).entries) == 1

    def test_overwrite_moves_record_to_end_of_feed(self, replica):
        replica.push("alice", [entry("a", 1000), entry("b", 1000)])
        replica.push("alice", [entry("a", 2000)])

        page = replica.pull("alice")
        assert [e["id"] for e in page.entries] == ["b", "a"]

    def test_server_time(self, replica):
        assert replica.pull("alice").server_time > 0

    def test_stats(self, replica):
        replica.push("alice", [entry("a", 1000), entry("b", 1000, deleted=True)])
        replica.push("bob", [entry("a", 1000)])

        assert replica.get_stats() == {"total_records": 3, "users": 2, "tombstones": 1}
