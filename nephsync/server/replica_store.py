"""Server-side SQLite store of sealed records.

The conditional upsert in UPSERT_SQL is the whole conflict-resolution
mechanism: a write lands only if its client-stamped updated_at is newer
than the stored one (or equal with different content), and the comparison
and write happen in one statement.
"""

import logging
import sqlite3
from contextlib import contextmanager
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Iterator

from ..records import now_ms

logger = logging.getLogger(__name__)

SCHEMA = """
CREATE TABLE IF NOT EXISTS sync_records (
    user_id TEXT NOT NULL,
    id TEXT NOT NULL,
    entity_type TEXT NOT NULL,
    sealed_payload TEXT NOT NULL,
    timestamp INTEGER NOT NULL,
    updated_at INTEGER NOT NULL,
    server_updated_at INTEGER NOT NULL,
    deleted INTEGER NOT NULL DEFAULT 0,
    deleted_at INTEGER,
    PRIMARY KEY (user_id, id)
);

CREATE INDEX IF NOT EXISTS idx_sync_records_feed ON sync_records(user_id, server_updated_at);
CREATE INDEX IF NOT EXISTS idx_sync_records_server_ts ON sync_records(server_updated_at);
"""

UPSERT_SQL = """
INSERT INTO sync_records (
    user_id, id, entity_type, sealed_payload, timestamp,
    updated_at, server_updated_at, deleted, deleted_at
) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
ON CONFLICT(user_id, id) DO UPDATE SET
    entity_type = excluded.entity_type,
    sealed_payload = excluded.sealed_payload,
    timestamp = excluded.timestamp,
    updated_at = excluded.updated_at,
    server_updated_at = excluded.server_updated_at,
    deleted = excluded.deleted,
    deleted_at = excluded.deleted_at
WHERE excluded.updated_at > sync_records.updated_at
   OR (excluded.updated_at = sync_records.updated_at
       AND (excluded.sealed_payload != sync_records.sealed_payload
            OR excluded.deleted != sync_records.deleted
            OR excluded.timestamp != sync_records.timestamp))
"""

PULL_SQL = """
SELECT id, entity_type, sealed_payload, timestamp, updated_at,
       server_updated_at, deleted, deleted_at
FROM sync_records
WHERE user_id = ? AND server_updated_at > ?
ORDER BY server_updated_at ASC
LIMIT ?
"""


@dataclass
class PushResult:
    """Ids written by a push versus ids left unchanged."""

    accepted_ids: list[str] = field(default_factory=list)
    skipped_ids: list[str] = field(default_factory=list)


@dataclass
class PullPage:
    """One page of the change feed."""

    entries: list[dict[str, Any]]
    next_cursor: int
    server_time: int


class ReplicaStore:
    """Durable store behind the replication endpoint.

    Opens a connection per call so concurrent requests from different
    devices only contend on SQLite's own write lock.
    """

    def __init__(
        self,
        db_path: str | Path,
        default_page_size: int = 500,
        max_page_size: int = 1000,
    ):
        """Initialize the replica store.

        Args:
            db_path: Path to SQLite database file.
            default_page_size: Page size when a pull gives no limit.
            max_page_size: Hard cap on the page size.
        """
        self.db_path = Path(db_path).expanduser()
        self.default_page_size = default_page_size
        self.max_page_size = max_page_size

    def connect(self) -> None:
        """Create the database file and schema."""
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        with self._connection() as conn:
            conn.execute("PRAGMA journal_mode=WAL")
            conn.executescript(SCHEMA)
        logger.info(f"ReplicaStore ready at {self.db_path}")

    @contextmanager
    def _connection(self) -> Iterator[sqlite3.Connection]:
        conn = sqlite3.connect(str(self.db_path), timeout=30.0, isolation_level=None)
        conn.row_factory = sqlite3.Row
        try:
            yield conn
        finally:
            conn.close()

    def push(self, user_id: str, entries: list[dict[str, Any]]) -> PushResult:
        """Apply a batch of sealed entries in one transaction.

        Any failure rolls back the entire batch and re-raises.

        Args:
            user_id: Owner of the entries.
            entries: Wire entries with id, entityType, sealedPayload,
                timestamp, updatedAt, deleted and deletedAt.

        Returns:
            PushResult listing accepted and skipped ids.
        """
        result = PushResult()
        if not entries:
            return result

        with self._connection() as conn:
            conn.execute("BEGIN IMMEDIATE")
            try:
                row = conn.execute(
                    "SELECT COALESCE(MAX(server_updated_at), 0) FROM sync_records"
                ).fetchone()
                # Receipt stamps strictly increase so pages never split a tie
                stamp = max(now_ms(), row[0] + 1)

                for entry in entries:
                    cursor = conn.execute(
                        UPSERT_SQL,
                        (
                            user_id,
                            entry["id"],
                            entry["entityType"],
                            entry["sealedPayload"],
                            int(entry["timestamp"]),
                            int(entry["updatedAt"]),
                            stamp,
                            int(bool(entry.get("deleted", False))),
                            entry.get("deletedAt"),
                        ),
                    )
                    if cursor.rowcount > 0:
                        result.accepted_ids.append(entry["id"])
                        stamp += 1
                    else:
                        result.skipped_ids.append(entry["id"])

                conn.execute("COMMIT")
            except Exception:
                conn.execute("ROLLBACK")
                raise

        logger.debug(
            f"Push for {user_id}: accepted={len(result.accepted_ids)}, "
            f"skipped={len(result.skipped_ids)}"
        )
        return result

    def pull(self, user_id: str, since: int = 0, limit: int | None = None) -> PullPage:
        """Return changes received after a cursor.

        Args:
            user_id: Owner of the entries.
            since: Cursor; only entries with a later receipt stamp are returned.
            limit: Page size, clamped to [1, max_page_size].

        Returns:
            PullPage ordered by receipt stamp, with the next cursor.
        """
        if limit is None:
            limit = self.default_page_size
        limit = max(1, min(limit, self.max_page_size))
        since = max(0, since)

        with self._connection() as conn:
            rows = conn.execute(PULL_SQL, (user_id, since, limit)).fetchall()

        entries = [
            {
                "id": row["id"],
                "entityType": row["entity_type"],
                "sealedPayload": row["sealed_payload"],
                "timestamp": row["timestamp"],
                "updatedAt": row["updated_at"],
                "serverUpdatedAt": row["server_updated_at"],
                "deleted": bool(row["deleted"]),
                "deletedAt": row["deleted_at"],
            }
            for row in rows
        ]
        next_cursor = max([since] + [e["serverUpdatedAt"] for e in entries])
        return PullPage(entries=entries, next_cursor=next_cursor, server_time=now_ms())

    def get_stats(self) -> dict[str, Any]:
        """Get store statistics."""
        with self._connection() as conn:
            row = conn.execute(
                "SELECT COUNT(*) AS total, COUNT(DISTINCT user_id) AS users, "
                "COALESCE(SUM(deleted), 0) AS tombstones FROM sync_records"
            ).fetchone()
        return {
            "total_records": row["total"],
            "users": row["users"],
            "tombstones": row["tombstones"],
        }
