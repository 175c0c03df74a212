"""Local SQLite record store with a fallback queue for degraded mode."""

import json
import logging
import sqlite3
import uuid
from dataclasses import dataclass, replace
from enum import Enum
from pathlib import Path
from typing import Any, Callable

from ..errors import StoreError
from ..records import DailyTotalPayload, EntityType, Payload, Record, now_ms, parse_payload
from .fallback import FallbackQueue

logger = logging.getLogger(__name__)

# One table per entity type, named by the entity value
TABLE_SCHEMA = """
CREATE TABLE IF NOT EXISTS "{name}" (
    id TEXT PRIMARY KEY,
    payload TEXT NOT NULL,
    timestamp INTEGER NOT NULL,
    updated_at INTEGER NOT NULL,
    deleted INTEGER NOT NULL DEFAULT 0,
    deleted_at INTEGER,
    synced INTEGER NOT NULL DEFAULT 0
);

CREATE INDEX IF NOT EXISTS "idx_{name}_timestamp" ON "{name}"(timestamp);
CREATE INDEX IF NOT EXISTS "idx_{name}_synced" ON "{name}"(synced);
"""

UPSERT_SQL = """
INSERT INTO "{name}" (
    id, payload, timestamp, updated_at, deleted, deleted_at, synced
) VALUES (?, ?, ?, ?, ?, ?, ?)
ON CONFLICT(id) DO UPDATE SET
    payload = excluded.payload,
    timestamp = excluded.timestamp,
    updated_at = excluded.updated_at,
    deleted = excluded.deleted,
    deleted_at = excluded.deleted_at,
    synced = excluded.synced
"""

SELECT_COLUMNS = "id, payload, timestamp, updated_at, deleted, deleted_at, synced"

ChangeListener = Callable[[EntityType, str], None]


class WriteStatus(Enum):
    """Where a write ended up."""

    DURABLE = "durable"
    FALLBACK = "fallback"
    ERROR = "error"


@dataclass
class WriteResult:
    """Outcome of a mutating store operation."""

    status: WriteStatus
    record_id: str | None = None
    error: str | None = None

    @property
    def ok(self) -> bool:
        return self.status is not WriteStatus.ERROR

    def raise_for_error(self) -> "WriteResult":
        """Raise StoreError if neither storage layer accepted the write."""
        if self.status is WriteStatus.ERROR:
            raise StoreError(self.error or "write failed")
        return self


class MergeOutcome(Enum):
    """Outcome of merging a pulled record."""

    APPLIED = "applied"
    STALE = "stale"  # local copy is newer
    ERROR = "error"  # durable store unavailable


def _next_stamp(previous: int | None) -> int:
    """Modification stamp strictly greater than the previous one."""
    now = now_ms()
    if previous is not None and now <= previous:
        return previous + 1
    return now


class LocalRecordStore:
    """Durable per-entity-type record storage.

    Writes go to SQLite. When SQLite cannot be opened or a statement fails,
    writes land in the fallback queue instead and the caller still gets a
    successful WriteResult. Queued writes are flushed back into SQLite on
    the next access that finds it available.
    """

    def __init__(self, db_path: str | Path, fallback: FallbackQueue):
        """Initialize the local store.

        Args:
            db_path: Path to SQLite database file.
            fallback: Queue used while the database is unavailable.

        Raises:
            ValueError: If db_path is ":memory:". A dropped connection
                would reopen as a new, empty database.
        """
        if str(db_path) == ":memory:":
            raise ValueError("LocalRecordStore needs a database file, not :memory:")
        self.db_path = Path(db_path).expanduser()
        self.fallback = fallback
        self._conn: sqlite3.Connection | None = None
        self._listeners: list[ChangeListener] = []

    def connect(self) -> bool:
        """Open the database and create the schema.

        Returns:
            True if the durable store is available.
        """
        return self._durable() is not None

    def close(self) -> None:
        """Close database connection."""
        if self._conn:
            self._conn.close()
            self._conn = None
            logger.info("LocalRecordStore connection closed")

    @property
    def durable_available(self) -> bool:
        return self._conn is not None

    def _open(self) -> sqlite3.Connection | None:
        try:
            self.db_path.parent.mkdir(parents=True, exist_ok=True)
            conn = sqlite3.connect(str(self.db_path))
            conn.row_factory = sqlite3.Row
            for entity_type in EntityType:
                conn.executescript(TABLE_SCHEMA.format(name=entity_type.value))
            conn.commit()
        except (OSError, sqlite3.Error) as e:
            logger.warning(f"Durable store unavailable at {self.db_path}: {e}")
            return None

        logger.info(f"LocalRecordStore connected to {self.db_path}")
        return conn

    def _durable(self) -> sqlite3.Connection | None:
        """Return the live connection, reconnecting and flushing as needed."""
        if self._conn is None:
            self._conn = self._open()
        if self._conn is not None and len(self.fallback) > 0:
            self._flush_fallback(self._conn)
        return self._conn

    def _drop_connection(self, error: Exception) -> None:
        logger.warning(f"Durable store error, falling back: {error}")
        if self._conn is not None:
            try:
                self._conn.close()
            except sqlite3.Error:
                pass
            self._conn = None

    # ==================== Listeners ====================

    def add_listener(self, listener: ChangeListener) -> None:
        """Register a callback fired after every local mutation."""
        self._listeners.append(listener)

    def remove_listener(self, listener: ChangeListener) -> None:
        if listener in self._listeners:
            self._listeners.remove(listener)

    def _notify(self, entity_type: EntityType, record_id: str) -> None:
        for listener in list(self._listeners):
            try:
                listener(entity_type, record_id)
            except Exception as e:
                logger.error(f"Change listener failed: {e}", exc_info=True)

    # ==================== Row helpers ====================

    @staticmethod
    def _row_to_record(entity_type: EntityType, row: sqlite3.Row) -> Record:
        return Record(
            id=row["id"],
            entity_type=entity_type,
            payload=parse_payload(entity_type, json.loads(row["payload"])),
            timestamp=row["timestamp"],
            updated_at=row["updated_at"],
            deleted=bool(row["deleted"]),
            deleted_at=row["deleted_at"],
            synced=bool(row["synced"]),
        )

    @staticmethod
    def _record_params(record: Record) -> tuple:
        return (
            record.id,
            json.dumps(record.payload.to_dict()),
            record.timestamp,
            record.updated_at,
            int(record.deleted),
            record.deleted_at,
            int(record.synced),
        )

    def _fetch_durable(
        self, conn: sqlite3.Connection, entity_type: EntityType, record_id: str
    ) -> Record | None:
        row = conn.execute(
            f'SELECT {SELECT_COLUMNS} FROM "{entity_type.value}" WHERE id = ?',
            (record_id,),
        ).fetchone()
        return self._row_to_record(entity_type, row) if row else None

    def _write_durable(self, record: Record) -> bool:
        conn = self._durable()
        if conn is None:
            return False
        try:
            conn.execute(
                UPSERT_SQL.format(name=record.entity_type.value),
                self._record_params(record),
            )
            conn.commit()
        except sqlite3.Error as e:
            self._drop_connection(e)
            return False
        return True

    def _write_fallback(self, record: Record) -> str | None:
        """Queue a record. Returns an error message on failure."""
        try:
            self.fallback.put(record)
        except OSError as e:
            logger.error(f"Fallback queue write failed: {e}")
            return str(e)
        return None

    def _write(self, record: Record) -> WriteResult:
        if self._write_durable(record):
            status = WriteStatus.DURABLE
        elif (error := self._write_fallback(record)) is None:
            status = WriteStatus.FALLBACK
            logger.info(f"Queued {record.entity_type.value} {record.id} in fallback queue")
        else:
            return WriteResult(WriteStatus.ERROR, record.id, error)

        self._notify(record.entity_type, record.id)
        return WriteResult(status, record.id)

    # ==================== CRUD ====================

    def add(
        self,
        entity_type: EntityType,
        payload: Payload | dict[str, Any],
        timestamp: int | None = None,
    ) -> WriteResult:
        """Create a new record.

        Args:
            entity_type: Entity type of the record.
            payload: Typed payload, or a plain dict of payload fields.
            timestamp: Event time in ms; defaults to now.

        Returns:
            WriteResult carrying the new record id.
        """
        if isinstance(payload, dict):
            payload = parse_payload(entity_type, payload)
        elif payload.entity_type is not entity_type:
            raise ValueError(
                f"{type(payload).__name__} is not a {entity_type.value} payload"
            )

        now = now_ms()
        record = Record(
            id=str(uuid.uuid4()),
            entity_type=entity_type,
            payload=payload,
            timestamp=timestamp if timestamp is not None else now,
            updated_at=now,
        )
        return self._write(record)

    def get(self, entity_type: EntityType, record_id: str) -> Record | None:
        """Get a record by id, tombstoned or not."""
        conn = self._durable()
        if conn is not None:
            try:
                record = self._fetch_durable(conn, entity_type, record_id)
            except sqlite3.Error as e:
                self._drop_connection(e)
            else:
                if record is not None:
                    return record
        return self.fallback.get(entity_type, record_id)

    def get_all(self, entity_type: EntityType) -> list[Record]:
        """List live records of an entity type, oldest event first.

        Durable rows are merged with queued fallback records that have no
        durable counterpart. Tombstones are excluded.
        """
        durable: list[Record] = []
        durable_ids: set[str] = set()
        conn = self._durable()
        if conn is not None:
            try:
                rows = conn.execute(
                    f'SELECT {SELECT_COLUMNS} FROM "{entity_type.value}" '
                    "ORDER BY timestamp ASC"
                ).fetchall()
            except sqlite3.Error as e:
                self._drop_connection(e)
            else:
                for row in rows:
                    durable_ids.add(row["id"])
                    if not row["deleted"]:
                        durable.append(self._row_to_record(entity_type, row))

        queued = [
            r for r in self.fallback.entries(entity_type)
            if r.id not in durable_ids and not r.deleted
        ]
        if not queued:
            return durable
        return sorted(durable + queued, key=lambda r: r.timestamp)

    def update(
        self,
        entity_type: EntityType,
        record_id: str,
        payload: Payload | dict[str, Any] | None = None,
        timestamp: int | None = None,
    ) -> WriteResult:
        """Update a record, reviving it if it was tombstoned.

        Args:
            entity_type: Entity type of the record.
            record_id: Id of the record to update.
            payload: Replacement payload, or a dict of fields merged onto
                the existing payload.
            timestamp: New event time, if it changed.

        Returns:
            WriteResult for the write.
        """
        existing = self.get(entity_type, record_id)

        if existing is None:
            # Unknown id: written as a fresh record under the given id
            base_payload: dict[str, Any] = {}
            base_timestamp = now_ms()
            previous_stamp = None
        else:
            base_payload = existing.payload.to_dict()
            base_timestamp = existing.timestamp
            previous_stamp = existing.updated_at

        if isinstance(payload, Payload):
            if payload.entity_type is not entity_type:
                raise ValueError(
                    f"{type(payload).__name__} is not a {entity_type.value} payload"
                )
            new_payload = payload
        else:
            new_payload = parse_payload(entity_type, {**base_payload, **(payload or {})})

        record = Record(
            id=record_id,
            entity_type=entity_type,
            payload=new_payload,
            timestamp=timestamp if timestamp is not None else base_timestamp,
            updated_at=_next_stamp(previous_stamp),
            deleted=False,
            deleted_at=None,
            synced=False,
        )
        return self._write(record)

    def delete(self, entity_type: EntityType, record_id: str) -> WriteResult:
        """Tombstone a record.

        A record that only ever lived in the fallback queue never reached
        the durable store, so it cannot have synced; it is dropped from the
        queue instead of tombstoned.
        """
        conn = self._durable()
        durable_record = None
        if conn is not None:
            try:
                durable_record = self._fetch_durable(conn, entity_type, record_id)
            except sqlite3.Error as e:
                self._drop_connection(e)
                conn = None

        if conn is not None and durable_record is None:
            try:
                removed = self.fallback.remove(entity_type, record_id)
            except OSError as e:
                return WriteResult(WriteStatus.ERROR, record_id, str(e))
            if not removed:
                return WriteResult(WriteStatus.ERROR, record_id, "record not found")
            self._notify(entity_type, record_id)
            return WriteResult(WriteStatus.FALLBACK, record_id)

        existing = durable_record or self.fallback.get(entity_type, record_id)
        if existing is None:
            return WriteResult(WriteStatus.ERROR, record_id, "record not found")

        stamp = _next_stamp(existing.updated_at)
        tombstone = replace(
            existing,
            deleted=True,
            deleted_at=stamp,
            updated_at=stamp,
            synced=False,
        )
        return self._write(tombstone)

    def upsert_daily_total(
        self,
        date: str,
        bag_ml: float,
        urinal_ml: float,
        intake_ml: float = 0,
    ) -> WriteResult:
        """Write the daily total for a date, replacing any live one.

        Args:
            date: Day in YYYY-MM-DD form.
            bag_ml: Bag output for the day.
            urinal_ml: Urinal output for the day.
            intake_ml: Intake for the day.

        Returns:
            WriteResult for the new or updated record.
        """
        payload = DailyTotalPayload(
            date=date, bag_ml=bag_ml, urinal_ml=urinal_ml, intake_ml=intake_ml
        )
        for record in self.get_all(EntityType.DAILY_TOTAL):
            if record.payload.date == date:
                return self.update(EntityType.DAILY_TOTAL, record.id, payload)
        return self.add(EntityType.DAILY_TOTAL, payload)

    # ==================== Sync support ====================

    def get_unsynced(self, entity_type: EntityType) -> list[Record]:
        """Records not yet acknowledged by the server, tombstones included."""
        unsynced: list[Record] = []
        durable_ids: set[str] = set()
        conn = self._durable()
        if conn is not None:
            try:
                rows = conn.execute(
                    f'SELECT {SELECT_COLUMNS} FROM "{entity_type.value}" '
                    "WHERE synced = 0 ORDER BY updated_at ASC"
                ).fetchall()
                durable_ids = {
                    row["id"]
                    for row in conn.execute(f'SELECT id FROM "{entity_type.value}"')
                }
            except sqlite3.Error as e:
                self._drop_connection(e)
            else:
                unsynced = [self._row_to_record(entity_type, row) for row in rows]

        unsynced.extend(
            r for r in self.fallback.entries(entity_type)
            if not r.synced and r.id not in durable_ids
        )
        return unsynced

    def mark_synced(self, entity_type: EntityType, acknowledged: dict[str, int]) -> int:
        """Mark records as synced.

        Only copies whose ``updated_at`` still equals the acknowledged value
        are marked, so a local edit made during a push stays unsynced.

        Args:
            entity_type: Entity type of the records.
            acknowledged: Map of record id to the updated_at that was pushed.

        Returns:
            Number of records marked.
        """
        if not acknowledged:
            return 0

        count = 0
        conn = self._durable()
        if conn is not None:
            try:
                cursor = conn.executemany(
                    f'UPDATE "{entity_type.value}" SET synced = 1 '
                    "WHERE id = ? AND updated_at = ?",
                    list(acknowledged.items()),
                )
                conn.commit()
                count = cursor.rowcount
            except sqlite3.Error as e:
                self._drop_connection(e)

        for record in self.fallback.entries(entity_type):
            if acknowledged.get(record.id) == record.updated_at and not record.synced:
                try:
                    self.fallback.put(replace(record, synced=True))
                    count += 1
                except OSError as e:
                    logger.warning(f"Could not mark queued {record.id} synced: {e}")

        logger.debug(f"Marked {count} {entity_type.value} records as synced")
        return count

    def merge_remote(self, record: Record) -> MergeOutcome:
        """Merge a record pulled from the server.

        Applies the record if there is no local copy or the incoming
        ``updated_at`` is greater than or equal to the local one; ties go to
        the incoming copy. Applied records are marked synced.
        """
        conn = self._durable()
        if conn is None:
            return MergeOutcome.ERROR

        try:
            row = conn.execute(
                f'SELECT updated_at FROM "{record.entity_type.value}" WHERE id = ?',
                (record.id,),
            ).fetchone()
            if row is not None and record.updated_at < row["updated_at"]:
                return MergeOutcome.STALE

            conn.execute(
                UPSERT_SQL.format(name=record.entity_type.value),
                self._record_params(replace(record, synced=True)),
            )
            conn.commit()
        except sqlite3.Error as e:
            self._drop_connection(e)
            return MergeOutcome.ERROR

        return MergeOutcome.APPLIED

    def count_unsynced(self) -> int:
        """Pending record count across all entity types."""
        return sum(len(self.get_unsynced(entity_type)) for entity_type in EntityType)

    # ==================== Fallback flush ====================

    def flush_fallback(self) -> int:
        """Flush queued records into the durable store.

        Returns:
            Number of records still queued afterwards.
        """
        self._durable()
        return len(self.fallback)

    def _flush_fallback(self, conn: sqlite3.Connection) -> None:
        for entity_type in self.fallback.entity_types():
            queued = self.fallback.entries(entity_type)
            try:
                with conn:
                    for record in queued:
                        self._apply_queued(conn, record)
            except sqlite3.Error as e:
                logger.warning(
                    f"Fallback flush failed for {entity_type.value}, "
                    f"keeping {len(queued)} queued: {e}"
                )
                continue

            try:
                self.fallback.clear_type(entity_type)
            except OSError as e:
                # Re-flushing later is harmless: queued copies never beat newer rows
                logger.warning(f"Could not clear flushed {entity_type.value} queue: {e}")
                continue

            logger.info(f"Flushed {len(queued)} queued {entity_type.value} records")

    def _apply_queued(self, conn: sqlite3.Connection, record: Record) -> None:
        existing = self._fetch_durable(conn, record.entity_type, record.id)
        if existing is not None and existing.updated_at > record.updated_at:
            return
        conn.execute(
            UPSERT_SQL.format(name=record.entity_type.value),
            self._record_params(record),
        )

    # ==================== Maintenance ====================

    def clear(self) -> None:
        """Remove every local record and the fallback queue.

        Raises:
            StoreError: If the database is reachable but the delete fails.
                Nothing is removed in that case.
        """
        conn = self._durable()
        if conn is not None:
            try:
                with conn:
                    for entity_type in EntityType:
                        conn.execute(f'DELETE FROM "{entity_type.value}"')
            except sqlite3.Error as e:
                self._drop_connection(e)
                raise StoreError(f"could not clear local records: {e}") from e
        self.fallback.clear()
        logger.info("Local records cleared")

    def get_stats(self) -> dict[str, Any]:
        """Get store statistics.

        Returns:
            Dictionary with per-type counts and queue state.
        """
        stats: dict[str, Any] = {
            "durable_available": False,
            "fallback_queued": len(self.fallback),
            "records_by_type": {},
            "tombstones": 0,
            "unsynced": 0,
        }

        conn = self._durable()
        if conn is None:
            return stats

        try:
            rows = {
                entity_type: conn.execute(
                    "SELECT COUNT(*) AS total, "
                    "COALESCE(SUM(deleted), 0) AS tombstones, "
                    "COALESCE(SUM(1 - synced), 0) AS unsynced "
                    f'FROM "{entity_type.value}"'
                ).fetchone()
                for entity_type in EntityType
            }
        except sqlite3.Error as e:
            self._drop_connection(e)
            stats["fallback_queued"] = len(self.fallback)
            return stats

        stats["durable_available"] = True
        for entity_type, row in rows.items():
            stats["records_by_type"][entity_type.value] = row["total"] - row["tombstones"]
            stats["tombstones"] += row["tombstones"]
            stats["unsynced"] += row["unsynced"]

        stats["fallback_queued"] = len(self.fallback)
        return stats
