"""Bounded fallback queue for writes made while SQLite is unavailable."""

import logging
from typing import Any

from ..records import EntityType, Record
from .state import StateFile

logger = logging.getLogger(__name__)

STATE_KEY = "fallbackQueue"
DEFAULT_MAX_ENTRIES = 500


class FallbackQueue:
    """Per-entity-type, last-writer-wins map of pending records.

    Each entity type holds at most ``max_entries`` records; putting a new id
    into a full map evicts the oldest one. Putting an existing id replaces it
    and makes it the newest. The whole queue is persisted in a StateFile.
    """

    def __init__(self, state: StateFile, max_entries: int = DEFAULT_MAX_ENTRIES):
        """Initialize the fallback queue.

        Args:
            state: State file the queue is persisted in.
            max_entries: Maximum records kept per entity type.
        """
        self._state = state
        self.max_entries = max_entries

    def _load(self) -> dict[str, dict[str, dict[str, Any]]]:
        queue = self._state.get(STATE_KEY) or {}
        return {name: dict(entries) for name, entries in queue.items()}

    def _save(self, queue: dict[str, dict[str, dict[str, Any]]]) -> None:
        self._state.set(STATE_KEY, {name: entries for name, entries in queue.items() if entries})

    def put(self, record: Record) -> None:
        """Queue a record, replacing any queued copy with the same id.

        Raises:
            OSError: If the state file cannot be written.
        """
        queue = self._load()
        entries = queue.setdefault(record.entity_type.value, {})
        entries.pop(record.id, None)
        entries[record.id] = record.to_dict()

        while len(entries) > self.max_entries:
            evicted = next(iter(entries))
            del entries[evicted]
            logger.warning(
                f"Fallback queue for {record.entity_type.value} full, "
                f"evicted {evicted}"
            )

        self._save(queue)

    def get(self, entity_type: EntityType, record_id: str) -> Record | None:
        """Get a queued record by id."""
        data = self._load().get(entity_type.value, {}).get(record_id)
        return Record.from_dict(data) if data else None

    def remove(self, entity_type: EntityType, record_id: str) -> bool:
        """Remove a queued record.

        Returns:
            True if the record was queued.
        """
        queue = self._load()
        entries = queue.get(entity_type.value, {})
        if record_id not in entries:
            return False
        del entries[record_id]
        self._save(queue)
        return True

    def entries(self, entity_type: EntityType) -> list[Record]:
        """Queued records for an entity type, oldest first."""
        return [
            Record.from_dict(data)
            for data in self._load().get(entity_type.value, {}).values()
        ]

    def entity_types(self) -> list[EntityType]:
        """Entity types with at least one queued record."""
        return [EntityType(name) for name, entries in self._load().items() if entries]

    def clear_type(self, entity_type: EntityType) -> None:
        queue = self._load()
        if queue.pop(entity_type.value, None):
            self._save(queue)

    def clear(self) -> None:
        self._state.remove(STATE_KEY)

    def __len__(self) -> int:
        return sum(len(entries) for entries in self._load().values())
