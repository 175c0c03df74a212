"""Local record storage for a single device.

Provides:
- LocalRecordStore: SQLite-backed records with soft deletes
- FallbackQueue: bounded write queue used while SQLite is unavailable
- StateFile: small JSON document for cursor, status and the queue
"""

from .fallback import FallbackQueue
from .local_store import LocalRecordStore, MergeOutcome, WriteResult, WriteStatus
from .state import StateFile

__all__ = [
    "FallbackQueue",
    "LocalRecordStore",
    "MergeOutcome",
    "StateFile",
    "WriteResult",
    "WriteStatus",
]
