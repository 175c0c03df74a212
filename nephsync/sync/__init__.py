"""Client-side replication engine.

Pushes locally changed records to the replication server, sealed with the
user's key, and pulls other devices' changes back in with last-writer-wins
merging.
"""

from .coordinator import SyncCoordinator, SyncState, SyncStatus
from .remote_client import RemoteClient
from .scheduler import SyncScheduler
from .session import Credentials, SyncSession

__all__ = [
    "Credentials",
    "RemoteClient",
    "SyncCoordinator",
    "SyncScheduler",
    "SyncSession",
    "SyncState",
    "SyncStatus",
]
