"""Per-process sync session: store handle, single-flight lock, local state."""

import asyncio
import logging
from dataclasses import dataclass
from typing import Any, Callable

from ..store import LocalRecordStore, StateFile

logger = logging.getLogger(__name__)

CURSOR_KEY_PREFIX = "syncCursor:"
STATUS_KEY = "syncStatus"


@dataclass
class Credentials:
    """Credentials supplied by the authentication flow."""

    auth_token: str | None
    passphrase: str | None
    user_id: str = "default"

    @property
    def complete(self) -> bool:
        return bool(self.auth_token) and bool(self.passphrase)


CredentialsProvider = Callable[[], Credentials | None]


class SyncSession:
    """Everything one sync engine instance owns.

    Constructed once per process and handed to the SyncCoordinator. Tests
    build several side by side to simulate independent devices.
    """

    def __init__(
        self,
        store: LocalRecordStore,
        state: StateFile,
        credentials: Credentials | CredentialsProvider | None = None,
    ):
        """Initialize the session.

        Args:
            store: Local record store of this device.
            state: State file holding cursor and status.
            credentials: Fixed credentials, or a callable returning the
                current ones (re-read at the start of every cycle).
        """
        self.store = store
        self.state = state
        self.lock = asyncio.Lock()
        self._credentials = credentials

    def set_credentials(self, credentials: Credentials | CredentialsProvider | None) -> None:
        """Replace the credentials, e.g. after the auth flow refreshed a token."""
        self._credentials = credentials

    def credentials(self) -> Credentials | None:
        if callable(self._credentials):
            return self._credentials()
        return self._credentials

    # ==================== Cursor ====================

    def get_cursor(self, user_id: str) -> int:
        """Get the persisted pull cursor for a user (0 if never pulled)."""
        value = self.state.get(f"{CURSOR_KEY_PREFIX}{user_id}", 0)
        return int(value) if isinstance(value, (int, float)) else 0

    def set_cursor(self, user_id: str, cursor: int) -> None:
        """Persist the pull cursor. Raises OSError if it cannot be written."""
        self.state.set(f"{CURSOR_KEY_PREFIX}{user_id}", int(cursor))

    # ==================== Status ====================

    def load_status(self) -> dict[str, Any] | None:
        return self.state.get(STATUS_KEY)

    def save_status(self, status: dict[str, Any]) -> None:
        try:
            self.state.set(STATUS_KEY, status)
        except OSError as e:
            logger.warning(f"Could not persist sync status: {e}")

    def reset_local_state(self) -> None:
        """Clear local records, fallback queue, cursors and status."""
        self.store.clear()
        for key in self.state.keys():
            if key.startswith(CURSOR_KEY_PREFIX) or key == STATUS_KEY:
                self.state.remove(key)
        logger.info("Local sync state reset")
