"""Sync coordinator: push local changes, then pull remote ones.

One cycle runs Idle -> Pushing -> Pulling -> Idle under the session's
single-flight lock. Every failure ends up in SyncStatus; nothing raised
inside a cycle escapes run_cycle().
"""

import asyncio
import logging
from dataclasses import asdict, dataclass, field, replace
from enum import Enum
from typing import Any

from ..config import Config
from ..crypto import STATIC_SALT, derive_key, seal, unseal
from ..errors import AuthenticationError, BatchRejectedError, RemoteError
from ..records import EntityType, Record, now_ms, parse_payload, resolve_entity_type
from ..store import MergeOutcome
from .remote_client import RemoteClient
from .session import Credentials, SyncSession

logger = logging.getLogger(__name__)

MAX_STATUS_ERRORS = 20


class SyncState(Enum):
    IDLE = "idle"
    PUSHING = "pushing"
    PULLING = "pulling"


@dataclass
class SyncStatus:
    """Summary of the most recent sync cycle."""

    state: SyncState = SyncState.IDLE
    last_run_at: int | None = None
    last_success_at: int | None = None
    pushed: int = 0
    pulled: int = 0
    skipped: int = 0
    pending: int = 0
    last_error: str | None = None
    errors: list[str] = field(default_factory=list)
    server_time: int | None = None
    clock_skew_ms: int | None = None

    def record_error(self, message: str) -> None:
        self.last_error = message
        if len(self.errors) < MAX_STATUS_ERRORS:
            self.errors.append(message)

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for persistence."""
        data = asdict(self)
        data["state"] = self.state.value
        return data

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "SyncStatus":
        """Create from dictionary."""
        known = {k: v for k, v in data.items() if k in cls.__dataclass_fields__}
        known["state"] = SyncState(known.get("state", "idle"))
        known["errors"] = list(known.get("errors") or [])
        return cls(**known)


class _PullAborted(Exception):
    """Local merge could not be written; the cursor must not advance."""


class SyncCoordinator:
    """Runs sync cycles for one session against one replication server."""

    def __init__(
        self,
        session: SyncSession,
        client: RemoteClient,
        batch_size: int = 50,
        page_size: int = 500,
        salt: bytes = STATIC_SALT,
        enabled: bool = True,
    ):
        """Initialize the coordinator.

        Args:
            session: Session owning the store, lock and local state.
            client: Remote client for the replication endpoint.
            batch_size: Records per push request.
            page_size: Entries requested per pull page.
            salt: Key derivation salt.
            enabled: False starts the coordinator paused.
        """
        self.session = session
        self.client = client
        self.batch_size = batch_size
        self.page_size = page_size
        self.salt = salt
        self._paused = not enabled
        self._rejected_token: str | None = None
        self._key_cache: tuple[str, bytes] | None = None

        stored = session.load_status()
        self._status = SyncStatus.from_dict(stored) if stored else SyncStatus()
        self._status.state = SyncState.IDLE

    @classmethod
    def from_config(
        cls,
        config: Config,
        session: SyncSession,
        client: RemoteClient | None = None,
    ) -> "SyncCoordinator":
        """Build a coordinator from configuration."""
        if client is None:
            client = RemoteClient(
                config.sync.server_url or None,
                timeout=config.sync.request_timeout_seconds,
                max_retries=config.sync.retry_max_attempts,
                base_delay=config.sync.retry_base_delay_seconds,
                max_delay=config.sync.retry_max_delay_seconds,
            )
        return cls(
            session,
            client,
            batch_size=config.sync.batch_size,
            page_size=config.sync.page_size,
            salt=config.crypto.salt.encode("utf-8") if config.crypto.salt else STATIC_SALT,
            enabled=config.sync.enabled,
        )

    # ==================== Controls ====================

    @property
    def status(self) -> SyncStatus:
        """Read-only copy of the current status."""
        return replace(self._status, errors=list(self._status.errors))

    @property
    def paused(self) -> bool:
        return self._paused

    def pause(self) -> None:
        self._paused = True
        logger.info("Sync paused")

    def resume(self) -> None:
        self._paused = False
        logger.info("Sync resumed")

    @property
    def running(self) -> bool:
        return self.session.lock.locked()

    def _skip_reason(self, creds: Credentials | None) -> str | None:
        if self._paused:
            return "paused"
        if not self.client.base_url:
            return "no server configured"
        if creds is None or not creds.complete:
            return "credentials missing"
        if creds.auth_token == self._rejected_token:
            return "credentials rejected, waiting for refresh"
        if self.session.lock.locked():
            return "cycle already running"
        return None

    async def run_cycle(self) -> SyncStatus | None:
        """Run one push/pull cycle.

        Returns:
            The resulting status, or None if the cycle was skipped because
            one is already running, sync is paused, or credentials are
            missing or were rejected.
        """
        creds = self.session.credentials()
        if reason := self._skip_reason(creds):
            logger.debug(f"Sync cycle skipped: {reason}")
            return None

        async with self.session.lock:
            return await self._run_locked(creds)

    sync_now = run_cycle

    async def _get_key(self, passphrase: str) -> bytes:
        if self._key_cache is None or self._key_cache[0] != passphrase:
            key = await asyncio.to_thread(derive_key, passphrase, self.salt)
            self._key_cache = (passphrase, key)
        return self._key_cache[1]

    async def _run_locked(self, creds: Credentials) -> SyncStatus:
        status = SyncStatus(state=SyncState.PUSHING, last_run_at=now_ms())
        self._status = status

        try:
            key = await self._get_key(creds.passphrase)
            await self._push(creds, key, status)
            status.state = SyncState.PULLING
            await self._pull(creds, key, status)
        except AuthenticationError as e:
            self._rejected_token = creds.auth_token
            status.record_error(f"authentication: {e}")
            logger.warning("Sync credentials rejected; paused until they change")
        except RemoteError as e:
            status.record_error(f"pull: {e}")
            logger.warning(f"Pull failed, cursor unchanged: {e}")
        except _PullAborted as e:
            status.record_error(f"pull: {e}")
            logger.warning(f"Pull aborted, cursor unchanged: {e}")
        except Exception as e:
            status.record_error(f"unexpected: {e}")
            logger.error(f"Sync cycle failed: {e}", exc_info=True)

        status.state = SyncState.IDLE
        try:
            status.pending = self.session.store.count_unsynced()
        except Exception as e:
            logger.warning(f"Could not count pending records: {e}")
        if not status.errors:
            status.last_success_at = now_ms()
        self.session.save_status(status.to_dict())

        logger.info(
            f"Sync: pushed={status.pushed}, pulled={status.pulled}, "
            f"skipped={status.skipped}, pending={status.pending}, "
            f"errors={len(status.errors)}"
        )
        return self.status

    # ==================== Push ====================

    async def _push(self, creds: Credentials, key: bytes, status: SyncStatus) -> None:
        for entity_type in EntityType:
            records = self.session.store.get_unsynced(entity_type)
            if not records:
                continue

            for start in range(0, len(records), self.batch_size):
                batch = records[start:start + self.batch_size]
                try:
                    await self._push_batch(creds, key, entity_type, batch, status)
                except BatchRejectedError as e:
                    status.record_error(f"push {entity_type.value}: batch rejected: {e}")
                    logger.warning(f"Push batch for {entity_type.value} rejected: {e}")
                except AuthenticationError:
                    raise
                except RemoteError as e:
                    status.record_error(f"push {entity_type.value}: {e}")
                    logger.warning(f"Push failed for {entity_type.value}: {e}")
                    break

    async def _push_batch(
        self,
        creds: Credentials,
        key: bytes,
        entity_type: EntityType,
        batch: list[Record],
        status: SyncStatus,
    ) -> None:
        entries = [record.to_wire(seal(record.payload.to_dict(), key)) for record in batch]
        result = await self.client.push_batch(creds.auth_token, entries)

        accepted = set(result["acceptedIds"])
        acknowledged = {r.id: r.updated_at for r in batch if r.id in accepted}
        self.session.store.mark_synced(entity_type, acknowledged)

        status.pushed += len(acknowledged)
        status.skipped += len(result["skippedIds"])
        logger.debug(
            f"Pushed {entity_type.value}: accepted={len(acknowledged)}, "
            f"skipped={len(result['skippedIds'])}"
        )

    # ==================== Pull ====================

    async def _pull(self, creds: Credentials, key: bytes, status: SyncStatus) -> None:
        since = self.session.get_cursor(creds.user_id)
        cursor = since

        while True:
            page = await self.client.pull_page(creds.auth_token, cursor, self.page_size)
            entries = page["entries"]

            highest = cursor
            for entry in entries:
                if self._apply_entry(entry, key, status):
                    status.pulled += 1
                server_stamp = entry.get("serverUpdatedAt")
                if isinstance(server_stamp, int) and server_stamp > highest:
                    highest = server_stamp

            if isinstance(page.get("serverTime"), int):
                status.server_time = page["serverTime"]
                status.clock_skew_ms = page["serverTime"] - now_ms()

            advanced = highest > cursor
            cursor = highest
            if len(entries) < self.page_size or not advanced:
                break

        if cursor != since:
            try:
                self.session.set_cursor(creds.user_id, cursor)
            except OSError as e:
                status.record_error(f"pull: could not persist cursor: {e}")
                return
        logger.debug(f"Pull complete, cursor={cursor}")

    def _apply_entry(self, entry: dict[str, Any], key: bytes, status: SyncStatus) -> bool:
        """Decrypt and merge one pulled entry.

        Returns:
            True if the entry was applied locally.
        """
        entry_id = entry.get("id")
        tag = entry.get("entityType")
        entity_type = resolve_entity_type(tag) if isinstance(tag, str) else None
        if entity_type is None:
            status.record_error(f"pull: unknown entity type {tag!r} for {entry_id}")
            logger.warning(f"Skipping {entry_id}: unknown entity type {tag!r}")
            return False

        data = unseal(entry.get("sealedPayload") or "", key)
        if not isinstance(data, dict):
            status.record_error(f"pull: could not decrypt {entry_id}")
            logger.warning(f"Skipping {entry_id}: payload did not decrypt")
            return False

        try:
            record = Record(
                id=entry["id"],
                entity_type=entity_type,
                payload=parse_payload(tag, data),
                timestamp=int(entry["timestamp"]),
                updated_at=int(entry["updatedAt"]),
                deleted=bool(entry.get("deleted", False)),
                deleted_at=entry.get("deletedAt"),
            )
        except (KeyError, TypeError, ValueError) as e:
            status.record_error(f"pull: malformed entry {entry_id}: {e}")
            logger.warning(f"Skipping malformed entry {entry_id}: {e}")
            return False

        outcome = self.session.store.merge_remote(record)
        if outcome is MergeOutcome.ERROR:
            raise _PullAborted("local store unavailable during merge")
        return outcome is MergeOutcome.APPLIED
