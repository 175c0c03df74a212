"""Triggers that decide when a sync cycle runs.

Periodic timer, debounced local-change trigger, and connectivity or
visibility events all funnel into SyncCoordinator.run_cycle(), whose
single-flight lock turns overlapping triggers into no-ops.
"""

import asyncio
import logging
from typing import TYPE_CHECKING

from ..records import EntityType

if TYPE_CHECKING:
    from ..store import LocalRecordStore
    from .coordinator import SyncCoordinator

logger = logging.getLogger(__name__)


class SyncScheduler:
    """Background scheduling for a SyncCoordinator."""

    def __init__(
        self,
        coordinator: "SyncCoordinator",
        interval_seconds: float = 300,
        debounce_seconds: float = 2.0,
    ):
        """Initialize the scheduler.

        Args:
            coordinator: Coordinator whose cycles this scheduler triggers.
            interval_seconds: Seconds between periodic cycles.
            debounce_seconds: Quiet period after the last local change
                before a cycle runs.
        """
        self._coordinator = coordinator
        self._interval = interval_seconds
        self._debounce = debounce_seconds
        self._task: asyncio.Task | None = None
        self._debounce_task: asyncio.Task | None = None
        self._triggered: set[asyncio.Task] = set()
        self._store: "LocalRecordStore | None" = None
        self._running = False

    @classmethod
    def from_config(cls, coordinator: "SyncCoordinator", config) -> "SyncScheduler":
        return cls(
            coordinator,
            interval_seconds=config.sync.interval_seconds,
            debounce_seconds=config.sync.debounce_seconds,
        )

    @property
    def running(self) -> bool:
        return self._running

    def attach(self, store: "LocalRecordStore") -> None:
        """Listen for local mutations on a store."""
        self._store = store
        store.add_listener(self._on_local_change)

    def detach(self) -> None:
        if self._store is not None:
            self._store.remove_listener(self._on_local_change)
            self._store = None

    async def start(self) -> None:
        """Start the periodic timer as a background task."""
        if self._running:
            return

        self._running = True
        self._task = asyncio.create_task(self._run_loop())
        logger.info(
            f"Sync scheduler started (interval={self._interval}s, "
            f"debounce={self._debounce}s)"
        )

    async def stop(self) -> None:
        """Stop the timer and cancel pending triggers.

        Only waits are cancelled. A cycle already in flight runs to
        completion on its own task, and stop() returns once it has.
        """
        self._running = False
        tasks = [t for t in (self._task, self._debounce_task) if t is not None]
        for task in tasks:
            task.cancel()
        for task in tasks:
            try:
                await task
            except asyncio.CancelledError:
                pass
        self._task = None
        self._debounce_task = None

        if self._triggered:
            await asyncio.gather(*list(self._triggered))
        logger.info("Sync scheduler stopped")

    async def _run_loop(self) -> None:
        """Periodic sync loop."""
        while self._running:
            # Shielded so cancelling the loop never aborts a running cycle
            await asyncio.shield(self.trigger("timer"))
            await asyncio.sleep(self._interval)

    async def _run_cycle_safely(self, reason: str) -> None:
        logger.debug(f"Sync triggered by {reason}")
        try:
            await self._coordinator.run_cycle()
        except Exception as e:
            logger.error(f"Sync cycle error ({reason}): {e}", exc_info=True)

    def trigger(self, reason: str = "manual") -> asyncio.Task:
        """Start a cycle now on its own task."""
        task = asyncio.create_task(self._run_cycle_safely(reason))
        self._triggered.add(task)
        task.add_done_callback(self._triggered.discard)
        return task

    def notify_online(self) -> asyncio.Task:
        """Connectivity regained."""
        return self.trigger("online")

    def notify_visible(self) -> asyncio.Task:
        """App became visible again."""
        return self.trigger("visible")

    def notify_local_change(self) -> None:
        """Schedule a debounced cycle; bursts of changes coalesce into one.

        Raises:
            RuntimeError: If called outside a running event loop.
        """
        loop = asyncio.get_running_loop()
        if self._debounce_task is not None and not self._debounce_task.done():
            self._debounce_task.cancel()
        self._debounce_task = loop.create_task(self._debounced())

    async def _debounced(self) -> None:
        await asyncio.sleep(self._debounce)
        # The cycle runs on its own task; a newer change only cancels the wait
        self.trigger("local change")

    def _on_local_change(self, entity_type: EntityType, record_id: str) -> None:
        try:
            self.notify_local_change()
        except RuntimeError:
            # No running event loop; the periodic timer picks the change up
            logger.debug(f"No event loop for change to {entity_type.value} {record_id}")
