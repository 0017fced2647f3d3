"""Asynchronous dispatcher feeding resource keys to the reconciler.

The manager owns the work queue. It guarantees:
- a key is queued at most once at a time
- a key is never reconciled by two passes concurrently; a change arriving
  mid-pass marks the key dirty and it is reconciled again afterwards
- requeue delays are honoured with loop timers, never by sleeping in a pass
- every resource is periodically resynced, per-kind periods apply

Passes call blocking boto3 APIs, so they run on a thread pool via
``run_in_executor``. Shutdown sets a threading event every running pass
observes at step boundaries and inside the NAT visibility poll.
"""

from __future__ import annotations

import asyncio
import logging
import threading
import time
from concurrent.futures import ThreadPoolExecutor

from .config import MAX_CONSECUTIVE_FAILURES, Config
from .engine import ReconcileResult
from .models import ResourceKey
from .reconciler import Reconciler
from .store import WatchableStore

logger = logging.getLogger(__name__)

# How often the resync loop looks for resources whose period elapsed
RESYNC_CHECK_SECONDS = 30.0


class Manager:
    """Queue, workers, timers and resync around a ``Reconciler``."""

    def __init__(
        self,
        config: Config,
        store: WatchableStore,
        reconciler: Reconciler,
        resync_check_seconds: float = RESYNC_CHECK_SECONDS,
    ) -> None:
        self._config = config
        self._store = store
        self._reconciler = reconciler
        self._resync_check_seconds = resync_check_seconds

        self._loop: asyncio.AbstractEventLoop | None = None
        self._queue: asyncio.Queue[ResourceKey] | None = None
        self._executor: ThreadPoolExecutor | None = None

        self._queued: set[ResourceKey] = set()
        self._processing: set[ResourceKey] = set()
        self._dirty: set[ResourceKey] = set()
        self._timers: dict[ResourceKey, asyncio.TimerHandle] = {}
        self._last_synced: dict[ResourceKey, float] = {}
        self._failures: dict[ResourceKey, int] = {}

        self._shutdown_event = asyncio.Event()
        self._cancel_event = threading.Event()

    @property
    def processing(self) -> frozenset[ResourceKey]:
        return frozenset(self._processing)

    def consecutive_failures(self, key: ResourceKey) -> int:
        return self._failures.get(key, 0)

    def last_synced(self, key: ResourceKey) -> float | None:
        return self._last_synced.get(key)

    async def run(self) -> None:
        """Dispatch until ``shutdown`` is called."""
        self._loop = asyncio.get_running_loop()
        self._queue = asyncio.Queue()
        self._executor = ThreadPoolExecutor(
            max_workers=self._config.max_workers, thread_name_prefix="reconcile"
        )
        self._store.subscribe(self.notify)

        logger.info(
            "Starting manager",
            extra={
                "max_workers": self._config.max_workers,
                "resync_period_seconds": self._config.resync_period_seconds,
                "pass_timeout_seconds": self._config.pass_timeout_seconds,
            },
        )

        for key in self._store.keys():
            self.enqueue(key)

        tasks = [
            asyncio.create_task(self._worker(i), name=f"worker-{i}")
            for i in range(self._config.max_workers)
        ]
        tasks.append(asyncio.create_task(self._resync_loop(), name="resync"))

        await self._shutdown_event.wait()

        self._cancel_event.set()
        for timer in self._timers.values():
            timer.cancel()
        self._timers.clear()
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
        # In-flight passes observe the cancel event and finish on their own
        self._executor.shutdown(wait=False, cancel_futures=True)

        logger.info("Manager shutdown complete")

    def shutdown(self) -> None:
        """Signal the manager and every running pass to stop."""
        logger.info("Shutdown requested")
        self._cancel_event.set()
        self._shutdown_event.set()

    # =========================================================================
    # Queueing
    # =========================================================================

    def notify(self, key: ResourceKey) -> None:
        """Store listener; may be called from any thread."""
        loop = self._loop
        if loop is None or loop.is_closed():
            return
        try:
            loop.call_soon_threadsafe(self.enqueue, key)
        except RuntimeError:
            # Loop closed between the check and the call
            logger.debug("Dropping change notification after shutdown", extra={"key": str(key)})

    def enqueue(self, key: ResourceKey, delay: float = 0.0) -> None:
        """Queue a key now, or after ``delay`` seconds. Must run on the loop."""
        if self._queue is None or self._loop is None or self._shutdown_event.is_set():
            return
        if not self._reconciler.handles(key.kind):
            return

        if delay > 0:
            due = self._loop.time() + delay
            existing = self._timers.get(key)
            if existing is not None:
                if existing.when() <= due:
                    return
                existing.cancel()
            self._timers[key] = self._loop.call_later(delay, self._fire_timer, key)
            return

        if key in self._queued:
            return
        self._queued.add(key)
        self._queue.put_nowait(key)

    def _fire_timer(self, key: ResourceKey) -> None:
        self._timers.pop(key, None)
        self.enqueue(key)

    # =========================================================================
    # Workers
    # =========================================================================

    async def _worker(self, index: int) -> None:
        assert self._queue is not None
        while True:
            key = await self._queue.get()
            try:
                await self._process(key)
            finally:
                self._queue.task_done()

    async def _process(self, key: ResourceKey) -> None:
        assert self._loop is not None
        self._queued.discard(key)
        if key in self._processing:
            self._dirty.add(key)
            return

        self._processing.add(key)
        deadline = time.monotonic() + self._config.pass_timeout_seconds
        try:
            result = await self._loop.run_in_executor(
                self._executor, self._reconciler.reconcile, key, self._cancel_event, deadline
            )
        except Exception as e:
            logger.exception("Reconciliation pass raised", extra={"key": str(key)})
            result = ReconcileResult.failed(e)
        finally:
            self._processing.discard(key)

        if self._store.find(key) is None:
            # Erased from the store, nothing left to resync
            self._forget(key)
            return

        self._last_synced[key] = time.monotonic()
        self._record(key, result)

        if key in self._dirty:
            self._dirty.discard(key)
            self.enqueue(key)
        elif result.requeue:
            self.enqueue(key)
        elif result.requeue_after > 0:
            self.enqueue(key, result.requeue_after)

    def _forget(self, key: ResourceKey) -> None:
        self._last_synced.pop(key, None)
        self._failures.pop(key, None)
        self._dirty.discard(key)
        timer = self._timers.pop(key, None)
        if timer is not None:
            timer.cancel()

    def _record(self, key: ResourceKey, result: ReconcileResult) -> None:
        if result.error is None:
            self._failures.pop(key, None)
            return

        failures = self._failures.get(key, 0) + 1
        self._failures[key] = failures
        if failures >= MAX_CONSECUTIVE_FAILURES:
            logger.warning(
                "Resource keeps failing to reconcile",
                extra={"key": str(key), "consecutive_failures": failures, "error": str(result.error)},
            )

    # =========================================================================
    # Resync
    # =========================================================================

    def resync_due(self, now: float | None = None) -> int:
        """Queue every resource whose resync period elapsed.

        Returns:
            Number of keys queued.
        """
        now = time.monotonic() if now is None else now
        count = 0
        for key in self._store.keys():
            if key in self._processing or key in self._queued:
                continue
            last = self._last_synced.get(key)
            if last is not None and now - last < self._config.resync_period_for(key.kind):
                continue
            if self._reconciler.handles(key.kind):
                self.enqueue(key)
                count += 1
        return count

    async def _resync_loop(self) -> None:
        while not self._shutdown_event.is_set():
            try:
                await asyncio.wait_for(
                    self._shutdown_event.wait(),
                    timeout=self._resync_check_seconds,
                )
            except TimeoutError:
                queued = self.resync_due()
                if queued:
                    logger.debug("Resync queued resources", extra={"count": queued})
