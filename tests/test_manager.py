"""Tests for the asynchronous dispatcher."""

from __future__ import annotations

import asyncio
import contextlib
import threading
import time
from collections import Counter
from collections.abc import AsyncIterator, Callable

import pytest

from builders import account_credentials, cluster, network, secret
from cluster_operator.config import Config
from cluster_operator.engine import ReconcileResult
from cluster_operator.manager import Manager
from cluster_operator.models import ResourceKey
from cluster_operator.store import MemoryStore

NETWORK_KEY = ResourceKey("Network", "team-a", "prod")
CLUSTER_KEY = ResourceKey("Cluster", "team-a", "prod")
CREDS_KEY = ResourceKey("AccountCredentials", "team-a", "aws")

HANDLED_KINDS = frozenset({"AccountCredentials", "Network", "Cluster", "NodeGroup"})


class FakeReconciler:
    """Records passes and replays scripted results per key."""

    def __init__(self) -> None:
        self.results: dict[ResourceKey, list[ReconcileResult | Exception]] = {}
        self.calls: list[ResourceKey] = []
        self.cancel_events: list[threading.Event] = []
        self.deadlines: list[float | None] = []
        self.max_active: Counter[ResourceKey] = Counter()
        self.block: set[ResourceKey] = set()
        self.release = threading.Event()
        self._active: Counter[ResourceKey] = Counter()
        self._lock = threading.Lock()

    def handles(self, kind: str) -> bool:
        return kind in HANDLED_KINDS

    def count(self, key: ResourceKey) -> int:
        with self._lock:
            return self.calls.count(key)

    def reconcile(
        self,
        key: ResourceKey,
        cancel_event: threading.Event | None = None,
        deadline: float | None = None,
    ) -> ReconcileResult:
        with self._lock:
            self.calls.append(key)
            self.cancel_events.append(cancel_event)  # type: ignore[arg-type]
            self.deadlines.append(deadline)
            self._active[key] += 1
            self.max_active[key] = max(self.max_active[key], self._active[key])
            blocked = key in self.block
            self.block.discard(key)
        try:
            if blocked:
                self.release.wait(5)
            with self._lock:
                pending = self.results.get(key)
                outcome = pending.pop(0) if pending else ReconcileResult.done()
            if isinstance(outcome, Exception):
                raise outcome
            return outcome
        finally:
            with self._lock:
                self._active[key] -= 1


async def eventually(predicate: Callable[[], bool], timeout: float = 2.0) -> None:
    async with asyncio.timeout(timeout):
        while not predicate():
            await asyncio.sleep(0.01)


@contextlib.asynccontextmanager
async def running(manager: Manager) -> AsyncIterator[Manager]:
    task = asyncio.create_task(manager.run())
    # Let run() set up its queue and workers
    await asyncio.sleep(0)
    try:
        yield manager
    finally:
        manager.shutdown()
        await asyncio.wait_for(task, timeout=5)


@pytest.fixture
def fake() -> FakeReconciler:
    return FakeReconciler()


@pytest.fixture
def populated_store() -> MemoryStore:
    store = MemoryStore()
    store.apply(account_credentials())
    store.apply(network())
    store.apply(cluster())
    store.apply(secret("notes", {"k": "v"}))
    return store


def make_manager(store: MemoryStore, fake: FakeReconciler, **config: object) -> Manager:
    settings: dict = {"max_workers": 2}
    settings.update(config)
    return Manager(Config(**settings), store, fake, resync_check_seconds=3600)  # type: ignore[arg-type]


class TestDispatch:
    """Tests for queueing and running passes."""

    @pytest.mark.asyncio
    async def test_initial_keys_reconciled_once(
        self, populated_store: MemoryStore, fake: FakeReconciler
    ) -> None:
        async with running(make_manager(populated_store, fake)):
            await eventually(lambda: len(fake.calls) >= 3)
            await asyncio.sleep(0.05)

        assert sorted(fake.calls) == sorted([CREDS_KEY, NETWORK_KEY, CLUSTER_KEY])

    @pytest.mark.asyncio
    async def test_unhandled_kinds_skipped(
        self, populated_store: MemoryStore, fake: FakeReconciler
    ) -> None:
        async with running(make_manager(populated_store, fake)):
            await eventually(lambda: len(fake.calls) >= 3)

        assert all(key.kind != "Secret" for key in fake.calls)

    @pytest.mark.asyncio
    async def test_pass_receives_cancel_event_and_deadline(self, fake: FakeReconciler) -> None:
        store = MemoryStore()
        store.apply(network())
        manager = make_manager(store, fake, pass_timeout_seconds=120)

        async with running(manager):
            await eventually(lambda: fake.count(NETWORK_KEY) == 1)
            deadline = fake.deadlines[0]
            assert deadline is not None
            assert 0 < deadline - time.monotonic() <= 120
            assert not fake.cancel_events[0].is_set()

        assert fake.cancel_events[0].is_set()

    @pytest.mark.asyncio
    async def test_store_change_enqueues(self, fake: FakeReconciler) -> None:
        store = MemoryStore()
        store.apply(network())

        async with running(make_manager(store, fake)):
            await eventually(lambda: fake.count(NETWORK_KEY) == 1)
            store.apply(network(cidr="10.1.0.0/16"))
            await eventually(lambda: fake.count(NETWORK_KEY) == 2)


class TestRequeue:
    """Tests for honouring pass results."""

    @pytest.mark.asyncio
    async def test_requeue_now(self, fake: FakeReconciler) -> None:
        store = MemoryStore()
        store.apply(network())
        fake.results[NETWORK_KEY] = [ReconcileResult.requeue_now(), ReconcileResult.requeue_now()]

        async with running(make_manager(store, fake)):
            await eventually(lambda: fake.count(NETWORK_KEY) == 3)
            await asyncio.sleep(0.05)

        assert fake.count(NETWORK_KEY) == 3

    @pytest.mark.asyncio
    async def test_requeue_after_delay(self, fake: FakeReconciler) -> None:
        store = MemoryStore()
        store.apply(network())
        fake.results[NETWORK_KEY] = [ReconcileResult.requeue_in(0.1)]

        async with running(make_manager(store, fake)):
            await eventually(lambda: fake.count(NETWORK_KEY) == 1)
            await eventually(lambda: fake.count(NETWORK_KEY) == 2)

    @pytest.mark.asyncio
    async def test_failure_not_requeued(self, fake: FakeReconciler) -> None:
        store = MemoryStore()
        store.apply(network())
        fake.results[NETWORK_KEY] = [ReconcileResult.failed(RuntimeError("boom"))]

        async with running(make_manager(store, fake)) as manager:
            await eventually(lambda: manager.consecutive_failures(NETWORK_KEY) == 1)
            await asyncio.sleep(0.05)

        assert fake.count(NETWORK_KEY) == 1

    @pytest.mark.asyncio
    async def test_earlier_timer_wins(self, fake: FakeReconciler) -> None:
        store = MemoryStore()
        store.apply(network())

        async with running(make_manager(store, fake)) as manager:
            await eventually(lambda: fake.count(NETWORK_KEY) == 1)
            manager.enqueue(NETWORK_KEY, 3600)
            manager.enqueue(NETWORK_KEY, 0.05)
            manager.enqueue(NETWORK_KEY, 1800)
            await eventually(lambda: fake.count(NETWORK_KEY) == 2)

    @pytest.mark.asyncio
    async def test_failures_counted_and_reset(self, fake: FakeReconciler) -> None:
        store = MemoryStore()
        store.apply(network())
        fake.results[NETWORK_KEY] = [
            ReconcileResult.failed(RuntimeError("boom")),
            RuntimeError("pass raised"),
        ]

        async with running(make_manager(store, fake)) as manager:
            await eventually(lambda: manager.consecutive_failures(NETWORK_KEY) == 1)
            store.apply(network())
            await eventually(lambda: manager.consecutive_failures(NETWORK_KEY) == 2)
            store.apply(network())
            await eventually(lambda: fake.count(NETWORK_KEY) == 3)
            await eventually(lambda: manager.consecutive_failures(NETWORK_KEY) == 0)


class TestConcurrency:
    """Tests for per-key exclusion."""

    @pytest.mark.asyncio
    async def test_change_during_pass_reconciled_after(self, fake: FakeReconciler) -> None:
        """A key changed mid-pass is reconciled again, never concurrently."""
        store = MemoryStore()
        store.apply(network())
        fake.block.add(NETWORK_KEY)

        async with running(make_manager(store, fake)) as manager:
            await eventually(lambda: NETWORK_KEY in manager.processing)
            store.apply(network(cidr="10.1.0.0/16"))
            await asyncio.sleep(0.1)
            fake.release.set()
            await eventually(lambda: fake.count(NETWORK_KEY) == 2)
            await asyncio.sleep(0.05)

        assert fake.count(NETWORK_KEY) == 2
        assert fake.max_active[NETWORK_KEY] == 1

    @pytest.mark.asyncio
    async def test_keys_run_in_parallel(self, fake: FakeReconciler) -> None:
        store = MemoryStore()
        store.apply(network())
        store.apply(cluster())
        fake.block.add(NETWORK_KEY)

        async with running(make_manager(store, fake)):
            await eventually(lambda: fake.count(CLUSTER_KEY) == 1)
            assert fake.count(NETWORK_KEY) == 1
            fake.release.set()


class TestResync:
    """Tests for periodic resync."""

    @pytest.mark.asyncio
    async def test_resync_due(self, populated_store: MemoryStore, fake: FakeReconciler) -> None:
        async with running(make_manager(populated_store, fake, resync_period_seconds=600)) as manager:
            await eventually(lambda: len(fake.calls) == 3)
            await eventually(lambda: not manager.processing)

            assert manager.resync_due(time.monotonic()) == 0

            # Credentials resync on a longer period than other kinds
            queued = manager.resync_due(time.monotonic() + 601)
            assert queued == 2
            await eventually(lambda: len(fake.calls) == 5)

        assert fake.count(CREDS_KEY) == 1
        assert fake.count(NETWORK_KEY) == 2
        assert fake.count(CLUSTER_KEY) == 2

    @pytest.mark.asyncio
    async def test_erased_key_forgotten(self, fake: FakeReconciler) -> None:
        """Resync and failure bookkeeping is dropped once a resource leaves the store."""
        store = MemoryStore()
        store.apply(network())
        fake.results[NETWORK_KEY] = [ReconcileResult.failed(RuntimeError("boom"))]

        async with running(make_manager(store, fake)) as manager:
            await eventually(lambda: manager.consecutive_failures(NETWORK_KEY) == 1)
            assert manager.last_synced(NETWORK_KEY) is not None

            store.request_deletion(NETWORK_KEY)
            await eventually(lambda: fake.count(NETWORK_KEY) == 2)
            await eventually(lambda: manager.last_synced(NETWORK_KEY) is None)

            assert manager.consecutive_failures(NETWORK_KEY) == 0
            assert manager.resync_due(time.monotonic() + 3600) == 0

    @pytest.mark.asyncio
    async def test_enqueue_after_shutdown_ignored(self, fake: FakeReconciler) -> None:
        store = MemoryStore()
        manager = make_manager(store, fake)
        async with running(manager):
            pass

        manager.enqueue(NETWORK_KEY)
        manager.notify(NETWORK_KEY)
        assert fake.calls == []
