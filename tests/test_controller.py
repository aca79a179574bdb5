"""Unit tests for controller.py - Watch-driven reconciliation runtime."""

import asyncio
from typing import List

import pytest

from capabilities import WatchSpec
from controller import Controller, ObjectCache, WorkQueue
from fakes import FakeKube, make_esc
from reconcilers.base import Outcome, ReconcileResult, Reconciler


class StubReconciler(Reconciler):
    """Reconciler recording the keys it was asked to reconcile."""

    def __init__(self, name="stub", watches=None, result=None, error=None, keys=None):
        super().__init__(ctx=None)
        self._name = name
        self._watches = watches or [WatchSpec("ExternalSecretsConfig")]
        self.result = result or ReconcileResult.done()
        self.error = error
        self.keys = keys
        self.seen: List[str] = []
        self.mapped: List[tuple] = []
        self.reconciled = asyncio.Event()

    @property
    def name(self) -> str:
        return self._name

    def watches(self):
        return self._watches

    def map_event(self, event_type, obj, old):
        self.mapped.append((event_type, old))
        if self.keys is not None:
            return self.keys
        return [obj["metadata"]["name"]]

    async def reconcile(self, key):
        self.seen.append(key)
        self.reconciled.set()
        if self.error is not None:
            raise self.error
        return self.result

    def initial_keys(self):
        return ["cluster"]


# ==================== WorkQueue tests ====================


@pytest.mark.asyncio
class TestWorkQueue:
    """Tests for the de-duplicating work queue."""

    async def test_duplicate_adds_collapse(self):
        queue = WorkQueue()
        queue.add("a")
        queue.add("a")
        queue.add("b")
        assert len(queue) == 2
        assert await queue.get() == "a"
        assert await queue.get() == "b"

    async def test_add_while_processing_is_deferred(self):
        queue = WorkQueue()
        queue.add("a")
        key = await queue.get()
        queue.add("a")
        assert len(queue) == 0
        queue.done(key)
        assert len(queue) == 1

    async def test_done_without_dirty(self):
        queue = WorkQueue()
        queue.add("a")
        queue.done(await queue.get())
        assert len(queue) == 0

    async def test_add_after(self):
        queue = WorkQueue()
        queue.add_after("a", 0.01)
        assert len(queue) == 0
        assert await asyncio.wait_for(queue.get(), timeout=1) == "a"

    async def test_earlier_timer_wins(self):
        queue = WorkQueue()
        queue.add_after("a", 0.01)
        queue.add_after("a", 60)
        assert await asyncio.wait_for(queue.get(), timeout=1) == "a"

    async def test_shutdown_cancels_timers(self):
        queue = WorkQueue()
        queue.add_after("a", 0.01)
        queue.shutdown()
        await asyncio.sleep(0.05)
        assert len(queue) == 0


# ==================== ObjectCache tests ====================


class TestObjectCache:
    """Tests for the watch cache."""

    def test_apply_returns_previous(self):
        cache = ObjectCache()
        first = make_esc()
        assert cache.apply("ADDED", first) is None
        second = make_esc(generation=2)
        assert cache.apply("MODIFIED", second) is first
        assert cache.apply("MODIFIED", make_esc(generation=3)) is second

    def test_deleted_removes(self):
        cache = ObjectCache()
        cache.apply("ADDED", make_esc())
        cache.apply("DELETED", make_esc())
        assert len(cache) == 0


# ==================== Controller tests ====================


class TestDispatch:
    """Tests for watch event dispatch."""

    def test_watches_are_shared(self):
        a = StubReconciler("a", [WatchSpec("ExternalSecretsConfig"), WatchSpec("Secret", "app=x")])
        b = StubReconciler("b", [WatchSpec("ExternalSecretsConfig")])
        controller = Controller(FakeKube(), [a, b])
        subscriptions = controller.watch_subscriptions()
        assert subscriptions[WatchSpec("ExternalSecretsConfig")] == [a, b]
        assert subscriptions[WatchSpec("Secret", "app=x")] == [a]

    def test_dispatch_passes_previous_observation(self):
        stub = StubReconciler()
        controller = Controller(FakeKube(), [stub])
        first = make_esc()
        controller.dispatch("ADDED", first, [stub])
        controller.dispatch("MODIFIED", make_esc(generation=2), [stub])
        assert stub.mapped == [("ADDED", None), ("MODIFIED", first)]
        assert len(controller.queues["stub"]) == 1

    def test_mapping_error_does_not_stop_others(self):
        broken = StubReconciler("broken")
        broken.map_event = lambda *args: 1 / 0
        healthy = StubReconciler("healthy")
        controller = Controller(FakeKube(), [broken, healthy])
        controller.dispatch("ADDED", make_esc(), [broken, healthy])
        assert len(controller.queues["healthy"]) == 1
        assert len(controller.queues["broken"]) == 0

    def test_empty_mapping_enqueues_nothing(self):
        stub = StubReconciler(keys=[])
        controller = Controller(FakeKube(), [stub])
        controller.dispatch("ADDED", make_esc(), [stub])
        assert len(controller.queues["stub"]) == 0


@pytest.mark.asyncio
class TestProcess:
    """Tests for running single passes."""

    async def test_requeue_after(self):
        stub = StubReconciler(result=ReconcileResult.retry("later", 0))
        controller = Controller(FakeKube(), [stub])
        controller.running = True
        queue = controller.queues["stub"]
        queue.add("cluster")
        key = await queue.get()
        await controller._process(stub, queue, key)
        assert await asyncio.wait_for(queue.get(), timeout=1) == "cluster"

    async def test_success_is_not_requeued(self):
        stub = StubReconciler()
        controller = Controller(FakeKube(), [stub])
        controller.running = True
        queue = controller.queues["stub"]
        queue.add("cluster")
        await controller._process(stub, queue, await queue.get())
        await asyncio.sleep(0.01)
        assert len(queue) == 0

    async def test_crash_becomes_retry(self):
        stub = StubReconciler(error=RuntimeError("boom"))
        controller = Controller(FakeKube(), [stub], requeue_after_seconds=7)
        result = await controller._reconcile(stub, "cluster")
        assert result.requeue_after == 7
        assert result.message == "boom"

    async def test_stalled_client_call_becomes_retry(self):
        kube = FakeKube()

        async def stalled_get(kind, name, namespace=None):
            await asyncio.sleep(60)

        kube.get = stalled_get
        stub = StubReconciler()

        async def reconcile(key):
            await kube.get("ExternalSecretsConfig", key)
            return ReconcileResult.done()

        stub.reconcile = reconcile
        controller = Controller(
            kube, [stub], requeue_after_seconds=7, reconcile_timeout_seconds=0.01
        )
        result = await asyncio.wait_for(controller._reconcile(stub, "cluster"), timeout=1)
        assert result.outcome == Outcome.RETRY_REQUIRED
        assert result.requeue_after == 7
        assert "did not finish" in result.message


@pytest.mark.asyncio
class TestStartStop:
    """Tests for the controller lifecycle."""

    async def test_initial_keys_are_reconciled(self):
        kube = FakeKube()

        async def watch(kind, namespace=None, label_selector=None):
            yield "ADDED", make_esc(name="other")

        kube.watch = watch
        stub = StubReconciler()
        controller = Controller(kube, [stub])
        task = asyncio.create_task(controller.start())

        await asyncio.wait_for(stub.reconciled.wait(), timeout=1)
        for _ in range(10):
            if "other" in stub.seen:
                break
            await asyncio.sleep(0.01)
        assert controller.started
        await controller.stop()
        await asyncio.wait_for(task, timeout=1)

        assert not controller.running
        assert stub.seen[0] == "cluster"
        assert "other" in stub.seen
