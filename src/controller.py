"""
Operator Controller - Watch-driven reconciliation runtime.

Watches a bounded set of kinds, maps each change to work queue keys for
the reconcilers interested in it, and runs reconcile passes from a
bounded worker pool. A key is never reconciled by two passes at once.
"""

import asyncio
import logging
from typing import Any, Dict, List, Optional, Set, Tuple

from capabilities import WatchSpec
from kube import object_key
from reconcilers.base import ReconcileResult, Reconciler

logger = logging.getLogger(__name__)

# Delay before a watch stream is reopened after it ends or fails
WATCH_RESTART_DELAY = 5


class WorkQueue:
    """
    De-duplicating work queue.

    A key added while queued is dropped. A key added while its pass is
    running is parked and queued again once that pass is done.
    """

    def __init__(self):
        self._queue: asyncio.Queue = asyncio.Queue()
        self._queued: Set[str] = set()
        self._processing: Set[str] = set()
        self._dirty: Set[str] = set()
        self._timers: Dict[str, asyncio.TimerHandle] = {}

    def add(self, key: str) -> None:
        if key in self._processing:
            self._dirty.add(key)
            return
        if key in self._queued:
            return
        self._queued.add(key)
        self._queue.put_nowait(key)

    def add_after(self, key: str, delay: float) -> None:
        """Queue ``key`` after ``delay`` seconds; an earlier pending timer wins."""
        if key in self._timers:
            return
        loop = asyncio.get_running_loop()
        self._timers[key] = loop.call_later(delay, self._fire, key)

    def _fire(self, key: str) -> None:
        self._timers.pop(key, None)
        self.add(key)

    async def get(self) -> str:
        key = await self._queue.get()
        self._queued.discard(key)
        self._processing.add(key)
        return key

    def done(self, key: str) -> None:
        self._processing.discard(key)
        if key in self._dirty:
            self._dirty.discard(key)
            self.add(key)

    def shutdown(self) -> None:
        for handle in self._timers.values():
            handle.cancel()
        self._timers.clear()

    def __len__(self) -> int:
        return self._queue.qsize()


class ObjectCache:
    """
    Last observed state of every watched object.

    Only objects matching the watch set end up here, so the cache stays
    bounded to what the operator manages.
    """

    def __init__(self):
        self._objects: Dict[Tuple[str, Optional[str], str], Dict[str, Any]] = {}

    @staticmethod
    def _key(obj: Dict[str, Any]) -> Tuple[str, Optional[str], str]:
        name, namespace = object_key(obj)
        return obj.get("kind", ""), namespace, name

    def apply(self, event_type: str, obj: Dict[str, Any]) -> Optional[Dict[str, Any]]:
        """Record an event; returns the previous observation."""
        key = self._key(obj)
        old = self._objects.get(key)
        if event_type == "DELETED":
            self._objects.pop(key, None)
        else:
            self._objects[key] = obj
        return old

    def __len__(self) -> int:
        return len(self._objects)


class Controller:
    """
    Main controller that drives every reconciler.

    Each reconciler gets its own work queue and worker loop; passes from
    all of them share one semaphore bounding concurrent reconciles.
    """

    def __init__(
        self,
        kube,
        reconcilers: List[Reconciler],
        max_concurrent_reconciles: int = 1,
        requeue_after_seconds: int = 30,
        reconcile_timeout_seconds: Optional[float] = None,
    ):
        self.kube = kube
        self.reconcilers = reconcilers
        self.max_concurrent_reconciles = max_concurrent_reconciles
        self.requeue_after_seconds = requeue_after_seconds
        self.reconcile_timeout_seconds = reconcile_timeout_seconds
        self.semaphore = asyncio.Semaphore(max_concurrent_reconciles)
        self.running = False
        self.started = False
        self.cache = ObjectCache()
        self.queues: Dict[str, WorkQueue] = {r.name: WorkQueue() for r in reconcilers}

        self._shutdown_event = asyncio.Event()
        self._tasks: List[asyncio.Task] = []
        self._passes: Set[asyncio.Task] = set()

    def watch_subscriptions(self) -> Dict[WatchSpec, List[Reconciler]]:
        """Group reconcilers by watch so each distinct watch is opened once."""
        subscriptions: Dict[WatchSpec, List[Reconciler]] = {}
        for reconciler in self.reconcilers:
            for spec in reconciler.watches():
                subscriptions.setdefault(spec, []).append(reconciler)
        return subscriptions

    async def start(self):
        """Start watches and workers, then run until stopped."""
        logger.info("Starting Operator Controller")
        self.running = True
        self._shutdown_event.clear()

        for spec, subscribers in self.watch_subscriptions().items():
            self._tasks.append(asyncio.create_task(self._watch_loop(spec, subscribers)))
            logger.info(
                f"Watching {spec.kind}"
                + (f" ({spec.label_selector})" if spec.label_selector else "")
                + f" for {', '.join(r.name for r in subscribers)}"
            )

        for reconciler in self.reconcilers:
            queue = self.queues[reconciler.name]
            for key in reconciler.initial_keys():
                queue.add(key)
            self._tasks.append(asyncio.create_task(self._worker_loop(reconciler)))
            logger.info(f"Started reconciler: {reconciler.name}")

        self.started = True
        try:
            await asyncio.gather(*self._tasks)
        except asyncio.CancelledError:
            pass
        except Exception as e:
            logger.error(f"Controller error: {e}")
            raise

    async def stop(self):
        """Stop watches, workers and in-flight passes."""
        logger.info("Stopping Operator Controller")
        self.running = False
        self.started = False
        self._shutdown_event.set()

        for queue in self.queues.values():
            queue.shutdown()
        for task in list(self._tasks) + list(self._passes):
            if not task.done():
                task.cancel()
        self._tasks.clear()
        self._passes.clear()

    def dispatch(self, event_type: str, obj: Dict[str, Any], subscribers: List[Reconciler]) -> None:
        """Record a watch event and enqueue the keys each subscriber maps it to."""
        old = self.cache.apply(event_type, obj)
        for reconciler in subscribers:
            try:
                keys = reconciler.map_event(event_type, obj, old)
            except Exception as e:
                logger.error(
                    f"Reconciler '{reconciler.name}' failed to map {event_type} event: {e}",
                    exc_info=True,
                )
                continue
            for key in keys:
                self.queues[reconciler.name].add(key)

    async def _watch_loop(self, spec: WatchSpec, subscribers: List[Reconciler]) -> None:
        """Keep one watch stream open, reopening it whenever it ends."""
        while self.running:
            try:
                async for event_type, obj in self.kube.watch(
                    spec.kind, spec.namespace, spec.label_selector
                ):
                    if event_type == "ERROR":
                        logger.warning(f"Watch on {spec.kind} returned an error event: {obj}")
                        break
                    self.dispatch(event_type, obj, subscribers)
            except asyncio.CancelledError:
                raise
            except Exception as e:
                logger.error(f"Watch on {spec.kind} failed: {e}")

            if not self.running:
                break
            try:
                await asyncio.wait_for(self._shutdown_event.wait(), timeout=WATCH_RESTART_DELAY)
            except asyncio.TimeoutError:
                pass

    async def _worker_loop(self, reconciler: Reconciler) -> None:
        queue = self.queues[reconciler.name]
        while self.running:
            key = await queue.get()
            task = asyncio.create_task(self._process(reconciler, queue, key))
            self._passes.add(task)
            task.add_done_callback(self._passes.discard)

    async def _process(self, reconciler: Reconciler, queue: WorkQueue, key: str) -> None:
        """Run one pass for ``key`` and schedule any requeue."""
        try:
            async with self.semaphore:
                result = await self._reconcile(reconciler, key)
            if result.requeue_after is not None and self.running:
                logger.debug(
                    f"Requeueing {reconciler.name} key {key} in {result.requeue_after}s"
                )
                queue.add_after(key, result.requeue_after)
        finally:
            queue.done(key)

    async def _reconcile(self, reconciler: Reconciler, key: str) -> ReconcileResult:
        """Call the reconciler, turning a crash or a stalled pass into a delayed retry."""
        try:
            return await asyncio.wait_for(
                reconciler.reconcile(key), timeout=self.reconcile_timeout_seconds
            )
        except asyncio.CancelledError:
            raise
        except asyncio.TimeoutError:
            message = (
                f"reconcile of {key} did not finish within {self.reconcile_timeout_seconds}s"
            )
            logger.error(f"Reconciler '{reconciler.name}': {message}")
            return ReconcileResult.retry(message, self.requeue_after_seconds)
        except Exception as e:
            logger.error(
                f"Reconciler '{reconciler.name}' crashed on key {key}: {e}",
                exc_info=True,
            )
            return ReconcileResult.retry(str(e), self.requeue_after_seconds)
