"""Controller manager driving reconcilers from store events.

The manager watches the store for managed objects and hands their keys to
the reconcilers of the matching kind through a de-duplicating queue:

- A key is queued at most once and reconciled by at most one worker at a
  time. A key enqueued while its reconcile is running is queued again once
  the running reconcile finishes.
- Workers run on a `TaskService` bounded by `max_concurrent_reconciles`.
- A `requeue_after` result schedules a delayed enqueue. A raised error is
  retried with exponential backoff, reset by the next success.

Only changes that request work enqueue an object: creation, a new
generation, a change to the reconcile annotations or the start of its
deletion. Status patches written by the reconcilers do not.
"""

import asyncio
from collections.abc import Callable, Iterable
from datetime import timedelta
import logging
from typing import Any

from flux_converge.annotations import RECONCILE_ANNOTATION, RECONCILE_REQUEST_ANNOTATION
from flux_converge.config import ManagerConfig
from flux_converge.manifest import ResourceRef
from flux_converge.store import Store, StoreEvent
from flux_converge.task import TaskService, TaskServiceImpl

from .common import Reconciler

__all__ = [
    "Manager",
]

_LOGGER = logging.getLogger(__name__)

Key = tuple[int, ResourceRef]


def _trigger(doc: dict[str, Any]) -> tuple[Any, ...]:
    """Fields of an object whose change requests a reconciliation."""
    metadata = doc.get("metadata") or {}
    annotations = metadata.get("annotations") or {}
    return (
        metadata.get("generation"),
        annotations.get(RECONCILE_REQUEST_ANNOTATION),
        annotations.get(RECONCILE_ANNOTATION),
        metadata.get("deletionTimestamp"),
    )


class Manager:
    """Runs reconcilers for the managed objects in a store."""

    def __init__(
        self,
        store: Store,
        reconcilers: Iterable[Reconciler],
        config: ManagerConfig | None = None,
        task_service: TaskService | None = None,
    ) -> None:
        self._store = store
        self._reconcilers = list(reconcilers)
        self._config = config or ManagerConfig()
        self._tasks = task_service or TaskServiceImpl(
            self._config.max_concurrent_reconciles
        )
        self._queued: set[Key] = set()
        self._in_flight: set[Key] = set()
        self._dirty: set[Key] = set()
        self._failures: dict[Key, int] = {}
        self._timers: dict[Key, tuple[asyncio.TimerHandle, float]] = {}
        self._seen: dict[ResourceRef, tuple[Any, ...]] = {}
        self._unsubscribe: list[Callable[[], None]] = []
        self._closed = False

    @property
    def kinds(self) -> set[str]:
        return {reconciler.kind for reconciler in self._reconcilers}

    def start(self) -> None:
        """Watch the store and enqueue every existing managed object."""
        self._unsubscribe = [
            self._store.add_listener(
                StoreEvent.OBJECT_ADDED, self._on_added, flush=True
            ),
            self._store.add_listener(StoreEvent.OBJECT_UPDATED, self._on_updated),
            self._store.add_listener(StoreEvent.OBJECT_DELETED, self._on_deleted),
        ]
        _LOGGER.info("Started manager for kinds %s", sorted(self.kinds))

    async def close(self) -> None:
        """Stop watching the store and cancel in-flight reconciles."""
        self._closed = True
        for remove in self._unsubscribe:
            remove()
        self._unsubscribe = []
        for handle, _ in self._timers.values():
            handle.cancel()
        self._timers.clear()
        await self._tasks.cancel_all()
        _LOGGER.info("Stopped manager")

    async def run_until_settled(
        self, horizon: timedelta = timedelta(seconds=30)
    ) -> None:
        """Wait until no reconcile runs and none is scheduled within horizon."""
        loop = asyncio.get_running_loop()
        while True:
            await self._tasks.block_till_done()
            now = loop.time()
            deadlines = [
                deadline
                for _, deadline in self._timers.values()
                if deadline - now <= horizon.total_seconds()
            ]
            if not deadlines:
                return
            await asyncio.sleep(max(0.0, min(deadlines) - now))
            await asyncio.sleep(0)

    def enqueue(self, reconciler: Reconciler, ref: ResourceRef) -> None:
        self._enqueue((self._reconcilers.index(reconciler), ref))

    def _enqueue(self, key: Key) -> None:
        if self._closed:
            return
        if (timer := self._timers.pop(key, None)) is not None:
            timer[0].cancel()
        if key in self._in_flight:
            self._dirty.add(key)
            return
        if key in self._queued:
            return
        self._queued.add(key)
        self._tasks.create_task(self._process(key), name=f"reconcile {key[1]}")

    def _schedule(self, key: Key, delay: timedelta) -> None:
        if self._closed:
            return
        if (timer := self._timers.pop(key, None)) is not None:
            timer[0].cancel()
        loop = asyncio.get_running_loop()
        seconds = max(0.0, delay.total_seconds())
        handle = loop.call_later(seconds, self._fire_timer, key)
        self._timers[key] = (handle, loop.time() + seconds)

    def _fire_timer(self, key: Key) -> None:
        self._timers.pop(key, None)
        self._enqueue(key)

    def backoff(self, failures: int) -> timedelta:
        """Delay before retrying a key that failed the given number of times."""
        delay = self._config.backoff_base * (2 ** max(0, failures - 1))
        return min(delay, self._config.backoff_cap)

    async def _process(self, key: Key) -> None:
        self._queued.discard(key)
        self._in_flight.add(key)
        index, ref = key
        reconciler = self._reconcilers[index]
        try:
            result = await reconciler.reconcile(ref)
        except asyncio.CancelledError:
            raise
        except Exception as err:
            failures = self._failures[key] = self._failures.get(key, 0) + 1
            delay = self.backoff(failures)
            _LOGGER.error(
                "Reconcile of %s failed, retrying in %ss: %s",
                ref,
                delay.total_seconds(),
                err,
            )
            self._schedule(key, delay)
        else:
            self._failures.pop(key, None)
            if result.requeue:
                self._dirty.add(key)
            elif result.requeue_after is not None:
                self._schedule(key, result.requeue_after)
        finally:
            self._in_flight.discard(key)
            if key in self._dirty:
                self._dirty.discard(key)
                self._enqueue(key)

    def _keys(self, ref: ResourceRef) -> list[Key]:
        return [
            (i, ref)
            for i, reconciler in enumerate(self._reconcilers)
            if reconciler.kind == ref.kind
        ]

    def _on_added(self, ref: ResourceRef, doc: dict[str, Any]) -> None:
        if not (keys := self._keys(ref)):
            return
        self._seen[ref] = _trigger(doc)
        for key in keys:
            self._enqueue(key)

    def _on_updated(self, ref: ResourceRef, doc: dict[str, Any]) -> None:
        if not (keys := self._keys(ref)):
            return
        trigger = _trigger(doc)
        if self._seen.get(ref) == trigger:
            return
        self._seen[ref] = trigger
        for key in keys:
            self._enqueue(key)

    def _on_deleted(self, ref: ResourceRef, doc: dict[str, Any]) -> None:
        self._seen.pop(ref, None)
        for key in self._keys(ref):
            if (timer := self._timers.pop(key, None)) is not None:
                timer[0].cancel()
            self._failures.pop(key, None)
