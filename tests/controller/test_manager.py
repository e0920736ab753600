"""Tests for the controller manager."""

import asyncio
from collections.abc import AsyncGenerator
from datetime import timedelta

import pytest

from flux_converge import conditions
from flux_converge.config import ControllerConfig, ManagerConfig
from flux_converge.controller import Manager, Reconciler, ResourceGroupReconciler
from flux_converge.events import MemoryEventRecorder
from flux_converge.exceptions import ApplyException
from flux_converge.manifest import ResourceGroup, ResourceRef
from flux_converge.scheduler import ReconcileResult
from flux_converge.store import DeleteOptions, InMemoryStore
from flux_converge.task import TaskServiceImpl

from conftest import config_map, resource_group

REF = ResourceRef("fluxcd.controlplane.io", "ResourceGroup", "default", "apps")
CM_A = ResourceRef("", "ConfigMap", "default", "a")
CM_B = ResourceRef("", "ConfigMap", "default", "b")

FAST_BACKOFF = ManagerConfig(
    backoff_base=timedelta(milliseconds=10), backoff_cap=timedelta(milliseconds=40)
)


class FakeReconciler(Reconciler):
    """Reconciler returning canned results."""

    def __init__(
        self, results: list[ReconcileResult | Exception] | None = None
    ) -> None:
        self.results = list(results or [])
        self.calls: list[ResourceRef] = []
        self.gate: asyncio.Event | None = None
        self.running = 0
        self.max_running = 0

    @property
    def kind(self) -> str:
        return ResourceGroup.kind

    async def reconcile(self, ref: ResourceRef) -> ReconcileResult:
        self.calls.append(ref)
        self.running += 1
        self.max_running = max(self.max_running, self.running)
        try:
            if self.gate is not None:
                await self.gate.wait()
            await asyncio.sleep(0)
        finally:
            self.running -= 1
        if self.results:
            result = self.results.pop(0)
            if isinstance(result, Exception):
                raise result
            return result
        return ReconcileResult()


@pytest.fixture(name="managers")
async def managers_fixture() -> AsyncGenerator[list[Manager], None]:
    """Managers created by a test, closed at teardown."""
    managers: list[Manager] = []
    yield managers
    for manager in managers:
        await manager.close()


async def test_converge_and_track_changes(
    store: InMemoryStore,
    events: MemoryEventRecorder,
    config: ControllerConfig,
    managers: list[Manager],
) -> None:
    """Test objects are reconciled on start, on spec change and on deletion."""
    store.add_object(resource_group(resources=[config_map("a")]))
    manager = Manager(store, [ResourceGroupReconciler(store, events, config)])
    managers.append(manager)
    manager.start()
    assert manager.kinds == {"ResourceGroup"}

    await manager.run_until_settled(timedelta(seconds=1))
    obj = ResourceGroup.from_document(await store.get(REF))
    assert conditions.is_ready(obj)
    assert store.exists(CM_A)

    await store.patch(REF, {"spec": {"resources": [config_map("b")]}})
    await manager.run_until_settled(timedelta(seconds=1))
    assert not store.exists(CM_A)
    assert store.exists(CM_B)

    await store.delete(REF, DeleteOptions())
    await manager.run_until_settled(timedelta(seconds=1))
    assert not store.exists(REF)
    assert not store.exists(CM_B)


async def test_status_updates_do_not_trigger(
    store: InMemoryStore, managers: list[Manager]
) -> None:
    reconciler = FakeReconciler()
    manager = Manager(store, [reconciler])
    managers.append(manager)
    store.add_object(resource_group())
    manager.start()
    await manager.run_until_settled()
    assert reconciler.calls == [REF]

    await store.patch(REF, {"status": {"lastHandledReconcileAt": "t0"}})
    await store.patch(REF, {"metadata": {"labels": {"team": "a"}}})
    await manager.run_until_settled()
    assert len(reconciler.calls) == 1

    await store.patch(
        REF, {"metadata": {"annotations": {"reconcile.fluxcd.io/requestedAt": "t1"}}}
    )
    await manager.run_until_settled()
    assert len(reconciler.calls) == 2


async def test_other_kinds_ignored(
    store: InMemoryStore, managers: list[Manager]
) -> None:
    reconciler = FakeReconciler()
    manager = Manager(store, [reconciler])
    managers.append(manager)
    manager.start()
    store.add_object(config_map("a"))
    await manager.run_until_settled()
    assert not reconciler.calls


async def test_deduplicate_queued_keys(
    store: InMemoryStore, managers: list[Manager]
) -> None:
    """Test a key is reconciled once more when enqueued during its reconcile."""
    reconciler = FakeReconciler()
    reconciler.gate = asyncio.Event()
    manager = Manager(store, [reconciler])
    managers.append(manager)
    manager.start()

    store.add_object(resource_group())
    manager.enqueue(reconciler, REF)
    manager.enqueue(reconciler, REF)
    await asyncio.sleep(0.01)
    assert len(reconciler.calls) == 1

    manager.enqueue(reconciler, REF)
    manager.enqueue(reconciler, REF)
    reconciler.gate.set()
    await manager.run_until_settled()
    assert len(reconciler.calls) == 2
    assert reconciler.max_running == 1


async def test_requeue(store: InMemoryStore, managers: list[Manager]) -> None:
    reconciler = FakeReconciler(
        [
            ReconcileResult(requeue=True),
            ReconcileResult(requeue_after=timedelta(milliseconds=20)),
            ReconcileResult(requeue_after=timedelta(hours=1)),
        ]
    )
    manager = Manager(store, [reconciler])
    managers.append(manager)
    store.add_object(resource_group())
    manager.start()

    await manager.run_until_settled(timedelta(seconds=1))
    assert len(reconciler.calls) == 3


async def test_retry_with_backoff(
    store: InMemoryStore, managers: list[Manager]
) -> None:
    """Test failed reconciles are retried until they succeed."""
    reconciler = FakeReconciler(
        [
            ApplyException("ConfigMap/default/a", "apply failed"),
            ApplyException("ConfigMap/default/a", "apply failed"),
            ReconcileResult(),
        ]
    )
    manager = Manager(store, [reconciler], FAST_BACKOFF)
    managers.append(manager)
    store.add_object(resource_group())
    manager.start()

    await manager.run_until_settled(timedelta(seconds=1))
    assert len(reconciler.calls) == 3


def test_backoff() -> None:
    manager = Manager(InMemoryStore(), [])
    assert manager.backoff(1) == timedelta(seconds=1)
    assert manager.backoff(2) == timedelta(seconds=2)
    assert manager.backoff(5) == timedelta(seconds=16)
    assert manager.backoff(20) == timedelta(minutes=5)


async def test_max_concurrent_reconciles(
    store: InMemoryStore, managers: list[Manager]
) -> None:
    reconciler = FakeReconciler()
    task_service = TaskServiceImpl(max_concurrent=2)
    manager = Manager(store, [reconciler], task_service=task_service)
    managers.append(manager)
    for i in range(6):
        store.add_object(resource_group(name=f"group-{i}"))
    manager.start()

    await manager.run_until_settled()
    assert len(reconciler.calls) == 6
    assert reconciler.max_running == 2


async def test_deleted_object_drops_retry(
    store: InMemoryStore, managers: list[Manager]
) -> None:
    reconciler = FakeReconciler([ReconcileResult(requeue_after=timedelta(hours=1))])
    manager = Manager(store, [reconciler])
    managers.append(manager)
    store.add_object(resource_group())
    manager.start()
    await manager.run_until_settled()

    # Without finalizers the delete removes the object immediately.
    await store.delete(REF, DeleteOptions())
    await manager.run_until_settled(timedelta(hours=2))
    assert len(reconciler.calls) == 1


async def test_close(store: InMemoryStore) -> None:
    reconciler = FakeReconciler([ReconcileResult(requeue_after=timedelta(hours=1))])
    manager = Manager(store, [reconciler])
    store.add_object(resource_group())
    manager.start()
    await manager.run_until_settled()

    await manager.close()
    store.add_object(resource_group(name="other"))
    await manager.run_until_settled(timedelta(hours=2))
    assert reconciler.calls == [REF]
