"""Tests for the in-memory store."""

from typing import Any

import pytest

from flux_converge.changeset import Action
from flux_converge.exceptions import ConflictError, ObjectNotFoundError
from flux_converge.manifest import ResourceRef
from flux_converge.store import (
    ApplyCleanupOptions,
    ApplyOptions,
    DeleteOptions,
    FieldManager,
    InMemoryStore,
    ManagedFieldsOperation,
    PropagationPolicy,
    StoreEvent,
)

from conftest import config_map

CM_REF = ResourceRef("", "ConfigMap", "default", "settings")
OPERATOR = ApplyOptions(field_manager="flux-operator")


async def test_apply_create_update_unchanged(store: InMemoryStore) -> None:
    """Test apply reports what happened to the object."""
    doc = config_map("settings", data={"a": "1"})
    assert await store.apply(doc, OPERATOR) == Action.CREATED
    assert await store.apply(doc, OPERATOR) == Action.UNCHANGED

    doc["data"]["a"] = "2"
    assert await store.apply(doc, OPERATOR) == Action.CONFIGURED
    stored = await store.get(CM_REF)
    assert stored["data"] == {"a": "2"}
    assert stored["metadata"]["generation"] == 2
    assert store.write_count == 2


async def test_apply_removes_fields_no_longer_applied(store: InMemoryStore) -> None:
    await store.apply(config_map("settings", data={"a": "1", "b": "2"}), OPERATOR)
    await store.apply(config_map("settings", data={"a": "1"}), OPERATOR)
    assert (await store.get(CM_REF))["data"] == {"a": "1"}


async def test_apply_conflict(store: InMemoryStore) -> None:
    """Test a field owned by another manager is not silently overwritten."""
    await store.apply(
        config_map("settings", data={"a": "1"}), ApplyOptions(field_manager="other")
    )
    with pytest.raises(ConflictError, match='conflict with "other": .data.a'):
        await store.apply(config_map("settings", data={"a": "2"}), OPERATOR)

    assert (
        await store.apply(
            config_map("settings", data={"a": "2"}),
            ApplyOptions(field_manager="flux-operator", force=True),
        )
        == Action.CONFIGURED
    )
    assert (await store.get(CM_REF))["data"] == {"a": "2"}


async def test_apply_takeover_and_cleanup(store: InMemoryStore) -> None:
    """Test fields of a listed manager are taken over and legacy metadata removed."""
    legacy = config_map("settings", data={"a": "1", "old": "x"})
    legacy["metadata"]["annotations"] = {
        "kubectl.kubernetes.io/last-applied-configuration": "{}"
    }
    await store.apply(legacy, ApplyOptions(field_manager="kubectl-client-side-apply"))

    options = ApplyOptions(
        field_manager="flux-operator",
        cleanup=ApplyCleanupOptions(
            annotations=["kubectl.kubernetes.io/last-applied-configuration"],
            field_managers=[FieldManager("kubectl", ManagedFieldsOperation.APPLY)],
        ),
    )
    assert await store.apply(config_map("settings", data={"a": "2"}), options) == (
        Action.CONFIGURED
    )
    stored = await store.get(CM_REF)
    assert stored["data"] == {"a": "2"}
    assert "annotations" not in stored["metadata"]
    assert list(store.managed_fields(CM_REF)) == [
        ("flux-operator", ManagedFieldsOperation.APPLY)
    ]


async def test_apply_ignores_status(store: InMemoryStore) -> None:
    doc = config_map("settings")
    doc["status"] = {"phase": "Ready"}
    await store.apply(doc, OPERATOR)
    assert "status" not in await store.get(CM_REF)


async def test_get_missing(store: InMemoryStore) -> None:
    with pytest.raises(ObjectNotFoundError):
        await store.get(CM_REF)


async def test_delete_selection(store: InMemoryStore) -> None:
    """Test inclusions and exclusions are independent filters."""
    owned = config_map("settings")
    owned["metadata"]["labels"] = {"owner/name": "apps"}
    store.add_object(owned)
    excluded = config_map("keep")
    excluded["metadata"]["labels"] = {"owner/name": "apps"}
    excluded["metadata"]["annotations"] = {"fluxcd.controlplane.io/prune": "disabled"}
    store.add_object(excluded)
    store.add_object(config_map("foreign"))

    options = DeleteOptions(
        inclusions={"owner/name": "apps"},
        exclusions={"fluxcd.controlplane.io/prune": "disabled"},
    )
    assert await store.delete(CM_REF, options) == Action.DELETED
    keep = ResourceRef("", "ConfigMap", "default", "keep")
    assert await store.delete(keep, options) == Action.SKIPPED
    foreign = ResourceRef("", "ConfigMap", "default", "foreign")
    assert await store.delete(foreign, options) == Action.SKIPPED

    assert not store.exists(CM_REF)
    assert store.exists(keep)
    assert store.exists(foreign)
    with pytest.raises(ObjectNotFoundError):
        await store.delete(CM_REF, options)


async def test_delete_with_finalizer(store: InMemoryStore) -> None:
    """Test an object with finalizers is only marked for deletion."""
    doc = config_map("settings")
    doc["metadata"]["finalizers"] = ["example.com/finalizer"]
    store.add_object(doc)
    assert await store.delete(CM_REF, DeleteOptions()) == Action.DELETED
    stored = await store.get(CM_REF)
    assert stored["metadata"]["deletionTimestamp"]

    await store.patch(CM_REF, {"metadata": {"finalizers": []}})
    assert not store.exists(CM_REF)


async def test_delete_cascades_to_dependents(store: InMemoryStore) -> None:
    store.add_object(config_map("settings"))
    dependent = config_map("child")
    dependent["metadata"]["ownerReferences"] = [{"kind": "ConfigMap", "name": "settings"}]
    store.add_object(dependent)
    await store.delete(CM_REF, DeleteOptions(propagation_policy=PropagationPolicy.BACKGROUND))
    assert not store.exists(ResourceRef("", "ConfigMap", "default", "child"))


async def test_patch_resource_version(store: InMemoryStore) -> None:
    """Test the optimistic lock on merge patches."""
    store.add_object(config_map("settings", data={"a": "1"}))
    current = await store.get(CM_REF)
    version = current["metadata"]["resourceVersion"]

    updated = await store.patch(
        CM_REF, {"data": {"a": None, "b": "2"}}, resource_version=version
    )
    assert updated["data"] == {"b": "2"}
    assert updated["metadata"]["resourceVersion"] != version

    with pytest.raises(ConflictError, match="the object has been modified"):
        await store.patch(CM_REF, {"data": {"c": "3"}}, resource_version=version)


async def test_status_patch_keeps_generation(store: InMemoryStore) -> None:
    store.add_object(config_map("settings"))
    updated = await store.patch(CM_REF, {"status": {"phase": "Ready"}})
    assert updated["metadata"]["generation"] == 1
    assert updated["status"] == {"phase": "Ready"}


async def test_list(store: InMemoryStore) -> None:
    first = config_map("b", namespace="apps")
    first["metadata"]["labels"] = {"tier": "web"}
    store.add_object(first)
    store.add_object(config_map("a", namespace="apps"))
    store.add_object(config_map("c", namespace="other"))

    names = [d["metadata"]["name"] for d in await store.list(kind="ConfigMap")]
    assert names == ["a", "b", "c"]
    assert [
        d["metadata"]["name"] for d in await store.list(namespace="apps", labels={"tier": "web"})
    ] == ["b"]
    assert await store.list(api_group="apps") == []


def test_validator(store: InMemoryStore) -> None:
    def reject(doc: dict[str, Any]) -> None:
        if doc["metadata"]["name"] == "bad":
            raise ValueError("rejected")

    store.add_validator("ConfigMap", reject)
    store.add_object(config_map("good"))
    with pytest.raises(ValueError, match="rejected"):
        store.add_object(config_map("bad"))


async def test_listeners(store: InMemoryStore) -> None:
    """Test listeners receive events and may flush existing objects."""
    store.add_object(config_map("existing"))
    added: list[str] = []
    updated: list[str] = []
    deleted: list[str] = []
    store.add_listener(
        StoreEvent.OBJECT_ADDED, lambda ref, doc: added.append(ref.name), flush=True
    )
    remove = store.add_listener(
        StoreEvent.OBJECT_UPDATED, lambda ref, doc: updated.append(ref.name)
    )
    store.add_listener(StoreEvent.OBJECT_DELETED, lambda ref, doc: deleted.append(ref.name))

    await store.apply(config_map("settings"), OPERATOR)
    await store.patch(CM_REF, {"data": {"key": "new"}})
    remove()
    await store.patch(CM_REF, {"data": {"key": "newer"}})
    await store.delete(CM_REF, DeleteOptions())

    assert added == ["existing", "settings"]
    assert updated == ["settings"]
    assert deleted == ["settings"]
