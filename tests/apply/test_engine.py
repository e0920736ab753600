"""Tests for the apply engine."""

from datetime import timedelta
from typing import Any

import pytest
from syrupy.assertion import SnapshotAssertion

from flux_converge.apply import ApplyEngine, ApplyResult
from flux_converge.changeset import Action
from flux_converge.config import ApplyConfig
from flux_converge.exceptions import ApplyException, BuildException, HealthCheckError
from flux_converge.manifest import ResourceGroup, ResourceRef
from flux_converge.store import ApplyOptions, InMemoryStore

from conftest import config_map, resource_group

OWNER_LABELS = {
    "resourcegroup.fluxcd.controlplane.io/name": "apps",
    "resourcegroup.fluxcd.controlplane.io/namespace": "default",
}


@pytest.fixture(name="engine")
def engine_fixture(store: InMemoryStore) -> ApplyEngine:
    return ApplyEngine(store, ApplyConfig(wait_interval=timedelta(milliseconds=10)))


def _group(**kwargs: Any) -> ResourceGroup:
    obj = ResourceGroup.from_document(resource_group(**kwargs))
    assert isinstance(obj, ResourceGroup)
    return obj


def _kustomization(
    ready: str, message: str, stalled: bool = False
) -> dict[str, Any]:
    conditions = [{"type": "Ready", "status": ready, "message": message}]
    if stalled:
        conditions.append({"type": "Stalled", "status": "True", "message": message})
    return {
        "apiVersion": "kustomize.toolkit.fluxcd.io/v1",
        "kind": "Kustomization",
        "metadata": {"name": "infra", "namespace": "default"},
        "spec": {"path": "./infra"},
        "status": {"conditions": conditions},
    }


async def test_apply_staged_changelog(
    store: InMemoryStore, engine: ApplyEngine, snapshot: SnapshotAssertion
) -> None:
    """Test cluster definitions are applied before the resources using them."""
    resources = [
        {
            "apiVersion": "apps/v1",
            "kind": "Deployment",
            "metadata": {"name": "web"},
            "spec": {"replicas": 1},
        },
        {"apiVersion": "v1", "kind": "Namespace", "metadata": {"name": "apps"}},
        {
            "apiVersion": "rbac.authorization.k8s.io/v1",
            "kind": "ClusterRole",
            "metadata": {"name": "reader"},
            "rules": [],
        },
        {
            "apiVersion": "apiextensions.k8s.io/v1",
            "kind": "CustomResourceDefinition",
            "metadata": {"name": "widgets.example.com"},
            "spec": {"group": "example.com"},
        },
    ]
    result = await engine.apply(_group(), resources)
    assert result.changelog.split("\n") == snapshot

    deployment = await store.get(ResourceRef("apps", "Deployment", "default", "web"))
    assert deployment["metadata"]["labels"] == OWNER_LABELS
    namespace = await store.get(ResourceRef("", "Namespace", "", "apps"))
    assert "namespace" not in namespace["metadata"]
    assert [e.id for e in result.inventory.entries] == [
        "_apps__Namespace",
        "_widgets.example.com_apiextensions.k8s.io_CustomResourceDefinition",
        "_reader_rbac.authorization.k8s.io_ClusterRole",
        "default_web_apps_Deployment",
    ]


async def test_apply_idempotent(store: InMemoryStore, engine: ApplyEngine) -> None:
    """Test a second apply of the same resources makes no store writes."""
    obj = _group(commonMetadata={"labels": {"team": "a"}})
    resources = [config_map("a"), config_map("b")]
    first = await engine.apply(obj, resources)
    assert first.change_set.refs(Action.CREATED) == [
        ResourceRef("", "ConfigMap", "default", "a"),
        ResourceRef("", "ConfigMap", "default", "b"),
    ]
    obj.set_inventory(first.inventory)
    writes = store.write_count

    second = await engine.apply(obj, resources)
    assert not second.change_set.has_changed()
    assert second.changelog == ""
    assert store.write_count == writes
    assert second.inventory == first.inventory
    stored = await store.get(ResourceRef("", "ConfigMap", "default", "a"))
    assert stored["metadata"]["labels"]["team"] == "a"


async def test_garbage_collection(store: InMemoryStore, engine: ApplyEngine) -> None:
    """Test resources removed from the desired set are deleted."""
    obj = _group()
    first = await engine.apply(obj, [config_map("a"), config_map("b")])
    obj.set_inventory(first.inventory)

    second = await engine.apply(obj, [config_map("a")])
    assert second.delete_set.to_map() == {"ConfigMap/default/b": "Deleted"}
    assert second.changelog == "ConfigMap/default/b Deleted"
    assert not store.exists(ResourceRef("", "ConfigMap", "default", "b"))
    assert [e.id for e in second.inventory.entries] == ["default_a__ConfigMap"]


async def test_garbage_collection_ownership(
    store: InMemoryStore, engine: ApplyEngine
) -> None:
    """Test stale resources of other owners or excluded from pruning are kept."""
    obj = _group()
    first = await engine.apply(obj, [config_map("a"), config_map("keep")])
    obj.set_inventory(first.inventory)
    await store.patch(
        ResourceRef("", "ConfigMap", "default", "keep"),
        {"metadata": {"annotations": {"fluxcd.controlplane.io/prune": "disabled"}}},
    )
    # Taken over by another group since the last apply.
    await store.patch(
        ResourceRef("", "ConfigMap", "default", "a"),
        {"metadata": {"labels": {"resourcegroup.fluxcd.controlplane.io/name": "other"}}},
    )

    result = await engine.apply(obj, [])
    assert result.delete_set.to_map() == {
        "ConfigMap/default/a": "Skipped",
        "ConfigMap/default/keep": "Skipped",
    }
    assert result.changelog == ""
    assert store.exists(ResourceRef("", "ConfigMap", "default", "a"))
    assert store.exists(ResourceRef("", "ConfigMap", "default", "keep"))
    assert result.inventory.entries == []


async def test_legacy_metadata_cleanup(store: InMemoryStore, engine: ApplyEngine) -> None:
    """Test fields of kustomize-controller are taken over and legacy metadata dropped."""
    legacy = config_map("a")
    legacy["metadata"]["labels"] = {
        "kustomize.toolkit.fluxcd.io/name": "apps",
        "kustomize.toolkit.fluxcd.io/namespace": "flux-system",
    }
    legacy["metadata"]["annotations"] = {
        "kubectl.kubernetes.io/last-applied-configuration": "{}"
    }
    await store.apply(legacy, ApplyOptions(field_manager="kustomize-controller"))

    result = await engine.apply(_group(), [config_map("a", data={"key": "new"})])
    assert result.changelog == "ConfigMap/default/a Configured"
    stored = await store.get(ResourceRef("", "ConfigMap", "default", "a"))
    assert stored["metadata"]["labels"] == OWNER_LABELS
    assert "annotations" not in stored["metadata"]
    assert stored["data"] == {"key": "new"}


async def test_invalid_resources(store: InMemoryStore, engine: ApplyEngine) -> None:
    """Test invalid resources fail before any store call."""
    with pytest.raises(BuildException, match="missing apiVersion or kind"):
        await engine.apply(_group(), [config_map("a"), {"kind": "ConfigMap"}])
    assert store.write_count == 0


async def test_apply_conflict(store: InMemoryStore, engine: ApplyEngine) -> None:
    await store.apply(config_map("a", data={"key": "x"}), ApplyOptions(field_manager="other"))
    with pytest.raises(ApplyException, match="ConfigMap/default/a apply failed"):
        await engine.apply(_group(), [config_map("a", data={"key": "y"})])


async def test_health_check_failed(store: InMemoryStore, engine: ApplyEngine) -> None:
    """Test a failed resource aborts the wait with the summary of Flux resources."""
    store.add_object(_kustomization("False", "kustomize build failed", stalled=True))
    desired = _kustomization("False", "")
    desired["spec"]["path"] = "./infra/v2"
    del desired["status"]

    obj = _group()
    applied: list[ApplyResult] = []
    with pytest.raises(HealthCheckError) as exc_info:
        await engine.apply(obj, [desired], applied.append)
    assert str(exc_info.value) == (
        "Resource Kustomization/default/infra failed: kustomize build failed\n"
        "Kustomization/default/infra status: kustomize build failed"
    )
    assert len(applied) == 1
    # The applied set is tracked even though the health check failed.
    assert [e.id for e in obj.get_inventory().entries] == [
        "default_infra_kustomize.toolkit.fluxcd.io_Kustomization"
    ]


async def test_health_check_timeout(store: InMemoryStore, engine: ApplyEngine) -> None:
    store.add_object(_kustomization("Unknown", "building"))
    desired = _kustomization("Unknown", "")
    desired["spec"]["path"] = "./infra/v2"
    del desired["status"]

    obj = _group(annotations={"fluxcd.controlplane.io/reconcileTimeout": "50ms"})
    with pytest.raises(HealthCheckError, match="timeout waiting for") as exc_info:
        await engine.apply(obj, [desired])
    assert "Kustomization/default/infra status: building" in str(exc_info.value)


async def test_no_wait(store: InMemoryStore, engine: ApplyEngine) -> None:
    store.add_object(_kustomization("False", "kustomize build failed"))
    desired = _kustomization("False", "")
    desired["spec"]["path"] = "./infra/v2"
    del desired["status"]

    result = await engine.apply(_group(wait=False), [desired])
    assert result.changelog == "Kustomization/default/infra Configured"


async def test_uninstall(store: InMemoryStore, engine: ApplyEngine) -> None:
    obj = _group()
    result = await engine.apply(obj, [config_map("a"), config_map("b")])
    obj.set_inventory(result.inventory)

    delete_set = await engine.uninstall(obj)
    assert delete_set.to_map() == {
        "ConfigMap/default/a": "Deleted",
        "ConfigMap/default/b": "Deleted",
    }
    assert await store.list(kind="ConfigMap") == []
