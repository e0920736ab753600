"""Reconcile-level apply of the desired resources of a managed object.

The engine runs the full sequence for one managed object:

1. Stamp the owner labels on every resource.
2. Normalize the resources and add the common metadata.
3. Apply in stages, taking over fields from known foreign managers and
   removing their legacy bookkeeping annotations and labels.
4. Build the new inventory from the change set.
5. Garbage collect the resources of the old inventory that are no longer
   desired.
6. Wait for the changed resources to become ready.

The new inventory is set on the object right after garbage collection, once
the live state matches it. A failed or cancelled readiness wait keeps it as
the baseline for the next attempt, while a failure during apply or garbage
collection keeps the previous one.
"""

from collections.abc import Callable
import copy
from dataclasses import dataclass, field
import logging
from typing import Any

from flux_converge import inventory
from flux_converge.annotations import DISABLED_VALUE, PRUNE_ANNOTATION
from flux_converge.changeset import Action, ChangeSet
from flux_converge.config import ApplyConfig
from flux_converge.exceptions import (
    HealthCheckError,
    ObjectNotFoundError,
    ResourceFailedError,
)
from flux_converge.manifest import ManagedObject, ResourceInventory, ResourceRef
from flux_converge.store import (
    ApplyCleanupOptions,
    ApplyOptions,
    DeleteOptions,
    FieldManager,
    ManagedFieldsOperation,
    PropagationPolicy,
    Store,
)
from flux_converge.store.status import aggregate_not_ready_status

from .manager import Owner, ResourceManager
from .normalize import normalize_resources, set_common_metadata

__all__ = [
    "ApplyEngine",
    "ApplyResult",
]

_LOGGER = logging.getLogger(__name__)

LEGACY_ANNOTATIONS = [
    "kubectl.kubernetes.io/last-applied-configuration",
    "meta.helm.sh/release-name",
    "meta.helm.sh/release-namespace",
]
LEGACY_LABELS = [
    "kustomize.toolkit.fluxcd.io/name",
    "kustomize.toolkit.fluxcd.io/namespace",
]


def takeover_field_managers(managers: list[str]) -> list[FieldManager]:
    """Foreign field managers whose fields are absorbed on apply."""
    result = [
        FieldManager("kustomize-controller", ManagedFieldsOperation.APPLY, True),
        FieldManager("helm", ManagedFieldsOperation.UPDATE, True),
        # kubectl apply
        FieldManager("kubectl", ManagedFieldsOperation.UPDATE),
        # kubectl apply --server-side
        FieldManager("before-first-apply", ManagedFieldsOperation.UPDATE),
        # kubectl apply --server-side --force-conflicts
        FieldManager("kubectl", ManagedFieldsOperation.APPLY),
    ]
    for name in managers:
        if any(fm.name == name for fm in result):
            continue
        result.append(FieldManager(name, ManagedFieldsOperation.APPLY, True))
        result.append(FieldManager(name, ManagedFieldsOperation.UPDATE, True))
    return result


@dataclass
class ApplyResult:
    """Outcome of a successful apply."""

    change_set: ChangeSet
    """One entry per applied resource."""

    delete_set: ChangeSet = field(default_factory=ChangeSet)
    """Stale resources that were garbage collected or skipped."""

    inventory: ResourceInventory = field(default_factory=inventory.new)
    """The inventory set on the managed object."""

    @property
    def changelog(self) -> str:
        """Changed and deleted entries, one per line."""
        changes = ChangeSet(list(self.change_set))
        changes.append(self.delete_set)
        return changes.to_log()


class ApplyEngine:
    """Drives the live store toward the desired resources of an object."""

    def __init__(self, store: Store, config: ApplyConfig | None = None) -> None:
        self._store = store
        self._config = config or ApplyConfig()

    def resource_manager(self, obj: ManagedObject) -> ResourceManager:
        return ResourceManager(
            self._store, Owner(field=self._config.field_manager, group=obj.owner_group)
        )

    def delete_options(self, obj: ManagedObject) -> DeleteOptions:
        """Deletion scoped to resources owned by obj and not excluded from pruning."""
        return DeleteOptions(
            propagation_policy=PropagationPolicy.BACKGROUND,
            inclusions=self.resource_manager(obj).get_owner_labels(
                obj.name, obj.namespace
            ),
            exclusions={PRUNE_ANNOTATION: DISABLED_VALUE},
        )

    async def apply(
        self,
        obj: ManagedObject,
        resources: list[dict[str, Any]],
        on_applied: Callable[[ApplyResult], None] | None = None,
    ) -> ApplyResult:
        """Apply the resources on behalf of obj and garbage collect stale ones.

        The optional on_applied callback is invoked after garbage collection
        and before waiting for the changed resources to become ready.
        """
        manager = self.resource_manager(obj)
        docs = copy.deepcopy(resources)
        manager.set_owner_labels(docs, obj.name, obj.namespace)
        docs = normalize_resources(docs, obj.namespace)
        set_common_metadata(docs, obj.get_common_metadata())

        options = ApplyOptions(
            field_manager=self._config.field_manager,
            cleanup=ApplyCleanupOptions(
                annotations=list(LEGACY_ANNOTATIONS),
                labels=list(LEGACY_LABELS),
                field_managers=takeover_field_managers(
                    self._config.takeover_managers
                ),
            ),
        )
        change_set = await manager.apply_all_staged(docs, options)
        if change_set.has_changed():
            _LOGGER.info(
                "Server-side apply completed for %s: %s",
                obj.namespaced_name,
                {str(e.ref): str(e.action) for e in change_set.changed()},
            )

        new_inventory = inventory.new()
        inventory.add_change_set(new_inventory, change_set)
        result = ApplyResult(change_set=change_set, inventory=new_inventory)

        if stale := inventory.diff(obj.get_inventory(), new_inventory):
            result.delete_set = await manager.delete_all(
                stale, self.delete_options(obj)
            )
            if result.delete_set:
                _LOGGER.info(
                    "Garbage collection completed for %s: %s",
                    obj.namespaced_name,
                    result.delete_set.to_map(),
                )
        obj.set_inventory(new_inventory)

        if on_applied is not None:
            on_applied(result)

        changed = change_set.refs(Action.CREATED, Action.CONFIGURED)
        if obj.get_wait() and changed:
            try:
                await manager.wait_for_set(
                    changed, self._config.wait_interval, obj.get_timeout()
                )
            except (HealthCheckError, ResourceFailedError) as err:
                summary = aggregate_not_ready_status(await self._fetch(docs))
                if summary:
                    raise HealthCheckError(f"{err}\n{summary}") from err
                raise
            _LOGGER.info("Health check completed for %s", obj.namespaced_name)

        return result

    async def uninstall(self, obj: ManagedObject) -> ChangeSet:
        """Delete every resource in the inventory of obj."""
        manager = self.resource_manager(obj)
        refs = inventory.list_refs(obj.get_inventory())
        return await manager.delete_all(refs, self.delete_options(obj))

    async def _fetch(self, docs: list[dict[str, Any]]) -> list[dict[str, Any]]:
        result = []
        for doc in docs:
            try:
                result.append(await self._store.get(ResourceRef.from_doc(doc)))
            except ObjectNotFoundError:
                continue
        return result
