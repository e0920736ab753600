"""Resource manager performing staged server-side apply, deletion and waits."""

import asyncio
from collections.abc import Iterable
from dataclasses import dataclass
from datetime import timedelta
import logging
from time import monotonic
from typing import Any

from flux_converge.changeset import Action, ChangeEntry, ChangeSet
from flux_converge.exceptions import (
    ApplyException,
    ConvergeException,
    HealthCheckError,
    ObjectNotFoundError,
    ResourceFailedError,
)
from flux_converge.manifest import CRD_KIND, NAMESPACE_KIND, ResourceRef
from flux_converge.store import (
    ApplyOptions,
    DeleteOptions,
    Status,
    Store,
    compute_status,
)

__all__ = [
    "Owner",
    "ResourceManager",
]

_LOGGER = logging.getLogger(__name__)

# Kinds other resources depend on, applied before everything else.
CLASS_KINDS = frozenset(
    {
        "StorageClass",
        "IngressClass",
        "RuntimeClass",
        "PriorityClass",
        "ClusterRole",
        "ValidatingAdmissionPolicy",
    }
)


@dataclass(frozen=True)
class Owner:
    """Field manager and label group identifying the applier."""

    field: str
    group: str


def _stage(doc: dict[str, Any]) -> int:
    kind = doc.get("kind")
    if kind in (CRD_KIND, NAMESPACE_KIND):
        return 0
    if kind in CLASS_KINDS:
        return 1
    return 2


class ResourceManager:
    """Applies, deletes and waits on sets of resources in the store."""

    def __init__(self, store: Store, owner: Owner) -> None:
        self._store = store
        self._owner = owner

    @property
    def owner(self) -> Owner:
        return self._owner

    def get_owner_labels(self, name: str, namespace: str) -> dict[str, str]:
        """Return the labels identifying resources owned by an object."""
        return {
            f"{self._owner.group}/name": name,
            f"{self._owner.group}/namespace": namespace,
        }

    def set_owner_labels(
        self, docs: list[dict[str, Any]], name: str, namespace: str
    ) -> None:
        """Stamp the owner labels on every document."""
        labels = self.get_owner_labels(name, namespace)
        for doc in docs:
            if not isinstance(doc, dict):
                continue
            metadata = doc.setdefault("metadata", {})
            if not isinstance(metadata, dict):
                continue
            if not isinstance(metadata.get("labels"), dict):
                metadata["labels"] = {}
            metadata["labels"].update(labels)

    async def apply(self, doc: dict[str, Any], options: ApplyOptions) -> ChangeEntry:
        """Apply a single document."""
        ref = ResourceRef.from_doc(doc)
        try:
            action = await self._store.apply(doc, options)
        except ConvergeException as err:
            raise ApplyException(str(ref), f"apply failed: {err}") from err
        _LOGGER.debug("%s %s", ref, action)
        return ChangeEntry(ref, action)

    async def apply_all(
        self, docs: list[dict[str, Any]], options: ApplyOptions
    ) -> ChangeSet:
        """Apply the documents in order."""
        change_set = ChangeSet()
        for doc in docs:
            change_set.add(await self.apply(doc, options))
        return change_set

    async def apply_all_staged(
        self, docs: list[dict[str, Any]], options: ApplyOptions
    ) -> ChangeSet:
        """Apply the documents in stages.

        CustomResourceDefinitions and Namespaces come first, then class
        definitions and cluster roles, then everything else. Order within a
        stage is preserved.
        """
        change_set = ChangeSet()
        for stage in range(3):
            if batch := [doc for doc in docs if _stage(doc) == stage]:
                change_set.append(await self.apply_all(batch, options))
        return change_set

    async def delete(self, ref: ResourceRef, options: DeleteOptions) -> ChangeEntry:
        """Delete a single resource if it is owned and not excluded."""
        try:
            existing = await self._store.get(ref)
        except ObjectNotFoundError:
            raise
        except ConvergeException as err:
            raise ApplyException(str(ref), f"delete failed: {err}") from err

        metadata = existing.get("metadata") or {}
        labels = metadata.get("labels") or {}
        annotations = metadata.get("annotations") or {}
        if any(labels.get(k) != v for k, v in options.inclusions.items()):
            return ChangeEntry(ref, Action.SKIPPED)
        if any(
            labels.get(k) == v or annotations.get(k) == v
            for k, v in options.exclusions.items()
        ):
            return ChangeEntry(ref, Action.SKIPPED)

        try:
            action = await self._store.delete(ref, options)
        except ObjectNotFoundError:
            raise
        except ConvergeException as err:
            raise ApplyException(str(ref), f"delete failed: {err}") from err
        return ChangeEntry(ref, action)

    async def delete_all(
        self, refs: Iterable[ResourceRef], options: DeleteOptions
    ) -> ChangeSet:
        """Delete the resources, objects already gone are ignored."""
        change_set = ChangeSet()
        for ref in refs:
            try:
                entry = await self.delete(ref, options)
            except ObjectNotFoundError:
                _LOGGER.debug("%s already deleted", ref)
                continue
            change_set.add(entry)
        return change_set

    async def wait_for_set(
        self, refs: list[ResourceRef], interval: timedelta, timeout: timedelta
    ) -> None:
        """Wait for every resource to become Current.

        The first resource reported as Failed aborts the wait.
        """
        deadline = monotonic() + timeout.total_seconds()
        pending = list(refs)
        while True:
            not_ready: list[str] = []
            for ref in pending:
                try:
                    doc: dict[str, Any] | None = await self._store.get(ref)
                except ObjectNotFoundError:
                    doc = None
                result = compute_status(doc)
                if result.status == Status.FAILED:
                    raise ResourceFailedError(str(ref), result.message)
                if result.status != Status.CURRENT:
                    not_ready.append(f"{ref} status: '{result.status}'")
            if not not_ready:
                return
            if monotonic() >= deadline:
                raise HealthCheckError(
                    "timeout waiting for: [" + ", ".join(not_ready) + "]"
                )
            await asyncio.sleep(
                min(interval.total_seconds(), max(deadline - monotonic(), 0))
            )
