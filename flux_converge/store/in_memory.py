"""Module for in memory cluster store.

The in memory store implements enough of the Kubernetes API semantics for the
convergence engine to be exercised without a cluster: server-side apply with
per manager field ownership, JSON merge patches with optimistic concurrency,
label selection and finalizer aware deletion.
"""

from collections import defaultdict
from collections.abc import Callable
import copy
from datetime import datetime, timezone
import logging
from typing import Any, DefaultDict

from flux_converge.changeset import Action
from flux_converge.exceptions import ConflictError, ObjectNotFoundError
from flux_converge.manifest import ResourceRef

from .options import (
    ApplyOptions,
    DeleteOptions,
    ManagedFieldsOperation,
    PropagationPolicy,
)
from .store import Store, StoreEvent, Validator


_LOGGER = logging.getLogger(__name__)

Path = tuple[str, ...]
Owner = tuple[str, ManagedFieldsOperation]

_MISSING = object()

# Metadata written by the store itself, never owned by a field manager.
_SERVER_METADATA = frozenset(
    {
        "name",
        "namespace",
        "generation",
        "resourceVersion",
        "deletionTimestamp",
        "creationTimestamp",
        "uid",
        "managedFields",
    }
)


def _key(ref: ResourceRef) -> ResourceRef:
    """Identity key with the informational version dropped."""
    return ResourceRef(ref.group, ref.kind, ref.namespace, ref.name)


def _leaf_paths(value: Any, prefix: Path = ()) -> dict[Path, Any]:
    if isinstance(value, dict) and value:
        result: dict[Path, Any] = {}
        for key, child in value.items():
            result.update(_leaf_paths(child, prefix + (str(key),)))
        return result
    return {prefix: value}


def _owned_fields(doc: dict[str, Any]) -> dict[Path, Any]:
    """Return the leaf fields of a document that a manager can own."""
    fields: dict[Path, Any] = {}
    for key, value in doc.items():
        if key in ("apiVersion", "kind", "status"):
            continue
        if key == "metadata":
            for meta_key, meta_value in (value or {}).items():
                if meta_key in _SERVER_METADATA:
                    continue
                fields.update(_leaf_paths(meta_value, ("metadata", meta_key)))
            continue
        fields.update(_leaf_paths(value, (key,)))
    return fields


def _get_path(doc: dict[str, Any], path: Path) -> Any:
    current: Any = doc
    for part in path:
        if not isinstance(current, dict) or part not in current:
            return _MISSING
        current = current[part]
    return current


def _set_path(doc: dict[str, Any], path: Path, value: Any) -> None:
    current = doc
    for part in path[:-1]:
        if not isinstance(current.get(part), dict):
            current[part] = {}
        current = current[part]
    current[path[-1]] = copy.deepcopy(value)


def _del_path(doc: dict[str, Any], path: Path) -> None:
    parents: list[tuple[dict[str, Any], str]] = []
    current: Any = doc
    for part in path[:-1]:
        if not isinstance(current, dict) or part not in current:
            return
        parents.append((current, part))
        current = current[part]
    if isinstance(current, dict):
        current.pop(path[-1], None)
    # Prune parents emptied by the removal, metadata itself always stays.
    for parent, part in reversed(parents):
        if parent[part] == {} and (parent is not doc or part != "metadata"):
            del parent[part]
        else:
            break


def _merge_patch(target: dict[str, Any], patch: dict[str, Any]) -> None:
    """Apply an RFC 7386 JSON merge patch in place."""
    for key, value in patch.items():
        if value is None:
            target.pop(key, None)
        elif isinstance(value, dict):
            if not isinstance(target.get(key), dict):
                target[key] = {}
            _merge_patch(target[key], value)
        else:
            target[key] = copy.deepcopy(value)


def _spec_view(doc: dict[str, Any]) -> dict[str, Any]:
    """Fields that bump the generation when changed."""
    return {k: v for k, v in doc.items() if k not in ("metadata", "status")}


def _matches_labels(doc: dict[str, Any], labels: dict[str, str] | None) -> bool:
    current = (doc.get("metadata") or {}).get("labels") or {}
    return all(current.get(k) == v for k, v in (labels or {}).items())


def _now() -> str:
    return datetime.now(timezone.utc).strftime("%Y-%m-%dT%H:%M:%SZ")


class InMemoryStore(Store):
    """In-memory implementation of the Store interface.

    Objects are keyed by ResourceRef. Ownership of each leaf field is tracked
    per field manager and operation.
    """

    def __init__(self) -> None:
        """Initialize the InMemoryStore."""
        self._objects: dict[ResourceRef, dict[str, Any]] = {}
        self._managed: dict[ResourceRef, dict[Owner, set[Path]]] = {}
        self._validators: DefaultDict[str, list[Validator]] = defaultdict(list)
        self._listeners: DefaultDict[StoreEvent, list[Callable[..., None]]] = (
            defaultdict(list)
        )
        self._resource_version = 0
        self.write_count = 0

    def _next_resource_version(self) -> str:
        self._resource_version += 1
        return str(self._resource_version)

    def _validate(self, doc: dict[str, Any]) -> None:
        for validator in self._validators.get(doc.get("kind", ""), []):
            validator(doc)

    def add_validator(self, kind: str, validator: Validator) -> None:
        """Register an admission check for writes of the given kind."""
        self._validators[kind].append(validator)

    def add_object(self, doc: dict[str, Any]) -> ResourceRef:
        """Add or replace an object verbatim, including its status.

        This bypasses field ownership and is meant for seeding the store.
        """
        ref = _key(ResourceRef.from_doc(doc))
        self._validate(doc)
        stored = copy.deepcopy(doc)
        metadata = stored.setdefault("metadata", {})
        metadata.setdefault("generation", 1)
        metadata["resourceVersion"] = self._next_resource_version()
        existed = ref in self._objects
        self._objects[ref] = stored
        self._managed.setdefault(ref, {})
        _LOGGER.debug("Added object %s to store", ref)
        self._fire_event(
            StoreEvent.OBJECT_UPDATED if existed else StoreEvent.OBJECT_ADDED,
            ref,
            copy.deepcopy(stored),
        )
        return ref

    def managed_fields(self, ref: ResourceRef) -> dict[Owner, set[Path]]:
        """Return a copy of the field ownership of an object."""
        return copy.deepcopy(self._managed.get(_key(ref), {}))

    def exists(self, ref: ResourceRef) -> bool:
        return _key(ref) in self._objects

    async def get(self, ref: ResourceRef) -> dict[str, Any]:
        """Return the object, raising ObjectNotFoundError when missing."""
        if (doc := self._objects.get(_key(ref))) is None:
            raise ObjectNotFoundError(f"{ref} not found")
        return copy.deepcopy(doc)

    async def apply(self, doc: dict[str, Any], options: ApplyOptions) -> Action:
        """Server-side apply a document."""
        ref = _key(ResourceRef.from_doc(doc))
        self._validate(doc)
        owner: Owner = (options.field_manager, ManagedFieldsOperation.APPLY)
        applied = _owned_fields(doc)

        if (existing := self._objects.get(ref)) is None:
            stored = {k: copy.deepcopy(v) for k, v in doc.items() if k != "status"}
            metadata = stored.setdefault("metadata", {})
            self._cleanup(stored, {owner: set(applied)}, options)
            metadata["generation"] = 1
            metadata["resourceVersion"] = self._next_resource_version()
            metadata["creationTimestamp"] = _now()
            self._objects[ref] = stored
            self._managed[ref] = {owner: set(applied)}
            self.write_count += 1
            _LOGGER.debug("Created %s by %s", ref, options.field_manager)
            self._fire_event(StoreEvent.OBJECT_ADDED, ref, copy.deepcopy(stored))
            return Action.CREATED

        updated = copy.deepcopy(existing)
        managed = copy.deepcopy(self._managed.get(ref, {}))

        # Fields of foreign managers listed for takeover become ours.
        for other in list(managed):
            if other == owner:
                continue
            if any(fm.matches(*other) for fm in options.cleanup.field_managers):
                _LOGGER.debug("Taking over %s fields from %s", ref, other[0])
                managed.setdefault(owner, set()).update(managed.pop(other))

        conflicts: list[str] = []
        for path, value in applied.items():
            if _get_path(updated, path) == value:
                continue
            for other, paths in managed.items():
                if other[0] == options.field_manager or path not in paths:
                    continue
                if options.force:
                    paths.discard(path)
                else:
                    conflicts.append(f'conflict with "{other[0]}": .{".".join(path)}')
        if conflicts:
            raise ConflictError(
                f"Apply failed with {len(conflicts)} conflicts: " + ", ".join(conflicts)
            )

        # Fields this manager stopped applying are removed unless co-owned.
        others = set().union(*(p for o, p in managed.items() if o != owner))
        for path in managed.get(owner, set()) - applied.keys():
            if path not in others:
                _del_path(updated, path)
        for path, value in applied.items():
            _set_path(updated, path, value)
        managed[owner] = set(applied)
        self._cleanup(updated, managed, options)
        managed = {o: p for o, p in managed.items() if p}

        self._managed[ref] = managed
        if updated == existing:
            return Action.UNCHANGED

        metadata = updated["metadata"]
        if _spec_view(updated) != _spec_view(existing):
            metadata["generation"] = metadata.get("generation", 1) + 1
        metadata["resourceVersion"] = self._next_resource_version()
        self._objects[ref] = updated
        self.write_count += 1
        _LOGGER.debug("Configured %s by %s", ref, options.field_manager)
        self._fire_event(StoreEvent.OBJECT_UPDATED, ref, copy.deepcopy(updated))
        return Action.CONFIGURED

    def _cleanup(
        self,
        doc: dict[str, Any],
        managed: dict[Owner, set[Path]],
        options: ApplyOptions,
    ) -> None:
        """Remove legacy annotations and labels along with their ownership."""
        for section, keys in (
            ("annotations", options.cleanup.annotations),
            ("labels", options.cleanup.labels),
        ):
            for key in keys:
                path = ("metadata", section, key)
                if _get_path(doc, path) is _MISSING:
                    continue
                _del_path(doc, path)
                for paths in managed.values():
                    paths.discard(path)

    async def delete(self, ref: ResourceRef, options: DeleteOptions) -> Action:
        """Delete an object honoring finalizers and selection options."""
        key = _key(ref)
        if (doc := self._objects.get(key)) is None:
            raise ObjectNotFoundError(f"{ref} not found")
        metadata = doc.get("metadata") or {}
        if not _matches_labels(doc, options.inclusions):
            _LOGGER.debug("Skipping delete of %s, missing owner labels", ref)
            return Action.SKIPPED
        for k, v in options.exclusions.items():
            if (metadata.get("labels") or {}).get(k) == v or (
                metadata.get("annotations") or {}
            ).get(k) == v:
                _LOGGER.debug("Skipping delete of %s, excluded by %s=%s", ref, k, v)
                return Action.SKIPPED

        if metadata.get("finalizers"):
            if not metadata.get("deletionTimestamp"):
                metadata["deletionTimestamp"] = _now()
                metadata["resourceVersion"] = self._next_resource_version()
                self.write_count += 1
                self._fire_event(StoreEvent.OBJECT_UPDATED, key, copy.deepcopy(doc))
            return Action.DELETED

        self._remove(key, options.propagation_policy)
        return Action.DELETED

    def _remove(self, key: ResourceRef, policy: PropagationPolicy) -> None:
        doc = self._objects.pop(key)
        self._managed.pop(key, None)
        self.write_count += 1
        _LOGGER.debug("Deleted %s (%s)", key, policy)
        self._fire_event(StoreEvent.OBJECT_DELETED, key, doc)
        # Dependents are owned through metadata.ownerReferences.
        for dep_key, dep in list(self._objects.items()):
            owners = (dep.get("metadata") or {}).get("ownerReferences") or []
            if not any(
                o.get("kind") == key.kind
                and o.get("name") == key.name
                and dep_key.namespace in (key.namespace, "")
                for o in owners
            ):
                continue
            if policy == PropagationPolicy.ORPHAN:
                dep["metadata"].pop("ownerReferences", None)
            elif dep_key in self._objects:
                self._remove(dep_key, policy)

    async def patch(
        self,
        ref: ResourceRef,
        merge_patch: dict[str, Any],
        resource_version: str | None = None,
    ) -> dict[str, Any]:
        """Apply a JSON merge patch with an optional optimistic lock."""
        key = _key(ref)
        if (existing := self._objects.get(key)) is None:
            raise ObjectNotFoundError(f"{ref} not found")
        current_version = existing["metadata"].get("resourceVersion")
        if resource_version is not None and resource_version != current_version:
            raise ConflictError(
                f"Operation cannot be fulfilled on {ref}: the object has been "
                "modified; please apply your changes to the latest version"
            )
        updated = copy.deepcopy(existing)
        _merge_patch(updated, merge_patch)
        updated["metadata"]["name"] = key.name
        if key.namespace:
            updated["metadata"]["namespace"] = key.namespace
        self._validate(updated)
        if updated == existing:
            return copy.deepcopy(existing)

        metadata = updated["metadata"]
        if _spec_view(updated) != _spec_view(existing):
            metadata["generation"] = metadata.get("generation", 1) + 1
        metadata["resourceVersion"] = self._next_resource_version()
        self._objects[key] = updated
        self.write_count += 1
        if metadata.get("deletionTimestamp") and not metadata.get("finalizers"):
            self._remove(key, PropagationPolicy.BACKGROUND)
            return copy.deepcopy(updated)
        self._fire_event(StoreEvent.OBJECT_UPDATED, key, copy.deepcopy(updated))
        return copy.deepcopy(updated)

    async def list(
        self,
        kind: str | None = None,
        api_group: str | None = None,
        namespace: str | None = None,
        labels: dict[str, str] | None = None,
    ) -> list[dict[str, Any]]:
        """List objects matching all of the given selectors."""
        return [
            copy.deepcopy(doc)
            for ref, doc in sorted(self._objects.items())
            if (kind is None or ref.kind == kind)
            and (api_group is None or ref.group == api_group)
            and (namespace is None or ref.namespace == namespace)
            and _matches_labels(doc, labels)
        ]

    def add_listener(
        self,
        event: StoreEvent,
        callback: Callable[[ResourceRef, dict[str, Any]], None],
        flush: bool = False,
    ) -> Callable[[], None]:
        """Register a callback for a store event."""

        def remove() -> None:
            if callback in self._listeners[event]:
                self._listeners[event].remove(callback)

        self._listeners[event].append(callback)

        if flush and event == StoreEvent.OBJECT_ADDED:
            _LOGGER.debug("Flushing objects for event type %s", event)
            for ref, doc in list(self._objects.items()):
                callback(ref, copy.deepcopy(doc))

        return remove

    def _fire_event(self, event: StoreEvent, *args: Any) -> None:
        for cb in list(self._listeners[event]):  # Iterate over a copy for safe removal
            try:
                cb(*args)
            except Exception:
                _LOGGER.exception("Store listener callback failed for event %s", event)
