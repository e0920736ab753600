"""Tracking of the resources owned by a managed object.

The inventory is stored in the object status and always reflects the last
successful apply. These helpers are pure, the controller is responsible for
only replacing the inventory after apply and garbage collection succeed.
"""

from .changeset import Action, ChangeSet
from .manifest import InventoryEntry, ResourceInventory, ResourceRef

__all__ = [
    "new",
    "add_change_set",
    "diff",
    "list_refs",
    "entry_from_ref",
    "ref_from_entry",
]


def new() -> ResourceInventory:
    """Return an empty inventory."""
    return ResourceInventory(entries=[])


def entry_from_ref(ref: ResourceRef) -> InventoryEntry:
    return InventoryEntry(id=ref.id, version=ref.version)


def ref_from_entry(entry: InventoryEntry) -> ResourceRef:
    return ResourceRef.parse_id(entry.id, version=entry.version)


def add_change_set(inventory: ResourceInventory, change_set: ChangeSet) -> None:
    """Add the applied resources of a change set, deduplicated by identity.

    Deleted and skipped entries are not owned and are left out. Unchanged
    entries are owned even though they are not reported to users.
    """
    index = {entry.id: i for i, entry in enumerate(inventory.entries)}
    for change in change_set:
        if change.action in (Action.DELETED, Action.SKIPPED):
            continue
        entry = entry_from_ref(change.ref)
        if (i := index.get(entry.id)) is not None:
            inventory.entries[i] = entry
            continue
        index[entry.id] = len(inventory.entries)
        inventory.entries.append(entry)


def list_refs(inventory: ResourceInventory | None) -> list[ResourceRef]:
    """Return the inventory refs sorted for a stable deletion order."""
    if inventory is None:
        return []
    return sorted(ref_from_entry(entry) for entry in inventory.entries)


def diff(
    old: ResourceInventory | None, new: ResourceInventory | None
) -> list[ResourceRef]:
    """Return the refs in `old` that are missing from `new`.

    Identity ignores the version and the result keeps the order of `old`.
    """
    if old is None:
        return []
    keep = {entry.id for entry in (new.entries if new is not None else [])}
    stale: list[ResourceRef] = []
    seen: set[str] = set()
    for entry in old.entries:
        if entry.id in keep or entry.id in seen:
            continue
        seen.add(entry.id)
        stale.append(ref_from_entry(entry))
    return stale
