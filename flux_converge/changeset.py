"""Result of applying a set of resources to the cluster store."""

from collections.abc import Iterator
from dataclasses import dataclass, field
from enum import StrEnum

from .manifest import ResourceRef

__all__ = [
    "Action",
    "ChangeEntry",
    "ChangeSet",
]


class Action(StrEnum):
    """Action performed on a single resource."""

    CREATED = "Created"
    CONFIGURED = "Configured"
    UNCHANGED = "Unchanged"
    DELETED = "Deleted"
    SKIPPED = "Skipped"


@dataclass(frozen=True)
class ChangeEntry:
    """Outcome of applying or deleting one resource."""

    ref: ResourceRef
    action: Action

    def __str__(self) -> str:
        return f"{self.ref} {self.action}"


@dataclass
class ChangeSet:
    """Ordered list of change entries, not persisted."""

    entries: list[ChangeEntry] = field(default_factory=list)

    def add(self, entry: ChangeEntry) -> None:
        self.entries.append(entry)

    def append(self, other: "ChangeSet") -> None:
        self.entries.extend(other.entries)

    def __iter__(self) -> Iterator[ChangeEntry]:
        return iter(self.entries)

    def __len__(self) -> int:
        return len(self.entries)

    def changed(self) -> list[ChangeEntry]:
        """Entries that changed the live state, used in notifications."""
        return [
            entry
            for entry in self.entries
            if entry.action not in (Action.UNCHANGED, Action.SKIPPED)
        ]

    def has_changed(self) -> bool:
        return bool(self.changed())

    def to_map(self) -> dict[str, str]:
        """Map of resource id to action."""
        return {str(entry.ref): str(entry.action) for entry in self.entries}

    def to_log(self) -> str:
        """Human readable change log with one changed entry per line."""
        return "\n".join(str(entry) for entry in self.changed())

    def refs(self, *actions: Action) -> list[ResourceRef]:
        """Refs of the entries with the given actions, or all when empty."""
        return [
            entry.ref for entry in self.entries if not actions or entry.action in actions
        ]
